# app.py
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone

from flask import Flask, current_app, jsonify, request
from werkzeug.exceptions import HTTPException

import config
from doc_cache import DocCache
from errors import BatchValidationError, InvalidFieldError, SheetsBridgeError
from logging_config import setup_logging
from reference_data import list_staff, search_items
from table_client import TableClient, parse_row_range
from token_broker import TokenBroker
from upsert import Record, UpsertCoordinator

logger = logging.getLogger(__name__)

CORS_HEADERS = {
    'Access-Control-Allow-Origin': '*',
    'Access-Control-Allow-Methods': 'GET, POST, PUT, DELETE, OPTIONS',
    'Access-Control-Allow-Headers': 'Content-Type, Authorization',
}

EXTENSION_KEY = 'sheets_bridge'


@dataclass
class Services:
    broker: TokenBroker
    table_client: TableClient
    coordinator: UpsertCoordinator


def build_services():
    """Wires the broker, table client and coordinator from config."""
    credential = config.load_credential()
    spreadsheet_id = config.require_spreadsheet_id()
    cache = DocCache(ttl=config.HANDLE_CACHE_TTL)
    broker = TokenBroker(credential, cache=cache)
    table_client = TableClient(broker, spreadsheet_id, cache=cache)
    return Services(broker=broker, table_client=table_client,
                    coordinator=UpsertCoordinator(table_client))


_services_lock = threading.Lock()


def get_services():
    services = current_app.extensions.get(EXTENSION_KEY)
    if services is None:
        with _services_lock:
            services = current_app.extensions.get(EXTENSION_KEY)
            if services is None:
                services = build_services()
                current_app.extensions[EXTENSION_KEY] = services
    return services


def utc_now():
    return datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z')


def json_body():
    body = request.get_json(silent=True)
    if not isinstance(body, dict):
        raise InvalidFieldError('Request body must be a JSON object')
    return body


def require(body, *names):
    missing = [name for name in names if body.get(name) in (None, '', [])]
    if missing:
        raise InvalidFieldError(f"Missing required parameter(s): {', '.join(missing)}")


def single_row(values):
    # The form sometimes wraps a single row as [[...]].
    if len(values) == 1 and isinstance(values[0], list):
        return values[0]
    return values


def create_app(services=None):
    app = Flask(__name__)
    if services is not None:
        app.extensions[EXTENSION_KEY] = services

    @app.before_request
    def preflight():
        if request.method == 'OPTIONS':
            return '', 204
        return None

    @app.after_request
    def add_cors_headers(response):
        response.headers.update(CORS_HEADERS)
        return response

    @app.errorhandler(SheetsBridgeError)
    def handle_bridge_error(exc):
        if exc.status_code >= 500:
            logger.error('%s: %s', type(exc).__name__, exc.message)
        return jsonify(exc.to_dict()), exc.status_code

    @app.errorhandler(HTTPException)
    def handle_http_error(exc):
        return jsonify({'success': False, 'error': exc.name, 'details': exc.description}), exc.code

    @app.errorhandler(Exception)
    def handle_unexpected(exc):
        logger.exception('Unhandled error on %s %s', request.method, request.path)
        return jsonify({'success': False, 'error': 'Internal Server Error'}), 500

    @app.route('/health', methods=['GET'])
    def health():
        try:
            get_services().table_client.list_tables()
        except SheetsBridgeError as exc:
            logger.warning('Health check failed: %s', exc.message)
            return jsonify({'status': 'error', 'message': exc.message, 'timestamp': utc_now()}), 503
        return jsonify({'status': 'ok', 'message': 'Sheets backend reachable', 'timestamp': utc_now()})

    @app.route('/api/sheets', methods=['GET'])
    def read_sheet():
        sheet_name = request.args.get('sheetName', '').strip()
        if not sheet_name:
            raise InvalidFieldError('sheetName parameter is required')
        limit = request.args.get('limit')
        try:
            limit = int(limit) if limit else None
            offset = int(request.args.get('offset') or 0)
        except ValueError:
            raise InvalidFieldError('limit and offset must be integers') from None
        row_set = get_services().table_client.read_rows(
            sheet_name, range_spec=request.args.get('range') or None, limit=limit, offset=offset)
        payload = {'success': True, 'values': row_set.values}
        if row_set.pagination is not None:
            payload['pagination'] = row_set.pagination
        return jsonify(payload)

    @app.route('/api/sheets/list', methods=['GET'])
    def list_sheets():
        sheets = get_services().table_client.list_tables()
        return jsonify({'success': True, 'sheets': sheets, 'count': len(sheets)})

    @app.route('/api/sheets/append', methods=['POST'])
    def append_rows():
        body = json_body()
        require(body, 'sheetName', 'values')
        values = body['values']
        if not isinstance(values, list):
            raise InvalidFieldError('values must be an array')
        client = get_services().table_client
        if all(isinstance(row, list) for row in values):
            written = client.append_rows(body['sheetName'], values)
        else:
            written = [client.append_row(body['sheetName'], values)]
        return jsonify({'success': True,
                        'message': f"Appended {len(written)} row(s) to {body['sheetName']}"})

    @app.route('/api/sheets/update', methods=['PUT'])
    def update_row():
        body = json_body()
        require(body, 'sheetName')
        client = get_services().table_client
        if body.get('range'):
            require(body, 'values')
            if not isinstance(body['values'], list):
                raise InvalidFieldError('values must be an array')
            row_index = parse_row_range(body['range'])
            client.update_row_by_index(body['sheetName'], row_index, single_row(body['values']))
        else:
            require(body, 'keyColumn', 'keyValue', 'updates')
            if not isinstance(body['updates'], dict):
                raise InvalidFieldError('updates must be an object')
            row_index, _ = client.update_row_by_key(body['sheetName'], body['keyColumn'],
                                                    body['keyValue'], body['updates'])
        return jsonify({'success': True, 'message': f'Row {row_index} updated'})

    @app.route('/api/sheets/find', methods=['POST'])
    def find_row():
        body = json_body()
        require(body, 'sheetName', 'keyColumn', 'keyValue')
        row_index, row = get_services().table_client.find_row_by_key(
            body['sheetName'], body['keyColumn'], body['keyValue'])
        return jsonify({'success': True, 'rowIndex': row_index, 'data': row})

    @app.route('/api/sheets/delete', methods=['DELETE'])
    def delete_row():
        body = json_body()
        require(body, 'sheetName', 'rowIndex')
        get_services().table_client.delete_row(body['sheetName'], body['rowIndex'])
        return jsonify({'success': True, 'message': f"Row {body['rowIndex']} deleted"})

    @app.route('/api/list-so', methods=['GET'])
    def list_so():
        items = search_items(get_services().table_client, request.args.get('q'))
        return jsonify({'success': True, 'data': items, 'count': len(items), 'timestamp': utc_now()})

    @app.route('/api/absensi', methods=['GET'])
    def absensi():
        staff = list_staff(get_services().table_client)
        return jsonify({'success': True, 'data': staff, 'count': len(staff), 'timestamp': utc_now()})

    @app.route('/api/so-rawan', methods=['POST'])
    def so_rawan():
        body = json_body()
        items = body.get('items')
        if not body.get('nama') or not body.get('tanggal_rekap') or not body.get('shift') or not items:
            raise BatchValidationError('Incomplete data: nama, tanggal_rekap, shift and items are required')
        if not isinstance(items, list):
            raise BatchValidationError('items must be an array')
        try:
            records = [Record.from_payload(body['nama'], body['tanggal_rekap'], body['shift'], item)
                       for item in items]
        except InvalidFieldError as exc:
            raise BatchValidationError(exc.message) from exc

        result = get_services().coordinator.submit_batch(records)
        payload = {
            'success': not result.failed,
            'message': f'Saved {result.appended + result.updated} of {len(records)} item(s)',
            'timestamp': utc_now(),
        }
        payload.update(result.to_dict())
        return jsonify(payload), (207 if result.failed else 200)

    return app


setup_logging()
app = create_app()

if __name__ == '__main__':
    app.run(host='0.0.0.0', port=config.PORT, threaded=True)
