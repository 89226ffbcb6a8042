# table_client.py
"""Header-aware row access to the sheets of one Google spreadsheet."""
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httplib2
from google.auth import exceptions as google_exceptions
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

import config
from doc_cache import DocCache
from errors import (HeaderMissingError, InvalidFieldError, RemoteCallError,
                    RowNotFoundError, SchemaError, SheetsBridgeError,
                    TableNotFoundError)
from token_broker import BrokerCredentials

logger = logging.getLogger(__name__)

FIRST_DATA_ROW = 2

_SIMPLE_TITLE_RE = re.compile(r'^[A-Za-z0-9_]+$')
_ROW_RANGE_RE = re.compile(r'^\s*(?:[^!]+!)?\$?([A-Za-z]+)\$?(\d+)(?::\$?([A-Za-z]+)\$?(\d+))?\s*$')


def column_letter(index):
    """0-based column index to its A1 letter(s)."""
    index += 1
    label = ''
    while index:
        index, remainder = divmod(index - 1, 26)
        label = chr(65 + remainder) + label
    return label


def quote_sheet_title(title):
    title = (title or '').strip()
    if _SIMPLE_TITLE_RE.fullmatch(title):
        return title
    return "'" + title.replace("'", "''") + "'"


def a1_range(title, cells=None):
    quoted = quote_sheet_title(title)
    return f'{quoted}!{cells}' if cells else quoted


def parse_row_range(range_spec):
    """Returns the sheet row number addressed by a single-row range like A5:K5."""
    match = _ROW_RANGE_RE.match(range_spec or '')
    if not match:
        raise InvalidFieldError(f'Invalid range: {range_spec!r}')
    start_row = int(match.group(2))
    end_row = match.group(4)
    if end_row is not None and int(end_row) != start_row:
        raise InvalidFieldError(f'Range must address a single row: {range_spec!r}')
    return start_row


def cell_text(value):
    if value is None:
        return ''
    if isinstance(value, bool):
        return 'TRUE' if value else 'FALSE'
    return str(value)


def normalize_row(values, width):
    """Pads short rows with empty strings and drops cells beyond the header."""
    row = [cell_text(v) for v in list(values or [])[:width]]
    row.extend([''] * (width - len(row)))
    return row


class HeaderMap:
    """Column name to index lookup for one header row, matched case-insensitively."""

    def __init__(self, header):
        self.header = [cell_text(name).strip() for name in header]
        self._index = {}
        for i, name in enumerate(self.header):
            key = name.casefold()
            if key and key not in self._index:
                self._index[key] = i

    def __len__(self):
        return len(self.header)

    def __contains__(self, name):
        return cell_text(name).strip().casefold() in self._index

    def index(self, name):
        try:
            return self._index[cell_text(name).strip().casefold()]
        except KeyError:
            raise InvalidFieldError(f'Unknown column: {name}',
                                    details={'columns': self.header}) from None

    def require(self, names):
        missing = [name for name in names if name not in self]
        if missing:
            raise SchemaError(f"Missing required column(s): {', '.join(missing)}",
                              details={'missing': missing, 'columns': self.header})
        return self

    def cell(self, row, name):
        i = self.index(name)
        return cell_text(row[i]).strip() if i < len(row) else ''

    def build_row(self, mapping):
        row = [''] * len(self.header)
        for name, value in mapping.items():
            row[self.index(name)] = cell_text(value)
        return row


@dataclass
class TableHandle:
    spreadsheet_id: str
    service: Any
    sheets: Dict[str, Optional[int]]


@dataclass
class RowSet:
    header: List[str]
    rows: List[List[str]]
    pagination: Optional[Dict[str, Any]] = None

    @property
    def values(self):
        return ([self.header] if self.header else []) + self.rows


def default_service_factory(credentials):
    return build('sheets', 'v4', credentials=credentials, cache_discovery=False)


class TableClient:
    def __init__(self, broker, spreadsheet_id, cache=None, service_factory=None,
                 handle_ttl=config.HANDLE_CACHE_TTL):
        self.broker = broker
        self.spreadsheet_id = spreadsheet_id
        self.handle_ttl = handle_ttl
        self._cache = cache if cache is not None else DocCache(ttl=handle_ttl)
        self._service_factory = service_factory or default_service_factory

    @property
    def cache_key(self):
        return f'handle:{self.spreadsheet_id}'

    # -- handle ---------------------------------------------------------

    def get_handle(self):
        return self._cache.get_or_load(self.cache_key, self._resolve_handle, ttl=self.handle_ttl)

    def invalidate(self):
        self._cache.invalidate(self.cache_key)

    def _resolve_handle(self):
        logger.info('Resolving spreadsheet %s', self.spreadsheet_id)
        service = self._service_factory(BrokerCredentials(self.broker))
        metadata = self._execute(
            service.spreadsheets().get(spreadsheetId=self.spreadsheet_id,
                                       fields='sheets.properties(sheetId,title)'),
            'spreadsheets.get')
        sheets = {}
        for sheet in metadata.get('sheets', []):
            props = sheet.get('properties', {})
            title = props.get('title')
            if isinstance(title, str):
                sheets[title] = props.get('sheetId')
        return TableHandle(spreadsheet_id=self.spreadsheet_id, service=service, sheets=sheets)

    def _sheet_title(self, handle, sub_table):
        name = (sub_table or '').strip()
        if not name:
            raise InvalidFieldError('sheetName is required')
        if name in handle.sheets:
            return name
        lower = name.casefold()
        for title in handle.sheets:
            if title.casefold() == lower:
                return title
        raise TableNotFoundError(f'Sheet not found: {name}',
                                 details={'sheets': list(handle.sheets)})

    def _execute(self, request, description):
        try:
            return request.execute()
        except SheetsBridgeError:
            raise
        except HttpError as exc:
            status = int(getattr(exc.resp, 'status', 0) or 0)
            content = exc.content.decode('utf-8', 'replace') if isinstance(exc.content, bytes) else str(exc.content)
            logger.warning('%s failed with status %s', description, status)
            if status == 404 or (status == 400 and 'Unable to parse range' in content):
                raise TableNotFoundError(f'{description}: table or range not found',
                                         details={'status': status}) from exc
            raise RemoteCallError(f'Sheets API error: {status}',
                                  details={'status': status, 'call': description}) from exc
        except (google_exceptions.GoogleAuthError, httplib2.HttpLib2Error, OSError) as exc:
            logger.warning('%s failed: %s', description, exc)
            raise RemoteCallError(f'{description} failed: {exc}') from exc

    def _get_values(self, handle, title, range_spec=None):
        result = self._execute(
            handle.service.spreadsheets().values().get(
                spreadsheetId=handle.spreadsheet_id, range=a1_range(title, range_spec)),
            'values.get')
        return result.get('values', [])

    def _load(self, sub_table):
        handle = self.get_handle()
        title = self._sheet_title(handle, sub_table)
        values = self._get_values(handle, title)
        header = HeaderMap(values[0] if values else [])
        rows = [normalize_row(row, len(header)) for row in values[1:]]
        return handle, title, header, rows

    # -- reads ----------------------------------------------------------

    def list_tables(self):
        return list(self.get_handle().sheets)

    def read_header(self, sub_table):
        handle = self.get_handle()
        title = self._sheet_title(handle, sub_table)
        values = self._get_values(handle, title, '1:1')
        return [cell_text(c).strip() for c in values[0]] if values else []

    def read_rows(self, sub_table, range_spec=None, limit=None, offset=0):
        handle = self.get_handle()
        title = self._sheet_title(handle, sub_table)
        values = self._get_values(handle, title, range_spec)
        if values and range_spec:
            # An explicit range is returned cell for cell, its first row as header.
            header = [cell_text(c) for c in values[0]]
            rows = [[cell_text(c) for c in row] for row in values[1:]]
        elif values:
            header = [cell_text(c).strip() for c in values[0]]
            rows = [normalize_row(row, len(header)) for row in values[1:]]
        else:
            header, rows = [], []

        if limit is None:
            return RowSet(header=header, rows=rows)

        limit, offset = int(limit), int(offset or 0)
        if limit <= 0 or offset < 0:
            raise InvalidFieldError('limit must be positive and offset non-negative')
        total = len(rows)
        return RowSet(header=header, rows=rows[offset:offset + limit], pagination={
            'total': total,
            'limit': limit,
            'offset': offset,
            'hasMore': (offset + limit) < total,
        })

    def find_row_by_key(self, sub_table, key_column, key_value):
        _, _, header, rows = self._load(sub_table)
        row_index, row = self._find(header, rows, key_column, key_value)
        return row_index, row

    @staticmethod
    def _find(header, rows, key_column, key_value):
        if not len(header):
            raise RowNotFoundError(f'No row with {key_column} = {key_value}')
        key_index = header.index(key_column)
        wanted = cell_text(key_value).strip()
        for offset, row in enumerate(rows):
            if row[key_index].strip() == wanted:
                return offset + FIRST_DATA_ROW, row
        raise RowNotFoundError(f'No row with {key_column} = {key_value}')

    # -- writes ---------------------------------------------------------

    def append_row(self, sub_table, values):
        return self.append_rows(sub_table, [values])[0]

    def append_rows(self, sub_table, rows):
        if not rows:
            raise InvalidFieldError('values must contain at least one row')
        handle = self.get_handle()
        title = self._sheet_title(handle, sub_table)
        header = self.read_header(title)
        if not header:
            raise HeaderMissingError(f'Sheet {title} has no header row')
        width = len(header)
        normalized = [normalize_row(row, width) for row in rows]
        self._execute(
            handle.service.spreadsheets().values().append(
                spreadsheetId=handle.spreadsheet_id,
                range=a1_range(title, f'A:{column_letter(width - 1)}'),
                valueInputOption='RAW',
                insertDataOption='INSERT_ROWS',
                body={'values': normalized}),
            'values.append')
        logger.info('Appended %d row(s) to %s', len(normalized), title)
        self.invalidate()
        return normalized

    def update_row_by_index(self, sub_table, row_index, values):
        handle, title, header, rows = self._load(sub_table)
        row_index = self._check_row_index(row_index, rows)
        row = normalize_row(values, len(header))
        self._write_row(handle, title, row_index, row)
        return row

    def update_row_by_key(self, sub_table, key_column, key_value, updates):
        handle, title, header, rows = self._load(sub_table)
        if len(header):
            unknown = [name for name in updates if name not in header]
            if unknown:
                raise InvalidFieldError(f"Unknown column(s): {', '.join(unknown)}",
                                        details={'columns': header.header})
        row_index, row = self._find(header, rows, key_column, key_value)
        merged = list(row)
        for name, value in updates.items():
            merged[header.index(name)] = cell_text(value)
        self._write_row(handle, title, row_index, merged)
        return row_index, merged

    def delete_row(self, sub_table, row_index):
        handle, title, header, rows = self._load(sub_table)
        row_index = self._check_row_index(row_index, rows)
        sheet_id = handle.sheets.get(title)
        body = {'requests': [{
            'deleteDimension': {
                'range': {
                    'sheetId': sheet_id,
                    'dimension': 'ROWS',
                    'startIndex': row_index - 1,  # 0-based, end exclusive
                    'endIndex': row_index,
                }
            }
        }]}
        self._execute(
            handle.service.spreadsheets().batchUpdate(spreadsheetId=handle.spreadsheet_id, body=body),
            'spreadsheets.batchUpdate')
        logger.info('Deleted row %d from %s', row_index, title)
        self.invalidate()

    def _write_row(self, handle, title, row_index, row):
        last = column_letter(max(len(row), 1) - 1)
        self._execute(
            handle.service.spreadsheets().values().update(
                spreadsheetId=handle.spreadsheet_id,
                range=a1_range(title, f'A{row_index}:{last}{row_index}'),
                valueInputOption='RAW',
                body={'values': [row]}),
            'values.update')
        logger.info('Updated row %d in %s', row_index, title)
        self.invalidate()

    @staticmethod
    def _check_row_index(row_index, rows):
        if isinstance(row_index, bool):
            raise InvalidFieldError('rowIndex must be an integer')
        try:
            row_index = int(row_index)
        except (TypeError, ValueError):
            raise InvalidFieldError(f'rowIndex must be an integer, got {row_index!r}') from None
        last = len(rows) + FIRST_DATA_ROW - 1
        if not FIRST_DATA_ROW <= row_index <= last:
            raise RowNotFoundError(f'Row {row_index} is outside data rows {FIRST_DATA_ROW}..{last}')
        return row_index
