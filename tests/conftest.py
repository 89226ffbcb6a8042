# tests/conftest.py
import re

import httplib2
import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from googleapiclient.errors import HttpError

from app import Services
from config import Credential
from table_client import TableClient
from token_broker import AccessToken
from upsert import RECORD_COLUMNS, UpsertCoordinator

SPREADSHEET_ID = 'test-spreadsheet'
FIXED_TIMESTAMP = '2024-05-01T08:00:00Z'

_CELL_RE = re.compile(r'^([A-Z]*)(\d*)$')


def http_error(status, message=''):
    return HttpError(httplib2.Response({'status': str(status)}), message.encode('utf-8'))


class Clock:
    def __init__(self, now=1_700_000_000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class FakeResponse:
    def __init__(self, status, data):
        self.status = status
        self.data = data
        self.headers = {}


class FakeTransport:
    """Stands in for google.auth.transport.requests.Request."""

    def __init__(self, status=200, body=None):
        self.status = status
        self.body = body
        self.calls = []

    def __call__(self, url, method='GET', body=None, headers=None, timeout=None, **kwargs):
        self.calls.append({'url': url, 'method': method, 'body': body, 'headers': headers})
        if self.body is not None:
            data = self.body
        else:
            data = '{"access_token": "token-%d", "expires_in": 3600, "token_type": "Bearer"}' % len(self.calls)
        return FakeResponse(self.status, data.encode('utf-8'))


class FakeBroker:
    def __init__(self):
        self.calls = 0

    def get_access_token(self):
        self.calls += 1
        return AccessToken(value='fake-token', expires_at=4_000_000_000.0)


class _Request:
    def __init__(self, service, method, kwargs, action):
        self._service = service
        self._method = method
        self._kwargs = kwargs
        self._action = action

    def execute(self):
        self._service.calls.append((self._method, self._kwargs))
        for method, predicate, error in list(self._service.failures):
            if method == self._method and predicate(self._kwargs):
                raise error
        return self._action()


class _Values:
    def __init__(self, service):
        self._service = service

    def get(self, spreadsheetId, range, **kwargs):
        params = dict(spreadsheetId=spreadsheetId, range=range, **kwargs)
        return _Request(self._service, 'values.get', params, lambda: self._service.do_get(range))

    def append(self, spreadsheetId, range, body, **kwargs):
        params = dict(spreadsheetId=spreadsheetId, range=range, body=body, **kwargs)
        return _Request(self._service, 'values.append', params,
                        lambda: self._service.do_append(range, body['values']))

    def update(self, spreadsheetId, range, body, **kwargs):
        params = dict(spreadsheetId=spreadsheetId, range=range, body=body, **kwargs)
        return _Request(self._service, 'values.update', params,
                        lambda: self._service.do_update(range, body['values']))


class _Spreadsheets:
    def __init__(self, service):
        self._service = service

    def get(self, spreadsheetId, **kwargs):
        params = dict(spreadsheetId=spreadsheetId, **kwargs)
        return _Request(self._service, 'spreadsheets.get', params, self._service.do_metadata)

    def batchUpdate(self, spreadsheetId, body):
        params = dict(spreadsheetId=spreadsheetId, body=body)
        return _Request(self._service, 'spreadsheets.batchUpdate', params,
                        lambda: self._service.do_batch_update(body))

    def values(self):
        return _Values(self._service)


class FakeSheetsService:
    """In-memory spreadsheet answering the googleapiclient call chains TableClient uses."""

    def __init__(self, sheets=None):
        self.sheets = {}
        self.calls = []
        self.failures = []
        for title, rows in (sheets or {}).items():
            self.add_sheet(title, rows)

    def add_sheet(self, title, rows=None):
        self.sheets[title] = {'sheetId': 1000 + len(self.sheets),
                              'rows': [list(row) for row in rows or []]}

    def rows(self, title):
        return self.sheets[title]['rows']

    def fail(self, method, predicate=lambda kwargs: True, status=500):
        self.failures.append((method, predicate, http_error(status, 'backend error')))

    def count(self, method):
        return sum(1 for name, _ in self.calls if name == method)

    def spreadsheets(self):
        return _Spreadsheets(self)

    # -- behaviour ------------------------------------------------------

    def _split(self, a1):
        if '!' in a1:
            title, cells = a1.split('!', 1)
        else:
            title, cells = a1, None
        if title.startswith("'") and title.endswith("'"):
            title = title[1:-1].replace("''", "'")
        if title not in self.sheets:
            raise http_error(400, f'Unable to parse range: {a1}')
        return title, cells

    @staticmethod
    def _row_bounds(cells):
        if cells is None:
            return None, None
        parts = cells.split(':')
        start = _CELL_RE.match(parts[0]).group(2)
        end = _CELL_RE.match(parts[-1]).group(2)
        return (int(start) if start else None), (int(end) if end else None)

    def do_metadata(self):
        return {'sheets': [{'properties': {'title': title, 'sheetId': sheet['sheetId']}}
                           for title, sheet in self.sheets.items()]}

    def do_get(self, a1):
        title, cells = self._split(a1)
        rows = self.rows(title)
        start, end = self._row_bounds(cells)
        start = start or 1
        end = end or len(rows)
        selected = [list(row) for row in rows[start - 1:end]]
        # The API trims trailing empty cells.
        for row in selected:
            while row and row[-1] == '':
                row.pop()
        result = {'range': a1, 'majorDimension': 'ROWS'}
        if selected:
            result['values'] = selected
        return result

    def do_append(self, a1, values):
        title, _ = self._split(a1)
        self.rows(title).extend(list(row) for row in values)
        return {'updates': {'updatedRows': len(values)}}

    def do_update(self, a1, values):
        title, cells = self._split(a1)
        start, _ = self._row_bounds(cells)
        rows = self.rows(title)
        while len(rows) < start:
            rows.append([])
        rows[start - 1] = list(values[0])
        return {'updatedRows': 1}

    def do_batch_update(self, body):
        for request in body['requests']:
            rng = request['deleteDimension']['range']
            title = next(t for t, s in self.sheets.items() if s['sheetId'] == rng['sheetId'])
            del self.rows(title)[rng['startIndex']:rng['endIndex']]
        return {'replies': [{}]}


@pytest.fixture(scope='session')
def private_key():
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    return key


@pytest.fixture(scope='session')
def private_key_pem(private_key):
    return private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode('ascii')


@pytest.fixture
def credential(private_key_pem):
    return Credential(identity='stock-form@example.iam.gserviceaccount.com',
                      signing_key=private_key_pem)


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def fake_sheets():
    return FakeSheetsService({
        'SoRawan': [list(RECORD_COLUMNS)],
        'List_so': [
            ['PLU', 'Nama Barang'],
            ['20001', 'Susu UHT 1L'],
            ['10002', 'Beras 5kg'],
            ['', 'Tanpa PLU'],
            ['30003', 'Kopi Bubuk'],
        ],
        'Absensi': [
            ['No', 'NIK', 'Nama', 'Jabatan'],
            ['1', '123', 'Sari', 'Kasir'],
            ['2', '456', 'Budi'],
            ['3', '789', '', 'Kasir'],
        ],
        'Empty': [],
    })


@pytest.fixture
def table_client(fake_sheets):
    return TableClient(FakeBroker(), SPREADSHEET_ID, service_factory=lambda creds: fake_sheets)


@pytest.fixture
def coordinator(table_client):
    return UpsertCoordinator(table_client, sub_table='SoRawan', clock=lambda: FIXED_TIMESTAMP)


@pytest.fixture
def services(table_client, coordinator):
    return Services(broker=table_client.broker, table_client=table_client, coordinator=coordinator)
