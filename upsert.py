# upsert.py
import enum
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Tuple

import config
from errors import (BatchValidationError, InvalidFieldError, RemoteCallError,
                    RequestCancelledError, RowNotFoundError, SheetsBridgeError)
from idempotency import compute_key, format_sheet_date, parse_date
from table_client import HeaderMap

logger = logging.getLogger(__name__)

# SoRawan sheet columns
COL_ID = 'ID'
COL_TIMESTAMP = 'Timestamp'
COL_ACTOR = 'Nama Kasir'
COL_DATE = 'Tanggal Rekap'
COL_SHIFT = 'Shift'
COL_ITEM_CODE = 'PLU'
COL_ITEM_NAME = 'Nama Barang'
COL_ON_HAND = 'OH'
COL_PHYSICAL = 'Fisik'
COL_VARIANCE = 'Selisih'
COL_SENDER = 'Pengirim'

RECORD_COLUMNS = (COL_ID, COL_TIMESTAMP, COL_ACTOR, COL_DATE, COL_SHIFT, COL_ITEM_CODE,
                  COL_ITEM_NAME, COL_ON_HAND, COL_PHYSICAL, COL_VARIANCE, COL_SENDER)

SENDER = 'Website'


class RecordState(enum.Enum):
    PENDING = 'pending'
    CHECKING = 'checking'
    FOUND = 'found'
    NOT_FOUND = 'not_found'
    UPDATING = 'updating'
    APPENDING = 'appending'
    DONE = 'done'
    FAILED = 'failed'


def _as_int(value, name):
    if isinstance(value, bool):
        raise InvalidFieldError(f'{name} must be an integer')
    if isinstance(value, str):
        value = value.strip()
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise InvalidFieldError(f'{name} must be an integer, got {value!r}') from None
    if not number.is_integer():
        raise InvalidFieldError(f'{name} must be an integer, got {value!r}')
    return int(number)


@dataclass
class Record:
    actor: str
    date: str
    shift: str
    item_code: str
    item_name: str
    on_hand: int
    physical: int
    variance: int = 0

    @classmethod
    def from_payload(cls, actor, record_date, shift, item):
        """Builds a Record from one entry of the form's items list."""
        if not isinstance(item, dict):
            raise InvalidFieldError('each item must be an object')
        on_hand = _as_int(item.get('oh', item.get('onHand')), 'oh')
        physical = _as_int(item.get('fisik', item.get('physical')), 'fisik')
        return cls(
            actor=str(actor or '').strip(),
            date=str(record_date or '').strip(),
            shift=str(shift if shift is not None else '').strip(),
            item_code=str(item.get('plu', item.get('itemCode')) or '').strip(),
            item_name=str(item.get('namaBarang', item.get('itemName')) or '').strip(),
            on_hand=on_hand,
            physical=physical,
            # Whatever the client sent for selisih is ignored.
            variance=physical - on_hand,
        )

    @property
    def key(self):
        return compute_key(self.actor, self.shift, self.date, self.item_code)

    def validate(self):
        missing = [name for name, value in (('actor', self.actor), ('date', self.date),
                                            ('shift', self.shift), ('itemCode', self.item_code))
                   if not str(value).strip()]
        if missing:
            raise InvalidFieldError(f"Missing required field(s): {', '.join(missing)}")
        parse_date(self.date)
        _as_int(self.on_hand, 'onHand')
        _as_int(self.physical, 'physical')

    def to_row(self, header_map, timestamp):
        self.variance = int(self.physical) - int(self.on_hand)
        return header_map.build_row({
            COL_ID: self.key,
            COL_TIMESTAMP: timestamp,
            COL_ACTOR: self.actor,
            COL_DATE: format_sheet_date(self.date),
            COL_SHIFT: self.shift,
            COL_ITEM_CODE: self.item_code,
            COL_ITEM_NAME: self.item_name,
            COL_ON_HAND: int(self.on_hand),
            COL_PHYSICAL: int(self.physical),
            COL_VARIANCE: self.variance,
            COL_SENDER: SENDER,
        })


@dataclass
class BatchResult:
    appended: int = 0
    updated: int = 0
    failed: List[Tuple[Record, Exception]] = field(default_factory=list)
    states: List[RecordState] = field(default_factory=list)

    @property
    def total(self):
        return self.appended + self.updated + len(self.failed)

    def to_dict(self):
        failures = []
        for record, error in self.failed:
            failures.append({
                'itemCode': record.item_code,
                'itemName': record.item_name,
                'error': getattr(error, 'message', str(error)),
            })
        return {'appended': self.appended, 'updated': self.updated, 'failed': failures}


def utc_timestamp():
    return datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z')


class UpsertCoordinator:
    """
    Writes stock-count records so each (actor, shift, date, item) owns one row.

    Records are handled one at a time in input order. A failure on one record
    is recorded in the result and the batch moves on. The coordinator holds no
    per-batch state, so one instance can serve concurrent requests.
    """

    def __init__(self, table_client, sub_table=None, clock=utc_timestamp):
        self.table_client = table_client
        self.sub_table = sub_table or config.SO_RAWAN_SHEET
        self._timestamp = clock

    def _header_map(self):
        header = self.table_client.read_header(self.sub_table)
        return HeaderMap(header).require(RECORD_COLUMNS)

    def submit_batch(self, records, cancel=None):
        if not records:
            raise BatchValidationError('Batch must contain at least one record')
        for position, record in enumerate(records):
            try:
                record.validate()
            except InvalidFieldError as exc:
                raise BatchValidationError(f'Record {position + 1}: {exc.message}') from exc

        header_map = self._header_map()
        result = BatchResult(states=[RecordState.PENDING] * len(records))
        states = result.states

        for position, record in enumerate(records):
            if cancel is not None and cancel.is_set():
                logger.info('Batch cancelled; skipping %d record(s)', len(records) - position)
                for i in range(position, len(records)):
                    result.failed.append((records[i], RequestCancelledError('Request cancelled')))
                    states[i] = RecordState.FAILED
                break
            try:
                if self._upsert(states, position, record, header_map):
                    result.updated += 1
                else:
                    result.appended += 1
                states[position] = RecordState.DONE
            except SheetsBridgeError as exc:
                logger.warning('Record %s/%s failed: %s', record.item_code, record.key, exc.message)
                states[position] = RecordState.FAILED
                result.failed.append((record, exc))
            except Exception as exc:
                logger.exception('Record %s/%s failed unexpectedly', record.item_code, record.key)
                states[position] = RecordState.FAILED
                result.failed.append((record, RemoteCallError(f'Unexpected error: {exc}')))

        logger.info('Batch done: %d appended, %d updated, %d failed',
                    result.appended, result.updated, len(result.failed))
        return result

    def _upsert(self, states, position, record, header_map):
        """Returns True when an existing row was updated."""
        key = record.key
        states[position] = RecordState.CHECKING
        try:
            row_index, _ = self.table_client.find_row_by_key(self.sub_table, COL_ID, key)
        except RowNotFoundError:
            row_index = None
        states[position] = RecordState.NOT_FOUND if row_index is None else RecordState.FOUND

        row = record.to_row(header_map, self._timestamp())
        if row_index is not None:
            states[position] = RecordState.UPDATING
            self.table_client.update_row_by_index(self.sub_table, row_index, row)
            return True
        states[position] = RecordState.APPENDING
        self.table_client.append_row(self.sub_table, row)
        return False
