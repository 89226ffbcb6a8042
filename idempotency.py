# idempotency.py
"""
Deterministic row ids for stock-count records.

The same (actor, shift, date, item) always maps to the same id, so a
resubmitted count lands on the row it created the first time. Both the
lookup path and the write path must go through compute_key().
"""
import hashlib
import re
from datetime import date, datetime

from errors import InvalidFieldError

KEY_SEPARATOR = '\x1f'
KEY_LENGTH = 16

# Day-first: the form sends DD-MM-YYYY.
_DATE_FORMATS = ('%Y-%m-%d', '%d-%m-%Y', '%d/%m/%Y', '%Y/%m/%d', '%d.%m.%Y')
_WHITESPACE_RE = re.compile(r'\s+')


def _clean(value, name):
    text = _WHITESPACE_RE.sub(' ', str(value if value is not None else '')).strip()
    if not text:
        raise InvalidFieldError(f'{name} is required')
    return text


def parse_date(value):
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = _clean(value, 'date')
    # Tolerate an ISO timestamp from a date picker.
    text = text.split('T', 1)[0]
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    raise InvalidFieldError(f'Unrecognised date: {value!r}')


def normalize_date(value):
    """Canonical form used for hashing: YYYY-MM-DD."""
    return parse_date(value).isoformat()


def format_sheet_date(value):
    """Form used in the visible Tanggal Rekap cell: DD-MM-YYYY."""
    return parse_date(value).strftime('%d-%m-%Y')


def normalize_fields(actor, shift, record_date, item_code):
    return (
        _clean(actor, 'actor').casefold(),
        _clean(shift, 'shift').casefold(),
        normalize_date(record_date),
        _clean(item_code, 'itemCode'),
    )


def compute_key(actor, shift, record_date, item_code):
    joined = KEY_SEPARATOR.join(normalize_fields(actor, shift, record_date, item_code))
    return hashlib.sha256(joined.encode('utf-8')).hexdigest()[:KEY_LENGTH]
