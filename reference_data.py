# reference_data.py
"""Reference lists the count form loads: items (List_so) and staff (Absensi)."""
import logging

import config
from table_client import HeaderMap

logger = logging.getLogger(__name__)

ITEM_COLUMNS = {'plu': 'PLU', 'namaBarang': 'Nama Barang'}
STAFF_COLUMNS = {'nik': 'NIK', 'nama': 'Nama', 'jabatan': 'Jabatan'}


def _records(row_set, columns):
    header_map = HeaderMap(row_set.header).require(columns.values())
    return [{field: header_map.cell(row, column) for field, column in columns.items()}
            for row in row_set.rows]


def list_items(client, sheet_name=None):
    """Items from the List_so sheet, sorted by name, blank rows dropped."""
    row_set = client.read_rows(sheet_name or config.LIST_SO_SHEET)
    if not row_set.header:
        return []
    items = [item for item in _records(row_set, ITEM_COLUMNS)
             if item['plu'] and item['namaBarang']]
    items.sort(key=lambda item: item['namaBarang'].casefold())
    return items


def search_items(client, term, sheet_name=None):
    term = (term or '').strip().casefold()
    items = list_items(client, sheet_name)
    if not term:
        return items
    matches = [item for item in items
               if term == item['plu'].casefold() or term in item['namaBarang'].casefold()]
    logger.debug('Item search %r matched %d of %d', term, len(matches), len(items))
    return matches


def list_staff(client, sheet_name=None):
    row_set = client.read_rows(sheet_name or config.ABSENSI_SHEET)
    if not row_set.header:
        return []
    return [person for person in _records(row_set, STAFF_COLUMNS) if person['nama']]
