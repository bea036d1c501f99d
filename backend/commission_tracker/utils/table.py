"""Search and sort helpers for list endpoints.

List views are small reference tables, so filtering happens in memory
after the query: a case-insensitive substring match over every column,
then a stable sort on one column with `None` values last.
"""

from typing import List, Optional


def search_rows(rows: List[dict], term: Optional[str]) -> List[dict]:
    if not term:
        return rows
    needle = term.lower()
    return [r for r in rows if any(needle in str(v).lower() for v in r.values() if v is not None)]


def sort_rows(rows: List[dict], key: Optional[str], order: str = "asc") -> List[dict]:
    if not key:
        return rows
    if order not in ("asc", "desc"):
        raise ValueError("order must be 'asc' or 'desc'")
    present = [r for r in rows if r.get(key) is not None]
    missing = [r for r in rows if r.get(key) is None]
    present.sort(key=lambda r: _sort_key(r[key]), reverse=(order == "desc"))
    return present + missing


def _sort_key(value):
    if isinstance(value, str):
        return (1, value.lower())
    return (0, value)


def apply_table_query(rows: List[dict], search: Optional[str] = None, sort: Optional[str] = None,
                      order: str = "asc") -> List[dict]:
    """Apply the data-table `search`, `sort` and `order` parameters."""
    return sort_rows(search_rows(rows, search), sort, order)
