"""CSV parsing for bulk sales uploads.

The parser only normalizes text into dictionaries; resolving client,
product and broker references and validating amounts is the job of
`SalesService.import_rows`.

Expected columns: `sale_date` (YYYY-MM-DD), `client`, `product`,
`broker` (id or exact name), `channel_type`, `nbp_inr`, `gwp_inr`.
Optional: `broker_commission_pct`, `cdp_fee_pct`. Column names are
matched case-insensitively and `client_id`/`client_name` style aliases
are accepted.
"""

import csv
import io
from datetime import date
from typing import Dict, List, Optional

_ALIASES = {
    "client": ("client", "client_id", "client_name"),
    "product": ("product", "product_id", "product_name"),
    "broker": ("broker", "broker_id", "broker_name"),
    "channel_type": ("channel_type", "channel"),
    "sale_date": ("sale_date", "date"),
    "nbp_inr": ("nbp_inr", "nbp"),
    "gwp_inr": ("gwp_inr", "gwp"),
    "broker_commission_pct": ("broker_commission_pct", "commission_pct"),
    "cdp_fee_pct": ("cdp_fee_pct",),
}


def parse_sales_csv(b: bytes) -> List[Dict]:
    """Parse CSV bytes into normalized sale dictionaries.

    Raises ValueError when the payload is not UTF-8 or lacks a header row.
    Per-row problems are reported in an `error` key so one bad line does
    not abort the upload.
    """
    try:
        text = b.decode("utf-8-sig")
    except UnicodeDecodeError:
        raise ValueError("file must be UTF-8 encoded CSV")
    reader = csv.DictReader(io.StringIO(text))
    if not reader.fieldnames:
        raise ValueError("missing header row")
    out = []
    for line_no, raw in enumerate(reader, start=2):
        row = {(k or "").strip().lower(): (v or "").strip() for k, v in raw.items()}
        if not any(row.values()):
            continue
        item = {"line": line_no}
        for field, names in _ALIASES.items():
            item[field] = next((row[n] for n in names if row.get(n)), None)
        try:
            item["sale_date"] = _coerce_date(item["sale_date"])
            for field in ("nbp_inr", "gwp_inr"):
                item[field] = _coerce_float(item[field], field, required=True)
            for field in ("broker_commission_pct", "cdp_fee_pct"):
                item[field] = _coerce_float(item[field], field)
        except ValueError as e:
            item["error"] = str(e)
        out.append(item)
    return out


def _coerce_date(value: Optional[str]) -> date:
    if not value:
        raise ValueError("sale_date is required")
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise ValueError(f"invalid sale_date: {value}")


def _coerce_float(value: Optional[str], field: str, required: bool = False) -> Optional[float]:
    if value is None or value == "":
        if required:
            raise ValueError(f"{field} is required")
        return None
    try:
        return float(value.replace(",", ""))
    except ValueError:
        raise ValueError(f"invalid number for {field}: {value}")
