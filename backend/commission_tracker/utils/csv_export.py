"""CSV rendering for table exports.

Every cell is quoted, embedded quotes are doubled and missing values
become empty strings, so spreadsheets never reinterpret IDs or amounts.
"""

import csv
import io
from typing import Iterable, List, Mapping, Sequence, Tuple

Header = Tuple[str, str]  # (row key, column label)

COMMISSION_REPORT_HEADERS: List[Header] = [
    ("client_name", "Client"),
    ("product_name", "Product"),
    ("broker_name", "Broker"),
    ("channel_type", "Channel"),
    ("gwp_inr", "GWP (INR)"),
    ("commission_pct", "Commission %"),
    ("commission_inr", "Commission (INR)"),
    ("cdp_fee_pct", "CDP Fee %"),
    ("cdp_fee_inr", "CDP Fee (INR)"),
]

SALES_DATA_HEADERS: List[Header] = [
    ("sale_date", "Sale Date"),
    ("client_name", "Client"),
    ("product_name", "Product"),
    ("broker_name", "Broker"),
    ("channel_type", "Channel"),
    ("nbp_inr", "NBP (INR)"),
    ("gwp_inr", "GWP (INR)"),
    ("nbp_usd", "NBP (USD)"),
    ("gwp_usd", "GWP (USD)"),
    ("broker_commission_pct", "Commission %"),
    ("broker_commission_inr", "Commission (INR)"),
    ("cdp_fee_pct", "CDP Fee %"),
    ("cdp_fee_inr", "CDP Fee (INR)"),
]


def to_csv(rows: Iterable[Mapping], headers: Sequence[Header]) -> str:
    """Render `rows` as CSV text using `headers` for column order and labels."""
    buf = io.StringIO()
    writer = csv.writer(buf, quoting=csv.QUOTE_ALL, lineterminator="\n")
    writer.writerow([label for _, label in headers])
    for row in rows:
        writer.writerow(["" if row.get(key) is None else row.get(key) for key, _ in headers])
    return buf.getvalue().rstrip("\n")


def flatten_commission_report(clients: Iterable[Mapping]) -> List[dict]:
    """Expand the client -> details tree into one row per detail line."""
    out = []
    for client in clients:
        for detail in client["details"]:
            out.append({
                "client_name": client["name"],
                "product_name": detail["product_name"],
                "broker_name": detail["broker_name"],
                "channel_type": detail["channel_type"],
                "gwp_inr": detail["gwp_inr"],
                "commission_pct": detail["commission_pct"],
                "commission_inr": detail["commission_inr"],
                "cdp_fee_pct": detail["cdp_fee_pct"],
                "cdp_fee_inr": detail["cdp_fee_inr"],
            })
    return out
