"""Aggregate reports over sales data.

Three reports share one filter model: the dashboard summary (totals in
INR and USD), monthly trends (chart-ready series) and the commission
report (client -> product/broker/channel tree). Filters are always bound
as query parameters; the value `all` is treated as "no filter".
"""

import hashlib
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Dict, List, Optional

from sqlmodel import Session

from . import repositories
from .services import ExchangeRateService, InvalidInput

RANGE_TYPES = ("daily", "weekly", "mtd", "ytd", "custom")


def resolve_date_range(range_type: Optional[str], from_date: Optional[date], to_date: Optional[date],
                       default_days: int = 30, today: Optional[date] = None):
    """Turn a range shortcut plus optional explicit dates into `(from, to)`.

    `weekly` starts on Monday. `custom` (or no shortcut) keeps the given
    dates and falls back to the last `default_days` days.
    """
    today = today or date.today()
    if range_type and range_type not in RANGE_TYPES:
        raise InvalidInput(f"range must be one of {', '.join(RANGE_TYPES)}")
    if range_type == "daily":
        return today, today
    if range_type == "weekly":
        return today - timedelta(days=today.weekday()), today
    if range_type == "mtd":
        return today.replace(day=1), today
    if range_type == "ytd":
        return today.replace(month=1, day=1), today
    to_date = to_date or today
    from_date = from_date or (to_date - timedelta(days=default_days))
    if from_date > to_date:
        raise InvalidInput("from_date must not be after to_date")
    return from_date, to_date


def months_back(d: date, months: int) -> date:
    """Same day `months` earlier, clamped to the end of shorter months."""
    year, month = divmod(d.year * 12 + (d.month - 1) - months, 12)
    month += 1
    for day in (d.day, 30, 29, 28):
        try:
            return date(year, month, day)
        except ValueError:
            continue
    return date(year, month, 28)


@dataclass
class ReportFilters:
    from_date: date
    to_date: date
    client_id: Optional[str] = None
    product_id: Optional[str] = None
    broker_id: Optional[str] = None
    channel_type: Optional[str] = None

    def __post_init__(self):
        for name in ("client_id", "product_id", "broker_id", "channel_type"):
            if getattr(self, name) in ("", "all"):
                setattr(self, name, None)

    def columns(self) -> Dict[str, Optional[str]]:
        return {
            "client_id": self.client_id,
            "product_id": self.product_id,
            "broker_id": self.broker_id,
            "channel_type": self.channel_type,
        }


def series_color(label: str) -> str:
    """A stable `#RRGGBB` colour for a chart series label."""
    return "#" + hashlib.md5(label.encode("utf-8")).hexdigest()[:6].upper()


class ReportService:
    def __init__(self, session: Session):
        self.session = session
        self.repo = repositories.SalesReportRepository(session)
        self.rates = ExchangeRateService(session)

    def dashboard_summary(self, filters: ReportFilters) -> dict:
        """Totals of GWP, NBP, commission and CDP fee in INR and USD."""
        row = self.repo.totals(filters.columns(), filters.from_date, filters.to_date)
        gwp, nbp, commission, fee = (float(v or 0) for v in (row or (0, 0, 0, 0)))
        rate = self.rates.current_rate()
        return {
            "total_gwp_inr": gwp,
            "total_nbp_inr": nbp,
            "total_gwp_usd": gwp / rate,
            "total_nbp_usd": nbp / rate,
            "total_broker_commission_inr": commission,
            "total_broker_commission_usd": commission / rate,
            "total_cdp_fee_inr": fee,
            "total_cdp_fee_usd": fee / rate,
            "exchange_rate": rate,
        }

    def monthly_trends(self, filters: ReportFilters) -> dict:
        """Monthly GWP per product/broker/channel plus commission vs fee totals.

        Months with no sales for a series are zero-filled so every dataset
        lines up with `months`.
        """
        grouped: Dict[tuple, Dict[str, float]] = {}
        for sale_date, product_name, broker_name, channel_type, gwp, commission, fee in self.repo.trend_rows(
            filters.columns(), filters.from_date, filters.to_date
        ):
            month = sale_date.strftime("%Y-%m")
            key = (month, product_name, broker_name, channel_type)
            bucket = grouped.setdefault(key, {"gwp": 0.0, "commission": 0.0, "fee": 0.0})
            bucket["gwp"] += float(gwp or 0)
            bucket["commission"] += float(commission or 0)
            bucket["fee"] += float(fee or 0)

        months = sorted({key[0] for key in grouped})
        index = {m: i for i, m in enumerate(months)}

        series: Dict[tuple, dict] = {}
        totals = {m: {"commission": 0.0, "fee": 0.0} for m in months}
        for (month, product_name, broker_name, channel_type), bucket in sorted(grouped.items()):
            skey = (product_name, broker_name, channel_type)
            if skey not in series:
                label = f"{product_name} / {broker_name} / {channel_type}"
                series[skey] = {
                    "label": label,
                    "data": [0.0] * len(months),
                    "border_color": series_color(label),
                    "tension": 0.1,
                }
            series[skey]["data"][index[month]] = bucket["gwp"]
            totals[month]["commission"] += bucket["commission"]
            totals[month]["fee"] += bucket["fee"]

        return {
            "months": months,
            "gwp_line_data": {"labels": months, "datasets": list(series.values())},
            "commission_vs_fee_data": {
                "labels": months,
                "datasets": [
                    {
                        "label": "Broker Commission",
                        "data": [totals[m]["commission"] for m in months],
                        "background_color": "rgba(53, 162, 235, 0.5)",
                    },
                    {
                        "label": "CDP Fee",
                        "data": [totals[m]["fee"] for m in months],
                        "background_color": "rgba(255, 99, 132, 0.5)",
                    },
                ],
            },
        }

    def commission_report(self, filters: ReportFilters) -> List[dict]:
        """Per-client totals with product/broker/channel detail rows.

        Client-level percentages are weighted by GWP
        (`total_commission / total_gwp * 100`), not averages of the
        detail percentages.
        """
        clients: Dict[str, dict] = {}
        for (client_id, client_name, product_id, product_name, broker_id, broker_name, channel_type,
             gwp, avg_commission_pct, commission, avg_fee_pct, fee) in self.repo.commission_rows(
                filters.columns(), filters.from_date, filters.to_date):
            client = clients.setdefault(client_id, {
                "id": client_id,
                "name": client_name,
                "total_gwp_inr": 0.0,
                "total_commission_inr": 0.0,
                "total_cdp_fee_inr": 0.0,
                "avg_commission_pct": 0.0,
                "avg_cdp_fee_pct": 0.0,
                "details": [],
            })
            client["total_gwp_inr"] += float(gwp or 0)
            client["total_commission_inr"] += float(commission or 0)
            client["total_cdp_fee_inr"] += float(fee or 0)
            client["details"].append({
                "product_id": product_id,
                "product_name": product_name,
                "broker_id": broker_id,
                "broker_name": broker_name,
                "channel_type": channel_type,
                "gwp_inr": float(gwp or 0),
                "commission_pct": float(avg_commission_pct or 0),
                "commission_inr": float(commission or 0),
                "cdp_fee_pct": float(avg_fee_pct or 0),
                "cdp_fee_inr": float(fee or 0),
            })

        for client in clients.values():
            if client["total_gwp_inr"] > 0:
                client["avg_commission_pct"] = client["total_commission_inr"] / client["total_gwp_inr"] * 100
                client["avg_cdp_fee_pct"] = client["total_cdp_fee_inr"] / client["total_gwp_inr"] * 100
        return list(clients.values())
