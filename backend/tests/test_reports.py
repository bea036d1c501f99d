from datetime import date, timedelta

import pytest
from fastapi.testclient import TestClient

from commission_tracker.main import app
from commission_tracker.reports import months_back, resolve_date_range, series_color
from commission_tracker.services import InvalidInput

client = TestClient(app)

WINDOW = {"range": "custom", "from_date": "2020-01-01", "to_date": "2020-12-31"}


@pytest.fixture
def report_data(admin_headers, reference_data):
    """Three sales in 2020 for a fresh client: two in January, one in March."""
    ids = {k: v["id"] for k, v in reference_data.items()}
    sales = [
        {"channel_type": "Online", "gwp_inr": 1000, "nbp_inr": 600, "sale_date": "2020-01-15"},
        {"channel_type": "Online", "gwp_inr": 1000, "nbp_inr": 400, "sale_date": "2020-01-20",
         "broker_commission_pct": 10},
        {"channel_type": "Phygital", "gwp_inr": 2000, "nbp_inr": 1000, "sale_date": "2020-03-05",
         "broker_commission_pct": 20, "cdp_fee_pct": 1},
    ]
    for sale in sales:
        payload = dict(sale, client_id=ids["client"], product_id=ids["product"], broker_id=ids["broker"])
        assert client.post("/sales-data", json=payload, headers=admin_headers).status_code == 201
    return reference_data


def test_dashboard_totals(admin_headers, report_data):
    params = dict(WINDOW, client_id=report_data["client"]["id"])
    r = client.get("/reports/dashboard", params=params, headers=admin_headers)
    assert r.status_code == 200
    body = r.json()
    assert body["total_gwp_inr"] == 4000
    assert body["total_nbp_inr"] == 2000
    assert body["total_broker_commission_inr"] == 600
    assert body["total_cdp_fee_inr"] == 60
    assert body["total_gwp_usd"] == pytest.approx(4000 / body["exchange_rate"])
    assert body["total_cdp_fee_usd"] == pytest.approx(60 / body["exchange_rate"])


def test_dashboard_filters(admin_headers, report_data):
    base = dict(WINDOW, client_id=report_data["client"]["id"])
    online = client.get("/reports/dashboard", params=dict(base, channel_type="Online"), headers=admin_headers)
    assert online.json()["total_gwp_inr"] == 2000
    everything = client.get("/reports/dashboard", params=dict(base, channel_type="all", broker_id="all"),
                            headers=admin_headers)
    assert everything.json()["total_gwp_inr"] == 4000
    narrow = client.get("/reports/dashboard", params=dict(base, from_date="2020-03-01"), headers=admin_headers)
    assert narrow.json()["total_gwp_inr"] == 2000
    nothing = client.get("/reports/dashboard", params=dict(base, product_id="missing"), headers=admin_headers)
    assert nothing.json()["total_gwp_inr"] == 0


def test_monthly_trends_zero_fill(admin_headers, report_data):
    params = dict(WINDOW, client_id=report_data["client"]["id"])
    r = client.get("/reports/monthly-trends", params=params, headers=admin_headers)
    assert r.status_code == 200
    body = r.json()
    assert body["months"] == ["2020-01", "2020-03"]
    line = body["gwp_line_data"]
    assert line["labels"] == body["months"]
    prefix = f"{report_data['product']['name']} / {report_data['broker']['name']}"
    by_label = {d["label"]: d for d in line["datasets"]}
    assert by_label[f"{prefix} / Online"]["data"] == [2000, 0]
    assert by_label[f"{prefix} / Phygital"]["data"] == [0, 2000]
    assert by_label[f"{prefix} / Online"]["border_color"] == series_color(f"{prefix} / Online")
    bars = {d["label"]: d["data"] for d in body["commission_vs_fee_data"]["datasets"]}
    assert bars["Broker Commission"] == [200, 400]
    assert bars["CDP Fee"] == [40, 20]


def test_commission_report_tree(admin_headers, report_data):
    params = dict(WINDOW, client_id=report_data["client"]["id"])
    r = client.get("/reports/commission", params=params, headers=admin_headers)
    assert r.status_code == 200
    clients = r.json()["clients"]
    assert len(clients) == 1
    row = clients[0]
    assert row["name"] == report_data["client"]["name"]
    assert row["total_gwp_inr"] == 4000
    assert row["total_commission_inr"] == 600
    # weighted by GWP: 600 / 4000
    assert row["avg_commission_pct"] == pytest.approx(15.0)
    assert row["avg_cdp_fee_pct"] == pytest.approx(1.5)
    details = {d["channel_type"]: d for d in row["details"]}
    assert details["Online"]["gwp_inr"] == 2000
    assert details["Online"]["commission_pct"] == pytest.approx(10.0)
    assert details["Phygital"]["commission_inr"] == 400


def test_commission_report_export(admin_headers, report_data):
    params = dict(WINDOW, client_id=report_data["client"]["id"])
    r = client.get("/reports/commission/export", params=params, headers=admin_headers)
    assert r.status_code == 200
    expected_name = f"commission-report-{date.today().isoformat()}.csv"
    assert r.headers["content-disposition"] == f'attachment; filename="{expected_name}"'
    lines = r.text.split("\n")
    assert lines[0] == ('"Client","Product","Broker","Channel","GWP (INR)","Commission %",'
                        '"Commission (INR)","CDP Fee %","CDP Fee (INR)"')
    assert len(lines) == 3


def test_report_parameter_validation(admin_headers):
    r = client.get("/reports/dashboard", params={"range": "fortnightly"}, headers=admin_headers)
    assert r.status_code == 400
    r2 = client.get("/reports/dashboard", params={"from_date": "2024-02-01", "to_date": "2024-01-01"},
                    headers=admin_headers)
    assert r2.status_code == 400
    assert r2.json()["detail"] == "from_date must not be after to_date"


def test_viewer_reads_reports_but_dataentry_does_not(make_user):
    viewer = make_user("viewer")
    clerk = make_user("dataentry")
    for path in ("/reports/dashboard", "/reports/monthly-trends", "/reports/commission",
                 "/reports/commission/export"):
        assert client.get(path, headers=viewer["headers"]).status_code == 200
    assert client.get("/reports/commission", headers=clerk["headers"]).status_code == 403


def test_resolve_date_range_shortcuts():
    today = date(2024, 5, 16)  # a Thursday
    assert resolve_date_range("daily", None, None, today=today) == (today, today)
    assert resolve_date_range("weekly", None, None, today=today) == (date(2024, 5, 13), today)
    assert resolve_date_range("mtd", None, None, today=today) == (date(2024, 5, 1), today)
    assert resolve_date_range("ytd", None, None, today=today) == (date(2024, 1, 1), today)
    assert resolve_date_range(None, None, None, today=today) == (date(2024, 4, 16), today)
    custom = resolve_date_range("custom", date(2024, 1, 1), date(2024, 2, 1), today=today)
    assert custom == (date(2024, 1, 1), date(2024, 2, 1))
    with pytest.raises(InvalidInput):
        resolve_date_range("hourly", None, None, today=today)


def test_months_back_clamps_to_month_end():
    assert months_back(date(2024, 5, 31), 3) == date(2024, 2, 29)
    assert months_back(date(2024, 2, 15), 3) == date(2023, 11, 15)
    assert months_back(date(2023, 3, 31), 1) == date(2023, 2, 28)


def test_commission_report_defaults_to_three_months(admin_headers, reference_data):
    sale_date = date.today() - timedelta(days=60)
    payload = {
        "client_id": reference_data["client"]["id"],
        "product_id": reference_data["product"]["id"],
        "broker_id": reference_data["broker"]["id"],
        "channel_type": "Online",
        "gwp_inr": 500,
        "nbp_inr": 100,
        "sale_date": sale_date.isoformat(),
    }
    assert client.post("/sales-data", json=payload, headers=admin_headers).status_code == 201
    params = {"client_id": reference_data["client"]["id"]}
    for extra in ({}, {"range": "custom"}, {"range": "custom", "to_date": date.today().isoformat()}):
        r = client.get("/reports/commission", params=dict(params, **extra), headers=admin_headers)
        assert r.status_code == 200
        assert [c["total_gwp_inr"] for c in r.json()["clients"]] == [500]
    # the dashboard keeps its 30-day window
    dash = client.get("/reports/dashboard", params=dict(params, range="custom"), headers=admin_headers)
    assert dash.json()["total_gwp_inr"] == 0
