import json
import threading
import time

import pytest
from fastapi.testclient import TestClient
from starlette.requests import Request

import csv_server.analytics.aggregate as aggregate_module
import csv_server.data.store as store_module
from csv_server.config import RefreshPolicy, load_config
from csv_server.main import create_app
from csv_server.render.renderer import TemplateRenderer


@pytest.fixture
def client(server_config):
    with TestClient(create_app(server_config)) as c:
        yield c


def _wait_for_version(client, name, version, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        status = next(d for d in client.get("/datasets").json()["datasets"] if d["name"] == name)
        if status["version"] == version and not status["refreshing"]:
            return status
        time.sleep(0.02)
    raise AssertionError(f"{name} never reached version {version}")


def _error(response):
    return response.json()["error"]


# ---------------------------------------------------------------------------
# Meta
# ---------------------------------------------------------------------------

def test_health_and_datasets(client):
    health = client.get("/health").json()
    assert health == {"status": "ok", "datasets": 1, "loaded": 1, "refreshing": 0}

    body = client.get("/datasets").json()
    assert body["count"] == 1
    (ds,) = body["datasets"]
    assert ds["name"] == "trades"
    assert ds["version"] == 1
    assert ds["rows"] == 3
    assert ds["columns"] == ["ticker", "qty", "price", "date"]


def test_index_lists_datasets(client):
    response = client.get("/")

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/html")
    assert "/datasets/trades/report" in response.text


# ---------------------------------------------------------------------------
# Reports
# ---------------------------------------------------------------------------

def test_aggregate_json(client):
    response = client.get(
        "/datasets/trades/aggregate",
        params=[("group_by", "ticker"), ("metric", "sum(qty)"), ("metric", "max(date)")],
    )

    assert response.status_code == 200
    body = response.json()
    assert body["version"] == 1
    assert body["groups"] == [
        {"key": ["AAPL"], "values": {"sum(qty)": 15, "max(date)": "2024-01-03"}},
        {"key": ["MSFT"], "values": {"sum(qty)": 3, "max(date)": "2024-01-03"}},
    ]
    assert body["query"]["metrics"] == ["sum(qty)", "max(date)"]


def test_aggregate_with_filters(client):
    response = client.get(
        "/datasets/trades/aggregate",
        params=[("filter", "ticker:in:AAPL,MSFT"), ("filter", "qty:range:4:"), ("metric", "count")],
    )

    assert response.json()["groups"] == [{"key": [], "values": {"count": 2}}]


def test_report_is_idempotent(client):
    params = {"group_by": "ticker", "metric": "sum(qty)"}

    first = client.get("/datasets/trades/report", params=params)
    second = client.get("/datasets/trades/report", params=params)

    assert first.status_code == 200
    assert first.headers["content-type"].startswith("text/html")
    assert first.headers["x-dataset-version"] == "1"
    assert first.content == second.content
    assert "AAPL" in first.text


def test_text_report(client):
    response = client.get(
        "/datasets/trades/report",
        params={"template": "report.txt", "group_by": "ticker", "metric": "sum(qty)"},
    )

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/plain")
    assert "AAPL\t15" in response.text.splitlines()


def test_excel_report(client):
    response = client.get("/datasets/trades/report/excel", params={"group_by": "ticker"})

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("application/vnd.openxmlformats")
    assert 'filename="trades-v1.xlsx"' in response.headers["content-disposition"]
    assert response.content[:2] == b"PK"


def test_report_abandons_render_when_client_disconnects(client, monkeypatch):
    rendered = []

    async def disconnected(self):
        return True

    monkeypatch.setattr(Request, "is_disconnected", disconnected)
    monkeypatch.setattr(TemplateRenderer, "render", lambda self, name, context: rendered.append(name))

    response = client.get("/datasets/trades/report", params={"group_by": "ticker"})

    assert response.status_code == 499
    assert response.content == b""
    assert rendered == []


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

def test_unknown_column_is_400(client):
    response = client.get("/datasets/trades/report", params={"group_by": "sector"})

    assert response.status_code == 400
    assert _error(response) == {
        "code": "unknown_column",
        "message": "Unknown column: sector",
        "parameter": "group_by",
    }


def test_type_mismatch_is_400(client):
    response = client.get("/datasets/trades/aggregate", params={"metric": "sum(ticker)"})

    assert response.status_code == 400
    assert _error(response)["code"] == "type_mismatch"
    assert _error(response)["parameter"] == "metric"


def test_bad_filter_syntax_is_400(client):
    response = client.get("/datasets/trades/aggregate", params={"filter": "ticker~AAPL"})

    assert response.status_code == 400
    assert _error(response)["code"] == "invalid_query"


def test_unknown_dataset_is_404(client):
    response = client.get("/datasets/nope/report")

    assert response.status_code == 404
    assert _error(response)["code"] == "not_found"


def test_unknown_template_is_404(client):
    response = client.get("/datasets/trades/report", params={"template": "nope"})

    assert response.status_code == 404
    assert _error(response) == {"code": "unknown_template", "message": "Unknown template: nope", "parameter": "template"}


def test_unknown_route_is_404(client):
    response = client.get("/no/such/route")

    assert response.status_code == 404
    assert _error(response)["code"] == "not_found"


def test_binding_error_is_500_without_detail(server_root, server_config):
    (server_root / "templates" / "broken.html").write_text("{{ portfolio_value }}")

    with TestClient(create_app(server_config)) as client:
        response = client.get("/datasets/trades/report", params={"template": "broken"})

    assert response.status_code == 500
    error = _error(response)
    assert error["code"] == "binding_error"
    assert "portfolio_value" not in error["message"]


def test_unexpected_error_is_internal_error(server_config, monkeypatch):
    def explode(snapshot, query):
        raise RuntimeError("disk on fire")

    monkeypatch.setattr(aggregate_module, "aggregate", explode)
    with TestClient(create_app(server_config), raise_server_exceptions=False) as client:
        response = client.get("/datasets/trades/aggregate")

    assert response.status_code == 500
    assert _error(response)["code"] == "internal_error"
    assert "disk on fire" not in response.text


def test_unloaded_dataset_is_503(server_root, server_config):
    (server_root / "data" / "trades.csv").unlink()

    with TestClient(create_app(server_config)) as client:
        response = client.get("/datasets/trades/report")
        health = client.get("/health").json()

    assert response.status_code == 503
    assert _error(response)["code"] == "dataset_unavailable"
    assert health["status"] == "degraded"


# ---------------------------------------------------------------------------
# Refresh / upload
# ---------------------------------------------------------------------------

def test_refresh_publishes_next_version(server_root, client):
    (server_root / "data" / "trades.csv").write_text(
        "ticker,qty,price,date\nAAPL,10,150.0,2024-01-02\nGOOG,1,99.0,2024-01-04\n"
    )

    response = client.post("/datasets/trades/refresh")

    assert response.status_code == 202
    assert response.json()["version"] == 2
    _wait_for_version(client, "trades", 2)
    body = client.get("/datasets/trades/aggregate", params={"group_by": "ticker"}).json()
    assert [g["key"] for g in body["groups"]] == [["AAPL"], ["GOOG"]]


def test_refresh_in_progress_is_409(server_config, monkeypatch):
    cfg = server_config.model_copy(update={"refresh_policy": RefreshPolicy.REJECT})
    gate = threading.Event()
    real_read = store_module.read_sources

    def slow_read(dataset_cfg, source=None):
        gate.wait(5)
        return real_read(dataset_cfg, source)

    with TestClient(create_app(cfg)) as client:
        monkeypatch.setattr(store_module, "read_sources", slow_read)
        try:
            first = client.post("/datasets/trades/refresh")
            second = client.post("/datasets/trades/refresh")
        finally:
            gate.set()

        assert first.status_code == 202
        assert second.status_code == 409
        assert _error(second)["code"] == "refresh_in_progress"
        _wait_for_version(client, "trades", 2)


def test_upload_replaces_dataset(client):
    content = b"ticker,qty,price,date\nVWRP,4,100.0,2024-02-01\n"

    response = client.post(
        "/datasets/trades/upload",
        files={"file": ("ISA_trades.csv", content, "text/csv")},
    )

    assert response.status_code == 202
    assert response.json()["source"] == "ISA_trades.csv"
    status = _wait_for_version(client, "trades", 2)
    assert status["source"] == "ISA_trades.csv"
    assert status["rows"] == 1


def test_upload_rejects_non_csv(client):
    response = client.post("/datasets/trades/upload", files={"file": ("notes.txt", b"hello", "text/plain")})

    assert response.status_code == 400
    assert _error(response)["parameter"] == "file"


def test_upload_during_refresh_is_409_not_coalesced(server_config, monkeypatch):
    gate = threading.Event()
    real_read = store_module.read_sources

    def slow_read(dataset_cfg, source=None):
        if source is None:
            gate.wait(5)
        return real_read(dataset_cfg, source)

    with TestClient(create_app(server_config)) as client:
        monkeypatch.setattr(store_module, "read_sources", slow_read)
        try:
            refresh = client.post("/datasets/trades/refresh")
            upload = client.post(
                "/datasets/trades/upload",
                files={"file": ("new.csv", b"ticker,qty,price,date\nZZZ,1,1.0,2024-01-05\n", "text/csv")},
            )
        finally:
            gate.set()

        assert refresh.status_code == 202
        assert upload.status_code == 409
        assert _error(upload)["code"] == "refresh_in_progress"
        status = _wait_for_version(client, "trades", 2)
        assert status["source"] == "trades.csv"
        body = client.get("/datasets/trades/aggregate", params={"group_by": "ticker"}).json()
        assert [g["key"] for g in body["groups"]] == [["AAPL"], ["MSFT"]]


def test_upload_merges_several_files(client):
    response = client.post(
        "/datasets/trades/upload",
        files=[
            ("file", ("GIA_trades.csv", b"ticker,qty,price,date\nVWRP,4,100.0,2024-02-01\n", "text/csv")),
            ("file", ("ISA_trades.csv", b"ticker,qty,price,date\nVUSA,2,80.0,2024-02-02\n", "text/csv")),
        ],
    )

    assert response.status_code == 202
    assert response.json()["source"] == "GIA_trades.csv, ISA_trades.csv"
    status = _wait_for_version(client, "trades", 2)
    assert status["rows"] == 2


# ---------------------------------------------------------------------------
# Ticker map
# ---------------------------------------------------------------------------

STATEMENT_HEADER = (
    "Transaction Statement: 5 Jun 2022 to 21 Feb 2026\n"
    "Security / ISIN,Transaction Type,Quantity,Share Price,Total Trade Value,"
    "Trade Date/Time,Settlement Date,Broker\n"
)
VWRP_BUY = "Vanguard FTSE All-World / ISIN IE00BK5BQT80,Buy,2,£100.00,£200.00,03/01/24 10:00:00,05/01/24,WF\n"
SWDA_BUY = "iShares Core MSCI World / ISIN IE00B4L5Y983,Buy,1,£80.00,£80.00,02/01/24 09:00:00,04/01/24,WF\n"


@pytest.fixture
def portfolio_client(server_root):
    (server_root / "data" / "ISA_Trading_statement.csv").write_text(STATEMENT_HEADER + VWRP_BUY + SWDA_BUY, encoding="utf-8")
    config = json.loads((server_root / "server.json").read_text())
    config["datasets"].append({
        "name": "isa",
        "path": "data/ISA_Trading_statement.csv",
        "preset": "investengine_trading",
        "tickers": {"IE00BK5BQT80": "VWRP.L", "IE00B3RBWM25": "VWRL.L"},
    })
    (server_root / "server.json").write_text(json.dumps(config))
    with TestClient(create_app(load_config(server_root / "server.json"))) as c:
        yield c


def test_ticker_map(portfolio_client):
    body = portfolio_client.get("/datasets/isa/tickers").json()

    assert body == {
        "dataset": "isa",
        "mappings": {"IE00B3RBWM25": "VWRL.L", "IE00BK5BQT80": "VWRP.L"},
        "count": 2,
    }


def test_missing_tickers_lists_unmapped_isins(portfolio_client):
    body = portfolio_client.get("/datasets/isa/tickers/missing").json()

    assert body == {"dataset": "isa", "version": 1, "missing_isins": ["IE00B4L5Y983"], "count": 1}


def test_tickers_need_an_isin_column(portfolio_client):
    response = portfolio_client.get("/datasets/trades/tickers/missing")

    assert response.status_code == 400
    assert _error(response)["code"] == "invalid_query"


def test_ticker_column_is_groupable(portfolio_client):
    body = portfolio_client.get("/datasets/isa/aggregate", params={"group_by": "ticker"}).json()

    assert [g["key"] for g in body["groups"]] == [["VWRP.L"], [None]]


def test_upload_of_cash_statement_to_trading_dataset_is_400(portfolio_client):
    response = portfolio_client.post(
        "/datasets/isa/upload",
        files={"file": ("ISA_Cash_statement.csv", b"Date,Activity\n", "text/csv")},
    )

    assert response.status_code == 400
    assert _error(response)["parameter"] == "file"


# ---------------------------------------------------------------------------
# Rebalance
# ---------------------------------------------------------------------------

def test_rebalance_endpoint(client):
    response = client.post("/rebalance/calculate", json={
        "new_capital": 500,
        "current_values": {"VWRP.L": 1000, "VUSA.L": 500},
        "target_allocations": {"VWRP.L": 50, "VUSA.L": 50},
    })

    assert response.status_code == 200
    body = response.json()
    assert body["total_investment"] == 500.0
    assert {a["ticker"]: a["investment"] for a in body["allocations"]} == {"VUSA.L": 500.0, "VWRP.L": 0.0}


def test_rebalance_errors(client):
    no_overlap = client.post("/rebalance/calculate", json={
        "new_capital": 100, "current_values": {"A": 1}, "target_allocations": {"B": 1},
    })
    missing_field = client.post("/rebalance/calculate", json={"new_capital": 100})

    assert no_overlap.status_code == 400
    assert _error(no_overlap)["code"] == "invalid_query"
    assert missing_field.status_code == 400
    assert _error(missing_field)["parameter"] == "current_values"
