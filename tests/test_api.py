"""HTTP API: status codes, SSE batch stream, live session flow."""

import json

import pytest
from fastapi.testclient import TestClient
from trading_engine.api.app import Services, create_app, sse
from trading_engine.backtesting.batch import BatchOrchestrator
from trading_engine.core.config import Config
from trading_engine.data.cache import BarCache
from trading_engine.live.reconcile import BrokerMonitor
from trading_engine.live.scheduler import SessionScheduler
from trading_engine.live.session import LiveSessionManager
from trading_engine.risk.manager import RiskManager

from conftest import EPOCH, SAMPLE_PARAMS, FakeProvider, uptrend_with_dip

WATCHLIST = ["AAA", "BBB", "CCC"]


@pytest.fixture
def services(store):
    frames = {s: uptrend_with_dip() for s in WATCHLIST}
    frames["TEST"] = uptrend_with_dip().iloc[:81]
    cache = BarCache(FakeProvider(frames))
    risk_manager = RiskManager()
    manager = LiveSessionManager(store, cache, risk_manager)
    monitor = BrokerMonitor(store, None)
    return Services(
        config=Config(watchlist=WATCHLIST),
        cache=cache,
        risk_manager=risk_manager,
        orchestrator=BatchOrchestrator(cache, risk_manager, max_workers=2, prefetch_max_workers=2),
        manager=manager,
        scheduler=SessionScheduler(manager, monitor),
        monitor=monitor,
    )


@pytest.fixture
def client(services):
    return TestClient(create_app(services))


def _events(response):
    return [json.loads(line[len("data: "):]) for line in response.text.splitlines() if line.startswith("data: ")]


def _live_session(client, **start):
    body = {"strategy": "hybrid_ai_trend", "symbols": ["TEST"], "interval": "1h", "params": SAMPLE_PARAMS}
    assert client.post("/api/trading/live/config", json=body).status_code == 200
    r = client.post("/api/trading/live/start", json={"mode": "stream", "started_at": EPOCH.isoformat(), **start})
    assert r.status_code == 200
    return r.json()


def test_sse_format():
    assert sse({"type": "progress"}) == 'data: {"type": "progress"}\n\n'


def test_strategies(client):
    r = client.get("/api/trading/strategies")
    assert r.status_code == 200
    assert len(r.json()["strategies"]) == 5


def test_backtest(client):
    r = client.post("/api/trading/backtest", json={
        "symbol": "aaa", "strategy": "hybrid_ai_trend", "interval": "1h", "params": SAMPLE_PARAMS,
    })
    assert r.status_code == 200
    data = r.json()
    assert data["symbol"] == "AAA"
    assert data["trades"][0]["close_reason"] == "TP"
    assert len(data["chart_data"]) == 100


def test_backtest_invalid_param_is_400(client):
    r = client.post("/api/trading/backtest", json={
        "symbol": "AAA", "strategy": "hybrid_ai_trend", "params": {"bb1_period": 999},
    })
    assert r.status_code == 400
    assert r.json()["error"] == "invalid_parameter"
    assert r.json()["key"] == "bb1_period"


def test_backtest_unknown_strategy_and_symbol(client):
    r = client.post("/api/trading/backtest", json={"symbol": "AAA", "strategy": "nope"})
    assert r.status_code == 400
    assert r.json()["error"] == "unknown_strategy"
    r = client.post("/api/trading/backtest", json={"symbol": "ZZZ", "strategy": "hann_trend"})
    assert r.status_code == 400
    assert r.json()["error"] == "data_unavailable"


def test_watchlist_stream_ends_with_one_result(client):
    r = client.post("/api/trading/backtest-watchlist", json={
        "strategy": "hybrid_ai_trend", "interval": "1h", "params": SAMPLE_PARAMS, "symbols": WATCHLIST + ["MISSING"],
    })
    assert r.status_code == 200
    assert r.headers["content-type"].startswith("text/event-stream")
    assert r.headers["x-batch-id"]
    events = _events(r)
    types = [e["type"] for e in events]
    assert types.count("result") == 1
    assert types[-1] == "result"
    result = events[-1]
    assert set(result["per_stock"]) == set(WATCHLIST)
    assert result["skipped_symbols"] == [{"symbol": "MISSING", "reason": "no data"}]


def test_watchlist_defaults_and_filters(client):
    r = client.post("/api/trading/backtest-watchlist", json={
        "strategy": "hybrid_ai_trend", "interval": "1h", "params": SAMPLE_PARAMS, "direction": "SHORT",
    })
    result = _events(r)[-1]
    assert set(result["per_stock"]) == set(WATCHLIST)
    assert result["trades"] == []
    assert result["metrics"]["total_trades"] == 0


def test_watchlist_invalid_params_fail_before_streaming(client):
    r = client.post("/api/trading/backtest-watchlist", json={
        "strategy": "hybrid_ai_trend", "params": {"risk_reward": 50},
    })
    assert r.status_code == 400


def test_cancel_unknown_batch(client):
    r = client.delete("/api/trading/backtest-watchlist/nope")
    assert r.json() == {"cancelled": False}


def test_start_without_config_is_400(client):
    r = client.post("/api/trading/live/start", json={"mode": "stream"})
    assert r.status_code == 400
    assert r.json()["error"] == "config_missing"


def test_get_missing_config_is_404(client):
    assert client.get("/api/trading/live/config").status_code == 404


def test_live_flow(client, services):
    session = _live_session(client, name="api")
    sid = session["id"]
    assert session["is_active"] is True

    assert client.post("/api/trading/live/start", json={"mode": "stream"}).status_code == 409

    services.manager.tick(sid)
    status = client.get("/api/trading/live/status").json()
    assert status["is_running"] is True
    assert status["symbol_prices"]["TEST"] == pytest.approx(112.0)

    detail = client.get(f"/api/trading/live/session/{sid}").json()
    assert len(detail["positions"]) == 1
    strategy_id = detail["strategies"][0]["id"]

    r = client.put(f"/api/trading/live/session/{sid}/strategy/{strategy_id}", json={"is_enabled": False})
    assert r.status_code == 409
    assert r.json()["error"] == "concurrent_mutation"

    logs = client.get(f"/api/trading/live/logs/{sid}").json()["logs"]
    assert logs
    last = logs[-1]["id"]
    assert client.get(f"/api/trading/live/logs/{sid}", params={"after_id": last}).json()["logs"] == []

    stopped = client.post("/api/trading/live/stop", params={"session_id": sid}).json()
    assert stopped["is_active"] is False
    assert stopped["can_resume"] is True
    r = client.put(f"/api/trading/live/session/{sid}/strategy/{strategy_id}", json={"is_enabled": False})
    assert r.status_code == 200
    assert r.json()["is_enabled"] is False
    client.put(f"/api/trading/live/session/{sid}/strategy/{strategy_id}", json={"is_enabled": True})
    last_session = client.get("/api/trading/live/status").json()["last_session"]
    assert last_session["id"] == sid
    assert last_session["can_resume"] is True
    assert last_session["strategy"] == "hybrid_ai_trend"

    resumed = client.post(f"/api/trading/live/session/{sid}/resume").json()
    assert resumed["is_active"] is True
    assert client.post(f"/api/trading/live/session/{sid}/resume").status_code == 409

    sessions = client.get("/api/trading/live/sessions").json()["sessions"]
    assert [s["id"] for s in sessions] == [sid]


def test_push_bar_and_manual_close(client, services):
    sid = _live_session(client)["id"]
    services.manager.tick(sid)
    position = client.get(f"/api/trading/live/session/{sid}").json()["positions"][0]
    r = client.post(
        f"/api/trading/live/session/{sid}/position/{position['id']}/close", json={"price": 113.12}
    )
    assert r.status_code == 200
    assert r.json()["close_reason"] == "MANUAL"

    row = uptrend_with_dip().iloc[81]
    r = client.post(f"/api/trading/live/session/{sid}/bar", json={
        "symbol": "TEST", "time": row["time"].isoformat(), "open": row["open"], "high": row["high"],
        "low": row["low"], "close": row["close"], "volume": row["volume"],
    })
    assert r.status_code == 200
    assert r.json()["transitions"] == 0


def test_add_strategy_and_duplicates(client):
    sid = _live_session(client)["id"]
    r = client.post(f"/api/trading/live/session/{sid}/strategy", json={"name": "hann_trend"})
    assert r.status_code == 200
    assert r.json()["is_enabled"] is False
    r = client.post(f"/api/trading/live/session/{sid}/strategy", json={"name": "hann_trend"})
    assert r.status_code == 400


def test_resume_after_config_change_is_409(client):
    sid = _live_session(client)["id"]
    client.post("/api/trading/live/stop", params={"session_id": sid})
    client.post("/api/trading/live/config", json={"strategy": "hann_trend", "symbols": ["TEST"]})
    r = client.post(f"/api/trading/live/session/{sid}/resume")
    assert r.status_code == 409
    assert r.json()["error"] == "resume_rejected"


def test_reconcile_and_analyze(client, services):
    sid = _live_session(client)["id"]
    services.manager.tick(sid)
    rec = client.get(f"/api/trading/live/session/{sid}/reconcile").json()
    assert rec["connection"] == "disabled"
    r = client.post("/api/trading/live/analyze", json={"session_id": sid, "symbol": "TEST"})
    assert r.status_code == 200
    assert r.json()["comparison"]["matched"] == 1


def test_unknown_session_is_404(client):
    assert client.get("/api/trading/live/session/99").status_code == 404
    assert client.get("/api/trading/live/logs/99").status_code == 404
    assert client.post("/api/trading/live/stop", params={"session_id": 99}).status_code == 404


def test_rule_edit_after_stop_makes_resume_409(client):
    sid = _live_session(client)["id"]
    client.post("/api/trading/live/stop", params={"session_id": sid})
    strategy_id = client.get(f"/api/trading/live/session/{sid}").json()["strategies"][0]["id"]
    r = client.put(f"/api/trading/live/session/{sid}/strategy/{strategy_id}", json={"long_only": True})
    assert r.status_code == 200
    assert client.get("/api/trading/live/status").json()["last_session"]["can_resume"] is False
    r = client.post(f"/api/trading/live/session/{sid}/resume")
    assert r.status_code == 409
    assert r.json()["error"] == "resume_rejected"


def test_logs_filtered_by_strategy(client, services):
    sid = _live_session(client)["id"]
    client.post(f"/api/trading/live/session/{sid}/strategy", json={"name": "hann_trend"})
    services.manager.tick(sid)
    url = f"/api/trading/live/logs/{sid}"
    hann = client.get(url, params={"strategy": "hann_trend"}).json()["logs"]
    assert [e["message"] for e in hann] == ["Strategy hann_trend added (disabled)"]
    hybrid = client.get(url, params={"strategy": "hybrid_ai_trend"}).json()["logs"]
    assert hybrid
    assert hann[0]["strategy_id"] not in {e["strategy_id"] for e in hybrid}
    assert client.get(url, params={"strategy": "nope"}).json()["logs"] == []


def test_delete_session(client):
    sid = _live_session(client)["id"]
    r = client.delete(f"/api/trading/live/session/{sid}")
    assert r.status_code == 409
    assert r.json()["error"] == "concurrent_mutation"
    client.post("/api/trading/live/stop", params={"session_id": sid})
    r = client.delete(f"/api/trading/live/session/{sid}")
    assert r.status_code == 200
    assert r.json() == {"deleted": True, "id": sid}
    assert client.get(f"/api/trading/live/session/{sid}").status_code == 404
    assert client.get("/api/trading/live/status").json()["last_session"] is None
    assert client.delete(f"/api/trading/live/session/{sid}").status_code == 404
