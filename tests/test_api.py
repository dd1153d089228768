# tests/test_api.py
from dataclasses import replace

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

import main
from conftest import NO_FEATURES, STRONG_FEATURES, T0, HOUR_MS
from pyramid_trader.config import DEFAULT_PYRAMID_CONFIG
from pyramid_trader.database import create_ledger_engine, get_db, init_db
from pyramid_trader.services.live_session import LiveTradingSession


def swing_json(side, price, hours, features):
    return {
        "side": side,
        "open_time": T0 + int(hours * HOUR_MS),
        "price": price,
        "features": features,
    }


PYRAMID_SWINGS = [
    swing_json("low", 100.0, 0, STRONG_FEATURES),
    swing_json("low", 102.0, 4, STRONG_FEATURES),
    swing_json("high", 110.0, 12, NO_FEATURES),
]


@pytest.fixture
def client(monkeypatch):
    engine = create_ledger_engine("sqlite://")
    init_db(bind=engine)
    TestingSession = sessionmaker(autocommit=False, autoflush=False, bind=engine)

    def override_get_db():
        db = TestingSession()
        try:
            yield db
        finally:
            db.close()

    session = LiveTradingSession(replace(DEFAULT_PYRAMID_CONFIG, max_leverage=3),
                                 starting_capital=10000.0, max_consecutive_losses=3)
    monkeypatch.setattr(main, "live_session", session)
    main.app.dependency_overrides[get_db] = override_get_db
    with TestClient(main.app) as c:
        yield c
    main.app.dependency_overrides.clear()


def test_health(client):
    r = client.get("/api/health")
    assert r.status_code == 200
    body = r.json()
    assert body["status"] == "ok"
    assert body["execution_mode"] == "paper"
    assert body["live_running"] is True


def test_config_defaults(client):
    body = client.get("/api/config/defaults").json()
    assert body["defaults"]["max_leverage"] == 88
    assert body["defaults"]["confluence_thresholds"] == [3, 4, 5, 6, 7]
    assert body["effective"]["max_leverage"] == 3


def test_confluence_endpoint(client):
    r = client.post("/api/confluence", json={"features": STRONG_FEATURES})
    assert r.status_code == 200
    assert r.json() == {"score": 23, "factors": ["RSI<25", "EMA6>50", "London"], "max_score": 100}


def test_backtest_without_persisting(client):
    r = client.post("/api/backtest", json={
        "swings": PYRAMID_SWINGS, "config": {"max_leverage": 3},
    })
    assert r.status_code == 200
    body = r.json()
    assert body["run_id"] is None
    assert len(body["trades"]) == 1
    assert body["trades"][0]["exitReason"] == "target"
    assert body["trades"][0]["levels"] == 2
    assert body["stats"]["target_exits"] == 1
    assert body["config"]["max_leverage"] == 3
    assert client.get("/api/backtests").json() == []


def test_backtest_persist_and_fetch(client):
    r = client.post("/api/backtest", json={
        "swings": PYRAMID_SWINGS, "config": {"max_leverage": 3},
        "persist": True, "label": "pyramid smoke",
    })
    run_id = r.json()["run_id"]
    assert run_id is not None

    runs = client.get("/api/backtests").json()
    assert [run["id"] for run in runs] == [run_id]
    assert runs[0]["label"] == "pyramid smoke"
    assert runs[0]["total_trades"] == 1

    detail = client.get(f"/api/backtests/{run_id}").json()
    assert detail["config"]["max_leverage"] == 3
    assert detail["trades"][0]["exitReason"] == "target"
    assert detail["stats"]["total_trades"] == 1


def test_missing_backtest_is_404(client):
    assert client.get("/api/backtests/999").status_code == 404


@pytest.mark.parametrize("payload", [
    {"swings": PYRAMID_SWINGS, "config": {"max_leverage": 0.5}},
    {"swings": PYRAMID_SWINGS, "config": {"not_a_field": 1}},
    {"swings": PYRAMID_SWINGS, "starting_capital": 0},
    {"swings": [swing_json("sideways", 100.0, 0, {})]},
])
def test_backtest_bad_input_is_400(client, payload):
    assert client.post("/api/backtest", json=payload).status_code == 400


def test_live_event_flow(client):
    r = client.post("/api/live/btcusdt/events", json=swing_json("low", 100.0, 0, STRONG_FEATURES))
    assert r.status_code == 200
    assert r.json()["applied"][0]["action"] == "open"

    state = client.get("/api/live/BTCUSDT").json()
    assert state["position"]["side"] == "long"
    assert state["session"]["open_symbols"] == ["BTCUSDT"]

    r = client.post("/api/live/BTCUSDT/emergency-close", json={"price": 100.4})
    assert r.status_code == 200
    assert r.json()["closed_trade"]["exitReason"] == "emergency"

    assert client.post("/api/live/BTCUSDT/emergency-close", json={"price": 100.4}).status_code == 404
    assert client.get("/api/live/BTCUSDT").json()["position"] is None


def test_live_stop_rejects_events(client):
    assert client.post("/api/live/stop").json()["running"] is False
    r = client.post("/api/live/ETHUSDT/events", json=swing_json("low", 2000.0, 0, STRONG_FEATURES))
    assert r.status_code == 409


def test_circuit_breaker_reset(client):
    for i in range(3):
        client.post("/api/live/SOLUSDT/events", json=swing_json("low", 100.0, i * 2, STRONG_FEATURES))
        client.post("/api/live/SOLUSDT/events", json=swing_json("high", 99.0, i * 2 + 1, NO_FEATURES))
    assert client.get("/api/health").json()["circuit_breaker_triggered"] is True

    body = client.post("/api/live/circuit-breaker/reset").json()
    assert body["circuit_breaker_triggered"] is False
    assert body["consecutive_losses"] == 0


def test_live_session_limits_come_from_env(monkeypatch):
    monkeypatch.setenv("PYRAMID_MAX_CONSECUTIVE_LOSSES", "5")
    monkeypatch.setenv("PYRAMID_MAX_DAILY_LOSS", "250")
    monkeypatch.setenv("PYRAMID_MAX_DRAWDOWN_PERCENT", "7.5")

    session = main._build_live_session()

    limits = session.get_status()["limits"]
    assert limits == {
        "max_consecutive_losses": 5,
        "max_daily_loss": 250.0,
        "max_drawdown_percent": 7.5,
    }
