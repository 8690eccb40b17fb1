from __future__ import annotations

import pytest
from fastapi import FastAPI, HTTPException
from fastapi.testclient import TestClient

from credit_ledger.api.app import create_app
from credit_ledger.db.memory import InMemoryDBManager


PAID_PATH = "/api/ai/meme/generate"


def _build_app(settings) -> FastAPI:
    app = create_app(settings=settings, db=InMemoryDBManager())
    app.state.generations = 0

    @app.post(PAID_PATH)
    async def generate_meme() -> dict:
        app.state.generations += 1
        return {"meme": "ok"}

    @app.post(PAID_PATH + "/broken")
    async def generate_broken() -> dict:
        raise HTTPException(status_code=500, detail="model crashed")

    return app


@pytest.fixture
def client(settings):
    with TestClient(_build_app(settings)) as c:
        yield c


def _register(client, user_id="user-1", email=None):
    resp = client.post("/credits/users", json={"user_id": user_id, "email": email})
    assert resp.status_code == 201
    return resp.json()


def test_register_grants_signup_credits(client):
    body = _register(client, email="test@example.com")
    assert body == {"user_id": "user-1", "email": "test@example.com", "credits": 50}

    resp = client.get("/credits/balance/user-1")
    assert resp.json() == {"user_id": "user-1", "credits": 50}

    history = client.get("/credits/history/user-1").json()
    assert len(history) == 1
    assert history[0]["transaction_type"] == "grant"
    assert history[0]["transaction_scene"] == "signup"


def test_grant_and_consume_routes(client):
    _register(client)

    resp = client.post(
        "/credits/grant",
        json={"user_id": "user-1", "amount": 10, "scene": "award", "expires_in_days": 5},
    )
    assert resp.status_code == 201
    award_id = resp.json()["id"]

    resp = client.post("/credits/consume", json={"user_id": "user-1", "amount": 4})
    assert resp.status_code == 200
    body = resp.json()
    assert body["consumed"] == 4
    assert body["transactions"] == [award_id]

    summary = client.get("/credits/summary/user-1").json()
    assert summary["balance"] == 56
    assert summary["total_consumed"] == 4


def test_error_mapping(client):
    _register(client)

    resp = client.post("/credits/consume", json={"user_id": "user-1", "amount": 500})
    assert resp.status_code == 402
    assert resp.json()["detail"]["code"] == "INSUFFICIENT_CREDITS"
    assert resp.json()["detail"]["available"] == 50

    resp = client.post("/credits/grant", json={"user_id": "user-1", "amount": 0})
    assert resp.status_code == 400

    resp = client.post("/credits/grant", json={"user_id": "ghost", "amount": 5})
    assert resp.status_code == 404

    resp = client.post(
        "/credits/consume",
        json={"user_id": "user-1", "amount": 1, "transaction_no": "req-1"},
    )
    assert resp.status_code == 200
    resp = client.post(
        "/credits/consume",
        json={"user_id": "user-1", "amount": 1, "transaction_no": "req-1"},
    )
    assert resp.status_code == 409


def test_payment_webhook_grants_once(client):
    _register(client)
    payload = {"order_no": "order-1", "user_id": "user-1", "credits": 100, "status": "PAID"}

    first = client.post("/credits/webhooks/payment", json=payload)
    second = client.post("/credits/webhooks/payment", json=payload)

    assert first.json()["granted"] is True
    assert second.json()["granted"] is False
    assert first.json()["transaction_id"] == second.json()["transaction_id"]
    assert client.get("/credits/balance/user-1").json()["credits"] == 150


def test_payment_webhook_ignores_unpaid_status(client):
    _register(client)
    resp = client.post(
        "/credits/webhooks/payment",
        json={"order_no": "order-2", "user_id": "user-1", "credits": 100, "status": "pending"},
    )
    assert resp.json() == {"order_no": "order-2", "granted": False, "transaction_id": None}
    assert client.get("/credits/balance/user-1").json()["credits"] == 50


def test_sweep_route(client):
    resp = client.post("/credits/sweep")
    assert resp.status_code == 200
    assert resp.json() == {"expired": 0}


def test_middleware_charges_successful_paid_call(client):
    _register(client)

    resp = client.post(PAID_PATH, headers={"X-User-Id": "user-1", "X-Request-Id": "req-42"})

    assert resp.status_code == 200
    assert resp.json() == {"meme": "ok"}
    assert resp.headers["X-Credits-Consumed"] == "2"
    assert resp.headers["X-Credits-Remaining"] == "48"

    history = client.get("/credits/history/user-1").json()
    consume = [h for h in history if h["transaction_type"] == "consume"]
    assert len(consume) == 1
    assert consume[0]["transaction_no"] == "user-1:req-42"
    assert consume[0]["transaction_scene"] == "meme-generation"


def test_middleware_replayed_request_id_does_not_rerun_handler(client):
    _register(client)
    headers = {"X-User-Id": "user-1", "X-Request-Id": "req-7"}

    assert client.post(PAID_PATH, headers=headers).status_code == 200
    for _ in range(5):
        resp = client.post(PAID_PATH, headers=headers)
        assert resp.status_code == 409
        assert resp.json()["code"] == "DUPLICATE_TRANSACTION"

    assert client.app.state.generations == 1
    assert client.get("/credits/balance/user-1").json()["credits"] == 48


def test_middleware_request_id_is_scoped_per_user(client):
    _register(client, user_id="user-1")
    _register(client, user_id="user-2")

    first = client.post(PAID_PATH, headers={"X-User-Id": "user-1", "X-Request-Id": "same"})
    second = client.post(PAID_PATH, headers={"X-User-Id": "user-2", "X-Request-Id": "same"})

    assert first.status_code == 200
    assert second.status_code == 200
    assert second.headers["X-Credits-Consumed"] == "2"
    assert client.app.state.generations == 2
    assert client.get("/credits/balance/user-1").json()["credits"] == 48
    assert client.get("/credits/balance/user-2").json()["credits"] == 48


def test_register_same_user_twice_conflicts(client):
    _register(client)
    resp = client.post("/credits/users", json={"user_id": "user-1"})
    assert resp.status_code == 409
    assert client.get("/credits/balance/user-1").json()["credits"] == 50


def test_middleware_requires_user(client):
    resp = client.post(PAID_PATH)
    assert resp.status_code == 401


def test_middleware_rejects_short_balance(settings):
    settings.initial_credits_enabled = False
    with TestClient(_build_app(settings)) as client:
        _register(client)
        resp = client.post(PAID_PATH, headers={"X-User-Id": "user-1"})

    assert resp.status_code == 402
    assert resp.json()["code"] == "INSUFFICIENT_CREDITS"
    assert resp.json()["required"] == 2
    assert resp.json()["available"] == 0


def test_middleware_does_not_charge_failed_calls(client):
    _register(client)

    resp = client.post(PAID_PATH + "/broken", headers={"X-User-Id": "user-1"})

    assert resp.status_code == 500
    assert client.get("/credits/balance/user-1").json()["credits"] == 50


def test_free_routes_pass_through(client):
    assert client.get("/healthz").json() == {"status": "ok"}
