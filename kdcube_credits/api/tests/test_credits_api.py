# SPDX-License-Identifier: MIT

import pytest
from fastapi.testclient import TestClient

from kdcube_credits.config import Settings
from kdcube_credits.api.web_app import create_app
from kdcube_credits.economics.store import InMemoryLedgerStore


@pytest.fixture
def client():
    settings = Settings(LEDGER_BACKEND="memory", REDIS_URL=None, REWARD_MONTHLY_CAP=150)
    app = create_app(settings, store=InMemoryLedgerStore(lock_timeout_ms=200))
    with TestClient(app) as c:
        yield c


def _grant(client, user_id, amount, **extra):
    r = client.post("/credits/grant", json={"user_id": user_id, "amount": amount, **extra})
    assert r.status_code == 201, r.text
    return r.json()["entry"]


def test_grant_consume_and_balance(client):
    _grant(client, "u1", 50, validity_days=1)
    _grant(client, "u1", 100, validity_days=0)

    r = client.post("/credits/consume", json={"user_id": "u1", "amount": 60, "scene": "generation"})
    assert r.status_code == 201
    entry = r.json()["entry"]
    assert entry["amount"] == -60
    assert [x["amount_drawn"] for x in entry["consumed_detail"]] == [50, 10]

    r = client.get("/credits/users/u1/balance", params={"fresh": True})
    assert r.json() == {"user_id": "u1", "balance": 90}


def test_insufficient_credits_maps_to_402(client):
    _grant(client, "u1", 10)

    r = client.post("/credits/consume", json={"user_id": "u1", "amount": 11})

    assert r.status_code == 402
    detail = r.json()["detail"]
    assert detail["code"] == "insufficient_credits"
    assert detail["data"] == {"required": 11, "available": 10, "shortfall": 1}


def test_invalid_amount_maps_to_400(client):
    r = client.post("/credits/consume", json={"user_id": "u1", "amount": 0})
    assert r.status_code == 400
    assert r.json()["detail"]["code"] == "invalid_amount"

    r = client.post("/credits/grant", json={"user_id": "u1", "amount": -3})
    assert r.status_code == 400


def test_exact_refund_and_double_refund(client):
    _grant(client, "u1", 20)
    consumed = client.post("/credits/consume", json={"user_id": "u1", "amount": 5}).json()["entry"]

    r = client.post(f"/credits/refund/exact/{consumed['id']}")
    assert r.status_code == 200
    assert r.json()["entry"]["status"] == "deleted"

    r = client.post(f"/credits/refund/exact/{consumed['id']}")
    assert r.status_code == 409
    assert r.json()["detail"]["code"] == "already_reversed"

    r = client.post("/credits/refund/exact/missing")
    assert r.status_code == 404


def test_simple_refund(client):
    r = client.post("/credits/refund/simple", json={"user_id": "u1", "amount": 7})
    assert r.status_code == 201
    entry = r.json()["entry"]
    assert entry["scene"] == "refund"
    assert entry["description"] == "Refund for failed generation"


def test_referral_reward_flow(client):
    r = client.post("/credits/rewards/referral",
                    json={"referral_code": "hello", "inviter_id": "a", "invitee_id": "b"})
    assert r.status_code == 200
    body = r.json()
    assert body["action"] == "granted"
    assert body["inviter_amount"] == 100

    r = client.post("/credits/rewards/referral",
                    json={"referral_code": "HELLO", "inviter_id": "a", "invitee_id": "b"})
    assert r.json()["action"] == "duplicate"

    r = client.post("/credits/rewards/referral",
                    json={"referral_code": "hello", "inviter_id": "a", "invitee_id": "a"})
    assert r.status_code == 400

    # default policy is skip: 100 + 100 > 150
    r = client.post("/credits/rewards/referral",
                    json={"referral_code": "hello", "inviter_id": "a", "invitee_id": "c"})
    assert r.json()["inviter_capped"] is True
    assert r.json()["inviter_amount"] == 0


def test_history_leaderboard_and_expiry_sweep(client):
    _grant(client, "u1", 30)
    _grant(client, "u2", 10)
    client.post("/credits/consume", json={"user_id": "u1", "amount": 5})

    r = client.get("/credits/users/u1/entries", params={"limit": 1})
    body = r.json()
    assert body["total"] == 2
    assert len(body["items"]) == 1

    r = client.get("/credits/users/u1/entries", params={"kind": "grant"})
    assert [e["kind"] for e in r.json()["items"]] == ["grant"]

    r = client.get("/credits/leaderboard")
    assert r.json()["items"][:2] == [{"user_id": "u1", "balance": 25}, {"user_id": "u2", "balance": 10}]

    r = client.post("/credits/expire")
    assert r.status_code == 200
    assert r.json()["expired"] == 0


def test_get_entry_not_found(client):
    r = client.get("/credits/entries/nope")
    assert r.status_code == 404
    assert r.json()["detail"]["code"] == "not_found"


def test_naive_expiry_is_rejected_and_reads_keep_working(client):
    _grant(client, "u1", 20)

    r = client.post("/credits/grant", json={"user_id": "u1", "amount": 10, "expires_at": "2030-01-01T00:00:00"})
    assert r.status_code == 422
    r = client.post("/credits/refund/simple", json={"user_id": "u1", "amount": 10, "expires_at": "2030-01-01T00:00:00"})
    assert r.status_code == 422

    assert client.get("/credits/users/u1/balance", params={"fresh": True}).json()["balance"] == 20
    assert client.post("/credits/consume", json={"user_id": "u1", "amount": 5}).status_code == 201
    assert client.get("/credits/leaderboard").json()["items"] == [{"user_id": "u1", "balance": 15}]


@pytest.mark.parametrize("body", [
    {"expires_at": "2030-01-01T00:00:00Z", "validity_days": 30},
    {"expires_at": "2030-01-01T00:00:00Z", "period_end": "2030-02-01T00:00:00Z", "validity_days": 30},
    {"period_end": "2030-02-01T00:00:00Z"},
])
def test_conflicting_expiry_fields_are_rejected(client, body):
    r = client.post("/credits/grant", json={"user_id": "u1", "amount": 10, **body})

    assert r.status_code == 400
    assert r.json()["detail"]["code"] == "invalid_expiry"
    assert client.get("/credits/users/u1/entries").json()["total"] == 0


def test_period_end_with_validity_days_sets_expiry(client):
    entry = _grant(client, "u1", 10, validity_days=30, period_end="2030-02-01T00:00:00Z")
    assert entry["expires_at"].startswith("2030-02-01T00:00:00")


def test_amount_beyond_bigint_maps_to_400(client):
    r = client.post("/credits/grant", json={"user_id": "u1", "amount": 2 ** 63})
    assert r.status_code == 400
    assert r.json()["detail"]["code"] == "invalid_amount"
