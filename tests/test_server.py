import functools

import pytest
from fastapi.testclient import TestClient

from vbtix import server
from vbtix.infra.sql import open_gated_session
from vbtix.model import inventory

ADMIN = {"x-admin-token": "test-admin-token"}


@pytest.fixture(scope="module")
def client():
    with TestClient(server.app) as c:
        yield c


async def _create_ticket_type(**kw):
    async with open_gated_session(server.SessionAsync, server.gated) as db:
        tt = await inventory.create_ticket_type(db, **kw)
    return tt.id


@pytest.fixture
def ticket_type(client):
    def make(quantity=5, max_per_purchase=4, price=150_000,
             event_id="evt-http"):
        return client.portal.call(functools.partial(
            _create_ticket_type, event_id=event_id, name="Regular",
            price=price, quantity=quantity,
            max_per_purchase=max_per_purchase,
        ))
    return make


def reserve(client, tt, quantity=2, session_id="s-1", **kw):
    return client.post("/api/reservations", json={
        "ticket_type_id": tt, "quantity": quantity,
        "session_id": session_id, **kw,
    })


def availability(client, tt):
    r = client.get(f"/api/ticket-types/{tt}/availability")
    assert r.status_code == 200, r.text
    return r.json()


def test_availability(client, ticket_type):
    tt = ticket_type(quantity=7)
    body = availability(client, tt)
    assert body["ticket_type_id"] == tt
    assert (body["quantity"], body["sold"], body["reserved"],
            body["available"]) == (7, 0, 0, 7)

    r = client.get("/api/ticket-types/missing/availability")
    assert r.status_code == 404
    assert r.json()["error"] == "TICKET_TYPE_NOT_FOUND"


def test_reservation_lifecycle(client, ticket_type):
    tt = ticket_type()
    r = reserve(client, tt, expiration_minutes=5)
    assert r.status_code == 201, r.text
    res = r.json()
    assert res["status"] == "PENDING"
    assert res["expires_at"] is not None
    assert availability(client, tt)["reserved"] == 2

    r = client.get(f"/api/reservations/{res['id']}")
    assert r.json()["status"] == "PENDING"

    r = client.get("/api/reservations", params={"session_id": "s-1"})
    assert res["id"] in [x["id"] for x in r.json()["items"]]

    r = client.post(f"/api/reservations/{res['id']}/activate",
                    json={"session_id": "s-2"})
    assert r.status_code == 403
    assert r.json()["error"] == "OWNERSHIP_MISMATCH"

    r = client.post(f"/api/reservations/{res['id']}/activate",
                    json={"session_id": "s-1"})
    assert r.json()["status"] == "ACTIVE"
    r = client.post(f"/api/reservations/{res['id']}/activate",
                    json={"session_id": "s-1"})
    assert r.status_code == 409

    r = client.post(f"/api/reservations/{res['id']}/cancel",
                    json={"session_id": "s-1"})
    assert r.json()["status"] == "CANCELLED"
    assert availability(client, tt)["reserved"] == 0


def test_reservation_rejections(client, ticket_type):
    tt = ticket_type(quantity=3, max_per_purchase=4)

    assert reserve(client, tt, quantity=11).status_code == 422
    assert reserve(client, tt, quantity=0).status_code == 422
    assert reserve(client, tt, expiration_minutes=31).status_code == 422

    r = reserve(client, tt, quantity=5)
    assert r.status_code == 400
    assert r.json()["error"] == "EXCEEDS_MAX_PER_PURCHASE"
    assert r.json()["max_per_purchase"] == 4

    r = reserve(client, tt, quantity=4)
    assert r.status_code == 409
    body = r.json()
    assert body["error"] == "INSUFFICIENT_INVENTORY"
    assert (body["requested"], body["available"]) == (4, 3)

    assert reserve(client, tt, quantity=1, session_id="dup").status_code \
        == 201
    r = reserve(client, tt, quantity=1, session_id="dup")
    assert r.status_code == 409
    assert r.json()["error"] == "DUPLICATE_RESERVATION"

    assert client.get("/api/reservations/missing").status_code == 404


def test_abandon_session(client, ticket_type):
    a, b = ticket_type(), ticket_type()
    reserve(client, a, quantity=1, session_id="gone")
    reserve(client, b, quantity=1, session_id="gone")

    r = client.delete("/api/reservations", params={"session_id": "gone"})
    assert r.json() == {"ok": True, "cancelled": 2}
    assert availability(client, a)["reserved"] == 0


def test_reservation_checkout_and_webhook(client, ticket_type):
    tt = ticket_type()
    res = reserve(client, tt, quantity=2, session_id="buyer").json()

    r = client.post(f"/api/reservations/{res['id']}/checkout", json={
        "session_id": "buyer", "customer_email": "b@example.com",
    })
    assert r.status_code == 201, r.text
    co = r.json()
    assert co["status"] == "PENDING"
    assert co["amount"] == 300_000
    assert co["gateway"] == "xendit"

    r = client.post(f"/api/reservations/{res['id']}/checkout",
                    json={"session_id": "buyer"})
    assert r.status_code == 409

    event = {"id": co["payment_id"], "status": "PAID"}
    r = client.post("/payments/webhook/xendit", json=event,
                    headers={"webhook-id": "wh-1"})
    assert r.status_code == 200, r.text
    body = r.json()
    assert body["ok"] is True
    assert body["status"] == "SUCCESS"
    assert len(body["ticket_ids"]) == 2

    # replay of the same delivery, then a fresh delivery of the same event
    r = client.post("/payments/webhook/xendit", json=event,
                    headers={"webhook-id": "wh-1"})
    assert r.json() == {"ok": True, "idempotent": True}
    r = client.post("/payments/webhook/xendit", json=event,
                    headers={"webhook-id": "wh-2"})
    assert r.json()["idempotent"] is True

    avail = availability(client, tt)
    assert (avail["sold"], avail["reserved"]) == (2, 0)

    order = client.get(f"/api/orders/{co['transaction_id']}").json()
    assert order["status"] == "SUCCESS"
    assert order["paid_at"] is not None
    assert order["inventory_state"] == "FINALIZED"
    assert {t["status"] for t in order["tickets"]} == {"ACTIVE"}
    assert order["payment"]["status"] == "SUCCESS"
    assert client.get(f"/api/reservations/{res['id']}").json()["status"] \
        == "CONVERTED"


def test_direct_checkout_failed_payment(client, ticket_type):
    tt = ticket_type()
    r = client.post("/api/checkout", json={
        "items": [{"ticket_type_id": tt, "quantity": 3}],
        "session_id": "direct",
    })
    assert r.status_code == 201, r.text
    co = r.json()
    assert availability(client, tt)["reserved"] == 3

    r = client.post("/payments/webhook/xendit",
                    json={"id": co["payment_id"], "status": "FAILED"})
    assert r.json()["status"] == "FAILED"
    avail = availability(client, tt)
    assert (avail["sold"], avail["reserved"]) == (0, 0)

    order = client.get(f"/api/orders/{co['transaction_id']}").json()
    assert {t["status"] for t in order["tickets"]} == {"CANCELLED"}


def test_checkout_validation(client, ticket_type):
    tt = ticket_type()
    r = client.post("/api/checkout", json={"items": []})
    assert r.status_code == 422
    r = client.post("/api/checkout", json={
        "items": [{"ticket_type_id": tt, "quantity": 1}],
    })
    assert r.status_code == 400
    r = client.post("/api/checkout", json={
        "items": [{"ticket_type_id": tt, "quantity": 1}],
        "session_id": "x", "gateway": "paypal",
    })
    assert r.status_code == 400
    assert r.json()["error"] == "INVALID_ORDER"
    assert client.get("/api/orders/missing").status_code == 404


def test_webhook_rejections(client):
    r = client.post("/payments/webhook/xendit",
                    json={"id": "xnd_nope", "status": "PAID"})
    assert r.status_code == 404
    assert r.json()["error"] == "PAYMENT_NOT_FOUND"

    r = client.post("/payments/webhook/xendit", content=b"not json")
    assert r.status_code == 400
    r = client.post("/payments/webhook/xendit", json={"status": "PAID"})
    assert r.status_code == 400
    assert client.post("/payments/webhook/stripe", json={}).status_code \
        == 404
    assert client.post("/payments/webhook/manual", json={}).status_code \
        == 404


def test_manual_payment_verification(client, ticket_type):
    tt = ticket_type()
    co = client.post("/api/checkout", json={
        "items": [{"ticket_type_id": tt, "quantity": 2}],
        "user_id": "user-7", "gateway": "manual",
    }).json()
    assert co["instructions"]["method"] == "BANK_TRANSFER"

    url = f"/api/admin/orders/{co['transaction_id']}/verify"
    assert client.post(url, json={"decision": "approved"}).status_code \
        == 401
    assert client.post(url, json={"decision": "maybe"},
                       headers=ADMIN).status_code == 422

    r = client.post(url, json={"decision": "approved", "admin_id": "root"},
                    headers=ADMIN)
    assert r.status_code == 200, r.text
    assert r.json()["status"] == "SUCCESS"
    assert availability(client, tt)["sold"] == 2

    r = client.post(url, json={"decision": "rejected"}, headers=ADMIN)
    assert r.json()["duplicate"] is True


def test_verifying_a_gateway_order_is_rejected(client, ticket_type):
    tt = ticket_type()
    co = client.post("/api/checkout", json={
        "items": [{"ticket_type_id": tt, "quantity": 1}],
        "session_id": "s-verify",
    }).json()
    r = client.post(f"/api/admin/orders/{co['transaction_id']}/verify",
                    json={"decision": "approved"}, headers=ADMIN)
    assert r.status_code == 400
    assert r.json()["error"] == "INVALID_ORDER"
    assert availability(client, tt)["sold"] == 0


def test_admin_sweep_and_timings(client):
    assert client.post("/api/admin/sweep").status_code == 401

    r = client.post("/api/admin/sweep", headers=ADMIN)
    assert r.status_code == 200
    assert set(r.json()) == {"expired_reservations", "expired_orders",
                             "purged_callback_keys"}

    r = client.get("/api/admin/timings", headers=ADMIN)
    kinds = {row["kind"] for row in r.json()["items"]}
    assert "reservation.create" in kinds
