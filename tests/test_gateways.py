import hashlib
import json

import pytest
from fastapi import HTTPException

from vbtix.errors import InvalidOrder
from vbtix.gateways import (
    ManualGateway, MidtransGateway, XenditGateway, get_gateway,
)
from vbtix.model.states import PaymentStatus as P


@pytest.mark.parametrize("external, expected", [
    ("PAID", P.SUCCESS),
    ("succeeded", P.SUCCESS),
    ("FAILED", P.FAILED),
    ("cancelled", P.FAILED),
    ("EXPIRED", P.EXPIRED),
    ("refunded", P.REFUNDED),
    ("pending", P.PENDING),
    ("", P.PENDING),
    ("chargeback", P.PENDING),
])
def test_xendit_status_table(external, expected):
    assert XenditGateway().map_status(external) == expected


@pytest.mark.parametrize("external, expected", [
    ("settlement", P.SUCCESS),
    ("capture", P.SUCCESS),
    ("deny", P.FAILED),
    ("cancel", P.FAILED),
    ("expire", P.EXPIRED),
    ("refund", P.REFUNDED),
    ("pending", P.PENDING),
])
def test_midtrans_status_table(external, expected):
    assert MidtransGateway().map_status(external) == expected


def test_manual_vocabulary_is_separate():
    gw = ManualGateway()
    assert gw.map_status("approved") == P.SUCCESS
    assert gw.map_status("rejected") == P.FAILED
    # another gateway's words mean nothing here
    assert gw.map_status("settlement") == P.PENDING


def test_xendit_signature_required_when_token_set():
    gw = XenditGateway(webhook_token="secret")
    body = json.dumps({"id": "xnd_1", "status": "PAID"}).encode()

    event = gw.verify_webhook(body, {"x-callback-token": gw.sign(body),
                                     "webhook-id": "wh-1"})
    assert gw.event_ids(event) == ("xnd_1", "wh-1")
    assert gw.event_status(event) == "PAID"

    with pytest.raises(HTTPException) as ei:
        gw.verify_webhook(body, {"x-callback-token": "forged"})
    assert ei.value.status_code == 400
    with pytest.raises(HTTPException):
        gw.verify_webhook(body, {})


def test_xendit_without_token_accepts_unsigned():
    gw = XenditGateway(webhook_token="")
    event = gw.verify_webhook(b'{"id": "xnd_2", "status": "FAILED"}', {})
    assert gw.event_ids(event) == ("xnd_2", None)


def test_invalid_json_is_rejected():
    gw = XenditGateway(webhook_token="")
    for body in (b"not json", b"[1, 2]"):
        with pytest.raises(HTTPException) as ei:
            gw.verify_webhook(body, {})
        assert ei.value.status_code == 400


def midtrans_event(gw, **kw):
    event = {
        "order_id": "ORDER-tx1-1700000000000",
        "status_code": "200",
        "gross_amount": "150000.00",
        "transaction_status": "settlement",
        "transaction_id": "mt-1",
    }
    event.update(kw)
    event["signature_key"] = gw.signature(
        event["order_id"], event["status_code"], event["gross_amount"]
    )
    return event


def test_midtrans_signature():
    gw = MidtransGateway(server_key="server-key")
    event = midtrans_event(gw)
    raw = (event["order_id"] + event["status_code"] + event["gross_amount"]
           + "server-key")
    assert event["signature_key"] == hashlib.sha512(raw.encode()).hexdigest()

    parsed = gw.verify_webhook(json.dumps(event).encode(), {})
    assert gw.event_status(parsed) == "settlement"
    assert gw.event_ids(parsed) == (event["order_id"], "mt-1:settlement")

    event["gross_amount"] = "1.00"
    with pytest.raises(HTTPException):
        gw.verify_webhook(json.dumps(event).encode(), {})


def test_midtrans_requires_status_and_order():
    gw = MidtransGateway(server_key="")
    with pytest.raises(HTTPException):
        gw.verify_webhook(b'{"order_id": "ORDER-1"}', {})


def test_manual_gateway_has_no_webhook():
    with pytest.raises(HTTPException) as ei:
        ManualGateway().verify_webhook(b"{}", {})
    assert ei.value.status_code == 404


def test_gateway_registry():
    assert get_gateway("XENDIT").name == "xendit"
    assert get_gateway("manual").manual is True
    with pytest.raises(InvalidOrder):
        get_gateway("paypal")
