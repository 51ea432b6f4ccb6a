from abc import ABC, abstractmethod
from typing import Dict, Optional, Tuple, TypedDict
from fastapi import HTTPException
import hashlib
import hmac
import json
import uuid

from .config import APP_BASE_URL, MIDTRANS_SERVER_KEY, XENDIT_WEBHOOK_TOKEN
from .errors import InvalidOrder
from .helpers import now_ts
from .model.db import Transaction
from .model.states import PaymentStatus

S = PaymentStatus


# ----------------------------
# Payment Adapter Interface
# ----------------------------
class CreateSessionResult(TypedDict):
    payment_id: str
    redirect_url: Optional[str]
    instructions: Optional[dict]


class PaymentAdapter(ABC):
    name: str = ""
    payment_method: str = ""
    # gateway vocabulary (lower case) -> internal status
    STATUS_TABLE: Dict[str, PaymentStatus] = {}
    # transactions wait for an admin instead of a webhook
    manual: bool = False

    @abstractmethod
    def create_session(self, transaction: Transaction) -> CreateSessionResult:
        ...

    @abstractmethod
    def verify_webhook(self, payload: bytes, headers: dict) -> dict: ...

    # raw gateway status string
    @abstractmethod
    def event_status(self, event: dict) -> str: ...

    # (payment reference, idempotency_key)
    @abstractmethod
    def event_ids(self, event: dict) -> Tuple[str, Optional[str]]: ...

    def map_status(self, external: str) -> PaymentStatus:
        # unknown vocabulary never drives a transition
        return self.STATUS_TABLE.get((external or "").strip().lower(),
                                     S.PENDING)

    def _checkout_url(self, transaction: Transaction, payment_id: str) -> str:
        return (f"{APP_BASE_URL}/checkout/{transaction.id}"
                f"?payment={payment_id}")

    @staticmethod
    def _parse(payload: bytes) -> dict:
        try:
            event = json.loads(payload.decode())
        except (json.JSONDecodeError, UnicodeDecodeError):
            raise HTTPException(status_code=400, detail="Invalid JSON")
        if not isinstance(event, dict):
            raise HTTPException(status_code=400, detail="Invalid JSON")
        return event


# ----------------------------
# Xendit (primary)
# ----------------------------
class XenditGateway(PaymentAdapter):
    name = "xendit"
    payment_method = "XENDIT"
    STATUS_TABLE = {
        "succeeded": S.SUCCESS,
        "paid": S.SUCCESS,
        "pending": S.PENDING,
        "awaiting_capture": S.PENDING,
        "failed": S.FAILED,
        "cancelled": S.FAILED,
        "expired": S.EXPIRED,
        "refunded": S.REFUNDED,
    }

    def __init__(self, webhook_token: str = XENDIT_WEBHOOK_TOKEN) -> None:
        self.webhook_token = webhook_token

    def create_session(self, transaction: Transaction) -> CreateSessionResult:
        payment_id = f"xnd_{uuid.uuid4().hex}"
        return {
            "payment_id": payment_id,
            "redirect_url": self._checkout_url(transaction, payment_id),
            "instructions": None,
        }

    def sign(self, payload: bytes) -> str:
        return hmac.new(self.webhook_token.encode(), payload,
                        hashlib.sha256).hexdigest()

    def verify_webhook(self, payload: bytes, headers: dict) -> dict:
        # signature checks are off until a token is configured
        if self.webhook_token:
            sig = headers.get("x-callback-token")
            if not sig or not hmac.compare_digest(self.sign(payload), sig):
                raise HTTPException(status_code=400,
                                    detail="Invalid signature")
        event = self._parse(payload)
        if headers.get("webhook-id"):
            event.setdefault("webhook_id", headers["webhook-id"])
        return event

    def event_status(self, event: dict) -> str:
        return str(event.get("status", ""))

    def event_ids(self, event: dict) -> Tuple[str, Optional[str]]:
        return (
            str(event.get("id") or ""),
            event.get("webhook_id") or event.get("event_id"),
        )


# ----------------------------
# Midtrans
# ----------------------------
class MidtransGateway(PaymentAdapter):
    name = "midtrans"
    payment_method = "MIDTRANS"
    STATUS_TABLE = {
        "capture": S.SUCCESS,
        "settlement": S.SUCCESS,
        "pending": S.PENDING,
        "deny": S.FAILED,
        "cancel": S.FAILED,
        "failure": S.FAILED,
        "expire": S.EXPIRED,
        "refund": S.REFUNDED,
        "partial_refund": S.REFUNDED,
    }

    def __init__(self, server_key: str = MIDTRANS_SERVER_KEY) -> None:
        self.server_key = server_key

    def create_session(self, transaction: Transaction) -> CreateSessionResult:
        # ORDER-{orderId}-{timestamp}
        payment_id = f"ORDER-{transaction.id}-{int(now_ts() * 1000)}"
        return {
            "payment_id": payment_id,
            "redirect_url": self._checkout_url(transaction, payment_id),
            "instructions": None,
        }

    def signature(self, order_id: str, status_code: str,
                  gross_amount: str) -> str:
        raw = f"{order_id}{status_code}{gross_amount}{self.server_key}"
        return hashlib.sha512(raw.encode()).hexdigest()

    def verify_webhook(self, payload: bytes, headers: dict) -> dict:
        event = self._parse(payload)
        if not event.get("transaction_status") or not event.get("order_id"):
            raise HTTPException(status_code=400,
                                detail="Invalid notification data")
        if self.server_key:
            expected = self.signature(
                str(event.get("order_id", "")),
                str(event.get("status_code", "")),
                str(event.get("gross_amount", "")),
            )
            sig = str(event.get("signature_key", ""))
            if not hmac.compare_digest(expected, sig):
                raise HTTPException(status_code=400,
                                    detail="Invalid signature")
        return event

    def event_status(self, event: dict) -> str:
        return str(event.get("transaction_status", ""))

    def event_ids(self, event: dict) -> Tuple[str, Optional[str]]:
        # one transaction_id spans all notifications of a payment
        txid = event.get("transaction_id")
        key = f"{txid}:{self.event_status(event)}" if txid else None
        return str(event.get("order_id") or ""), key


# ----------------------------
# Manual / offline bank transfer
# ----------------------------
class ManualGateway(PaymentAdapter):
    name = "manual"
    payment_method = "MANUAL_PAYMENT"
    manual = True
    STATUS_TABLE = {
        "approved": S.SUCCESS,
        "verified": S.SUCCESS,
        "pending": S.PENDING,
        "rejected": S.FAILED,
        "expired": S.EXPIRED,
        "refunded": S.REFUNDED,
    }

    def create_session(self, transaction: Transaction) -> CreateSessionResult:
        payment_id = f"MAN-{uuid.uuid4().hex[:16].upper()}"
        return {
            "payment_id": payment_id,
            "redirect_url": None,
            "instructions": {
                "method": "BANK_TRANSFER",
                "amount": transaction.amount,
                "currency": transaction.currency,
                "reference": transaction.invoice_number,
                "note": "Upload the transfer receipt; an admin will "
                        "verify the payment.",
            },
        }

    def verify_webhook(self, payload: bytes, headers: dict) -> dict:
        raise HTTPException(status_code=404,
                            detail="manual payments have no webhook")

    def event_status(self, event: dict) -> str:
        return str(event.get("decision", ""))

    def event_ids(self, event: dict) -> Tuple[str, Optional[str]]:
        return str(event.get("payment_id") or ""), None


GATEWAYS: Dict[str, PaymentAdapter] = {
    g.name: g for g in (XenditGateway(), MidtransGateway(), ManualGateway())
}


def get_gateway(name: str) -> PaymentAdapter:
    gw = GATEWAYS.get((name or "").lower())
    if gw is None:
        raise InvalidOrder(f"unsupported payment gateway: {name}")
    return gw
