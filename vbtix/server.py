from __future__ import annotations
import sys

import asyncio
import logging
from typing import List, Literal, Optional

import httpx
import redis.asyncio as redis
from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import ORJSONResponse
from pydantic import BaseModel, Field

from .config import (
    ADMIN_TOKEN, DATABASE_URL, DELIVERY_URL, LOG_LEVEL, ORDER_TTL_HOURS,
    REDIS_URL, RESERVATION_MAX_QUANTITY, RESERVATION_MAX_TTL_MINUTES,
    RESERVATION_TTL_MINUTES, SWEEP_INTERVAL_SECONDS,
)
from .delivery import HttpDelivery, LogDelivery, TicketDelivery
from .errors import DomainError, ErrorCode
from .gateways import GATEWAYS, get_gateway
from .helpers import ct_equal, now_ts, to_iso
from .infra.sql import (
    GatedAsyncSession, make_async_engine, open_gated_session,
)
from .infra.timings import snapshot, timeit
from .model import checkout, inventory, reservations, settlement
from .model.callbackgate import (
    BACKEND as GATE_BACKEND, CallbackGate, new_gate,
)
from .model.db import Reservation, create_schema
from .model.identity import buyer_from

logger = logging.getLogger(__name__)

if DATABASE_URL is None:
    print("NEED DATABASE_URL! e.g. sqlite:///./vbtix.db")
    sys.exit(1)

# webhook keys are kept a week; gateways stop retrying long before that
CALLBACK_KEY_RETENTION_SECONDS = 7 * 24 * 3600

engine, SessionAsync, _, gated = make_async_engine(DATABASE_URL)


async def get_db() -> GatedAsyncSession:
    async with open_gated_session(SessionAsync, gated) as db:
        yield db


async def callback_gate() -> CallbackGate:
    if GATE_BACKEND == "redis":
        yield new_gate(r=app.state.redis)
    else:
        async with open_gated_session(SessionAsync, gated) as db:
            yield new_gate(db=db)


def ticket_delivery() -> TicketDelivery:
    return app.state.delivery


app = FastAPI(
    title="VBTix",
    default_response_class=ORJSONResponse,
)


# ----------------------------
# Error mapping
# ----------------------------
HTTP_STATUS = {
    ErrorCode.TICKET_TYPE_NOT_FOUND: 404,
    ErrorCode.RESERVATION_NOT_FOUND: 404,
    ErrorCode.TRANSACTION_NOT_FOUND: 404,
    ErrorCode.PAYMENT_NOT_FOUND: 404,
    ErrorCode.OWNERSHIP_MISMATCH: 403,
    ErrorCode.RESERVATION_EXPIRED: 409,
    ErrorCode.INVALID_STATE_TRANSITION: 409,
    ErrorCode.INSUFFICIENT_INVENTORY: 409,
    ErrorCode.DUPLICATE_RESERVATION: 409,
    ErrorCode.RESERVATION_ALREADY_CHECKED_OUT: 409,
    ErrorCode.EXCEEDS_MAX_PER_PURCHASE: 400,
    ErrorCode.INVALID_ORDER: 400,
    ErrorCode.LEDGER_INVARIANT_VIOLATION: 500,
}


@app.exception_handler(DomainError)
async def _domain_error(request: Request, exc: DomainError):
    body = {"error": exc.code.value, "detail": exc.message}
    for attr in ("requested", "available", "max_per_purchase",
                 "transaction_id"):
        if hasattr(exc, attr):
            body[attr] = getattr(exc, attr)
    return ORJSONResponse(status_code=HTTP_STATUS.get(exc.code, 400),
                          content=body)


# ---
# startup / shutdown
# ---
@app.on_event("startup")
async def _say_hello():
    logging.basicConfig(
        level=LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logger.info("VBTix is starting up (callback gate: %s, gateways: %s)",
                GATE_BACKEND, ", ".join(sorted(GATEWAYS)))


@app.on_event("startup")
async def _db_init():
    async with engine.begin() as conn:
        await create_schema(conn)


@app.on_event("startup")
async def _http_client_start():
    app.state.http = httpx.AsyncClient(
        timeout=5.0,
        limits=httpx.Limits(
            max_connections=64, max_keepalive_connections=64
        ),
    )
    if DELIVERY_URL:
        app.state.delivery = HttpDelivery(DELIVERY_URL, app.state.http)
    else:
        app.state.delivery = LogDelivery()


@app.on_event("startup")
async def _redis_start():
    app.state.redis = None
    if GATE_BACKEND == "redis":
        app.state.redis = redis.from_url(
            REDIS_URL,
            decode_responses=True,
            socket_timeout=2.0,
            socket_connect_timeout=2.0,
            retry_on_timeout=True,
        )


async def run_sweep(now: Optional[float] = None) -> dict:
    """Expire stale holds and overdue orders; drop old webhook keys."""
    now = now if now is not None else now_ts()
    async with open_gated_session(SessionAsync, gated) as db:
        expired_reservations = await reservations.expire_stale(db, now=now)
        expired_orders = await settlement.expire_overdue_orders(
            db, ORDER_TTL_HOURS * 3600, now=now
        )
        if GATE_BACKEND == "redis":
            gate = new_gate(r=app.state.redis)
        else:
            gate = new_gate(db=db)
        purged = await gate.purge(now - CALLBACK_KEY_RETENTION_SECONDS)
    return {
        "expired_reservations": expired_reservations,
        "expired_orders": expired_orders,
        "purged_callback_keys": purged,
    }


async def _sweep_forever(interval: float):
    while True:
        await asyncio.sleep(interval)
        try:
            async with timeit("sweep.run"):
                await run_sweep()
        except Exception:
            # next tick retries
            logger.exception("periodic sweep failed")


@app.on_event("startup")
async def _sweeper_start():
    app.state.sweeper = None
    if SWEEP_INTERVAL_SECONDS > 0:
        app.state.sweeper = asyncio.create_task(
            _sweep_forever(SWEEP_INTERVAL_SECONDS)
        )


@app.on_event("shutdown")
async def _sweeper_stop():
    task = getattr(app.state, "sweeper", None)
    if task is not None:
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        app.state.sweeper = None


@app.on_event("shutdown")
async def _http_client_stop():
    http = getattr(app.state, "http", None)
    if http is not None:
        await http.aclose()
        app.state.http = None


@app.on_event("shutdown")
async def _redis_stop():
    r = getattr(app.state, "redis", None)
    if r is not None:
        await r.close()
        app.state.redis = None


@app.on_event("shutdown")
async def _db_stop():
    await engine.dispose()


# ----------------------------
# Helpers
# ----------------------------
def require_admin(x_admin_token: Optional[str] = Header(None)) -> None:
    if not x_admin_token or not ct_equal(x_admin_token, ADMIN_TOKEN):
        raise HTTPException(status_code=401, detail="admin token required")


def reservation_out(r: Reservation) -> dict:
    meta = r.meta or {}
    return {
        "id": r.id,
        "ticket_type_id": r.ticket_type_id,
        "quantity": r.quantity,
        "session_id": r.session_id,
        "status": r.status,
        "expires_at": to_iso(r.expires_at),
        "created_at": to_iso(r.created_at),
        "transaction_id": r.transaction_id,
        "event_id": meta.get("event_id"),
        "ticket_type_name": meta.get("ticket_type_name"),
        "ticket_type_price": meta.get("ticket_type_price"),
    }


def checkout_out(result: checkout.CheckoutResult) -> dict:
    return {
        "transaction_id": result.transaction_id,
        "invoice_number": result.invoice_number,
        "amount": result.amount,
        "currency": result.currency,
        "status": result.status,
        "gateway": result.gateway,
        "payment_id": result.payment_id,
        "redirect_url": result.redirect_url,
        "instructions": result.instructions,
        "ticket_ids": result.ticket_ids,
        "reservation_id": result.reservation_id,
    }


def settlement_out(result: settlement.SettlementResult) -> dict:
    return {
        "transaction_id": result.transaction_id,
        "status": result.status,
        "duplicate": result.duplicate,
        "unfulfilled": result.unfulfilled,
        "ticket_ids": result.ticket_ids,
    }


# ----------------------------
# Request bodies
# ----------------------------
class ReservationIn(BaseModel):
    ticket_type_id: str
    quantity: int = Field(..., gt=0, le=RESERVATION_MAX_QUANTITY)
    session_id: str = Field(..., min_length=1)
    expiration_minutes: int = Field(RESERVATION_TTL_MINUTES, gt=0,
                                    le=RESERVATION_MAX_TTL_MINUTES)


class SessionIn(BaseModel):
    session_id: str = Field(..., min_length=1)


class CheckoutReservationIn(BaseModel):
    session_id: str = Field(..., min_length=1)
    user_id: Optional[str] = None
    gateway: str = "xendit"
    customer_email: Optional[str] = None


class ItemIn(BaseModel):
    ticket_type_id: str
    quantity: int = Field(..., gt=0, le=RESERVATION_MAX_QUANTITY)


class CheckoutDirectIn(BaseModel):
    items: List[ItemIn] = Field(..., min_length=1)
    session_id: Optional[str] = None
    user_id: Optional[str] = None
    gateway: str = "xendit"
    customer_email: Optional[str] = None


class VerifyIn(BaseModel):
    decision: Literal["approved", "rejected"]
    admin_id: Optional[str] = None
    notes: Optional[str] = None


# ----------------------------
# API: Inventory
# ----------------------------
@app.get("/api/ticket-types/{ticket_type_id}/availability")
async def get_availability(ticket_type_id: str,
                           db: GatedAsyncSession = Depends(get_db)):
    async with timeit("ledger.availability"):
        counters = await inventory.availability(db, ticket_type_id)
    return {"ticket_type_id": ticket_type_id, **counters}


# ----------------------------
# API: Reservations
# ----------------------------
@app.post("/api/reservations", status_code=201)
async def create_reservation(body: ReservationIn,
                             db: GatedAsyncSession = Depends(get_db)):
    r = await reservations.create(
        db, body.ticket_type_id, body.quantity, body.session_id,
        body.expiration_minutes,
    )
    return reservation_out(r)


@app.get("/api/reservations")
async def list_reservations(session_id: str,
                            db: GatedAsyncSession = Depends(get_db)):
    rows = await reservations.list_active(db, session_id)
    return {"items": [reservation_out(r) for r in rows]}


@app.delete("/api/reservations")
async def cancel_session_reservations(
    session_id: str, db: GatedAsyncSession = Depends(get_db),
):
    n = await reservations.cancel_all_for_session(db, session_id)
    return {"ok": True, "cancelled": n}


@app.get("/api/reservations/{reservation_id}")
async def get_reservation(reservation_id: str,
                          db: GatedAsyncSession = Depends(get_db)):
    return reservation_out(await reservations.get(db, reservation_id))


@app.post("/api/reservations/{reservation_id}/activate")
async def activate_reservation(reservation_id: str, body: SessionIn,
                               db: GatedAsyncSession = Depends(get_db)):
    r = await reservations.activate(db, reservation_id, body.session_id)
    return reservation_out(r)


@app.post("/api/reservations/{reservation_id}/cancel")
async def cancel_reservation(reservation_id: str, body: SessionIn,
                             db: GatedAsyncSession = Depends(get_db)):
    r = await reservations.cancel(db, reservation_id, body.session_id)
    return reservation_out(r)


# ----------------------------
# API: Checkout
# ----------------------------
@app.post("/api/reservations/{reservation_id}/checkout", status_code=201)
async def checkout_reservation(reservation_id: str,
                               body: CheckoutReservationIn,
                               db: GatedAsyncSession = Depends(get_db)):
    gateway = get_gateway(body.gateway)
    buyer = buyer_from(body.user_id, body.session_id)
    result = await checkout.checkout_from_reservation(
        db, reservation_id, body.session_id, buyer, gateway,
        customer_email=body.customer_email,
    )
    return checkout_out(result)


@app.post("/api/checkout", status_code=201)
async def checkout_direct(body: CheckoutDirectIn,
                          db: GatedAsyncSession = Depends(get_db)):
    gateway = get_gateway(body.gateway)
    try:
        buyer = buyer_from(body.user_id, body.session_id)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    result = await checkout.checkout_direct(
        db, buyer, [(it.ticket_type_id, it.quantity) for it in body.items],
        gateway, customer_email=body.customer_email,
    )
    return checkout_out(result)


# ----------------------------
# API: Order status (polled by success page)
# ----------------------------
@app.get("/api/orders/{order_id}")
async def get_order(order_id: str, db: GatedAsyncSession = Depends(get_db)):
    async with timeit("db.get_order"):
        order = await settlement.get_order(db, order_id)
    tx = order["transaction"]
    payment = order["payment"]
    return {
        "order_id": tx.id,
        "invoice_number": tx.invoice_number,
        "status": tx.status,
        "amount": tx.amount,
        "currency": tx.currency,
        "payment_method": tx.payment_method,
        "reservation_id": tx.reservation_id,
        "inventory_state": tx.inventory_state,
        "unfulfilled": bool((tx.details or {}).get("unfulfilled")),
        "created_at": to_iso(tx.created_at),
        "paid_at": to_iso(tx.paid_at),
        "items": [
            {"ticket_type_id": it.ticket_type_id, "quantity": it.quantity,
             "price": it.price}
            for it in order["items"]
        ],
        "tickets": [
            {"id": t.id, "ticket_type_id": t.ticket_type_id,
             "qr_code": t.qr_code, "status": t.status}
            for t in order["tickets"]
        ],
        "payment": None if payment is None else {
            "gateway": payment.gateway,
            "payment_id": payment.payment_id,
            "status": payment.status,
            "received_at": to_iso(payment.received_at),
        },
    }


# ----------------------------
# Webhook endpoint (one per gateway)
# ----------------------------
@app.post("/payments/webhook/{gateway_name}")
async def payments_webhook(
    gateway_name: str,
    request: Request,
    db: GatedAsyncSession = Depends(get_db),
    gate: CallbackGate = Depends(callback_gate),
    delivery: TicketDelivery = Depends(ticket_delivery),
):
    if gateway_name not in GATEWAYS:
        raise HTTPException(404, detail="unknown gateway")
    gateway = GATEWAYS[gateway_name]

    payload = await request.body()
    headers = dict(request.headers)

    event = gateway.verify_webhook(payload, headers)
    ref, idem = gateway.event_ids(event)
    if not ref:
        raise HTTPException(400, detail="missing payment reference")

    async with timeit("callbackgate.is_seen"):
        if await gate.is_seen(idem):
            return {"ok": True, "idempotent": True}

    result = await settlement.apply_payment_callback(
        db, gateway, ref, gateway.event_status(event), event,
        delivery=delivery,
    )

    async with timeit("callbackgate.mark_seen"):
        await gate.mark_seen(idem)

    if result.duplicate:
        return {"ok": True, "idempotent": True, "status": result.status}
    return {"ok": True, **settlement_out(result)}


# ----------------------------
# Admin
# ----------------------------
@app.post("/api/admin/orders/{order_id}/verify",
          dependencies=[Depends(require_admin)])
async def admin_verify_order(
    order_id: str, body: VerifyIn,
    db: GatedAsyncSession = Depends(get_db),
    delivery: TicketDelivery = Depends(ticket_delivery),
):
    result = await settlement.verify_manual_payment(
        db, GATEWAYS["manual"], order_id, body.decision,
        admin_id=body.admin_id, notes=body.notes, delivery=delivery,
    )
    return settlement_out(result)


@app.post("/api/admin/sweep", dependencies=[Depends(require_admin)])
async def admin_sweep():
    async with timeit("sweep.run"):
        return await run_sweep()


@app.get("/api/admin/timings", dependencies=[Depends(require_admin)])
async def admin_timings():
    return {"items": snapshot()}
