# model/checkout.py
"""
Checkout: turn a reservation or a direct cart into a PENDING transaction with
PENDING tickets and a PENDING payment record, in one unit of work.

Capacity for the order is already in `reserved` when this returns, either
held by the linked reservation (inventory_state RESERVATION) or taken by the
order itself (inventory_state HELD). Settlement decides where it goes next.
"""

from __future__ import annotations
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import (
    InvalidOrder, ReservationAlreadyCheckedOut, ReservationExpired,
    TicketTypeNotFound,
)
from ..gateways import PaymentAdapter
from ..helpers import new_id, new_invoice_number, new_qr_code, now_ts
from ..infra.sql import GatedAsyncSession
from ..infra.timings import timeit
from . import inventory
from .db import (
    OrderItem, Payment, Reservation, Ticket, TicketType, Transaction,
    swap_status,
)
from .identity import Buyer, buyer_columns
from .reservations import _check_owner, _expire_if_stale, _load
from .states import (
    InventoryState, PaymentStatus, ReservationStatus, TicketStatus,
    TransactionStatus, transition,
)

logger = logging.getLogger(__name__)


@dataclass
class CheckoutResult:
    transaction_id: str
    invoice_number: str
    amount: int
    currency: str
    status: str
    payment_id: str
    gateway: str
    redirect_url: Optional[str] = None
    instructions: Optional[dict] = None
    ticket_ids: List[str] = field(default_factory=list)
    reservation_id: Optional[str] = None


# ------------------------------------------------------------------------------
# Internals
# ------------------------------------------------------------------------------

async def _ticket_type(s: AsyncSession, ticket_type_id: str) -> TicketType:
    tt = await s.get(TicketType, ticket_type_id)
    if tt is None:
        raise TicketTypeNotFound(ticket_type_id)
    return tt


async def _open_order(
    s: AsyncSession,
    *,
    buyer: Buyer,
    gateway: PaymentAdapter,
    lines: Sequence[Tuple[TicketType, int]],
    inventory_state: InventoryState,
    customer_email: Optional[str],
    reservation_id: Optional[str],
    now: float,
) -> CheckoutResult:
    """Insert transaction, order items, tickets and payment."""
    event_ids = {tt.event_id for tt, _ in lines}
    if len(event_ids) != 1:
        raise InvalidOrder("All tickets of an order must be for one event")
    currencies = {tt.currency for tt, _ in lines}
    if len(currencies) != 1:
        raise InvalidOrder("All tickets of an order must share a currency")

    user_id, guest_session_id = buyer_columns(buyer)
    details: Dict[str, object] = {}
    if gateway.manual:
        details["awaiting_verification"] = True

    tx = Transaction(
        id=new_id(),
        user_id=user_id,
        guest_session_id=guest_session_id,
        event_id=event_ids.pop(),
        # price snapshot; never recomputed later
        amount=sum(tt.price * qty for tt, qty in lines),
        currency=currencies.pop(),
        status=TransactionStatus.PENDING.value,
        payment_method=gateway.payment_method,
        invoice_number=new_invoice_number(now),
        customer_email=customer_email,
        reservation_id=reservation_id,
        inventory_state=inventory_state.value,
        details=details,
        created_at=now,
        updated_at=now,
    )
    s.add(tx)
    # children reference the row; no relationships to order the flush
    await s.flush()

    ticket_ids = []
    for tt, qty in lines:
        s.add(OrderItem(transaction_id=tx.id, ticket_type_id=tt.id,
                        quantity=qty, price=tt.price))
        for _ in range(qty):
            t = Ticket(
                id=new_id(),
                ticket_type_id=tt.id,
                transaction_id=tx.id,
                qr_code=new_qr_code(),
                status=TicketStatus.PENDING.value,
                checked_in=False,
                created_at=now,
                updated_at=now,
            )
            s.add(t)
            ticket_ids.append(t.id)

    session = gateway.create_session(tx)
    s.add(Payment(
        id=new_id(),
        order_id=tx.id,
        gateway=gateway.name,
        amount=tx.amount,
        status=PaymentStatus.PENDING.value,
        payment_id=session["payment_id"],
        created_at=now,
        updated_at=now,
    ))

    return CheckoutResult(
        transaction_id=tx.id,
        invoice_number=tx.invoice_number,
        amount=tx.amount,
        currency=tx.currency,
        status=tx.status,
        payment_id=session["payment_id"],
        gateway=gateway.name,
        redirect_url=session.get("redirect_url"),
        instructions=session.get("instructions"),
        ticket_ids=ticket_ids,
        reservation_id=reservation_id,
    )


# ------------------------------------------------------------------------------
# Public API
# ------------------------------------------------------------------------------

async def checkout_from_reservation(
    db: GatedAsyncSession,
    reservation_id: str,
    session_id: str,
    buyer: Buyer,
    gateway: PaymentAdapter,
    customer_email: Optional[str] = None,
    now: Optional[float] = None,
) -> CheckoutResult:
    now = now if now is not None else now_ts()
    async with timeit("checkout.reservation"):
        async with db.gated():
            async with db.session.begin():
                s = db.session
                r = await _load(s, reservation_id, for_update=True)
                _check_owner(r, session_id)
                expired = await _expire_if_stale(s, r, now)
                if not expired:
                    result = await _checkout_reservation(
                        s, r, buyer, gateway, customer_email, now
                    )
    if expired:
        raise ReservationExpired(reservation_id)
    logger.info("checkout %s from reservation %s via %s, amount %d",
                result.transaction_id, reservation_id, gateway.name,
                result.amount)
    return result


async def _checkout_reservation(
    s: AsyncSession, r: Reservation, buyer: Buyer, gateway: PaymentAdapter,
    customer_email: Optional[str], now: float,
) -> CheckoutResult:
    if r.transaction_id is not None:
        raise ReservationAlreadyCheckedOut(r.id, r.transaction_id)
    if r.status == ReservationStatus.PENDING.value:
        transition(ReservationStatus(r.status), ReservationStatus.ACTIVE)
        await swap_status(s, Reservation.status, r.id,
                          ReservationStatus.ACTIVE, updated_at=now)
        r.status = ReservationStatus.ACTIVE.value
    elif r.status != ReservationStatus.ACTIVE.value:
        transition(ReservationStatus(r.status), ReservationStatus.CONVERTED)

    tt = await _ticket_type(s, r.ticket_type_id)
    result = await _open_order(
        s,
        buyer=buyer,
        gateway=gateway,
        lines=[(tt, r.quantity)],
        inventory_state=InventoryState.RESERVATION,
        customer_email=customer_email,
        reservation_id=r.id,
        now=now,
    )
    meta = dict(r.meta or {})
    meta["transaction_id"] = result.transaction_id
    r.transaction_id = result.transaction_id
    r.meta = meta
    r.updated_at = now
    return result


async def checkout_direct(
    db: GatedAsyncSession,
    buyer: Buyer,
    items: Sequence[Tuple[str, int]],
    gateway: PaymentAdapter,
    customer_email: Optional[str] = None,
    now: Optional[float] = None,
) -> CheckoutResult:
    """
    Direct purchase without a prior reservation. Every item is reserved in
    the same unit of work; any rejection aborts the whole order.
    """
    if not items:
        raise InvalidOrder("An order needs at least one item")
    merged: Dict[str, int] = {}
    for ticket_type_id, qty in items:
        if qty <= 0:
            raise InvalidOrder("Quantity must be a positive integer")
        merged[ticket_type_id] = merged.get(ticket_type_id, 0) + qty

    now = now if now is not None else now_ts()
    async with timeit("checkout.direct"):
        async with db.gated():
            async with db.session.begin():
                s = db.session
                lines = []
                # sorted so concurrent carts lock rows in the same order
                for ticket_type_id in sorted(merged):
                    qty = merged[ticket_type_id]
                    await inventory._try_reserve(s, ticket_type_id, qty)
                    lines.append((await _ticket_type(s, ticket_type_id), qty))
                result = await _open_order(
                    s,
                    buyer=buyer,
                    gateway=gateway,
                    lines=lines,
                    inventory_state=InventoryState.HELD,
                    customer_email=customer_email,
                    reservation_id=None,
                    now=now,
                )
    logger.info("checkout %s direct via %s, amount %d", result.transaction_id,
                gateway.name, result.amount)
    return result
