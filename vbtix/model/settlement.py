# model/settlement.py
"""
Settlement: apply an asynchronous payment outcome to a transaction, its
tickets and the inventory ledger.

- Only a PENDING transaction moves, and the move is a compare-and-swap, so a
  replayed or concurrent callback finds a terminal row and only refreshes
  the payment's audit payload.
- Where the order's capacity goes is decided by its inventory_state marker,
  itself swapped exactly once (HELD/RESERVATION -> FINALIZED | RELEASED |
  UNFULFILLED). Reservation conversion and direct settlement therefore never
  both count the same units as sold.
- Delivery runs after commit and cannot undo it.
"""

from __future__ import annotations
import logging
from dataclasses import dataclass, field
from typing import Any, List, Optional

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from ..delivery import DeliveryRequest, TicketDelivery
from ..errors import (
    ExceedsMaxPerPurchase, InsufficientInventory, InvalidOrder,
    PaymentNotFound, TicketTypeNotFound, TransactionNotFound,
)
from ..gateways import PaymentAdapter
from ..helpers import now_ts
from ..infra.sql import GatedAsyncSession
from ..infra.timings import timeit
from . import inventory
from .db import (
    OrderItem, Payment, Reservation, Ticket, Transaction, select_fresh,
    swap_status,
)
from .reservations import _convert, _end_hold, is_live, is_stale
from .states import (
    InventoryState, PaymentStatus, ReservationStatus, TicketStatus,
    TransactionStatus, is_terminal,
)

logger = logging.getLogger(__name__)


@dataclass
class SettlementResult:
    transaction_id: str
    status: str
    duplicate: bool = False
    unfulfilled: bool = False
    ticket_ids: List[str] = field(default_factory=list)


# ------------------------------------------------------------------------------
# Internals (UN-GATED: callers own the transaction)
# ------------------------------------------------------------------------------

async def _load_transaction(s: AsyncSession, transaction_id: str,
                            for_update: bool = True) -> Transaction:
    stmt = select_fresh(Transaction).where(Transaction.id == transaction_id)
    if for_update:
        stmt = stmt.with_for_update()
    tx = (await s.execute(stmt)).scalar_one_or_none()
    if tx is None:
        raise TransactionNotFound(transaction_id)
    return tx


async def _items(s: AsyncSession, transaction_id: str) -> List[OrderItem]:
    return list((await s.execute(
        select_fresh(OrderItem)
        .where(OrderItem.transaction_id == transaction_id)
        .order_by(OrderItem.ticket_type_id)
    )).scalars().all())


async def _set_tickets(s: AsyncSession, transaction_id: str,
                       target: TicketStatus, now: float) -> List[str]:
    # tickets only leave PENDING together with their transaction
    res = await s.execute(
        update(Ticket)
        .where(Ticket.transaction_id == transaction_id,
               Ticket.status == TicketStatus.PENDING.value)
        .values(status=target.value, updated_at=now)
        .returning(Ticket.id)
        .execution_options(synchronize_session=False)
    )
    return [row[0] for row in res.all()]


async def _book_late(s: AsyncSession, items: List[OrderItem]) -> bool:
    """
    Paid after the hold lapsed: try to take fresh capacity and sell it in one
    savepoint. Returns False (and leaves the ledger untouched) if any item no
    longer fits.
    """
    try:
        async with s.begin_nested():
            for it in items:
                await inventory._try_reserve(s, it.ticket_type_id,
                                             it.quantity)
                await inventory._finalize_sale(s, it.ticket_type_id,
                                               it.quantity)
    except (InsufficientInventory, ExceedsMaxPerPurchase,
            TicketTypeNotFound) as e:
        logger.warning("late booking rejected: %s", e)
        return False
    return True


async def _finalize_inventory(s: AsyncSession, tx: Transaction,
                              now: float) -> bool:
    """SUCCESS side of the ledger. Returns False if the order is unfulfilled."""
    state = InventoryState(tx.inventory_state)

    if state == InventoryState.HELD:
        if await swap_status(s, Transaction.inventory_state, tx.id,
                             InventoryState.FINALIZED, updated_at=now):
            for it in await _items(s, tx.id):
                await inventory._finalize_sale(s, it.ticket_type_id,
                                               it.quantity)
        return True

    if state == InventoryState.RESERVATION:
        r = await s.get(Reservation, tx.reservation_id,
                        with_for_update=True, populate_existing=True)
        if r is not None and is_live(r) and not is_stale(r, now):
            if await _convert(s, r, tx.id, now):
                return True
            await s.refresh(r, ["status"])
        if r is not None and r.status == ReservationStatus.CONVERTED.value:
            return True
        if r is not None and is_stale(r, now):
            await _end_hold(s, r, ReservationStatus.EXPIRED, now)

        logger.warning("transaction %s paid after its reservation lapsed; "
                       "booking late", tx.id)
        if await _book_late(s, await _items(s, tx.id)):
            await swap_status(s, Transaction.inventory_state, tx.id,
                              InventoryState.FINALIZED, updated_at=now)
            return True
        await swap_status(s, Transaction.inventory_state, tx.id,
                          InventoryState.UNFULFILLED, updated_at=now)
        logger.warning("transaction %s paid but sold out; needs a refund",
                       tx.id)
        return False

    # FINALIZED: converted earlier, nothing left to count
    return state != InventoryState.UNFULFILLED


async def _release_inventory(s: AsyncSession, tx: Transaction,
                             now: float) -> None:
    """FAILED/EXPIRED/REFUNDED side of the ledger."""
    state = InventoryState(tx.inventory_state)

    if state == InventoryState.HELD:
        if await swap_status(s, Transaction.inventory_state, tx.id,
                             InventoryState.RELEASED, updated_at=now):
            for it in await _items(s, tx.id):
                await inventory._restore_on_failure(s, it.ticket_type_id,
                                                    it.quantity)
        return

    if state == InventoryState.RESERVATION:
        r = await s.get(Reservation, tx.reservation_id,
                        with_for_update=True, populate_existing=True)
        if r is not None and is_live(r):
            # an expired-but-unswept hold is released as EXPIRED
            target = (ReservationStatus.EXPIRED if is_stale(r, now)
                      else ReservationStatus.CANCELLED)
            await _end_hold(s, r, target, now)
        await swap_status(s, Transaction.inventory_state, tx.id,
                          InventoryState.RELEASED, updated_at=now)
        return

    if state == InventoryState.FINALIZED:
        logger.warning("transaction %s failed after its sale was finalized; "
                       "inventory left as sold", tx.id)


async def _apply_terminal(
    s: AsyncSession,
    tx: Transaction,
    payment: Optional[Payment],
    target: TransactionStatus,
    payload: Any,
    now: float,
) -> Optional[SettlementResult]:
    """
    PENDING -> target for one transaction and everything it owns.
    Returns None if another writer settled the transaction first.
    """
    values = {"updated_at": now}
    if target == TransactionStatus.SUCCESS:
        values["paid_at"] = now
    if not await swap_status(s, Transaction.status, tx.id, target, **values):
        return None
    old_status = tx.status
    tx.status = target.value

    if payment is not None:
        await s.execute(
            update(Payment).where(Payment.id == payment.id).values(
                status=target.value, received_at=now, updated_at=now,
                callback_payload=payload,
            ).execution_options(synchronize_session=False)
        )

    unfulfilled = False
    if target == TransactionStatus.SUCCESS:
        unfulfilled = not await _finalize_inventory(s, tx, now)
        if unfulfilled:
            details = dict(tx.details or {})
            details["unfulfilled"] = True
            await s.execute(
                update(Transaction).where(Transaction.id == tx.id)
                .values(details=details)
                .execution_options(synchronize_session=False)
            )
            ticket_ids = await _set_tickets(s, tx.id, TicketStatus.CANCELLED,
                                            now)
        else:
            ticket_ids = await _set_tickets(s, tx.id, TicketStatus.ACTIVE,
                                            now)
    else:
        ticket_target = (TicketStatus.REFUNDED
                         if target == TransactionStatus.REFUNDED
                         else TicketStatus.CANCELLED)
        ticket_ids = await _set_tickets(s, tx.id, ticket_target, now)
        await _release_inventory(s, tx, now)

    logger.info("transaction %s settled: %s -> %s (%d tickets)", tx.id,
                old_status, target.value, len(ticket_ids))
    return SettlementResult(
        transaction_id=tx.id, status=target.value,
        unfulfilled=unfulfilled,
        ticket_ids=[] if unfulfilled else ticket_ids,
    )


async def _delivery_request(db: GatedAsyncSession,
                            transaction_id: str) -> DeliveryRequest:
    async with db.gated():
        async with db.session.begin():
            tx = await _load_transaction(db.session, transaction_id,
                                         for_update=False)
            tickets = (await db.session.execute(
                select_fresh(Ticket).where(
                    Ticket.transaction_id == transaction_id,
                    Ticket.status == TicketStatus.ACTIVE.value,
                )
            )).scalars().all()
    return {
        "transaction_id": tx.id,
        "invoice_number": tx.invoice_number,
        "event_id": tx.event_id,
        "customer_email": tx.customer_email,
        "tickets": [
            {"id": t.id, "qr_code": t.qr_code,
             "ticket_type_id": t.ticket_type_id}
            for t in tickets
        ],
    }


async def _deliver(db: GatedAsyncSession, delivery: Optional[TicketDelivery],
                   result: SettlementResult) -> None:
    """Best effort; a committed sale stays committed."""
    if delivery is None or result.status != TransactionStatus.SUCCESS.value \
            or result.unfulfilled or result.duplicate:
        return
    try:
        request = await _delivery_request(db, result.transaction_id)
        async with timeit("delivery.deliver"):
            await delivery.deliver(request)
    except Exception:
        logger.exception("ticket delivery failed for transaction %s",
                         result.transaction_id)


# ------------------------------------------------------------------------------
# Public API
# ------------------------------------------------------------------------------

async def apply_payment_callback(
    db: GatedAsyncSession,
    gateway: PaymentAdapter,
    payment_reference: str,
    external_status: str,
    raw_payload: Any,
    delivery: Optional[TicketDelivery] = None,
    now: Optional[float] = None,
) -> SettlementResult:
    now = now if now is not None else now_ts()
    mapped = gateway.map_status(external_status)

    async with timeit("settlement.apply"):
        async with db.gated():
            async with db.session.begin():
                s = db.session
                payment = (await s.execute(
                    select_fresh(Payment).where(
                        Payment.payment_id == payment_reference
                    ).with_for_update()
                )).scalar_one_or_none()
                if payment is None:
                    logger.warning("%s callback for unknown payment %s",
                                   gateway.name, payment_reference)
                    raise PaymentNotFound(payment_reference)

                tx = await _load_transaction(s, payment.order_id)
                result = None
                if not is_terminal(TransactionStatus(tx.status)) \
                        and mapped != PaymentStatus.PENDING:
                    result = await _apply_terminal(
                        s, tx, payment, TransactionStatus(mapped.value),
                        raw_payload, now,
                    )
                if result is None:
                    # duplicate, lost race or still pending: audit only
                    await s.refresh(tx, ["status"])
                    await s.execute(
                        update(Payment).where(Payment.id == payment.id)
                        .values(callback_payload=raw_payload, updated_at=now)
                        .execution_options(synchronize_session=False)
                    )
                    duplicate = is_terminal(TransactionStatus(tx.status)) \
                        or mapped != PaymentStatus.PENDING
                    result = SettlementResult(
                        transaction_id=tx.id, status=tx.status,
                        duplicate=duplicate,
                    )

    if result.duplicate:
        logger.info("duplicate %s callback for payment %s absorbed (%s)",
                    gateway.name, payment_reference, result.status)
    await _deliver(db, delivery, result)
    return result


async def verify_manual_payment(
    db: GatedAsyncSession,
    gateway: PaymentAdapter,
    transaction_id: str,
    decision: str,
    admin_id: Optional[str] = None,
    notes: Optional[str] = None,
    delivery: Optional[TicketDelivery] = None,
    now: Optional[float] = None,
) -> SettlementResult:
    """Admin decision on an offline payment; same path as a webhook."""
    async with db.gated():
        async with db.session.begin():
            tx = await _load_transaction(db.session, transaction_id,
                                         for_update=False)
            payment = (await db.session.execute(
                select_fresh(Payment).where(Payment.order_id == tx.id)
                .order_by(Payment.created_at.desc()).limit(1)
            )).scalar_one_or_none()
            awaiting = bool((tx.details or {}).get("awaiting_verification"))
    if payment is None or payment.gateway != gateway.name or not awaiting:
        raise InvalidOrder("Order is not awaiting manual verification")
    payload = {
        "payment_id": payment.payment_id,
        "decision": decision,
        "admin_id": admin_id,
        "notes": notes,
    }
    return await apply_payment_callback(
        db, gateway, payment.payment_id, decision, payload,
        delivery=delivery, now=now,
    )


async def expire_overdue_orders(
    db: GatedAsyncSession,
    max_age_seconds: float,
    now: Optional[float] = None,
    limit: int = 200,
) -> int:
    """
    Unpaid orders older than `max_age_seconds` go to EXPIRED through the same
    terminal transition as a callback. Manual payments awaiting an admin are
    left alone.
    """
    now = now if now is not None else now_ts()
    cutoff = now - max_age_seconds
    expired = 0
    async with timeit("settlement.expire_overdue"):
        async with db.gated():
            async with db.session.begin():
                s = db.session
                rows = (await s.execute(
                    select_fresh(Transaction).where(
                        Transaction.status == TransactionStatus.PENDING.value,
                        Transaction.created_at < cutoff,
                    ).order_by(Transaction.created_at).limit(limit)
                )).scalars().all()
                for tx in rows:
                    if (tx.details or {}).get("awaiting_verification"):
                        continue
                    payment = (await s.execute(
                        select_fresh(Payment).where(Payment.order_id == tx.id)
                        .order_by(Payment.created_at.desc()).limit(1)
                    )).scalar_one_or_none()
                    res = await _apply_terminal(
                        s, tx, payment, TransactionStatus.EXPIRED,
                        {"reason": "order expired"}, now,
                    )
                    if res is not None:
                        expired += 1
    if expired:
        logger.info("expired %d overdue orders", expired)
    return expired


async def get_order(db: GatedAsyncSession, transaction_id: str) -> dict:
    async with db.gated():
        async with db.session.begin():
            s = db.session
            tx = await _load_transaction(s, transaction_id, for_update=False)
            items = await _items(s, transaction_id)
            tickets = (await s.execute(
                select_fresh(Ticket)
                .where(Ticket.transaction_id == transaction_id)
                .order_by(Ticket.created_at, Ticket.id)
            )).scalars().all()
            payment = (await s.execute(
                select_fresh(Payment).where(Payment.order_id == transaction_id)
                .order_by(Payment.created_at.desc()).limit(1)
            )).scalar_one_or_none()
    return {
        "transaction": tx,
        "items": items,
        "tickets": list(tickets),
        "payment": payment,
    }
