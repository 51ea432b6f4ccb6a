# model/reservations.py
"""
Reservation state machine: short-lived holds on ticket inventory.

    PENDING -> ACTIVE -> CONVERTED
    PENDING | ACTIVE -> EXPIRED | CANCELLED

While PENDING or ACTIVE a reservation's quantity is counted in its ticket
type's `reserved`. Leaving those states releases (EXPIRED, CANCELLED) or
finalizes (CONVERTED) that capacity, and the move is a compare-and-swap on
the status column so the ledger side effect happens exactly once.

Expiry is detected by readers: every lookup of a stale hold expires it.
`expire_stale()` does the same for everything overdue and is run by the
periodic sweep.
"""

from __future__ import annotations
import logging
from typing import List, Optional, Sequence

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import (
    DuplicateReservation, InvalidOrder, InvalidStateTransition,
    OwnershipMismatch, ReservationExpired, ReservationNotFound,
    TransactionNotFound,
)
from ..helpers import new_id, now_ts
from ..infra.sql import GatedAsyncSession
from ..infra.timings import timeit
from . import inventory
from .db import (
    Reservation, TicketType, Transaction, select_fresh, swap_status,
)
from .states import InventoryState, ReservationStatus, transition

logger = logging.getLogger(__name__)

LIVE = (ReservationStatus.PENDING.value, ReservationStatus.ACTIVE.value)


def is_live(r: Reservation) -> bool:
    return r.status in LIVE


def is_stale(r: Reservation, now: float) -> bool:
    return is_live(r) and r.expires_at <= now


# ------------------------------------------------------------------------------
# Internals (UN-GATED: callers own the transaction)
# ------------------------------------------------------------------------------

async def _load(s: AsyncSession, reservation_id: str,
                for_update: bool = False) -> Reservation:
    stmt = select_fresh(Reservation).where(Reservation.id == reservation_id)
    if for_update:
        stmt = stmt.with_for_update()
    r = (await s.execute(stmt)).scalar_one_or_none()
    if r is None:
        raise ReservationNotFound(reservation_id)
    return r


def _check_owner(r: Reservation, session_id: str) -> None:
    if r.session_id != session_id:
        raise OwnershipMismatch(r.id)


def _check_checkout(r: Reservation, tx: Transaction) -> None:
    """`tx` must be the order this hold was checked out into."""
    linked = (tx.reservation_id == r.id
              and r.transaction_id in (None, tx.id)
              and tx.inventory_state == InventoryState.RESERVATION.value)
    if not linked:
        raise InvalidStateTransition(
            "Reservation", r.status, ReservationStatus.CONVERTED.value
        )


async def _end_hold(s: AsyncSession, r: Reservation,
                    target: ReservationStatus, now: float) -> bool:
    """
    Move a live reservation to EXPIRED or CANCELLED and give its capacity
    back. Returns False if another writer ended the hold first.
    """
    if not await swap_status(s, Reservation.status, r.id, target,
                             updated_at=now):
        return False
    await inventory._release_reserved_capacity(s, r.ticket_type_id,
                                               r.quantity)
    r.status = target.value
    r.updated_at = now
    logger.info("reservation %s %s, released %d of %s", r.id,
                target.value.lower(), r.quantity, r.ticket_type_id)
    return True


async def _expire_own_stale(s: AsyncSession, session_id: str,
                            ticket_type_id: str, now: float) -> int:
    """Expire the session's lapsed holds on one ticket type; returns units."""
    rows = (await s.execute(
        update(Reservation)
        .where(Reservation.session_id == session_id,
               Reservation.ticket_type_id == ticket_type_id,
               Reservation.status.in_(LIVE),
               Reservation.expires_at <= now)
        .values(status=ReservationStatus.EXPIRED.value, updated_at=now)
        .returning(Reservation.id, Reservation.quantity)
        .execution_options(synchronize_session=False)
    )).all()
    for rid, quantity in rows:
        await inventory._release_reserved_capacity(s, ticket_type_id,
                                                   quantity)
        logger.info("reservation %s expired, released %d of %s", rid,
                    quantity, ticket_type_id)
    return sum(quantity for _, quantity in rows)


async def _expire_if_stale(s: AsyncSession, r: Reservation,
                           now: float) -> bool:
    if not is_stale(r, now):
        return False
    await _end_hold(s, r, ReservationStatus.EXPIRED, now)
    return True


async def _convert(s: AsyncSession, r: Reservation, transaction_id: str,
                   now: float) -> bool:
    """
    CONVERTED + finalize the hold into `sold`. Also flips the linked
    transaction's inventory marker so settlement will not finalize again.
    Returns False if the reservation was no longer live. The transaction
    must still carry the RESERVATION marker; a direct order keeps its own
    HELD units and is never finalized through a reservation.
    """
    meta = dict(r.meta or {})
    meta.update({"transaction_id": transaction_id, "converted_at": now})
    if not await swap_status(s, Reservation.status, r.id,
                             ReservationStatus.CONVERTED, updated_at=now,
                             meta=meta, transaction_id=transaction_id):
        return False
    if not await swap_status(s, Transaction.inventory_state, transaction_id,
                             InventoryState.FINALIZED,
                             sources=(InventoryState.RESERVATION,),
                             updated_at=now):
        raise InvalidStateTransition(
            "Transaction", "not RESERVATION", InventoryState.FINALIZED.value
        )
    await inventory._finalize_sale(s, r.ticket_type_id, r.quantity)
    r.status = ReservationStatus.CONVERTED.value
    r.transaction_id = transaction_id
    r.meta = meta
    r.updated_at = now
    logger.info("reservation %s converted into transaction %s", r.id,
                transaction_id)
    return True


# ------------------------------------------------------------------------------
# Public API
# ------------------------------------------------------------------------------

async def create(
    db: GatedAsyncSession,
    ticket_type_id: str,
    quantity: int,
    session_id: str,
    ttl_minutes: int,
    now: Optional[float] = None,
) -> Reservation:
    if not session_id:
        raise InvalidOrder("Session ID is required")
    if ttl_minutes <= 0:
        raise InvalidOrder("Expiration must be a positive number of minutes")
    now = now if now is not None else now_ts()

    async with timeit("reservation.create"):
        async with db.gated():
            async with db.session.begin():
                s = db.session
                # writes first: the lock is taken before any read
                await _expire_own_stale(s, session_id, ticket_type_id, now)
                await inventory._try_reserve(s, ticket_type_id, quantity)

                existing = (await s.execute(
                    select(Reservation.id).where(
                        Reservation.session_id == session_id,
                        Reservation.ticket_type_id == ticket_type_id,
                        Reservation.status.in_(LIVE),
                        Reservation.expires_at > now,
                    ).limit(1)
                )).first()
                if existing is not None:
                    raise DuplicateReservation(ticket_type_id)

                tt = await s.get(TicketType, ticket_type_id)
                r = Reservation(
                    id=new_id(),
                    ticket_type_id=ticket_type_id,
                    quantity=quantity,
                    session_id=session_id,
                    status=ReservationStatus.PENDING.value,
                    expires_at=now + ttl_minutes * 60,
                    created_at=now,
                    updated_at=now,
                    meta={
                        "event_id": tt.event_id,
                        "ticket_type_name": tt.name,
                        "ticket_type_price": tt.price,
                    },
                )
                s.add(r)

    logger.info("reservation %s created: %d of %s for session %s", r.id,
                quantity, ticket_type_id, session_id)
    return r


async def get(db: GatedAsyncSession, reservation_id: str,
              now: Optional[float] = None) -> Reservation:
    """Lookup; a stale hold is expired on the way."""
    now = now if now is not None else now_ts()
    async with db.gated():
        async with db.session.begin():
            r = await _load(db.session, reservation_id)
            await _expire_if_stale(db.session, r, now)
    return r


async def activate(db: GatedAsyncSession, reservation_id: str,
                   session_id: str, now: Optional[float] = None
                   ) -> Reservation:
    now = now if now is not None else now_ts()
    async with db.gated():
        async with db.session.begin():
            r = await _load(db.session, reservation_id, for_update=True)
            _check_owner(r, session_id)
            expired = await _expire_if_stale(db.session, r, now)
            if not expired:
                transition(ReservationStatus(r.status),
                           ReservationStatus.ACTIVE)
                await swap_status(db.session, Reservation.status, r.id,
                                  ReservationStatus.ACTIVE, updated_at=now)
                r.status = ReservationStatus.ACTIVE.value
                r.updated_at = now
    # raised after commit so the EXPIRED transition sticks
    if expired:
        raise ReservationExpired(reservation_id)
    logger.info("reservation %s activated", reservation_id)
    return r


async def convert(db: GatedAsyncSession, reservation_id: str,
                  session_id: str, transaction_id: str,
                  now: Optional[float] = None) -> Reservation:
    now = now if now is not None else now_ts()
    async with db.gated():
        async with db.session.begin():
            r = await _load(db.session, reservation_id, for_update=True)
            _check_owner(r, session_id)
            expired = await _expire_if_stale(db.session, r, now)
            if not expired:
                transition(ReservationStatus(r.status),
                           ReservationStatus.CONVERTED)
                tx = await db.session.get(
                    Transaction, transaction_id, with_for_update=True,
                    populate_existing=True,
                )
                if tx is None:
                    raise TransactionNotFound(transaction_id)
                _check_checkout(r, tx)
                await _convert(db.session, r, transaction_id, now)
    if expired:
        raise ReservationExpired(reservation_id)
    return r


async def cancel(db: GatedAsyncSession, reservation_id: str,
                 session_id: str, now: Optional[float] = None
                 ) -> Reservation:
    now = now if now is not None else now_ts()
    async with db.gated():
        async with db.session.begin():
            r = await _load(db.session, reservation_id, for_update=True)
            _check_owner(r, session_id)
            expired = await _expire_if_stale(db.session, r, now)
            if not expired:
                transition(ReservationStatus(r.status),
                           ReservationStatus.CANCELLED)
                await _end_hold(db.session, r, ReservationStatus.CANCELLED,
                                now)
    if expired:
        raise ReservationExpired(reservation_id)
    return r


async def expire_stale(db: GatedAsyncSession, now: Optional[float] = None,
                       limit: int = 500) -> int:
    """Expire every overdue live hold. Safe to run repeatedly."""
    now = now if now is not None else now_ts()
    expired = 0
    async with timeit("reservation.expire_stale"):
        async with db.gated():
            async with db.session.begin():
                rows = (await db.session.execute(
                    select_fresh(Reservation).where(
                        Reservation.status.in_(LIVE),
                        Reservation.expires_at <= now,
                    ).order_by(Reservation.expires_at).limit(limit)
                )).scalars().all()
                for r in rows:
                    if await _end_hold(db.session, r,
                                       ReservationStatus.EXPIRED, now):
                        expired += 1
    if expired:
        logger.info("expired %d stale reservations", expired)
    return expired


async def list_active(db: GatedAsyncSession, session_id: str,
                      now: Optional[float] = None) -> List[Reservation]:
    now = now if now is not None else now_ts()
    async with db.gated():
        async with db.session.begin():
            rows = (await db.session.execute(
                select_fresh(Reservation).where(
                    Reservation.session_id == session_id,
                    Reservation.status.in_(LIVE),
                ).order_by(Reservation.created_at.desc())
            )).scalars().all()
            live = []
            for r in rows:
                if not await _expire_if_stale(db.session, r, now):
                    live.append(r)
    return live


async def cancel_all_for_session(
    db: GatedAsyncSession, session_id: str,
    reservation_ids: Optional[Sequence[str]] = None,
    now: Optional[float] = None,
) -> int:
    """Abandoned checkout: drop every live hold of a session."""
    now = now if now is not None else now_ts()
    cancelled = 0
    async with db.gated():
        async with db.session.begin():
            stmt = select_fresh(Reservation).where(
                Reservation.session_id == session_id,
                Reservation.status.in_(LIVE),
            )
            if reservation_ids:
                stmt = stmt.where(Reservation.id.in_(list(reservation_ids)))
            for r in (await db.session.execute(stmt)).scalars().all():
                target = (ReservationStatus.EXPIRED if is_stale(r, now)
                          else ReservationStatus.CANCELLED)
                if await _end_hold(db.session, r, target, now):
                    cancelled += 1
    return cancelled
