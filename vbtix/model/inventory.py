# model/inventory.py
"""
Inventory ledger over the per-ticket-type counters:
- quantity : total capacity
- sold     : finalized, paid units
- reserved : units held by live reservations or unpaid direct orders

Invariant: 0 <= sold + reserved <= quantity.

Every mutation is a single guarded UPDATE that re-reads the counters it
writes, so under READ COMMITTED (PostgreSQL re-evaluates the WHERE clause
after waiting on the row lock) or SQLite's single writer two requests for the
last unit cannot both succeed. A guard that does not match raises, which
aborts the surrounding unit of work.
"""

from __future__ import annotations
import logging
from typing import Dict, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import (
    ExceedsMaxPerPurchase, InsufficientInventory, InvalidOrder,
    LedgerInvariantViolation, TicketTypeNotFound,
)
from ..helpers import new_id, now_ts
from ..infra.sql import GatedAsyncSession
from ..infra.timings import timeit
from .db import TicketType

logger = logging.getLogger(__name__)


SQL_TRY_RESERVE = text("""
    UPDATE ticket_types
    SET reserved = reserved + :q
    WHERE id = :id
      AND deleted_at IS NULL
      AND :q <= max_per_purchase
      AND sold + reserved + :q <= quantity
    RETURNING sold, reserved, quantity
""")

SQL_DECREMENT_RESERVED = text("""
    UPDATE ticket_types
    SET reserved = reserved - :q
    WHERE id = :id AND reserved >= :q
    RETURNING sold, reserved, quantity
""")

SQL_FINALIZE_SALE = text("""
    UPDATE ticket_types
    SET sold = sold + :q, reserved = reserved - :q
    WHERE id = :id AND reserved >= :q
    RETURNING sold, reserved, quantity
""")

SQL_COUNTERS = text("""
    SELECT quantity, sold, reserved, max_per_purchase, deleted_at
    FROM ticket_types WHERE id = :id
""")


# ------------------------------------------------------------------------------
# Core logic (UN-GATED: callers own the transaction)
# ------------------------------------------------------------------------------

def _check_quantity(qty: int) -> None:
    if qty <= 0:
        raise InvalidOrder("Quantity must be a positive integer")


async def _try_reserve(s: AsyncSession, ticket_type_id: str, qty: int) -> None:
    """
    Move `qty` units from available into `reserved`, all or nothing.
    The guard is evaluated first; only a rejected request pays for the
    diagnostic read that picks the error.
    """
    _check_quantity(qty)
    row = (await s.execute(
        SQL_TRY_RESERVE, {"id": ticket_type_id, "q": qty}
    )).first()
    if row is not None:
        return

    cur = (await s.execute(SQL_COUNTERS, {"id": ticket_type_id})).first()
    if cur is None or cur.deleted_at is not None:
        raise TicketTypeNotFound(ticket_type_id)
    if qty > cur.max_per_purchase:
        raise ExceedsMaxPerPurchase(ticket_type_id, qty, cur.max_per_purchase)
    raise InsufficientInventory(
        ticket_type_id, qty, cur.quantity - cur.sold - cur.reserved
    )


async def _decrement_reserved(
    s: AsyncSession, ticket_type_id: str, qty: int, operation: str
) -> None:
    _check_quantity(qty)
    row = (await s.execute(
        SQL_DECREMENT_RESERVED, {"id": ticket_type_id, "q": qty}
    )).first()
    if row is None:
        # an upstream double release; refuse rather than clamp
        logger.error("ledger %s of %d on %s rejected: reserved too low",
                     operation, qty, ticket_type_id)
        raise LedgerInvariantViolation(ticket_type_id, operation, qty)


async def _release_reserved_capacity(
    s: AsyncSession, ticket_type_id: str, qty: int
) -> None:
    await _decrement_reserved(s, ticket_type_id, qty, "release")


async def _restore_on_failure(
    s: AsyncSession, ticket_type_id: str, qty: int
) -> None:
    # unpaid units were never counted in `sold`, so only `reserved` moves
    await _decrement_reserved(s, ticket_type_id, qty, "restore_on_failure")


async def _finalize_sale(
    s: AsyncSession, ticket_type_id: str, qty: int
) -> None:
    _check_quantity(qty)
    row = (await s.execute(
        SQL_FINALIZE_SALE, {"id": ticket_type_id, "q": qty}
    )).first()
    if row is None:
        logger.error("ledger finalize of %d on %s rejected: reserved too low",
                     qty, ticket_type_id)
        raise LedgerInvariantViolation(ticket_type_id, "finalize_sale", qty)


async def _counters(s: AsyncSession, ticket_type_id: str) -> Dict[str, int]:
    cur = (await s.execute(SQL_COUNTERS, {"id": ticket_type_id})).first()
    if cur is None:
        raise TicketTypeNotFound(ticket_type_id)
    return {
        "quantity": int(cur.quantity),
        "sold": int(cur.sold),
        "reserved": int(cur.reserved),
        "available": max(0, cur.quantity - cur.sold - cur.reserved),
        "max_per_purchase": int(cur.max_per_purchase),
    }


# ------------------------------------------------------------------------------
# Public API (one unit of work each)
# ------------------------------------------------------------------------------

async def try_reserve(db: GatedAsyncSession, ticket_type_id: str,
                      qty: int) -> None:
    async with timeit("ledger.try_reserve"):
        async with db.gated():
            async with db.session.begin():
                await _try_reserve(db.session, ticket_type_id, qty)


async def release_reserved_capacity(db: GatedAsyncSession,
                                    ticket_type_id: str, qty: int) -> None:
    async with db.gated():
        async with db.session.begin():
            await _release_reserved_capacity(db.session, ticket_type_id, qty)


async def restore_on_failure(db: GatedAsyncSession, ticket_type_id: str,
                             qty: int) -> None:
    async with db.gated():
        async with db.session.begin():
            await _restore_on_failure(db.session, ticket_type_id, qty)


async def finalize_sale(db: GatedAsyncSession, ticket_type_id: str,
                        qty: int) -> None:
    async with timeit("ledger.finalize_sale"):
        async with db.gated():
            async with db.session.begin():
                await _finalize_sale(db.session, ticket_type_id, qty)


async def availability(db: GatedAsyncSession,
                       ticket_type_id: str) -> Dict[str, int]:
    async with db.gated():
        async with db.session.begin():
            return await _counters(db.session, ticket_type_id)


# ------------------------------------------------------------------------------
# Ticket types (seeding; organizer screens live elsewhere)
# ------------------------------------------------------------------------------

async def create_ticket_type(
    db: GatedAsyncSession,
    *,
    event_id: str,
    name: str,
    price: int,
    quantity: int,
    max_per_purchase: int = 10,
    currency: str = "idr",
    ticket_type_id: Optional[str] = None,
) -> TicketType:
    if quantity < 0 or price < 0 or max_per_purchase <= 0:
        raise InvalidOrder("invalid ticket type definition")
    tt = TicketType(
        id=ticket_type_id or new_id(),
        event_id=event_id,
        name=name,
        price=price,
        currency=currency,
        quantity=quantity,
        sold=0,
        reserved=0,
        max_per_purchase=max_per_purchase,
        created_at=now_ts(),
    )
    async with db.gated():
        async with db.session.begin():
            db.session.add(tt)
    return tt


async def soft_delete_ticket_type(db: GatedAsyncSession,
                                  ticket_type_id: str) -> None:
    async with db.gated():
        async with db.session.begin():
            row = (await db.session.execute(text("""
                UPDATE ticket_types SET deleted_at = :now
                WHERE id = :id AND deleted_at IS NULL
                RETURNING id
            """), {"id": ticket_type_id, "now": now_ts()})).first()
            if row is None:
                raise TicketTypeNotFound(ticket_type_id)
