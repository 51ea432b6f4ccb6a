from typing import Iterable, Optional

from sqlalchemy.orm import declarative_base
from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    select,
    update,
)
from sqlalchemy.ext.asyncio import AsyncSession, AsyncConnection

from .states import Status, allowed_sources


Base = declarative_base()


# ----------------------------
# ORM models
# ----------------------------
class TicketType(Base):
    __tablename__ = "ticket_types"
    __table_args__ = (
        CheckConstraint("quantity >= 0", name="ck_ticket_types_quantity"),
        CheckConstraint("sold >= 0 AND reserved >= 0",
                        name="ck_ticket_types_counters"),
        CheckConstraint("sold + reserved <= quantity",
                        name="ck_ticket_types_no_oversell"),
    )
    id = Column(String, primary_key=True)
    event_id = Column(String, nullable=False, index=True)
    name = Column(String, nullable=False)
    price = Column(Integer, nullable=False)  # minor units
    currency = Column(String, nullable=False, default="idr")

    quantity = Column(Integer, nullable=False)
    sold = Column(Integer, nullable=False, default=0)
    reserved = Column(Integer, nullable=False, default=0)
    max_per_purchase = Column(Integer, nullable=False, default=10)

    created_at = Column(Float, nullable=False)
    # soft delete; rows stay while tickets reference them
    deleted_at = Column(Float, nullable=True)


class Reservation(Base):
    __tablename__ = "reservations"
    __table_args__ = (
        Index("reservations_status_expires_idx", "status", "expires_at"),
        Index("reservations_session_idx", "session_id", "status"),
    )
    id = Column(String, primary_key=True)
    ticket_type_id = Column(
        String, ForeignKey("ticket_types.id"), nullable=False
    )
    quantity = Column(Integer, nullable=False)
    session_id = Column(String, nullable=False)

    # PENDING | ACTIVE | CONVERTED | EXPIRED | CANCELLED
    status = Column(String, nullable=False, default="PENDING")
    expires_at = Column(Float, nullable=False)
    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)

    # set once at checkout; unique so a hold backs at most one order
    transaction_id = Column(String, nullable=True, unique=True)
    meta = Column("metadata", JSON, nullable=False, default=dict)


class Transaction(Base):
    __tablename__ = "transactions"
    __table_args__ = (
        Index("transactions_status_created_idx", "status", "created_at"),
    )
    id = Column(String, primary_key=True)
    # exactly one of user_id / guest_session_id is set
    user_id = Column(String, nullable=True)
    guest_session_id = Column(String, nullable=True)
    event_id = Column(String, nullable=False)
    amount = Column(Integer, nullable=False)  # minor units
    currency = Column(String, nullable=False, default="idr")

    # PENDING | SUCCESS | FAILED | EXPIRED | REFUNDED
    status = Column(String, nullable=False, default="PENDING")
    payment_method = Column(String, nullable=False)
    invoice_number = Column(String, nullable=False, unique=True)
    customer_email = Column(String, nullable=True)

    reservation_id = Column(
        String, ForeignKey("reservations.id"), nullable=True
    )
    # HELD | RESERVATION | FINALIZED | RELEASED | UNFULFILLED
    inventory_state = Column(String, nullable=False)
    details = Column(JSON, nullable=False, default=dict)

    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)
    paid_at = Column(Float, nullable=True)


class OrderItem(Base):
    __tablename__ = "order_items"
    id = Column(Integer, primary_key=True, autoincrement=True)
    transaction_id = Column(
        String, ForeignKey("transactions.id"), nullable=False, index=True
    )
    ticket_type_id = Column(
        String, ForeignKey("ticket_types.id"), nullable=False
    )
    quantity = Column(Integer, nullable=False)
    price = Column(Integer, nullable=False)  # unit price snapshot


class Ticket(Base):
    __tablename__ = "tickets"
    id = Column(String, primary_key=True)
    ticket_type_id = Column(
        String, ForeignKey("ticket_types.id"), nullable=False
    )
    transaction_id = Column(
        String, ForeignKey("transactions.id"), nullable=False, index=True
    )
    qr_code = Column(String, nullable=False, unique=True)

    # PENDING | ACTIVE | USED | CANCELLED | EXPIRED | REFUNDED
    status = Column(String, nullable=False, default="PENDING")
    checked_in = Column(Boolean, nullable=False, default=False)
    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)


class Payment(Base):
    __tablename__ = "payments"
    id = Column(String, primary_key=True)
    order_id = Column(
        String, ForeignKey("transactions.id"), nullable=False, index=True
    )
    gateway = Column(String, nullable=False)
    amount = Column(Integer, nullable=False)

    # PENDING | SUCCESS | FAILED | EXPIRED | REFUNDED
    status = Column(String, nullable=False, default="PENDING")
    # external reference handed out by the gateway
    payment_id = Column(String, nullable=False, unique=True)
    callback_payload = Column(JSON, nullable=True)
    received_at = Column(Float, nullable=True)
    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)


class WebhookEventSeen(Base):
    __tablename__ = "webhook_events_seen"
    idempotency_key = Column(String, primary_key=True)
    created_at = Column(Float, nullable=False)


async def create_schema(conn: AsyncConnection) -> None:
    await conn.run_sync(Base.metadata.create_all)


async def swap_status(
    s: AsyncSession, column, ident: str, target: Status, *,
    sources: Optional[Iterable[Status]] = None, **values
) -> bool:
    """
    Compare-and-swap `column` of row `ident` to `target`.

    The UPDATE only matches rows whose current value is a legal source of
    `target` (or one of `sources`, when given), so concurrent writers
    cannot both apply the same move.
    Returns True if this call performed the transition.
    """
    model = column.class_
    if sources is None:
        sources = allowed_sources(target)
    sources = [st.value for st in sources]
    res = await s.execute(
        update(model)
        .where(model.id == ident, column.in_(sources))
        .values({column.key: target.value, **values})
        .execution_options(synchronize_session=False)
    )
    return res.rowcount == 1


def select_fresh(entity):
    """
    SELECT that overwrites rows the session already holds. Sessions keep
    objects across units of work (expire_on_commit=False), and status moves
    go through Core UPDATEs that bypass the identity map.
    """
    return select(entity).execution_options(populate_existing=True)
