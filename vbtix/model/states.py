"""Closed status vocabularies and their transition tables.

Every persisted status change goes through `transition()` (to validate an
explicit move) or `allowed_sources()` (to build the compare-and-swap guard of
an UPDATE), so the tables below are the only place a legal move is defined.
"""

from enum import Enum
from typing import Dict, FrozenSet, Union

from ..errors import InvalidStateTransition


class ReservationStatus(str, Enum):
    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    CONVERTED = "CONVERTED"
    EXPIRED = "EXPIRED"
    CANCELLED = "CANCELLED"


class TransactionStatus(str, Enum):
    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    EXPIRED = "EXPIRED"
    REFUNDED = "REFUNDED"


class TicketStatus(str, Enum):
    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    USED = "USED"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"
    REFUNDED = "REFUNDED"


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    EXPIRED = "EXPIRED"
    REFUNDED = "REFUNDED"


class InventoryState(str, Enum):
    """Where a transaction's capacity currently lives in the ledger."""

    HELD = "HELD"                # direct order, own items hold `reserved`
    RESERVATION = "RESERVATION"  # a linked reservation holds `reserved`
    FINALIZED = "FINALIZED"      # moved to `sold`
    RELEASED = "RELEASED"        # returned to the pool
    UNFULFILLED = "UNFULFILLED"  # paid, but no capacity could be secured


Status = Union[
    ReservationStatus, TransactionStatus, TicketStatus, PaymentStatus,
    InventoryState,
]

R, T, K, P, INV = (
    ReservationStatus, TransactionStatus, TicketStatus, PaymentStatus,
    InventoryState,
)

_TABLES: Dict[type, Dict[Enum, FrozenSet[Enum]]] = {
    R: {
        R.PENDING: frozenset({R.ACTIVE, R.CONVERTED, R.EXPIRED,
                              R.CANCELLED}),
        R.ACTIVE: frozenset({R.CONVERTED, R.EXPIRED, R.CANCELLED}),
        R.CONVERTED: frozenset(),
        R.EXPIRED: frozenset(),
        R.CANCELLED: frozenset(),
    },
    T: {
        T.PENDING: frozenset({T.SUCCESS, T.FAILED, T.EXPIRED, T.REFUNDED}),
        T.SUCCESS: frozenset(),
        T.FAILED: frozenset(),
        T.EXPIRED: frozenset(),
        T.REFUNDED: frozenset(),
    },
    K: {
        K.PENDING: frozenset({K.ACTIVE, K.CANCELLED, K.EXPIRED,
                              K.REFUNDED}),
        K.ACTIVE: frozenset({K.USED, K.CANCELLED, K.REFUNDED}),
        K.USED: frozenset(),
        K.CANCELLED: frozenset(),
        K.EXPIRED: frozenset(),
        K.REFUNDED: frozenset(),
    },
    P: {
        P.PENDING: frozenset({P.SUCCESS, P.FAILED, P.EXPIRED, P.REFUNDED}),
        P.SUCCESS: frozenset({P.REFUNDED}),
        P.FAILED: frozenset(),
        P.EXPIRED: frozenset(),
        P.REFUNDED: frozenset(),
    },
    INV: {
        INV.HELD: frozenset({INV.FINALIZED, INV.RELEASED}),
        INV.RESERVATION: frozenset({INV.FINALIZED, INV.RELEASED,
                                    INV.UNFULFILLED}),
        INV.FINALIZED: frozenset(),
        INV.RELEASED: frozenset(),
        INV.UNFULFILLED: frozenset(),
    },
}


def _table(status: Status) -> Dict[Enum, FrozenSet[Enum]]:
    return _TABLES[type(status)]


def is_terminal(status: Status) -> bool:
    return not _table(status)[status]


def can_transition(current: Status, target: Status) -> bool:
    return type(current) is type(target) and target in _table(current)[current]


def transition(current: Status, target: Status) -> Status:
    """Return `target` if current -> target is a legal move, else raise."""
    if not can_transition(current, target):
        raise InvalidStateTransition(
            type(current).__name__, current.value, target.value
        )
    return target


def allowed_sources(target: Status) -> FrozenSet[Status]:
    """All states from which `target` may be entered."""
    return frozenset(
        src for src, dests in _table(target).items() if target in dests
    )
