"""Domain errors for the reservation, checkout and settlement core."""

from enum import Enum
from typing import Optional


class ErrorCode(Enum):
    """Domain error codes."""

    INSUFFICIENT_INVENTORY = "INSUFFICIENT_INVENTORY"
    EXCEEDS_MAX_PER_PURCHASE = "EXCEEDS_MAX_PER_PURCHASE"
    TICKET_TYPE_NOT_FOUND = "TICKET_TYPE_NOT_FOUND"
    RESERVATION_NOT_FOUND = "RESERVATION_NOT_FOUND"
    RESERVATION_EXPIRED = "RESERVATION_EXPIRED"
    OWNERSHIP_MISMATCH = "OWNERSHIP_MISMATCH"
    DUPLICATE_RESERVATION = "DUPLICATE_RESERVATION"
    RESERVATION_ALREADY_CHECKED_OUT = "RESERVATION_ALREADY_CHECKED_OUT"
    TRANSACTION_NOT_FOUND = "TRANSACTION_NOT_FOUND"
    PAYMENT_NOT_FOUND = "PAYMENT_NOT_FOUND"
    INVALID_STATE_TRANSITION = "INVALID_STATE_TRANSITION"
    INVALID_ORDER = "INVALID_ORDER"
    LEDGER_INVARIANT_VIOLATION = "LEDGER_INVARIANT_VIOLATION"


class DomainError(Exception):
    """Base domain error with code and user-safe message."""

    code: ErrorCode = ErrorCode.INVALID_ORDER

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return f"{self.code.value}: {self.message}"


class InsufficientInventory(DomainError):
    code = ErrorCode.INSUFFICIENT_INVENTORY

    def __init__(self, ticket_type_id: str, requested: int,
                 available: int) -> None:
        super().__init__(
            f"Only {max(0, available)} tickets available, "
            f"{requested} requested"
        )
        self.ticket_type_id = ticket_type_id
        self.requested = requested
        self.available = max(0, available)

    @property
    def shortfall(self) -> int:
        return self.requested - self.available


class ExceedsMaxPerPurchase(DomainError):
    code = ErrorCode.EXCEEDS_MAX_PER_PURCHASE

    def __init__(self, ticket_type_id: str, requested: int,
                 max_per_purchase: int) -> None:
        super().__init__(
            f"At most {max_per_purchase} tickets per purchase, "
            f"{requested} requested"
        )
        self.ticket_type_id = ticket_type_id
        self.requested = requested
        self.max_per_purchase = max_per_purchase


class TicketTypeNotFound(DomainError):
    code = ErrorCode.TICKET_TYPE_NOT_FOUND

    def __init__(self, ticket_type_id: str) -> None:
        super().__init__("Ticket type not found")
        self.ticket_type_id = ticket_type_id


class ReservationNotFound(DomainError):
    code = ErrorCode.RESERVATION_NOT_FOUND

    def __init__(self, reservation_id: str) -> None:
        super().__init__("Reservation not found")
        self.reservation_id = reservation_id


class ReservationExpired(DomainError):
    code = ErrorCode.RESERVATION_EXPIRED

    def __init__(self, reservation_id: str) -> None:
        super().__init__("Reservation has expired")
        self.reservation_id = reservation_id


class OwnershipMismatch(DomainError):
    code = ErrorCode.OWNERSHIP_MISMATCH

    def __init__(self, reservation_id: str) -> None:
        super().__init__(
            "You don't have permission to modify this reservation"
        )
        self.reservation_id = reservation_id


class DuplicateReservation(DomainError):
    code = ErrorCode.DUPLICATE_RESERVATION

    def __init__(self, ticket_type_id: str) -> None:
        super().__init__(
            "You already have a reservation for this ticket type"
        )
        self.ticket_type_id = ticket_type_id


class ReservationAlreadyCheckedOut(DomainError):
    code = ErrorCode.RESERVATION_ALREADY_CHECKED_OUT

    def __init__(self, reservation_id: str,
                 transaction_id: Optional[str]) -> None:
        super().__init__("Reservation already has a pending order")
        self.reservation_id = reservation_id
        self.transaction_id = transaction_id


class TransactionNotFound(DomainError):
    code = ErrorCode.TRANSACTION_NOT_FOUND

    def __init__(self, transaction_id: str) -> None:
        super().__init__("Order not found")
        self.transaction_id = transaction_id


class PaymentNotFound(DomainError):
    code = ErrorCode.PAYMENT_NOT_FOUND

    def __init__(self, payment_reference: str) -> None:
        super().__init__("Payment not found")
        self.payment_reference = payment_reference


class InvalidStateTransition(DomainError):
    code = ErrorCode.INVALID_STATE_TRANSITION

    def __init__(self, entity: str, current: str, target: str) -> None:
        super().__init__(f"{entity} cannot move from {current} to {target}")
        self.entity = entity
        self.current = current
        self.target = target


class InvalidOrder(DomainError):
    code = ErrorCode.INVALID_ORDER


class LedgerInvariantViolation(DomainError):
    """A counter mutation would break 0 <= sold + reserved <= quantity."""

    code = ErrorCode.LEDGER_INVARIANT_VIOLATION

    def __init__(self, ticket_type_id: str, operation: str,
                 quantity: int) -> None:
        super().__init__(
            f"{operation} of {quantity} on ticket type {ticket_type_id} "
            "would drive reserved capacity negative"
        )
        self.ticket_type_id = ticket_type_id
        self.operation = operation
        self.quantity = quantity
