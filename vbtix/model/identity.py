"""Buyer identity: a signed-in user or an anonymous checkout session."""

from dataclasses import dataclass
from typing import Optional, Tuple, Union


@dataclass(frozen=True)
class AuthenticatedUser:
    user_id: str


@dataclass(frozen=True)
class GuestSession:
    session_id: str


Buyer = Union[AuthenticatedUser, GuestSession]


def buyer_from(user_id: Optional[str], session_id: Optional[str]) -> Buyer:
    if user_id:
        return AuthenticatedUser(user_id=user_id)
    if session_id:
        return GuestSession(session_id=session_id)
    raise ValueError("either user_id or session_id is required")


def buyer_columns(buyer: Buyer) -> Tuple[Optional[str], Optional[str]]:
    """(user_id, guest_session_id) as stored on a transaction row."""
    if isinstance(buyer, AuthenticatedUser):
        return buyer.user_id, None
    return None, buyer.session_id
