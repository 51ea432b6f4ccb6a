import pytest

from vbtix.errors import (
    InsufficientInventory, InvalidOrder, OwnershipMismatch,
    ReservationAlreadyCheckedOut, ReservationExpired,
)
from vbtix.gateways import GATEWAYS
from vbtix.helpers import now_ts
from vbtix.model import checkout, inventory, reservations, settlement
from vbtix.model.identity import AuthenticatedUser, GuestSession
from vbtix.model.states import InventoryState

SESSION = "sess-a"
BUYER = GuestSession(SESSION)


async def test_direct_checkout_opens_pending_order(db, make_ticket_type):
    a = await make_ticket_type(quantity=5, price=100_000, name="A")
    b = await make_ticket_type(quantity=5, price=250_000, name="B")

    res = await checkout.checkout_direct(
        db, BUYER, [(a, 2), (b, 1)], GATEWAYS["xendit"],
        customer_email="buyer@example.com",
    )
    assert res.status == "PENDING"
    assert res.amount == 2 * 100_000 + 250_000
    assert res.currency == "idr"
    assert res.invoice_number.startswith("INV-")
    assert res.payment_id.startswith("xnd_")
    assert res.redirect_url.endswith(f"payment={res.payment_id}")
    assert len(res.ticket_ids) == 3

    assert (await inventory.availability(db, a))["reserved"] == 2
    assert (await inventory.availability(db, b))["reserved"] == 1

    order = await settlement.get_order(db, res.transaction_id)
    tx = order["transaction"]
    assert tx.inventory_state == InventoryState.HELD.value
    assert tx.guest_session_id == SESSION and tx.user_id is None
    assert {t.status for t in order["tickets"]} == {"PENDING"}
    assert order["payment"].status == "PENDING"
    assert sorted((i.ticket_type_id, i.quantity) for i in order["items"]) \
        == sorted([(a, 2), (b, 1)])


async def test_direct_checkout_merges_lines_and_records_user(
        db, make_ticket_type):
    a = await make_ticket_type(quantity=5)
    res = await checkout.checkout_direct(
        db, AuthenticatedUser("user-1"), [(a, 1), (a, 2)],
        GATEWAYS["midtrans"],
    )
    assert res.payment_id.startswith(f"ORDER-{res.transaction_id}-")
    assert len(res.ticket_ids) == 3
    order = await settlement.get_order(db, res.transaction_id)
    assert order["transaction"].user_id == "user-1"
    assert len(order["items"]) == 1


async def test_direct_checkout_is_all_or_nothing(db, make_ticket_type):
    a = await make_ticket_type(quantity=5, name="A")
    b = await make_ticket_type(quantity=1, name="B")

    with pytest.raises(InsufficientInventory):
        await checkout.checkout_direct(db, BUYER, [(a, 2), (b, 2)],
                                       GATEWAYS["xendit"])
    assert (await inventory.availability(db, a))["reserved"] == 0
    assert (await inventory.availability(db, b))["reserved"] == 0


async def test_direct_checkout_rejects_bad_orders(db, make_ticket_type):
    a = await make_ticket_type(event_id="evt-1")
    b = await make_ticket_type(event_id="evt-2")
    with pytest.raises(InvalidOrder):
        await checkout.checkout_direct(db, BUYER, [], GATEWAYS["xendit"])
    with pytest.raises(InvalidOrder):
        await checkout.checkout_direct(db, BUYER, [(a, 0)],
                                       GATEWAYS["xendit"])
    with pytest.raises(InvalidOrder):
        await checkout.checkout_direct(db, BUYER, [(a, 1), (b, 1)],
                                       GATEWAYS["xendit"])
    assert (await inventory.availability(db, a))["reserved"] == 0


async def test_manual_checkout_awaits_verification(db, make_ticket_type):
    a = await make_ticket_type()
    res = await checkout.checkout_direct(db, BUYER, [(a, 1)],
                                         GATEWAYS["manual"])
    assert res.redirect_url is None
    assert res.instructions["method"] == "BANK_TRANSFER"
    assert res.instructions["reference"] == res.invoice_number
    order = await settlement.get_order(db, res.transaction_id)
    assert order["transaction"].details["awaiting_verification"] is True
    assert order["transaction"].payment_method == "MANUAL_PAYMENT"


async def test_checkout_from_reservation(db, make_ticket_type):
    a = await make_ticket_type(quantity=5, price=100_000)
    r = await reservations.create(db, a, 2, SESSION, 10)

    res = await checkout.checkout_from_reservation(
        db, r.id, SESSION, BUYER, GATEWAYS["xendit"],
    )
    assert res.reservation_id == r.id
    assert res.amount == 200_000
    # capacity is still held by the reservation, not taken twice
    assert (await inventory.availability(db, a))["reserved"] == 2

    r = await reservations.get(db, r.id)
    assert r.status == "ACTIVE"
    assert r.transaction_id == res.transaction_id
    order = await settlement.get_order(db, res.transaction_id)
    assert order["transaction"].inventory_state == "RESERVATION"

    with pytest.raises(ReservationAlreadyCheckedOut):
        await checkout.checkout_from_reservation(
            db, r.id, SESSION, BUYER, GATEWAYS["xendit"],
        )


async def test_checkout_from_reservation_guards(db, make_ticket_type):
    a = await make_ticket_type(quantity=5)
    t0 = now_ts()
    r = await reservations.create(db, a, 2, SESSION, 1, now=t0)
    rid = r.id

    with pytest.raises(OwnershipMismatch):
        await checkout.checkout_from_reservation(
            db, rid, "intruder", GuestSession("intruder"),
            GATEWAYS["xendit"], now=t0,
        )
    with pytest.raises(ReservationExpired):
        await checkout.checkout_from_reservation(
            db, rid, SESSION, BUYER, GATEWAYS["xendit"], now=t0 + 61,
        )
    assert (await inventory.availability(db, a))["reserved"] == 0
