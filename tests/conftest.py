"""Pytest configuration and shared fixtures."""

import os
import tempfile

# settings are read at import time; pin them before vbtix is imported
_TMP = tempfile.mkdtemp(prefix="vbtix-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{_TMP}/server.db"
os.environ["SWEEP_INTERVAL_SECONDS"] = "0"
os.environ["CALLBACK_GATE_BACKEND"] = "sql"
os.environ["XENDIT_WEBHOOK_TOKEN"] = ""
os.environ["MIDTRANS_SERVER_KEY"] = ""
os.environ["DELIVERY_URL"] = ""
os.environ["ADMIN_TOKEN"] = "test-admin-token"

import pytest  # noqa: E402

from vbtix.delivery import DeliveryRequest, TicketDelivery  # noqa: E402
from vbtix.infra.sql import (  # noqa: E402
    gated_session, make_async_engine, open_gated_session,
)
from vbtix.model import inventory  # noqa: E402
from vbtix.model.db import create_schema  # noqa: E402

EVENT_ID = "evt-1"


@pytest.fixture
async def sql(tmp_path):
    """(SessionAsync, gated) over a fresh SQLite file."""
    engine, SessionAsync, _, gated = make_async_engine(
        f"sqlite:///{tmp_path}/test.db"
    )
    async with engine.begin() as conn:
        await create_schema(conn)
    yield SessionAsync, gated
    await engine.dispose()


@pytest.fixture
async def db(sql):
    SessionAsync, gated = sql
    async with open_gated_session(SessionAsync, gated) as db:
        yield db


@pytest.fixture
async def new_db(sql):
    """Factory for extra sessions, e.g. one per concurrent caller."""
    SessionAsync, gated = sql
    opened = []

    def make():
        db = gated_session(SessionAsync, gated)
        opened.append(db)
        return db
    yield make
    for db in opened:
        await db.session.close()


@pytest.fixture
def make_ticket_type(db):
    async def make(quantity=10, price=150_000, max_per_purchase=10,
                   event_id=EVENT_ID, name="Regular", currency="idr"):
        tt = await inventory.create_ticket_type(
            db, event_id=event_id, name=name, price=price,
            quantity=quantity, max_per_purchase=max_per_purchase,
            currency=currency,
        )
        return tt.id
    return make


class RecordingDelivery(TicketDelivery):
    def __init__(self, fail: bool = False) -> None:
        self.requests = []
        self.fail = fail

    async def deliver(self, request: DeliveryRequest) -> None:
        self.requests.append(request)
        if self.fail:
            raise RuntimeError("delivery service down")


@pytest.fixture
def delivery():
    return RecordingDelivery()


@pytest.fixture
def failing_delivery():
    return RecordingDelivery(fail=True)
