# callbackgate/_sql.py
from __future__ import annotations
from typing import Optional
from sqlalchemy import select, text

from ...helpers import now_ts
from ...infra.sql import GatedAsyncSession
from ..db import WebhookEventSeen

SQL_MARK_SEEN = """
INSERT INTO webhook_events_seen (idempotency_key, created_at)
VALUES (:k, :now)
ON CONFLICT (idempotency_key) DO NOTHING
RETURNING idempotency_key
"""


class CallbackGate:
    """Delivered-webhook keys, kept in the orders database."""

    def __init__(self, *, db: GatedAsyncSession) -> None:
        self.db = db

    async def is_seen(self, key: Optional[str]) -> bool:
        if not key:
            return False
        async with self.db.gated():
            async with self.db.session.begin():
                row = (await self.db.session.execute(
                    select(WebhookEventSeen.idempotency_key).where(
                        WebhookEventSeen.idempotency_key == key
                    )
                )).first()
        return row is not None

    async def mark_seen(self, key: Optional[str]) -> bool:
        """True if the key is new."""
        if not key:
            return True
        async with self.db.gated():
            async with self.db.session.begin():
                row = (await self.db.session.execute(
                    text(SQL_MARK_SEEN), {"k": key, "now": now_ts()}
                )).first()
        return row is not None

    async def purge(self, older_than: float) -> int:
        async with self.db.gated():
            async with self.db.session.begin():
                res = await self.db.session.execute(
                    text("DELETE FROM webhook_events_seen "
                         "WHERE created_at < :t"),
                    {"t": older_than},
                )
        return res.rowcount or 0
