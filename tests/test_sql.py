import pytest
from sqlalchemy import text

from vbtix.infra.sql import (
    SQLITE_GATE_LIMIT, _normalize_async_url, make_async_engine,
    open_gated_session,
)


@pytest.mark.parametrize("url,expected", [
    ("sqlite:///./vbtix.db", "sqlite+aiosqlite:///./vbtix.db"),
    ("postgresql://u:p@db/vbtix", "postgresql+asyncpg://u:p@db/vbtix"),
    ("postgres://u:p@db/vbtix", "postgresql+asyncpg://u:p@db/vbtix"),
    ("sqlite+aiosqlite:///x.db", "sqlite+aiosqlite:///x.db"),
])
def test_urls_get_async_drivers(url, expected):
    assert _normalize_async_url(url) == expected


async def test_sqlite_gate_defaults_to_single_writer_limit(tmp_path):
    engine, _, db_gate, _ = make_async_engine(
        f"sqlite:///{tmp_path}/gate.db", gate_limit=None,
    )
    try:
        for _ in range(SQLITE_GATE_LIMIT):
            await db_gate.acquire()
        assert db_gate.locked()
    finally:
        await engine.dispose()


async def test_gated_session_runs_units_of_work(tmp_path):
    engine, SessionAsync, db_gate, gated = make_async_engine(
        f"sqlite:///{tmp_path}/gate.db", gate_limit=1,
    )
    try:
        async with open_gated_session(SessionAsync, gated) as db:
            async with db.gated():
                assert db_gate.locked()
                async with db.session.begin():
                    one = await db.session.execute(text("SELECT 1"))
                    assert one.scalar() == 1
            assert not db_gate.locked()
    finally:
        await engine.dispose()
