from vbtix.helpers import now_ts
from vbtix.model.callbackgate._sql import CallbackGate


async def test_keys_are_seen_only_after_marking(db):
    gate = CallbackGate(db=db)

    assert await gate.is_seen("evt-1") is False
    assert await gate.mark_seen("evt-1") is True
    assert await gate.is_seen("evt-1") is True
    assert await gate.mark_seen("evt-1") is False
    assert await gate.is_seen("evt-2") is False


async def test_missing_key_never_short_circuits(db):
    gate = CallbackGate(db=db)
    assert await gate.mark_seen(None) is True
    assert await gate.is_seen(None) is False


async def test_purge_drops_old_keys(db):
    gate = CallbackGate(db=db)
    await gate.mark_seen("old")
    assert await gate.purge(older_than=0) == 0
    assert await gate.purge(older_than=now_ts() + 60) == 1
    assert await gate.is_seen("old") is False
