from datetime import timedelta

import pytest

from waypoint import idempotency as I

from tests.helpers import ok


SIGNATURE = I.RequestSignature(method="POST", path="/orders/order_1/returns", params={"id": "order_1"})


async def test_create_if_absent_reports_existing(memory_store, clock):
    assert ok(await memory_store.create_if_absent("tok", SIGNATURE, clock())) is True
    assert ok(await memory_store.create_if_absent("tok", SIGNATURE, clock())) is False

    key = ok(await memory_store.get("tok"))
    assert key.recovery_point == I.STARTED
    assert key.locked_at is None


async def test_get_missing_is_none(memory_store):
    assert ok(await memory_store.get("nope")) is None


async def test_acquire_lock_is_exclusive_until_stale(memory_store, clock):
    ok(await memory_store.create_if_absent("tok", SIGNATURE, clock()))
    stale_after = timedelta(seconds=30)

    first = ok(await memory_store.acquire_lock("tok", clock(), clock() - stale_after))
    assert first is not None and first.locked_at == clock()

    clock.advance(seconds=10)
    assert ok(await memory_store.acquire_lock("tok", clock(), clock() - stale_after)) is None

    clock.advance(seconds=25)
    reclaimed = ok(await memory_store.acquire_lock("tok", clock(), clock() - stale_after))
    assert reclaimed is not None and reclaimed.locked_at == clock()


async def test_advance_commits_with_transaction(memory_store, clock):
    ok(await memory_store.create_if_absent("tok", SIGNATURE, clock()))
    locked = ok(await memory_store.acquire_lock("tok", clock(), clock()))
    applied: list[str] = []

    async with memory_store.transaction() as tx:
        tx.stage(lambda: applied.append("write"))
        advanced = ok(
            await memory_store.compare_and_advance(tx, "tok", I.STARTED, locked.locked_at, "next")
        )
        assert advanced.recovery_point == "next"
        assert ok(await memory_store.get("tok")).recovery_point == I.STARTED

    key = ok(await memory_store.get("tok"))
    assert key.recovery_point == "next"
    assert key.locked_at is None
    assert applied == ["write"]


async def test_raise_inside_transaction_discards_writes(memory_store, clock):
    ok(await memory_store.create_if_absent("tok", SIGNATURE, clock()))
    locked = ok(await memory_store.acquire_lock("tok", clock(), clock()))
    applied: list[str] = []

    with pytest.raises(RuntimeError):
        async with memory_store.transaction() as tx:
            tx.stage(lambda: applied.append("write"))
            await memory_store.compare_and_advance(tx, "tok", I.STARTED, locked.locked_at, "next")
            raise RuntimeError("boom")

    key = ok(await memory_store.get("tok"))
    assert key.recovery_point == I.STARTED
    assert key.locked_at == locked.locked_at
    assert applied == []


async def test_advance_rejects_foreign_lock(memory_store, clock):
    ok(await memory_store.create_if_absent("tok", SIGNATURE, clock()))
    locked = ok(await memory_store.acquire_lock("tok", clock(), clock()))

    async with memory_store.transaction() as tx:
        moved = await memory_store.compare_and_advance(
            tx, "tok", I.STARTED, locked.locked_at + timedelta(seconds=1), "next"
        )
        assert ok(moved) is None


async def test_reclaimed_lock_fails_commit(memory_store, clock):
    ok(await memory_store.create_if_absent("tok", SIGNATURE, clock()))
    locked = ok(await memory_store.acquire_lock("tok", clock(), clock()))

    with pytest.raises(I.CommitConflict):
        async with memory_store.transaction() as tx:
            ok(await memory_store.compare_and_advance(tx, "tok", I.STARTED, locked.locked_at, "next"))
            clock.advance(seconds=60)
            ok(await memory_store.acquire_lock("tok", clock(), clock()))

    assert ok(await memory_store.get("tok")).recovery_point == I.STARTED


async def test_release_lock_requires_matching_stamp(memory_store, clock):
    ok(await memory_store.create_if_absent("tok", SIGNATURE, clock()))
    locked = ok(await memory_store.acquire_lock("tok", clock(), clock()))

    ok(await memory_store.release_lock("tok", locked.locked_at - timedelta(seconds=1)))
    assert ok(await memory_store.get("tok")).locked_at == locked.locked_at

    ok(await memory_store.release_lock("tok", locked.locked_at))
    assert ok(await memory_store.get("tok")).locked_at is None


async def test_update_finishes_and_then_refuses(memory_store, clock):
    ok(await memory_store.create_if_absent("tok", SIGNATURE, clock()))
    ok(await memory_store.acquire_lock("tok", clock(), clock()))

    finished = ok(
        await memory_store.update(
            "tok",
            I.KeyPatch(recovery_point=I.FINISHED, response_code=500, response_body={"message": "x"}),
        )
    )
    assert finished.is_finished
    assert finished.locked_at is None

    assert ok(await memory_store.update("tok", I.KeyPatch(response_code=200))) is None
    assert ok(await memory_store.acquire_lock("tok", clock(), clock())) is None


async def test_cached_body_is_not_shared(memory_store, clock):
    ok(await memory_store.create_if_absent("tok", SIGNATURE, clock()))
    ok(await memory_store.update("tok", I.KeyPatch(recovery_point=I.FINISHED, response_code=200, response_body={"a": [1]})))

    first = ok(await memory_store.get("tok"))
    first.response_body["a"].append(2)

    assert ok(await memory_store.get("tok")).response_body == {"a": [1]}


async def test_after_commit_hooks_run_only_on_commit(memory_store):
    committed: list[str] = []

    async with memory_store.transaction() as tx:
        tx.after_commit(lambda: committed.append("ok"))
        assert committed == []

    with pytest.raises(RuntimeError):
        async with memory_store.transaction() as tx:
            tx.after_commit(lambda: committed.append("rolled back"))
            raise RuntimeError("boom")

    assert committed == ["ok"]


async def test_lock_staleness_helpers(memory_store, clock):
    ok(await memory_store.create_if_absent("tok", SIGNATURE, clock()))
    locked = ok(await memory_store.acquire_lock("tok", clock(), clock()))

    assert locked.is_locked
    assert not locked.lock_is_stale(clock())
    assert locked.lock_is_stale(clock() + timedelta(seconds=1))
