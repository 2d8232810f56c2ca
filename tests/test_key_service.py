import asyncio

import pytest

from waypoint import idempotency as I
from kungfu import Ok

from tests.helpers import err, ok


PATH = "/orders/order_1/returns"
PARAMS = {"id": "order_1"}


def advance_to(point: str, ran: list[str] | None = None):
    async def stage(tx: I.MemoryTransaction) -> I.StageOutcome:
        if ran is not None:
            tx.stage(lambda: ran.append(point))
        return I.Advance(point)

    return stage


# ═══════════════════════════════════════════════════════════════════════════════
# initialize_request
# ═══════════════════════════════════════════════════════════════════════════════


async def test_initialize_creates_started_key(keys):
    key = ok(await keys.initialize_request("tok", "post", PARAMS, PATH))

    assert key.token == "tok"
    assert key.recovery_point == I.STARTED
    assert key.signature == I.RequestSignature("POST", PATH, PARAMS)
    assert key.response_code is None


async def test_initialize_mints_token_when_absent(keys):
    first = ok(await keys.initialize_request("", "POST", PARAMS, PATH))
    second = ok(await keys.initialize_request("", "POST", PARAMS, PATH))

    assert len(first.token) == 32
    assert first.token != second.token


async def test_initialize_same_request_returns_existing_key(keys):
    created = ok(await keys.initialize_request("tok", "POST", PARAMS, PATH))
    ok(await keys.work_stage("tok", advance_to("next")))

    again = ok(await keys.initialize_request("tok", "POST", PARAMS, PATH))

    assert again.created_at == created.created_at
    assert again.recovery_point == "next"


@pytest.mark.parametrize(
    ("method", "params", "path"),
    [
        ("POST", {"id": "order_2"}, PATH),
        ("POST", PARAMS, "/orders/order_1/swaps"),
        ("PUT", PARAMS, PATH),
    ],
)
async def test_initialize_rejects_different_request(keys, method, params, path):
    ok(await keys.initialize_request("tok", "POST", PARAMS, PATH))

    error = err(await keys.initialize_request("tok", method, params, path))

    assert error.kind is I.IdempotencyErrorKind.MISMATCHED_REQUEST
    assert not error.is_retryable


async def test_initialize_reports_creation_race(clock):
    class RacingStore(I.MemoryStore):
        async def create_if_absent(self, token, signature, now):
            await super().create_if_absent(token, signature, now)
            return Ok(False)

    keys = I.IdempotencyKeyService(RacingStore(), clock=clock)

    error = err(await keys.initialize_request("tok", "POST", PARAMS, PATH))

    assert error.kind is I.IdempotencyErrorKind.CONFLICT
    assert error.is_retryable


async def test_retrieve_unknown_token(keys):
    error = err(await keys.retrieve("nope"))

    assert error.kind is I.IdempotencyErrorKind.NOT_FOUND


# ═══════════════════════════════════════════════════════════════════════════════
# work_stage
# ═══════════════════════════════════════════════════════════════════════════════


async def test_work_stage_advances_and_applies_writes(keys):
    ok(await keys.initialize_request("tok", "POST", PARAMS, PATH))
    ran: list[str] = []

    key = ok(await keys.work_stage("tok", advance_to("next", ran)))

    assert key.recovery_point == "next"
    assert key.locked_at is None
    assert ran == ["next"]


async def test_work_stage_respond_finishes_with_cached_response(keys):
    ok(await keys.initialize_request("tok", "POST", PARAMS, PATH))

    async def respond(tx):
        return I.Respond(201, {"ok": True})

    key = ok(await keys.work_stage("tok", respond))

    assert key.is_finished
    assert (key.response_code, key.response_body) == (201, {"ok": True})


async def test_work_stage_on_finished_key_runs_nothing(keys):
    ok(await keys.initialize_request("tok", "POST", PARAMS, PATH))
    ok(await keys.update("tok", I.KeyPatch(I.FINISHED, 200, {"done": 1})))
    calls: list[int] = []

    async def stage(tx):
        calls.append(1)
        return I.Advance("next")

    key = ok(await keys.work_stage("tok", stage))

    assert key.response_body == {"done": 1}
    assert calls == []


async def test_failed_stage_rolls_back_and_keeps_point(keys):
    ok(await keys.initialize_request("tok", "POST", PARAMS, PATH))
    ran: list[str] = []

    async def failing(tx):
        tx.stage(lambda: ran.append("write"))
        raise LookupError("Return not found")

    error = err(await keys.work_stage("tok", failing))

    assert error.kind is I.IdempotencyErrorKind.STAGE_FAILURE
    assert isinstance(error.original_error, LookupError)
    assert error.message == "Return not found"
    assert ran == []

    key = ok(await keys.retrieve("tok"))
    assert key.recovery_point == I.STARTED
    assert key.locked_at is None


async def test_failing_after_commit_hook_keeps_committed_advance(keys, caplog):
    ok(await keys.initialize_request("tok", "POST", PARAMS, PATH))
    ran: list[str] = []

    async def stage(tx):
        tx.stage(lambda: ran.append("write"))
        tx.after_commit(lambda: 1 / 0)
        tx.after_commit(lambda: ran.append("notified"))
        return I.Advance("next")

    key = ok(await keys.work_stage("tok", stage))

    assert key.recovery_point == "next"
    assert ran == ["write", "notified"]
    assert ok(await keys.retrieve("tok")).recovery_point == "next"
    assert ok(await keys.retrieve("tok")).locked_at is None
    assert "after_commit hook failed" in caplog.text


async def test_non_outcome_return_is_stage_failure(keys):
    ok(await keys.initialize_request("tok", "POST", PARAMS, PATH))

    async def sloppy(tx):
        return "next"

    error = err(await keys.work_stage("tok", sloppy))

    assert error.kind is I.IdempotencyErrorKind.STAGE_FAILURE
    assert isinstance(error.original_error, TypeError)


async def test_expected_point_mismatch_skips_stage(keys):
    ok(await keys.initialize_request("tok", "POST", PARAMS, PATH))
    ok(await keys.work_stage("tok", advance_to("next")))
    ran: list[str] = []

    key = ok(await keys.work_stage("tok", advance_to("later", ran), expected=I.STARTED))

    assert key.recovery_point == "next"
    assert key.locked_at is None
    assert ran == []
    assert ok(await keys.retrieve("tok")).locked_at is None


async def test_locked_key_fails_fast(keys, memory_store, clock):
    ok(await keys.initialize_request("tok", "POST", PARAMS, PATH))
    ok(await memory_store.acquire_lock("tok", clock(), clock()))
    ran: list[str] = []

    error = err(await keys.work_stage("tok", advance_to("next", ran)))

    assert error.kind is I.IdempotencyErrorKind.LOCKED
    assert ran == []


async def test_unlocked_key_from_store_runs_no_stage(clock):
    class ForgetfulStore(I.MemoryStore):
        async def acquire_lock(self, token, now, stale_before):
            return await self.get(token)

    keys = I.IdempotencyKeyService(ForgetfulStore(), clock=clock)
    ok(await keys.initialize_request("tok", "POST", PARAMS, PATH))
    ran: list[str] = []

    key = ok(await keys.work_stage("tok", advance_to("next", ran)))

    assert key.recovery_point == I.STARTED
    assert ran == []


async def test_stale_lock_is_reclaimed(keys, memory_store, clock):
    ok(await keys.initialize_request("tok", "POST", PARAMS, PATH))
    ok(await memory_store.acquire_lock("tok", clock(), clock()))

    clock.advance(seconds=31)
    key = ok(await keys.work_stage("tok", advance_to("next")))

    assert key.recovery_point == "next"


async def test_wait_policy_observes_advanced_state(memory_store):
    keys = I.IdempotencyKeyService(
        memory_store,
        I.Policy()
        .with_on_locked(I.WAIT)
        .with_poll_interval(seconds=0.01)
        .with_wait_timeout(seconds=5),
    )
    ok(await keys.initialize_request("tok", "POST", PARAMS, PATH))
    entered = asyncio.Event()
    release = asyncio.Event()
    runs: list[str] = []

    async def slow(tx):
        runs.append("slow")
        entered.set()
        await release.wait()
        return I.Advance("next")

    async def fast(tx):
        runs.append("fast")
        return I.Advance("next")

    first = asyncio.create_task(keys.work_stage("tok", slow, expected=I.STARTED))
    await entered.wait()
    second = asyncio.create_task(keys.work_stage("tok", fast, expected=I.STARTED))
    await asyncio.sleep(0.05)
    assert not second.done()

    release.set()
    a = ok(await first)
    b = ok(await second)

    assert runs == ["slow"]
    assert a.recovery_point == b.recovery_point == "next"


async def test_wait_policy_times_out_as_locked(memory_store, clock):
    keys = I.IdempotencyKeyService(
        memory_store,
        I.Policy()
        .with_on_locked(I.WAIT)
        .with_poll_interval(seconds=0.01)
        .with_wait_timeout(seconds=0.05),
        clock=clock,
    )
    ok(await keys.initialize_request("tok", "POST", PARAMS, PATH))
    ok(await memory_store.acquire_lock("tok", clock(), clock()))

    error = err(await keys.work_stage("tok", advance_to("next")))

    assert error.kind is I.IdempotencyErrorKind.LOCKED


async def test_wait_deadline_counts_time_spent_in_store(clock):
    class SlowLockStore(I.MemoryStore):
        async def acquire_lock(self, token, now, stale_before):
            await asyncio.sleep(0.05)
            return await super().acquire_lock(token, now, stale_before)

    store = SlowLockStore()
    keys = I.IdempotencyKeyService(
        store,
        I.Policy()
        .with_on_locked(I.WAIT)
        .with_poll_interval(seconds=0.01)
        .with_wait_timeout(seconds=0.1),
        clock=clock,
    )
    ok(await keys.initialize_request("tok", "POST", PARAMS, PATH))
    ok(await store.acquire_lock("tok", clock(), clock()))

    loop = asyncio.get_running_loop()
    started = loop.time()
    error = err(await keys.work_stage("tok", advance_to("next")))

    assert error.kind is I.IdempotencyErrorKind.LOCKED
    assert loop.time() - started < 0.5


# ═══════════════════════════════════════════════════════════════════════════════
# update
# ═══════════════════════════════════════════════════════════════════════════════


async def test_update_overwrites_unfinished_key(keys):
    ok(await keys.initialize_request("tok", "POST", PARAMS, PATH))

    key = ok(await keys.update("tok", I.KeyPatch(recovery_point="return_requested")))

    assert key.recovery_point == "return_requested"


async def test_update_leaves_finished_response_alone(keys):
    ok(await keys.initialize_request("tok", "POST", PARAMS, PATH))
    ok(await keys.update("tok", I.KeyPatch(I.FINISHED, 200, {"v": 1})))

    key = ok(await keys.update("tok", I.KeyPatch(I.FINISHED, 500, {"v": 2})))

    assert (key.response_code, key.response_body) == (200, {"v": 1})
