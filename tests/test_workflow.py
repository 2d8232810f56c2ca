import pytest

from waypoint import idempotency as I
from waypoint import workflow as W

from tests.helpers import err, ok


PATH = "/things/1/do"
PARAMS = {"id": "1"}


async def noop(ctx):
    return I.Advance("middle")


async def done(ctx):
    return I.Respond(200, {"payload": ctx.payload})


# ═══════════════════════════════════════════════════════════════════════════════
# Builder
# ═══════════════════════════════════════════════════════════════════════════════


def test_build_keeps_declaration_order():
    flow = W.workflow("thing").stage(I.STARTED, noop).stage("middle", done).build()

    assert flow.points == (I.STARTED, "middle")
    assert flow.handler("middle") is done
    assert flow.handler("elsewhere") is None


def test_builder_is_immutable():
    base = W.workflow("thing").stage(I.STARTED, noop)
    base.stage("middle", done)

    assert base.build().points == (I.STARTED,)


@pytest.mark.parametrize(
    "builder",
    [
        W.workflow("empty"),
        W.workflow("late_start").stage("middle", done),
        W.workflow("dup").stage(I.STARTED, noop).stage(I.STARTED, done),
        W.workflow("terminal").stage(I.STARTED, noop).stage(I.FINISHED, done),
    ],
)
def test_build_rejects_malformed_tables(builder):
    with pytest.raises(ValueError):
        builder.build()


@pytest.mark.parametrize("target", [I.STARTED, I.FINISHED, "nowhere"])
def test_guard_rejects_invalid_advances(target):
    flow = W.workflow("thing").stage(I.STARTED, noop).stage("middle", done).build()

    with pytest.raises(W.InvalidTransition):
        flow.guard("middle" if target == I.STARTED else I.STARTED, I.Advance(target))


def test_guard_allows_skipping_ahead():
    flow = (
        W.workflow("thing")
        .stage(I.STARTED, noop)
        .stage("middle", done)
        .stage("last", done)
        .build()
    )

    assert flow.guard(I.STARTED, I.Advance("last")) == I.Advance("last")


# ═══════════════════════════════════════════════════════════════════════════════
# Executor
# ═══════════════════════════════════════════════════════════════════════════════


async def test_run_drives_key_to_finished(keys):
    calls: list[str] = []

    async def first(ctx):
        ctx.tx.stage(lambda: calls.append("first"))
        return I.Advance("middle")

    async def second(ctx):
        ctx.tx.stage(lambda: calls.append("second"))
        return I.Respond(200, {"payload": ctx.payload, "token": ctx.token})

    flow = W.workflow("thing").stage(I.STARTED, first).stage("middle", second).build()
    key = ok(await keys.initialize_request("tok", "POST", PARAMS, PATH))

    result = ok(await W.WorkflowExecutor(flow, keys).run(key, "hello"))

    assert result.response_code == 200
    assert result.response_body == {"payload": "hello", "token": "tok"}
    assert result.stages_run == 2
    assert not result.from_cache
    assert calls == ["first", "second"]


async def test_finished_token_is_replayed_without_work(keys):
    calls: list[str] = []

    async def first(ctx):
        ctx.tx.stage(lambda: calls.append("first"))
        return I.Respond(201, {"n": len(calls)})

    flow = W.workflow("thing").stage(I.STARTED, first).build()
    executor = W.WorkflowExecutor(flow, keys)
    ok(await keys.initialize_request("tok", "POST", PARAMS, PATH))

    original = ok(await executor.run("tok", None))
    replay = ok(await executor.run("tok", "different payload"))

    assert replay.from_cache
    assert (replay.response_code, replay.response_body) == (original.response_code, original.response_body)
    assert calls == ["first"]


async def test_failed_stage_resumes_at_same_point(keys):
    calls: list[str] = []
    attempts = {"middle": 0}

    async def first(ctx):
        ctx.tx.stage(lambda: calls.append("first"))
        return I.Advance("middle")

    async def flaky(ctx):
        attempts["middle"] += 1
        if attempts["middle"] == 1:
            raise ConnectionError("collaborator down")
        return I.Respond(200, {"ok": True})

    flow = W.workflow("thing").stage(I.STARTED, first).stage("middle", flaky).build()
    executor = W.WorkflowExecutor(flow, keys)
    ok(await keys.initialize_request("tok", "POST", PARAMS, PATH))

    error = err(await executor.run("tok", None))
    assert error.kind is I.IdempotencyErrorKind.STAGE_FAILURE
    assert ok(await keys.retrieve("tok")).recovery_point == "middle"

    result = ok(await executor.run("tok", None))

    assert result.response_body == {"ok": True}
    assert result.stages_run == 1
    assert calls == ["first"]


async def test_invalid_transition_rolls_back(keys):
    calls: list[str] = []

    async def backwards(ctx):
        ctx.tx.stage(lambda: calls.append("write"))
        return I.Advance(I.STARTED)

    flow = W.workflow("thing").stage(I.STARTED, noop).stage("middle", backwards).build()
    ok(await keys.initialize_request("tok", "POST", PARAMS, PATH))
    ok(await keys.update("tok", I.KeyPatch(recovery_point="middle")))

    error = err(await W.WorkflowExecutor(flow, keys).run("tok", None))

    assert error.kind is I.IdempotencyErrorKind.STAGE_FAILURE
    assert isinstance(error.original_error, W.InvalidTransition)
    assert calls == []
    assert ok(await keys.retrieve("tok")).recovery_point == "middle"


async def test_unknown_recovery_point_is_force_finished(keys):
    flow = W.workflow("thing").stage(I.STARTED, noop).stage("middle", done).build()
    ok(await keys.initialize_request("tok", "POST", PARAMS, PATH))
    ok(await keys.update("tok", I.KeyPatch(recovery_point="from_a_newer_release")))

    result = ok(await W.WorkflowExecutor(flow, keys).run("tok", None))

    assert result.response_code == 500
    assert result.response_body == W.UNKNOWN_RECOVERY_POINT_RESPONSE
    assert ok(await keys.retrieve("tok")).is_finished


async def test_run_unknown_token(keys):
    flow = W.workflow("thing").stage(I.STARTED, done).build()

    error = err(await W.WorkflowExecutor(flow, keys).run("nope", None))

    assert error.kind is I.IdempotencyErrorKind.NOT_FOUND
