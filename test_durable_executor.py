import asyncio

import pytest
from sqlalchemy import select

from tenantcron.db import engine
from tenantcron.models import durable_runs_table
from tenantcron.services.durable import registry
from tenantcron.services.durable.executor import (
    DuplicateStepName,
    DurableFunction,
    DurableRunNotFound,
    StepAttemptsExhausted,
    StepFailed,
    StepLedger,
    create_run,
    execute_function,
    get_run,
    run_until_settled,
)


def make_function(handler, *, max_attempts=3, max_step_seconds=5):
    return DurableFunction(
        function_id="test-fn",
        event_name="test/event",
        handler=handler,
        max_step_seconds=max_step_seconds,
        max_attempts=max_attempts,
    )


def test_retry_replays_completed_steps_without_running_them():
    calls = {"fetch": 0, "push": 0}

    def fetch():
        calls["fetch"] += 1
        return ["a", "b"]

    async def handler(event, step):
        ids = await step.run("fetch", fetch)

        async def push():
            calls["push"] += 1
            if calls["push"] == 1:
                raise ConnectionError("upstream reset")
            return len(ids)

        pushed = await step.run("push", push)
        return {"pushed": pushed}

    fn = make_function(handler)
    run_id = create_run(fn.function_id, fn.event_name, {"x": 1})

    with pytest.raises(StepFailed) as exc_info:
        asyncio.run(execute_function(fn, run_id))
    assert exc_info.value.step_name == "push"
    assert get_run(run_id)["status"] == "retrying"

    result = asyncio.run(execute_function(fn, run_id))

    assert result == {"pushed": 2}
    assert calls == {"fetch": 1, "push": 2}
    run = get_run(run_id)
    assert run["status"] == "completed"
    assert run["attempts"] == 2
    assert run["payload"] == {"x": 1}
    assert run["result"] == {"pushed": 2}

    steps = {r.step_name: r for r in StepLedger().list_steps(run_id)}
    assert steps["fetch"].attempt_count == 1
    assert steps["push"].attempt_count == 2
    assert steps["push"].completed and steps["push"].completed_at is not None


def test_fan_out_attempts_every_sibling_before_retrying():
    calls = []

    async def handler(event, step):
        def refresh(tenant_id):
            async def body():
                calls.append(tenant_id)
                if tenant_id == "t1":
                    raise ConnectionError("upstream reset")
                return {"tenant": tenant_id}

            return body

        outcomes = await step.run_all([(f"refresh-{t}", refresh(t)) for t in ("t1", "t2", "t3")])
        return {
            "ok": [o["tenant"] for o in outcomes if not isinstance(o, StepAttemptsExhausted)],
            "exhausted": [o.step_name for o in outcomes if isinstance(o, StepAttemptsExhausted)],
        }

    fn = make_function(handler, max_attempts=2)
    run_id = create_run(fn.function_id, fn.event_name)

    with pytest.raises(StepFailed) as exc_info:
        asyncio.run(execute_function(fn, run_id))
    assert exc_info.value.step_name == "refresh-t1"
    assert sorted(calls) == ["t1", "t2", "t3"]

    result = asyncio.run(run_until_settled(fn, run_id))

    assert result == {"ok": ["t2", "t3"], "exhausted": ["refresh-t1"]}
    assert calls.count("t1") == 2
    assert calls.count("t2") == 1
    assert calls.count("t3") == 1
    assert get_run(run_id)["status"] == "completed"


def test_fan_out_rejects_duplicate_step_names():
    async def handler(event, step):
        await step.run_all([("same", lambda: 1), ("same", lambda: 2)])
        return {}

    fn = make_function(handler)
    run_id = create_run(fn.function_id, fn.event_name)

    with pytest.raises(DuplicateStepName):
        asyncio.run(execute_function(fn, run_id))


def test_exhausted_step_fails_the_run():
    async def handler(event, step):
        async def always_fails():
            raise RuntimeError("permanently broken")

        await step.run("broken", always_fails)
        return {}

    fn = make_function(handler, max_attempts=2)
    run_id = create_run(fn.function_id, fn.event_name)

    for _ in range(2):
        with pytest.raises(StepFailed):
            asyncio.run(execute_function(fn, run_id))
    with pytest.raises(StepAttemptsExhausted) as exc_info:
        asyncio.run(execute_function(fn, run_id))

    assert exc_info.value.attempts == 2
    assert "permanently broken" in exc_info.value.last_error
    run = get_run(run_id)
    assert run["status"] == "failed"
    assert asyncio.run(execute_function(fn, run_id))["ok"] is False


def test_run_until_settled_terminates():
    attempts = []

    async def handler(event, step):
        async def flaky():
            attempts.append(1)
            raise TimeoutError("slow upstream")

        await step.run("flaky", flaky)

    fn = make_function(handler, max_attempts=3)
    run_id = create_run(fn.function_id, fn.event_name)

    with pytest.raises(StepAttemptsExhausted):
        asyncio.run(run_until_settled(fn, run_id))
    assert len(attempts) == 3


def test_step_timeout_is_a_step_failure():
    async def handler(event, step):
        async def slow():
            await asyncio.sleep(2)

        await step.run("slow", slow)

    fn = make_function(handler, max_step_seconds=0.05)
    run_id = create_run(fn.function_id, fn.event_name)

    with pytest.raises(StepFailed, match="timed out"):
        asyncio.run(execute_function(fn, run_id))
    record = StepLedger().get(run_id, "slow")
    assert record.status == "failed"
    assert "timed out" in record.last_error


def test_duplicate_step_name_fails_the_run():
    async def handler(event, step):
        await step.run("same", lambda: 1)
        await step.run("same", lambda: 2)

    fn = make_function(handler)
    run_id = create_run(fn.function_id, fn.event_name)

    with pytest.raises(DuplicateStepName):
        asyncio.run(execute_function(fn, run_id))
    assert get_run(run_id)["status"] == "failed"


def test_completed_run_is_not_executed_again():
    calls = []

    async def handler(event, step):
        calls.append(1)
        return {"n": len(calls)}

    fn = make_function(handler)
    run_id = create_run(fn.function_id, fn.event_name)

    assert asyncio.run(execute_function(fn, run_id)) == {"n": 1}
    assert asyncio.run(execute_function(fn, run_id)) == {"n": 1}
    assert calls == [1]


def test_step_output_shape_is_identical_on_replay():
    seen = []

    async def handler(event, step):
        value = await step.run("tuple", lambda: ("a", 1))
        seen.append(value)

        async def fail_once():
            if len(seen) == 1:
                raise RuntimeError("retry me")

        await step.run("gate", fail_once)
        return {}

    fn = make_function(handler)
    run_id = create_run(fn.function_id, fn.event_name)

    with pytest.raises(StepFailed):
        asyncio.run(execute_function(fn, run_id))
    asyncio.run(execute_function(fn, run_id))

    assert seen == [["a", 1], ["a", 1]]


def test_unknown_run():
    fn = make_function(lambda event, step: None)
    with pytest.raises(DurableRunNotFound):
        asyncio.run(execute_function(fn, "missing"))


def test_registry_subscriptions():
    ids = {fn.function_id for fn in registry.functions_for_event("gbp/token.refresh")}
    assert ids == {"gbp-token-refresh"}
    assert registry.get_function("places-details-refresh").event_name == "places/details.refresh"
    assert registry.get_function("gbp-token-refresh").max_step_seconds == 60
    with pytest.raises(registry.DurableFunctionNotFound):
        registry.get_function("nope")
    assert registry.functions_for_event("nobody/listens") == []


def test_send_event_marks_run_failed_when_enqueue_fails(monkeypatch):
    from tenantcron.tasks import durable

    def broker_down(function_id, run_id):
        raise ConnectionError("redis unreachable")

    monkeypatch.setattr(durable.execute_durable_function, "delay", broker_down)

    with pytest.raises(registry.EventDispatchError):
        registry.send_event("places/details.refresh", {})

    with engine.connect() as conn:
        statuses = conn.execute(select(durable_runs_table.c.status)).scalars().all()
    assert statuses == ["failed"]


def test_celery_task_executes_and_retries(monkeypatch):
    from tenantcron.tasks import durable

    calls = []

    async def handler(event, step):
        async def once():
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("first delivery fails")
            return "done"

        return {"value": await step.run("once", once)}

    fn = make_function(handler)
    monkeypatch.setattr(durable, "get_function", lambda function_id: fn)
    run_id = create_run(fn.function_id, fn.event_name)

    with pytest.raises(StepFailed):
        durable.execute_durable_function.run(fn.function_id, run_id)
    assert durable.execute_durable_function.run(fn.function_id, run_id) == {"value": "done"}


def test_celery_task_reports_exhausted_runs(monkeypatch, tracker):
    from tenantcron.tasks import durable

    async def handler(event, step):
        async def broken():
            raise RuntimeError("nope")

        await step.run("broken", broken)

    fn = make_function(handler, max_attempts=1)
    monkeypatch.setattr(durable, "get_function", lambda function_id: fn)
    run_id = create_run(fn.function_id, fn.event_name)

    with pytest.raises(StepFailed):
        durable.execute_durable_function.run(fn.function_id, run_id)
    result = durable.execute_durable_function.run(fn.function_id, run_id)

    assert result["ok"] is False
    [(error, tags)] = tracker.captured
    assert isinstance(error, StepAttemptsExhausted)
    assert tags["job"] == "test-fn"
