"""Tests for the playbook executor."""

import asyncio

import pytest

from vigil.core.exceptions import PlaybookNotFoundError
from vigil.models import ExecutionStatus
from vigil.services.actions.registry import ActionRegistry
from vigil.services.executor import PlaybookExecutor, TriggerContext, build_namespace, render_template
from tests.fakes import (
    CompensableAction,
    InMemoryExecutionStore,
    InMemoryPlaybookStore,
    RecordingAction,
    make_playbook,
)


def _executor(playbook, *actions, executions=None, default_timeout_ms=30000):
    registry = ActionRegistry()
    for action in actions:
        registry.register(action)
    return PlaybookExecutor(
        InMemoryPlaybookStore(playbook),
        executions or InMemoryExecutionStore(),
        registry,
        default_timeout_ms=default_timeout_ms,
    )


def _context(**data):
    return TriggerContext(source="event", organization_id=1, entity_id="42", data=data)


class TestErrorPolicies:
    """abort, continue and rollback."""

    @pytest.mark.asyncio
    async def test_abort_stops_and_fails(self):
        one, two, three = RecordingAction("one"), RecordingAction("two", fail=True), RecordingAction("three")
        playbook = make_playbook(1, [
            ("s1", "one", {}, "abort"),
            ("s2", "two", {}, "abort"),
            ("s3", "three", {}, "abort"),
        ])

        execution = await _executor(playbook, one, two, three).execute(1, _context())

        assert execution.status == ExecutionStatus.FAILED
        assert three.calls == []
        assert execution.results["s1"]["status"] == "completed"
        assert execution.results["s2"]["status"] == "failed"
        assert "s3" not in execution.results
        assert "s2" in execution.error
        assert execution.completed_at is not None

    @pytest.mark.asyncio
    async def test_continue_records_failure_and_proceeds(self):
        one, two, three = RecordingAction("one"), RecordingAction("two", fail=True), RecordingAction("three")
        playbook = make_playbook(1, [
            ("s1", "one", {}, "abort"),
            ("s2", "two", {}, "continue"),
            ("s3", "three", {}, "abort"),
        ])

        execution = await _executor(playbook, one, two, three).execute(1, _context())

        assert execution.status == ExecutionStatus.COMPLETED
        assert execution.results["s2"]["status"] == "failed"
        assert execution.results["s3"]["status"] == "completed"
        assert len(three.calls) == 1

    @pytest.mark.asyncio
    async def test_rollback_compensates_succeeded_steps_in_reverse(self):
        order = []

        class Tracking(CompensableAction):
            async def compensate(self, output, context):
                order.append(self.name)
                await super().compensate(output, context)

        one = Tracking("one", output={"id": 1})
        two = Tracking("two", output={"id": 2})
        plain = RecordingAction("plain")
        failing = RecordingAction("failing", fail=True)
        playbook = make_playbook(1, [
            ("s1", "one", {}, "abort"),
            ("s2", "two", {}, "abort"),
            ("s3", "plain", {}, "abort"),
            ("s4", "failing", {}, "rollback"),
        ])

        execution = await _executor(playbook, one, two, plain, failing).execute(1, _context())

        assert execution.status == ExecutionStatus.FAILED
        assert order == ["two", "one"]
        assert one.compensated == [{"id": 1}]
        assert execution.results["s1"]["compensation"] == "completed"
        assert "compensation" not in execution.results["s3"]

    @pytest.mark.asyncio
    async def test_compensation_failure_is_recorded_not_raised(self):
        one = CompensableAction("one", fail_compensation=True)
        failing = RecordingAction("failing", fail=True)
        playbook = make_playbook(1, [
            ("s1", "one", {}, "abort"),
            ("s2", "failing", {}, "rollback"),
        ])

        execution = await _executor(playbook, one, failing).execute(1, _context())

        assert execution.status == ExecutionStatus.FAILED
        assert execution.results["s1"]["compensation"] == "failed"
        assert "cannot undo" in execution.results["s1"]["compensation_error"]

    @pytest.mark.asyncio
    async def test_unknown_action_is_a_step_failure(self):
        playbook = make_playbook(1, [("s1", "does_not_exist", {}, "abort")])

        execution = await _executor(playbook).execute(1, _context())

        assert execution.status == ExecutionStatus.FAILED
        assert "not registered" in execution.results["s1"]["error"]

    @pytest.mark.asyncio
    async def test_unexpected_exception_is_a_step_failure(self):
        class Broken(RecordingAction):
            async def execute(self, inputs, context):
                raise KeyError("missing")

        playbook = make_playbook(1, [("s1", "broken", {}, "abort")])

        execution = await _executor(playbook, Broken("broken")).execute(1, _context())

        assert execution.status == ExecutionStatus.FAILED
        assert "KeyError" in execution.results["s1"]["error"]


class TestTimeouts:
    @pytest.mark.asyncio
    async def test_step_timeout_is_an_action_failure(self):
        slow = RecordingAction("slow", delay=1.0)
        playbook = make_playbook(1, [("s1", "slow", {}, "abort", None, 20)])

        execution = await _executor(playbook, slow).execute(1, _context())

        assert execution.status == ExecutionStatus.FAILED
        assert "timed out after 20ms" in execution.results["s1"]["error"]

    @pytest.mark.asyncio
    async def test_default_timeout_applies(self):
        slow = RecordingAction("slow", delay=1.0)
        playbook = make_playbook(1, [("s1", "slow", {}, "continue")])

        execution = await _executor(playbook, slow, default_timeout_ms=20).execute(1, _context())

        assert execution.status == ExecutionStatus.COMPLETED
        assert execution.results["s1"]["status"] == "failed"

    @pytest.mark.asyncio
    async def test_hung_compensation_times_out(self):
        class HangingUndo(CompensableAction):
            async def compensate(self, output, context):
                await asyncio.sleep(5)

        failing = RecordingAction("failing", fail=True)
        playbook = make_playbook(1, [
            ("s1", "undo", {}, "abort", None, 20),
            ("s2", "failing", {}, "rollback"),
        ])

        execution = await _executor(playbook, HangingUndo("undo"), failing).execute(1, _context())

        assert execution.status == ExecutionStatus.FAILED
        assert execution.results["s1"]["compensation"] == "failed"
        assert execution.results["s1"]["compensation_error"] == "timed out after 20ms"


class TestConditionsAndTemplating:
    @pytest.mark.asyncio
    async def test_false_condition_skips_step(self):
        block = RecordingAction("block")
        playbook = make_playbook(1, [("s1", "block", {}, "abort", "severity == 'critical'")])

        execution = await _executor(playbook, block).execute(1, _context(severity="low"))

        assert execution.status == ExecutionStatus.COMPLETED
        assert execution.results["s1"]["status"] == "skipped"
        assert block.calls == []

    @pytest.mark.asyncio
    async def test_condition_can_reference_previous_step(self):
        first = RecordingAction("first", fail=True)
        notify = RecordingAction("notify")
        playbook = make_playbook(1, [
            ("s1", "first", {}, "continue"),
            ("s2", "notify", {}, "abort", "steps.s1.status == 'failed'"),
        ])

        execution = await _executor(playbook, first, notify).execute(1, _context())

        assert execution.results["s2"]["status"] == "completed"

    @pytest.mark.asyncio
    async def test_inputs_are_rendered_from_trigger_and_previous_outputs(self):
        lookup = RecordingAction("lookup", output={"rule": "r-1", "count": 3})
        notify = RecordingAction("notify")
        playbook = make_playbook(1, [
            ("lookup", "lookup", {"ip": "{{ sourceIp }}"}, "abort"),
            ("notify", "notify", {
                "message": "Blocked {{ sourceIp }} with {{ steps.lookup.output.rule }}",
                "count": "{{ steps.lookup.output.count }}",
                "alert": "{{ trigger.entity_id }}",
            }, "abort"),
        ])

        await _executor(playbook, lookup, notify).execute(1, _context(sourceIp="203.0.113.9"))

        assert lookup.calls == [{"ip": "203.0.113.9"}]
        assert notify.calls == [{"message": "Blocked 203.0.113.9 with r-1", "count": 3, "alert": "42"}]


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_missing_playbook_raises(self):
        playbook = make_playbook(1, [])
        with pytest.raises(PlaybookNotFoundError):
            await _executor(playbook).execute(2, _context())

    @pytest.mark.asyncio
    async def test_playbook_of_other_organization_raises(self):
        playbook = make_playbook(1, [], organization_id=5)
        with pytest.raises(PlaybookNotFoundError):
            await _executor(playbook).execute(1, _context())

    @pytest.mark.asyncio
    async def test_cancellation_stops_further_steps(self):
        executions = InMemoryExecutionStore()

        class CancelsExecution(RecordingAction):
            async def execute(self, inputs, context):
                await executions.cancel(context.execution_id)
                return await super().execute(inputs, context)

        first = CancelsExecution("first")
        second = RecordingAction("second")
        playbook = make_playbook(1, [("s1", "first", {}, "abort"), ("s2", "second", {}, "abort")])

        execution = await _executor(playbook, first, second, executions=executions).execute(1, _context())

        assert execution.status == ExecutionStatus.CANCELLED
        assert second.calls == []
        assert execution.results["s1"]["status"] == "completed"

    @pytest.mark.asyncio
    async def test_finalized_exactly_once(self):
        executions = InMemoryExecutionStore()
        playbook = make_playbook(1, [("s1", "one", {}, "abort")])

        execution = await _executor(playbook, RecordingAction("one"), executions=executions).execute(1, _context())

        assert await executions.finalize(execution.id, ExecutionStatus.FAILED, {}, "late") is False
        assert (await executions.get(execution.id)).status == ExecutionStatus.COMPLETED


    @pytest.mark.asyncio
    async def test_store_error_fails_execution_instead_of_leaving_it_running(self):
        executions = InMemoryExecutionStore(fail_once=("save_progress",))
        second = RecordingAction("second")
        playbook = make_playbook(1, [("s1", "one", {}, "abort"), ("s2", "second", {}, "abort")])

        execution = await _executor(
            playbook, RecordingAction("one"), second, executions=executions
        ).execute(1, _context())

        assert execution.status == ExecutionStatus.FAILED
        assert execution.error.startswith("Execution aborted: ConnectionError")
        assert execution.completed_at is not None
        assert second.calls == []

    @pytest.mark.asyncio
    async def test_on_created_runs_before_first_step(self):
        seen = []
        one = RecordingAction("one")

        async def on_created(execution_id):
            seen.append((execution_id, len(one.calls)))

        playbook = make_playbook(1, [("s1", "one", {}, "abort")])
        execution = await _executor(playbook, one).execute(1, _context(), on_created=on_created)

        assert seen == [(execution.id, 0)]

    @pytest.mark.asyncio
    async def test_recover_fails_unfinalized_execution(self):
        executions = InMemoryExecutionStore()
        executor = _executor(make_playbook(1, []), executions=executions)
        orphan = await executions.create(1, 1, "event", "42")
        await executions.save_progress(orphan.id, {"s1": {"status": "completed", "output": None}})

        recovered = await executor.recover(orphan.id)

        assert recovered.status == ExecutionStatus.FAILED
        assert recovered.results["s1"]["status"] == "completed"
        assert await executor.recover(orphan.id) is recovered
        assert await executor.recover(999) is None


class TestTemplateRendering:
    def test_whole_placeholder_keeps_type(self):
        assert render_template("{{ tags }}", {"tags": ["a", "b"]}) == ["a", "b"]

    def test_missing_placeholder(self):
        assert render_template("{{ nope }}", {}) is None
        assert render_template("x={{ nope }}", {}) == "x="

    def test_nested_structures(self):
        rendered = render_template({"a": ["{{ n }}", {"b": "{{ n }}!"}], "c": 5}, {"n": 1})
        assert rendered == {"a": [1, {"b": "1!"}], "c": 5}

    def test_namespace_exposes_trigger(self):
        context = TriggerContext(
            source="event",
            organization_id=1,
            entity_id="42",
            data={"severity": "high"},
            event={"id": "evt-1", "type": "alert.created", "timestamp": "2026-01-01T00:00:00Z"},
            binding_id=3,
        )
        namespace = build_namespace(context)
        assert namespace["severity"] == "high"
        assert namespace["trigger"]["event_id"] == "evt-1"
        assert namespace["trigger"]["binding_id"] == 3
        assert namespace["steps"] == {}
