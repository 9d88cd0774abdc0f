"""
Playbook executor.

Runs a playbook's steps in sequence against a namespace built from the
trigger. Each step may be skipped by its condition, runs its action under a
deadline, and on failure applies the step's error policy. The execution
record is finalized exactly once.
"""

import asyncio
import logging
import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from vigil.core.config import settings
from vigil.core.exceptions import (
    ActionExecutionError,
    ActionTimeoutError,
    PlaybookNotFoundError,
    PredicateEvaluationError,
    PredicateSyntaxError,
)
from vigil.models import ExecutionStatus, Playbook, PlaybookExecution, PlaybookStep, StepErrorPolicy
from vigil.services import predicate as predicates
from vigil.services.actions.base import Action, ActionContext
from vigil.services.actions.registry import ActionRegistry
from vigil.services.stores import ExecutionStore, PlaybookStore

logger = logging.getLogger(__name__)

_PLACEHOLDER_RE = re.compile(r"\{\{\s*([A-Za-z_][A-Za-z0-9_]*(?:\.[A-Za-z0-9_]+)*)\s*\}\}")


@dataclass
class TriggerContext:
    """What started an execution."""

    source: str
    """Source: event or manual"""

    organization_id: int
    entity_id: str | None = None
    data: dict[str, Any] = field(default_factory=dict)
    event: dict[str, Any] | None = None
    binding_id: int | None = None


def build_namespace(context: TriggerContext) -> dict[str, Any]:
    """Initial namespace: trigger data at the top level, plus ``trigger`` and ``steps``."""
    trigger = {
        "source": context.source,
        "organization_id": context.organization_id,
        "entity_id": context.entity_id,
        "binding_id": context.binding_id,
        "data": context.data,
    }
    if context.event:
        trigger["event_id"] = context.event.get("id")
        trigger["event_type"] = context.event.get("type")
        trigger["timestamp"] = context.event.get("timestamp")

    namespace: dict[str, Any] = dict(context.data)
    namespace["trigger"] = trigger
    namespace["steps"] = {}
    return namespace


def render_template(value: Any, namespace: dict[str, Any]) -> Any:
    """
    Substitute ``{{ path }}`` placeholders in strings, recursively.

    A placeholder that is the whole string is replaced by the referenced
    value itself, keeping its type (None when missing). Placeholders embedded
    in longer strings are replaced by their string form ("" when missing).
    """
    if isinstance(value, dict):
        return {key: render_template(item, namespace) for key, item in value.items()}
    if isinstance(value, list):
        return [render_template(item, namespace) for item in value]
    if not isinstance(value, str):
        return value

    whole = _PLACEHOLDER_RE.fullmatch(value.strip())
    if whole:
        return _lookup(namespace, whole.group(1))

    def replace(match: re.Match) -> str:
        resolved = _lookup(namespace, match.group(1))
        return "" if resolved is None else str(resolved)

    return _PLACEHOLDER_RE.sub(replace, value)


def _lookup(namespace: dict[str, Any], path: str) -> Any:
    try:
        return predicates.resolve_path(namespace, path.split("."))
    except PredicateEvaluationError:
        return None


def _now() -> str:
    return datetime.now(UTC).isoformat()


class PlaybookExecutor:
    def __init__(
        self,
        playbooks: PlaybookStore,
        executions: ExecutionStore,
        actions: ActionRegistry,
        default_timeout_ms: int | None = None,
    ):
        self.playbooks = playbooks
        self.executions = executions
        self.actions = actions
        self.default_timeout_ms = default_timeout_ms or settings.STEP_DEFAULT_TIMEOUT_MS

    async def execute(
        self,
        playbook_id: int,
        context: TriggerContext,
        on_created: Callable[[int], Awaitable[None]] | None = None,
    ) -> PlaybookExecution:
        """
        Run a playbook to completion and return its finalized execution.

        Step failures are recorded on the execution, never raised. Any other
        error after the execution record exists fails that execution rather
        than leaving it running.

        Args:
            playbook_id: Playbook to run
            context: What triggered the run
            on_created: Awaited with the new execution id before any step runs

        Raises:
            PlaybookNotFoundError: If the playbook is missing or inactive
        """
        playbook = await self.playbooks.get_active(playbook_id)
        if playbook is None or playbook.organization_id != context.organization_id:
            raise PlaybookNotFoundError(playbook_id)

        execution = await self.executions.create(
            playbook_id=playbook.id,
            organization_id=context.organization_id,
            trigger_source=context.source,
            trigger_entity_id=context.entity_id,
        )
        logger.info(
            f"Starting execution {execution.id} of playbook {playbook.id} ({playbook.name}) "
            f"triggered by {context.source} {context.entity_id}"
        )

        results: dict[str, Any] = {}
        try:
            if on_created is not None:
                await on_created(execution.id)
            status, error = await self._run_steps(playbook, execution.id, context, results)
        except Exception as e:
            logger.exception(f"Execution {execution.id} aborted: {e}")
            status = ExecutionStatus.FAILED
            error = f"Execution aborted: {type(e).__name__}: {e}"

        finalized = await self.executions.finalize(execution.id, status, results, error)
        if not finalized:
            logger.warning(f"Execution {execution.id} was already finalized")

        final = await self.executions.get(execution.id)
        logger.info(f"Execution {execution.id} of playbook {playbook.id} finished: {final.status}")
        return final

    async def recover(self, execution_id: int) -> PlaybookExecution | None:
        """
        Settle an execution left behind by an earlier attempt at the same job.

        The playbook is not run again. An execution that never got finalized
        is failed with whatever step results it had saved.

        Returns:
            The finalized execution, or None if the record no longer exists
        """
        execution = await self.executions.get(execution_id)
        if execution is None:
            return None
        if execution.completed_at is None:
            await self.executions.finalize(
                execution_id,
                ExecutionStatus.FAILED,
                dict(execution.results or {}),
                "Interrupted before finalization; not re-run",
            )
            logger.warning(f"Execution {execution_id} was interrupted and has been marked failed")
            execution = await self.executions.get(execution_id)
        return execution

    async def _run_steps(
        self,
        playbook: Playbook,
        execution_id: int,
        context: TriggerContext,
        results: dict[str, Any],
    ) -> tuple[str, str | None]:
        """Run the steps in sequence, filling ``results``. Returns (status, error)."""
        namespace = build_namespace(context)
        succeeded: list[tuple[PlaybookStep, Action, Any]] = []

        for step in sorted(playbook.steps, key=lambda s: s.sequence):
            if await self.executions.is_cancelled(execution_id):
                logger.info(f"Execution {execution_id} cancelled before step {step.step_key}")
                return ExecutionStatus.CANCELLED, None

            action_context = ActionContext(
                organization_id=context.organization_id,
                playbook_id=playbook.id,
                execution_id=execution_id,
                step_key=step.step_key,
            )
            started_at = _now()

            try:
                if not self._condition_holds(step, namespace):
                    results[step.step_key] = {"status": "skipped", "output": None, "started_at": started_at}
                    namespace["steps"][step.step_key] = {"status": "skipped", "output": None}
                    logger.debug(f"Execution {execution_id}: step {step.step_key} skipped by condition")
                    continue

                action = self.actions.get(step.action_id)
                output = await self._run_action(step, action, namespace, action_context)

            except ActionExecutionError as e:
                results[step.step_key] = {
                    "status": "failed",
                    "output": None,
                    "error": str(e),
                    "started_at": started_at,
                    "completed_at": _now(),
                }
                namespace["steps"][step.step_key] = {"status": "failed", "output": None, "error": str(e)}
                logger.warning(f"Execution {execution_id}: step {step.step_key} failed ({step.on_error}): {e}")

                if step.on_error == StepErrorPolicy.CONTINUE:
                    await self.executions.save_progress(execution_id, results)
                    continue

                error = f"Step '{step.step_key}' failed: {e}"
                if step.on_error == StepErrorPolicy.ROLLBACK:
                    await self._rollback(succeeded, results, execution_id, action_context)
                    error = f"{error}; rolled back {len(succeeded)} step(s)"
                return ExecutionStatus.FAILED, error

            results[step.step_key] = {
                "status": "completed",
                "output": output,
                "started_at": started_at,
                "completed_at": _now(),
            }
            namespace["steps"][step.step_key] = {"status": "completed", "output": output}
            succeeded.append((step, action, output))
            await self.executions.save_progress(execution_id, results)

        return ExecutionStatus.COMPLETED, None

    def _condition_holds(self, step: PlaybookStep, namespace: dict[str, Any]) -> bool:
        if not step.condition:
            return True
        try:
            return predicates.evaluate(step.condition, namespace)
        except PredicateSyntaxError as e:
            raise ActionExecutionError(step.action_id, f"invalid condition: {e}") from e

    async def _run_action(
        self,
        step: PlaybookStep,
        action: Action,
        namespace: dict[str, Any],
        context: ActionContext,
    ) -> Any:
        inputs = render_template(step.inputs or {}, namespace)
        timeout_ms = step.timeout_ms or self.default_timeout_ms

        try:
            return await asyncio.wait_for(action.execute(inputs, context), timeout=timeout_ms / 1000)
        except TimeoutError as e:
            raise ActionTimeoutError(action.name, timeout_ms) from e
        except ActionExecutionError:
            raise
        except Exception as e:
            raise ActionExecutionError(action.name, f"{type(e).__name__}: {e}") from e

    async def _rollback(
        self,
        succeeded: list[tuple[PlaybookStep, Action, Any]],
        results: dict[str, Any],
        execution_id: int,
        failed_context: ActionContext,
    ) -> None:
        """Compensate previously succeeded steps in reverse order. Failures are recorded, not raised."""
        for step, action, output in reversed(succeeded):
            if not action.compensable:
                continue
            context = ActionContext(
                organization_id=failed_context.organization_id,
                playbook_id=failed_context.playbook_id,
                execution_id=execution_id,
                step_key=step.step_key,
            )
            timeout_ms = step.timeout_ms or self.default_timeout_ms
            try:
                await asyncio.wait_for(action.compensate(output, context), timeout=timeout_ms / 1000)
                results[step.step_key]["compensation"] = "completed"
                logger.info(f"Execution {execution_id}: compensated step {step.step_key}")
            except TimeoutError:
                results[step.step_key]["compensation"] = "failed"
                results[step.step_key]["compensation_error"] = f"timed out after {timeout_ms}ms"
                logger.error(f"Execution {execution_id}: compensation of step {step.step_key} timed out")
            except Exception as e:
                results[step.step_key]["compensation"] = "failed"
                results[step.step_key]["compensation_error"] = str(e)
                logger.error(f"Execution {execution_id}: compensation of step {step.step_key} failed: {e}")
