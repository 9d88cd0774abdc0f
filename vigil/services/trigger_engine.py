"""
Trigger engine: matches events against bindings and runs playbooks.

Events flow Received -> Matched -> Dispatched -> {Completed, Failed}. The
consumer side reads the event log, records a dispatch row per (event,
binding) match and enqueues a playbook job, acknowledging the event only
once every match is enqueued. A fixed pool of asyncio workers pulls jobs and
runs the executor. The dispatch rows make redelivery idempotent: a worker
holds a time-limited lease on its dispatch while running, and a job whose
dispatch already has an execution settles that execution instead of running
the playbook again.
"""

import asyncio
import logging
from collections import defaultdict

import structlog

from vigil.core.exceptions import DedupConflict, PlaybookNotFoundError, PredicateSyntaxError
from vigil.models import DispatchState
from vigil.schemas.event import Event
from vigil.schemas.execution import PlaybookJob
from vigil.services import predicate as predicates
from vigil.services.bindings import BindingRegistry
from vigil.services.events import Delivery, EventLog
from vigil.services.executor import PlaybookExecutor, TriggerContext
from vigil.services.job_queue import JobQueue, QueuedJob
from vigil.services.stores import DispatchLedger

logger = logging.getLogger(__name__)


class TriggerEngine:
    def __init__(
        self,
        registry: BindingRegistry,
        ledger: DispatchLedger,
        queue: JobQueue,
        executor: PlaybookExecutor,
        lease_ms: int = 600000,
    ):
        self.registry = registry
        self.ledger = ledger
        self.queue = queue
        self.executor = executor
        self.lease_ms = lease_ms

    async def handle_event(self, event: Event) -> list[int]:
        """
        Match an event and enqueue a job for each new match, in priority order.

        Returns:
            Binding ids a job was enqueued for during this call

        Raises:
            DispatchError: If a job can't be enqueued; the event must not be acknowledged
        """
        bindings = await self.registry.find_matches(event.type, event.organization_id)
        dispatched: list[int] = []

        for binding in bindings:
            try:
                if not predicates.evaluate(binding.predicate, event):
                    continue
            except PredicateSyntaxError as e:
                # Predicates are validated on write; only a hand-edited row gets here
                logger.error(f"Binding {binding.id} has an invalid predicate, skipping: {e}")
                continue

            dispatch, created = await self.ledger.record_match(
                event.id, binding.id, binding.playbook_id, event.organization_id
            )
            if not created and dispatch.state != DispatchState.MATCHED:
                logger.debug(f"Event {event.id} already dispatched for binding {binding.id} ({dispatch.state})")
                continue

            job = PlaybookJob(
                dispatch_id=str(dispatch.id),
                event_id=event.id,
                binding_id=binding.id,
                playbook_id=binding.playbook_id,
                organization_id=event.organization_id,
                trigger=event.to_wire(),
            )
            await self.queue.enqueue(job)
            await self.ledger.mark_dispatched(str(dispatch.id))
            dispatched.append(binding.id)
            logger.info(
                f"Dispatched playbook {binding.playbook_id} for event {event.id} "
                f"via binding {binding.id} (priority {binding.priority})"
            )

        return dispatched

    async def process_deliveries(self, deliveries: list[Delivery], event_log: EventLog) -> int:
        """
        Handle a batch read from the event log.

        Each organization stream is processed in order. The first failure
        stops that stream's batch so its later events are not handled ahead
        of the failed one's redelivery; other streams carry on. Only events
        actually handed to ``handle_event`` count against the delivery limit.

        Returns:
            Number of events acknowledged, dead-lettered ones included
        """
        by_stream: dict[str, list[Delivery]] = defaultdict(list)
        for delivery in deliveries:
            by_stream[delivery.handle.stream].append(delivery)

        acknowledged = 0
        for stream, items in by_stream.items():
            for delivery in items:
                attempt = await event_log.record_attempt(delivery)
                if attempt is None:
                    acknowledged += 1
                    continue
                try:
                    await self.handle_event(delivery.event)
                except Exception as e:
                    logger.warning(
                        f"Event {delivery.event.id} on {stream} failed "
                        f"(attempt {attempt}), will be redelivered: {e}"
                    )
                    break
                await event_log.ack(delivery.handle)
                acknowledged += 1
        return acknowledged

    async def process_job(self, queued: QueuedJob) -> None:
        """Run one playbook job and settle its dispatch record and queue entry."""
        job = queued.job
        with structlog.contextvars.bound_contextvars(
            dispatch_id=job.dispatch_id,
            event_id=job.event_id,
            playbook_id=job.playbook_id,
            organization_id=job.organization_id,
        ):
            await self._run_job(queued)

    async def _run_job(self, queued: QueuedJob) -> None:
        job = queued.job

        try:
            dispatch = await self.ledger.start(job.dispatch_id, self.lease_ms)
            if dispatch is None:
                current = await self.ledger.get(job.dispatch_id)
                if current is not None and current.state == DispatchState.RUNNING:
                    # Left pending; it is reclaimed again once the lease lapses
                    logger.info(f"Dispatch {job.dispatch_id} is leased by another worker, leaving job pending")
                    return
                raise DedupConflict(job.event_id, job.binding_id)
        except DedupConflict as e:
            logger.info(f"Dropping duplicate job: {e}")
            await self.queue.ack(queued)
            return

        try:
            if dispatch.execution_id is not None:
                execution = await self.executor.recover(dispatch.execution_id)
                if execution is not None:
                    await self.ledger.finish(job.dispatch_id, DispatchState.COMPLETED, execution_id=execution.id)
                    await self.queue.ack(queued)
                    return
            execution = await self.executor.execute(
                job.playbook_id,
                self._trigger_context(job),
                on_created=lambda execution_id: self.ledger.attach_execution(job.dispatch_id, execution_id),
            )
        except PlaybookNotFoundError as e:
            await self.ledger.finish(job.dispatch_id, DispatchState.FAILED, error=str(e))
            await self.queue.dead_letter(queued, str(e))
            return
        except Exception as e:
            logger.exception(f"Job for dispatch {job.dispatch_id} errored: {e}")
            if self.queue.has_attempts_left(queued):
                await self.ledger.finish(job.dispatch_id, DispatchState.DISPATCHED, error=str(e))
            else:
                await self.ledger.finish(job.dispatch_id, DispatchState.FAILED, error=str(e))
            await self.queue.retry(queued, str(e))
            return

        await self.ledger.finish(job.dispatch_id, DispatchState.COMPLETED, execution_id=execution.id)
        await self.queue.ack(queued)

    @staticmethod
    def _trigger_context(job: PlaybookJob) -> TriggerContext:
        event = Event.model_validate(job.trigger)
        return TriggerContext(
            source="event",
            organization_id=job.organization_id,
            entity_id=event.entity_id,
            data=dict(event.data),
            event=job.trigger,
            binding_id=job.binding_id,
        )


class WorkerPool:
    """
    Runs the event consumer plus N job workers as asyncio tasks.

    Usage:
        pool = WorkerPool(engine, event_log, queue, concurrency=5)
        await pool.start()
        # ... later
        await pool.stop()
    """

    def __init__(
        self,
        engine: TriggerEngine,
        event_log: EventLog,
        queue: JobQueue,
        concurrency: int = 5,
        poll_interval_ms: int = 2000,
        consumer_name: str = "trigger",
    ):
        self.engine = engine
        self.event_log = event_log
        self.queue = queue
        self.concurrency = concurrency
        self.poll_interval_ms = poll_interval_ms
        self.consumer_name = consumer_name
        self.running = False
        self.active_jobs = 0
        self._tasks: list[asyncio.Task] = []

    async def start(self) -> None:
        if self.running:
            return
        self.running = True
        self._tasks.append(asyncio.create_task(self._consume_events(), name="event-consumer"))
        for index in range(self.concurrency):
            self._tasks.append(
                asyncio.create_task(self._run_worker(f"{self.consumer_name}-{index}"), name=f"job-worker-{index}")
            )
        logger.info(f"Trigger engine started with {self.concurrency} job workers")

    async def stop(self, timeout: float = 60.0) -> None:
        """Stop pulling work, wait for in-flight jobs, then cancel the tasks."""
        self.running = False
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while self.active_jobs and loop.time() < deadline:
            await asyncio.sleep(0.1)
        if self.active_jobs:
            logger.warning(f"Shutdown timeout with {self.active_jobs} job(s) in flight")

        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        logger.info("Trigger engine stopped")

    async def wait(self) -> None:
        await asyncio.gather(*self._tasks, return_exceptions=True)

    async def _consume_events(self) -> None:
        while self.running:
            try:
                deliveries = await self.event_log.consume()
                if not deliveries:
                    continue
                acknowledged = await self.engine.process_deliveries(deliveries, self.event_log)
                if acknowledged < len(deliveries):
                    # Back off before the failed events are read again
                    await asyncio.sleep(self.poll_interval_ms / 1000)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Event consumer error: {e}")
                await asyncio.sleep(1)

    async def _run_worker(self, name: str) -> None:
        pulls = 0
        while self.running:
            try:
                pulls += 1
                queued = await self.queue.dequeue(name, block_ms=self.poll_interval_ms, claim=pulls % 10 == 0)
                if queued is None:
                    continue
                self.active_jobs += 1
                try:
                    await self.engine.process_job(queued)
                finally:
                    self.active_jobs -= 1
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Job worker {name} error: {e}")
                await asyncio.sleep(1)
