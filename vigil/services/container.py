"""
Process-wide service wiring.

Everything stateful (stores, registries, correlators, the executor and the
trigger engine) is constructed once here and handed to the API and the
worker, instead of living in module-level singletons.
"""

import logging
import os
import socket
from dataclasses import dataclass

import httpx
from redis.asyncio import Redis

from vigil.core.config import Settings
from vigil.services.actions.registry import ActionRegistry, build_default_registry
from vigil.services.bindings import BindingRegistry
from vigil.services.correlation.coordinator import CorrelationCoordinator
from vigil.services.correlation.graph import GraphCorrelator
from vigil.services.correlation.temporal import TemporalCorrelator
from vigil.services.events import EventBus, EventLog, EventPublisher
from vigil.services.executor import PlaybookExecutor
from vigil.services.job_queue import JobQueue
from vigil.services.stores import (
    ExecutionStore,
    SessionFactory,
    SqlAlertSource,
    SqlBindingStore,
    SqlDispatchLedger,
    SqlExecutionStore,
    SqlIncidentStore,
    SqlPlaybookStore,
    SqlThreatIntelSource,
)
from vigil.services.trigger_engine import TriggerEngine

logger = logging.getLogger(__name__)


@dataclass
class Container:
    settings: Settings
    redis: Redis
    alerts: SqlAlertSource
    bindings: BindingRegistry
    executions: ExecutionStore
    actions: ActionRegistry
    executor: PlaybookExecutor
    job_queue: JobQueue
    event_log: EventLog
    event_bus: EventBus
    publisher: EventPublisher
    engine: TriggerEngine
    coordinator: CorrelationCoordinator


def default_consumer_name() -> str:
    return f"{socket.gethostname()}-{os.getpid()}"


def build_container(
    settings: Settings,
    redis: Redis,
    session_factory: SessionFactory,
    consumer_name: str | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> Container:
    """Construct every service once, wired to the given Redis client and session factory."""
    consumer_name = consumer_name or default_consumer_name()

    bindings = BindingRegistry(SqlBindingStore(session_factory))
    executions = SqlExecutionStore(session_factory)
    actions = build_default_registry(redis=redis, http_client=http_client)

    executor = PlaybookExecutor(
        playbooks=SqlPlaybookStore(session_factory),
        executions=executions,
        actions=actions,
        default_timeout_ms=settings.STEP_DEFAULT_TIMEOUT_MS,
    )
    job_queue = JobQueue(
        redis,
        max_attempts=settings.JOB_MAX_ATTEMPTS,
        backoff_base_ms=settings.JOB_BACKOFF_BASE_MS,
        backoff_max_ms=settings.JOB_BACKOFF_MAX_MS,
        claim_idle_ms=settings.EVENT_CLAIM_IDLE_MS,
    )
    event_log = EventLog(
        redis,
        consumer_group=settings.TRIGGER_CONSUMER_GROUP,
        consumer_name=consumer_name,
        max_deliveries=settings.EVENT_MAX_DELIVERIES,
        claim_idle_ms=settings.EVENT_CLAIM_IDLE_MS,
        max_stream_length=settings.EVENT_STREAM_MAXLEN,
        batch_size=settings.TRIGGER_BATCH_SIZE,
        block_ms=settings.TRIGGER_POLL_INTERVAL_MS,
    )
    event_bus = EventBus()
    alerts = SqlAlertSource(session_factory)

    coordinator = CorrelationCoordinator(
        temporal=TemporalCorrelator(settings.CORRELATION_TIME_WINDOW_HOURS),
        graph=GraphCorrelator(settings.CORRELATION_TIME_WINDOW_HOURS),
        alerts=alerts,
        threat_intel=SqlThreatIntelSource(session_factory),
        incidents=SqlIncidentStore(session_factory),
        confidence_threshold=settings.CORRELATION_CONFIDENCE_THRESHOLD,
        lookback_hours=settings.CORRELATION_LOOKBACK_HOURS,
        min_alerts=settings.CORRELATION_MIN_ALERTS,
    )

    logger.debug(f"Services wired for consumer {consumer_name}")
    return Container(
        settings=settings,
        redis=redis,
        alerts=alerts,
        bindings=bindings,
        executions=executions,
        actions=actions,
        executor=executor,
        job_queue=job_queue,
        event_log=event_log,
        event_bus=event_bus,
        publisher=EventPublisher(event_log, event_bus),
        engine=TriggerEngine(
            bindings, SqlDispatchLedger(session_factory), job_queue, executor, lease_ms=settings.JOB_LEASE_MS
        ),
        coordinator=coordinator,
    )
