"""
Persistence seams for the trigger engine, executor and correlators.

Each store is a Protocol with a SQLAlchemy implementation. Services receive a
store instance at construction time, so the engines never open database
sessions themselves and can be exercised against in-memory stores.
"""

import logging
import uuid
from datetime import UTC, datetime, timedelta
from typing import Any, Protocol

from sqlalchemy import and_, case, delete, func, or_, select, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from vigil.models import (
    Alert,
    DispatchState,
    ExecutionStatus,
    Incident,
    Playbook,
    PlaybookBinding,
    PlaybookExecution,
    ThreatIntel,
    TriggerDispatch,
)
from vigil.schemas.correlation import IncidentSuggestion
from vigil.services.correlation.types import CorrelationAlert, ThreatIntelEntry

logger = logging.getLogger(__name__)


class BindingStore(Protocol):
    async def list_active(self, organization_id: int, event_type: str) -> list[PlaybookBinding]: ...

    async def list_all(self, organization_id: int, event_type: str | None = None) -> list[PlaybookBinding]: ...

    async def get(self, organization_id: int, binding_id: int) -> PlaybookBinding | None: ...

    async def add(self, binding: PlaybookBinding) -> PlaybookBinding: ...

    async def update(
        self, organization_id: int, binding_id: int, changes: dict[str, Any]
    ) -> PlaybookBinding | None: ...

    async def delete(self, organization_id: int, binding_id: int) -> bool: ...

    async def playbook_exists(self, organization_id: int, playbook_id: int) -> bool: ...


class PlaybookStore(Protocol):
    async def get_active(self, playbook_id: int) -> Playbook | None: ...


class ExecutionStore(Protocol):
    async def create(
        self,
        playbook_id: int,
        organization_id: int,
        trigger_source: str,
        trigger_entity_id: str | None,
    ) -> PlaybookExecution: ...

    async def get(self, execution_id: int) -> PlaybookExecution | None: ...

    async def save_progress(self, execution_id: int, results: dict[str, Any]) -> None: ...

    async def is_cancelled(self, execution_id: int) -> bool: ...

    async def cancel(self, execution_id: int) -> bool: ...

    async def finalize(
        self, execution_id: int, status: str, results: dict[str, Any], error: str | None
    ) -> bool: ...


class DispatchLedger(Protocol):
    async def record_match(
        self, event_id: str, binding_id: int, playbook_id: int, organization_id: int
    ) -> tuple[TriggerDispatch, bool]: ...

    async def mark_dispatched(self, dispatch_id: str) -> None: ...

    async def get(self, dispatch_id: str) -> TriggerDispatch | None: ...

    async def start(self, dispatch_id: str, lease_ms: int) -> TriggerDispatch | None: ...

    async def attach_execution(self, dispatch_id: str, execution_id: int) -> None: ...

    async def finish(
        self,
        dispatch_id: str,
        state: str,
        execution_id: int | None = None,
        error: str | None = None,
    ) -> None: ...

    async def count_for_event(self, event_id: str) -> int: ...


class AlertSource(Protocol):
    async def list_recent(
        self, organization_id: int, since: datetime, exclude_statuses: tuple[str, ...] = ("resolved",)
    ) -> list[CorrelationAlert]: ...

    async def organizations_with_alerts(self, since: datetime) -> list[int]: ...

    async def add(self, alert: Alert) -> Alert: ...


class ThreatIntelSource(Protocol):
    async def list_for_organization(self, organization_id: int) -> list[ThreatIntelEntry]: ...


class IncidentStore(Protocol):
    async def create_from_suggestion(
        self, organization_id: int, suggestion: IncidentSuggestion
    ) -> bool: ...


SessionFactory = async_sessionmaker[AsyncSession]


class SqlBindingStore:
    def __init__(self, session_factory: SessionFactory):
        self.session_factory = session_factory

    async def list_active(self, organization_id: int, event_type: str) -> list[PlaybookBinding]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(PlaybookBinding)
                .where(
                    PlaybookBinding.organization_id == organization_id,
                    PlaybookBinding.event_type == event_type,
                    PlaybookBinding.is_active.is_(True),
                )
                .order_by(PlaybookBinding.priority.desc(), PlaybookBinding.id.asc())
            )
            return list(result.scalars().all())

    async def list_all(self, organization_id: int, event_type: str | None = None) -> list[PlaybookBinding]:
        async with self.session_factory() as db:
            query = select(PlaybookBinding).where(PlaybookBinding.organization_id == organization_id)
            if event_type:
                query = query.where(PlaybookBinding.event_type == event_type)
            result = await db.execute(
                query.order_by(PlaybookBinding.priority.desc(), PlaybookBinding.id.asc())
            )
            return list(result.scalars().all())

    async def get(self, organization_id: int, binding_id: int) -> PlaybookBinding | None:
        async with self.session_factory() as db:
            result = await db.execute(
                select(PlaybookBinding).where(
                    PlaybookBinding.id == binding_id,
                    PlaybookBinding.organization_id == organization_id,
                )
            )
            return result.scalar_one_or_none()

    async def add(self, binding: PlaybookBinding) -> PlaybookBinding:
        async with self.session_factory() as db:
            db.add(binding)
            await db.commit()
            await db.refresh(binding)
            return binding

    async def update(
        self, organization_id: int, binding_id: int, changes: dict[str, Any]
    ) -> PlaybookBinding | None:
        async with self.session_factory() as db:
            result = await db.execute(
                select(PlaybookBinding).where(
                    PlaybookBinding.id == binding_id,
                    PlaybookBinding.organization_id == organization_id,
                )
            )
            binding = result.scalar_one_or_none()
            if binding is None:
                return None
            for field, value in changes.items():
                setattr(binding, field, value)
            await db.commit()
            await db.refresh(binding)
            return binding

    async def delete(self, organization_id: int, binding_id: int) -> bool:
        async with self.session_factory() as db:
            result = await db.execute(
                delete(PlaybookBinding).where(
                    PlaybookBinding.id == binding_id,
                    PlaybookBinding.organization_id == organization_id,
                )
            )
            await db.commit()
            return (result.rowcount or 0) > 0

    async def playbook_exists(self, organization_id: int, playbook_id: int) -> bool:
        async with self.session_factory() as db:
            result = await db.execute(
                select(Playbook.id).where(
                    Playbook.id == playbook_id,
                    Playbook.organization_id == organization_id,
                )
            )
            return result.scalar_one_or_none() is not None


class SqlPlaybookStore:
    def __init__(self, session_factory: SessionFactory):
        self.session_factory = session_factory

    async def get_active(self, playbook_id: int) -> Playbook | None:
        async with self.session_factory() as db:
            result = await db.execute(
                select(Playbook)
                .options(selectinload(Playbook.steps))
                .where(Playbook.id == playbook_id, Playbook.is_active.is_(True))
            )
            return result.scalar_one_or_none()


class SqlExecutionStore:
    def __init__(self, session_factory: SessionFactory):
        self.session_factory = session_factory

    async def create(
        self,
        playbook_id: int,
        organization_id: int,
        trigger_source: str,
        trigger_entity_id: str | None,
    ) -> PlaybookExecution:
        async with self.session_factory() as db:
            execution = PlaybookExecution(
                playbook_id=playbook_id,
                organization_id=organization_id,
                status=ExecutionStatus.RUNNING,
                trigger_source=trigger_source,
                trigger_entity_id=trigger_entity_id,
                results={},
                started_at=datetime.now(UTC),
            )
            db.add(execution)
            await db.commit()
            await db.refresh(execution)
            return execution

    async def get(self, execution_id: int) -> PlaybookExecution | None:
        async with self.session_factory() as db:
            return await db.get(PlaybookExecution, execution_id)

    async def save_progress(self, execution_id: int, results: dict[str, Any]) -> None:
        async with self.session_factory() as db:
            await db.execute(
                update(PlaybookExecution)
                .where(
                    PlaybookExecution.id == execution_id,
                    PlaybookExecution.completed_at.is_(None),
                )
                .values(results=results)
            )
            await db.commit()

    async def is_cancelled(self, execution_id: int) -> bool:
        async with self.session_factory() as db:
            result = await db.execute(
                select(PlaybookExecution.status).where(PlaybookExecution.id == execution_id)
            )
            return result.scalar_one_or_none() == ExecutionStatus.CANCELLED

    async def cancel(self, execution_id: int) -> bool:
        """Mark a running execution cancelled. False if it already finished."""
        async with self.session_factory() as db:
            result = await db.execute(
                update(PlaybookExecution)
                .where(
                    PlaybookExecution.id == execution_id,
                    PlaybookExecution.status == ExecutionStatus.RUNNING,
                    PlaybookExecution.completed_at.is_(None),
                )
                .values(status=ExecutionStatus.CANCELLED)
            )
            await db.commit()
            return (result.rowcount or 0) > 0

    async def finalize(
        self, execution_id: int, status: str, results: dict[str, Any], error: str | None
    ) -> bool:
        """
        Close an execution exactly once.

        The update only applies while completed_at is NULL; an execution that
        was cancelled externally keeps its cancelled status.

        Returns:
            True if this call finalized the execution
        """
        async with self.session_factory() as db:
            result = await db.execute(
                update(PlaybookExecution)
                .where(
                    PlaybookExecution.id == execution_id,
                    PlaybookExecution.completed_at.is_(None),
                )
                .values(
                    status=case(
                        (PlaybookExecution.status == ExecutionStatus.CANCELLED, ExecutionStatus.CANCELLED),
                        else_=status,
                    ),
                    results=results,
                    error=error,
                    completed_at=datetime.now(UTC),
                )
            )
            await db.commit()
            return (result.rowcount or 0) > 0


class SqlDispatchLedger:
    """TriggerDispatch rows keyed by the unique (event_id, binding_id) pair."""

    def __init__(self, session_factory: SessionFactory):
        self.session_factory = session_factory

    async def record_match(
        self, event_id: str, binding_id: int, playbook_id: int, organization_id: int
    ) -> tuple[TriggerDispatch, bool]:
        """
        Insert the dispatch record for a match if it does not exist yet.

        Returns:
            (record, created) where created is False when the pair was seen before
        """
        async with self.session_factory() as db:
            stmt = (
                insert(TriggerDispatch)
                .values(
                    id=uuid.uuid4(),
                    event_id=event_id,
                    binding_id=binding_id,
                    playbook_id=playbook_id,
                    organization_id=organization_id,
                    state=DispatchState.MATCHED,
                )
                .on_conflict_do_nothing(constraint="uq_trigger_dispatch_event_binding")
                .returning(TriggerDispatch.id)
            )
            inserted_id = (await db.execute(stmt)).scalar_one_or_none()
            await db.commit()

            result = await db.execute(
                select(TriggerDispatch).where(
                    TriggerDispatch.event_id == event_id,
                    TriggerDispatch.binding_id == binding_id,
                )
            )
            return result.scalar_one(), inserted_id is not None

    async def mark_dispatched(self, dispatch_id: str) -> None:
        # Never regress a record a worker already picked up
        await self._transition(dispatch_id, DispatchState.DISPATCHED, (DispatchState.MATCHED,))

    async def get(self, dispatch_id: str) -> TriggerDispatch | None:
        async with self.session_factory() as db:
            return await db.get(TriggerDispatch, uuid.UUID(str(dispatch_id)))

    async def start(self, dispatch_id: str, lease_ms: int) -> TriggerDispatch | None:
        """
        Take the RUNNING lease on a dispatch.

        A record still RUNNING under an older lease is taken over once that
        lease is ``lease_ms`` old, so a job reclaimed from a dead worker is
        not stuck behind it.

        Returns:
            The leased record, or None if it is finished or leased by a live worker
        """
        expired = datetime.now(UTC) - timedelta(milliseconds=lease_ms)
        async with self.session_factory() as db:
            result = await db.execute(
                update(TriggerDispatch)
                .where(
                    TriggerDispatch.id == uuid.UUID(str(dispatch_id)),
                    or_(
                        TriggerDispatch.state.in_((DispatchState.MATCHED, DispatchState.DISPATCHED)),
                        and_(
                            TriggerDispatch.state == DispatchState.RUNNING,
                            TriggerDispatch.started_at < expired,
                        ),
                    ),
                )
                .values(state=DispatchState.RUNNING, started_at=func.now())
                .returning(TriggerDispatch)
                .execution_options(synchronize_session=False)
            )
            record = result.scalar_one_or_none()
            await db.commit()
            return record

    async def attach_execution(self, dispatch_id: str, execution_id: int) -> None:
        async with self.session_factory() as db:
            await db.execute(
                update(TriggerDispatch)
                .where(TriggerDispatch.id == uuid.UUID(str(dispatch_id)))
                .values(execution_id=execution_id)
            )
            await db.commit()

    async def finish(
        self,
        dispatch_id: str,
        state: str,
        execution_id: int | None = None,
        error: str | None = None,
    ) -> None:
        async with self.session_factory() as db:
            values: dict[str, Any] = {"state": state, "last_error": error}
            if execution_id is not None:
                values["execution_id"] = execution_id
            await db.execute(
                update(TriggerDispatch)
                .where(TriggerDispatch.id == uuid.UUID(str(dispatch_id)))
                .values(**values)
            )
            await db.commit()

    async def count_for_event(self, event_id: str) -> int:
        async with self.session_factory() as db:
            result = await db.execute(
                select(TriggerDispatch.id).where(TriggerDispatch.event_id == event_id)
            )
            return len(result.all())

    async def _transition(self, dispatch_id: str, state: str, allowed: tuple[str, ...]) -> bool:
        async with self.session_factory() as db:
            result = await db.execute(
                update(TriggerDispatch)
                .where(
                    TriggerDispatch.id == uuid.UUID(str(dispatch_id)),
                    TriggerDispatch.state.in_(allowed),
                )
                .values(state=state)
            )
            await db.commit()
            return (result.rowcount or 0) > 0


class SqlAlertSource:
    def __init__(self, session_factory: SessionFactory):
        self.session_factory = session_factory

    async def list_recent(
        self, organization_id: int, since: datetime, exclude_statuses: tuple[str, ...] = ("resolved",)
    ) -> list[CorrelationAlert]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(Alert)
                .where(
                    Alert.organization_id == organization_id,
                    Alert.timestamp >= since,
                    Alert.status.not_in(exclude_statuses),
                )
                .order_by(Alert.timestamp.asc())
            )
            return [CorrelationAlert.from_model(alert) for alert in result.scalars().all()]

    async def organizations_with_alerts(self, since: datetime) -> list[int]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(Alert.organization_id).where(Alert.timestamp >= since).distinct()
            )
            return sorted(result.scalars().all())

    async def add(self, alert: Alert) -> Alert:
        async with self.session_factory() as db:
            db.add(alert)
            await db.commit()
            await db.refresh(alert)
            return alert


class SqlThreatIntelSource:
    def __init__(self, session_factory: SessionFactory):
        self.session_factory = session_factory

    async def list_for_organization(self, organization_id: int) -> list[ThreatIntelEntry]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(ThreatIntel).where(ThreatIntel.organization_id == organization_id)
            )
            return [ThreatIntelEntry.from_model(entry) for entry in result.scalars().all()]


class SqlIncidentStore:
    def __init__(self, session_factory: SessionFactory):
        self.session_factory = session_factory

    async def create_from_suggestion(self, organization_id: int, suggestion: IncidentSuggestion) -> bool:
        """Persist a suggestion. False if an incident for the pattern already exists."""
        async with self.session_factory() as db:
            stmt = (
                insert(Incident)
                .values(
                    organization_id=organization_id,
                    pattern_id=suggestion.pattern_id,
                    title=suggestion.title,
                    description=suggestion.description,
                    severity=suggestion.severity,
                    status="new",
                    confidence=suggestion.analysis.confidence,
                    related_alerts=suggestion.related_alerts,
                    timeline=[entry.model_dump(mode="json") for entry in suggestion.timeline],
                    mitre_tactics=suggestion.mitre_tactics,
                    analysis=suggestion.analysis.model_dump(mode="json"),
                )
                .on_conflict_do_nothing(constraint="uq_incident_org_pattern")
                .returning(Incident.id)
            )
            inserted = (await db.execute(stmt)).scalar_one_or_none()
            await db.commit()
            if inserted is not None:
                logger.info(f"Created incident {inserted} from pattern {suggestion.pattern_id}")
            return inserted is not None
