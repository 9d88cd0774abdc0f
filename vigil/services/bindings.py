"""Binding registry: tenant-scoped playbook bindings with validated predicates."""

import logging

from vigil.core.exceptions import PlaybookNotFoundError
from vigil.models import PlaybookBinding
from vigil.schemas.binding import BindingCreate, BindingUpdate
from vigil.services import predicate as predicates
from vigil.services.stores import BindingStore

logger = logging.getLogger(__name__)


def _normalize_predicate(value: str | None) -> str | None:
    if value is None or not value.strip():
        return None
    return value.strip()


class BindingRegistry:
    """
    CRUD over playbook bindings plus the ordered lookup used by the trigger engine.

    Predicates are validated before anything is persisted, so a stored
    binding always carries a predicate that parses.
    """

    def __init__(self, store: BindingStore):
        self.store = store

    async def find_matches(self, event_type: str, organization_id: int) -> list[PlaybookBinding]:
        """
        Active bindings for an event type, highest priority first.

        Ties break by ascending id. Ordering is re-applied here so every
        store implementation yields the same dispatch order.
        """
        bindings = await self.store.list_active(organization_id, event_type)
        return sorted(
            (b for b in bindings if b.is_active and b.event_type == event_type),
            key=lambda b: (-b.priority, b.id),
        )

    async def list(self, organization_id: int, event_type: str | None = None) -> list[PlaybookBinding]:
        return await self.store.list_all(organization_id, event_type)

    async def get(self, organization_id: int, binding_id: int) -> PlaybookBinding | None:
        return await self.store.get(organization_id, binding_id)

    async def create(self, organization_id: int, data: BindingCreate) -> PlaybookBinding:
        """
        Validate and persist a new binding.

        Raises:
            PredicateSyntaxError: If the predicate does not parse
            PlaybookNotFoundError: If the playbook doesn't belong to the organization
        """
        predicate = _normalize_predicate(data.predicate)
        predicates.validate(predicate)

        if not await self.store.playbook_exists(organization_id, data.playbook_id):
            raise PlaybookNotFoundError(data.playbook_id)

        binding = PlaybookBinding(
            organization_id=organization_id,
            event_type=data.event_type,
            predicate=predicate,
            playbook_id=data.playbook_id,
            priority=data.priority,
            is_active=data.is_active,
            description=data.description,
        )
        binding = await self.store.add(binding)
        logger.info(
            f"Created binding {binding.id} for '{binding.event_type}' -> playbook "
            f"{binding.playbook_id} (org {organization_id}, priority {binding.priority})"
        )
        return binding

    async def update(
        self, organization_id: int, binding_id: int, data: BindingUpdate
    ) -> PlaybookBinding | None:
        """
        Apply a partial update. Returns None when the binding is not found.

        Raises:
            PredicateSyntaxError: If a new predicate does not parse
            PlaybookNotFoundError: If a new playbook doesn't belong to the organization
        """
        changes = data.model_dump(exclude_unset=True)

        if "predicate" in changes:
            changes["predicate"] = _normalize_predicate(changes["predicate"])
            predicates.validate(changes["predicate"])

        # Non-nullable columns ignore an explicit null
        for field in ("event_type", "playbook_id", "priority", "is_active"):
            if field in changes and changes[field] is None:
                del changes[field]

        if "playbook_id" in changes:
            if not await self.store.playbook_exists(organization_id, changes["playbook_id"]):
                raise PlaybookNotFoundError(changes["playbook_id"])

        binding = await self.store.update(organization_id, binding_id, changes)
        if binding is not None:
            logger.info(f"Updated binding {binding_id} (org {organization_id}): {sorted(changes)}")
        return binding

    async def delete(self, organization_id: int, binding_id: int) -> bool:
        deleted = await self.store.delete(organization_id, binding_id)
        if deleted:
            logger.info(f"Deleted binding {binding_id} (org {organization_id})")
        return deleted
