"""Playbook binding management endpoints."""

import logging

from fastapi import APIRouter, Query, status

from vigil.api.deps import ContainerDep, OrganizationDep
from vigil.core.errors import not_found, predicate_error, unknown_playbook
from vigil.core.exceptions import PlaybookNotFoundError, PredicateSyntaxError
from vigil.schemas.binding import (
    BindingCreate,
    BindingListResponse,
    BindingResponse,
    BindingUpdate,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/soar/bindings", tags=["bindings"])


@router.get("", response_model=BindingListResponse)
async def list_bindings(
    container: ContainerDep,
    organization_id: OrganizationDep,
    event_type: str | None = Query(None, max_length=100),
):
    """List the organization's bindings, highest priority first."""
    bindings = await container.bindings.list(organization_id, event_type)
    return BindingListResponse(
        bindings=[BindingResponse.model_validate(b) for b in bindings],
        total=len(bindings),
    )


@router.get("/{binding_id}", response_model=BindingResponse)
async def get_binding(binding_id: int, container: ContainerDep, organization_id: OrganizationDep):
    binding = await container.bindings.get(organization_id, binding_id)
    if binding is None:
        raise not_found("Binding", details={"binding_id": binding_id})
    return binding


@router.post("", response_model=BindingResponse, status_code=status.HTTP_201_CREATED)
async def create_binding(data: BindingCreate, container: ContainerDep, organization_id: OrganizationDep):
    """
    Create a binding.

    The predicate is parsed before anything is stored; a syntax error
    returns 400 with the offending position.
    """
    try:
        return await container.bindings.create(organization_id, data)
    except PredicateSyntaxError as e:
        raise predicate_error(e)
    except PlaybookNotFoundError as e:
        raise unknown_playbook(e)


@router.put("/{binding_id}", response_model=BindingResponse)
async def update_binding(
    binding_id: int,
    data: BindingUpdate,
    container: ContainerDep,
    organization_id: OrganizationDep,
):
    try:
        binding = await container.bindings.update(organization_id, binding_id, data)
    except PredicateSyntaxError as e:
        raise predicate_error(e)
    except PlaybookNotFoundError as e:
        raise unknown_playbook(e)

    if binding is None:
        raise not_found("Binding", details={"binding_id": binding_id})
    return binding


@router.delete("/{binding_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_binding(binding_id: int, container: ContainerDep, organization_id: OrganizationDep):
    if not await container.bindings.delete(organization_id, binding_id):
        raise not_found("Binding", details={"binding_id": binding_id})
