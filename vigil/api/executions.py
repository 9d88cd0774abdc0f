"""Playbook execution endpoints."""

from fastapi import APIRouter

from vigil.api.deps import ContainerDep, OrganizationDep
from vigil.core.errors import conflict, not_found
from vigil.schemas.execution import ExecutionResponse

router = APIRouter(prefix="/soar/executions", tags=["executions"])


async def _get_for_org(container, organization_id: int, execution_id: int):
    execution = await container.executions.get(execution_id)
    if execution is None or execution.organization_id != organization_id:
        raise not_found("Execution", details={"execution_id": execution_id})
    return execution


@router.get("/{execution_id}", response_model=ExecutionResponse)
async def get_execution(execution_id: int, container: ContainerDep, organization_id: OrganizationDep):
    return await _get_for_org(container, organization_id, execution_id)


@router.post("/{execution_id}/cancel", response_model=ExecutionResponse)
async def cancel_execution(execution_id: int, container: ContainerDep, organization_id: OrganizationDep):
    """
    Cancel a running execution.

    No further steps start once cancelled; a step already in flight runs to
    completion or its own timeout.
    """
    execution = await _get_for_org(container, organization_id, execution_id)
    if not await container.executions.cancel(execution_id):
        raise conflict(
            f"Execution {execution_id} is not running",
            details={"execution_id": execution_id, "status": execution.status},
        )
    return await container.executions.get(execution_id)
