from typing import Annotated

from fastapi import Depends, Header, Request

from vigil.core.errors import validation_error
from vigil.services.container import Container


def get_container(request: Request) -> Container:
    """Services wired at startup by the application lifespan."""
    return request.app.state.container


async def get_organization_id(
    x_organization_id: Annotated[str | None, Header(alias="X-Organization-ID")] = None,
) -> int:
    """
    Tenant the request is scoped to.

    Every resource lookup is filtered by this id, so another organization's
    bindings and executions read as not found.
    """
    if x_organization_id is None:
        raise validation_error("X-Organization-ID header is required")
    try:
        organization_id = int(x_organization_id)
    except ValueError:
        raise validation_error("X-Organization-ID must be an integer", details={"value": x_organization_id})
    if organization_id <= 0:
        raise validation_error("X-Organization-ID must be positive", details={"value": x_organization_id})
    return organization_id


ContainerDep = Annotated[Container, Depends(get_container)]
OrganizationDep = Annotated[int, Depends(get_organization_id)]
