"""On-demand correlation runs."""

from fastapi import APIRouter

from vigil.api.deps import ContainerDep, OrganizationDep
from vigil.schemas.correlation import CorrelationRunRequest, CorrelationRunResponse

router = APIRouter(prefix="/correlation", tags=["correlation"])


@router.post("/run", response_model=CorrelationRunResponse)
async def run_correlation(
    container: ContainerDep,
    organization_id: OrganizationDep,
    request: CorrelationRunRequest | None = None,
):
    """Correlate the organization's recent alerts now and return patterns and suggestions."""
    request = request or CorrelationRunRequest()
    persist = request.persist
    if persist is None:
        persist = container.settings.CORRELATION_PERSIST_INCIDENTS

    result = await container.coordinator.analyze(
        organization_id,
        lookback_hours=request.lookback_hours,
        confidence_threshold=request.confidence_threshold,
        persist=persist,
    )
    return CorrelationRunResponse(
        alerts_analyzed=result.alerts_analyzed,
        patterns=result.patterns,
        suggestions=result.suggestions,
        incidents_created=result.incidents_created,
    )
