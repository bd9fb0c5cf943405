"""Routes for partner services holding an API key."""

from typing import Any

from fastapi import APIRouter, Depends

from cashheros.edge.apikey import current_api_service
from cashheros.edge.routing import EdgeRoute
from cashheros.errors import success

router = APIRouter(prefix="/api/external", tags=["External"], route_class=EdgeRoute)


@router.get("")
async def external_access(service: str | None = Depends(current_api_service)) -> dict[str, Any]:
    return success({"message": "External API access granted", "service": service})
