"""Feedback submission."""

from typing import Any

import structlog
from fastapi import APIRouter, Request

from cashheros.edge.auth import current_principal
from cashheros.edge.routing import EdgeRoute
from cashheros.errors import success
from cashheros.models import FeedbackRequest
from cashheros.repository import get_feedback_repository

logger = structlog.get_logger()

router = APIRouter(prefix="/api/feedback", tags=["Feedback"], route_class=EdgeRoute)


@router.post("/submit", status_code=201)
async def submit_feedback(body: FeedbackRequest, request: Request) -> dict[str, Any]:
    """Accept feedback from signed-in or anonymous visitors."""
    principal = current_principal(request)
    item = await get_feedback_repository().add(
        subject=body.subject,
        message=body.message,
        email=body.email,
        account_id=principal.subject if principal else None,
    )
    logger.info("feedback_submitted", feedback_id=item.id, anonymous=principal is None)
    return success({"id": item.id})
