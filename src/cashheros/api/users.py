"""Profile and role endpoints."""

from typing import Any

from fastapi import APIRouter, Depends

from cashheros.edge.auth import require_role, require_user
from cashheros.edge.routing import EdgeRoute
from cashheros.errors import success
from cashheros.models import ProfileUpdate, RoleChange, UserOut
from cashheros.repository import Account, Role
from cashheros.service import get_service

router = APIRouter(prefix="/api/users", tags=["Users"], route_class=EdgeRoute)


@router.get("/profile")
async def get_profile(account: Account = Depends(require_user)) -> dict[str, Any]:
    return success(UserOut.from_account(account).model_dump(by_alias=True))


@router.api_route("/profile", methods=["PUT", "POST"])
async def update_profile(update: ProfileUpdate, account: Account = Depends(require_user)) -> dict[str, Any]:
    """Partial update of the caller's own profile."""
    account = await get_service().update_profile(account, update)
    return success(UserOut.from_account(account).model_dump(by_alias=True))


@router.put("/{user_id}/role")
async def change_role(
    user_id: str,
    body: RoleChange,
    actor: Account = Depends(require_role(Role.ADMIN)),
) -> dict[str, Any]:
    """Admin-only role change; the target's CSRF secrets are rotated."""
    account = await get_service().change_role(actor, user_id, body.role)
    return success(UserOut.from_account(account).model_dump(by_alias=True))
