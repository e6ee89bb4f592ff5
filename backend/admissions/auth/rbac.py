"""
Role-Based Access Control (RBAC)

Role hierarchy (highest → lowest privilege):
    admin > verifier > staff > applicant

Usage:
    @router.post("/extracted-data/{extracted_data_id}/verify")
    async def verify(
        ctx: RequestContext = Depends(require_role("verifier")),
    ): ...

The dependency raises 403 if the caller's role is below the requirement and
otherwise passes the RequestContext through to the route.
"""

from __future__ import annotations

from typing import Annotated

from fastapi import Depends, HTTPException, status

from admissions.auth.token import RequestContext, get_request_context
from admissions.schemas.jobs import PipelineErrors

# ---------------------------------------------------------------------------
# Role ordering: higher index = more privilege
# ---------------------------------------------------------------------------

_ROLE_ORDER: dict[str, int] = {
    "applicant": 0,
    "staff":     1,
    "verifier":  2,
    "admin":     3,
}


def has_role(user_role: str, required_role: str) -> bool:
    """Return True if user_role meets or exceeds required_role."""
    user_level     = _ROLE_ORDER.get(user_role, -1)
    required_level = _ROLE_ORDER.get(required_role, 999)
    return user_level >= required_level


def can_read_application(ctx: RequestContext, owner_id: str) -> bool:
    """Applicants see their own jobs; staff and above see every job."""
    return ctx.user_id == owner_id or has_role(ctx.role, "staff")


# ---------------------------------------------------------------------------
# Dependency factory
# ---------------------------------------------------------------------------

def require_role(minimum_role: str):
    """
    Returns a FastAPI dependency that verifies the JWT, checks the caller's
    role against `minimum_role` and yields the RequestContext.
    """
    async def _dependency(
        ctx: Annotated[RequestContext, Depends(get_request_context)],
    ) -> RequestContext:
        if not has_role(ctx.role, minimum_role):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=PipelineErrors.forbidden(minimum_role).model_dump(),
            )
        return ctx

    return _dependency
