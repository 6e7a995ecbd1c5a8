"""FastAPI dependency injection for the authenticated user and services.

Authentication happens upstream: by the time a request reaches these
handlers, the auth layer has placed ``{id, company_id, role}`` on
``request.state.user``. These dependencies only read and check it.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable

from fastapi import Depends, HTTPException, Request, status
from pydantic import ValidationError as PydanticValidationError

from src.shield.integrations.procore.schemas import AuthenticatedUser
from src.shield.integrations.procore.service import ProcoreIntegrationService


async def get_current_user(request: Request) -> AuthenticatedUser:
    """Return the user placed on request.state by upstream authentication.

    Raises:
        HTTPException(401): No user, or the user record is malformed.
    """
    user = getattr(request.state, "user", None)
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    if isinstance(user, AuthenticatedUser):
        return user
    try:
        if isinstance(user, dict):
            return AuthenticatedUser.model_validate(user)
        return AuthenticatedUser.model_validate(user, from_attributes=True)
    except PydanticValidationError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
        )


def require_roles(*roles: str) -> Callable[..., Awaitable[AuthenticatedUser]]:
    """Dependency factory: the current user must hold one of ``roles``."""

    async def checker(
        user: AuthenticatedUser = Depends(get_current_user),
    ) -> AuthenticatedUser:
        if user.role not in roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Insufficient permissions",
            )
        return user

    return checker


def get_procore_service(request: Request) -> ProcoreIntegrationService:
    """Retrieve ProcoreIntegrationService from app.state, 503 if not available."""
    service = getattr(request.app.state, "procore_service", None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Procore integration not initialized",
        )
    return service
