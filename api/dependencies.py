"""FastAPI dependencies: service container and caller identity."""
import uuid
from typing import Optional

from fastapi import Header, HTTPException, Request, status

from core.bootstrap import Services
from core.order_service import Caller, CallerRole


def get_services(request: Request) -> Services:
    """Return the service container built at startup."""
    services: Optional[Services] = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service is starting up",
        )
    return services


def get_caller(
    x_user_id: Optional[str] = Header(default=None),
    x_user_role: str = Header(default=CallerRole.CUSTOMER.value),
) -> Caller:
    """
    Build the caller identity from headers set by the upstream auth layer.

    Raises:
        HTTPException: 401 without a valid ``X-User-Id``, 403 for an
            unknown role
    """
    if not x_user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing X-User-Id header",
        )
    try:
        user_id = uuid.UUID(x_user_id)
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid X-User-Id header",
        ) from e
    try:
        role = CallerRole(x_user_role.lower())
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"Unknown role: {x_user_role}",
        ) from e
    return Caller(user_id=user_id, role=role)
