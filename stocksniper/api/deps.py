"""FastAPI dependencies."""

import secrets

from fastapi import Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from stocksniper.config import settings
from stocksniper.db.session import get_db


async def get_database() -> AsyncSession:
    """Dependency for database session."""
    async for session in get_db():
        yield session
        break  # Only yield once, as FastAPI handles the session lifecycle


def _check_key(provided: str, expected: str, name: str) -> None:
    if not expected:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"{name} not configured",
        )
    if not secrets.compare_digest(provided.encode(), expected.encode()):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"Invalid {name}",
        )


async def require_admin_api_key(
    x_admin_api_key: str = Header(..., alias="X-Admin-API-Key")
) -> None:
    """
    Require the admin API key for operator endpoints.

    Raises:
        HTTPException: 422 if header missing, 403 if invalid, 503 if unset
    """
    _check_key(x_admin_api_key, settings.admin_api_key, "admin API key")


async def require_worker_api_key(
    x_worker_api_key: str = Header(..., alias="X-Worker-API-Key")
) -> None:
    """Require the shared secret the purchase worker sends with callbacks."""
    _check_key(x_worker_api_key, settings.worker_api_key, "worker API key")
