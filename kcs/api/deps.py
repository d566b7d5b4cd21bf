"""API dependencies for dependency injection."""

import hmac
from collections.abc import Generator
from functools import lru_cache
from typing import Callable, Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from kcs.core.celery_app import enqueue_stage
from kcs.core.config import settings
from kcs.db.base import SessionLocal
from kcs.services.storage import StorageService

# auto_error=False so a missing header gets our own 401 instead of a 403
security = HTTPBearer(auto_error=False)


def get_db() -> Generator[Session, None, None]:
    """Get database session."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@lru_cache
def get_storage() -> StorageService:
    return StorageService(settings)


def get_enqueue() -> Callable[[str, object], None]:
    """How intake hands the first stage to the queue."""
    return enqueue_stage


def require_operator(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> None:
    """Bearer token check for operator endpoints.

    With no OPERATOR_API_TOKEN configured every request is refused.
    """
    expected = settings.OPERATOR_API_TOKEN
    if not credentials or not expected:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    if not hmac.compare_digest(credentials.credentials.encode(), expected.encode()):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )
