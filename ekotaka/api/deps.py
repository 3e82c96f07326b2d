"""FastAPI dependencies."""

from typing import Optional

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from ekotaka.ai.classifier import PlasticClassifier, classifier
from ekotaka.auth import BrandPrincipal, CollectorPrincipal, Principal, decode_token
from ekotaka.config import settings
from ekotaka.db.session import get_db
from ekotaka.errors import Forbidden, Unauthorized
from ekotaka.maps.geocoding import Geocoder, geocoder
from ekotaka.pipeline.storage import BlobStorage, get_blob_storage


async def get_database() -> AsyncSession:
    """Dependency for database session."""
    async for session in get_db():
        yield session
        break  # Only yield once, as FastAPI handles the session lifecycle


async def require_admin_api_key(
    x_admin_api_key: str = Header(..., alias="X-Admin-API-Key")
) -> None:
    """
    Dependency to require admin API key for verifier and gateway endpoints.

    Raises:
        HTTPException: 503 if no key is configured, 403 if invalid
    """
    if not settings.admin_api_key:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Admin API key not configured"
        )

    if x_admin_api_key != settings.admin_api_key:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid admin API key"
        )


async def get_principal(
    authorization: Optional[str] = Header(None, alias="Authorization")
) -> Principal:
    """Resolve the bearer token into a collector or brand principal."""
    if not authorization:
        raise Unauthorized("Authentication required")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise Unauthorized("Authorization header must be 'Bearer <token>'")
    return decode_token(token.strip())


async def require_collector(principal: Principal = Depends(get_principal)) -> CollectorPrincipal:
    if not isinstance(principal, CollectorPrincipal):
        raise Forbidden("Only collectors can use this endpoint")
    return principal


async def require_brand(principal: Principal = Depends(get_principal)) -> BrandPrincipal:
    if not isinstance(principal, BrandPrincipal):
        raise Forbidden("Only brands can use this endpoint")
    return principal


def get_storage() -> BlobStorage:
    return get_blob_storage()


def get_classifier() -> PlasticClassifier:
    return classifier


def get_geocoder() -> Geocoder:
    return geocoder
