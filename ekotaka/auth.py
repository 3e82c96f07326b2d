"""Caller identity resolved from identity-provider bearer tokens.

Role branching happens once, here: handlers receive a CollectorPrincipal
or a BrandPrincipal and the domain layer asks the principal what it may
do instead of comparing role strings.
"""

import logging
from dataclasses import dataclass
from typing import ClassVar, Union

from jose import JWTError, jwt

from ekotaka.config import settings
from ekotaka.errors import Unauthorized

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CollectorPrincipal:
    user_id: str

    role: ClassVar[str] = "collector"
    # Fulfilment steps the collector drives
    order_actions: ClassVar[frozenset[str]] = frozenset(
        {"confirm", "process", "ship", "cancel", "update_notes"}
    )


@dataclass(frozen=True)
class BrandPrincipal:
    user_id: str

    role: ClassVar[str] = "brand"
    # The brand only confirms receipt, cancels, or edits its own notes
    order_actions: ClassVar[frozenset[str]] = frozenset({"deliver", "cancel", "update_notes"})


Principal = Union[CollectorPrincipal, BrandPrincipal]

_PRINCIPALS = {
    CollectorPrincipal.role: CollectorPrincipal,
    BrandPrincipal.role: BrandPrincipal,
}


def decode_token(token: str) -> Principal:
    """
    Verify a bearer token and build the caller's principal.

    Raises:
        Unauthorized: Bad signature, expired, or missing sub/role claims
    """
    options = {"verify_aud": bool(settings.identity_jwt_audience)}
    try:
        payload = jwt.decode(
            token,
            settings.identity_jwt_secret,
            algorithms=[settings.identity_jwt_algorithm],
            audience=settings.identity_jwt_audience or None,
            options=options,
        )
    except JWTError as e:
        logger.info(f"Rejected bearer token: {e}")
        raise Unauthorized("Could not validate credentials") from e

    user_id = payload.get("sub")
    principal_cls = _PRINCIPALS.get(payload.get("role"))
    if not user_id or principal_cls is None:
        raise Unauthorized("Token is missing a user id or a supported role")
    return principal_cls(user_id=str(user_id))


def create_token(user_id: str, role: str) -> str:
    """Sign a token the way the identity provider does (local development and tests)."""
    claims = {"sub": user_id, "role": role}
    if settings.identity_jwt_audience:
        claims["aud"] = settings.identity_jwt_audience
    return jwt.encode(claims, settings.identity_jwt_secret, algorithm=settings.identity_jwt_algorithm)
