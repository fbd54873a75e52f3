"""API key authentication resolving the acting user.

Each configured key belongs to one actor (``APP_API_KEYS=alice:key1,bob:key2``).
The resolved actor id is what quotas are counted against and what change
events report as ``changed_by``. Authorization policy is out of scope: any
known actor may call any endpoint.
"""

from __future__ import annotations

import hashlib
import logging
from typing import Annotated

from fastapi import Header, HTTPException, status

from gradesync.core.config import settings
from gradesync.core.errors import AuthenticationAppError
from gradesync.core.logging import set_actor_id

logger = logging.getLogger(__name__)


def _hash_key(api_key: str) -> str:
    return hashlib.sha256(api_key.encode()).hexdigest()[:16]


def parse_api_keys(keys_string: str | None) -> dict[str, str]:
    """Parse ``actor:key`` pairs into a key -> actor mapping.

    Examples:
        >>> parse_api_keys("alice:k1, bob:k2")
        {'k1': 'alice', 'k2': 'bob'}
        >>> parse_api_keys(None)
        {}
    """
    if not keys_string:
        return {}

    keys: dict[str, str] = {}
    for entry in keys_string.split(","):
        entry = entry.strip()
        if not entry:
            continue
        actor_id, sep, api_key = entry.partition(":")
        actor_id, api_key = actor_id.strip(), api_key.strip()
        if not sep or not actor_id or not api_key:
            logger.warning("auth.malformed_key_entry", extra={"entry_length": len(entry)})
            continue
        keys[api_key] = actor_id
    return keys


def resolve_actor(provided_key: str) -> str:
    """Return the actor owning ``provided_key``.

    Raises:
        AuthenticationAppError: If no keys are configured or the key is unknown.
    """
    valid_keys = parse_api_keys(settings.app.api_keys)

    if not valid_keys:
        logger.error(
            "api_key_validation_failed",
            extra={"reason": "api_keys_not_configured"},
        )
        raise AuthenticationAppError(
            code="api_keys_not_configured",
            message="API key authentication is enabled but no valid keys are configured",
            details={"hint": "Set APP_API_KEYS or disable auth with APP_API_KEY_REQUIRED=false"},
        )

    actor_id = valid_keys.get(provided_key)
    if actor_id is None:
        logger.warning(
            "api_key_validation_failed",
            extra={"reason": "invalid_api_key", "api_key_hash": _hash_key(provided_key)},
        )
        raise AuthenticationAppError(
            code="invalid_api_key",
            message="Invalid or missing API key",
        )
    return actor_id


async def authenticate_actor(
    x_api_key: Annotated[str | None, Header(alias="X-API-Key")] = None,
) -> str:
    """FastAPI dependency returning the acting user's id.

    When authentication is disabled every request acts as
    ``APP_ANONYMOUS_ACTOR``.

    Raises:
        HTTPException: 403 Forbidden if authentication fails.
    """
    if not settings.app.api_key_required:
        actor_id = settings.app.anonymous_actor
        set_actor_id(actor_id)
        return actor_id

    if not x_api_key:
        logger.warning("auth.missing_key", extra={"api_key_present": False})
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Missing API key. Provide X-API-Key header.",
        )

    try:
        actor_id = resolve_actor(x_api_key)
    except AuthenticationAppError as exc:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=exc.message,
        ) from exc

    set_actor_id(actor_id)
    logger.debug("auth.success", extra={"api_key_hash": _hash_key(x_api_key)})
    return actor_id
