"""
API-key authentication with hashed key storage and timing-safe comparison.

In **demo mode** (``ENVIRONMENT`` unset or set to ``demo``), authentication is
bypassed and every request receives ``UserContext(user_id="demo", role="admin")``.
In production every request must carry a valid ``X-API-Key`` header.

Roles used by the automation rule API:

- ``admin``: full access, including deleting rules
- ``sales_head``: create, update, toggle, test and execute rules
- anything else: read-only
"""

import hashlib
import hmac
import logging
import os
from dataclasses import dataclass
from typing import Optional

from fastapi import Header, HTTPException, Depends, Request

logger = logging.getLogger(__name__)

from config import settings as _settings

ROLE_ADMIN = "admin"
ROLE_SALES_HEAD = "sales_head"

_MIN_KEY_LENGTH = 32


@dataclass
class UserContext:
    """Authenticated caller (never holds the raw API key)."""
    user_id: str
    role: str
    key_id: str  # hash prefix, safe to log


_DEMO_USER = UserContext(user_id="demo", role=ROLE_ADMIN, key_id="demo0000")


class AuthenticationError(Exception):
    """Raised when authentication setup is invalid."""
    pass


def _hash_key(key: str) -> str:
    return hashlib.sha256(key.encode()).hexdigest()


def _load_api_keys() -> dict[str, tuple[str, str]]:
    """
    Load API keys from the environment.

    ``CRM_ADMIN_KEY`` is required.  Extra keys use the form
    ``CRM_KEY_<NAME>=<key>:<role>``, e.g. ``CRM_KEY_SALES=...:sales_head``.

    Returns:
        dict mapping hashed keys to (user_id, role) tuples

    Raises:
        AuthenticationError: If the admin key is missing or too short
    """
    keys = {}

    admin_key = os.getenv("CRM_ADMIN_KEY")
    if not admin_key:
        raise AuthenticationError(
            "CRM_ADMIN_KEY environment variable not set. "
            "Service cannot start without authentication configured."
        )
    if len(admin_key) < _MIN_KEY_LENGTH:
        raise AuthenticationError(
            f"CRM_ADMIN_KEY must be at least {_MIN_KEY_LENGTH} characters. "
            f"Current length: {len(admin_key)}"
        )

    admin_hash = _hash_key(admin_key)
    keys[admin_hash] = ("admin", ROLE_ADMIN)
    logger.info(f"Loaded admin key (hash: {admin_hash[:8]}...)")

    for env_var, value in os.environ.items():
        if not env_var.startswith("CRM_KEY_"):
            continue
        name = env_var[len("CRM_KEY_"):].lower()
        if ":" not in value:
            logger.warning(f"Skipping {env_var}: missing role (format: key:role)")
            continue
        key, role = value.rsplit(":", 1)
        if len(key) < _MIN_KEY_LENGTH:
            logger.warning(f"Skipping {env_var}: key too short (min {_MIN_KEY_LENGTH} chars)")
            continue
        key_hash = _hash_key(key)
        keys[key_hash] = (name, role)
        logger.info(f"Loaded service account '{name}' with role '{role}' (hash: {key_hash[:8]}...)")

    logger.info(f"Authentication initialized with {len(keys)} key(s)")
    return keys


if _settings.auth_enabled:
    try:
        API_KEYS = _load_api_keys()
    except AuthenticationError as e:
        logger.critical(str(e))
        raise
else:
    API_KEYS = {_hash_key(_settings.demo_admin_key): ("demo", ROLE_ADMIN)}
    logger.info("Auth running in DEMO mode, authentication is bypassed for all requests")


def _verify_api_key(provided_key: Optional[str]) -> Optional[tuple[str, str, str]]:
    """
    Verify an API key using timing-safe comparison.

    Returns:
        Tuple of (user_id, role, key_id) if valid, None otherwise
    """
    if not provided_key or len(provided_key) < _MIN_KEY_LENGTH:
        return None

    provided_hash = _hash_key(provided_key)
    for stored_hash, (user_id, role) in API_KEYS.items():
        if hmac.compare_digest(provided_hash, stored_hash):
            return (user_id, role, provided_hash[:8])
    return None


def require_auth(
    request: Request,
    x_api_key: str = Header(None, description="API key for authentication")
) -> UserContext:
    """
    Authentication dependency for FastAPI endpoints.

    Raises:
        HTTPException: 401 if the key is missing or invalid (production only)
    """
    if not _settings.auth_enabled:
        return _DEMO_USER

    client_ip = request.client.host if request.client else "unknown"

    if not x_api_key:
        logger.warning(f"Authentication failed: Missing API key (IP: {client_ip})")
        raise HTTPException(
            status_code=401,
            detail="Authentication required",
            headers={"WWW-Authenticate": "ApiKey"},
        )

    result = _verify_api_key(x_api_key)
    if not result:
        logger.warning(
            f"Authentication failed: Invalid API key "
            f"(IP: {client_ip}, key_prefix: {x_api_key[:8]}...)"
        )
        raise HTTPException(
            status_code=401,
            detail="Authentication required",
            headers={"WWW-Authenticate": "ApiKey"},
        )

    user_id, role, key_id = result
    logger.debug(f"Authenticated user={user_id}, role={role}, key_id={key_id}, IP={client_ip}")
    return UserContext(user_id=user_id, role=role, key_id=key_id)


def require_role(*allowed_roles: str):
    """
    Role-based access control dependency.

    Usage:
        @router.delete("/{rule_id}")
        def delete(user: UserContext = Depends(require_role("admin"))):
            ...
    """
    def role_checker(user: UserContext = Depends(require_auth)) -> UserContext:
        if user.role not in allowed_roles:
            logger.warning(
                f"Authorization failed: user={user.user_id}, "
                f"allowed_roles={allowed_roles}, actual_role={user.role}"
            )
            raise HTTPException(
                status_code=403,
                detail=f"Insufficient permissions. Required role: {' or '.join(allowed_roles)}"
            )
        return user

    return role_checker
