"""
hymnal_backend/auth_context.py

Shared authentication context primitives for FastAPI dependency injection.
This module breaks the circular import between main.py and dependencies.py.

Contains:
- get_service: EntitlementService bound to the configured store
- create_access_token / verify_token: JWT handling at the identity boundary
- require_auth_context: FastAPI dependency resolving the caller's Identity

This module MUST NOT import hymnal_backend.main to avoid circular dependencies.
"""

from __future__ import annotations

from datetime import timedelta
from functools import lru_cache
from typing import Optional

import jwt
from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from hymnal_backend import config
from hymnal_backend.authz import AdminPolicy, Identity
from hymnal_backend.models import utc_now
from hymnal_backend.repository import EntitlementRepository
from hymnal_backend.service import EntitlementService
from hymnal_backend.store import FirebaseRestStore, InMemoryStore, KeyTreeStore

# Security scheme for HTTPBearer
security = HTTPBearer()


# ---------------------------------------------------------
# Store / Service
# ---------------------------------------------------------
def build_store() -> KeyTreeStore:
    """
    Select the entitlement store from configuration.

    Raises:
        RuntimeError: staging/prod without FIREBASE_DATABASE_URL
    """
    if config.FIREBASE_DATABASE_URL:
        return FirebaseRestStore(
            config.FIREBASE_DATABASE_URL,
            auth_token=config.FIREBASE_AUTH_TOKEN,
            timeout=config.STORE_TIMEOUT_SECONDS,
        )
    if not config.IS_DEV:
        raise RuntimeError(f"FIREBASE_DATABASE_URL must be set when ENV={config.ENV}")
    print("[STORE] Using in-memory entitlement store (dev only, data is not persisted)")
    return InMemoryStore()


@lru_cache(maxsize=1)
def get_service() -> EntitlementService:
    """Process-wide service. Tests override this via app.dependency_overrides."""
    return EntitlementService(
        EntitlementRepository(build_store()),
        admin_policy=AdminPolicy.from_config(),
    )


# ---------------------------------------------------------
# JWT
# ---------------------------------------------------------
def create_access_token(
    user_id: str,
    email: Optional[str] = None,
    expires_in: timedelta = timedelta(minutes=config.ACCESS_TOKEN_MINUTES),
) -> str:
    payload = {"sub": user_id, "exp": utc_now() + expires_in}
    if email:
        payload["email"] = email
    return jwt.encode(payload, config.SECRET_KEY, algorithm=config.ALGORITHM)


def verify_token(token: str) -> dict:
    """
    Verify JWT access token and return decoded payload.

    Raises:
        HTTPException(401): If token is expired or invalid
    """
    try:
        return jwt.decode(token, config.SECRET_KEY, algorithms=[config.ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")


# ---------------------------------------------------------
# Identity dependency
# ---------------------------------------------------------
def require_auth_context(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    service: EntitlementService = Depends(get_service),
) -> Identity:
    """
    Resolve the authenticated caller for protected routes.

    The token only proves who the caller is. The effective role comes from
    the stored user record combined with the configured admin allow-list,
    never from the request.

    Usage:
        @app.get("/me/entitlement")
        def my_entitlement(identity: Identity = Depends(require_auth_context)):
            ...

    Raises:
        HTTPException(401): token invalid, expired, or missing a subject
    """
    payload = verify_token(credentials.credentials)
    user_id = payload.get("sub")
    if not user_id:
        print("[AUTH] Missing user_id in token payload")
        raise HTTPException(status_code=401, detail="Invalid token payload")

    identity = service.resolve_identity(str(user_id), payload.get("email"))

    if config.IS_DEV:
        print(f"[AUTH] Authenticated: user_id={identity.user_id}, role={identity.role.value}")
    return identity
