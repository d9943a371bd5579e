"""
hymnal_backend/dependencies.py

Reusable FastAPI dependencies for role enforcement on admin routes.
"""

from __future__ import annotations

from typing import Callable

from fastapi import Depends, HTTPException

from hymnal_backend import config
from hymnal_backend.auth_context import require_auth_context
from hymnal_backend.authz import Identity, role_at_least
from hymnal_backend.models import UserRole


def require_role(required: UserRole) -> Callable:
    """
    FastAPI dependency factory for role-gated routes.

    The service layer re-checks every mutation; this only rejects obviously
    unprivileged callers before any store read.

    Usage in routes:
        @app.get("/admin/trial-requests", dependencies=[Depends(require_role(UserRole.ADMIN))])
        def list_requests(identity: Identity = Depends(require_auth_context)):
            ...

    Raises:
        HTTPException(403): If the caller's role is below ``required``
    """
    def _check_role(identity: Identity = Depends(require_auth_context)) -> Identity:
        if not role_at_least(identity.role, required):
            if config.IS_DEV:
                print(f"[AUTHZ] Role denied: required={required.value}, "
                      f"user={identity.user_id}, role={identity.role.value}")
            raise HTTPException(status_code=403, detail=f"{required.value} access required")
        return identity

    return _check_role
