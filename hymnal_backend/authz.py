"""
hymnal_backend/authz.py

Authorization for entitlement mutations.

Single source of truth for who may call what. Privileged identities are an
injectable AdminPolicy resolved once at startup from configuration, rather
than email literals repeated per screen.

Role Hierarchy: super_admin > admin > user

The policy engine itself never checks permissions; the service layer calls
into this module before invoking any mutating operation.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import FrozenSet, Iterable, Optional

from hymnal_backend import config
from hymnal_backend.errors import Unauthorized
from hymnal_backend.models import UserRole


ROLE_HIERARCHY = {
    UserRole.USER: 1,
    UserRole.ADMIN: 2,
    UserRole.SUPER_ADMIN: 3,
}


def role_level(role: UserRole) -> int:
    return ROLE_HIERARCHY.get(role, 0)


def role_at_least(user_role: UserRole, required_role: UserRole) -> bool:
    """
    Check if user_role meets the required role level.

    Example:
        role_at_least(UserRole.SUPER_ADMIN, UserRole.ADMIN) -> True
        role_at_least(UserRole.USER, UserRole.ADMIN) -> False
    """
    return role_level(user_role) >= role_level(required_role)


@dataclass(frozen=True)
class Identity:
    """Authenticated caller as supplied by the identity provider."""
    user_id: str
    email: Optional[str] = None
    role: UserRole = UserRole.USER

    @property
    def is_admin(self) -> bool:
        return role_at_least(self.role, UserRole.ADMIN)

    @property
    def is_super_admin(self) -> bool:
        return self.role == UserRole.SUPER_ADMIN

    @property
    def audit_name(self) -> str:
        """Name recorded in approvedBy/premiumGrantedBy audit fields."""
        return self.email or self.user_id


@dataclass(frozen=True)
class AdminPolicy:
    """Configured set of privileged identities, keyed by lower-cased email."""
    admin_emails: FrozenSet[str] = field(default_factory=frozenset)
    super_admin_emails: FrozenSet[str] = field(default_factory=frozenset)

    @classmethod
    def from_emails(
        cls,
        admin_emails: Iterable[str] = (),
        super_admin_emails: Iterable[str] = (),
    ) -> "AdminPolicy":
        return cls(
            admin_emails=frozenset(e.strip().lower() for e in admin_emails if e.strip()),
            super_admin_emails=frozenset(e.strip().lower() for e in super_admin_emails if e.strip()),
        )

    @classmethod
    def from_config(cls) -> "AdminPolicy":
        return cls(
            admin_emails=config.ADMIN_EMAILS,
            super_admin_emails=config.SUPER_ADMIN_EMAILS,
        )

    def role_for_email(self, email: Optional[str]) -> UserRole:
        normalized = (email or "").strip().lower()
        if normalized and normalized in self.super_admin_emails:
            return UserRole.SUPER_ADMIN
        if normalized and normalized in self.admin_emails:
            return UserRole.ADMIN
        return UserRole.USER

    def resolve_role(self, email: Optional[str], stored_role: UserRole = UserRole.USER) -> UserRole:
        """Effective role: the higher of the stored role and the allow-list."""
        configured = self.role_for_email(email)
        return configured if role_level(configured) > role_level(stored_role) else stored_role


# ============================================================================
# Guards
# ============================================================================

def require_role(identity: Identity, required: UserRole, action: str = "") -> Identity:
    """
    Raises:
        Unauthorized: identity's role is below ``required``
    """
    if not role_at_least(identity.role, required):
        if config.IS_DEV:
            print(f"[AUTHZ] Denied {action or 'action'}: user={identity.user_id}, "
                  f"role={identity.role.value}, required={required.value}")
        raise Unauthorized(f"{required.value} access required")
    return identity


def require_admin(identity: Identity, action: str = "") -> Identity:
    return require_role(identity, UserRole.ADMIN, action)


def require_super_admin(identity: Identity, action: str = "") -> Identity:
    return require_role(identity, UserRole.SUPER_ADMIN, action)


def require_self_or_admin(identity: Identity, user_id: str, action: str = "") -> Identity:
    """Users may act on their own records; admins on anyone's."""
    if identity.user_id == user_id:
        return identity
    return require_admin(identity, action)
