"""
hymnal_backend/policy.py

Session policy engine: trial eligibility, premium windows and device-class
session limits.

Every function here is pure. It takes an immutable UserEntitlement snapshot
(plus an explicit ``now``) and either returns a new snapshot or raises one of
the PolicyError kinds. Persisting the result is the caller's job.

Trial lifecycle:
    none -> weekly (consumed=True) -> active | expired
    none -> admin_granted          -> active | expired

Admin-granted trials never burn self-service eligibility unless the caller
explicitly asks for it.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from hymnal_backend import config
from hymnal_backend.errors import DeviceLimitExceeded, NotEligible
from hymnal_backend.models import (
    DeviceClass,
    DeviceSession,
    TrialState,
    TrialType,
    UserEntitlement,
    UserRole,
    to_iso,
    utc_now,
    validate_key,
)


# ============================================================================
# Device Limits
# ============================================================================

@dataclass(frozen=True)
class DeviceLimits:
    """Maximum concurrent sessions per device class."""
    max_phones: int = config.MAX_PHONE_SESSIONS
    max_tablets: int = config.MAX_TABLET_SESSIONS
    max_web: int = config.MAX_WEB_SESSIONS

    def limit_for(self, device_class: DeviceClass) -> int:
        if device_class == DeviceClass.PHONE:
            return self.max_phones
        if device_class == DeviceClass.TABLET:
            return self.max_tablets
        return self.max_web

    def to_dict(self) -> Dict[str, int]:
        return {
            "maxPhones": self.max_phones,
            "maxTablets": self.max_tablets,
            "maxWeb": self.max_web,
        }


DEFAULT_LIMITS = DeviceLimits()


# ============================================================================
# Trial Queries
# ============================================================================

def has_active_trial(trial: Optional[TrialState], now: Optional[datetime] = None) -> bool:
    """A trial is active strictly before its expiry instant."""
    if trial is None or trial.trial_type == TrialType.NONE:
        return False
    now = now or utc_now()
    return trial.expires_at > now


def is_trial_expired(trial: Optional[TrialState], now: Optional[datetime] = None) -> bool:
    """A trial is expired from its expiry instant onwards."""
    if trial is None or trial.trial_type == TrialType.NONE:
        return False
    now = now or utc_now()
    return trial.expires_at <= now


def remaining_trial_time(trial: Optional[TrialState], now: Optional[datetime] = None) -> Optional[timedelta]:
    """Time left on an active trial, or None when there is no active trial."""
    now = now or utc_now()
    if not has_active_trial(trial, now):
        return None
    return trial.expires_at - now


def is_trial_expiring_soon(
    trial: Optional[TrialState],
    now: Optional[datetime] = None,
    window: timedelta = timedelta(hours=config.TRIAL_EXPIRING_SOON_HOURS),
) -> bool:
    remaining = remaining_trial_time(trial, now)
    if remaining is None:
        return False
    return remaining <= window


def is_trial_eligible(entitlement: UserEntitlement) -> bool:
    """
    Check whether the user may still start a self-service weekly trial.

    Eligible iff the current trial is absent or unconsumed, and no trial in
    the retained history was consumed either. Never fails.
    """
    if entitlement.trial is not None and entitlement.trial.consumed:
        return False
    return not any(item.consumed for item in entitlement.trial_history)


# ============================================================================
# Trial Mutations
# ============================================================================

def start_weekly_trial(
    entitlement: UserEntitlement,
    now: Optional[datetime] = None,
    days: int = config.WEEKLY_TRIAL_DAYS,
) -> TrialState:
    """
    Start the one-time self-service weekly trial.

    Returns:
        New TrialState (weekly, consumed). The caller applies it with
        apply_trial() and persists the result.

    Raises:
        NotEligible: the user already consumed self-service eligibility
    """
    if not is_trial_eligible(entitlement):
        raise NotEligible(f"User {entitlement.user_id} already used the weekly trial")
    now = now or utc_now()
    return TrialState(
        trial_type=TrialType.WEEKLY,
        started_at=now,
        expires_at=now + timedelta(days=days),
        consumed=True,
    )


def grant_admin_trial(
    entitlement: UserEntitlement,
    duration: timedelta = timedelta(hours=config.ADMIN_TRIAL_HOURS),
    now: Optional[datetime] = None,
    consume_eligibility: bool = False,
) -> TrialState:
    """Build an admin-granted trial. Eligibility is untouched unless marked."""
    now = now or utc_now()
    return TrialState(
        trial_type=TrialType.ADMIN_GRANTED,
        started_at=now,
        expires_at=now + duration,
        consumed=consume_eligibility,
    )


def apply_trial(entitlement: UserEntitlement, trial: TrialState) -> UserEntitlement:
    """Install a new current trial; the previous one moves to history."""
    history = entitlement.trial_history
    if entitlement.trial is not None:
        history = history + (entitlement.trial,)
    return replace(entitlement, trial=trial, trial_history=history)


# ============================================================================
# Premium
# ============================================================================

def is_premium_active(entitlement: UserEntitlement, now: Optional[datetime] = None) -> bool:
    if not entitlement.is_premium:
        return False
    if entitlement.premium_expires_at is None:
        return True
    now = now or utc_now()
    return entitlement.premium_expires_at > now


def has_premium_access(entitlement: UserEntitlement, now: Optional[datetime] = None) -> bool:
    """Premium content access: staff, an active premium window, or an active trial."""
    if entitlement.role in (UserRole.ADMIN, UserRole.SUPER_ADMIN):
        return True
    now = now or utc_now()
    return is_premium_active(entitlement, now) or has_active_trial(entitlement.trial, now)


def grant_premium(
    entitlement: UserEntitlement,
    duration: Optional[timedelta],
    reason: str,
    now: Optional[datetime] = None,
    granted_by: Optional[str] = None,
) -> UserEntitlement:
    """
    Grant a premium window.

    A None or zero duration is an open-ended ("permanent") grant and is
    stored with no expiry. Authorization is the caller's responsibility.
    """
    now = now or utc_now()
    expires_at = now + duration if duration else None
    return replace(
        entitlement,
        is_premium=True,
        premium_granted_at=now,
        premium_expires_at=expires_at,
        premium_granted_by=granted_by,
        premium_reason=reason,
    )


def revoke_premium(entitlement: UserEntitlement) -> UserEntitlement:
    """Clear the premium flag and its grant fields. Idempotent."""
    return replace(
        entitlement,
        is_premium=False,
        premium_granted_at=None,
        premium_expires_at=None,
        premium_granted_by=None,
        premium_reason=None,
    )


# ============================================================================
# Device Sessions
# ============================================================================

SESSION_LIFETIME = timedelta(days=config.SESSION_LIFETIME_DAYS)


def session_expires_at(session: DeviceSession, lifetime: timedelta = SESSION_LIFETIME) -> datetime:
    """Records without an expiry last ``lifetime`` past their last activity."""
    return session.expires_at or session.last_activity_at + lifetime


def is_session_expired(
    session: DeviceSession,
    now: Optional[datetime] = None,
    lifetime: timedelta = SESSION_LIFETIME,
) -> bool:
    return session_expires_at(session, lifetime) <= (now or utc_now())


def active_device_sessions(
    entitlement: UserEntitlement,
    now: Optional[datetime] = None,
    lifetime: timedelta = SESSION_LIFETIME,
) -> UserEntitlement:
    """Drop expired sessions from the snapshot."""
    now = now or utc_now()
    active = tuple(s for s in entitlement.device_sessions if not is_session_expired(s, now, lifetime))
    if len(active) == len(entitlement.device_sessions):
        return entitlement
    return replace(entitlement, device_sessions=active)


def register_device_session(
    entitlement: UserEntitlement,
    device_id: str,
    device_class: DeviceClass,
    now: Optional[datetime] = None,
    device_label: str = "",
    limits: DeviceLimits = DEFAULT_LIMITS,
    evict_oldest: bool = False,
    lifetime: timedelta = SESSION_LIFETIME,
) -> UserEntitlement:
    """
    Insert or refresh the session for ``device_id``.

    A session already registered for ``device_id`` is refreshed and does not
    take a new slot. Otherwise the class count must be below its limit.
    Expired sessions never count against the limit and are dropped from the
    returned snapshot. Every registration or refresh pushes the session's
    expiry to ``now + lifetime``.

    Args:
        evict_oldest: drop the least recently active session of the same
            class instead of failing when the class is full

    Raises:
        DeviceLimitExceeded: class is at its limit and evict_oldest is False
        ValueError: device_id is not a valid store key
    """
    validate_key(device_id, "device_id")
    now = now or utc_now()
    existing = entitlement.session_for(device_id)
    live = active_device_sessions(entitlement, now, lifetime)
    if config.IS_DEV and live is not entitlement:
        expired = len(entitlement.device_sessions) - len(live.device_sessions)
        print(f"[POLICY] Pruned {expired} expired sessions for user={entitlement.user_id}")
    others = [s for s in live.device_sessions if s.device_id != device_id]
    same_class = [s for s in others if s.device_class == device_class]
    limit = limits.limit_for(device_class)

    if len(same_class) >= limit:
        if not evict_oldest or limit < 1:
            raise DeviceLimitExceeded(device_class.value, len(same_class), limit)
        overflow = len(same_class) - limit + 1
        evicted = sorted(same_class, key=lambda s: (s.last_activity_at, s.created_at))[:overflow]
        evicted_ids = {s.device_id for s in evicted}
        others = [s for s in others if s.device_id not in evicted_ids]
        if config.IS_DEV:
            print(f"[POLICY] Evicted {device_class.value} sessions for "
                  f"user={entitlement.user_id}: {sorted(evicted_ids)}")

    if existing is not None:
        session = replace(
            existing,
            device_class=device_class,
            device_label=device_label or existing.device_label,
            last_activity_at=now,
            expires_at=now + lifetime,
        )
    else:
        session = DeviceSession(
            device_id=device_id,
            device_class=device_class,
            device_label=device_label,
            created_at=now,
            last_activity_at=now,
            expires_at=now + lifetime,
        )
    return replace(entitlement, device_sessions=tuple(others) + (session,))


def remove_device_session(entitlement: UserEntitlement, device_id: str) -> UserEntitlement:
    """Remove the session for ``device_id``; absent is a no-op."""
    if entitlement.session_for(device_id) is None:
        return entitlement
    return replace(
        entitlement,
        device_sessions=tuple(s for s in entitlement.device_sessions if s.device_id != device_id),
    )


def remove_all_device_sessions(entitlement: UserEntitlement) -> UserEntitlement:
    return replace(entitlement, device_sessions=())


def device_session_summary(
    entitlement: UserEntitlement,
    limits: DeviceLimits = DEFAULT_LIMITS,
) -> Dict[str, Any]:
    """Per-class session counts and limits for the admin console."""
    sessions = sorted(entitlement.device_sessions, key=lambda s: s.last_activity_at, reverse=True)
    return {
        "userId": entitlement.user_id,
        "totalSessions": len(sessions),
        "phoneCount": len(entitlement.sessions_of(DeviceClass.PHONE)),
        "tabletCount": len(entitlement.sessions_of(DeviceClass.TABLET)),
        "webCount": len(entitlement.sessions_of(DeviceClass.WEB)),
        "sessions": [s.to_record() for s in sessions],
        "limits": limits.to_dict(),
    }


# ============================================================================
# Summaries
# ============================================================================

def trial_info(entitlement: UserEntitlement, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Trial status for display, in the shape the console renders."""
    now = now or utc_now()
    trial = entitlement.trial
    remaining = remaining_trial_time(trial, now)
    expired = is_trial_expired(trial, now)
    return {
        "isTrialUser": trial is not None and trial.trial_type != TrialType.NONE,
        "trialType": trial.trial_type.value if trial else TrialType.NONE.value,
        "trialStartedAt": to_iso(trial.started_at) if trial else None,
        "trialExpiresAt": to_iso(trial.expires_at) if trial else None,
        "hasActiveTrial": has_active_trial(trial, now),
        "isTrialExpired": expired,
        "isTrialEligible": is_trial_eligible(entitlement),
        "isTrialExpiringSoon": is_trial_expiring_soon(trial, now),
        "remainingTrialDays": remaining.days if remaining else 0,
        "remainingTrialHours": int(remaining.total_seconds() // 3600) if remaining else 0,
        "hasTrialAccess": has_active_trial(trial, now) or is_premium_active(entitlement, now),
        "trialEndedAt": to_iso(trial.expires_at) if expired else None,
    }


def entitlement_summary(
    entitlement: UserEntitlement,
    now: Optional[datetime] = None,
    limits: DeviceLimits = DEFAULT_LIMITS,
) -> Dict[str, Any]:
    now = now or utc_now()
    return {
        "userId": entitlement.user_id,
        "email": entitlement.email,
        "role": entitlement.role.value,
        "isPremium": entitlement.is_premium,
        "isPremiumActive": is_premium_active(entitlement, now),
        "hasPremiumAccess": has_premium_access(entitlement, now),
        "premiumGrantedAt": to_iso(entitlement.premium_granted_at),
        "premiumExpiresAt": to_iso(entitlement.premium_expires_at),
        "premiumGrantedBy": entitlement.premium_granted_by,
        "premiumReason": entitlement.premium_reason,
        "trial": trial_info(entitlement, now),
        "devices": device_session_summary(entitlement, limits),
    }
