"""
hymnal_backend/service.py

Entitlement service: the caller side of the session policy engine.

Every operation follows the same shape:
1. Authorize the acting identity (authz)
2. Load the freshest snapshot from the entitlement store
3. Decide with the pure policy / trial request functions
4. Persist only the sub-path that changed

Store failures surface as StoreUnavailable; they are never converted into
empty results here.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from hymnal_backend import config, policy, trial_requests
from hymnal_backend.authz import (
    AdminPolicy,
    Identity,
    require_admin,
    require_self_or_admin,
    require_super_admin,
)
from hymnal_backend.errors import NotEligible
from hymnal_backend.models import (
    DeviceClass,
    TrialRequest,
    TrialRequestStatus,
    TrialType,
    UserEntitlement,
    UserRole,
    utc_now,
)
from hymnal_backend.policy import DEFAULT_LIMITS, DeviceLimits
from hymnal_backend.repository import EntitlementRepository


class TrialRequestNotFound(LookupError):
    pass


def _activate_if_pending(request: TrialRequest, now: datetime) -> TrialRequest:
    # An admin may have resolved the request while the trial was starting
    if request.status in (TrialRequestStatus.REQUESTED, TrialRequestStatus.APPROVED):
        return trial_requests.mark_activated(request, now)
    return request


class EntitlementService:
    """Orchestrates policy decisions against the entitlement store."""

    def __init__(
        self,
        repository: EntitlementRepository,
        admin_policy: Optional[AdminPolicy] = None,
        limits: DeviceLimits = DEFAULT_LIMITS,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.repository = repository
        self.admin_policy = admin_policy or AdminPolicy()
        self.limits = limits
        self.clock = clock

    # ========================================================================
    # Identity
    # ========================================================================

    def resolve_identity(self, user_id: str, email: Optional[str]) -> Identity:
        """Combine the stored role with the configured admin allow-list."""
        entitlement = self.repository.load_entitlement(user_id)
        role = self.admin_policy.resolve_role(email, entitlement.role)
        return Identity(user_id=user_id, email=email, role=role)

    # ========================================================================
    # Reads
    # ========================================================================

    def get_entitlement(self, actor: Identity, user_id: str) -> UserEntitlement:
        require_self_or_admin(actor, user_id, "view entitlement")
        return self.repository.load_entitlement(user_id)

    def entitlement_summary(self, actor: Identity, user_id: str) -> Dict[str, Any]:
        entitlement = self.get_entitlement(actor, user_id)
        now = self.clock()
        self._expire_finished_trial_request(entitlement, now)
        return policy.entitlement_summary(entitlement, now, self.limits)

    def device_session_info(self, actor: Identity, user_id: str) -> Dict[str, Any]:
        entitlement = self.get_entitlement(actor, user_id)
        return policy.device_session_summary(entitlement, self.limits)

    # ========================================================================
    # Trials
    # ========================================================================

    def submit_trial_request(
        self,
        actor: Identity,
        trial_type: TrialType = TrialType.WEEKLY,
        source: str = trial_requests.SOURCE_USER_INITIATED,
        device_id: Optional[str] = None,
    ) -> TrialRequest:
        request = trial_requests.submit_request(
            user_id=actor.user_id,
            email=actor.email,
            trial_type=trial_type,
            source=source,
            now=self.clock(),
            device_id=device_id,
        )
        self.repository.save_trial_request(request)
        if config.IS_DEV:
            print(f"[TRIALS] Request logged: id={request.id}, user={actor.user_id}, "
                  f"type={trial_type.value}, source={source}")
        return request

    def start_weekly_trial(
        self,
        actor: Identity,
        device_id: Optional[str] = None,
    ) -> Tuple[UserEntitlement, TrialRequest]:
        """
        Self-service weekly trial for the acting user.

        The request is logged first so an ineligible user still lands in the
        admin queue. On success the request is marked activated.

        Raises:
            NotEligible: the user already consumed the weekly trial
        """
        request = self.submit_trial_request(actor, TrialType.WEEKLY, device_id=device_id)
        now = self.clock()
        base = self.repository.load_entitlement(actor.user_id)

        def _start(entitlement: UserEntitlement) -> UserEntitlement:
            trial = policy.start_weekly_trial(entitlement, now)
            return policy.apply_trial(entitlement, trial)

        try:
            updated = self.repository.mutate_trial(base, _start)
        except NotEligible:
            if config.IS_DEV:
                print(f"[TRIALS] User {actor.user_id} not eligible; request {request.id} left pending")
            raise

        _, activated = self.repository.mutate_trial_request(
            request.id, lambda current: _activate_if_pending(current, now)
        )
        if config.IS_DEV:
            print(f"[TRIALS] Weekly trial started: user={actor.user_id}, "
                  f"expires={updated.trial.expires_at.isoformat()}")
        return updated, activated or request

    def grant_admin_trial(
        self,
        actor: Identity,
        user_id: str,
        duration: Optional[timedelta] = None,
        consume_eligibility: bool = False,
    ) -> UserEntitlement:
        require_admin(actor, "grant trial")
        now = self.clock()
        window = duration or timedelta(hours=config.ADMIN_TRIAL_HOURS)
        base = self.repository.load_entitlement(user_id)

        def _grant(entitlement: UserEntitlement) -> UserEntitlement:
            trial = policy.grant_admin_trial(entitlement, window, now, consume_eligibility)
            return policy.apply_trial(entitlement, trial)

        updated = self.repository.mutate_trial(base, _grant)
        print(f"[ADMIN] {actor.audit_name} granted {window} trial to user {user_id}")
        return updated

    def _expire_finished_trial_request(self, entitlement: UserEntitlement, now: datetime) -> None:
        """Move the user's activated request to expired once the trial ran out."""
        if not policy.is_trial_expired(entitlement.trial, now):
            return
        requests = self.repository.list_trial_requests()
        latest = trial_requests.latest_for_user(
            requests, entitlement.user_id, TrialRequestStatus.ACTIVATED
        )
        if latest is None or policy.is_premium_active(entitlement, now):
            return
        if latest.activated_at and latest.activated_at > entitlement.trial.expires_at:
            return

        def _expire(current: TrialRequest) -> TrialRequest:
            if current.status != TrialRequestStatus.ACTIVATED:
                return current
            return trial_requests.mark_expired(current, now)

        self.repository.mutate_trial_request(latest.id, _expire)
        if config.IS_DEV:
            print(f"[TRIALS] Request {latest.id} expired for user {entitlement.user_id}")

    # ========================================================================
    # Trial request queue (admin)
    # ========================================================================

    def list_trial_requests(self, actor: Identity) -> List[TrialRequest]:
        require_admin(actor, "list trial requests")
        return self.repository.list_trial_requests()

    def approve_trial_request(
        self,
        actor: Identity,
        request_id: str,
        duration: Optional[timedelta] = None,
    ) -> Tuple[TrialRequest, Optional[UserEntitlement]]:
        """
        Approve a pending request and grant premium to its user.

        Writes happen in order: approval (conditional, so only one admin can
        win), then the premium grant, then activation. A request whose user
        cannot be resolved, or whose grant fails to persist, stays approved.

        Raises:
            AlreadyResolved: request was already approved/rejected/...
            TrialRequestNotFound: no such request
        """
        require_admin(actor, "approve trial request")
        now = self.clock()
        _, approved = self.repository.mutate_trial_request(
            request_id,
            lambda current: trial_requests.mark_approved(current, actor.audit_name, now),
        )
        if approved is None:
            raise TrialRequestNotFound(f"Trial request {request_id} not found")

        if not approved.user_id:
            print(f"[ADMIN] Trial request {request_id} approved by {actor.audit_name} "
                  f"without a user id; activation needs follow-up")
            return approved, None

        entitlement = self.repository.load_entitlement(approved.user_id)
        granted = trial_requests.grant_for_request(approved, entitlement, actor.audit_name, now, duration)
        self.repository.save_premium(granted)

        _, activated = self.repository.mutate_trial_request(
            request_id, lambda current: trial_requests.mark_activated(current, now)
        )
        print(f"[ADMIN] Trial request {request_id} approved by {actor.audit_name}; "
              f"premium granted to {approved.user_id}")
        return activated or approved, granted

    def reject_trial_request(self, actor: Identity, request_id: str) -> TrialRequest:
        require_admin(actor, "reject trial request")
        now = self.clock()
        _, rejected = self.repository.mutate_trial_request(
            request_id,
            lambda current: trial_requests.reject(current, actor.audit_name, now),
        )
        if rejected is None:
            raise TrialRequestNotFound(f"Trial request {request_id} not found")
        print(f"[ADMIN] Trial request {request_id} rejected by {actor.audit_name}")
        return rejected

    # ========================================================================
    # Premium and roles (admin)
    # ========================================================================

    def grant_premium(
        self,
        actor: Identity,
        user_id: str,
        duration: Optional[timedelta],
        reason: str,
    ) -> UserEntitlement:
        """Grant premium; a None/zero duration is a permanent grant."""
        require_admin(actor, "grant premium")
        entitlement = self.repository.load_entitlement(user_id)
        granted = policy.grant_premium(
            entitlement, duration, reason, now=self.clock(), granted_by=actor.audit_name
        )
        self.repository.save_premium(granted)
        print(f"[ADMIN] {actor.audit_name} granted premium to {user_id} "
              f"(expires={granted.premium_expires_at or 'never'}, reason={reason!r})")
        return granted

    def revoke_premium(self, actor: Identity, user_id: str) -> UserEntitlement:
        require_admin(actor, "revoke premium")
        revoked = policy.revoke_premium(self.repository.load_entitlement(user_id))
        self.repository.save_premium(revoked)
        print(f"[ADMIN] {actor.audit_name} revoked premium for {user_id}")
        return revoked

    def set_role(self, actor: Identity, user_id: str, role: UserRole) -> UserRole:
        require_super_admin(actor, "set role")
        self.repository.set_role(user_id, role)
        print(f"[ADMIN] {actor.audit_name} set role of {user_id} to {role.value}")
        return role

    # ========================================================================
    # Device sessions
    # ========================================================================

    def register_device_session(
        self,
        actor: Identity,
        user_id: str,
        device_id: str,
        device_class: DeviceClass,
        device_label: str = "",
        evict_oldest: bool = False,
    ) -> UserEntitlement:
        """
        Raises:
            DeviceLimitExceeded: the device class is full for this user
        """
        require_self_or_admin(actor, user_id, "register device session")
        now = self.clock()
        base = self.repository.load_entitlement(user_id)

        def _register(entitlement: UserEntitlement) -> UserEntitlement:
            return policy.register_device_session(
                entitlement,
                device_id,
                device_class,
                now,
                device_label=device_label,
                limits=self.limits,
                evict_oldest=evict_oldest,
            )

        updated = self.repository.mutate_device_sessions(base, _register)
        if config.IS_DEV:
            print(f"[SESSIONS] Registered {device_class.value} session {device_id} for {user_id}")
        return updated

    def remove_device_session(self, actor: Identity, user_id: str, device_id: str) -> UserEntitlement:
        require_self_or_admin(actor, user_id, "remove device session")
        entitlement = self.repository.load_entitlement(user_id)
        self.repository.delete_device_session(user_id, device_id)
        if config.IS_DEV:
            print(f"[SESSIONS] Removed session {device_id} for {user_id}")
        return policy.remove_device_session(entitlement, device_id)

    def remove_all_device_sessions(self, actor: Identity, user_id: str) -> UserEntitlement:
        require_self_or_admin(actor, user_id, "remove all device sessions")
        entitlement = self.repository.load_entitlement(user_id)
        self.repository.clear_device_sessions(user_id)
        print(f"[SESSIONS] {actor.audit_name} removed all sessions for {user_id}")
        return policy.remove_all_device_sessions(entitlement)

    # ========================================================================
    # Health
    # ========================================================================

    def probe_store(self) -> bool:
        return self.repository.store.probe()
