"""
hymnal_backend/repository.py

Entitlement persistence on top of a KeyTreeStore.

Each mutation targets the narrowest sub-path it changes:

    users/{id}/role                      set_role
    users/{id}/{isPremium,premium*}      save_premium (multi-key update)
    users/{id}/trial                     mutate_trial (conditional)
    users/{id}/deviceSessions            mutate_device_sessions (conditional)
    users/{id}/deviceSessions/{device}   delete_device_session
    trialRequests/{id}                   mutate_trial_request (conditional)

so editing one field can never clobber a concurrent write to another.
"""

from __future__ import annotations

from dataclasses import replace
from typing import Callable, List, Optional, Tuple

from hymnal_backend import config
from hymnal_backend.models import (
    TrialRequest,
    UserEntitlement,
    UserRole,
    parse_sessions_node,
    parse_trial_node,
    sessions_node,
    trial_node,
    validate_key,
)
from hymnal_backend.store import KeyTreeStore
from hymnal_backend.trial_requests import sort_requests

USERS_ROOT = "users"
TRIAL_REQUESTS_ROOT = "trialRequests"
LEGACY_SESSIONS_NODE = "sessions"

EntitlementFn = Callable[[UserEntitlement], UserEntitlement]


def user_path(user_id: str, *children: str) -> str:
    validate_key(user_id, "user_id")
    return "/".join((USERS_ROOT, user_id) + children)


def trial_request_path(request_id: str) -> str:
    validate_key(request_id, "request_id")
    return f"{TRIAL_REQUESTS_ROOT}/{request_id}"


class EntitlementRepository:
    """Reads entitlement snapshots and writes back only what changed."""

    def __init__(self, store: KeyTreeStore):
        self.store = store

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def load_entitlement(self, user_id: str) -> UserEntitlement:
        """Absent users load as a default (new) entitlement."""
        data = self.store.get(user_path(user_id))
        return UserEntitlement.from_record(user_id, data if isinstance(data, dict) else None)

    def set_role(self, user_id: str, role: UserRole) -> None:
        self.store.set(user_path(user_id, "role"), role.value)

    def set_email(self, user_id: str, email: str) -> None:
        self.store.set(user_path(user_id, "email"), email)

    def save_premium(self, entitlement: UserEntitlement) -> None:
        self.store.update(user_path(entitlement.user_id), entitlement.premium_record())

    def mutate_trial(self, base: UserEntitlement, fn: EntitlementFn) -> UserEntitlement:
        """
        Apply ``fn`` to the freshest trial state of ``base.user_id``.

        Only the trial node is read back and rewritten; other fields of the
        returned snapshot come from ``base``.
        """
        result: List[UserEntitlement] = []

        def _apply(node):
            trial, history = parse_trial_node(node if isinstance(node, dict) else None)
            updated = fn(replace(base, trial=trial, trial_history=history))
            result[:] = [updated]
            return trial_node(updated.trial, updated.trial_history)

        self.store.transaction(user_path(base.user_id, "trial"), _apply)
        return result[0]

    def mutate_device_sessions(self, base: UserEntitlement, fn: EntitlementFn) -> UserEntitlement:
        """
        Apply ``fn`` to the freshest device sessions of ``base.user_id``.

        While the user has no deviceSessions node, sessions written by older
        clients under users/{id}/sessions seed the update and that node is
        removed once the new one is written.
        """
        result: List[UserEntitlement] = []
        migrated: List[bool] = [False]

        def _apply(node):
            migrated[0] = False
            if not node:
                node = self.store.get(user_path(base.user_id, LEGACY_SESSIONS_NODE))
                migrated[0] = bool(node)
            sessions = parse_sessions_node(node)
            updated = fn(replace(base, device_sessions=sessions))
            result[:] = [updated]
            return sessions_node(updated.device_sessions)

        self.store.transaction(user_path(base.user_id, "deviceSessions"), _apply)
        if migrated[0]:
            if config.IS_DEV:
                print(f"[SESSIONS] Migrated legacy sessions node for user={base.user_id}")
            self.store.delete(user_path(base.user_id, LEGACY_SESSIONS_NODE))
        return result[0]

    def delete_device_session(self, user_id: str, device_id: str) -> None:
        validate_key(device_id, "device_id")
        self.store.delete(user_path(user_id, "deviceSessions", device_id))

    def clear_device_sessions(self, user_id: str) -> None:
        self.store.delete(user_path(user_id, "deviceSessions"))
        self.store.delete(user_path(user_id, LEGACY_SESSIONS_NODE))

    # ------------------------------------------------------------------
    # Trial requests
    # ------------------------------------------------------------------

    def save_trial_request(self, request: TrialRequest) -> None:
        self.store.set(trial_request_path(request.id), request.to_record())

    def load_trial_request(self, request_id: str) -> Optional[TrialRequest]:
        data = self.store.get(trial_request_path(request_id))
        if not isinstance(data, dict):
            return None
        return TrialRequest.from_record(request_id, data)

    def mutate_trial_request(
        self,
        request_id: str,
        fn: Callable[[TrialRequest], TrialRequest],
    ) -> Tuple[Optional[TrialRequest], Optional[TrialRequest]]:
        """
        Conditionally rewrite one request.

        Returns:
            (request as read on the winning attempt, updated request); both
            None when the request does not exist.
        """
        seen: List[Optional[TrialRequest]] = [None, None]

        def _apply(node):
            if not isinstance(node, dict):
                seen[:] = [None, None]
                return node
            current = TrialRequest.from_record(request_id, node)
            updated = fn(current)
            seen[:] = [current, updated]
            return updated.to_record()

        self.store.transaction(trial_request_path(request_id), _apply)
        return seen[0], seen[1]

    def list_trial_requests(self) -> List[TrialRequest]:
        """
        All trial requests, most recent first.

        An empty list means the queue is empty. Store failures propagate as
        StoreUnavailable instead of being reported as an empty queue.
        """
        data = self.store.get(TRIAL_REQUESTS_ROOT) or {}
        requests = [
            TrialRequest.from_record(request_id, record)
            for request_id, record in data.items()
            if isinstance(record, dict)
        ]
        if config.IS_DEV:
            print(f"[TRIALS] Loaded {len(requests)} trial requests")
        return sort_requests(requests)
