# hymnal_backend/drafts.py
# Centrally owned edit drafts for the admin console (role/premium edits per user)
#
# A console process keeps one EditDrafts and an EntitlementService:
#   drafts.stage_role(...) / drafts.stage_premium(...)   on each edit
#   drafts.overlay(stored, now)                         to render the user row
#   drafts.commit(user_id, service, actor)              on "Save"
#   drafts.discard(user_id)                             on "Cancel"
# commit goes through EntitlementService.set_role / grant_premium / revoke_premium,
# so the same authorization and narrow writes as the HTTP routes apply.

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from hymnal_backend import policy
from hymnal_backend.authz import Identity
from hymnal_backend.errors import PolicyError
from hymnal_backend.models import UserEntitlement, UserRole, utc_now


@dataclass(frozen=True)
class EntitlementDraft:
    """Unsaved edits for one user. None means "unchanged"."""
    user_id: str
    role: Optional[UserRole] = None
    is_premium: Optional[bool] = None
    premium_duration: Optional[timedelta] = None
    reason: str = "Admin console"

    @property
    def is_empty(self) -> bool:
        return self.role is None and self.is_premium is None


class EditDrafts:
    """
    Pending edits keyed by user id, kept apart from rendering state.

    overlay() gives the optimistic view shown while editing. commit() writes
    through the service; parts that fail stay staged so the console keeps
    showing the confirmed store state plus the unsaved edit, never a
    half-applied one.
    """

    def __init__(self):
        self._drafts: Dict[str, EntitlementDraft] = {}

    def get(self, user_id: str) -> Optional[EntitlementDraft]:
        return self._drafts.get(user_id)

    def pending_ids(self) -> List[str]:
        return sorted(self._drafts)

    def has_changes(self, user_id: str) -> bool:
        return user_id in self._drafts

    def stage_role(self, user_id: str, role: UserRole) -> EntitlementDraft:
        draft = replace(self._drafts.get(user_id) or EntitlementDraft(user_id), role=role)
        self._drafts[user_id] = draft
        return draft

    def stage_premium(
        self,
        user_id: str,
        is_premium: bool,
        duration: Optional[timedelta] = None,
        reason: str = "Admin console",
    ) -> EntitlementDraft:
        draft = replace(
            self._drafts.get(user_id) or EntitlementDraft(user_id),
            is_premium=is_premium,
            premium_duration=duration,
            reason=reason,
        )
        self._drafts[user_id] = draft
        return draft

    def discard(self, user_id: str) -> None:
        self._drafts.pop(user_id, None)

    def overlay(self, entitlement: UserEntitlement, now: Optional[datetime] = None) -> UserEntitlement:
        draft = self._drafts.get(entitlement.user_id)
        if draft is None:
            return entitlement
        view = entitlement
        if draft.role is not None:
            view = replace(view, role=draft.role)
        if draft.is_premium is True:
            view = policy.grant_premium(view, draft.premium_duration, draft.reason, now or utc_now())
        elif draft.is_premium is False:
            view = policy.revoke_premium(view)
        return view

    def commit(self, user_id: str, service, actor: Identity) -> UserEntitlement:
        """
        Write the staged edits for ``user_id``.

        Each applied part is cleared from the draft as soon as it lands. On
        failure the remaining parts stay staged and the error propagates.

        Returns:
            The entitlement re-read from the store after all writes
        """
        draft = self._drafts.get(user_id)
        if draft is None:
            return service.get_entitlement(actor, user_id)

        try:
            if draft.role is not None:
                service.set_role(actor, user_id, draft.role)
                draft = replace(draft, role=None)
            if draft.is_premium is True:
                service.grant_premium(actor, user_id, draft.premium_duration, draft.reason)
                draft = replace(draft, is_premium=None, premium_duration=None)
            elif draft.is_premium is False:
                service.revoke_premium(actor, user_id)
                draft = replace(draft, is_premium=None)
        except PolicyError as e:
            print(f"[ADMIN] Draft commit for {user_id} failed ({e.kind}); edits kept")
            raise
        finally:
            if draft.is_empty:
                self._drafts.pop(user_id, None)
            else:
                self._drafts[user_id] = draft

        return service.get_entitlement(actor, user_id)
