"""
hymnal_backend/trial_requests.py

Trial request workflow: the admin-facing approval queue.

    requested -> approved -> activated -> expired
    requested -> rejected
    requested -> activated  (self-service start)

Records are immutable once rejected or expired. Approving a request whose
user cannot be resolved leaves it "approved" without activation; the console
lists those for manual follow-up.

All functions are pure and return new TrialRequest snapshots.
"""

from __future__ import annotations

import itertools
from collections import Counter
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional, Tuple

from hymnal_backend import config
from hymnal_backend.errors import AlreadyResolved
from hymnal_backend.models import (
    TrialRequest,
    TrialRequestStatus,
    TrialType,
    UserEntitlement,
    utc_now,
)
from hymnal_backend.policy import grant_premium

# Monotonic suffix so ids created in the same millisecond keep insertion order
_sequence = itertools.count()

SOURCE_USER_INITIATED = "user_initiated"
SOURCE_ADMIN_GRANTED = "admin_granted"


def new_request_id(now: datetime) -> str:
    millis = int(now.timestamp() * 1000)
    return f"{millis:013d}-{next(_sequence) % 1_000_000:06d}"


def default_grant_duration(trial_type: TrialType) -> Optional[timedelta]:
    """Premium window granted on approval; None is open-ended."""
    if trial_type == TrialType.WEEKLY:
        return timedelta(days=config.WEEKLY_TRIAL_DAYS)
    if trial_type == TrialType.ADMIN_GRANTED:
        return timedelta(hours=config.ADMIN_TRIAL_HOURS)
    return None


# ============================================================================
# Workflow Operations
# ============================================================================

def submit_request(
    user_id: Optional[str],
    email: Optional[str],
    trial_type: TrialType,
    source: str,
    now: Optional[datetime] = None,
    device_id: Optional[str] = None,
    request_id: Optional[str] = None,
) -> TrialRequest:
    """Create a new request in the "requested" state. Always succeeds."""
    now = now or utc_now()
    return TrialRequest(
        id=request_id or new_request_id(now),
        user_id=user_id or None,
        email=email,
        device_id=device_id,
        trial_type=trial_type,
        source=source,
        requested_at=now,
        status=TrialRequestStatus.REQUESTED,
        status_updated_at=now,
    )


def _require_requested(request: TrialRequest) -> None:
    if request.status != TrialRequestStatus.REQUESTED:
        raise AlreadyResolved(request.id, request.status.value)


def mark_approved(
    request: TrialRequest,
    approver: Optional[str],
    now: Optional[datetime] = None,
) -> TrialRequest:
    """
    requested -> approved, recording who approved it and when.

    Raises:
        AlreadyResolved: request is not in "requested"
    """
    _require_requested(request)
    now = now or utc_now()
    return replace(
        request,
        status=TrialRequestStatus.APPROVED,
        approved_at=now,
        approved_by=approver,
        status_updated_at=now,
    )


def approve(
    request: TrialRequest,
    approver: Optional[str],
    now: Optional[datetime] = None,
    entitlement: Optional[UserEntitlement] = None,
    duration: Optional[timedelta] = None,
) -> Tuple[TrialRequest, Optional[UserEntitlement]]:
    """
    Approve a pending request and, when the user resolves, grant premium.

    Args:
        request: Request to approve (must be "requested")
        approver: Approving identity (email), recorded as approvedBy
        entitlement: Snapshot of the requesting user, or None if the user id
            could not be resolved
        duration: Premium window; defaults to the trial type's length

    Returns:
        (updated request, updated entitlement or None)

    Raises:
        AlreadyResolved: request is not in "requested"
    """
    now = now or utc_now()
    approved = mark_approved(request, approver, now)

    if not request.user_id or entitlement is None or entitlement.user_id != request.user_id:
        if config.IS_DEV:
            print(f"[TRIALS] Request {request.id} approved without activation "
                  f"(user_id={request.user_id!r} unresolved)")
        return approved, None

    granted = grant_for_request(request, entitlement, approver, now, duration)
    return mark_activated(approved, now), granted


def grant_for_request(
    request: TrialRequest,
    entitlement: UserEntitlement,
    approver: Optional[str],
    now: Optional[datetime] = None,
    duration: Optional[timedelta] = None,
) -> UserEntitlement:
    """Premium grant that approving ``request`` applies to its user."""
    window = duration if duration is not None else default_grant_duration(request.trial_type)
    return grant_premium(
        entitlement,
        window,
        reason=f"Trial request {request.id} approved",
        now=now,
        granted_by=approver,
    )


def reject(
    request: TrialRequest,
    rejector: Optional[str],
    now: Optional[datetime] = None,
) -> TrialRequest:
    """Reject a pending request. Raises AlreadyResolved otherwise."""
    _require_requested(request)
    now = now or utc_now()
    return replace(
        request,
        status=TrialRequestStatus.REJECTED,
        rejected_at=now,
        rejected_by=rejector,
        status_updated_at=now,
    )


def mark_activated(request: TrialRequest, now: Optional[datetime] = None) -> TrialRequest:
    """The grant was applied. Allowed from requested or approved."""
    if request.status not in (TrialRequestStatus.REQUESTED, TrialRequestStatus.APPROVED):
        raise AlreadyResolved(request.id, request.status.value)
    now = now or utc_now()
    return replace(
        request,
        status=TrialRequestStatus.ACTIVATED,
        activated_at=now,
        status_updated_at=now,
    )


def mark_expired(request: TrialRequest, now: Optional[datetime] = None) -> TrialRequest:
    """The activated trial ran out. Only activated requests expire."""
    if request.status != TrialRequestStatus.ACTIVATED:
        raise AlreadyResolved(request.id, request.status.value)
    now = now or utc_now()
    return replace(
        request,
        status=TrialRequestStatus.EXPIRED,
        expired_at=now,
        status_updated_at=now,
    )


# ============================================================================
# Listing
# ============================================================================

def sort_requests(requests: Iterable[TrialRequest]) -> List[TrialRequest]:
    """Most recent first; equal timestamps fall back to request id."""
    return sorted(requests, key=lambda r: (r.requested_at, r.id), reverse=True)


def count_by_status(requests: Iterable[TrialRequest]) -> Dict[str, int]:
    counts = Counter(r.status.value for r in requests)
    return {status.value: counts.get(status.value, 0) for status in TrialRequestStatus}


def latest_for_user(
    requests: Iterable[TrialRequest],
    user_id: str,
    status: Optional[TrialRequestStatus] = None,
) -> Optional[TrialRequest]:
    matching = [
        r for r in requests
        if r.user_id == user_id and (status is None or r.status == status)
    ]
    if not matching:
        return None
    return sort_requests(matching)[0]
