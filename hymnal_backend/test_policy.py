"""
hymnal_backend/test_policy.py

Regression tests for the session policy engine.

Tests verify:
1. Trial eligibility is consumed exactly once by the self-service weekly trial
2. Active/expired trial boundaries at the expiry instant
3. Admin-granted trials never burn self-service eligibility unless marked
4. Device-class session limits, refresh, eviction and expiry
5. Premium grant/revoke round trip and active-window checks
"""

from datetime import datetime, timedelta, timezone

import pytest

from hymnal_backend import policy
from hymnal_backend.errors import DeviceLimitExceeded, NotEligible
from hymnal_backend.models import (
    DeviceClass,
    DeviceSession,
    TrialState,
    TrialType,
    UserEntitlement,
    UserRole,
)
from hymnal_backend.policy import DeviceLimits


T0 = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def new_user():
    return UserEntitlement(user_id="u1", email="singer@example.com")


@pytest.fixture
def one_phone(new_user):
    return policy.register_device_session(new_user, "phone-a", DeviceClass.PHONE, T0)


def _trial(expires_at, trial_type=TrialType.WEEKLY, consumed=True):
    return TrialState(
        trial_type=trial_type,
        started_at=expires_at - timedelta(days=7),
        expires_at=expires_at,
        consumed=consumed,
    )


# ============================================================================
# Trial eligibility
# ============================================================================

def test_new_user_is_eligible(new_user):
    assert policy.is_trial_eligible(new_user) is True


def test_consumed_trial_is_not_eligible(new_user):
    consumed = policy.apply_trial(new_user, _trial(T0 - timedelta(days=30)))
    assert policy.is_trial_eligible(consumed) is False


def test_unconsumed_current_trial_is_eligible(new_user):
    entitlement = policy.apply_trial(new_user, _trial(T0, consumed=False))
    assert policy.is_trial_eligible(entitlement) is True


def test_consumed_trial_in_history_blocks_eligibility(new_user):
    """A later admin grant cannot restore self-service eligibility."""
    weekly = policy.apply_trial(new_user, policy.start_weekly_trial(new_user, T0))
    admin_trial = policy.grant_admin_trial(weekly, timedelta(hours=24), T0 + timedelta(days=10))
    regranted = policy.apply_trial(weekly, admin_trial)

    assert regranted.trial.consumed is False
    assert len(regranted.trial_history) == 1
    assert policy.is_trial_eligible(regranted) is False


def test_weekly_trial_starts_exactly_once(new_user):
    trial = policy.start_weekly_trial(new_user, T0)

    assert trial.trial_type == TrialType.WEEKLY
    assert trial.started_at == T0
    assert trial.expires_at == T0 + timedelta(days=7)
    assert trial.consumed is True

    started = policy.apply_trial(new_user, trial)
    with pytest.raises(NotEligible):
        policy.start_weekly_trial(started, T0 + timedelta(minutes=1))


def test_start_weekly_trial_does_not_mutate_input(new_user):
    policy.start_weekly_trial(new_user, T0)
    assert new_user.trial is None


# ============================================================================
# Active / expired boundaries
# ============================================================================

def test_trial_at_expiry_instant_is_not_active():
    trial = _trial(T0)
    assert policy.has_active_trial(trial, T0) is False
    assert policy.is_trial_expired(trial, T0) is True


def test_trial_expired_one_millisecond_ago():
    trial = _trial(T0 - timedelta(milliseconds=1))
    assert policy.is_trial_expired(trial, T0) is True
    assert policy.has_active_trial(trial, T0) is False


def test_trial_one_millisecond_before_expiry_is_active():
    trial = _trial(T0 + timedelta(milliseconds=1))
    assert policy.has_active_trial(trial, T0) is True
    assert policy.is_trial_expired(trial, T0) is False


def test_none_trial_type_is_never_active_or_expired():
    trial = _trial(T0 + timedelta(days=1), trial_type=TrialType.NONE)
    assert policy.has_active_trial(trial, T0) is False
    assert policy.is_trial_expired(trial, T0) is False
    assert policy.has_active_trial(None, T0) is False


def test_remaining_time_and_expiring_soon():
    trial = _trial(T0 + timedelta(hours=5))
    assert policy.remaining_trial_time(trial, T0) == timedelta(hours=5)
    assert policy.is_trial_expiring_soon(trial, T0) is True
    assert policy.is_trial_expiring_soon(_trial(T0 + timedelta(days=3)), T0) is False
    assert policy.remaining_trial_time(_trial(T0), T0) is None


# ============================================================================
# Admin-granted trials
# ============================================================================

def test_admin_trial_does_not_consume_eligibility(new_user):
    trial = policy.grant_admin_trial(new_user, timedelta(hours=24), T0)
    granted = policy.apply_trial(new_user, trial)

    assert trial.trial_type == TrialType.ADMIN_GRANTED
    assert trial.expires_at == T0 + timedelta(hours=24)
    assert policy.has_active_trial(granted.trial, T0) is True
    assert policy.is_trial_eligible(granted) is True


def test_admin_trial_can_be_marked_consuming(new_user):
    trial = policy.grant_admin_trial(new_user, timedelta(hours=24), T0, consume_eligibility=True)
    assert policy.is_trial_eligible(policy.apply_trial(new_user, trial)) is False


# ============================================================================
# Premium
# ============================================================================

def test_grant_then_revoke_restores_pre_grant_state(new_user):
    granted = policy.grant_premium(new_user, timedelta(days=30), "support", T0, granted_by="admin@example.com")
    assert granted.is_premium is True
    assert granted.premium_granted_at == T0
    assert granted.premium_expires_at == T0 + timedelta(days=30)
    assert granted.premium_granted_by == "admin@example.com"

    assert policy.revoke_premium(granted) == new_user


def test_revoke_is_idempotent(new_user):
    once = policy.revoke_premium(new_user)
    assert policy.revoke_premium(once) == once


@pytest.mark.parametrize("duration", [None, timedelta(0)])
def test_open_ended_grant_has_no_expiry(new_user, duration):
    granted = policy.grant_premium(new_user, duration, "permanent", T0)
    assert granted.is_premium is True
    assert granted.premium_expires_at is None
    assert policy.is_premium_active(granted, T0 + timedelta(days=10_000)) is True


def test_premium_window_expires(new_user):
    granted = policy.grant_premium(new_user, timedelta(hours=1), "short", T0)
    assert policy.is_premium_active(granted, T0 + timedelta(minutes=59)) is True
    assert policy.is_premium_active(granted, T0 + timedelta(hours=1)) is False


def test_premium_access_for_staff_premium_and_trial(new_user):
    assert policy.has_premium_access(new_user, T0) is False
    assert policy.has_premium_access(UserEntitlement(user_id="a", role=UserRole.ADMIN), T0) is True

    trial_user = policy.apply_trial(new_user, policy.start_weekly_trial(new_user, T0))
    assert policy.has_premium_access(trial_user, T0 + timedelta(days=1)) is True
    assert policy.has_premium_access(trial_user, T0 + timedelta(days=8)) is False


# ============================================================================
# Device sessions
# ============================================================================

def test_new_phone_over_limit_fails(one_phone):
    with pytest.raises(DeviceLimitExceeded) as exc:
        policy.register_device_session(one_phone, "phone-b", DeviceClass.PHONE, T0)
    assert exc.value.device_class == "phone"
    assert exc.value.current == 1
    assert exc.value.limit == 1


def test_same_device_refreshes_instead_of_taking_a_slot(one_phone):
    later = T0 + timedelta(hours=3)
    refreshed = policy.register_device_session(one_phone, "phone-a", DeviceClass.PHONE, later)

    assert len(refreshed.device_sessions) == 1
    session = refreshed.session_for("phone-a")
    assert session.last_activity_at == later
    assert session.created_at == T0


def test_limits_are_per_device_class(one_phone):
    with_tablet = policy.register_device_session(one_phone, "tab-a", DeviceClass.TABLET, T0)
    with_web = policy.register_device_session(with_tablet, "web-a", DeviceClass.WEB, T0)
    assert len(with_web.device_sessions) == 3


def test_custom_limits(one_phone):
    limits = DeviceLimits(max_phones=2, max_tablets=1, max_web=1)
    two = policy.register_device_session(one_phone, "phone-b", DeviceClass.PHONE, T0, limits=limits)
    assert len(two.sessions_of(DeviceClass.PHONE)) == 2
    with pytest.raises(DeviceLimitExceeded):
        policy.register_device_session(two, "phone-c", DeviceClass.PHONE, T0, limits=limits)


def test_evict_oldest_replaces_least_recent_session(new_user):
    limits = DeviceLimits(max_phones=2)
    e = policy.register_device_session(new_user, "old", DeviceClass.PHONE, T0, limits=limits)
    e = policy.register_device_session(e, "newer", DeviceClass.PHONE, T0 + timedelta(hours=1), limits=limits)

    e = policy.register_device_session(
        e, "newest", DeviceClass.PHONE, T0 + timedelta(hours=2), limits=limits, evict_oldest=True
    )

    assert {s.device_id for s in e.device_sessions} == {"newer", "newest"}


def test_evict_oldest_keeps_first_created_session_if_recently_used(new_user):
    limits = DeviceLimits(max_phones=2)
    e = policy.register_device_session(new_user, "first", DeviceClass.PHONE, T0, limits=limits)
    e = policy.register_device_session(e, "second", DeviceClass.PHONE, T0 + timedelta(hours=1), limits=limits)
    e = policy.register_device_session(e, "first", DeviceClass.PHONE, T0 + timedelta(hours=2), limits=limits)

    e = policy.register_device_session(
        e, "third", DeviceClass.PHONE, T0 + timedelta(hours=3), limits=limits, evict_oldest=True
    )

    assert {s.device_id for s in e.device_sessions} == {"first", "third"}


# ============================================================================
# Session expiry
# ============================================================================

def test_registration_sets_expiry(one_phone):
    session = one_phone.session_for("phone-a")
    assert session.expires_at == T0 + timedelta(days=90)

    later = T0 + timedelta(days=30)
    refreshed = policy.register_device_session(one_phone, "phone-a", DeviceClass.PHONE, later)
    assert refreshed.session_for("phone-a").expires_at == later + timedelta(days=90)


def test_abandoned_phone_no_longer_blocks_new_phone(new_user):
    e = policy.register_device_session(new_user, "old-phone", DeviceClass.PHONE, T0)

    e = policy.register_device_session(e, "new-phone", DeviceClass.PHONE, T0 + timedelta(days=400))

    assert [s.device_id for s in e.device_sessions] == ["new-phone"]


def test_session_still_counts_until_it_expires(one_phone):
    with pytest.raises(DeviceLimitExceeded):
        policy.register_device_session(one_phone, "phone-b", DeviceClass.PHONE, T0 + timedelta(days=89))


def test_session_without_expiry_lasts_from_last_activity():
    session = DeviceSession(
        device_id="legacy", device_class=DeviceClass.WEB, created_at=T0, last_activity_at=T0 + timedelta(days=10)
    )
    assert policy.session_expires_at(session) == T0 + timedelta(days=100)
    assert policy.is_session_expired(session, T0 + timedelta(days=99)) is False
    assert policy.is_session_expired(session, T0 + timedelta(days=100)) is True


def test_expired_session_of_other_class_is_pruned(one_phone):
    e = policy.register_device_session(one_phone, "web-a", DeviceClass.WEB, T0 + timedelta(days=200))
    assert [s.device_id for s in e.device_sessions] == ["web-a"]


def test_invalid_device_id_is_rejected(new_user):
    with pytest.raises(ValueError):
        policy.register_device_session(new_user, "bad/id", DeviceClass.WEB, T0)


def test_remove_absent_session_is_idempotent(one_phone):
    first = policy.remove_device_session(one_phone, "missing")
    second = policy.remove_device_session(first, "missing")
    assert first == one_phone
    assert second == first


def test_remove_session_twice(one_phone):
    first = policy.remove_device_session(one_phone, "phone-a")
    second = policy.remove_device_session(first, "phone-a")
    assert first.device_sessions == ()
    assert second == first


def test_device_session_summary(one_phone):
    e = policy.register_device_session(one_phone, "web-a", DeviceClass.WEB, T0 + timedelta(minutes=5))
    summary = policy.device_session_summary(e)

    assert summary["totalSessions"] == 2
    assert summary["phoneCount"] == 1
    assert summary["tabletCount"] == 0
    assert summary["webCount"] == 1
    assert summary["sessions"][0]["deviceId"] == "web-a"
    assert summary["limits"] == {"maxPhones": 1, "maxTablets": 1, "maxWeb": 1}


# ============================================================================
# Summaries
# ============================================================================

def test_trial_info_for_active_trial(new_user):
    started = policy.apply_trial(new_user, policy.start_weekly_trial(new_user, T0))
    info = policy.trial_info(started, T0 + timedelta(days=6, hours=12))

    assert info["isTrialUser"] is True
    assert info["trialType"] == "weekly"
    assert info["hasActiveTrial"] is True
    assert info["isTrialEligible"] is False
    assert info["isTrialExpiringSoon"] is True
    assert info["remainingTrialDays"] == 0
    assert info["remainingTrialHours"] == 12
    assert info["trialEndedAt"] is None


def test_trial_info_for_expired_trial(new_user):
    started = policy.apply_trial(new_user, policy.start_weekly_trial(new_user, T0))
    info = policy.trial_info(started, T0 + timedelta(days=8))

    assert info["isTrialExpired"] is True
    assert info["hasTrialAccess"] is False
    assert info["trialEndedAt"] == "2024-03-08T12:00:00.000Z"


def test_entitlement_summary_shape(new_user):
    summary = policy.entitlement_summary(new_user, T0)
    assert summary["userId"] == "u1"
    assert summary["role"] == "user"
    assert summary["hasPremiumAccess"] is False
    assert summary["trial"]["isTrialEligible"] is True
    assert summary["devices"]["totalSessions"] == 0


# ============================================================================
# End-to-end scenarios
# ============================================================================

def test_weekly_trial_lifecycle(new_user):
    assert policy.is_trial_eligible(new_user) is True

    trial = policy.start_weekly_trial(new_user, T0)
    assert trial.expires_at == T0 + timedelta(days=7)
    user = policy.apply_trial(new_user, trial)

    assert policy.has_active_trial(user.trial, T0 + timedelta(days=6)) is True

    at_day_8 = T0 + timedelta(days=8)
    assert policy.is_trial_expired(user.trial, at_day_8) is True
    assert policy.has_active_trial(user.trial, at_day_8) is False

    with pytest.raises(NotEligible):
        policy.start_weekly_trial(user, T0 + timedelta(days=400))


def test_phone_limit_cleared_by_remove_all(one_phone):
    with pytest.raises(DeviceLimitExceeded):
        policy.register_device_session(one_phone, "phone-b", DeviceClass.PHONE, T0)

    cleared = policy.remove_all_device_sessions(one_phone)
    registered = policy.register_device_session(cleared, "phone-b", DeviceClass.PHONE, T0)

    assert [s.device_id for s in registered.device_sessions] == ["phone-b"]
