"""
hymnal_backend/test_models.py

Tests for store record parsing (including legacy client records and
array-shaped nodes), key validation, and the admin allow-list.
"""

from datetime import datetime, timezone

import pytest

from hymnal_backend.authz import AdminPolicy, Identity, require_self_or_admin, role_at_least
from hymnal_backend.config import parse_email_list
from hymnal_backend.errors import DeviceLimitExceeded, StoreUnavailable, Unauthorized
from hymnal_backend.models import (
    DeviceClass,
    TrialType,
    UserEntitlement,
    UserRole,
    parse_iso,
    parse_sessions_node,
    to_iso,
    validate_key,
)


# ============================================================================
# Records
# ============================================================================

def test_absent_record_is_new_user():
    e = UserEntitlement.from_record("u1", None)
    assert e == UserEntitlement(user_id="u1")


def test_legacy_user_record():
    e = UserEntitlement.from_record("u1", {
        "role": "superAdmin",
        "isPremium": True,
        "premiumExpiresAt": "2025-01-01T00:00:00",
        "trial": {
            "trialType": "week_trial",
            "startedAt": "2024-01-01T00:00:00Z",
            "expiresAt": "2024-01-08T00:00:00Z",
            "consumed": True,
        },
        "deviceSessions": {
            "device_abc": {
                "deviceType": "laptop",
                "deviceInfo": "Chrome",
                "sessionCreatedAt": "2024-01-01T10:00:00Z",
                "lastActivity": "2024-01-02T10:00:00Z",
            },
        },
    })

    assert e.role == UserRole.SUPER_ADMIN
    assert e.premium_expires_at == datetime(2025, 1, 1, tzinfo=timezone.utc)
    assert e.trial.trial_type == TrialType.WEEKLY
    session = e.session_for("device_abc")
    assert session.device_class == DeviceClass.PHONE
    assert session.device_label == "Chrome"
    assert session.last_activity_at == datetime(2024, 1, 2, 10, tzinfo=timezone.utc)


def test_sessions_node_returned_as_array():
    sessions = parse_sessions_node([
        {"deviceId": "0", "deviceClass": "phone", "createdAt": "2024-01-01T00:00:00Z"},
        None,
        {"deviceClass": "web", "createdAt": "2024-01-02T00:00:00Z"},
    ])
    assert [(s.device_id, s.device_class) for s in sessions] == [
        ("0", DeviceClass.PHONE),
        ("2", DeviceClass.WEB),
    ]


def test_session_expiry_from_legacy_field():
    e = UserEntitlement.from_record("u1", {
        "deviceSessions": {"d1": {"deviceClass": "tablet", "sessionExpiresAt": "2024-04-01T00:00:00Z"}},
    })
    assert e.session_for("d1").expires_at == datetime(2024, 4, 1, tzinfo=timezone.utc)


def test_legacy_sessions_node_is_read():
    e = UserEntitlement.from_record("u1", {
        "sessions": {
            "session_1": {"deviceId": "device_abc", "deviceType": "tablet", "sessionCreatedAt": "2024-01-01T10:00:00Z"},
        },
    })
    assert [s.device_id for s in e.device_sessions] == ["device_abc"]
    assert e.session_for("device_abc").device_class == DeviceClass.TABLET


def test_device_sessions_node_wins_over_legacy_node():
    e = UserEntitlement.from_record("u1", {
        "deviceSessions": {"new": {"deviceClass": "web", "createdAt": "2024-02-01T00:00:00Z"}},
        "sessions": {"old": {"deviceType": "phone", "sessionCreatedAt": "2024-01-01T00:00:00Z"}},
    })
    assert [s.device_id for s in e.device_sessions] == ["new"]


def test_unknown_role_is_plain_user():
    assert UserRole.parse("owner") == UserRole.USER
    assert UserRole.parse(None) == UserRole.USER


def test_trial_history_from_sparse_object():
    e = UserEntitlement.from_record("u1", {
        "trial": {
            "trialType": "admin_granted",
            "startedAt": "2024-02-01T00:00:00Z",
            "expiresAt": "2024-02-02T00:00:00Z",
            "history": {"0": {"trialType": "weekly", "startedAt": "2024-01-01T00:00:00Z",
                              "expiresAt": "2024-01-08T00:00:00Z", "consumed": True}},
        },
    })
    assert e.trial.trial_type == TrialType.ADMIN_GRANTED
    assert [t.trial_type for t in e.trial_history] == [TrialType.WEEKLY]


def test_iso_formatting():
    moment = datetime(2024, 3, 1, 12, 0, 0, 123456, tzinfo=timezone.utc)
    assert to_iso(moment) == "2024-03-01T12:00:00.123Z"
    assert parse_iso("2024-03-01T12:00:00.123Z") == datetime(2024, 3, 1, 12, 0, 0, 123000, tzinfo=timezone.utc)
    assert parse_iso(None) is None


@pytest.mark.parametrize("key", ["a.b", "a/b", "a#b", "a$b", "a[b", "a]b", ""])
def test_illegal_store_keys(key):
    with pytest.raises(ValueError):
        validate_key(key)


# ============================================================================
# Errors
# ============================================================================

def test_error_kinds_are_distinct():
    errors = [DeviceLimitExceeded("phone", 1, 1), StoreUnavailable("timeout"), Unauthorized("no")]
    assert [e.to_dict()["error"] for e in errors] == ["DeviceLimitExceeded", "StoreUnavailable", "Unauthorized"]
    assert [e.status_code for e in errors] == [409, 503, 403]


# ============================================================================
# Admin allow-list
# ============================================================================

def test_parse_email_list():
    assert parse_email_list(" A@x.com, b@x.com ,,") == frozenset({"a@x.com", "b@x.com"})
    assert parse_email_list("") == frozenset()


def test_admin_policy_resolves_roles():
    admin_policy = AdminPolicy.from_emails(["admin@x.com"], ["boss@x.com"])
    assert admin_policy.role_for_email("ADMIN@x.com") == UserRole.ADMIN
    assert admin_policy.role_for_email("boss@x.com") == UserRole.SUPER_ADMIN
    assert admin_policy.role_for_email(None) == UserRole.USER
    assert admin_policy.resolve_role("nobody@x.com", UserRole.ADMIN) == UserRole.ADMIN


def test_role_hierarchy():
    assert role_at_least(UserRole.SUPER_ADMIN, UserRole.ADMIN) is True
    assert role_at_least(UserRole.USER, UserRole.ADMIN) is False


def test_self_or_admin():
    user = Identity(user_id="u1")
    assert require_self_or_admin(user, "u1") is user
    with pytest.raises(Unauthorized):
        require_self_or_admin(user, "u2")
    assert require_self_or_admin(Identity(user_id="a1", role=UserRole.ADMIN), "u2").user_id == "a1"
