"""
hymnal_backend/models.py

Entitlement data model and its store record format.

All snapshots are immutable (frozen dataclasses). Policy operations never
mutate a snapshot; they return a new one via dataclasses.replace().

Store records use the camelCase key layout of the Realtime Database tree:
    users/{userId}/{role,isPremium,premiumGrantedAt,premiumExpiresAt,
                    premiumGrantedBy,premiumReason,trial,deviceSessions/{deviceId}}
    trialRequests/{requestId}
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


# ============================================================================
# Enums
# ============================================================================

class UserRole(str, Enum):
    USER = "user"
    ADMIN = "admin"
    SUPER_ADMIN = "super_admin"

    @classmethod
    def parse(cls, value: Any) -> "UserRole":
        """Parse a stored role; anything unrecognized is a plain user."""
        raw = str(value or "").strip().lower()
        if raw in ("superadmin", "super-admin"):
            raw = "super_admin"
        try:
            return cls(raw)
        except ValueError:
            return cls.USER


class TrialType(str, Enum):
    NONE = "none"
    WEEKLY = "weekly"
    ADMIN_GRANTED = "admin_granted"

    @classmethod
    def parse(cls, value: Any) -> "TrialType":
        raw = str(value or "none").strip().lower()
        # Legacy client records
        if raw == "week_trial":
            return cls.WEEKLY
        if raw in ("admingranted", "admin_trial"):
            return cls.ADMIN_GRANTED
        try:
            return cls(raw)
        except ValueError:
            return cls.NONE


class DeviceClass(str, Enum):
    PHONE = "phone"
    TABLET = "tablet"
    WEB = "web"

    @classmethod
    def parse(cls, value: Any) -> "DeviceClass":
        # Clients that could not detect their type registered as phones
        try:
            return cls(str(value or "").strip().lower())
        except ValueError:
            return cls.PHONE


class TrialRequestStatus(str, Enum):
    REQUESTED = "requested"
    APPROVED = "approved"
    REJECTED = "rejected"
    ACTIVATED = "activated"
    EXPIRED = "expired"


# ============================================================================
# Timestamp helpers
# ============================================================================

def utc_now() -> datetime:
    """Default clock. Inject a different callable for deterministic tests."""
    return datetime.now(timezone.utc)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_iso(value: Any) -> Optional[datetime]:
    """Parse an ISO timestamp from the store; naive values are taken as UTC."""
    if not value:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# Characters the Realtime Database rejects in keys
_ILLEGAL_KEY_CHARS = set(".$#[]/")


def validate_key(key: str, label: str = "key") -> str:
    if not key or any(ch in _ILLEGAL_KEY_CHARS for ch in key):
        raise ValueError(f"Invalid {label}: {key!r}")
    return key


# ============================================================================
# Trial state
# ============================================================================

@dataclass(frozen=True)
class TrialState:
    trial_type: TrialType
    started_at: datetime
    expires_at: datetime
    consumed: bool = False

    def to_record(self) -> Dict[str, Any]:
        return {
            "trialType": self.trial_type.value,
            "startedAt": to_iso(self.started_at),
            "expiresAt": to_iso(self.expires_at),
            "consumed": self.consumed,
        }

    @classmethod
    def from_record(cls, data: Dict[str, Any]) -> Optional["TrialState"]:
        if not data or not data.get("startedAt"):
            return None
        started_at = parse_iso(data["startedAt"])
        expires_at = parse_iso(data.get("expiresAt")) or started_at
        return cls(
            trial_type=TrialType.parse(data.get("trialType")),
            started_at=started_at,
            expires_at=expires_at,
            consumed=bool(data.get("consumed", False)),
        )


def trial_node(trial: Optional[TrialState], history: Tuple[TrialState, ...]) -> Optional[Dict[str, Any]]:
    """Build the users/{id}/trial node: current trial fields plus history."""
    if trial is None and not history:
        return None
    node: Dict[str, Any] = trial.to_record() if trial else {}
    if history:
        node["history"] = [item.to_record() for item in history]
    return node


def parse_trial_node(node: Optional[Dict[str, Any]]) -> Tuple[Optional[TrialState], Tuple[TrialState, ...]]:
    if not node:
        return None, ()
    raw_history = node.get("history") or []
    if isinstance(raw_history, dict):
        # Realtime Database returns sparse arrays as objects
        raw_history = [raw_history[k] for k in sorted(raw_history, key=str)]
    history = tuple(
        item for item in (TrialState.from_record(r) for r in raw_history) if item
    )
    return TrialState.from_record(node), history


# ============================================================================
# Device sessions
# ============================================================================

@dataclass(frozen=True)
class DeviceSession:
    device_id: str
    device_class: DeviceClass
    created_at: datetime
    last_activity_at: datetime
    device_label: str = ""
    expires_at: Optional[datetime] = None

    def to_record(self) -> Dict[str, Any]:
        return {
            "deviceId": self.device_id,
            "deviceClass": self.device_class.value,
            "deviceLabel": self.device_label,
            "createdAt": to_iso(self.created_at),
            "lastActivityAt": to_iso(self.last_activity_at),
            "expiresAt": to_iso(self.expires_at),
        }

    @classmethod
    def from_record(cls, device_id: str, data: Dict[str, Any]) -> "DeviceSession":
        # Older records used deviceType/deviceInfo/sessionCreatedAt/lastActivity/sessionExpiresAt
        created_at = parse_iso(data.get("createdAt") or data.get("sessionCreatedAt"))
        last_activity = parse_iso(data.get("lastActivityAt") or data.get("lastActivity"))
        created_at = created_at or last_activity or utc_now()
        return cls(
            device_id=data.get("deviceId") or device_id,
            device_class=DeviceClass.parse(data.get("deviceClass") or data.get("deviceType")),
            device_label=data.get("deviceLabel") or data.get("deviceInfo") or "",
            created_at=created_at,
            last_activity_at=last_activity or created_at,
            expires_at=parse_iso(data.get("expiresAt") or data.get("sessionExpiresAt")),
        )


def sessions_node(sessions: Tuple[DeviceSession, ...]) -> Optional[Dict[str, Any]]:
    if not sessions:
        return None
    return {s.device_id: s.to_record() for s in sessions}


def parse_sessions_node(node: Any) -> Tuple[DeviceSession, ...]:
    """
    Parse a deviceSessions node.

    The REST API returns a node keyed "0", "1", ... as a JSON array, with
    None in the holes, so a list is keyed back by deviceId or position.
    """
    if not node:
        return ()
    if isinstance(node, list):
        node = {
            str(data.get("deviceId") or index): data
            for index, data in enumerate(node)
            if isinstance(data, dict)
        }
    if not isinstance(node, dict):
        return ()
    return tuple(
        DeviceSession.from_record(device_id, data)
        for device_id, data in node.items()
        if isinstance(data, dict)
    )


# ============================================================================
# User entitlement
# ============================================================================

@dataclass(frozen=True)
class UserEntitlement:
    user_id: str
    email: Optional[str] = None
    role: UserRole = UserRole.USER
    is_premium: bool = False
    premium_granted_at: Optional[datetime] = None
    premium_expires_at: Optional[datetime] = None
    premium_granted_by: Optional[str] = None
    premium_reason: Optional[str] = None
    trial: Optional[TrialState] = None
    trial_history: Tuple[TrialState, ...] = ()
    device_sessions: Tuple[DeviceSession, ...] = field(default_factory=tuple)

    def session_for(self, device_id: str) -> Optional[DeviceSession]:
        for session in self.device_sessions:
            if session.device_id == device_id:
                return session
        return None

    def sessions_of(self, device_class: DeviceClass) -> List[DeviceSession]:
        return [s for s in self.device_sessions if s.device_class == device_class]

    def premium_record(self) -> Dict[str, Any]:
        """Premium sub-fields only; None values delete the key on update."""
        return {
            "isPremium": self.is_premium,
            "premiumGrantedAt": to_iso(self.premium_granted_at),
            "premiumExpiresAt": to_iso(self.premium_expires_at),
            "premiumGrantedBy": self.premium_granted_by,
            "premiumReason": self.premium_reason,
        }

    def to_record(self) -> Dict[str, Any]:
        record: Dict[str, Any] = {"role": self.role.value}
        if self.email:
            record["email"] = self.email
        record.update({k: v for k, v in self.premium_record().items() if v is not None})
        node = trial_node(self.trial, self.trial_history)
        if node:
            record["trial"] = node
        sessions = sessions_node(self.device_sessions)
        if sessions:
            record["deviceSessions"] = sessions
        return record

    @classmethod
    def from_record(cls, user_id: str, data: Optional[Dict[str, Any]]) -> "UserEntitlement":
        """Build a snapshot from a store record; an absent record is a new user."""
        if not data:
            return cls(user_id=user_id)
        trial, history = parse_trial_node(data.get("trial"))
        return cls(
            user_id=user_id,
            email=data.get("email"),
            role=UserRole.parse(data.get("role")),
            is_premium=bool(data.get("isPremium", False)),
            premium_granted_at=parse_iso(data.get("premiumGrantedAt")),
            premium_expires_at=parse_iso(data.get("premiumExpiresAt")),
            premium_granted_by=data.get("premiumGrantedBy"),
            premium_reason=data.get("premiumReason"),
            trial=trial,
            trial_history=history,
            # Older clients wrote sessions under users/{id}/sessions
            device_sessions=parse_sessions_node(
                data.get("deviceSessions") if "deviceSessions" in data else data.get("sessions")
            ),
        )


# ============================================================================
# Trial request (admin approval queue)
# ============================================================================

@dataclass(frozen=True)
class TrialRequest:
    id: str
    user_id: Optional[str]
    email: Optional[str]
    trial_type: TrialType
    source: str
    requested_at: datetime
    status: TrialRequestStatus = TrialRequestStatus.REQUESTED
    device_id: Optional[str] = None
    approved_at: Optional[datetime] = None
    approved_by: Optional[str] = None
    rejected_at: Optional[datetime] = None
    rejected_by: Optional[str] = None
    activated_at: Optional[datetime] = None
    expired_at: Optional[datetime] = None
    status_updated_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (TrialRequestStatus.REJECTED, TrialRequestStatus.EXPIRED)

    def to_record(self) -> Dict[str, Any]:
        record = {
            "requestId": self.id,
            "userId": self.user_id,
            "email": self.email,
            "deviceId": self.device_id,
            "trialType": self.trial_type.value,
            "source": self.source,
            "status": self.status.value,
            "requestedAt": to_iso(self.requested_at),
            "requestedAtTimestamp": int(self.requested_at.timestamp() * 1000),
            "approvedAt": to_iso(self.approved_at),
            "approvedBy": self.approved_by,
            "rejectedAt": to_iso(self.rejected_at),
            "rejectedBy": self.rejected_by,
            "activatedAt": to_iso(self.activated_at),
            "expiredAt": to_iso(self.expired_at),
            "statusUpdatedAt": to_iso(self.status_updated_at),
        }
        return {k: v for k, v in record.items() if v is not None}

    @classmethod
    def from_record(cls, request_id: str, data: Dict[str, Any]) -> "TrialRequest":
        user_id = data.get("userId")
        # Older clients wrote the literal string "null"
        if user_id in ("", "null"):
            user_id = None
        requested_at = parse_iso(data.get("requestedAt"))
        if requested_at is None and data.get("requestedAtTimestamp"):
            requested_at = datetime.fromtimestamp(
                int(data["requestedAtTimestamp"]) / 1000, tz=timezone.utc
            )
        try:
            status = TrialRequestStatus(data.get("status") or "requested")
        except ValueError:
            status = TrialRequestStatus.REQUESTED
        return cls(
            id=data.get("requestId") or request_id,
            user_id=user_id,
            email=data.get("email"),
            device_id=data.get("deviceId"),
            trial_type=TrialType.parse(data.get("trialType")),
            source=data.get("source") or "unknown",
            requested_at=requested_at or datetime.fromtimestamp(0, tz=timezone.utc),
            status=status,
            approved_at=parse_iso(data.get("approvedAt")),
            approved_by=data.get("approvedBy"),
            rejected_at=parse_iso(data.get("rejectedAt")),
            rejected_by=data.get("rejectedBy"),
            activated_at=parse_iso(data.get("activatedAt")),
            expired_at=parse_iso(data.get("expiredAt")),
            status_updated_at=parse_iso(data.get("statusUpdatedAt")),
        )
