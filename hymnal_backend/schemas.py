"""
hymnal_backend/schemas.py

Pydantic schemas for the entitlement API.
Request bodies never carry user ids for the caller; identity comes from the token.
"""

from __future__ import annotations

from datetime import timedelta
from typing import Annotated, Any, Dict, List, Optional

from pydantic import AfterValidator, BaseModel, Field, field_validator

from hymnal_backend import config
from hymnal_backend.models import UserRole, validate_key


def _check_device_id(v: Optional[str]) -> Optional[str]:
    if v is None:
        return v
    v = v.strip()
    if not v:
        return None
    if len(v) > 128:
        raise ValueError("device_id is too long")
    return validate_key(v, "device_id")


DeviceId = Annotated[Optional[str], AfterValidator(_check_device_id)]


# ========================================================================
# PREMIUM / TRIAL SCHEMAS
# ========================================================================

class GrantPremiumRequest(BaseModel):
    """Premium grant from the admin console.

    Exactly one window applies: permanent wins, then hours, then days.
    With nothing set the extended window (EXTENDED_PREMIUM_DAYS) is used.
    """
    hours: Optional[int] = Field(None, ge=1, le=24 * 366, description="Grant window in hours")
    days: Optional[int] = Field(None, ge=1, le=3660, description="Grant window in days")
    permanent: bool = Field(False, description="Open-ended grant with no expiry")
    reason: str = Field("Admin grant", min_length=1, max_length=200, description="Audit reason")

    @field_validator("reason", mode="before")
    @classmethod
    def trim_reason(cls, v):
        if isinstance(v, str):
            return v.strip()
        return v

    def duration(self) -> Optional[timedelta]:
        if self.permanent:
            return None
        if self.hours:
            return timedelta(hours=self.hours)
        if self.days:
            return timedelta(days=self.days)
        return timedelta(days=config.EXTENDED_PREMIUM_DAYS)


class GrantTrialRequest(BaseModel):
    hours: int = Field(config.ADMIN_TRIAL_HOURS, ge=1, le=24 * 90, description="Trial length in hours")
    consume_eligibility: bool = Field(False, description="Also burn the user's self-service weekly trial")

    def duration(self) -> timedelta:
        return timedelta(hours=self.hours)


class ApproveTrialRequest(BaseModel):
    """Optional override of the premium window granted on approval."""
    hours: Optional[int] = Field(None, ge=1, le=24 * 366)
    days: Optional[int] = Field(None, ge=1, le=3660)

    def duration(self) -> Optional[timedelta]:
        if self.hours:
            return timedelta(hours=self.hours)
        if self.days:
            return timedelta(days=self.days)
        return None


class StartTrialRequest(BaseModel):
    device_id: DeviceId = None


class SetRoleRequest(BaseModel):
    role: UserRole

    @field_validator("role", mode="before")
    @classmethod
    def parse_role(cls, v):
        if isinstance(v, str):
            normalized = v.strip().lower()
            if normalized not in {r.value for r in UserRole}:
                raise ValueError(f"unknown role: {v}")
            return normalized
        return v


# ========================================================================
# DEVICE SESSION SCHEMAS
# ========================================================================

class RegisterSessionRequest(BaseModel):
    """Device registration. Missing hints are derived from the User-Agent."""
    device_id: DeviceId = Field(None, description="Client-persisted device id")
    device_class: Optional[str] = Field(None, description="phone | tablet | web")
    device_label: Optional[str] = Field(None, max_length=120)
    evict_oldest: bool = Field(False, description="Replace the least recently used session of the class")

    @field_validator("device_class")
    @classmethod
    def validate_device_class(cls, v):
        if v is None:
            return v
        normalized = v.strip().lower()
        if normalized not in ("phone", "tablet", "web"):
            raise ValueError("device_class must be phone, tablet or web")
        return normalized


# ========================================================================
# RESPONSES
# ========================================================================

class TrialRequestListResponse(BaseModel):
    items: List[Dict[str, Any]] = Field(default_factory=list, description="Trial request records, newest first")
    total: int = Field(0)
    counts: Dict[str, int] = Field(default_factory=dict, description="Count per status")


class SessionRegisteredResponse(BaseModel):
    device_id: str
    device_class: str
    device_label: str = ""
    devices: Dict[str, Any] = Field(default_factory=dict)
