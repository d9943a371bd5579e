"""
hymnal_backend/errors.py

Error taxonomy for the entitlement policy and its store boundary.

Every expected failure carries a stable ``kind`` so the admin console can map
it to a distinct notification, and an HTTP status used by the API layer.

- NotEligible: self-service trial already consumed
- DeviceLimitExceeded: device-class session limit would be exceeded
- AlreadyResolved: trial request is no longer in "requested"
- StoreUnavailable: entitlement store timed out or failed in transport
- Unauthorized: caller identity lacks permission for the mutation
"""

from __future__ import annotations


class PolicyError(Exception):
    """Base class for all entitlement policy errors."""

    kind = "PolicyError"
    status_code = 400

    def __init__(self, message: str = ""):
        super().__init__(message or self.kind)
        self.message = message or self.kind

    def to_dict(self) -> dict:
        return {"error": self.kind, "detail": self.message}


class NotEligible(PolicyError):
    kind = "NotEligible"
    status_code = 409


class DeviceLimitExceeded(PolicyError):
    kind = "DeviceLimitExceeded"
    status_code = 409

    def __init__(self, device_class: str, current: int, limit: int):
        super().__init__(
            f"Device limit exceeded for {device_class}: {current}/{limit}"
        )
        self.device_class = device_class
        self.current = current
        self.limit = limit


class AlreadyResolved(PolicyError):
    kind = "AlreadyResolved"
    status_code = 409

    def __init__(self, request_id: str, status: str):
        super().__init__(f"Trial request {request_id} is already {status}")
        self.request_id = request_id
        self.status = status


class StoreUnavailable(PolicyError):
    kind = "StoreUnavailable"
    status_code = 503


class Unauthorized(PolicyError):
    kind = "Unauthorized"
    status_code = 403
