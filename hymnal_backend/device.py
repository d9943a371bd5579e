# hymnal_backend/device.py
# Device fingerprinting: device class tag and stable device identifier

from __future__ import annotations

import hashlib
import re
import secrets
from dataclasses import dataclass
from typing import Optional

from hymnal_backend.models import DeviceClass, utc_now, validate_key

_TABLET_PATTERN = re.compile(r"ipad|tablet|kindle|silk|playbook|nexus (7|9|10)", re.IGNORECASE)
_PHONE_PATTERN = re.compile(r"iphone|ipod|mobile|windows phone|blackberry|opera mini", re.IGNORECASE)
_ANDROID_PATTERN = re.compile(r"android", re.IGNORECASE)


@dataclass(frozen=True)
class DeviceFingerprint:
    device_id: str
    device_class: DeviceClass
    device_label: str = ""


def classify_user_agent(user_agent: Optional[str]) -> DeviceClass:
    """
    Derive a coarse device class from a User-Agent string.

    Android tablets omit "Mobile" from their UA; Android phones include it.
    Anything unrecognized is treated as a web browser.
    """
    ua = user_agent or ""
    if _TABLET_PATTERN.search(ua):
        return DeviceClass.TABLET
    if _ANDROID_PATTERN.search(ua):
        return DeviceClass.PHONE if "mobile" in ua.lower() else DeviceClass.TABLET
    if _PHONE_PATTERN.search(ua):
        return DeviceClass.PHONE
    return DeviceClass.WEB


def describe_user_agent(user_agent: Optional[str]) -> str:
    ua = user_agent or ""
    for needle, label in (
        ("iPad", "iPad"),
        ("iPhone", "iPhone"),
        ("Android", "Android Device"),
        ("Windows", "Windows Browser"),
        ("Macintosh", "Mac Browser"),
        ("Linux", "Linux Browser"),
    ):
        if needle in ua:
            return label
    return "Unknown Device"


def generate_device_id(seed: Optional[str] = None) -> str:
    """Return a new ``device_<16 hex>`` identifier."""
    material = f"{utc_now().isoformat()}-{seed or ''}-{secrets.token_hex(8)}"
    return f"device_{hashlib.sha256(material.encode()).hexdigest()[:16]}"


def resolve_fingerprint(
    user_agent: Optional[str] = None,
    device_id: Optional[str] = None,
    device_class: Optional[str] = None,
    device_label: Optional[str] = None,
) -> DeviceFingerprint:
    """
    Resolve the fingerprint for a client.

    Explicit hints win over User-Agent detection. A missing device_id gets a
    freshly generated one, which the client is expected to keep.
    """
    resolved_class = DeviceClass.parse(device_class) if device_class else classify_user_agent(user_agent)
    resolved_id = validate_key(device_id, "device_id") if device_id else generate_device_id(user_agent)
    return DeviceFingerprint(
        device_id=resolved_id,
        device_class=resolved_class,
        device_label=device_label or describe_user_agent(user_agent),
    )
