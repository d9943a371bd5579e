# hymnal_backend/config.py
# Environment-aware configuration for the hymnal entitlements backend

import os
from typing import FrozenSet, Literal

# Environment detection
ENV: Literal["dev", "staging", "prod"] = os.environ.get("ENV", "dev")  # type: ignore
IS_DEV = (ENV == "dev")
IS_STAGING = (ENV == "staging")
IS_PROD = (ENV == "prod")

# JWT configuration (identity provider boundary)
SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me-before-deploying")
ALGORITHM = "HS256"
ACCESS_TOKEN_MINUTES = int(os.environ.get("ACCESS_TOKEN_MINUTES", "60"))

# CORS origins for the admin console (comma-separated; ignored outside prod)
CORS_ORIGINS = [o.strip() for o in os.environ.get("CORS_ORIGINS", "").split(",") if o.strip()]

# Entitlement store (Firebase Realtime Database REST endpoint)
# Empty URL in dev selects the in-memory store
FIREBASE_DATABASE_URL = os.environ.get("FIREBASE_DATABASE_URL", "").strip().rstrip("/")
FIREBASE_AUTH_TOKEN = os.environ.get("FIREBASE_AUTH_TOKEN", "").strip()

# Every store call is bounded by this timeout (seconds)
STORE_TIMEOUT_SECONDS = float(os.environ.get("STORE_TIMEOUT_SECONDS", "5"))
STORE_TRANSACTION_RETRIES = int(os.environ.get("STORE_TRANSACTION_RETRIES", "5"))

# Trial and premium windows
WEEKLY_TRIAL_DAYS = int(os.environ.get("WEEKLY_TRIAL_DAYS", "7"))
ADMIN_TRIAL_HOURS = int(os.environ.get("ADMIN_TRIAL_HOURS", "24"))
EXTENDED_PREMIUM_DAYS = int(os.environ.get("EXTENDED_PREMIUM_DAYS", "365"))
TRIAL_EXPIRING_SOON_HOURS = int(os.environ.get("TRIAL_EXPIRING_SOON_HOURS", "24"))

# Device session limits per device class
MAX_PHONE_SESSIONS = int(os.environ.get("MAX_PHONE_SESSIONS", "1"))
MAX_TABLET_SESSIONS = int(os.environ.get("MAX_TABLET_SESSIONS", "1"))
MAX_WEB_SESSIONS = int(os.environ.get("MAX_WEB_SESSIONS", "1"))

# Sessions idle past their lifetime no longer hold a device slot
SESSION_LIFETIME_DAYS = int(os.environ.get("SESSION_LIFETIME_DAYS", "90"))


def parse_email_list(raw: str) -> FrozenSet[str]:
    """Split a comma-separated email list into a normalized set."""
    return frozenset(
        part.strip().lower()
        for part in (raw or "").split(",")
        if part.strip()
    )


# Privileged identities (resolved once into an AdminPolicy at startup)
ADMIN_EMAILS = parse_email_list(os.environ.get("ADMIN_EMAILS", ""))
SUPER_ADMIN_EMAILS = parse_email_list(os.environ.get("SUPER_ADMIN_EMAILS", ""))

if IS_DEV:
    print(f"[CONFIG] Environment: {ENV}")
    print(f"[CONFIG] Store: {'Firebase REST' if FIREBASE_DATABASE_URL else 'in-memory (local dev)'}")
    print(f"[CONFIG] Store timeout: {STORE_TIMEOUT_SECONDS}s, retries: {STORE_TRANSACTION_RETRIES}")
    print(f"[CONFIG] Device limits: phone={MAX_PHONE_SESSIONS}, "
          f"tablet={MAX_TABLET_SESSIONS}, web={MAX_WEB_SESSIONS}, "
          f"session lifetime={SESSION_LIFETIME_DAYS}d")
    print(f"[CONFIG] Admins: {len(ADMIN_EMAILS)}, super admins: {len(SUPER_ADMIN_EMAILS)}")
