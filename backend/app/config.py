"""Configuration from environment variables (.env supported)."""
import os
from typing import Optional

from dotenv import load_dotenv

load_dotenv()

# Database
SUPABASE_URL: str = os.getenv("SUPABASE_URL", "")
SUPABASE_SERVICE_KEY: str = os.getenv("SUPABASE_SERVICE_KEY", "")

# Auth
JWT_SECRET: str = os.getenv("JWT_SECRET", "dev-secret-change-me")
JWT_ALGORITHM = "HS256"
JWT_EXPIRATION_DAYS: int = int(os.getenv("JWT_EXPIRATION_DAYS", "7"))
PASSWORD_RESET_TTL_MINUTES: int = int(os.getenv("PASSWORD_RESET_TTL_MINUTES", "60"))

# CORS
DEFAULT_ALLOWED_ORIGINS = [
    "http://localhost:5173",
    "http://127.0.0.1:5173",
    "http://localhost:4173",
    "http://127.0.0.1:4173",
    "http://localhost:3000",
]
ALLOWED_ORIGINS: list[str] = list(dict.fromkeys(
    DEFAULT_ALLOWED_ORIGINS
    + [o.strip() for o in os.getenv("CORS_ALLOWED_ORIGINS", "").split(",") if o.strip()]
))

# Push
VAPID_PUBLIC_KEY: str = os.getenv("VAPID_PUBLIC_KEY", "").strip()
VAPID_PRIVATE_KEY: str = os.getenv("VAPID_PRIVATE_KEY", "").strip()
VAPID_CONTACT_EMAIL: str = os.getenv("VAPID_CONTACT_EMAIL", "mailto:admin@example.com").strip()
PUSH_DISPATCH_URL: str = os.getenv("PUSH_DISPATCH_URL", "")

# Email
RESEND_API_KEY: str = os.getenv("RESEND_API_KEY", "")
FROM_EMAIL: str = os.getenv("FROM_EMAIL", "onboarding@resend.dev")
FRONTEND_URL: str = os.getenv("FRONTEND_URL", "http://localhost:5173")

# Logging
LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")


def vapid_key_warnings(public_key: Optional[str] = None, private_key: Optional[str] = None) -> list[str]:
    """Sanity checks on the VAPID key pair. Empty list means it looks usable."""
    public_key = VAPID_PUBLIC_KEY if public_key is None else public_key
    private_key = VAPID_PRIVATE_KEY if private_key is None else private_key
    if not public_key or not private_key:
        return ["VAPID keys not configured: push notifications are disabled"]
    warnings = []
    # base64url P-256 keys: ~87 chars public, ~43 chars private
    if not 80 <= len(public_key) <= 100:
        warnings.append(f"VAPID public key length looks wrong ({len(public_key)} chars, expected ~87)")
    if not 40 <= len(private_key) <= 50:
        warnings.append(f"VAPID private key length looks wrong ({len(private_key)} chars, expected ~43)")
    return warnings


def push_enabled() -> bool:
    return bool(VAPID_PUBLIC_KEY and VAPID_PRIVATE_KEY and PUSH_DISPATCH_URL)
