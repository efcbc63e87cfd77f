"""
Application Configuration

Loads environment variables and provides typed settings
for the application. Uses python-dotenv to load from .env file.
"""

import os
from pathlib import Path
from dotenv import load_dotenv

# Load .env file from the project root
_env_path = Path(__file__).resolve().parent.parent.parent / ".env"
load_dotenv(dotenv_path=_env_path)

# --- App Settings ---
API_V1_PREFIX = "/api/v1"
PROJECT_NAME = "Pushfan"

# --- Supabase ---
SUPABASE_URL: str = os.getenv("SUPABASE_URL", "")
SUPABASE_SERVICE_ROLE_KEY: str = os.getenv("SUPABASE_SERVICE_ROLE_KEY", "")

# --- Admin ---
ADMIN_API_KEY: str = os.getenv("ADMIN_API_KEY", "")

# --- Push delivery policy ---
PUSH_PROVIDER: str = os.getenv("PUSH_PROVIDER", "fcm").lower()
PUSH_FAILURE_THRESHOLD: int = int(os.getenv("PUSH_FAILURE_THRESHOLD", "3"))
PUSH_GATEWAY_TIMEOUT_SECONDS: float = float(os.getenv("PUSH_GATEWAY_TIMEOUT_SECONDS", "10"))
PUSH_BATCH_SIZE: int = int(os.getenv("PUSH_BATCH_SIZE", "500"))
PUSH_MAX_CONCURRENCY: int = int(os.getenv("PUSH_MAX_CONCURRENCY", "10"))
PUSH_ANDROID_CHANNEL_ID: str = os.getenv("PUSH_ANDROID_CHANNEL_ID", "default_channel")

# --- Firebase Cloud Messaging ---
# Either the raw service account JSON (hosted deployments) or a path to it
FIREBASE_SERVICE_ACCOUNT: str = os.getenv("FIREBASE_SERVICE_ACCOUNT", "")
FIREBASE_SERVICE_ACCOUNT_PATH: str = os.getenv("FIREBASE_SERVICE_ACCOUNT_PATH", "")

# --- Apple Push Notification service ---
APNS_KEY_ID: str = os.getenv("APNS_KEY_ID", "")
APNS_TEAM_ID: str = os.getenv("APNS_TEAM_ID", "")
APNS_BUNDLE_ID: str = os.getenv("APNS_BUNDLE_ID", "")
APNS_AUTH_KEY_PATH: str = os.getenv("APNS_AUTH_KEY_PATH", "")
APNS_USE_SANDBOX: bool = os.getenv("APNS_USE_SANDBOX", "false").lower() in ("1", "true", "yes")

# --- QStash (scheduled sends) ---
UPSTASH_QSTASH_URL: str = os.getenv("UPSTASH_QSTASH_URL", "https://qstash.upstash.io")
UPSTASH_QSTASH_TOKEN: str = os.getenv("UPSTASH_QSTASH_TOKEN", "")
QSTASH_CURRENT_SIGNING_KEY: str = os.getenv("QSTASH_CURRENT_SIGNING_KEY", "")
QSTASH_NEXT_SIGNING_KEY: str = os.getenv("QSTASH_NEXT_SIGNING_KEY", "")
WEBHOOK_BASE_URL: str = os.getenv("WEBHOOK_BASE_URL", "")


def validate_supabase_config() -> bool:
    """Check that all required Supabase credentials are present and non-empty."""
    missing = []
    if not SUPABASE_URL:
        missing.append("SUPABASE_URL")
    if not SUPABASE_SERVICE_ROLE_KEY:
        missing.append("SUPABASE_SERVICE_ROLE_KEY")
    if missing:
        raise EnvironmentError(
            f"Missing required Supabase environment variables: {', '.join(missing)}. "
            f"Please fill in your .env file at: {_env_path}"
        )
    return True


def is_fcm_configured() -> bool:
    """True when a Firebase service account is available inline or on disk."""
    return bool(FIREBASE_SERVICE_ACCOUNT or FIREBASE_SERVICE_ACCOUNT_PATH)


def is_apns_configured() -> bool:
    """
    Check if APNs credentials are available without raising exceptions.

    All four values are needed to sign provider tokens and address
    the app's topic.
    """
    return bool(APNS_KEY_ID and APNS_TEAM_ID and APNS_BUNDLE_ID and APNS_AUTH_KEY_PATH)


def is_qstash_configured() -> bool:
    """
    Check if QStash publishing and webhook verification are available.

    Scheduled sends need the publish token, a signing key to verify
    the callback, and the public base URL QStash should call.
    """
    return bool(UPSTASH_QSTASH_TOKEN and QSTASH_CURRENT_SIGNING_KEY and WEBHOOK_BASE_URL)
