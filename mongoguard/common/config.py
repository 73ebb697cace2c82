"""
Configuration loader for the resilient MongoDB access layer.

Loads all settings from environment variables (.env file).
Validates required settings and provides type-safe access.
"""

import os
from typing import Optional
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

CONNECTION_ENV_PREFIX = "MONGOGUARD_CONNECTION_"


def _optional_float(name: str) -> Optional[float]:
    raw = os.getenv(name, "")
    return float(raw) if raw else None


class Config:
    """
    Centralized configuration for connection, retry and repository settings.

    All values loaded from environment variables - NO SECRETS IN CODE.
    """

    # ===== MongoDB =====
    MONGODB_URI: str = os.getenv("MONGODB_URI", "")
    MONGODB_DATABASE: str = os.getenv("MONGODB_DATABASE", "")

    # Fernet key used to decrypt passwords embedded in connection strings
    SECRET_KEY: str = os.getenv("MONGOGUARD_SECRET_KEY", "")

    # ===== Retry / Backoff =====
    # .5, 1, 2, 4, 8, 16 then give up once the next wait reaches the cap
    RETRY_INITIAL_BACKOFF_SECONDS: float = float(os.getenv("MONGOGUARD_RETRY_INITIAL_BACKOFF", "0.5"))
    RETRY_MAX_BACKOFF_SECONDS: float = float(os.getenv("MONGOGUARD_RETRY_MAX_BACKOFF", "32"))

    # Per-call socket timeout, independent of the retry backoff cap
    SOCKET_TIMEOUT_SECONDS: Optional[float] = _optional_float("MONGOGUARD_SOCKET_TIMEOUT")

    # ===== Repositories =====
    DELETE_BATCH_SIZE: int = int(os.getenv("MONGOGUARD_DELETE_BATCH_SIZE", "100"))
    AUTO_COMMIT: bool = os.getenv("MONGOGUARD_AUTO_COMMIT", "true").lower() == "true"
    ENABLE_CHANGE_TRACKING: bool = os.getenv("MONGOGUARD_ENABLE_CHANGE_TRACKING", "true").lower() == "true"

    @classmethod
    def named_connection_string(cls, name: str) -> Optional[str]:
        """
        Look up a named connection string.

        Named strings live in MONGOGUARD_CONNECTION_<NAME> and are read at
        call time so that tests and long-running processes see updates.
        """
        key = CONNECTION_ENV_PREFIX + name.upper().replace("-", "_").replace(".", "_")
        value = os.getenv(key)
        return value or None

    @classmethod
    def validate(cls) -> None:
        """
        Validate that all required configuration is present.
        Raises ValueError if critical settings are missing.
        """
        required_settings = {
            "MONGODB_URI": cls.MONGODB_URI,
        }

        missing = [name for name, value in required_settings.items() if not value]

        if missing:
            raise ValueError(
                f"Missing required configuration: {', '.join(missing)}. "
                f"Please check your .env file."
            )

        if cls.RETRY_INITIAL_BACKOFF_SECONDS <= 0:
            raise ValueError("MONGOGUARD_RETRY_INITIAL_BACKOFF must be positive")

        if cls.RETRY_MAX_BACKOFF_SECONDS < cls.RETRY_INITIAL_BACKOFF_SECONDS:
            raise ValueError(
                "MONGOGUARD_RETRY_MAX_BACKOFF must not be smaller than "
                "MONGOGUARD_RETRY_INITIAL_BACKOFF"
            )

        if cls.DELETE_BATCH_SIZE <= 0:
            raise ValueError("MONGOGUARD_DELETE_BATCH_SIZE must be positive")

    @classmethod
    def summary(cls) -> str:
        """Return a summary of configuration (masks secrets)."""
        return f"""
Configuration Summary:
  MongoDB: {'✓ Configured' if cls.MONGODB_URI else '✗ Missing'}
  Database: {cls.MONGODB_DATABASE or '(from URI)'}
  Secret Key: {'✓ Configured' if cls.SECRET_KEY else '✗ Not set (passwords used as-is)'}
  Retry Backoff: {cls.RETRY_INITIAL_BACKOFF_SECONDS}s -> {cls.RETRY_MAX_BACKOFF_SECONDS}s
  Socket Timeout: {cls.SOCKET_TIMEOUT_SECONDS if cls.SOCKET_TIMEOUT_SECONDS is not None else 'driver default'}
  Delete Batch Size: {cls.DELETE_BATCH_SIZE}
  Auto Commit: {cls.AUTO_COMMIT}
  Change Tracking: {'Enabled' if cls.ENABLE_CHANGE_TRACKING else 'Disabled'}
        """.strip()
