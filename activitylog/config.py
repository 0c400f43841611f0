"""Global configuration for the activity log.

Runtime settings (database, signing keys, limits) come from the
environment or a ``.env`` file; the constants below are fixed by the
chain format and must not change once entries have been written.
"""

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict

# ---------- Chain format ----------
# previous_hash of the very first entry of the chain.
GENESIS_HASH = "genesis".ljust(64, "0")

# actor_id recorded for actions performed by the system itself
SYSTEM_ACTOR_ID = "system"

# ---------- Permissions (granted by the upstream auth layer) ----------
PERMISSION_VIEW = "activity:view"
PERMISSION_VERIFY = "activity:verify"

# ---------- Defaults ----------
DEFAULT_QUICK_LIMIT = 100
DEFAULT_BATCH_SIZE = 1000
DEFAULT_APPEND_RETRIES = 5
DEFAULT_RETENTION_DAYS = 90
DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 200


class Settings(BaseSettings):
    """Application settings from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # Database
    DATABASE_URL: str = "sqlite:///./activitylog.db"

    # Signing keys: one primary, any number of legacy keys (comma-separated)
    ACTIVITY_SIGNING_KEY: str = ""
    ACTIVITY_SIGNING_KEYS_LEGACY: str = ""

    # Verification
    VERIFY_QUICK_LIMIT: int = DEFAULT_QUICK_LIMIT
    VERIFY_BATCH_SIZE: int = DEFAULT_BATCH_SIZE

    # Append
    APPEND_MAX_RETRIES: int = DEFAULT_APPEND_RETRIES

    # Retention / cron
    ACTIVITY_RETENTION_DAYS: int = DEFAULT_RETENTION_DAYS
    CRON_SECRET: str = ""

    # Login failure logging throttle (per IP)
    LOGIN_FAILURE_MAX_PER_MINUTE: int = 10


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
