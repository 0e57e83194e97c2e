from pydantic_settings import BaseSettings
from typing import Optional, List
from pydantic import Field

class Settings(BaseSettings):
    SECRET_KEY: str = Field("change-me-in-production")
    ALGORITHM: str = Field("HS256")

    DATABASE_URL: str = Field("sqlite+aiosqlite:///./chainattend.db")
    SQL_ECHO: bool = Field(False)

    # Token lifetimes (seconds)
    CHAIN_TOKEN_TTL_SECONDS: int = Field(20)
    LATE_ROTATION_SECONDS: int = Field(60)
    EARLY_LEAVE_ROTATION_SECONDS: int = Field(60)
    CHALLENGE_TTL_SECONDS: int = Field(30)

    # Rotation scheduler
    ROTATION_ENABLED: bool = Field(True)
    ROTATION_INTERVAL_SECONDS: float = Field(10.0)
    ROTATION_SAFETY_MARGIN_SECONDS: int = Field(5)
    STALL_THRESHOLD_SECONDS: int = Field(90)

    DEFAULT_LATE_CUTOFF_MINUTES: int = Field(15)
    DEFAULT_EXIT_WINDOW_MINUTES: int = Field(10)

    # Rate limiting: max scans per window, per device and per IP
    RATE_LIMIT_DEVICE: int = Field(10)
    RATE_LIMIT_IP: int = Field(50)
    RATE_LIMIT_WINDOW_SECONDS: int = Field(60)
    # limits storage: memory:// per process, redis://host:6379 shared across instances
    RATE_LIMIT_STORAGE_URI: str = Field("memory://")

    # Wi-Fi allowlist: comma-separated BSSIDs. If empty or missing → no Wi-Fi check.
    WIFI_BSSID_ALLOWLIST: Optional[str] = None

    # Push notifications. If missing → notifications are only logged.
    NOTIFY_URL: Optional[str] = None
    NOTIFY_TIMEOUT_SECONDS: float = Field(5.0)

    model_config = {
        "env_file": ".env",
        "extra": "allow",
    }

    @property
    def effective_database_url(self) -> str:
        url = self.DATABASE_URL
        if url.startswith("postgresql://") and "+asyncpg" not in url:
            url = url.replace("postgresql://", "postgresql+asyncpg://", 1)
        return url

    @property
    def wifi_allowlist(self) -> List[str]:
        """
        Returns:
          - [] → no Wi-Fi restriction
          - list → BSSIDs (lowercased) a scan must match
        """
        if not self.WIFI_BSSID_ALLOWLIST:
            return []
        return [b.strip().lower() for b in self.WIFI_BSSID_ALLOWLIST.split(",") if b.strip()]

settings = Settings()
