"""Application configuration loaded from environment variables."""

from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """All configuration is loaded from environment variables (or .env file)."""

    # --- App ---
    app_name: str = "Athlete Sync"
    app_version: str = "0.1.0"
    debug: bool = False
    log_level: str = "INFO"
    environment: str = "development"  # development | staging | production

    # Origin that OAuth callback messages must carry to be trusted.
    app_origin: str = "http://localhost:8000"

    # --- Persistence ---
    database_url: str | None = None  # None = in-memory document store
    storage_path: str = ".athlete_sync/storage.json"

    # --- Cloud fitness provider (Google Fit) ---
    google_fit_client_id: str = ""
    google_fit_client_secret: str = ""

    # --- Activity service provider (Strava) ---
    strava_client_id: str = ""
    strava_client_secret: str = ""

    # --- Bluetooth ---
    # Name reported by the demo pairer; unset means pairing always fails.
    bluetooth_demo_device: str | None = None

    # --- Plan generation ---
    gemini_api_key: str = ""
    gemini_model: str = "gemini-2.0-flash"

    # --- Sync ---
    # Forces one cadence for every provider; unset uses sync_config.yaml.
    poll_interval_seconds: float | None = None
    oauth_timeout_seconds: float = 300.0
    skip_overlapping_ticks: bool = False

    # --- CORS ---
    cors_origins: list[str] = ["http://localhost:3000"]

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    def redirect_uri(self, provider: str) -> str:
        """Return the OAuth redirect URI registered for a provider."""
        return f"{self.app_origin.rstrip('/')}/api/v1/oauth/{provider}/callback"


@lru_cache
def get_settings() -> Settings:
    return Settings()
