"""Application configuration via environment variables."""

from pathlib import Path
from pydantic_settings import BaseSettings

PROJECT_ROOT = Path(__file__).resolve().parent.parent


class MissingCredentialsError(RuntimeError):
    """Mandatory exchange credentials are absent; the service cannot start."""


class Settings(BaseSettings):
    database_url: str = f"sqlite:///{PROJECT_ROOT / 'goalreact.db'}"
    log_level: str = "INFO"
    cors_origins: list[str] = ["http://localhost:5173"]
    admin_token: str = ""  # bearer token for start/stop; empty disables those endpoints

    # Exchange credentials
    betfair_app_key: str = ""
    betfair_username: str = ""
    betfair_password: str = ""
    betfair_pfx_path: str = ""
    betfair_pfx_base64: str = ""  # alternative to pfx_path for container deployments
    betfair_pfx_password: str = ""
    betfair_region: str = "GLOBAL"
    betfair_rpc_url: str = "https://api.betfair.com/exchange/betting/json-rpc/v1"

    # Session lifecycle
    http_timeout_seconds: float = 15.0
    keepalive_interval_minutes: int = 15
    login_backoff_base_seconds: int = 60
    login_backoff_max_seconds: int = 600
    login_ban_cooldown_minutes: int = 15

    # Scheduler
    scheduler_enabled: bool = True
    fixture_sync_hours: int = 24

    model_config = {"env_prefix": "GR_", "env_file": ".env"}

    def missing_credentials(self) -> list[str]:
        """Names of mandatory credential settings that are not set."""
        missing = [
            name
            for name in ("betfair_app_key", "betfair_username", "betfair_password", "betfair_pfx_password")
            if not getattr(self, name)
        ]
        if not (self.betfair_pfx_path or self.betfair_pfx_base64):
            missing.append("betfair_pfx_path")
        return missing

    def require_credentials(self):
        missing = self.missing_credentials()
        if missing:
            raise MissingCredentialsError(
                "Missing exchange credentials: " + ", ".join(f"GR_{m.upper()}" for m in missing)
            )


settings = Settings()
