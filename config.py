import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        api_url: str,
        database_url: str,
        timezone: str,
        csrf_secret: str,
        http_timeout_secs: float,
    ) -> None:
        self.api_url = api_url
        self.database_url = database_url
        self.timezone = timezone
        self.csrf_secret = csrf_secret
        self.http_timeout_secs = http_timeout_secs


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("FINANZAS_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "session.db"
    api_url = os.getenv("FINANZAS_API_URL", "https://finanzasapi-c7or.onrender.com")
    database_url = os.getenv("FINANZAS_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("FINANZAS_TIMEZONE", "Europe/Madrid")
    csrf_secret = os.getenv(
        "FINANZAS_CSRF_SECRET",
        "5d0c8f1e2a7b43f9a61e0cb8d4f27a93e1b6c05d8a2f4e7b9c3d1a0f6e8b2c47",
    )
    http_timeout_secs = float(os.getenv("FINANZAS_HTTP_TIMEOUT_SECS", "15"))
    return Settings(
        api_url=api_url.rstrip("/"),
        database_url=database_url,
        timezone=timezone,
        csrf_secret=csrf_secret,
        http_timeout_secs=http_timeout_secs,
    )
