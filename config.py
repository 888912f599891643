import logging
import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        csrf_secret: str,
        overview_workers: int,
        trend_lookback_months: int,
        log_level: str,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.csrf_secret = csrf_secret
        self.overview_workers = overview_workers
        self.trend_lookback_months = trend_lookback_months
        self.log_level = log_level


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("BUDGETLENS_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _positive_int(name: str, default: str) -> int:
    value = int(os.getenv(name, default))
    if value <= 0:
        raise ValueError(f"{name} must be a positive integer")
    return value


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "budgetlens.db"
    database_url = os.getenv("BUDGETLENS_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("BUDGETLENS_TIMEZONE", "Europe/Berlin")
    csrf_secret = os.getenv(
        "BUDGETLENS_CSRF_SECRET",
        "5d0f3a9c1e7b48e2a6c4f09b3d8e21a7c5f6b0e9d4a3c2b1f8e7d6c5b4a39281",
    )
    overview_workers = _positive_int("BUDGETLENS_OVERVIEW_WORKERS", "3")
    trend_lookback_months = _positive_int("BUDGETLENS_TREND_LOOKBACK_MONTHS", "12")
    log_level = os.getenv("BUDGETLENS_LOG_LEVEL", "INFO").upper()
    return Settings(
        database_url=database_url,
        timezone=timezone,
        csrf_secret=csrf_secret,
        overview_workers=overview_workers,
        trend_lookback_months=trend_lookback_months,
        log_level=log_level,
    )


def configure_logging() -> None:
    settings = get_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
