from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv


def _float_env(name: str, default: float) -> float:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _int_env(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    db_path: Path
    web_host: str
    web_port: int
    shopify_api_secret: str | None
    default_currency: str = "DZD"
    phone_country_code: str = "213"
    http_timeout_sec: float = 10.0
    pixel_max_attempts: int = 1
    pixel_retry_backoff_sec: float = 0.5
    log_level: str = "INFO"

    @staticmethod
    def load() -> "Settings":
        load_dotenv()

        db_path = Path(os.getenv("LEADFORM_DB_PATH", "./data/leadform.sqlite3"))
        web_host = os.getenv("LEADFORM_WEB_HOST", "127.0.0.1")
        web_port = _int_env("LEADFORM_WEB_PORT", 8020)
        secret = (os.getenv("SHOPIFY_API_SECRET") or "").strip() or None

        currency = (os.getenv("LEADFORM_DEFAULT_CURRENCY") or "DZD").strip().upper() or "DZD"
        country_code = (os.getenv("LEADFORM_PHONE_COUNTRY_CODE") or "213").strip().lstrip("+") or "213"

        return Settings(
            db_path=db_path,
            web_host=web_host,
            web_port=web_port,
            shopify_api_secret=secret,
            default_currency=currency,
            phone_country_code=country_code,
            http_timeout_sec=max(0.1, _float_env("LEADFORM_HTTP_TIMEOUT_SEC", 10.0)),
            pixel_max_attempts=max(1, _int_env("LEADFORM_PIXEL_MAX_ATTEMPTS", 1)),
            pixel_retry_backoff_sec=max(0.0, _float_env("LEADFORM_PIXEL_RETRY_BACKOFF_SEC", 0.5)),
            log_level=(os.getenv("LEADFORM_LOG_LEVEL") or "INFO").strip().upper() or "INFO",
        )


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
