from __future__ import annotations

import hashlib
import json
import secrets
from datetime import datetime, timezone
from typing import Any


def now_utc() -> datetime:
    return datetime.now(tz=timezone.utc)


def now_utc_iso() -> str:
    # Microseconds kept so log rows created in the same second still sort.
    return now_utc().isoformat()


def new_id(prefix: str) -> str:
    return f"{prefix}_{secrets.token_urlsafe(10)}"


def sha256_hex(s: str) -> str:
    return hashlib.sha256(s.encode("utf-8", errors="strict")).hexdigest()


def safe_json(text: str) -> Any:
    """Parse a response body as JSON, fall back to the raw text."""
    try:
        return json.loads(text)
    except (TypeError, ValueError):
        return text


def to_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "y", "on"}
    return False


def compact(d: dict[str, Any]) -> dict[str, Any]:
    """Drop None values so optional wire fields are omitted, not sent as null."""
    return {k: v for k, v in d.items() if v is not None}
