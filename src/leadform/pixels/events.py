from __future__ import annotations

import re
from typing import Any, Mapping

from leadform.pixels.base import PIXEL_EVENTS

GA4_FALLBACK_EVENT = "leadform_event"
GA4_MAX_EVENT_NAME = 40

DEFAULT_EVENT_NAMES: dict[str, dict[str, str]] = {
    "meta": {
        "form_opened": "ViewContent",
        "role_selected": "InitiateCheckout",
        "request_submitted": "Lead",
        "request_confirmed": "Purchase",
    },
    "tiktok": {
        "form_opened": "ViewContent",
        "role_selected": "InitiateCheckout",
        "request_submitted": "SubmitForm",
        "request_confirmed": "CompletePayment",
    },
    # GA4 Measurement Protocol names are lowercase snake_case.
    "google": {
        "form_opened": "page_view",
        "role_selected": "begin_checkout",
        "request_submitted": "generate_lead",
        "request_confirmed": "purchase",
    },
}

_GA4_INVALID = re.compile(r"[^a-z0-9_]+")


def map_event_name(platform: str, event: str, overrides: Mapping[str, str] | None = None) -> str:
    """Per-shop override, then the platform default, then the raw event name."""
    if overrides:
        custom = overrides.get(event)
        if isinstance(custom, str) and custom.strip():
            return custom.strip()
    default = DEFAULT_EVENT_NAMES.get(platform, {}).get(event)
    if default:
        return default
    return event


def sanitize_ga4_event_name(name: str | None) -> str:
    s = str(name or "").strip().lower()
    cleaned = _GA4_INVALID.sub("_", s).strip("_")[:GA4_MAX_EVENT_NAME]
    return cleaned or GA4_FALLBACK_EVENT


def validate_event_toggles(raw: Mapping[str, Any] | None) -> dict[str, bool]:
    """Every known event gets an explicit flag; unknown keys are dropped."""
    raw = raw or {}
    return {ev: raw.get(ev) is True for ev in PIXEL_EVENTS}


def validate_event_map(raw: Mapping[str, Any] | None) -> dict[str, str]:
    out: dict[str, str] = {}
    for key, value in (raw or {}).items():
        if key not in PIXEL_EVENTS:
            raise ValueError(f"unknown event in name map: {key}")
        if value is None:
            continue
        if not isinstance(value, str):
            raise ValueError(f"event name override for {key} must be a string")
        v = value.strip()
        if v:
            out[key] = v
    return out
