from __future__ import annotations

import json
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Protocol

PLATFORMS = ("meta", "tiktok", "google")

# Older rows and forms used the brand name for Meta.
PLATFORM_ALIASES = {"facebook": "meta"}

PIXEL_EVENTS = (
    "form_opened",
    "role_selected",
    "request_submitted",
    "request_confirmed",
)

Decryptor = Callable[[str], str]


def normalize_platform(raw: Any) -> str:
    p = str(raw or "").strip().lower()
    return PLATFORM_ALIASES.get(p, p)


def _parse_datetime(raw: Any) -> datetime | None:
    if raw is None or raw == "":
        return None
    if isinstance(raw, datetime):
        return raw if raw.tzinfo else raw.replace(tzinfo=timezone.utc)
    if isinstance(raw, (int, float)):
        # Storefront scripts send Date.now() (ms).
        try:
            ts = float(raw)
            if ts > 1e11:
                ts = ts / 1000.0
            return datetime.fromtimestamp(ts, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    try:
        dt = datetime.fromisoformat(str(raw).strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def _str_or_none(raw: Any) -> str | None:
    if raw is None:
        return None
    s = str(raw).strip()
    return s or None


def _to_float(raw: Any) -> float | None:
    if raw is None or raw == "":
        return None
    try:
        value = float(raw)
    except (TypeError, ValueError, OverflowError):
        return None
    return value if math.isfinite(value) else None


def _to_qty(raw: Any) -> int:
    try:
        return max(1, int(float(raw)))
    except (TypeError, ValueError, OverflowError):
        return 1


@dataclass(frozen=True)
class LineItem:
    product_id: str
    qty: int = 1


@dataclass(frozen=True)
class RequestSnapshot:
    """Read-only view of a submitted lead request, as the pixel senders need it."""

    id: str | None = None
    email: str | None = None
    phone: str | None = None
    ip: str | None = None
    user_agent: str | None = None
    page_url: str | None = None
    referrer: str | None = None
    product_id: str | None = None
    qty: int | None = None
    items: tuple[LineItem, ...] = ()
    value: float | None = None
    currency: str | None = None
    created_at: datetime | None = None

    def line_items(self) -> list[LineItem]:
        if self.items:
            return list(self.items)
        if self.product_id:
            return [LineItem(product_id=self.product_id, qty=self.qty or 1)]
        return []

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "RequestSnapshot":
        d = data or {}

        def pick(*keys: str) -> Any:
            for k in keys:
                if k in d and d[k] is not None:
                    return d[k]
            return None

        items: list[LineItem] = []
        raw_items = d.get("items")
        if isinstance(raw_items, list):
            for it in raw_items:
                if not isinstance(it, dict):
                    continue
                pid = _str_or_none(it.get("productId", it.get("product_id")))
                if not pid:
                    continue
                items.append(LineItem(product_id=pid, qty=_to_qty(it.get("qty", it.get("quantity", 1)))))

        qty_raw = pick("qty", "quantity")
        currency = _str_or_none(pick("currency"))
        return cls(
            id=_str_or_none(pick("id", "requestId", "request_id")),
            email=_str_or_none(pick("email")),
            phone=_str_or_none(pick("phone")),
            ip=_str_or_none(pick("ip")),
            user_agent=_str_or_none(pick("userAgent", "user_agent")),
            page_url=_str_or_none(pick("pageUrl", "page_url")),
            referrer=_str_or_none(pick("referrer")),
            product_id=_str_or_none(pick("productId", "product_id")),
            qty=_to_qty(qty_raw) if qty_raw is not None else None,
            items=tuple(items),
            value=_to_float(pick("value")),
            currency=currency.upper() if currency else None,
            created_at=_parse_datetime(pick("createdAt", "created_at")),
        )


@dataclass(frozen=True)
class PixelConfig:
    shop_id: str
    platform: str
    pixel_id: str
    enabled: bool
    api_enabled: bool
    access_token_enc: str | None = None
    test_code: str | None = None
    events: dict[str, bool] = field(default_factory=dict)
    event_map: dict[str, str] = field(default_factory=dict)
    last_fired_at: str | None = None

    def is_event_enabled(self, event: str) -> bool:
        return self.events.get(event) is True

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "PixelConfig":
        try:
            raw = json.loads(row.get("events_json") or "{}")
        except ValueError:
            raw = {}
        if not isinstance(raw, dict):
            raw = {}
        raw_map = raw.get("map")
        event_map: dict[str, str] = {}
        if isinstance(raw_map, dict):
            for k, v in raw_map.items():
                if isinstance(v, str) and v.strip():
                    event_map[str(k)] = v.strip()
        return cls(
            shop_id=str(row.get("shop_id") or ""),
            # Raw value on purpose: unknown platforms must reach the dispatcher.
            platform=str(row.get("platform") or ""),
            pixel_id=str(row.get("pixel_id") or "").strip(),
            enabled=bool(row.get("enabled")),
            api_enabled=bool(row.get("api_enabled")),
            access_token_enc=row.get("access_token_enc") or None,
            test_code=(row.get("test_code") or "").strip() or None,
            events={k: v is True for k, v in raw.items() if k in PIXEL_EVENTS},
            event_map=event_map,
            last_fired_at=row.get("last_fired_at"),
        )


@dataclass(frozen=True)
class EventContext:
    shop_id: str
    event: str
    request: RequestSnapshot | None = None
    test: bool = False
    force: bool = False


@dataclass(frozen=True)
class SenderContext:
    """Everything a platform sender needs for one dispatch."""

    pixel: PixelConfig
    event: EventContext
    default_currency: str = "DZD"
    phone_country_code: str = "213"


@dataclass(frozen=True)
class DeliveryResult:
    ok: bool
    event_name: str
    error: str | None = None
    status_code: int | None = None


class PixelSender(Protocol):
    platform: str

    async def send(self, ctx: SenderContext) -> DeliveryResult:
        """Build, send and log one platform event. Must never raise."""
