from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Mapping

import httpx

from leadform.crypto import CredentialCipher
from leadform.pixels.base import PLATFORMS, LineItem, PixelConfig, RequestSnapshot, normalize_platform
from leadform.pixels.dispatch import DispatchOptions, fire_pixels_for_request
from leadform.pixels.events import validate_event_map, validate_event_toggles
from leadform.repo import Repo


def parse_platform(raw: Any) -> str:
    p = normalize_platform(raw)
    if p not in PLATFORMS:
        raise ValueError("Invalid platform")
    return p


def upsert_tracking_pixel(
    repo: Repo,
    cipher: CredentialCipher,
    *,
    shop_id: str,
    platform: str,
    pixel_id: str,
    enabled: bool,
    api_enabled: bool,
    access_token: str | None = None,
    test_code: str | None = None,
    events: Mapping[str, Any] | None = None,
    event_map: Mapping[str, Any] | None = None,
) -> PixelConfig:
    """
    Create or update the (shop, platform) pixel.

    The credential is write-only: a blank token keeps the stored ciphertext.
    """
    p = parse_platform(platform)
    pid = (pixel_id or "").strip()
    if not pid:
        raise ValueError("Pixel ID is required.")

    existing = repo.get_pixel(shop_id, p)
    token = (access_token or "").strip()
    if token:
        access_token_enc = cipher.encrypt(token)
    else:
        access_token_enc = existing.get("access_token_enc") if existing else None

    stored_events: dict[str, Any] = dict(validate_event_toggles(events))
    mapping = validate_event_map(event_map)
    if mapping:
        stored_events["map"] = mapping

    repo.upsert_pixel(
        shop_id=shop_id,
        platform=p,
        pixel_id=pid,
        enabled=enabled,
        api_enabled=api_enabled,
        access_token_enc=access_token_enc,
        test_code=(test_code or "").strip() or None,
        events=stored_events,
    )
    return PixelConfig.from_row(repo.get_pixel(shop_id, p) or {})


def delete_tracking_pixel(repo: Repo, *, shop_id: str, platform: str) -> bool:
    return repo.delete_pixel(shop_id, parse_platform(platform))


def pixel_summary(pixel: PixelConfig) -> dict[str, Any]:
    return {
        "platform": pixel.platform,
        "pixel_id": pixel.pixel_id,
        "enabled": pixel.enabled,
        "api_enabled": pixel.api_enabled,
        "has_access_token": bool(pixel.access_token_enc),
        "test_code": pixel.test_code,
        "events": dict(pixel.events),
        "event_map": dict(pixel.event_map),
        "last_fired_at": pixel.last_fired_at,
    }


def synthetic_request_snapshot(currency: str = "DZD") -> RequestSnapshot:
    now = datetime.now(tz=timezone.utc)
    return RequestSnapshot(
        id=f"test_{int(now.timestamp() * 1000)}",
        email="test@example.com",
        phone="0550000000",
        ip="127.0.0.1",
        user_agent="LeadForm-Test",
        page_url="https://example.com/products/test",
        referrer="https://example.com/",
        product_id="test_product",
        qty=1,
        items=(LineItem(product_id="test_product", qty=1),),
        value=0,
        currency=currency,
        created_at=now,
    )


async def fire_test_event(
    repo: Repo,
    cipher: CredentialCipher,
    *,
    shop_id: str,
    client: httpx.AsyncClient | None = None,
    options: DispatchOptions | None = None,
) -> None:
    """Admin "send test event": every enabled pixel, toggles bypassed, test codes attached."""
    opts = options or DispatchOptions()
    await fire_pixels_for_request(
        repo,
        shop_id=shop_id,
        event="request_submitted",
        request=synthetic_request_snapshot(opts.default_currency),
        force=True,
        test=True,
        decrypt=cipher.decrypt,
        client=client,
        options=opts,
    )
