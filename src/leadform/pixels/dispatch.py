from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any

import httpx

from leadform.config import Settings
from leadform.pixels.base import (
    Decryptor,
    EventContext,
    PixelConfig,
    RequestSnapshot,
    SenderContext,
    normalize_platform,
)
from leadform.pixels.delivery import NO_RETRY, DeliveryLog, RetryPolicy
from leadform.pixels.events import map_event_name
from leadform.pixels.registry import UnsupportedPlatformError, build_sender
from leadform.repo import Repo

logger = logging.getLogger(__name__)

# Strong references to in-flight detached dispatches.
_background_tasks: set[asyncio.Task[None]] = set()


@dataclass(frozen=True)
class DispatchOptions:
    default_currency: str = "DZD"
    phone_country_code: str = "213"
    http_timeout_sec: float = 10.0
    retry: RetryPolicy = NO_RETRY

    @staticmethod
    def from_settings(settings: Settings) -> "DispatchOptions":
        return DispatchOptions(
            default_currency=settings.default_currency,
            phone_country_code=settings.phone_country_code,
            http_timeout_sec=settings.http_timeout_sec,
            retry=RetryPolicy(
                max_attempts=settings.pixel_max_attempts,
                backoff_sec=settings.pixel_retry_backoff_sec,
            ),
        )


def _should_fire(pixel: PixelConfig, event: str, force: bool) -> bool:
    if force:
        return True
    return pixel.is_event_enabled(event)


async def fire_pixels_for_request(
    repo: Repo,
    *,
    shop_id: str,
    event: str,
    request: RequestSnapshot | None = None,
    force: bool = False,
    test: bool = False,
    decrypt: Decryptor,
    client: httpx.AsyncClient | None = None,
    options: DispatchOptions | None = None,
) -> None:
    """
    Fan one domain event out to every enabled pixel of a shop.

    Best-effort: failures end up in pixel_event_logs (or the Python log when
    even that is impossible) and never propagate to the caller.
    """
    opts = options or DispatchOptions()
    ctx = EventContext(shop_id=shop_id, event=event, request=request, test=test, force=force)

    try:
        rows = repo.list_enabled_pixels(shop_id)
    except Exception:  # noqa: BLE001 - dispatch must not fail the caller
        logger.exception("pixel dispatch: could not load pixels for shop=%s", shop_id)
        return

    pixels = [PixelConfig.from_row(r) for r in rows]
    pixels = [p for p in pixels if _should_fire(p, event, force)]
    if not pixels:
        return

    if client is not None:
        await _fire_all(repo, ctx, pixels, decrypt=decrypt, client=client, opts=opts)
        return
    try:
        async with httpx.AsyncClient(timeout=opts.http_timeout_sec) as own_client:
            await _fire_all(repo, ctx, pixels, decrypt=decrypt, client=own_client, opts=opts)
    except Exception:  # noqa: BLE001
        logger.exception("pixel dispatch: unexpected error for shop=%s event=%s", shop_id, event)


async def _fire_all(
    repo: Repo,
    ctx: EventContext,
    pixels: list[PixelConfig],
    *,
    decrypt: Decryptor,
    client: httpx.AsyncClient,
    opts: DispatchOptions,
) -> None:
    for pixel in pixels:
        platform = normalize_platform(pixel.platform)
        log = DeliveryLog(repo, shop_id=ctx.shop_id, platform=pixel.platform, domain_event=ctx.event)
        try:
            sender = build_sender(platform, repo=repo, client=client, decrypt=decrypt, retry=opts.retry)
        except UnsupportedPlatformError:
            _log_failure(log, ctx.event, "Unsupported platform", {"platform": pixel.platform})
            continue

        sender_ctx = SenderContext(
            pixel=pixel,
            event=ctx,
            default_currency=opts.default_currency,
            phone_country_code=opts.phone_country_code,
        )
        try:
            await sender.send(sender_ctx)
        except Exception as e:  # noqa: BLE001 - one platform must not stop the others
            logger.exception("pixel %s: sender raised for shop=%s", platform, ctx.shop_id)
            _log_failure(
                log,
                map_event_name(platform, ctx.event, pixel.event_map),
                f"{type(e).__name__}: {e}",
                {"reason": "sender exception"},
            )


def _log_failure(log: DeliveryLog, event_name: str, error: str, payload: dict[str, Any]) -> None:
    try:
        log.failure(event_name, error, payload)
    except Exception:  # noqa: BLE001
        logger.exception("pixel dispatch: could not write failure log for shop=%s", log.shop_id)


def spawn_pixel_dispatch(repo: Repo, **kwargs: Any) -> asyncio.Task[None]:
    """
    Start `fire_pixels_for_request` as a detached task on the running loop.

    The caller does not await it; its response is independent of the outcome.
    """
    task = asyncio.get_running_loop().create_task(fire_pixels_for_request(repo, **kwargs))
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)
    return task
