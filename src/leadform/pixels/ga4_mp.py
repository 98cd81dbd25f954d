from __future__ import annotations

import time
import uuid
from typing import Any

import httpx

from leadform.pixels.base import DeliveryResult, Decryptor, RequestSnapshot, SenderContext
from leadform.pixels.delivery import (
    NO_RETRY,
    DeliveryLog,
    RetryPolicy,
    decrypt_credential,
    post_json,
    report_outcome,
)
from leadform.pixels.events import map_event_name, sanitize_ga4_event_name
from leadform.repo import Repo
from leadform.util import sha256_hex

GA4_COLLECT_URL = "https://www.google-analytics.com/mp/collect"
GA4_MEASUREMENT_PREFIX = "G-"
# Events without engagement time are dropped from GA4 reports.
GA4_ENGAGEMENT_TIME_MSEC = 1
_CLIENT_ID_MODULUS = 10_000_000_000


def ga_client_id(req: RequestSnapshot | None) -> str:
    """
    Stable-ish numeric client_id for server-side hits.

    There is no _ga cookie here, so it is derived from the request fields.
    """
    seed = "|".join(
        [
            (req.ip if req else None) or "",
            (req.user_agent if req else None) or "",
            (req.email if req else None) or "",
            (req.phone if req else None) or "",
            (req.id if req else None) or str(uuid.uuid4()),
        ]
    )
    h = sha256_hex(seed)
    a = int(h[:16], 16) % _CLIENT_ID_MODULUS
    b = int(h[16:32], 16) % _CLIENT_ID_MODULUS
    return f"{a}.{b}"


def timestamp_micros(req: RequestSnapshot | None) -> int:
    created = req.created_at if req else None
    if created:
        return int(created.timestamp() * 1000) * 1000
    return int(time.time() * 1000) * 1000


class Ga4MeasurementSender:
    """
    Google Analytics 4 Measurement Protocol sender.

    pixel_id holds the measurement ID (G-XXXX), the stored credential is the
    Measurement Protocol api_secret.
    """

    platform = "google"

    def __init__(
        self,
        repo: Repo,
        *,
        client: httpx.AsyncClient,
        decrypt: Decryptor,
        retry: RetryPolicy = NO_RETRY,
    ):
        self.repo = repo
        self.client = client
        self.decrypt = decrypt
        self.retry = retry

    def build_payload(self, ctx: SenderContext, event_name: str) -> dict[str, Any]:
        req = ctx.event.request
        params: dict[str, Any] = {
            "currency": (req.currency if req else None) or ctx.default_currency,
            "value": req.value if req and req.value is not None else 0,
            "engagement_time_msec": GA4_ENGAGEMENT_TIME_MSEC,
        }
        items = [{"item_id": it.product_id, "quantity": it.qty} for it in (req.line_items() if req else [])]
        if items:
            params["items"] = items
        if event_name == "purchase" and req and req.id:
            params["transaction_id"] = req.id
        if ctx.event.test:
            params["debug_mode"] = 1

        return {
            "client_id": ga_client_id(req),
            "timestamp_micros": timestamp_micros(req),
            "events": [{"name": event_name, "params": params}],
        }

    async def send(self, ctx: SenderContext) -> DeliveryResult:
        pixel = ctx.pixel
        event_name = sanitize_ga4_event_name(map_event_name(self.platform, ctx.event.event, pixel.event_map))
        log = DeliveryLog(
            self.repo,
            shop_id=ctx.event.shop_id,
            platform=pixel.platform,
            domain_event=ctx.event.event,
        )

        if not pixel.api_enabled:
            return log.failure(event_name, "API disabled", {"reason": "api_enabled=false"})

        api_secret = decrypt_credential(self.decrypt, pixel.access_token_enc)
        if not api_secret:
            return log.failure(event_name, "Missing API secret", {"reason": "api_secret missing"})

        measurement_id = pixel.pixel_id.strip()
        if not measurement_id:
            return log.failure(event_name, "Missing measurement ID", {"reason": "pixel_id missing"})
        # Google Ads tags (AW-...) are not Measurement Protocol targets.
        if not measurement_id.startswith(GA4_MEASUREMENT_PREFIX):
            return log.failure(
                event_name,
                "Unsupported Google ID (expected GA4 Measurement ID starting with G-)",
                {"measurement_id": measurement_id},
            )

        payload = self.build_payload(ctx, event_name)
        outcome = await post_json(
            self.client,
            GA4_COLLECT_URL,
            payload=payload,
            params={"measurement_id": measurement_id, "api_secret": api_secret},
            retry=self.retry,
        )
        return report_outcome(log, event_name=event_name, payload=payload, outcome=outcome, label="GA4 MP")
