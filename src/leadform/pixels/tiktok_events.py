from __future__ import annotations

import time
import uuid
from typing import Any

import httpx

from leadform.pixels.base import DeliveryResult, Decryptor, SenderContext
from leadform.pixels.delivery import (
    NO_RETRY,
    DeliveryLog,
    RetryPolicy,
    decrypt_credential,
    post_json,
    report_outcome,
)
from leadform.pixels.events import map_event_name
from leadform.pixels.identity import normalize_email, normalize_phone
from leadform.repo import Repo
from leadform.util import compact

TIKTOK_TRACK_URL = "https://business-api.tiktok.com/open_api/v1.3/pixel/track/"


class TikTokEventsSender:
    """
    TikTok Events API sender (Business API v1.3 pixel tracking).

    The access token travels in the `Access-Token` header, never in the URL.
    """

    platform = "tiktok"

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
        created = req.created_at if req else None
        timestamp = int(created.timestamp()) if created else int(time.time())
        contents = [
            {"content_id": it.product_id, "quantity": it.qty}
            for it in (req.line_items() if req else [])
        ]

        payload: dict[str, Any] = {
            "pixel_code": ctx.pixel.pixel_id,
            "event": event_name,
            "event_id": (req.id if req else None) or str(uuid.uuid4()),
            "timestamp": timestamp,
            "context": {
                **compact(
                    {
                        "ip": req.ip if req else None,
                        "user_agent": req.user_agent if req else None,
                    }
                ),
                "page": compact(
                    {
                        "url": req.page_url if req else None,
                        "referrer": req.referrer if req else None,
                    }
                ),
                "user": compact(
                    {
                        "email": normalize_email(req.email if req else None),
                        "phone_number": normalize_phone(req.phone if req else None, ctx.phone_country_code),
                    }
                ),
            },
            "properties": compact(
                {
                    "currency": (req.currency if req else None) or ctx.default_currency,
                    "value": req.value if req and req.value is not None else 0,
                    "contents": contents or None,
                    "content_type": "product",
                }
            ),
        }
        if ctx.event.test and ctx.pixel.test_code:
            payload["test_event_code"] = ctx.pixel.test_code
        return payload

    async def send(self, ctx: SenderContext) -> DeliveryResult:
        pixel = ctx.pixel
        event_name = map_event_name(self.platform, ctx.event.event, pixel.event_map)
        log = DeliveryLog(
            self.repo,
            shop_id=ctx.event.shop_id,
            platform=pixel.platform,
            domain_event=ctx.event.event,
        )

        if not pixel.api_enabled:
            return log.failure(event_name, "API disabled", {"reason": "api_enabled=false"})

        access_token = decrypt_credential(self.decrypt, pixel.access_token_enc)
        if not access_token:
            return log.failure(event_name, "Missing access token", {"reason": "access token missing"})

        payload = self.build_payload(ctx, event_name)
        outcome = await post_json(
            self.client,
            TIKTOK_TRACK_URL,
            payload=payload,
            headers={"Access-Token": access_token},
            retry=self.retry,
        )
        return report_outcome(log, event_name=event_name, payload=payload, outcome=outcome, label="TikTok API")
