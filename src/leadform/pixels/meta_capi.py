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

META_GRAPH_BASE_URL = "https://graph.facebook.com"
META_GRAPH_VERSION = "v19.0"


class MetaCapiSender:
    """
    Meta Conversions API sender.

    Requires api_enabled and an access token; the configured test code is
    attached only for test dispatches.
    """

    platform = "meta"

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

    def endpoint(self, pixel_id: str) -> str:
        return f"{META_GRAPH_BASE_URL}/{META_GRAPH_VERSION}/{pixel_id}/events"

    def build_payload(self, ctx: SenderContext, event_name: str) -> dict[str, Any]:
        req = ctx.event.request
        items = req.line_items() if req else []
        em = normalize_email(req.email if req else None)
        ph = normalize_phone(req.phone if req else None, ctx.phone_country_code)

        contents = [{"id": it.product_id, "quantity": it.qty} for it in items]
        user_data = compact(
            {
                "client_ip_address": req.ip if req else None,
                "client_user_agent": req.user_agent if req else None,
                "em": [em] if em else None,
                "ph": [ph] if ph else None,
            }
        )
        custom_data = compact(
            {
                "currency": (req.currency if req else None) or ctx.default_currency,
                "value": req.value if req and req.value is not None else 0,
                "contents": contents or None,
                "content_ids": [c["id"] for c in contents] or None,
                "content_type": "product",
            }
        )
        event = compact(
            {
                "event_name": event_name,
                "event_time": int(time.time()),
                "action_source": "website",
                "event_source_url": req.page_url if req else None,
                "event_id": (req.id if req else None) or str(uuid.uuid4()),
                "user_data": user_data,
                "custom_data": custom_data,
                "test_event_code": ctx.pixel.test_code if ctx.event.test else None,
            }
        )
        return {"data": [event]}

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
            self.endpoint(pixel.pixel_id),
            payload=payload,
            params={"access_token": access_token},
            retry=self.retry,
        )
        return report_outcome(log, event_name=event_name, payload=payload, outcome=outcome, label="Meta API")
