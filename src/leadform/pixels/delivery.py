from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any

import httpx

from leadform.pixels.base import DeliveryResult, Decryptor
from leadform.repo import Repo
from leadform.util import safe_json

logger = logging.getLogger(__name__)

STATUS_SUCCESS = "success"
STATUS_FAILED = "failed"


class DeliveryLog:
    """
    Audit trail for one dispatch attempt of one platform.

    Each sender writes exactly one entry through this object per `send()`.
    """

    def __init__(self, repo: Repo, *, shop_id: str, platform: str, domain_event: str):
        self.repo = repo
        self.shop_id = shop_id
        self.platform = platform
        self.domain_event = domain_event

    def success(self, event_name: str, payload: Any, *, status_code: int | None = None) -> DeliveryResult:
        self.repo.create_pixel_log(
            shop_id=self.shop_id,
            platform=self.platform,
            event=event_name,
            domain_event=self.domain_event,
            status=STATUS_SUCCESS,
            payload=payload,
            error=None,
        )
        # The attempt is already recorded; a lost last_fired_at update is tolerated.
        try:
            self.repo.touch_pixel_last_fired(self.shop_id, self.platform)
        except Exception:  # noqa: BLE001
            logger.exception("pixel %s: could not update last_fired_at shop=%s", self.platform, self.shop_id)
        return DeliveryResult(ok=True, event_name=event_name, status_code=status_code)

    def failure(
        self,
        event_name: str,
        error: str,
        payload: Any = None,
        *,
        status_code: int | None = None,
    ) -> DeliveryResult:
        logger.info(
            "pixel %s failed shop=%s event=%s: %s", self.platform, self.shop_id, event_name, error
        )
        self.repo.create_pixel_log(
            shop_id=self.shop_id,
            platform=self.platform,
            event=event_name,
            domain_event=self.domain_event,
            status=STATUS_FAILED,
            payload=payload,
            error=error,
        )
        return DeliveryResult(ok=False, event_name=event_name, error=error, status_code=status_code)


@dataclass(frozen=True)
class RetryPolicy:
    """
    Bounded retry around one outbound call.

    max_attempts=1 means a single try; only transport errors, 429 and 5xx
    are retried.
    """

    max_attempts: int = 1
    backoff_sec: float = 0.5

    def should_retry(self, attempt: int, status_code: int | None) -> bool:
        if attempt >= self.max_attempts:
            return False
        if status_code is None:
            return True
        return status_code == 429 or status_code >= 500

    def delay(self, attempt: int) -> float:
        return max(0.0, self.backoff_sec) * attempt


NO_RETRY = RetryPolicy()


@dataclass(frozen=True)
class HttpOutcome:
    status_code: int | None
    body: Any
    attempts: int
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.status_code is not None and 200 <= self.status_code < 300


async def post_json(
    client: httpx.AsyncClient,
    url: str,
    *,
    payload: dict[str, Any],
    params: dict[str, str] | None = None,
    headers: dict[str, str] | None = None,
    retry: RetryPolicy = NO_RETRY,
) -> HttpOutcome:
    attempt = 0
    while True:
        attempt += 1
        try:
            resp = await client.post(url, json=payload, params=params, headers=headers)
        except Exception as e:  # noqa: BLE001 - transport or serialization failure
            if retry.should_retry(attempt, None):
                await asyncio.sleep(retry.delay(attempt))
                continue
            return HttpOutcome(status_code=None, body=None, attempts=attempt, error=str(e) or type(e).__name__)

        if not (200 <= resp.status_code < 300) and retry.should_retry(attempt, resp.status_code):
            await asyncio.sleep(retry.delay(attempt))
            continue
        return HttpOutcome(status_code=resp.status_code, body=safe_json(resp.text), attempts=attempt)


def report_outcome(
    log: DeliveryLog,
    *,
    event_name: str,
    payload: dict[str, Any],
    outcome: HttpOutcome,
    label: str,
) -> DeliveryResult:
    if outcome.status_code is None:
        return log.failure(
            event_name,
            outcome.error or f"{label} exception",
            {"request": payload, "attempts": outcome.attempts},
        )
    logged = {"request": payload, "response": outcome.body, "attempts": outcome.attempts}
    if outcome.ok:
        return log.success(event_name, logged, status_code=outcome.status_code)
    return log.failure(
        event_name,
        f"{label} error: {outcome.status_code}",
        logged,
        status_code=outcome.status_code,
    )


def decrypt_credential(decrypt: Decryptor, ciphertext: str | None) -> str | None:
    """Plaintext credential, or None when it is absent or cannot be decrypted."""
    if not ciphertext:
        return None
    try:
        plain = decrypt(ciphertext)
    except Exception as e:  # noqa: BLE001 - bad ciphertext is a configuration error
        logger.warning("pixel credential could not be decrypted: %s", type(e).__name__)
        return None
    plain = (plain or "").strip()
    return plain or None
