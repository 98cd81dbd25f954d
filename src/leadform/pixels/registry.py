from __future__ import annotations

import httpx

from leadform.pixels.base import Decryptor, PixelSender
from leadform.pixels.delivery import NO_RETRY, RetryPolicy
from leadform.pixels.ga4_mp import Ga4MeasurementSender
from leadform.pixels.meta_capi import MetaCapiSender
from leadform.pixels.tiktok_events import TikTokEventsSender
from leadform.repo import Repo


class UnsupportedPlatformError(ValueError):
    pass


def build_sender(
    platform: str,
    *,
    repo: Repo,
    client: httpx.AsyncClient,
    decrypt: Decryptor,
    retry: RetryPolicy = NO_RETRY,
) -> PixelSender:
    if platform == "meta":
        return MetaCapiSender(repo, client=client, decrypt=decrypt, retry=retry)
    if platform == "tiktok":
        return TikTokEventsSender(repo, client=client, decrypt=decrypt, retry=retry)
    if platform == "google":
        return Ga4MeasurementSender(repo, client=client, decrypt=decrypt, retry=retry)

    raise UnsupportedPlatformError(f"Unknown platform: {platform}")
