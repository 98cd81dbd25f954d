from __future__ import annotations

import hashlib
import hmac
from dataclasses import dataclass
from urllib.parse import parse_qs


@dataclass(frozen=True)
class ProxyVerification:
    ok: bool
    shop: str | None = None
    reason: str | None = None


def app_proxy_signature(params: dict[str, list[str]], secret: str) -> str:
    # Shopify: "k=v1,v2" per key, sorted, joined with no separator.
    message = "".join(
        sorted(f"{k}={','.join(v)}" for k, v in params.items() if k not in {"signature", "hmac"})
    )
    return hmac.new(secret.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).hexdigest()


def verify_app_proxy_request(query_string: str, secret: str | None) -> ProxyVerification:
    if not secret:
        return ProxyVerification(ok=False, reason="Missing SHOPIFY_API_SECRET")

    params = parse_qs(query_string or "", keep_blank_values=True)
    provided = (params.get("signature") or params.get("hmac") or [""])[0]
    shop = (params.get("shop") or [""])[0]
    if not provided or not shop:
        return ProxyVerification(ok=False, reason="Missing shop/signature")

    digest = app_proxy_signature(params, secret)
    if not hmac.compare_digest(digest.encode("utf-8"), provided.encode("utf-8")):
        return ProxyVerification(ok=False, reason="Bad signature")
    return ProxyVerification(ok=True, shop=shop)
