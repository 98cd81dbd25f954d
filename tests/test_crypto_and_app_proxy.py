from __future__ import annotations

import hashlib
import hmac
from urllib.parse import urlencode

import pytest

from leadform.app_proxy import app_proxy_signature, verify_app_proxy_request
from leadform.crypto import CredentialCipher


def _signed_query(params: dict[str, str], secret: str) -> str:
    message = "".join(sorted(f"{k}={v}" for k, v in params.items()))
    sig = hmac.new(secret.encode(), message.encode(), hashlib.sha256).hexdigest()
    return urlencode({**params, "signature": sig})


def test_cipher_round_trip_and_format() -> None:
    cipher = CredentialCipher("app-secret")
    packed = cipher.encrypt("EAAB-token")

    assert packed != "EAAB-token"
    assert packed.count(".") == 2
    assert "=" not in packed
    assert cipher.decrypt(packed) == "EAAB-token"
    # Fresh IV per call.
    assert cipher.encrypt("EAAB-token") != packed


def test_cipher_rejects_tampering_and_wrong_key() -> None:
    cipher = CredentialCipher("app-secret")
    iv, tag, data = cipher.encrypt("EAAB-token").split(".")
    flipped = ("A" if data[0] != "A" else "B") + data[1:]

    with pytest.raises(ValueError):
        cipher.decrypt(".".join([iv, tag, flipped]))
    with pytest.raises(ValueError):
        CredentialCipher("other-secret").decrypt(".".join([iv, tag, data]))
    with pytest.raises(ValueError):
        cipher.decrypt("not-a-packed-value")
    with pytest.raises(ValueError):
        cipher.decrypt("..")


def test_app_proxy_accepts_valid_signature() -> None:
    params = {"shop": "demo.myshopify.com", "path_prefix": "/apps/leadform", "timestamp": "1700000000"}
    check = verify_app_proxy_request(_signed_query(params, "s3cret"), "s3cret")

    assert check.ok is True
    assert check.shop == "demo.myshopify.com"


def test_app_proxy_joins_repeated_keys_with_commas() -> None:
    params = {"shop": ["demo.myshopify.com"], "ids": ["1", "2"]}
    expected = hmac.new(
        b"s3cret", b"ids=1,2shop=demo.myshopify.com", hashlib.sha256
    ).hexdigest()
    assert app_proxy_signature(params, "s3cret") == expected

    query = f"shop=demo.myshopify.com&ids=1&ids=2&signature={expected}"
    assert verify_app_proxy_request(query, "s3cret").ok is True


def test_app_proxy_rejections() -> None:
    params = {"shop": "demo.myshopify.com", "timestamp": "1700000000"}
    good = _signed_query(params, "s3cret")

    assert verify_app_proxy_request(good, None).reason == "Missing SHOPIFY_API_SECRET"
    assert verify_app_proxy_request("timestamp=1", "s3cret").reason == "Missing shop/signature"
    assert verify_app_proxy_request("shop=demo.myshopify.com", "s3cret").reason == "Missing shop/signature"
    assert verify_app_proxy_request(good, "wrong").reason == "Bad signature"
    assert verify_app_proxy_request(good.replace("1700000000", "1700000001"), "s3cret").reason == "Bad signature"
