from __future__ import annotations

import asyncio
import json
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable

import httpx

from leadform.db import LeadformDB
from leadform.pixels.base import (
    EventContext,
    LineItem,
    PixelConfig,
    RequestSnapshot,
    SenderContext,
)
from leadform.pixels.delivery import RetryPolicy
from leadform.pixels.ga4_mp import Ga4MeasurementSender, ga_client_id
from leadform.pixels.meta_capi import MetaCapiSender
from leadform.pixels.tiktok_events import TikTokEventsSender
from leadform.repo import Repo
from leadform.util import sha256_hex


def _repo(tmp_path: Path) -> Repo:
    db_path = tmp_path / "leadform.sqlite3"
    LeadformDB(db_path).init()
    return Repo(db_path)


def _plain(ciphertext: str) -> str:
    return ciphertext.removeprefix("enc:")


def _pixel(
    repo: Repo,
    platform: str,
    *,
    pixel_id: str = "123",
    api_enabled: bool = True,
    token: str | None = "enc:tok_1",
    test_code: str | None = None,
) -> PixelConfig:
    repo.upsert_pixel(
        shop_id="shop_1",
        platform=platform,
        pixel_id=pixel_id,
        enabled=True,
        api_enabled=api_enabled,
        access_token_enc=token,
        test_code=test_code,
        events={"request_submitted": True},
    )
    row = repo.get_pixel("shop_1", platform)
    assert row is not None
    return PixelConfig.from_row(row)


def _snapshot(**overrides: Any) -> RequestSnapshot:
    data: dict[str, Any] = {
        "id": "req_1",
        "email": " A@Example.com ",
        "phone": "0550123456",
        "ip": "10.0.0.1",
        "user_agent": "UA/1.0",
        "page_url": "https://shop.example/products/x",
        "referrer": "https://google.com/",
        "items": (LineItem(product_id="p1", qty=2),),
        "value": 1500.0,
        "currency": "DZD",
        "created_at": datetime(2026, 1, 15, 8, 0, tzinfo=timezone.utc),
    }
    data.update(overrides)
    return RequestSnapshot(**data)


def _ctx(pixel: PixelConfig, event: str = "request_submitted", *, test: bool = False, request=None) -> SenderContext:
    return SenderContext(
        pixel=pixel,
        event=EventContext(
            shop_id="shop_1",
            event=event,
            request=request if request is not None else _snapshot(),
            test=test,
        ),
    )


def _send(
    sender_cls,
    repo: Repo,
    ctx: SenderContext,
    handler: Callable[[httpx.Request], httpx.Response],
    *,
    decrypt=_plain,
    retry: RetryPolicy | None = None,
):
    async def _run():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            kwargs = {"client": client, "decrypt": decrypt}
            if retry is not None:
                kwargs["retry"] = retry
            return await sender_cls(repo, **kwargs).send(ctx)

    return asyncio.run(_run())


def _recorder(status: int = 200, body: Any = None):
    calls: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(status, json=body if body is not None else {"events_received": 1})

    return calls, handler


def _logs(repo: Repo) -> list[dict[str, Any]]:
    return repo.list_pixel_logs("shop_1", limit=50)


def test_meta_api_disabled_logs_failure_without_http(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    pixel = _pixel(repo, "meta", api_enabled=False)
    calls, handler = _recorder()

    res = _send(MetaCapiSender, repo, _ctx(pixel), handler)

    assert res.ok is False
    assert calls == []
    (log,) = _logs(repo)
    assert log["status"] == "failed"
    assert log["error"] == "API disabled"
    assert log["event"] == "Lead"
    assert log["domain_event"] == "request_submitted"
    assert json.loads(log["payload_json"]) == {"reason": "api_enabled=false"}


def test_meta_missing_token_logs_failure_without_http(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    pixel = _pixel(repo, "meta", token=None)
    calls, handler = _recorder()

    _send(MetaCapiSender, repo, _ctx(pixel), handler)

    assert calls == []
    (log,) = _logs(repo)
    assert log["error"] == "Missing access token"


def test_undecryptable_token_is_treated_as_missing(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    pixel = _pixel(repo, "meta", token="garbage")
    calls, handler = _recorder()

    def broken(_: str) -> str:
        raise ValueError("Bad encrypted payload")

    _send(MetaCapiSender, repo, _ctx(pixel), handler, decrypt=broken)

    assert calls == []
    (log,) = _logs(repo)
    assert log["error"] == "Missing access token"


def test_meta_success_payload_and_last_fired(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    pixel = _pixel(repo, "meta", pixel_id="PX9", test_code="TEST123")
    calls, handler = _recorder()

    res = _send(MetaCapiSender, repo, _ctx(pixel), handler)

    assert res.ok is True
    assert res.event_name == "Lead"
    (req,) = calls
    assert req.url.path == "/v19.0/PX9/events"
    assert req.url.params["access_token"] == "tok_1"
    body = json.loads(req.content)
    (event,) = body["data"]
    assert event["event_name"] == "Lead"
    assert event["event_id"] == "req_1"
    assert event["action_source"] == "website"
    assert event["event_source_url"] == "https://shop.example/products/x"
    assert event["user_data"]["em"] == [sha256_hex("a@example.com")]
    assert event["user_data"]["ph"] == [sha256_hex("+213550123456")]
    assert event["user_data"]["client_ip_address"] == "10.0.0.1"
    assert event["custom_data"]["contents"] == [{"id": "p1", "quantity": 2}]
    assert event["custom_data"]["content_ids"] == ["p1"]
    assert event["custom_data"]["value"] == 1500.0
    # Test code only on test dispatches.
    assert "test_event_code" not in event

    (log,) = _logs(repo)
    assert log["status"] == "success"
    logged = json.loads(log["payload_json"])
    assert logged["request"] == body
    assert logged["response"] == {"events_received": 1}
    assert repo.get_pixel("shop_1", "meta")["last_fired_at"]


def test_meta_test_dispatch_attaches_test_code(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    pixel = _pixel(repo, "meta", test_code="TEST123")
    calls, handler = _recorder()

    _send(MetaCapiSender, repo, _ctx(pixel, test=True), handler)

    event = json.loads(calls[0].content)["data"][0]
    assert event["test_event_code"] == "TEST123"


def test_meta_without_email_omits_em_and_defaults_currency(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    pixel = _pixel(repo, "meta")
    calls, handler = _recorder()
    request = RequestSnapshot(phone="n/a")

    _send(MetaCapiSender, repo, _ctx(pixel, request=request), handler)

    event = json.loads(calls[0].content)["data"][0]
    assert "em" not in event["user_data"]
    assert "ph" not in event["user_data"]
    assert event["custom_data"]["currency"] == "DZD"
    assert event["custom_data"]["value"] == 0
    assert event["event_id"]


def test_meta_http_error_logs_failure_and_keeps_last_fired(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    pixel = _pixel(repo, "meta")
    _, handler = _recorder(status=400, body={"error": {"message": "Invalid parameter"}})

    res = _send(MetaCapiSender, repo, _ctx(pixel), handler)

    assert res.ok is False
    assert res.status_code == 400
    (log,) = _logs(repo)
    assert log["status"] == "failed"
    assert log["error"] == "Meta API error: 400"
    assert json.loads(log["payload_json"])["response"] == {"error": {"message": "Invalid parameter"}}
    assert repo.get_pixel("shop_1", "meta")["last_fired_at"] is None


def test_transport_error_is_logged_not_raised(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    pixel = _pixel(repo, "meta")

    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    res = _send(MetaCapiSender, repo, _ctx(pixel), handler)

    assert res.ok is False
    (log,) = _logs(repo)
    assert log["status"] == "failed"
    assert "connection refused" in log["error"]
    assert json.loads(log["payload_json"])["attempts"] == 1


def test_retry_policy_retries_5xx_and_logs_once(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    pixel = _pixel(repo, "meta")
    statuses = iter([503, 500, 200])
    calls: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(next(statuses), json={"ok": True})

    res = _send(MetaCapiSender, repo, _ctx(pixel), handler, retry=RetryPolicy(max_attempts=3, backoff_sec=0))

    assert res.ok is True
    assert len(calls) == 3
    (log,) = _logs(repo)
    assert log["status"] == "success"
    assert json.loads(log["payload_json"])["attempts"] == 3


def test_retry_policy_does_not_retry_4xx(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    pixel = _pixel(repo, "meta")
    calls, handler = _recorder(status=400)

    _send(MetaCapiSender, repo, _ctx(pixel), handler, retry=RetryPolicy(max_attempts=3, backoff_sec=0))

    assert len(calls) == 1
    assert len(_logs(repo)) == 1


def test_tiktok_token_in_header_and_payload_shape(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    pixel = _pixel(repo, "tiktok", pixel_id="TT1", test_code="TEST42")
    calls, handler = _recorder(body={"code": 0})

    res = _send(TikTokEventsSender, repo, _ctx(pixel, test=True), handler)

    assert res.ok is True
    (req,) = calls
    assert req.headers["Access-Token"] == "tok_1"
    assert "access_token" not in req.url.params
    body = json.loads(req.content)
    assert body["pixel_code"] == "TT1"
    assert body["event"] == "SubmitForm"
    assert body["event_id"] == "req_1"
    assert body["timestamp"] == int(datetime(2026, 1, 15, 8, 0, tzinfo=timezone.utc).timestamp())
    assert body["context"]["user"]["email"] == sha256_hex("a@example.com")
    assert body["context"]["user"]["phone_number"] == sha256_hex("+213550123456")
    assert body["context"]["page"] == {
        "url": "https://shop.example/products/x",
        "referrer": "https://google.com/",
    }
    assert body["properties"]["contents"] == [{"content_id": "p1", "quantity": 2}]
    assert body["test_event_code"] == "TEST42"
    (log,) = _logs(repo)
    assert log["event"] == "SubmitForm"


def test_tiktok_non_test_dispatch_has_no_test_code(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    pixel = _pixel(repo, "tiktok", test_code="TEST42")
    calls, handler = _recorder(body={"code": 0})

    _send(TikTokEventsSender, repo, _ctx(pixel), handler)

    assert "test_event_code" not in json.loads(calls[0].content)


def test_tiktok_http_error_label(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    pixel = _pixel(repo, "tiktok")
    _, handler = _recorder(status=401)

    _send(TikTokEventsSender, repo, _ctx(pixel), handler)

    (log,) = _logs(repo)
    assert log["error"] == "TikTok API error: 401"


def test_ga4_precondition_order(tmp_path: Path) -> None:
    calls, handler = _recorder(status=204)

    repo = _repo(tmp_path / "a")
    pixel = _pixel(repo, "google", pixel_id="AW-1", api_enabled=False, token=None)
    _send(Ga4MeasurementSender, repo, _ctx(pixel), handler)
    assert _logs(repo)[0]["error"] == "API disabled"

    repo = _repo(tmp_path / "b")
    pixel = _pixel(repo, "google", pixel_id="AW-1", token=None)
    _send(Ga4MeasurementSender, repo, _ctx(pixel), handler)
    assert _logs(repo)[0]["error"] == "Missing API secret"

    repo = _repo(tmp_path / "c")
    pixel = _pixel(repo, "google", pixel_id="AW-1")
    _send(Ga4MeasurementSender, repo, _ctx(pixel), handler)
    assert _logs(repo)[0]["error"] == "Unsupported Google ID (expected GA4 Measurement ID starting with G-)"

    assert calls == []


def test_ga4_success_params(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    pixel = _pixel(repo, "google", pixel_id="G-ABC123", token="enc:mp_secret")
    calls, handler = _recorder(status=204)

    res = _send(Ga4MeasurementSender, repo, _ctx(pixel, "request_confirmed", test=True), handler)

    assert res.ok is True
    (req,) = calls
    assert req.url.params["measurement_id"] == "G-ABC123"
    assert req.url.params["api_secret"] == "mp_secret"
    body = json.loads(req.content)
    assert body["timestamp_micros"] == int(datetime(2026, 1, 15, 8, 0, tzinfo=timezone.utc).timestamp()) * 1_000_000
    (event,) = body["events"]
    assert event["name"] == "purchase"
    params = event["params"]
    assert params["transaction_id"] == "req_1"
    assert params["debug_mode"] == 1
    assert params["engagement_time_msec"] == 1
    assert params["currency"] == "DZD"
    assert params["value"] == 1500.0
    assert params["items"] == [{"item_id": "p1", "quantity": 2}]
    (log,) = _logs(repo)
    assert log["status"] == "success"
    assert log["event"] == "purchase"


def test_ga4_lead_has_no_transaction_id_or_debug_mode(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    pixel = _pixel(repo, "google", pixel_id="G-ABC123")
    calls, handler = _recorder(status=204)

    _send(Ga4MeasurementSender, repo, _ctx(pixel), handler)

    params = json.loads(calls[0].content)["events"][0]["params"]
    assert "transaction_id" not in params
    assert "debug_mode" not in params


def test_ga4_override_name_is_sanitized(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    pixel = _pixel(repo, "google", pixel_id="G-ABC123")
    pixel = replace(pixel, event_map={"request_submitted": "Request Submitted!"})
    calls, handler = _recorder(status=204)

    _send(Ga4MeasurementSender, repo, _ctx(pixel), handler)

    assert json.loads(calls[0].content)["events"][0]["name"] == "request_submitted"


def test_ga_client_id_is_stable_and_numeric() -> None:
    req = _snapshot()
    a = ga_client_id(req)
    assert a == ga_client_id(req)
    left, right = a.split(".")
    assert left.isdigit() and right.isdigit()
    assert int(left) < 10**10 and int(right) < 10**10
    assert ga_client_id(_snapshot(email="other@example.com")) != a
