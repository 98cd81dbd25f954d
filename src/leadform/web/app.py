from __future__ import annotations

import json
from pathlib import Path
from typing import Any
from urllib.parse import urlencode

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse
from fastapi.templating import Jinja2Templates
import uvicorn

from leadform.app_proxy import verify_app_proxy_request
from leadform.config import Settings, configure_logging
from leadform.crypto import CredentialCipher
from leadform.db import LeadformDB
from leadform.pixels import dispatch
from leadform.pixels.base import PIXEL_EVENTS, PLATFORMS, PixelConfig, RequestSnapshot
from leadform.pixels.dispatch import DispatchOptions
from leadform.pixels.manage import (
    delete_tracking_pixel,
    fire_test_event,
    pixel_summary,
    upsert_tracking_pixel,
)
from leadform.repo import Repo
from leadform.util import to_bool


PLATFORM_TITLES = {
    "meta": "Meta (Facebook/Instagram)",
    "tiktok": "TikTok Pixel",
    "google": "Google Analytics 4",
}


def _pixels_url(shop_id: str, **extra: str) -> str:
    return "/pixels?" + urlencode({"shop_id": shop_id, **extra})


def _log_view(row: dict[str, Any]) -> dict[str, Any]:
    try:
        payload = json.loads(row.get("payload_json") or "null")
    except ValueError:
        payload = row.get("payload_json")
    return {
        "id": row["id"],
        "platform": row["platform"],
        "event": row["event"],
        "domain_event": row.get("domain_event"),
        "status": row["status"],
        "error": row.get("error"),
        "payload": payload,
        "created_at": row["created_at"],
    }


def create_app(settings: Settings) -> FastAPI:
    LeadformDB(settings.db_path).init()
    repo = Repo(settings.db_path)
    cipher = CredentialCipher(settings.shopify_api_secret)
    options = DispatchOptions.from_settings(settings)

    base_dir = Path(__file__).resolve().parent
    templates = Jinja2Templates(directory=str(base_dir / "templates"))

    app = FastAPI(title="Leadform")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    def health():
        return {"ok": True}

    @app.get("/pixels", response_class=HTMLResponse)
    def pixels_page(request: Request, shop_id: str, error: str | None = None):
        pixels = {
            p.platform: pixel_summary(p)
            for p in (PixelConfig.from_row(r) for r in repo.list_pixels(shop_id))
        }
        logs = [_log_view(r) for r in repo.list_pixel_logs(shop_id, limit=50)]
        return templates.TemplateResponse(
            request,
            "pixels.html",
            {
                "shop_id": shop_id,
                "platforms": PLATFORMS,
                "platform_titles": PLATFORM_TITLES,
                "pixels": pixels,
                "events": PIXEL_EVENTS,
                "logs": logs,
                "error": error,
            },
        )

    @app.get("/pixels/logs")
    def pixel_logs(shop_id: str, limit: int = 50):
        limit = max(1, min(int(limit), 500))
        return {"ok": True, "logs": [_log_view(r) for r in repo.list_pixel_logs(shop_id, limit=limit)]}

    @app.post("/pixels/save")
    async def save_pixel(request: Request):
        form = await request.form()
        shop_id = str(form.get("shop_id") or "").strip()
        if not shop_id:
            return JSONResponse({"ok": False, "error": "shop_id is required"}, status_code=400)

        events = {ev: to_bool(form.get(f"ev_{ev}")) for ev in PIXEL_EVENTS}
        event_map = {ev: str(form.get(f"map_{ev}") or "") for ev in PIXEL_EVENTS}
        try:
            upsert_tracking_pixel(
                repo,
                cipher,
                shop_id=shop_id,
                platform=str(form.get("platform") or ""),
                pixel_id=str(form.get("pixel_id") or ""),
                enabled=to_bool(form.get("enabled")),
                api_enabled=to_bool(form.get("api_enabled")),
                access_token=str(form.get("access_token") or "") or None,
                test_code=str(form.get("test_code") or "") or None,
                events=events,
                event_map=event_map,
            )
        except ValueError as e:
            return JSONResponse({"ok": False, "error": str(e)}, status_code=400)
        return RedirectResponse(url=_pixels_url(shop_id), status_code=303)

    @app.post("/pixels/delete")
    async def delete_pixel(request: Request):
        form = await request.form()
        shop_id = str(form.get("shop_id") or "").strip()
        if not shop_id:
            return JSONResponse({"ok": False, "error": "shop_id is required"}, status_code=400)
        try:
            delete_tracking_pixel(repo, shop_id=shop_id, platform=str(form.get("platform") or ""))
        except ValueError as e:
            return JSONResponse({"ok": False, "error": str(e)}, status_code=400)
        return RedirectResponse(url=_pixels_url(shop_id), status_code=303)

    @app.post("/pixels/test")
    async def test_pixels(request: Request):
        form = await request.form()
        shop_id = str(form.get("shop_id") or "").strip()
        if not shop_id:
            return JSONResponse({"ok": False, "error": "shop_id is required"}, status_code=400)
        # Awaited: the operator wants to see the resulting log rows on reload.
        await fire_test_event(repo, cipher, shop_id=shop_id, options=options)
        return RedirectResponse(url=_pixels_url(shop_id, tested="1"), status_code=303)

    @app.post("/proxy/pixels/events")
    async def storefront_event(request: Request):
        check = verify_app_proxy_request(request.url.query, settings.shopify_api_secret)
        if not check.ok:
            return JSONResponse({"ok": False, "error": check.reason}, status_code=401)
        try:
            body = await request.json()
        except Exception:  # noqa: BLE001
            return JSONResponse({"ok": False, "error": "invalid json"}, status_code=400)
        if not isinstance(body, dict):
            return JSONResponse({"ok": False, "error": "bad payload"}, status_code=400)

        event = str(body.get("event") or "").strip()
        if event not in PIXEL_EVENTS:
            return JSONResponse({"ok": False, "error": "unknown event"}, status_code=400)
        # Only the signed `shop` parameter is trusted; the body is not.
        shop_id = str(check.shop or "").strip()
        claimed = str(body.get("shop_id") or "").strip()
        if claimed and claimed != shop_id:
            return JSONResponse({"ok": False, "error": "shop mismatch"}, status_code=400)
        raw_request = body.get("request")
        data = dict(raw_request) if isinstance(raw_request, dict) else {}
        if not data.get("ip") and request.client:
            data["ip"] = request.client.host
        if not (data.get("userAgent") or data.get("user_agent")):
            data["userAgent"] = request.headers.get("user-agent")
        snapshot = RequestSnapshot.from_dict(data)

        # Fire-and-forget: the storefront gets its answer before any pixel is sent.
        dispatch.spawn_pixel_dispatch(
            repo,
            shop_id=shop_id,
            event=event,
            request=snapshot,
            decrypt=cipher.decrypt,
            options=options,
        )
        return JSONResponse({"ok": True}, status_code=202)

    return app


def run_web(settings: Settings) -> None:
    configure_logging(settings)
    app = create_app(settings)
    uvicorn.run(app, host=settings.web_host, port=settings.web_port, log_level="info")
