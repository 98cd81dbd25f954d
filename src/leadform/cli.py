from __future__ import annotations

import asyncio
import json

import typer

from leadform.config import Settings, configure_logging
from leadform.crypto import CredentialCipher
from leadform.db import LeadformDB
from leadform.pixels.base import PixelConfig
from leadform.pixels.dispatch import DispatchOptions
from leadform.pixels.manage import delete_tracking_pixel, fire_test_event, pixel_summary
from leadform.repo import Repo
from leadform.web.app import run_web

app = typer.Typer(no_args_is_help=True)
pixels_app = typer.Typer(no_args_is_help=True)
app.add_typer(pixels_app, name="pixels")


def _repo(settings: Settings) -> Repo:
    LeadformDB(settings.db_path).init()
    return Repo(settings.db_path)


@app.command("db")
def db_cmd(
    action: str = typer.Argument(..., help="init"),
) -> None:
    settings = Settings.load()
    db = LeadformDB(settings.db_path)
    if action == "init":
        db.init()
        typer.echo(f"OK db init: {settings.db_path} (schema v{db.schema_version()})")
        return
    raise typer.BadParameter("action must be one of: init")


@app.command("web")
def web_cmd() -> None:
    settings = Settings.load()
    run_web(settings)


@pixels_app.command("list")
def pixels_list_cmd(
    shop_id: str = typer.Option(..., "--shop-id", help="Shop identifier."),
) -> None:
    """Show the configured pixels of a shop. Credentials are never printed."""
    settings = Settings.load()
    repo = _repo(settings)
    rows = [pixel_summary(PixelConfig.from_row(r)) for r in repo.list_pixels(shop_id)]
    typer.echo(json_dumps(rows))


@pixels_app.command("logs")
def pixels_logs_cmd(
    shop_id: str = typer.Option(..., "--shop-id", help="Shop identifier."),
    limit: int = typer.Option(20, help="Most recent N entries."),
) -> None:
    settings = Settings.load()
    repo = _repo(settings)
    if limit <= 0:
        typer.echo("ERROR: limit must be > 0")
        raise typer.Exit(code=2)
    for row in repo.list_pixel_logs(shop_id, limit=limit):
        line = f"{row['created_at']}  {row['platform']:<7} {row['event']:<20} {row['status']}"
        if row.get("error"):
            line += f"  {row['error']}"
        typer.echo(line)


@pixels_app.command("test")
def pixels_test_cmd(
    shop_id: str = typer.Option(..., "--shop-id", help="Shop identifier."),
) -> None:
    """Send a synthetic test event to every enabled pixel of the shop."""
    settings = Settings.load()
    configure_logging(settings)
    repo = _repo(settings)
    if not repo.list_enabled_pixels(shop_id):
        typer.echo(f"ERROR: no enabled pixels for shop_id={shop_id}")
        raise typer.Exit(code=2)

    cipher = CredentialCipher(settings.shopify_api_secret)
    asyncio.run(
        fire_test_event(repo, cipher, shop_id=shop_id, options=DispatchOptions.from_settings(settings))
    )
    typer.echo("OK test event sent; see `leadform pixels logs`")


@pixels_app.command("delete")
def pixels_delete_cmd(
    shop_id: str = typer.Option(..., "--shop-id", help="Shop identifier."),
    platform: str = typer.Option(..., help="meta|tiktok|google"),
) -> None:
    settings = Settings.load()
    repo = _repo(settings)
    try:
        deleted = delete_tracking_pixel(repo, shop_id=shop_id, platform=platform)
    except ValueError as e:
        typer.echo(f"ERROR: {e}")
        raise typer.Exit(code=2) from e
    if not deleted:
        typer.echo(f"ERROR: no {platform} pixel for shop_id={shop_id}")
        raise typer.Exit(code=2)
    typer.echo(f"OK deleted {platform} pixel")


def json_dumps(obj) -> str:
    return json.dumps(obj, ensure_ascii=True, indent=2)
