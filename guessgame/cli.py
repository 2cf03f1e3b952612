"""CLI entry point for the BTC up/down guessing game.

Commands:
  game api              — Serve the JSON API
  game poller           — Run the background resolution poller
  game resolve-once     — Run a single resolution cycle and exit
  game price-feed       — Run the CoinGecko price poller
  game status           — Show latest price and poller state
  game leaderboard      — Show the top players by score
"""

from __future__ import annotations

import asyncio
import json
from typing import Any

import click
from dotenv import load_dotenv
from rich.console import Console
from rich.table import Table

from guessgame.config import AppConfig, load_config
from guessgame.observability.logger import configure_from, get_logger

load_dotenv()

console = Console()
log = get_logger(__name__)


def _run(coro: Any) -> Any:
    """Run an async coroutine from sync CLI."""
    return asyncio.run(coro)


def _open_db(cfg: AppConfig) -> Any:
    from guessgame.storage.database import Database

    db = Database(cfg.storage)
    db.connect()
    return db


@click.group()
@click.option("--config", "config_path", default=None, help="Path to config.yaml")
@click.option("--log-format", default=None, type=click.Choice(["json", "console"]))
@click.pass_context
def cli(ctx: click.Context, config_path: str | None, log_format: str | None) -> None:
    """BTC up/down price-prediction game."""
    ctx.ensure_object(dict)
    cfg = load_config(config_path)
    ctx.obj["config"] = cfg
    configure_from(cfg.observability, fmt=log_format)


# ─── SERVICES ────────────────────────────────────────────────────────

@cli.command()
@click.option("--host", default=None, help="Bind address (overrides config)")
@click.option("--port", default=None, type=int, help="Port (overrides config)")
@click.option("--debug", is_flag=True, default=False)
@click.pass_context
def api(ctx: click.Context, host: str | None, port: int | None, debug: bool) -> None:
    """Serve the game API."""
    from guessgame.api.app import run_api

    cfg: AppConfig = ctx.obj["config"]
    if host:
        cfg.api.host = host
    if port:
        cfg.api.port = port
    console.print(f"\n  [bold]Guess game API[/bold] ➜  http://{cfg.api.host}:{cfg.api.port}\n")
    run_api(cfg, debug=debug)


@cli.command()
@click.pass_context
def poller(ctx: click.Context) -> None:
    """Run the resolution poller until SIGINT / SIGTERM."""
    from guessgame.engine.poller import ResolutionPoller

    cfg: AppConfig = ctx.obj["config"]
    if not cfg.poller.enabled:
        console.print("[yellow]Resolution poller is disabled in config (poller.enabled).[/yellow]")
        return
    _run(ResolutionPoller(config=cfg).start())


@cli.command("resolve-once")
@click.pass_context
def resolve_once(ctx: click.Context) -> None:
    """Resolve every overdue guess once, then exit."""
    from guessgame.engine.poller import ResolutionPoller

    cfg: AppConfig = ctx.obj["config"]
    result = _run(ResolutionPoller(config=cfg).run_cycle())
    console.print_json(json.dumps(result.to_dict()))


@cli.command("price-feed")
@click.option("--once", is_flag=True, default=False, help="Fetch a single quote and exit")
@click.pass_context
def price_feed(ctx: click.Context, once: bool) -> None:
    """Poll CoinGecko and keep the price cache up to date."""
    from guessgame.engine.price_poller import PricePoller

    cfg: AppConfig = ctx.obj["config"]
    feed = PricePoller(config=cfg)

    if not once:
        _run(feed.start())
        return

    async def _once() -> Any:
        try:
            return await feed.poll_once()
        finally:
            await feed.close()

    sample = _run(_once())
    if sample is None:
        console.print("Price unchanged, nothing cached.")
    else:
        console.print(f"Cached sample #{sample.id}: ${sample.price_usd:,.2f}")


# ─── INSPECTION ──────────────────────────────────────────────────────

@cli.command()
@click.pass_context
def status(ctx: click.Context) -> None:
    """Show the latest cached price and the poller's last cycle."""
    from guessgame.engine.poller import STATE_KEY

    cfg: AppConfig = ctx.obj["config"]
    db = _open_db(cfg)
    try:
        sample = db.get_latest_price()
        raw_state = db.get_engine_state(STATE_KEY)
    finally:
        db.close()

    table = Table(title="🎯 Game Status")
    table.add_column("Item", style="cyan")
    table.add_column("Value", justify="right")

    if sample is None:
        table.add_row("Latest price", "[red]no data[/red]")
    else:
        table.add_row("Latest price", f"${sample.price_usd:,.2f}")
        table.add_row("Fetched at", sample.fetched_at.isoformat())
        table.add_row("Source updated", sample.source_updated_at.isoformat())

    state = json.loads(raw_state) if raw_state else {}
    last = state.get("last_cycle") or {}
    table.add_row("Poller running", str(state.get("running", False)))
    table.add_row("Poller cycles", str(state.get("cycle_count", 0)))
    if last:
        table.add_row("Last cycle resolved", str(last.get("resolved", 0)))
        table.add_row("Last cycle errors", str(len(last.get("errors", []))))

    console.print(table)


@cli.command()
@click.option("--limit", default=10, help="Number of players to list")
@click.pass_context
def leaderboard(ctx: click.Context, limit: int) -> None:
    """Show the top players by score."""
    cfg: AppConfig = ctx.obj["config"]
    db = _open_db(cfg)
    try:
        players = db.get_top_players(limit=limit)
    finally:
        db.close()

    table = Table(title=f"🏆 Leaderboard ({len(players)} players)")
    table.add_column("#", justify="right", style="dim")
    table.add_column("Player", max_width=40)
    table.add_column("Score", justify="right", style="green")

    for rank, p in enumerate(players, start=1):
        table.add_row(str(rank), p.external_id, str(p.score))

    console.print(table)


def main() -> None:
    cli(obj={})


if __name__ == "__main__":
    main()
