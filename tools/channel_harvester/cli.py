"""CLI entry-point for the channel harvester."""

from __future__ import annotations

import asyncio
import logging
import sys
from dataclasses import replace
from datetime import datetime, timezone

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from .catalog import CatalogError, CatalogStore, paginate
from .config import DEVICES, BrowserConfig, CatalogConfig, HarvesterConfig, SyncConfig
from .harvester import Harvester
from .loader import FeedSessionError

console = Console()


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True, console=console)],
    )
    # Suppress noisy libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)


def _print_stats(stats: dict) -> None:
    table = Table(title="Harvest Summary", show_header=True, header_style="bold cyan")
    table.add_column("Metric", style="bold")
    table.add_column("Count", justify="right")
    for key, val in stats.items():
        table.add_row(key.capitalize(), str(val))
    console.print(table)


@click.group()
@click.option("--channel", envvar="HARVESTER_CHANNEL", default="PostSovietPhotography", help="Public channel to harvest")
@click.option("--catalog", "catalog_path", envvar="CATALOG_PATH", default="data/images.json", help="Catalog JSON file")
@click.option("--device", envvar="HARVESTER_DEVICE", default="iPhone", type=click.Choice(sorted(DEVICES)), help="Mobile device to emulate")
@click.option("--headless/--headed", envvar="HARVESTER_HEADLESS", default=True, help="Run the browser without a window")
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging")
@click.pass_context
def cli(ctx: click.Context, channel: str, catalog_path: str, device: str, headless: bool, verbose: bool) -> None:
    """Channel Harvester – collect a public channel's images into a gallery catalog.

    Loads the channel's web feed in a headless mobile browser, extracts the
    image posts and merges them into a deduplicated, newest-first catalog.
    """
    _setup_logging(verbose)
    ctx.ensure_object(dict)
    ctx.obj["cfg"] = HarvesterConfig(
        browser=replace(BrowserConfig.from_env(), headless=headless),
        catalog=CatalogConfig(path=catalog_path),
        sync=replace(SyncConfig.from_env(), channel=channel, device=device),
    )


# ─── Commands ────────────────────────────────────────────────────


@cli.command()
@click.option("--full", is_flag=True, help="Crawl the whole feed instead of only new posts")
@click.option("--limit", default=0, type=int, help="Max messages to load (0 = mode default)")
@click.option("--no-probe", is_flag=True, help="Skip dimension probing for images without a size")
@click.option("--dry-run", is_flag=True, help="Crawl and merge without writing the catalog")
@click.pass_context
def sync(ctx: click.Context, full: bool, limit: int, no_probe: bool, dry_run: bool) -> None:
    """Crawl the channel and merge new images into the catalog.

    Example: channel-harvester sync --full
    """
    cfg: HarvesterConfig = ctx.obj["cfg"]

    async def _run() -> None:
        async with Harvester(cfg) as h:
            console.print(f"[bold]Syncing [cyan]@{cfg.sync.channel}[/cyan]...[/bold]")
            result = await h.sync(full=full, limit=limit or None, probe=not no_probe, dry_run=dry_run)
            console.print(
                f"[green]✓[/green] {result.mode.capitalize()} sync: "
                f"{result.new} new, {result.total} total"
            )
            _print_stats(h.stats)

    try:
        asyncio.run(_run())
    except (FeedSessionError, CatalogError) as exc:
        logging.getLogger("harvester.cli").error("Sync failed: %s", exc)
        console.print("[red]✗[/red] Sync failed, catalog left unchanged")
        sys.exit(1)


@cli.command()
@click.pass_context
def cleanup(ctx: click.Context) -> None:
    """Deduplicate the catalog down to one canonical image per message."""
    cfg: HarvesterConfig = ctx.obj["cfg"]

    async def _run() -> int:
        async with Harvester(cfg) as h:
            return h.cleanup()

    try:
        removed = asyncio.run(_run())
    except CatalogError as exc:
        console.print(f"[red]✗[/red] {exc}")
        sys.exit(1)
    console.print(f"[green]✓[/green] Removed {removed} duplicate or decorative image(s)")


@cli.command(name="check-images")
@click.pass_context
def check_images(ctx: click.Context) -> None:
    """Drop catalog entries whose image URL no longer resolves."""
    cfg: HarvesterConfig = ctx.obj["cfg"]

    async def _run() -> int:
        async with Harvester(cfg) as h:
            return await h.check_images()

    try:
        broken = asyncio.run(_run())
    except CatalogError as exc:
        console.print(f"[red]✗[/red] {exc}")
        sys.exit(1)
    console.print(f"[green]✓[/green] Removed {broken} broken image(s)")


@cli.command(name="preview")
@click.option("--page", default=1, type=int, help="Page number (1-based)")
@click.option("--limit", default=20, type=int, help="Images per page")
@click.pass_context
def preview(ctx: click.Context, page: int, limit: int) -> None:
    """Show one page of the catalog as the gallery would serve it.

    Example: channel-harvester preview --page 2 --limit 10
    """
    cfg: HarvesterConfig = ctx.obj["cfg"]
    try:
        catalog = CatalogStore(cfg.catalog).load()
    except CatalogError as exc:
        console.print(f"[red]✗[/red] {exc}")
        sys.exit(1)
    if catalog is None:
        console.print(f"[yellow]No catalog at {cfg.catalog.path}[/yellow]")
        return

    data = paginate(catalog.images, page, limit)
    table = Table(
        title=f"Catalog page {data['page']} ({data['total']} images)",
        show_header=True,
        header_style="bold cyan",
    )
    table.add_column("Message", style="bold", justify="right")
    table.add_column("Date")
    table.add_column("Size", justify="right")
    table.add_column("URL", max_width=60)
    for img in data["images"]:
        date = datetime.fromtimestamp(img["date"] / 1000, tz=timezone.utc)
        table.add_row(
            str(img["messageId"]),
            f"{date:%Y-%m-%d %H:%M}",
            f"{img['width']}x{img['height']}",
            img["url"],
        )
    console.print(table)
    if data["hasMore"]:
        console.print(f"[dim]More: --page {data['page'] + 1}[/dim]")


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
