"""CLI entry point for memorybook.

Provides commands:
  - plan: Optimize every item of a manifest and show the chunk plan
  - sync: Keep a manifest's bundles synchronized to Drive or a directory
  - status: Show the persisted sync records of a manifest's book
  - config: Manage the Drive access token
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Annotated, Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from memorybook.config import (
    SERVICE_NAME,
    delete_access_token,
    get_access_token,
    load_sync_config,
    set_access_token,
)
from memorybook.constants import MB
from memorybook.exceptions import OversizedItemError, TransientEncodingError
from memorybook.manifest import load_manifest
from memorybook.models import Book, ChunkPlan, CompressionLevel, Settings, SyncRecord, SyncStatus

logger = logging.getLogger(__name__)

app = typer.Typer(
    help="memorybook - Split media books into size-bounded PDF bundles and keep them synced",
    rich_markup_mode="rich",
)
console = Console()

config_app = typer.Typer(help="Manage configuration (Drive access token)")
app.add_typer(config_app, name="config")

EXIT_OVERSIZED = 2


@app.callback()
def app_callback(
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Show per-tick debug logging"),
    ] = False,
) -> None:
    """Configure logging for every command."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="%H:%M:%S",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=False)],
        force=True,
    )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _load_book(
    manifest: Path,
    max_mb: float | None = None,
    compression: CompressionLevel | None = None,
    margin: float | None = None,
) -> Book:
    """Load *manifest*, applying command-line setting overrides."""
    try:
        book = load_manifest(manifest)
        if max_mb is None and compression is None and margin is None:
            return book
        current = book.settings
        settings = Settings.from_megabytes(
            max_mb if max_mb is not None else current.max_chunk_size_bytes / MB,
            compression or current.compression_level,
            margin if margin is not None else current.safety_margin_percent,
        )
        return book.with_settings(settings)
    except (OSError, ValueError) as e:
        console.print(f"[red]Error:[/red] Cannot load manifest {manifest}: {e}")
        raise typer.Exit(code=1)


def _format_size(size: int) -> str:
    if size >= MB:
        return f"{size / MB:.2f} MB"
    return f"{size / 1024:.1f} KB"


def _plan_table(plan: ChunkPlan, records: dict[int, SyncRecord] | None = None) -> Table:
    table = Table(title="Chunk Plan")
    table.add_column("Part", justify="right", style="bold")
    table.add_column("Title", style="cyan")
    table.add_column("Items", justify="right")
    table.add_column("Estimated", justify="right")
    table.add_column("Verified", justify="right")
    table.add_column("Status")

    for chunk in plan.chunks:
        if chunk.oversized:
            status = "[red]OVERSIZED[/red]"
        elif records is not None:
            record = records.get(chunk.part_number)
            status = _status_label(record.status if record else SyncStatus.WAITING)
        else:
            status = "[green]OK[/green]"
        table.add_row(
            str(chunk.part_number),
            chunk.title,
            str(chunk.item_count),
            _format_size(chunk.estimated_size_bytes),
            _format_size(chunk.verified_size_bytes),
            status,
        )
    return table


def _status_label(status: SyncStatus) -> str:
    colors = {
        SyncStatus.SYNCED: "green",
        SyncStatus.UPLOADING: "blue",
        SyncStatus.DIRTY: "red",
        SyncStatus.WAITING: "yellow",
    }
    return f"[{colors[status]}]{status.value}[/{colors[status]}]"


def _report_oversized(plan: ChunkPlan) -> None:
    for chunk in plan.oversized_chunks:
        console.print(
            f"[red]Item {chunk.item_ids[0]} alone is {_format_size(chunk.verified_size_bytes)}, "
            f"over the limit.[/red] Use a higher compression level or remove it."
        )


# ---------------------------------------------------------------------------
# plan
# ---------------------------------------------------------------------------


@app.command()
def plan(
    manifest: Annotated[
        Path,
        typer.Argument(help="Path to the book manifest (JSON)", exists=True, dir_okay=False),
    ],
    max_mb: Annotated[
        Optional[float],
        typer.Option("--max-mb", help="Size ceiling per bundle in MB (5-50)", min=5, max=50),
    ] = None,
    compression: Annotated[
        Optional[CompressionLevel],
        typer.Option("--compression", "-c", help="Compression level"),
    ] = None,
    margin: Annotated[
        Optional[float],
        typer.Option("--margin", help="Safety margin in percent (0-20)", min=0, max=20),
    ] = None,
) -> None:
    """Optimize every item and show how the book splits into bundles.

    Exits with code 2 when an item cannot fit in a bundle on its own.
    """
    from memorybook.encoding import PdfEncodingGateway
    from memorybook.optimizer import BackgroundOptimizer
    from memorybook.planner import ChunkPlanner
    from memorybook.store import BookStore

    book = _load_book(manifest, max_mb, compression, margin)
    gateway = PdfEncodingGateway()

    async def _run_plan() -> tuple[ChunkPlan | None, int]:
        store = BookStore(book)
        optimizer = BackgroundOptimizer(store, gateway)
        # Each item gets at most two attempts.
        for _ in range(2 * len(book.items)):
            if not await optimizer.tick():
                break
        planner = ChunkPlanner(store, gateway)
        try:
            await planner.plan_once()
        except OversizedItemError:
            pass
        return store.state.plan, optimizer.failed

    with console.status(f"Optimizing {len(book.items)} item(s)..."):
        try:
            result, failed = asyncio.run(_run_plan())
        except TransientEncodingError as e:
            console.print(f"[red]Error:[/red] Planning failed: {e}")
            raise typer.Exit(code=1)

    settings = book.settings
    console.print(
        Panel(
            f"[bold]{book.title}[/bold]: {len(book.items)} item(s)\n"
            f"Limit: {_format_size(int(settings.effective_limit))} "
            f"({settings.safety_margin_percent:g}% margin) | "
            f"Compression: {settings.compression_level.value}",
            title="Book",
        )
    )
    if failed:
        console.print(f"[yellow]Warning:[/yellow] {failed} item(s) could not be optimized")

    if result is None or not result.chunks:
        console.print("[yellow]Nothing to plan.[/yellow]")
        return

    console.print(_plan_table(result))
    if result.oversized_chunks:
        _report_oversized(result)
        raise typer.Exit(code=EXIT_OVERSIZED)


# ---------------------------------------------------------------------------
# sync
# ---------------------------------------------------------------------------


@app.command()
def sync(
    manifest: Annotated[
        Path,
        typer.Argument(help="Path to the book manifest (JSON)", exists=True, dir_okay=False),
    ],
    folder: Annotated[
        Optional[str],
        typer.Option("--folder", "-f", help="Drive folder id (defaults to the manifest's folder_id)"),
    ] = None,
    target_dir: Annotated[
        Optional[Path],
        typer.Option("--target-dir", "-t", help="Write bundles to this directory instead of Drive"),
    ] = None,
    db_path: Annotated[
        Optional[Path],
        typer.Option("--db", "-d", help="Path to the sync record database"),
    ] = None,
    config_path: Annotated[
        Optional[Path],
        typer.Option("--config", help="Path to memorybook.json"),
    ] = None,
    tier: Annotated[
        Optional[str],
        typer.Option("--tier", help="Rate limit tier: conservative, standard, burst"),
    ] = None,
    upload_oversized: Annotated[
        bool,
        typer.Option("--upload-oversized", help="Upload bundles even when over the limit"),
    ] = False,
    watch: Annotated[
        bool,
        typer.Option("--watch", "-w", help="Keep running after settling (Ctrl+C to stop)"),
    ] = False,
    timeout: Annotated[
        float,
        typer.Option("--timeout", help="Seconds to wait for the book to settle"),
    ] = 600.0,
) -> None:
    """Optimize, plan and upload a book's bundles until everything is synced."""
    from memorybook.encoding import PdfEncodingGateway
    from memorybook.remote.circuit_breaker import RollingWindowCircuitBreaker
    from memorybook.remote.drive import DriveRemoteStore
    from memorybook.remote.local import LocalFolderStore
    from memorybook.remote.rate_limiter import AdaptiveRateLimiter, RateLimiterConfig
    from memorybook.session import ExportSession
    from memorybook.store import BookStore
    from memorybook.sync.records import SyncRecordStore

    book = _load_book(manifest)
    config = load_sync_config(config_path)
    if db_path is not None:
        config.db_path = str(db_path)
    if tier is not None:
        config.rate_limit_tier = tier
    config.upload_oversized = upload_oversized or config.upload_oversized

    if target_dir is not None:
        config.remote_folder_id = folder or book.remote_folder_id or book.book_id
        destination = str(target_dir / config.remote_folder_id)
    else:
        config.remote_folder_id = folder or book.remote_folder_id or config.remote_folder_id
        if not config.remote_folder_id:
            console.print(
                "[red]Error:[/red] No Drive folder. Pass --folder, set folder_id in the "
                "manifest, or use --target-dir."
            )
            raise typer.Exit(code=1)
        if not config.access_token:
            try:
                config.access_token = get_access_token()
            except RuntimeError as e:
                console.print(f"[red]{e}[/red]")
                raise typer.Exit(code=1)
        destination = f"Drive folder {config.remote_folder_id}"

    try:
        rate_config = RateLimiterConfig(tier=config.rate_limit_tier)
    except ValueError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(code=1)

    console.print(
        Panel(
            f"Syncing [bold]{book.title}[/bold] ({len(book.items)} item(s))\n"
            f"Destination: {destination}\n"
            f"Records: {config.db_path}",
            title="Sync",
        )
    )

    circuit_breaker = RollingWindowCircuitBreaker()
    if target_dir is not None:
        remote = LocalFolderStore(target_dir)
    else:
        remote = DriveRemoteStore(
            config.access_token,  # type: ignore[arg-type]
            circuit_breaker=circuit_breaker,
            rate_limiter=AdaptiveRateLimiter(rate_config, circuit_breaker),
        )

    violations: list[OversizedItemError] = []
    store = BookStore(book)

    async def _run_sync() -> bool:
        from memorybook.progress import SessionProgressTracker

        try:
            async with SyncRecordStore(config.db_path) as records:
                with SessionProgressTracker(console) as tracker:
                    async with ExportSession(
                        store,
                        PdfEncodingGateway(),
                        remote,
                        config,
                        records=records,
                        progress=tracker,
                        on_violation=violations.append,
                        circuit_breaker=circuit_breaker,
                    ) as session:
                        settled = await session.wait_until_settled(timeout)
                        if watch:
                            await asyncio.Event().wait()
                        return settled
        finally:
            if isinstance(remote, DriveRemoteStore):
                await remote.close()

    try:
        settled = asyncio.run(_run_sync())
    except KeyboardInterrupt:
        console.print("[yellow]Stopped.[/yellow]")
        settled = False

    state = store.state
    if state.plan is not None:
        console.print(_plan_table(state.plan, state.records_by_part))

    records = state.sync_records
    summary_table = Table(title="Sync Summary")
    summary_table.add_column("Metric", style="bold")
    summary_table.add_column("Count", justify="right")
    summary_table.add_row("Parts", str(len(state.plan.chunks) if state.plan else 0))
    summary_table.add_row(
        "Synced", f"[green]{sum(r.status is SyncStatus.SYNCED for r in records)}[/green]"
    )
    summary_table.add_row(
        "Dirty", f"[red]{sum(r.status is SyncStatus.DIRTY for r in records)}[/red]"
    )
    summary_table.add_row(
        "Waiting", f"[yellow]{sum(r.status is SyncStatus.WAITING for r in records)}[/yellow]"
    )
    console.print(Panel(summary_table, title="Sync Complete" if settled else "Sync Incomplete"))

    if state.plan is not None and state.plan.oversized_chunks:
        _report_oversized(state.plan)
        raise typer.Exit(code=EXIT_OVERSIZED)
    if not settled and not watch:
        console.print(f"[yellow]Not settled after {timeout:g}s.[/yellow]")
        raise typer.Exit(code=1)


# ---------------------------------------------------------------------------
# status
# ---------------------------------------------------------------------------


@app.command()
def status(
    manifest: Annotated[
        Path,
        typer.Argument(help="Path to the book manifest (JSON)", exists=True, dir_okay=False),
    ],
    db_path: Annotated[
        Optional[Path],
        typer.Option("--db", "-d", help="Path to the sync record database"),
    ] = None,
    config_path: Annotated[
        Optional[Path],
        typer.Option("--config", help="Path to memorybook.json"),
    ] = None,
) -> None:
    """Show the persisted sync records of a book."""
    from memorybook.sync.records import SyncRecordStore

    book = _load_book(manifest)
    db = db_path or Path(load_sync_config(config_path).db_path)
    if not db.exists():
        console.print(
            f"[yellow]No sync records yet[/yellow] ({db} not found).\n"
            f"Run [bold]memorybook sync {manifest}[/bold] first."
        )
        return

    async def _load() -> tuple[SyncRecord, ...]:
        async with SyncRecordStore(db) as records:
            return await records.load(book.book_id)

    rows = asyncio.run(_load())
    if not rows:
        console.print(f"[yellow]No sync records for {book.title}.[/yellow]")
        return

    table = Table(title=f"Sync Status: {book.title}")
    table.add_column("Part", justify="right", style="bold")
    table.add_column("Status")
    table.add_column("Remote object", style="cyan")
    table.add_column("Fingerprint", style="dim")
    table.add_column("Error", style="red")
    for record in rows:
        table.add_row(
            str(record.part_number),
            _status_label(record.status),
            record.remote_object_id or "",
            (record.last_synced_fingerprint or "")[:12],
            record.error_message or "",
        )
    console.print(table)


# ---------------------------------------------------------------------------
# config
# ---------------------------------------------------------------------------


@config_app.command("set-token")
def set_token(
    token: Annotated[
        str,
        typer.Argument(help="Drive OAuth access token to store in the system keyring"),
    ],
) -> None:
    """Store the Drive access token in the system keyring."""
    if not token or token.strip() == "":
        console.print("[red]Error:[/red] Token cannot be empty")
        raise typer.Exit(code=1)

    try:
        set_access_token(token.strip())
    except Exception as e:
        console.print(f"[red]Error:[/red] Failed to store token: {e}")
        raise typer.Exit(code=1)
    console.print(f"[green]✓[/green] Token stored in system keyring (service: {SERVICE_NAME})")


@config_app.command("get-token")
def show_token() -> None:
    """Display the stored Drive access token (masked)."""
    try:
        token = get_access_token()
    except RuntimeError as e:
        console.print(f"[yellow]{e}[/yellow]")
        raise typer.Exit(code=1)

    if len(token) > 8:
        masked = token[:8] + "*" * (len(token) - 8)
    else:
        masked = token[:2] + "*" * max(1, len(token) - 2)
    console.print(f"[green]Token:[/green] {masked}")


@config_app.command("remove-token")
def remove_token() -> None:
    """Delete the stored Drive access token from the system keyring."""
    try:
        removed = delete_access_token()
    except Exception as e:
        console.print(f"[red]Error:[/red] Failed to remove token: {e}")
        raise typer.Exit(code=1)

    if not removed:
        console.print("[yellow]Warning:[/yellow] No token found in keyring. Nothing to remove.")
        return
    console.print(f"[green]✓[/green] Token removed from system keyring (service: {SERVICE_NAME})")


if __name__ == "__main__":
    app()
