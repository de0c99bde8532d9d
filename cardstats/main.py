"""Main entry point for the cardstats application.

Sets up the Typer CLI application, performs dependency injection (Composition Root),
defines CLI commands, and delegates execution to the CommandHandler.
"""

import asyncio
import json
import logging
import sys
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Annotated, Any, AsyncIterator, Coroutine, Dict, List, Optional, TypeVar

import typer

# --- Core Layer ---
from cardstats.core.command_handler import CommandHandler
from cardstats.core.services.acquisition_scheduler import AcquisitionScheduler
from cardstats.core.services.count_estimator import CountEstimator

# --- Domain Layer ---
from cardstats.domain.models.common import CommandRequest, CommandResponse, FilePath
from cardstats.domain.models.counts import BatchReport, ItemView

# --- Infrastructure Layer ---
from cardstats.infrastructure.cache.caching_service import CountCache
from cardstats.infrastructure.cli.display import ConsoleDisplay
from cardstats.infrastructure.config.settings import get_config, get_float, get_int, set_config
from cardstats.infrastructure.filesystem.local_fs import LocalFileSystem
from cardstats.infrastructure.monitoring.logger_setup import setup_logging
from cardstats.infrastructure.remote.listing_client import HttpListingSource
from cardstats.infrastructure.resilience.api_retry import RetryPolicy
from cardstats.infrastructure.resilience.rate_limiter import RateLimiter
from cardstats.infrastructure.storage.disk_storage import DiskStorage

logger = logging.getLogger(__name__)

T = TypeVar("T")

# --- Dependency Injection Container (Manual) ---

def create_dependencies() -> Dict[str, Any]:
    """Creates and wires up all dependencies for one CLI invocation.

    This acts as the Composition Root.
    """
    logger.info("Initializing application dependencies...")
    dependencies: Dict[str, Any] = {}

    dependencies['ui'] = ConsoleDisplay()
    dependencies['file_system'] = LocalFileSystem()
    dependencies['storage'] = DiskStorage(
        directory=Path(str(get_config('storage.dir'))).expanduser(),
        max_value_bytes=get_int('storage.max_value_bytes'),
    )
    dependencies['cache'] = CountCache(
        storage=dependencies['storage'],
        manual_cooldown_s=get_float('cache.manual_cooldown_seconds'),
        error_cooldown_s=get_float('cache.error_cooldown_seconds'),
        save_debounce_s=get_float('cache.save_debounce_seconds'),
    )
    dependencies['rate_limiter'] = RateLimiter(
        max_requests=get_int('rate_limit.max_requests'),
        time_window=get_float('rate_limit.window_seconds'),
    )
    dependencies['retry_policy'] = RetryPolicy(
        max_attempts=get_int('retry.max_attempts'),
        base_delay_s=get_float('retry.base_delay_seconds'),
        max_delay_s=get_float('retry.max_delay_seconds'),
        throttle_delay_s=get_float('retry.throttle_delay_seconds'),
        throttle_max_attempts=get_int('retry.throttle_max_attempts'),
    )
    dependencies['listing_source'] = HttpListingSource(
        base_url=str(get_config('listing.base_url')),
        timeout_s=get_float('listing.timeout_seconds'),
    )
    dependencies['scheduler'] = AcquisitionScheduler(
        cache=dependencies['cache'],
        rate_limiter=dependencies['rate_limiter'],
        retry_policy=dependencies['retry_policy'],
        estimator=CountEstimator(),
        listing_source=dependencies['listing_source'],
        batch_size=get_int('batch.size'),
        batch_pause_s=get_float('batch.pause_seconds'),
    )
    dependencies['command_handler'] = CommandHandler(
        cache=dependencies['cache'],
        scheduler=dependencies['scheduler'],
        rate_limiter=dependencies['rate_limiter'],
        storage=dependencies['storage'],
    )
    logger.info("All dependencies initialized successfully.")
    return dependencies

@asynccontextmanager
async def open_session() -> AsyncIterator[Dict[str, Any]]:
    """Builds dependencies, restores persisted state, and always saves it back."""
    dependencies = create_dependencies()
    handler: CommandHandler = dependencies['command_handler']
    await handler.startup()
    try:
        yield dependencies
    finally:
        try:
            await handler.shutdown()
        finally:
            await dependencies['listing_source'].close()
            dependencies['storage'].close()

# --- Typer App Definition ---
app = typer.Typer(
    name="cardstats",
    help="cardstats: cached owner/want counts for trading-card listings, fetched politely.",
    add_completion=False,
)

def run_async(coro: Coroutine[Any, Any, T]) -> T:
    """Runs an async command body from a sync Typer command."""
    try:
        return asyncio.run(coro)
    except Exception as e:
        logger.error(f"Error executing async command: {e}", exc_info=True)
        ConsoleDisplay().display_error(f"Command execution failed: {e}")
        raise typer.Exit(code=1) from e

def _finish(ok: bool) -> None:
    if not ok:
        raise typer.Exit(code=1)

def _report_failure(ui: ConsoleDisplay, response: CommandResponse) -> bool:
    if response.get("success"):
        return True
    ui.display_error(str(response.get("error", "Unknown error")))
    return False

async def _simple(request: CommandRequest, message: str) -> bool:
    """Runs one request and prints a one-line result."""
    async with open_session() as deps:
        response = await deps['command_handler'].handle(request)
        ui = deps['ui']
        if not _report_failure(ui, response):
            return False
        ui.display_info(message.format(**response))
        return True

# --- CLI Commands ---

IdsFileOption = Annotated[
    Optional[Path],
    typer.Option("--ids-file", "-f", exists=True, dir_okay=False, readable=True,
                 help="File with one item id per line ('#' starts a comment)."),
]

@app.command()
def run(
    ids: Annotated[Optional[List[str]], typer.Argument(help="Item ids to show.")] = None,
    ids_file: IdsFileOption = None,
    live: Annotated[bool, typer.Option("--live", help="Print each item as soon as it is known.")] = False,
):
    """Show counts for items, refreshing the ones whose cache entry is stale."""
    async def body() -> bool:
        async with open_session() as deps:
            ui: ConsoleDisplay = deps['ui']
            item_ids = list(ids or [])
            if ids_file:
                item_ids.extend(await deps['file_system'].read_ids(FilePath(str(ids_file))))
            if not item_ids:
                ui.display_error("No item ids given. Pass ids as arguments or use --ids-file.")
                return False
            if live:
                deps['scheduler'].on_result = ui.display_item

            response = await deps['command_handler'].handle({"action": "refresh-all", "ids": item_ids})
            if not _report_failure(ui, response):
                return False
            if not response["enabled"]:
                ui.display_warning("Processing is disabled. Run 'cardstats enable' to turn it back on.")
                return True
            if not live:
                ui.display_items([ItemView(**item) for item in response["items"]])
            ui.display_report(BatchReport(**response["report"]))
            return True

    _finish(run_async(body()))

@app.command()
def update(
    item_id: Annotated[str, typer.Argument(help="Item id to refresh right now.")],
):
    """Refresh one item immediately, bypassing the cache, and mark it manual."""
    async def body() -> bool:
        async with open_session() as deps:
            ui: ConsoleDisplay = deps['ui']
            response = await deps['command_handler'].handle({"action": "priority-update", "item_id": item_id})
            if response.get("item"):
                ui.display_item(ItemView(**response["item"]))
            return _report_failure(ui, response)

    _finish(run_async(body()))

@app.command()
def stats():
    """Show cache and rate-limit statistics."""
    async def body() -> bool:
        async with open_session() as deps:
            ui: ConsoleDisplay = deps['ui']
            response = await deps['command_handler'].handle({"action": "get-stats"})
            if not _report_failure(ui, response):
                return False
            ui.display_stats(response)
            return True

    _finish(run_async(body()))

@app.command()
def enable():
    """Turn count processing on."""
    _finish(run_async(_simple({"action": "set-enabled", "enabled": True}, "Processing enabled.")))

@app.command()
def disable():
    """Turn count processing off; 'run' then only reports the setting."""
    _finish(run_async(_simple({"action": "set-enabled", "enabled": False}, "Processing disabled.")))

@app.command(name="export")
def export_command(
    output: Annotated[Path, typer.Argument(dir_okay=False, help="Destination JSON file.")],
):
    """Export every cache entry to a JSON file."""
    async def body() -> bool:
        async with open_session() as deps:
            ui: ConsoleDisplay = deps['ui']
            response = await deps['command_handler'].handle({"action": "export-cache"})
            if not _report_failure(ui, response):
                return False
            await deps['file_system'].write_json(FilePath(str(output)), response["data"])
            ui.display_info(f"Exported {response['count']} entries to {output}")
            return True

    _finish(run_async(body()))

@app.command(name="import")
def import_command(
    source: Annotated[Path, typer.Argument(exists=True, dir_okay=False, readable=True,
                                           help="JSON file produced by 'export'.")],
):
    """Merge entries from an exported JSON file; newer entries win."""
    async def body() -> bool:
        async with open_session() as deps:
            ui: ConsoleDisplay = deps['ui']
            try:
                data = await deps['file_system'].read_json(FilePath(str(source)))
            except ValueError as e:
                ui.display_error(f"{source} is not valid JSON: {e}")
                return False
            response = await deps['command_handler'].handle({"action": "import-cache", "data": data})
            if not _report_failure(ui, response):
                return False
            ui.display_info(f"Imported {response['imported']} of {response['received']} entries")
            return True

    _finish(run_async(body()))

@app.command(name="prune-errors")
def prune_errors_command():
    """Delete entries whose last fetch failed."""
    _finish(run_async(_simple({"action": "prune-errors"}, "Removed {removed} error entries.")))

@app.command(name="prune-old")
def prune_old_command(
    days: Annotated[float, typer.Option("--days", "-d", min=0, help="Maximum entry age in days.")] = 30,
):
    """Delete entries captured more than --days ago."""
    _finish(run_async(_simple(
        {"action": "prune-by-age", "max_age_days": days}, f"Removed {{removed}} entries older than {days:g} days."
    )))

@app.command(name="clear-cache")
def clear_cache_command(
    yes: Annotated[bool, typer.Option("--yes", "-y", help="Do not ask for confirmation.")] = False,
):
    """Delete every cache entry."""
    if not yes and not typer.confirm("Delete all cached counts?"):
        raise typer.Exit(code=0)
    _finish(run_async(_simple({"action": "clear-cache"}, "Cache cleared.")))

@app.command(name="clear-rate-limit")
def clear_rate_limit_command():
    """Forget recent requests so the full rate budget is available again."""
    _finish(run_async(_simple({"action": "clear-rate-limit"}, "Rate limit window cleared.")))

@app.command()
def call(
    request: Annotated[str, typer.Argument(help="JSON request, e.g. '{\"action\": \"get-stats\"}', or '-' for stdin.")],
):
    """Send one raw control request and print the JSON response."""
    raw = sys.stdin.read() if request == "-" else request
    try:
        payload = json.loads(raw)
    except ValueError as e:
        typer.echo(json.dumps({"success": False, "error": f"Invalid JSON request: {e}"}))
        raise typer.Exit(code=1)

    async def body() -> CommandResponse:
        async with open_session() as deps:
            return await deps['command_handler'].handle(payload)

    response = run_async(body())
    typer.echo(json.dumps(response, ensure_ascii=False))
    _finish(bool(response.get("success")))

@app.callback()
def main_callback(
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Log debug output to stderr.")] = False,
    storage_dir: Annotated[Optional[Path], typer.Option("--storage-dir", help="Override storage.dir.")] = None,
):
    """Configure logging and storage before any command runs."""
    if storage_dir is not None:
        set_config('storage.dir', str(storage_dir))
    setup_logging(
        log_level=logging.DEBUG if verbose else get_config('logging.level'),
        log_format=get_config('logging.format'),
        log_file=get_config('logging.file'),
    )

def cli_entry_point():
    """Function to be called by the script entry point in pyproject.toml."""
    app()

if __name__ == "__main__":
    cli_entry_point()
