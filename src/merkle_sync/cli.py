"""CLI for Merkle Sync."""

import asyncio
import shutil
import sys
import time
from pathlib import Path

import click
import requests
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from . import STATE_DIR, __version__
from .client import SyncClient, SyncResult
from .config import get_state_dir, load_config, load_server_settings, save_config
from .errors import SyncError
from .logging_config import configure_logging
from .state import TreeStateStore
from .watcher import MerkleWatcher, WatchdogChangeWatcher

console = Console()
error_console = Console(stderr=True)


def get_project_root() -> Path:
    """Get the project root directory (current working directory)."""
    return Path.cwd()


def is_initialized(project_root: Path) -> bool:
    """Check if merkle-sync is initialized in the project."""
    return get_state_dir(project_root).exists()


def require_initialized(project_root: Path) -> None:
    """Exit with an error if merkle-sync is not initialized."""
    if not is_initialized(project_root):
        error_console.print(
            "[red]Error:[/red] Not initialized. Run [bold]merkle-sync init[/bold] first."
        )
        sys.exit(1)


@click.group()
@click.version_option(version=__version__, prog_name="merkle-sync")
@click.option("--verbose", "-v", is_flag=True, help="Verbose logging")
def main(verbose: bool) -> None:
    """Merkle Sync - Keep a remote code index in sync with minimal transfer."""
    configure_logging(verbose, console=error_console)


@main.command()
@click.option("--server-url", default=None, help="URL of the remote index")
@click.option("--force", is_flag=True, help="Overwrite existing configuration")
def init(server_url: str | None, force: bool) -> None:
    """Initialize merkle-sync in the current project."""
    project_root = get_project_root()
    state_dir = get_state_dir(project_root)

    if state_dir.exists() and not force:
        error_console.print(
            f"[yellow]Warning:[/yellow] {STATE_DIR}/ already exists. Use --force to reinitialize."
        )
        sys.exit(1)

    config = load_config(project_root)
    if server_url:
        config.server_url = server_url
    save_config(config, project_root)
    _update_gitignore(project_root)

    console.print(
        Panel(
            f"[green]Initialized Merkle Sync[/green]\n\n"
            f"Server: [bold]{config.server_url}[/bold]\n"
            f"State directory: [dim]{state_dir}[/dim]\n\n"
            f"Next steps:\n"
            f"  1. Export [bold]MERKLE_SYNC_TOKEN[/bold]\n"
            f"  2. Run [bold]merkle-sync sync[/bold] for the first upload\n"
            f"  3. Run [bold]merkle-sync watch[/bold] to track changes",
            title="merkle-sync init",
        )
    )


@main.command()
@click.option("--show-tree", is_flag=True, help="Print the tree structure")
def build(show_tree: bool) -> None:
    """Rebuild the merkle tree from disk."""
    project_root = get_project_root()
    require_initialized(project_root)
    config = load_config(project_root)

    watcher = MerkleWatcher(
        project_root, TreeStateStore(project_root), config.extensions, config.ignore_patterns
    )
    root = watcher.rebuild()
    console.print(f"Merkle root: [bold]{root}[/bold] ({len(watcher.tree)} files)")
    if show_tree:
        console.print(watcher.tree.render())


@main.command()
def status() -> None:
    """Show tree state and pending changes."""
    project_root = get_project_root()
    require_initialized(project_root)

    config = load_config(project_root)
    store = TreeStateStore(project_root)
    snapshot = store.load()
    queue = store.load_queue()
    project = store.load_project()

    table = Table(title="Merkle Sync Status")
    table.add_column("Property", style="cyan")
    table.add_column("Value")

    table.add_row("Project root", str(project_root))
    table.add_row("Server", config.server_url)
    table.add_row("Project id", project.project_id if project else "[yellow]not synced yet[/yellow]")
    if snapshot:
        table.add_row("Merkle root", snapshot.root)
        table.add_row("Tracked files", str(len(snapshot.leaves)))
        table.add_row("Snapshot taken", snapshot.taken_at.isoformat())
    else:
        table.add_row("Merkle root", "[yellow]No tree state - run 'merkle-sync build'[/yellow]")
    table.add_row("Pending files", str(len(queue.pending)))
    table.add_row(
        "Last sync", queue.last_synced_at.isoformat() if queue.last_synced_at else "[dim]never[/dim]"
    )

    console.print(table)
    for leaf_id in sorted(queue.pending):
        console.print(f"  [dim]-[/dim] {leaf_id}")


@main.command()
def sync() -> None:
    """Sync changed fragments with the remote index."""
    project_root = get_project_root()
    require_initialized(project_root)
    config = load_config(project_root)

    try:
        result = SyncClient(project_root, config).sync()
    except SyncError as e:
        error_console.print(f"[red]Error:[/red] {e.message}")
        sys.exit(1)
    except requests.RequestException as e:
        error_console.print(f"[red]Error:[/red] Could not reach {config.server_url}: {e}")
        sys.exit(1)
    _print_result(result)


@main.command()
@click.argument("query")
@click.option("--num-results", "-n", default=10, type=click.IntRange(1, 100), help="Number of results")
def search(query: str, num_results: int) -> None:
    """Search the remote index of this project."""
    project_root = get_project_root()
    require_initialized(project_root)
    config = load_config(project_root)

    try:
        response = SyncClient(project_root, config).search(query, top_k=num_results)
    except SyncError as e:
        error_console.print(f"[red]Error:[/red] {e.message}")
        sys.exit(1)
    except requests.RequestException as e:
        error_console.print(f"[red]Error:[/red] Could not reach {config.server_url}: {e}")
        sys.exit(1)

    if not response.results:
        console.print("[dim]No results.[/dim]")
        return

    table = Table(title=f"Results for {query!r}")
    table.add_column("Score", justify="right", style="cyan")
    table.add_column("Location")
    table.add_column("Summary")
    for hit in response.results:
        start, end = hit.line_range
        table.add_row(f"{hit.score:.3f}", f"{hit.file_path or hit.hash[:12]}:{start}-{end}", hit.summary)
    console.print(table)


@main.command()
@click.option("--sync", "auto_sync", is_flag=True, help="Periodically sync while watching")
@click.option(
    "--sync-every",
    type=float,
    default=None,
    help="Seconds between syncs (implies --sync; default: sync_interval_seconds from config)",
)
def watch(auto_sync: bool, sync_every: float | None) -> None:
    """Watch the project and keep the merkle tree current."""
    project_root = get_project_root()
    require_initialized(project_root)
    config = load_config(project_root)
    store = TreeStateStore(project_root)
    interval = sync_every or (config.sync_interval_seconds if auto_sync else None)

    def on_change(relative_path: str, new_root: str) -> None:
        console.print(f"[cyan]changed[/cyan] {relative_path}  root {new_root[:16]}")

    merkle_watcher = MerkleWatcher(
        project_root, store, config.extensions, config.ignore_patterns, on_change=on_change
    )
    root = merkle_watcher.start()
    console.print(f"Merkle root: [bold]{root[:16]}[/bold]. Watching [dim]{project_root}[/dim]")

    client = SyncClient(project_root, config, store=store) if interval else None
    change_watcher = WatchdogChangeWatcher()
    stream = change_watcher.subscribe(project_root, config.extensions, config.ignore_patterns)
    next_sync = time.monotonic() + interval if interval else None

    # Events and syncs run on this thread: the tree state has a single writer
    try:
        while True:
            event = stream.get(timeout=1.0)
            if event is not None:
                merkle_watcher.handle_event(event)
            if client is not None and next_sync is not None and time.monotonic() >= next_sync:
                try:
                    _print_result(client.sync())
                except SyncError as e:
                    error_console.print(f"[red]Sync failed:[/red] {e.message}")
                except requests.RequestException as e:
                    error_console.print(f"[red]Sync failed:[/red] {e}")
                next_sync = time.monotonic() + interval
    except KeyboardInterrupt:
        console.print("[dim]Stopping...[/dim]")
    finally:
        change_watcher.unsubscribe()


@main.command()
@click.option("--host", default=None, help="Bind address")
@click.option("--port", default=None, type=int, help="Bind port")
@click.option(
    "--store",
    type=click.Choice(["memory", "lance"]),
    default=None,
    help="KV backend for roots and caches",
)
@click.option("--store-path", default=None, help="Directory for the lance store")
def serve(host: str | None, port: int | None, store: str | None, store_path: str | None) -> None:
    """Run the remote index server."""
    import uvicorn

    from .server import build_app, create_index, create_store

    settings = load_server_settings(host=host, port=port, store=store, store_path=store_path)
    kv_store = create_store(settings)
    index = create_index(settings)

    # The entry point owns the store lifecycle, not the app
    asyncio.run(kv_store.open())
    asyncio.run(index.open())
    try:
        app = build_app(settings, kv_store, index)
        console.print(
            f"Serving on [bold]http://{settings.host}:{settings.port}[/bold] "
            f"(store: {settings.store})"
        )
        uvicorn.run(app, host=settings.host, port=settings.port, log_config=None)
    finally:
        asyncio.run(index.close())
        asyncio.run(kv_store.close())


@main.command()
@click.option("--force", "-f", is_flag=True, help="Skip confirmation prompt")
def clean(force: bool) -> None:
    """Remove the .merkle-sync directory."""
    project_root = get_project_root()
    state_dir = get_state_dir(project_root)

    if not state_dir.exists():
        console.print(f"[dim]Nothing to clean - {STATE_DIR}/ does not exist.[/dim]")
        return

    if not force:
        if not click.confirm(f"Remove {state_dir}?"):
            console.print("[dim]Cancelled.[/dim]")
            return

    shutil.rmtree(state_dir)
    console.print(f"[green]Removed {STATE_DIR}/[/green]")


def _print_result(result: SyncResult) -> None:
    table = Table(title="Sync Complete")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")

    table.add_row("Merkle root", result.merkle_root[:16])
    table.add_row("Chunks considered", str(result.chunks_total))
    table.add_row("Chunks sent", str(result.chunks_needed))
    table.add_row("Chunks already cached", str(result.chunks_cached))

    console.print(table)
    console.print(f"[green]{result.message}[/green]")


def _update_gitignore(project_root: Path) -> None:
    """Add .merkle-sync/ to .gitignore if not already present."""
    gitignore_path = project_root / ".gitignore"
    entry = f"{STATE_DIR}/"

    if gitignore_path.exists():
        content = gitignore_path.read_text()
        if entry in content or STATE_DIR in content:
            return  # Already present
        with open(gitignore_path, "a") as f:
            f.write(f"\n# Merkle Sync\n{entry}\n")
    else:
        gitignore_path.write_text(f"# Merkle Sync\n{entry}\n")


if __name__ == "__main__":
    main()
