import asyncio
import logging
from typing import Optional
from pathlib import Path
import yaml

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table
from rich.progress import Progress, BarColumn, TextColumn, TimeRemainingColumn
from rich.panel import Panel

from .config import DillingerConfig, load_config, save_config
from .database import Database
from .downloader import DOWNLOADS_KIND, DownloadManager
from .executables import scan_for_game_executables
from .models import DownloadStatus, DownloadTask, ProgressEventType, SessionStatus
from .orchestrator import Orchestrator
from .pairing import PairingCoordinator, SidecarClient
from .sessions import SessionRegistry

app = typer.Typer(name="dillinger-core", help="Container session and download orchestration for Dillinger")
console = Console()

STATUS_COLORS = {
    DownloadStatus.COMPLETED: "green",
    DownloadStatus.DOWNLOADING: "blue",
    DownloadStatus.QUEUED: "white",
    DownloadStatus.FAILED: "red",
    DownloadStatus.CANCELLED: "yellow",
    SessionStatus.RUNNING: "green",
    SessionStatus.STOPPED: "white",
    SessionStatus.ERROR: "red",
}


def setup_logging(verbose: bool = False):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True)],
    )


@app.callback()
def main(verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging")):
    setup_logging(verbose)


def _colored(status) -> str:
    color = STATUS_COLORS.get(status, "white")
    return f"[{color}]{status.value}[/{color}]"


@app.command()
def init(
    directory: Optional[Path] = typer.Argument(None, help="Directory to initialize (default: current)"),
    force: bool = typer.Option(False, "--force", "-f", help="Overwrite existing configuration")
):
    """Initialize a data directory with a default configuration"""
    if directory is None:
        directory = Path.cwd()

    directory.mkdir(parents=True, exist_ok=True)
    config_path = directory / "dillinger-config.yml"

    if config_path.exists() and not force:
        console.print(f"[red]Configuration already exists at {config_path}[/red]")
        console.print("Use --force to overwrite")
        raise typer.Exit(1)

    config = DillingerConfig()
    config.paths.data_root = directory
    config.paths.install_root = directory / "installed"
    config.paths.cache_root = directory / "storage" / "installer_cache"
    config.paths.screenshots_root = directory / "screenshots"
    config.paths.database_path = directory / "dillinger.db"

    save_config(config, config_path)
    console.print(f"[green]Initialized Dillinger data directory in {directory}[/green]")
    console.print(f"Configuration saved to {config_path}")


@app.command()
def download(
    manifest: Path = typer.Argument(..., help="YAML manifest with game_id, title, cache_dir and files"),
    config_path: Optional[Path] = typer.Option(None, "--config", help="Configuration file path"),
):
    """Download the files listed in a manifest into the installer cache"""
    asyncio.run(download_command(manifest, config_path))


async def download_command(manifest: Path, config_path: Optional[Path]):
    config = load_config(config_path)
    with open(manifest, "r", encoding="utf-8") as f:
        spec = yaml.safe_load(f) or {}

    game_id = str(spec["game_id"])
    title = spec.get("title", game_id)

    async with Database(config.paths.database_path) as db:
        async with DownloadManager(config, db) as manager:
            events = manager.subscribe(game_id)
            task = await manager.start_download(
                game_id, spec.get("cache_dir", game_id), title, spec.get("files", [])
            )
            console.print(f"[blue]Downloading {title} ({task.total_files} files) to {task.download_path}[/blue]")

            with Progress(
                TextColumn("[progress.description]{task.description}"),
                BarColumn(),
                TextColumn("[progress.percentage]{task.percentage:>3.1f}%"),
                TextColumn("•"),
                TextColumn("[blue]{task.fields[files]}[/blue]"),
                TimeRemainingColumn(),
                console=console,
            ) as progress:
                bar = progress.add_task(title[:30], total=100, files=f"0/{task.total_files}")
                async for event in events:
                    payload = event.payload
                    progress.update(
                        bar,
                        completed=payload["total_progress_percent"],
                        files=f"{payload['completed_files']}/{payload['total_files']}",
                    )
                    if event.type == ProgressEventType.ERROR:
                        console.print(f"[red]Download failed: {payload.get('error')}[/red]")
                        raise typer.Exit(1)

    console.print(f"[green]Download of {title} complete[/green]")


@app.command()
def downloads(
    config_path: Optional[Path] = typer.Option(None, "--config", help="Configuration file path")
):
    """List persisted download tasks"""
    asyncio.run(downloads_command(config_path))


async def downloads_command(config_path: Optional[Path]):
    config = load_config(config_path)
    async with Database(config.paths.database_path) as db:
        records = await db.list_entities(DOWNLOADS_KIND)
        tasks = sorted((DownloadTask.model_validate(r) for r in records), key=lambda t: t.queued_at)

        if not tasks:
            console.print("[yellow]No downloads recorded[/yellow]")
            return

        table = Table(title="Downloads")
        table.add_column("Game", style="cyan", no_wrap=True)
        table.add_column("Title", style="white")
        table.add_column("Files", style="blue")
        table.add_column("Progress", style="yellow")
        table.add_column("Status", style="magenta")
        for task in tasks:
            table.add_row(
                task.game_id,
                task.title[:50] + "..." if len(task.title) > 50 else task.title,
                f"{task.completed_files}/{task.total_files}",
                f"{task.total_progress_percent:.1f}%",
                _colored(task.status),
            )
        console.print(table)


@app.command()
def sessions(
    status: Optional[SessionStatus] = typer.Option(None, "--status", "-s", help="Filter by status"),
    config_path: Optional[Path] = typer.Option(None, "--config", help="Configuration file path"),
):
    """List recorded game sessions"""
    asyncio.run(sessions_command(status, config_path))


async def sessions_command(status: Optional[SessionStatus], config_path: Optional[Path]):
    config = load_config(config_path)
    async with Database(config.paths.database_path) as db:
        registry = SessionRegistry(db)
        await registry.load()
        rows = registry.list(status=status)

        if not rows:
            console.print("[yellow]No sessions recorded[/yellow]")
            return

        table = Table(title="Game Sessions")
        table.add_column("Session", style="cyan", no_wrap=True)
        table.add_column("Game", style="white")
        table.add_column("Purpose", style="blue")
        table.add_column("Container", style="green")
        table.add_column("Duration", style="yellow")
        table.add_column("Status", style="magenta")
        for session in rows:
            duration = session.performance.duration_seconds
            table.add_row(
                session.id,
                session.game_id,
                session.purpose.value,
                (session.container_id or "-")[:12],
                f"{duration}s" if duration is not None else "-",
                _colored(session.status),
            )
        console.print(table)


@app.command()
def stats(
    game_id: str = typer.Argument(..., help="Game id"),
    config_path: Optional[Path] = typer.Option(None, "--config", help="Configuration file path"),
):
    """Show play time totals for a game"""
    asyncio.run(stats_command(game_id, config_path))


async def stats_command(game_id: str, config_path: Optional[Path]):
    config = load_config(config_path)
    async with Database(config.paths.database_path) as db:
        registry = SessionRegistry(db)
        await registry.load()
        result = registry.stats(game_id)

    last_played = result.last_played.strftime("%Y-%m-%d %H:%M") if result.last_played else "never"
    console.print(f"[bold]{game_id}[/bold]")
    console.print(f"  Sessions:     {result.total_sessions}")
    console.print(f"  Play time:    {result.total_play_time_seconds}s")
    console.print(f"  Average:      {result.average_session_seconds:.0f}s")
    console.print(f"  Last played:  {last_played}")


@app.command()
def cleanup(
    volumes: bool = typer.Option(True, "--volumes/--no-volumes", help="Also remove orphaned volumes"),
    config_path: Optional[Path] = typer.Option(None, "--config", help="Configuration file path"),
):
    """Remove stopped Dillinger containers and orphaned volumes"""
    asyncio.run(cleanup_command(volumes, config_path))


async def cleanup_command(volumes: bool, config_path: Optional[Path]):
    config = load_config(config_path)
    async with Database(config.paths.database_path) as db:
        registry = SessionRegistry(db)
        await registry.load()
        orchestrator = Orchestrator(config, db, registry)
        try:
            containers = await orchestrator.cleanup_stopped_containers()
            console.print(f"[green]Removed {containers.removed} stopped containers[/green]")
            for name in containers.items:
                console.print(f"  • {name}")
            if volumes:
                orphaned = await orchestrator.cleanup_orphaned_volumes()
                console.print(f"[green]Removed {orphaned.removed} orphaned volumes[/green]")
                for name in orphaned.items:
                    console.print(f"  • {name}")
        finally:
            await orchestrator.aclose()


@app.command()
def scan(
    path: Path = typer.Argument(..., help="Install directory to scan"),
    limit: int = typer.Option(10, "--limit", "-l", help="Maximum number of results"),
):
    """Rank candidate game executables in an install directory"""
    executables = scan_for_game_executables(path)
    if not executables:
        console.print(f"[yellow]No executables found in {path}[/yellow]")
        raise typer.Exit(1)

    table = Table(title=f"Executables in {path}")
    table.add_column("#", style="cyan", no_wrap=True)
    table.add_column("Path", style="white")
    for index, relative in enumerate(executables[:limit], 1):
        table.add_row(str(index), relative)
    console.print(table)


@app.command()
def pair(
    pin: str = typer.Argument(..., help="4-digit PIN shown by Moonlight"),
    secret: Optional[str] = typer.Option(None, "--secret", help="Pair secret (default: oldest pending)"),
    config_path: Optional[Path] = typer.Option(None, "--config", help="Configuration file path"),
):
    """Accept a Moonlight pairing request"""
    asyncio.run(pair_command(pin, secret, config_path))


async def pair_command(pin: str, secret: Optional[str], config_path: Optional[Path]):
    config = load_config(config_path)
    async with Database(config.paths.database_path) as db:
        async with SidecarClient(config.streaming.sidecar_url, config.timeouts.sidecar) as sidecar:
            result = await PairingCoordinator(db, sidecar).pair(secret, pin)
    if result.success:
        console.print(f"[green]{result.message}[/green]")
    else:
        console.print(f"[red]{result.message}[/red]")
        raise typer.Exit(1)


@app.command("pairing-status")
def pairing_status(
    config_path: Optional[Path] = typer.Option(None, "--config", help="Configuration file path"),
):
    """Show streaming sidecar readiness and paired clients"""
    asyncio.run(pairing_status_command(config_path))


async def pairing_status_command(config_path: Optional[Path]):
    config = load_config(config_path)
    async with Database(config.paths.database_path) as db:
        async with SidecarClient(config.streaming.sidecar_url, config.timeouts.sidecar) as sidecar:
            status = await PairingCoordinator(db, sidecar).status()

    if not status.sidecar_reachable:
        console.print(Panel(
            f"[red]Sidecar not reachable[/red]\n{status.error}",
            title="Streaming",
            border_style="red",
        ))
        return

    pending = "\n".join(f"  • {p.pair_secret} ({p.client_ip or 'unknown ip'})" for p in status.pending) or "  none"
    paired = "\n".join(f"  • {c.name or c.id}" for c in status.paired) or "  none"
    console.print(Panel(
        f"[bold]Pending requests:[/bold]\n{pending}\n\n[bold]Paired clients:[/bold]\n{paired}",
        title="Streaming",
        border_style="blue",
    ))


if __name__ == "__main__":
    app()
