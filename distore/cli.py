"""
Distore CLI

Command-line interface for storing files in a Discord channel.

Usage:
    distore config token TOKEN         # Set token for this directory
    distore config --global channel ID # Set channel for every directory
    distore upload FILE                # Store a file, print its reference
    distore download REFERENCE         # Rebuild a stored file
    distore list                       # List stored files in the channel
    distore info REFERENCE             # Show a stored file's manifest
    distore disassemble FILE           # Split into local .part files
    distore assemble NAME              # Join local .part files
    distore serve                      # Run the HTTP API
"""

import asyncio
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional

import click
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.progress import BarColumn, Progress, SpinnerColumn, TextColumn
from rich.table import Table

from . import __version__
from .config import ConfigStore, Credentials, Settings
from .errors import ConfigError, DistoreError, DownloadFailed, UploadFailed
from .file.chunker import assemble as assemble_parts
from .file.chunker import disassemble as disassemble_file
from .file.chunker import validate_chunk_size
from .logging_config import setup_logging
from .store import ObjectStore
from .transfer.progress import TransferProgress

console = Console()
logger = logging.getLogger(__name__)

# Exit code for local filesystem failures such as permission denied
FILE_ERROR_EXIT_CODE = 9

# (credentials, settings, concurrency) -> ObjectStore
StoreFactory = Callable[[Credentials, Settings, Optional[int]], ObjectStore]


def discord_store(credentials: Credentials, settings: Settings,
                  concurrency: Optional[int] = None) -> ObjectStore:
    return ObjectStore.for_discord(credentials.token, credentials.channel,
                                   settings, concurrency=concurrency)


def format_size(bytes_count: int) -> str:
    """Format bytes as human-readable size."""
    for unit in ['B', 'KB', 'MB', 'GB', 'TB']:
        if bytes_count < 1024:
            return f"{bytes_count:.1f} {unit}"
        bytes_count /= 1024
    return f"{bytes_count:.1f} PB"


def mask(value: str) -> str:
    if len(value) <= 8:
        return '***'
    return f"{value[:4]}...{value[-4:]}"


def report_error(error: DistoreError) -> int:
    """Print a distinct message for each error kind and return its exit code."""
    if isinstance(error, (UploadFailed, DownloadFailed)) and error.retried:
        console.print(f"[red]✗ {error.label} (retried, giving up):[/red] {error.message}")
        cause = error.__cause__
        if cause is not None:
            console.print(f"[dim]  last error: {cause}[/dim]")
    elif isinstance(error, ConfigError):
        console.print(f"[red]✗ {error.label}:[/red] {error.message}")
        console.print("[dim]  fix the configuration and run again; nothing was retried[/dim]")
    else:
        console.print(f"[red]✗ {error.label}:[/red] {error.message}")
    return error.exit_code


def report_os_error(error: OSError) -> int:
    console.print(f"[red]✗ file error:[/red] {escape(str(error))}")
    console.print("[dim]  check the path and its permissions[/dim]")
    return FILE_ERROR_EXIT_CODE


def run_command(ctx: click.Context, coro_fn):
    """Run an async command body and turn store and file errors into exit codes."""
    try:
        return asyncio.run(coro_fn())
    except DistoreError as e:
        logger.debug("Command failed", exc_info=True)
        ctx.exit(report_error(e))
    except OSError as e:
        logger.debug("Command failed", exc_info=True)
        ctx.exit(report_os_error(e))


def open_store(ctx: click.Context, token: Optional[str], channel: Optional[str],
               concurrency: Optional[int] = None) -> ObjectStore:
    obj = ctx.obj
    credentials = obj['config_store'].resolve(token=token, channel=channel)
    return obj['store_factory'](credentials, obj['settings'], concurrency)


def make_progress() -> Progress:
    return Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        TextColumn("{task.completed}/{task.total} chunks"),
        console=console,
    )


def progress_updater(progress: Progress, task, verb: str):
    def update(p: TransferProgress):
        progress.update(
            task,
            total=max(p.total_chunks, 1),
            completed=p.completed_chunks if p.total_chunks else (1 if p.phase == "complete" else 0),
            description=f"{verb} {p.file_name} ({p.phase}, "
                        f"{format_size(p.bytes_transferred)} of {format_size(p.total_bytes)})",
        )
    return update


credential_options = [
    click.option('--token', '-t', default=None, help='Bot token (overrides config)'),
    click.option('--channel', '-c', default=None, help='Channel id (overrides config)'),
]


def with_credentials(fn):
    for option in reversed(credential_options):
        fn = option(fn)
    return fn


@click.group()
@click.version_option(__version__, prog_name='distore')
@click.option('-v', '--verbose', is_flag=True, help='Enable verbose output')
@click.option('--config-directory', type=click.Path(file_okay=False, path_type=Path),
              default=None, help='Custom config directory to use')
@click.pass_context
def cli(ctx, verbose, config_directory):
    """Distore - store files in a Discord channel."""
    setup_logging(verbose, console=console)
    ctx.ensure_object(dict)
    try:
        ctx.obj.setdefault('settings', Settings.from_env())
    except ConfigError as e:
        ctx.exit(report_error(e))
    ctx.obj.setdefault('config_store', ConfigStore(config_directory))
    ctx.obj.setdefault('store_factory', discord_store)


@cli.command()
@click.option('--global', '-g', 'is_global', is_flag=True,
              help='Read or set the value for every directory')
@click.argument('key', required=False)
@click.argument('value', required=False)
@click.pass_context
def config(ctx, is_global, key, value):
    """Print or set config values. Keys: token, channel."""
    store: ConfigStore = ctx.obj['config_store']

    if key is not None and value is None:
        raise click.UsageError("KEY requires a VALUE")

    try:
        if key is None:
            values = store.get_global() if is_global else store.get_current()
            token = values.get('token')
            console.print(f"Token: {mask(token) if token else '[yellow]not set[/yellow]'}")
            console.print(f"Channel: {values.get('channel') or '[yellow]not set[/yellow]'}")
            return

        store.set(key, value, directory=None if is_global else Path.cwd())
    except ConfigError as e:
        ctx.exit(report_error(e))

    shown = mask(value) if key.lower() == 'token' else value
    scope = "globally" if is_global else f"for {Path.cwd()}"
    console.print(f"[green]Set[/green] {key.lower()}: {shown} {scope}")


@cli.command()
@click.argument('file_path', type=click.Path(exists=True, dir_okay=False, path_type=Path))
@with_credentials
@click.option('--chunk-size', type=int, default=None, help='Bytes per chunk')
@click.option('--concurrency', '-j', type=int, default=None, help='Parallel uploads')
@click.pass_context
def upload(ctx, file_path, token, channel, chunk_size, concurrency):
    """Upload a file to the channel."""

    async def run():
        store = open_store(ctx, token, channel, concurrency)
        async with store:
            with make_progress() as progress:
                task = progress.add_task(f"Uploading {file_path.name}", total=None)
                root = await store.upload(
                    file_path,
                    chunk_size=chunk_size,
                    progress_callback=progress_updater(progress, task, "Uploading"),
                )

        console.print(Panel.fit(
            f"[bold green]File Uploaded[/bold green]\n\n"
            f"Name: [cyan]{file_path.name}[/cyan]\n"
            f"Size: [yellow]{file_path.stat().st_size:,} bytes[/yellow]\n\n"
            f"[bold]Reference (keep this):[/bold]\n"
            f"[green]{root}[/green]",
            title="Uploaded"
        ))
        return root

    run_command(ctx, run)


@cli.command()
@click.argument('reference')
@click.option('--output', '-o', type=click.Path(path_type=Path), default=None,
              help='Output file or directory')
@with_credentials
@click.option('--concurrency', '-j', type=int, default=None, help='Parallel downloads')
@click.pass_context
def download(ctx, reference, output, token, channel, concurrency):
    """Download a stored file by its reference."""

    async def run():
        store = open_store(ctx, token, channel, concurrency)
        async with store:
            with make_progress() as progress:
                task = progress.add_task("Fetching manifest", total=None)
                manifest = await store.fetch_manifest(reference)
                destination = store.downloader.resolve_destination(output, manifest)
                written = await store.downloader.restore(
                    manifest,
                    destination,
                    progress_callback=progress_updater(progress, task, "Downloading"),
                )

        console.print(f"[green]✓ Downloaded {written:,} bytes to {destination}[/green]")
        console.print("[green]✓ Integrity verified[/green] (sha256 "
                      f"{manifest.whole_file_hash[:16]}...)")
        return written

    run_command(ctx, run)


@cli.command('list')
@with_credentials
@click.option('--limit', '-n', type=int, default=None, help='Show at most N files')
@click.option('--after', 'cursor', default=None, help='Continue from a cursor')
@click.pass_context
def list_files(ctx, token, channel, limit, cursor):
    """List files stored in the channel."""

    async def run():
        store = open_store(ctx, token, channel)
        async with store:
            logger.info("Retrieving messages...")
            entries = await store.list_files(limit=limit, cursor=cursor)

        if not entries:
            console.print("[yellow]No stored files[/yellow]")
            return entries

        table = Table(title=f"Stored Files (channel {store.channel})")
        table.add_column("Reference", style="green")
        table.add_column("Name", style="cyan")
        table.add_column("Size", justify="right", style="yellow")
        table.add_column("Chunks", justify="right")
        table.add_column("Uploaded")

        for entry in entries:
            table.add_row(
                str(entry.root),
                entry.file_name,
                format_size(entry.total_size),
                str(entry.chunk_count),
                entry.published_at.astimezone(timezone.utc).strftime('%Y-%m-%d %H:%M:%S UTC'),
            )

        console.print(table)
        if limit is not None and len(entries) >= limit:
            console.print(f"[dim]More may exist: --after {entries[-1].cursor}[/dim]")
        return entries

    run_command(ctx, run)


@cli.command()
@click.argument('reference')
@with_credentials
@click.pass_context
def info(ctx, reference, token, channel):
    """Show the manifest of a stored file."""

    async def run():
        store = open_store(ctx, token, channel)
        async with store:
            manifest = await store.fetch_manifest(reference)

        created = datetime.fromtimestamp(manifest.created_at, tz=timezone.utc)
        console.print(Panel.fit(
            f"Name: [cyan]{manifest.file_name}[/cyan]\n"
            f"Size: [yellow]{manifest.total_size:,} bytes[/yellow]\n"
            f"Chunks: [yellow]{manifest.chunk_count}[/yellow] x "
            f"{format_size(manifest.chunk_size)}\n"
            f"SHA-256: [green]{manifest.whole_file_hash}[/green]\n"
            f"Created: {created:%Y-%m-%d %H:%M:%S} UTC\n"
            f"Format: v{manifest.format_version}",
            title=str(store.parse_reference(reference)),
        ))
        return manifest

    run_command(ctx, run)


@cli.command()
@click.argument('file_path', type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option('--output-directory', '-o', type=click.Path(file_okay=False, path_type=Path),
              default=Path('.'), help='Directory for the part files')
@click.option('--chunk-size', type=int, default=None, help='Bytes per part')
@click.pass_context
def disassemble(ctx, file_path, output_directory, chunk_size):
    """Split a file into '.part' files."""
    settings: Settings = ctx.obj['settings']
    limits = settings.limits()
    try:
        if chunk_size is None:
            chunk_size = settings.chunk_size
        if chunk_size is None:
            chunk_size = limits.max_chunk_size
        size = validate_chunk_size(chunk_size, limits)
        parts = disassemble_file(file_path, output_directory, size)
    except DistoreError as e:
        ctx.exit(report_error(e))
    except OSError as e:
        ctx.exit(report_os_error(e))

    for part in parts:
        logger.info(f"Wrote {part}")
    console.print(f"[green]Disassembled[/green] {file_path.name} into {len(parts)} parts")


@cli.command()
@click.argument('file_name')
@click.option('--parts', '-p', 'parts_dir', type=click.Path(exists=True, file_okay=False,
              path_type=Path), default=Path('.'), help='Directory holding the part files')
@click.option('--output', '-o', type=click.Path(path_type=Path), default=None,
              help='Output file')
@click.pass_context
def assemble(ctx, file_name, parts_dir, output):
    """Assemble '.part' files into the original file."""
    try:
        result = assemble_parts(file_name, parts_dir, output)
    except DistoreError as e:
        ctx.exit(report_error(e))
    except OSError as e:
        ctx.exit(report_os_error(e))

    console.print(f"[green]Assembled[/green] {file_name} into {result}")


@cli.command()
@click.option('--host', default='127.0.0.1', help='Bind address')
@click.option('--port', type=int, default=None, help='API port')
@with_credentials
@click.pass_context
def serve(ctx, host, port, token, channel):
    """Run the HTTP API."""
    from .api import run_api_server

    settings: Settings = ctx.obj['settings']
    try:
        store = open_store(ctx, token, channel)
    except DistoreError as e:
        ctx.exit(report_error(e))

    if port is None:
        port = settings.api_port
    console.print(f"[dim]REST API available at http://{host}:{port} "
                  f"(docs at /docs)[/dim]")
    try:
        asyncio.run(run_api_server(store, host=host, port=port))
    except KeyboardInterrupt:
        console.print("\n[yellow]Shutting down...[/yellow]")


def main():
    cli(obj={})


if __name__ == '__main__':
    sys.exit(main())
