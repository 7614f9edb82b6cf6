# === NAVMAP v1 ===
# {
#   "module": "RangeRelay.cli",
#   "purpose": "Typer command line for downloading, serving, and uploading files",
#   "sections": [
#     {"id": "clicontext", "name": "CliContext", "anchor": "class-clicontext", "kind": "class"},
#     {"id": "main", "name": "main", "anchor": "function-main", "kind": "function"},
#     {"id": "download", "name": "download", "anchor": "function-download", "kind": "function"},
#     {"id": "serve", "name": "serve", "anchor": "function-serve", "kind": "function"},
#     {"id": "upload", "name": "upload", "anchor": "function-upload", "kind": "function"}
#   ]
# }
# === /NAVMAP ===

"""Command line interface for the relay engine.

Provides a Typer CLI with:
- Global options (-v/-vv, --version)
- Settings loaded from defaults and ``RANGERELAY_*`` environment variables
- ``download``: chunked range download of one URL
- ``serve``: byte-range HTTP serving of a local file
- ``upload``: streaming upload of a (possibly growing) file

Example:
    $ rangerelay -v download https://example.org/video.mp4 video.mp4
"""

from __future__ import annotations

import threading
import time
from pathlib import Path
from typing import Dict, List, Optional

import typer
from rich.console import Console

from . import __version__
from .cancellation import CancellationToken
from .download import ChunkDownloadEngine
from .errors import ConfigurationError, RangeRelayError
from .formats import MediaSource
from .invoker_pool import HttpInvoker, InvokerPool
from .logging_config import setup_logging
from .partitioned_file import PartitionedFile
from .server import PartialContentServer
from .settings import RelaySettings, load_settings
from .upload import StreamUploader

_console = Console()


class CliContext:
    """Shared state for one invocation: settings, verbosity, console."""

    def __init__(self, settings: RelaySettings, verbosity: int = 0) -> None:
        self.settings = settings
        self.verbosity = verbosity
        self.console = _console

    def log_info(self, message: str) -> None:
        if self.verbosity >= 1:
            self.console.print(f"[cyan]INFO: {message}[/cyan]")


app = typer.Typer(
    name="rangerelay",
    help="Chunked range downloads, partial-content serving, and streaming uploads",
    no_args_is_help=True,
)


def _fail(error: Exception) -> None:
    _console.print(f"[red]Error: {error}[/red]")
    raise typer.Exit(1)


def _get_context(ctx: typer.Context) -> CliContext:
    if not isinstance(ctx.obj, CliContext):
        raise RuntimeError("CLI context not initialized")
    return ctx.obj


def _parse_headers(values: List[str]) -> Dict[str, str]:
    headers: Dict[str, str] = {}
    for value in values:
        name, sep, content = value.partition(":")
        if not sep or not name.strip():
            raise typer.BadParameter(f"expected NAME:VALUE, got {value!r}", param_hint="--header")
        headers[name.strip()] = content.strip()
    return headers


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"rangerelay {__version__}")
        raise typer.Exit(0)


@app.callback()
def main(
    ctx: typer.Context,
    verbosity: int = typer.Option(
        0,
        "--verbose",
        "-v",
        count=True,
        help="Increase verbosity (-v for INFO, -vv for DEBUG)",
    ),
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        callback=_version_callback,
        is_eager=True,
        help="Show version and exit",
    ),
) -> None:
    """Move large media objects with parallel range requests."""
    try:
        settings = load_settings()
    except ConfigurationError as exc:
        _fail(exc)
    if verbosity >= 2:
        settings.logging.level = "DEBUG"
    elif verbosity == 1:
        settings.logging.level = "INFO"
    else:
        settings.logging.level = "WARNING"
    setup_logging(settings.logging)
    ctx.obj = CliContext(settings=settings, verbosity=verbosity)


@app.command()
def download(
    ctx: typer.Context,
    url: str = typer.Argument(..., help="Source URL"),
    output: Path = typer.Argument(..., help="Destination file"),
    chunk_size: Optional[int] = typer.Option(None, "--chunk-size", min=1, help="Part size in bytes"),
    concurrency: Optional[int] = typer.Option(
        None, "--concurrency", "-c", min=1, max=64, help="Parallel workers"
    ),
    header: List[str] = typer.Option([], "--header", "-H", help="Request header as NAME:VALUE"),
) -> None:
    """Download URL into OUTPUT with parallel range requests."""
    context = _get_context(ctx)
    config = context.settings.download.model_copy()
    if concurrency is not None:
        config.concurrency = concurrency
    source = MediaSource(url=url, headers=_parse_headers(header), chunk_size_hint=chunk_size or 0)
    target = PartitionedFile(output)
    context.log_info(f"Downloading {url} with {config.concurrency} workers")
    try:
        report = ChunkDownloadEngine(config).download(source, target)
    except RangeRelayError as exc:
        _fail(exc)
    rate = report.size / report.elapsed_sec if report.elapsed_sec > 0 else 0.0
    context.console.print(
        f"[green]✓[/green] {report.path} {report.size} bytes in {report.parts} parts "
        f"({report.elapsed_sec:.2f}s, {rate / 1024 / 1024:.2f} MiB/s)"
    )


@app.command()
def serve(
    ctx: typer.Context,
    path: Path = typer.Argument(..., exists=True, dir_okay=False, help="File to serve"),
    host: Optional[str] = typer.Option(None, "--host", help="Bind address"),
    port: Optional[int] = typer.Option(None, "--port", min=0, max=65535, help="Bind port"),
    route: str = typer.Option("/file", "--route", help="URL path of the file"),
) -> None:
    """Serve PATH with HTTP byte-range support until interrupted."""
    context = _get_context(ctx)
    config = context.settings.server.model_copy()
    if host is not None:
        config.host = host
    if port is not None:
        config.port = port
    pfile = PartitionedFile.from_existing(path)
    stop = threading.Event()
    with PartialContentServer(config) as server:
        server.add_file(route, pfile)
        context.console.print(f"Serving [bold]{path}[/bold] at {server.url_for(route)}")
        try:
            stop.wait()
        except KeyboardInterrupt:
            context.console.print("Stopped")


@app.command()
def upload(
    ctx: typer.Context,
    path: Path = typer.Argument(..., help="File to upload; it may still be growing"),
    endpoint: str = typer.Argument(..., help="HTTP sink receiving the parts"),
    part_size: Optional[int] = typer.Option(None, "--part-size", min=1, help="Part size in bytes"),
    done_file: Optional[Path] = typer.Option(
        None, "--done-file", help="Treat PATH as complete once this file exists"
    ),
    concurrency: Optional[int] = typer.Option(None, "--concurrency", min=1, max=32),
) -> None:
    """Upload PATH to ENDPOINT part by part while it is being written."""
    context = _get_context(ctx)
    streaming = context.settings.streaming
    done = threading.Event()
    token = CancellationToken()

    if done_file is None:
        done.set()
    else:

        def _watch() -> None:
            while not token.is_cancelled():
                if done_file.exists():
                    done.set()
                    return
                time.sleep(streaming.poll_interval_sec or 0.01)

        threading.Thread(target=_watch, name="rangerelay-done-watch", daemon=True).start()

    uploader = StreamUploader(
        InvokerPool(),
        part_size=part_size or streaming.upload_part_size,
        concurrency=concurrency or streaming.upload_concurrency,
        poll_interval=streaming.poll_interval_sec,
    )
    with HttpInvoker(endpoint) as invoker:
        uploader.pool.add(invoker)
        try:
            summary = uploader.upload(path, done, token=token)
        except RangeRelayError as exc:
            _fail(exc)
        finally:
            token.cancel()
    context.console.print(
        f"[green]✓[/green] uploaded {summary.bytes} bytes in {summary.parts} parts "
        f"(file id {summary.file_id})"
    )


__all__ = ["app", "CliContext", "main"]
