"""Command-line interface for building manifests and driving the asset cache."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any, Optional

import httpx
import typer
import uvicorn
from rich.console import Console

from . import rich_logger
from .config import Settings, get_settings
from .errors import InstallError, ManifestError, ShellCacheError
from .http import build_http_app
from .lifecycle import WorkerState
from .manifest import ResourceManifest, build_manifest, write_manifest
from .reconciler import PartitionNames, read_snapshot, reset_partitions
from .registration import Registration
from .stores import build_storage
from .worker import AssetCacheWorker, worker_from_settings

console = Console()

app = typer.Typer(help="Asset cache utilities for the shellcache service.", invoke_without_command=True)


def _run_async(coro: Any) -> Any:
    return asyncio.run(coro)


@app.callback()
def _app_callback(ctx: typer.Context) -> None:
    """Default to ``serve-http`` when no subcommand is given."""
    if ctx.invoked_subcommand is None:
        serve_http(host=None, port=None)


def _upstream_client(settings: Settings) -> httpx.AsyncClient:
    return httpx.AsyncClient(timeout=settings.http.upstream_timeout_seconds)


def _load_worker(settings: Settings, client: httpx.AsyncClient) -> AssetCacheWorker:
    try:
        return worker_from_settings(settings.cache, storage=build_storage(settings.cache), client=client)
    except ManifestError as exc:
        rich_logger.log_error("Cannot load manifest", error=exc, path=settings.cache.manifest_path)
        raise typer.Exit(code=2) from exc


async def _register(settings: Settings, client: httpx.AsyncClient) -> Registration:
    registration = Registration()
    worker = _load_worker(settings, client)
    await registration.register(worker)
    if worker.state is WorkerState.REDUNDANT:
        raise InstallError(worker.last_error or "install failed")
    return registration


@app.command("serve-http")
def serve_http(
    host: Optional[str] = typer.Option(None, help="Host interface. Defaults to HTTP_HOST setting."),
    port: Optional[int] = typer.Option(None, help="Port. Defaults to HTTP_PORT setting."),
) -> None:
    """Run the caching reverse proxy in front of ORIGIN_URL."""
    settings = get_settings()
    resolved_host = host or settings.http.host
    resolved_port = port or settings.http.port
    if settings.log_rich_enabled:
        rich_logger.console.print(rich_logger.create_startup_panel(settings, resolved_host, resolved_port))
    http_app = build_http_app(settings)
    uvicorn.run(http_app, host=resolved_host, port=resolved_port, log_level="info")


@app.command("build-manifest")
def build_manifest_command(
    root: Path = typer.Argument(..., exists=True, file_okay=False, help="Build output directory to fingerprint."),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Defaults to MANIFEST_PATH."),
    exclude: Optional[list[str]] = typer.Option(None, "--exclude", "-x", help="Relative paths to leave out."),
) -> None:
    """Fingerprint every file under ROOT and write the resource manifest."""
    settings = get_settings()
    target = output or Path(settings.cache.manifest_path)
    manifest = build_manifest(root, exclude=exclude or ())
    written = write_manifest(manifest, target)
    rich_logger.log_success(
        f"Wrote {len(manifest)} entries to {written}",
        version=manifest.version,
    )


@app.command("sync")
def sync() -> None:
    """Install the shell set and reconcile the cache against the current manifest."""
    settings = get_settings()

    async def _sync() -> AssetCacheWorker | None:
        async with _upstream_client(settings) as client:
            registration = await _register(settings, client)
            await registration.drain()
            return registration.controller

    try:
        controller = _run_async(_sync())
    except InstallError as exc:
        rich_logger.log_error("Install failed; cache left untouched", error=exc)
        raise typer.Exit(code=1) from exc
    if controller is None or controller.last_reconcile is None:
        rich_logger.log_error("Activation failed; all cache partitions were reset")
        raise typer.Exit(code=1)
    console.print(rich_logger.create_reconcile_table(controller.last_reconcile))


@app.command("prefetch")
def prefetch() -> None:
    """Download every manifest resource not yet cached, for offline use."""
    settings = get_settings()

    async def _prefetch() -> Any:
        async with _upstream_client(settings) as client:
            registration = await _register(settings, client)
            return await registration.download_offline()

    try:
        report = _run_async(_prefetch())
    except InstallError as exc:
        rich_logger.log_error("Install failed; nothing downloaded", error=exc)
        raise typer.Exit(code=1) from exc
    if report is None:
        rich_logger.log_error("No active worker; nothing downloaded")
        raise typer.Exit(code=1)
    console.print(rich_logger.create_prefetch_table(report))
    if not report.ok:
        raise typer.Exit(code=1)


@app.command("status")
def status() -> None:
    """Show the manifest on disk and what the cache partitions currently hold."""
    settings = get_settings()

    async def _status() -> tuple[dict[str, Any], dict[str, int], str | None]:
        async with _upstream_client(settings) as client:
            worker = _load_worker(settings, client)
            counts: dict[str, int] = {}
            for name in worker.names.all():
                if await worker.storage.has(name):
                    counts[name] = len(await (await worker.storage.open(name)).keys())
                else:
                    counts[name] = 0
            snapshot_version = None
            if counts[worker.names.manifest]:
                try:
                    snapshot = await read_snapshot(await worker.storage.open(worker.names.manifest))
                    snapshot_version = ResourceManifest(snapshot).version if snapshot is not None else None
                except ShellCacheError as exc:
                    rich_logger.log_error("Cannot read manifest snapshot", error=exc, partition=worker.names.manifest)
                    raise typer.Exit(code=2) from exc
            return worker.status(), counts, snapshot_version

    worker_status, counts, snapshot_version = _run_async(_status())
    console.print(rich_logger.create_status_tree(worker_status, counts))
    if snapshot_version is None:
        console.print("[dim]No reconciled snapshot; next sync is a first install.[/dim]")
    elif snapshot_version == worker_status["version"]:
        console.print(f"[bright_green]Cache reconciled for {snapshot_version}[/bright_green]")
    else:
        console.print(
            f"[bright_yellow]Cache reconciled for {snapshot_version}; manifest on disk is "
            f"{worker_status['version']}[/bright_yellow]"
        )


@app.command("reset")
def reset(
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation."),
) -> None:
    """Drop the content, staging and manifest partitions."""
    settings = get_settings()
    names = PartitionNames.from_settings(settings.cache)
    if not yes:
        typer.confirm(f"Delete partitions {', '.join(names.all())}?", abort=True)
    removed = _run_async(reset_partitions(build_storage(settings.cache), names))
    rich_logger.log_info(f"Removed {len(removed)} partition(s)", partitions=removed)
