"""Asset cache worker: install, activate, intercept and prefetch.

One ``AssetCacheWorker`` exists per manifest generation. Its lifecycle is:

    NEW --install()--> STAGED --activate()--> RECONCILED
                  \\-> REDUNDANT          \\-> RESET

Only a RECONCILED worker answers requests. Everything the worker declines to
intercept (non-GET, foreign origin, keys outside the manifest) is reported as
``None`` so the host forwards it to the network untouched.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Coroutine, Sequence
from dataclasses import dataclass, field
from typing import Any

import httpx

from .config import CacheSettings
from .errors import InstallError, PrefetchError
from .lifecycle import LifecycleEvent, WorkerState, advance
from .manifest import (
    ROOT_KEY,
    ResourceManifest,
    load_manifest,
    load_shell,
    request_key,
    resource_url,
    stored_key,
    validate_shell,
)
from .reconciler import PartitionNames, ReconcileReport, reconcile, reset_partitions
from .stores import CachedResponse, CacheStorage, CacheStore

_logger = logging.getLogger(__name__)

_REVALIDATE_HEADERS = {"Cache-Control": "no-cache", "Pragma": "no-cache"}


@dataclass(slots=True)
class PrefetchReport:
    """Outcome of an offline prefetch, per manifest key."""

    requested: list[str] = field(default_factory=list)
    fetched: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed

    def raise_for_failures(self) -> None:
        if self.failed:
            raise PrefetchError(self)

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "requested": len(self.requested),
            "fetched": sorted(self.fetched),
            "failed": dict(sorted(self.failed.items())),
        }


def _request_identity(url: str, origin: str) -> str:
    """URL under which a request is stored: fragment dropped, bare origin gets its slash."""
    identity = url.split("#", 1)[0]
    if identity == origin:
        identity = f"{origin}/"
    return identity


class AssetCacheWorker:
    def __init__(
        self,
        *,
        manifest: ResourceManifest,
        shell: Sequence[str],
        storage: CacheStorage,
        client: httpx.AsyncClient,
        origin: str,
        names: PartitionNames | None = None,
        prefetch_concurrency: int = 8,
        auto_skip_waiting: bool = True,
    ) -> None:
        self.manifest = manifest
        self.shell = validate_shell(manifest, shell)
        self.origin = origin.rstrip("/")
        self.names = names or PartitionNames()
        self.state = WorkerState.NEW
        self.skip_waiting_requested = False
        self.last_reconcile: ReconcileReport | None = None
        self.last_error: str | None = None
        self._storage = storage
        self._client = client
        self._prefetch_concurrency = max(1, prefetch_concurrency)
        self._auto_skip_waiting = auto_skip_waiting
        self._pending: set[asyncio.Task[None]] = set()

    def __repr__(self) -> str:
        return f"AssetCacheWorker(version={self.version}, state={self.state.value})"

    @property
    def version(self) -> str:
        return self.manifest.version

    @property
    def storage(self) -> CacheStorage:
        return self._storage

    def _advance(self, event: LifecycleEvent) -> None:
        previous = self.state
        self.state = advance(self.state, event)
        _logger.debug(
            "worker.transition",
            extra={"version": self.version, "from": previous.value, "to": self.state.value},
        )

    def skip_waiting(self) -> None:
        """Ask the host to activate this worker without waiting for old clients to go away."""
        self.skip_waiting_requested = True

    async def _fetch(self, url: str, *, revalidate: bool = False) -> CachedResponse:
        response = await self._client.get(url, headers=_REVALIDATE_HEADERS if revalidate else None)
        return CachedResponse.from_httpx(response)

    async def _content(self) -> CacheStore:
        return await self._storage.open(self.names.content)

    # ------------------------------------------------------------------
    # Install
    # ------------------------------------------------------------------

    async def install(self) -> None:
        """Stage every shell resource, bypassing intermediate HTTP caches.

        Either the whole shell lands in staging or nothing does; on failure the
        worker turns REDUNDANT and InstallError propagates to the host.
        """
        self._advance(LifecycleEvent.INSTALL)
        if self._auto_skip_waiting:
            self.skip_waiting()
        urls = [_request_identity(resource_url(self.origin, key), self.origin) for key in self.shell]
        try:
            # Leftovers from a version that installed but never activated are stale.
            await self._storage.delete(self.names.staging)
            responses = await asyncio.gather(*(self._fetch(url, revalidate=True) for url in urls))
            failed = [f"{r.url} ({r.status_code})" for r in responses if not r.ok]
            if failed:
                raise InstallError(f"Shell resources failed to fetch: {', '.join(failed)}")
            staging = await self._storage.open(self.names.staging)
            for url, response in zip(urls, responses):
                await staging.put(url, response)
        except Exception as exc:
            self._advance(LifecycleEvent.INSTALL_FAILED)
            self.last_error = str(exc) or type(exc).__name__
            _logger.warning("worker.install.failed", extra={"version": self.version, "error": self.last_error})
            await self._storage.delete(self.names.staging)
            if isinstance(exc, InstallError):
                raise
            raise InstallError(f"Shell install failed: {self.last_error}") from exc
        self._advance(LifecycleEvent.INSTALL_SUCCEEDED)
        _logger.info("worker.install.staged", extra={"version": self.version, "shell": len(urls)})

    # ------------------------------------------------------------------
    # Activate
    # ------------------------------------------------------------------

    async def activate(self) -> WorkerState:
        """Reconcile the content partition; on any failure wipe every partition.

        Returns the terminal state: RECONCILED (the host may claim clients) or
        RESET (the host keeps its current controller).
        """
        self._advance(LifecycleEvent.ACTIVATE)
        async with self._storage.exclusive():
            try:
                report = await reconcile(self._storage, self.manifest, self.origin, self.names)
            except Exception as exc:
                self.last_error = str(exc) or type(exc).__name__
                _logger.error(
                    "worker.activate.reset",
                    extra={"version": self.version, "error": self.last_error},
                    exc_info=exc,
                )
                await reset_partitions(self._storage, self.names)
                self._advance(LifecycleEvent.ACTIVATE_FAILED)
                return self.state
        self.last_reconcile = report
        self._advance(LifecycleEvent.ACTIVATE_SUCCEEDED)
        return self.state

    # ------------------------------------------------------------------
    # Request interception
    # ------------------------------------------------------------------

    async def handle_fetch(self, method: str, url: str) -> CachedResponse | None:
        """Answer a request from cache/network, or return None to let it pass through."""
        if self.state is not WorkerState.RECONCILED or method.upper() != "GET":
            return None
        key = request_key(url, self.origin)
        if key is None or key not in self.manifest:
            return None
        identity = _request_identity(url, self.origin)
        if key == ROOT_KEY:
            return await self._online_first(identity)
        return await self._cache_first(identity)

    async def _cache_first(self, identity: str) -> CachedResponse:
        content = await self._content()
        cached = await content.get(identity)
        if cached is not None:
            return cached
        response = await self._fetch(identity)
        if response.ok:
            self._schedule(content.put(identity, response.copy()))
        return response

    async def _online_first(self, identity: str) -> CachedResponse:
        content = await self._content()
        try:
            response = await self._fetch(identity)
        except httpx.TransportError as exc:
            cached = await content.get(identity)
            if cached is None:
                raise
            _logger.info("worker.online_first.offline", extra={"url": identity, "error": str(exc)})
            return cached
        if response.ok:
            await content.put(identity, response.copy())
            return response
        cached = await content.get(identity)
        if cached is None:
            return response
        _logger.info("worker.online_first.stale", extra={"url": identity, "status": response.status_code})
        return cached

    def _schedule(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.create_task(coro)
        self._pending.add(task)
        task.add_done_callback(self._write_done)

    def _write_done(self, task: asyncio.Task[None]) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            _logger.warning("worker.cache_fill.failed", extra={"error": str(exc)})

    async def drain(self) -> None:
        """Wait for outstanding write-through cache fills."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    # ------------------------------------------------------------------
    # Offline prefetch
    # ------------------------------------------------------------------

    async def download_offline(self) -> PrefetchReport:
        """Fetch every manifest resource not yet in the content partition.

        Each success is stored as soon as it lands, so a partial failure keeps
        whatever did arrive; the report names every key that did not.
        """
        content = await self._content()
        present = {stored_key(url, self.origin) for url in await content.keys()}
        report = PrefetchReport(requested=[key for key in self.manifest if key not in present])
        if not report.requested:
            return report
        semaphore = asyncio.Semaphore(self._prefetch_concurrency)

        async def _one(key: str) -> None:
            url = resource_url(self.origin, key)
            async with semaphore:
                try:
                    response = await self._fetch(url)
                except httpx.HTTPError as exc:
                    report.failed[key] = str(exc) or type(exc).__name__
                    return
            if not response.ok:
                report.failed[key] = f"HTTP {response.status_code}"
                return
            await content.put(url, response)
            report.fetched.append(key)

        await asyncio.gather(*(_one(key) for key in report.requested))
        _logger.info(
            "worker.prefetch.done",
            extra={"requested": len(report.requested), "fetched": len(report.fetched), "failed": len(report.failed)},
        )
        return report

    def status(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "state": self.state.value,
            "resources": len(self.manifest),
            "shell": list(self.shell),
            "skip_waiting": self.skip_waiting_requested,
            "pending_writes": len(self._pending),
            "last_reconcile": self.last_reconcile.to_dict() if self.last_reconcile else None,
            "last_error": self.last_error,
        }


def worker_from_settings(
    settings: CacheSettings,
    *,
    storage: CacheStorage,
    client: httpx.AsyncClient,
) -> AssetCacheWorker:
    """Load the manifest and shell set named by ``settings`` and build a NEW worker."""
    manifest = load_manifest(settings.manifest_path)
    shell = load_shell(settings.shell_path, manifest) if settings.shell_path else settings.shell_keys
    return AssetCacheWorker(
        manifest=manifest,
        shell=shell,
        storage=storage,
        client=client,
        origin=settings.origin,
        names=PartitionNames.from_settings(settings),
        prefetch_concurrency=settings.prefetch_concurrency,
    )
