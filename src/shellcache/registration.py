"""Host-side sequencing of worker versions.

The registration plays the part a browser plays for a service worker: it
installs a new version, holds it as *waiting* until it may activate, runs the
activation exclusively and only then lets it claim traffic. Requests are always
routed to the current controller, so no request ever observes a half-reconciled
cache generation.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from .errors import InstallError
from .lifecycle import WorkerState
from .stores import CachedResponse
from .worker import AssetCacheWorker, PrefetchReport

_logger = logging.getLogger(__name__)

SKIP_WAITING = "skipWaiting"
DOWNLOAD_OFFLINE = "downloadOffline"


class Registration:
    def __init__(self) -> None:
        self.controller: AssetCacheWorker | None = None
        self.waiting: AssetCacheWorker | None = None
        self._lock = asyncio.Lock()

    async def register(self, worker: AssetCacheWorker) -> AssetCacheWorker | None:
        """Install ``worker`` and activate it when allowed. Returns the controller afterwards."""
        async with self._lock:
            if self.controller is not None and self.controller.version == worker.version:
                _logger.info("registration.unchanged", extra={"version": worker.version})
                return self.controller
            try:
                await worker.install()
            except InstallError as exc:
                # The current controller, if any, keeps serving.
                _logger.warning(
                    "registration.install_rejected",
                    extra={"version": worker.version, "error": str(exc)},
                )
                return self.controller
            self.waiting = worker
            if worker.skip_waiting_requested or self.controller is None:
                await self._activate_waiting()
            return self.controller

    async def _activate_waiting(self) -> None:
        worker = self.waiting
        if worker is None:
            return
        self.waiting = None
        state = await worker.activate()
        if state is WorkerState.RECONCILED:
            self._claim(worker)
        else:
            _logger.error(
                "registration.activation_failed",
                extra={"version": worker.version, "error": worker.last_error},
            )

    def _claim(self, worker: AssetCacheWorker) -> None:
        previous = self.controller
        self.controller = worker
        _logger.info(
            "registration.claimed",
            extra={
                "version": worker.version,
                "previous_version": previous.version if previous else None,
            },
        )

    async def skip_waiting(self) -> bool:
        """Force-activate the waiting worker, if there is one."""
        async with self._lock:
            if self.waiting is None:
                return False
            self.waiting.skip_waiting()
            await self._activate_waiting()
            return True

    async def handle_fetch(self, method: str, url: str) -> CachedResponse | None:
        controller = self.controller
        if controller is None:
            return None
        return await controller.handle_fetch(method, url)

    async def download_offline(self) -> PrefetchReport | None:
        controller = self.controller
        if controller is None:
            return None
        return await controller.download_offline()

    async def post_message(self, data: Any) -> dict[str, Any]:
        """Dispatch a command posted by a controlled page; unknown values are ignored."""
        if data == SKIP_WAITING:
            activated = await self.skip_waiting()
            return {"command": SKIP_WAITING, "accepted": True, "activated": activated}
        if data == DOWNLOAD_OFFLINE:
            report = await self.download_offline()
            return {
                "command": DOWNLOAD_OFFLINE,
                "accepted": report is not None,
                "report": report.to_dict() if report is not None else None,
            }
        _logger.debug("registration.message_ignored", extra={"data": repr(data)[:200]})
        return {"command": None, "accepted": False}

    async def drain(self) -> None:
        for worker in (self.controller, self.waiting):
            if worker is not None:
                await worker.drain()

    def status(self) -> dict[str, Any]:
        return {
            "controller": self.controller.status() if self.controller else None,
            "waiting": self.waiting.status() if self.waiting else None,
        }
