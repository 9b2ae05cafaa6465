"""Named cache partitions backing the asset worker.

Storage layout:
- A ``CacheStorage`` owns any number of named partitions (staging, content,
  manifest snapshot). Deleting a partition drops it entirely; opening it again
  yields a fresh, empty partition.
- A ``CacheStore`` is a handle on one partition with ``get/put/delete/keys/clear``.
- Entries are ``CachedResponse`` values keyed by request URL.

Two backends ship: an in-memory one (tests, ephemeral proxies) and a
filesystem one that persists partitions under ``CACHE_ROOT``. Filesystem
writes go through a temp file and ``os.replace`` so a reader never sees a
half-written entry; blocking I/O runs in worker threads.
"""

from __future__ import annotations

import asyncio
import contextlib
import hashlib
import json
import logging
import os
import shutil
import tempfile
import time
from collections.abc import AsyncIterator, Mapping
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol
from urllib.parse import quote, unquote

import httpx
from filelock import SoftFileLock, Timeout

from .config import CacheSettings

_logger = logging.getLogger(__name__)

# Hop-by-hop and length headers are recomputed when a stored body is replayed.
_DROPPED_HEADERS = frozenset(
    {
        "connection",
        "content-encoding",
        "content-length",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "te",
        "trailer",
        "transfer-encoding",
        "upgrade",
    }
)


def replayable_headers(headers: Any) -> dict[str, str]:
    """Lower-cased copy of ``headers`` without hop-by-hop and length fields."""
    return {k.lower(): v for k, v in headers.items() if k.lower() not in _DROPPED_HEADERS}


@dataclass(frozen=True, slots=True)
class CachedResponse:
    """A response body plus the metadata needed to replay it."""

    url: str
    status_code: int
    body: bytes = b""
    headers: Mapping[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300

    def copy(self) -> CachedResponse:
        return CachedResponse(self.url, self.status_code, bytes(self.body), dict(self.headers))

    @classmethod
    def from_httpx(cls, response: httpx.Response) -> CachedResponse:
        return cls(str(response.request.url), response.status_code, response.content, replayable_headers(response.headers))

    def to_metadata(self) -> dict[str, Any]:
        return {"url": self.url, "status_code": self.status_code, "headers": dict(self.headers)}


class CacheStore(Protocol):
    """Handle on a single named partition."""

    name: str

    async def get(self, key: str) -> CachedResponse | None: ...

    async def put(self, key: str, value: CachedResponse) -> None: ...

    async def delete(self, key: str) -> bool: ...

    async def keys(self) -> list[str]: ...

    async def clear(self) -> None: ...


class CacheStorage(Protocol):
    """Registry of named partitions."""

    async def open(self, name: str) -> CacheStore: ...

    async def delete(self, name: str) -> bool: ...

    async def has(self, name: str) -> bool: ...

    async def names(self) -> list[str]: ...

    def exclusive(self) -> contextlib.AbstractAsyncContextManager[None]: ...


# =============================================================================
# In-memory backend
# =============================================================================


class MemoryCacheStore:
    def __init__(self, name: str) -> None:
        self.name = name
        self._entries: dict[str, CachedResponse] = {}

    async def get(self, key: str) -> CachedResponse | None:
        return self._entries.get(key)

    async def put(self, key: str, value: CachedResponse) -> None:
        self._entries[key] = value

    async def delete(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    async def keys(self) -> list[str]:
        return list(self._entries)

    async def clear(self) -> None:
        self._entries.clear()


class MemoryCacheStorage:
    """Process-local partitions; handy for tests and throwaway proxies."""

    def __init__(self) -> None:
        self._partitions: dict[str, MemoryCacheStore] = {}
        self._lock = asyncio.Lock()

    async def open(self, name: str) -> MemoryCacheStore:
        store = self._partitions.get(name)
        if store is None:
            store = MemoryCacheStore(name)
            self._partitions[name] = store
        return store

    async def delete(self, name: str) -> bool:
        return self._partitions.pop(name, None) is not None

    async def has(self, name: str) -> bool:
        return name in self._partitions

    async def names(self) -> list[str]:
        return sorted(self._partitions)

    @asynccontextmanager
    async def exclusive(self) -> AsyncIterator[None]:
        async with self._lock:
            yield


# =============================================================================
# Filesystem backend
# =============================================================================


async def _to_thread(func: Any, /, *args: Any, **kwargs: Any) -> Any:
    return await asyncio.to_thread(func, *args, **kwargs)


def _entry_stem(key: str) -> str:
    return hashlib.sha256(key.encode("utf-8")).hexdigest()


def _atomic_write(path: Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(data)
        os.replace(tmp_name, path)
    except BaseException:
        with contextlib.suppress(OSError):
            os.unlink(tmp_name)
        raise


class FileCacheStore:
    """Partition stored as ``<sha256(key)>.json`` metadata plus ``.body`` payload files."""

    def __init__(self, name: str, directory: Path) -> None:
        self.name = name
        self.directory = directory

    def _paths(self, key: str) -> tuple[Path, Path]:
        stem = _entry_stem(key)
        return self.directory / f"{stem}.json", self.directory / f"{stem}.body"

    def _read(self, key: str) -> CachedResponse | None:
        meta_path, body_path = self._paths(key)
        try:
            meta = json.loads(meta_path.read_text(encoding="utf-8"))
            body = body_path.read_bytes()
        except FileNotFoundError:
            return None
        return CachedResponse(
            url=meta.get("url", key),
            status_code=int(meta.get("status_code", 200)),
            body=body,
            headers=dict(meta.get("headers") or {}),
        )

    def _write(self, key: str, value: CachedResponse) -> None:
        meta_path, body_path = self._paths(key)
        # Body first: metadata presence is what makes an entry visible.
        _atomic_write(body_path, value.body)
        meta = {"key": key, **value.to_metadata()}
        _atomic_write(meta_path, json.dumps(meta, sort_keys=True).encode("utf-8"))

    def _remove(self, key: str) -> bool:
        meta_path, body_path = self._paths(key)
        existed = meta_path.exists()
        with contextlib.suppress(FileNotFoundError):
            meta_path.unlink()
        with contextlib.suppress(FileNotFoundError):
            body_path.unlink()
        return existed

    def _list_keys(self) -> list[str]:
        if not self.directory.exists():
            return []
        keys: list[str] = []
        for meta_path in sorted(self.directory.glob("*.json")):
            try:
                meta = json.loads(meta_path.read_text(encoding="utf-8"))
            except (OSError, ValueError):
                _logger.warning("cache.entry.unreadable", extra={"path": str(meta_path)})
                continue
            key = meta.get("key")
            if isinstance(key, str):
                keys.append(key)
        return keys

    def _clear(self) -> None:
        if not self.directory.exists():
            return
        for path in self.directory.iterdir():
            if path.is_file():
                path.unlink()

    async def get(self, key: str) -> CachedResponse | None:
        return await _to_thread(self._read, key)

    async def put(self, key: str, value: CachedResponse) -> None:
        await _to_thread(self._write, key, value)

    async def delete(self, key: str) -> bool:
        return await _to_thread(self._remove, key)

    async def keys(self) -> list[str]:
        return await _to_thread(self._list_keys)

    async def clear(self) -> None:
        await _to_thread(self._clear)


class AsyncFileLock:
    """Async-friendly wrapper around SoftFileLock.

    A process-level asyncio.Lock serializes tasks in this process; the soft
    file lock serializes processes sharing the same cache root.
    """

    def __init__(self, path: Path, *, timeout_seconds: float = 60.0) -> None:
        self._path = Path(path)
        self._lock = SoftFileLock(str(self._path), thread_local=False)
        self._timeout = float(timeout_seconds)
        self._process_lock = asyncio.Lock()

    @property
    def path(self) -> Path:
        return self._path

    @asynccontextmanager
    async def hold(self) -> AsyncIterator[None]:
        async with self._process_lock:
            started = time.monotonic()
            await _to_thread(self._path.parent.mkdir, parents=True, exist_ok=True)
            try:
                await _to_thread(self._lock.acquire, self._timeout)
            except Timeout:
                raise TimeoutError(
                    f"Timed out acquiring lock {self._path} after {time.monotonic() - started:.2f}s"
                ) from None
            try:
                yield
            finally:
                await _to_thread(self._lock.release)


class FileCacheStorage:
    """Partitions persisted as directories under a cache root."""

    def __init__(self, root: str | Path, *, lock_timeout_seconds: float = 60.0) -> None:
        self.root = Path(root).expanduser().resolve()
        self._lock = AsyncFileLock(self.root / ".activation.lock", timeout_seconds=lock_timeout_seconds)

    def _directory(self, name: str) -> Path:
        return self.root / quote(name, safe="")

    async def open(self, name: str) -> FileCacheStore:
        directory = self._directory(name)
        await _to_thread(directory.mkdir, parents=True, exist_ok=True)
        return FileCacheStore(name, directory)

    async def delete(self, name: str) -> bool:
        directory = self._directory(name)
        if not directory.exists():
            return False
        await _to_thread(shutil.rmtree, directory)
        return True

    async def has(self, name: str) -> bool:
        return self._directory(name).is_dir()

    async def names(self) -> list[str]:
        if not self.root.exists():
            return []
        return sorted(unquote(p.name) for p in self.root.iterdir() if p.is_dir())

    def exclusive(self) -> contextlib.AbstractAsyncContextManager[None]:
        return self._lock.hold()


def build_storage(settings: CacheSettings) -> CacheStorage:
    """Instantiate the configured backend."""
    if settings.backend == "memory":
        return MemoryCacheStorage()
    return FileCacheStorage(settings.root)
