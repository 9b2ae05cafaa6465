"""Cache reconciliation run once per worker activation.

The content partition survives across deployments. On every activation it is
pruned against the manifest snapshot of the previous generation:

- an entry whose key left the manifest, or whose fingerprint changed, is evicted;
- every other entry is kept untouched, so unchanged assets are never re-downloaded;
- the freshly staged shell files are then copied over the survivors.

With no snapshot (first install, or a previous reset) the content partition is
wiped and rebuilt from staging alone. Callers treat any exception escaping
``reconcile`` as a corrupted generation and call ``reset_partitions``.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any

from .config import CacheSettings
from .errors import ActivationError
from .manifest import ResourceManifest, stored_key
from .stores import CachedResponse, CacheStorage, CacheStore

SNAPSHOT_KEY = "manifest"

_logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class PartitionNames:
    content: str = "app-cache"
    staging: str = "app-temp-cache"
    manifest: str = "app-manifest"

    @classmethod
    def from_settings(cls, settings: CacheSettings) -> PartitionNames:
        return cls(
            content=settings.content_name,
            staging=settings.staging_name,
            manifest=settings.manifest_name,
        )

    def all(self) -> tuple[str, str, str]:
        return (self.content, self.staging, self.manifest)


@dataclass(slots=True)
class ReconcileReport:
    manifest_version: str
    first_install: bool
    retained: list[str] = field(default_factory=list)
    evicted: list[str] = field(default_factory=list)
    restored: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "manifest_version": self.manifest_version,
            "first_install": self.first_install,
            "retained": list(self.retained),
            "evicted": list(self.evicted),
            "restored": list(self.restored),
        }


async def read_snapshot(store: CacheStore) -> dict[str, str] | None:
    entry = await store.get(SNAPSHOT_KEY)
    if entry is None:
        return None
    try:
        payload = json.loads(entry.body)
    except ValueError as exc:
        raise ActivationError(f"Manifest snapshot is not valid JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise ActivationError("Manifest snapshot must be a JSON object")
    return payload


async def write_snapshot(store: CacheStore, manifest: ResourceManifest) -> None:
    await store.put(
        SNAPSHOT_KEY,
        CachedResponse(
            url=SNAPSHOT_KEY,
            status_code=200,
            body=manifest.to_json().encode("utf-8"),
            headers={"content-type": "application/json"},
        ),
    )


async def _merge_staging(staging: CacheStore, content: CacheStore, origin: str) -> list[str]:
    restored: list[str] = []
    for key in await staging.keys():
        response = await staging.get(key)
        if response is None:
            raise ActivationError(f"Staged entry {key} vanished during activation")
        await content.put(key, response)
        restored.append(stored_key(key, origin))
    return restored


async def reconcile(
    storage: CacheStorage,
    manifest: ResourceManifest,
    origin: str,
    names: PartitionNames,
) -> ReconcileReport:
    """Bring the content partition in line with ``manifest``. See module docstring."""
    content = await storage.open(names.content)
    staging = await storage.open(names.staging)
    snapshot = await storage.open(names.manifest)
    previous = await read_snapshot(snapshot)

    report = ReconcileReport(manifest_version=manifest.version, first_install=previous is None)
    if previous is None:
        await storage.delete(names.content)
        content = await storage.open(names.content)
    else:
        for url in await content.keys():
            key = stored_key(url, origin)
            if manifest.changed(previous, key):
                await content.delete(url)
                report.evicted.append(key)
            else:
                report.retained.append(key)

    # Shell files always win over survivors of the same key.
    report.restored = await _merge_staging(staging, content, origin)
    await storage.delete(names.staging)
    await write_snapshot(snapshot, manifest)
    _logger.info(
        "reconcile.committed",
        extra={
            "manifest_version": report.manifest_version,
            "first_install": report.first_install,
            "retained": len(report.retained),
            "evicted": len(report.evicted),
            "restored": len(report.restored),
        },
    )
    return report


async def reset_partitions(storage: CacheStorage, names: PartitionNames) -> list[str]:
    """Drop all three partitions; the next activation behaves like a first install."""
    removed: list[str] = []
    for name in names.all():
        try:
            if await storage.delete(name):
                removed.append(name)
        except Exception:
            # Best effort per partition; the remaining ones are still dropped.
            _logger.exception("reconcile.reset.partition_failed", extra={"partition": name})
    return removed
