from __future__ import annotations

import json

import pytest
from support import ORIGIN, fingerprint, make_manifest

from shellcache.errors import ActivationError
from shellcache.manifest import ResourceManifest
from shellcache.reconciler import (
    SNAPSHOT_KEY,
    PartitionNames,
    read_snapshot,
    reconcile,
    reset_partitions,
    write_snapshot,
)
from shellcache.stores import CachedResponse, MemoryCacheStorage

NAMES = PartitionNames()


def _entry(key: str, body: str) -> CachedResponse:
    url = f"{ORIGIN}/{key}"
    return CachedResponse(url=url, status_code=200, body=body.encode("utf-8"))


async def _seed(storage: MemoryCacheStorage, partition: str, entries: dict[str, str]) -> None:
    store = await storage.open(partition)
    for key, body in entries.items():
        await store.put(f"{ORIGIN}/{key}", _entry(key, body))


async def _bodies(storage: MemoryCacheStorage, partition: str) -> dict[str, bytes]:
    store = await storage.open(partition)
    result = {}
    for url in await store.keys():
        cached = await store.get(url)
        assert cached is not None
        result[url[len(ORIGIN) + 1 :]] = cached.body
    return result


@pytest.mark.asyncio
async def test_worked_example_retains_shell_and_evicts_changed():
    storage = MemoryCacheStorage()
    manifest = ResourceManifest({"a.js": fingerprint("a"), "b.js": fingerprint("b-new")})
    snapshot = await storage.open(NAMES.manifest)
    await write_snapshot(snapshot, ResourceManifest({"a.js": fingerprint("a"), "b.js": fingerprint("b-old")}))
    await _seed(storage, NAMES.content, {"a.js": "a-cached", "b.js": "b-old"})
    await _seed(storage, NAMES.staging, {"a.js": "a-staged"})

    report = await reconcile(storage, manifest, ORIGIN, NAMES)

    assert await _bodies(storage, NAMES.content) == {"a.js": b"a-staged"}
    assert report.first_install is False
    assert report.retained == ["a.js"]
    assert report.evicted == ["b.js"]
    assert report.restored == ["a.js"]


@pytest.mark.asyncio
async def test_unchanged_entries_are_kept_byte_for_byte():
    storage = MemoryCacheStorage()
    previous = make_manifest({"a.js": "a", "b.js": "b", "c.js": "c"})
    await write_snapshot(await storage.open(NAMES.manifest), previous)
    await _seed(storage, NAMES.content, {"a.js": "A", "b.js": "B", "c.js": "C"})
    content = await storage.open(NAMES.content)
    original = await content.get(f"{ORIGIN}/b.js")

    current = make_manifest({"a.js": "a", "b.js": "b", "c.js": "c-changed"})
    await reconcile(storage, current, ORIGIN, NAMES)

    content = await storage.open(NAMES.content)
    assert await content.get(f"{ORIGIN}/b.js") is original
    assert await content.get(f"{ORIGIN}/c.js") is None
    assert (await content.get(f"{ORIGIN}/a.js")).body == b"A"  # type: ignore[union-attr]


@pytest.mark.asyncio
async def test_keys_removed_from_manifest_are_evicted():
    storage = MemoryCacheStorage()
    await write_snapshot(await storage.open(NAMES.manifest), make_manifest({"old.js": "o", "keep.js": "k"}))
    await _seed(storage, NAMES.content, {"old.js": "O", "keep.js": "K", "main.js?v=2": "Q"})

    report = await reconcile(storage, make_manifest({"keep.js": "k"}), ORIGIN, NAMES)

    assert set(await _bodies(storage, NAMES.content)) == {"keep.js"}
    assert sorted(report.evicted) == ["main.js?v=2", "old.js"]


@pytest.mark.asyncio
async def test_first_install_wipes_content_to_staging_set():
    storage = MemoryCacheStorage()
    await _seed(storage, NAMES.content, {"stale.js": "S", "a.js": "old-a"})
    await _seed(storage, NAMES.staging, {"a.js": "new-a", "index.html": "I"})

    report = await reconcile(storage, make_manifest({"a.js": "x", "index.html": "I"}), ORIGIN, NAMES)

    assert report.first_install is True
    assert await _bodies(storage, NAMES.content) == {"a.js": b"new-a", "index.html": b"I"}


@pytest.mark.asyncio
async def test_snapshot_equals_manifest_and_staging_is_dropped():
    storage = MemoryCacheStorage()
    manifest = make_manifest({"/": "r", "main.js": "m"})
    await _seed(storage, NAMES.staging, {"main.js": "m"})

    await reconcile(storage, manifest, ORIGIN, NAMES)

    snapshot = await read_snapshot(await storage.open(NAMES.manifest))
    assert snapshot == dict(manifest)
    assert ResourceManifest(snapshot) == manifest
    assert await storage.has(NAMES.staging) is False


@pytest.mark.asyncio
async def test_reconcile_twice_is_stable():
    storage = MemoryCacheStorage()
    manifest = make_manifest({"a.js": "a", "b.js": "b"})
    await _seed(storage, NAMES.staging, {"a.js": "A"})
    await reconcile(storage, manifest, ORIGIN, NAMES)
    await _seed(storage, NAMES.content, {"b.js": "B"})

    report = await reconcile(storage, manifest, ORIGIN, NAMES)

    assert report.evicted == []
    assert sorted(report.retained) == ["a.js", "b.js"]
    assert report.restored == []


@pytest.mark.asyncio
async def test_corrupt_snapshot_raises_activation_error():
    storage = MemoryCacheStorage()
    snapshot = await storage.open(NAMES.manifest)
    await snapshot.put(SNAPSHOT_KEY, CachedResponse(url=SNAPSHOT_KEY, status_code=200, body=b"{broken"))
    with pytest.raises(ActivationError):
        await reconcile(storage, make_manifest({"a.js": "a"}), ORIGIN, NAMES)

    await snapshot.put(SNAPSHOT_KEY, CachedResponse(url=SNAPSHOT_KEY, status_code=200, body=json.dumps([1]).encode()))
    with pytest.raises(ActivationError):
        await read_snapshot(snapshot)


@pytest.mark.asyncio
async def test_reset_partitions_drops_all_three():
    storage = MemoryCacheStorage()
    await _seed(storage, NAMES.content, {"a.js": "A"})
    await _seed(storage, NAMES.staging, {"a.js": "A"})
    await write_snapshot(await storage.open(NAMES.manifest), make_manifest({"a.js": "a"}))
    await (await storage.open("unrelated")).put("k", _entry("k", "v"))

    removed = await reset_partitions(storage, NAMES)

    assert sorted(removed) == sorted(NAMES.all())
    assert await storage.names() == ["unrelated"]


@pytest.mark.asyncio
async def test_reset_partitions_keeps_going_after_a_failure(monkeypatch):
    storage = MemoryCacheStorage()
    for name in NAMES.all():
        await storage.open(name)
    original_delete = storage.delete

    async def flaky_delete(name: str) -> bool:
        if name == NAMES.content:
            raise OSError("disk on fire")
        return await original_delete(name)

    monkeypatch.setattr(storage, "delete", flaky_delete)
    removed = await reset_partitions(storage, NAMES)
    assert removed == [NAMES.staging, NAMES.manifest]
