from __future__ import annotations

from collections.abc import Sequence

import httpx
import pytest
from support import ORIGIN, FakeOrigin, make_manifest

from shellcache.errors import InstallError, PrefetchError
from shellcache.lifecycle import WorkerState
from shellcache.reconciler import PartitionNames, read_snapshot
from shellcache.stores import CachedResponse, MemoryCacheStorage
from shellcache.worker import AssetCacheWorker

NAMES = PartitionNames()
SHELL = ("/", "index.html", "main.js")


def _cached(key: str, body: str) -> CachedResponse:
    return CachedResponse(url=f"{ORIGIN}/{key}", status_code=200, body=body.encode("utf-8"))


def _worker(
    origin: FakeOrigin,
    storage: MemoryCacheStorage,
    shell: Sequence[str] = SHELL,
) -> AssetCacheWorker:
    return AssetCacheWorker(
        manifest=make_manifest(origin.files),
        shell=shell,
        storage=storage,
        client=origin.client(),
        origin=ORIGIN,
        prefetch_concurrency=2,
    )


async def _active(origin: FakeOrigin, storage: MemoryCacheStorage, shell: Sequence[str] = SHELL) -> AssetCacheWorker:
    worker = _worker(origin, storage, shell)
    await worker.install()
    assert await worker.activate() is WorkerState.RECONCILED
    return worker


@pytest.mark.asyncio
async def test_install_stages_shell_with_revalidation(fake_origin):
    storage = MemoryCacheStorage()
    worker = _worker(fake_origin, storage)

    await worker.install()

    assert worker.state is WorkerState.STAGED
    assert worker.skip_waiting_requested is True
    staging = await storage.open(NAMES.staging)
    assert sorted(await staging.keys()) == [f"{ORIGIN}/", f"{ORIGIN}/index.html", f"{ORIGIN}/main.js"]
    assert all(request.headers.get("cache-control") == "no-cache" for request in fake_origin.requests)


@pytest.mark.asyncio
async def test_install_fails_on_non_2xx_shell_resource(fake_origin):
    storage = MemoryCacheStorage()
    fake_origin.broken.add("main.js")
    worker = _worker(fake_origin, storage)

    with pytest.raises(InstallError, match="main.js"):
        await worker.install()

    assert worker.state is WorkerState.REDUNDANT
    assert await storage.has(NAMES.staging) is False


@pytest.mark.asyncio
async def test_install_fails_when_origin_unreachable(fake_origin):
    storage = MemoryCacheStorage()
    fake_origin.offline = True
    worker = _worker(fake_origin, storage)

    with pytest.raises(InstallError) as excinfo:
        await worker.install()

    assert isinstance(excinfo.value.__cause__, httpx.ConnectError)
    assert worker.state is WorkerState.REDUNDANT


@pytest.mark.asyncio
async def test_install_discards_stale_staging(fake_origin):
    storage = MemoryCacheStorage()
    stale = await storage.open(NAMES.staging)
    await stale.put(f"{ORIGIN}/leftover.js", _cached("leftover.js", "x"))

    worker = _worker(fake_origin, storage)
    await worker.install()

    staging = await storage.open(NAMES.staging)
    assert f"{ORIGIN}/leftover.js" not in await staging.keys()


@pytest.mark.asyncio
async def test_activate_reconciles_and_writes_snapshot(fake_origin):
    storage = MemoryCacheStorage()
    worker = await _active(fake_origin, storage)

    assert worker.last_reconcile is not None
    assert worker.last_reconcile.first_install is True
    snapshot = await read_snapshot(await storage.open(NAMES.manifest))
    assert snapshot == dict(worker.manifest)
    assert await storage.has(NAMES.staging) is False


@pytest.mark.asyncio
async def test_activation_failure_resets_every_partition(fake_origin, monkeypatch):
    storage = MemoryCacheStorage()
    worker = _worker(fake_origin, storage)
    await worker.install()
    await (await storage.open(NAMES.content)).put(f"{ORIGIN}/main.js", _cached("main.js", "old"))

    async def broken_reconcile(*args, **kwargs):
        raise RuntimeError("quota exceeded")

    monkeypatch.setattr("shellcache.worker.reconcile", broken_reconcile)

    assert await worker.activate() is WorkerState.RESET
    assert worker.last_error == "quota exceeded"
    assert await storage.names() == []
    assert await worker.handle_fetch("GET", f"{ORIGIN}/main.js") is None


@pytest.mark.asyncio
async def test_cache_first_serves_shell_without_network(fake_origin):
    storage = MemoryCacheStorage()
    worker = await _active(fake_origin, storage)
    before = fake_origin.hits("main.js")

    response = await worker.handle_fetch("GET", f"{ORIGIN}/main.js")

    assert response is not None
    assert response.body == b"console.log(1)"
    assert fake_origin.hits("main.js") == before


@pytest.mark.asyncio
async def test_cache_first_miss_fetches_and_writes_back(fake_origin):
    storage = MemoryCacheStorage()
    worker = await _active(fake_origin, storage)

    first = await worker.handle_fetch("GET", f"{ORIGIN}/styles.css")
    await worker.drain()
    second = await worker.handle_fetch("GET", f"{ORIGIN}/styles.css")

    assert first is not None and second is not None
    assert first.body == second.body == b"body{}"
    assert fake_origin.hits("styles.css") == 1


@pytest.mark.asyncio
async def test_cache_first_does_not_store_errors(fake_origin):
    storage = MemoryCacheStorage()
    worker = await _active(fake_origin, storage)
    fake_origin.broken.add("styles.css")

    response = await worker.handle_fetch("GET", f"{ORIGIN}/styles.css")
    await worker.drain()

    assert response is not None and response.status_code == 500
    content = await storage.open(NAMES.content)
    assert await content.get(f"{ORIGIN}/styles.css") is None


@pytest.mark.asyncio
async def test_versioned_request_maps_to_manifest_key(fake_origin):
    storage = MemoryCacheStorage()
    worker = await _active(fake_origin, storage)

    response = await worker.handle_fetch("GET", f"{ORIGIN}/styles.css?v=42")
    await worker.drain()

    assert response is not None
    assert response.body == b"body{}"


@pytest.mark.asyncio
async def test_root_is_online_first(fake_origin):
    storage = MemoryCacheStorage()
    worker = await _active(fake_origin, storage)
    fake_origin.files["/"] = "<html>root v2</html>"
    before = fake_origin.hits("/")

    response = await worker.handle_fetch("GET", f"{ORIGIN}/")

    assert response is not None
    assert response.body == b"<html>root v2</html>"
    assert fake_origin.hits("/") == before + 1
    cached = await (await storage.open(NAMES.content)).get(f"{ORIGIN}/")
    assert cached is not None and cached.body == b"<html>root v2</html>"


@pytest.mark.asyncio
@pytest.mark.parametrize("url", [ORIGIN, f"{ORIGIN}/", f"{ORIGIN}/#/settings"])
async def test_root_falls_back_to_cache_when_offline(fake_origin, url):
    storage = MemoryCacheStorage()
    worker = await _active(fake_origin, storage)
    fake_origin.offline = True

    response = await worker.handle_fetch("GET", url)

    assert response is not None
    assert response.body == b"<html>root v1</html>"


@pytest.mark.asyncio
async def test_root_falls_back_to_cache_on_server_error(fake_origin):
    storage = MemoryCacheStorage()
    worker = await _active(fake_origin, storage)
    fake_origin.broken.add("/")

    response = await worker.handle_fetch("GET", f"{ORIGIN}/")

    assert response is not None
    assert response.status_code == 200
    assert response.body == b"<html>root v1</html>"


@pytest.mark.asyncio
async def test_root_offline_without_cache_raises(fake_origin):
    storage = MemoryCacheStorage()
    worker = await _active(fake_origin, storage, shell=("main.js",))
    fake_origin.offline = True

    with pytest.raises(httpx.ConnectError):
        await worker.handle_fetch("GET", f"{ORIGIN}/")


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("method", "url"),
    [
        ("GET", f"{ORIGIN}/api/users"),
        ("POST", f"{ORIGIN}/main.js"),
        ("GET", "https://cdn.example.com/main.js"),
    ],
)
async def test_requests_outside_the_manifest_pass_through(fake_origin, method, url):
    storage = MemoryCacheStorage()
    worker = await _active(fake_origin, storage)
    requests_before = len(fake_origin.requests)

    assert await worker.handle_fetch(method, url) is None
    assert len(fake_origin.requests) == requests_before


@pytest.mark.asyncio
async def test_staged_worker_does_not_intercept(fake_origin):
    worker = _worker(fake_origin, MemoryCacheStorage())
    await worker.install()
    assert await worker.handle_fetch("GET", f"{ORIGIN}/main.js") is None


@pytest.mark.asyncio
async def test_download_offline_fetches_only_missing_then_nothing(fake_origin):
    storage = MemoryCacheStorage()
    worker = await _active(fake_origin, storage)
    fake_origin.requests.clear()

    report = await worker.download_offline()

    assert report.ok
    assert sorted(report.requested) == ["assets/logo.png", "styles.css"]
    assert sorted(report.fetched) == ["assets/logo.png", "styles.css"]

    fake_origin.requests.clear()
    again = await worker.download_offline()
    assert again.requested == []
    assert fake_origin.requests == []


@pytest.mark.asyncio
async def test_download_offline_keeps_partial_successes(fake_origin):
    storage = MemoryCacheStorage()
    worker = await _active(fake_origin, storage)
    fake_origin.broken.add("assets/logo.png")

    report = await worker.download_offline()

    assert report.fetched == ["styles.css"]
    assert report.failed == {"assets/logo.png": "HTTP 500"}
    with pytest.raises(PrefetchError) as excinfo:
        report.raise_for_failures()
    assert excinfo.value.report is report

    fake_origin.broken.clear()
    fake_origin.requests.clear()
    retry = await worker.download_offline()
    assert retry.requested == ["assets/logo.png"]
    assert retry.ok


@pytest.mark.asyncio
async def test_status_reports_lifecycle(fake_origin):
    worker = await _active(fake_origin, MemoryCacheStorage())
    status = worker.status()
    assert status["state"] == "reconciled"
    assert status["version"] == worker.version
    assert status["shell"] == list(SHELL)
    assert status["last_reconcile"]["first_install"] is True
