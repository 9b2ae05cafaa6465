"""Shared test doubles: manifest builders and a scriptable origin server."""

import hashlib

import httpx

from shellcache.manifest import ResourceManifest

ORIGIN = "http://app.test"


def fingerprint(text: str) -> str:
    return hashlib.md5(text.encode("utf-8")).hexdigest()


def make_manifest(files: dict[str, str]) -> ResourceManifest:
    """Manifest for ``files`` (key -> body), fingerprinted the way the build does."""
    return ResourceManifest({key: fingerprint(body) for key, body in files.items()})


class FakeOrigin:
    """Scriptable upstream web server served through ``httpx.MockTransport``.

    ``files`` maps a path (``/`` for the root document) to its body; unknown
    paths answer 404. ``offline`` makes every request fail at the transport
    level; ``broken`` lists paths that answer 500.
    """

    def __init__(self, files: dict[str, str] | None = None) -> None:
        self.files: dict[str, str] = dict(files or {})
        self.offline = False
        self.broken: set[str] = set()
        self.requests: list[httpx.Request] = []

    def _path(self, request: httpx.Request) -> str:
        path = request.url.path.lstrip("/")
        return path or "/"

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.offline:
            raise httpx.ConnectError("origin offline", request=request)
        path = self._path(request)
        if path in self.broken:
            return httpx.Response(500, text="boom")
        if path not in self.files:
            return httpx.Response(404, text="not found")
        return httpx.Response(200, text=self.files[path], headers={"content-type": "text/plain"})

    def hits(self, path: str) -> int:
        return sum(1 for request in self.requests if self._path(request) == path)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))
