import contextlib
import json
from collections.abc import Callable
from pathlib import Path

import pytest

from shellcache.config import clear_settings_cache
from shellcache.db import reset_database_state
from support import ORIGIN, FakeOrigin, make_manifest


@pytest.fixture
def fake_origin() -> FakeOrigin:
    return FakeOrigin(
        {
            "/": "<html>root v1</html>",
            "index.html": "<html>root v1</html>",
            "main.js": "console.log(1)",
            "styles.css": "body{}",
            "assets/logo.png": "PNG1",
        }
    )


@pytest.fixture
def write_build(tmp_path: Path) -> Callable[[dict[str, str]], Path]:
    """Write a manifest for ``files`` to the path ``MANIFEST_PATH`` points at."""

    def _write(files: dict[str, str]) -> Path:
        target = tmp_path / "build" / "asset_manifest.json"
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(json.dumps(dict(make_manifest(files))), encoding="utf-8")
        return target

    return _write


@pytest.fixture
def isolated_env(tmp_path, monkeypatch):
    """Point cache, manifest and database into ``tmp_path`` and reset caches."""
    db_path: Path = tmp_path / "test.sqlite3"
    monkeypatch.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{db_path}")
    monkeypatch.setenv("HTTP_HOST", "127.0.0.1")
    monkeypatch.setenv("HTTP_PORT", "8765")
    monkeypatch.setenv("APP_ENVIRONMENT", "test")
    monkeypatch.setenv("ORIGIN_URL", ORIGIN)
    monkeypatch.setenv("MANIFEST_PATH", str(tmp_path / "build" / "asset_manifest.json"))
    monkeypatch.setenv("SHELL_KEYS", "/,index.html,main.js")
    monkeypatch.setenv("CACHE_BACKEND", "filesystem")
    monkeypatch.setenv("CACHE_ROOT", str(tmp_path / "cache"))
    monkeypatch.delenv("SHELL_PATH", raising=False)
    monkeypatch.delenv("STRIPE_WEBHOOK_SECRET", raising=False)
    clear_settings_cache()
    reset_database_state()
    try:
        yield
    finally:
        clear_settings_cache()
        reset_database_state()


@pytest.fixture(autouse=True)
def _global_resource_cleanup():
    """Dispose engine/pool state across tests that did not opt into ``isolated_env``."""
    yield
    with contextlib.suppress(Exception):
        reset_database_state()
    with contextlib.suppress(Exception):
        clear_settings_cache()
