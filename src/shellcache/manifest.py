"""Resource manifest: the build-time authority for what the asset cache holds.

A manifest maps a logical resource key (a path relative to the application
origin, with ``/`` standing for the root document) to a content fingerprint.
Fingerprints are only change-detection tokens: two deployments that publish
the same fingerprint for a key are assumed to serve identical bytes.
"""

from __future__ import annotations

import hashlib
import json
import re
from collections.abc import Iterable, Iterator, Mapping, Sequence
from pathlib import Path
from types import MappingProxyType
from typing import Any

from .errors import ManifestError

ROOT_KEY = "/"
VERSION_QUERY_MARKER = "?v="
_FINGERPRINT_RE = re.compile(r"^[0-9a-f]{32}$")
_DEFAULT_EXCLUDES = frozenset({"asset_manifest.json", "shell.json"})


class ResourceManifest(Mapping[str, str]):
    """Immutable mapping of logical resource key to fingerprint."""

    __slots__ = ("_entries",)

    def __init__(self, entries: Mapping[str, str]) -> None:
        cleaned: dict[str, str] = {}
        for key, fingerprint in entries.items():
            if not isinstance(key, str) or not key:
                raise ManifestError(f"Manifest keys must be non-empty strings, got {key!r}")
            if not isinstance(fingerprint, str) or not fingerprint:
                raise ManifestError(f"Fingerprint for {key!r} must be a non-empty string")
            cleaned[key] = fingerprint
        self._entries = MappingProxyType(cleaned)

    def __getitem__(self, key: str) -> str:
        return self._entries[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __repr__(self) -> str:
        return f"ResourceManifest({len(self)} resources, version={self.version})"

    @property
    def version(self) -> str:
        """Short digest identifying this manifest generation."""
        digest = hashlib.sha1(self.to_json().encode("utf-8")).hexdigest()
        return digest[:12]

    def changed(self, previous: Mapping[str, str], key: str) -> bool:
        """True when ``key`` left the manifest or its fingerprint moved since ``previous``."""
        current = self._entries.get(key)
        if current is None:
            return True
        return current != previous.get(key)

    def to_json(self) -> str:
        return json.dumps(dict(self._entries), sort_keys=True, separators=(",", ":"))

    @classmethod
    def from_json(cls, text: str | bytes, *, strict: bool = True) -> ResourceManifest:
        try:
            payload = json.loads(text)
        except (TypeError, ValueError) as exc:
            raise ManifestError(f"Manifest is not valid JSON: {exc}") from exc
        if not isinstance(payload, dict):
            raise ManifestError("Manifest must be a flat JSON object")
        if strict:
            for key, fingerprint in payload.items():
                if not isinstance(fingerprint, str) or not _FINGERPRINT_RE.match(fingerprint):
                    raise ManifestError(
                        f"Fingerprint for {key!r} must be 32 lowercase hex characters, got {fingerprint!r}"
                    )
        return cls(payload)


def load_manifest(path: str | Path, *, strict: bool = True) -> ResourceManifest:
    manifest_path = Path(path).expanduser()
    try:
        text = manifest_path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ManifestError(f"Cannot read manifest {manifest_path}: {exc}") from exc
    return ResourceManifest.from_json(text, strict=strict)


def validate_shell(manifest: Mapping[str, str], keys: Iterable[str]) -> tuple[str, ...]:
    """Return the shell set as a tuple, rejecting keys the manifest does not know."""
    shell = tuple(keys)
    missing = [key for key in shell if key not in manifest]
    if missing:
        raise ManifestError(f"Shell keys missing from manifest: {', '.join(missing)}")
    return shell


def load_shell(path: str | Path, manifest: Mapping[str, str]) -> tuple[str, ...]:
    shell_path = Path(path).expanduser()
    try:
        payload = json.loads(shell_path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        raise ManifestError(f"Cannot read shell list {shell_path}: {exc}") from exc
    if not isinstance(payload, list) or not all(isinstance(item, str) for item in payload):
        raise ManifestError("Shell list must be a JSON array of strings")
    return validate_shell(manifest, payload)


# ---------------------------------------------------------------------------
# URL <-> key mapping
# ---------------------------------------------------------------------------


def resource_url(origin: str, key: str) -> str:
    """Absolute URL the worker fetches for a logical key."""
    if key == ROOT_KEY:
        return f"{origin}/"
    return f"{origin}/{key.lstrip('/')}"


def stored_key(url: str, origin: str) -> str:
    """Logical key of a URL already held in a cache partition.

    Unlike :func:`request_key` this keeps any query string, so a cached
    ``main.js?v=3`` never matches the manifest entry ``main.js``.
    """
    if not url.startswith(origin):
        return url
    return url[len(origin) + 1 :] or ROOT_KEY


def request_key(url: str, origin: str) -> str | None:
    """Lookup key for an outgoing request, or None for foreign origins.

    The root normalization (exact origin, ``origin/#...`` fragment routes and
    the empty path) is a fixed whitelist for client-side routed pages; a new
    routing scheme has to be added here explicitly.
    """
    if not url.startswith(origin):
        return None
    key = url[len(origin) + 1 :]
    if VERSION_QUERY_MARKER in key:
        key = key.split(VERSION_QUERY_MARKER)[0]
    if url == origin or url.startswith(origin + "/#") or key == "":
        key = ROOT_KEY
    return key


# ---------------------------------------------------------------------------
# Build-time generation
# ---------------------------------------------------------------------------


def _file_fingerprint(path: Path) -> str:
    digest = hashlib.md5(usedforsecurity=False)
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(65536), b""):
            digest.update(chunk)
    return digest.hexdigest()


def build_manifest(
    root: str | Path,
    *,
    exclude: Sequence[str] = (),
    index_document: str = "index.html",
) -> ResourceManifest:
    """Fingerprint every file under a build output directory.

    Dotfiles and the manifest/shell outputs themselves are skipped. The index
    document is published twice, under its own name and as the root key, so
    the root document is versioned along with it.
    """
    base = Path(root).expanduser()
    if not base.is_dir():
        raise ManifestError(f"Build directory {base} does not exist")
    skipped = _DEFAULT_EXCLUDES | set(exclude)
    entries: dict[str, Any] = {}
    for path in sorted(base.rglob("*")):
        if not path.is_file():
            continue
        rel = path.relative_to(base)
        if any(part.startswith(".") for part in rel.parts) or rel.as_posix() in skipped:
            continue
        entries[rel.as_posix()] = _file_fingerprint(path)
    if index_document in entries:
        entries[ROOT_KEY] = entries[index_document]
    return ResourceManifest(entries)


def write_manifest(manifest: ResourceManifest, path: str | Path) -> Path:
    target = Path(path).expanduser()
    target.parent.mkdir(parents=True, exist_ok=True)
    payload = json.dumps(dict(manifest), indent=2, sort_keys=True)
    target.write_text(payload + "\n", encoding="utf-8")
    return target
