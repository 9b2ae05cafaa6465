"""Exception hierarchy shared across the asset cache and webhook relay."""

from __future__ import annotations


class ShellCacheError(Exception):
    """Base class for all errors raised by shellcache."""


class ManifestError(ShellCacheError, ValueError):
    """Raised when a resource manifest or shell set is malformed."""


class InvalidTransitionError(ShellCacheError):
    """Raised when a lifecycle event is not legal in the worker's current state."""

    def __init__(self, state: object, event: object) -> None:
        super().__init__(f"Event {event} is not allowed in state {state}")
        self.state = state
        self.event = event


class InstallError(ShellCacheError):
    """Raised when the shell set could not be staged."""


class ActivationError(ShellCacheError):
    """Raised internally when reconciliation cannot complete."""


class PrefetchError(ShellCacheError):
    """Raised when an offline prefetch left some resources unfetched."""

    def __init__(self, report: object) -> None:
        failed = getattr(report, "failed", {}) or {}
        super().__init__(f"Offline prefetch failed for {len(failed)} resource(s)")
        self.report = report


class WebhookVerificationError(ShellCacheError):
    """Raised when a webhook payload or signature cannot be verified."""
