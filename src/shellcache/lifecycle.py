"""Worker lifecycle states and the single transition function that moves between them."""

from __future__ import annotations

from enum import Enum
from typing import Final

from .errors import InvalidTransitionError


class WorkerState(Enum):
    """Where a worker version is in its install/activate lifecycle."""

    NEW = "new"
    INSTALLING = "installing"
    STAGED = "staged"  # Shell staged, waiting for activation
    REDUNDANT = "redundant"  # Install failed; never becomes active
    ACTIVATING = "activating"
    RECONCILED = "reconciled"  # Activation committed, serving requests
    RESET = "reset"  # Activation failed, all partitions wiped


class LifecycleEvent(Enum):
    INSTALL = "install"
    INSTALL_SUCCEEDED = "install_succeeded"
    INSTALL_FAILED = "install_failed"
    ACTIVATE = "activate"
    ACTIVATE_SUCCEEDED = "activate_succeeded"
    ACTIVATE_FAILED = "activate_failed"


TRANSITIONS: Final[dict[tuple[WorkerState, LifecycleEvent], WorkerState]] = {
    (WorkerState.NEW, LifecycleEvent.INSTALL): WorkerState.INSTALLING,
    (WorkerState.INSTALLING, LifecycleEvent.INSTALL_SUCCEEDED): WorkerState.STAGED,
    (WorkerState.INSTALLING, LifecycleEvent.INSTALL_FAILED): WorkerState.REDUNDANT,
    (WorkerState.STAGED, LifecycleEvent.ACTIVATE): WorkerState.ACTIVATING,
    (WorkerState.ACTIVATING, LifecycleEvent.ACTIVATE_SUCCEEDED): WorkerState.RECONCILED,
    (WorkerState.ACTIVATING, LifecycleEvent.ACTIVATE_FAILED): WorkerState.RESET,
}

TERMINAL_STATES: Final[frozenset[WorkerState]] = frozenset(
    {WorkerState.REDUNDANT, WorkerState.RECONCILED, WorkerState.RESET}
)


def advance(state: WorkerState, event: LifecycleEvent) -> WorkerState:
    """Return the state reached by applying ``event`` to ``state``.

    Raises InvalidTransitionError for any pair not listed in TRANSITIONS.
    """
    try:
        return TRANSITIONS[(state, event)]
    except KeyError:
        raise InvalidTransitionError(state, event) from None
