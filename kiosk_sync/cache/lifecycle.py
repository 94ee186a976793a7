"""
lifecycle.py - Cache worker lifecycle

INSTALLING -> INSTALLED (waiting) -> ACTIVATING -> ACTIVATED -> REDUNDANT

Any state may go to REDUNDANT (install failure, replaced by a newer worker).
"""

import logging
from enum import Enum
from typing import List, Tuple

logger = logging.getLogger("CacheLifecycle")


class WorkerState(Enum):
    INSTALLING = "installing"
    INSTALLED = "installed"
    ACTIVATING = "activating"
    ACTIVATED = "activated"
    REDUNDANT = "redundant"


TRANSITIONS = {
    WorkerState.INSTALLING: {WorkerState.INSTALLED, WorkerState.REDUNDANT},
    WorkerState.INSTALLED: {WorkerState.ACTIVATING, WorkerState.REDUNDANT},
    WorkerState.ACTIVATING: {WorkerState.ACTIVATED, WorkerState.REDUNDANT},
    WorkerState.ACTIVATED: {WorkerState.REDUNDANT},
    WorkerState.REDUNDANT: set(),
}


class LifecycleError(Exception):
    """A worker was asked to make a transition its state does not allow."""


class Lifecycle:
    def __init__(self, label: str):
        self.label = label
        self.state = WorkerState.INSTALLING
        self.history: List[Tuple[WorkerState, WorkerState]] = []

    def transition(self, new_state: WorkerState):
        if new_state not in TRANSITIONS[self.state]:
            raise LifecycleError(f"{self.label}: cannot go from {self.state.value} to {new_state.value}")
        logger.info(f"{self.label}: {self.state.value} -> {new_state.value}")
        self.history.append((self.state, new_state))
        self.state = new_state
