# services/intelligence/workflow_gate.py
from __future__ import annotations

import logging
from typing import Callable, FrozenSet, List, Optional, Tuple

from schemas.intelligence import GateState

from .errors import GateClosed, InvalidGateTransition

logger = logging.getLogger(__name__)

GateListener = Callable[[GateState, GateState, Optional[str]], None]

_ALLOWED: FrozenSet[Tuple[GateState, GateState]] = frozenset(
    {
        (GateState.IDLE, GateState.RUNNING),
        (GateState.RUNNING, GateState.READY),
        (GateState.RUNNING, GateState.STALE),
        (GateState.STALE, GateState.RUNNING),
        (GateState.READY, GateState.RUNNING),
        (GateState.READY, GateState.STALE),
    }
)


class WorkflowGate:
    """
    Decides whether the workflow may move past the intelligence step.

    idle -> running -> ready; running -> stale when the context changes
    mid-run; stale -> running when the new run is dispatched; ready -> running
    on forced re-analysis; ready -> stale when the context changes after
    completion. Only a completion for the gate's current key can open it.
    """

    def __init__(self) -> None:
        self._state = GateState.IDLE
        self._key: Optional[str] = None
        self._listeners: List[GateListener] = []

    @property
    def state(self) -> GateState:
        return self._state

    @property
    def key(self) -> Optional[str]:
        return self._key

    @property
    def can_advance(self) -> bool:
        return self._state == GateState.READY

    def subscribe(self, listener: GateListener) -> None:
        self._listeners.append(listener)

    def begin(self, key: str) -> None:
        """A run was dispatched for key."""
        if self._state == GateState.RUNNING and key == self._key:
            return
        if key != self._key and self._state in (GateState.RUNNING, GateState.READY):
            # dispatch for a new key without an explicit context change
            self._move(GateState.STALE, key)
        self._key = key
        self._move(GateState.RUNNING, key)

    def context_changed(self, key: str) -> None:
        """The consumer's context now maps to key."""
        if key == self._key:
            return
        if self._state in (GateState.RUNNING, GateState.READY):
            self._move(GateState.STALE, key)
        self._key = key

    def complete(self, key: str) -> bool:
        """The run for key finished. Ignored unless key is current and the gate is running."""
        if key != self._key or self._state != GateState.RUNNING:
            logger.info("gate_completion_ignored key=%s current=%s state=%s", key, self._key, self._state.value)
            return False
        self._move(GateState.READY, key)
        return True

    def fail(self, key: str) -> None:
        """The run for key died unexpectedly; leave the gate re-openable."""
        if key == self._key and self._state == GateState.RUNNING:
            self._move(GateState.STALE, key)

    def force(self) -> None:
        if self._state != GateState.READY:
            raise InvalidGateTransition(self._state.value, GateState.RUNNING.value)
        self._move(GateState.RUNNING, self._key)

    def advance(self) -> str:
        if self._state != GateState.READY or self._key is None:
            raise GateClosed(f"intelligence step is {self._state.value}; cannot advance")
        return self._key

    def _move(self, target: GateState, key: Optional[str]) -> None:
        current = self._state
        if (current, target) not in _ALLOWED:
            raise InvalidGateTransition(current.value, target.value)
        self._state = target
        logger.debug("gate_transition from=%s to=%s key=%s", current.value, target.value, key)
        for listener in list(self._listeners):
            try:
                listener(current, target, key)
            except Exception:
                logger.exception("gate_listener_failed from=%s to=%s", current.value, target.value)
