"""Connection state machine shared by both stores.

disconnected -> connecting -> ready <-> degraded -> disconnected

- connecting -> disconnected when the initial handshake fails
- degraded -> ready only through a successful reconnection
- degraded -> connecting when the owner retries connect() explicitly
"""

import logging
from enum import Enum

logger = logging.getLogger("uvicorn.error")


class ConnectionState(str, Enum):
    """Lifecycle state of a store."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    READY = "ready"
    DEGRADED = "degraded"


_TRANSITIONS: dict[ConnectionState, frozenset[ConnectionState]] = {
    ConnectionState.DISCONNECTED: frozenset({ConnectionState.CONNECTING}),
    ConnectionState.CONNECTING: frozenset(
        {ConnectionState.READY, ConnectionState.DISCONNECTED}
    ),
    ConnectionState.READY: frozenset(
        {ConnectionState.DEGRADED, ConnectionState.DISCONNECTED}
    ),
    ConnectionState.DEGRADED: frozenset(
        {ConnectionState.READY, ConnectionState.DISCONNECTED, ConnectionState.CONNECTING}
    ),
}


def can_transition(current: ConnectionState, target: ConnectionState) -> bool:
    """Return True if `current -> target` is a legal move (or a no-op)."""
    return current == target or target in _TRANSITIONS[current]


class StateTracker:
    """Holds one store's state and enforces legal transitions."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._state = ConnectionState.DISCONNECTED

    @property
    def state(self) -> ConnectionState:
        return self._state

    def move(self, target: ConnectionState) -> None:
        """Transition to `target`.

        Raises:
            RuntimeError: If the transition is not allowed.
        """
        current = self._state
        if current == target:
            return
        if not can_transition(current, target):
            raise RuntimeError(
                f"{self.name}: illegal state transition {current.value} -> {target.value}"
            )
        self._state = target
        if target == ConnectionState.DEGRADED:
            logger.warning(f"{self.name} state: {current.value} -> {target.value}")
        else:
            logger.info(f"{self.name} state: {current.value} -> {target.value}")
