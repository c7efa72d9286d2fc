"""Session registry and concurrency gate.

The registry is the engine's only shared mutable state. One lock guards the
session map, so admission (count check plus insert) is atomic. An admitted
session holds a concurrency slot until :meth:`SessionRegistry.release`, which
is idempotent.
"""

from __future__ import annotations

import threading
from collections.abc import Sequence
from pathlib import Path
from typing import Final

import structlog

from sandrun.domain.ids import validate_session_id
from sandrun.domain.models import LIVE_STATES, Session, SessionSnapshot, SessionState
from sandrun.utils.concurrency import CancellationToken

logger = structlog.get_logger(__name__)

_ALLOWED_TRANSITIONS: Final[dict[SessionState, frozenset[SessionState]]] = {
    SessionState.ADMITTED: frozenset({SessionState.SCANNING, SessionState.CLEANING_UP}),
    SessionState.SCANNING: frozenset(
        {
            SessionState.REJECTED,
            SessionState.PROVISIONING,
            SessionState.FAILED,
            SessionState.CLEANING_UP,
        }
    ),
    SessionState.PROVISIONING: frozenset(
        {
            SessionState.INSTALLING,
            SessionState.RUNNING,
            SessionState.FAILED,
            SessionState.CLEANING_UP,
        }
    ),
    SessionState.INSTALLING: frozenset(
        {
            SessionState.RUNNING,
            SessionState.REJECTED,
            SessionState.FAILED,
            SessionState.CLEANING_UP,
        }
    ),
    SessionState.RUNNING: frozenset(
        {SessionState.COMPLETED, SessionState.FAILED, SessionState.CLEANING_UP}
    ),
    SessionState.REJECTED: frozenset({SessionState.CLEANING_UP}),
    SessionState.COMPLETED: frozenset({SessionState.CLEANING_UP}),
    SessionState.FAILED: frozenset({SessionState.CLEANING_UP}),
    SessionState.CLEANING_UP: frozenset({SessionState.TERMINATED}),
    SessionState.TERMINATED: frozenset(),
}


def can_transition(current: SessionState, target: SessionState) -> bool:
    return target in _ALLOWED_TRANSITIONS[current]


class SessionRegistry:
    """Thread-safe map of registered sessions plus the concurrency gate."""

    def __init__(self) -> None:
        self._sessions: dict[str, Session] = {}
        self._lock = threading.Lock()

    def admit(
        self,
        session_id: str,
        *,
        packages: Sequence[str] = (),
        code_size: int = 0,
        max_concurrent: int,
        cancel_token: CancellationToken | None = None,
    ) -> bool:
        """Register ``session_id`` if a slot is free and the ID is not in use.

        Returns ``False`` without side effects when refused.
        """

        validate_session_id(session_id)
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be >= 1")
        with self._lock:
            if session_id in self._sessions:
                logger.warning("session_id_in_use", session_id=session_id)
                return False
            if len(self._sessions) >= max_concurrent:
                logger.warning(
                    "admission_refused",
                    session_id=session_id,
                    registered=len(self._sessions),
                    max_concurrent=max_concurrent,
                )
                return False
            self._sessions[session_id] = Session(
                id=session_id,
                requested_packages=tuple(packages),
                code_size=code_size,
                cancel_token=cancel_token or CancellationToken(),
            )
        logger.debug("session_admitted", session_id=session_id)
        return True

    def transition(self, session_id: str, state: SessionState) -> bool:
        """Move a session to ``state``.

        Returns ``False`` if the session is gone (force-cleaned) or the move is
        not allowed from its current state; the record is left unchanged.
        """

        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return False
            previous = session.state
            if not can_transition(previous, state):
                logger.debug(
                    "session_transition_ignored",
                    session_id=session_id,
                    current=previous.value,
                    target=state.value,
                )
                return False
            session.state = state
        logger.debug(
            "session_transition", session_id=session_id, source=previous.value, target=state.value
        )
        return True

    def set_sandbox_path(self, session_id: str, sandbox_path: Path | None) -> bool:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return False
            session.sandbox_path = sandbox_path
            return True

    def cancel(self, session_id: str) -> bool:
        """Fire the session's cancellation token. Returns ``False`` if unknown."""

        with self._lock:
            session = self._sessions.get(session_id)
            token = None if session is None else session.cancel_token
        if token is None:
            return False
        token.cancel()
        return True

    def release(self, session_id: str) -> bool:
        """Remove the session and free its slot. Safe to call repeatedly."""

        with self._lock:
            session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        logger.debug("session_released", session_id=session_id, state=session.state.value)
        return True

    def get(self, session_id: str) -> SessionSnapshot | None:
        with self._lock:
            session = self._sessions.get(session_id)
            return None if session is None else session.snapshot()

    def active_sessions(self) -> tuple[SessionSnapshot, ...]:
        with self._lock:
            sessions = list(self._sessions.values())
            return tuple(session.snapshot() for session in sessions)

    def live_count(self) -> int:
        """Sessions that currently hold a sandbox (provisioning, installing, running)."""

        with self._lock:
            return sum(1 for session in self._sessions.values() if session.state in LIVE_STATES)

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        with self._lock:
            return session_id in self._sessions


__all__ = ["SessionRegistry", "can_transition"]
