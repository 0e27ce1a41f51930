"""Session state and the in-memory Session Registry.

A ``Session`` is one conversation: an immutable instruction, the backend
chosen for the next invocation, the single-flight ``running`` flag, a turn
counter and an append-only history. Only the Turn Loop holding ``running``
mutates a session.

The registry is an explicit object built once at process start. Its clock
is injected so idle eviction can be tested without sleeping.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any, Callable, Mapping, Optional

from .errors import InstructionRequiredError, RegistryFullError, SessionNotFoundError
from .logging import get_logger, tagged

logger = get_logger()

HISTORY_KINDS = ("narrative", "action", "observation")


def _freeze(value: Any) -> Any:
    if isinstance(value, Mapping):
        return MappingProxyType({k: _freeze(v) for k, v in value.items()})
    if isinstance(value, list):
        return tuple(_freeze(v) for v in value)
    return value


def _thaw(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {k: _thaw(v) for k, v in value.items()}
    if isinstance(value, tuple):
        return [_thaw(v) for v in value]
    return value


@dataclass(frozen=True)
class HistoryEntry:
    """One immutable history record.

    ``payload`` is a read-only mapping: ``{"text": ...}`` for narratives,
    an action descriptor dict for actions, an action result dict for
    observations.
    """
    turn: int
    kind: str
    payload: Mapping[str, Any]
    timestamp: str

    def to_dict(self) -> dict:
        return {
            "turn": self.turn,
            "kind": self.kind,
            "payload": _thaw(self.payload),
            "timestamp": self.timestamp,
        }


@dataclass
class Session:
    """State for a single conversation."""
    id: str
    instruction: str
    backend: str
    created_at: float
    last_active: float
    running: bool = False
    turn_count: int = 0
    _history: list[HistoryEntry] = field(default_factory=list, repr=False)

    @property
    def history(self) -> tuple[HistoryEntry, ...]:
        """Snapshot of the history. Entries are never modified or removed."""
        return tuple(self._history)

    def append(self, kind: str, payload: Mapping[str, Any]) -> HistoryEntry:
        if kind not in HISTORY_KINDS:
            raise ValueError(f"Unknown history kind: {kind!r}")
        entry = HistoryEntry(
            turn=self.turn_count,
            kind=kind,
            payload=_freeze(dict(payload)),
            timestamp=datetime.now(timezone.utc).isoformat(),
        )
        self._history.append(entry)
        return entry

    def status(self) -> dict:
        return {
            "conversation_id": self.id,
            "instruction": self.instruction,
            "backend": self.backend,
            "running": self.running,
            "turn_count": self.turn_count,
            "history_length": len(self._history),
        }


class SessionRegistry:
    """Conversation id → Session, with capacity and idle eviction.

    Args:
        default_backend: Backend assigned to new sessions when the caller
            doesn't name one.
        clock: Returns seconds (monotonic). Defaults to ``time.monotonic``.
        max_sessions: Capacity. When full, the least recently used idle
            session is evicted; if every session is running, creation fails
            with ``RegistryFullError``.
        idle_timeout_seconds: Idle sessions older than this are evicted by
            ``evict_idle()`` and the cleanup loop.
    """

    def __init__(
        self,
        default_backend: str = "native",
        clock: Callable[[], float] = time.monotonic,
        max_sessions: int = 100,
        idle_timeout_seconds: float = 6 * 3600,
    ):
        self.default_backend = default_backend
        self.clock = clock
        self.max_sessions = max_sessions
        self.idle_timeout_seconds = idle_timeout_seconds
        # Ordered least → most recently used.
        self._sessions: OrderedDict[str, Session] = OrderedDict()
        self._cleanup_task: Optional[asyncio.Task] = None

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._sessions

    # ---- Lookup ----

    def get(self, session_id: str, *, touch: bool = True) -> Session:
        """Return the session or raise ``SessionNotFoundError``.

        With ``touch=False`` the lookup leaves ``last_active`` and the LRU
        order alone.
        """
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        if touch:
            self._touch(session)
        return session

    def get_or_create(
        self,
        session_id: str | None = None,
        instruction: str | None = None,
        *,
        create_missing: bool = True,
        backend: str | None = None,
        touch: bool = True,
    ) -> tuple[Session, bool]:
        """Look up or create a session. Returns ``(session, is_new)``.

        - Absent id: a fresh id is generated and a session created
          (instruction required).
        - Known id: the existing session; ``instruction`` is ignored. It is
          marked as recently used unless ``touch`` is false.
        - Unknown id: created when ``create_missing`` (fresh-start routes),
          ``SessionNotFoundError`` otherwise (continuation-only routes).
        """
        if session_id:
            existing = self._sessions.get(session_id)
            if existing is not None:
                if touch:
                    self._touch(existing)
                return existing, False
            if not create_missing:
                raise SessionNotFoundError(session_id)

        if not instruction or not instruction.strip():
            raise InstructionRequiredError()

        self._make_room()
        now = self.clock()
        session = Session(
            id=session_id or uuid.uuid4().hex,
            instruction=instruction.strip(),
            backend=backend or self.default_backend,
            created_at=now,
            last_active=now,
        )
        self._sessions[session.id] = session
        logger.debug(
            f"Created conversation {session.id} (backend={session.backend})",
            extra=tagged("registry"),
        )
        return session, True

    def list(self) -> list[Session]:
        """All sessions, most recently used first."""
        return list(reversed(self._sessions.values()))

    def touch(self, session: Session) -> None:
        self._touch(session)

    def _touch(self, session: Session) -> None:
        session.last_active = self.clock()
        if session.id in self._sessions:
            self._sessions.move_to_end(session.id)

    # ---- Eviction ----

    def _make_room(self) -> None:
        if len(self._sessions) < self.max_sessions:
            return
        for sid, session in self._sessions.items():
            if not session.running:
                del self._sessions[sid]
                logger.info(f"Evicted least recently used conversation {sid}", extra=tagged("registry"))
                return
        raise RegistryFullError(
            f"Maximum conversations ({self.max_sessions}) reached and all are running"
        )

    def evict_idle(self) -> list[str]:
        """Remove idle, non-running sessions past the timeout. Returns evicted ids."""
        now = self.clock()
        to_remove = [
            sid
            for sid, s in self._sessions.items()
            if not s.running and now - s.last_active > self.idle_timeout_seconds
        ]
        for sid in to_remove:
            del self._sessions[sid]
        if to_remove:
            logger.info(f"Evicted {len(to_remove)} idle conversation(s)", extra=tagged("registry"))
        return to_remove

    # ---- Idle cleanup ----

    async def start_cleanup_loop(self, interval: float = 60) -> None:
        """Start a background task that evicts idle sessions."""
        self._cleanup_task = asyncio.create_task(self._cleanup_loop(interval))

    async def stop_cleanup_loop(self) -> None:
        if self._cleanup_task:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            self._cleanup_task = None

    async def _cleanup_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            self.evict_idle()
