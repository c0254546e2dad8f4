import asyncio
import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional

from ..errors import AlreadyPending, NoSuchSession
from ..models import CompletionOutcome, SessionState
from .channel import SessionChannel

logger = logging.getLogger(__name__)


@dataclass
class SessionEntry:
    """Table record for one open channel."""

    session_id: str
    channel: SessionChannel
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    state: SessionState = SessionState.OPEN
    pending: Optional["asyncio.Future[CompletionOutcome]"] = None


class SessionTable:
    """Process-wide mapping of session id -> channel and pending completion.

    All mutations happen under one lock and never await, so open/close/
    register/resolve cannot interleave into an inconsistent state. Completion
    futures are created on, and must be awaited from, the running event loop.
    """

    def __init__(self) -> None:
        self._entries: Dict[str, SessionEntry] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, session_id: object) -> bool:
        with self._lock:
            return session_id in self._entries

    def open(self, channel: SessionChannel) -> str:
        """Store `channel` under a fresh identifier and return it."""
        with self._lock:
            session_id = uuid.uuid4().hex
            while session_id in self._entries:
                session_id = uuid.uuid4().hex
            self._entries[session_id] = SessionEntry(session_id=session_id, channel=channel)
        logger.debug("Session opened: %s", session_id)
        return session_id

    def lookup(self, session_id: str | None) -> SessionChannel:
        """Return the channel for `session_id` or raise NoSuchSession."""
        return self.get(session_id).channel

    def get(self, session_id: str | None) -> SessionEntry:
        with self._lock:
            entry = self._entries.get(session_id) if session_id else None
        if entry is None:
            raise NoSuchSession(session_id)
        return entry

    def session_ids(self) -> List[str]:
        with self._lock:
            return list(self._entries)

    def close(self, session_id: str) -> Optional[SessionEntry]:
        """Remove the session and release any pending completion.

        Closing an unknown or already-closed session is a no-op that returns None.
        """
        with self._lock:
            entry = self._entries.pop(session_id, None)
            if entry is None:
                return None
            entry.state = SessionState.CLOSED
            pending, entry.pending = entry.pending, None
            if pending is not None and not pending.done():
                pending.set_result(CompletionOutcome.CLOSED)
        entry.channel.close()
        logger.debug("Session closed: %s", session_id)
        return entry

    def register_pending_completion(self, session_id: str) -> "asyncio.Future[CompletionOutcome]":
        """Record a one-shot completion signal for the session.

        Raises NoSuchSession if the session is gone and AlreadyPending if an
        invocation is already in flight.
        """
        loop = asyncio.get_running_loop()
        with self._lock:
            entry = self._entries.get(session_id)
            if entry is None:
                raise NoSuchSession(session_id)
            if entry.pending is not None:
                raise AlreadyPending(session_id)
            handle: "asyncio.Future[CompletionOutcome]" = loop.create_future()
            entry.pending = handle
            entry.state = SessionState.AWAITING_RESULT
        return handle

    def resolve_pending_completion(
        self,
        session_id: str,
        handle: Optional["asyncio.Future[CompletionOutcome]"] = None,
        outcome: CompletionOutcome = CompletionOutcome.DONE,
    ) -> bool:
        """Fire and remove the pending completion, if any.

        With `handle` given, only that exact completion is resolved; a newer
        one registered in its place is left alone. Returns True if a signal fired.
        """
        with self._lock:
            entry = self._entries.get(session_id)
            if entry is None or entry.pending is None:
                fired = False
            elif handle is not None and entry.pending is not handle:
                fired = False
            else:
                pending, entry.pending = entry.pending, None
                entry.state = SessionState.OPEN
                fired = not pending.done()
                if fired:
                    pending.set_result(outcome)
        if handle is not None and not handle.done():
            # session closed or entry replaced; still release the waiter
            handle.set_result(outcome)
            fired = True
        return fired

    def discard_pending_completion(self, session_id: str, handle: "asyncio.Future[CompletionOutcome]") -> None:
        """Drop `handle` without firing it, if it is still the pending one."""
        with self._lock:
            entry = self._entries.get(session_id)
            if entry is not None and entry.pending is handle:
                entry.pending = None
                entry.state = SessionState.OPEN

    def close_all(self) -> int:
        """Close every session. Returns the number closed."""
        closed = 0
        for session_id in self.session_ids():
            if self.close(session_id) is not None:
                closed += 1
        return closed
