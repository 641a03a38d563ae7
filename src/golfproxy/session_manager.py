# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""SessionRegistry: maps session_id to a render handle and its sequence number.

Each proxy session owns exactly one render handle. The handle lives exactly as
long as the session's entry: it is released when the entry is invalidated,
evicted (idle or capacity), or the registry shuts down.

Locking:

- ``_sessions_lock`` guards inserts and removals only; reads never block.
- ``SessionEntry.lock`` serialises the check-fire-commit sequence for one
  session, so a duplicated request cannot pass the staleness check twice.
  Requests for different sessions never wait on each other.

Dependencies: none inside golfproxy (handles are opaque; releasing one goes
through the injected ``release_handle`` callable).
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from contextlib import suppress
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

DEFAULT_IDLE_TIMEOUT = 1800.0  # 30 minutes
_REAPER_INTERVAL = 60.0


# ---------------------------------------------------------------------------
# SessionEntry: per-session mutable state
# ---------------------------------------------------------------------------


@dataclass(slots=True, eq=False)
class SessionEntry:
    """Mutable state associated with a single proxy session."""

    session_id: str
    sequence_number: int
    handle: Any
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    created_at: float = field(default_factory=time.monotonic)
    last_used_at: float = field(default_factory=time.monotonic)

    def touch(self) -> None:
        self.last_used_at = time.monotonic()


# ---------------------------------------------------------------------------
# SessionRegistry
# ---------------------------------------------------------------------------


class SessionRegistry:
    """Concurrent session_id -> SessionEntry map with handle ownership.

    ``idle_timeout=None`` disables idle eviction; ``max_sessions=None`` leaves
    the registry unbounded. Every entry pins one render handle, so a bounded
    registry should stay below the engine's handle limit (the server config
    does this by default). Starts empty and needs no teardown beyond
    :meth:`shutdown`.
    """

    def __init__(
        self,
        release_handle: Callable[[Any], Awaitable[None]],
        *,
        idle_timeout: float | None = DEFAULT_IDLE_TIMEOUT,
        max_sessions: int | None = None,
        reaper_interval: float = _REAPER_INTERVAL,
    ) -> None:
        if max_sessions is not None and max_sessions < 1:
            raise ValueError(f"max_sessions must be positive or None, got {max_sessions}")
        self._release_handle = release_handle
        self._idle_timeout = idle_timeout
        self._max_sessions = max_sessions
        self._reaper_interval = reaper_interval
        self._sessions: dict[str, SessionEntry] = {}
        self._sessions_lock = asyncio.Lock()
        self._reaper_task: asyncio.Task | None = None
        self._shutdown_event = asyncio.Event()

    # ── Lookup ───────────────────────────────────────────────────────

    def lookup(self, session_id: str | None) -> SessionEntry | None:
        """Non-blocking read; touches the entry's idle clock."""
        if session_id is None:
            return None
        entry = self._sessions.get(session_id)
        if entry is not None:
            entry.touch()
        return entry

    def is_current(self, entry: SessionEntry) -> bool:
        """True while *entry* is still the registered entry for its session."""
        return self._sessions.get(entry.session_id) is entry

    # ── Mutation ─────────────────────────────────────────────────────

    async def upsert_sequence(self, session_id: str, seq: int, handle_if_new: Any = None) -> SessionEntry:
        """Update the stored sequence number, or insert a new entry.

        Inserting requires *handle_if_new*; the registry takes ownership of it.
        When an entry already exists, *handle_if_new* is ignored.
        """
        entry = self._sessions.get(session_id)
        if entry is not None:
            entry.sequence_number = seq
            entry.touch()
            logger.debug("Session %s sequence -> %d", session_id, seq)
            return entry

        if handle_if_new is None:
            raise ValueError(f"Session '{session_id}' not registered and no render handle supplied")

        evicted: list[SessionEntry] = []
        async with self._sessions_lock:
            entry = self._sessions.get(session_id)
            if entry is not None:
                entry.sequence_number = seq
                entry.touch()
            else:
                entry = SessionEntry(session_id=session_id, sequence_number=seq, handle=handle_if_new)
                self._sessions[session_id] = entry
                if self._max_sessions is not None:
                    evicted = self._pop_lru(self._max_sessions, keep=session_id)
                logger.info("Session created: %s (active=%d)", session_id, len(self._sessions))
        if entry.handle is not handle_if_new:
            await self._release(handle_if_new, session_id)
        await self._release_evicted(evicted)
        return entry

    async def make_room(self) -> list[str]:
        """Evict LRU idle sessions so one more fits under ``max_sessions``.

        Called before a new session's handle is created, so the handle it
        needs is freed first instead of being waited for. Returns the evicted
        ids; a no-op for an unbounded registry.
        """
        if self._max_sessions is None:
            return []
        async with self._sessions_lock:
            evicted = self._pop_lru(self._max_sessions - 1)
        await self._release_evicted(evicted)
        return [e.session_id for e in evicted]

    async def invalidate(self, session_id: str) -> bool:
        """Remove *session_id* and release its handle. Returns False if absent."""
        async with self._sessions_lock:
            entry = self._sessions.pop(session_id, None)
        if entry is None:
            return False
        await self._release(entry.handle, session_id)
        logger.info("Session invalidated: %s", session_id)
        return True

    def _pop_lru(self, limit: int, *, keep: str | None = None) -> list[SessionEntry]:
        """Pop least-recently-used idle entries until at most *limit* remain (caller holds the lock)."""
        evicted: list[SessionEntry] = []
        candidates = sorted(
            (e for sid, e in self._sessions.items() if sid != keep and not e.lock.locked()),
            key=lambda e: e.last_used_at,
        )
        for entry in candidates:
            if len(self._sessions) <= limit:
                break
            self._sessions.pop(entry.session_id, None)
            evicted.append(entry)
        return evicted

    async def _release_evicted(self, evicted: list[SessionEntry]) -> None:
        for old in evicted:
            logger.info("Session evicted (capacity): %s", old.session_id)
            await self._release(old.handle, old.session_id)

    async def _release(self, handle: Any, session_id: str) -> None:
        with suppress(Exception):
            await self._release_handle(handle)
        logger.debug("Render handle released for session %s", session_id)

    # ── Idle eviction ────────────────────────────────────────────────

    async def evict_idle(self, now: float | None = None) -> list[str]:
        """Evict entries idle longer than ``idle_timeout``; returns their ids."""
        if self._idle_timeout is None:
            return []
        now = time.monotonic() if now is None else now
        async with self._sessions_lock:
            expired = [
                e
                for e in self._sessions.values()
                if (now - e.last_used_at) > self._idle_timeout and not e.lock.locked()
            ]
            for entry in expired:
                self._sessions.pop(entry.session_id, None)
        for entry in expired:
            await self._release(entry.handle, entry.session_id)
            logger.info("Reaper evicted idle session: %s", entry.session_id)
        return [e.session_id for e in expired]

    def start_reaper(self) -> None:
        """Start the idle-session reaper task (no-op without an idle timeout)."""
        if self._idle_timeout is None or self._reaper_task is not None:
            return
        self._shutdown_event.clear()
        self._reaper_task = asyncio.get_running_loop().create_task(self._reaper_loop(), name="golf-session-reaper")
        self._reaper_task.add_done_callback(self._handle_reaper_crash)

    def _handle_reaper_crash(self, task: asyncio.Task) -> None:
        """Restart reaper if it crashed unexpectedly (not cancelled)."""
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None and not self._shutdown_event.is_set():
            logger.error("Session reaper crashed, restarting: %s", exc, exc_info=exc)
            self._reaper_task = None
            self.start_reaper()

    async def _reaper_loop(self) -> None:
        while not self._shutdown_event.is_set():
            try:
                async with asyncio.timeout(self._reaper_interval):
                    await self._shutdown_event.wait()
                    return  # shutdown requested
            except TimeoutError:
                pass  # normal wakeup: run reap cycle
            await self.evict_idle()

    # ── Shutdown ─────────────────────────────────────────────────────

    async def shutdown(self) -> None:
        """Stop the reaper and release every session's handle."""
        self._shutdown_event.set()
        if self._reaper_task and not self._reaper_task.done():
            self._reaper_task.cancel()
            with suppress(asyncio.CancelledError):
                await self._reaper_task
        self._reaper_task = None

        async with self._sessions_lock:
            entries = list(self._sessions.values())
            self._sessions.clear()
        for entry in entries:
            await self._release(entry.handle, entry.session_id)
        logger.info("Session registry shut down (%d sessions released)", len(entries))

    # ── Introspection ────────────────────────────────────────────────

    @property
    def active_sessions(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._sessions
