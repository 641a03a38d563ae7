# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""First-render page cache, one entry per application entry path.

Pure Python module: no browser dependencies.

Every new client is served the cached first render of its entry page; only
event requests trigger live renders. The render function runs at most once
per path, even when many sessions hit a cold path at the same time:

- fast path: unlocked dict read
- slow path: check-then-fill under a lock (one global lock by default,
  one lock per path with ``per_path_locks=True``)

A failing render stores nothing, so a later request retries.

Capacity is an explicit choice: ``max_entries=None`` keeps every page for the
process lifetime, an integer bound evicts least-recently-used paths.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import OrderedDict
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

logger = logging.getLogger("golfproxy.cache")


# ---------------------------------------------------------------------------
# Cached page
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class CachedPage:
    """The first serialized render of an entry path. Never mutated."""

    path: str
    html: str
    created_at: float = field(default_factory=time.monotonic)


# ---------------------------------------------------------------------------
# Cache stats (observability)
# ---------------------------------------------------------------------------


@dataclass
class CacheStats:
    """Counters for cache behaviour: used for logging and the health endpoint."""

    hits: int = 0
    misses: int = 0
    renders: int = 0
    render_failures: int = 0
    evictions: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total > 0 else 0.0


# ---------------------------------------------------------------------------
# PageCache
# ---------------------------------------------------------------------------


class PageCache:
    """Memoizes the first rendered HTML per logical resource path."""

    def __init__(self, max_entries: int | None = None, *, per_path_locks: bool = False) -> None:
        if max_entries is not None and max_entries < 1:
            raise ValueError(f"max_entries must be positive or None, got {max_entries}")
        self._max_entries = max_entries
        self._per_path_locks = per_path_locks
        self._pages: OrderedDict[str, CachedPage] = OrderedDict()
        self._render_lock = asyncio.Lock()
        self._path_locks: dict[str, asyncio.Lock] = {}
        self._stats = CacheStats()

    # -- Lookup --

    def get(self, path: str) -> str | None:
        """Cached HTML for *path*, or None. Never blocks."""
        page = self._pages.get(path)
        if page is None:
            return None
        if self._max_entries is not None:
            self._pages.move_to_end(path)
        return page.html

    def entry(self, path: str) -> CachedPage | None:
        return self._pages.get(path)

    def __contains__(self, path: str) -> bool:
        return path in self._pages

    def __len__(self) -> int:
        return len(self._pages)

    # -- Fill --

    async def get_or_create(self, path: str, render_fn: Callable[[], Awaitable[str]]) -> str:
        """Return the cached page for *path*, rendering it on first access.

        *render_fn* is awaited at most once per path; concurrent first callers
        wait on the lock and then read the stored result. If it raises,
        nothing is cached and the exception propagates.
        """
        html = self.get(path)
        if html is not None:
            self._stats.hits += 1
            return html

        async with self._lock_for(path):
            # Re-check: another task may have filled it while we waited
            html = self.get(path)
            if html is not None:
                self._stats.hits += 1
                return html

            self._stats.misses += 1
            logger.info("Page cache miss, rendering: %s", path)
            try:
                html = await render_fn()
            except BaseException:
                self._stats.render_failures += 1
                raise
            self._stats.renders += 1
            self._store(CachedPage(path=path, html=html))
            return html

    def _lock_for(self, path: str) -> asyncio.Lock:
        if not self._per_path_locks:
            return self._render_lock
        lock = self._path_locks.get(path)
        if lock is None:
            lock = self._path_locks[path] = asyncio.Lock()
        return lock

    def _store(self, page: CachedPage) -> None:
        # First writer wins; callers only reach here under the path's lock
        if page.path in self._pages:
            return
        self._pages[page.path] = page
        if self._max_entries is None:
            return
        while len(self._pages) > self._max_entries:
            evicted, _ = self._pages.popitem(last=False)
            self._path_locks.pop(evicted, None)
            self._stats.evictions += 1
            logger.debug("Page cache eviction: %s", evicted)

    # -- Invalidation --

    def clear(self) -> None:
        """Drop every cached page (application redeploy)."""
        self._pages.clear()
        self._path_locks.clear()
        logger.info("Page cache cleared")

    # -- Stats --

    @property
    def stats(self) -> CacheStats:
        return self._stats

    @property
    def capacity(self) -> int | None:
        return self._max_entries
