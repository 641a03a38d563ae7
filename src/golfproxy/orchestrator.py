# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Render orchestration: the per-request session state machine.

Static requests are passed through to the resource locator. Dynamic requests
take exactly one of these paths:

- no event: serve the cached first render of the entry page (rendering it
  once if absent); no session is created or advanced
- event, session registered, sequence matches: replay the event on the
  session's live render (RESUMED_SESSION)
- event, no session, sequence == FIRST_DYNAMIC_SEQUENCE: mint a session,
  render the application shell into a new handle, translate the target from
  the cached page's identity space, replay the event (NEW_SESSION)
- anything else: STALE, redirect to the entry path

The sequence number advances by one only after the event fired and the page
was rewritten; the registry write happens last, so a failure before it leaves
the stored number unchanged and the client can retry.
"""

from __future__ import annotations

import asyncio
import logging
import re
import uuid
from collections.abc import AsyncIterator
from contextlib import AsyncExitStack, asynccontextmanager, suppress
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from . import FIRST_DYNAMIC_SEQUENCE
from .cache import PageCache
from .context import RequestContext, mime_type
from .errors import RenderError, StaleSessionError
from .identity import reconcile_target
from .logging_config import rebind_session
from .renderer import RenderEngine
from .resources import ResourceLocator
from .rewriter import RewriteOptions, TargetMode, rewrite
from .session_manager import SessionEntry, SessionRegistry

logger = logging.getLogger(__name__)

DEFAULT_RENDER_TIMEOUT = 30.0

_SESSION_GROUP_RE = re.compile(r"(...)(?=...)")


# ---------------------------------------------------------------------------
# Outcomes
# ---------------------------------------------------------------------------


class SessionState(StrEnum):
    NEW_SESSION = "new_session"
    RESUMED_SESSION = "resumed_session"
    STALE = "stale"
    DONE = "done"


@dataclass(frozen=True, slots=True)
class PageResult:
    body: str
    content_type: str
    state: SessionState = SessionState.DONE


@dataclass(frozen=True, slots=True)
class Redirect:
    location: str
    reason: str = ""
    state: SessionState = SessionState.STALE


@dataclass(frozen=True, slots=True)
class NotFound:
    path: str


Outcome = PageResult | Redirect | NotFound


def new_session_id() -> str:
    return uuid.uuid4().hex


def format_session(session_id: str | None) -> str:
    """Log prefix for a session id: ``[ABC.DEFGH] `` (empty without one).

    A dot follows each group of three that is followed by another full group.
    """
    if not session_id:
        return ""
    return "[" + _SESSION_GROUP_RE.sub(r"\1.", session_id.upper()) + "] "


# ---------------------------------------------------------------------------
# RenderOrchestrator
# ---------------------------------------------------------------------------


class RenderOrchestrator:
    """Composes page cache, session registry and identity reconciliation around an engine.

    The cache and registry are owned by the orchestrator and injectable for
    tests; both start empty.
    """

    def __init__(
        self,
        engine: RenderEngine,
        *,
        resources: ResourceLocator | None = None,
        page_cache: PageCache | None = None,
        registry: SessionRegistry | None = None,
        render_timeout: float = DEFAULT_RENDER_TIMEOUT,
        evict_stale_sessions: bool = False,
    ) -> None:
        self._engine = engine
        self._resources = resources if resources is not None else ResourceLocator()
        self._cache = page_cache if page_cache is not None else PageCache()
        self._registry = registry if registry is not None else SessionRegistry(engine.release_handle)
        self._render_timeout = render_timeout
        self._evict_stale_sessions = evict_stale_sessions

    @property
    def page_cache(self) -> PageCache:
        return self._cache

    @property
    def registry(self) -> SessionRegistry:
        return self._registry

    @property
    def engine(self) -> RenderEngine:
        return self._engine

    # ── Entry point ──────────────────────────────────────────────────

    async def handle(self, ctx: RequestContext) -> Outcome:
        """Process one request. StaleSessionError never escapes; other errors do."""
        if ctx.is_static:
            return self._static(ctx)

        try:
            if not ctx.has_event:
                return await self._initial_page(ctx)
            entry = self._registry.lookup(ctx.session)
            if entry is not None:
                return await self._resume(ctx, entry)
            return await self._first_contact(ctx)
        except StaleSessionError as exc:
            logger.info("%sCAN'T FIRE EVENT: REDIRECTING (%s)", format_session(ctx.session), exc)
            if self._evict_stale_sessions and exc.session_id is not None:
                await self._registry.invalidate(exc.session_id)
            return Redirect(location=ctx.path, reason=str(exc))

    def _static(self, ctx: RequestContext) -> Outcome:
        body = self._resources.read_static(ctx.path)
        if body is None:
            return NotFound(ctx.path)
        return PageResult(body=body, content_type=mime_type(ctx))

    # ── Initial page (no event) ──────────────────────────────────────

    async def _initial_page(self, ctx: RequestContext) -> PageResult:
        ctx.session = None
        async with AsyncExitStack() as stack:
            handle = None
            if ctx.path not in self._cache:
                # Waiting for engine capacity must not happen under the cache lock
                handle = await stack.enter_async_context(self._scratch_handle())
            html = await self._cache.get_or_create(ctx.path, lambda: self._render_for_cache(ctx, handle))
        ctx.golf_num += 1
        return PageResult(body=self._client_page(ctx, html), content_type="text/html")

    async def _render_for_cache(self, ctx: RequestContext, handle: Any) -> str:
        if handle is None:
            # Page was evicted between the membership check and the fill
            async with self._scratch_handle() as own:
                return await self._render_for_cache(ctx, own)
        source = self._server_source(ctx)
        try:
            async with asyncio.timeout(self._render_timeout):
                doc = await self._engine.render(handle, source, ctx.url)
                return await self._engine.serialize(doc)
        except TimeoutError as exc:
            raise RenderError(f"Render of {ctx.path} timed out after {self._render_timeout:.0f}s") from exc

    @asynccontextmanager
    async def _scratch_handle(self) -> AsyncIterator[Any]:
        """A handle that lives for one render and is always released."""
        handle = await self._engine.create_handle()
        try:
            yield handle
        finally:
            with suppress(Exception):
                await self._engine.release_handle(handle)

    # ── RESUMED_SESSION ──────────────────────────────────────────────

    async def _resume(self, ctx: RequestContext, entry: SessionEntry) -> PageResult:
        sid = entry.session_id
        async with entry.lock:
            if not self._registry.is_current(entry):
                raise StaleSessionError(f"session {sid} was evicted", session_id=sid)
            if ctx.golf_num != entry.sequence_number:
                raise StaleSessionError(
                    f"sequence {ctx.golf_num} != stored {entry.sequence_number}",
                    session_id=sid,
                )
            try:
                async with asyncio.timeout(self._render_timeout):
                    try:
                        doc = self._engine.current_document(entry.handle)
                    except Exception as exc:
                        raise StaleSessionError(f"render handle unavailable: {exc}", session_id=sid) from exc
                    await self._fire(doc, ctx.target, ctx.event, session_id=sid)
                    html = await self._engine.serialize(doc)
            except TimeoutError as exc:
                raise StaleSessionError("event replay timed out", session_id=sid) from exc

            ctx.golf_num += 1
            body = self._client_page(ctx, html)
            await self._registry.upsert_sequence(sid, ctx.golf_num)
        logger.info("%sresumed, sequence -> %d", format_session(sid), ctx.golf_num)
        return PageResult(body=body, content_type="text/html", state=SessionState.RESUMED_SESSION)

    # ── NEW_SESSION ──────────────────────────────────────────────────

    async def _first_contact(self, ctx: RequestContext) -> PageResult:
        if ctx.golf_num != FIRST_DYNAMIC_SEQUENCE:
            # No stored render and not coming from a cached page
            raise StaleSessionError(f"no session and sequence {ctx.golf_num} != {FIRST_DYNAMIC_SEQUENCE}")

        ctx.session = new_session_id()
        rebind_session(ctx.session)
        source = self._server_source(ctx)
        # A full registry frees its least recently used handle before we ask for one
        await self._registry.make_room()
        handle = await self._engine.create_handle()
        committed = False
        try:
            try:
                async with asyncio.timeout(self._render_timeout):
                    doc = await self._engine.render(handle, source, ctx.url)
                    live = await self._engine.serialize(doc)
                    target = reconcile_target(self._cache.get(ctx.path), live, ctx.target)
                    if target is None:
                        raise StaleSessionError(f"target {ctx.target!r} cannot be mapped onto the new render")
                    await self._fire(doc, target, ctx.event)
                    html = await self._engine.serialize(doc)
            except TimeoutError as exc:
                raise StaleSessionError("first render timed out") from exc

            ctx.golf_num += 1
            body = self._client_page(ctx, html)
            await self._registry.upsert_sequence(ctx.session, ctx.golf_num, handle)
            committed = True
        finally:
            if not committed:
                with suppress(Exception):
                    await self._engine.release_handle(handle)
        logger.info("%snew session, sequence -> %d", format_session(ctx.session), ctx.golf_num)
        return PageResult(body=body, content_type="text/html", state=SessionState.NEW_SESSION)

    # ── Helpers ──────────────────────────────────────────────────────

    async def _fire(self, doc: Any, target: str | int | None, event: str | None, *, session_id: str | None = None) -> None:
        """Locate *target* on *doc* and fire *event*; any failure means stale."""
        try:
            identity = int(target) if target is not None else None
        except ValueError:
            identity = None
        if identity is None or not event:
            raise StaleSessionError(f"unusable target {target!r}", session_id=session_id)
        try:
            element = await self._engine.locate_element_by_identity(doc, identity)
        except Exception as exc:
            raise StaleSessionError(f"locating target {identity} failed: {exc}", session_id=session_id) from exc
        if element is None:
            raise StaleSessionError(f"target {identity} not found", session_id=session_id)
        try:
            await self._engine.fire_event(element, event)
        except Exception as exc:
            raise StaleSessionError(f"firing {event!r} on {identity} failed: {exc}", session_id=session_id) from exc

    def _server_source(self, ctx: RequestContext) -> str:
        """Application shell prepared for the execution engine."""
        return rewrite(
            self._resources.app_shell(),
            RewriteOptions(
                session=ctx.session,
                sequence_number=ctx.golf_num,
                target_mode=TargetMode.SERVER,
                proxy_only=ctx.proxy_only,
            ),
        )

    def _client_page(self, ctx: RequestContext, html: str) -> str:
        return rewrite(
            html,
            RewriteOptions(
                session=ctx.session,
                sequence_number=ctx.golf_num,
                target_mode=TargetMode.CLIENT,
                proxy_only=ctx.proxy_only,
            ),
        )
