# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Tests for RenderOrchestrator: the per-request session state machine.

Driven through FakeEngine; no browser is launched.
"""

from __future__ import annotations

import asyncio
from urllib.parse import parse_qs

import lxml.html
import pytest

from golfproxy import IDENTITY_ATTR
from golfproxy.cache import PageCache
from golfproxy.config import GolfConfig
from golfproxy.context import RequestContext
from golfproxy.errors import RenderError, ResourceNotFoundError
from golfproxy.orchestrator import (
    NotFound,
    PageResult,
    Redirect,
    RenderOrchestrator,
    SessionState,
    format_session,
    new_session_id,
)
from golfproxy.resources import ResourceLocator
from golfproxy.rewriter import XHTML_DOCTYPE
from golfproxy.server import build_orchestrator
from golfproxy.session_manager import SessionRegistry
from tests._fake_engine import SHELL_HTML, CappedEngine, FakeEngine

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _ctx(path: str = "/app/", **params: str) -> RequestContext:
    return RequestContext.from_params(path, params, url=f"http://localhost:8000{path}")


def _orchestrator(engine: FakeEngine, app_root, **kwargs) -> RenderOrchestrator:
    return RenderOrchestrator(
        engine,
        resources=ResourceLocator(app_root),
        registry=SessionRegistry(engine.release_handle, idle_timeout=None),
        **kwargs,
    )


def _link_queries(html: str) -> list[dict[str, list[str]]]:
    doc = lxml.html.document_fromstring(html)
    return [parse_qs(a.get("href")[1:]) for a in doc.xpath("//a[@href]")]


async def _seed_session(orch: RenderOrchestrator, engine: FakeEngine, sid: str, seq: int):
    handle = await engine.create_handle()
    await engine.render(handle, SHELL_HTML, "http://localhost:8000/app/")
    await orch.registry.upsert_sequence(sid, seq, handle)
    return handle


# ---------------------------------------------------------------------------
# Log prefix / ids
# ---------------------------------------------------------------------------


class TestSessionFormatting:
    def test_dot_only_between_full_groups(self):
        assert format_session("abcdefgh") == "[ABC.DEFGH] "

    def test_exact_multiple(self):
        assert format_session("abcdef") == "[ABC.DEF] "
        assert format_session("abcdefghi") == "[ABC.DEF.GHI] "

    def test_short_id_unchanged(self):
        assert format_session("abcde") == "[ABCDE] "

    def test_no_session(self):
        assert format_session(None) == ""
        assert format_session("") == ""

    def test_new_session_ids_unique(self):
        ids = {new_session_id() for _ in range(100)}
        assert len(ids) == 100


# ---------------------------------------------------------------------------
# Static requests
# ---------------------------------------------------------------------------


class TestStatic:
    async def test_library_found_by_last_segment(self, engine, app_root):
        orch = _orchestrator(engine, app_root)
        result = await orch.handle(_ctx("/some/where/jquery.js"))
        assert isinstance(result, PageResult)
        assert result.body == "/* jquery */\n"
        assert result.content_type == "text/javascript"
        assert engine.renders == 0

    async def test_css_content_type(self, engine, app_root):
        orch = _orchestrator(engine, app_root)
        result = await orch.handle(_ctx("/widget.css"))
        assert result.content_type == "text/css"

    async def test_jsonp_forces_javascript(self, engine, app_root):
        orch = _orchestrator(engine, app_root)
        result = await orch.handle(_ctx("/home.html", jsonp="cb"))
        assert result.content_type == "text/javascript"
        assert result.body == "<div>home</div>\n"

    async def test_missing_is_not_found(self, engine, app_root):
        orch = _orchestrator(engine, app_root)
        result = await orch.handle(_ctx("/nope.js"))
        assert result == NotFound("/nope.js")

    async def test_empty_file_is_not_found(self, engine, app_root):
        orch = _orchestrator(engine, app_root)
        assert isinstance(await orch.handle(_ctx("/empty.txt")), NotFound)


# ---------------------------------------------------------------------------
# Initial page (no event)
# ---------------------------------------------------------------------------


class TestInitialPage:
    async def test_first_request_renders_once_and_advances_links(self, engine, app_root):
        orch = _orchestrator(engine, app_root)
        result = await orch.handle(_ctx("/app/"))

        assert isinstance(result, PageResult)
        assert result.content_type == "text/html"
        assert result.state is SessionState.DONE
        assert engine.renders == 1
        assert engine.released == engine.created  # cache-fill handle is not kept
        assert result.body.startswith(XHTML_DOCTYPE)
        for query in _link_queries(result.body):
            assert query["golf"] == ["1"]
            assert "session" not in query

    async def test_identity_markers_never_reach_client(self, engine, app_root):
        orch = _orchestrator(engine, app_root)
        result = await orch.handle(_ctx("/app/"))
        assert IDENTITY_ATTR not in result.body
        # ...but the cached copy keeps them for reconciliation
        assert IDENTITY_ATTR in orch.page_cache.get("/app/")

    async def test_second_request_served_from_cache(self, engine, app_root):
        orch = _orchestrator(engine, app_root)
        first = await orch.handle(_ctx("/app/"))
        second = await orch.handle(_ctx("/app/"))
        assert engine.renders == 1
        assert first.body == second.body

    async def test_client_page_is_client_mode(self, engine, app_root):
        orch = _orchestrator(engine, app_root)
        result = await orch.handle(_ctx("/app/"))
        assert "window.serverside = false;" in result.body
        assert 'window.sessionid = "";' in result.body

    async def test_server_source_is_server_mode(self, engine, app_root):
        orch = _orchestrator(engine, app_root)
        await orch.handle(_ctx("/app/"))
        assert "window.serverside = true;" in engine.sources[0]
        assert not engine.sources[0].startswith("<!DOCTYPE")

    async def test_session_param_ignored_without_event(self, engine, app_root):
        orch = _orchestrator(engine, app_root)
        result = await orch.handle(_ctx("/app/", session="ABC"))
        for query in _link_queries(result.body):
            assert "session" not in query
        assert orch.registry.active_sessions == 0

    async def test_concurrent_cold_requests_render_once(self, app_root):
        engine = FakeEngine(render_delay=0.02)
        orch = _orchestrator(engine, app_root)
        results = await asyncio.gather(*(orch.handle(_ctx("/app/")) for _ in range(10)))
        assert engine.renders == 1
        assert len({r.body for r in results}) == 1

    async def test_xml_declared_app_shell(self, engine, app_root):
        (app_root / "new.html").write_text('<?xml version="1.0" encoding="UTF-8"?>\n' + SHELL_HTML)
        orch = _orchestrator(engine, app_root)
        result = await orch.handle(_ctx("/app/"))
        assert isinstance(result, PageResult)
        assert result.body.startswith(XHTML_DOCTYPE)
        first = await orch.handle(_ctx(target="7", event="click", golf="1"))
        assert first.state is SessionState.NEW_SESSION
        assert engine.fired == [(7, "click")]

    async def test_cache_fill_handle_taken_outside_cache_lock(self, engine, app_root):
        cache = PageCache()
        orch = _orchestrator(engine, app_root, page_cache=cache)
        lock_held = []
        create = engine.create_handle

        async def create_and_record():
            lock_held.append(cache._render_lock.locked())
            return await create()

        engine.create_handle = create_and_record
        await orch.handle(_ctx("/app/"))
        assert lock_held == [False]

    async def test_proxy_only_strips_scripts(self, engine, app_root):
        orch = _orchestrator(engine, app_root)
        result = await orch.handle(_ctx("/app/", js="false"))
        assert "<script" not in result.body
        # Scripts still reach the engine
        assert "<script" in engine.sources[0]

    async def test_render_failure_propagates_and_is_not_cached(self, app_root):
        engine = FakeEngine(render_error=RenderError("boom"))
        orch = _orchestrator(engine, app_root)
        with pytest.raises(RenderError, match="boom"):
            await orch.handle(_ctx("/app/"))
        assert "/app/" not in orch.page_cache
        assert engine.live_handles == []

    async def test_render_timeout_raises_render_error(self, app_root):
        engine = FakeEngine(render_delay=1.0)
        orch = _orchestrator(engine, app_root, render_timeout=0.01)
        with pytest.raises(RenderError, match="timed out"):
            await orch.handle(_ctx("/app/"))
        assert engine.live_handles == []

    async def test_missing_shell_raises(self, engine, tmp_path, monkeypatch):
        orch = _orchestrator(engine, tmp_path)
        monkeypatch.setattr("golfproxy.resources.APP_SHELL", "missing-shell.html")
        with pytest.raises(ResourceNotFoundError):
            await orch.handle(_ctx("/app/"))


# ---------------------------------------------------------------------------
# RESUMED_SESSION
# ---------------------------------------------------------------------------


class TestResumedSession:
    async def test_matching_sequence_fires_and_advances(self, engine, app_root):
        orch = _orchestrator(engine, app_root)
        await _seed_session(orch, engine, "ABC", 3)

        result = await orch.handle(_ctx(target="5", event="click", session="ABC", golf="3"))

        assert isinstance(result, PageResult)
        assert result.state is SessionState.RESUMED_SESSION
        assert engine.fired == [(5, "click")]
        assert orch.registry.lookup("ABC").sequence_number == 4
        assert "click 5" in result.body
        for query in _link_queries(result.body):
            assert query["golf"] == ["4"]
            assert query["session"] == ["ABC"]
        assert 'window.sessionid = "ABC";' in result.body

    async def test_mismatched_sequence_redirects_without_firing(self, engine, app_root):
        orch = _orchestrator(engine, app_root)
        await _seed_session(orch, engine, "ABC", 7)

        result = await orch.handle(_ctx(target="5", event="click", session="ABC", golf="3"))

        assert isinstance(result, Redirect)
        assert result.location == "/app/"
        assert result.state is SessionState.STALE
        assert engine.fired == []
        assert orch.registry.lookup("ABC").sequence_number == 7

    async def test_consecutive_events(self, engine, app_root):
        orch = _orchestrator(engine, app_root)
        await _seed_session(orch, engine, "ABC", 3)
        await orch.handle(_ctx(target="7", event="click", session="ABC", golf="3"))
        await orch.handle(_ctx(target="8", event="click", session="ABC", golf="4"))
        assert engine.fired == [(7, "click"), (8, "click")]
        assert orch.registry.lookup("ABC").sequence_number == 5

    async def test_replayed_request_is_stale(self, engine, app_root):
        orch = _orchestrator(engine, app_root)
        await _seed_session(orch, engine, "ABC", 3)
        await orch.handle(_ctx(target="7", event="click", session="ABC", golf="3"))
        replay = await orch.handle(_ctx(target="7", event="click", session="ABC", golf="3"))
        assert isinstance(replay, Redirect)
        assert len(engine.fired) == 1

    async def test_duplicate_concurrent_requests_fire_once(self, app_root):
        engine = FakeEngine(serialize_delay=0.02)
        orch = _orchestrator(engine, app_root)
        await _seed_session(orch, engine, "ABC", 3)

        results = await asyncio.gather(
            orch.handle(_ctx(target="7", event="click", session="ABC", golf="3")),
            orch.handle(_ctx(target="7", event="click", session="ABC", golf="3")),
        )

        assert sorted(type(r).__name__ for r in results) == ["PageResult", "Redirect"]
        assert engine.fired == [(7, "click")]
        assert orch.registry.lookup("ABC").sequence_number == 4

    async def test_unknown_target_is_stale(self, engine, app_root):
        orch = _orchestrator(engine, app_root)
        await _seed_session(orch, engine, "ABC", 3)
        result = await orch.handle(_ctx(target="999", event="click", session="ABC", golf="3"))
        assert isinstance(result, Redirect)
        assert orch.registry.lookup("ABC").sequence_number == 3

    async def test_malformed_target_is_stale(self, engine, app_root):
        orch = _orchestrator(engine, app_root)
        await _seed_session(orch, engine, "ABC", 3)
        result = await orch.handle(_ctx(target="x1", event="click", session="ABC", golf="3"))
        assert isinstance(result, Redirect)
        assert engine.fired == []

    async def test_fire_failure_is_stale(self, app_root):
        engine = FakeEngine(fire_error=RuntimeError("detached"))
        orch = _orchestrator(engine, app_root)
        await _seed_session(orch, engine, "ABC", 3)
        result = await orch.handle(_ctx(target="5", event="click", session="ABC", golf="3"))
        assert isinstance(result, Redirect)
        assert orch.registry.lookup("ABC").sequence_number == 3

    async def test_closed_handle_is_stale(self, engine, app_root):
        orch = _orchestrator(engine, app_root)
        handle = await _seed_session(orch, engine, "ABC", 3)
        handle.closed = True
        result = await orch.handle(_ctx(target="5", event="click", session="ABC", golf="3"))
        assert isinstance(result, Redirect)

    async def test_timeout_is_stale_and_keeps_sequence(self, app_root):
        engine = FakeEngine(serialize_delay=1.0)
        orch = _orchestrator(engine, app_root, render_timeout=0.01)
        await _seed_session(orch, engine, "ABC", 3)
        result = await orch.handle(_ctx(target="5", event="click", session="ABC", golf="3"))
        assert isinstance(result, Redirect)
        assert orch.registry.lookup("ABC").sequence_number == 3

    async def test_stale_keeps_session_by_default(self, engine, app_root):
        orch = _orchestrator(engine, app_root)
        await _seed_session(orch, engine, "ABC", 7)
        await orch.handle(_ctx(target="5", event="click", session="ABC", golf="3"))
        assert "ABC" in orch.registry
        assert engine.released == []

    async def test_stale_evicts_session_when_enabled(self, engine, app_root):
        orch = _orchestrator(engine, app_root, evict_stale_sessions=True)
        handle = await _seed_session(orch, engine, "ABC", 7)
        await orch.handle(_ctx(target="5", event="click", session="ABC", golf="3"))
        assert "ABC" not in orch.registry
        assert engine.released == [handle]

    async def test_sessions_are_independent(self, engine, app_root):
        orch = _orchestrator(engine, app_root)
        await _seed_session(orch, engine, "AAA", 3)
        await _seed_session(orch, engine, "BBB", 10)
        await orch.handle(_ctx(target="5", event="click", session="AAA", golf="3"))
        assert orch.registry.lookup("AAA").sequence_number == 4
        assert orch.registry.lookup("BBB").sequence_number == 10


# ---------------------------------------------------------------------------
# NEW_SESSION
# ---------------------------------------------------------------------------


class TestFirstContact:
    async def test_first_event_creates_session_and_remaps_target(self, app_root):
        engine = FakeEngine(base_step=100)
        orch = _orchestrator(engine, app_root)
        await orch.handle(_ctx("/app/"))  # cache fill, identities from 1

        result = await orch.handle(_ctx(target="7", event="click", golf="1"))

        assert isinstance(result, PageResult)
        assert result.state is SessionState.NEW_SESSION
        # Second render starts at 101: target 7 in the cached page is 107 live
        assert engine.fired == [(107, "click")]
        assert orch.registry.active_sessions == 1
        queries = _link_queries(result.body)
        session = queries[0]["session"][0]
        assert orch.registry.lookup(session).sequence_number == 2
        for query in queries:
            assert query["golf"] == ["2"]
            assert query["session"] == [session]

    async def test_session_param_without_entry_still_first_contact(self, engine, app_root):
        orch = _orchestrator(engine, app_root)
        await orch.handle(_ctx("/app/"))
        result = await orch.handle(_ctx(target="7", event="click", session="GONE", golf="1"))
        assert result.state is SessionState.NEW_SESSION
        assert "GONE" not in orch.registry

    @pytest.mark.parametrize("golf", ["0", "2", "17", "junk"])
    async def test_only_first_sequence_may_start_session(self, engine, app_root, golf):
        orch = _orchestrator(engine, app_root)
        await orch.handle(_ctx("/app/"))
        renders = engine.renders

        result = await orch.handle(_ctx(target="7", event="click", golf=golf))

        assert isinstance(result, Redirect)
        assert engine.renders == renders
        assert engine.fired == []
        assert orch.registry.active_sessions == 0

    async def test_no_cached_page_is_stale_and_releases_handle(self, engine, app_root):
        orch = _orchestrator(engine, app_root)
        result = await orch.handle(_ctx(target="7", event="click", golf="1"))
        assert isinstance(result, Redirect)
        assert engine.fired == []
        assert engine.live_handles == []
        assert orch.registry.active_sessions == 0

    async def test_fire_failure_releases_handle(self, app_root):
        engine = FakeEngine()
        orch = _orchestrator(engine, app_root)
        await orch.handle(_ctx("/app/"))
        engine.fire_error = RuntimeError("detached")

        result = await orch.handle(_ctx(target="7", event="click", golf="1"))

        assert isinstance(result, Redirect)
        assert engine.live_handles == []
        assert orch.registry.active_sessions == 0

    async def test_render_failure_propagates_and_releases_handle(self, app_root):
        engine = FakeEngine()
        orch = _orchestrator(engine, app_root)
        await orch.handle(_ctx("/app/"))
        engine.render_error = RenderError("crashed")

        with pytest.raises(RenderError):
            await orch.handle(_ctx(target="7", event="click", golf="1"))
        assert engine.live_handles == []

    async def test_new_session_handle_owned_by_registry(self, engine, app_root):
        orch = _orchestrator(engine, app_root)
        await orch.handle(_ctx("/app/"))
        await orch.handle(_ctx(target="7", event="click", golf="1"))
        assert len(engine.live_handles) == 1
        await orch.registry.shutdown()
        assert engine.live_handles == []

    async def test_resume_after_first_contact(self, engine, app_root):
        orch = _orchestrator(engine, app_root)
        await orch.handle(_ctx("/app/"))
        first = await orch.handle(_ctx(target="7", event="click", golf="1"))
        session = _link_queries(first.body)[0]["session"][0]

        second = await orch.handle(_ctx(target="8", event="click", session=session, golf="2"))

        assert second.state is SessionState.RESUMED_SESSION
        assert engine.fired == [(7, "click"), (8, "click")]
        assert orch.registry.lookup(session).sequence_number == 3


# ---------------------------------------------------------------------------
# Render handle capacity
# ---------------------------------------------------------------------------


def _capped(app_root, max_handles: int = 2) -> tuple[CappedEngine, RenderOrchestrator]:
    engine = CappedEngine(capacity=max_handles)
    config = GolfConfig(app_root=str(app_root), max_handles=max_handles, session_idle_timeout=None)
    return engine, build_orchestrator(config, engine)


class TestHandleCapacity:
    async def test_new_sessions_beyond_capacity_evict_oldest(self, app_root):
        engine, orch = _capped(app_root)
        await orch.handle(_ctx("/app/"))

        results = [await orch.handle(_ctx(target="7", event="click", golf="1")) for _ in range(3)]

        assert [r.state for r in results] == [SessionState.NEW_SESSION] * 3
        newest = _link_queries(results[-1].body)[0]["session"][0]
        assert orch.registry.active_sessions == 1
        assert newest in orch.registry
        assert len(engine.live_handles) == 1

    async def test_cache_fill_while_registry_full(self, app_root):
        engine, orch = _capped(app_root)
        await orch.handle(_ctx("/app/"))
        await orch.handle(_ctx(target="7", event="click", golf="1"))

        result = await orch.handle(_ctx("/other/"))

        assert isinstance(result, PageResult)
        assert "/other/" in orch.page_cache
        assert len(engine.live_handles) == 1

    async def test_live_session_survives_cache_fills(self, app_root):
        engine, orch = _capped(app_root)
        await orch.handle(_ctx("/app/"))
        first = await orch.handle(_ctx(target="7", event="click", golf="1"))
        session = _link_queries(first.body)[0]["session"][0]
        for path in ("/a/", "/b/", "/c/"):
            await orch.handle(_ctx(path))

        resumed = await orch.handle(_ctx(target="8", event="click", session=session, golf="2"))

        assert resumed.state is SessionState.RESUMED_SESSION
        assert engine.fired == [(7, "click"), (8, "click")]

    async def test_concurrent_first_contacts_within_capacity(self, app_root):
        engine, orch = _capped(app_root, max_handles=3)
        await orch.handle(_ctx("/app/"))

        results = await asyncio.gather(*(orch.handle(_ctx(target="7", event="click", golf="1")) for _ in range(2)))

        assert all(r.state is SessionState.NEW_SESSION for r in results)
        assert orch.registry.active_sessions == 2


# ---------------------------------------------------------------------------
# Construction
# ---------------------------------------------------------------------------


class TestConstruction:
    def test_defaults_start_empty(self, engine):
        orch = RenderOrchestrator(engine)
        assert len(orch.page_cache) == 0
        assert orch.registry.active_sessions == 0
        assert orch.engine is engine

    def test_injected_components_are_used(self, engine):
        cache = PageCache(max_entries=3)
        registry = SessionRegistry(engine.release_handle)
        orch = RenderOrchestrator(engine, page_cache=cache, registry=registry)
        assert orch.page_cache is cache
        assert orch.registry is registry
