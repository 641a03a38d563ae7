# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Execution engine: headless Chromium via Playwright.

One Chromium process hosts up to ``max_handles`` isolated BrowserContexts.
Each render handle owns one context and one page, and keeps that page alive
between requests so a session's events replay against its live DOM.
Capacity is gated by ``asyncio.Semaphore`` (CPython FIFO-guaranteed).

Lifecycle follows the ``AsyncContextManager`` pattern::

    async with PlaywrightEngine(EngineConfig()) as engine:
        handle = await engine.create_handle()
        doc = await engine.render(handle, html, "http://localhost:8000/app/")
        ...
        await engine.release_handle(handle)

Element identities: an init script stamps a ``golfid`` attribute on every
element in document order, counting up from ``identity_base``. Identities are
re-stamped before every serialization so elements created by fired events get
fresh ids.
"""

from __future__ import annotations

import asyncio
import logging
import sys
import time
import uuid
from contextlib import suppress
from dataclasses import dataclass, field
from types import TracebackType
from typing import Any, Protocol, runtime_checkable

from playwright.async_api import (
    Browser,
    BrowserContext,
    Dialog,
    ElementHandle,
    Page,
    Playwright,
    Route,
    async_playwright,
)
from playwright.async_api import Error as PlaywrightError

from . import IDENTITY_ATTR
from .errors import EngineUnavailableError, RenderError

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Renderer contract
# ---------------------------------------------------------------------------


@runtime_checkable
class RenderEngine(Protocol):
    """Capabilities the orchestrator consumes from an execution engine.

    Documents and elements are opaque to the caller.
    """

    async def create_handle(self) -> Any: ...

    async def release_handle(self, handle: Any) -> None: ...

    async def render(self, handle: Any, source: str, url: str) -> Any: ...

    async def serialize(self, document: Any) -> str: ...

    async def locate_element_by_identity(self, document: Any, identity: int) -> Any | None: ...

    async def fire_event(self, element: Any, event: str) -> None: ...

    def current_document(self, handle: Any) -> Any: ...


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


@dataclass
class EngineConfig:
    """Browser launch and render configuration."""

    headless: bool = True
    max_handles: int = 20
    acquire_timeout: float = 30.0
    viewport_width: int = 1024
    viewport_height: int = 768
    locale: str = "en-US"
    timeout_ms: int = 30000
    settle_quiet_ms: int = 100  # DOM mutation quiet period (ms)
    settle_max_ms: int = 2000  # Maximum settle wait (ms)
    identity_base: int = 1


def chromium_launch_args(config: EngineConfig) -> list[str]:
    """Chromium flags for a server-side renderer."""
    return [
        f"--lang={config.locale}",
        "--disable-extensions",
        "--disable-plugins",
        "--disable-dev-shm-usage",
        "--disable-background-networking",
        "--disable-sync",
        "--disable-gpu",
        "--no-first-run",
        "--disable-breakpad",
        "--no-pings",
        "--disable-component-update",
        "--noerrdialogs",
    ]


# ---------------------------------------------------------------------------
# Health snapshot
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class EngineHealth:
    """Immutable snapshot of engine state for monitoring."""

    active_handles: int
    max_handles: int
    browser_connected: bool


# ---------------------------------------------------------------------------
# Render handle
# ---------------------------------------------------------------------------


@dataclass(eq=False)
class RenderHandle:
    """One isolated BrowserContext + Page, owned by a single session."""

    context: BrowserContext
    page: Page
    handle_id: str = field(default_factory=lambda: uuid.uuid4().hex[:8])
    created_at: float = field(default_factory=time.monotonic)
    closed: bool = False

    async def close(self) -> None:
        """Close the context. Safe to call twice or on a crashed browser."""
        if self.closed:
            return
        self.closed = True
        with suppress(Exception):
            await self.context.close()


# ---------------------------------------------------------------------------
# Chromium auto-install
# ---------------------------------------------------------------------------

_chromium_install_attempted = False
_AUTO_INSTALL_TIMEOUT = 300  # seconds


async def _auto_install_chromium() -> bool:
    """Run ``playwright install chromium`` once per process."""
    global _chromium_install_attempted  # noqa: PLW0603
    if _chromium_install_attempted:
        return False
    _chromium_install_attempted = True

    logger.info("Chromium not found, running 'playwright install chromium'")
    try:
        proc = await asyncio.create_subprocess_exec(
            sys.executable,
            "-m",
            "playwright",
            "install",
            "chromium",
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        _stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=_AUTO_INSTALL_TIMEOUT)
        if proc.returncode == 0:
            logger.info("Chromium installed successfully")
            return True
        logger.warning(
            "playwright install chromium failed (rc=%d): %s",
            proc.returncode,
            stderr.decode(errors="replace")[:500],
        )
        return False
    except TimeoutError:
        logger.warning("Chromium install timed out after %ds", _AUTO_INSTALL_TIMEOUT)
        return False
    except Exception:
        logger.warning("Chromium auto-install failed", exc_info=True)
        return False


# ---------------------------------------------------------------------------
# PlaywrightEngine
# ---------------------------------------------------------------------------


class PlaywrightEngine:
    """Shared Chromium with one BrowserContext per render handle."""

    def __init__(self, config: EngineConfig | None = None) -> None:
        self._config = config or EngineConfig()
        self._playwright: Playwright | None = None
        self._browser: Browser | None = None
        self._semaphore: asyncio.Semaphore | None = None
        self._handles: set[RenderHandle] = set()

    @property
    def config(self) -> EngineConfig:
        return self._config

    # ── AsyncContextManager ──────────────────────────────────────────

    async def __aenter__(self) -> PlaywrightEngine:
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.shutdown()

    async def start(self) -> None:
        """Launch Chromium, auto-installing it on the first 'executable not found' error."""
        self._playwright = await async_playwright().start()
        args = chromium_launch_args(self._config)
        try:
            self._browser = await self._playwright.chromium.launch(headless=self._config.headless, args=args)
        except Exception as exc:
            if "executable doesn't exist" in str(exc).lower() and await _auto_install_chromium():
                self._browser = await self._playwright.chromium.launch(headless=self._config.headless, args=args)
            else:
                await self._playwright.stop()
                self._playwright = None
                raise EngineUnavailableError(
                    "Chromium could not be launched. Please run: playwright install chromium"
                ) from exc
        self._semaphore = asyncio.Semaphore(self._config.max_handles)
        logger.info(
            "PlaywrightEngine started (max_handles=%d, headless=%s)",
            self._config.max_handles,
            self._config.headless,
        )

    # ── Handles ──────────────────────────────────────────────────────

    async def create_handle(self) -> RenderHandle:
        """Create an isolated render context. Blocks while at capacity."""
        if self._browser is None or self._semaphore is None:
            raise EngineUnavailableError("Engine not started")
        try:
            async with asyncio.timeout(self._config.acquire_timeout):
                await self._semaphore.acquire()
        except TimeoutError as exc:
            raise RenderError(
                f"No render capacity within {self._config.acquire_timeout:.0f}s "
                f"({len(self._handles)}/{self._config.max_handles} handles busy)"
            ) from exc
        try:
            context = await self._browser.new_context(
                viewport={"width": self._config.viewport_width, "height": self._config.viewport_height},
                locale=self._config.locale,
                service_workers="block",
                accept_downloads=False,
            )
            await context.add_init_script(script=_identity_init_js(self._config.identity_base))
            context.on("dialog", self._on_dialog)
            page = await context.new_page()
            page.on("pageerror", self._on_page_error)
        except Exception as exc:
            self._semaphore.release()
            raise RenderError(f"Could not create render context: {exc}") from exc
        handle = RenderHandle(context=context, page=page)
        self._handles.add(handle)
        logger.debug("Render handle created: %s (active=%d)", handle.handle_id, len(self._handles))
        return handle

    async def release_handle(self, handle: RenderHandle) -> None:
        """Destroy *handle*'s context and free its capacity slot."""
        if handle not in self._handles:
            logger.debug("Release: handle %s not active (no-op)", handle.handle_id)
            return
        self._handles.discard(handle)
        await handle.close()
        if self._semaphore is not None:
            self._semaphore.release()
        logger.debug("Render handle released: %s (active=%d)", handle.handle_id, len(self._handles))

    def current_document(self, handle: RenderHandle) -> Page:
        if handle.closed or handle.page.is_closed():
            raise RenderError(f"Render handle {handle.handle_id} is closed")
        return handle.page

    # ── Rendering ────────────────────────────────────────────────────

    async def render(self, handle: RenderHandle, source: str, url: str) -> Page:
        """Load *source* into *handle*'s page as if it had been served from *url*.

        The document request is fulfilled from memory; subresources (scripts,
        stylesheets) are fetched normally relative to *url*.
        """
        page = self.current_document(handle)

        def _is_document(request_url: str) -> bool:
            return request_url == url

        async def _serve_source(route: Route) -> None:
            await route.fulfill(status=200, content_type="text/html; charset=utf-8", body=source)

        await page.route(_is_document, _serve_source)
        try:
            await page.goto(url, wait_until="load", timeout=self._config.timeout_ms)
        except PlaywrightError as exc:
            raise RenderError(f"Render failed for {url}: {exc}") from exc
        finally:
            with suppress(Exception):
                await page.unroute(_is_document, _serve_source)
        return page

    async def serialize(self, document: Page) -> str:
        """Settle the DOM, stamp new identities, and return the page markup."""
        await self._wait_for_dom_settle(document)
        try:
            await document.evaluate(_STAMP_IDENTITIES_JS)
            return await document.content()
        except PlaywrightError as exc:
            raise RenderError(f"Serialization failed: {exc}") from exc

    async def locate_element_by_identity(self, document: Page, identity: int) -> ElementHandle | None:
        """Element carrying ``golfid=identity``, or None when absent."""
        try:
            return await document.query_selector(f'[{IDENTITY_ATTR}="{int(identity)}"]')
        except PlaywrightError:
            logger.debug("Identity lookup failed for %s", identity, exc_info=True)
            return None

    async def fire_event(self, element: ElementHandle, event: str) -> None:
        await element.dispatch_event(event)

    async def _wait_for_dom_settle(self, page: Page) -> dict | None:
        """Wait for DOM mutations to settle using MutationObserver."""
        try:
            result = await page.evaluate(
                _DOM_SETTLE_JS,
                [self._config.settle_quiet_ms, self._config.settle_max_ms],
            )
            logger.debug(
                "DOM settle: %dms, %d mutations, reason=%s",
                result.get("waited_ms", 0),
                result.get("mutations", 0),
                result.get("reason", "unknown"),
            )
            return result
        except Exception:
            logger.debug("DOM settle failed, continuing", exc_info=True)
            return None

    # ── Page callbacks ───────────────────────────────────────────────

    async def _on_dialog(self, dialog: Dialog) -> None:
        """Forward JS dialogs to the log; alert/beforeunload accept, confirm/prompt dismiss.

        Must ALWAYS call accept() or dismiss(): an unanswered dialog freezes the page.
        """
        try:
            logger.info("ALERT: %s", dialog.message)
            if dialog.type in ("alert", "beforeunload"):
                await dialog.accept()
            else:
                await dialog.dismiss()
        except Exception:
            logger.warning("JS dialog handler failed, attempting dismiss fallback", exc_info=True)
            with suppress(Exception):
                await dialog.dismiss()

    def _on_page_error(self, error: Exception) -> None:
        logger.warning("Page script error: %s", error)

    # ── Monitoring ───────────────────────────────────────────────────

    def health(self) -> EngineHealth:
        return EngineHealth(
            active_handles=len(self._handles),
            max_handles=self._config.max_handles,
            browser_connected=self._browser is not None and self._browser.is_connected(),
        )

    @property
    def active_count(self) -> int:
        return len(self._handles)

    # ── Shutdown ─────────────────────────────────────────────────────

    async def shutdown(self) -> None:
        """Close every handle, then the browser and playwright."""
        for handle in list(self._handles):
            await handle.close()
        self._handles.clear()
        if self._browser:
            with suppress(Exception):
                await self._browser.close()
            self._browser = None
        if self._playwright:
            with suppress(Exception):
                await self._playwright.stop()
            self._playwright = None
        logger.info("PlaywrightEngine shut down")


# ── Identity stamping JS ─────────────────────────────────────────────

_IDENTITY_INIT_JS = """(() => {
  let next = __BASE__;
  const ATTR = '__ATTR__';
  const stamp = (el) => {
    if (el.nodeType === 1 && !el.hasAttribute(ATTR)) el.setAttribute(ATTR, String(next++));
  };
  const walk = (root) => {
    stamp(root);
    if (root.querySelectorAll) root.querySelectorAll('*').forEach(stamp);
  };
  window.__golfStampIdentities = () => {
    if (document.documentElement) walk(document.documentElement);
    return next;
  };
  new MutationObserver((records) => {
    for (const r of records) for (const n of r.addedNodes) if (n.nodeType === 1) walk(n);
  }).observe(document, { childList: true, subtree: true });
})();"""


def _identity_init_js(base: int) -> str:
    return _IDENTITY_INIT_JS.replace("__BASE__", str(int(base))).replace("__ATTR__", IDENTITY_ATTR)


_STAMP_IDENTITIES_JS = "() => window.__golfStampIdentities ? window.__golfStampIdentities() : null"

_DOM_SETTLE_JS = """([quietMs, maxMs]) => new Promise(resolve => {
  let mutations = 0;
  let quietTimer = null;
  let maxTimer = null;
  const start = performance.now();

  const finish = (reason) => {
    observer.disconnect();
    if (quietTimer) clearTimeout(quietTimer);
    if (maxTimer) clearTimeout(maxTimer);
    resolve({
      waited_ms: Math.round(performance.now() - start),
      mutations: mutations,
      reason: reason
    });
  };

  const resetQuiet = () => {
    if (quietTimer) clearTimeout(quietTimer);
    quietTimer = setTimeout(() => finish('quiet'), quietMs);
  };

  const observer = new MutationObserver((records) => {
    mutations += records.length;
    resetQuiet();
  });

  observer.observe(document.documentElement, {
    childList: true,
    subtree: true,
    attributes: true,
    attributeFilter: ['class', 'style', 'href'],
    characterData: true
  });

  resetQuiet();
  maxTimer = setTimeout(() => finish('timeout'), maxMs);
})"""
