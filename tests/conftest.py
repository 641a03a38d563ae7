# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Shared test configuration and fixtures."""

try:
    import golfproxy  # noqa: F401
except ImportError:
    raise ImportError("golfproxy is not installed. Run: pip install -e '.[dev]'") from None

from pathlib import Path

import pytest

from tests._fake_engine import SHELL_HTML, FakeEngine


@pytest.fixture(autouse=True)
def _block_real_browser(request, monkeypatch):
    """Safety net: prevent real Chromium launches in unit tests.

    Tests drive the orchestrator through ``FakeEngine``. A test that builds
    an app without an engine (so the lifespan would start Playwright) gets a
    clear error instead of silently launching a browser.

    Tests that mock Playwright themselves can opt out with::

        @pytest.mark.allow_real_engine
    """
    if "allow_real_engine" in request.keywords:
        return

    async def _no_real_engine(self):
        raise RuntimeError("Test tried to launch a real browser. Pass engine=FakeEngine() instead.")

    monkeypatch.setattr("golfproxy.renderer.PlaywrightEngine.start", _no_real_engine)


@pytest.fixture
def engine() -> FakeEngine:
    return FakeEngine()


@pytest.fixture
def app_root(tmp_path: Path) -> Path:
    """Application directory with a shell page, a library and a screen."""
    (tmp_path / "libraries").mkdir()
    (tmp_path / "components").mkdir()
    (tmp_path / "screens").mkdir()
    (tmp_path / "new.html").write_text(SHELL_HTML, encoding="utf-8")
    (tmp_path / "libraries" / "jquery.js").write_text("/* jquery */\n", encoding="utf-8")
    (tmp_path / "components" / "widget.css").write_text(".widget { color: red; }\n", encoding="utf-8")
    (tmp_path / "screens" / "home.html").write_text("<div>home</div>\n", encoding="utf-8")
    (tmp_path / "empty.txt").write_text("", encoding="utf-8")
    return tmp_path
