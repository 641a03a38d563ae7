# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Server configuration: CLI flags with ``GOLF_*`` environment overrides.

Flags win when given explicitly; otherwise a non-empty environment variable
replaces the default. Boolean env vars accept ``1``/``true``/``yes``.
Malformed numeric env values are ignored (the default stays in effect).
"""

from __future__ import annotations

import argparse
import os
from contextlib import suppress
from dataclasses import dataclass

from .orchestrator import DEFAULT_RENDER_TIMEOUT
from .renderer import EngineConfig
from .session_manager import DEFAULT_IDLE_TIMEOUT

_TRUTHY = ("1", "true", "yes")


@dataclass
class GolfConfig:
    """Everything needed to assemble and run the proxy server."""

    host: str = "127.0.0.1"
    port: int = 8000
    app_root: str = "."
    max_handles: int = 20
    session_idle_timeout: float | None = DEFAULT_IDLE_TIMEOUT
    max_sessions: int | None = None
    max_cached_pages: int | None = None
    render_timeout: float = DEFAULT_RENDER_TIMEOUT
    per_path_locks: bool = False
    evict_stale_sessions: bool = False
    json_logs: bool = False
    log_level: str = "INFO"
    headless: bool = True

    @classmethod
    def from_args(cls, argv: list[str] | None = None) -> GolfConfig:
        return parse_config(argv)

    def session_capacity(self) -> int:
        """Registry bound: ``max_sessions`` if set, else one below ``max_handles``.

        Every session pins a render handle until it is evicted, so the default
        keeps one handle free for page cache fills and new sessions.
        """
        if self.max_sessions is not None:
            return self.max_sessions
        return max(1, self.max_handles - 1)

    def engine_config(self) -> EngineConfig:
        return EngineConfig(
            headless=self.headless,
            max_handles=self.max_handles,
            timeout_ms=int(self.render_timeout * 1000),
        )


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="golf-proxy",
        description="Golf proxy server: cached first renders plus server-side event replay",
    )
    parser.add_argument("--host", default=None, help="Bind address (default: 127.0.0.1)")
    parser.add_argument("--port", type=int, default=None, help="Bind port (default: 8000)")
    parser.add_argument(
        "--app-root",
        default=None,
        help="Application directory holding libraries/, components/, screens/ (default: cwd)",
    )
    parser.add_argument("--max-handles", type=int, default=None, help="Live render contexts (default: 20)")
    parser.add_argument(
        "--session-idle-timeout",
        type=float,
        default=None,
        help="Evict sessions idle this many seconds; 0 disables eviction (default: 1800)",
    )
    parser.add_argument("--max-sessions", type=int, default=None, help="Session capacity, LRU-evicted (default: max-handles - 1)")
    parser.add_argument(
        "--max-cached-pages", type=int, default=None, help="Page cache capacity (default: unbounded)"
    )
    parser.add_argument("--render-timeout", type=float, default=None, help="Seconds per render (default: 30)")
    parser.add_argument(
        "--per-path-locks",
        action="store_true",
        default=False,
        help="Lock the page cache per path instead of with one global render lock",
    )
    parser.add_argument(
        "--evict-stale-sessions",
        action="store_true",
        default=False,
        help="Drop a session as soon as a stale request names it",
    )
    parser.add_argument("--json-logs", action="store_true", default=False, help="Log JSON lines to stderr")
    parser.add_argument("--log-level", default=None, help="Root log level (default: INFO)")
    parser.add_argument("--headed", action="store_true", default=False, help="Show the browser window")
    return parser


def _env(name: str) -> str:
    return os.environ.get(name, "").strip()


def _env_flag(name: str) -> bool:
    return _env(name).lower() in _TRUTHY


def parse_config(argv: list[str] | None = None) -> GolfConfig:
    """Parse CLI args and env vars into a GolfConfig (see GolfConfig.from_args)."""
    args, _ = _build_parser().parse_known_args(argv)
    cfg = GolfConfig()

    def pick(flag_value, env_name: str, convert, current):
        if flag_value is not None:
            return flag_value
        raw = _env(env_name)
        if raw:
            with suppress(ValueError):
                return convert(raw)
        return current

    cfg.host = pick(args.host, "GOLF_HOST", str, cfg.host)
    cfg.port = pick(args.port, "GOLF_PORT", int, cfg.port)
    cfg.app_root = pick(args.app_root, "GOLF_APP_ROOT", str, cfg.app_root)
    cfg.max_handles = pick(args.max_handles, "GOLF_MAX_HANDLES", int, cfg.max_handles)
    cfg.session_idle_timeout = pick(
        args.session_idle_timeout, "GOLF_SESSION_IDLE_TIMEOUT", float, cfg.session_idle_timeout
    )
    if cfg.session_idle_timeout is not None and cfg.session_idle_timeout <= 0:
        cfg.session_idle_timeout = None
    cfg.max_sessions = pick(args.max_sessions, "GOLF_MAX_SESSIONS", int, cfg.max_sessions)
    cfg.max_cached_pages = pick(args.max_cached_pages, "GOLF_MAX_CACHED_PAGES", int, cfg.max_cached_pages)
    cfg.render_timeout = pick(args.render_timeout, "GOLF_RENDER_TIMEOUT", float, cfg.render_timeout)
    cfg.log_level = pick(args.log_level, "GOLF_LOG_LEVEL", str, cfg.log_level)

    cfg.per_path_locks = args.per_path_locks or _env_flag("GOLF_PER_PATH_LOCKS")
    cfg.evict_stale_sessions = args.evict_stale_sessions or _env_flag("GOLF_EVICT_STALE_SESSIONS")
    cfg.json_logs = args.json_logs or _env_flag("GOLF_JSON_LOGS")
    cfg.headless = not (args.headed or _env_flag("GOLF_HEADED"))
    return cfg
