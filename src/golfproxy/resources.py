# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Static and template resource lookup.

Resources are searched in this order, first hit wins:

1. ``<app_root>/libraries``
2. ``<app_root>/components``
3. ``<app_root>/screens``
4. ``<app_root>`` itself
5. resources bundled with the package (``golfproxy/templates``)

Names that resolve outside their search root are refused.
"""

from __future__ import annotations

import logging
from pathlib import Path

from .errors import ResourceNotFoundError

logger = logging.getLogger(__name__)

SEARCH_SUBDIRS = ("libraries", "components", "screens", "")

_BUNDLED_DIR = Path(__file__).parent / "templates"

# Application shell loaded into the execution engine for every render
APP_SHELL = "new.html"


class ResourceLocator:
    """Finds named resources under an application root and the package data."""

    def __init__(self, app_root: str | Path | None = None) -> None:
        self._app_root = Path(app_root).resolve() if app_root is not None else None

    @property
    def app_root(self) -> Path | None:
        return self._app_root

    def _candidates(self, name: str) -> list[Path]:
        rel = name.lstrip("/")
        if not rel:
            return []
        if self._app_root is None:
            return []
        result: list[Path] = []
        for sub in SEARCH_SUBDIRS:
            root = (self._app_root / sub).resolve() if sub else self._app_root
            candidate = (root / rel).resolve()
            if not candidate.is_relative_to(root):
                logger.warning("Resource lookup refused (outside root): %s", name)
                continue
            result.append(candidate)
        return result

    def _bundled_resource(self, name: str) -> Path | None:
        candidate = (_BUNDLED_DIR / name.lstrip("/")).resolve()
        if not candidate.is_relative_to(_BUNDLED_DIR.resolve()):
            return None
        return candidate if candidate.is_file() else None

    def read_text(self, name: str) -> str:
        """Return the resource as text, or raise ResourceNotFoundError."""
        for candidate in self._candidates(name):
            if candidate.is_file():
                logger.debug("Resource %s -> %s", name, candidate)
                return candidate.read_text(encoding="utf-8")
        bundled = self._bundled_resource(name)
        if bundled is not None:
            logger.debug("Resource %s -> bundled", name)
            return bundled.read_text(encoding="utf-8")
        raise ResourceNotFoundError(name)

    def read_static(self, path: str) -> str | None:
        """Static lookup: last path segment first, then the full path.

        Returns None when neither exists (or both are empty), which the HTTP
        boundary turns into a 404.
        """
        segments = [s for s in path.split("/") if s]
        attempts = []
        if segments:
            attempts.append(segments[-1])
        attempts.append(path)
        for name in attempts:
            try:
                text = self.read_text(name)
            except ResourceNotFoundError:
                continue
            if text:
                return text
        return None

    def app_shell(self) -> str:
        return self.read_text(APP_SHELL)
