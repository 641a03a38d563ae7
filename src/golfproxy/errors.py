# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Golf exception hierarchy.

All golf-specific errors inherit from GolfError, allowing the HTTP boundary
to catch the base class for any golf failure or specific subclasses for
targeted handling.
"""

from __future__ import annotations


class GolfError(Exception):
    """Base exception for all golf errors."""


class StaleSessionError(GolfError):
    """Client state no longer matches the server-side render.

    Raised for a sequence-number mismatch, a missing session entry, or an
    event target that cannot be located on the live render. Always recovered
    by redirecting the client to the application entry point.
    """

    def __init__(self, message: str, *, session_id: str | None = None) -> None:
        super().__init__(message)
        self.session_id = session_id


class ResourceNotFoundError(GolfError):
    """Static or template resource missing from every lookup location."""

    def __init__(self, name: str) -> None:
        super().__init__(f"File not found ({name})")
        self.name = name


class RenderError(GolfError):
    """Execution engine failed while rendering or firing an event."""


class EngineUnavailableError(RenderError):
    """Headless browser could not be launched."""
