# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Diagnostic error page for exceptions that escape the orchestrator.

Near-leaf module (stdlib + errors.py). The page carries the exception message
HTML-entity-encoded: every character outside ``[A-Za-z0-9]`` becomes a
numeric character reference, so no message content can break out of the
markup. Credentials are redacted before encoding; the rest of the message,
paths included, is shown unchanged.
"""

from __future__ import annotations

import re

from .errors import EngineUnavailableError, RenderError, ResourceNotFoundError

_SECRET_PATTERNS: list[tuple[re.Pattern[str], str]] = [
    (re.compile(r"Bearer\s+\S+"), "Bearer <redacted>"),
    (re.compile(r"://[^@\s/]+@"), "://<redacted>@"),
    (
        re.compile(r"(?:API_KEY|SECRET|TOKEN|PASSWORD|CREDENTIAL)\s*[=:]\s*\S+", re.IGNORECASE),
        "<redacted>",
    ),
]


def html_entity_encode(text: str | None) -> str:
    """Encode everything except ASCII letters and digits as ``&#N;``."""
    if not text:
        return ""
    out: list[str] = []
    for ch in text:
        if ("a" <= ch <= "z") or ("A" <= ch <= "Z") or ("0" <= ch <= "9"):
            out.append(ch)
        else:
            out.append(f"&#{ord(ch)};")
    return "".join(out)


def sanitize_detail(text: str) -> str:
    """Redact credentials from *text*; the rest of the message is kept as is."""
    for pattern, replacement in _SECRET_PATTERNS:
        text = pattern.sub(replacement, text)
    return text


def error_message(exc: BaseException) -> str:
    """Human-readable message for *exc*; golf errors keep theirs verbatim."""
    if isinstance(exc, ResourceNotFoundError | RenderError):
        return str(exc)
    if isinstance(exc, TimeoutError):
        return "Render timed out"
    message = str(exc)
    return message if message else type(exc).__name__


def error_title(exc: BaseException) -> str:
    if isinstance(exc, EngineUnavailableError):
        return "Browser unavailable"
    if isinstance(exc, ResourceNotFoundError):
        return "Resource not found"
    return "Golf error"


def render_error_page(exc: BaseException) -> str:
    """Minimal HTML body for a 500 response."""
    detail = html_entity_encode(sanitize_detail(error_message(exc)))
    return "\n".join(
        [
            f"<html><head><title>{error_title(exc)}</title></head><body>",
            "<table height='100%' width='100%'>",
            "<tr><td valign='middle' align='center'>",
            "<table width='600px'>",
            "<tr><td style='color:darkred;border:1px dashed red;"
            "background:#fee;padding:0.5em;font-family:monospace'>",
            f"<b>Golf error:</b> {detail}",
            "</td></tr>",
            "</table>",
            "</td></tr>",
            "</table>",
            "</body></html>",
            "",
        ]
    )
