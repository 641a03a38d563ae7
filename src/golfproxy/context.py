# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""RequestContext: leaf module, the request classifier.

Parses raw query parameters into a validated ``GolfParams`` struct and
classifies the request (static vs. dynamic, event-bearing, JSONP, proxy-only).
Malformed values never raise: an unparsable sequence number means "no
sequence" (0), and an unparsable target is left for the orchestrator to
reject as stale.

Dependency graph: context.py <- orchestrator.py, context.py <- server.py (acyclic).
"""

from __future__ import annotations

import dataclasses
import uuid
from collections.abc import Mapping
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from starlette.requests import Request

# Query parameter names recognised by the proxy protocol
PARAM_EVENT = "event"
PARAM_TARGET = "target"
PARAM_SESSION = "session"
PARAM_SEQUENCE = "golf"
PARAM_JS = "js"
PARAM_JSONP = "jsonp"

# ``js=false`` disables client mode (no scripts reach the browser)
JS_DISABLED_VALUE = "false"

# Path suffix that marks an application entry point (dynamic request)
APP_ENTRY_SUFFIX = "/"


@dataclasses.dataclass(frozen=True, slots=True)
class GolfParams:
    """Recognised query string parameters, all optional raw strings."""

    event: str | None = None  # event to proxy ("click", etc.)
    target: str | None = None  # golfid of the element to fire on
    session: str | None = None
    golf: str | None = None  # sequence number
    js: str | None = None
    jsonp: str | None = None  # JSONP callback name

    @classmethod
    def from_mapping(cls, params: Mapping[str, str]) -> GolfParams:
        return cls(
            event=params.get(PARAM_EVENT),
            target=params.get(PARAM_TARGET),
            session=params.get(PARAM_SESSION),
            golf=params.get(PARAM_SEQUENCE),
            js=params.get(PARAM_JS),
            jsonp=params.get(PARAM_JSONP),
        )


def parse_sequence(raw: str | None) -> int:
    """Parse the ``golf`` parameter; absent or malformed means 0."""
    if raw is None:
        return 0
    try:
        return int(raw.strip())
    except ValueError:
        return 0


@dataclasses.dataclass(slots=True, kw_only=True)
class RequestContext:
    """Per-request state. Constructed once per request, never shared.

    ``session`` and ``golf_num`` are mutable: the orchestrator assigns a
    session id on first contact and advances the sequence number after a
    successful render.
    """

    path: str
    params: GolfParams
    golf_num: int = 0
    session: str | None = None
    is_static: bool = False
    is_jsonp: bool = False
    has_event: bool = False
    proxy_only: bool = False
    url: str = ""
    query_string: str = ""
    method: str = "GET"
    client_host: str = ""
    request_id: str = dataclasses.field(default_factory=lambda: uuid.uuid4().hex[:12])

    @classmethod
    def from_params(
        cls,
        path: str,
        params: Mapping[str, str],
        *,
        url: str = "",
        query_string: str = "",
        method: str = "GET",
        client_host: str = "",
    ) -> RequestContext:
        """Classify a request from its path and query parameters."""
        parsed = GolfParams.from_mapping(params)
        return cls(
            path=path,
            params=parsed,
            golf_num=parse_sequence(parsed.golf),
            session=parsed.session,
            is_static=not path.endswith(APP_ENTRY_SUFFIX),
            is_jsonp=parsed.jsonp is not None,
            has_event=parsed.event is not None and parsed.target is not None,
            proxy_only=parsed.js is not None and parsed.js == JS_DISABLED_VALUE,
            url=url,
            query_string=query_string,
            method=method,
            client_host=client_host,
        )

    @classmethod
    def from_request(cls, request: Request) -> RequestContext:
        """Build from a Starlette request (repeated keys: last value wins)."""
        return cls.from_params(
            request.url.path,
            request.query_params,
            url=str(request.url),
            query_string=request.url.query,
            method=request.method,
            client_host=request.client.host if request.client else "",
        )

    @property
    def target(self) -> str | None:
        return self.params.target

    @property
    def event(self) -> str | None:
        return self.params.event


def mime_type(ctx: RequestContext) -> str:
    """Content type for a static resource, chosen from the path extension."""
    path = ctx.path
    if ctx.is_jsonp or path.endswith(".js"):
        return "text/javascript"
    if path.endswith(".html"):
        return "text/html"
    if path.endswith(".css"):
        return "text/css"
    return "text/plain"
