# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Session/sequence injection for every page leaving the engine.

Operates on the lxml document tree rather than on raw markup. Pass order is
fixed (later passes assume identity markers are already gone):

  1. Strip ``golfid`` identity attributes
  2. Proxy-only client output: drop every ``<script>`` element
  3. Proxy event links: set ``golf=<sequence>`` and ``session=<id>``
  4. Script state slots: ``window.serverside`` flag, ``window.sessionid``
  5. Doctype: XHTML 1.0 Strict for client output, none for server output

Output is always serialized with lxml's HTML method, also under the XHTML
doctype: pages are served as ``text/html``, so browsers parse them as HTML and
script bodies must stay unescaped (``a && b``). Empty elements keep explicit
end tags; void elements are not self-closed.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from enum import StrEnum
from urllib.parse import parse_qsl, urlencode

import lxml.html
from lxml import etree

from . import IDENTITY_ATTR
from .context import PARAM_SEQUENCE, PARAM_SESSION
from .markup import parse_document

logger = logging.getLogger(__name__)

XHTML_DOCTYPE = (
    '<!DOCTYPE html PUBLIC "-//W3C//DTD XHTML 1.0 Strict//EN" "http://www.w3.org/TR/xhtml1/DTD/xhtml1-strict.dtd">'
)

# Proxy links look like ``?event=click&target=12&golf=3`` (attribute value, entities decoded)
_EVENT_LINK_RE = re.compile(r"^\?event=[a-zA-Z]+&target=[0-9]+&golf=[0-9]+")

_SERVERSIDE_RE = re.compile(r"(window\.serverside\s*=)\s*[a-zA-Z_]+\s*;")
_SERVERSIDE_READ_RE = re.compile(r"window\.serverside\s*=\s*(true|false)\s*;")
_SESSIONID_RE = re.compile(r'(window\.sessionid\s*=)\s*"[^"]*"\s*;')


class TargetMode(StrEnum):
    """Who consumes the rewritten page."""

    SERVER = "server"  # loaded into the execution engine
    CLIENT = "client"  # sent to the remote browser


@dataclass(frozen=True, slots=True)
class RewriteOptions:
    session: str | None
    sequence_number: int
    target_mode: TargetMode = TargetMode.CLIENT
    proxy_only: bool = False

    @property
    def server(self) -> bool:
        return self.target_mode is TargetMode.SERVER


# ---------------------------------------------------------------------------
# Passes
# ---------------------------------------------------------------------------


def _strip_identity_markers(doc: lxml.html.HtmlElement) -> int:
    marked = doc.xpath(f"//*[@{IDENTITY_ATTR}]")
    for el in marked:
        del el.attrib[IDENTITY_ATTR]
    return len(marked)


def _drop_scripts(doc: lxml.html.HtmlElement) -> int:
    scripts = doc.xpath("//script")
    for script in scripts:
        script.drop_tree()  # keeps tail text
    return len(scripts)


def rewrite_event_href(href: str, sequence_number: int, session: str | None) -> str:
    """Rewrite one proxy link's query; non-proxy hrefs are returned unchanged."""
    if not _EVENT_LINK_RE.match(href):
        return href
    pairs = parse_qsl(href[1:], keep_blank_values=True)
    rewritten: list[tuple[str, str]] = []
    for key, value in pairs:
        if key == PARAM_SESSION:
            continue
        if key == PARAM_SEQUENCE:
            value = str(sequence_number)
        rewritten.append((key, value))
    if session is not None:
        rewritten.append((PARAM_SESSION, session))
    return "?" + urlencode(rewritten)


def _rewrite_event_links(doc: lxml.html.HtmlElement, opts: RewriteOptions) -> int:
    count = 0
    for a in doc.xpath("//a[@href]"):
        href = a.get("href", "")
        new_href = rewrite_event_href(href, opts.sequence_number, opts.session)
        if new_href != href:
            a.set("href", new_href)
            count += 1
    return count


def _inject_state(doc: lxml.html.HtmlElement, opts: RewriteOptions) -> None:
    flag_done = False
    session_done = False
    flag = "true" if opts.server else "false"
    session_literal = json.dumps(opts.session or "")
    for script in doc.xpath("//script"):
        text = script.text
        if not text:
            continue
        if not flag_done:
            text, n = _SERVERSIDE_RE.subn(lambda m: f"{m.group(1)} {flag};", text, count=1)
            flag_done = n > 0
        if not session_done:
            text, n = _SESSIONID_RE.subn(lambda m: f"{m.group(1)} {session_literal};", text, count=1)
            session_done = n > 0
        script.text = text
        if flag_done and session_done:
            break


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def rewrite(html: str, opts: RewriteOptions) -> str:
    """Apply every pass to *html* and serialize the result."""
    doctype = None if opts.server else XHTML_DOCTYPE
    if not html or not html.strip():
        return html if doctype is None else f"{doctype}\n{html}"

    doc = parse_document(html)

    stripped = _strip_identity_markers(doc)
    dropped = 0
    if opts.proxy_only and not opts.server:
        dropped = _drop_scripts(doc)
    links = _rewrite_event_links(doc, opts)
    _inject_state(doc, opts)

    logger.debug(
        "Rewrite: mode=%s seq=%d ids_stripped=%d scripts_dropped=%d links=%d",
        opts.target_mode.value,
        opts.sequence_number,
        stripped,
        dropped,
        links,
    )
    return lxml.html.tostring(doc, encoding="unicode", method="html", doctype=doctype)


def extract_mode(html: str) -> TargetMode | None:
    """Read back the ``window.serverside`` flag, or None when the page has none."""
    if not html or not html.strip():
        return None
    try:
        doc = parse_document(html)
    except (etree.ParserError, ValueError):
        return None
    for script in doc.xpath("//script"):
        m = _SERVERSIDE_READ_RE.search(script.text or "")
        if m:
            return TargetMode.SERVER if m.group(1) == "true" else TargetMode.CLIENT
    return None


def count_scripts(html: str) -> int:
    """Number of ``<script>`` elements in *html*."""
    if not html or not html.strip():
        return 0
    return len(parse_document(html).xpath("//script"))
