# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Shared lxml document parsing.

Markup is parsed from UTF-8 bytes: lxml refuses ``str`` input that carries an
encoding declaration, and XHTML application shells usually start with
``<?xml version="1.0" encoding="UTF-8"?>``.
"""

from __future__ import annotations

import lxml.html


def parse_document(html: str) -> lxml.html.HtmlElement:
    """Parse *html* into a full document tree (``<html>`` root)."""
    parser = lxml.html.HTMLParser(recover=True, encoding="utf-8")
    return lxml.html.document_fromstring(html.encode("utf-8"), parser=parser)
