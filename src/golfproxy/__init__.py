# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Golf proxy: server-side replay of client interactions.

The first render of every application entry page is cached and served to
new clients. When a client fires an event (a click on a proxy link), the
event is replayed against a live headless-browser render owned by that
client's session:

- request classification (``context``)
- first-render page cache (``cache``)
- session registry with sequence-number staleness checks (``session_manager``)
- element identity reconciliation across render passes (``identity``)
- render orchestration (``orchestrator``) and HTML rewriting (``rewriter``)
"""

from __future__ import annotations

__version__ = "0.3.0"

# Attribute the execution engine stamps on every identified element.
IDENTITY_ATTR = "golfid"

# Sequence number carried by the first event request made from a cached page.
# The initial page advances the request's number 0 -> 1 before its links are
# rewritten, so the first proxy link a client follows always says golf=1.
FIRST_DYNAMIC_SEQUENCE = 1
