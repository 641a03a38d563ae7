# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Element identity reconciliation across independent render passes.

The execution engine stamps ``golfid`` attributes in document order, starting
from a base that depends on the render environment. Two renders of the same
document structure therefore agree on *relative* identity order but not on
absolute values, and a single first-element offset realigns the rest:

    offset = first_id(live render) - first_id(cached render)
    live target = cached target + offset

Leaf module: depends on lxml (parsed through markup.py) only.
"""

from __future__ import annotations

import logging

from lxml import etree

from . import IDENTITY_ATTR
from .markup import parse_document

logger = logging.getLogger(__name__)


def first_identity(html: str | None) -> int | None:
    """Return the first ``golfid`` in document order, or None.

    None when *html* is empty or unparsable, has no identified element, or the
    first identified element carries a value that is not an integer.
    """
    if not html or not html.strip():
        return None
    try:
        doc = parse_document(html)
    except (etree.ParserError, ValueError):
        logger.debug("Identity scan: unparsable document", exc_info=True)
        return None
    for el in doc.iter():
        if not isinstance(el.tag, str):
            continue  # comments, processing instructions
        raw = el.get(IDENTITY_ATTR)
        if raw is None:
            continue
        try:
            return int(raw.strip())
        except ValueError:
            return None
    return None


def compute_offset(render_a: str | None, render_b: str | None) -> int | None:
    """Identity shift from *render_a* to *render_b* (``id_b - id_a``), or None if unknown."""
    id_a = first_identity(render_a)
    id_b = first_identity(render_b)
    if id_a is None or id_b is None:
        return None
    return id_b - id_a


def remap_target(offset: int | None, target: str | int | None) -> int | None:
    """Translate *target* across *offset*; None when no retarget is possible."""
    if offset is None or target is None:
        return None
    if isinstance(target, int):
        return target + offset
    try:
        return int(target.strip()) + offset
    except ValueError:
        return None


def reconcile_target(cached_html: str | None, live_html: str, target: str | None) -> int | None:
    """Map a target captured against *cached_html* onto *live_html*.

    None means the caller must treat the request as stale, never as a no-op.
    """
    cached_first = first_identity(cached_html)
    live_first = first_identity(live_html)
    offset = None if cached_first is None or live_first is None else live_first - cached_first
    new_target = remap_target(offset, target)
    logger.info(
        "Identity reconcile: cached_first=%s live_first=%s offset=%s target=%s -> %s",
        cached_first,
        live_first,
        offset,
        target,
        new_target,
    )
    return new_target
