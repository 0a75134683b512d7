"""Provide utility helpers for timestamps and rich-text content."""

from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Optional

_TAG_RE = re.compile(r"<[^>]*>")
_WS_RE = re.compile(r"\s+")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def strip_html(html: Optional[str]) -> str:
    """Reduce a rich-text blob to its visible text.

    Tags become spaces and whitespace runs collapse, so an editor's empty
    paragraph (``<p></p>``) reads as empty.
    """
    if not html:
        return ""
    return _WS_RE.sub(" ", _TAG_RE.sub(" ", html)).strip()


def has_content(value: Optional[str]) -> bool:
    return strip_html(value) != ""
