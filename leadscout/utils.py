"""Small helpers shared across LeadScout modules."""
from __future__ import annotations

import json
import re
from datetime import datetime
from typing import Any

_MISSING = object()
_WS_RE = re.compile(r"\s+")


def json_parse(value: str | None, default: Any = _MISSING) -> Any:
    """Parse a JSON text column, returning *default* (``{}``) on failure."""
    try:
        return json.loads(value or "")
    except (json.JSONDecodeError, TypeError):
        return {} if default is _MISSING else default


def iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def collapse_ws(value: str | None) -> str:
    """Strip and collapse internal whitespace to single spaces."""
    return _WS_RE.sub(" ", value or "").strip()
