from __future__ import annotations

import math
from typing import Any, Dict, Iterable, List
from uuid import uuid4


def new_id(prefix: str) -> str:
    """Generated document id, e.g. ``evt_3f2a...``."""
    return f"{prefix}_{uuid4().hex}"


def norm_text(v: Any) -> str:
    """Coerce a cell to text and strip surrounding whitespace; None and float NaN become ''."""
    if v is None or (isinstance(v, float) and math.isnan(v)):
        return ""
    return str(v).strip()


def lower_keys(row: Dict[str, Any]) -> Dict[str, Any]:
    """Case-insensitive column access: lower-case and strip every key."""
    return {str(k).strip().lower(): v for k, v in row.items() if k is not None}


def missing_columns(headers: Iterable[str], required: Iterable[str]) -> List[str]:
    """Required columns absent from ``headers`` (compared case-insensitively), in required order."""
    seen = {str(h).strip().lower() for h in headers}
    return [c for c in required if c not in seen]
