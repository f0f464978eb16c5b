from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Sequence

import pandas as pd

from rollcall.errors import EmptyImportError


@dataclass
class RosterSource:
    """Raw roster rows plus the literal headers seen in the file."""
    headers: List[str]
    rows: List[Dict[str, Any]] = field(default_factory=list)

    @classmethod
    def from_records(cls, records: Sequence[Dict[str, Any]], headers: Sequence[str] = ()) -> "RosterSource":
        hdrs = list(headers)
        if not hdrs:
            for r in records:
                for k in r:
                    if k not in hdrs:
                        hdrs.append(k)
        return cls(headers=hdrs, rows=[dict(r) for r in records])


def read_roster(src: Any) -> RosterSource:
    """
    Parse a CSV (path, URL, or file-like such as a Streamlit upload).
    Headers are lower-cased and stripped; every cell comes back as text.
    """
    try:
        df = pd.read_csv(src, dtype=str, keep_default_na=False).fillna("")
    except pd.errors.EmptyDataError:
        raise EmptyImportError("CSV file is empty")

    df.columns = [str(c).strip().lower() for c in df.columns]
    return RosterSource(headers=list(df.columns), rows=df.to_dict(orient="records"))


def published_csv_url(url: str) -> str:
    """
    Turn a published Google Sheet link into its CSV export link.
    In Sheets: File → Share → Publish to web → pick the tab → CSV.
    """
    u = (url or "").strip()
    if not u:
        raise ValueError("Empty URL.")
    if u.endswith("/pubhtml"):
        u = u[:-8] + "/pub?output=csv"
    if "output=csv" not in u and "googleapis.com" not in u:
        if "pub?" in u:
            u += "&output=csv"
        else:
            u += "?output=csv"
    return u
