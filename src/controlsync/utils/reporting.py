"""
Reporting helpers (table or JSON) for plan/apply results.

`print_rows` auto-selects the columns that carry data and produces a compact
table that fits CLI usage. JSON output is also supported for machine
consumption.
"""
from __future__ import annotations

import dataclasses
import json
import logging
from typing import Any, Dict, Iterable, List

log = logging.getLogger(__name__)

_EMPTY = "-"

# Candidate columns in preferred order
_CANDIDATES = [
    "address",
    "kind",
    "name",
    "action",
    "status",
    "identity",
    "changes",
    "reason",
    "error",
]
_MANDATORY = {"address", "kind"}


def _as_dict(row: Any) -> Dict[str, Any]:
    if dataclasses.is_dataclass(row) and not isinstance(row, type):
        return dataclasses.asdict(row)
    return dict(row)


def _normalize_row(row: Dict[str, Any]) -> Dict[str, Any]:
    """
    Normalize a raw result row so the table is consistent:
    - list/tuple values joined with commas,
    - error text trimmed to one short line.
    """
    r = dict(row)
    changes = r.get("changes")
    if isinstance(changes, (list, tuple)):
        r["changes"] = ",".join(str(c) for c in changes)
    err = r.get("error")
    if isinstance(err, str) and err.strip():
        r["error"] = err.strip().splitlines()[0][:160]
    return r


def print_rows(rows: Iterable[Any], fmt: str = "table") -> None:
    """Render result rows as a table or JSON.

    Args:
        rows: Dataclass instances (PlanItem, ApplyResult) or plain dicts.
        fmt: Either ``"table"`` (default) or ``"json"``.
    """
    norm_rows = [_normalize_row(_as_dict(r)) for r in rows]

    if fmt == "json":
        print(json.dumps(norm_rows, indent=2, default=str))
        return
    if fmt != "table":
        log.warning("reporting: unknown format '%s', falling back to table", fmt)

    if not norm_rows:
        print("(no resources)")
        return

    def _present(v: Any) -> bool:
        return not (v is None or v == "" or v == [] or v == ())

    cols: List[str] = []
    for c in _CANDIDATES:
        if (c in _MANDATORY) or any(_present(r.get(c)) for r in norm_rows):
            cols.append(c)

    def _fmt(v: Any, col: str) -> str:
        s = "" if v is None else str(v)
        if col == "identity" and len(s) > 16:
            return f"{s[:8]}…{s[-4:]}"
        if s == "":
            return _EMPTY
        return s

    widths = {c: len(c) for c in cols}
    for r in norm_rows:
        for c in cols:
            widths[c] = max(widths[c], len(_fmt(r.get(c), c)))

    header = "| " + " | ".join(c.ljust(widths[c]) for c in cols) + " |"
    sep = "| " + " | ".join("-" * widths[c] for c in cols) + " |"
    print(header)
    print(sep)
    for r in norm_rows:
        print("| " + " | ".join(_fmt(r.get(c), c).ljust(widths[c]) for c in cols) + " |")
