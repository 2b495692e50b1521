from __future__ import annotations

import re

_RANGE_TOKEN = re.compile(r"^(\d+)(?:\s*-\s*(\d+))?$")


def sanitize_filename(label: str, fallback: str = "untitled") -> str:
    """Return a filesystem-safe identifier derived from `label`."""
    safe = "".join([c for c in str(label) if c.isalnum() or c in (" ", ".", "_", "-")])
    safe = safe.strip().replace(" ", "_").strip(".")
    return safe or fallback


def parse_page_range(expr: str | None, total: int) -> list[int]:
    """Expand a page selection such as `"1-3,5,7-9"` into 1-based page numbers.

    An empty expression selects every page. Reversed ranges (`"9-7"`) are
    accepted, duplicates collapse, and numbers beyond `total` are dropped.
    Raises `ValueError` on malformed tokens.
    """
    if total <= 0:
        return []
    if expr is None or not expr.strip():
        return list(range(1, total + 1))

    selected: set[int] = set()
    for raw in expr.split(","):
        token = raw.strip()
        if not token:
            continue
        m = _RANGE_TOKEN.match(token)
        if not m:
            raise ValueError(f"Invalid page selection token: {token!r}")
        start = int(m.group(1))
        end = int(m.group(2)) if m.group(2) else start
        if start > end:
            start, end = end, start
        selected.update(range(max(start, 1), min(end, total) + 1))

    return sorted(selected)


def derive_document_id(manifest_url: str) -> str:
    """Derive a compact folder name for a document from its manifest URL.

    Uses the last meaningful path segment, skipping a trailing
    `manifest` / `manifest.json` segment.
    """
    parts = [p for p in manifest_url.split("?")[0].split("/") if p]
    if not parts:
        return "document"
    last = parts[-1]
    if last.lower() in ("manifest", "manifest.json") and len(parts) >= 2:
        last = parts[-2]
    if last.lower().endswith(".json"):
        last = last[: -len(".json")]
    return sanitize_filename(last, fallback="document")
