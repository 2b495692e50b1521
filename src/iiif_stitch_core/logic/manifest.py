"""Read page lists out of IIIF presentation manifests (v2 and v3)."""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class PageRef:
    """One canvas of the manifest, numbered from 1."""

    number: int
    label: str
    service_url: str | None


class CanvasServiceLocator:
    """Helper that locates the IIIF image service URL nested inside a canvas."""

    _SEARCH_KEYS = ("body", "resource", "resources", "items", "images", "annotations", "target")

    @staticmethod
    def locate(canvas: Any) -> str | None:
        """Traverse canvas nodes to find a usable service base URL."""
        if not isinstance(canvas, dict):
            return None
        queue = deque([canvas])
        seen: set[int] = set()

        while queue:
            node = queue.popleft()
            if not isinstance(node, dict):
                continue
            node_id = id(node)
            if node_id in seen:
                continue
            seen.add(node_id)

            if service_url := CanvasServiceLocator._service_from_node(node):
                return service_url.rstrip("/")

            CanvasServiceLocator._enqueue_children(queue, node)

            if normalized := CanvasServiceLocator._normalize_candidate(node):
                return normalized

        return None

    @staticmethod
    def _service_from_node(node: dict[str, Any]) -> str | None:
        service = node.get("service")
        if not service:
            return None
        candidate = service[0] if isinstance(service, list) else service
        if not isinstance(candidate, dict):
            return None
        return candidate.get("@id") or candidate.get("id")

    @staticmethod
    def _enqueue_children(queue: deque, node: dict[str, Any]) -> None:
        for key in CanvasServiceLocator._SEARCH_KEYS:
            child = node.get(key)
            if isinstance(child, (list, tuple)):
                queue.extend(child)
            elif child:
                queue.append(child)

    @staticmethod
    def _normalize_candidate(node: dict[str, Any]) -> str | None:
        base_url = node.get("@id") or node.get("id")
        if isinstance(base_url, str) and "/full/" in base_url:
            return base_url.split("/full/")[0]
        return None


def get_canvases(manifest: dict[str, Any]) -> list[dict[str, Any]]:
    """Return the canvases of a v2 (`sequences`) or v3 (`items`) manifest."""
    if not isinstance(manifest, dict):
        return []

    sequences = manifest.get("sequences")
    if isinstance(sequences, list) and sequences:
        first = sequences[0] or {}
        canvases = first.get("canvases")
        if isinstance(canvases, list):
            return [item for item in canvases if isinstance(item, dict)]

    items = manifest.get("items")
    if isinstance(items, list):
        return [item for item in items if isinstance(item, dict)]

    return []


def extract_label(node: dict[str, Any], fallback: str) -> str:
    """Extract a human-readable label from a manifest or canvas node."""
    label = node.get("label") if isinstance(node, dict) else None
    if not label:
        return fallback
    if isinstance(label, dict):
        for value in label.values():
            if isinstance(value, list) and value:
                return str(value[0])
            if value:
                return str(value)
        return fallback
    if isinstance(label, list):
        return str(label[0]) if label else fallback
    return str(label)


def list_pages(manifest: dict[str, Any]) -> list[PageRef]:
    """Describe every canvas of `manifest` as a `PageRef`."""
    return [
        PageRef(
            number=idx,
            label=extract_label(canvas, str(idx)),
            service_url=CanvasServiceLocator.locate(canvas),
        )
        for idx, canvas in enumerate(get_canvases(manifest), start=1)
    ]
