from __future__ import annotations

import math
from collections.abc import Iterable, Iterator, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from requests import RequestException, Session

from .exceptions import DescriptorFetchError, InvalidDescriptorError
from .logger import get_logger

logger = get_logger(__name__)

FULL_REGION = "full"
DEFAULT_FORMAT = "jpg"


@dataclass(frozen=True)
class ImageServiceDescriptor:
    """Geometry and capabilities advertised by one page's `info.json`."""

    base_url: str
    full_width: int
    full_height: int
    tile_width: int
    tile_height: int
    scale_factors: tuple[int, ...] | None = None
    formats: tuple[str, ...] = (DEFAULT_FORMAT,)

    @property
    def preferred_format(self) -> str:
        if DEFAULT_FORMAT in self.formats:
            return DEFAULT_FORMAT
        return self.formats[0] if self.formats else DEFAULT_FORMAT


@dataclass(frozen=True)
class TilePlanEntry:
    """One tile request: where it sits in the page grid and where it lands on disk."""

    region_x: int
    region_y: int
    region_width: int
    region_height: int
    full_region: bool
    output_width: int
    output_height: int
    scale_factor: int
    format: str
    row: int
    col: int
    url: str
    destination: Path

    @property
    def region(self) -> str:
        if self.full_region:
            return FULL_REGION
        return f"{self.region_x},{self.region_y},{self.region_width},{self.region_height}"

    @property
    def filename(self) -> str:
        return self.destination.name


def _positive_int(value: Any) -> int:
    try:
        number = int(value or 0)
    except (TypeError, ValueError):
        return 0
    return number if number > 0 else 0


def _pick_tile_spec(info: dict[str, Any]) -> tuple[int, int, tuple[int, ...] | None]:
    tiles = info.get("tiles")
    if isinstance(tiles, dict):
        tiles = [tiles]
    spec = tiles[0] if isinstance(tiles, list) and tiles else None
    if not isinstance(spec, dict):
        return 0, 0, None

    tile_w = _positive_int(spec.get("width"))
    tile_h = _positive_int(spec.get("height")) or tile_w

    raw_factors = spec.get("scaleFactors")
    if isinstance(raw_factors, int):
        raw_factors = [raw_factors]
    scale_factors: tuple[int, ...] | None = None
    if isinstance(raw_factors, list):
        cleaned = tuple(f for f in (_positive_int(x) for x in raw_factors) if f)
        scale_factors = cleaned or None

    return tile_w, tile_h, scale_factors


def _pick_formats(info: dict[str, Any]) -> tuple[str, ...]:
    profile = info.get("profile")
    if isinstance(profile, list) and len(profile) > 1 and isinstance(profile[1], dict):
        formats = profile[1].get("formats")
        if isinstance(formats, list):
            cleaned = tuple(str(f).strip().lower() for f in formats if str(f).strip())
            if cleaned:
                return cleaned
    return (DEFAULT_FORMAT,)


def _validate_geometry(descriptor: ImageServiceDescriptor) -> None:
    missing = [
        name
        for name in ("full_width", "full_height", "tile_width", "tile_height")
        if _positive_int(getattr(descriptor, name)) <= 0
    ]
    if missing:
        raise InvalidDescriptorError(f"Descriptor {descriptor.base_url!r} has no usable {', '.join(missing)}")


def parse_descriptor(info: dict[str, Any], service_url: str = "") -> ImageServiceDescriptor:
    """Build an `ImageServiceDescriptor` from a decoded `info.json` payload.

    Raises `InvalidDescriptorError` when width, height or tile width are
    missing or non-positive.
    """
    if not isinstance(info, dict):
        raise InvalidDescriptorError(f"Descriptor for {service_url!r} is not a JSON object")

    base_url = str(info.get("@id") or info.get("id") or service_url or "").rstrip("/")
    tile_w, tile_h, scale_factors = _pick_tile_spec(info)

    descriptor = ImageServiceDescriptor(
        base_url=base_url,
        full_width=_positive_int(info.get("width")),
        full_height=_positive_int(info.get("height")),
        tile_width=tile_w,
        tile_height=tile_h,
        scale_factors=scale_factors,
        formats=_pick_formats(info),
    )
    _validate_geometry(descriptor)
    return descriptor


def _info_url(service_url: str) -> str:
    base = service_url.rstrip("/")
    if base.endswith("/info.json"):
        return base
    return base + "/info.json"


def resolve_descriptor(session: Session, service_url: str, *, timeout_s: int = 30) -> ImageServiceDescriptor:
    """Fetch and parse the `info.json` behind `service_url`."""
    info_url = _info_url(service_url)
    logger.debug("Resolving image service descriptor %s", info_url)
    try:
        r = session.get(info_url, timeout=timeout_s)
        r.raise_for_status()
        info = r.json()
    except (RequestException, ValueError) as exc:
        raise DescriptorFetchError(f"Unable to fetch descriptor {info_url}: {exc}") from exc

    fallback = info_url[: -len("/info.json")]
    return parse_descriptor(info, fallback)


def resolve_scale_factor(descriptor: ImageServiceDescriptor, requested: int | None = None) -> int:
    """Pick the scale factor actually used for the tile grid.

    Without advertised factors the request is honoured as-is (default 1).
    Otherwise an unlisted request falls back to the smallest listed factor,
    i.e. the highest resolution the server is known to serve.
    """
    supported = descriptor.scale_factors
    if not supported:
        return requested if requested and requested > 0 else 1
    if requested in supported:
        return int(requested)
    return sorted(supported)[0]


def tile_filename(region: str, output_width: int, scale_factor: int, fmt: str) -> str:
    if scale_factor == 1:
        return f"{region}_{output_width}.{fmt}"
    return f"{region}_{output_width}x{scale_factor}.{fmt}"


def _tile_regions(
    descriptor: ImageServiceDescriptor, scale_factor: int
) -> Iterator[tuple[int, int, int, int, int, int]]:
    step_x = descriptor.tile_width * scale_factor
    step_y = descriptor.tile_height * scale_factor

    for row, y in enumerate(range(0, descriptor.full_height, step_y)):
        h = min(step_y, descriptor.full_height - y)
        for col, x in enumerate(range(0, descriptor.full_width, step_x)):
            w = min(step_x, descriptor.full_width - x)
            yield row, col, x, y, w, h


def plan_tiles(
    descriptor: ImageServiceDescriptor,
    scale_factor: int | None = None,
    *,
    tile_dir: Path | str = Path("."),
    iiif_quality: str = "default",
    explicit_height: bool = False,
) -> list[TilePlanEntry]:
    """Compute the row-major tile requests covering the whole image.

    Regions are clipped to the image bounds, so edge tiles encode their
    truncated extent in the region itself. The size parameter is `w,` by
    default; with `explicit_height` it becomes `w,h` for services that refuse
    to infer the height.
    """
    _validate_geometry(descriptor)
    s = resolve_scale_factor(descriptor, scale_factor)
    fmt = descriptor.preferred_format
    tile_dir = Path(tile_dir)

    step_x = descriptor.tile_width * s
    step_y = descriptor.tile_height * s
    single_tile = descriptor.full_width <= step_x and descriptor.full_height <= step_y

    plan: list[TilePlanEntry] = []
    for row, col, x, y, w, h in _tile_regions(descriptor, s):
        out_w = min(math.ceil((descriptor.full_width - x) / s), descriptor.tile_width)
        out_h = min(math.ceil((descriptor.full_height - y) / s), descriptor.tile_height)
        region = FULL_REGION if single_tile else f"{x},{y},{w},{h}"
        size = f"{out_w},{out_h}" if explicit_height else f"{out_w},"

        plan.append(
            TilePlanEntry(
                region_x=x,
                region_y=y,
                region_width=w,
                region_height=h,
                full_region=single_tile,
                output_width=out_w,
                output_height=out_h,
                scale_factor=s,
                format=fmt,
                row=row,
                col=col,
                url=f"{descriptor.base_url}/{region}/{size}/0/{iiif_quality}.{fmt}",
                destination=tile_dir / tile_filename(region, out_w, s, fmt),
            )
        )

    logger.debug(
        "Planned %s tiles (%sx%s grid) for %s at scale factor %s",
        len(plan),
        (plan[-1].row + 1) if plan else 0,
        (plan[-1].col + 1) if plan else 0,
        descriptor.base_url,
        s,
    )
    return plan


def planned_canvas_size(plan: Sequence[TilePlanEntry]) -> tuple[int, int]:
    """Expected stitched size from the plan alone (before any tile is fetched)."""
    return grid_extent((e.row, e.col, e.output_width, e.output_height) for e in plan)


def grid_extent(cells: Iterable[tuple[int, int, int, int]]) -> tuple[int, int]:
    """Sum the first width seen per column and the first height seen per row.

    `cells` yields `(row, col, width, height)`.
    """
    widths: dict[int, int] = {}
    heights: dict[int, int] = {}
    for row, col, w, h in cells:
        widths.setdefault(col, w)
        heights.setdefault(row, h)
    return sum(widths.values()), sum(heights.values())
