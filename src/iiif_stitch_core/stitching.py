"""Reassemble downloaded IIIF tiles into one JPEG per page.

Canvas geometry comes from the tiles actually on disk, not from the plan:
servers round edge tiles differently, so every tile is measured first and the
page layout is derived from those measurements.
"""

from __future__ import annotations

import mmap
import os
import uuid
from collections.abc import Sequence
from contextlib import suppress
from dataclasses import dataclass
from pathlib import Path

from PIL import Image

from .exceptions import CompositionError, ImageDecodeError
from .iiif_tiles import TilePlanEntry, grid_extent, planned_canvas_size
from .logger import get_logger

logger = get_logger(__name__)

DEFAULT_MAX_RAM_BYTES = int(2 * (1024**3))


@dataclass(frozen=True)
class FetchedTile:
    """A planned tile together with its decoded pixel size."""

    entry: TilePlanEntry
    width: int
    height: int

    @property
    def path(self) -> Path:
        return self.entry.destination


def measure_tile(entry: TilePlanEntry) -> FetchedTile:
    """Read the pixel size of a downloaded tile (header only)."""
    path = entry.destination
    try:
        if path.stat().st_size == 0:
            raise ImageDecodeError(f"Tile {path} is empty")
        with Image.open(path) as img:
            width, height = img.size
    except OSError as exc:
        raise ImageDecodeError(f"Tile {path} is unreadable: {exc}") from exc

    if width <= 0 or height <= 0:
        raise ImageDecodeError(f"Tile {path} reports an empty size {width}x{height}")
    return FetchedTile(entry=entry, width=width, height=height)


def canvas_size(tiles: Sequence[FetchedTile]) -> tuple[int, int]:
    """Sum one width per column and one height per row."""
    return grid_extent((t.entry.row, t.entry.col, t.width, t.height) for t in tiles)


def layout_tiles(tiles: Sequence[FetchedTile]) -> tuple[list[tuple[FetchedTile, int, int]], tuple[int, int]]:
    """Return `(tile, x, y)` placements in row-major order plus the canvas size.

    Raises `CompositionError` when tiles sharing a row disagree on height or
    when a tile would fall outside the canvas.
    """
    if not tiles:
        raise CompositionError("No tiles to compose")

    ordered = sorted(tiles, key=lambda t: (t.entry.row, t.entry.col))
    out_w, out_h = canvas_size(ordered)

    placements: list[tuple[FetchedTile, int, int]] = []
    current_x = current_y = 0
    prev_row: int | None = None
    row_height = 0

    for tile in ordered:
        if prev_row is None:
            row_height = tile.height
        elif tile.entry.row != prev_row:
            current_y += row_height
            current_x = 0
            row_height = tile.height
        elif tile.height != row_height:
            raise CompositionError(
                f"Row {tile.entry.row} mixes tile heights {row_height} and {tile.height} ({tile.path.name})"
            )

        if current_x + tile.width > out_w or current_y + tile.height > out_h:
            raise CompositionError(
                f"Tile {tile.path.name} at ({current_x}, {current_y}) overflows the {out_w}x{out_h} canvas"
            )

        placements.append((tile, current_x, current_y))
        current_x += tile.width
        prev_row = tile.entry.row

    return placements, (out_w, out_h)


def _load_rgb(tile: FetchedTile) -> Image.Image:
    try:
        with Image.open(tile.path) as img:
            img.load()
            rgb = img.convert("RGB")
    except OSError as exc:
        raise ImageDecodeError(f"Tile {tile.path} could not be decoded: {exc}") from exc

    if rgb.size != (tile.width, tile.height):
        rgb.close()
        raise CompositionError(f"Tile {tile.path.name} changed size since it was measured")
    return rgb


def _write_tile_rgb_to_mmap(
    mm: mmap.mmap,
    *,
    out_width: int,
    x: int,
    y: int,
    tile_rgb: Image.Image,
) -> None:
    w, h = tile_rgb.size
    tile_bytes = tile_rgb.tobytes()
    row_stride = w * 3
    for row in range(h):
        src_off = row * row_stride
        dst_off = ((y + row) * out_width + x) * 3
        mm[dst_off : dst_off + row_stride] = tile_bytes[src_off : src_off + row_stride]


def _encode_jpeg(img: Image.Image, out_path: Path, jpeg_quality: int) -> None:
    try:
        img.save(str(out_path), format="JPEG", quality=int(jpeg_quality), optimize=True)
    except (OSError, ValueError) as exc:
        raise CompositionError(f"Failed to encode {out_path.name}: {exc}") from exc


def _compose_in_memory(placements, size: tuple[int, int], tmp_path: Path, jpeg_quality: int) -> None:
    canvas = Image.new("RGB", size, (255, 255, 255))
    try:
        for tile, x, y in placements:
            rgb = _load_rgb(tile)
            try:
                canvas.paste(rgb, (x, y))
            finally:
                rgb.close()
        _encode_jpeg(canvas, tmp_path, jpeg_quality)
    finally:
        canvas.close()


def _compose_on_disk(placements, size: tuple[int, int], raw_path: Path, tmp_path: Path, jpeg_quality: int) -> None:
    out_w, out_h = size
    nbytes = out_w * out_h * 3
    with raw_path.open("w+b") as raw_fh:
        raw_fh.truncate(nbytes)
        with mmap.mmap(raw_fh.fileno(), nbytes, access=mmap.ACCESS_WRITE) as mm:
            for tile, x, y in placements:
                rgb = _load_rgb(tile)
                try:
                    _write_tile_rgb_to_mmap(mm, out_width=out_w, x=x, y=y, tile_rgb=rgb)
                finally:
                    rgb.close()

            img = Image.frombuffer("RGB", size, mm, "raw", "RGB", 0, 1)
            try:
                _encode_jpeg(img, tmp_path, jpeg_quality)
            finally:
                img.close()


def compose_tiles(
    tiles: Sequence[FetchedTile],
    destination: Path | str,
    *,
    jpeg_quality: int = 90,
    max_ram_bytes: int = DEFAULT_MAX_RAM_BYTES,
    overwrite: bool = False,
) -> Path:
    """Stitch measured tiles into a single JPEG at `destination`.

    An existing destination is left untouched unless `overwrite` is set, and
    no tile is read in that case. When the uncompressed raster would exceed
    `max_ram_bytes`, it is assembled in a disk-backed buffer (mmap) instead.
    The JPEG is written to a temporary sibling and renamed into place, so a
    failure never leaves a partial image behind.
    """
    destination = Path(destination)
    if destination.exists() and not overwrite:
        logger.info("Combined image already present, skipping: %s", destination)
        return destination

    placements, size = layout_tiles(tiles)
    planned = planned_canvas_size([t.entry for t in tiles])
    if planned != size:
        logger.debug("Server tiles add up to %sx%s instead of the planned %sx%s", *size, *planned)

    token = uuid.uuid4().hex[:8]
    tmp_path = destination.with_name(f".{destination.stem}.{token}.part")
    raw_path = destination.with_name(f".{destination.stem}.{token}.stitch.raw")
    use_disk_buffer = size[0] * size[1] * 3 > int(max_ram_bytes)

    try:
        destination.parent.mkdir(parents=True, exist_ok=True)
        if use_disk_buffer:
            logger.debug("Using disk-backed buffer for %sx%s canvas", *size)
            _compose_on_disk(placements, size, raw_path, tmp_path, jpeg_quality)
        else:
            _compose_in_memory(placements, size, tmp_path, jpeg_quality)
        os.replace(tmp_path, destination)
    except OSError as exc:
        raise CompositionError(f"Unable to write {destination}: {exc}") from exc
    finally:
        with suppress(OSError):
            tmp_path.unlink(missing_ok=True)
        with suppress(OSError):
            raw_path.unlink(missing_ok=True)

    logger.info("Stitched %s tiles into %s (%sx%s)", len(placements), destination.name, *size)
    return destination
