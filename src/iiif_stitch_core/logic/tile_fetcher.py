from __future__ import annotations

import os
import uuid
from collections.abc import Sequence
from concurrent.futures import FIRST_EXCEPTION, ThreadPoolExecutor, wait
from contextlib import suppress
from pathlib import Path

from requests import RequestException, Session
from tqdm import tqdm

from ..exceptions import ImageDecodeError, TileDownloadError
from ..iiif_tiles import TilePlanEntry
from ..logger import get_logger
from ..stitching import FetchedTile, measure_tile

logger = get_logger(__name__)


def _atomic_write(destination: Path, payload: bytes) -> None:
    """Write `payload` next to `destination`, then rename it into place.

    Concurrent writers targeting the same tile each use their own temporary
    file, and `os.replace` makes the last complete copy win.
    """
    tmp_path = destination.with_name(f".{destination.name}.{uuid.uuid4().hex[:8]}.part")
    try:
        with tmp_path.open("wb") as fh:
            fh.write(payload)
        os.replace(tmp_path, destination)
    finally:
        with suppress(OSError):
            tmp_path.unlink(missing_ok=True)


class TileFetcher:
    """Download the tiles of one page plan with a bounded worker pool."""

    def __init__(
        self,
        session: Session,
        *,
        workers: int = 4,
        timeout_s: int = 30,
        overwrite: bool = False,
        show_progress: bool = True,
    ):
        """Store the shared session and per-run fetch settings."""
        self.session = session
        self.workers = max(1, int(workers or 1))
        self.timeout_s = timeout_s
        self.overwrite = overwrite
        self.show_progress = show_progress

    def _is_cached(self, entry: TilePlanEntry) -> bool:
        try:
            return entry.destination.stat().st_size > 0
        except OSError:
            return False

    def download(self, entry: TilePlanEntry) -> bool:
        """Fetch one tile. Returns False when a cached copy was reused."""
        if not self.overwrite and self._is_cached(entry):
            logger.debug("Tile already on disk: %s", entry.destination.name)
            return False

        try:
            r = self.session.get(entry.url, timeout=self.timeout_s)
        except RequestException as exc:
            raise TileDownloadError(entry.url, str(exc)) from exc

        if r.status_code != 200:
            raise TileDownloadError(entry.url, f"HTTP {r.status_code}")
        if not r.content:
            raise TileDownloadError(entry.url, "empty response body")

        try:
            entry.destination.parent.mkdir(parents=True, exist_ok=True)
            _atomic_write(entry.destination, r.content)
        except OSError as exc:
            raise TileDownloadError(entry.url, f"cannot write {entry.destination}: {exc}") from exc
        logger.debug("Saved tile %s (%s bytes)", entry.destination.name, len(r.content))
        return True

    def fetch(self, plan: Sequence[TilePlanEntry], desc: str = "Tiles") -> list[FetchedTile]:
        """Download every tile in `plan` and measure it.

        The first failure cancels tiles that have not started yet and is
        re-raised. Results follow plan order, whatever order downloads finish in.
        """
        if not plan:
            return []

        with tqdm(total=len(plan), desc=desc, unit="tile", disable=not self.show_progress, leave=False) as pbar:
            with ThreadPoolExecutor(max_workers=self.workers) as executor:
                futures = [executor.submit(self.download, entry) for entry in plan]
                for future in futures:
                    future.add_done_callback(lambda _f: pbar.update(1))

                done, _pending = wait(futures, return_when=FIRST_EXCEPTION)
                failed = next((f for f in futures if f in done and f.exception() is not None), None)
                if failed is not None:
                    for future in futures:
                        future.cancel()
                    raise failed.exception()

        return [self._measure(entry) for entry in plan]

    def _measure(self, entry: TilePlanEntry) -> FetchedTile:
        try:
            return measure_tile(entry)
        except ImageDecodeError:
            # Drop the unreadable copy so the next run downloads it again.
            with suppress(OSError):
                entry.destination.unlink(missing_ok=True)
            logger.warning("Discarded unreadable tile %s", entry.destination.name)
            raise
