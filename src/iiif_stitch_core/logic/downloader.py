from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any

from requests import RequestException, Session

from ..config_manager import ConfigManager, get_config_manager
from ..exceptions import DescriptorFetchError, InvalidDescriptorError, ManifestFetchError, TileStitchError
from ..iiif_tiles import plan_tiles, resolve_descriptor, resolve_scale_factor
from ..logger import get_download_logger
from ..stitching import DEFAULT_MAX_RAM_BYTES, compose_tiles
from ..utils import build_session, get_json, load_json, save_json
from .download_helpers import derive_document_id, parse_page_range, sanitize_filename
from .manifest import PageRef, extract_label, list_pages
from .tile_fetcher import TileFetcher


@dataclass(frozen=True)
class DownloadOptions:
    """Run-wide settings threaded into planning, fetching and composition."""

    output_dir: Path = Path(".")
    scale_factor: int | None = None
    overwrite: bool = False
    workers: int = 4
    timeout_s: int = 30
    jpeg_quality: int = 90
    iiif_quality: str = "default"
    explicit_tile_height: bool = False
    max_ram_bytes: int = DEFAULT_MAX_RAM_BYTES
    show_progress: bool = True

    @classmethod
    def from_config(cls, cm: ConfigManager, **overrides: Any) -> DownloadOptions:
        """Build options from `config.json`; non-None overrides win."""
        try:
            max_ram_gb = float(cm.get_setting("images.tile_stitch_max_ram_gb", 2) or 2)
        except (TypeError, ValueError):
            max_ram_gb = 2.0
        max_ram_gb = max(0.1, min(max_ram_gb, 64.0))

        values: dict[str, Any] = {
            "output_dir": cm.get_output_dir(),
            "scale_factor": int(cm.get_setting("images.scale_factor", 1) or 1),
            "workers": int(cm.get_setting("system.download_workers", 4) or 4),
            "timeout_s": int(cm.get_setting("system.request_timeout", 30) or 30),
            "jpeg_quality": int(cm.get_setting("images.jpeg_quality", 90) or 90),
            "iiif_quality": str(cm.get_setting("images.iiif_quality", "default") or "default"),
            "explicit_tile_height": bool(cm.get_setting("images.explicit_tile_height", False)),
            "max_ram_bytes": int(max_ram_gb * (1024**3)),
            "show_progress": bool(cm.get_setting("ui.show_progress", True)),
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        values["output_dir"] = Path(values["output_dir"]).expanduser()
        return cls(**values)


@dataclass
class PageResult:
    """Outcome of processing one page."""

    page: PageRef
    output: Path | None = None
    error: Exception | None = None
    skipped: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None


def combined_filename(label: str, scale_factor: int) -> str:
    safe = sanitize_filename(label, fallback="page")
    if scale_factor == 1:
        return f"combined-{safe}.jpg"
    return f"combined-{safe}x{scale_factor}.jpg"


class IIIFTileDownloader:
    """Turn every selected page of a IIIF manifest into one stitched JPEG."""

    def __init__(
        self,
        manifest_url: str,
        options: DownloadOptions | None = None,
        session: Session | None = None,
    ):
        """Prepare the output folder layout and the shared HTTP session."""
        self.manifest_url = manifest_url
        self.options = options or DownloadOptions.from_config(get_config_manager())
        self.session = session or build_session()

        self.doc_id = derive_document_id(manifest_url)
        self.document_dir = self.options.output_dir / self.doc_id
        self.manifest_path = self.document_dir / "manifest.json"
        self.logger = get_download_logger(self.doc_id)

        self.fetcher = TileFetcher(
            self.session,
            workers=self.options.workers,
            timeout_s=self.options.timeout_s,
            overwrite=self.options.overwrite,
            show_progress=self.options.show_progress,
        )
        self.manifest: dict[str, Any] | None = None

    def load_manifest(self) -> dict[str, Any]:
        """Return the manifest, reusing the cached copy unless overwriting."""
        if self.manifest is not None:
            return self.manifest

        if self.manifest_path.exists() and not self.options.overwrite:
            cached = load_json(self.manifest_path)
            if isinstance(cached, dict):
                self.logger.info("Using cached manifest %s", self.manifest_path)
                self.manifest = cached
                return cached
            self.logger.warning("Cached manifest %s is unreadable, fetching again", self.manifest_path)

        try:
            data = get_json(self.manifest_url, timeout=self.options.timeout_s)
        except (RequestException, ValueError) as exc:
            raise ManifestFetchError(f"Unable to fetch manifest {self.manifest_url}: {exc}") from exc
        if not isinstance(data, dict):
            raise ManifestFetchError(f"Manifest {self.manifest_url} did not return a JSON object")

        save_json(self.manifest_path, data)
        self.manifest = data
        return data

    @property
    def label(self) -> str:
        return extract_label(self.load_manifest(), self.doc_id)

    def get_pages(self) -> list[PageRef]:
        """List every page of the document."""
        return list_pages(self.load_manifest())

    def page_dir(self, page: PageRef) -> Path:
        return self.document_dir / f"{page.number:04d}_{sanitize_filename(page.label, fallback='page')}"

    def process_page(self, page: PageRef) -> PageResult:
        """Resolve, plan, fetch and stitch one page.

        `DescriptorFetchError` propagates and aborts the run; other pipeline
        errors only fail this page and are returned in the result.
        """
        page_dir = self.page_dir(page)
        try:
            if not page.service_url:
                raise InvalidDescriptorError(f"Page {page.number} has no image service")

            descriptor = resolve_descriptor(self.session, page.service_url, timeout_s=self.options.timeout_s)
            scale = resolve_scale_factor(descriptor, self.options.scale_factor)
            if self.options.scale_factor and scale != self.options.scale_factor:
                self.logger.warning(
                    "Scale factor %s not offered for page %s, using %s", self.options.scale_factor, page.number, scale
                )

            output = page_dir / combined_filename(page.label, scale)
            if output.exists() and not self.options.overwrite:
                self.logger.info("Page %s already stitched: %s", page.number, output)
                return PageResult(page=page, output=output, skipped=True)

            plan = plan_tiles(
                descriptor,
                scale,
                tile_dir=page_dir,
                iiif_quality=self.options.iiif_quality,
                explicit_height=self.options.explicit_tile_height,
            )
            self.logger.info("Page %s (%s): %s tiles at scale factor %s", page.number, page.label, len(plan), scale)
            tiles = self.fetcher.fetch(plan, desc=f"Page {page.number}")
            compose_tiles(
                tiles,
                output,
                jpeg_quality=self.options.jpeg_quality,
                max_ram_bytes=self.options.max_ram_bytes,
                overwrite=self.options.overwrite,
            )
        except DescriptorFetchError:
            self.logger.error("Descriptor unavailable for page %s, aborting run", page.number)
            raise
        except TileStitchError as exc:
            self.logger.error("Page %s (%s) failed: %s", page.number, page.label, exc)
            return PageResult(page=page, error=exc)

        return PageResult(page=page, output=output)

    def run(self, pages: str | None = None) -> list[PageResult]:
        """Process the pages selected by `pages` (e.g. `"1-3,5"`; all by default)."""
        all_pages = self.get_pages()
        selected = parse_page_range(pages, len(all_pages))
        self.logger.info(
            "Document %r: %s pages, %s selected -> %s", self.label, len(all_pages), len(selected), self.document_dir
        )

        results: list[PageResult] = []
        for number in selected:
            results.append(self.process_page(all_pages[number - 1]))

        failed = [r for r in results if not r.ok]
        if failed:
            self.logger.warning("%s of %s pages failed", len(failed), len(results))
        return results
