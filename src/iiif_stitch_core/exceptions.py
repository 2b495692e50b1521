"""Error kinds raised while turning one IIIF page into a stitched image."""

from __future__ import annotations


class TileStitchError(RuntimeError):
    """Base class for every failure raised by the tile pipeline."""


class DescriptorFetchError(TileStitchError):
    """Raised when a page's `info.json` cannot be retrieved or decoded."""


class InvalidDescriptorError(TileStitchError, ValueError):
    """Raised when an image-service descriptor lacks usable geometry."""


class TileDownloadError(TileStitchError):
    """Raised when a tile cannot be fetched or saved to disk."""

    def __init__(self, url: str, reason: str):
        super().__init__(f"Tile download failed for {url}: {reason}")
        self.url = url
        self.reason = reason


class ImageDecodeError(TileStitchError):
    """Raised when a downloaded tile cannot be decoded as an image."""


class CompositionError(TileStitchError):
    """Raised when tile sizes within one page are inconsistent."""


class ManifestFetchError(TileStitchError):
    """Raised when the document manifest cannot be retrieved or decoded."""
