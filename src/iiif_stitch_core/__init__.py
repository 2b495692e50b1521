"""Download IIIF image tiles and stitch them back into full pages."""

__version__ = "0.3.0"
