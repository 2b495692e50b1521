from .downloader import DownloadOptions, IIIFTileDownloader, PageResult

__all__ = ["DownloadOptions", "IIIFTileDownloader", "PageResult"]
