from .downloader import ContentDownloader, DownloadResult

__all__ = ["ContentDownloader", "DownloadResult"]
