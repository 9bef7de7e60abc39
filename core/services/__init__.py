from .downloader import Downloader, HttpDownloader, NullDownloader

__all__ = ["Downloader", "HttpDownloader", "NullDownloader"]
