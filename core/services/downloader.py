from __future__ import annotations

import logging
import tempfile
import threading
from pathlib import Path
from typing import Protocol

import requests

logger = logging.getLogger(__name__)


class Downloader(Protocol):
    def fetch(self, url: str, destination: Path) -> Path | None:
        """Download ``url`` to ``destination`` and return the local path, or ``None``."""


class NullDownloader:
    """Offline downloader: every remote asset stays missing."""

    def fetch(self, url: str, destination: Path) -> Path | None:
        return None


class HttpDownloader:
    """Fetch avatars, stickers and link thumbnails with a bounded timeout."""

    def __init__(self, timeout: float = 10.0, user_agent: str | None = None, chunk_size: int = 64 * 1024):
        self.timeout = timeout
        self.user_agent = user_agent
        self.chunk_size = chunk_size
        self._local = threading.local()

    def _session(self) -> requests.Session:
        session = getattr(self._local, "session", None)
        if session is None:
            session = requests.Session()
            if self.user_agent:
                session.headers["User-Agent"] = self.user_agent
            self._local.session = session
        return session

    def fetch(self, url: str, destination: Path) -> Path | None:
        if not url or not url.startswith(("http://", "https://")):
            return None
        destination = Path(destination)
        if destination.exists() and destination.stat().st_size > 0:
            return destination
        temp_path = None
        try:
            destination.parent.mkdir(parents=True, exist_ok=True)
            with self._session().get(url, timeout=self.timeout, stream=True) as response:
                response.raise_for_status()
                with tempfile.NamedTemporaryFile(
                    dir=destination.parent,
                    prefix=f".{destination.name}.",
                    suffix=".tmp",
                    delete=False,
                ) as handle:
                    temp_path = Path(handle.name)
                    for chunk in response.iter_content(chunk_size=self.chunk_size):
                        handle.write(chunk)
            temp_path.replace(destination)
        except requests.RequestException as exc:
            logger.warning("Download failed for %s: %s", url, exc)
            self._discard(temp_path)
            return None
        except OSError as exc:
            logger.warning("Could not store %s at %s: %s", url, destination, exc)
            self._discard(temp_path)
            return None
        return destination

    @staticmethod
    def _discard(temp_path: Path | None) -> None:
        if temp_path is not None:
            temp_path.unlink(missing_ok=True)
