import hashlib
import logging
import os
import time
from dataclasses import dataclass
from typing import Callable, Optional

import requests

from ..errors import FetchError

logger = logging.getLogger(__name__)


@dataclass
class DownloadResult:
    """Outcome of a verified download"""
    path: str
    bytes: int
    sha1: str
    sha256: str


class ContentDownloader:
    """Streams files to disk and verifies their hashes inline"""

    CHUNK_SIZE = 1024 * 1024  # 1 MB

    def __init__(self, user_agent: str = "PackSync/1.0", timeout: float = 600, retry_delay: float = 2):
        self.timeout = timeout
        self.retry_delay = retry_delay
        # Create persistent session for better performance
        self.session = requests.Session()
        self.session.headers.update({
            'User-Agent': user_agent,
            'Accept-Encoding': 'gzip, deflate',
            'Connection': 'keep-alive'
        })

    def download(
        self,
        url: str,
        dest_path: str,
        sha1: Optional[str] = None,
        sha256: Optional[str] = None,
        progress_callback: Optional[Callable[[int, int], None]] = None,
        max_retries: int = 3
    ) -> DownloadResult:
        """
        Downloads url to dest_path with automatic retries

        The body is written to "<dest_path>.partial" and only renamed into
        place once the expected hashes (if given) match.

        Args:
            url: http(s) URL to fetch
            dest_path: Final file path
            sha1: Expected sha1 hex digest (optional)
            sha256: Expected sha256 hex digest (optional)
            progress_callback: Called with (downloaded_bytes, total_bytes)
            max_retries: Maximum number of attempts for network errors

        Returns:
            DownloadResult with the size and computed digests

        Raises:
            FetchError: on network failure after all retries, or hash mismatch
        """
        url = str(url or "").strip()
        if not url.startswith(("http://", "https://")):
            raise FetchError(f"only http/https URLs are supported: {url!r}")

        os.makedirs(os.path.dirname(os.path.abspath(dest_path)), exist_ok=True)
        partial_path = dest_path + ".partial"

        last_error: Optional[Exception] = None
        for attempt in range(max_retries):
            if attempt > 0:
                logger.info("Retrying download of %s (attempt %d/%d)", url, attempt + 1, max_retries)
                time.sleep(self.retry_delay)

            try:
                result = self._stream_to(url, partial_path, progress_callback)
            except (requests.Timeout, requests.ConnectionError) as e:
                last_error = e
                self._discard(partial_path)
                continue
            except requests.RequestException as e:
                # HTTP errors (404, 403, ...) will not get better by retrying
                self._discard(partial_path)
                raise FetchError(f"download failed: {e}") from e
            except OSError as e:
                self._discard(partial_path)
                raise FetchError(f"cannot write {dest_path}: {e}") from e

            digest1, digest256, size = result
            if sha1 and digest1.lower() != sha1.strip().lower():
                self._discard(partial_path)
                raise FetchError(f"sha1 mismatch for {url}: expected {sha1}, got {digest1}")
            if sha256 and digest256.lower() != sha256.strip().lower():
                self._discard(partial_path)
                raise FetchError(f"sha256 mismatch for {url}: expected {sha256}, got {digest256}")

            os.replace(partial_path, dest_path)
            logger.debug("Downloaded %s -> %s (%d bytes)", url, dest_path, size)
            return DownloadResult(path=dest_path, bytes=size, sha1=digest1, sha256=digest256)

        raise FetchError(f"download failed after {max_retries} attempts: {last_error}") from last_error

    def _stream_to(self, url: str, path: str, progress_callback: Optional[Callable[[int, int], None]]):
        hasher1 = hashlib.sha1()
        hasher256 = hashlib.sha256()
        downloaded_size = 0

        with self.session.get(url, stream=True, timeout=self.timeout) as response:
            response.raise_for_status()
            total_size = int(response.headers.get('content-length', 0) or 0)

            with open(path, 'wb') as file:
                for chunk in response.iter_content(chunk_size=self.CHUNK_SIZE):
                    if not chunk:
                        continue
                    file.write(chunk)
                    hasher1.update(chunk)
                    hasher256.update(chunk)
                    downloaded_size += len(chunk)
                    if progress_callback:
                        progress_callback(downloaded_size, total_size)

        return hasher1.hexdigest(), hasher256.hexdigest(), downloaded_size

    @staticmethod
    def _discard(path: str):
        try:
            os.remove(path)
        except FileNotFoundError:
            pass
