"""Remote artifact resolution and download.

This module handles:
- Deterministic URL construction for named artifacts
- Download to a temporary file with atomic rename into the local cache
- Bounded retries with exponential backoff
- Discarding ephemeral artifacts after a build
"""

from __future__ import annotations

import logging
import os
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path

import httpx

from rstack_build.errors import FetchError
from rstack_build.types import Stack

logger = logging.getLogger(__name__)

# Artifact names
RUNTIME_DEPLOY = "runtime-deploy"
RUNTIME_BUILD_ROOTFS = "runtime-build-rootfs"

ARTIFACT_SUFFIX = ".tar.gz"

# Timeout for downloads (seconds)
DOWNLOAD_TIMEOUT = 3600

# Chunk size for downloads (bytes)
DOWNLOAD_CHUNK_SIZE = 64 * 1024  # 64 KB


@dataclass(frozen=True)
class ArtifactRef:
    """A named artifact scoped to a cache key and stack."""

    name: str
    cache_key: str
    stack: Stack

    @property
    def filename(self) -> str:
        return f"{self.name}-{self.cache_key}{ARTIFACT_SUFFIX}"


def _is_retryable(error: FetchError) -> bool:
    return error.code != "http_client_error"


class ArtifactStore:
    """Resolves artifacts to URLs and fetches them into a local cache.

    Args:
        base_url: Base URL for remote artifacts.
        cache_dir: Local directory for downloaded archives.
        client: HTTPX client instance.
        retries: Attempts per download (1 means fail on first error).
        backoff: Base delay in seconds; doubles after each failed attempt.
        timeout: Download timeout in seconds.
    """

    def __init__(
        self,
        base_url: str,
        cache_dir: Path,
        client: httpx.Client,
        retries: int = 3,
        backoff: float = 2.0,
        timeout: float = DOWNLOAD_TIMEOUT,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.cache_dir = cache_dir
        self.client = client
        self.retries = max(1, retries)
        self.backoff = backoff
        self.timeout = timeout

    def resolve(self, name: str, cache_key: str, stack: Stack) -> str:
        """Build the remote URL for an artifact. No network access."""
        return f"{self.base_url}/{ArtifactRef(name, cache_key, stack).filename}"

    def local_path(self, ref: ArtifactRef) -> Path:
        """Return the local cache path for an artifact."""
        return self.cache_dir / ref.stack.value / ref.filename

    def fetch(self, url: str, dest_path: Path | None = None) -> Path:
        """Download an artifact, retrying transient failures.

        Args:
            url: URL to download.
            dest_path: Final local path; defaults to the URL's filename in
                the cache directory.

        Returns:
            Path to the downloaded file.

        Raises:
            FetchError: If every attempt fails, or on a 4xx response.
        """
        if dest_path is None:
            dest_path = self.cache_dir / url.rsplit("/", 1)[-1]

        attempt = 1
        while True:
            try:
                return self._download(url, dest_path)
            except FetchError as e:
                if attempt >= self.retries or not _is_retryable(e):
                    raise
                delay = self.backoff * (2 ** (attempt - 1))
                logger.warning(
                    "Fetch attempt %d/%d failed (%s); retrying in %.1fs",
                    attempt,
                    self.retries,
                    e,
                    delay,
                )
                time.sleep(delay)
                attempt += 1

    def fetch_artifact(self, ref: ArtifactRef) -> Path:
        """Return a local path for an artifact, downloading on cache miss."""
        dest_path = self.local_path(ref)
        if dest_path.is_file():
            logger.info("Using cached artifact %s", dest_path)
            return dest_path
        url = self.resolve(ref.name, ref.cache_key, ref.stack)
        return self.fetch(url, dest_path)

    def discard(self, ref: ArtifactRef) -> bool:
        """Delete the local copy of an ephemeral artifact.

        Returns:
            True if a file was removed.

        Raises:
            FetchError: If the file exists but cannot be removed.
        """
        path = self.local_path(ref)
        if not path.exists():
            return False
        try:
            path.unlink()
        except OSError as e:
            raise FetchError(
                f"Cannot remove artifact {path}: {e}", code="discard_error"
            ) from e
        logger.debug("Discarded artifact %s", path)
        return True

    def _download(self, url: str, dest_path: Path) -> Path:
        logger.info("Downloading %s", url)
        dest_path.parent.mkdir(parents=True, exist_ok=True)

        # Download next to the destination so the final rename is atomic
        fd, tmp_name = tempfile.mkstemp(
            dir=dest_path.parent, prefix=f".{dest_path.name}.", suffix=".tmp"
        )
        tmp_path = Path(tmp_name)
        try:
            total_bytes = 0
            with os.fdopen(fd, "wb") as f:
                with self.client.stream("GET", url, timeout=self.timeout) as response:
                    response.raise_for_status()
                    for chunk in response.iter_bytes(DOWNLOAD_CHUNK_SIZE):
                        f.write(chunk)
                        total_bytes += len(chunk)
            tmp_path.replace(dest_path)
        except httpx.HTTPStatusError as e:
            tmp_path.unlink(missing_ok=True)
            status = e.response.status_code
            raise FetchError(
                f"HTTP error downloading {url}: {status} {e.response.reason_phrase}",
                code="http_client_error" if 400 <= status < 500 else "http_error",
            ) from e
        except httpx.TimeoutException as e:
            tmp_path.unlink(missing_ok=True)
            raise FetchError(f"Timeout downloading {url}", code="timeout") from e
        except httpx.RequestError as e:
            tmp_path.unlink(missing_ok=True)
            raise FetchError(
                f"Network error downloading {url}: {e}",
                code="network_error",
            ) from e
        except BaseException:
            tmp_path.unlink(missing_ok=True)
            raise

        logger.info("Downloaded %s (%d bytes)", dest_path.name, total_bytes)
        return dest_path


__all__ = [
    "ARTIFACT_SUFFIX",
    "RUNTIME_BUILD_ROOTFS",
    "RUNTIME_DEPLOY",
    "ArtifactRef",
    "ArtifactStore",
]
