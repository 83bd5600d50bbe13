"""Release archive download and checksum verification."""

from __future__ import annotations

import asyncio
import hashlib
import shutil
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO

import httpx

from goupdate.deadline import Deadline
from goupdate.errors import (
    ChecksumFetchError,
    DownloadError,
    PollTimeoutError,
    TransientError,
)
from goupdate.logging import get_logger
from goupdate.poller import DEFAULT_INTERVAL, DEFAULT_TIMEOUT, poll_until

log = get_logger("goupdate.download")

DEFAULT_BASE_URL = "https://dl.google.com/go"
DEFAULT_PLATFORM = "linux-amd64"
TEMP_DIR_PREFIX = "goupdate-"
CHUNK_SIZE = 64 * 1024


@dataclass(frozen=True)
class DownloadResult:
    """A fully written archive and the URL it came from."""

    local_path: Path
    source_url: str

    def cleanup(self) -> None:
        """Remove the temporary directory holding the archive."""
        shutil.rmtree(self.local_path.parent, ignore_errors=True)


def parse_checksum(text: str) -> str:
    """Extract the digest from a ``<hash>  <filename>`` or bare ``<hash>`` body."""
    parts = text.split()
    if parts:
        return parts[0]
    return text.strip()


def file_sha256(path: Path, deadline: Deadline | None = None) -> str:
    """Stream *path* through SHA-256 and return the lowercase hex digest."""
    digest = hashlib.sha256()
    with path.open("rb") as fh:
        while chunk := fh.read(CHUNK_SIZE):
            if deadline is not None:
                deadline.check("calculate_checksum")
            digest.update(chunk)
    return digest.hexdigest()


class ReleaseDownloader:
    """Downloads Go release archives and verifies them against published checksums."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        base_url: str = DEFAULT_BASE_URL,
        *,
        platform: str = DEFAULT_PLATFORM,
        interval: float = DEFAULT_INTERVAL,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        self._client = client
        self._base_url = base_url.rstrip("/")
        self._platform = platform
        self._interval = interval
        self._timeout = timeout

    def archive_filename(self, version: str) -> str:
        return f"go{version}.{self._platform}.tar.gz"

    def archive_url(self, version: str) -> str:
        return f"{self._base_url}/{self.archive_filename(version)}"

    def checksum_url(self, version: str) -> str:
        return f"{self.archive_url(version)}.sha256"

    # ------------------------------------------------------------------
    # Archive
    # ------------------------------------------------------------------

    async def download(self, deadline: Deadline, version: str) -> DownloadResult:
        """Download the archive for *version* into a fresh temporary directory.

        On success the directory is left in place; call
        ``DownloadResult.cleanup()`` once the archive is no longer needed.
        On failure it is removed before the error propagates.
        """
        tmp_dir = Path(tempfile.mkdtemp(prefix=TEMP_DIR_PREFIX))
        url = self.archive_url(version)
        output_path = tmp_dir / self.archive_filename(version)

        log.info("download_started", url=url, path=str(output_path))

        try:
            with output_path.open("wb") as output:

                async def attempt() -> bool:
                    return await self._fetch_into(url, output)

                await poll_until(
                    attempt,
                    interval=self._interval,
                    timeout=self._timeout,
                    deadline=deadline,
                    operation="download_archive",
                )
        except PollTimeoutError as exc:
            shutil.rmtree(tmp_dir, ignore_errors=True)
            raise DownloadError(
                f"download of {url} failed: {exc.last_error or exc}"
            ) from (exc.last_error or exc)
        except BaseException:
            shutil.rmtree(tmp_dir, ignore_errors=True)
            raise

        log.info("download_complete", url=url, bytes=output_path.stat().st_size)
        return DownloadResult(local_path=output_path, source_url=url)

    async def _fetch_into(self, url: str, output: BinaryIO) -> bool:
        # Reset before every attempt so a partial body is never kept.
        # Failing to reset is terminal: the file can no longer be trusted.
        try:
            output.seek(0)
            output.truncate(0)
        except OSError as exc:
            raise DownloadError(
                f"failed to reset {output.name} before fetching {url}: {exc}"
            ) from exc

        try:
            async with self._client.stream("GET", url) as resp:
                if resp.status_code != 200:
                    raise TransientError(f"GET {url}: unexpected status code {resp.status_code}")
                async for chunk in resp.aiter_bytes(CHUNK_SIZE):
                    output.write(chunk)
            output.flush()
        except httpx.HTTPError as exc:
            raise TransientError(f"GET {url}: {exc}") from exc
        except OSError as exc:
            raise TransientError(f"failed to write {url} to disk: {exc}") from exc

        return True

    # ------------------------------------------------------------------
    # Checksum
    # ------------------------------------------------------------------

    async def verify_checksum(self, deadline: Deadline, file_path: Path, version: str) -> bool:
        """Compare *file_path* against the published SHA-256 for *version*.

        A mismatch returns False; only failing to fetch or hash raises.
        """
        expected = await self.fetch_checksum(deadline, version)
        actual = await asyncio.to_thread(file_sha256, Path(file_path), deadline)

        matched = expected == actual
        if not matched:
            log.warning(
                "checksum_mismatch",
                path=str(file_path),
                expected=expected,
                actual=actual,
            )
        return matched

    async def fetch_checksum(self, deadline: Deadline, version: str) -> str:
        url = self.checksum_url(version)
        body = ""

        async def attempt() -> bool:
            nonlocal body
            try:
                resp = await self._client.get(url)
            except httpx.HTTPError as exc:
                raise TransientError(f"GET {url}: {exc}") from exc
            if resp.status_code != 200:
                raise TransientError(f"GET {url}: unexpected status code {resp.status_code}")
            body = resp.text
            return True

        try:
            await poll_until(
                attempt,
                interval=self._interval,
                timeout=self._timeout,
                deadline=deadline,
                operation="fetch_checksum",
            )
        except PollTimeoutError as exc:
            raise ChecksumFetchError(
                f"failed to fetch checksum from {url}: {exc.last_error or exc}"
            ) from (exc.last_error or exc)

        return parse_checksum(body)
