"""Version detection and comparison for the Go toolchain.

Reads the installed version from the extracted tree, fetches the release
feed, and decides whether the installed toolchain is behind the newest
stable release.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, NamedTuple

import httpx

from goupdate.deadline import Deadline
from goupdate.errors import (
    NoStableReleaseError,
    PollTimeoutError,
    ReleaseFeedError,
    TransientError,
    VersionParseError,
)
from goupdate.logging import get_logger
from goupdate.poller import DEFAULT_INTERVAL, DEFAULT_TIMEOUT, poll_until

log = get_logger("goupdate.versions")

DEFAULT_FEED_URL = "https://go.dev/dl/?mode=json"

# Exactly major.minor.patch; no pre-release or build metadata
_VERSION_RE = re.compile(r"^(?P<major>\d+)\.(?P<minor>\d+)\.(?P<patch>\d+)$")
_NON_NUMERIC_PREFIX_RE = re.compile(r"^\D+")


class SemanticVersion(NamedTuple):
    major: int
    minor: int
    patch: int

    def __str__(self) -> str:
        return f"{self.major}.{self.minor}.{self.patch}"


@dataclass(frozen=True)
class Release:
    """A single entry of the release feed."""

    version: str  # as published, e.g. "go1.22.3"
    stable: bool

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Release:
        if not isinstance(data, dict):
            raise ReleaseFeedError(f"malformed release entry: {data!r}")
        version = data.get("version")
        stable = data.get("stable", False)
        if not isinstance(version, str) or not isinstance(stable, bool):
            raise ReleaseFeedError(f"malformed release entry: {data!r}")
        return cls(version=version, stable=stable)


def parse_version(version: str) -> SemanticVersion:
    """Parse ``"X.Y.Z"`` into a ``SemanticVersion``.

    Raises:
        VersionParseError: if the string is not three dot-separated integers.
    """
    m = _VERSION_RE.match(version)
    if m is None:
        raise VersionParseError(
            f"invalid version format {version!r}: versions must be in the format X.Y.Z"
        )
    return SemanticVersion(int(m.group("major")), int(m.group("minor")), int(m.group("patch")))


def strip_prefix(version: str) -> str:
    """Drop any leading non-numeric tag such as ``go``."""
    return _NON_NUMERIC_PREFIX_RE.sub("", version.strip(), count=1)


def needs_update(installed: str, latest: str) -> bool:
    """Return True if *installed* is older than *latest*.

    An empty *installed* means nothing is installed yet. A malformed version
    on either side is an error, never a guess.
    """
    if installed == "":
        return True
    return parse_version(installed) < parse_version(latest)


class VersionChecker:
    """Resolves the installed and the latest stable Go version."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        feed_url: str = DEFAULT_FEED_URL,
        *,
        version_prefix: str = "go",
        version_file: Path | None = None,
        interval: float = DEFAULT_INTERVAL,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        self._client = client
        self._feed_url = feed_url
        self._prefix = version_prefix
        self._version_file = version_file
        self._interval = interval
        self._timeout = timeout

    @property
    def feed_url(self) -> str:
        return self._feed_url

    def get_installed_version(self) -> str:
        """Version of the installed toolchain, or "" if none is installed.

        Go distributions ship a ``VERSION`` file whose first line is the
        release tag (``go1.22.3``).
        """
        if self._version_file is None or not self._version_file.is_file():
            return ""
        try:
            lines = self._version_file.read_text(encoding="utf-8").splitlines()
        except (OSError, UnicodeDecodeError) as exc:
            raise VersionParseError(
                f"cannot read installed version from {self._version_file}: {exc}"
            ) from exc
        if not lines:
            return ""
        return strip_prefix(lines[0])

    async def get_latest_version(self, deadline: Deadline) -> str:
        """Fetch the feed and return the newest stable version, prefix stripped."""
        releases = await self._fetch_releases(deadline)

        # Pick first stable release; the feed is ordered newest first.
        for release in releases:
            if release.stable and release.version.startswith(self._prefix):
                version = release.version[len(self._prefix) :]
                log.debug("latest_version_resolved", version=version, feed=self._feed_url)
                return version

        raise NoStableReleaseError(f"no stable release found in {self._feed_url}")

    def needs_update(self, installed: str, latest: str) -> bool:
        return needs_update(installed, latest)

    async def _fetch_releases(self, deadline: Deadline) -> list[Release]:
        request = self._client.build_request("GET", self._feed_url)
        response: httpx.Response | None = None

        async def attempt() -> bool:
            nonlocal response
            try:
                resp = await self._client.send(request, stream=True)
            except httpx.HTTPError as exc:
                raise TransientError(f"GET {self._feed_url}: {exc}") from exc
            if resp.status_code != 200:
                await resp.aclose()
                raise TransientError(
                    f"GET {self._feed_url}: unexpected status code {resp.status_code}"
                )
            response = resp
            return True

        try:
            await poll_until(
                attempt,
                interval=self._interval,
                timeout=self._timeout,
                deadline=deadline,
                operation="fetch_release_feed",
            )
        except PollTimeoutError as exc:
            raise ReleaseFeedError(
                f"failed to fetch version info from {self._feed_url}: {exc.last_error or exc}"
            ) from (exc.last_error or exc)

        assert response is not None
        try:
            body = await response.aread()
        except httpx.HTTPError as exc:
            raise ReleaseFeedError(f"failed to read version info from {self._feed_url}") from exc
        finally:
            await response.aclose()

        try:
            data = json.loads(body)
        except ValueError as exc:
            raise ReleaseFeedError(f"failed to parse version info from {self._feed_url}") from exc
        if not isinstance(data, list):
            raise ReleaseFeedError(f"expected a JSON array from {self._feed_url}")
        return [Release.from_dict(entry) for entry in data]
