"""Update pipeline: resolve → compare → download → verify checksum → install.

Every stage runs under one ``Deadline``. Retries live inside the resolver
and downloader; any error reaching this module aborts the run and is
propagated unchanged.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

from goupdate.deadline import Deadline
from goupdate.download import ReleaseDownloader
from goupdate.errors import ChecksumMismatchError
from goupdate.installer import InstallLayout, Installer
from goupdate.logging import get_logger
from goupdate.utils import timed_stage
from goupdate.versions import VersionChecker

if TYPE_CHECKING:
    import httpx

    from goupdate.config import Settings

log = get_logger("goupdate.pipeline")


class PipelineStatus(Enum):
    """Outcome of a pipeline run that did not raise."""

    UP_TO_DATE = "up_to_date"
    UPDATE_AVAILABLE = "update_available"
    UPDATED = "updated"


@dataclass
class PipelineResult:
    """Result of one pipeline run."""

    status: PipelineStatus
    installed_version: str
    latest_version: str
    archive_url: str | None = None
    verify_output: str | None = None
    steps_completed: list[str] = field(default_factory=list)
    started_at: str = field(default_factory=lambda: datetime.now().isoformat())
    completed_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "installed_version": self.installed_version,
            "latest_version": self.latest_version,
            "archive_url": self.archive_url,
            "verify_output": self.verify_output,
            "steps_completed": self.steps_completed,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
        }


class UpdatePipeline:
    """Sequences the resolver, downloader and installer.

    Typical flow:
    1. ``checker``: installed vs. latest stable version
    2. ``downloader``: fetch the archive and check its SHA-256
    3. ``installer``: extract, relink and optionally run ``go version``
    """

    def __init__(
        self,
        checker: VersionChecker,
        downloader: ReleaseDownloader,
        installer: Installer,
        *,
        verify_install: bool = True,
        keep_download: bool = False,
        check_only: bool = False,
    ) -> None:
        self._checker = checker
        self._downloader = downloader
        self._installer = installer
        self._verify_install = verify_install
        self._keep_download = keep_download
        self._check_only = check_only

    @property
    def installer(self) -> Installer:
        return self._installer

    async def run(self, deadline: Deadline) -> PipelineResult:
        installed = self._checker.get_installed_version()
        async with timed_stage("resolve_latest", log=log):
            latest = await self._checker.get_latest_version(deadline)

        update_needed = self._checker.needs_update(installed, latest)
        log.info(
            "version_check",
            installed=installed or None,
            latest=latest,
            update_needed=update_needed,
        )

        result = PipelineResult(
            status=PipelineStatus.UP_TO_DATE,
            installed_version=installed,
            latest_version=latest,
            steps_completed=["resolve"],
        )
        if not update_needed:
            return self._finish(result)
        if self._check_only:
            result.status = PipelineStatus.UPDATE_AVAILABLE
            return self._finish(result)

        async with timed_stage("download", log=log, version=latest):
            download = await self._downloader.download(deadline, latest)
        result.archive_url = download.source_url
        result.steps_completed.append("download")

        try:
            async with timed_stage("verify_checksum", log=log, version=latest):
                verified = await self._downloader.verify_checksum(
                    deadline, download.local_path, latest
                )
            if not verified:
                raise ChecksumMismatchError(
                    f"{download.local_path} does not match the published checksum "
                    f"for {latest} ({download.source_url})"
                )
            result.steps_completed.append("verify_checksum")

            async with timed_stage("install", log=log, version=latest):
                await self._installer.install(deadline, download.local_path)
            result.steps_completed.append("install")
        finally:
            if self._keep_download:
                log.info("download_kept", path=str(download.local_path))
            else:
                download.cleanup()

        if self._verify_install:
            async with timed_stage("verify_install", log=log):
                result.verify_output = await self._installer.verify(deadline)
            result.steps_completed.append("verify_install")

        result.status = PipelineStatus.UPDATED
        return self._finish(result)

    @staticmethod
    def _finish(result: PipelineResult) -> PipelineResult:
        result.completed_at = datetime.now().isoformat()
        return result


def build_pipeline(settings: Settings, client: httpx.AsyncClient) -> UpdatePipeline:
    """Wire a pipeline from settings around an injected HTTP client."""
    checker = VersionChecker(
        client,
        settings.release_feed_url,
        version_prefix=settings.version_prefix,
        version_file=settings.version_file,
        interval=settings.poll_interval,
        timeout=settings.poll_timeout,
    )
    downloader = ReleaseDownloader(
        client,
        settings.download_base_url,
        platform=settings.platform,
        interval=settings.poll_interval,
        timeout=settings.poll_timeout,
    )
    layout = InstallLayout(install_root=settings.install_root, bin_dir=settings.bin_dir)
    installer = Installer(layout)
    return UpdatePipeline(
        checker,
        downloader,
        installer,
        verify_install=settings.verify_install,
        keep_download=settings.keep_download,
        check_only=settings.check_only,
    )
