"""Tests for the update pipeline."""

from __future__ import annotations

import hashlib
import io
import json
import tarfile
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from goupdate.deadline import Deadline
from goupdate.download import DownloadResult, ReleaseDownloader
from goupdate.errors import (
    ChecksumMismatchError,
    DownloadError,
    InstallError,
    ReleaseFeedError,
    VerificationError,
)
from goupdate.installer import Installer
from goupdate.pipeline import PipelineResult, PipelineStatus, UpdatePipeline, build_pipeline
from goupdate.versions import VersionChecker


def _stubs(tmp_path: Path, *, installed: str = "1.21.0", latest: str = "1.22.3"):
    """Checker, downloader and installer doubles for a pending update."""
    archive = tmp_path / "dl" / f"go{latest}.linux-amd64.tar.gz"
    archive.parent.mkdir()
    archive.write_bytes(b"archive")

    checker = MagicMock(spec=VersionChecker)
    checker.get_installed_version.return_value = installed
    checker.get_latest_version = AsyncMock(return_value=latest)
    checker.needs_update.side_effect = lambda i, latest_: i != latest_

    download = MagicMock(spec=DownloadResult)
    download.local_path = archive
    download.source_url = f"https://dl.test/go/{archive.name}"
    downloader = MagicMock(spec=ReleaseDownloader)
    downloader.download = AsyncMock(return_value=download)
    downloader.verify_checksum = AsyncMock(return_value=True)

    installer = MagicMock(spec=Installer)
    installer.install = AsyncMock()
    installer.verify = AsyncMock(return_value="go version go1.22.3 linux/amd64\n")
    return checker, downloader, installer, download


class TestPipelineResult:
    """Tests for PipelineResult serialisation."""

    def test_to_dict(self):
        result = PipelineResult(
            status=PipelineStatus.UPDATED,
            installed_version="1.21.0",
            latest_version="1.22.3",
            steps_completed=["resolve"],
        )
        data = result.to_dict()
        assert data["status"] == "updated"
        assert data["installed_version"] == "1.21.0"
        assert data["latest_version"] == "1.22.3"
        assert data["steps_completed"] == ["resolve"]
        assert data["started_at"]
        assert data["completed_at"] is None


class TestUpdatePipeline:
    """Tests for stage sequencing with stubbed collaborators."""

    @pytest.mark.asyncio
    async def test_up_to_date_stops_after_resolve(self, tmp_path):
        checker, downloader, installer, _ = _stubs(tmp_path, installed="1.22.3")
        pipeline = UpdatePipeline(checker, downloader, installer)

        result = await pipeline.run(Deadline.after(5))

        assert result.status is PipelineStatus.UP_TO_DATE
        assert result.steps_completed == ["resolve"]
        assert result.completed_at is not None
        downloader.download.assert_not_called()
        installer.install.assert_not_called()

    @pytest.mark.asyncio
    async def test_check_only_reports_available_update(self, tmp_path):
        checker, downloader, installer, _ = _stubs(tmp_path)
        pipeline = UpdatePipeline(checker, downloader, installer, check_only=True)

        result = await pipeline.run(Deadline.after(5))

        assert result.status is PipelineStatus.UPDATE_AVAILABLE
        assert result.latest_version == "1.22.3"
        downloader.download.assert_not_called()

    @pytest.mark.asyncio
    async def test_full_update(self, tmp_path):
        checker, downloader, installer, download = _stubs(tmp_path)
        pipeline = UpdatePipeline(checker, downloader, installer)
        deadline = Deadline.after(5)

        result = await pipeline.run(deadline)

        assert result.status is PipelineStatus.UPDATED
        assert result.steps_completed == [
            "resolve",
            "download",
            "verify_checksum",
            "install",
            "verify_install",
        ]
        assert result.archive_url == download.source_url
        assert result.verify_output.startswith("go version go1.22.3")
        downloader.download.assert_awaited_once_with(deadline, "1.22.3")
        downloader.verify_checksum.assert_awaited_once_with(
            deadline, download.local_path, "1.22.3"
        )
        installer.install.assert_awaited_once_with(deadline, download.local_path)
        download.cleanup.assert_called_once()

    @pytest.mark.asyncio
    async def test_fresh_install_when_nothing_installed(self, tmp_path):
        checker, downloader, installer, _ = _stubs(tmp_path, installed="")
        pipeline = UpdatePipeline(checker, downloader, installer)

        result = await pipeline.run(Deadline.after(5))

        assert result.status is PipelineStatus.UPDATED
        assert result.installed_version == ""

    @pytest.mark.asyncio
    async def test_checksum_mismatch_aborts_before_install(self, tmp_path):
        checker, downloader, installer, download = _stubs(tmp_path)
        downloader.verify_checksum.return_value = False
        pipeline = UpdatePipeline(checker, downloader, installer)

        with pytest.raises(ChecksumMismatchError, match="1.22.3"):
            await pipeline.run(Deadline.after(5))

        installer.install.assert_not_called()
        download.cleanup.assert_called_once()

    @pytest.mark.asyncio
    async def test_install_failure_still_cleans_up(self, tmp_path):
        checker, downloader, installer, download = _stubs(tmp_path)
        installer.install.side_effect = InstallError("extract_archive", "corrupt")
        pipeline = UpdatePipeline(checker, downloader, installer)

        with pytest.raises(InstallError) as exc_info:
            await pipeline.run(Deadline.after(5))

        assert exc_info.value.stage == "extract_archive"
        download.cleanup.assert_called_once()
        installer.verify.assert_not_called()

    @pytest.mark.asyncio
    async def test_keep_download_skips_cleanup(self, tmp_path):
        checker, downloader, installer, download = _stubs(tmp_path)
        pipeline = UpdatePipeline(checker, downloader, installer, keep_download=True)

        await pipeline.run(Deadline.after(5))

        download.cleanup.assert_not_called()
        assert download.local_path.exists()

    @pytest.mark.asyncio
    async def test_verify_install_disabled(self, tmp_path):
        checker, downloader, installer, _ = _stubs(tmp_path)
        pipeline = UpdatePipeline(checker, downloader, installer, verify_install=False)

        result = await pipeline.run(Deadline.after(5))

        assert result.status is PipelineStatus.UPDATED
        assert result.verify_output is None
        assert "verify_install" not in result.steps_completed
        installer.verify.assert_not_called()

    @pytest.mark.asyncio
    async def test_resolver_error_propagates(self, tmp_path):
        checker, downloader, installer, _ = _stubs(tmp_path)
        checker.get_latest_version.side_effect = ReleaseFeedError("feed unreachable")
        pipeline = UpdatePipeline(checker, downloader, installer)

        with pytest.raises(ReleaseFeedError):
            await pipeline.run(Deadline.after(5))

        downloader.download.assert_not_called()

    @pytest.mark.asyncio
    async def test_download_error_propagates(self, tmp_path):
        checker, downloader, installer, _ = _stubs(tmp_path)
        downloader.download.side_effect = DownloadError("gave up")
        pipeline = UpdatePipeline(checker, downloader, installer)

        with pytest.raises(DownloadError):
            await pipeline.run(Deadline.after(5))

        installer.install.assert_not_called()

    @pytest.mark.asyncio
    async def test_verification_error_propagates(self, tmp_path):
        checker, downloader, installer, download = _stubs(tmp_path)
        installer.verify.side_effect = VerificationError("exit status 2", "boom")
        pipeline = UpdatePipeline(checker, downloader, installer)

        with pytest.raises(VerificationError):
            await pipeline.run(Deadline.after(5))

        download.cleanup.assert_called_once()


# ---------------------------------------------------------------------------
# End to end with real components
# ---------------------------------------------------------------------------

GO_SCRIPT = b'#!/bin/sh\necho "go version go1.22.3 linux/amd64"\n'


def _release_archive() -> bytes:
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as archive:
        for name, data, mode in (
            ("go/VERSION", b"go1.22.3\n", 0o644),
            ("go/bin/go", GO_SCRIPT, 0o755),
            ("go/bin/gofmt", b"#!/bin/sh\nexit 0\n", 0o755),
        ):
            info = tarfile.TarInfo(name)
            info.size = len(data)
            info.mode = mode
            archive.addfile(info, io.BytesIO(data))
    return buffer.getvalue()


def _settings(tmp_path: Path) -> MagicMock:
    settings = MagicMock()
    settings.release_feed_url = "https://feed.test/dl/?mode=json"
    settings.download_base_url = "https://dl.test/go"
    settings.platform = "linux-amd64"
    settings.version_prefix = "go"
    settings.install_root = tmp_path / "lib"
    settings.bin_dir = tmp_path / "bin"
    settings.version_file = tmp_path / "lib" / "go" / "VERSION"
    settings.poll_interval = 0.01
    settings.poll_timeout = 1.0
    settings.verify_install = True
    settings.keep_download = False
    settings.check_only = False
    return settings


class TestBuildPipeline:
    """Tests for build_pipeline wiring against a mocked network."""

    @pytest.mark.asyncio
    async def test_installs_then_reports_up_to_date(self, tmp_path):
        archive = _release_archive()
        digest = hashlib.sha256(archive).hexdigest()
        feed = json.dumps(
            [
                {"version": "go1.23rc1", "stable": False},
                {"version": "go1.22.3", "stable": True},
            ]
        ).encode()
        routes = {
            "https://feed.test/dl/?mode=json": feed,
            "https://dl.test/go/go1.22.3.linux-amd64.tar.gz": archive,
            "https://dl.test/go/go1.22.3.linux-amd64.tar.gz.sha256": digest.encode(),
        }

        def handler(request: httpx.Request) -> httpx.Response:
            body = routes.get(str(request.url))
            if body is None:
                return httpx.Response(404)
            return httpx.Response(200, content=body)

        settings = _settings(tmp_path)
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            pipeline = build_pipeline(settings, client)
            first = await pipeline.run(Deadline.after(10))
            second = await build_pipeline(settings, client).run(Deadline.after(10))

        assert first.status is PipelineStatus.UPDATED
        assert first.installed_version == ""
        assert first.verify_output.strip() == "go version go1.22.3 linux/amd64"
        assert (tmp_path / "bin" / "go").is_symlink()
        assert (tmp_path / "bin" / "gofmt").resolve() == (
            tmp_path / "lib" / "go" / "bin" / "gofmt"
        ).resolve()
        assert pipeline.installer.layout.install_root == tmp_path / "lib"

        assert second.status is PipelineStatus.UP_TO_DATE
        assert second.installed_version == "1.22.3"
