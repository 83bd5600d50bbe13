"""Installation of a downloaded Go release.

Install lifecycle (strictly sequential, every stage fatal on error):
1. Ensure the install root and bin directory exist
2. Remove the previous tree and its bin symlinks
3. Extract the archive, rejecting entries that escape the install root
4. Link the entry points into the bin directory

``verify()`` then runs the linked ``go version`` under a deadline.
"""

from __future__ import annotations

import asyncio
import os
import shutil
import tarfile
import zlib
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import IO

from goupdate.deadline import Deadline
from goupdate.errors import (
    InstallError,
    PathTraversalError,
    UpdateError,
    VerificationError,
    VerificationTimeoutError,
)
from goupdate.logging import get_logger

log = get_logger("goupdate.installer")

DEFAULT_TREE_NAME = "go"
DEFAULT_ENTRY_POINTS = ("go", "gofmt")
DIR_MODE = 0o755
# Grace period for draining output after a timed-out child is killed
KILL_DRAIN_TIMEOUT = 5.0


@dataclass(frozen=True)
class InstallLayout:
    """Where the toolchain tree and its entry-point links live."""

    install_root: Path
    bin_dir: Path

    def __post_init__(self) -> None:
        if os.path.abspath(self.install_root) == os.path.abspath(self.bin_dir):
            raise ValueError("install_root and bin_dir must be different directories")

    @classmethod
    def default(cls) -> InstallLayout:
        """User-local layout that needs no elevated privileges."""
        home = Path.home()
        return cls(install_root=home / ".local" / "lib", bin_dir=home / ".local" / "bin")


class EntryKind(Enum):
    DIRECTORY = "directory"
    REGULAR_FILE = "regular_file"
    SYMLINK = "symlink"
    UNSUPPORTED = "unsupported"


@dataclass(frozen=True)
class ArchiveEntry:
    """The parts of a tar header the extractor acts on."""

    name: str
    kind: EntryKind
    mode: int
    link_target: str = ""

    @classmethod
    def from_tarinfo(cls, info: tarfile.TarInfo) -> ArchiveEntry:
        if info.isdir():
            kind = EntryKind.DIRECTORY
        elif info.isreg():
            kind = EntryKind.REGULAR_FILE
        elif info.issym():
            kind = EntryKind.SYMLINK
        else:
            kind = EntryKind.UNSUPPORTED
        return cls(name=info.name, kind=kind, mode=info.mode & 0o7777, link_target=info.linkname)


def resolve_entry_path(root: str, name: str) -> str:
    """Normalized target path for *name*, which must stay beneath *root*.

    *root* must already be normalized and absolute. Returns *root* itself for
    entries such as ``./``; callers skip those.

    Raises:
        PathTraversalError: if the target is outside *root*.
    """
    target = os.path.normpath(os.path.join(root, name))
    if target != root and os.path.commonpath([root, target]) != root:
        raise PathTraversalError(name, root)
    return target


def _check_real_ancestor(real_root: str, path: str, name: str) -> None:
    """Reject *name* if the nearest existing ancestor of *path* leaves *real_root*.

    Guards against a symlink extracted earlier redirecting later writes.
    """
    existing = path
    while not os.path.lexists(existing):
        existing = os.path.dirname(existing)
    real = os.path.realpath(existing)
    if os.path.commonpath([real_root, real]) != real_root:
        raise PathTraversalError(name, real_root)


class Installer:
    """Installs a Go release archive into an ``InstallLayout``."""

    def __init__(
        self,
        layout: InstallLayout,
        *,
        tree_name: str = DEFAULT_TREE_NAME,
        entry_points: tuple[str, ...] = DEFAULT_ENTRY_POINTS,
    ) -> None:
        if not entry_points:
            raise ValueError("at least one entry point is required")
        self._layout = layout
        self._tree_name = tree_name
        self._entry_points = entry_points

    @property
    def layout(self) -> InstallLayout:
        return self._layout

    @property
    def tree_dir(self) -> Path:
        return self._layout.install_root / self._tree_name

    @property
    def primary_link(self) -> Path:
        return self._layout.bin_dir / self._entry_points[0]

    # ------------------------------------------------------------------
    # Install
    # ------------------------------------------------------------------

    async def install(self, deadline: Deadline, archive_path: Path) -> None:
        """Replace the current installation with the contents of *archive_path*."""
        await self._run_stage("ensure_directories", self._ensure_directories)
        await self._run_stage("remove_existing", self._remove_existing)
        await self._run_stage(
            "extract_archive", lambda: self._extract_archive(deadline, Path(archive_path))
        )
        await self._run_stage("create_symlinks", self._create_symlinks)
        log.info("install_complete", tree=str(self.tree_dir), bin_dir=str(self._layout.bin_dir))

    async def _run_stage(self, stage: str, func: Callable[[], None]) -> None:
        log.debug("install_stage_started", stage=stage)
        try:
            await asyncio.to_thread(func)
        except UpdateError:
            raise
        except (OSError, tarfile.TarError, EOFError, zlib.error) as exc:
            raise InstallError(stage, str(exc)) from exc

    def _ensure_directories(self) -> None:
        for directory in (self._layout.install_root, self._layout.bin_dir):
            directory.mkdir(mode=DIR_MODE, parents=True, exist_ok=True)

    def _remove_existing(self) -> None:
        if self.tree_dir.is_symlink() or self.tree_dir.is_file():
            self.tree_dir.unlink()
        elif self.tree_dir.exists():
            shutil.rmtree(self.tree_dir)
            log.info("removed_existing_installation", path=str(self.tree_dir))

        for name in self._entry_points:
            link = self._layout.bin_dir / name
            # lexists: dangling links from a half-removed install count too
            if os.path.lexists(link):
                link.unlink()

    def _extract_archive(self, deadline: Deadline, archive_path: Path) -> None:
        root = os.path.normpath(os.path.abspath(self._layout.install_root))
        real_root = os.path.realpath(root)
        count = 0

        with tarfile.open(archive_path, mode="r|gz") as archive:
            while True:
                deadline.check("extract_archive")
                info = archive.next()
                if info is None:
                    break

                entry = ArchiveEntry.from_tarinfo(info)
                target = resolve_entry_path(root, entry.name)
                if target == root:
                    continue
                parent = os.path.dirname(target)
                _check_real_ancestor(real_root, parent, entry.name)

                match entry.kind:
                    case EntryKind.DIRECTORY:
                        # chmod follows links, so the target itself must stay inside too
                        _check_real_ancestor(real_root, target, entry.name)
                        # makedirs honours the umask and skips existing directories
                        os.makedirs(target, mode=DIR_MODE, exist_ok=True)
                        os.chmod(target, entry.mode or DIR_MODE)
                    case EntryKind.REGULAR_FILE:
                        os.makedirs(parent, mode=DIR_MODE, exist_ok=True)
                        source = archive.extractfile(info)
                        if source is None:
                            raise InstallError("extract_archive", f"no data for {entry.name}")
                        self._write_file(target, source, entry.mode)
                    case EntryKind.SYMLINK:
                        os.makedirs(parent, mode=DIR_MODE, exist_ok=True)
                        os.symlink(entry.link_target, target)
                    case EntryKind.UNSUPPORTED:
                        log.warning(
                            "skipping_unsupported_entry",
                            name=entry.name,
                            type=info.type.decode(errors="replace"),
                        )
                        continue
                count += 1

        log.info("archive_extracted", path=str(archive_path), entries=count)

    @staticmethod
    def _write_file(target: str, source: IO[bytes], mode: int) -> None:
        if os.path.islink(target):
            os.unlink(target)
        fd = os.open(target, os.O_CREAT | os.O_TRUNC | os.O_WRONLY, mode)
        with os.fdopen(fd, "wb") as fh:
            shutil.copyfileobj(source, fh)
        os.chmod(target, mode)

    def _create_symlinks(self) -> None:
        for name in self._entry_points:
            source = self.tree_dir / "bin" / name
            destination = self._layout.bin_dir / name
            try:
                destination.symlink_to(source)
            except OSError as exc:
                raise InstallError(
                    "create_symlinks", f"failed to link {destination} -> {source}: {exc}"
                ) from exc

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    async def verify(self, deadline: Deadline) -> str:
        """Run ``<primary entry point> version`` and return its combined output."""
        binary = self.primary_link
        if not binary.exists():
            raise VerificationError(f"{self._entry_points[0]} binary not found at {binary}")

        try:
            proc = await asyncio.create_subprocess_exec(
                str(binary),
                "version",
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as exc:
            raise VerificationError(f"failed to start {binary}: {exc}") from exc

        # communicate() drains the pipe to EOF and reaps the child
        run_task = asyncio.create_task(proc.communicate())
        deadline_task = asyncio.create_task(deadline.wait())
        try:
            await asyncio.wait({run_task, deadline_task}, return_when=asyncio.FIRST_COMPLETED)
        except BaseException:
            # Caller cancelled: the child must not outlive this call
            await self._kill_and_drain(proc, run_task)
            raise
        finally:
            deadline_task.cancel()

        if not run_task.done():
            output = (await self._kill_and_drain(proc, run_task)).decode(errors="replace")
            log.warning("verify_timed_out", binary=str(binary), pid=proc.pid)
            raise VerificationTimeoutError(f"{binary} version: deadline exceeded", output)

        stdout, _ = run_task.result()
        output = stdout.decode(errors="replace")
        if proc.returncode != 0:
            raise VerificationError(
                f"installation verification failed: {binary} version exited with "
                f"status {proc.returncode}",
                output,
            )

        log.info("install_verified", output=output.strip())
        return output

    @staticmethod
    async def _kill_and_drain(proc: asyncio.subprocess.Process, run_task: asyncio.Task) -> bytes:
        """Kill *proc* if still running and collect whatever output it produced."""
        if proc.returncode is None:
            try:
                proc.kill()
            except ProcessLookupError:
                pass
        try:
            stdout, _ = await asyncio.wait_for(run_task, timeout=KILL_DRAIN_TIMEOUT)
        except TimeoutError:
            return b""
        return stdout or b""

    def path_instructions(self) -> str:
        """Shell instructions for putting the bin directory on PATH."""
        bin_dir = self._layout.bin_dir
        return (
            f"\nTo use Go, ensure '{bin_dir}' is in your PATH.\n"
            "\nYou can add it to your shell profile (~/.bashrc, ~/.zshrc, etc.):\n\n"
            f'  export PATH="$PATH:{bin_dir}"\n'
        )
