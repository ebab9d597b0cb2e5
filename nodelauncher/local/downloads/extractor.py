import os
import sys
import shutil
import asyncio
import tarfile
import zipfile
import logging
from pathlib import Path
from dataclasses import dataclass
from typing import Optional
from nodelauncher.errors import ExtractionError

log = logging.getLogger(__name__)

ARCHIVE_ZIP = "zip"
ARCHIVE_TAR_GZ = "tar.gz"
ARCHIVE_BINARY = "binary"

TEMP_SUFFIXES = {ARCHIVE_ZIP: ".zip", ARCHIVE_TAR_GZ: ".tar.gz", ARCHIVE_BINARY: ""}


def archive_kind_for_url(url: str) -> str:
    """Guesses the archive kind from the URL's file name; unknown names are treated as zip."""
    file_name = url.split("?", 1)[0].rstrip("/").rsplit("/", 1)[-1].lower()
    if file_name.endswith((".tar.gz", ".tgz")):
        return ARCHIVE_TAR_GZ
    return ARCHIVE_ZIP


def temp_file_name(chain_id: str, kind: str) -> str:
    """Name of the partial download file: ``temp_<chainId>[.zip|.tar.gz]``."""
    return f"temp_{chain_id}{TEMP_SUFFIXES[kind]}"


@dataclass
class ExtractionTask:
    chain_id: str
    archive_path: Path
    dest_dir: Path
    kind: str = ARCHIVE_ZIP
    # Set for chains unpacked with the macOS bundle tool.
    app_bundle: Optional[str] = None


class Extractor:
    """
    Unpacks finished downloads into a chain's install directory.

    One strategy per archive kind: zip, streaming tar.gz, and on macOS an
    app-bundle copy with ``ditto`` followed by an executable-bit fix-up.
    Partial output is left in place on failure; a chain reset wipes it.
    """

    def __init__(self, platform: Optional[str] = None):
        self.platform = platform or sys.platform

    async def extract(self, task: ExtractionTask) -> None:
        """
        Runs the strategy for ``task.kind``.

        :param task: What to unpack and where.
        :raises ExtractionError: With the underlying error message on any failure.
        """
        log.info(f"Extracting {task.archive_path.name} for '{task.chain_id}' into {task.dest_dir}")
        task.dest_dir.mkdir(parents=True, exist_ok=True)
        try:
            if task.app_bundle and self.platform == "darwin":
                await self._extract_app_bundle(task)
            elif task.kind == ARCHIVE_TAR_GZ:
                await asyncio.to_thread(self._extract_tar_gz, task.archive_path, task.dest_dir)
            elif task.kind == ARCHIVE_ZIP:
                await asyncio.to_thread(self._extract_zip, task.archive_path, task.dest_dir)
            else:
                raise ExtractionError(f"Unsupported archive kind '{task.kind}'")
        except (zipfile.BadZipFile, tarfile.TarError, OSError) as e:
            log.error(f"Extraction failed for '{task.chain_id}': {e}")
            raise ExtractionError(str(e)) from e
        log.info(f"Extraction finished for '{task.chain_id}'")

    @staticmethod
    def _extract_zip(archive_path: Path, dest_dir: Path) -> None:
        root = dest_dir.resolve()
        with zipfile.ZipFile(archive_path) as archive:
            for info in archive.infolist():
                target = (root / info.filename).resolve()
                if target != root and not target.is_relative_to(root):
                    raise ExtractionError(f"Refusing to extract '{info.filename}' outside {dest_dir}")
                archive.extract(info, root)
                # zipfile drops unix permissions; they live in the high bits of external_attr.
                mode = (info.external_attr >> 16) & 0o777
                if mode and not info.is_dir():
                    os.chmod(target, mode)

    @staticmethod
    def _extract_tar_gz(archive_path: Path, dest_dir: Path) -> None:
        with tarfile.open(archive_path, "r|gz") as archive:
            archive.extractall(dest_dir, filter="data")

    async def _extract_app_bundle(self, task: ExtractionTask) -> None:
        await self._run_tool("ditto", "-xk", str(task.archive_path), str(task.dest_dir))
        bundle_path = task.dest_dir / task.app_bundle
        if not bundle_path.exists():
            raise ExtractionError(f"App bundle '{task.app_bundle}' not found after extracting {task.archive_path.name}")
        await self._run_tool("chmod", "-R", "+x", str(bundle_path))

    @staticmethod
    async def _run_tool(*command: str) -> None:
        proc = await asyncio.create_subprocess_exec(
            *command, stdout=asyncio.subprocess.PIPE, stderr=asyncio.subprocess.PIPE
        )
        _, stderr = await proc.communicate()
        if proc.returncode != 0:
            message = stderr.decode("utf-8", errors="replace").strip()
            raise ExtractionError(f"{command[0]} exited with code {proc.returncode}: {message}")

    def install_binary(self, temp_path: Path, binary_path: Path) -> None:
        """
        Moves a directly downloaded binary into place and marks it executable.

        :param temp_path: The finished download.
        :param binary_path: Final location of the binary.
        """
        binary_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            os.replace(temp_path, binary_path)
        except OSError:
            # Rename fails across filesystems.
            shutil.move(str(temp_path), str(binary_path))
        if self.platform != "win32":
            os.chmod(binary_path, 0o755)
        log.info(f"Installed binary {binary_path}")
