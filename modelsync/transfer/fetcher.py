"""
Bundle fetcher for modelsync.

Downloads the fixed set of payload files of one artifact into a staging
directory and packages them into ``<identifier>.tar.gz``. Staging holds all
partial state; an archive only ever appears under its final name once it is
complete.
"""

import asyncio
import logging
import os
import shutil
import tarfile
from pathlib import Path
from typing import List, Optional

import aiohttp

from ..errors import PartialDownload, check_identifier
from .workers import KeyedLock
from .registry import RegistryClient

logger = logging.getLogger(__name__)

# Payload files of every artifact, in archive order
PAYLOAD_FILES = (
    "image.jpg",
    "model.json",
    "compiled.data",
    "data_set.json",
    "model.data",
)

ARCHIVE_SUFFIX = ".tar.gz"
PARTIAL_SUFFIX = ".partial"


def archive_name(identifier: str) -> str:
    return f"{identifier}{ARCHIVE_SUFFIX}"


def identifier_from_archive(path: Path) -> str:
    return Path(path).name[: -len(ARCHIVE_SUFFIX)]


class BundleFetcher:
    """
    Fetches and packages artifacts.

    ``fetch`` is idempotent: when the archive already exists nothing is
    downloaded. A failed fetch leaves the staging directory behind so the next
    attempt resumes the files it still lacks.

    Usage:
        fetcher = BundleFetcher(client, staging_root, archive_dir)
        path = await fetcher.fetch(source_url, "a1")   # .../a1.tar.gz
    """

    def __init__(
        self,
        client: RegistryClient,
        staging_root: Path,
        archive_dir: Path,
        locks: Optional[KeyedLock] = None,
        compression_level: int = 6
    ):
        self.client = client
        self.staging_root = Path(staging_root)
        self.archive_dir = Path(archive_dir)
        self.locks = locks or KeyedLock()
        self.compression_level = compression_level

    def archive_path(self, identifier: str) -> Path:
        return self.archive_dir / archive_name(identifier)

    def staging_path(self, identifier: str) -> Path:
        return self.staging_root / identifier

    def staged_identifiers(self) -> List[str]:
        """Identifiers with an unfinished staging directory."""
        if not self.staging_root.exists():
            return []
        return sorted(p.name for p in self.staging_root.iterdir() if p.is_dir())

    # ==================== Fetch ====================

    async def fetch(self, registry_url: str, identifier: str) -> Path:
        """
        Produce ``<identifier>.tar.gz`` in the archive directory.

        Args:
            registry_url: Registry serving the payload files
            identifier: Artifact to fetch

        Returns:
            Path to the archive

        Raises:
            PartialDownload: one or more payload files could not be retrieved
        """
        check_identifier(identifier)

        async with self.locks.hold(identifier):
            archive = self.archive_path(identifier)
            if archive.exists():
                logger.info(f"{identifier}: archive already present at {archive}, skipping fetch")
                return archive

            staging = self.staging_path(identifier)
            staging.mkdir(parents=True, exist_ok=True)

            missing = await self._download_all(registry_url, identifier, staging)
            if missing:
                logger.warning(
                    f"{identifier}: {len(missing)} of {len(PAYLOAD_FILES)} files failed, "
                    f"staging kept at {staging}"
                )
                raise PartialDownload(identifier, missing)

            loop = asyncio.get_running_loop()
            await loop.run_in_executor(None, self._build_archive, identifier)

            logger.info(f"{identifier}: packaged {archive}")
            return archive

    async def _download_all(self, registry_url: str, identifier: str, staging: Path) -> List[str]:
        """Download every payload file. Returns the names that failed."""
        missing = []

        for filename in PAYLOAD_FILES:
            try:
                size = await self.client.download_file(
                    registry_url, identifier, filename, staging / filename
                )
                logger.debug(f"{identifier}/{filename}: {size} bytes")
            except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
                logger.warning(f"{identifier}/{filename}: download failed: {e}")
                missing.append(filename)

        return missing

    # ==================== Packaging ====================

    def _build_archive(self, identifier: str) -> Path:
        """Tar the staging directory, publish it atomically, drop staging."""
        staging = self.staging_path(identifier)

        absent = [name for name in PAYLOAD_FILES if not (staging / name).is_file()]
        if absent:
            raise PartialDownload(identifier, absent)

        self.archive_dir.mkdir(parents=True, exist_ok=True)
        final = self.archive_path(identifier)
        partial = self.archive_dir / f".{archive_name(identifier)}{PARTIAL_SUFFIX}"

        try:
            with tarfile.open(partial, "w:gz", compresslevel=self.compression_level) as tar:
                for name in PAYLOAD_FILES:
                    tar.add(staging / name, arcname=f"{identifier}/{name}")
            with open(partial, "rb") as f:
                os.fsync(f.fileno())
            os.replace(partial, final)
        except BaseException:
            partial.unlink(missing_ok=True)
            raise

        shutil.rmtree(staging, ignore_errors=True)
        return final
