"""
Archive importer for modelsync.

Consumes ``<identifier>.tar.gz`` entries from the archive store and unpacks
them into the model store under ``<model_store>/<identifier>/``.

Each entry is claimed by renaming it to
``<identifier>.tar.gz.importing-<host>-<pid>-<run>`` before it is touched, so
concurrent importers never process the same archive twice. The claim is
deleted only after the payload files are in place; any failure renames it back
so the next run retries.

A claim left behind by a crash is put back into the queue when:

- it was made on this host by a process that is gone, or by an earlier
  process that had our pid (the run token differs)
- its owner cannot be checked from here (another host, a reused pid, an
  unrecognised name) and it is older than ``claim_timeout``
"""

import asyncio
import logging
import os
import shutil
import socket
import tarfile
import tempfile
import time
import uuid
import zlib
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Tuple

from ..config import DEFAULT_CLAIM_TIMEOUT
from ..errors import ImportFailure, SyncError, check_identifier
from .fetcher import ARCHIVE_SUFFIX, PAYLOAD_FILES, archive_name, identifier_from_archive
from .outcome import Outcome, OutcomeStatus
from .workers import KeyedLock, run_pool

logger = logging.getLogger(__name__)

CLAIM_MARKER = ".importing-"

HOSTNAME = socket.gethostname() or "localhost"
# One token per process; importers in the same process share it
RUN_ID = uuid.uuid4().hex[:12]

# Python 3.12 extraction filter, backported to recent 3.10/3.11 releases
EXTRACT_KWARGS = {"filter": "data"} if hasattr(tarfile, "data_filter") else {}


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def claim_token(host: str, pid: int, run_id: str) -> str:
    return f"{host}-{pid}-{run_id}"


def parse_claim_token(token: str) -> Optional[Tuple[str, int, str]]:
    """Split ``<host>-<pid>-<run>``; None for names this importer did not write."""
    parts = token.rsplit("-", 2)
    if len(parts) != 3 or not all(parts):
        return None
    host, pid_text, run_id = parts
    try:
        pid = int(pid_text)
    except ValueError:
        return None
    return host, pid, run_id


@dataclass
class ImportReport:
    """
    Result of one ``import_all`` run.

    ``no_work`` is true only when the archive store held nothing to import,
    which callers can tell apart from a run where everything succeeded.
    """
    enumerated: int = 0
    imported: List[Outcome] = field(default_factory=list)
    failed: List[Outcome] = field(default_factory=list)
    skipped: List[Outcome] = field(default_factory=list)

    @property
    def no_work(self) -> bool:
        return self.enumerated == 0

    @property
    def imported_count(self) -> int:
        return len(self.imported)

    @property
    def failed_count(self) -> int:
        return len(self.failed)

    @property
    def outcomes(self) -> List[Outcome]:
        return self.imported + self.failed + self.skipped

    def add(self, outcome: Outcome) -> None:
        if outcome.status == OutcomeStatus.SUCCESS:
            self.imported.append(outcome)
        elif outcome.status == OutcomeStatus.FAILED:
            self.failed.append(outcome)
        else:
            self.skipped.append(outcome)

    def to_dict(self) -> dict:
        return {
            "no_work": self.no_work,
            "imported": self.imported_count,
            "failed": self.failed_count,
            "skipped": len(self.skipped),
            "outcomes": [o.to_dict() for o in self.outcomes],
        }


class Importer:
    """
    Unpacks pending archives into the model store.

    Usage:
        importer = Importer(archive_dir, model_store)
        report = await importer.import_all()
        if report.no_work:
            ...
    """

    def __init__(
        self,
        archive_dir: Path,
        model_store: Path,
        locks: Optional[KeyedLock] = None,
        concurrency: int = 1,
        claim_timeout: float = DEFAULT_CLAIM_TIMEOUT
    ):
        self.archive_dir = Path(archive_dir)
        self.model_store = Path(model_store)
        self.locks = locks or KeyedLock()
        self.concurrency = concurrency
        self.claim_timeout = claim_timeout
        self.host = HOSTNAME
        self.pid = os.getpid()
        self.run_id = RUN_ID

    @property
    def token(self) -> str:
        return claim_token(self.host, self.pid, self.run_id)

    def pending(self) -> List[str]:
        """Identifiers waiting in the archive store."""
        if not self.archive_dir.exists():
            return []
        return sorted(identifier_from_archive(p) for p in self.archive_dir.glob(f"*{ARCHIVE_SUFFIX}"))

    def claims(self) -> List[Path]:
        """Archives currently claimed by some importer."""
        if not self.archive_dir.exists():
            return []
        return sorted(self.archive_dir.glob(f"*{ARCHIVE_SUFFIX}{CLAIM_MARKER}*"))

    def recover_stale_claims(self) -> List[str]:
        """
        Release claims whose owning importer is gone.

        Returns:
            Identifiers put back into the archive store
        """
        now = time.time()
        recovered = []
        for claim in self.claims():
            base, _, token = claim.name.rpartition(CLAIM_MARKER)
            reason = self._stale_reason(claim, token, now)
            if reason is None:
                continue

            try:
                os.replace(claim, self.archive_dir / base)
            except FileNotFoundError:
                # Committed or recovered by someone else meanwhile
                continue
            recovered.append(identifier_from_archive(Path(base)))
            logger.warning(f"Recovered stale claim {claim.name} ({reason})")

        return recovered

    def _stale_reason(self, claim: Path, token: str, now: float) -> Optional[str]:
        owner = parse_claim_token(token)
        if owner is None and token.isdigit():
            # Bare ``<pid>`` names carry no run token, so never this run's
            owner = (self.host, int(token), None)
        if owner is not None:
            host, pid, run_id = owner
            if host == self.host and pid == self.pid:
                if run_id == self.run_id:
                    return None
                return f"left by an earlier process with pid {pid}"
            if host == self.host and not _pid_alive(pid):
                return f"pid {pid} is gone"

        # Owner can't be checked from here: fall back to the lease
        try:
            age = now - claim.stat().st_mtime
        except FileNotFoundError:
            return None
        if age > self.claim_timeout:
            return f"held for {age:.0f}s, over the {self.claim_timeout:.0f}s lease"
        return None

    # ==================== Import ====================

    async def import_all(self) -> ImportReport:
        """Import every pending archive, each independently."""
        self.recover_stale_claims()

        identifiers = self.pending()
        report = ImportReport(enumerated=len(identifiers))

        if report.no_work:
            logger.info(f"No archives pending in {self.archive_dir}")
            return report

        outcomes = await run_pool(identifiers, self.import_one, self.concurrency)
        for outcome in outcomes:
            report.add(outcome)

        logger.info(
            f"Import finished: {report.imported_count} imported, "
            f"{report.failed_count} failed, {len(report.skipped)} skipped"
        )
        return report

    async def import_one(self, identifier: str) -> Outcome:
        """Claim, unpack and commit one archive."""
        try:
            check_identifier(identifier)
        except SyncError as e:
            logger.error(str(e))
            return Outcome.failed(identifier, e, identifier=identifier)

        async with self.locks.hold(identifier):
            archive = self.archive_dir / archive_name(identifier)
            claim = self._claim(archive)
            if claim is None:
                reason = "claimed by another importer"
                logger.info(f"{identifier}: {reason}, skipping")
                return Outcome.skipped(identifier, reason, code="CLAIMED")

            loop = asyncio.get_running_loop()
            try:
                dest = await loop.run_in_executor(None, self._unpack, identifier, claim)
            except ImportFailure as e:
                self._release(claim, archive)
                logger.error(f"{e}; archive kept for retry")
                return Outcome.failed(identifier, e, identifier=identifier)
            except BaseException:
                self._release(claim, archive)
                raise

            try:
                claim.unlink()
            except FileNotFoundError:
                logger.warning(f"{identifier}: claim {claim.name} was taken over before commit")
            logger.info(f"{identifier}: imported into {dest}")
            return Outcome.success(identifier, f"imported into {dest}", path=dest)

    def _claim(self, archive: Path) -> Optional[Path]:
        claim = archive.with_name(f"{archive.name}{CLAIM_MARKER}{self.token}")
        try:
            os.rename(archive, claim)
        except FileNotFoundError:
            return None
        # rename keeps the archive's mtime; the lease starts now
        os.utime(claim)
        return claim

    def _release(self, claim: Path, archive: Path) -> None:
        try:
            os.replace(claim, archive)
        except FileNotFoundError:
            logger.warning(f"Claim {claim.name} was taken over by another importer")

    # ==================== Unpacking ====================

    def _check_members(self, identifier: str, members: List[tarfile.TarInfo]) -> None:
        prefix = f"{identifier}/"
        for member in members:
            name = member.name.rstrip("/")
            if name != identifier and not name.startswith(prefix):
                raise ImportFailure(identifier, f"entry '{member.name}' outside {prefix}")
            if ".." in Path(name).parts:
                raise ImportFailure(identifier, f"entry '{member.name}' escapes the archive")
            if not (member.isfile() or member.isdir()):
                raise ImportFailure(identifier, f"entry '{member.name}' is not a regular file")

    def _unpack(self, identifier: str, claim: Path) -> Path:
        """Extract into a private directory, then move the payload into place."""
        self.model_store.mkdir(parents=True, exist_ok=True)
        dest = self.model_store / identifier
        work = Path(tempfile.mkdtemp(prefix=f".{identifier}.import-", dir=self.model_store))

        try:
            try:
                with tarfile.open(claim, "r:gz") as tar:
                    members = tar.getmembers()
                    self._check_members(identifier, members)
                    tar.extractall(work, members=members, **EXTRACT_KWARGS)
            except (tarfile.TarError, EOFError, zlib.error, OSError) as e:
                raise ImportFailure(identifier, f"unreadable archive: {e}") from e

            unpacked = work / identifier
            absent = [name for name in PAYLOAD_FILES if not (unpacked / name).is_file()]
            if absent:
                raise ImportFailure(identifier, f"archive lacks {', '.join(absent)}")

            dest.mkdir(parents=True, exist_ok=True)
            for name in PAYLOAD_FILES:
                os.replace(unpacked / name, dest / name)
        finally:
            shutil.rmtree(work, ignore_errors=True)

        return dest
