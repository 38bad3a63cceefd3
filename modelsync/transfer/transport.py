"""
Transports that move bundles to the mirror host.

A transport copies one bundle into the mirror's archive store and can then ask
the mirror to run its own importer. Two implementations:

1. SSH - ``scp`` to the mirror, ``ssh`` to trigger the import
2. Directory - the mirror's archive store is reachable as a local path
"""

import asyncio
import logging
import os
import shlex
import shutil
from abc import ABC, abstractmethod
from pathlib import Path
from typing import List, Optional, Tuple
from urllib.parse import urlparse

from ..config import MirrorTransportConfig
from ..errors import TransportError
from .importer import Importer

logger = logging.getLogger(__name__)


class Transport(ABC):
    """Abstract base for all transports."""

    @abstractmethod
    async def send(self, bundle: Path, host: str) -> str:
        """
        Copy ``bundle`` into the archive store of ``host``.

        Returns:
            Location of the bundle on the remote side

        Raises:
            TransportError: the copy did not complete
        """

    @abstractmethod
    async def trigger_import(self, host: str) -> str:
        """
        Ask ``host`` to import its pending archives.

        Returns:
            Human-readable summary of what the remote side reported

        Raises:
            TransportError: the trigger could not be delivered or failed
        """


class SSHTransport(Transport):
    """
    Transport over OpenSSH.

    The bundle is copied to a hidden temporary name and renamed on the remote
    side, so the remote importer never sees a half-copied archive.
    """

    def __init__(self, config: MirrorTransportConfig):
        self.config = config

    def _target(self, host: str) -> str:
        if self.config.user and "@" not in host:
            return f"{self.config.user}@{host}"
        return host

    def _options(self, port_flag: str) -> List[str]:
        options = ["-o", "BatchMode=yes", port_flag, str(self.config.port)]
        if self.config.identity_file:
            options += ["-i", str(self.config.identity_file)]
        return options

    async def _run(self, argv: List[str]) -> Tuple[int, str, str]:
        logger.debug(f"Running: {' '.join(shlex.quote(a) for a in argv)}")
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise TransportError(f"Cannot run {argv[0]}: {e}") from e

        stdout, stderr = await proc.communicate()
        return proc.returncode, stdout.decode(errors="replace"), stderr.decode(errors="replace")

    async def _ssh(self, host: str, command: str) -> str:
        argv = [self.config.ssh_binary, *self._options("-p"), self._target(host), command]
        code, out, err = await self._run(argv)
        if code != 0:
            raise TransportError(f"ssh {host} '{command}' exited with {code}: {err.strip()}", returncode=code)
        return out

    async def send(self, bundle: Path, host: str) -> str:
        bundle = Path(bundle)
        remote_dir = self.config.remote_archive_dir.rstrip("/")
        remote_tmp = f"{remote_dir}/.{bundle.name}.partial"
        remote_final = f"{remote_dir}/{bundle.name}"

        await self._ssh(host, f"mkdir -p {shlex.quote(remote_dir)}")

        argv = [
            self.config.scp_binary, *self._options("-P"),
            str(bundle), f"{self._target(host)}:{remote_tmp}",
        ]
        code, _, err = await self._run(argv)
        if code != 0:
            raise TransportError(f"scp of {bundle.name} to {host} exited with {code}: {err.strip()}", returncode=code)

        await self._ssh(host, f"mv -f {shlex.quote(remote_tmp)} {shlex.quote(remote_final)}")

        logger.info(f"Sent {bundle.name} to {host}:{remote_final}")
        return remote_final

    async def trigger_import(self, host: str) -> str:
        out = await self._ssh(host, self.config.remote_import_command)
        logger.info(f"Triggered import on {host}")
        return out.strip()


class DirectoryTransport(Transport):
    """
    Transport for a mirror whose archive and model stores are mounted locally.

    ``host`` is only used in log messages.
    """

    def __init__(self, archive_dir: Path, model_store: Path):
        self.archive_dir = Path(archive_dir)
        self.model_store = Path(model_store)

    async def send(self, bundle: Path, host: str) -> str:
        bundle = Path(bundle)
        final = self.archive_dir / bundle.name
        partial = self.archive_dir / f".{bundle.name}.partial"

        def copy() -> None:
            self.archive_dir.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(bundle, partial)
            os.replace(partial, final)

        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, copy)
        except OSError as e:
            raise TransportError(f"Copy of {bundle.name} to {final} failed: {e}") from e

        logger.info(f"Sent {bundle.name} to {host}:{final}")
        return str(final)

    async def trigger_import(self, host: str) -> str:
        report = await Importer(self.archive_dir, self.model_store).import_all()
        if report.failed_count:
            raise TransportError(
                f"Import on {host} reported {report.failed_count} failure(s): "
                + "; ".join(o.reason for o in report.failed)
            )
        return f"{report.imported_count} imported"


def create_transport(config: MirrorTransportConfig) -> Transport:
    """Build the transport named by ``config.kind``."""
    if config.kind == "directory":
        return DirectoryTransport(Path(config.remote_archive_dir), Path(config.remote_model_store_dir))
    return SSHTransport(config)


def mirror_host(config: MirrorTransportConfig, mirror_url: Optional[str]) -> str:
    """Host identifier for the mirror: configured host, else the mirror URL's host."""
    if config.host:
        return config.host
    if mirror_url:
        parsed = urlparse(mirror_url)
        if parsed.hostname:
            return parsed.hostname
    raise TransportError("No mirror host configured (set transport.host or mirror_registry_url)")
