"""
Mirror uploader for modelsync.

Pushes one artifact from the local registry to the administrative mirror:
resolve the selector locally, skip if the mirror already lists it, package it,
hand the bundle to the transport, trigger the mirror's importer and finally
delete the local bundle.

By default the uploader never learns whether the remote import worked; a
failed trigger is reported as ``REMOTE_IMPORT_UNKNOWN``. Enabling
``verify_remote_import`` re-lists the mirror after the trigger to confirm it.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import List, Optional

from ..errors import AlreadyPresent, RegistryUnreachable, SelectorNotFound, SyncError, TransportError
from .fetcher import BundleFetcher
from .outcome import Outcome, OutcomeStatus
from .registry import RegistryClient
from .transport import Transport

logger = logging.getLogger(__name__)


class MirrorState(Enum):
    """Lifecycle of one artifact's mirroring."""
    UNMIRRORED = "unmirrored"
    FETCHING = "fetching"
    PACKAGED = "packaged"
    TRANSMITTED = "transmitted"
    REMOTE_IMPORT_TRIGGERED = "remote_import_triggered"
    REMOTE_IMPORT_CONFIRMED = "remote_import_confirmed"
    REMOTE_IMPORT_UNKNOWN = "remote_import_unknown"
    ALREADY_MIRRORED = "already_mirrored"
    FAILED = "failed"


@dataclass
class UploadResult:
    """
    Record of one upload, including every state it went through.
    """
    selector: str
    identifier: Optional[str] = None
    state: MirrorState = MirrorState.UNMIRRORED
    history: List[MirrorState] = field(default_factory=lambda: [MirrorState.UNMIRRORED])
    remote_path: Optional[str] = None
    reason: str = ""
    started_at: datetime = field(default_factory=datetime.now)
    completed_at: Optional[datetime] = None

    def advance(self, state: MirrorState, reason: str = "") -> None:
        self.state = state
        self.history.append(state)
        if reason:
            self.reason = reason

    @property
    def confirmed(self) -> bool:
        return self.state == MirrorState.REMOTE_IMPORT_CONFIRMED

    def to_outcome(self) -> Outcome:
        if self.state == MirrorState.ALREADY_MIRRORED:
            return Outcome.skipped(
                self.selector, self.reason, code="ALREADY_PRESENT", identifier=self.identifier
            )
        if self.state in (MirrorState.REMOTE_IMPORT_TRIGGERED, MirrorState.REMOTE_IMPORT_CONFIRMED):
            return Outcome.success(self.selector, self.reason, identifier=self.identifier)
        return Outcome(
            item=self.selector,
            status=OutcomeStatus.FAILED,
            reason=self.reason,
            code=self.state.value.upper(),
            identifier=self.identifier,
        )

    def to_dict(self) -> dict:
        return {
            "selector": self.selector,
            "identifier": self.identifier,
            "state": self.state.value,
            "history": [s.value for s in self.history],
            "remote_path": self.remote_path,
            "reason": self.reason,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }


class MirrorUploader:
    """
    Uploads local artifacts to the mirror.

    Usage:
        uploader = MirrorUploader(
            client=client,
            local_url=local_url,
            mirror_url=mirror_url,
            fetcher=BundleFetcher(client, outgoing / "staging", outgoing),
            transport=SSHTransport(config.transport),
            host="mirror.example.com",
        )
        result = await uploader.upload("face")
    """

    def __init__(
        self,
        client: RegistryClient,
        local_url: str,
        mirror_url: str,
        fetcher: BundleFetcher,
        transport: Transport,
        host: str,
        verify_remote_import: bool = False
    ):
        self.client = client
        self.local_url = local_url
        self.mirror_url = mirror_url
        self.fetcher = fetcher
        self.transport = transport
        self.host = host
        self.verify_remote_import = verify_remote_import

    async def resolve(self, selector: str) -> str:
        """
        Resolve a selector to one local identifier.

        Ambiguous names pick the first identifier in sorted order; select by
        identifier to choose explicitly.

        Raises:
            SelectorNotFound: nothing matches in the local registry
        """
        matches = sorted(await self.client.find(self.local_url, selector))
        if not matches:
            raise SelectorNotFound(selector, self.local_url)
        if len(matches) > 1:
            logger.warning(f"'{selector}' matches {len(matches)} artifacts, using {matches[0]}")
        return matches[0]

    async def upload(self, selector: str) -> UploadResult:
        """
        Mirror one artifact.

        Returns:
            UploadResult ending in ALREADY_MIRRORED, REMOTE_IMPORT_TRIGGERED,
            REMOTE_IMPORT_CONFIRMED or REMOTE_IMPORT_UNKNOWN

        Raises:
            RegistryUnreachable: the local or mirror listing is unusable
            SelectorNotFound: the selector matches nothing locally
            PartialDownload: the bundle could not be assembled
            TransportError: the bundle could not be sent
        """
        result = UploadResult(selector=selector)
        identifier = await self.resolve(selector)
        result.identifier = identifier

        if identifier in await self.client.known_identifiers(self.mirror_url):
            skip = AlreadyPresent(identifier, self.mirror_url)
            result.advance(MirrorState.ALREADY_MIRRORED, str(skip))
            result.completed_at = datetime.now()
            logger.info(f"{identifier}: already mirrored, nothing to upload")
            return result

        result.advance(MirrorState.FETCHING)
        try:
            bundle = await self.fetcher.fetch(self.local_url, identifier)
        except SyncError as e:
            result.advance(MirrorState.FAILED, str(e))
            raise
        result.advance(MirrorState.PACKAGED)

        try:
            await self._transmit(result, bundle)
        finally:
            # The bundle goes whether or not the mirror imported it
            Path(bundle).unlink(missing_ok=True)
            logger.debug(f"{identifier}: removed local bundle {bundle}")
            result.completed_at = datetime.now()

        return result

    async def _transmit(self, result: UploadResult, bundle: Path) -> None:
        identifier = result.identifier

        try:
            result.remote_path = await self.transport.send(bundle, self.host)
        except TransportError as e:
            result.advance(MirrorState.FAILED, str(e))
            logger.error(f"{identifier}: send to {self.host} failed: {e}")
            raise
        result.advance(MirrorState.TRANSMITTED)

        try:
            summary = await self.transport.trigger_import(self.host)
        except TransportError as e:
            logger.error(f"{identifier}: remote import trigger failed: {e}")
            result.advance(MirrorState.REMOTE_IMPORT_UNKNOWN, f"transmitted, remote import trigger failed: {e}")
        else:
            reason = "transmitted, remote import triggered"
            if summary:
                reason += f" ({summary})"
            result.advance(MirrorState.REMOTE_IMPORT_TRIGGERED, reason)

        if self.verify_remote_import:
            await self._verify(result)

    async def _verify(self, result: UploadResult) -> None:
        try:
            mirrored = await self.client.known_identifiers(self.mirror_url)
        except RegistryUnreachable as e:
            result.advance(MirrorState.REMOTE_IMPORT_UNKNOWN, f"transmitted, could not verify: {e}")
            return

        if result.identifier in mirrored:
            result.advance(MirrorState.REMOTE_IMPORT_CONFIRMED, "transmitted, mirror lists the artifact")
            logger.info(f"{result.identifier}: remote import confirmed")
        else:
            result.advance(MirrorState.REMOTE_IMPORT_UNKNOWN, "transmitted, mirror does not list the artifact yet")
            logger.warning(f"{result.identifier}: mirror does not list the artifact after import")
