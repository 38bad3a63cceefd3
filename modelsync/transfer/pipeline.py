"""
Batch operations over the transfer components.

``SyncPipeline`` wires the registry client, fetcher, importer and uploader
from one ``Config`` and runs the three verbs over lists of selectors. A
failure for one selector or identifier becomes an ``Outcome`` and never stops
the others; only an unusable registry listing aborts a batch.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Set

from ..config import Config
from ..errors import AlreadyPresent, RegistryUnreachable, SelectorNotFound, SyncError
from .fetcher import BundleFetcher
from .importer import ImportReport, Importer
from .outcome import Outcome, OutcomeStatus
from .reconcile import ALL, Reconciler, missing_from
from .registry import ArtifactRecord, RegistryClient
from .transport import Transport, create_transport, mirror_host
from .uploader import MirrorUploader, UploadResult
from .workers import KeyedLock, run_pool

logger = logging.getLogger(__name__)


@dataclass
class BatchReport:
    """Outcomes of one batch verb, in the order the items were given."""
    verb: str
    outcomes: List[Outcome] = field(default_factory=list)
    uploads: List[UploadResult] = field(default_factory=list)

    def _with(self, status: OutcomeStatus) -> List[Outcome]:
        return [o for o in self.outcomes if o.status == status]

    @property
    def succeeded(self) -> List[Outcome]:
        return self._with(OutcomeStatus.SUCCESS)

    @property
    def skipped(self) -> List[Outcome]:
        return self._with(OutcomeStatus.SKIPPED)

    @property
    def failed(self) -> List[Outcome]:
        return self._with(OutcomeStatus.FAILED)

    @property
    def ok(self) -> bool:
        return not self.failed

    @property
    def no_work(self) -> bool:
        return not self.outcomes

    def to_dict(self) -> dict:
        return {
            "verb": self.verb,
            "succeeded": len(self.succeeded),
            "skipped": len(self.skipped),
            "failed": len(self.failed),
            "outcomes": [o.to_dict() for o in self.outcomes],
        }


def _dedupe(selectors: Iterable[str]) -> List[str]:
    seen: Dict[str, None] = {}
    for selector in selectors:
        seen.setdefault(selector, None)
    return list(seen)


class SyncPipeline:
    """
    Runs download, import and upload batches for one configuration.

    Usage:
        async with SyncPipeline(config) as pipeline:
            report = await pipeline.download(["face", "a1"])
            imports = await pipeline.import_archives()
            uploads = await pipeline.upload([ALL])
    """

    def __init__(
        self,
        config: Config,
        client: Optional[RegistryClient] = None,
        transport: Optional[Transport] = None
    ):
        self.config = config
        self.client = client or RegistryClient(api_key=config.api_key, timeout=config.request_timeout)
        self.locks = KeyedLock()

        self.fetcher = BundleFetcher(
            self.client, config.staging_root, config.archive_store_dir, locks=self.locks
        )
        self.importer = Importer(
            config.archive_store_dir, config.model_store_dir,
            locks=self.locks, concurrency=config.concurrency,
            claim_timeout=config.claim_timeout
        )
        self._transport = transport

    async def __aenter__(self) -> "SyncPipeline":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def close(self) -> None:
        await self.client.close()

    # ==================== Download ====================

    async def download(self, selectors: Iterable[str]) -> BatchReport:
        """
        Fetch every selected source artifact the local registry lacks.

        Raises:
            RegistryUnreachable: the source or local listing is unusable
        """
        source_url = self.config.require("source_registry_url")
        local_url = self.config.require("local_registry_url")
        reconciler = Reconciler(self.client, source_url)
        report = BatchReport(verb="download")

        local_ids = await self.client.known_identifiers(local_url)
        seen: Set[str] = set()

        for selector in _dedupe(selectors):
            candidates = await reconciler.resolve(selector)
            if not candidates:
                if selector == ALL:
                    # An empty source has nothing to download
                    logger.info(f"No artifacts listed by {source_url}")
                    continue
                error = SelectorNotFound(selector, source_url)
                logger.error(str(error))
                report.outcomes.append(Outcome.failed(selector, error))
                continue

            for identifier in candidates:
                if identifier in seen:
                    continue
                seen.add(identifier)
                if identifier in local_ids:
                    skip = AlreadyPresent(identifier, local_url)
                    logger.info(str(skip))
                    report.outcomes.append(
                        Outcome.skipped(identifier, str(skip), code=skip.code)
                    )

        work = missing_from(local_ids, seen)

        async def fetch_one(identifier: str) -> Outcome:
            if self.fetcher.archive_path(identifier).exists():
                reason = "archive already pending import"
                logger.info(f"{identifier}: {reason}")
                return Outcome.skipped(identifier, reason, code="ALREADY_PACKAGED")
            try:
                path = await self.fetcher.fetch(source_url, identifier)
            except RegistryUnreachable:
                raise
            except SyncError as e:
                logger.error(str(e))
                return Outcome.failed(identifier, e, identifier=identifier)
            return Outcome.success(identifier, f"packaged {path.name}", path=path)

        report.outcomes.extend(await run_pool(work, fetch_one, self.config.concurrency))
        return report

    # ==================== Import ====================

    async def import_archives(self) -> ImportReport:
        """Import every archive pending in the archive store."""
        return await self.importer.import_all()

    # ==================== Upload ====================

    def transport(self) -> Transport:
        if self._transport is None:
            self._transport = create_transport(self.config.transport)
        return self._transport

    def uploader(self) -> MirrorUploader:
        local_url = self.config.require("local_registry_url")
        mirror_url = self.config.require("mirror_registry_url")
        outgoing = BundleFetcher(
            self.client, self.config.outgoing_dir / "staging", self.config.outgoing_dir,
            locks=self.locks
        )
        return MirrorUploader(
            client=self.client,
            local_url=local_url,
            mirror_url=mirror_url,
            fetcher=outgoing,
            transport=self.transport(),
            host=mirror_host(self.config.transport, mirror_url),
            verify_remote_import=self.config.verify_remote_import,
        )

    async def upload(self, selectors: Iterable[str]) -> BatchReport:
        """
        Mirror each selected local artifact, one at a time.

        ``ALL`` expands to every identifier the local registry lists.

        Raises:
            RegistryUnreachable: the local or mirror listing is unusable
        """
        uploader = self.uploader()
        report = BatchReport(verb="upload")

        expanded: List[str] = []
        for selector in _dedupe(selectors):
            if selector == ALL:
                expanded.extend(sorted(await self.client.known_identifiers(uploader.local_url)))
            else:
                expanded.append(selector)

        for selector in _dedupe(expanded):
            try:
                result = await uploader.upload(selector)
            except RegistryUnreachable:
                raise
            except SyncError as e:
                logger.error(str(e))
                report.outcomes.append(Outcome.failed(selector, e))
                continue

            report.uploads.append(result)
            report.outcomes.append(result.to_outcome())

        return report

    # ==================== Inspection ====================

    async def listing(self, registry: str) -> List[ArtifactRecord]:
        """Records of ``source``, ``local`` or ``mirror``, sorted by name then identifier."""
        url = self.config.require(f"{registry}_registry_url")
        records = await self.client.list_artifacts(url)
        return sorted(records, key=lambda r: (r.name or "", r.identifier))

    async def missing(self, selection: str = ALL) -> List[str]:
        """Source identifiers the local registry lacks."""
        reconciler = Reconciler(self.client, self.config.require("source_registry_url"))
        return await reconciler.missing_from(self.config.require("local_registry_url"), selection)

    def status(self) -> dict:
        """On-disk state: pending archives, active claims, resumable staging."""
        return {
            "pending": self.importer.pending(),
            "claimed": [p.name for p in self.importer.claims()],
            "staged": self.fetcher.staged_identifiers(),
            "archive_store_dir": str(self.config.archive_store_dir),
            "staging_root": str(self.config.staging_root),
            "model_store_dir": str(self.config.model_store_dir),
        }
