"""
Artifact transfer pipeline for modelsync.

Moves model artifacts between registries:
- Registry client: listings and per-file retrieval
- Reconciler: which identifiers a destination lacks
- Fetcher: resumable download and atomic packaging into <uuid>.tar.gz
- Importer: claim, unpack and commit archives into the model store
- Uploader: push one artifact to the mirror through a transport
"""

from .registry import ArtifactRecord, RegistryClient
from .reconcile import ALL, Reconciler, missing_from
from .fetcher import BundleFetcher, PAYLOAD_FILES
from .importer import Importer, ImportReport
from .outcome import Outcome, OutcomeStatus
from .transport import Transport, SSHTransport, DirectoryTransport, create_transport
from .uploader import MirrorUploader, MirrorState, UploadResult
from .pipeline import SyncPipeline, BatchReport

__all__ = [
    # Registry
    "ArtifactRecord",
    "RegistryClient",
    # Reconciliation
    "ALL",
    "Reconciler",
    "missing_from",
    # Fetch / import
    "BundleFetcher",
    "PAYLOAD_FILES",
    "Importer",
    "ImportReport",
    # Outcomes
    "Outcome",
    "OutcomeStatus",
    # Mirror
    "Transport",
    "SSHTransport",
    "DirectoryTransport",
    "create_transport",
    "MirrorUploader",
    "MirrorState",
    "UploadResult",
    # Batches
    "SyncPipeline",
    "BatchReport",
]
