"""
Per-item outcome records shared by every batch operation.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Optional

from ..errors import SyncError


class OutcomeStatus(Enum):
    """Result of processing one item."""
    SUCCESS = "success"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class Outcome:
    """
    Record of one processed item (a selector or an identifier).
    """
    item: str
    status: OutcomeStatus
    reason: str = ""
    code: Optional[str] = None
    identifier: Optional[str] = None
    path: Optional[Path] = None
    finished_at: datetime = field(default_factory=datetime.now)

    @classmethod
    def success(cls, item: str, reason: str, identifier: str = None, path: Path = None) -> "Outcome":
        return cls(
            item=item,
            status=OutcomeStatus.SUCCESS,
            reason=reason,
            identifier=identifier or item,
            path=path,
        )

    @classmethod
    def skipped(cls, item: str, reason: str, code: str = None, identifier: str = None) -> "Outcome":
        return cls(
            item=item,
            status=OutcomeStatus.SKIPPED,
            reason=reason,
            code=code,
            identifier=identifier or item,
        )

    @classmethod
    def failed(cls, item: str, error: SyncError, identifier: str = None) -> "Outcome":
        return cls(
            item=item,
            status=OutcomeStatus.FAILED,
            reason=str(error),
            code=error.code,
            identifier=identifier,
        )

    @property
    def ok(self) -> bool:
        return self.status != OutcomeStatus.FAILED

    def to_dict(self) -> dict:
        return {
            "item": self.item,
            "status": self.status.value,
            "reason": self.reason,
            "code": self.code,
            "identifier": self.identifier,
            "path": str(self.path) if self.path else None,
            "finished_at": self.finished_at.isoformat(),
        }
