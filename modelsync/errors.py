"""
Error taxonomy for modelsync.

Every error carries a short ``code`` used in outcome reports and a
``retryable`` hint for the operator.
"""

from typing import List, Optional


class SyncError(Exception):
    """Base exception for transfer errors."""

    def __init__(self, message: str, code: str = "SYNC_ERROR", retryable: bool = False):
        super().__init__(message)
        self.code = code
        self.retryable = retryable


class ConfigError(SyncError):
    """Raised when a required configuration value is missing or invalid."""

    def __init__(self, message: str):
        super().__init__(message, code="CONFIG_ERROR")


class RegistryUnreachable(SyncError):
    """Raised when a registry listing is unusable. Fatal to the calling operation."""

    def __init__(self, url: str, reason: str):
        super().__init__(f"Registry {url} unreachable: {reason}", code="REGISTRY_UNREACHABLE")
        self.url = url
        self.reason = reason


class SelectorNotFound(SyncError):
    """Raised when no artifact matches a name or identifier."""

    def __init__(self, selector: str, url: Optional[str] = None):
        where = f" in {url}" if url else ""
        super().__init__(f"No artifact matches '{selector}'{where}", code="SELECTOR_NOT_FOUND")
        self.selector = selector
        self.url = url


class PartialDownload(SyncError):
    """Raised when one or more payload files could not be retrieved."""

    def __init__(self, identifier: str, missing: List[str]):
        super().__init__(
            f"Incomplete download for {identifier}, missing: {', '.join(missing)}",
            code="PARTIAL_DOWNLOAD",
            retryable=True,
        )
        self.identifier = identifier
        self.missing = list(missing)


class ImportFailure(SyncError):
    """Raised when an archive cannot be unpacked into the model store."""

    def __init__(self, identifier: str, reason: str):
        super().__init__(f"Import of {identifier} failed: {reason}", code="IMPORT_FAILURE", retryable=True)
        self.identifier = identifier
        self.reason = reason


class AlreadyPresent(SyncError):
    """Not a failure: the destination already has the identifier."""

    def __init__(self, identifier: str, where: str):
        super().__init__(f"{identifier} already present in {where}", code="ALREADY_PRESENT")
        self.identifier = identifier
        self.where = where


class TransportError(SyncError):
    """Raised when the remote-copy collaborator fails."""

    def __init__(self, message: str, returncode: Optional[int] = None):
        super().__init__(message, code="TRANSPORT_ERROR", retryable=True)
        self.returncode = returncode


class InvalidIdentifier(SyncError):
    """Raised when an identifier cannot be used as a path component."""

    def __init__(self, identifier: str):
        super().__init__(f"Unsafe artifact identifier: {identifier!r}", code="INVALID_IDENTIFIER")
        self.identifier = identifier


def check_identifier(identifier: str) -> str:
    """Return ``identifier`` if it is a single, non-special path component."""
    if (
        not identifier
        or identifier in (".", "..")
        or identifier.startswith(".")
        or "/" in identifier
        or "\\" in identifier
        or "\x00" in identifier
    ):
        raise InvalidIdentifier(identifier)
    return identifier
