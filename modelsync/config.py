"""
Configuration management for modelsync.

Handles:
- Registry endpoints (source, local, mirror)
- On-disk layout (staging, archive store, model store)
- Mirror transport settings
- Runtime settings
"""

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional
import logging

from .errors import ConfigError

logger = logging.getLogger(__name__)

# Default paths
DEFAULT_DATA_DIR = Path.home() / ".modelsync"

DEFAULT_LOCAL_REGISTRY_URL = "http://localhost:8080"
DEFAULT_REQUEST_TIMEOUT = 300.0
DEFAULT_CLAIM_TIMEOUT = 3600.0
DEFAULT_REMOTE_ARCHIVE_DIR = "/var/lib/modelsync/archives"
DEFAULT_REMOTE_IMPORT_COMMAND = "modelsync import"
DEFAULT_REMOTE_MODEL_STORE_DIR = "/var/lib/modelsync/models"

TRANSPORT_KINDS = ("ssh", "directory")


@dataclass
class MirrorTransportConfig:
    """
    Configuration for the transport used to reach the mirror.

    ``kind`` is ``ssh`` (copy with scp, trigger with ssh) or ``directory``
    (the mirror's archive store is mounted locally).
    """
    kind: str = "ssh"
    host: Optional[str] = None
    user: Optional[str] = None
    port: int = 22
    identity_file: Optional[str] = None
    remote_archive_dir: str = DEFAULT_REMOTE_ARCHIVE_DIR
    remote_model_store_dir: str = DEFAULT_REMOTE_MODEL_STORE_DIR
    remote_import_command: str = DEFAULT_REMOTE_IMPORT_COMMAND
    ssh_binary: str = "ssh"
    scp_binary: str = "scp"

    def __post_init__(self):
        if self.kind not in TRANSPORT_KINDS:
            raise ConfigError(f"Unknown transport kind '{self.kind}', expected one of {', '.join(TRANSPORT_KINDS)}")

    @property
    def destination(self) -> Optional[str]:
        """``user@host`` or plain ``host``."""
        if not self.host:
            return None
        if self.user:
            return f"{self.user}@{self.host}"
        return self.host

    def to_dict(self) -> dict:
        return {
            "kind": self.kind,
            "host": self.host,
            "user": self.user,
            "port": self.port,
            "identity_file": self.identity_file,
            "remote_archive_dir": self.remote_archive_dir,
            "remote_model_store_dir": self.remote_model_store_dir,
            "remote_import_command": self.remote_import_command,
            "ssh_binary": self.ssh_binary,
            "scp_binary": self.scp_binary,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "MirrorTransportConfig":
        # Filter to only known fields to handle config evolution
        known_fields = {
            "kind", "host", "user", "port", "identity_file", "remote_archive_dir",
            "remote_model_store_dir", "remote_import_command", "ssh_binary", "scp_binary",
        }
        filtered = {k: v for k, v in data.items() if k in known_fields}
        return cls(**filtered)


@dataclass
class Config:
    """
    Main modelsync configuration.

    Stored at ~/.modelsync/config.json. Every component receives the values it
    needs from an instance of this class at construction time.
    """
    # Registries
    source_registry_url: Optional[str] = None
    local_registry_url: Optional[str] = DEFAULT_LOCAL_REGISTRY_URL
    mirror_registry_url: Optional[str] = None
    api_key: Optional[str] = None

    # Paths
    data_dir: Path = field(default_factory=lambda: DEFAULT_DATA_DIR)
    staging_root: Optional[Path] = None
    archive_store_dir: Optional[Path] = None
    model_store_dir: Optional[Path] = None
    outgoing_dir: Optional[Path] = None

    # Runtime
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT
    concurrency: int = 1
    verify_remote_import: bool = False
    claim_timeout: float = DEFAULT_CLAIM_TIMEOUT

    transport: MirrorTransportConfig = field(default_factory=MirrorTransportConfig)

    def __post_init__(self):
        self.data_dir = Path(self.data_dir)
        self.staging_root = Path(self.staging_root) if self.staging_root else self.data_dir / "staging"
        self.archive_store_dir = (
            Path(self.archive_store_dir) if self.archive_store_dir else self.data_dir / "archives"
        )
        self.model_store_dir = Path(self.model_store_dir) if self.model_store_dir else self.data_dir / "models"
        self.outgoing_dir = Path(self.outgoing_dir) if self.outgoing_dir else self.data_dir / "outgoing"
        if self.concurrency < 1:
            raise ConfigError(f"concurrency must be at least 1, got {self.concurrency}")
        if self.claim_timeout <= 0:
            raise ConfigError(f"claim_timeout must be positive, got {self.claim_timeout}")

    @property
    def config_path(self) -> Path:
        return self.data_dir / "config.json"

    def ensure_dirs(self) -> None:
        """Create the on-disk layout if it doesn't exist."""
        for path in (self.data_dir, self.staging_root, self.archive_store_dir,
                     self.model_store_dir, self.outgoing_dir):
            path.mkdir(parents=True, exist_ok=True)

    def require(self, name: str) -> str:
        """Return a registry URL option, raising ConfigError when it is unset."""
        value = getattr(self, name)
        if not value:
            raise ConfigError(f"'{name}' is not configured (set it in {self.config_path} or pass it as an option)")
        return value.rstrip("/")

    def to_dict(self) -> dict:
        return {
            "source_registry_url": self.source_registry_url,
            "local_registry_url": self.local_registry_url,
            "mirror_registry_url": self.mirror_registry_url,
            "api_key": self.api_key,
            "staging_root": str(self.staging_root),
            "archive_store_dir": str(self.archive_store_dir),
            "model_store_dir": str(self.model_store_dir),
            "outgoing_dir": str(self.outgoing_dir),
            "request_timeout": self.request_timeout,
            "concurrency": self.concurrency,
            "verify_remote_import": self.verify_remote_import,
            "claim_timeout": self.claim_timeout,
            "transport": self.transport.to_dict(),
        }

    def save(self) -> None:
        """Save configuration to disk."""
        self.data_dir.mkdir(parents=True, exist_ok=True)

        with open(self.config_path, 'w') as f:
            json.dump(self.to_dict(), f, indent=2)

        logger.debug(f"Configuration saved to {self.config_path}")

    @classmethod
    def load(cls, data_dir: Optional[Path] = None) -> "Config":
        """Load configuration from disk."""
        data_dir = Path(data_dir) if data_dir else DEFAULT_DATA_DIR
        config_path = data_dir / "config.json"

        if not config_path.exists():
            return cls(data_dir=data_dir)

        try:
            with open(config_path, 'r') as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise ConfigError(f"Invalid configuration file {config_path}: {e}") from e

        return cls(
            data_dir=data_dir,
            source_registry_url=data.get("source_registry_url"),
            local_registry_url=data.get("local_registry_url", DEFAULT_LOCAL_REGISTRY_URL),
            mirror_registry_url=data.get("mirror_registry_url"),
            api_key=data.get("api_key"),
            staging_root=data.get("staging_root"),
            archive_store_dir=data.get("archive_store_dir"),
            model_store_dir=data.get("model_store_dir"),
            outgoing_dir=data.get("outgoing_dir"),
            request_timeout=data.get("request_timeout", DEFAULT_REQUEST_TIMEOUT),
            concurrency=data.get("concurrency", 1),
            verify_remote_import=data.get("verify_remote_import", False),
            claim_timeout=data.get("claim_timeout", DEFAULT_CLAIM_TIMEOUT),
            transport=MirrorTransportConfig.from_dict(data.get("transport", {})),
        )

    @classmethod
    def exists(cls, data_dir: Optional[Path] = None) -> bool:
        """Check if configuration exists."""
        data_dir = data_dir or DEFAULT_DATA_DIR
        return (Path(data_dir) / "config.json").exists()


# Global config instance
_config: Optional[Config] = None


def get_config(data_dir: Optional[Path] = None) -> Config:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = Config.load(data_dir)
    return _config


def set_config(config: Config) -> None:
    """Set the global configuration instance."""
    global _config
    _config = config


def reset_config() -> None:
    """Reset the global configuration instance."""
    global _config
    _config = None
