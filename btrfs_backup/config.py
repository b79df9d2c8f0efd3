"""
Configuration management for btrfs-backup.

Settings are resolved once at start-up (command line flags over environment
defaults) into a BackupConfig that is passed explicitly to every component.
Nothing below main() reads the environment.

Invariants:
    - All settings have sensible defaults for a single-host setup
    - validate() runs before any driver or network call
    - An invalid port is a configuration error, never a runtime one

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - Keep environment variable names stable; deployments depend on them
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Optional

from .driver.base import LABEL_RE, Subvolume, is_subvolume_name
from .errors import ConfigurationError

logger = logging.getLogger(__name__)

MIN_PORT = 1024
MAX_PORT = 65535


@dataclass(frozen=True)
class SubvolumeConfig:
    """Subvolume to back up (client) or to store into (server).

    Attributes:
        path: Subvolume path
        destination: Path relative to the subvolume that stores snapshots
        name: Identifier used on the wire (defaults to the path's basename)
    """

    path: str = "/"
    destination: str = ".snapshots"
    name: Optional[str] = None

    @property
    def resolved_name(self) -> str:
        if self.name:
            return self.name
        return Path(self.path).name or "root"

    @property
    def snapshot_root(self) -> Path:
        return Path(self.path) / self.destination

    def local_subvolume(self) -> Subvolume:
        """The subvolume configured on this host."""
        return Subvolume(
            name=self.resolved_name,
            path=Path(self.path),
            snapshot_dir=self.snapshot_root,
        )

    def store_for(self, name: str) -> Subvolume:
        """Per-client store on the server side."""
        return Subvolume(
            name=name,
            path=Path(self.path),
            snapshot_dir=self.snapshot_root / name,
        )

    @classmethod
    def from_env(cls) -> SubvolumeConfig:
        """Load configuration from environment variables."""
        return cls(
            path=os.getenv("BTRFS_BACKUP_SUBVOLUME", "/"),
            destination=os.getenv("BTRFS_BACKUP_DESTINATION", ".snapshots"),
            name=os.getenv("BTRFS_BACKUP_NAME") or None,
        )


@dataclass(frozen=True)
class TransportConfig:
    """gRPC transport configuration.

    Attributes:
        host: Server host to send backups to (client mode)
        port: Server port; also the port to listen on in server mode
        bind_host: Address to bind in server mode
        max_message_size: Maximum gRPC message size in bytes
        rpc_timeout_seconds: Deadline for the negotiation call
        health_check: Whether the client pings the server before negotiating
    """

    host: str = "localhost"
    port: int = 1234
    bind_host: str = "0.0.0.0"
    max_message_size: int = 8 * 1024 * 1024  # 8MB
    rpc_timeout_seconds: float = 30.0
    health_check: bool = True

    @property
    def address(self) -> str:
        return f"{self.host}:{self.port}"

    @property
    def bind_address(self) -> str:
        return f"{self.bind_host}:{self.port}"

    @classmethod
    def from_env(cls) -> TransportConfig:
        """Load configuration from environment variables."""
        return cls(
            host=os.getenv("BTRFS_BACKUP_HOST", "localhost"),
            port=int(os.getenv("BTRFS_BACKUP_PORT", "1234")),
            bind_host=os.getenv("BTRFS_BACKUP_BIND", "0.0.0.0"),
            max_message_size=int(
                os.getenv("BTRFS_BACKUP_MAX_MESSAGE_SIZE", str(8 * 1024 * 1024))
            ),
            rpc_timeout_seconds=float(os.getenv("BTRFS_BACKUP_RPC_TIMEOUT", "30")),
            health_check=os.getenv("BTRFS_BACKUP_HEALTH_CHECK", "true").lower() == "true",
        )


@dataclass(frozen=True)
class TransferConfig:
    """Backup run configuration.

    Attributes:
        chunk_size: Bytes per streamed transfer frame
        create_snapshot: Whether a run starts by taking a fresh snapshot
        label: Optional label appended to new snapshot ids
    """

    chunk_size: int = 1024 * 1024  # 1MB
    create_snapshot: bool = True
    label: Optional[str] = None

    @classmethod
    def from_env(cls) -> TransferConfig:
        """Load configuration from environment variables."""
        return cls(
            chunk_size=int(os.getenv("BTRFS_BACKUP_CHUNK_SIZE", str(1024 * 1024))),
            create_snapshot=os.getenv("BTRFS_BACKUP_CREATE_SNAPSHOT", "true").lower() == "true",
            label=os.getenv("BTRFS_BACKUP_LABEL") or None,
        )


@dataclass(frozen=True)
class ObservabilityConfig:
    """Logging configuration.

    Logging is discarded unless BTRFS_BACKUP_LOG is set; BTRFS_BACKUP_LOG_PATH
    sends it to a file instead of stderr.

    Attributes:
        log_enabled: Whether to emit logs at all
        log_path: Log file path (stderr if None)
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: Log format (json, text)
    """

    log_enabled: bool = False
    log_path: Optional[str] = None
    log_level: str = "INFO"
    log_format: str = "text"

    @classmethod
    def from_env(cls) -> ObservabilityConfig:
        """Load configuration from environment variables."""
        return cls(
            log_enabled=os.getenv("BTRFS_BACKUP_LOG", "") != "",
            log_path=os.getenv("BTRFS_BACKUP_LOG_PATH") or None,
            log_level=os.getenv("BTRFS_BACKUP_LOG_LEVEL", "INFO"),
            log_format=os.getenv("BTRFS_BACKUP_LOG_FORMAT", "text"),
        )


@dataclass(frozen=True)
class BackupConfig:
    """Complete configuration.

    Attributes:
        server: Run as the passive receiving side
        subvolume: Subvolume configuration
        transport: gRPC transport configuration
        transfer: Backup run configuration
        observability: Logging configuration
    """

    server: bool = False
    subvolume: SubvolumeConfig = field(default_factory=SubvolumeConfig)
    transport: TransportConfig = field(default_factory=TransportConfig)
    transfer: TransferConfig = field(default_factory=TransferConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> BackupConfig:
        """Load complete configuration from environment variables.

        Raises:
            ConfigurationError: If a numeric setting cannot be parsed.
        """
        try:
            return cls(
                server=os.getenv("BTRFS_BACKUP_SERVER", "false").lower() == "true",
                subvolume=SubvolumeConfig.from_env(),
                transport=TransportConfig.from_env(),
                transfer=TransferConfig.from_env(),
                observability=ObservabilityConfig.from_env(),
            )
        except ValueError as e:
            raise ConfigurationError(f"Invalid environment setting: {e}")

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ConfigurationError: If configuration is invalid.
        """
        port = self.transport.port
        if not MIN_PORT <= port <= MAX_PORT:
            raise ConfigurationError(
                f"Invalid port number: {port} (must be {MIN_PORT}-{MAX_PORT})",
                setting="port",
            )

        if not self.subvolume.path:
            raise ConfigurationError("Subvolume path is required", setting="subvolume")

        destination = PurePosixPath(self.subvolume.destination)
        if (
            not self.subvolume.destination
            or destination.is_absolute()
            or ".." in destination.parts
        ):
            raise ConfigurationError(
                f"Destination must be a relative path inside the subvolume: "
                f"{self.subvolume.destination!r}",
                setting="destination_subvolume",
            )

        if not is_subvolume_name(self.subvolume.resolved_name):
            raise ConfigurationError(
                f"Invalid subvolume name: {self.subvolume.resolved_name!r}",
                setting="name",
            )

        if self.transfer.chunk_size <= 0:
            raise ConfigurationError(
                f"Chunk size must be positive: {self.transfer.chunk_size}",
                setting="chunk_size",
            )
        if self.transfer.chunk_size >= self.transport.max_message_size:
            raise ConfigurationError(
                "Chunk size must be smaller than the maximum message size",
                setting="chunk_size",
            )

        if self.transfer.label is not None and not LABEL_RE.match(self.transfer.label):
            raise ConfigurationError(
                f"Invalid snapshot label: {self.transfer.label!r}",
                setting="label",
            )

        if not self.server and not self.transport.host:
            raise ConfigurationError("Destination host is required", setting="host")

    def log_config(self) -> None:
        """Log configuration."""
        logger.info(
            "Configuration loaded",
            extra={
                "mode": "server" if self.server else "client",
                "subvolume": self.subvolume.path,
                "subvolume_name": self.subvolume.resolved_name,
                "destination": self.subvolume.destination,
                "address": self.transport.bind_address if self.server else self.transport.address,
                "chunk_size": self.transfer.chunk_size,
                "create_snapshot": self.transfer.create_snapshot,
                "log_level": self.observability.log_level,
            },
        )
