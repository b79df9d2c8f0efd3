"""
Error types for btrfs-backup.

This module defines every exception raised by the synchronization engine:
- BackupError: Base exception
- ConfigurationError: Invalid configuration, raised before any I/O
- DriverFailure and subclasses: Snapshot/send/receive primitive failures
- NetworkFailure and subclasses: Connection loss or malformed replies
- ChainDivergence / MalformedChain: Snapshot histories that cannot be reconciled
- TransferCancelled: Operator interrupt

Invariants:
    - All errors inherit from BackupError
    - Errors carry the subvolume and snapshot they concern in `details`
    - `code` is stable and is what travels on the wire
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class BackupError(Exception):
    """Base exception for all btrfs-backup errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    default_code = "BACKUP_ERROR"

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}

    @property
    def kind(self) -> str:
        """Failure kind reported in a run's terminal status."""
        return type(self).__name__


class ConfigurationError(BackupError, ValueError):
    """Configuration is invalid.

    Raised when:
    - Port is outside 1024-65535
    - Subvolume path is missing
    - Destination path escapes the subvolume
    """

    default_code = "CONFIGURATION_ERROR"

    def __init__(self, message: str, setting: Optional[str] = None) -> None:
        super().__init__(message, details={"setting": setting})
        self.setting = setting


# --- Driver errors --------------------------------------------------------


class DriverFailure(BackupError):
    """An underlying snapshot, send or receive primitive failed."""

    default_code = "DRIVER_FAILURE"

    def __init__(
        self,
        message: str,
        subvolume: Optional[str] = None,
        snapshot_id: Optional[str] = None,
        stderr: Optional[str] = None,
    ) -> None:
        super().__init__(
            message,
            details={
                "subvolume": subvolume,
                "snapshot_id": snapshot_id,
                "stderr": stderr,
            },
        )
        self.subvolume = subvolume
        self.snapshot_id = snapshot_id
        self.stderr = stderr


class SubvolumeNotFound(DriverFailure):
    """Subvolume path does not exist."""

    default_code = "NOT_FOUND"


class SubvolumeNotMountable(DriverFailure):
    """Path exists but is not a snapshot-capable subvolume."""

    default_code = "NOT_MOUNTABLE"


class PermissionDenied(DriverFailure):
    """The process lacks the privileges the driver needs."""

    default_code = "PERMISSION_DENIED"


class InsufficientSpace(DriverFailure):
    """No space left to create a snapshot."""

    default_code = "INSUFFICIENT_SPACE"


class SnapshotNotFound(DriverFailure):
    """Snapshot to send does not exist locally."""

    default_code = "SNAPSHOT_NOT_FOUND"


class SnapshotExists(DriverFailure):
    """Snapshot being received is already present."""

    default_code = "SNAPSHOT_EXISTS"


class CorruptStream(DriverFailure):
    """Incoming stream is truncated, mislabeled or fails verification."""

    default_code = "CORRUPT_STREAM"


class ParentNotFound(DriverFailure):
    """Incoming stream declares a parent that is not present locally."""

    default_code = "PARENT_NOT_FOUND"


class SenderAborted(CorruptStream):
    """The sending side gave up partway through the stream."""

    default_code = "SENDER_ABORTED"


# --- Network errors -------------------------------------------------------


class NetworkFailure(BackupError):
    """Connection lost or peer unreachable.

    A failed run is always safe to retry as a new run.
    """

    default_code = "NETWORK_FAILURE"

    def __init__(
        self,
        message: str,
        address: Optional[str] = None,
        status: Optional[str] = None,
    ) -> None:
        super().__init__(
            message,
            details={"address": address, "status": status},
        )
        self.address = address
        self.status = status


class ProtocolError(NetworkFailure):
    """Peer sent a reply that does not follow the wire protocol."""

    default_code = "PROTOCOL_ERROR"


class RemoteError(BackupError):
    """Server processed the request and reported a failure.

    Attributes:
        remote_code: Error code sent by the server (PARENT_NOT_FOUND, ...)
    """

    default_code = "REMOTE_ERROR"

    def __init__(
        self,
        message: str,
        remote_code: str,
        subvolume: Optional[str] = None,
        snapshot_id: Optional[str] = None,
    ) -> None:
        super().__init__(
            message,
            details={
                "remote_code": remote_code,
                "subvolume": subvolume,
                "snapshot_id": snapshot_id,
            },
        )
        self.remote_code = remote_code
        self.subvolume = subvolume
        self.snapshot_id = snapshot_id

    @property
    def kind(self) -> str:
        return f"RemoteError[{self.remote_code}]"


# --- Chain errors ---------------------------------------------------------


class ChainDivergence(BackupError):
    """Local and remote snapshot histories disagree on ancestry.

    Never resolved automatically; an operator has to reconcile the chains.
    """

    default_code = "CHAIN_DIVERGENCE"

    def __init__(
        self,
        message: str,
        subvolume: Optional[str] = None,
        local_id: Optional[str] = None,
        remote_id: Optional[str] = None,
    ) -> None:
        super().__init__(
            message,
            details={
                "subvolume": subvolume,
                "local_id": local_id,
                "remote_id": remote_id,
            },
        )
        self.subvolume = subvolume
        self.local_id = local_id
        self.remote_id = remote_id


class MalformedChain(BackupError):
    """A chain has gaps, duplicates or is out of order."""

    default_code = "MALFORMED_CHAIN"

    def __init__(self, message: str, snapshot_id: Optional[str] = None) -> None:
        super().__init__(message, details={"snapshot_id": snapshot_id})
        self.snapshot_id = snapshot_id


class TransferCancelled(BackupError):
    """Run was interrupted by the operator."""

    default_code = "CANCELLED"


def error_from_code(
    code: str,
    message: str,
    subvolume: Optional[str] = None,
    snapshot_id: Optional[str] = None,
) -> BackupError:
    """Rebuild a driver error from a wire error code.

    Unknown codes become RemoteError so the caller still sees the code.
    """
    known = {
        cls.default_code: cls
        for cls in (
            DriverFailure,
            CorruptStream,
            ParentNotFound,
            SenderAborted,
            SnapshotExists,
        )
    }
    if code == ChainDivergence.default_code:
        return ChainDivergence(message, subvolume=subvolume, local_id=snapshot_id)
    cls = known.get(code)
    if cls is None:
        return RemoteError(message, code, subvolume=subvolume, snapshot_id=snapshot_id)
    return cls(message, subvolume=subvolume, snapshot_id=snapshot_id)
