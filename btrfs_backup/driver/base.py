"""
Base protocol and types for the subvolume driver abstraction.

This module defines the SubvolumeDriver protocol that every filesystem
backend implements, the Subvolume and Snapshot value types, and the
snapshot identifier scheme shared by both peers.

Snapshot identifiers:
    <YYYYMMDD>T<HHMMSS>.<ffffff>Z[-<label>]

    e.g. 20261019T042100.123456Z or 20261019T042100.123456Z-nightly

    The timestamp prefix is fixed width and UTC, so sorting identifiers as
    strings yields creation order on any host.

Invariants:
    - Snapshots are immutable once created
    - list_snapshots() returns the chain in creation order
    - A snapshot's parent is its predecessor in the chain (None for the first)
    - receive_incremental() either materializes the snapshot fully or leaves
      the chain untouched

How to change safely:
    - Protocol changes require updating all implementations
    - Never change the identifier format without a migration; both peers
      must agree on ordering
"""

from __future__ import annotations

import re
from abc import abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import AsyncIterator, Optional, Protocol, Sequence, runtime_checkable

SNAPSHOT_TIME_FORMAT = "%Y%m%dT%H%M%S.%fZ"

SNAPSHOT_ID_RE = re.compile(
    r"^(?P<ts>\d{8}T\d{6}\.\d{6}Z)(?:-(?P<label>[A-Za-z0-9_.]+))?$"
)

LABEL_RE = re.compile(r"^[A-Za-z0-9_.]+$")

SUBVOLUME_NAME_RE = re.compile(r"^[A-Za-z0-9_.-]+$")

# Name of the staging directory inside a snapshot directory.
STAGING_DIR = ".incoming"


def is_snapshot_id(name: str) -> bool:
    """Whether `name` follows the snapshot identifier scheme."""
    return SNAPSHOT_ID_RE.match(name) is not None


def is_subvolume_name(name: str) -> bool:
    """Whether `name` is safe to use as a directory name on the server."""
    return (
        SUBVOLUME_NAME_RE.match(name) is not None
        and name not in (".", "..")
        and name != STAGING_DIR
    )


def snapshot_timestamp(snapshot_id: str) -> datetime:
    """Parse the creation time encoded in a snapshot identifier.

    Raises:
        ValueError: If the identifier does not follow the scheme
    """
    match = SNAPSHOT_ID_RE.match(snapshot_id)
    if match is None:
        raise ValueError(f"Not a snapshot identifier: {snapshot_id!r}")
    return datetime.strptime(match.group("ts"), SNAPSHOT_TIME_FORMAT).replace(
        tzinfo=timezone.utc
    )


def new_snapshot_id(
    now: datetime,
    label: Optional[str] = None,
    after: Optional[str] = None,
) -> str:
    """Build the identifier for a snapshot taken at `now`.

    Args:
        now: Creation time (naive values are taken as UTC)
        label: Optional human-readable suffix
        after: Identifier of the current chain tail; the result is
            guaranteed to sort after it even if the clock went backwards

    Returns:
        New snapshot identifier
    """
    if label is not None and not LABEL_RE.match(label):
        raise ValueError(f"Invalid snapshot label: {label!r}")

    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    now = now.astimezone(timezone.utc)

    if after is not None:
        tail = snapshot_timestamp(after)
        if now <= tail:
            now = tail + timedelta(microseconds=1)

    snapshot_id = now.strftime(SNAPSHOT_TIME_FORMAT)
    if label:
        snapshot_id = f"{snapshot_id}-{label}"
    return snapshot_id


@dataclass(frozen=True)
class Subvolume:
    """A subvolume that is the unit of backup.

    Attributes:
        name: Identifier used on the wire (same on both peers)
        path: Mountable subvolume path
        snapshot_dir: Directory holding this subvolume's snapshots
    """

    name: str
    path: Path
    snapshot_dir: Path

    def snapshot_path(self, snapshot_id: str) -> Path:
        return self.snapshot_dir / snapshot_id

    def __str__(self) -> str:
        return f"{self.name} ({self.path})"


@dataclass(frozen=True)
class Snapshot:
    """An immutable point-in-time copy of a subvolume.

    Attributes:
        snapshot_id: Identifier, ordered by creation time
        parent_id: Predecessor in the chain, None for the first snapshot
        subvolume: Name of the subvolume it was taken from
        path: Location on disk (None for drivers without a filesystem)
    """

    snapshot_id: str
    parent_id: Optional[str]
    subvolume: str
    path: Optional[Path] = None

    @property
    def created_at(self) -> datetime:
        return snapshot_timestamp(self.snapshot_id)

    def __str__(self) -> str:
        return self.snapshot_id


def link_chain(subvolume: Subvolume, snapshot_ids: Sequence[str]) -> list[Snapshot]:
    """Turn a list of identifiers into an ordered chain of Snapshots."""
    chain: list[Snapshot] = []
    parent_id: Optional[str] = None
    for snapshot_id in sorted(snapshot_ids):
        chain.append(
            Snapshot(
                snapshot_id=snapshot_id,
                parent_id=parent_id,
                subvolume=subvolume.name,
                path=subvolume.snapshot_path(snapshot_id),
            )
        )
        parent_id = snapshot_id
    return chain


@runtime_checkable
class SubvolumeDriver(Protocol):
    """Protocol for filesystem snapshot backends.

    prepare() must succeed for a subvolume before any other operation is
    used on it.

    Example:
        >>> driver = BtrfsDriver()
        >>> await driver.prepare(subvolume)
        >>> snap = await driver.create_snapshot(subvolume)
        >>> async for chunk in driver.send_incremental(snap, parent):
        ...     forward(chunk)
    """

    @abstractmethod
    async def prepare(self, subvolume: Subvolume) -> None:
        """Validate that the subvolume is usable.

        Raises:
            SubvolumeNotFound: Path does not exist
            SubvolumeNotMountable: Path is not a subvolume
            PermissionDenied: Insufficient privileges
        """
        ...

    @abstractmethod
    async def list_snapshots(self, subvolume: Subvolume) -> list[Snapshot]:
        """Return the local chain in creation order (possibly empty).

        Raises:
            DriverFailure: If the snapshots cannot be enumerated
        """
        ...

    @abstractmethod
    async def create_snapshot(
        self,
        subvolume: Subvolume,
        label: Optional[str] = None,
    ) -> Snapshot:
        """Take a read-only snapshot; its parent is the current tail.

        Raises:
            DriverFailure: If the snapshot cannot be created
            InsufficientSpace: If the filesystem is full
        """
        ...

    @abstractmethod
    def send_incremental(
        self,
        snapshot: Snapshot,
        parent: Optional[Snapshot] = None,
    ) -> AsyncIterator[bytes]:
        """Stream the delta between `parent` and `snapshot`.

        With parent None the full snapshot is streamed. The iterator is
        lazy, finite and not restartable; errors surface while iterating.

        Raises:
            DriverFailure: If the send primitive fails
            SnapshotNotFound: If the snapshot does not exist
        """
        ...

    @abstractmethod
    async def receive_incremental(
        self,
        subvolume: Subvolume,
        stream: AsyncIterator[bytes],
        *,
        snapshot_id: str,
        parent_id: Optional[str],
    ) -> Snapshot:
        """Materialize a streamed snapshot atomically.

        Raises:
            DriverFailure: If the receive primitive fails
            CorruptStream: If the stream is invalid or does not contain
                `snapshot_id`
            ParentNotFound: If `parent_id` is not present locally
            SnapshotExists: If `snapshot_id` is already present
        """
        ...
