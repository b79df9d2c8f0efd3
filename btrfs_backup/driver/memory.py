"""
In-memory subvolume driver for testing.

This module provides a driver that keeps snapshot chains in memory for:
- Unit tests
- Integration tests of the client/server exchange
- Local development without a btrfs filesystem

Stream format:
    A JSON header line {"subvolume", "snapshot_id", "parent_id"} followed
    by the snapshot payload. The header makes the stream self-describing
    the way a btrfs send stream names its subvolume and parent.

Invariants:
    - All data is lost on process exit
    - Same ordering and atomicity guarantees as the btrfs driver
    - Failure injection hooks only affect the snapshot ids they name

How to change safely:
    - This is test-only code, changes don't affect production
    - Keep interface compatible with the SubvolumeDriver protocol
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import AsyncIterator, Callable, Dict, List, Optional, Set, Tuple

from ..errors import (
    CorruptStream,
    DriverFailure,
    ParentNotFound,
    SnapshotExists,
    SnapshotNotFound,
    SubvolumeNotFound,
)
from .base import Snapshot, Subvolume, link_chain, new_snapshot_id

logger = logging.getLogger(__name__)


@dataclass
class InMemorySubvolume:
    """In-memory snapshot storage for one subvolume."""

    snapshots: Dict[str, bytes] = field(default_factory=dict)


class InMemoryDriver:
    """In-memory implementation of SubvolumeDriver for testing.

    Attributes:
        chunk_size: Size of chunks yielded by send_incremental()
        unavailable: Subvolume names for which prepare() fails
        fail_send: Snapshot ids whose send fails after the first chunk
        fail_receive: Snapshot ids whose receive fails after the stream
            has been consumed
        sent: (snapshot_id, parent_id) pairs in the order they were sent
        received: (snapshot_id, parent_id) pairs materialized locally

    Example:
        >>> driver = InMemoryDriver()
        >>> snap = await driver.create_snapshot(subvolume)
        >>> async for chunk in driver.send_incremental(snap):
        ...     print(len(chunk))
    """

    def __init__(
        self,
        chunk_size: int = 16,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        """Initialize the in-memory driver.

        Args:
            chunk_size: Size of streamed chunks
            clock: Time source for new snapshot ids
        """
        self.chunk_size = chunk_size
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._subvolumes: Dict[str, InMemorySubvolume] = defaultdict(InMemorySubvolume)
        self._lock = asyncio.Lock()
        self.unavailable: Set[str] = set()
        self.fail_send: Set[str] = set()
        self.fail_receive: Set[str] = set()
        self.sent: List[Tuple[str, Optional[str]]] = []
        self.received: List[Tuple[str, Optional[str]]] = []

    async def prepare(self, subvolume: Subvolume) -> None:
        if subvolume.name in self.unavailable:
            raise SubvolumeNotFound(
                f"Subvolume does not exist: {subvolume.path}",
                subvolume=subvolume.name,
            )
        # Touch so the subvolume shows up even with no snapshots
        self._subvolumes[subvolume.name]

    async def list_snapshots(self, subvolume: Subvolume) -> list[Snapshot]:
        store = self._subvolumes.get(subvolume.name)
        if store is None:
            return []
        return link_chain(subvolume, list(store.snapshots))

    async def create_snapshot(
        self,
        subvolume: Subvolume,
        label: Optional[str] = None,
        data: Optional[bytes] = None,
    ) -> Snapshot:
        """Create a snapshot holding `data` (defaults to a generated payload)."""
        async with self._lock:
            chain = await self.list_snapshots(subvolume)
            tail = chain[-1].snapshot_id if chain else None
            snapshot_id = new_snapshot_id(self._clock(), label, after=tail)
            if data is None:
                data = f"{subvolume.name}@{snapshot_id}".encode("utf-8") * 4
            self._subvolumes[subvolume.name].snapshots[snapshot_id] = data

        logger.debug(
            "Created in-memory snapshot",
            extra={"subvolume": subvolume.name, "snapshot_id": snapshot_id},
        )
        return Snapshot(
            snapshot_id=snapshot_id,
            parent_id=tail,
            subvolume=subvolume.name,
            path=subvolume.snapshot_path(snapshot_id),
        )

    async def send_incremental(
        self,
        snapshot: Snapshot,
        parent: Optional[Snapshot] = None,
    ) -> AsyncIterator[bytes]:
        store = self._subvolumes.get(snapshot.subvolume)
        if store is None or snapshot.snapshot_id not in store.snapshots:
            raise SnapshotNotFound(
                f"Snapshot not found: {snapshot.snapshot_id}",
                subvolume=snapshot.subvolume,
                snapshot_id=snapshot.snapshot_id,
            )
        if parent is not None and parent.snapshot_id not in store.snapshots:
            raise SnapshotNotFound(
                f"Parent snapshot not found: {parent.snapshot_id}",
                subvolume=snapshot.subvolume,
                snapshot_id=parent.snapshot_id,
            )

        parent_id = parent.snapshot_id if parent else None
        self.sent.append((snapshot.snapshot_id, parent_id))

        header = json.dumps(
            {
                "subvolume": snapshot.subvolume,
                "snapshot_id": snapshot.snapshot_id,
                "parent_id": parent_id,
            }
        ).encode("utf-8")
        stream = header + b"\n" + store.snapshots[snapshot.snapshot_id]

        for offset in range(0, len(stream), self.chunk_size):
            if offset > 0 and snapshot.snapshot_id in self.fail_send:
                raise DriverFailure(
                    f"Injected send failure for {snapshot.snapshot_id}",
                    subvolume=snapshot.subvolume,
                    snapshot_id=snapshot.snapshot_id,
                )
            yield stream[offset:offset + self.chunk_size]
            await asyncio.sleep(0)

        if snapshot.snapshot_id in self.fail_send:
            raise DriverFailure(
                f"Injected send failure for {snapshot.snapshot_id}",
                subvolume=snapshot.subvolume,
                snapshot_id=snapshot.snapshot_id,
            )

    async def receive_incremental(
        self,
        subvolume: Subvolume,
        stream: AsyncIterator[bytes],
        *,
        snapshot_id: str,
        parent_id: Optional[str],
    ) -> Snapshot:
        store = self._subvolumes[subvolume.name]
        if snapshot_id in store.snapshots:
            raise SnapshotExists(
                f"Snapshot already present: {snapshot_id}",
                subvolume=subvolume.name,
                snapshot_id=snapshot_id,
            )
        if parent_id is not None and parent_id not in store.snapshots:
            raise ParentNotFound(
                f"Parent {parent_id} of {snapshot_id} is not present",
                subvolume=subvolume.name,
                snapshot_id=snapshot_id,
            )

        # Nothing is stored until the whole stream has been read and checked
        buffer = bytearray()
        async for chunk in stream:
            buffer.extend(chunk)

        header_line, sep, payload = bytes(buffer).partition(b"\n")
        if not sep:
            raise CorruptStream(
                "Stream has no header",
                subvolume=subvolume.name,
                snapshot_id=snapshot_id,
            )
        try:
            header = json.loads(header_line.decode("utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise CorruptStream(
                f"Unreadable stream header: {e}",
                subvolume=subvolume.name,
                snapshot_id=snapshot_id,
            )

        if header.get("snapshot_id") != snapshot_id:
            raise CorruptStream(
                f"Stream carries {header.get('snapshot_id')!r}, expected {snapshot_id!r}",
                subvolume=subvolume.name,
                snapshot_id=snapshot_id,
            )
        declared_parent = header.get("parent_id")
        if declared_parent is not None and declared_parent not in store.snapshots:
            raise ParentNotFound(
                f"Stream parent {declared_parent} is not present",
                subvolume=subvolume.name,
                snapshot_id=snapshot_id,
            )
        if declared_parent != parent_id:
            raise CorruptStream(
                f"Stream parent {declared_parent!r} does not match {parent_id!r}",
                subvolume=subvolume.name,
                snapshot_id=snapshot_id,
            )
        if snapshot_id in self.fail_receive:
            raise DriverFailure(
                f"Injected receive failure for {snapshot_id}",
                subvolume=subvolume.name,
                snapshot_id=snapshot_id,
            )

        async with self._lock:
            store.snapshots[snapshot_id] = payload
            self.received.append((snapshot_id, parent_id))

        return Snapshot(
            snapshot_id=snapshot_id,
            parent_id=parent_id,
            subvolume=subvolume.name,
            path=subvolume.snapshot_path(snapshot_id),
        )

    # ========================================================================
    # Testing helpers
    # ========================================================================

    def payload(self, subvolume_name: str, snapshot_id: str) -> bytes:
        """Return the stored payload of a snapshot."""
        return self._subvolumes[subvolume_name].snapshots[snapshot_id]

    def snapshot_ids(self, subvolume_name: str) -> list[str]:
        """Return snapshot ids of a subvolume in chain order."""
        store = self._subvolumes.get(subvolume_name)
        return sorted(store.snapshots) if store else []

    def add_snapshot(self, subvolume_name: str, snapshot_id: str, data: bytes = b"") -> None:
        """Insert a snapshot directly, bypassing the clock."""
        self._subvolumes[subvolume_name].snapshots[snapshot_id] = data

    @property
    def subvolume_names(self) -> list[str]:
        return sorted(self._subvolumes)
