"""
Subvolume driver module for btrfs-backup.

The synchronization engine talks to the filesystem only through the
SubvolumeDriver protocol:
- BtrfsDriver: btrfs-progs backed implementation
- InMemoryDriver: in-memory implementation for tests

Invariants:
    - prepare() succeeds before any other operation on a subvolume
    - Received snapshots are applied atomically
"""

from .base import (
    Snapshot,
    Subvolume,
    SubvolumeDriver,
    is_snapshot_id,
    is_subvolume_name,
    link_chain,
    new_snapshot_id,
)
from .btrfs import BtrfsDriver
from .memory import InMemoryDriver

__all__ = [
    "Snapshot",
    "Subvolume",
    "SubvolumeDriver",
    "BtrfsDriver",
    "InMemoryDriver",
    "is_snapshot_id",
    "is_subvolume_name",
    "link_chain",
    "new_snapshot_id",
]
