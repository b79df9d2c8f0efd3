"""
btrfs-backup - incremental btrfs snapshot replication between two hosts.

One instance runs in server mode and passively accepts negotiation requests
and snapshot streams. Another runs in client mode: it takes a fresh
read-only snapshot of a subvolume, asks the server which of its snapshots
are already present, and pushes the rest in chain order, each one as an
incremental `btrfs send` against its predecessor.

Architecture:
    ┌──────────────┐  SnapshotsNeeded   ┌──────────────┐
    │    Client    │───────────────────▶│    Server    │
    │ (orchestrator)│  SendSnapshot      │ (servicer,   │
    │              │═══════════════════▶│ per-subvolume│
    └──────┬───────┘   frame stream     │    locks)    │
           │                            └──────┬───────┘
           ▼                                   ▼
    ┌──────────────┐                    ┌──────────────┐
    │ btrfs send   │                    │ btrfs receive│
    └──────────────┘                    └──────────────┘

Invariants:
    - Snapshots are sent strictly in chain order
    - A snapshot's delta base is always present on the server before it is sent
    - The server applies each snapshot atomically or not at all
    - No retries inside a run; a new run re-negotiates from current state

Version: see _version.py.
"""

from ._version import __version__

__all__ = ["__version__"]
