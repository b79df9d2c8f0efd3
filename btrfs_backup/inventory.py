"""
Snapshot inventory for btrfs-backup.

Pure computations over snapshot chains: what the server is missing, in
which order it must be sent, and which snapshot each transfer uses as its
delta base.

Invariants:
    - The missing set preserves local chain order
    - The remote chain must be a prefix of the local chain; anything else is
      a divergence and is never merged automatically
    - A delta base is always a snapshot the server already holds

How to change safely:
    - Any relaxation of the prefix rule needs an operator-facing
      reconciliation story first; a wrong merge loses data
"""

from __future__ import annotations

import logging
from typing import Collection, Iterable, Optional, Sequence

from .driver.base import Snapshot
from .errors import ChainDivergence, MalformedChain

logger = logging.getLogger(__name__)


def validate_chain(chain: Sequence[Snapshot]) -> None:
    """Check that a chain is ordered, duplicate free and gapless.

    Raises:
        MalformedChain: If ids are not strictly increasing or a snapshot's
            parent is not its predecessor
    """
    previous: Optional[Snapshot] = None
    for snapshot in chain:
        if previous is not None and snapshot.snapshot_id <= previous.snapshot_id:
            raise MalformedChain(
                f"Snapshot {snapshot.snapshot_id} is out of order after {previous.snapshot_id}",
                snapshot_id=snapshot.snapshot_id,
            )
        expected_parent = previous.snapshot_id if previous else None
        if snapshot.parent_id != expected_parent:
            raise MalformedChain(
                f"Snapshot {snapshot.snapshot_id} declares parent {snapshot.parent_id}, "
                f"chain has {expected_parent}",
                snapshot_id=snapshot.snapshot_id,
            )
        previous = snapshot


def compute_missing(
    local: Sequence[Snapshot],
    remote: Sequence[Snapshot],
    subvolume: Optional[str] = None,
) -> list[Snapshot]:
    """Return the local snapshots the remote side does not have.

    Args:
        local: Local chain in creation order
        remote: Remote chain in creation order
        subvolume: Subvolume name, for error context

    Returns:
        local[len(remote):], the ordered missing set

    Raises:
        ChainDivergence: If remote is not a prefix of local
    """
    if not local:
        return []

    if len(remote) > len(local):
        raise ChainDivergence(
            f"Remote chain has {len(remote)} snapshots, local only {len(local)}",
            subvolume=subvolume,
            remote_id=remote[len(local)].snapshot_id,
        )

    for position, (mine, theirs) in enumerate(zip(local, remote)):
        if mine.snapshot_id != theirs.snapshot_id:
            raise ChainDivergence(
                f"Chains diverge at position {position}: "
                f"local {mine.snapshot_id}, remote {theirs.snapshot_id}",
                subvolume=subvolume,
                local_id=mine.snapshot_id,
                remote_id=theirs.snapshot_id,
            )

    return list(local[len(remote):])


def remote_chain_from_present(
    local: Sequence[Snapshot],
    present: Collection[str],
    server_head: Optional[str] = None,
    subvolume: Optional[str] = None,
) -> list[Snapshot]:
    """Rebuild the remote chain from a negotiation reply.

    Args:
        local: Local chain in creation order
        present: Local snapshot ids the server reported holding
        server_head: Newest snapshot id the server holds, if any
        subvolume: Subvolume name, for error context

    Returns:
        Local snapshots present on the server, in local order; empty when
        the local chain is empty, whatever the server holds

    Raises:
        ChainDivergence: If the server holds a newer snapshot the local chain
            does not know about
    """
    if not local:
        return []

    local_ids = {s.snapshot_id for s in local}
    if server_head is not None and server_head not in local_ids:
        raise ChainDivergence(
            f"Server head {server_head} is not part of the local chain",
            subvolume=subvolume,
            local_id=local[-1].snapshot_id if local else None,
            remote_id=server_head,
        )
    return [s for s in local if s.snapshot_id in present]


def missing_from_present(
    local: Sequence[Snapshot],
    present: Collection[str],
    server_head: Optional[str] = None,
    subvolume: Optional[str] = None,
) -> list[Snapshot]:
    """Missing set for a negotiation reply.

    A present id that follows an absent one is an out-of-order match and
    fails as a divergence.
    """
    remote = remote_chain_from_present(local, present, server_head, subvolume)
    return compute_missing(local, remote, subvolume)


def delta_base(
    snapshot: Snapshot,
    local: Sequence[Snapshot],
    available: Iterable[str],
) -> Optional[Snapshot]:
    """Pick the parent to send `snapshot` against.

    Args:
        snapshot: Snapshot about to be sent
        local: Local chain in creation order
        available: Ids the server holds, including ones sent in this run

    Returns:
        The chain predecessor if the server has it, otherwise None (full send)
    """
    available_ids = set(available)
    previous: Optional[Snapshot] = None
    for candidate in local:
        if candidate.snapshot_id == snapshot.snapshot_id:
            break
        previous = candidate
    else:
        raise MalformedChain(
            f"Snapshot {snapshot.snapshot_id} is not in the local chain",
            snapshot_id=snapshot.snapshot_id,
        )

    if previous is not None and previous.snapshot_id in available_ids:
        return previous
    if previous is not None:
        logger.warning(
            "Delta base missing on server, sending full snapshot",
            extra={"snapshot_id": snapshot.snapshot_id, "parent_id": previous.snapshot_id},
        )
    return None
