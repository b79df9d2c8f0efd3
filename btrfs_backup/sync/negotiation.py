"""
Client side of snapshot negotiation.

One round trip per run: the client claims its whole local chain, the
server answers with the ids it already holds, and the inventory turns that
answer into the ordered missing set.

Invariants:
    - Negotiation never transfers data and never mutates either chain
    - Any failure here aborts the run before the first transfer
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional, Sequence

from ..api.protocol import BackupPeer
from ..driver.base import Snapshot
from ..inventory import missing_from_present, validate_chain

logger = logging.getLogger(__name__)


@dataclass
class NegotiationResult:
    """Outcome of a negotiation.

    Attributes:
        subvolume: Subvolume identifier
        present: Local snapshot ids the server already holds
        missing: Local snapshots to send, in chain order
        server_head: Newest snapshot id on the server
    """

    subvolume: str
    present: frozenset[str] = field(default_factory=frozenset)
    missing: list[Snapshot] = field(default_factory=list)
    server_head: Optional[str] = None

    @property
    def up_to_date(self) -> bool:
        return not self.missing


async def negotiate(
    peer: BackupPeer,
    subvolume: str,
    local: Sequence[Snapshot],
) -> NegotiationResult:
    """Find out which local snapshots the server is missing.

    Args:
        peer: Connected server
        subvolume: Subvolume identifier
        local: Local chain in creation order

    Returns:
        NegotiationResult with the ordered missing set

    Raises:
        MalformedChain: Local chain is not a valid chain
        NetworkFailure: Server unreachable or reply malformed
        RemoteError: Server rejected the request
        ChainDivergence: Server history is not a prefix of the local chain
    """
    validate_chain(local)

    snapshot_ids = [s.snapshot_id for s in local]
    presence = await peer.snapshots_needed(subvolume, snapshot_ids)

    missing = missing_from_present(
        local,
        presence.present,
        server_head=presence.head,
        subvolume=subvolume,
    )

    logger.info(
        "Negotiation complete",
        extra={
            "subvolume": subvolume,
            "local": len(local),
            "present": len(presence.present),
            "missing": len(missing),
            "server_head": presence.head,
        },
    )
    return NegotiationResult(
        subvolume=subvolume,
        present=presence.present,
        missing=missing,
        server_head=presence.head,
    )
