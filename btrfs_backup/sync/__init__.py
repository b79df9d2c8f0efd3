"""
Synchronization engine for btrfs-backup (client side).

- negotiate(): find the snapshots the server is missing
- TransferOrchestrator: send them in chain order
- BackupClient: one run from validation to a terminal state

Invariants:
    - One run per process; runs are sequential
    - No retries inside a run
"""

from .client import BackupClient, RunResult, RunState
from .negotiation import NegotiationResult, negotiate
from .orchestrator import TransferOrchestrator, TransferReport, TransferSession, TransferState

__all__ = [
    "BackupClient",
    "NegotiationResult",
    "RunResult",
    "RunState",
    "TransferOrchestrator",
    "TransferReport",
    "TransferSession",
    "TransferState",
    "negotiate",
]
