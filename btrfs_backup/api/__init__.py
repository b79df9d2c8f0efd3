"""
API module for btrfs-backup.

This module provides the network interface between the two peers:
- protocol: wire messages and transfer stream framing
- GrpcServer / BackupServicer: the passive receiving side
- GrpcClient: the active sending side

Invariants:
    - A snapshot stream is applied only after its trailer verified
    - Server replies carry error codes, never raw tracebacks

How to change safely:
    - gRPC changes must be backward compatible
    - Add new RPC methods, don't modify existing ones
"""

from .grpc_client import GrpcClient
from .grpc_server import BackupServicer, GrpcServer, SubvolumeLocks
from .protocol import BackupPeer, Presence, TransferHeader, TransferReply

__all__ = [
    "BackupPeer",
    "BackupServicer",
    "GrpcClient",
    "GrpcServer",
    "Presence",
    "SubvolumeLocks",
    "TransferHeader",
    "TransferReply",
]
