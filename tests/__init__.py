"""
btrfs-backup Test Suite.

This package contains:
- unit/: Unit tests (in-memory driver, stubbed btrfs subprocesses)
- integration/: Full backup runs over a real gRPC server on localhost
"""
