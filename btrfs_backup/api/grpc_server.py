"""
gRPC server implementation for btrfs-backup.

This module provides the server side of the wire protocol: the servicer
that answers negotiation requests and materializes incoming snapshot
streams, and the GrpcServer wrapper that owns the grpc.aio server.

Invariants:
    - Each subvolume has one lock; negotiation and receive for the same
      subvolume never overlap, different subvolumes never wait on each other
    - Only receive_incremental() mutates a chain, and only under its lock
    - A received snapshot always extends the stored tail; a full stream is
      accepted only into an empty chain
    - Every failure is returned as an error code in the reply and logged
      with subvolume and snapshot context

How to change safely:
    - Add new RPCs without modifying existing ones
    - Use optional fields for backward compatibility
    - Test with both old and new clients
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional

import grpc
from grpc import aio as grpc_aio

from .._version import __version__
from ..config import SubvolumeConfig
from ..driver.base import Snapshot, SubvolumeDriver, is_snapshot_id, is_subvolume_name
from ..errors import (
    BackupError,
    ChainDivergence,
    CorruptStream,
    ParentNotFound,
    ProtocolError,
    SenderAborted,
)
from .protocol import (
    INTERNAL,
    INVALID_ARGUMENT,
    SERVICE_NAME,
    HealthReply,
    SnapshotsNeededReply,
    SnapshotsNeededRequest,
    StreamDigest,
    TransferAbort,
    TransferHeader,
    TransferReply,
    TransferTrailer,
    decode_frame,
    decode_message,
    encode_message,
)

logger = logging.getLogger(__name__)


class SubvolumeLocks:
    """One asyncio.Lock per subvolume identifier.

    A lock lives only while something holds or waits for it, so the map is
    bounded by the subvolumes currently in use rather than every name a
    client ever sent.

    Example:
        >>> locks = SubvolumeLocks()
        >>> async with locks.hold("home"):
        ...     ...
    """

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, name: str) -> AsyncIterator[None]:
        lock = self._locks.get(name)
        if lock is None:
            lock = self._locks[name] = asyncio.Lock()
        self._users[name] = self._users.get(name, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[name] -= 1
            if not self._users[name]:
                del self._users[name]
                del self._locks[name]

    def locked(self, name: str) -> bool:
        lock = self._locks.get(name)
        return lock is not None and lock.locked()

    def __len__(self) -> int:
        return len(self._locks)


class BackupServicer:
    """Service implementation for btrfs-backup.

    The servicer holds exclusive write ownership of the stored chains and
    exposes them read-only to negotiation.

    Attributes:
        driver: Driver that owns the stored snapshots
        storage: Where per-subvolume stores live
        locks: Per-subvolume mutual exclusion
    """

    def __init__(
        self,
        driver: SubvolumeDriver,
        storage: SubvolumeConfig,
    ) -> None:
        """Initialize the servicer.

        Args:
            driver: SubvolumeDriver instance
            storage: Subvolume configuration of the storage side
        """
        self.driver = driver
        self.storage = storage
        self.locks = SubvolumeLocks()
        self._received_count = 0

    async def snapshots_needed(
        self,
        subvolume: str,
        snapshot_ids: list[str],
    ) -> SnapshotsNeededReply:
        """Report which of the client's snapshots are already stored.

        Args:
            subvolume: Subvolume identifier
            snapshot_ids: Client's local chain, in order

        Returns:
            Reply with the matched ids (not the missing ones) and the head
        """
        if not is_subvolume_name(subvolume):
            return SnapshotsNeededReply(
                error_code=INVALID_ARGUMENT,
                error=f"Invalid subvolume identifier: {subvolume!r}",
            )

        store = self.storage.store_for(subvolume)
        try:
            async with self.locks.hold(subvolume):
                chain = await self.driver.list_snapshots(store)
        except BackupError as e:
            logger.error(
                f"SnapshotsNeeded failed: {e}",
                extra={"subvolume": subvolume, "error_code": e.code},
            )
            return SnapshotsNeededReply(error_code=e.code, error=e.message)
        except Exception as e:
            logger.error(f"SnapshotsNeeded failed: {e}", exc_info=True)
            return SnapshotsNeededReply(error_code=INTERNAL, error=str(e))

        held = {s.snapshot_id for s in chain}
        present = [snapshot_id for snapshot_id in snapshot_ids if snapshot_id in held]
        head = chain[-1].snapshot_id if chain else None

        logger.info(
            "Negotiated snapshots",
            extra={
                "subvolume": subvolume,
                "claimed": len(snapshot_ids),
                "present": len(present),
                "head": head,
            },
        )
        return SnapshotsNeededReply(present=present, head=head)

    def _check_header(self, header: TransferHeader) -> Optional[str]:
        """Return an error message if the header cannot be accepted."""
        if not is_subvolume_name(header.subvolume):
            return f"Invalid subvolume identifier: {header.subvolume!r}"
        if not is_snapshot_id(header.snapshot_id):
            return f"Invalid snapshot identifier: {header.snapshot_id!r}"
        if header.parent_id is not None:
            if not is_snapshot_id(header.parent_id):
                return f"Invalid parent identifier: {header.parent_id!r}"
            if header.parent_id >= header.snapshot_id:
                return f"Parent {header.parent_id} does not precede {header.snapshot_id}"
        return None

    def _check_extends_tail(
        self,
        header: TransferHeader,
        chain: list[Snapshot],
        held: set[str],
    ) -> None:
        """Require the incoming snapshot to continue the stored chain.

        Only an empty chain accepts a full stream. Two clients pushing
        unrelated histories under one subvolume name fail here instead of
        interleaving.

        Raises:
            ParentNotFound: Declared parent is not stored at all
            ChainDivergence: Parent is stored but is not the chain tail
        """
        tail = chain[-1].snapshot_id if chain else None
        if header.parent_id == tail:
            return
        if header.parent_id is not None and header.parent_id not in held:
            raise ParentNotFound(
                f"Parent {header.parent_id} not found",
                subvolume=header.subvolume,
                snapshot_id=header.snapshot_id,
            )
        raise ChainDivergence(
            f"Snapshot {header.snapshot_id} does not extend stored tail {tail} "
            f"(declared parent {header.parent_id})",
            subvolume=header.subvolume,
            local_id=header.snapshot_id,
            remote_id=tail,
        )

    async def _payload(self, frames: AsyncIterator[bytes]) -> AsyncIterator[bytes]:
        """Yield data frames, verifying the trailer at the end.

        Raises:
            CorruptStream: Missing or mismatching trailer, unexpected frame
            SenderAborted: Sender reported a failure
        """
        digest = StreamDigest()
        async for raw in frames:
            frame = decode_frame(raw)
            if isinstance(frame, bytes):
                digest.update(frame)
                yield frame
            elif isinstance(frame, TransferTrailer):
                if not digest.matches(frame):
                    raise CorruptStream(
                        f"Stream verification failed: got {digest.size} bytes "
                        f"{digest.hexdigest}, sender reported {frame.size} bytes {frame.sha256}"
                    )
                return
            elif isinstance(frame, TransferAbort):
                raise SenderAborted(f"Sender aborted the stream: {frame.reason}")
            else:
                raise CorruptStream("Unexpected header frame inside stream")
        raise CorruptStream("Stream ended without trailer")

    async def receive_snapshot(self, frames: AsyncIterator[bytes]) -> TransferReply:
        """Receive one snapshot stream.

        Args:
            frames: Encoded transfer frames, header first

        Returns:
            Reply describing the outcome
        """
        try:
            first = await frames.__anext__()
        except StopAsyncIteration:
            return TransferReply(ok=False, error_code=INVALID_ARGUMENT, error="Empty stream")

        try:
            header = decode_frame(first)
        except CorruptStream as e:
            return TransferReply(ok=False, error_code=e.code, error=e.message)
        if not isinstance(header, TransferHeader):
            return TransferReply(
                ok=False,
                error_code=CorruptStream.default_code,
                error="Stream does not start with a header",
            )

        problem = self._check_header(header)
        if problem:
            return TransferReply(
                ok=False,
                snapshot_id=header.snapshot_id,
                error_code=INVALID_ARGUMENT,
                error=problem,
            )

        store = self.storage.store_for(header.subvolume)
        context = {
            "subvolume": header.subvolume,
            "snapshot_id": header.snapshot_id,
            "parent_id": header.parent_id,
        }

        async with self.locks.hold(header.subvolume):
            try:
                chain = await self.driver.list_snapshots(store)
                held = {s.snapshot_id for s in chain}
                if header.snapshot_id in held:
                    logger.info("Snapshot already present, skipping stream", extra=context)
                    return TransferReply(
                        ok=True,
                        snapshot_id=header.snapshot_id,
                        parent_id=header.parent_id,
                        already_present=True,
                    )

                self._check_extends_tail(header, chain, held)

                snapshot = await self.driver.receive_incremental(
                    store,
                    self._payload(frames),
                    snapshot_id=header.snapshot_id,
                    parent_id=header.parent_id,
                )
            except BackupError as e:
                logger.error(
                    f"Receive failed: {e}",
                    extra={**context, "error_code": e.code},
                )
                return TransferReply(
                    ok=False,
                    snapshot_id=header.snapshot_id,
                    parent_id=header.parent_id,
                    error_code=e.code,
                    error=e.message,
                )
            except Exception as e:
                logger.error(f"Receive failed: {e}", exc_info=True)
                return TransferReply(
                    ok=False,
                    snapshot_id=header.snapshot_id,
                    parent_id=header.parent_id,
                    error_code=INTERNAL,
                    error=str(e),
                )

        self._received_count += 1
        logger.info("Snapshot received", extra=context)
        return TransferReply(
            ok=True,
            snapshot_id=snapshot.snapshot_id,
            parent_id=snapshot.parent_id,
        )

    async def health(self) -> HealthReply:
        """Get server health status."""
        return HealthReply(healthy=True, version=__version__, subvolumes=len(self.locks))

    @property
    def stats(self) -> Dict[str, Any]:
        return {
            "active_subvolumes": len(self.locks),
            "received_count": self._received_count,
        }

    # ========================================================================
    # gRPC method handlers (raw bytes in, raw bytes out)
    # ========================================================================

    async def handle_snapshots_needed(self, request: bytes, context: Any) -> bytes:
        try:
            parsed = decode_message(SnapshotsNeededRequest, request)
        except ProtocolError as e:
            return encode_message(
                SnapshotsNeededReply(error_code=INVALID_ARGUMENT, error=e.message)
            )
        reply = await self.snapshots_needed(parsed.subvolume, parsed.snapshot_ids)
        return encode_message(reply)

    async def handle_send_snapshot(self, request_iterator: AsyncIterator[bytes], context: Any) -> bytes:
        reply = await self.receive_snapshot(request_iterator.__aiter__())
        return encode_message(reply)

    async def handle_health(self, request: bytes, context: Any) -> bytes:
        return encode_message(await self.health())

    def generic_handler(self) -> grpc.GenericRpcHandler:
        return grpc.method_handlers_generic_handler(
            SERVICE_NAME,
            {
                "SnapshotsNeeded": grpc.unary_unary_rpc_method_handler(
                    self.handle_snapshots_needed
                ),
                "SendSnapshot": grpc.stream_unary_rpc_method_handler(
                    self.handle_send_snapshot
                ),
                "Health": grpc.unary_unary_rpc_method_handler(self.handle_health),
            },
        )


class GrpcServer:
    """gRPC server wrapper for btrfs-backup.

    This class manages the gRPC server lifecycle including:
    - Server initialization
    - Service registration
    - Graceful shutdown

    Example:
        >>> server = GrpcServer(servicer, port=1234)
        >>> await server.start()
        >>> # Server is now running
        >>> await server.stop()
    """

    def __init__(
        self,
        servicer: BackupServicer,
        host: str = "0.0.0.0",
        port: int = 1234,
        max_message_size: int = 8 * 1024 * 1024,
    ) -> None:
        """Initialize the gRPC server.

        Args:
            servicer: BackupServicer instance
            host: Host to bind to
            port: Port to listen on (0 picks a free port)
            max_message_size: Maximum message size in bytes
        """
        self.servicer = servicer
        self.host = host
        self.port = port
        self.max_message_size = max_message_size
        self._server: Optional[grpc_aio.Server] = None
        self._running = False

    async def start(self) -> None:
        """Start the gRPC server."""
        if self._running:
            logger.warning("Server already running")
            return

        self._server = grpc_aio.server(
            options=[
                ("grpc.max_send_message_length", self.max_message_size),
                ("grpc.max_receive_message_length", self.max_message_size),
            ],
        )
        self._server.add_generic_rpc_handlers((self.servicer.generic_handler(),))
        bound = self._server.add_insecure_port(f"{self.host}:{self.port}")
        if bound == 0:
            raise OSError(f"Could not bind {self.host}:{self.port}")
        self.port = bound

        await self._server.start()
        self._running = True
        logger.info(
            f"gRPC server listening on {self.host}:{self.port}",
            extra={"host": self.host, "port": self.port},
        )

    async def wait_for_termination(self) -> None:
        if self._server is not None:
            await self._server.wait_for_termination()

    async def stop(self, grace_period: float = 5.0) -> None:
        """Stop the gRPC server gracefully.

        Args:
            grace_period: Time to wait for in-flight transfers to complete
        """
        if not self._running:
            return

        logger.info("Stopping gRPC server")
        self._running = False

        if self._server:
            await self._server.stop(grace_period)

    @property
    def is_running(self) -> bool:
        """Whether the server is running."""
        return self._running
