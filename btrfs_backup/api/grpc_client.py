"""
gRPC client for btrfs-backup.

This module provides the client side of the wire protocol. It manages the
channel lifecycle and turns transport failures and malformed replies into
NetworkFailure/ProtocolError so the run can abort cleanly.
"""

from __future__ import annotations

import logging
from typing import Any, AsyncIterator, Optional

import grpc
from grpc import aio as grpc_aio

from ..errors import BackupError, DriverFailure, NetworkFailure, ProtocolError, RemoteError
from .protocol import (
    HEALTH_METHOD,
    SEND_SNAPSHOT_METHOD,
    SNAPSHOTS_NEEDED_METHOD,
    HealthReply,
    HealthRequest,
    Presence,
    SnapshotsNeededReply,
    SnapshotsNeededRequest,
    StreamDigest,
    TransferHeader,
    TransferReply,
    decode_message,
    encode_abort,
    encode_data,
    encode_header,
    encode_message,
    encode_trailer,
)

logger = logging.getLogger(__name__)


class GrpcClient:
    """gRPC client for a btrfs-backup server.

    Implements the BackupPeer protocol.

    Example:
        >>> async with GrpcClient("backup.example.com", 1234) as peer:
        ...     presence = await peer.snapshots_needed("home", ids)
    """

    def __init__(
        self,
        host: str = "localhost",
        port: int = 1234,
        *,
        max_message_size: int = 8 * 1024 * 1024,
        timeout: Optional[float] = 30.0,
    ) -> None:
        """Initialize the gRPC client.

        Args:
            host: Server hostname
            port: Server port
            max_message_size: Maximum message size in bytes
            timeout: Deadline for unary calls (streams have none)
        """
        self._host = host
        self._port = port
        self._max_message_size = max_message_size
        self._timeout = timeout
        self._channel: Optional[grpc_aio.Channel] = None

    @property
    def address(self) -> str:
        return f"{self._host}:{self._port}"

    async def connect(self) -> None:
        """Open the channel (the TCP connection is made lazily)."""
        if self._channel is not None:
            return

        self._channel = grpc_aio.insecure_channel(
            self.address,
            options=[
                ("grpc.max_send_message_length", self._max_message_size),
                ("grpc.max_receive_message_length", self._max_message_size),
            ],
        )
        logger.debug(f"Connected to backup server at {self.address}")

    async def close(self) -> None:
        """Close the connection."""
        if self._channel:
            await self._channel.close()
            self._channel = None
            logger.debug("Disconnected from backup server")

    async def __aenter__(self) -> GrpcClient:
        await self.connect()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    def _ensure_connected(self) -> grpc_aio.Channel:
        if self._channel is None:
            raise RuntimeError("Not connected. Call connect() first.")
        return self._channel

    def _network_failure(self, method: str, e: grpc.aio.AioRpcError) -> NetworkFailure:
        return NetworkFailure(
            f"{method} failed: {e.code().name}: {e.details()}",
            address=self.address,
            status=e.code().name,
        )

    async def health(self) -> HealthReply:
        """Check that the server is reachable.

        Raises:
            NetworkFailure: If the server cannot be reached
        """
        channel = self._ensure_connected()
        call = channel.unary_unary(HEALTH_METHOD)
        try:
            raw = await call(encode_message(HealthRequest()), timeout=self._timeout)
        except grpc.aio.AioRpcError as e:
            raise self._network_failure("Health", e) from e
        return decode_message(HealthReply, raw)

    async def snapshots_needed(self, subvolume: str, snapshot_ids: list[str]) -> Presence:
        """Ask which of `snapshot_ids` the server already holds.

        Args:
            subvolume: Subvolume identifier
            snapshot_ids: Local chain, in order

        Returns:
            Presence with the matched ids and the server's head

        Raises:
            NetworkFailure: Transport failure
            ProtocolError: Malformed reply, or ids the client never claimed
            RemoteError: Server reported an error
        """
        channel = self._ensure_connected()
        call = channel.unary_unary(SNAPSHOTS_NEEDED_METHOD)
        request = SnapshotsNeededRequest(subvolume=subvolume, snapshot_ids=list(snapshot_ids))

        try:
            raw = await call(encode_message(request), timeout=self._timeout)
        except grpc.aio.AioRpcError as e:
            raise self._network_failure("SnapshotsNeeded", e) from e

        reply = decode_message(SnapshotsNeededReply, raw)
        if reply.error_code:
            raise RemoteError(
                f"Server rejected negotiation: {reply.error}",
                reply.error_code,
                subvolume=subvolume,
            )

        unknown = set(reply.present) - set(snapshot_ids)
        if unknown:
            raise ProtocolError(
                f"Server reported {len(unknown)} snapshot(s) that were never claimed",
                address=self.address,
            )

        return Presence(present=frozenset(reply.present), head=reply.head)

    async def send_snapshot(
        self,
        header: TransferHeader,
        chunks: AsyncIterator[bytes],
    ) -> TransferReply:
        """Stream one snapshot to the server.

        A failure of `chunks` is turned into an abort frame so the server
        discards the partial stream, then re-raised here.

        Raises:
            NetworkFailure: Transport failure or malformed reply
            DriverFailure: The local send failed
        """
        channel = self._ensure_connected()
        call = channel.stream_unary(SEND_SNAPSHOT_METHOD)
        local_error: Optional[BaseException] = None

        async def frames() -> AsyncIterator[bytes]:
            nonlocal local_error
            digest = StreamDigest()
            try:
                yield encode_header(header)
                try:
                    async for chunk in chunks:
                        digest.update(chunk)
                        yield encode_data(chunk)
                except BackupError as e:
                    local_error = e
                    yield encode_abort(e.message)
                    return
                except Exception as e:
                    local_error = DriverFailure(
                        f"Local send failed: {e}",
                        subvolume=header.subvolume,
                        snapshot_id=header.snapshot_id,
                    )
                    local_error.__cause__ = e
                    yield encode_abort(str(e))
                    return
                yield encode_trailer(digest.trailer())
            finally:
                # Stops the local producer if the server replied early
                aclose = getattr(chunks, "aclose", None)
                if aclose is not None:
                    await aclose()

        try:
            raw = await call(frames())
        except grpc.aio.AioRpcError as e:
            raise self._network_failure("SendSnapshot", e) from e

        if local_error is not None:
            raise local_error

        return decode_message(TransferReply, raw)
