"""
Transfer orchestrator for btrfs-backup.

Pushes the missing set to the server one snapshot at a time, each as an
incremental stream against its chain predecessor.

Invariants:
    - Snapshots are sent strictly in chain order, never concurrently
    - A snapshot is sent against a parent only if the server holds that
      parent (negotiated, or sent earlier in the same run)
    - The first failure stops the run; nothing is retried and the rest of
      the missing set is reported as skipped
    - The report always describes a prefix of the missing set as transferred

How to change safely:
    - Parallel transfers would break the parent-present guarantee; any
      pipelining must still apply snapshots on the server in order
    - Keep the cancellation checkpoint before each snapshot
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import AsyncIterator, Awaitable, Optional, Sequence

from ..api.protocol import BackupPeer, TransferHeader, TransferReply
from ..driver.base import Snapshot, SubvolumeDriver
from ..errors import BackupError, ProtocolError, TransferCancelled, error_from_code
from ..inventory import delta_base
from .negotiation import NegotiationResult

logger = logging.getLogger(__name__)


class TransferState(str, Enum):
    PENDING = "pending"
    SENDING = "sending"
    DONE = "done"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class TransferSession:
    """One snapshot's transfer within a run.

    Attributes:
        snapshot_id: Snapshot being sent
        parent_id: Delta base, None for a full send
        state: Where the transfer is
        bytes_sent: Stream bytes handed to the transport
        already_present: Server had the snapshot and ignored the stream
        error: Failure, if state is FAILED
    """

    snapshot_id: str
    parent_id: Optional[str] = None
    state: TransferState = TransferState.PENDING
    bytes_sent: int = 0
    already_present: bool = False
    error: Optional[BackupError] = None


@dataclass
class TransferReport:
    """Outcome of sending a missing set."""

    subvolume: str
    sessions: list[TransferSession] = field(default_factory=list)
    cancelled: bool = False

    @property
    def transferred(self) -> list[str]:
        return [s.snapshot_id for s in self.sessions if s.state == TransferState.DONE]

    @property
    def skipped(self) -> list[str]:
        return [s.snapshot_id for s in self.sessions if s.state == TransferState.SKIPPED]

    @property
    def failed(self) -> Optional[TransferSession]:
        for session in self.sessions:
            if session.state == TransferState.FAILED:
                return session
        return None

    @property
    def error(self) -> Optional[BackupError]:
        failed = self.failed
        return failed.error if failed else None

    @property
    def ok(self) -> bool:
        return self.failed is None and not self.cancelled

    @property
    def bytes_sent(self) -> int:
        return sum(s.bytes_sent for s in self.sessions)


class TransferOrchestrator:
    """Sends missing snapshots to a peer in chain order.

    Attributes:
        driver: Local driver producing send streams
        peer: Server receiving them

    Example:
        >>> orchestrator = TransferOrchestrator(driver, peer)
        >>> report = await orchestrator.run(local_chain, negotiation)
        >>> report.transferred
    """

    def __init__(
        self,
        driver: SubvolumeDriver,
        peer: BackupPeer,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> None:
        self.driver = driver
        self.peer = peer
        self._cancel_event = cancel_event or asyncio.Event()

    def cancel(self) -> None:
        """Stop before the next snapshot and abandon the one in flight."""
        self._cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    async def run(
        self,
        local: Sequence[Snapshot],
        negotiation: NegotiationResult,
    ) -> TransferReport:
        """Send `negotiation.missing` in order.

        Args:
            local: Local chain in creation order
            negotiation: Result of negotiating with the same peer

        Returns:
            TransferReport; failures are recorded, not raised
        """
        report = TransferReport(subvolume=negotiation.subvolume)
        available = set(negotiation.present)

        for snapshot in negotiation.missing:
            session = TransferSession(snapshot_id=snapshot.snapshot_id)
            report.sessions.append(session)

            if report.failed is not None or report.cancelled:
                session.state = TransferState.SKIPPED
                continue

            if self.cancelled:
                report.cancelled = True
                session.state = TransferState.SKIPPED
                logger.warning(
                    "Run cancelled before transfer",
                    extra={"subvolume": report.subvolume, "snapshot_id": snapshot.snapshot_id},
                )
                continue

            try:
                await self._transfer(snapshot, local, available, session)
            except TransferCancelled as e:
                report.cancelled = True
                session.state = TransferState.FAILED
                session.error = e
            except BackupError as e:
                session.state = TransferState.FAILED
                session.error = e
                logger.error(
                    f"Transfer failed: {e}",
                    extra={
                        "subvolume": report.subvolume,
                        "snapshot_id": snapshot.snapshot_id,
                        "parent_id": session.parent_id,
                        "error_code": e.code,
                    },
                )
            else:
                available.add(snapshot.snapshot_id)

        logger.info(
            "Transfers finished",
            extra={
                "subvolume": report.subvolume,
                "transferred": len(report.transferred),
                "skipped": len(report.skipped),
                "failed": report.failed.snapshot_id if report.failed else None,
                "cancelled": report.cancelled,
                "bytes_sent": report.bytes_sent,
            },
        )
        return report

    async def _transfer(
        self,
        snapshot: Snapshot,
        local: Sequence[Snapshot],
        available: set[str],
        session: TransferSession,
    ) -> None:
        parent = delta_base(snapshot, local, available)
        session.parent_id = parent.snapshot_id if parent else None
        session.state = TransferState.SENDING

        header = TransferHeader(
            subvolume=snapshot.subvolume,
            snapshot_id=snapshot.snapshot_id,
            parent_id=session.parent_id,
        )
        logger.info(
            "Sending snapshot",
            extra={
                "subvolume": snapshot.subvolume,
                "snapshot_id": snapshot.snapshot_id,
                "parent_id": session.parent_id,
            },
        )

        chunks = self._counted(session, self.driver.send_incremental(snapshot, parent))
        reply = await self._until_cancelled(self.peer.send_snapshot(header, chunks), snapshot)
        self._check_reply(reply, header)

        session.already_present = reply.already_present
        session.state = TransferState.DONE
        logger.info(
            "Snapshot transferred",
            extra={
                "subvolume": snapshot.subvolume,
                "snapshot_id": snapshot.snapshot_id,
                "parent_id": session.parent_id,
                "bytes_sent": session.bytes_sent,
                "already_present": reply.already_present,
            },
        )

    async def _counted(
        self,
        session: TransferSession,
        chunks: AsyncIterator[bytes],
    ) -> AsyncIterator[bytes]:
        try:
            async for chunk in chunks:
                session.bytes_sent += len(chunk)
                yield chunk
        finally:
            aclose = getattr(chunks, "aclose", None)
            if aclose is not None:
                await aclose()

    async def _until_cancelled(
        self,
        send: Awaitable[TransferReply],
        snapshot: Snapshot,
    ) -> TransferReply:
        """Await a transfer, abandoning it if the run is cancelled meanwhile.

        Raises:
            TransferCancelled: If cancel() was called first
        """
        task = asyncio.ensure_future(send)
        cancel_waiter = asyncio.ensure_future(self._cancel_event.wait())
        try:
            await asyncio.wait({task, cancel_waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            cancel_waiter.cancel()

        if not task.done():
            task.cancel()
            await asyncio.wait({task})
            raise TransferCancelled(
                f"Transfer of {snapshot.snapshot_id} cancelled",
                details={"subvolume": snapshot.subvolume, "snapshot_id": snapshot.snapshot_id},
            )
        return task.result()

    def _check_reply(self, reply: TransferReply, header: TransferHeader) -> None:
        if not reply.ok:
            raise error_from_code(
                reply.error_code or "INTERNAL",
                reply.error or "Server rejected the snapshot",
                subvolume=header.subvolume,
                snapshot_id=header.snapshot_id,
            )
        if reply.snapshot_id != header.snapshot_id:
            raise ProtocolError(
                f"Server acknowledged {reply.snapshot_id!r}, sent {header.snapshot_id!r}"
            )
        if reply.parent_id != header.parent_id:
            raise ProtocolError(
                f"Server recorded {header.snapshot_id} with parent {reply.parent_id!r}, "
                f"sent against {header.parent_id!r}"
            )
