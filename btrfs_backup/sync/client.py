"""
Backup run for the client side.

A run walks one subvolume through a fixed sequence of states:

    IDLE -> VALIDATING -> NEGOTIATING -> TRANSFERRING -> COMPLETED
                 |              |              |
                 +--------------+--------------+------> ABORTED

VALIDATING checks the configuration, prepares the subvolume and takes the
fresh snapshot. NEGOTIATING asks the server what it already has.
TRANSFERRING hands the missing set to the orchestrator.

Invariants:
    - Configuration is validated before any driver or network call
    - A run ends in exactly one terminal state and never raises for
      expected failures; the RunResult carries what happened
    - A failed run leaves the server with a valid prefix of the local chain,
      so the next run resumes from there

How to change safely:
    - New states must sit between VALIDATING and a terminal state
    - Keep RunResult fields stable; main() derives the exit status from it
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from ..api.protocol import BackupPeer
from ..config import BackupConfig
from ..driver.base import Snapshot, SubvolumeDriver
from ..errors import BackupError, TransferCancelled
from .negotiation import NegotiationResult, negotiate
from .orchestrator import TransferOrchestrator, TransferReport

logger = logging.getLogger(__name__)


class RunState(str, Enum):
    IDLE = "idle"
    VALIDATING = "validating"
    NEGOTIATING = "negotiating"
    TRANSFERRING = "transferring"
    COMPLETED = "completed"
    ABORTED = "aborted"


TERMINAL_STATES = frozenset({RunState.COMPLETED, RunState.ABORTED})


@dataclass
class RunResult:
    """Terminal status of a backup run.

    Attributes:
        state: COMPLETED or ABORTED
        subvolume: Subvolume identifier
        created_snapshot: Snapshot taken at the start of the run, if any
        missing: Snapshot ids the server lacked at negotiation time
        transferred: Snapshot ids sent successfully, in order
        skipped: Snapshot ids not attempted because an earlier one failed
        failed_snapshot: First snapshot id that failed to transfer
        failed_in: State the run was in when it failed
        error_kind: Failure kind (error class name)
        error: Human readable failure message
    """

    state: RunState
    subvolume: str
    created_snapshot: Optional[str] = None
    missing: list[str] = field(default_factory=list)
    transferred: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failed_snapshot: Optional[str] = None
    failed_in: Optional[RunState] = None
    error_kind: Optional[str] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.state == RunState.COMPLETED

    @property
    def exit_code(self) -> int:
        return 0 if self.ok else 1


class BackupClient:
    """Runs one backup of a subvolume against a server.

    Attributes:
        config: Complete configuration
        driver: Local subvolume driver
        peer: Connected server

    Example:
        >>> async with GrpcClient(host, port) as peer:
        ...     result = await BackupClient(config, BtrfsDriver(), peer).run()
        >>> sys.exit(result.exit_code)
    """

    def __init__(
        self,
        config: BackupConfig,
        driver: SubvolumeDriver,
        peer: BackupPeer,
    ) -> None:
        self.config = config
        self.driver = driver
        self.peer = peer
        self._state = RunState.IDLE
        self._cancel_event = asyncio.Event()
        self._orchestrator = TransferOrchestrator(driver, peer, self._cancel_event)

    @property
    def state(self) -> RunState:
        return self._state

    def cancel(self) -> None:
        """Request cancellation; the run aborts at the next checkpoint."""
        logger.info("Cancellation requested", extra={"state": self._state.value})
        self._cancel_event.set()

    def _enter(self, state: RunState) -> None:
        logger.debug(f"Run state {self._state.value} -> {state.value}")
        self._state = state

    def _checkpoint(self) -> None:
        if self._cancel_event.is_set():
            raise TransferCancelled(f"Run cancelled while {self._state.value}")

    async def run(self) -> RunResult:
        """Execute the run to a terminal state."""
        if self._state != RunState.IDLE:
            raise RuntimeError(f"Run already started (state {self._state.value})")

        result = RunResult(
            state=RunState.ABORTED,
            subvolume=self.config.subvolume.resolved_name,
        )
        try:
            self._enter(RunState.VALIDATING)
            local = await self._validate(result)

            self._checkpoint()
            self._enter(RunState.NEGOTIATING)
            negotiation = await self._negotiate(local)
            result.missing = [s.snapshot_id for s in negotiation.missing]

            self._checkpoint()
            self._enter(RunState.TRANSFERRING)
            report = await self._orchestrator.run(local, negotiation)
            self._apply_report(result, report)
        except BackupError as e:
            self._abort(result, e)
        except Exception as e:
            logger.error(f"Backup run failed: {e}", exc_info=True)
            result.failed_in = self._state
            result.error_kind = type(e).__name__
            result.error = str(e)
            self._enter(RunState.ABORTED)

        if self._state not in TERMINAL_STATES:
            self._enter(RunState.COMPLETED)
        result.state = self._state

        logger.info(
            "Backup run finished",
            extra={
                "subvolume": result.subvolume,
                "state": result.state.value,
                "transferred": len(result.transferred),
                "failed_snapshot": result.failed_snapshot,
                "error_kind": result.error_kind,
            },
        )
        return result

    async def _validate(self, result: RunResult) -> list[Snapshot]:
        self.config.validate()

        subvolume = self.config.subvolume.local_subvolume()
        await self.driver.prepare(subvolume)

        if self.config.transfer.create_snapshot:
            snapshot = await self.driver.create_snapshot(subvolume, self.config.transfer.label)
            result.created_snapshot = snapshot.snapshot_id

        return await self.driver.list_snapshots(subvolume)

    async def _negotiate(self, local: list[Snapshot]) -> NegotiationResult:
        if self.config.transport.health_check:
            health = await self.peer.health()
            logger.debug(
                "Server is healthy",
                extra={"server_version": health.version, "healthy": health.healthy},
            )
        return await negotiate(self.peer, self.config.subvolume.resolved_name, local)

    def _apply_report(self, result: RunResult, report: TransferReport) -> None:
        result.transferred = report.transferred
        result.skipped = report.skipped

        failed = report.failed
        if failed is not None:
            result.failed_snapshot = failed.snapshot_id
            self._abort(result, failed.error)
        elif report.cancelled:
            self._abort(result, TransferCancelled("Run cancelled between transfers"))

    def _abort(self, result: RunResult, error: BackupError) -> None:
        result.failed_in = self._state
        result.error_kind = error.kind
        result.error = error.message
        logger.error(
            f"Backup run aborted: {error.message}",
            extra={
                "subvolume": result.subvolume,
                "state": self._state.value,
                "error_code": error.code,
                "details": error.details,
            },
        )
        self._enter(RunState.ABORTED)
