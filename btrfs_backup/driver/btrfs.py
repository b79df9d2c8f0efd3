"""
btrfs implementation of the subvolume driver.

Wraps the `btrfs` command line tool:
    prepare            btrfs subvolume show <path>
    create_snapshot    btrfs subvolume snapshot -r <path> <snapshot_dir>/<id>
    send_incremental   btrfs send [-p <parent>] <snapshot>
    receive_incremental btrfs receive <snapshot_dir>/.incoming/<uuid>

Snapshot layout:
    <snapshot_dir>/<snapshot_id>      read-only snapshot subvolumes
    <snapshot_dir>/.incoming/<uuid>/  staging area for in-flight receives

Invariants:
    - Only directory entries matching the snapshot id scheme form the chain
    - A received snapshot appears under its final name only after
      `btrfs receive` succeeded; partial subvolumes are deleted
    - Subprocesses never outlive the operation that started them

How to change safely:
    - Test stderr classification against the btrfs-progs version in use
    - Keep staging inside the snapshot directory so the final rename never
      crosses a filesystem boundary
"""

from __future__ import annotations

import asyncio
import logging
import os
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import AsyncIterator, Callable, Optional, Sequence, Tuple

from ..errors import (
    CorruptStream,
    DriverFailure,
    InsufficientSpace,
    ParentNotFound,
    PermissionDenied,
    SnapshotExists,
    SnapshotNotFound,
    SubvolumeNotFound,
    SubvolumeNotMountable,
)
from .base import STAGING_DIR, Snapshot, Subvolume, is_snapshot_id, link_chain, new_snapshot_id

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 1024 * 1024  # 1MB

_PERMISSION_MARKERS = ("Permission denied", "Operation not permitted")
_SPACE_MARKERS = ("No space left",)
_PARENT_MARKERS = ("cannot find parent", "parent subvolume")
_STREAM_MARKERS = ("stream", "bad magic", "crc mismatch", "unexpected EOF")


def _classify(
    stderr: str,
    default: type[DriverFailure] = DriverFailure,
    *,
    parent: bool = False,
    stream: bool = False,
) -> type[DriverFailure]:
    """Map btrfs stderr output onto a driver error type."""
    if any(marker in stderr for marker in _PERMISSION_MARKERS):
        return PermissionDenied
    if any(marker in stderr for marker in _SPACE_MARKERS):
        return InsufficientSpace
    if parent and any(marker in stderr for marker in _PARENT_MARKERS):
        return ParentNotFound
    if stream and any(marker in stderr for marker in _STREAM_MARKERS):
        return CorruptStream
    return default


class BtrfsDriver:
    """SubvolumeDriver backed by btrfs-progs.

    Attributes:
        btrfs: Path or name of the btrfs executable
        chunk_size: Size of chunks read from `btrfs send`

    Example:
        >>> driver = BtrfsDriver()
        >>> await driver.prepare(subvolume)
        >>> chain = await driver.list_snapshots(subvolume)
    """

    def __init__(
        self,
        btrfs: str = "btrfs",
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.btrfs = btrfs
        self.chunk_size = chunk_size
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def _run(self, *args: str) -> Tuple[int, str, str]:
        """Run a btrfs subcommand to completion.

        Returns:
            (returncode, stdout, stderr)
        """
        cmd = [self.btrfs, *args]
        logger.debug(f"Running: {' '.join(cmd)}")
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as e:
            raise DriverFailure(f"btrfs executable not found: {self.btrfs}") from e
        except PermissionError as e:
            raise PermissionDenied(f"Cannot execute {self.btrfs}: {e}") from e

        stdout, stderr = await proc.communicate()
        return (
            proc.returncode,
            stdout.decode("utf-8", errors="replace"),
            stderr.decode("utf-8", errors="replace"),
        )

    async def _spawn(self, args: Sequence[str], **kwargs) -> asyncio.subprocess.Process:
        cmd = [self.btrfs, *args]
        logger.debug(f"Spawning: {' '.join(cmd)}")
        try:
            return await asyncio.create_subprocess_exec(*cmd, **kwargs)
        except FileNotFoundError as e:
            raise DriverFailure(f"btrfs executable not found: {self.btrfs}") from e

    async def prepare(self, subvolume: Subvolume) -> None:
        if not subvolume.path.exists():
            raise SubvolumeNotFound(
                f"Subvolume does not exist: {subvolume.path}",
                subvolume=subvolume.name,
            )

        rc, _, stderr = await self._run("subvolume", "show", str(subvolume.path))
        if rc != 0:
            error_cls = _classify(stderr, SubvolumeNotMountable)
            raise error_cls(
                f"Not a usable btrfs subvolume: {subvolume.path}",
                subvolume=subvolume.name,
                stderr=stderr.strip(),
            )

        try:
            subvolume.snapshot_dir.mkdir(parents=True, exist_ok=True)
        except PermissionError as e:
            raise PermissionDenied(
                f"Cannot create snapshot directory {subvolume.snapshot_dir}: {e}",
                subvolume=subvolume.name,
            ) from e
        except OSError as e:
            raise DriverFailure(
                f"Cannot create snapshot directory {subvolume.snapshot_dir}: {e}",
                subvolume=subvolume.name,
            ) from e

        logger.info(
            "Subvolume ready",
            extra={"subvolume": subvolume.name, "snapshot_dir": str(subvolume.snapshot_dir)},
        )

    def _scan(self, snapshot_dir: Path) -> list[str]:
        if not snapshot_dir.is_dir():
            return []
        return [
            entry.name
            for entry in snapshot_dir.iterdir()
            if entry.is_dir() and is_snapshot_id(entry.name)
        ]

    async def list_snapshots(self, subvolume: Subvolume) -> list[Snapshot]:
        try:
            names = await asyncio.get_running_loop().run_in_executor(
                None, self._scan, subvolume.snapshot_dir
            )
        except OSError as e:
            raise DriverFailure(
                f"Cannot list snapshots in {subvolume.snapshot_dir}: {e}",
                subvolume=subvolume.name,
            ) from e
        return link_chain(subvolume, names)

    async def create_snapshot(
        self,
        subvolume: Subvolume,
        label: Optional[str] = None,
    ) -> Snapshot:
        chain = await self.list_snapshots(subvolume)
        tail = chain[-1].snapshot_id if chain else None
        snapshot_id = new_snapshot_id(self._clock(), label, after=tail)
        target = subvolume.snapshot_path(snapshot_id)

        rc, _, stderr = await self._run(
            "subvolume", "snapshot", "-r", str(subvolume.path), str(target)
        )
        if rc != 0:
            error_cls = _classify(stderr)
            raise error_cls(
                f"Failed to snapshot {subvolume.path}",
                subvolume=subvolume.name,
                snapshot_id=snapshot_id,
                stderr=stderr.strip(),
            )

        logger.info(
            "Created snapshot",
            extra={"subvolume": subvolume.name, "snapshot_id": snapshot_id, "parent_id": tail},
        )
        return Snapshot(
            snapshot_id=snapshot_id,
            parent_id=tail,
            subvolume=subvolume.name,
            path=target,
        )

    async def send_incremental(
        self,
        snapshot: Snapshot,
        parent: Optional[Snapshot] = None,
    ) -> AsyncIterator[bytes]:
        for snap in (snapshot, parent):
            if snap is not None and (snap.path is None or not snap.path.is_dir()):
                raise SnapshotNotFound(
                    f"Snapshot not found: {snap.snapshot_id}",
                    subvolume=snapshot.subvolume,
                    snapshot_id=snap.snapshot_id,
                )

        args = ["send"]
        if parent is not None:
            args += ["-p", str(parent.path)]
        args.append(str(snapshot.path))

        proc = await self._spawn(
            args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stderr_task = asyncio.ensure_future(proc.stderr.read())
        try:
            while True:
                chunk = await proc.stdout.read(self.chunk_size)
                if not chunk:
                    break
                yield chunk

            rc = await proc.wait()
            stderr = (await stderr_task).decode("utf-8", errors="replace")
            if rc != 0:
                error_cls = _classify(stderr)
                raise error_cls(
                    f"btrfs send failed for {snapshot.snapshot_id}",
                    subvolume=snapshot.subvolume,
                    snapshot_id=snapshot.snapshot_id,
                    stderr=stderr.strip(),
                )
        finally:
            if proc.returncode is None:
                proc.kill()
                await proc.wait()
            if not stderr_task.done():
                stderr_task.cancel()

    async def receive_incremental(
        self,
        subvolume: Subvolume,
        stream: AsyncIterator[bytes],
        *,
        snapshot_id: str,
        parent_id: Optional[str],
    ) -> Snapshot:
        present = {s.snapshot_id for s in await self.list_snapshots(subvolume)}
        if snapshot_id in present:
            raise SnapshotExists(
                f"Snapshot already present: {snapshot_id}",
                subvolume=subvolume.name,
                snapshot_id=snapshot_id,
            )
        if parent_id is not None and parent_id not in present:
            raise ParentNotFound(
                f"Parent {parent_id} of {snapshot_id} is not present",
                subvolume=subvolume.name,
                snapshot_id=snapshot_id,
            )

        staging = subvolume.snapshot_dir / STAGING_DIR / uuid.uuid4().hex
        try:
            staging.mkdir(parents=True)
        except OSError as e:
            raise DriverFailure(
                f"Cannot create staging directory {staging}: {e}",
                subvolume=subvolume.name,
                snapshot_id=snapshot_id,
            ) from e

        proc = await self._spawn(
            ["receive", str(staging)],
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.PIPE,
        )
        stderr_task = asyncio.ensure_future(proc.stderr.read())
        try:
            broken_pipe = False
            async for chunk in stream:
                try:
                    proc.stdin.write(chunk)
                    await proc.stdin.drain()
                except (BrokenPipeError, ConnectionResetError):
                    broken_pipe = True
                    break
            if not broken_pipe:
                proc.stdin.close()

            rc = await proc.wait()
            stderr = (await stderr_task).decode("utf-8", errors="replace")
            if rc != 0:
                error_cls = _classify(stderr, CorruptStream, parent=True, stream=True)
                raise error_cls(
                    f"btrfs receive failed for {snapshot_id}",
                    subvolume=subvolume.name,
                    snapshot_id=snapshot_id,
                    stderr=stderr.strip(),
                )

            received = staging / snapshot_id
            if not received.is_dir():
                raise CorruptStream(
                    f"Stream did not contain snapshot {snapshot_id}",
                    subvolume=subvolume.name,
                    snapshot_id=snapshot_id,
                )

            final = subvolume.snapshot_path(snapshot_id)
            try:
                os.rename(received, final)
            except OSError as e:
                raise DriverFailure(
                    f"Cannot move {received} into place: {e}",
                    subvolume=subvolume.name,
                    snapshot_id=snapshot_id,
                ) from e

        except BaseException:
            if proc.returncode is None:
                proc.kill()
                await proc.wait()
            await self._discard(staging)
            raise
        finally:
            if not stderr_task.done():
                stderr_task.cancel()

        await self._discard(staging)
        logger.info(
            "Received snapshot",
            extra={"subvolume": subvolume.name, "snapshot_id": snapshot_id, "parent_id": parent_id},
        )
        return Snapshot(
            snapshot_id=snapshot_id,
            parent_id=parent_id,
            subvolume=subvolume.name,
            path=final,
        )

    async def _discard(self, staging: Path) -> None:
        """Delete everything left in a staging directory."""
        if not staging.exists():
            return
        for entry in staging.iterdir():
            rc, _, stderr = await self._run("subvolume", "delete", str(entry))
            if rc != 0:
                logger.warning(
                    f"Failed to delete partial subvolume {entry}: {stderr.strip()}",
                )
        try:
            staging.rmdir()
        except OSError as e:
            logger.warning(f"Failed to remove staging directory {staging}: {e}")
