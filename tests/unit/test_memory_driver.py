"""
Unit tests for the in-memory subvolume driver.

Tests cover:
- Snapshot creation and chain listing
- Send/receive round trip preserving parents
- Receive preconditions (existing snapshot, missing parent)
- Atomicity of failed receives
- Failure injection hooks
"""

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from btrfs_backup.driver import InMemoryDriver, Subvolume, SubvolumeDriver
from btrfs_backup.errors import (
    CorruptStream,
    DriverFailure,
    ParentNotFound,
    SnapshotExists,
    SnapshotNotFound,
    SubvolumeNotFound,
)


class FakeClock:
    """Clock that advances one second per call."""

    def __init__(self, start=None):
        self.now = start or datetime(2026, 1, 1, tzinfo=timezone.utc)

    def __call__(self):
        self.now += timedelta(seconds=1)
        return self.now


def make_subvolume(name="home", root="/data"):
    return Subvolume(name=name, path=Path(root), snapshot_dir=Path(root) / ".snapshots" / name)


async def collect(stream):
    return [chunk async for chunk in stream]


async def replay(chunks):
    for chunk in chunks:
        yield chunk


class TestInMemoryDriver:
    """Tests for InMemoryDriver."""

    @pytest.fixture
    def driver(self):
        return InMemoryDriver(chunk_size=8, clock=FakeClock())

    @pytest.fixture
    def subvolume(self):
        return make_subvolume()

    def test_implements_protocol(self, driver):
        """InMemoryDriver satisfies SubvolumeDriver."""
        assert isinstance(driver, SubvolumeDriver)

    @pytest.mark.asyncio
    async def test_prepare_unavailable(self, driver, subvolume):
        """prepare() fails for subvolumes marked unavailable."""
        driver.unavailable.add("home")

        with pytest.raises(SubvolumeNotFound) as exc_info:
            await driver.prepare(subvolume)

        assert exc_info.value.subvolume == "home"

    @pytest.mark.asyncio
    async def test_empty_chain(self, driver, subvolume):
        """A prepared subvolume starts with an empty chain."""
        await driver.prepare(subvolume)

        assert await driver.list_snapshots(subvolume) == []
        assert "home" in driver.subvolume_names

    @pytest.mark.asyncio
    async def test_create_links_to_tail(self, driver, subvolume):
        """Each new snapshot's parent is the previous tail."""
        first = await driver.create_snapshot(subvolume)
        second = await driver.create_snapshot(subvolume, label="manual")

        assert first.parent_id is None
        assert second.parent_id == first.snapshot_id
        assert second.snapshot_id.endswith("-manual")
        assert second.snapshot_id > first.snapshot_id

        chain = await driver.list_snapshots(subvolume)
        assert [s.snapshot_id for s in chain] == [first.snapshot_id, second.snapshot_id]

    @pytest.mark.asyncio
    async def test_create_with_stuck_clock(self, subvolume):
        """Snapshots stay ordered even if the clock does not advance."""
        fixed = datetime(2026, 1, 1, tzinfo=timezone.utc)
        driver = InMemoryDriver(clock=lambda: fixed)

        first = await driver.create_snapshot(subvolume)
        second = await driver.create_snapshot(subvolume)

        assert second.snapshot_id > first.snapshot_id

    @pytest.mark.asyncio
    async def test_round_trip_preserves_parent(self, driver, subvolume):
        """A sent snapshot is received with the same id, parent and payload."""
        target = InMemoryDriver()
        store = make_subvolume(root="/backup")

        first = await driver.create_snapshot(subvolume, data=b"first payload")
        second = await driver.create_snapshot(subvolume, data=b"second payload, longer")

        await target.receive_incremental(
            store,
            replay(await collect(driver.send_incremental(first))),
            snapshot_id=first.snapshot_id,
            parent_id=None,
        )
        received = await target.receive_incremental(
            store,
            replay(await collect(driver.send_incremental(second, first))),
            snapshot_id=second.snapshot_id,
            parent_id=first.snapshot_id,
        )

        assert received.snapshot_id == second.snapshot_id
        assert received.parent_id == first.snapshot_id
        assert target.payload("home", second.snapshot_id) == b"second payload, longer"

        chain = await target.list_snapshots(store)
        assert [(s.snapshot_id, s.parent_id) for s in chain] == [
            (first.snapshot_id, None),
            (second.snapshot_id, first.snapshot_id),
        ]
        assert driver.sent == [(first.snapshot_id, None), (second.snapshot_id, first.snapshot_id)]

    @pytest.mark.asyncio
    async def test_send_is_chunked(self, driver, subvolume):
        """Streams are split into chunk_size pieces."""
        snap = await driver.create_snapshot(subvolume, data=b"x" * 100)

        chunks = await collect(driver.send_incremental(snap))

        assert len(chunks) > 1
        assert all(len(chunk) <= 8 for chunk in chunks)

    @pytest.mark.asyncio
    async def test_send_unknown_snapshot(self, driver, subvolume):
        """Sending a snapshot that does not exist fails."""
        snap = await driver.create_snapshot(subvolume)
        ghost = type(snap)(snapshot_id="20300101T000000.000000Z", parent_id=None, subvolume="home")

        with pytest.raises(SnapshotNotFound):
            await collect(driver.send_incremental(ghost))

    @pytest.mark.asyncio
    async def test_receive_existing(self, driver, subvolume):
        """Receiving a snapshot twice is refused."""
        snap = await driver.create_snapshot(subvolume)
        stream = await collect(driver.send_incremental(snap))

        with pytest.raises(SnapshotExists):
            await driver.receive_incremental(
                subvolume, replay(stream), snapshot_id=snap.snapshot_id, parent_id=None
            )

    @pytest.mark.asyncio
    async def test_receive_missing_parent(self, driver, subvolume):
        """A delta against an absent parent is refused before reading."""
        target = InMemoryDriver()
        store = make_subvolume(root="/backup")
        first = await driver.create_snapshot(subvolume)
        second = await driver.create_snapshot(subvolume)
        stream = await collect(driver.send_incremental(second, first))

        with pytest.raises(ParentNotFound):
            await target.receive_incremental(
                store, replay(stream), snapshot_id=second.snapshot_id, parent_id=first.snapshot_id
            )

        assert await target.list_snapshots(store) == []

    @pytest.mark.asyncio
    async def test_receive_mislabelled_stream(self, driver, subvolume):
        """A stream carrying another snapshot is corrupt."""
        target = InMemoryDriver()
        store = make_subvolume(root="/backup")
        first = await driver.create_snapshot(subvolume)
        stream = await collect(driver.send_incremental(first))

        with pytest.raises(CorruptStream):
            await target.receive_incremental(
                store, replay(stream), snapshot_id="20300101T000000.000000Z", parent_id=None
            )

        assert target.snapshot_ids("home") == []

    @pytest.mark.asyncio
    async def test_receive_truncated_stream(self, driver, subvolume):
        """A stream without its header line is corrupt."""
        target = InMemoryDriver()
        store = make_subvolume(root="/backup")
        first = await driver.create_snapshot(subvolume)
        stream = await collect(driver.send_incremental(first))

        with pytest.raises(CorruptStream):
            await target.receive_incremental(
                store, replay(stream[:1]), snapshot_id=first.snapshot_id, parent_id=None
            )

        assert target.snapshot_ids("home") == []

    @pytest.mark.asyncio
    async def test_receive_stream_error_leaves_chain_untouched(self, driver, subvolume):
        """An exception from the input stream leaves nothing behind."""
        target = InMemoryDriver()
        store = make_subvolume(root="/backup")
        first = await driver.create_snapshot(subvolume)
        chunks = await collect(driver.send_incremental(first))

        async def broken():
            yield chunks[0]
            raise CorruptStream("connection dropped")

        with pytest.raises(CorruptStream):
            await target.receive_incremental(
                store, broken(), snapshot_id=first.snapshot_id, parent_id=None
            )

        assert target.snapshot_ids("home") == []
        assert target.received == []

    @pytest.mark.asyncio
    async def test_injected_send_failure(self, driver, subvolume):
        """fail_send makes the stream fail after its first chunk."""
        snap = await driver.create_snapshot(subvolume, data=b"y" * 64)
        driver.fail_send.add(snap.snapshot_id)

        received = []
        with pytest.raises(DriverFailure):
            async for chunk in driver.send_incremental(snap):
                received.append(chunk)

        assert len(received) == 1

    @pytest.mark.asyncio
    async def test_injected_receive_failure(self, driver, subvolume):
        """fail_receive rejects a complete stream without storing it."""
        target = InMemoryDriver()
        store = make_subvolume(root="/backup")
        snap = await driver.create_snapshot(subvolume)
        target.fail_receive.add(snap.snapshot_id)

        with pytest.raises(DriverFailure):
            await target.receive_incremental(
                store,
                replay(await collect(driver.send_incremental(snap))),
                snapshot_id=snap.snapshot_id,
                parent_id=None,
            )

        assert target.snapshot_ids("home") == []
