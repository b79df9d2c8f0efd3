"""
Integration tests for complete backup runs.

A real gRPC server listens on an ephemeral localhost port; both peers use
InMemoryDrivers.

Tests cover:
- Full run and round trip of the chain
- Idempotence of a second run
- Partial failure followed by a resuming run
- Local send failure reported to the server with an abort frame
- Concurrent runs for different subvolumes
- Empty chains, including against a populated server
- already_present acknowledgements over a real channel
- Two clients pushing the same subvolume
- Unreachable server
- Server lifecycle
"""

import asyncio
from contextlib import asynccontextmanager

import pytest

from btrfs_backup import __version__
from btrfs_backup.api import BackupServicer, GrpcClient, GrpcServer
from btrfs_backup.config import BackupConfig, SubvolumeConfig, TransferConfig, TransportConfig
from btrfs_backup.driver import InMemoryDriver
from btrfs_backup.main import Server
from btrfs_backup.sync import BackupClient, RunState, TransferOrchestrator, negotiate

STORAGE = SubvolumeConfig(path="/backup", destination=".snapshots")


@asynccontextmanager
async def backup_server(driver):
    """Run a BackupServicer on 127.0.0.1 and yield the bound port."""
    server = GrpcServer(BackupServicer(driver=driver, storage=STORAGE), host="127.0.0.1", port=0)
    await server.start()
    try:
        yield server.port
    finally:
        await server.stop(grace_period=0)


def client_config(port, path="/home", **transfer):
    return BackupConfig(
        subvolume=SubvolumeConfig(path=path),
        transport=TransportConfig(host="127.0.0.1", port=port, rpc_timeout_seconds=5),
        transfer=TransferConfig(**transfer),
    )


async def run_backup(port, driver, **kwargs):
    config = client_config(port, **kwargs)
    async with GrpcClient("127.0.0.1", port, timeout=5) as peer:
        return await BackupClient(config, driver, peer).run()


async def make_chain(driver, path, count):
    subvolume = SubvolumeConfig(path=path).local_subvolume()
    for _ in range(count):
        await driver.create_snapshot(subvolume)
    return [s.snapshot_id for s in await driver.list_snapshots(subvolume)]


class TestBackupRun:
    """End-to-end backup runs over gRPC."""

    @pytest.mark.asyncio
    async def test_full_run(self):
        """Every local snapshot arrives with its payload and parent."""
        source = InMemoryDriver(chunk_size=7)
        target = InMemoryDriver()
        await make_chain(source, "/home", 2)

        async with backup_server(target) as port:
            result = await run_backup(port, source)

        assert result.state == RunState.COMPLETED
        local = source.snapshot_ids("home")
        assert len(local) == 3
        assert result.transferred == local
        assert target.snapshot_ids("home") == local
        for snapshot_id in local:
            assert target.payload("home", snapshot_id) == source.payload("home", snapshot_id)
        assert target.received == [
            (local[0], None),
            (local[1], local[0]),
            (local[2], local[1]),
        ]

    @pytest.mark.asyncio
    async def test_second_run_sends_only_new_snapshot(self):
        """A second run sends nothing already on the server."""
        source = InMemoryDriver()
        target = InMemoryDriver()

        async with backup_server(target) as port:
            first = await run_backup(port, source)
            idle = await run_backup(port, source, create_snapshot=False)
            second = await run_backup(port, source)

        assert first.ok and idle.ok and second.ok
        assert idle.transferred == []
        assert second.transferred == [second.created_snapshot]
        assert target.received[-1] == (second.created_snapshot, first.created_snapshot)
        assert target.snapshot_ids("home") == source.snapshot_ids("home")

    @pytest.mark.asyncio
    async def test_partial_failure_then_resume(self):
        """S2 fails to apply: S1 stays, S3 is skipped, the next run finishes."""
        source = InMemoryDriver()
        target = InMemoryDriver()
        s1, s2, s3 = await make_chain(source, "/home", 3)
        target.fail_receive.add(s2)

        async with backup_server(target) as port:
            failed = await run_backup(port, source, create_snapshot=False)

            assert failed.state == RunState.ABORTED
            assert failed.exit_code == 1
            assert failed.transferred == [s1]
            assert failed.failed_snapshot == s2
            assert failed.skipped == [s3]
            assert target.snapshot_ids("home") == [s1]

            target.fail_receive.clear()
            resumed = await run_backup(port, source, create_snapshot=False)

        assert resumed.state == RunState.COMPLETED
        assert resumed.missing == [s2, s3]
        assert resumed.transferred == [s2, s3]
        assert target.received[-2:] == [(s2, s1), (s3, s2)]

    @pytest.mark.asyncio
    async def test_local_send_failure(self):
        """A send that dies midway leaves nothing on the server."""
        source = InMemoryDriver(chunk_size=4)
        target = InMemoryDriver()
        s1, s2 = await make_chain(source, "/home", 2)
        source.fail_send.add(s2)

        async with backup_server(target) as port:
            result = await run_backup(port, source, create_snapshot=False)

        assert result.state == RunState.ABORTED
        assert result.failed_snapshot == s2
        assert result.error_kind == "DriverFailure"
        assert target.snapshot_ids("home") == [s1]

    @pytest.mark.asyncio
    async def test_concurrent_subvolumes(self):
        """Runs for different subvolumes proceed side by side."""
        home = InMemoryDriver()
        var = InMemoryDriver()
        target = InMemoryDriver()
        await make_chain(home, "/home", 3)
        await make_chain(var, "/var", 3)

        async with backup_server(target) as port:
            results = await asyncio.gather(
                run_backup(port, home, path="/home"),
                run_backup(port, var, path="/var"),
            )

        assert all(r.ok for r in results)
        assert target.snapshot_ids("home") == home.snapshot_ids("home")
        assert target.snapshot_ids("var") == var.snapshot_ids("var")

    @pytest.mark.asyncio
    async def test_empty_chain(self):
        """A subvolume without snapshots completes with nothing sent."""
        source = InMemoryDriver()
        target = InMemoryDriver()

        async with backup_server(target) as port:
            result = await run_backup(port, source, create_snapshot=False)

        assert result.state == RunState.COMPLETED
        assert result.transferred == []
        assert target.received == []

    @pytest.mark.asyncio
    async def test_empty_chain_with_populated_server(self):
        """An empty local chain completes even when the server holds snapshots."""
        source = InMemoryDriver()
        target = InMemoryDriver()
        target.add_snapshot("home", "20260101T000000.000000Z")

        async with backup_server(target) as port:
            result = await run_backup(port, source, create_snapshot=False)

        assert result.state == RunState.COMPLETED
        assert result.transferred == []
        assert target.received == []

    @pytest.mark.asyncio
    async def test_already_present_over_grpc(self):
        """A snapshot that landed after negotiation is acknowledged without its stream."""
        source = InMemoryDriver(chunk_size=3)
        target = InMemoryDriver()
        (snapshot_id,) = await make_chain(source, "/home", 1)
        local = await source.list_snapshots(SubvolumeConfig(path="/home").local_subvolume())

        async with backup_server(target) as port:
            async with GrpcClient("127.0.0.1", port, timeout=5) as peer:
                negotiation = await negotiate(peer, "home", local)
                target.add_snapshot("home", snapshot_id, b"stored")
                report = await TransferOrchestrator(source, peer).run(local, negotiation)

                # The channel still serves requests after the abandoned stream
                presence = await peer.snapshots_needed("home", [snapshot_id])

        assert report.ok
        assert report.transferred == [snapshot_id]
        assert report.sessions[0].already_present
        assert target.received == []
        assert target.payload("home", snapshot_id) == b"stored"
        assert presence.present == frozenset({snapshot_id})

    @pytest.mark.asyncio
    async def test_same_subvolume_from_two_clients(self):
        """A client whose negotiation went stale cannot graft a second root."""
        laptop = InMemoryDriver()
        desktop = InMemoryDriver()
        target = InMemoryDriver()
        await make_chain(desktop, "/home", 1)
        stale = await desktop.list_snapshots(SubvolumeConfig(path="/home").local_subvolume())

        async with backup_server(target) as port:
            async with GrpcClient("127.0.0.1", port, timeout=5) as peer:
                stale_negotiation = await negotiate(peer, "home", stale)
                landed = await run_backup(port, laptop)
                refused = await TransferOrchestrator(desktop, peer).run(stale, stale_negotiation)

        assert landed.ok
        assert not refused.ok
        assert refused.failed.error.kind == "ChainDivergence"
        assert target.snapshot_ids("home") == laptop.snapshot_ids("home")
        assert target.received == [(landed.created_snapshot, None)]

    @pytest.mark.asyncio
    async def test_divergent_server(self):
        """A server holding snapshots the client never took is not touched."""
        source = InMemoryDriver()
        target = InMemoryDriver()
        target.add_snapshot("home", "20991231T000000.000000Z")

        async with backup_server(target) as port:
            result = await run_backup(port, source)

        assert result.state == RunState.ABORTED
        assert result.failed_in == RunState.NEGOTIATING
        assert result.error_kind == "ChainDivergence"
        assert target.received == []

    @pytest.mark.asyncio
    async def test_unreachable_server(self):
        """A server that is gone aborts the run with a network failure."""
        async with backup_server(InMemoryDriver()) as port:
            pass

        result = await run_backup(port, InMemoryDriver())

        assert result.state == RunState.ABORTED
        assert result.error_kind == "NetworkFailure"

    @pytest.mark.asyncio
    async def test_health(self):
        async with backup_server(InMemoryDriver()) as port:
            async with GrpcClient("127.0.0.1", port, timeout=5) as peer:
                health = await peer.health()

        assert health.healthy
        assert health.version == __version__


class TestServerLifecycle:
    """Tests for the server orchestrator in main."""

    @pytest.mark.asyncio
    async def test_start_and_shutdown(self):
        driver = InMemoryDriver()
        config = BackupConfig(
            server=True,
            subvolume=STORAGE,
            transport=TransportConfig(bind_host="127.0.0.1", port=0),
        )
        server = Server(config, driver=driver)

        task = asyncio.ensure_future(server.start())
        for _ in range(100):
            if server.grpc_server is not None and server.grpc_server.is_running:
                break
            await asyncio.sleep(0.05)

        assert server.grpc_server.is_running
        async with GrpcClient("127.0.0.1", server.grpc_server.port, timeout=5) as peer:
            presence = await peer.snapshots_needed("home", [])
        assert presence.present == frozenset()

        server.request_shutdown()
        await asyncio.wait_for(task, timeout=5)
        await server.stop()

        assert not server.grpc_server.is_running
        assert "backup" in driver.subvolume_names
