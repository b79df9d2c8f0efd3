"""
btrfs-backup - Main entry point.

Runs in one of two modes:
- Server: listens for negotiation requests and snapshot streams and stores
  them under <subvolume>/<destination_subvolume>/<name>
- Client: snapshots a subvolume and pushes every snapshot the server is
  missing, then exits

Usage:
    btrfs-backup --server --subvolume /srv/backup --port 1234
    btrfs-backup --subvolume /home --host backup.example.com --port 1234

Flags override environment defaults (see config.py). Logging is discarded
unless BTRFS_BACKUP_LOG is set or -v is given.

Invariants:
    - Configuration is validated before any driver or network call
    - Client exit status is 0 only if the run COMPLETED
    - Server shutdown waits for in-flight receives up to the grace period

How to change safely:
    - Keep flag names stable; cron jobs and units depend on them
    - Test shutdown sequence thoroughly
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import platform
import signal
import sys
from dataclasses import replace
from typing import Any, Optional, Sequence

import json_log_formatter

from ._version import __version__
from .api import GrpcClient, GrpcServer
from .api.grpc_server import BackupServicer
from .config import BackupConfig, ObservabilityConfig
from .driver import BtrfsDriver, SubvolumeDriver
from .errors import BackupError, ConfigurationError
from .sync import BackupClient, RunResult

logger = logging.getLogger(__name__)


def setup_logging(config: ObservabilityConfig, verbose: bool = False) -> None:
    """Configure logging based on configuration.

    Args:
        config: Logging configuration
        verbose: Force DEBUG logging to stderr
    """
    root_logger = logging.getLogger()

    if not config.log_enabled and not verbose:
        root_logger.handlers = [logging.NullHandler()]
        return

    level = logging.DEBUG if verbose else getattr(logging, config.log_level.upper(), logging.INFO)

    if config.log_format == "json":
        formatter: logging.Formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    if config.log_path:
        handler: logging.Handler = logging.FileHandler(config.log_path)
    else:
        handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Reduce noise from libraries
    logging.getLogger("grpc").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)


def log_banner(config: BackupConfig) -> None:
    logger.info(
        f"btrfs-backup {__version__} starting",
        extra={
            "version": __version__,
            "platform": platform.platform(),
            "machine": platform.machine(),
            "python": platform.python_version(),
            "mode": "server" if config.server else "client",
        },
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="btrfs-backup",
        description="Replicate btrfs subvolume snapshots to a remote host",
    )
    parser.add_argument("--subvolume", help="Subvolume to back up (or to store into with --server)")
    parser.add_argument(
        "--destination_subvolume",
        "--destination-subvolume",
        dest="destination",
        help="Path relative to the subvolume where snapshots are kept",
    )
    parser.add_argument("--server", action="store_true", default=None, help="Run in server mode")
    parser.add_argument("--host", help="Server host to send backups to")
    parser.add_argument("--port", type=int, help="Server port (listen port with --server)")
    parser.add_argument("--bind", dest="bind_host", help="Address to listen on with --server")
    parser.add_argument("--name", help="Subvolume identifier used on the wire")
    parser.add_argument("--label", help="Label appended to the new snapshot id")
    parser.add_argument(
        "--no-snapshot",
        dest="create_snapshot",
        action="store_false",
        default=None,
        help="Send existing snapshots without taking a new one",
    )
    parser.add_argument("--chunk-size", type=int, help="Bytes per transfer frame")
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def _override(obj: Any, **values: Any) -> Any:
    """Replace the fields of a frozen dataclass that were given on the command line."""
    given = {k: v for k, v in values.items() if v is not None}
    return replace(obj, **given) if given else obj


def load_config(args: argparse.Namespace, base: Optional[BackupConfig] = None) -> BackupConfig:
    """Merge command line flags over environment defaults.

    Raises:
        ConfigurationError: If an environment setting cannot be parsed
    """
    base = base or BackupConfig.from_env()
    return replace(
        base,
        server=args.server if args.server is not None else base.server,
        subvolume=_override(
            base.subvolume,
            path=args.subvolume,
            destination=args.destination,
            name=args.name,
        ),
        transport=_override(
            base.transport,
            host=args.host,
            port=args.port,
            bind_host=args.bind_host,
        ),
        transfer=_override(
            base.transfer,
            chunk_size=args.chunk_size,
            create_snapshot=args.create_snapshot,
            label=args.label,
        ),
    )


class Server:
    """btrfs-backup server orchestrator.

    Manages the lifecycle of the receiving side:
    - Storage subvolume preparation
    - gRPC server

    Example:
        >>> server = Server(config)
        >>> await server.start()
        >>> # Server is running until request_shutdown()
        >>> await server.stop()
    """

    def __init__(
        self,
        config: BackupConfig,
        driver: Optional[SubvolumeDriver] = None,
    ) -> None:
        self.config = config
        self.driver = driver or BtrfsDriver()
        self._running = False
        self._shutdown_event = asyncio.Event()

        self.servicer: Optional[BackupServicer] = None
        self.grpc_server: Optional[GrpcServer] = None

    async def start(self) -> None:
        """Start the server and block until shutdown is requested."""
        if self._running:
            logger.warning("Server already running")
            return

        logger.info("Starting btrfs-backup server")
        self.config.log_config()

        try:
            await self.driver.prepare(self.config.subvolume.local_subvolume())

            self.servicer = BackupServicer(driver=self.driver, storage=self.config.subvolume)
            self.grpc_server = GrpcServer(
                servicer=self.servicer,
                host=self.config.transport.bind_host,
                port=self.config.transport.port,
                max_message_size=self.config.transport.max_message_size,
            )
            await self.grpc_server.start()

            self._running = True
            logger.info("btrfs-backup server started successfully")

            await self._shutdown_event.wait()

        except Exception as e:
            logger.error(f"Server startup failed: {e}", exc_info=True)
            await self.stop()
            raise

    async def stop(self) -> None:
        """Stop the server gracefully."""
        if self.grpc_server:
            await self.grpc_server.stop()

        if self._running:
            self._running = False
            logger.info("btrfs-backup server stopped", extra=self.servicer.stats if self.servicer else {})

    def request_shutdown(self) -> None:
        """Request graceful shutdown."""
        self._shutdown_event.set()


async def run_client(
    config: BackupConfig,
    driver: Optional[SubvolumeDriver] = None,
) -> RunResult:
    """Run one backup against the configured server.

    SIGINT and SIGTERM cancel the run; it still ends with a RunResult.
    """
    driver = driver or BtrfsDriver(chunk_size=config.transfer.chunk_size)
    transport = config.transport

    async with GrpcClient(
        transport.host,
        transport.port,
        max_message_size=transport.max_message_size,
        timeout=transport.rpc_timeout_seconds,
    ) as peer:
        client = BackupClient(config, driver, peer)

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, client.cancel)
        try:
            return await client.run()
        finally:
            for sig in (signal.SIGTERM, signal.SIGINT):
                loop.remove_signal_handler(sig)


def serve(config: BackupConfig) -> None:
    """Run the server until SIGINT or SIGTERM."""
    server = Server(config)

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    def handle_signal(sig: int) -> None:
        logger.info(f"Received signal {sig}, initiating shutdown")
        server.request_shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, handle_signal, sig)

    try:
        loop.run_until_complete(server.start())
    except KeyboardInterrupt:
        pass
    finally:
        loop.run_until_complete(server.stop())
        loop.close()


def report(result: RunResult) -> None:
    """Print the outcome of a client run."""
    if result.ok:
        print(f"Backup of {result.subvolume} completed")
        print(f"  New snapshot: {result.created_snapshot or 'none'}")
        print(f"  Transferred: {len(result.transferred)}")
        for snapshot_id in result.transferred:
            print(f"    {snapshot_id}")
        return

    print(f"Backup of {result.subvolume} failed: {result.error_kind}: {result.error}", file=sys.stderr)
    if result.failed_snapshot:
        print(f"  Failed snapshot: {result.failed_snapshot}", file=sys.stderr)
    if result.transferred:
        print(f"  Transferred before failure: {len(result.transferred)}", file=sys.stderr)
    if result.skipped:
        print(f"  Not attempted: {len(result.skipped)}", file=sys.stderr)


def main(argv: Optional[Sequence[str]] = None) -> None:
    """CLI entry point."""
    args = build_parser().parse_args(argv)

    try:
        config = load_config(args)
        config.validate()
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    setup_logging(config.observability, verbose=args.verbose)
    log_banner(config)

    if config.server:
        try:
            serve(config)
        except (BackupError, OSError) as e:
            print(f"Server failed: {e}", file=sys.stderr)
            sys.exit(1)
        sys.exit(0)

    result = asyncio.run(run_client(config))
    report(result)
    sys.exit(result.exit_code)


if __name__ == "__main__":
    main()
