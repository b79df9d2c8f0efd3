"""
Unit tests for configuration.

Tests cover:
- Defaults and environment loading
- Validation errors raised before any I/O
- Subvolume layout on client and server
"""

from dataclasses import replace
from pathlib import Path

import pytest

from btrfs_backup.config import (
    BackupConfig,
    ObservabilityConfig,
    SubvolumeConfig,
    TransferConfig,
    TransportConfig,
)
from btrfs_backup.errors import BackupError, ConfigurationError


def with_port(port):
    return BackupConfig(transport=TransportConfig(port=port))


class TestDefaults:
    """Tests for default settings."""

    def test_defaults_validate(self):
        """A default configuration is valid."""
        config = BackupConfig()

        config.validate()

        assert config.server is False
        assert config.transport.port == 1234
        assert config.subvolume.destination == ".snapshots"
        assert config.observability.log_enabled is False

    def test_root_subvolume_name(self):
        """The root subvolume gets a usable wire name."""
        assert SubvolumeConfig(path="/").resolved_name == "root"
        assert SubvolumeConfig(path="/home").resolved_name == "home"
        assert SubvolumeConfig(path="/home", name="laptop").resolved_name == "laptop"

    def test_local_subvolume_layout(self):
        """Client snapshots live under path/destination."""
        subvolume = SubvolumeConfig(path="/home", destination=".snapshots").local_subvolume()

        assert subvolume.name == "home"
        assert subvolume.path == Path("/home")
        assert subvolume.snapshot_dir == Path("/home/.snapshots")

    def test_store_layout(self):
        """Server stores each client's chain in its own directory."""
        store = SubvolumeConfig(path="/srv/backup", destination="snaps").store_for("home")

        assert store.name == "home"
        assert store.snapshot_dir == Path("/srv/backup/snaps/home")


class TestValidate:
    """Tests for BackupConfig.validate()."""

    @pytest.mark.parametrize("port", [80, 0, 1023, 65536, -1])
    def test_invalid_port(self, port):
        """Ports outside 1024-65535 are configuration errors."""
        with pytest.raises(ConfigurationError) as exc_info:
            with_port(port).validate()

        assert exc_info.value.setting == "port"
        assert exc_info.value.code == "CONFIGURATION_ERROR"

    @pytest.mark.parametrize("port", [1024, 8080, 65535])
    def test_valid_port(self, port):
        """Boundary ports are accepted."""
        with_port(port).validate()

    def test_configuration_error_is_value_error(self):
        """ConfigurationError fits both hierarchies."""
        with pytest.raises(ValueError):
            with_port(80).validate()
        with pytest.raises(BackupError):
            with_port(80).validate()

    @pytest.mark.parametrize("destination", ["", "/abs/path", "../outside", "a/../../b"])
    def test_invalid_destination(self, destination):
        """Destination must stay inside the subvolume."""
        config = BackupConfig(subvolume=SubvolumeConfig(path="/home", destination=destination))

        with pytest.raises(ConfigurationError) as exc_info:
            config.validate()

        assert exc_info.value.setting == "destination_subvolume"

    def test_empty_path(self):
        """A subvolume path is required."""
        config = BackupConfig(subvolume=SubvolumeConfig(path=""))

        with pytest.raises(ConfigurationError):
            config.validate()

    def test_invalid_name(self):
        """Wire names must be safe directory names."""
        config = BackupConfig(subvolume=SubvolumeConfig(path="/home", name="a/b"))

        with pytest.raises(ConfigurationError) as exc_info:
            config.validate()

        assert exc_info.value.setting == "name"

    @pytest.mark.parametrize("chunk_size", [0, -5, 8 * 1024 * 1024])
    def test_invalid_chunk_size(self, chunk_size):
        """Chunks must be positive and fit in one message."""
        config = BackupConfig(transfer=TransferConfig(chunk_size=chunk_size))

        with pytest.raises(ConfigurationError) as exc_info:
            config.validate()

        assert exc_info.value.setting == "chunk_size"

    def test_invalid_label(self):
        """Labels are restricted to the id alphabet."""
        config = BackupConfig(transfer=TransferConfig(label="not valid"))

        with pytest.raises(ConfigurationError):
            config.validate()

    def test_client_requires_host(self):
        """A client needs a server to talk to."""
        config = BackupConfig(transport=TransportConfig(host=""))

        with pytest.raises(ConfigurationError):
            config.validate()

        replace(config, server=True).validate()


class TestFromEnv:
    """Tests for environment loading."""

    def test_from_env(self, monkeypatch):
        """Environment variables populate every section."""
        monkeypatch.setenv("BTRFS_BACKUP_SERVER", "true")
        monkeypatch.setenv("BTRFS_BACKUP_SUBVOLUME", "/srv/backup")
        monkeypatch.setenv("BTRFS_BACKUP_DESTINATION", "store")
        monkeypatch.setenv("BTRFS_BACKUP_PORT", "4321")
        monkeypatch.setenv("BTRFS_BACKUP_CHUNK_SIZE", "4096")
        monkeypatch.setenv("BTRFS_BACKUP_LOG", "1")
        monkeypatch.setenv("BTRFS_BACKUP_LOG_PATH", "/var/log/btrfs-backup.log")

        config = BackupConfig.from_env()

        assert config.server is True
        assert config.subvolume.path == "/srv/backup"
        assert config.subvolume.destination == "store"
        assert config.transport.port == 4321
        assert config.transfer.chunk_size == 4096
        assert config.observability.log_enabled is True
        assert config.observability.log_path == "/var/log/btrfs-backup.log"

    def test_logging_disabled_by_default(self, monkeypatch):
        """Logging is off unless BTRFS_BACKUP_LOG is set."""
        monkeypatch.delenv("BTRFS_BACKUP_LOG", raising=False)

        assert ObservabilityConfig.from_env().log_enabled is False

    def test_unparseable_port(self, monkeypatch):
        """A non-numeric port is a configuration error."""
        monkeypatch.setenv("BTRFS_BACKUP_PORT", "eighty")

        with pytest.raises(ConfigurationError):
            BackupConfig.from_env()
