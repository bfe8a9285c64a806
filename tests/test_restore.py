"""Tests for restoring complete backups."""

import io
import os
import sqlite3
import stat
import tarfile
from datetime import datetime
from unittest.mock import MagicMock, patch

import pytest

from n8nctl.backup import create_backup
from n8nctl.errors import RestoreError
from n8nctl.restore import (
    extract_backup,
    list_backups,
    parse_backup_timestamp,
    restore_backup,
    snapshot_current,
)

NOW = datetime(2024, 6, 1, 2, 30, 0)


def _workflow_names(db_path):
    db = sqlite3.connect(str(db_path))
    try:
        return [row[0] for row in db.execute("SELECT name FROM workflow_entity")]
    finally:
        db.close()


def _seed(config):
    config.n8n_dir.mkdir(parents=True)
    db = sqlite3.connect(str(config.n8n_dir / "database.sqlite"))
    db.execute("CREATE TABLE workflow_entity (id INTEGER PRIMARY KEY, name TEXT)")
    db.execute("INSERT INTO workflow_entity (name) VALUES ('Backed up')")
    db.commit()
    db.close()
    (config.n8n_dir / "config").write_text('{"encryptionKey": "abc"}')
    config.env_file.write_text("N8N_PORT=5678\n")


@pytest.fixture
def archive(config):
    _seed(config)
    return create_backup(config, now=NOW, export_workflows=False).archive


def _tar_with(path, name, data=b"x"):
    with tarfile.open(path, "w:gz") as tar:
        info = tarfile.TarInfo(name)
        info.size = len(data)
        tar.addfile(info, io.BytesIO(data))
    return path


class TestTimestamps:
    def test_parse(self):
        assert parse_backup_timestamp("n8n_complete_backup_20240601_023000.tar.gz") == NOW

    def test_unparseable(self):
        assert parse_backup_timestamp("n8n_backup.tar.gz") is None
        assert parse_backup_timestamp("n8n_complete_backup_20241301_000000.tar.gz") is None

    def test_list_newest_first(self, tmp_path):
        for day in (1, 3, 2):
            path = tmp_path / f"n8n_complete_backup_202401{day:02d}_000000.tar.gz"
            path.write_bytes(b"x")
            os.utime(path, (1_700_000_000 + day, 1_700_000_000 + day))
        (tmp_path / "unrelated.tar.gz").write_bytes(b"x")
        assert [b.path.name[-22:-7] for b in list_backups(tmp_path)] == [
            "20240103_000000", "20240102_000000", "20240101_000000",
        ]

    def test_list_missing_dir(self, tmp_path):
        assert list_backups(tmp_path / "nope") == []


class TestExtract:
    def test_rejects_parent_traversal(self, tmp_path):
        bad = _tar_with(tmp_path / "bad.tar.gz", "../evil.sh")
        dest = tmp_path / "out"
        dest.mkdir()
        with pytest.raises(RestoreError, match="Unsafe"):
            extract_backup(bad, dest)
        assert not (tmp_path / "evil.sh").exists()

    def test_rejects_absolute_paths(self, tmp_path):
        bad = _tar_with(tmp_path / "abs.tar.gz", "/etc/cron.d/evil")
        dest = tmp_path / "out"
        dest.mkdir()
        with pytest.raises(RestoreError, match="Unsafe"):
            extract_backup(bad, dest)

    def test_requires_backup_directory(self, tmp_path):
        other = _tar_with(tmp_path / "other.tar.gz", "something/file.txt")
        dest = tmp_path / "out"
        dest.mkdir()
        with pytest.raises(RestoreError, match="Expected one"):
            extract_backup(other, dest)

    def test_not_a_tarball(self, tmp_path):
        junk = tmp_path / "junk.tar.gz"
        junk.write_bytes(b"not a tarball")
        with pytest.raises(RestoreError):
            extract_backup(junk, tmp_path)


class TestRestore:
    def test_full_restore(self, config, archive):
        # Diverge the live data from the backup.
        (config.n8n_dir / "database.sqlite").unlink()
        db = sqlite3.connect(str(config.n8n_dir / "database.sqlite"))
        db.execute("CREATE TABLE workflow_entity (id INTEGER PRIMARY KEY, name TEXT)")
        db.execute("INSERT INTO workflow_entity (name) VALUES ('Broken')")
        db.commit()
        db.close()
        config.env_file.write_text("N8N_PORT=9999\n")
        os.chmod(config.env_file, 0o644)

        with patch("n8nctl.restore.stop_all", return_value=[]) as mock_stop_all, \
                patch("n8nctl.restore.recover") as mock_recover:
            result = restore_backup(config, archive, start=False, now=NOW)

        mock_stop_all.assert_called_once_with(config)
        mock_recover.assert_not_called()
        assert _workflow_names(config.n8n_dir / "database.sqlite") == ["Backed up"]
        assert config.env_file.read_text() == "N8N_PORT=5678\n"
        assert stat.S_IMODE(config.env_file.stat().st_mode) == 0o600
        assert stat.S_IMODE(config.n8n_dir.stat().st_mode) == 0o700
        assert "database" in result.restored
        assert "config/n8n.env" in result.restored

        snapshot_db = result.snapshot / ".n8n" / "database.sqlite"
        assert _workflow_names(snapshot_db) == ["Broken"]

    def test_start_runs_recovery(self, config, archive):
        recovery = MagicMock()
        with patch("n8nctl.restore.stop_all", return_value=[]), \
                patch("n8nctl.restore.recover", return_value=recovery) as mock_recover:
            result = restore_backup(config, archive, now=NOW)
        mock_recover.assert_called_once_with(config)
        assert result.recovery is recovery

    def test_archive_without_database(self, config, tmp_path):
        bad = _tar_with(tmp_path / "n8n_complete_backup_20240101_000000.tar.gz",
                        "n8n_complete_backup_20240101_000000/config/n8n.env")
        with patch("n8nctl.restore.stop_all") as mock_stop_all:
            with pytest.raises(RestoreError, match="database.sqlite"):
                restore_backup(config, bad, start=False)
        mock_stop_all.assert_not_called()

    def test_missing_archive(self, config, tmp_path):
        with pytest.raises(RestoreError, match="not found"):
            restore_backup(config, tmp_path / "nope.tar.gz")

    def test_round_trip_with_symlinked_entries(self, config, tmp_path):
        _seed(config)
        custom_nodes = tmp_path / "opt" / "custom-nodes"
        custom_nodes.mkdir(parents=True)
        (custom_nodes / "package.json").write_text("{}")
        (config.n8n_dir / "custom").symlink_to(custom_nodes)
        (config.n8n_dir / "nodes").mkdir()
        (config.n8n_dir / "nodes" / "node.json").write_text("{}")
        (config.n8n_dir / "nodes_current").symlink_to("nodes")
        archive = create_backup(config, now=NOW, export_workflows=False).archive

        (config.n8n_dir / "nodes_current").unlink()
        (config.n8n_dir / "nodes_current").symlink_to("elsewhere")

        with patch("n8nctl.restore.stop_all", return_value=[]), \
                patch("n8nctl.restore.recover"):
            result = restore_backup(config, archive, start=False, now=NOW)

        assert "database" in result.restored
        assert _workflow_names(config.n8n_dir / "database.sqlite") == ["Backed up"]
        assert os.readlink(config.n8n_dir / "nodes_current") == "nodes"
        assert os.readlink(config.n8n_dir / "custom") == str(custom_nodes)
        assert (custom_nodes / "package.json").read_text() == "{}"


class TestLinks:
    ROOT = "n8n_complete_backup_20240101_000000/n8n_directory"

    def _archive(self, path, links):
        with tarfile.open(path, "w:gz") as tar:
            data = b"{}"
            info = tarfile.TarInfo(f"{self.ROOT}/nodes/custom.json")
            info.size = len(data)
            tar.addfile(info, io.BytesIO(data))
            for name, target in links:
                link = tarfile.TarInfo(f"{self.ROOT}/{name}")
                link.type = tarfile.SYMTYPE
                link.linkname = target
                tar.addfile(link)
        return path

    def test_links_outside_the_backup_are_skipped(self, tmp_path):
        archive = self._archive(tmp_path / "links.tar.gz", [
            ("custom", "/opt/custom-nodes"),
            ("up", "../../../etc"),
            ("current", "nodes"),
        ])
        dest = tmp_path / "out"
        dest.mkdir()
        directory = extract_backup(archive, dest) / "n8n_directory"
        assert not os.path.lexists(directory / "custom")
        assert not os.path.lexists(directory / "up")
        assert (directory / "current").is_symlink()
        assert (directory / "current" / "custom.json").read_bytes() == b"{}"

    def test_relative_link_within_the_backup_is_kept(self, tmp_path):
        archive = self._archive(tmp_path / "links.tar.gz", [("nodes/self", "../nodes/custom.json")])
        dest = tmp_path / "out"
        dest.mkdir()
        directory = extract_backup(archive, dest) / "n8n_directory"
        assert (directory / "nodes" / "self").read_bytes() == b"{}"


class TestSnapshot:
    def test_same_second_gets_a_suffix(self, config):
        _seed(config)
        first = snapshot_current(config, NOW)
        second = snapshot_current(config, NOW)
        assert first.name == "n8n_pre_restore_backup_20240601_023000"
        assert second.name == "n8n_pre_restore_backup_20240601_023000_1"
        assert (second / ".n8n" / "database.sqlite").is_file()

    def test_nothing_to_snapshot(self, config):
        assert snapshot_current(config, NOW) is None
