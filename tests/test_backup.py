"""Tests for complete n8n backups."""

import os
import sqlite3
import stat
import tarfile
from datetime import datetime
from unittest.mock import patch

import pytest

from n8nctl.backup import backup_name, create_backup, export_with_cli
from n8nctl.errors import BackupError, SupervisorError
from n8nctl.supervisors import Supervisor, SupervisorState

NOW = datetime(2024, 6, 1, 2, 30, 0)


@pytest.fixture
def n8n_home(config):
    config.n8n_dir.mkdir(parents=True)
    db = sqlite3.connect(str(config.n8n_dir / "database.sqlite"))
    db.execute("CREATE TABLE workflow_entity (id INTEGER PRIMARY KEY, name TEXT)")
    db.execute("INSERT INTO workflow_entity (name) VALUES ('Audiobook pipeline')")
    db.commit()
    db.close()
    (config.n8n_dir / "config").write_text('{"encryptionKey": "abc"}')
    (config.n8n_dir / "n8nEventLog.log").write_text("noise")
    (config.n8n_dir / "node_modules" / "pkg").mkdir(parents=True)
    (config.n8n_dir / "node_modules" / "pkg" / "index.js").write_text("x")
    (config.n8n_dir / "nodes").mkdir()
    (config.n8n_dir / "nodes" / "custom.json").write_text("{}")
    config.env_file.write_text("N8N_PORT=5678\n")
    config.ecosystem_file.write_text("{}")
    return config


def _names(archive):
    with tarfile.open(archive, "r:gz") as tar:
        return set(tar.getnames())


class TestBackupName:
    def test_format(self):
        assert backup_name(NOW) == "n8n_complete_backup_20240601_023000"


class TestCreateBackup:
    def test_archive_contents(self, n8n_home):
        result = create_backup(n8n_home, now=NOW, export_workflows=False)
        root = "n8n_complete_backup_20240601_023000"

        assert result.archive == n8n_home.backup_dir / f"{root}.tar.gz"
        names = _names(result.archive)
        assert f"{root}/database.sqlite" in names
        assert f"{root}/database_dump.sql" in names
        assert f"{root}/BACKUP_MANIFEST.txt" in names
        assert f"{root}/n8n_directory/nodes/custom.json" in names
        assert f"{root}/config/config" in names
        assert f"{root}/config/n8n.env" in names
        assert f"{root}/config/n8n-ecosystem.json" in names
        assert f"{root}/config/nginx_n8n.conf" not in names
        assert not any("node_modules" in n for n in names)
        assert not any(n.endswith(".log") for n in names)
        assert result.components[:2] == ["database", "n8n_directory"]
        assert result.warnings == []

    def test_staging_removed_and_archive_private(self, n8n_home):
        result = create_backup(n8n_home, now=NOW, export_workflows=False)
        assert not (n8n_home.backup_dir / result.name).exists()
        assert stat.S_IMODE(result.archive.stat().st_mode) == 0o600

    def test_sql_dump_readable(self, n8n_home, tmp_path):
        result = create_backup(n8n_home, now=NOW, export_workflows=False)
        with tarfile.open(result.archive, "r:gz") as tar:
            dump = tar.extractfile(f"{result.name}/database_dump.sql").read().decode()
        assert "Audiobook pipeline" in dump

    def test_missing_database_is_warning(self, n8n_home):
        (n8n_home.n8n_dir / "database.sqlite").unlink()
        result = create_backup(n8n_home, now=NOW, export_workflows=False)
        assert "database" not in result.components
        assert len(result.warnings) == 1

    def test_missing_n8n_dir(self, config):
        with pytest.raises(BackupError, match="not found"):
            create_backup(config, now=NOW)

    def test_old_backups_pruned(self, n8n_home):
        n8n_home.backup_dir.mkdir(parents=True)
        n8n_home.backup_keep = 2
        for day in (1, 2, 3):
            old = n8n_home.backup_dir / f"n8n_complete_backup_202401{day:02d}_000000.tar.gz"
            old.write_bytes(b"old")
            mtime = 1_700_000_000 + day
            os.utime(old, (mtime, mtime))

        result = create_backup(n8n_home, now=NOW, export_workflows=False)

        remaining = sorted(p.name for p in n8n_home.backup_dir.glob("*.tar.gz"))
        assert remaining == [
            "n8n_complete_backup_20240103_000000.tar.gz",
            "n8n_complete_backup_20240601_023000.tar.gz",
        ]
        assert len(result.pruned) == 2

    def test_no_prune(self, n8n_home):
        n8n_home.backup_dir.mkdir(parents=True)
        n8n_home.backup_keep = 1
        (n8n_home.backup_dir / "n8n_complete_backup_20240101_000000.tar.gz").write_bytes(b"old")
        create_backup(n8n_home, now=NOW, export_workflows=False, prune=False)
        assert len(list(n8n_home.backup_dir.glob("*.tar.gz"))) == 2

    def test_pause_stops_and_restarts(self, n8n_home):
        states = [
            SupervisorState(Supervisor.SYSTEMD, False, "inactive", False),
            SupervisorState(Supervisor.PM2, True, "online", True),
            SupervisorState(Supervisor.DOCKER, False, "not installed", False),
        ]
        with patch("n8nctl.backup.detect_all", return_value=states), \
                patch("n8nctl.backup.stop") as mock_stop, \
                patch("n8nctl.backup.start") as mock_start:
            create_backup(n8n_home, now=NOW, pause_service=True, export_workflows=False)
        mock_stop.assert_called_once_with(Supervisor.PM2, n8n_home)
        mock_start.assert_called_once_with(Supervisor.PM2, n8n_home)

    def test_pause_stops_crash_looping_unit(self, n8n_home):
        states = [
            SupervisorState(Supervisor.SYSTEMD, True, "activating", False),
            SupervisorState(Supervisor.PM2, True, "stopped", False),
            SupervisorState(Supervisor.DOCKER, False, "not installed", False),
        ]
        with patch("n8nctl.backup.detect_all", return_value=states), \
                patch("n8nctl.backup.stop", return_value=True) as mock_stop, \
                patch("n8nctl.backup.start") as mock_start:
            create_backup(n8n_home, now=NOW, pause_service=True, export_workflows=False)
        mock_stop.assert_called_once_with(Supervisor.SYSTEMD, n8n_home)
        mock_start.assert_called_once_with(Supervisor.SYSTEMD, n8n_home)

    def test_failed_pause_restarts_what_was_stopped(self, n8n_home):
        states = [
            SupervisorState(Supervisor.SYSTEMD, True, "active", True),
            SupervisorState(Supervisor.PM2, True, "online", True),
            SupervisorState(Supervisor.DOCKER, False, "not installed", False),
        ]
        with patch("n8nctl.backup.detect_all", return_value=states), \
                patch("n8nctl.backup.stop", side_effect=[True, SupervisorError("pm2 stop failed")]), \
                patch("n8nctl.backup.start") as mock_start:
            with pytest.raises(SupervisorError, match="pm2"):
                create_backup(n8n_home, now=NOW, pause_service=True, export_workflows=False)
        mock_start.assert_called_once_with(Supervisor.SYSTEMD, n8n_home)
        assert list(n8n_home.backup_dir.iterdir()) == []

    def test_leftover_staging_directory(self, n8n_home):
        (n8n_home.backup_dir / backup_name(NOW)).mkdir(parents=True)
        with pytest.raises(BackupError, match="Staging directory already exists"):
            create_backup(n8n_home, now=NOW, export_workflows=False)


class TestExport:
    def test_skipped_without_cli(self, tmp_path):
        with patch("n8nctl.backup.command_exists", return_value=False), \
                patch("n8nctl.backup.run_command") as mock_run:
            assert export_with_cli(tmp_path) == []
        mock_run.assert_not_called()

    def test_exports_both_kinds(self, tmp_path):
        with patch("n8nctl.backup.command_exists", return_value=True), \
                patch("n8nctl.backup.run_command") as mock_run:
            assert export_with_cli(tmp_path) == ["workflows", "credentials"]
        commands = [c[0][0][1] for c in mock_run.call_args_list]
        assert commands == ["export:workflow", "export:credentials"]
