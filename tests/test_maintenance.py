"""Tests for system cleanup and the maintenance runner."""

import gzip
import os
import time
from datetime import datetime
from unittest.mock import patch

import pytest

from n8nctl.errors import ConfigurationError
from n8nctl.maintenance import (
    cleanup_docker,
    cleanup_logs,
    compress_large_logs,
    prune_older_than,
    run_maintenance,
    vacuum_journal,
)
from n8nctl.retention import RetentionReport

DAY = 86400


def _aged(path, days, content=b"data"):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(content)
    mtime = time.time() - days * DAY
    os.utime(path, (mtime, mtime))
    return path


class TestPruneOlderThan:
    def test_removes_only_old_matches(self, tmp_path):
        old = _aged(tmp_path / "a" / "old.gz", 40)
        new = _aged(tmp_path / "new.gz", 1)
        other = _aged(tmp_path / "old.txt", 40)
        removed = prune_older_than(tmp_path, "*.gz", 30)
        assert [f.path for f in removed] == [old]
        assert not old.exists()
        assert new.exists()
        assert other.exists()

    def test_dry_run(self, tmp_path):
        old = _aged(tmp_path / "old.gz", 40)
        removed = prune_older_than(tmp_path, "*.gz", 30, dry_run=True)
        assert len(removed) == 1
        assert old.exists()

    def test_missing_root(self, tmp_path):
        assert prune_older_than(tmp_path / "nope", "*", 1) == []


class TestCompressLogs:
    def test_large_logs_gzipped(self, tmp_path):
        big = _aged(tmp_path / "n8n.log", 0, b"line\n" * 100)
        small = _aged(tmp_path / "small.log", 0, b"x")
        compressed = compress_large_logs(tmp_path, min_bytes=100)
        assert compressed == [tmp_path / "n8n.log.gz"]
        assert not big.exists()
        assert small.exists()
        with gzip.open(tmp_path / "n8n.log.gz", "rb") as f:
            assert f.read() == b"line\n" * 100

    def test_existing_gz_not_overwritten(self, tmp_path):
        _aged(tmp_path / "n8n.log", 0, b"x" * 200)
        _aged(tmp_path / "n8n.log.gz", 0, b"keep")
        assert compress_large_logs(tmp_path, min_bytes=100) == []
        assert (tmp_path / "n8n.log").exists()

    def test_cleanup_logs_rotated(self, tmp_path):
        _aged(tmp_path / "syslog.3", 10)
        _aged(tmp_path / "syslog.1", 2)
        _aged(tmp_path / "auth.log.2.gz", 45)
        result = cleanup_logs(tmp_path)
        names = sorted(f.path.name for f in result["removed"])
        assert names == ["auth.log.2.gz", "syslog.3"]
        assert (tmp_path / "syslog.1").exists()


class TestExternalTools:
    def test_docker_skipped_when_absent(self):
        with patch("n8nctl.maintenance.command_exists", return_value=False), \
                patch("n8nctl.maintenance.run_command") as mock_run:
            assert cleanup_docker() == "skipped"
        mock_run.assert_not_called()

    def test_docker_prunes(self):
        with patch("n8nctl.maintenance.command_exists", return_value=True), \
                patch("n8nctl.maintenance.run_command") as mock_run:
            mock_run.return_value.returncode = 0
            assert cleanup_docker() == "success"
        assert mock_run.call_count == 4

    def test_journal_dry_run(self):
        with patch("n8nctl.maintenance.command_exists", return_value=True), \
                patch("n8nctl.maintenance.run_command") as mock_run:
            assert vacuum_journal(dry_run=True) == "success"
        mock_run.assert_not_called()


class TestRunMaintenance:
    def test_unknown_mode(self, config):
        with pytest.raises(ConfigurationError):
            run_maintenance(config, "everything")

    def test_backups_mode_only_applies_retention(self, config):
        reports = [RetentionReport("n8n", freed_bytes=2048)]
        with patch("n8nctl.maintenance.apply_rules", return_value=reports) as mock_rules, \
                patch("n8nctl.maintenance.cleanup_docker") as mock_docker:
            report = run_maintenance(config, "backups", dry_run=True)
        mock_rules.assert_called_once_with(dry_run=True)
        mock_docker.assert_not_called()
        assert report.freed_bytes == 2048
        assert report.report_file is None

    def test_auto_mode_writes_report(self, config, tmp_path):
        tmp_dir, var_tmp = tmp_path / "tmp", tmp_path / "var_tmp"
        _aged(tmp_dir / "stale" / "file", 10, b"12345")
        log_dir = tmp_path / "varlog"
        log_dir.mkdir()
        with patch("n8nctl.maintenance.apply_rules", return_value=[]), \
                patch("n8nctl.maintenance.command_exists", return_value=False):
            report = run_maintenance(
                config, "auto", tmp_dirs=(tmp_dir, var_tmp), log_dir=log_dir,
                now=datetime(2024, 6, 2, 3, 0),
            )
        assert not (tmp_dir / "stale").exists()
        assert report.steps["docker"] == "skipped"
        assert report.steps["journal"] == "skipped"
        assert report.freed_bytes == 5
        assert report.report_file == config.scripts_log_dir / "n8nctl_maintenance_report_20240602_030000.txt"
        text = report.report_file.read_text()
        assert "Mode: auto" in text
        assert "No n8n backups found" in text
