"""Shared fixtures for the n8nctl test suite."""

import os

import pytest

os.environ.setdefault("DISABLE_COLORS", "true")

from n8nctl.config import Config


@pytest.fixture
def config(tmp_path):
    """A Config whose every path lives under tmp_path."""
    home = tmp_path / "root"
    home.mkdir()
    return Config(
        n8n_dir=home / ".n8n",
        env_file=home / ".env",
        ecosystem_file=home / "n8n-ecosystem.json",
        compose_file=home / "docker-compose.yml",
        systemd_unit=tmp_path / "etc" / "n8n.service",
        nginx_site=tmp_path / "etc" / "nginx" / "n8n",
        backup_dir=home / "n8n_backups",
        log_file=tmp_path / "log" / "n8nctl.log",
        scripts_log_dir=tmp_path / "log",
        max_attempts=3,
        poll_interval=0.0,
    )
