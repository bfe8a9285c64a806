"""Tests for Config defaults, environment overrides and JSON loading."""

import json
from pathlib import Path

import pytest

from n8nctl.config import Config
from n8nctl.errors import ConfigurationError


class TestDefaults:
    def test_host_defaults(self):
        config = Config()
        assert config.n8n_dir == Path("/root/.n8n")
        assert config.local_url == "http://127.0.0.1:5678"
        assert config.accepted_status == [200, 401, 302]
        assert config.max_attempts == 30
        assert config.poll_interval == 2.0
        assert config.supervisor_order == ["systemd", "pm2", "docker"]

    def test_public_url_requires_domain(self):
        assert Config().public_url is None
        assert Config(public_domain="n8n.example.com").public_url == "https://n8n.example.com"

    def test_to_dict_stringifies_paths(self):
        data = Config().to_dict()
        assert data["backup_dir"] == "/root/n8n_backups"
        json.dumps(data)


class TestEnvironment:
    def test_overrides_are_coerced(self):
        config = Config.from_env({
            "N8NCTL_MAX_ATTEMPTS": "5",
            "N8NCTL_POLL_INTERVAL": "0.5",
            "N8NCTL_BACKUP_DIR": "/srv/backups",
            "N8NCTL_ACCEPTED_STATUS": "200, 204",
            "N8NCTL_SUPERVISOR_ORDER": "pm2,docker",
        })
        assert config.max_attempts == 5
        assert config.poll_interval == 0.5
        assert config.backup_dir == Path("/srv/backups")
        assert config.accepted_status == [200, 204]
        assert config.supervisor_order == ["pm2", "docker"]

    def test_unrelated_variables_ignored(self):
        config = Config.from_env({"PATH": "/usr/bin", "N8NCTL": "x"})
        assert config == Config()

    def test_invalid_number_raises(self):
        with pytest.raises(ConfigurationError, match="max_attempts"):
            Config.from_env({"N8NCTL_MAX_ATTEMPTS": "many"})


class TestLoad:
    def test_file_layers_over_environment(self, tmp_path):
        path = tmp_path / "n8nctl.json"
        path.write_text(json.dumps({"backup_keep": 4, "public_domain": "n8n.example.com"}))
        config = Config.load(path, environ={"N8NCTL_BACKUP_KEEP": "7", "N8NCTL_SERVICE_NAME": "flows"})
        assert config.backup_keep == 4
        assert config.service_name == "flows"
        assert config.public_domain == "n8n.example.com"

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError, match="not found"):
            Config.load(tmp_path / "missing.json", environ={})

    def test_invalid_json(self, tmp_path):
        path = tmp_path / "bad.json"
        path.write_text("{not json")
        with pytest.raises(ConfigurationError):
            Config.load(path, environ={})

    def test_non_object(self, tmp_path):
        path = tmp_path / "list.json"
        path.write_text("[1, 2]")
        with pytest.raises(ConfigurationError, match="JSON object"):
            Config.load(path, environ={})

    def test_unknown_keys_rejected(self, tmp_path):
        path = tmp_path / "extra.json"
        path.write_text(json.dumps({"backup_keep": 3, "github_token": "x"}))
        with pytest.raises(ConfigurationError, match="github_token"):
            Config.load(path, environ={})
