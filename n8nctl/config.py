"""
Host configuration for n8nctl.

Defaults describe the single Ubuntu host the toolkit was written for. Every
field can be overridden from an ``N8NCTL_<FIELD>`` environment variable or a
JSON file passed with ``--config``.
"""

import json
import os
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union

from n8nctl.errors import ConfigurationError

ENV_PREFIX: str = "N8NCTL_"


# ----------------------------------------------------------------
# Data Structures
# ----------------------------------------------------------------
@dataclass
class Config:
    """Paths, URLs and thresholds used by every n8nctl command."""

    # n8n application files
    n8n_dir: Path = field(default_factory=lambda: Path("/root/.n8n"))
    env_file: Path = field(default_factory=lambda: Path("/root/.env"))
    ecosystem_file: Path = field(default_factory=lambda: Path("/root/n8n-ecosystem.json"))
    compose_file: Path = field(default_factory=lambda: Path("/root/docker-compose.yml"))

    # System integration
    systemd_unit: Path = field(
        default_factory=lambda: Path("/etc/systemd/system/n8n.service")
    )
    nginx_site: Path = field(default_factory=lambda: Path("/etc/nginx/sites-available/n8n"))
    service_name: str = "n8n"
    docker_image: str = "n8nio/n8n"

    # Health checks
    local_url: str = "http://127.0.0.1:5678"
    proxy_url: str = "http://127.0.0.1"
    public_domain: str = ""
    accepted_status: List[int] = field(default_factory=lambda: [200, 401, 302])
    max_attempts: int = 30
    poll_interval: float = 2.0
    request_timeout: float = 5.0

    # Backups
    backup_dir: Path = field(default_factory=lambda: Path("/root/n8n_backups"))
    backup_keep: int = 10

    # Logging
    log_file: Path = field(default_factory=lambda: Path("/var/log/n8nctl.log"))
    scripts_log_dir: Path = field(default_factory=lambda: Path("/var/log"))

    # Supervisors tried by recovery, in order
    supervisor_order: List[str] = field(
        default_factory=lambda: ["systemd", "pm2", "docker"]
    )

    @property
    def public_url(self) -> Optional[str]:
        if not self.public_domain:
            return None
        return f"https://{self.public_domain}"

    def to_dict(self) -> Dict[str, Any]:
        """Convert the config to a JSON-friendly dictionary."""
        return {
            key: str(value) if isinstance(value, Path) else value
            for key, value in asdict(self).items()
        }

    # ----------------------------------------------------------------
    # Loading
    # ----------------------------------------------------------------
    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Config":
        environ = os.environ if environ is None else environ
        config = cls()
        overrides = {
            f.name: environ[ENV_PREFIX + f.name.upper()]
            for f in fields(cls)
            if ENV_PREFIX + f.name.upper() in environ
        }
        config.update(overrides)
        return config

    @classmethod
    def load(
        cls,
        path: Optional[Union[str, Path]] = None,
        environ: Optional[Mapping[str, str]] = None,
    ) -> "Config":
        """Environment overrides first, then the JSON file on top."""
        config = cls.from_env(environ)
        if path is None:
            return config

        path = Path(path)
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            raise ConfigurationError(f"Config file not found: {path}")
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigurationError(f"Cannot read config file {path}: {e}")
        if not isinstance(data, dict):
            raise ConfigurationError(f"Config file {path} must contain a JSON object")
        config.update(data)
        return config

    def update(self, values: Mapping[str, Any]) -> None:
        known = {f.name: f for f in fields(self)}
        unknown = sorted(set(values) - set(known))
        if unknown:
            raise ConfigurationError(f"Unknown configuration keys: {', '.join(unknown)}")
        for name, raw in values.items():
            setattr(self, name, _coerce(name, raw, getattr(self, name)))


def _coerce(name: str, raw: Any, current: Any) -> Any:
    """Convert a raw override (str from env, JSON value from file) to the field's type."""
    try:
        if isinstance(current, Path):
            return Path(raw)
        if isinstance(current, bool):
            return raw if isinstance(raw, bool) else str(raw).lower() in ("1", "true", "yes")
        if isinstance(current, int):
            return int(raw)
        if isinstance(current, float):
            return float(raw)
        if isinstance(current, list):
            items = raw if isinstance(raw, list) else [p.strip() for p in str(raw).split(",") if p.strip()]
            if current and isinstance(current[0], int):
                return [int(item) for item in items]
            return [str(item) for item in items]
        return str(raw)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid value for {name}: {raw!r} ({e})")
