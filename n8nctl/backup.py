"""
Complete n8n backups.

A backup is a gzipped tarball named ``n8n_complete_backup_<timestamp>``
holding the SQLite database (plus a readable SQL dump), a copy of the
``.n8n`` directory, the files n8n needs from around the host, optional CLI
exports of workflows and credentials, and a manifest.
"""

import os
import shutil
import socket
import sqlite3
import tarfile
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from n8nctl.config import Config
from n8nctl.errors import BackupError, CommandError, SupervisorError
from n8nctl.retention import BackupFile, RetentionRule, prune_directory
from n8nctl.supervisors import Supervisor, detect_all, start, stop
from n8nctl.system import command_exists, run_command
from n8nctl.ui import format_size, get_logger

BACKUP_PREFIX: str = "n8n_complete_backup_"
TIMESTAMP_FORMAT: str = "%Y%m%d_%H%M%S"
MANIFEST_NAME: str = "BACKUP_MANIFEST.txt"
EXCLUDED_NAMES: List[str] = ["node_modules"]
EXCLUDED_SUFFIXES: List[str] = [".log"]


@dataclass
class BackupResult:
    name: str
    archive: Path
    size: int
    components: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    pruned: List[BackupFile] = field(default_factory=list)


def backup_name(now: Optional[datetime] = None) -> str:
    return BACKUP_PREFIX + (now or datetime.now()).strftime(TIMESTAMP_FORMAT)


def config_sources(config: Config) -> Dict[str, Path]:
    """Map of name inside ``config/`` to the live file it is copied from."""
    return {
        "config.json": config.n8n_dir / "config.json",
        "config": config.n8n_dir / "config",
        "n8n.env": config.env_file,
        "n8n-ecosystem.json": config.ecosystem_file,
        "nginx_n8n.conf": config.nginx_site,
    }


# ----------------------------------------------------------------
# Staging Steps
# ----------------------------------------------------------------
def _ignore_transient(directory: str, names: List[str]) -> List[str]:
    return [
        name for name in names
        if name in EXCLUDED_NAMES or any(name.endswith(s) for s in EXCLUDED_SUFFIXES)
    ]


def copy_database(config: Config, staging: Path) -> bool:
    """Copy database.sqlite and write an SQL dump next to it."""
    logger = get_logger()
    source = config.n8n_dir / "database.sqlite"
    if not source.is_file():
        return False

    target = staging / "database.sqlite"
    src = sqlite3.connect(str(source))
    try:
        dst = sqlite3.connect(str(target))
        try:
            src.backup(dst)
        finally:
            dst.close()
        with open(staging / "database_dump.sql", "w") as f:
            for line in src.iterdump():
                f.write(f"{line}\n")
    except sqlite3.Error as e:
        logger.warning(f"SQLite backup failed ({e}); copying the file instead")
        shutil.copy2(source, target)
    finally:
        src.close()
    logger.info(f"Database backed up ({format_size(target.stat().st_size)})")
    return True


def copy_n8n_directory(config: Config, staging: Path) -> None:
    shutil.copytree(
        config.n8n_dir, staging / "n8n_directory", ignore=_ignore_transient, symlinks=True
    )


def copy_configurations(config: Config, staging: Path) -> List[str]:
    config_dir = staging / "config"
    config_dir.mkdir(parents=True, exist_ok=True)
    copied = []
    for name, source in config_sources(config).items():
        if source.is_file():
            shutil.copy2(source, config_dir / name)
            copied.append(name)
    return copied


def export_with_cli(staging: Path) -> List[str]:
    """Export workflows and credentials through the n8n CLI, when present."""
    logger = get_logger()
    if not command_exists("n8n"):
        logger.warning("n8n CLI not available; skipping workflow export")
        return []

    exported = []
    for kind in ("workflow", "credentials"):
        out_dir = staging / ("workflows" if kind == "workflow" else "credentials")
        out_dir.mkdir(parents=True, exist_ok=True)
        try:
            run_command(["n8n", f"export:{kind}", "--all", f"--output={out_dir}/"])
        except CommandError as e:
            logger.warning(f"n8n export:{kind} failed: {e}")
            continue
        exported.append(out_dir.name)
    return exported


def write_manifest(staging: Path, name: str, components: List[str], now: datetime) -> Path:
    lines = [
        "N8N COMPLETE BACKUP MANIFEST",
        "============================",
        f"Backup Date: {now.strftime('%Y-%m-%d %H:%M:%S')}",
        f"Backup Name: {name}",
        f"Server: {socket.gethostname()}",
        "",
        "Contents:",
    ]
    lines.extend(f"- {component}" for component in components)
    lines.extend(["", "Files:"])
    for path in sorted(staging.rglob("*")):
        if path.is_file():
            lines.append(f"{path.relative_to(staging)} ({format_size(path.stat().st_size)})")
    manifest = staging / MANIFEST_NAME
    manifest.write_text("\n".join(lines) + "\n")
    return manifest


# ----------------------------------------------------------------
# Service Pause
# ----------------------------------------------------------------
def pause_running(config: Config) -> List[Supervisor]:
    """Stop every supervisor running n8n; on failure restart those already stopped."""
    paused: List[Supervisor] = []
    try:
        for state in detect_all(config):
            if state.stoppable and stop(state.supervisor, config):
                paused.append(state.supervisor)
    except SupervisorError:
        resume(config, paused)
        raise
    return paused


def resume(config: Config, paused: List[Supervisor]) -> None:
    for supervisor in paused:
        try:
            start(supervisor, config)
        except SupervisorError as e:
            get_logger().error(f"Could not restart n8n after backup: {e}")


# ----------------------------------------------------------------
# Backup
# ----------------------------------------------------------------
def create_backup(
    config: Config,
    now: Optional[datetime] = None,
    pause_service: bool = False,
    export_workflows: bool = True,
    prune: bool = True,
) -> BackupResult:
    logger = get_logger()
    now = now or datetime.now()
    if not config.n8n_dir.is_dir():
        raise BackupError(f"n8n directory not found at {config.n8n_dir}")

    name = backup_name(now)
    config.backup_dir.mkdir(parents=True, exist_ok=True)
    staging = config.backup_dir / name
    archive = config.backup_dir / f"{name}.tar.gz"
    if archive.exists():
        raise BackupError(f"Backup already exists: {archive}")

    components: List[str] = []
    warnings: List[str] = []
    try:
        staging.mkdir()
    except FileExistsError:
        raise BackupError(f"Staging directory already exists: {staging}")
    except OSError as e:
        raise BackupError(f"Cannot create staging directory {staging}: {e}")
    try:
        paused = pause_running(config) if pause_service else []
        try:
            if copy_database(config, staging):
                components.append("database")
            else:
                msg = f"n8n database not found at {config.n8n_dir / 'database.sqlite'}"
                logger.warning(msg)
                warnings.append(msg)
        finally:
            resume(config, paused)

        copy_n8n_directory(config, staging)
        components.append("n8n_directory")

        copied = copy_configurations(config, staging)
        components.extend(f"config/{item}" for item in copied)

        if export_workflows:
            components.extend(export_with_cli(staging))

        write_manifest(staging, name, components, now)

        logger.info(f"Creating archive {archive}...")
        with tarfile.open(archive, "w:gz") as tar:
            tar.add(str(staging), arcname=name)
    except (OSError, tarfile.TarError) as e:
        if archive.exists():
            archive.unlink()
        raise BackupError(f"Backup failed: {e}")
    finally:
        shutil.rmtree(staging, ignore_errors=True)

    os.chmod(archive, 0o600)
    result = BackupResult(name, archive, archive.stat().st_size, components, warnings)
    logger.info(f"Backup created: {archive} ({format_size(result.size)})")

    if prune:
        rule = RetentionRule(
            name="complete",
            directories=[str(config.backup_dir)],
            patterns=[f"{BACKUP_PREFIX}*.tar.gz"],
            keep=config.backup_keep,
        )
        result.pruned = prune_directory(config.backup_dir, rule).removed
    return result
