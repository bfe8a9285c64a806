"""Restore n8n from an ``n8n_complete_backup_*.tar.gz`` archive."""

import os
import posixpath
import re
import shutil
import tarfile
import tempfile
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path, PurePosixPath
from typing import List, Optional

from n8nctl.backup import BACKUP_PREFIX, TIMESTAMP_FORMAT, config_sources
from n8nctl.config import Config
from n8nctl.errors import RestoreError
from n8nctl.retention import BackupFile, find_backups
from n8nctl.supervisors import RecoveryResult, recover, stop_all
from n8nctl.ui import get_logger

_TIMESTAMP_RE = re.compile(re.escape(BACKUP_PREFIX) + r"(\d{8}_\d{6})")


@dataclass
class RestoreResult:
    archive: Path
    snapshot: Optional[Path]
    restored: List[str] = field(default_factory=list)
    recovery: Optional[RecoveryResult] = None


def parse_backup_timestamp(name: str) -> Optional[datetime]:
    match = _TIMESTAMP_RE.search(name)
    if not match:
        return None
    try:
        return datetime.strptime(match.group(1), TIMESTAMP_FORMAT)
    except ValueError:
        return None


def list_backups(directory: Path) -> List[BackupFile]:
    """Complete backups in ``directory``, newest first."""
    if not directory.is_dir():
        return []
    return find_backups(directory, [f"{BACKUP_PREFIX}*.tar.gz"])


# ----------------------------------------------------------------
# Extraction
# ----------------------------------------------------------------
def _link_escapes(member: tarfile.TarInfo) -> bool:
    if posixpath.isabs(member.linkname):
        return True
    if member.issym():
        target = posixpath.join(posixpath.dirname(member.name), member.linkname)
    else:
        target = member.linkname
    target = posixpath.normpath(target)
    return target == ".." or target.startswith("../")


def _check_member(member: tarfile.TarInfo) -> bool:
    """
    Raise on members that must never be extracted; return False for links
    that point outside the archive.

    ``.n8n`` may legitimately hold a symlink to somewhere else on the host
    (custom nodes, for example). Such links are left out of the extraction
    and whatever the live directory has at that path is kept.
    """
    path = PurePosixPath(member.name)
    if path.is_absolute() or ".." in path.parts:
        raise RestoreError(f"Unsafe path in backup archive: {member.name}")
    if member.isdev():
        raise RestoreError(f"Device file in backup archive: {member.name}")
    if (member.issym() or member.islnk()) and _link_escapes(member):
        get_logger().warning(
            f"Skipping link {member.name} -> {member.linkname}: it points outside the backup"
        )
        return False
    return True


def extract_backup(archive: Path, dest: Path) -> Path:
    """Extract ``archive`` into ``dest`` and return the backup directory inside it."""
    try:
        with tarfile.open(archive, "r:gz") as tar:
            members = [member for member in tar.getmembers() if _check_member(member)]
            if hasattr(tarfile, "data_filter"):
                tar.extractall(str(dest), members=members, filter="data")
            else:
                tar.extractall(str(dest), members=members)
    except (OSError, tarfile.TarError) as e:
        raise RestoreError(f"Cannot extract {archive}: {e}")

    candidates = [p for p in dest.iterdir() if p.is_dir() and p.name.startswith(BACKUP_PREFIX)]
    if len(candidates) != 1:
        raise RestoreError(
            f"Expected one {BACKUP_PREFIX}* directory in {archive}, found {len(candidates)}"
        )
    return candidates[0]


# ----------------------------------------------------------------
# Restore Steps
# ----------------------------------------------------------------
def snapshot_current(config: Config, now: Optional[datetime] = None) -> Optional[Path]:
    """Copy the live n8n directory aside before it is overwritten."""
    if not config.n8n_dir.is_dir():
        return None
    stamp = (now or datetime.now()).strftime(TIMESTAMP_FORMAT)
    base = f"n8n_pre_restore_backup_{stamp}"
    target = config.n8n_dir.parent / base
    suffix = 1
    while target.exists():
        target = config.n8n_dir.parent / f"{base}_{suffix}"
        suffix += 1
    try:
        shutil.copytree(config.n8n_dir, target / config.n8n_dir.name, symlinks=True)
    except OSError as e:
        raise RestoreError(f"Could not save current n8n data to {target}: {e}")
    get_logger().info(f"Current n8n data saved to {target}")
    return target


def find_database(extracted: Path) -> Path:
    for candidate in (extracted / "database.sqlite", extracted / "n8n_directory" / "database.sqlite"):
        if candidate.is_file():
            return candidate
    raise RestoreError(f"No database.sqlite found in {extracted.name}")


def restore_database(extracted: Path, config: Config) -> Path:
    source = find_database(extracted)
    config.n8n_dir.mkdir(parents=True, exist_ok=True)
    target = config.n8n_dir / "database.sqlite"
    shutil.copy2(source, target)
    return target


def restore_n8n_directory(extracted: Path, config: Config) -> bool:
    source = extracted / "n8n_directory"
    if not source.is_dir():
        return False
    config.n8n_dir.mkdir(parents=True, exist_ok=True)
    for item in source.iterdir():
        # The top-level database copy wins over the one inside the directory.
        if item.name == "database.sqlite":
            continue
        target = config.n8n_dir / item.name
        if item.is_dir() and not item.is_symlink():
            shutil.copytree(item, target, symlinks=True, dirs_exist_ok=True)
            continue
        if item.is_symlink() and (target.is_symlink() or target.is_file()):
            target.unlink()
        shutil.copy2(item, target, follow_symlinks=False)
    return True


def restore_configurations(extracted: Path, config: Config) -> List[str]:
    """Copy each backed-up config file to its live location."""
    config_dir = extracted / "config"
    restored = []
    if not config_dir.is_dir():
        return restored
    for name, target in config_sources(config).items():
        source = config_dir / name
        if not source.is_file():
            continue
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(source, target)
        restored.append(name)
    return restored


def set_permissions(config: Config) -> None:
    for path, mode in (
        (config.n8n_dir, 0o700),
        (config.env_file, 0o600),
        (config.ecosystem_file, 0o644),
    ):
        if path.exists():
            os.chmod(path, mode)


def restore_backup(
    config: Config,
    archive: Path,
    start: bool = True,
    now: Optional[datetime] = None,
) -> RestoreResult:
    logger = get_logger()
    if not archive.is_file():
        raise RestoreError(f"Backup archive not found: {archive}")

    with tempfile.TemporaryDirectory(prefix="n8n_restore_") as tmp:
        extracted = extract_backup(archive, Path(tmp))
        logger.info(f"Extracted {archive.name}")
        find_database(extracted)

        stopped = stop_all(config)
        if stopped:
            logger.info(f"Stopped n8n under {', '.join(s.value for s in stopped)}")

        snapshot = snapshot_current(config, now)
        result = RestoreResult(archive, snapshot)
        try:
            if restore_n8n_directory(extracted, config):
                result.restored.append("n8n_directory")
            restore_database(extracted, config)
            result.restored.append("database")
            result.restored.extend(
                f"config/{name}" for name in restore_configurations(extracted, config)
            )
            set_permissions(config)
        except OSError as e:
            saved = f"; previous data is in {snapshot}" if snapshot else ""
            raise RestoreError(f"Restore from {archive.name} failed: {e}{saved}")

    logger.info(f"Restored from {archive.name}: {', '.join(result.restored)}")
    if start:
        result.recovery = recover(config)
    return result
