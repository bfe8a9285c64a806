"""
Backup retention: keep the N newest archives, delete the rest.

Rules are evaluated per directory. Within a directory, the files matched by
any of a rule's patterns are pooled (a file matching two patterns counts
once), sorted newest first by modification time, and everything past the
first ``keep`` entries is removed.
"""

import fnmatch
import glob
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

from n8nctl.ui import format_size, get_logger

ARCHIVE_SUFFIXES: Tuple[str, ...] = (".tar.gz", ".tar.bz2", ".tar.xz", ".tgz", ".zip", ".sql.gz")
MANIFEST_SUFFIX: str = "_MANIFEST.txt"
SHARED_MANIFEST: str = "backup_MANIFEST.txt"
N8N_BACKUP_GLOB: str = "n8n_*backup*"


@dataclass
class BackupFile:
    path: Path
    mtime: float
    size: int

    @classmethod
    def from_path(cls, path: Path) -> "BackupFile":
        st = path.stat()
        return cls(path, st.st_mtime, st.st_size)


@dataclass
class RetentionRule:
    name: str
    directories: List[str]
    patterns: List[str]
    keep: int
    exclude: List[str] = field(default_factory=list)
    manifests: bool = False


@dataclass
class RetentionReport:
    rule: str
    kept: List[BackupFile] = field(default_factory=list)
    removed: List[BackupFile] = field(default_factory=list)
    freed_bytes: int = 0
    dry_run: bool = False

    def merge(self, other: "RetentionReport") -> None:
        self.kept.extend(other.kept)
        self.removed.extend(other.removed)
        self.freed_bytes += other.freed_bytes


DEFAULT_RULES: List[RetentionRule] = [
    RetentionRule(
        name="n8n",
        directories=["/root", "/home/*/backups", "/var/backups", "/opt/backups"],
        patterns=["n8n_minimal_backup_*.tar.gz", "n8n_backup_*.tar.gz", "n8n_*_backup_*.tar.gz"],
        keep=3,
        manifests=True,
    ),
    RetentionRule(
        name="incremental",
        directories=["/var/backups", "/home/*/backups", "/opt/backups", "/tmp", "/var/tmp"],
        patterns=["*.tar.gz", "*.tar.bz2", "*.tar.xz", "*.zip",
                  "*dump*.sql.gz", "*.sql", "*.sql.gz"],
        keep=3,
        exclude=[N8N_BACKUP_GLOB],
    ),
    RetentionRule(
        name="full",
        directories=["/var/backups", "/opt/backups", "/home/*/backups", "/root"],
        patterns=["*full*backup*", "*system*backup*", "*complete*backup*",
                  "*.img", "*.iso", "*clone*", "*image*"],
        keep=2,
        exclude=[N8N_BACKUP_GLOB],
    ),
]


# ----------------------------------------------------------------
# Discovery
# ----------------------------------------------------------------
def expand_directories(patterns: Sequence[str]) -> List[Path]:
    """Expand shell-style directory globs, keeping existing directories only."""
    seen = set()
    directories = []
    for pattern in patterns:
        matches = sorted(glob.glob(pattern)) if any(c in pattern for c in "*?[") else [pattern]
        for match in matches:
            path = Path(match)
            key = os.path.realpath(match)
            if path.is_dir() and key not in seen:
                seen.add(key)
                directories.append(path)
    return directories


def _matches(name: str, patterns: Sequence[str]) -> bool:
    return any(fnmatch.fnmatchcase(name, pattern) for pattern in patterns)


def find_backups(
    directory: Path, patterns: Sequence[str], exclude: Sequence[str] = ()
) -> List[BackupFile]:
    """Regular files directly inside ``directory`` matching any pattern, newest first."""
    found = []
    try:
        entries = list(os.scandir(directory))
    except OSError as e:
        get_logger().warning(f"Cannot scan {directory}: {e}")
        return []

    for entry in entries:
        if not entry.is_file(follow_symlinks=False):
            continue
        if not _matches(entry.name, patterns) or _matches(entry.name, exclude):
            continue
        try:
            found.append(BackupFile.from_path(Path(entry.path)))
        except FileNotFoundError:
            continue
    found.sort(key=lambda f: (f.mtime, f.path.name), reverse=True)
    return found


def split_retained(
    files: Sequence[BackupFile], keep: int
) -> Tuple[List[BackupFile], List[BackupFile]]:
    """Split an already newest-first list into (kept, expired)."""
    if keep < 0:
        raise ValueError("keep must be zero or greater")
    return list(files[:keep]), list(files[keep:])


def archive_stem(path: Path) -> str:
    name = path.name
    for suffix in ARCHIVE_SUFFIXES:
        if name.endswith(suffix):
            return name[: -len(suffix)]
    return path.stem


def manifest_for(path: Path) -> Path:
    return path.with_name(archive_stem(path) + MANIFEST_SUFFIX)


# ----------------------------------------------------------------
# Applying rules
# ----------------------------------------------------------------
def _remove(path: Path, dry_run: bool) -> None:
    if dry_run:
        return
    try:
        path.unlink()
    except FileNotFoundError:
        pass


def prune_directory(
    directory: Path, rule: RetentionRule, dry_run: bool = False
) -> RetentionReport:
    logger = get_logger()
    report = RetentionReport(rule.name, dry_run=dry_run)
    backups = find_backups(directory, rule.patterns, rule.exclude)
    if not backups:
        return report

    logger.info(f"{rule.name}: {len(backups)} backups in {directory}, keeping {rule.keep}")
    kept, expired = split_retained(backups, rule.keep)
    report.kept.extend(kept)

    shared_manifest = directory / SHARED_MANIFEST
    shared_removed = False
    for backup in expired:
        verb = "Would remove" if dry_run else "Removing"
        logger.info(f"{verb} old backup: {backup.path.name} ({format_size(backup.size)})")
        _remove(backup.path, dry_run)
        report.removed.append(backup)
        report.freed_bytes += backup.size

        if not rule.manifests:
            continue
        manifest = manifest_for(backup.path)
        if manifest.is_file():
            logger.info(f"{verb} associated manifest: {manifest.name}")
            report.freed_bytes += manifest.stat().st_size
            _remove(manifest, dry_run)
        # The shared manifest describes the newest archive; once it is older
        # than an archive being dropped it describes nothing still kept.
        if (
            not shared_removed
            and shared_manifest.is_file()
            and shared_manifest.stat().st_mtime < backup.mtime
        ):
            logger.info(f"{verb} stale manifest: {shared_manifest.name}")
            report.freed_bytes += shared_manifest.stat().st_size
            _remove(shared_manifest, dry_run)
            shared_removed = True
    return report


def apply_rule(rule: RetentionRule, dry_run: bool = False) -> RetentionReport:
    report = RetentionReport(rule.name, dry_run=dry_run)
    for directory in expand_directories(rule.directories):
        report.merge(prune_directory(directory, rule, dry_run))
    return report


def apply_rules(
    rules: Optional[Sequence[RetentionRule]] = None, dry_run: bool = False
) -> List[RetentionReport]:
    return [apply_rule(rule, dry_run) for rule in (rules if rules is not None else DEFAULT_RULES)]


def rules_by_name(names: Sequence[str]) -> List[RetentionRule]:
    known = {rule.name: rule for rule in DEFAULT_RULES}
    missing = [name for name in names if name not in known]
    if missing:
        raise ValueError(f"Unknown retention rule(s): {', '.join(missing)}")
    return [known[name] for name in names]
