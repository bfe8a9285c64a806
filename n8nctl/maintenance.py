"""
Scheduled host maintenance: backup retention, temp and log cleanup,
Docker pruning and journal vacuuming, with a text report per run.
"""

import gzip
import os
import shutil
import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from n8nctl.config import Config
from n8nctl.errors import ConfigurationError
from n8nctl.retention import RetentionReport, apply_rules
from n8nctl.system import command_exists, command_output, run_command
from n8nctl.ui import format_size, get_logger

MODES: List[str] = ["full", "analyze", "backups", "cleanup", "auto"]
DAY: int = 86400
LARGE_LOG_BYTES: int = 50 * 1024 * 1024
ROTATED_LOG_PATTERNS: List[str] = ["syslog.*", "kern.log.*", "auth.log.*"]
DOCKER_PRUNE: List[List[str]] = [
    ["docker", "container", "prune", "-f"],
    ["docker", "image", "prune", "-f"],
    ["docker", "volume", "prune", "-f"],
    ["docker", "network", "prune", "-f"],
]


@dataclass
class CleanedFile:
    path: Path
    size: int


@dataclass
class MaintenanceReport:
    mode: str
    dry_run: bool
    started: datetime
    steps: Dict[str, str] = field(default_factory=dict)
    analysis: Dict[str, str] = field(default_factory=dict)
    retention: List[RetentionReport] = field(default_factory=list)
    cleaned: List[CleanedFile] = field(default_factory=list)
    compressed: List[Path] = field(default_factory=list)
    report_file: Optional[Path] = None

    @property
    def freed_bytes(self) -> int:
        return sum(f.size for f in self.cleaned) + sum(r.freed_bytes for r in self.retention)


# ----------------------------------------------------------------
# File Cleanup Helpers
# ----------------------------------------------------------------
def prune_older_than(
    root: Path,
    pattern: str,
    days: int,
    now: Optional[float] = None,
    dry_run: bool = False,
) -> List[CleanedFile]:
    """Delete regular files under ``root`` matching ``pattern`` not modified in ``days``."""
    logger = get_logger()
    if not root.is_dir():
        return []
    cutoff = (now if now is not None else time.time()) - days * DAY
    removed = []
    for path in root.rglob(pattern):
        try:
            if path.is_symlink() or not path.is_file():
                continue
            st = path.stat()
            if st.st_mtime >= cutoff:
                continue
            if not dry_run:
                path.unlink()
        except OSError as e:
            logger.debug(f"Skipping {path}: {e}")
            continue
        removed.append(CleanedFile(path, st.st_size))
    if removed:
        verb = "Would remove" if dry_run else "Removed"
        logger.info(f"{verb} {len(removed)} file(s) matching {pattern} older than {days}d in {root}")
    return removed


def remove_empty_dirs(root: Path, dry_run: bool = False) -> int:
    count = 0
    if not root.is_dir():
        return count
    for dirpath, dirnames, filenames in os.walk(str(root), topdown=False):
        path = Path(dirpath)
        if path == root or dirnames or filenames:
            continue
        if not dry_run:
            try:
                path.rmdir()
            except OSError:
                continue
        count += 1
    return count


def compress_large_logs(
    root: Path, min_bytes: int = LARGE_LOG_BYTES, dry_run: bool = False
) -> List[Path]:
    """Gzip ``*.log`` files of at least ``min_bytes`` in place."""
    logger = get_logger()
    compressed = []
    if not root.is_dir():
        return compressed
    for path in sorted(root.rglob("*.log")):
        try:
            if path.is_symlink() or not path.is_file() or path.stat().st_size < min_bytes:
                continue
        except OSError:
            continue
        target = path.with_name(path.name + ".gz")
        if target.exists():
            logger.warning(f"Not compressing {path}: {target.name} already exists")
            continue
        logger.info(f"{'Would compress' if dry_run else 'Compressing'} {path} ({format_size(path.stat().st_size)})")
        if not dry_run:
            with open(path, "rb") as fin, gzip.open(target, "wb") as fout:
                shutil.copyfileobj(fin, fout)
            shutil.copystat(path, target)
            path.unlink()
        compressed.append(target)
    return compressed


# ----------------------------------------------------------------
# Cleanup Steps
# ----------------------------------------------------------------
def cleanup_temporary_files(
    tmp_dir: Path = Path("/tmp"),
    var_tmp_dir: Path = Path("/var/tmp"),
    dry_run: bool = False,
) -> List[CleanedFile]:
    removed = prune_older_than(tmp_dir, "*", 7, dry_run=dry_run)
    removed += prune_older_than(var_tmp_dir, "*", 30, dry_run=dry_run)
    remove_empty_dirs(tmp_dir, dry_run)
    return removed


def cleanup_logs(log_dir: Path = Path("/var/log"), dry_run: bool = False) -> Dict[str, list]:
    compressed = compress_large_logs(log_dir, dry_run=dry_run)
    removed = prune_older_than(log_dir, "*.gz", 30, dry_run=dry_run)
    for pattern in ROTATED_LOG_PATTERNS:
        removed += prune_older_than(log_dir, pattern, 7, dry_run=dry_run)
    return {"compressed": compressed, "removed": removed}


def cleanup_docker(dry_run: bool = False) -> str:
    logger = get_logger()
    if not command_exists("docker"):
        logger.info("Docker not installed, skipping Docker cleanup")
        return "skipped"
    status = "success"
    for cmd in DOCKER_PRUNE:
        if dry_run:
            logger.info(f"Would run: {' '.join(cmd)}")
            continue
        result = run_command(cmd, check=False)
        if result.returncode != 0:
            logger.warning(f"{' '.join(cmd)} failed: {(result.stderr or '').strip()}")
            status = "warning"
    return status


def vacuum_journal(days: int = 7, dry_run: bool = False) -> str:
    logger = get_logger()
    if not command_exists("journalctl"):
        logger.info("journalctl not available, skipping journal vacuum")
        return "skipped"
    cmd = ["journalctl", f"--vacuum-time={days}d"]
    if dry_run:
        logger.info(f"Would run: {' '.join(cmd)}")
        return "success"
    result = run_command(cmd, check=False)
    if result.returncode != 0:
        logger.warning(f"Journal vacuum failed: {(result.stderr or '').strip()}")
        return "warning"
    return "success"


# ----------------------------------------------------------------
# Analysis
# ----------------------------------------------------------------
def analyze_system(root: str = "/") -> Dict[str, str]:
    usage = shutil.disk_usage(root)
    analysis = {
        "disk_total": format_size(usage.total),
        "disk_used": format_size(usage.used),
        "disk_free": format_size(usage.free),
        "disk_used_percent": f"{usage.used / usage.total * 100:.1f}%" if usage.total else "n/a",
    }
    if command_exists("systemctl"):
        failed = command_output(["systemctl", "list-units", "--failed", "--no-legend", "--plain"])
        if failed is not None:
            analysis["failed_services"] = str(len([l for l in failed.splitlines() if l.strip()]))
    return analysis


# ----------------------------------------------------------------
# Runner
# ----------------------------------------------------------------
def render_report(report: MaintenanceReport, backup_dir: Path) -> str:
    lines = [
        "=== SYSTEM MAINTENANCE REPORT ===",
        f"Date: {report.started.strftime('%Y-%m-%d %H:%M:%S')}",
        f"Mode: {report.mode}" + (" (dry run)" if report.dry_run else ""),
        "",
        "=== STEPS ===",
    ]
    lines.extend(f"{step}: {status}" for step, status in report.steps.items())
    if report.analysis:
        lines.extend(["", "=== ANALYSIS ==="])
        lines.extend(f"{key}: {value}" for key, value in report.analysis.items())
    if report.retention:
        lines.extend(["", "=== BACKUP RETENTION ==="])
        for r in report.retention:
            lines.append(f"{r.rule}: kept {len(r.kept)}, removed {len(r.removed)}, freed {format_size(r.freed_bytes)}")
    lines.extend(["", "=== BACKUP SUMMARY ==="])
    archives = sorted(backup_dir.glob("n8n_*backup*.tar.gz")) if backup_dir.is_dir() else []
    lines.extend(str(p) for p in archives)
    if not archives:
        lines.append("No n8n backups found")
    lines.extend([
        "",
        f"Files cleaned: {len(report.cleaned)}",
        f"Logs compressed: {len(report.compressed)}",
        f"Space freed: {format_size(report.freed_bytes)}",
    ])
    return "\n".join(lines) + "\n"


def run_maintenance(
    config: Config,
    mode: str = "full",
    dry_run: bool = False,
    tmp_dirs: Sequence[Path] = (Path("/tmp"), Path("/var/tmp")),
    log_dir: Path = Path("/var/log"),
    now: Optional[datetime] = None,
) -> MaintenanceReport:
    if mode not in MODES:
        raise ConfigurationError(f"Unknown maintenance mode: {mode} (choose from {', '.join(MODES)})")
    logger = get_logger()
    report = MaintenanceReport(mode, dry_run, now or datetime.now())

    if mode in ("full", "analyze"):
        report.analysis = analyze_system()
        report.steps["analysis"] = "success"

    if mode in ("full", "backups", "auto"):
        report.retention = apply_rules(dry_run=dry_run)
        report.steps["backup retention"] = "success"

    if mode in ("full", "cleanup", "auto"):
        report.cleaned.extend(cleanup_temporary_files(*tmp_dirs, dry_run=dry_run))
        report.steps["temporary files"] = "success"
        logs = cleanup_logs(log_dir, dry_run=dry_run)
        report.cleaned.extend(logs["removed"])
        report.compressed.extend(logs["compressed"])
        report.steps["log files"] = "success"
        report.steps["docker"] = cleanup_docker(dry_run)
        report.steps["journal"] = vacuum_journal(dry_run=dry_run)

    if mode in ("full", "auto"):
        stamp = report.started.strftime("%Y%m%d_%H%M%S")
        path = config.scripts_log_dir / f"n8nctl_maintenance_report_{stamp}.txt"
        try:
            config.scripts_log_dir.mkdir(parents=True, exist_ok=True)
            path.write_text(render_report(report, config.backup_dir))
            report.report_file = path
            logger.info(f"Report generated: {path}")
        except OSError as e:
            logger.warning(f"Could not write maintenance report {path}: {e}")

    logger.info(f"Maintenance ({mode}) finished; {format_size(report.freed_bytes)} freed")
    return report
