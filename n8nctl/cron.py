"""
Crontab audit and rewrite.

The root crontab collected backup and cleanup jobs pointing at scripts that
no longer exist or misbehave. This module parses the crontab line by line
(comments and blank lines are kept verbatim), drops jobs matching known-bad
patterns, and owns a single marked block of maintenance jobs that can be
re-installed any number of times without duplicating entries.
"""

import re
import shutil
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Set

from n8nctl.config import Config
from n8nctl.errors import CommandError, CronError
from n8nctl.system import run_command
from n8nctl.ui import get_logger

BEGIN_MARKER: str = "# BEGIN n8nctl managed jobs"
END_MARKER: str = "# END n8nctl managed jobs"

SYSTEM_CRON_DIRS: List[str] = [
    "/etc/cron.d",
    "/etc/cron.daily",
    "/etc/cron.weekly",
    "/etc/cron.monthly",
]

PROBLEMATIC_PATTERNS: List[str] = [
    r"backup_server\.sh",
    r"backup_server_minimal\.sh",
    r"system_cleanup.*\.sh",
    r"/tmp/.*backup",
    r"/tmp/.*cleanup",
    r"old.*backup",
    r"test.*backup",
]

REMOVE_PATTERNS: List[str] = PROBLEMATIC_PATTERNS + [r"n8n.*backup"]

AUDIT_CATEGORIES: Dict[str, str] = {
    "backup": r"backup",
    "cleanup": r"cleanup|clean",
    "n8n": r"n8n",
}

MACROS: Dict[str, Optional[str]] = {
    "@yearly": "0 0 1 1 *",
    "@annually": "0 0 1 1 *",
    "@monthly": "0 0 1 * *",
    "@weekly": "0 0 * * 0",
    "@daily": "0 0 * * *",
    "@midnight": "0 0 * * *",
    "@hourly": "0 * * * *",
    "@reboot": None,
}

MONTH_NAMES = ["jan", "feb", "mar", "apr", "may", "jun",
               "jul", "aug", "sep", "oct", "nov", "dec"]
DAY_NAMES = ["sun", "mon", "tue", "wed", "thu", "fri", "sat"]

_ENV_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*\s*=")


# ----------------------------------------------------------------
# Schedules
# ----------------------------------------------------------------
def _parse_field(
    text: str, low: int, high: int, names: Optional[List[str]] = None
) -> Set[int]:
    def value(token: str) -> int:
        token = token.lower()
        if names and token in names:
            return names.index(token) + low
        if not token.isdigit():
            raise CronError(f"Invalid cron value: {token!r}")
        return int(token)

    values: Set[int] = set()
    for part in text.split(","):
        if not part:
            raise CronError(f"Empty item in cron field {text!r}")
        rng, _, step_text = part.partition("/")
        step = 1
        if step_text:
            if not step_text.isdigit() or int(step_text) == 0:
                raise CronError(f"Invalid step in cron field {text!r}")
            step = int(step_text)
        if rng == "*":
            start, end = low, high
        elif "-" in rng:
            a, _, b = rng.partition("-")
            start, end = value(a), value(b)
        else:
            start = value(rng)
            end = high if step_text else start
        if start > end or start < low or end > high:
            raise CronError(f"Cron field {text!r} out of range {low}-{high}")
        values.update(range(start, end + 1, step))
    return values


@dataclass
class CronSchedule:
    expression: str
    minutes: Set[int] = field(default_factory=set)
    hours: Set[int] = field(default_factory=set)
    days: Set[int] = field(default_factory=set)
    months: Set[int] = field(default_factory=set)
    weekdays: Set[int] = field(default_factory=set)
    day_restricted: bool = False
    weekday_restricted: bool = False
    reboot: bool = False

    @classmethod
    def parse(cls, expression: str) -> "CronSchedule":
        expression = expression.strip()
        if expression.startswith("@"):
            if expression not in MACROS:
                raise CronError(f"Unknown cron macro: {expression}")
            expanded = MACROS[expression]
            if expanded is None:
                return cls(expression, reboot=True)
            schedule = cls.parse(expanded)
            schedule.expression = expression
            return schedule

        parts = expression.split()
        if len(parts) != 5:
            raise CronError(f"Cron schedule needs 5 fields, got {len(parts)}: {expression!r}")
        minute, hour, dom, month, dow = parts
        weekdays = _parse_field(dow, 0, 7, DAY_NAMES)
        if 7 in weekdays:
            weekdays.discard(7)
            weekdays.add(0)
        return cls(
            expression,
            minutes=_parse_field(minute, 0, 59),
            hours=_parse_field(hour, 0, 23),
            days=_parse_field(dom, 1, 31),
            months=_parse_field(month, 1, 12, MONTH_NAMES),
            weekdays=weekdays,
            day_restricted=not dom.startswith("*"),
            weekday_restricted=not dow.startswith("*"),
        )

    def _day_matches(self, day: datetime) -> bool:
        if day.month not in self.months:
            return False
        dom_ok = day.day in self.days
        dow_ok = (day.weekday() + 1) % 7 in self.weekdays
        if self.day_restricted and self.weekday_restricted:
            return dom_ok or dow_ok
        return dom_ok and dow_ok

    def next_run(self, after: datetime) -> Optional[datetime]:
        """First matching minute strictly after ``after`` (None for @reboot)."""
        if self.reboot:
            return None
        start = after.replace(second=0, microsecond=0) + timedelta(minutes=1)
        day = start.replace(hour=0, minute=0)
        # Four years covers every Feb 29 schedule.
        for _ in range(366 * 4 + 1):
            if self._day_matches(day):
                for hour in sorted(self.hours):
                    for minute in sorted(self.minutes):
                        candidate = day.replace(hour=hour, minute=minute)
                        if candidate >= start:
                            return candidate
            day += timedelta(days=1)
        return None


# ----------------------------------------------------------------
# Crontab model
# ----------------------------------------------------------------
@dataclass
class CronLine:
    raw: str
    kind: str  # job | comment | blank | env
    schedule: str = ""
    command: str = ""


@dataclass
class CronJob:
    name: str
    schedule: str
    command: str
    description: str = ""

    def render(self) -> List[str]:
        lines = [f"# {self.description}"] if self.description else []
        lines.append(f"{self.schedule} {self.command}")
        return lines


def parse_line(raw: str) -> CronLine:
    stripped = raw.strip()
    if not stripped:
        return CronLine(raw, "blank")
    if stripped.startswith("#"):
        return CronLine(raw, "comment")
    if _ENV_RE.match(stripped):
        return CronLine(raw, "env")
    if stripped.startswith("@"):
        macro, _, command = stripped.partition(" ")
        return CronLine(raw, "job", macro, command.strip())
    parts = stripped.split(None, 5)
    if len(parts) < 6:
        return CronLine(raw, "job", " ".join(parts[:5]), "")
    return CronLine(raw, "job", " ".join(parts[:5]), parts[5])


def parse_crontab(text: str) -> List[CronLine]:
    return [parse_line(raw) for raw in text.splitlines()]


class Crontab:
    """Line-preserving view of a crontab."""

    def __init__(self, lines: Optional[List[CronLine]] = None, trailing_newline: bool = True):
        self.lines = lines or []
        self.trailing_newline = trailing_newline

    @classmethod
    def from_text(cls, text: str) -> "Crontab":
        return cls(parse_crontab(text), trailing_newline=text.endswith("\n") or not text)

    def to_text(self) -> str:
        text = "\n".join(line.raw for line in self.lines)
        if self.lines and self.trailing_newline:
            text += "\n"
        return text

    # ----------------------------------------------------------------
    # Managed block bookkeeping
    # ----------------------------------------------------------------
    def _managed_span(self) -> Optional[range]:
        begin = end = None
        for i, line in enumerate(self.lines):
            if line.raw.strip() == BEGIN_MARKER and begin is None:
                begin = i
            elif line.raw.strip() == END_MARKER and begin is not None:
                end = i
                break
        if begin is None:
            return None
        if end is None:
            raise CronError("Managed cron block has no end marker")
        return range(begin, end + 1)

    def _unmanaged_indexes(self) -> List[int]:
        span = self._managed_span()
        return [i for i in range(len(self.lines)) if span is None or i not in span]

    @property
    def jobs(self) -> List[CronLine]:
        return [line for line in self.lines if line.kind == "job"]

    @property
    def managed_jobs(self) -> List[CronLine]:
        span = self._managed_span()
        if span is None:
            return []
        return [self.lines[i] for i in span if self.lines[i].kind == "job"]

    # ----------------------------------------------------------------
    # Audit and rewrite
    # ----------------------------------------------------------------
    def audit(self) -> Dict[str, int]:
        counts = {name: 0 for name in AUDIT_CATEGORIES}
        counts["total"] = len(self.jobs)
        for job in self.jobs:
            for name, pattern in AUDIT_CATEGORIES.items():
                if re.search(pattern, job.raw):
                    counts[name] += 1
        return counts

    def find_matching(self, patterns: Sequence[str]) -> Dict[str, List[str]]:
        found: Dict[str, List[str]] = {}
        for pattern in patterns:
            matches = [job.raw for job in self.jobs if re.search(pattern, job.raw)]
            if matches:
                found[pattern] = matches
        return found

    def remove_matching(self, patterns: Sequence[str]) -> List[CronLine]:
        """Drop unmanaged job lines matching any pattern; return what was dropped."""
        compiled = [re.compile(p) for p in patterns]
        keep_indexes = set(range(len(self.lines)))
        removed = []
        for i in self._unmanaged_indexes():
            line = self.lines[i]
            if line.kind == "job" and any(p.search(line.raw) for p in compiled):
                keep_indexes.discard(i)
                removed.append(line)
        self.lines = [line for i, line in enumerate(self.lines) if i in keep_indexes]
        return removed

    def install_managed(self, jobs: Sequence[CronJob]) -> None:
        block = [BEGIN_MARKER]
        for job in jobs:
            block.extend(job.render())
        block.append(END_MARKER)
        new_lines = [parse_line(raw) for raw in block]

        span = self._managed_span()
        if span is not None:
            self.lines[span.start:span.stop] = new_lines
            return
        if self.lines and self.lines[-1].kind != "blank":
            self.lines.append(parse_line(""))
        self.lines.extend(new_lines)
        self.trailing_newline = True


# ----------------------------------------------------------------
# Managed jobs
# ----------------------------------------------------------------
def managed_jobs(config: Config, executable: Optional[str] = None) -> List[CronJob]:
    exe = executable or shutil.which("n8nctl") or "/usr/local/bin/n8nctl"
    log_dir = config.scripts_log_dir

    def logged(args: str, name: str) -> str:
        return f"{exe} {args} >> {log_dir / f'n8nctl_{name}.log'} 2>&1"

    return [
        CronJob("backup", "30 2 * * *", logged("backup", "backup"),
                "Daily n8n backup at 02:30"),
        CronJob("maintenance", "0 3 * * 0", logged("maintenance --mode auto", "maintenance"),
                "Weekly system cleanup on Sunday at 03:00"),
        CronJob("prune", "0 4 * * 0", logged("prune", "prune"),
                "Weekly backup retention on Sunday at 04:00"),
        CronJob("diagnose", "0 6 * * *", logged("diagnose", "diagnose"),
                "Daily health and diagnostics at 06:00"),
    ]


def job_log_paths(config: Config) -> List[Path]:
    return [config.scripts_log_dir / f"n8nctl_{name}.log"
            for name in ("backup", "maintenance", "prune", "diagnose")]


def render_logrotate(paths: Sequence[Path]) -> str:
    header = "\n".join(str(p) for p in paths)
    return (
        f"{header} {{\n"
        "    weekly\n"
        "    rotate 8\n"
        "    compress\n"
        "    delaycompress\n"
        "    missingok\n"
        "    notifempty\n"
        "    create 0640 root root\n"
        "}\n"
    )


# ----------------------------------------------------------------
# crontab(1) I/O
# ----------------------------------------------------------------
def read_crontab(user: Optional[str] = None) -> str:
    cmd = ["crontab", "-l"] + (["-u", user] if user else [])
    result = run_command(cmd, check=False)
    if result.returncode == 0:
        return result.stdout or ""
    if "no crontab for" in (result.stderr or "").lower():
        return ""
    raise CommandError(cmd, result.returncode, result.stderr or "")


def write_crontab(text: str, user: Optional[str] = None) -> None:
    cmd = ["crontab"] + (["-u", user] if user else []) + ["-"]
    try:
        run_command(cmd, input_text=text)
    except CommandError as e:
        raise CronError(f"crontab rejected the new table: {e}")


def backup_crontab(text: str, directory: Path, now: Optional[datetime] = None) -> Path:
    now = now or datetime.now()
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / f"crontab_backup_{now.strftime('%Y%m%d_%H%M%S')}.txt"
    path.write_text(text)
    get_logger().info(f"Crontab backed up to {path}")
    return path


def scan_system_cron(
    directories: Sequence[str] = SYSTEM_CRON_DIRS,
    patterns: Sequence[str] = PROBLEMATIC_PATTERNS,
) -> Dict[Path, List[str]]:
    """Return cron files containing any of ``patterns`` and the patterns they hit."""
    compiled = [(p, re.compile(p)) for p in patterns]
    flagged: Dict[Path, List[str]] = {}
    for directory in directories:
        root = Path(directory)
        if not root.is_dir():
            continue
        for path in sorted(root.iterdir()):
            if not path.is_file():
                continue
            try:
                content = path.read_text(errors="replace")
            except OSError as e:
                get_logger().warning(f"Cannot read {path}: {e}")
                continue
            hits = [p for p, rx in compiled if rx.search(content)]
            if hits:
                flagged[path] = hits
    return flagged
