"""
Host diagnostics and gap analysis.

Collects what is installed and running on the n8n host (tools, services,
firewall, nginx site, supervisors, health) into one report, then lists
what is missing by category. Reports are written as JSON for tooling and
as plain text for people.
"""

import json
import platform
import re
import socket
from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

from n8nctl.config import Config
from n8nctl.health import HealthResult, check_endpoints
from n8nctl.supervisors import SupervisorState, detect_all, find_conflicts
from n8nctl.system import command_exists, command_output
from n8nctl.ui import get_logger

TOOLS: Dict[str, List[str]] = {
    "node": ["--version"],
    "npm": ["--version"],
    "n8n": ["--version"],
    "pm2": ["--version"],
    "nginx": ["-v"],
    "docker": ["--version"],
    "psql": ["--version"],
    "python3": ["--version"],
}
SERVICES: List[str] = ["n8n", "nginx", "docker", "postgresql", "cron"]
AUDIOBOOK_TOOLS: Dict[str, List[str]] = {
    "ffmpeg": ["-version"],
    "sox": ["--version"],
    "lame": ["--version"],
    "flac": ["--version"],
    "tesseract": ["--version"],
}

N8N_PORT: int = 5678
_PROXY_PASS_RE = re.compile(r"^\s*proxy_pass\s+https?://[^;\s]*:(\d+)", re.MULTILINE)
_REAL_IP_RE = re.compile(r"^\s*(set_real_ip_from|real_ip_header\s+CF-Connecting-IP)", re.MULTILINE)
_UPGRADE_RE = re.compile(r"^\s*proxy_set_header\s+Upgrade\s", re.MULTILINE | re.IGNORECASE)
_CONNECTION_RE = re.compile(
    r"^\s*proxy_set_header\s+Connection\s+[\"']?upgrade", re.MULTILINE | re.IGNORECASE
)


# ----------------------------------------------------------------
# Data Structures
# ----------------------------------------------------------------
@dataclass
class ComponentStatus:
    name: str
    installed: bool
    version: Optional[str] = None
    detail: str = ""


@dataclass
class NginxSiteReport:
    path: str
    exists: bool
    proxies_to_n8n: bool = False
    proxy_ports: List[int] = field(default_factory=list)
    cloudflare_real_ip: bool = False
    websocket_upgrade: bool = False

    @property
    def problems(self) -> List[str]:
        if not self.exists:
            return [f"nginx site {self.path} missing"]
        problems = []
        if not self.proxies_to_n8n:
            problems.append(f"proxy_pass does not point at port {N8N_PORT}")
        if not self.websocket_upgrade:
            problems.append("websocket Upgrade/Connection headers missing")
        if not self.cloudflare_real_ip:
            problems.append("Cloudflare real IP directives missing")
        return problems


@dataclass
class DiagnosticsReport:
    generated: str
    hostname: str
    system: Dict[str, str]
    tools: List[ComponentStatus] = field(default_factory=list)
    services: List[ComponentStatus] = field(default_factory=list)
    audiobook_tools: List[ComponentStatus] = field(default_factory=list)
    directories: Dict[str, bool] = field(default_factory=dict)
    firewall_active: Optional[bool] = None
    firewall_rules: List[str] = field(default_factory=list)
    nginx: Optional[NginxSiteReport] = None
    supervisors: List[Dict[str, Any]] = field(default_factory=list)
    conflicts: List[str] = field(default_factory=list)
    health: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# ----------------------------------------------------------------
# Individual Checks
# ----------------------------------------------------------------
def check_command(name: str, version_args: Sequence[str] = ("--version",)) -> ComponentStatus:
    if not command_exists(name):
        return ComponentStatus(name, False)
    output = command_output([name] + list(version_args), timeout=15)
    version = output.splitlines()[0].strip() if output else None
    return ComponentStatus(name, True, version)


def service_state(name: str) -> ComponentStatus:
    if not command_exists("systemctl"):
        return ComponentStatus(name, False, detail="systemctl not available")
    state = command_output(["systemctl", "is-active", name], timeout=15)
    # is-active exits non-zero for anything but "active"
    state = state or "inactive"
    return ComponentStatus(name, state == "active", detail=state)


def parse_ufw_status(text: str) -> Tuple[bool, List[str]]:
    """Parse ``ufw status`` output into (active, rule lines)."""
    active = False
    rules: List[str] = []
    in_rules = False
    for line in text.splitlines():
        stripped = line.strip()
        if stripped.lower().startswith("status:"):
            active = stripped.split(":", 1)[1].strip().lower() == "active"
        elif stripped.startswith("--"):
            in_rules = True
        elif in_rules and stripped:
            rules.append(re.sub(r"\s{2,}", "  ", stripped))
    return active, rules


def inspect_nginx_site(path: Path) -> NginxSiteReport:
    if not path.is_file():
        return NginxSiteReport(str(path), False)
    try:
        text = path.read_text(errors="replace")
    except OSError as e:
        get_logger().warning(f"Cannot read {path}: {e}")
        return NginxSiteReport(str(path), False)
    # Drop comments so commented-out directives do not count.
    text = "\n".join(line.split("#", 1)[0] for line in text.splitlines())
    ports = [int(p) for p in _PROXY_PASS_RE.findall(text)]
    return NginxSiteReport(
        str(path),
        True,
        proxies_to_n8n=N8N_PORT in ports,
        proxy_ports=ports,
        cloudflare_real_ip=bool(_REAL_IP_RE.search(text)),
        websocket_upgrade=bool(_UPGRADE_RE.search(text) and _CONNECTION_RE.search(text)),
    )


def required_directories(config: Config) -> List[Path]:
    home = config.n8n_dir.parent
    return [config.n8n_dir, home / "scripts", home / "workflows"]


def system_info() -> Dict[str, str]:
    uname = platform.uname()
    return {
        "os": platform.platform(),
        "kernel": uname.release,
        "architecture": uname.machine,
        "python": platform.python_version(),
    }


# ----------------------------------------------------------------
# Collection and Analysis
# ----------------------------------------------------------------
def _health_dict(result: HealthResult) -> Dict[str, Any]:
    return {"url": result.url, "healthy": result.healthy, "status": result.status_code}


def _supervisor_dict(state: SupervisorState) -> Dict[str, Any]:
    return {
        "name": state.supervisor.value,
        "available": state.available,
        "status": state.status,
        "running": state.running,
    }


def collect(config: Config, now: Optional[datetime] = None) -> DiagnosticsReport:
    logger = get_logger()
    now = now or datetime.now()
    report = DiagnosticsReport(
        generated=now.isoformat(timespec="seconds"),
        hostname=socket.gethostname(),
        system=system_info(),
    )

    logger.info("Checking installed tools...")
    report.tools = [check_command(name, args) for name, args in TOOLS.items()]
    report.audiobook_tools = [check_command(name, args) for name, args in AUDIOBOOK_TOOLS.items()]

    logger.info("Checking services...")
    report.services = [service_state(name) for name in SERVICES]

    report.directories = {str(p): p.is_dir() for p in required_directories(config)}

    if command_exists("ufw"):
        output = command_output(["ufw", "status"])
        if output is not None:
            report.firewall_active, report.firewall_rules = parse_ufw_status(output)

    report.nginx = inspect_nginx_site(config.nginx_site)

    logger.info("Checking supervisors and health...")
    states = detect_all(config)
    report.supervisors = [_supervisor_dict(s) for s in states]
    report.conflicts = [s.value for s in find_conflicts(states)]
    report.health = [_health_dict(r) for r in check_endpoints(config)]
    return report


def gap_analysis(report: DiagnosticsReport) -> Dict[str, List[str]]:
    """Missing items by category; empty categories are left out."""
    gaps = {
        "tools": [t.name for t in report.tools if not t.installed],
        "services": [s.name for s in report.services if not s.installed],
        "audiobook_tools": [t.name for t in report.audiobook_tools if not t.installed],
        "directories": [d for d, present in report.directories.items() if not present],
        "nginx": report.nginx.problems if report.nginx else [],
        "supervisors": (
            [f"multiple supervisors running n8n: {', '.join(report.conflicts)}"]
            if report.conflicts else []
        ),
        "health": [f"{h['url']} (HTTP {h['status']:03d})" for h in report.health if not h["healthy"]],
    }
    if report.firewall_active is False:
        gaps["firewall"] = ["ufw is inactive"]
    return {category: items for category, items in gaps.items() if items}


# ----------------------------------------------------------------
# Report Output
# ----------------------------------------------------------------
def render_text(report: DiagnosticsReport, gaps: Dict[str, List[str]]) -> str:
    def status_line(c: ComponentStatus) -> str:
        if c.installed:
            return f"  {c.name}: INSTALLED" + (f" ({c.version})" if c.version else "")
        return f"  {c.name}: NOT INSTALLED"

    lines = [
        "n8n Host Diagnostics",
        "====================",
        f"Generated: {report.generated}",
        f"Hostname: {report.hostname}",
    ]
    lines.extend(f"{k.capitalize()}: {v}" for k, v in report.system.items())
    lines.extend(["", "Tools:"])
    lines.extend(status_line(t) for t in report.tools)
    lines.extend(["", "Services:"])
    lines.extend(f"  {s.name}: {s.detail}" for s in report.services)
    lines.extend(["", "Audiobook tools:"])
    lines.extend(status_line(t) for t in report.audiobook_tools)
    lines.extend(["", "Supervisors:"])
    lines.extend(
        f"  {s['name']}: {s['status']}" + (" (running)" if s["running"] else "")
        for s in report.supervisors
    )
    lines.extend(["", "Health:"])
    lines.extend(
        f"  {h['url']}: HTTP {h['status']:03d} " + ("OK" if h["healthy"] else "FAIL")
        for h in report.health
    )
    lines.extend(["", "Gap analysis:"])
    if not gaps:
        lines.append("  nothing missing")
    for category, items in gaps.items():
        lines.append(f"  {category.upper()}:")
        lines.extend(f"    - {item}" for item in items)
    return "\n".join(lines) + "\n"


def write_report(
    report: DiagnosticsReport, directory: Path, now: Optional[datetime] = None
) -> Tuple[Path, Path]:
    stamp = (now or datetime.now()).strftime("%Y%m%d_%H%M%S")
    directory.mkdir(parents=True, exist_ok=True)
    gaps = gap_analysis(report)

    json_path = directory / f"diagnostics_{stamp}.json"
    payload = report.to_dict()
    payload["gaps"] = gaps
    json_path.write_text(json.dumps(payload, indent=2) + "\n")

    text_path = directory / f"diagnostics_{stamp}.txt"
    text_path.write_text(render_text(report, gaps))
    get_logger().info(f"Diagnostics written to {json_path} and {text_path}")
    return json_path, text_path
