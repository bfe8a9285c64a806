"""
Process supervisors for n8n: systemd, PM2 and Docker.

The host has had n8n installed under all three at different times, which
is how it ends up with two supervisors fighting over port 5678. Detection
reports what each one is doing; recovery stops everything and brings n8n
back under exactly one of them, trying them in a fixed order.
"""

import json
import socket
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional, Sequence, Tuple
from urllib.parse import urlparse

from n8nctl.config import Config
from n8nctl.errors import CommandError, ConfigurationError, RecoveryError, SupervisorError
from n8nctl.health import HealthResult, wait_with_config
from n8nctl.system import command_exists, run_command
from n8nctl.ui import get_logger


class Supervisor(str, Enum):
    SYSTEMD = "systemd"
    PM2 = "pm2"
    DOCKER = "docker"

    @classmethod
    def parse_order(cls, names: Sequence[str]) -> List["Supervisor"]:
        order = []
        for name in names:
            try:
                supervisor = cls(name.strip().lower())
            except ValueError:
                raise ConfigurationError(f"Unknown supervisor: {name}")
            if supervisor not in order:
                order.append(supervisor)
        return order


# States in which the supervisor will bring n8n back on its own.
RESTARTING_STATES = {
    Supervisor.SYSTEMD: {"activating", "reloading"},
    Supervisor.PM2: {"launching", "waiting restart", "one-launch-status"},
}


@dataclass
class SupervisorState:
    supervisor: Supervisor
    available: bool
    status: str
    running: bool

    @property
    def stoppable(self) -> bool:
        """True when n8n is running or crash-looping under this supervisor."""
        if self.running:
            return True
        status = self.status.strip().lower()
        if self.supervisor is Supervisor.DOCKER:
            return status.startswith("restarting")
        return status in RESTARTING_STATES[self.supervisor]


@dataclass
class RecoveryResult:
    supervisor: Supervisor
    health: HealthResult
    attempted: List[Supervisor] = field(default_factory=list)


# ----------------------------------------------------------------
# Output Parsers
# ----------------------------------------------------------------
def parse_pm2_jlist(text: str, name: str = "n8n") -> Optional[str]:
    """
    Return the PM2 status of app ``name`` from ``pm2 jlist`` output.

    PM2 sometimes prints update notices before the JSON array, so parsing
    starts at the first ``[``.
    """
    start = text.find("[")
    if start == -1:
        return None
    try:
        apps = json.loads(text[start:])
    except json.JSONDecodeError:
        return None
    for app in apps:
        if app.get("name") == name:
            return app.get("pm2_env", {}).get("status", "unknown")
    return None


def parse_docker_ps(text: str) -> List[Tuple[str, str, bool]]:
    """Parse ``docker ps --format '{{.Names}}\\t{{.Status}}'`` lines."""
    containers = []
    for line in text.splitlines():
        if not line.strip():
            continue
        name, _, status = line.partition("\t")
        status = status.strip()
        containers.append((name.strip(), status, status.startswith("Up")))
    return containers


# ----------------------------------------------------------------
# Detection
# ----------------------------------------------------------------
def detect_systemd(config: Config) -> SupervisorState:
    if not command_exists("systemctl"):
        return SupervisorState(Supervisor.SYSTEMD, False, "not installed", False)
    result = run_command(["systemctl", "is-active", config.service_name], check=False)
    status = (result.stdout or "").strip() or "unknown"
    available = config.systemd_unit.exists()
    return SupervisorState(Supervisor.SYSTEMD, available, status, status == "active")


def detect_pm2(config: Config) -> SupervisorState:
    if not command_exists("pm2"):
        return SupervisorState(Supervisor.PM2, False, "not installed", False)
    result = run_command(["pm2", "jlist"], check=False)
    status = parse_pm2_jlist(result.stdout or "", config.service_name)
    if status is None:
        return SupervisorState(Supervisor.PM2, True, "not registered", False)
    return SupervisorState(Supervisor.PM2, True, status, status == "online")


def detect_docker(config: Config) -> SupervisorState:
    if not command_exists("docker"):
        return SupervisorState(Supervisor.DOCKER, False, "not installed", False)
    result = run_command(
        [
            "docker", "ps", "-a",
            "--filter", f"name=^{config.service_name}$",
            "--format", "{{.Names}}\t{{.Status}}",
        ],
        check=False,
    )
    containers = parse_docker_ps(result.stdout or "")
    available = bool(containers) or config.compose_file.exists()
    if not containers:
        return SupervisorState(Supervisor.DOCKER, available, "no container", False)
    _, status, running = containers[0]
    return SupervisorState(Supervisor.DOCKER, available, status, running)


DETECTORS = {
    Supervisor.SYSTEMD: detect_systemd,
    Supervisor.PM2: detect_pm2,
    Supervisor.DOCKER: detect_docker,
}


def detect(supervisor: Supervisor, config: Config) -> SupervisorState:
    return DETECTORS[supervisor](config)


def detect_all(config: Config) -> List[SupervisorState]:
    return [detect(supervisor, config) for supervisor in Supervisor]


def find_conflicts(states: Sequence[SupervisorState]) -> List[Supervisor]:
    running = [state.supervisor for state in states if state.running]
    return running if len(running) > 1 else []


def port_listening(host: str = "127.0.0.1", port: int = 5678, timeout: float = 1.0) -> bool:
    try:
        with socket.create_connection((host, port), timeout=timeout):
            return True
    except OSError:
        return False


def local_port(config: Config) -> Tuple[str, int]:
    parsed = urlparse(config.local_url)
    return parsed.hostname or "127.0.0.1", parsed.port or 5678


# ----------------------------------------------------------------
# Start / Stop
# ----------------------------------------------------------------
STOP_COMMANDS = {
    Supervisor.SYSTEMD: ["systemctl", "stop"],
    Supervisor.PM2: ["pm2", "stop"],
    Supervisor.DOCKER: ["docker", "stop"],
}


def stop(supervisor: Supervisor, config: Config, force: bool = False) -> bool:
    """
    Stop n8n under one supervisor. Returns False when there was nothing to stop.

    A supervisor that keeps restarting n8n (systemd "activating", PM2
    "waiting restart", Docker "Restarting") is stopped like a running one.
    ``force`` issues the stop whenever the supervisor is available; errors
    are then logged instead of raised.
    """
    logger = get_logger()
    cmd = STOP_COMMANDS[supervisor] + [config.service_name]
    if force:
        if not detect(supervisor, config).available:
            return False
        result = run_command(cmd, check=False)
        if result.returncode != 0:
            logger.debug(f"{' '.join(cmd)} exited {result.returncode}")
        return result.returncode == 0

    state = detect(supervisor, config)
    if not state.stoppable:
        logger.debug(f"{supervisor.value}: n8n not running ({state.status})")
        return False

    logger.info(f"Stopping n8n under {supervisor.value} ({state.status})...")
    try:
        run_command(cmd)
    except CommandError as e:
        raise SupervisorError(f"Failed to stop n8n under {supervisor.value}: {e}")
    return True


def stop_all(config: Config) -> List[Supervisor]:
    stopped = []
    for supervisor in Supervisor:
        if stop(supervisor, config):
            stopped.append(supervisor)
    return stopped


def start(supervisor: Supervisor, config: Config) -> None:
    logger = get_logger()
    logger.info(f"Starting n8n under {supervisor.value}...")
    try:
        if supervisor is Supervisor.SYSTEMD:
            if not config.systemd_unit.exists():
                raise SupervisorError(f"systemd unit not found: {config.systemd_unit}")
            run_command(["systemctl", "daemon-reload"])
            run_command(["systemctl", "start", config.service_name])
        elif supervisor is Supervisor.PM2:
            if config.ecosystem_file.exists():
                run_command(["pm2", "start", str(config.ecosystem_file)])
            else:
                run_command(["pm2", "start", config.service_name])
            run_command(["pm2", "save"], check=False)
        else:
            if config.compose_file.exists():
                _compose_up(config)
            else:
                run_command(["docker", "start", config.service_name])
    except CommandError as e:
        raise SupervisorError(f"Failed to start n8n under {supervisor.value}: {e}")


def _compose_up(config: Config) -> None:
    compose = str(config.compose_file)
    try:
        run_command(["docker", "compose", "-f", compose, "up", "-d"])
    except CommandError:
        if not command_exists("docker-compose"):
            raise
        get_logger().warning("docker compose plugin failed; falling back to docker-compose")
        run_command(["docker-compose", "-f", compose, "up", "-d"])


# ----------------------------------------------------------------
# Recovery
# ----------------------------------------------------------------
def recover(
    config: Config,
    order: Optional[Sequence[Supervisor]] = None,
    wait: Callable[[Config], HealthResult] = wait_with_config,
) -> RecoveryResult:
    """
    Bring n8n back under a single supervisor.

    Everything is stopped first. Each available supervisor is then started
    in turn and polled; a supervisor that does not come up healthy is
    stopped again before the next one is tried.
    """
    logger = get_logger()
    order = list(order) if order else Supervisor.parse_order(config.supervisor_order)

    stop_all(config)

    attempted: List[Supervisor] = []
    failures: List[str] = []
    for supervisor in order:
        state = detect(supervisor, config)
        if not state.available:
            logger.info(f"Skipping {supervisor.value}: {state.status}")
            continue

        attempted.append(supervisor)
        try:
            start(supervisor, config)
        except SupervisorError as e:
            logger.warning(str(e))
            failures.append(f"{supervisor.value}: {e}")
            continue

        health = wait(config)
        if health.healthy:
            logger.info(f"n8n recovered under {supervisor.value} (HTTP {health.status_code})")
            return RecoveryResult(supervisor, health, attempted)

        logger.warning(
            f"n8n did not become healthy under {supervisor.value} "
            f"(HTTP {health.status_text}); trying next supervisor"
        )
        failures.append(f"{supervisor.value}: HTTP {health.status_text}")
        stop(supervisor, config, force=True)

    if not attempted:
        raise RecoveryError("No supervisor is available to run n8n")
    raise RecoveryError("n8n could not be recovered: " + "; ".join(failures))
