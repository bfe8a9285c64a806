"""Command execution, privilege checks and signal handling."""

import os
import shutil
import signal
import subprocess
import sys
from typing import Any, Dict, List, Optional

from n8nctl.errors import CommandError, ToolkitError
from n8nctl.ui import get_logger, print_warning

OPERATION_TIMEOUT: int = 300  # 5 minutes default timeout for operations


# ----------------------------------------------------------------
# Command Execution Utilities
# ----------------------------------------------------------------
def run_command(
    cmd: List[str],
    check: bool = True,
    capture_output: bool = True,
    timeout: Optional[int] = OPERATION_TIMEOUT,
    input_text: Optional[str] = None,
    env: Optional[Dict[str, str]] = None,
    cwd: Optional[str] = None,
) -> subprocess.CompletedProcess:
    """
    Run a system command and return the CompletedProcess.

    Raises CommandError when the command exits non-zero (with ``check``),
    times out, or cannot be found at all.
    """
    logger = get_logger()
    logger.debug(f"Running command: {' '.join(cmd)}")
    try:
        result = subprocess.run(
            cmd,
            check=False,
            text=True,
            capture_output=capture_output,
            timeout=timeout,
            input=input_text,
            env=env or os.environ.copy(),
            cwd=cwd,
        )
    except FileNotFoundError:
        raise CommandError(cmd, message=f"Command not found: {cmd[0]}")
    except subprocess.TimeoutExpired:
        logger.error(f"Command timed out after {timeout} seconds: {' '.join(cmd)}")
        raise CommandError(cmd, message=f"Command timed out: {' '.join(cmd)}")

    if check and result.returncode != 0:
        raise CommandError(cmd, result.returncode, result.stderr or "")
    return result


def command_exists(cmd: str) -> bool:
    """Check if a command exists in the system path."""
    return shutil.which(cmd) is not None


def command_output(cmd: List[str], timeout: Optional[int] = 30) -> Optional[str]:
    """Return stripped stdout of a command, or None when it fails."""
    try:
        result = run_command(cmd, check=True, timeout=timeout)
    except CommandError as e:
        get_logger().debug(str(e))
        return None
    return (result.stdout or "").strip()


# ----------------------------------------------------------------
# Privileges
# ----------------------------------------------------------------
def check_root() -> None:
    """Verify the process is running with root privileges."""
    if os.geteuid() != 0:
        raise ToolkitError("This command must be run as root (e.g., using sudo).")


# ----------------------------------------------------------------
# Signal Handling
# ----------------------------------------------------------------
def signal_handler(signum: int, frame: Any) -> None:
    sig_name = signal.Signals(signum).name
    print_warning(f"Process interrupted by {sig_name}.")
    get_logger().error(f"Interrupted by {sig_name}.")
    sys.exit(130 if signum == signal.SIGINT else 143 if signum == signal.SIGTERM else 128 + signum)


def install_signal_handlers() -> None:
    for sig in (signal.SIGINT, signal.SIGTERM):
        signal.signal(sig, signal_handler)
