"""Thin wrappers around the system commands the tunnel manager drives."""

import os
import shutil
import subprocess

from .exceptions import DependencyError, PermissionDeniedError
from .logging import get_logger

logger = get_logger(__name__)

DEFAULT_TIMEOUT = 60.0


def run_command(
    cmd: list[str], timeout: float = DEFAULT_TIMEOUT
) -> subprocess.CompletedProcess[str]:
    """Run a command, capturing output, without raising on failure.

    A missing binary or a timeout is reported as a failed process
    (return code 127 / 124) so callers only need to look at ``returncode``.
    """
    logger.debug("Running command", cmd=cmd)
    try:
        result = subprocess.run(
            cmd, check=False, capture_output=True, text=True, timeout=timeout
        )
    except FileNotFoundError as e:
        logger.warning("Command not found", cmd=cmd[0])
        return subprocess.CompletedProcess(cmd, 127, "", str(e))
    except subprocess.TimeoutExpired:
        logger.warning("Command timed out", cmd=cmd, timeout=timeout)
        return subprocess.CompletedProcess(cmd, 124, "", f"timed out after {timeout}s")

    if result.returncode != 0:
        logger.debug(
            "Command failed",
            cmd=cmd,
            returncode=result.returncode,
            stderr=(result.stderr or "").strip(),
        )
    return result


def systemctl(action: str, unit: str | None = None) -> bool:
    """Run a ``systemctl`` action and report success."""
    cmd = ["systemctl", action]
    if unit:
        cmd.append(unit)
    return run_command(cmd).returncode == 0


def restart_cron() -> bool:
    """Restart the cron daemon so it notices changed ``/etc/cron.d`` entries."""
    if systemctl("restart", "cron"):
        return True
    return run_command(["service", "cron", "restart"]).returncode == 0


def require_root() -> None:
    """Raise if the current process is not running as root."""
    if os.geteuid() != 0:
        raise PermissionDeniedError("Please run as root")


def missing_binaries(names: list[str]) -> list[str]:
    """Return the subset of ``names`` not found on ``PATH``."""
    return [name for name in names if shutil.which(name) is None]


def require_binaries(names: list[str]) -> None:
    """Raise if any of the named binaries is not installed."""
    missing = missing_binaries(names)
    if missing:
        raise DependencyError(f"Missing required commands: {', '.join(missing)}")
