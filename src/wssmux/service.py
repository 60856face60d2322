"""Systemd unit management for the forwarding service."""

import sys
from pathlib import Path

from .config import SystemPaths
from .exceptions import ServiceError
from .logging import get_logger
from .system import run_command, systemctl

logger = get_logger(__name__)

SERVICE_NAME = "wssmux"
RESTART_DELAY = 5


class ServiceManager:
    """Installs and drives the ``wssmux`` systemd unit."""

    def __init__(
        self,
        paths: SystemPaths | None = None,
        service_name: str = SERVICE_NAME,
        python_executable: str | None = None,
    ):
        self.paths = paths or SystemPaths()
        self.service_name = service_name
        self.python_executable = python_executable or sys.executable

    @property
    def unit_file(self) -> Path:
        return self.paths.service_file

    def render_unit(self) -> str:
        """Unit text: restart forever with a fixed delay, logs appended to files."""
        return f"""[Unit]
Description=WSSMUX Tunnel Service
After=network.target nginx.service

[Service]
Type=simple
User=root
Environment=WSSMUX_CONFIG_DIR={self.paths.config_dir}
Environment=WSSMUX_LOG_DIR={self.paths.log_dir}
ExecStart={self.python_executable} -m wssmux run
ExecReload=/bin/kill -HUP $MAINPID
Restart=always
RestartSec={RESTART_DELAY}
StandardOutput=append:{self.paths.service_log}
StandardError=append:{self.paths.service_error_log}

[Install]
WantedBy=multi-user.target
"""

    def install_unit(self) -> Path:
        """Write the unit file and reload systemd.

        Raises:
            ServiceError: If the file cannot be written or systemd rejects it
        """
        logger.info("Creating systemd service...", unit=str(self.unit_file))
        try:
            self.paths.log_dir.mkdir(parents=True, exist_ok=True)
            self.unit_file.parent.mkdir(parents=True, exist_ok=True)
            self.unit_file.write_text(self.render_unit(), encoding="utf-8")
        except OSError as e:
            raise ServiceError(f"Failed to create service file: {e}") from e

        if not systemctl("daemon-reload"):
            raise ServiceError("systemctl daemon-reload failed")
        return self.unit_file

    def remove_unit(self) -> None:
        self.unit_file.unlink(missing_ok=True)
        systemctl("daemon-reload")

    def enable(self) -> None:
        self._require(systemctl("enable", self.service_name), "enable")

    def disable(self) -> bool:
        return systemctl("disable", self.service_name)

    def start(self) -> None:
        self._require(systemctl("start", self.service_name), "start")

    def stop(self) -> bool:
        return systemctl("stop", self.service_name)

    def restart(self) -> None:
        """Issue a restart; does not wait for the forwarders to listen."""
        self._require(systemctl("restart", self.service_name), "restart")
        logger.info("Service restart issued", service=self.service_name)

    def reload(self) -> None:
        self._require(systemctl("reload", self.service_name), "reload")

    def is_active(self) -> bool:
        return systemctl("is-active", self.service_name)

    def status_text(self) -> str:
        result = run_command(["systemctl", "status", self.service_name, "--no-pager", "-l"])
        return result.stdout or result.stderr

    def _require(self, ok: bool, action: str) -> None:
        if not ok:
            logger.error("Service command failed", action=action, service=self.service_name)
            raise ServiceError(f"systemctl {action} {self.service_name} failed")
