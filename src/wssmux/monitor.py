"""Log access and tunnel monitoring."""

import subprocess
from collections import deque
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field

from .config import ConfigStore, SystemPaths, TunnelConfig
from .logging import get_logger
from .service import ServiceManager
from .system import run_command

logger = get_logger(__name__)

RECENT_LOG_LINES = 10


class LogSource(str, Enum):
    """Log files the operator can inspect."""

    INSTALL = "install"
    SERVICE = "service"
    SERVICE_ERROR = "service-error"
    PROXY_ACCESS = "proxy-access"
    PROXY_ERROR = "proxy-error"


class SearchMatch(BaseModel):
    path: Path
    line_number: int
    line: str


class LogViewer:
    """Reads, follows and searches the tunnel and nginx logs."""

    def __init__(self, paths: SystemPaths | None = None):
        self.paths = paths or SystemPaths()

    def path_for(self, source: LogSource) -> Path:
        return {
            LogSource.INSTALL: self.paths.install_log,
            LogSource.SERVICE: self.paths.service_log,
            LogSource.SERVICE_ERROR: self.paths.service_error_log,
            LogSource.PROXY_ACCESS: self.paths.nginx_log_dir / "access.log",
            LogSource.PROXY_ERROR: self.paths.nginx_log_dir / "error.log",
        }[source]

    def tail(self, source: LogSource, lines: int = RECENT_LOG_LINES) -> list[str] | None:
        """Last ``lines`` lines of a log, or None if the log does not exist."""
        path = self.path_for(source)
        try:
            with open(path, encoding="utf-8", errors="replace") as f:
                return [line.rstrip("\n") for line in deque(f, maxlen=lines)]
        except FileNotFoundError:
            return None

    def read(self, source: LogSource) -> str | None:
        try:
            return self.path_for(source).read_text(encoding="utf-8", errors="replace")
        except FileNotFoundError:
            return None

    def follow(self, source: LogSource) -> int:
        """Stream a log with ``tail -f`` until interrupted (interactive only)."""
        path = self.path_for(source)
        if not path.exists():
            return 1
        try:
            return subprocess.call(["tail", "-f", str(path)])
        except KeyboardInterrupt:
            return 0

    def search(self, term: str) -> list[SearchMatch]:
        """Case-sensitive substring search across the tunnel and nginx logs."""
        matches: list[SearchMatch] = []
        for directory in (self.paths.log_dir, self.paths.nginx_log_dir):
            if not directory.is_dir():
                continue
            for path in sorted(directory.rglob("*")):
                if not path.is_file():
                    continue
                try:
                    with open(path, encoding="utf-8", errors="replace") as f:
                        for number, line in enumerate(f, start=1):
                            if term in line:
                                matches.append(
                                    SearchMatch(path=path, line_number=number, line=line.rstrip("\n"))
                                )
                except OSError as e:
                    logger.debug("Skipping unreadable log", path=str(path), error=str(e))
        return matches


class TunnelSnapshot(BaseModel):
    """Point-in-time view of the tunnel for the monitor screen."""

    config: TunnelConfig
    service_status: str = ""
    listening: list[str] = Field(default_factory=list)
    recent_logs: list[str] = Field(default_factory=list)


class TunnelMonitor:
    """Collects configuration, service state and listening sockets."""

    def __init__(
        self,
        store: ConfigStore,
        service: ServiceManager,
        logs: LogViewer | None = None,
    ):
        self.store = store
        self.service = service
        self.logs = logs or LogViewer(store.paths)

    def snapshot(self) -> TunnelSnapshot:
        """Raises ConfigNotFoundError if the tunnel is not installed."""
        config = self.store.load()
        return TunnelSnapshot(
            config=config,
            service_status=self.service.status_text(),
            listening=self.listening_sockets(config.ports),
            recent_logs=self.logs.tail(LogSource.SERVICE) or [],
        )

    def listening_sockets(self, ports: list[int]) -> list[str]:
        """Local addresses of listening sockets on any of ``ports``."""
        result = run_command(["ss", "-tuln"])
        if result.returncode != 0:
            result = run_command(["netstat", "-tuln"])
            if result.returncode != 0:
                return []
        return parse_listening(result.stdout, ports)

    def get_info(self) -> dict[str, Any]:
        return self.snapshot().model_dump(mode="json")


def parse_listening(output: str, ports: list[int]) -> list[str]:
    """Pick local addresses ending in one of ``ports`` from ss/netstat output."""
    wanted = {str(port) for port in ports}
    found: list[str] = []
    for line in output.splitlines():
        for column in line.split():
            host, sep, port = column.rpartition(":")
            if sep and host and port in wanted:
                if column not in found:
                    found.append(column)
                break
    return found
