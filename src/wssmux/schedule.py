"""Periodic restart schedule for the forwarding service."""

import re
from enum import Enum
from pathlib import Path

from .config import SystemPaths
from .logging import get_logger
from .service import SERVICE_NAME
from .system import restart_cron

logger = get_logger(__name__)

_ENTRY_PATTERN = re.compile(r"^(?P<expr>(\S+\s+){4}\S+)\s+root\s+systemctl restart ")


class RestartInterval(str, Enum):
    """Supported restart intervals, valued by their cron expression."""

    EVERY_1_HOUR = "0 * * * *"
    EVERY_2_HOURS = "0 */2 * * *"
    EVERY_3_HOURS = "0 */3 * * *"
    EVERY_6_HOURS = "0 */6 * * *"
    EVERY_12_HOURS = "0 */12 * * *"

    @property
    def hours(self) -> int:
        return _HOURS[self]

    @classmethod
    def from_hours(cls, hours: int) -> "RestartInterval":
        for interval, value in _HOURS.items():
            if value == hours:
                return interval
        raise ValueError(f"Unsupported restart interval: {hours} hours")


_HOURS = {
    RestartInterval.EVERY_1_HOUR: 1,
    RestartInterval.EVERY_2_HOURS: 2,
    RestartInterval.EVERY_3_HOURS: 3,
    RestartInterval.EVERY_6_HOURS: 6,
    RestartInterval.EVERY_12_HOURS: 12,
}


class ScheduleManager:
    """Installs or removes the single cron entry restarting the service."""

    def __init__(self, paths: SystemPaths | None = None, service_name: str = SERVICE_NAME):
        self.paths = paths or SystemPaths()
        self.service_name = service_name

    @property
    def cron_file(self) -> Path:
        return self.paths.cron_file

    def render_entry(self, interval: RestartInterval) -> str:
        return f"{interval.value} root systemctl restart {self.service_name} > /dev/null 2>&1\n"

    def install(self, interval: RestartInterval) -> None:
        """Replace the restart entry with one for ``interval``."""
        self.cron_file.parent.mkdir(parents=True, exist_ok=True)
        self.cron_file.write_text(self.render_entry(interval), encoding="utf-8")
        self.cron_file.chmod(0o644)

        if not restart_cron():
            logger.warning("Failed to restart cron daemon")
        logger.info("Cron job configured", schedule=interval.value)

    def remove(self) -> None:
        """Remove the restart entry; a missing entry is not an error."""
        existed = self.cron_file.exists()
        self.cron_file.unlink(missing_ok=True)
        if existed and not restart_cron():
            logger.warning("Failed to restart cron daemon")
        logger.info("Cron job disabled")

    def current(self) -> RestartInterval | None:
        """Interval of the installed entry, if any."""
        try:
            content = self.cron_file.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None

        for line in content.splitlines():
            match = _ENTRY_PATTERN.match(line.strip())
            if match:
                try:
                    return RestartInterval(match.group("expr"))
                except ValueError:
                    return None
        return None
