"""Install, add-port and uninstall flows.

The tunnel manager is the only writer of the configuration store. Each flow
validates its input before touching anything, then applies its steps in a
fixed order and stops at the first fatal error.
"""

import shutil
from typing import Any

from .config import ConfigStore, SystemPaths, TunnelConfig
from .edge import CertificateManager, EdgeLifecycleManager, EdgeSettings, NginxManager
from .edge.lifecycle import checked_domain
from .exceptions import ConfigNotFoundError, ConfigurationError
from .logging import get_logger
from .schedule import ScheduleManager
from .service import ServiceManager
from .system import require_binaries, require_root
from .utils import validate_port

logger = get_logger(__name__)

EDGE_BINARIES = ["nginx", "certbot"]
BASE_BINARIES = ["systemctl"]


class TunnelManager:
    """Orchestrates the configuration store, edge lifecycle and service."""

    def __init__(
        self,
        paths: SystemPaths | None = None,
        settings: EdgeSettings | None = None,
        check_root: bool = True,
    ):
        self.paths = paths or SystemPaths()
        self.check_root = check_root
        self.store = ConfigStore(self.paths)
        self.service = ServiceManager(self.paths)
        self.schedule = ScheduleManager(self.paths, self.service.service_name)
        self.lifecycle = EdgeLifecycleManager(
            NginxManager(self.paths), CertificateManager(self.paths), settings
        )

    def install(
        self,
        config: TunnelConfig,
        remove_domain: str | None = None,
        email: str | None = None,
    ) -> TunnelConfig:
        """Install or reinstall the tunnel.

        Args:
            config: Validated tunnel configuration
            remove_domain: A previous domain whose edge state should be removed first
            email: ACME account email, defaults to the edge settings

        Returns:
            The stored configuration

        Raises:
            ConfigurationError: If ``remove_domain`` is not a valid domain
            PermissionDeniedError: If not running as root
            DependencyError: If a required command is missing
            BootstrapError: If the edge routing or certificate setup fails
            ServiceError: If the service cannot be installed or started
        """
        if remove_domain:
            remove_domain = checked_domain(remove_domain)
        if self.check_root:
            require_root()
        require_binaries(BASE_BINARIES + (EDGE_BINARIES if config.is_edge else []))

        self.paths.config_dir.mkdir(parents=True, exist_ok=True)
        self.paths.log_dir.mkdir(parents=True, exist_ok=True)

        if remove_domain:
            self.lifecycle.remove(remove_domain)

        stored = self.store.replace(config)

        if stored.is_edge and stored.domain:
            self.lifecycle.bootstrap(stored.domain, stored.excluded_port, email=email)

        self.service.install_unit()
        self.service.enable()
        self.service.restart()

        logger.info(
            "Installation completed successfully!",
            role=stored.role.value,
            domain=stored.domain,
            active_ports=stored.active_ports,
            excluded_port=stored.excluded_port,
        )
        return stored

    def add_port(self, port: int) -> bool:
        """Add one port and restart the service so it rebuilds every forwarder.

        Returns:
            False if the port already exists, True once the restart is issued

        Raises:
            ValueError: If the port is out of range
            ConfigNotFoundError: If the tunnel is not installed
        """
        validate_port(port)
        if not self.store.exists():
            raise ConfigNotFoundError("Configuration not found. Please install tunnel first")

        if not self.store.add_port(port):
            return False

        config = self.store.load()
        if port == config.excluded_port:
            logger.warning("Added port equals the panel port and will not be forwarded", port=port)

        self.service.restart()
        logger.info("Added new port to tunnel", port=port)
        return True

    def uninstall(self) -> None:
        """Remove the service, schedule, edge state, configuration and logs."""
        logger.info("Uninstalling WSSMUX...")

        # Stopping the unit terminates the supervisor and all its forwarders
        self.service.stop()
        self.service.disable()
        self.service.remove_unit()

        self.schedule.remove()

        domain = self._configured_domain()
        if domain:
            self.lifecycle.remove(domain)

        shutil.rmtree(self.paths.config_dir, ignore_errors=True)
        shutil.rmtree(self.paths.log_dir, ignore_errors=True)
        logger.info("All components removed successfully")

    def load_config(self) -> TunnelConfig:
        return self.store.load()

    def get_status(self) -> dict[str, Any]:
        config = self.store.load()
        status: dict[str, Any] = {
            "config": config.model_dump(mode="json"),
            "active_ports": config.active_ports,
            "target_host": config.target_host,
            "service_active": self.service.is_active(),
            "schedule": self._schedule_label(),
        }
        if config.is_edge and config.domain:
            status["edge"] = self.lifecycle.get_status(config.domain)
        return status

    def _configured_domain(self) -> str | None:
        try:
            return self.store.load().domain
        except ConfigNotFoundError:
            return None
        except ConfigurationError as e:
            logger.warning("Stored configuration unreadable, skipping domain cleanup", error=str(e))
            return None

    def _schedule_label(self) -> str | None:
        interval = self.schedule.current()
        return f"every {interval.hours}h" if interval else None
