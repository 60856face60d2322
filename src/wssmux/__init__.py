"""WSSMUX - TLS-fronted TCP port forwarding tunnel manager."""

from .config import ConfigStore, Role, SystemPaths, TunnelConfig
from .edge import (
    CertificateManager,
    DomainState,
    EdgeLifecycleManager,
    EdgeSettings,
    NginxManager,
)
from .exceptions import (
    BootstrapError,
    CertificateError,
    ConfigNotFoundError,
    ConfigurationError,
    DependencyError,
    PermissionDeniedError,
    RoutingValidationError,
    ServiceError,
    WssmuxError,
)
from .forwarder import Forwarder, ForwarderState
from .logging import get_logger, setup_logging
from .manager import TunnelManager
from .schedule import RestartInterval, ScheduleManager
from .service import ServiceManager
from .supervisor import PortForwardSupervisor, ReconcileResult, plan

__version__ = "0.1.0"


__all__ = [
    # Configuration
    "ConfigStore",
    "Role",
    "SystemPaths",
    "TunnelConfig",
    # Forwarding
    "Forwarder",
    "ForwarderState",
    "PortForwardSupervisor",
    "ReconcileResult",
    "plan",
    # Edge
    "CertificateManager",
    "DomainState",
    "EdgeLifecycleManager",
    "EdgeSettings",
    "NginxManager",
    # Operations
    "TunnelManager",
    "ServiceManager",
    "ScheduleManager",
    "RestartInterval",
    # Exceptions
    "WssmuxError",
    "ConfigurationError",
    "ConfigNotFoundError",
    "BootstrapError",
    "RoutingValidationError",
    "CertificateError",
    "ServiceError",
    "DependencyError",
    "PermissionDeniedError",
    # Logging
    "get_logger",
    "setup_logging",
]
