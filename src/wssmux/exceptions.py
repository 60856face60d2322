"""Custom exceptions for the wssmux tunnel manager."""


class WssmuxError(Exception):
    """Base exception for all wssmux errors."""
    pass


class ConfigurationError(WssmuxError):
    """Raised when tunnel configuration is invalid or unreadable."""
    pass


class ConfigNotFoundError(ConfigurationError):
    """Raised when no tunnel configuration has been installed yet."""
    pass


class BootstrapError(WssmuxError):
    """Raised when an edge bootstrap step fails fatally."""
    pass


class RoutingValidationError(BootstrapError):
    """Raised when nginx rejects a generated routing configuration."""
    pass


class CertificateError(BootstrapError):
    """Raised when certificate issuance fails or its files are missing."""
    pass


class ServiceError(WssmuxError):
    """Raised when a systemd service operation fails."""
    pass


class DependencyError(WssmuxError):
    """Raised when a required system binary is not installed."""
    pass


class PermissionDeniedError(WssmuxError):
    """Raised when an operation requires root privileges."""
    pass
