"""Tunnel configuration model and its persistent store.

The store is the single source of truth for the tunnel parameters. It is a
``KEY=VALUE`` file read by the forwarding service on every (re)start and
mutated only by the install and add-port flows.
"""

import fcntl
import os
import tempfile
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

from .exceptions import ConfigNotFoundError, ConfigurationError
from .logging import get_logger
from .utils import format_port_list, parse_port_list, validate_domain, validate_port

logger = get_logger(__name__)

LOOPBACK_ADDRESS = "127.0.0.1"

# Persisted key for each model field
_FIELD_KEYS = {
    "role": "ROLE",
    "domain": "DOMAIN",
    "upstream_address": "FOREIGN_IP",
    "ports": "V2RAY_PORTS",
    "excluded_port": "XUI_PORT",
    "revision": "REVISION",
}


class Role(str, Enum):
    """Tunnel node roles."""

    EDGE = "iran"
    UPSTREAM = "foreign"


class TunnelConfig(BaseModel):
    """Pydantic model for the persisted tunnel configuration."""

    model_config = ConfigDict(
        str_strip_whitespace=True, validate_assignment=True, extra="forbid"
    )

    role: Role = Field(..., description="Node role")
    domain: str | None = Field(default=None, description="Public tunnel domain")
    upstream_address: str | None = Field(
        default=None, description="Upstream (foreign) server address"
    )
    ports: list[int] = Field(default_factory=list, description="Forwarded ports")
    excluded_port: int = Field(..., ge=1, le=65535, description="Panel port")
    revision: int = Field(default=0, ge=0, description="Write counter")

    @field_validator("role", mode="before")
    @classmethod
    def normalize_role(cls, v: Any) -> Any:
        """Accept role names case-insensitively."""
        if isinstance(v, str):
            return v.strip().lower()
        return v

    @field_validator("domain")
    @classmethod
    def validate_domain_name(cls, v: str | None) -> str | None:
        """Validate domain format."""
        if v is None or v == "":
            return None
        return validate_domain(v)

    @field_validator("upstream_address")
    @classmethod
    def validate_upstream_address(cls, v: str | None) -> str | None:
        """Reject addresses with whitespace or a port suffix."""
        if v is None or v == "":
            return None
        if any(c.isspace() for c in v) or "/" in v:
            raise ValueError(f"Invalid upstream address: {v}")
        return v

    @field_validator("ports", mode="before")
    @classmethod
    def parse_ports(cls, v: Any) -> Any:
        """Accept the on-disk comma-separated form as well as a list."""
        if isinstance(v, str):
            return parse_port_list(v) if v.strip() else []
        return v

    @field_validator("ports")
    @classmethod
    def validate_ports(cls, v: list[int]) -> list[int]:
        """Ports must be valid and distinct."""
        for port in v:
            validate_port(port)
        if len(set(v)) != len(v):
            raise ValueError("Ports must be distinct")
        return v

    @model_validator(mode="after")
    def validate_edge_fields(self) -> "TunnelConfig":
        """Edge nodes need a domain and an upstream address."""
        if self.role == Role.EDGE:
            if not self.domain:
                raise ValueError("Domain is required for the edge role")
            if not self.upstream_address:
                raise ValueError("Upstream address is required for the edge role")
        return self

    @property
    def is_edge(self) -> bool:
        return self.role == Role.EDGE

    @property
    def target_host(self) -> str:
        """Host every forwarder connects to."""
        if self.role == Role.EDGE and self.upstream_address:
            return self.upstream_address
        return LOOPBACK_ADDRESS

    @property
    def active_ports(self) -> list[int]:
        """Ports that get a forwarder, in configured order."""
        return [port for port in self.ports if port != self.excluded_port]

    def to_env(self) -> str:
        """Render the ``KEY=VALUE`` file contents."""
        values = {
            "role": self.role.value,
            "domain": self.domain or "",
            "upstream_address": self.upstream_address or "",
            "ports": format_port_list(self.ports),
            "excluded_port": str(self.excluded_port),
            "revision": str(self.revision),
        }
        lines = [f"{_FIELD_KEYS[name]}={value}" for name, value in values.items()]
        return "\n".join(lines) + "\n"

    @classmethod
    def from_env(cls, content: str) -> "TunnelConfig":
        """Parse ``KEY=VALUE`` file contents.

        Raises:
            ConfigurationError: If a key is unknown or a value is invalid
        """
        key_to_field = {key: name for name, key in _FIELD_KEYS.items()}
        data: dict[str, Any] = {}

        for lineno, raw_line in enumerate(content.splitlines(), start=1):
            line = raw_line.strip()
            if not line or line.startswith("#"):
                continue
            if "=" not in line:
                raise ConfigurationError(f"Malformed config line {lineno}: {raw_line!r}")

            key, _, value = line.partition("=")
            field = key_to_field.get(key.strip().upper())
            if field is None:
                raise ConfigurationError(f"Unknown config key on line {lineno}: {key!r}")
            data[field] = value.strip().strip('"')

        try:
            return cls(**data)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid tunnel configuration: {e}") from e


class SystemPaths(BaseModel):
    """Filesystem locations used by the tunnel manager."""

    model_config = ConfigDict(validate_assignment=True, extra="forbid")

    config_dir: Path = Field(default=Path("/etc/wssmux"))
    log_dir: Path = Field(default=Path("/var/log/wssmux"))
    service_file: Path = Field(default=Path("/etc/systemd/system/wssmux.service"))
    cron_file: Path = Field(default=Path("/etc/cron.d/wssmux-restart"))
    nginx_sites_available: Path = Field(default=Path("/etc/nginx/sites-available"))
    nginx_sites_enabled: Path = Field(default=Path("/etc/nginx/sites-enabled"))
    nginx_conf_d: Path = Field(default=Path("/etc/nginx/conf.d"))
    nginx_log_dir: Path = Field(default=Path("/var/log/nginx"))
    web_root: Path = Field(default=Path("/var/www/html"))
    letsencrypt_dir: Path = Field(default=Path("/etc/letsencrypt"))

    @field_validator("*")
    @classmethod
    def validate_absolute(cls, v: Path) -> Path:
        """All locations must be absolute paths."""
        if not v.is_absolute():
            raise ValueError(f"Path must be absolute: {v}")
        return v

    @classmethod
    def under(cls, root: Path) -> "SystemPaths":
        """Re-root every default location under ``root``."""
        defaults = cls()
        return cls(
            **{
                name: root / value.relative_to("/")
                for name, value in defaults.model_dump().items()
            }
        )

    @property
    def config_file(self) -> Path:
        return self.config_dir / "config.env"

    @property
    def lock_file(self) -> Path:
        return self.config_dir / "config.lock"

    @property
    def install_log(self) -> Path:
        return self.log_dir / "install.log"

    @property
    def service_log(self) -> Path:
        return self.log_dir / "wssmux.log"

    @property
    def service_error_log(self) -> Path:
        return self.log_dir / "wssmux.error.log"


class ConfigStore:
    """Persistent, serialized access to the tunnel configuration.

    Mutations take an exclusive file lock so concurrent operator sessions
    cannot interleave, and every write goes through a temporary file and an
    atomic rename so a restarting service never reads a half-written file.
    """

    def __init__(self, paths: SystemPaths | None = None):
        self.paths = paths or SystemPaths()
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self.paths.config_file

    def exists(self) -> bool:
        return self.path.is_file()

    def load(self) -> TunnelConfig:
        """Read the current configuration.

        Raises:
            ConfigNotFoundError: If the tunnel has not been installed
            ConfigurationError: If the file cannot be parsed
        """
        try:
            content = self.path.read_text(encoding="utf-8")
        except FileNotFoundError as e:
            raise ConfigNotFoundError(
                "Configuration not found. Please install tunnel first"
            ) from e
        return TunnelConfig.from_env(content)

    def replace(self, config: TunnelConfig) -> TunnelConfig:
        """Rewrite the whole configuration (install flow)."""
        with self._locked():
            previous = self._load_or_none()
            revision = previous.revision + 1 if previous else 1
            stored = config.model_copy(update={"revision": revision})
            self._write(stored)

        logger.info(
            "Configuration saved",
            role=stored.role.value,
            domain=stored.domain,
            ports=stored.ports,
            excluded_port=stored.excluded_port,
            revision=revision,
        )
        return stored

    def update(self, **changes: Any) -> TunnelConfig:
        """Read-modify-write selected fields under the lock."""
        with self._locked():
            current = self.load()
            data = current.model_dump()
            data.update(changes)
            data["revision"] = current.revision + 1
            try:
                updated = TunnelConfig(**data)
            except ValidationError as e:
                raise ConfigurationError(f"Invalid configuration update: {e}") from e
            self._write(updated)

        logger.info("Configuration updated", fields=sorted(changes), revision=updated.revision)
        return updated

    def add_port(self, port: int) -> bool:
        """Append one port to the stored set.

        Returns:
            False if the port already exists (nothing is written), True otherwise
        """
        validate_port(port)
        with self._locked():
            current = self.load()
            if port in current.ports:
                logger.warning("Port already exists in tunnel", port=port)
                return False

            updated = current.model_copy(
                update={"ports": [*current.ports, port], "revision": current.revision + 1}
            )
            self._write(updated)

        logger.info("Port appended to configuration", port=port, ports=updated.ports)
        return True

    def delete(self) -> None:
        """Remove the configuration file."""
        with self._locked():
            self.path.unlink(missing_ok=True)
        logger.info("Configuration removed", path=str(self.path))

    def _load_or_none(self) -> TunnelConfig | None:
        try:
            return self.load()
        except ConfigurationError:
            return None

    @contextmanager
    def _locked(self) -> Iterator[None]:
        self.paths.config_dir.mkdir(parents=True, exist_ok=True)
        with self._lock, open(self.paths.lock_file, "a") as lock_handle:
            fcntl.flock(lock_handle.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(lock_handle.fileno(), fcntl.LOCK_UN)

    def _write(self, config: TunnelConfig) -> None:
        fd, temp_path = tempfile.mkstemp(
            dir=self.paths.config_dir, prefix=".config.", suffix=".env"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(config.to_env())
                f.flush()
                os.fsync(f.fileno())
            os.chmod(temp_path, 0o600)
            os.replace(temp_path, self.path)
        except Exception:
            try:
                os.unlink(temp_path)
            except OSError:
                pass
            raise
