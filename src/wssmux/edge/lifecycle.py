"""Domain & edge lifecycle management.

A domain's edge state is three artifacts that exist together or not at all:
its routing rule, its certificate material and its renewal entry. ``remove``
deletes all three; ``bootstrap`` rebuilds them from a clean slate, aborting
on the first fatal step.
"""

from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field

from ..exceptions import BootstrapError, ConfigurationError
from ..logging import get_logger
from ..utils import validate_domain
from .certs import CertificateManager
from .nginx import EdgeSettings, NginxManager, RedirectRule, TLSRule

logger = get_logger(__name__)


def checked_domain(domain: str) -> str:
    """Normalize a domain name before it is used to build any path.

    Raises:
        ConfigurationError: If the name is not a valid domain
    """
    try:
        return validate_domain(domain)
    except ValueError as e:
        raise ConfigurationError(f"Invalid domain {domain!r}: {e}") from e


class DomainState(str, Enum):
    """Per-domain edge state."""

    ABSENT = "absent"
    BOOTSTRAPPING = "bootstrapping"
    ACTIVE = "active"
    FAILED = "failed"


class DomainArtifacts(BaseModel):
    """What exists on disk for one domain."""

    domain: str
    routing_files: list[Path] = Field(default_factory=list)
    certificate: bool = False
    renewal_entry: bool = False

    @property
    def empty(self) -> bool:
        return not (self.routing_files or self.certificate or self.renewal_entry)


class EdgeLifecycleManager:
    """Removes and rebuilds a domain's routing and certificate state."""

    def __init__(
        self,
        nginx: NginxManager,
        certs: CertificateManager,
        settings: EdgeSettings | None = None,
    ):
        self.nginx = nginx
        self.certs = certs
        self.settings = settings or EdgeSettings()
        self._states: dict[str, DomainState] = {}

    def state(self, domain: str) -> DomainState:
        """Last known state of a domain, falling back to what is on disk."""
        if domain in self._states:
            return self._states[domain]
        artifacts = self.inspect(domain)
        if artifacts.empty:
            return DomainState.ABSENT
        if artifacts.certificate and self._tls_rule_present(domain):
            return DomainState.ACTIVE
        return DomainState.FAILED

    def inspect(self, domain: str) -> DomainArtifacts:
        return DomainArtifacts(
            domain=domain,
            routing_files=self.nginx.find_rules(domain),
            certificate=self.certs.live_dir(domain).exists()
            or self.certs.archive_dir(domain).exists(),
            renewal_entry=self.certs.renewal_file(domain).exists(),
        )

    def remove(self, domain: str | None) -> None:
        """Delete every routing, certificate and renewal artifact for a domain.

        Safe to call when nothing exists. Proxy stop/start failures and
        certbot errors are logged and never abort the removal.

        Raises:
            ConfigurationError: If ``domain`` is not a valid domain name
        """
        if not domain:
            return
        domain = checked_domain(domain)

        logger.info("Removing existing configuration for domain", domain=domain)
        self.nginx.stop()
        try:
            self.nginx.remove_rules(domain)
            self.certs.delete(domain)
        finally:
            self.nginx.start()

        self._states[domain] = DomainState.ABSENT

    def reset_all(self) -> None:
        """Remove every routing file and activate the default fallback rule.

        Raises:
            RoutingValidationError: If nginx rejects the default configuration
        """
        logger.info("Cleaning up all Nginx configurations...")
        self.nginx.stop()
        self.nginx.remove_all_rules()
        self.nginx.write_default_rule()
        self.nginx.validate()
        self.nginx.start()
        logger.info("Nginx cleaned and started successfully")

    def bootstrap(
        self, domain: str, excluded_port: int, email: str | None = None
    ) -> tuple[Path, Path]:
        """Rebuild the edge state for ``domain`` from a clean slate.

        ``email`` overrides the ACME account address from the settings.

        Returns:
            (fullchain, private key) paths of the issued certificate

        Raises:
            ConfigurationError: If ``domain`` is not a valid domain name
            RoutingValidationError: If a generated rule fails ``nginx -t``
            CertificateError: If issuance fails or its files are missing
        """
        domain = checked_domain(domain)
        self._states[domain] = DomainState.BOOTSTRAPPING
        try:
            self.reset_all()
            self.remove(domain)
            self._states[domain] = DomainState.BOOTSTRAPPING

            self._activate_redirect(domain)
            cert_path, key_path = self._issue_certificate(domain, email)
            self._activate_tls(domain, excluded_port, cert_path, key_path)
        except BootstrapError:
            self._states[domain] = DomainState.FAILED
            logger.error("Edge bootstrap failed", domain=domain)
            raise

        self._states[domain] = DomainState.ACTIVE
        logger.info("Nginx configured successfully with SSL", domain=domain)
        return cert_path, key_path

    def render_rules(
        self, domain: str, excluded_port: int, cert_path: Path, key_path: Path
    ) -> str:
        """Final routing file: redirect server plus TLS server."""
        redirect = RedirectRule(domain=domain, http_port=self.settings.http_port)
        tls = TLSRule(
            domain=domain,
            certificate=cert_path,
            private_key=key_path,
            excluded_port=excluded_port,
            https_port=self.settings.https_port,
            control_path=self.settings.control_path,
            control_port=self.settings.control_port,
        )
        return redirect.to_nginx() + "\n" + tls.to_nginx()

    def get_status(self, domain: str) -> dict[str, Any]:
        artifacts = self.inspect(domain)
        return {
            "domain": domain,
            "state": self.state(domain).value,
            "routing_files": [str(path) for path in artifacts.routing_files],
            "certificate": self.certs.inspect(domain).model_dump(mode="json"),
        }

    def _activate_redirect(self, domain: str) -> None:
        logger.info("Creating basic Nginx configuration...", domain=domain)
        self.nginx.disable_default_rule()
        self.nginx.write_rule(
            domain, RedirectRule(domain=domain, http_port=self.settings.http_port).to_nginx()
        )
        self.nginx.validate()
        self.nginx.reload()
        logger.info("Basic Nginx configuration created successfully", domain=domain)

    def _issue_certificate(self, domain: str, email: str | None) -> tuple[Path, Path]:
        # Standalone issuance needs the HTTP port nginx holds
        self.nginx.stop()
        try:
            return self.certs.issue(domain, email or self.settings.email_for(domain))
        finally:
            self.nginx.start()

    def _activate_tls(
        self, domain: str, excluded_port: int, cert_path: Path, key_path: Path
    ) -> None:
        logger.info("Configuring Nginx with SSL and tunnel...", domain=domain)
        self.nginx.write_rule(domain, self.render_rules(domain, excluded_port, cert_path, key_path))
        self.nginx.validate()
        self.nginx.reload()

    def _tls_rule_present(self, domain: str) -> bool:
        path = self.nginx.rule_path(domain)
        try:
            return "ssl_certificate" in path.read_text(encoding="utf-8")
        except OSError:
            return False
