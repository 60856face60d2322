"""Nginx routing rules for the edge node.

Routing files are keyed by domain: the rule for ``example.com`` lives in
``sites-available/example.com`` and is enabled through a symlink of the same
name. Removal is a direct lookup on that key, with a content scan over the
nginx directories as a consistency fallback for auxiliary files that embed
the domain without being named after it.
"""

import re
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field

from ..config import SystemPaths
from ..exceptions import RoutingValidationError
from ..logging import get_logger
from ..system import run_command, systemctl

logger = get_logger(__name__)

NGINX_UNIT = "nginx"
DEFAULT_RULE_NAME = "default"


def _mentions(content: str, domain: str) -> bool:
    pattern = rf"(?<![\w.-]){re.escape(domain)}(?![\w-])"
    return re.search(pattern, content) is not None


class EdgeSettings(BaseModel):
    """Edge routing parameters that are not part of the tunnel config."""

    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")

    control_path: str = Field(default="/wssmux", description="Tunnel control path")
    control_port: int = Field(default=8080, ge=1, le=65535, description="Local tunnel service port")
    http_port: int = Field(default=80, ge=1, le=65535)
    https_port: int = Field(default=443, ge=1, le=65535)
    acme_email: str | None = Field(default=None, description="ACME account email")

    def email_for(self, domain: str) -> str:
        return self.acme_email or f"admin@{domain}"


class RedirectRule(BaseModel):
    """Plain-port server that redirects everything to https."""

    domain: str
    http_port: int = 80

    def to_nginx(self) -> str:
        return f"""server {{
    listen {self.http_port};
    server_name {self.domain};

    location / {{
        return 301 https://$host$request_uri;
    }}
}}
"""


class TLSRule(BaseModel):
    """Secure server terminating TLS and proxying the control path."""

    domain: str
    certificate: Path
    private_key: Path
    excluded_port: int
    https_port: int = 443
    control_path: str = "/wssmux"
    control_port: int = 8080

    def to_nginx(self) -> str:
        return f"""server {{
    listen {self.https_port} ssl http2;
    server_name {self.domain};

    ssl_certificate {self.certificate};
    ssl_certificate_key {self.private_key};

    # Security headers
    add_header Strict-Transport-Security "max-age=31536000; includeSubDomains" always;
    add_header X-Content-Type-Options nosniff;

    # Tunnel control path
    location {self.control_path} {{
        proxy_pass http://127.0.0.1:{self.control_port};
        proxy_http_version 1.1;
        proxy_set_header Upgrade $http_upgrade;
        proxy_set_header Connection "Upgrade";
        proxy_set_header Host $host;
        proxy_set_header X-Real-IP $remote_addr;
        proxy_set_header X-Forwarded-For $proxy_add_x_forwarded_for;
        proxy_set_header X-Forwarded-Proto $scheme;
    }}

    # Block panel access
    location ~* ^/{self.excluded_port}/ {{
        deny all;
        return 403;
    }}
}}
"""


class DefaultRule(BaseModel):
    """Minimal catch-all server installed by a global reset."""

    web_root: Path
    http_port: int = 80

    def to_nginx(self) -> str:
        return f"""server {{
    listen {self.http_port} default_server;
    listen [::]:{self.http_port} default_server;
    server_name _;
    root {self.web_root};
    index index.html;

    location / {{
        try_files $uri $uri/ =404;
    }}
}}
"""


class NginxManager:
    """Manages nginx routing files and the nginx service."""

    def __init__(self, paths: SystemPaths | None = None):
        self.paths = paths or SystemPaths()

    @property
    def _scan_dirs(self) -> list[Path]:
        return [
            self.paths.nginx_conf_d,
            self.paths.nginx_sites_available,
            self.paths.nginx_sites_enabled,
        ]

    # Service control

    def stop(self) -> bool:
        ok = systemctl("stop", NGINX_UNIT)
        if not ok:
            logger.warning("Failed to stop nginx")
        return ok

    def start(self) -> bool:
        ok = systemctl("start", NGINX_UNIT)
        if not ok:
            logger.warning("Failed to start nginx")
        return ok

    def reload(self) -> bool:
        ok = systemctl("reload", NGINX_UNIT)
        if not ok:
            logger.warning("Failed to reload nginx")
        return ok

    def is_active(self) -> bool:
        return systemctl("is-active", NGINX_UNIT)

    def test_config(self) -> bool:
        """Run ``nginx -t`` and report whether the configuration parses."""
        result = run_command(["nginx", "-t"])
        if result.returncode != 0:
            logger.error("Nginx configuration test failed", output=(result.stderr or "").strip())
            return False
        return True

    def validate(self) -> None:
        """Raise RoutingValidationError unless ``nginx -t`` succeeds."""
        if not self.test_config():
            raise RoutingValidationError("Nginx configuration test failed")

    # Routing files

    def rule_path(self, domain: str) -> Path:
        return self.paths.nginx_sites_available / domain

    def enabled_path(self, domain: str) -> Path:
        return self.paths.nginx_sites_enabled / domain

    def write_rule(self, name: str, content: str) -> Path:
        """Write a routing file and enable it."""
        self.paths.nginx_sites_available.mkdir(parents=True, exist_ok=True)
        self.paths.nginx_sites_enabled.mkdir(parents=True, exist_ok=True)

        available = self.rule_path(name)
        available.write_text(content, encoding="utf-8")

        enabled = self.enabled_path(name)
        if enabled.is_symlink() or enabled.exists():
            enabled.unlink()
        enabled.symlink_to(available)

        logger.debug("Routing rule written", name=name, path=str(available))
        return available

    def find_rules(self, domain: str) -> list[Path]:
        """Routing files named after ``domain`` or whose content mentions it."""
        found: list[Path] = []
        for path in (self.rule_path(domain), self.enabled_path(domain)):
            if path.is_symlink() or path.exists():
                found.append(path)

        for directory in self._scan_dirs:
            if not directory.is_dir():
                continue
            for path in sorted(directory.iterdir()):
                if path in found or not path.is_file():
                    continue
                try:
                    content = path.read_text(encoding="utf-8", errors="ignore")
                except OSError:
                    continue
                if _mentions(content, domain):
                    found.append(path)
        return found

    def remove_rules(self, domain: str) -> list[Path]:
        """Delete every routing file for ``domain``; missing files are fine."""
        removed: list[Path] = []
        for path in self.find_rules(domain):
            try:
                path.unlink()
            except FileNotFoundError:
                continue
            except OSError as e:
                logger.warning("Failed to remove routing file", path=str(path), error=str(e))
                continue
            logger.info("Removed routing file", path=str(path))
            removed.append(path)

        # Drop symlinks left dangling by removing their targets
        if self.paths.nginx_sites_enabled.is_dir():
            for link in list(self.paths.nginx_sites_enabled.iterdir()):
                if not link.is_symlink() or link.exists():
                    continue
                try:
                    link.unlink()
                except OSError as e:
                    logger.warning("Failed to remove dangling link", path=str(link), error=str(e))
                    continue
                removed.append(link)
        return removed

    def remove_all_rules(self) -> None:
        """Delete every site and conf.d file."""
        for directory in self._scan_dirs:
            if not directory.is_dir():
                continue
            for path in directory.iterdir():
                if path.is_symlink() or path.is_file():
                    path.unlink(missing_ok=True)
        logger.info("Removed all nginx routing files")

    def write_default_rule(self) -> Path:
        return self.write_rule(DEFAULT_RULE_NAME, DefaultRule(web_root=self.paths.web_root).to_nginx())

    def disable_default_rule(self) -> None:
        self.enabled_path(DEFAULT_RULE_NAME).unlink(missing_ok=True)
