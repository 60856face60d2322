"""Let's Encrypt certificate management for the edge node.

Issuance and deletion are delegated to certbot. Cleanup is best effort:
the on-disk certificate material for a domain is removed even when certbot
itself reports a failure.
"""

import shutil
from datetime import datetime, timezone
from pathlib import Path

from pydantic import BaseModel

from ..config import SystemPaths
from ..exceptions import CertificateError
from ..logging import get_logger
from ..system import run_command

logger = get_logger(__name__)

ISSUE_TIMEOUT = 300.0
RENEW_DAYS_BEFORE = 30
# openssl x509 -enddate prints e.g. "notAfter=Dec 31 23:59:59 2030 GMT"
ENDDATE_FORMAT = "%b %d %H:%M:%S %Y GMT"


def parse_enddate(output: str) -> datetime | None:
    """Expiry time from ``openssl x509 -enddate`` output, in UTC."""
    for line in output.splitlines():
        key, sep, value = line.partition("=")
        if sep and key.strip() == "notAfter":
            try:
                parsed = datetime.strptime(value.strip(), ENDDATE_FORMAT)
            except ValueError:
                return None
            return parsed.replace(tzinfo=timezone.utc)
    return None


class CertificateInfo(BaseModel):
    """Certificate summary for one domain, as shown by the monitor."""

    domain: str
    present: bool = False
    expires_at: datetime | None = None
    days_left: int | None = None
    renewal_due: bool = False


class CertificateManager:
    """Issues, inspects and deletes certificates through certbot."""

    def __init__(self, paths: SystemPaths | None = None):
        self.paths = paths or SystemPaths()

    @property
    def letsencrypt_dir(self) -> Path:
        return self.paths.letsencrypt_dir

    def live_dir(self, domain: str) -> Path:
        return self.letsencrypt_dir / "live" / domain

    def archive_dir(self, domain: str) -> Path:
        return self.letsencrypt_dir / "archive" / domain

    def renewal_file(self, domain: str) -> Path:
        return self.letsencrypt_dir / "renewal" / f"{domain}.conf"

    def certificate_paths(self, domain: str) -> tuple[Path, Path]:
        """Return (fullchain, private key) paths for a domain."""
        live = self.live_dir(domain)
        return live / "fullchain.pem", live / "privkey.pem"

    def check_certificate_files(self, domain: str) -> bool:
        """Check if both certificate and key files exist."""
        cert_path, key_path = self.certificate_paths(domain)
        return cert_path.exists() and key_path.exists()

    def list_certificates(self) -> list[str]:
        """Certificate names known to certbot."""
        result = run_command(["certbot", "certificates"])
        if result.returncode != 0:
            return []

        names = []
        for line in result.stdout.splitlines():
            line = line.strip()
            if line.startswith("Certificate Name:"):
                names.append(line.split(":", 1)[1].strip())
        return names

    def has_certificate(self, domain: str) -> bool:
        return domain in self.list_certificates()

    def issue(self, domain: str, email: str) -> tuple[Path, Path]:
        """Obtain a certificate in standalone mode, forcing renewal.

        The standalone authenticator binds the HTTP port itself, so the
        caller must have stopped nginx.

        Returns:
            (fullchain, private key) paths

        Raises:
            CertificateError: If certbot fails or the files are missing afterwards
        """
        logger.info("Obtaining SSL certificate", domain=domain)
        cmd = [
            "certbot", "certonly",
            "--standalone",
            "-d", domain,
            "--agree-tos",
            "--email", email,
            "--non-interactive",
            "--force-renewal",
        ]
        result = run_command(cmd, timeout=ISSUE_TIMEOUT)
        if result.returncode != 0:
            logger.error(
                "Failed to obtain SSL certificate",
                domain=domain,
                output=(result.stderr or result.stdout or "").strip(),
            )
            raise CertificateError(f"Failed to obtain SSL certificate for {domain}")

        if not self.check_certificate_files(domain):
            logger.error("Certificate files not found after issuance", domain=domain)
            raise CertificateError(f"Certificate files not found after issuance for {domain}")

        logger.info("SSL certificate obtained successfully", domain=domain)
        return self.certificate_paths(domain)

    def delete(self, domain: str) -> bool:
        """Delete a certificate through certbot, then remove its files.

        Never raises: a certbot failure is logged and the files are removed
        regardless.

        Returns:
            True if certbot deleted the certificate or it was not listed
        """
        deleted = True
        if self.has_certificate(domain):
            result = run_command(
                ["certbot", "delete", "--cert-name", domain, "--non-interactive"]
            )
            if result.returncode != 0:
                deleted = False
                logger.warning(
                    "certbot could not delete certificate, removing files directly",
                    domain=domain,
                )
            else:
                logger.info("Certificate deleted", domain=domain)

        self.purge_files(domain)
        return deleted

    def purge_files(self, domain: str) -> None:
        """Remove live, archive and renewal artifacts for a domain."""
        for directory in (self.live_dir(domain), self.archive_dir(domain)):
            if directory.is_symlink():
                directory.unlink()
            elif directory.exists():
                shutil.rmtree(directory, ignore_errors=True)
        self.renewal_file(domain).unlink(missing_ok=True)


    def inspect(self, domain: str) -> CertificateInfo:
        """Presence and expiry of the live certificate for ``domain``.

        ``renewal_due`` is set within RENEW_DAYS_BEFORE days of expiry, or when
        the certificate exists but its expiry cannot be read.
        """
        if not self.check_certificate_files(domain):
            return CertificateInfo(domain=domain)

        cert_path, _ = self.certificate_paths(domain)
        result = run_command(["openssl", "x509", "-enddate", "-noout", "-in", str(cert_path)], timeout=10)
        expires_at = parse_enddate(result.stdout) if result.returncode == 0 else None
        if expires_at is None:
            logger.warning("Could not read certificate expiry", domain=domain)
            return CertificateInfo(domain=domain, present=True, renewal_due=True)

        days_left = (expires_at - datetime.now(timezone.utc)).days
        return CertificateInfo(
            domain=domain,
            present=True,
            expires_at=expires_at,
            days_left=days_left,
            renewal_due=days_left <= RENEW_DAYS_BEFORE,
        )
