"""Shared pytest fixtures for wssmux tests."""

import shutil
import socket
import subprocess
from pathlib import Path

import pytest

from wssmux.config import ConfigStore, SystemPaths, TunnelConfig


class FakeSystem:
    """Stands in for ``subprocess.run`` and simulates nginx, certbot and systemctl.

    Certificates are materialized under the Let's Encrypt directory of the
    given paths so the code under test sees real files.
    """

    def __init__(self, paths: SystemPaths):
        self.paths = paths
        self.calls: list[list[str]] = []
        self.certificates: set[str] = set()
        self.nginx_test_results: list[bool] = []
        self.issue_ok = True
        self.issue_writes_files = True
        self.delete_ok = True
        self.failing: set[tuple[str, ...]] = set()
        self.nginx_running = True
        self.ss_output = ""
        self.cert_enddate: str | None = None

    def __call__(self, cmd, check=False, capture_output=True, text=True, timeout=None):
        cmd = [str(part) for part in cmd]
        self.calls.append(cmd)

        for prefix in self.failing:
            if tuple(cmd[: len(prefix)]) == prefix:
                return self._result(cmd, 1, stderr="failed")

        if cmd[:2] == ["nginx", "-t"]:
            ok = self.nginx_test_results.pop(0) if self.nginx_test_results else True
            return self._result(cmd, 0 if ok else 1, stderr="" if ok else "emerg: syntax error")
        if cmd[0] == "certbot":
            return self._certbot(cmd)
        if cmd[:2] == ["systemctl", "stop"] and cmd[2:] == ["nginx"]:
            self.nginx_running = False
        if cmd[:2] == ["systemctl", "start"] and cmd[2:] == ["nginx"]:
            self.nginx_running = True
        if cmd[0] == "ss":
            return self._result(cmd, 0, stdout=self.ss_output)
        if cmd[0] == "openssl" and self.cert_enddate is not None:
            return self._result(cmd, 0, stdout=f"notAfter={self.cert_enddate}\n")
        return self._result(cmd, 0)

    def commands(self, *prefix: str) -> list[list[str]]:
        return [call for call in self.calls if tuple(call[: len(prefix)]) == prefix]

    def _certbot(self, cmd):
        action = cmd[1]
        letsencrypt = self.paths.letsencrypt_dir
        if action == "certificates":
            listing = "".join(
                f"  Certificate Name: {name}\n    Domains: {name}\n" for name in sorted(self.certificates)
            )
            return self._result(cmd, 0, stdout=listing)
        if action == "certonly":
            domain = cmd[cmd.index("-d") + 1]
            if self.nginx_running:
                return self._result(cmd, 1, stderr="Problem binding to port 80")
            if not self.issue_ok:
                return self._result(cmd, 1, stderr="Challenge failed")
            if self.issue_writes_files:
                live = letsencrypt / "live" / domain
                live.mkdir(parents=True, exist_ok=True)
                (live / "fullchain.pem").write_text("CERT")
                (live / "privkey.pem").write_text("KEY")
                (letsencrypt / "archive" / domain).mkdir(parents=True, exist_ok=True)
                (letsencrypt / "renewal").mkdir(parents=True, exist_ok=True)
                (letsencrypt / "renewal" / f"{domain}.conf").write_text(f"cert = {domain}\n")
            self.certificates.add(domain)
            return self._result(cmd, 0)
        if action == "delete":
            domain = cmd[cmd.index("--cert-name") + 1]
            if not self.delete_ok:
                return self._result(cmd, 1, stderr="revocation failed")
            self.certificates.discard(domain)
            shutil.rmtree(letsencrypt / "live" / domain, ignore_errors=True)
            shutil.rmtree(letsencrypt / "archive" / domain, ignore_errors=True)
            (letsencrypt / "renewal" / f"{domain}.conf").unlink(missing_ok=True)
            return self._result(cmd, 0)
        return self._result(cmd, 0)

    @staticmethod
    def _result(cmd, returncode, stdout="", stderr=""):
        return subprocess.CompletedProcess(cmd, returncode, stdout, stderr)


@pytest.fixture
def paths(tmp_path: Path) -> SystemPaths:
    """Every system location rooted under a temporary directory."""
    return SystemPaths.under(tmp_path / "root")


@pytest.fixture
def fake_system(paths, monkeypatch) -> FakeSystem:
    """Patch subprocess.run with a simulated system."""
    system = FakeSystem(paths)
    monkeypatch.setattr("subprocess.run", system)
    return system


@pytest.fixture
def store(paths) -> ConfigStore:
    return ConfigStore(paths)


@pytest.fixture
def edge_config() -> TunnelConfig:
    return TunnelConfig(
        role="iran",
        domain="t.example.com",
        upstream_address="203.0.113.9",
        ports=[8443],
        excluded_port=2053,
    )


@pytest.fixture
def upstream_config() -> TunnelConfig:
    return TunnelConfig(role="foreign", ports=[8443, 8080], excluded_port=54321)


@pytest.fixture
def free_port():
    """Factory returning currently unused loopback TCP ports."""

    def _free_port() -> int:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.bind(("127.0.0.1", 0))
            return sock.getsockname()[1]

    return _free_port
