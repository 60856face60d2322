"""Tests for nginx routing rule management."""

from pathlib import Path

import pytest

from wssmux.edge.nginx import (
    DefaultRule,
    EdgeSettings,
    NginxManager,
    RedirectRule,
    TLSRule,
)
from wssmux.exceptions import RoutingValidationError


@pytest.fixture
def nginx(paths, fake_system) -> NginxManager:
    return NginxManager(paths)


class TestRules:
    def test_redirect_rule(self):
        text = RedirectRule(domain="t.example.com").to_nginx()
        assert "listen 80;" in text
        assert "server_name t.example.com;" in text
        assert "return 301 https://$host$request_uri;" in text

    def test_tls_rule(self):
        text = TLSRule(
            domain="t.example.com",
            certificate=Path("/etc/letsencrypt/live/t.example.com/fullchain.pem"),
            private_key=Path("/etc/letsencrypt/live/t.example.com/privkey.pem"),
            excluded_port=2053,
        ).to_nginx()

        assert "listen 443 ssl http2;" in text
        assert "ssl_certificate /etc/letsencrypt/live/t.example.com/fullchain.pem;" in text
        assert "ssl_certificate_key /etc/letsencrypt/live/t.example.com/privkey.pem;" in text
        assert "location /wssmux {" in text
        assert "proxy_pass http://127.0.0.1:8080;" in text
        assert 'proxy_set_header Connection "Upgrade";' in text
        assert "location ~* ^/2053/ {" in text
        assert "deny all;" in text

    def test_tls_rule_custom_control(self):
        text = TLSRule(
            domain="t.example.com",
            certificate=Path("/c.pem"),
            private_key=Path("/k.pem"),
            excluded_port=2053,
            control_path="/tunnel",
            control_port=9090,
        ).to_nginx()
        assert "location /tunnel {" in text
        assert "proxy_pass http://127.0.0.1:9090;" in text

    def test_default_rule(self):
        text = DefaultRule(web_root=Path("/var/www/html")).to_nginx()
        assert "listen 80 default_server;" in text
        assert "listen [::]:80 default_server;" in text
        assert "root /var/www/html;" in text

    def test_settings_email(self):
        assert EdgeSettings().email_for("t.example.com") == "admin@t.example.com"
        assert EdgeSettings(acme_email="ops@example.org").email_for("t.example.com") == "ops@example.org"


class TestNginxManager:
    def test_write_rule_enables_it(self, nginx, paths):
        path = nginx.write_rule("t.example.com", "server {}\n")

        assert path == paths.nginx_sites_available / "t.example.com"
        enabled = paths.nginx_sites_enabled / "t.example.com"
        assert enabled.is_symlink()
        assert enabled.resolve() == path.resolve()

    def test_write_rule_replaces_existing(self, nginx):
        nginx.write_rule("t.example.com", "old\n")
        path = nginx.write_rule("t.example.com", "new\n")
        assert path.read_text() == "new\n"

    def test_find_rules_by_name_and_content(self, nginx, paths):
        nginx.write_rule("t.example.com", RedirectRule(domain="t.example.com").to_nginx())
        paths.nginx_conf_d.mkdir(parents=True)
        aux = paths.nginx_conf_d / "upstream-cache.conf"
        aux.write_text("# cache for t.example.com\n")
        unrelated = paths.nginx_conf_d / "other.conf"
        unrelated.write_text("server_name other.example.com;\n")

        found = nginx.find_rules("t.example.com")

        assert paths.nginx_sites_available / "t.example.com" in found
        assert paths.nginx_sites_enabled / "t.example.com" in found
        assert aux in found
        assert unrelated not in found

    def test_content_scan_matches_whole_names(self, nginx, paths):
        nginx.write_rule("at.example.com", RedirectRule(domain="at.example.com").to_nginx())
        assert nginx.find_rules("t.example.com") == []
        assert nginx.find_rules("example.com") == []

    def test_remove_rules(self, nginx, paths):
        nginx.write_rule("t.example.com", RedirectRule(domain="t.example.com").to_nginx())
        nginx.write_rule("keep.example.com", RedirectRule(domain="keep.example.com").to_nginx())

        removed = nginx.remove_rules("t.example.com")

        assert removed
        assert nginx.find_rules("t.example.com") == []
        assert (paths.nginx_sites_available / "keep.example.com").exists()
        assert (paths.nginx_sites_enabled / "keep.example.com").is_symlink()

    def test_remove_rules_survives_undeletable_link(self, nginx, paths, monkeypatch):
        nginx.write_rule("t.example.com", RedirectRule(domain="t.example.com").to_nginx())
        stale = paths.nginx_sites_enabled / "stale.example.com"
        stale.symlink_to(paths.nginx_sites_available / "gone.example.com")

        original_unlink = Path.unlink

        def unlink(self, missing_ok=False):
            if self.name == "stale.example.com":
                raise PermissionError("read-only")
            original_unlink(self, missing_ok=missing_ok)

        monkeypatch.setattr(Path, "unlink", unlink)

        removed = nginx.remove_rules("t.example.com")

        assert paths.nginx_sites_available / "t.example.com" in removed
        assert stale not in removed
        assert stale.is_symlink()

    def test_remove_rules_when_nothing_exists(self, nginx):
        assert nginx.remove_rules("t.example.com") == []

    def test_remove_all_rules(self, nginx, paths):
        nginx.write_rule("a.example.com", "a\n")
        paths.nginx_conf_d.mkdir(parents=True)
        (paths.nginx_conf_d / "x.conf").write_text("x\n")

        nginx.remove_all_rules()

        for directory in (paths.nginx_sites_available, paths.nginx_sites_enabled, paths.nginx_conf_d):
            assert list(directory.iterdir()) == []

    def test_default_rule_written_and_disabled(self, nginx, paths):
        nginx.write_default_rule()
        assert (paths.nginx_sites_enabled / "default").is_symlink()
        nginx.disable_default_rule()
        assert not (paths.nginx_sites_enabled / "default").exists()
        assert (paths.nginx_sites_available / "default").exists()

    def test_validate(self, nginx, fake_system):
        nginx.validate()
        fake_system.nginx_test_results = [False]
        with pytest.raises(RoutingValidationError):
            nginx.validate()

    def test_service_commands(self, nginx, fake_system):
        assert nginx.stop()
        assert nginx.start()
        assert nginx.reload()
        assert fake_system.commands("systemctl") == [
            ["systemctl", "stop", "nginx"],
            ["systemctl", "start", "nginx"],
            ["systemctl", "reload", "nginx"],
        ]

    def test_stop_failure_is_reported(self, nginx, fake_system):
        fake_system.failing.add(("systemctl", "stop", "nginx"))
        assert nginx.stop() is False
