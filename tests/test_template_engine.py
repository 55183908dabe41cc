"""Tests for the template rendering engine."""
from __future__ import annotations

from pathlib import Path

import pytest

from vhostctl.templates import TemplateEngine, TemplateRenderError, write_atomic

SITE_CONTEXT = {
    "DOMAIN_NAME": "api.example.com",
    "BACKEND_HOST": "127.0.0.1",
    "BACKEND_PORT": "8080",
    "MAX_BODY_SIZE": "20M",
    "WEB_ROOT": "/var/www/html",
}


def test_render_to_string_uses_builtin_templates() -> None:
    """Built-in templates substitute the placeholder tokens."""
    engine = TemplateEngine.with_overrides(None)

    output = engine.render_to_string("nginx/http_site.conf.j2", SITE_CONTEXT)

    assert "server_name api.example.com;" in output
    assert "proxy_pass http://127.0.0.1:8080;" in output
    assert "client_max_body_size 20M;" in output
    assert "{{" not in output


def test_missing_placeholder_raises() -> None:
    """Rendering fails loudly when a placeholder has no value."""
    engine = TemplateEngine.with_overrides(None)

    with pytest.raises(TemplateRenderError):
        engine.render_to_string("nginx/http_site.conf.j2", {"DOMAIN_NAME": "x.test"})


def test_override_directory_takes_precedence(tmp_path: Path) -> None:
    """Templates in the override directory shadow the packaged ones."""
    override = tmp_path / "templates" / "nginx"
    override.mkdir(parents=True)
    (override / "http_site.conf.j2").write_text(
        "custom {{DOMAIN_NAME}}\n", encoding="utf-8"
    )
    engine = TemplateEngine.with_overrides(tmp_path / "templates")

    output = engine.render_to_string("nginx/http_site.conf.j2", SITE_CONTEXT)

    assert output == "custom api.example.com\n"
    # Templates without an override still come from the package.
    assert "listen 443 ssl;" in engine.render_to_string(
        "nginx/ssl_site.conf.j2",
        {**SITE_CONTEXT, "CERT_LIVE_DIR": "/etc/letsencrypt/live"},
    )


def test_missing_override_directory_falls_back(tmp_path: Path) -> None:
    """A configured but absent override directory is ignored."""
    engine = TemplateEngine.with_overrides(tmp_path / "absent")

    assert "server_name" in engine.render_to_string("nginx/http_site.conf.j2", SITE_CONTEXT)


def test_write_atomic_writes_with_mode(tmp_path: Path) -> None:
    """Rendered text lands atomically with the requested mode."""
    engine = TemplateEngine.with_overrides(None)
    destination = tmp_path / "sites" / "api.example.com"
    content = engine.render_to_string("nginx/http_site.conf.j2", SITE_CONTEXT)

    assert write_atomic(destination, content, mode=0o640) is True
    assert destination.stat().st_mode & 0o777 == 0o640
    assert "api.example.com" in destination.read_text(encoding="utf-8")

    assert write_atomic(destination, content, mode=0o640) is False
    assert not list(destination.parent.glob(".api.example.com.*"))


def test_write_atomic_overwrites_non_utf8_file(tmp_path: Path) -> None:
    """An existing file in another encoding is replaced, not decoded."""
    destination = tmp_path / "nginx.conf"
    destination.write_bytes(b"# caf\xe9\n")

    assert write_atomic(destination, "events {}\n") is True
    assert destination.read_bytes() == b"events {}\n"
