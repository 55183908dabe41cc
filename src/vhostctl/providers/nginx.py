"""Nginx provider for generating and enabling per-domain server blocks."""
from __future__ import annotations

import logging
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

from ..errors import FilesystemError
from ..models import DomainSpec
from ..templates import TemplateEngine, TemplateRenderError, write_atomic

LOGGER = logging.getLogger(__name__)

HTTP_TEMPLATE = "nginx/http_site.conf.j2"
SSL_TEMPLATE = "nginx/ssl_site.conf.j2"
DEFAULT_SITE_TEMPLATE = "nginx/default.conf.j2"
MAIN_CONFIG_TEMPLATE = "nginx/nginx.conf.j2"
ERROR_PAGE_TEMPLATE = "html/errors/page.html.j2"
GENERIC_ERROR_TEMPLATE = "html/error.html.j2"
INDEX_TEMPLATE = "html/index.html.j2"

DEFAULT_SITE_NAME = "default"
DISTRO_INDEX_NAME = "index.nginx-debian.html"
HEADERS_MORE_MODULE = "ngx_http_headers_more_filter_module.so"

ERROR_PAGES: tuple[tuple[str, str, str, str], ...] = (
    ("400.html", "400", "Bad Request", "The server could not understand your request."),
    ("401.html", "401", "Unauthorized", "You need to authenticate to access this resource."),
    ("403.html", "403", "Forbidden", "You do not have permission to access this resource."),
    ("404.html", "404", "Not Found", "The page you are looking for does not exist."),
    (
        "50x.html",
        "500",
        "Service Unavailable",
        "The application behind this site is not responding. Please try again shortly.",
    ),
)


def backend_address(host: str) -> str:
    """Return the address rendered into ``proxy_pass`` for *host*."""
    # nginx may resolve "localhost" to ::1 while backends usually bind IPv4.
    if host.strip().lower() == "localhost":
        return "127.0.0.1"
    return host.strip()


@dataclass(slots=True)
class NginxProvider:
    """Render and manage nginx server blocks for vhostctl domains."""

    templates: TemplateEngine
    sites_available: Path = Path("/etc/nginx/sites-available")
    sites_enabled: Path = Path("/etc/nginx/sites-enabled")
    main_config: Path = Path("/etc/nginx/nginx.conf")
    web_root: Path = Path("/var/www/html")
    cert_live_dir: Path = Path("/etc/letsencrypt/live")
    nginx_bin: str = "nginx"

    def site_path(self, domain: str) -> Path:
        """Return the path to the server block for *domain*."""
        return self.sites_available / domain

    def enabled_path(self, domain: str) -> Path:
        """Return the path of the symlink in sites-enabled for *domain*."""
        return self.sites_enabled / domain

    @property
    def error_pages_dir(self) -> Path:
        """Return the directory holding the custom error pages."""
        return self.web_root / "errors"

    # Generation ------------------------------------------------------
    def render_site(self, spec: DomainSpec) -> str:
        """Return the server block text for *spec* without writing it."""
        template_name = SSL_TEMPLATE if spec.wants_tls else HTTP_TEMPLATE
        context = {
            "DOMAIN_NAME": spec.domain,
            "BACKEND_HOST": backend_address(spec.backend_host),
            "BACKEND_PORT": str(spec.port),
            "MAX_BODY_SIZE": spec.max_body_size,
            "WEB_ROOT": str(self.web_root),
            "CERT_LIVE_DIR": str(self.cert_live_dir),
        }
        return self.templates.render_to_string(template_name, context)

    def generate(self, spec: DomainSpec) -> Path:
        """Write the server block for *spec* into sites-available."""
        destination = self.site_path(spec.domain)
        content = self.render_site(spec)
        self._write(destination, content, mode=0o644)
        LOGGER.debug("Wrote %s (tls=%s)", destination, spec.wants_tls)
        return destination

    def site_exists(self, domain: str) -> bool:
        """Return True when the rendered site configuration exists."""
        return self.site_path(domain).exists()

    def list_sites(self) -> list[tuple[str, bool]]:
        """Return ``(domain, enabled)`` for every managed document."""
        if not self.sites_available.exists():
            return []
        try:
            entries = sorted(self.sites_available.iterdir())
        except OSError as exc:
            raise FilesystemError(
                f"Failed to read {self.sites_available}: {exc}",
                path=self.sites_available,
                operation="list",
            ) from exc
        sites: list[tuple[str, bool]] = []
        for entry in entries:
            if entry.name == DEFAULT_SITE_NAME or entry.name.startswith("."):
                continue
            if not entry.is_file():
                continue
            sites.append((entry.name, self.enabled_path(entry.name).exists()))
        return sites

    # Enablement ------------------------------------------------------
    def enable(self, domain: str) -> None:
        """Enable the site by (re)creating its symlink in sites-enabled."""
        source = self.site_path(domain)
        target = self.enabled_path(domain)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            if target.exists() or target.is_symlink():
                target.unlink()
            target.symlink_to(source)
        except OSError as exc:
            raise FilesystemError(
                f"Failed to enable {domain}: {exc}",
                path=target,
                operation="symlink",
            ) from exc

    def disable(self, domain: str) -> None:
        """Disable the site by removing the symlink."""
        self._unlink(self.enabled_path(domain))

    def remove(self, domain: str) -> None:
        """Remove both the configuration and symlink for *domain*."""
        self.disable(domain)
        self._unlink(self.site_path(domain))

    def is_enabled(self, domain: str) -> bool:
        """Return True when the site is enabled via sites-enabled symlink."""
        target = self.enabled_path(domain)
        if not target.is_symlink():
            return False
        try:
            return target.resolve() == self.site_path(domain).resolve()
        except (FileNotFoundError, RuntimeError):
            return False

    # Base assets -----------------------------------------------------
    def ensure_base_assets(self) -> list[Path]:
        """Install the static assets every site depends on.

        Returns the paths written during this call.
        """
        written: list[Path] = []
        written.extend(self.ensure_error_pages())
        written.extend(self.ensure_index_page())
        written.extend(self.ensure_default_site())
        written.extend(self.ensure_main_config())
        return written

    def ensure_error_pages(self) -> list[Path]:
        """Overwrite the custom error pages with the packaged versions."""
        written: list[Path] = []
        for filename, code, title, message in ERROR_PAGES:
            content = self.templates.render_to_string(
                ERROR_PAGE_TEMPLATE,
                {"CODE": code, "TITLE": title, "MESSAGE": message},
            )
            path = self.error_pages_dir / filename
            if self._write(path, content, mode=0o644):
                written.append(path)

        generic = self.error_pages_dir / "error.html"
        if not generic.exists():
            self._write(generic, self.templates.render_to_string(GENERIC_ERROR_TEMPLATE, {}))
            written.append(generic)
        return written

    def ensure_index_page(self) -> list[Path]:
        """Replace the distribution welcome page with the vhostctl landing page."""
        written: list[Path] = []
        self._unlink(self.web_root / DISTRO_INDEX_NAME)
        index = self.web_root / "index.html"
        if not index.exists():
            content = self.templates.render_to_string(
                INDEX_TEMPLATE,
                {
                    "TITLE": "vhostctl",
                    "DESCRIPTION": "This server is managed by vhostctl.",
                },
            )
            self._write(index, content)
            written.append(index)
        return written

    def ensure_default_site(self) -> list[Path]:
        """Overwrite sites-available/default with the packaged catch-all site."""
        content = self.templates.render_to_string(
            DEFAULT_SITE_TEMPLATE,
            {"WEB_ROOT": str(self.web_root)},
        )
        path = self.site_path(DEFAULT_SITE_NAME)
        return [path] if self._write(path, content) else []

    def ensure_main_config(self) -> list[Path]:
        """Overwrite the main nginx configuration with the packaged version."""
        content = self.templates.render_to_string(
            MAIN_CONFIG_TEMPLATE,
            {
                "SITES_ENABLED": str(self.sites_enabled),
                "HEADERS_MORE_MODULE": HEADERS_MORE_MODULE,
            },
        )
        return [self.main_config] if self._write(self.main_config, content) else []

    # Processes -------------------------------------------------------
    def test_config(self) -> subprocess.CompletedProcess[str]:
        """Run ``nginx -t`` and return the completed process."""
        return self._run_nginx(["-t"])

    def version(self) -> str | None:
        """Return the installed nginx version (``nginx -v``), if available."""
        result = self._run_nginx(["-v"])
        output = (result.stderr or result.stdout or "").strip()
        if result.returncode != 0 or "/" not in output:
            return None
        return output.split("/", 1)[1].split()[0]

    # ------------------------------------------------------------------
    def _run_nginx(self, args: Sequence[str]) -> subprocess.CompletedProcess[str]:
        command = [self.nginx_bin, *args]
        LOGGER.debug("Running %s", " ".join(command))
        try:
            return subprocess.run(  # noqa: S603, S607
                command,
                capture_output=True,
                text=True,
                check=False,
            )
        except FileNotFoundError as exc:
            return subprocess.CompletedProcess(
                command,
                returncode=127,
                stdout="",
                stderr=f"{self.nginx_bin} not found: {exc}",
            )

    def _write(self, path: Path, content: str, *, mode: int = 0o644) -> bool:
        try:
            return write_atomic(path, content, mode=mode)
        except OSError as exc:
            raise FilesystemError(
                f"Failed to write {path}: {exc}",
                path=path,
                operation="write",
            ) from exc

    def _unlink(self, path: Path) -> None:
        try:
            path.unlink()
        except FileNotFoundError:
            return
        except OSError as exc:
            raise FilesystemError(
                f"Failed to remove {path}: {exc}",
                path=path,
                operation="unlink",
            ) from exc


__all__ = [
    "HEADERS_MORE_MODULE",
    "NginxProvider",
    "TemplateRenderError",
    "backend_address",
]
