"""Build and install the headers-more dynamic module for nginx.

The packaged main configuration loads ``ngx_http_headers_more_filter_module``
to strip the ``Server`` header. Distribution nginx builds do not ship it, so
the module is compiled from source against the running nginx version when the
validator reports it missing.
"""
from __future__ import annotations

import logging
import shutil
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

from packaging.version import InvalidVersion, Version

from ..errors import ProvisioningError
from .nginx import HEADERS_MORE_MODULE, NginxProvider
from .packages import PackageManager

LOGGER = logging.getLogger(__name__)

BUILD_DEPENDENCIES: tuple[str, ...] = (
    "build-essential",
    "libpcre3-dev",
    "zlib1g-dev",
    "libssl-dev",
    "git",
)
LOAD_DIRECTIVE = f"load_module modules/{HEADERS_MORE_MODULE};"
MODULE_CHECKOUT = "headers-more-nginx-module"


@dataclass(slots=True)
class HeadersMoreInstaller:
    """Compile ``ngx_http_headers_more_filter_module.so`` and enable it."""

    nginx: NginxProvider
    packages: PackageManager
    modules_dir: Path = Path("/usr/share/nginx/modules")
    module_search_paths: tuple[Path, ...] = (
        Path("/usr/share/nginx/modules"),
        Path("/usr/lib/nginx/modules"),
    )
    build_dir: Path = Path("/usr/local/src/vhostctl-build")
    nginx_source_url: str = "https://nginx.org/download"
    headers_more_repo: str = "https://github.com/openresty/headers-more-nginx-module.git"

    def is_installed(self) -> bool:
        """Return True when the module file exists and nginx.conf loads it."""
        if not any((path / HEADERS_MORE_MODULE).exists() for path in self.module_search_paths):
            return False
        try:
            content = self.nginx.main_config.read_text(encoding="utf-8")
        except OSError:
            return False
        return HEADERS_MORE_MODULE in content

    def detect_version(self) -> Version:
        """Return the running nginx version."""
        raw = self.nginx.version()
        if raw is None:
            raise ProvisioningError(
                "Unable to determine the installed nginx version.",
                step="detect-version",
                command=[self.nginx.nginx_bin, "-v"],
            )
        try:
            return Version(raw)
        except InvalidVersion as exc:
            raise ProvisioningError(
                f"Unrecognised nginx version {raw!r}.",
                step="detect-version",
                command=[self.nginx.nginx_bin, "-v"],
                output=raw,
            ) from exc

    def install(self) -> bool:
        """Build and enable the module.

        Returns ``False`` when the module was already installed and nothing
        was done. Every failing step raises :class:`ProvisioningError`.
        """
        if self.is_installed():
            LOGGER.debug("headers-more module already installed")
            return False

        version = self.detect_version()
        LOGGER.debug("Building headers-more for nginx %s", version)
        self.packages.install(BUILD_DEPENDENCIES, step="build-dependencies")

        try:
            self.build_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise ProvisioningError(
                f"Failed to create build directory {self.build_dir}: {exc}",
                step="prepare-build",
            ) from exc

        tarball = f"nginx-{version}.tar.gz"
        self._run_step(
            "download-source",
            [
                "wget",
                "-q",
                "-O",
                str(self.build_dir / tarball),
                f"{self.nginx_source_url}/{tarball}",
            ],
            cwd=self.build_dir,
        )
        self._run_step("extract-source", ["tar", "-xzf", tarball], cwd=self.build_dir)

        checkout = self.build_dir / MODULE_CHECKOUT
        if checkout.exists():
            shutil.rmtree(checkout, ignore_errors=True)
        self._run_step(
            "clone-module",
            ["git", "clone", "--quiet", self.headers_more_repo, str(checkout)],
            cwd=self.build_dir,
        )

        source_dir = self.build_dir / f"nginx-{version}"
        self._run_step(
            "configure",
            ["./configure", "--with-compat", f"--add-dynamic-module={checkout}"],
            cwd=source_dir,
        )
        self._run_step("make", ["make", "modules"], cwd=source_dir)

        self._install_module(source_dir / "objs" / HEADERS_MORE_MODULE)
        self.patch_main_config()

        try:
            shutil.rmtree(self.build_dir)
        except OSError as exc:
            raise ProvisioningError(
                f"Failed to remove build directory {self.build_dir}: {exc}",
                step="cleanup",
            ) from exc
        return True

    def patch_main_config(self) -> bool:
        """Insert the ``load_module`` directive before the first directive.

        Returns ``True`` when nginx.conf was modified.
        """
        path = self.nginx.main_config
        try:
            content = path.read_text(encoding="utf-8")
        except OSError as exc:
            raise ProvisioningError(
                f"Failed to read {path}: {exc}",
                step="configure-nginx",
            ) from exc
        if HEADERS_MORE_MODULE in content:
            return False

        lines = content.splitlines()
        for index, line in enumerate(lines):
            stripped = line.strip()
            if stripped and not stripped.startswith("#"):
                lines.insert(index, LOAD_DIRECTIVE)
                break
        else:
            lines.insert(0, LOAD_DIRECTIVE)

        try:
            path.write_text("\n".join(lines) + "\n", encoding="utf-8")
        except OSError as exc:
            raise ProvisioningError(
                f"Failed to write {path}: {exc}",
                step="configure-nginx",
            ) from exc
        return True

    # ------------------------------------------------------------------
    def _install_module(self, built: Path) -> Path:
        if not built.exists():
            raise ProvisioningError(
                f"Compiled module not found at {built}.",
                step="install-module",
            )
        # Debian ships /usr/share/nginx/modules as a symlink to /usr/lib/nginx/modules.
        target_dir = self.modules_dir
        if target_dir.is_symlink():
            target_dir = target_dir.resolve()
        destination = target_dir / HEADERS_MORE_MODULE
        try:
            target_dir.mkdir(parents=True, exist_ok=True)
            shutil.copy2(built, destination)
        except OSError as exc:
            raise ProvisioningError(
                f"Failed to install module into {target_dir}: {exc}",
                step="install-module",
            ) from exc
        return destination

    def _run_step(self, step: str, args: Sequence[str], *, cwd: Path) -> None:
        result = self._run_command(args, cwd=cwd)
        if result.returncode != 0:
            output = (result.stderr or "").strip() or (result.stdout or "").strip()
            raise ProvisioningError(
                f"{step} failed (exit {result.returncode}): {output or 'no output'}",
                step=step,
                command=list(args),
                returncode=result.returncode,
                output=output,
            )

    def _run_command(self, args: Sequence[str], *, cwd: Path) -> subprocess.CompletedProcess[str]:
        LOGGER.debug("Running %s in %s", " ".join(args), cwd)
        try:
            return subprocess.run(  # noqa: S603, S607
                list(args),
                capture_output=True,
                text=True,
                check=False,
                cwd=str(cwd),
            )
        except (FileNotFoundError, NotADirectoryError) as exc:
            return subprocess.CompletedProcess(
                list(args),
                returncode=127,
                stdout="",
                stderr=f"{args[0]} could not be started: {exc}",
            )


__all__ = ["BUILD_DEPENDENCIES", "LOAD_DIRECTIVE", "HeadersMoreInstaller"]
