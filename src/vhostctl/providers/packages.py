"""Debian package manager provider (``dpkg``/``apt-get``)."""
from __future__ import annotations

import logging
import os
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass

from ..errors import ProvisioningError

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class PackageManager:
    """Query and install Debian packages."""

    apt_bin: str = "apt-get"
    dpkg_bin: str = "dpkg"

    def is_installed(self, package: str) -> bool:
        """Return True when ``dpkg -s`` reports *package* as installed."""
        result = self._run_command([self.dpkg_bin, "-s", package])
        if result.returncode != 0:
            return False
        return "Status: install ok installed" in (result.stdout or "")

    def install(self, packages: Sequence[str], *, step: str = "apt-install") -> None:
        """Install *packages* non-interactively."""
        command = [self.apt_bin, "install", "-y", "-qq", *packages]
        result = self._run_command(command, noninteractive=True)
        if result.returncode != 0:
            output = (result.stderr or "").strip() or (result.stdout or "").strip()
            raise ProvisioningError(
                f"Failed to install {' '.join(packages)} (exit {result.returncode}).",
                step=step,
                command=command,
                returncode=result.returncode,
                output=output,
            )

    # ------------------------------------------------------------------
    def _run_command(
        self,
        args: Sequence[str],
        *,
        noninteractive: bool = False,
    ) -> subprocess.CompletedProcess[str]:
        LOGGER.debug("Running %s", " ".join(args))
        env = None
        if noninteractive:
            env = {**os.environ, "DEBIAN_FRONTEND": "noninteractive"}
        try:
            return subprocess.run(  # noqa: S603, S607
                list(args),
                capture_output=True,
                text=True,
                check=False,
                env=env,
            )
        except FileNotFoundError as exc:
            return subprocess.CompletedProcess(
                list(args),
                returncode=127,
                stdout="",
                stderr=f"{args[0]} not found: {exc}",
            )


__all__ = ["PackageManager"]
