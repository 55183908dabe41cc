"""Systemd provider for reloading and probing the nginx service."""
from __future__ import annotations

import logging
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass

from ..errors import ProvisioningError

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class SystemdProvider:
    """Thin wrapper around ``systemctl`` for the nginx service."""

    service: str = "nginx"
    systemctl_bin: str = "systemctl"

    def reload(self, *, domain: str | None = None) -> subprocess.CompletedProcess[str]:
        """Reload the service so it picks up configuration changes."""
        result = self._systemctl("reload", self.service)
        if result.returncode != 0:
            output = (result.stderr or "").strip() or (result.stdout or "").strip()
            raise ProvisioningError(
                f"{self.systemctl_bin} reload {self.service} failed "
                f"(exit {result.returncode}): {output or 'no output'}",
                step="reload",
                command=list(result.args),
                returncode=result.returncode,
                output=output,
                domain=domain,
            )
        return result

    def is_active(self) -> bool:
        """Return True when the service reports ``active``."""
        result = self._systemctl("is-active", self.service)
        return result.returncode == 0 and (result.stdout or "").strip() == "active"

    # ------------------------------------------------------------------
    def _systemctl(self, command: str, unit: str) -> subprocess.CompletedProcess[str]:
        return self._run_command([self.systemctl_bin, command, unit])

    def _run_command(self, args: Sequence[str]) -> subprocess.CompletedProcess[str]:
        LOGGER.debug("Running %s", " ".join(args))
        try:
            return subprocess.run(  # noqa: S603, S607
                list(args),
                capture_output=True,
                text=True,
                check=False,
            )
        except FileNotFoundError as exc:
            return subprocess.CompletedProcess(
                list(args),
                returncode=127,
                stdout="",
                stderr=f"{args[0]} not found: {exc}",
            )


__all__ = ["SystemdProvider"]
