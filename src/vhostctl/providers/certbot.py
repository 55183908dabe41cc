"""Certbot provider for issuing Let's Encrypt certificates."""
from __future__ import annotations

import logging
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass

from ..errors import ProvisioningError

LOGGER = logging.getLogger(__name__)

PLUGIN_MISSING_SIGNATURE = "The requested nginx plugin does not appear to be installed"


@dataclass(slots=True)
class CertbotProvider:
    """Run ``certbot`` through its nginx authenticator."""

    certbot_bin: str = "certbot"

    def issue(self, domain: str, email: str) -> subprocess.CompletedProcess[str]:
        """Obtain a certificate for *domain*.

        Raises :class:`ProvisioningError` when certbot exits non-zero.
        """
        command = [
            self.certbot_bin,
            "certonly",
            "--nginx",
            "-d",
            domain,
            "--email",
            email,
            "--agree-tos",
            "--non-interactive",
        ]
        result = self._run_command(command)
        if result.returncode != 0:
            output = (result.stderr or "").strip() or (result.stdout or "").strip()
            raise ProvisioningError(
                f"Certbot failed for {domain} (exit {result.returncode}): {output or 'no output'}",
                step="certbot",
                command=command,
                returncode=result.returncode,
                output=output,
                domain=domain,
            )
        return result

    def version(self) -> str | None:
        """Return the certbot version string, if certbot is available."""
        result = self._run_command([self.certbot_bin, "--version"])
        if result.returncode != 0:
            return None
        output = (result.stdout or result.stderr or "").strip()
        parts = output.split()
        return parts[-1] if parts else None

    # ------------------------------------------------------------------
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


def is_plugin_missing(error: ProvisioningError) -> bool:
    """Return True when *error* reports the certbot nginx plugin as missing."""
    return PLUGIN_MISSING_SIGNATURE in error.output or PLUGIN_MISSING_SIGNATURE in error.message


__all__ = ["PLUGIN_MISSING_SIGNATURE", "CertbotProvider", "is_plugin_missing"]
