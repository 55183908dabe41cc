"""Requirement probes for ``vhostctl check``."""
from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from .exit_codes import ExitCode
from .providers.certbot import CertbotProvider
from .providers.nginx import NginxProvider


class ProbeStatus(str, Enum):
    """Outcome for a requirement probe."""

    GREEN = "green"
    YELLOW = "yellow"
    RED = "red"

    @property
    def is_failure(self) -> bool:
        """Return ``True`` when the status represents a failure."""
        return self is ProbeStatus.RED


@dataclass(frozen=True, slots=True)
class ProbeResult:
    """Result of a single requirement probe."""

    id: str
    label: str
    status: ProbeStatus
    message: str

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "id": self.id,
            "label": self.label,
            "status": self.status.value,
            "message": self.message,
        }


def probe_nginx(nginx: NginxProvider) -> ProbeResult:
    version = nginx.version()
    if version is None:
        return ProbeResult("nginx", "nginx", ProbeStatus.RED, "Not installed")
    return ProbeResult("nginx", "nginx", ProbeStatus.GREEN, f"nginx/{version}")


def probe_certbot(certbot: CertbotProvider) -> ProbeResult:
    version = certbot.version()
    if version is None:
        return ProbeResult("certbot", "certbot", ProbeStatus.RED, "Not installed")
    return ProbeResult("certbot", "certbot", ProbeStatus.GREEN, f"certbot {version}")


def probe_directory(probe_id: str, label: str, path: Path, *, required: bool = True) -> ProbeResult:
    if path.is_dir():
        return ProbeResult(probe_id, label, ProbeStatus.GREEN, str(path))
    if required:
        return ProbeResult(probe_id, label, ProbeStatus.RED, f"Not found: {path}")
    return ProbeResult(probe_id, label, ProbeStatus.YELLOW, f"Will be created: {path}")


def run_checks(
    *,
    nginx: NginxProvider,
    certbot: CertbotProvider,
    backup_root: Path,
) -> list[ProbeResult]:
    """Run every requirement probe in display order."""
    return [
        probe_nginx(nginx),
        probe_certbot(certbot),
        probe_directory("sites-available", "nginx sites-available", nginx.sites_available),
        probe_directory("sites-enabled", "nginx sites-enabled", nginx.sites_enabled),
        probe_directory("backups", "backup directory", backup_root, required=False),
    ]


def exit_code_for(results: Sequence[ProbeResult]) -> ExitCode:
    """Return the exit code for a set of probe results."""
    if any(result.status.is_failure for result in results):
        return ExitCode.ENVIRONMENT
    return ExitCode.OK


__all__ = ["ProbeResult", "ProbeStatus", "exit_code_for", "run_checks"]
