"""Configuration validation with a single self-healing attempt."""
from __future__ import annotations

import logging
from dataclasses import dataclass

from .errors import ProvisioningError
from .providers.modules import HeadersMoreInstaller
from .providers.nginx import HEADERS_MORE_MODULE, NginxProvider

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ValidationResult:
    """Outcome of one ``nginx -t`` run."""

    valid: bool
    diagnostics: str = ""
    returncode: int = 0
    remediated: bool = False

    @classmethod
    def ok(cls, diagnostics: str = "") -> ValidationResult:
        """Return a passing result."""
        return cls(valid=True, diagnostics=diagnostics, returncode=0)

    @classmethod
    def invalid(cls, diagnostics: str, returncode: int = 1) -> ValidationResult:
        """Return a failing result carrying the validator output."""
        return cls(valid=False, diagnostics=diagnostics, returncode=returncode)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "valid": self.valid,
            "diagnostics": self.diagnostics,
            "returncode": self.returncode,
            "remediated": self.remediated,
        }


class Validator:
    """Run the nginx configuration test, repairing a missing module once."""

    def __init__(self, nginx: NginxProvider, installer: HeadersMoreInstaller) -> None:
        """Initialise the validator with the nginx provider and module installer."""
        self.nginx = nginx
        self.installer = installer

    def test(self) -> ValidationResult:
        """Run ``nginx -t`` once."""
        result = self.nginx.test_config()
        if result.returncode == 0:
            return ValidationResult.ok((result.stderr or "").strip())
        diagnostics = (result.stderr or "").strip() or (result.stdout or "").strip()
        return ValidationResult.invalid(diagnostics, result.returncode)

    def test_with_autofix(self) -> ValidationResult:
        """Validate; on a missing headers-more module, remediate once and retest once."""
        first = self.test()
        if first.valid or not needs_headers_more(first.diagnostics):
            return first

        LOGGER.debug("Missing headers-more module detected; attempting remediation")
        try:
            self.installer.install()
        except ProvisioningError as exc:
            combined = f"{exc.message}\n{first.diagnostics}".strip()
            return ValidationResult(
                valid=False,
                diagnostics=combined,
                returncode=first.returncode,
                remediated=True,
            )

        retest = self.test()
        return ValidationResult(
            valid=retest.valid,
            diagnostics=retest.diagnostics,
            returncode=retest.returncode,
            remediated=True,
        )


def needs_headers_more(diagnostics: str) -> bool:
    """Return True when *diagnostics* report the headers-more module as missing."""
    return HEADERS_MORE_MODULE in diagnostics


__all__ = ["ValidationResult", "Validator", "needs_headers_more"]
