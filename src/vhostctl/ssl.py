"""Two-phase TLS bootstrap for a single domain.

A domain requesting TLS is first published with a plain HTTP server block so
certbot's nginx authenticator can answer the challenge. Once a certificate is
issued the TLS block replaces it; any failure leaves the domain on HTTP.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum

from .errors import ProvisioningError
from .models import DomainSpec
from .providers.certbot import CertbotProvider, is_plugin_missing
from .providers.nginx import NginxProvider
from .providers.packages import PackageManager
from .providers.systemd import SystemdProvider

LOGGER = logging.getLogger(__name__)


class SSLState(str, Enum):
    """States of the certificate bootstrap for one domain."""

    NO_CERT = "no-cert"
    HTTP_ONLY = "http-only"
    HTTP_CHALLENGE_STAGED = "http-challenge-staged"
    CERT_ISSUED = "cert-issued"
    ISSUE_FAILED = "issue-failed"
    HTTP_ONLY_FALLBACK = "http-only-fallback"

    @property
    def is_final(self) -> bool:
        """Return True for states that end the bootstrap."""
        return self in FINAL_STATES


FINAL_STATES = frozenset({SSLState.HTTP_ONLY, SSLState.CERT_ISSUED, SSLState.HTTP_ONLY_FALLBACK})

TRANSITIONS: dict[SSLState, frozenset[SSLState]] = {
    SSLState.NO_CERT: frozenset(
        {SSLState.HTTP_ONLY, SSLState.HTTP_CHALLENGE_STAGED, SSLState.ISSUE_FAILED}
    ),
    SSLState.HTTP_CHALLENGE_STAGED: frozenset({SSLState.CERT_ISSUED, SSLState.ISSUE_FAILED}),
    SSLState.ISSUE_FAILED: frozenset({SSLState.HTTP_ONLY_FALLBACK}),
}


class InvalidTransitionError(RuntimeError):
    """Raised when the bootstrap attempts an undefined state change."""


@dataclass(slots=True)
class SSLOutcome:
    """Result of provisioning one domain."""

    domain: str
    state: SSLState = SSLState.NO_CERT
    history: list[SSLState] = field(default_factory=lambda: [SSLState.NO_CERT])
    error: ProvisioningError | None = None

    def advance(self, state: SSLState) -> None:
        """Move to *state*, enforcing the transition table."""
        allowed = TRANSITIONS.get(self.state, frozenset())
        if state not in allowed:
            raise InvalidTransitionError(
                f"{self.domain}: cannot move from {self.state.value} to {state.value}."
            )
        self.state = state
        self.history.append(state)

    @property
    def degraded(self) -> bool:
        """Return True when TLS was requested but the domain fell back to HTTP."""
        return self.state is SSLState.HTTP_ONLY_FALLBACK

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "domain": self.domain,
            "state": self.state.value,
            "history": [state.value for state in self.history],
            "error": self.error.to_dict() if self.error else None,
        }


class SSLProvisioner:
    """Drive the HTTP-then-HTTPS bootstrap for domains requesting TLS."""

    def __init__(
        self,
        *,
        nginx: NginxProvider,
        systemd: SystemdProvider,
        certbot: CertbotProvider,
        packages: PackageManager,
        plugin_package: str = "python3-certbot-nginx",
    ) -> None:
        """Initialise the provisioner with its collaborators."""
        self.nginx = nginx
        self.systemd = systemd
        self.certbot = certbot
        self.packages = packages
        self.plugin_package = plugin_package
        self._plugin_checked = False
        self._plugin_installed = False

    def provision(self, spec: DomainSpec) -> SSLOutcome:
        """Publish *spec*, obtaining a certificate when possible.

        Certificate failures degrade the domain to HTTP and are reported on
        the outcome; filesystem failures while writing server blocks propagate.
        """
        outcome = SSLOutcome(domain=spec.domain)
        http_spec = spec.without_tls()

        if spec.is_ip_literal:
            LOGGER.debug("%s is an IP literal; skipping TLS", spec.domain)
            self._publish(http_spec)
            outcome.advance(SSLState.HTTP_ONLY)
            return outcome

        self._publish(http_spec)
        try:
            self.systemd.reload(domain=spec.domain)
            outcome.advance(SSLState.HTTP_CHALLENGE_STAGED)
            self._issue(spec)
        except ProvisioningError as exc:
            LOGGER.debug("Certificate bootstrap failed for %s: %s", spec.domain, exc)
            outcome.error = exc
            outcome.advance(SSLState.ISSUE_FAILED)
            self._publish(http_spec)
            outcome.advance(SSLState.HTTP_ONLY_FALLBACK)
            return outcome

        self._publish(spec)
        outcome.advance(SSLState.CERT_ISSUED)
        return outcome

    # ------------------------------------------------------------------
    def _publish(self, spec: DomainSpec) -> None:
        self.nginx.generate(spec)
        self.nginx.enable(spec.domain)

    def _issue(self, spec: DomainSpec) -> None:
        if spec.email is None:
            raise ProvisioningError(
                f"An email address is required to request a certificate for {spec.domain}.",
                step="certbot",
                domain=spec.domain,
            )
        self.ensure_plugin()
        try:
            self.certbot.issue(spec.domain, spec.email)
        except ProvisioningError as exc:
            if not is_plugin_missing(exc) or self._plugin_installed:
                raise
            self._install_plugin()
            self.certbot.issue(spec.domain, spec.email)

    def ensure_plugin(self) -> None:
        """Install the certbot nginx plugin once if it is missing."""
        if self._plugin_checked:
            return
        self._plugin_checked = True
        if not self.packages.is_installed(self.plugin_package):
            self._install_plugin()

    def _install_plugin(self) -> None:
        LOGGER.debug("Installing %s", self.plugin_package)
        self.packages.install([self.plugin_package], step="certbot-plugin")
        self._plugin_installed = True


__all__ = [
    "FINAL_STATES",
    "InvalidTransitionError",
    "SSLOutcome",
    "SSLProvisioner",
    "SSLState",
    "TRANSITIONS",
]
