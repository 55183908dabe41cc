"""The apply/rollback transaction.

:class:`ApplyOrchestrator` owns every mutation of the nginx site stores. A
transaction snapshots both stores, purges sites the validator already blames,
publishes the requested domains and validates the result. An invalid result
either commits anyway (``force``) or restores the snapshot taken at the start
of the transaction.
"""
from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field

from .backups import SnapshotManager
from .diagnostics import BrokenConfigDetector
from .errors import RollbackError, ValidationError, VhostctlError
from .logging import OperationScope
from .models import BatchRequest, DomainSpec
from .providers.nginx import NginxProvider
from .providers.systemd import SystemdProvider
from .ssl import SSLOutcome, SSLProvisioner
from .validation import ValidationResult, Validator

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class DomainResult:
    """What happened to one domain of the batch."""

    domain: str
    overwritten: bool = False
    ssl: SSLOutcome | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "domain": self.domain,
            "overwritten": self.overwritten,
            "ssl": self.ssl.to_dict() if self.ssl else None,
        }


@dataclass(slots=True)
class PurgeResult:
    """Broken configurations detected and removed before publishing."""

    detected: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


@dataclass(slots=True)
class ApplyResult:
    """Summary of a committed transaction."""

    snapshot: str | None = None
    purged: list[str] = field(default_factory=list)
    domains: list[DomainResult] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    validation: ValidationResult | None = None
    forced: bool = False
    reloaded: bool = False

    @property
    def changed(self) -> int:
        """Return the number of domains published or removed."""
        return len(self.domains) + len(self.purged)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "snapshot": self.snapshot,
            "purged": list(self.purged),
            "domains": [result.to_dict() for result in self.domains],
            "warnings": list(self.warnings),
            "validation": self.validation.to_dict() if self.validation else None,
            "forced": self.forced,
            "reloaded": self.reloaded,
        }


class ApplyOrchestrator:
    """Run apply/remove transactions against the nginx site stores."""

    def __init__(
        self,
        *,
        nginx: NginxProvider,
        snapshots: SnapshotManager,
        detector: BrokenConfigDetector,
        ssl: SSLProvisioner,
        validator: Validator,
        systemd: SystemdProvider,
    ) -> None:
        """Initialise the orchestrator with its collaborators."""
        self.nginx = nginx
        self.snapshots = snapshots
        self.detector = detector
        self.ssl = ssl
        self.validator = validator
        self.systemd = systemd

    def apply(
        self,
        batch: BatchRequest,
        *,
        backup: bool = True,
        force: bool = False,
        op: OperationScope | None = None,
    ) -> ApplyResult:
        """Publish every domain of *batch* as one transaction.

        Raises :class:`ValidationError` when the result does not validate and
        ``force`` is not set (after restoring the snapshot when one was taken),
        and :class:`RollbackError` when that restore fails.
        """
        result = ApplyResult()
        if backup:
            result.snapshot = self.snapshots.create_snapshot().id
            _record(op, "backup.create", "success", result.snapshot)
        else:
            _record(op, "backup.create", "skipped")

        purge = self.purge_broken(op=op)
        result.purged = purge.removed
        result.warnings.extend(purge.warnings)

        written = self.nginx.ensure_base_assets()
        _record(op, "assets.ensure", "success", f"{len(written)} file(s) written")

        for spec in batch.domains:
            result.domains.append(self._publish(spec, result, op))

        result.validation = self._validate(result, force=force, op=op)

        if batch.auto_reload:
            self.systemd.reload()
            result.reloaded = True
            _record(op, "service.reload", "success")
        return result

    def remove(
        self,
        domains: Sequence[str],
        *,
        backup: bool = True,
        reload: bool = True,
        op: OperationScope | None = None,
    ) -> ApplyResult:
        """Remove *domains* as one transaction, rolling back on validation failure."""
        result = ApplyResult()
        if backup:
            result.snapshot = self.snapshots.create_snapshot().id
            _record(op, "backup.create", "success", result.snapshot)

        for domain in domains:
            if not self.nginx.site_exists(domain) and not self.nginx.is_enabled(domain):
                result.warnings.append(f"{domain}: not configured")
                continue
            self.nginx.remove(domain)
            result.domains.append(DomainResult(domain=domain))
            _record(op, f"site.remove:{domain}", "success")

        result.validation = self._validate(result, force=False, op=op)

        if reload and result.domains:
            self.systemd.reload()
            result.reloaded = True
            _record(op, "service.reload", "success")
        return result

    def purge_broken(
        self,
        *,
        dry_run: bool = False,
        op: OperationScope | None = None,
    ) -> PurgeResult:
        """Remove the sites the validator blames, ignoring individual failures."""
        purge = PurgeResult(detected=self.detector.detect())
        if not purge.detected:
            _record(op, "broken.detect", "success", "none")
            return purge
        _record(op, "broken.detect", "warning", ", ".join(purge.detected))
        if dry_run:
            return purge

        for domain in purge.detected:
            try:
                self.nginx.remove(domain)
            except VhostctlError as exc:
                LOGGER.debug("Failed to remove broken config %s: %s", domain, exc)
                purge.warnings.append(f"Failed to remove broken config {domain}: {exc}")
                _record(op, f"broken.remove:{domain}", "error", str(exc))
                continue
            purge.removed.append(domain)
            _record(op, f"broken.remove:{domain}", "success")
        return purge

    def restore(self, identifier: str = "latest", *, op: OperationScope | None = None) -> str:
        """Restore a snapshot and return its identifier."""
        snapshot = self.snapshots.restore_snapshot(identifier)
        _record(op, "backup.restore", "success", snapshot.id)
        return snapshot.id

    # ------------------------------------------------------------------
    def _publish(
        self,
        spec: DomainSpec,
        result: ApplyResult,
        op: OperationScope | None,
    ) -> DomainResult:
        outcome = DomainResult(domain=spec.domain, overwritten=self.nginx.site_exists(spec.domain))
        if outcome.overwritten:
            result.warnings.append(f"{spec.domain}: existing configuration overwritten")

        if spec.ssl_requested:
            outcome.ssl = self.ssl.provision(spec)
            if outcome.ssl.error is not None:
                result.warnings.append(
                    f"{spec.domain}: TLS unavailable, serving HTTP only ({outcome.ssl.error})"
                )
            status = "warning" if outcome.ssl.degraded else "success"
            _record(op, f"site.publish:{spec.domain}", status, outcome.ssl.state.value)
            return outcome

        self.nginx.generate(spec)
        self.nginx.enable(spec.domain)
        _record(op, f"site.publish:{spec.domain}", "success", "http")
        return outcome

    def _validate(
        self,
        result: ApplyResult,
        *,
        force: bool,
        op: OperationScope | None,
    ) -> ValidationResult:
        validation = self.validator.test_with_autofix()
        if validation.remediated:
            _record(op, "module.remediate", "success" if validation.valid else "error")
        if validation.valid:
            _record(op, "config.validate", "success")
            return validation

        _record(op, "config.validate", "error", validation.diagnostics)
        if force:
            result.forced = True
            result.warnings.append("Configuration test failed; committed anyway (--force).")
            return validation

        if result.snapshot is None:
            raise ValidationError(
                "Configuration test failed; no backup was taken so nothing was rolled back.",
                diagnostics=validation.diagnostics,
                returncode=validation.returncode,
                rolled_back=False,
            )

        try:
            self.snapshots.restore_snapshot(result.snapshot)
        except VhostctlError as exc:
            _record(op, "backup.restore", "error", str(exc))
            raise RollbackError(
                f"Configuration test failed and restoring {result.snapshot} failed: {exc}",
                snapshot=result.snapshot,
                cause=str(exc),
            ) from exc
        _record(op, "backup.restore", "success", result.snapshot)
        raise ValidationError(
            f"Configuration test failed; restored backup {result.snapshot}.",
            diagnostics=validation.diagnostics,
            returncode=validation.returncode,
            rolled_back=True,
            snapshot=result.snapshot,
        )


def _record(op: OperationScope | None, name: str, status: str, detail: str | None = None) -> None:
    if op is not None:
        op.add_step(name, status=status, detail=detail)


__all__ = ["ApplyOrchestrator", "ApplyResult", "DomainResult", "PurgeResult"]
