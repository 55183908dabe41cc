"""Inspect issued Let's Encrypt certificates for status reporting."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path

from cryptography import x509

EXPIRY_WARNING_DAYS = 21


class CertificateState(str, Enum):
    """Health of an issued certificate."""

    VALID = "valid"
    EXPIRING = "expiring"
    EXPIRED = "expired"
    MISSING = "missing"
    UNREADABLE = "unreadable"


@dataclass(frozen=True, slots=True)
class CertificateInfo:
    """Expiry details for one domain's certificate."""

    domain: str
    path: Path
    state: CertificateState
    not_valid_after: datetime | None = None
    days_remaining: int | None = None
    message: str | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "domain": self.domain,
            "path": str(self.path),
            "state": self.state.value,
            "not_valid_after": (
                self.not_valid_after.isoformat() if self.not_valid_after else None
            ),
            "days_remaining": self.days_remaining,
            "message": self.message,
        }


class CertificateInspector:
    """Read ``<live_dir>/<domain>/fullchain.pem`` and report its expiry."""

    def __init__(self, live_dir: Path, *, warning_days: int = EXPIRY_WARNING_DAYS) -> None:
        """Initialise the inspector rooted at *live_dir*."""
        self.live_dir = live_dir
        self.warning_days = warning_days

    def certificate_path(self, domain: str) -> Path:
        """Return the certificate path for *domain*."""
        return self.live_dir / domain / "fullchain.pem"

    def has_certificate(self, domain: str) -> bool:
        """Return True when a certificate file exists for *domain*."""
        return self.certificate_path(domain).exists()

    def inspect(self, domain: str, *, now: datetime | None = None) -> CertificateInfo:
        """Return the certificate state for *domain*."""
        path = self.certificate_path(domain)
        if not path.exists():
            return CertificateInfo(domain=domain, path=path, state=CertificateState.MISSING)
        try:
            cert = _load_certificate(path)
        except (OSError, ValueError) as exc:
            return CertificateInfo(
                domain=domain,
                path=path,
                state=CertificateState.UNREADABLE,
                message=f"Unable to read certificate: {exc}",
            )

        moment = now or datetime.now(tz=UTC)
        not_after = _as_utc(cert.not_valid_after_utc)
        remaining = (not_after - moment).days
        if not_after <= moment:
            state = CertificateState.EXPIRED
        elif remaining < self.warning_days:
            state = CertificateState.EXPIRING
        else:
            state = CertificateState.VALID
        return CertificateInfo(
            domain=domain,
            path=path,
            state=state,
            not_valid_after=not_after,
            days_remaining=remaining,
        )


def _load_certificate(path: Path) -> x509.Certificate:
    data = path.read_bytes()
    try:
        return x509.load_pem_x509_certificate(data)
    except ValueError:
        return x509.load_der_x509_certificate(data)


def _as_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=UTC)
    return moment.astimezone(UTC)


__all__ = ["CertificateInfo", "CertificateInspector", "CertificateState"]
