"""Error variants raised by vhostctl operations.

Every failure that can terminate a command is one of the classes below. Each
carries the structured fields an operator (or a test) needs to act on it and
maps onto a CLI :class:`~vhostctl.exit_codes.ExitCode`.
"""
from __future__ import annotations

from pathlib import Path

from .exit_codes import ExitCode


class VhostctlError(RuntimeError):
    """Base class for all vhostctl failures."""

    exit_code: ExitCode = ExitCode.ENVIRONMENT

    def __init__(self, message: str) -> None:
        """Initialise the error with a human readable *message*."""
        super().__init__(message)
        self.message = message

    @property
    def kind(self) -> str:
        """Return the variant tag used in structured logs."""
        return type(self).__name__

    def fields(self) -> dict[str, object]:
        """Return the variant-specific fields."""
        return {}

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation."""
        payload: dict[str, object] = {"kind": self.kind, "message": self.message}
        for key, value in self.fields().items():
            payload[key] = str(value) if isinstance(value, Path) else value
        return payload


class ParseError(VhostctlError):
    """Raised when a batch request is malformed."""

    exit_code = ExitCode.VALIDATION

    def __init__(
        self,
        message: str,
        *,
        source: str | None = None,
        field: str | None = None,
    ) -> None:
        """Record where parsing failed."""
        super().__init__(message)
        self.source = source
        self.field = field

    def fields(self) -> dict[str, object]:
        """Return the source and offending field."""
        return {"source": self.source, "field": self.field}


class FilesystemError(VhostctlError):
    """Raised when a filesystem operation fails."""

    exit_code = ExitCode.ENVIRONMENT

    def __init__(
        self,
        message: str,
        *,
        path: Path | None = None,
        operation: str | None = None,
    ) -> None:
        """Record the path and operation that failed."""
        super().__init__(message)
        self.path = path
        self.operation = operation

    def fields(self) -> dict[str, object]:
        """Return the failing path and operation."""
        return {"path": self.path, "operation": self.operation}


class SnapshotError(FilesystemError):
    """Raised when a snapshot cannot be resolved."""

    def __init__(
        self,
        message: str,
        *,
        identifier: str | None = None,
        path: Path | None = None,
    ) -> None:
        """Record the snapshot identifier that could not be used."""
        super().__init__(message, path=path, operation="snapshot")
        self.identifier = identifier

    def fields(self) -> dict[str, object]:
        """Return the snapshot identifier alongside the path."""
        return {**super().fields(), "identifier": self.identifier}


class ValidationError(VhostctlError):
    """Raised when the nginx configuration test fails."""

    exit_code = ExitCode.VALIDATION

    def __init__(
        self,
        message: str,
        *,
        diagnostics: str = "",
        returncode: int | None = None,
        rolled_back: bool = False,
        snapshot: str | None = None,
    ) -> None:
        """Record the raw validator output and the rollback outcome."""
        super().__init__(message)
        self.diagnostics = diagnostics
        self.returncode = returncode
        self.rolled_back = rolled_back
        self.snapshot = snapshot

    def fields(self) -> dict[str, object]:
        """Return validator output and rollback details."""
        return {
            "diagnostics": self.diagnostics,
            "returncode": self.returncode,
            "rolled_back": self.rolled_back,
            "snapshot": self.snapshot,
        }


class ProvisioningError(VhostctlError):
    """Raised when an external provisioning step fails."""

    exit_code = ExitCode.PROVIDER

    def __init__(
        self,
        message: str,
        *,
        step: str,
        command: list[str] | None = None,
        returncode: int | None = None,
        output: str = "",
        domain: str | None = None,
    ) -> None:
        """Record the failing step and its process outcome."""
        super().__init__(message)
        self.step = step
        self.command = list(command or [])
        self.returncode = returncode
        self.output = output
        self.domain = domain

    def fields(self) -> dict[str, object]:
        """Return the failing step, command and process output."""
        return {
            "step": self.step,
            "command": " ".join(self.command),
            "returncode": self.returncode,
            "output": self.output,
            "domain": self.domain,
        }


class RollbackError(VhostctlError):
    """Raised when restoring a snapshot after a failed apply fails."""

    exit_code = ExitCode.PROVIDER

    def __init__(self, message: str, *, snapshot: str | None, cause: str) -> None:
        """Record the snapshot being restored and the underlying failure."""
        super().__init__(message)
        self.snapshot = snapshot
        self.cause = cause

    def fields(self) -> dict[str, object]:
        """Return the snapshot and cause."""
        return {"snapshot": self.snapshot, "cause": self.cause}


__all__ = [
    "FilesystemError",
    "ParseError",
    "ProvisioningError",
    "RollbackError",
    "SnapshotError",
    "ValidationError",
    "VhostctlError",
]
