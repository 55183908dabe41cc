"""Detect broken site configurations from ``nginx -t`` output.

The validator's messages are not a stable interface, so matching lives in a
small table of :class:`DiagnosticPattern` entries. Lines that no pattern
recognises are counted as unknown and otherwise ignored.
"""
from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path

from .errors import ParseError
from .models import validate_domain_name
from .validation import ValidationResult, Validator


@dataclass(frozen=True, slots=True)
class DiagnosticPattern:
    """Extract a domain name from one line of validator output."""

    name: str
    extract: Callable[[str], str | None]
    requires_enabled: bool = False


@dataclass(frozen=True, slots=True)
class DiagnosticReport:
    """Domains blamed by the validator output, in first-seen order."""

    domains: tuple[str, ...] = ()
    matches: tuple[tuple[str, str], ...] = ()
    unknown_lines: int = 0


def segment_after(line: str, prefix: str, terminator: str) -> str | None:
    """Return the text between *prefix* and the next *terminator* in *line*."""
    start = line.find(prefix)
    if start < 0:
        return None
    rest = line[start + len(prefix) :]
    end = rest.find(terminator)
    if end <= 0:
        return None
    return rest[:end]


def build_patterns(sites_enabled: Path, cert_live_dir: Path) -> tuple[DiagnosticPattern, ...]:
    """Return the pattern table for the given store locations."""
    enabled_prefix = f" in {sites_enabled}/"
    live_prefix = f"{cert_live_dir}/"

    def enabled_path(line: str) -> str | None:
        return site_name(segment_after(line, enabled_prefix, ":"))

    def certificate(line: str) -> str | None:
        if "cannot load certificate" not in line:
            return None
        return site_name(segment_after(line, live_prefix, "/"))

    return (
        DiagnosticPattern("enabled-path", enabled_path),
        DiagnosticPattern("certificate", certificate, requires_enabled=True),
    )


def site_name(candidate: str | None) -> str | None:
    """Return *candidate* when it names a single site file, else ``None``."""
    if candidate is None or any(char in candidate for char in "\"'"):
        return None
    try:
        return validate_domain_name(candidate)
    except ParseError:
        return None


@dataclass(slots=True)
class BrokenConfigDetector:
    """Report enabled domains that make the nginx configuration invalid."""

    validator: Validator
    sites_enabled: Path
    cert_live_dir: Path = Path("/etc/letsencrypt/live")
    patterns: Sequence[DiagnosticPattern] = field(default=())

    def __post_init__(self) -> None:
        """Install the default pattern table when none was supplied."""
        if not self.patterns:
            self.patterns = build_patterns(self.sites_enabled, self.cert_live_dir)

    def parse(self, text: str) -> DiagnosticReport:
        """Scan validator output and return the blamed domains."""
        domains: list[str] = []
        matches: list[tuple[str, str]] = []
        unknown = 0
        for line in text.splitlines():
            if not line.strip():
                continue
            matched = False
            for pattern in self.patterns:
                domain = pattern.extract(line)
                if not domain:
                    continue
                matched = True
                if pattern.requires_enabled and not _entry_exists(self.sites_enabled / domain):
                    break
                matches.append((pattern.name, domain))
                if domain not in domains:
                    domains.append(domain)
                break
            if not matched:
                unknown += 1
        return DiagnosticReport(
            domains=tuple(domains),
            matches=tuple(matches),
            unknown_lines=unknown,
        )

    def detect(self) -> list[str]:
        """Run the validator once and return the broken domains."""
        return list(self.inspect()[1].domains)

    def inspect(self) -> tuple[ValidationResult, DiagnosticReport]:
        """Run the validator once and return its result with the parsed report."""
        result = self.validator.test()
        if result.valid:
            return result, DiagnosticReport()
        return result, self.parse(result.diagnostics)


def _entry_exists(path: Path) -> bool:
    return path.exists() or path.is_symlink()


__all__ = [
    "BrokenConfigDetector",
    "DiagnosticPattern",
    "DiagnosticReport",
    "build_patterns",
    "segment_after",
    "site_name",
]
