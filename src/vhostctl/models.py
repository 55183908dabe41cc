"""Batch request models and parsing."""
from __future__ import annotations

import ipaddress
import json
import re
import sys
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import TextIO

from .errors import FilesystemError, ParseError

STDIN_SENTINEL = "-"
DEFAULT_BACKEND_HOST = "localhost"
DEFAULT_MAX_BODY_SIZE = "20M"

_BODY_SIZE_PATTERN = re.compile(r"^\d+[kKmMgG]?$")


@dataclass(frozen=True, slots=True)
class DomainSpec:
    """Desired reverse-proxy configuration for a single domain."""

    domain: str
    port: int
    ssl_requested: bool = False
    email: str | None = None
    backend_host: str = DEFAULT_BACKEND_HOST
    max_body_size: str = DEFAULT_MAX_BODY_SIZE

    @property
    def is_ip_literal(self) -> bool:
        """Return True when the domain is an IPv4/IPv6 address."""
        try:
            ipaddress.ip_address(self.domain)
        except ValueError:
            return False
        return True

    @property
    def wants_tls(self) -> bool:
        """Return True when a TLS server block may be rendered."""
        return self.ssl_requested and not self.is_ip_literal

    def without_tls(self) -> DomainSpec:
        """Return a copy of this spec with SSL disabled."""
        return DomainSpec(
            domain=self.domain,
            port=self.port,
            ssl_requested=False,
            email=self.email,
            backend_host=self.backend_host,
            max_body_size=self.max_body_size,
        )


@dataclass(frozen=True, slots=True)
class BatchRequest:
    """Ordered list of domain specs applied in a single transaction."""

    domains: tuple[DomainSpec, ...]
    auto_reload: bool = False


def validate_domain_name(value: str, *, source: str | None = None, field: str = "domain") -> str:
    """Return *value* normalised, rejecting names unusable as a site file."""
    candidate = value.strip()
    if not candidate:
        raise ParseError("Domain must be a non-empty string.", source=source, field=field)
    if "/" in candidate or candidate in {".", ".."} or any(char.isspace() for char in candidate):
        raise ParseError(
            f"Domain '{candidate}' is not a valid site name.",
            source=source,
            field=field,
        )
    return candidate


def parse_domain(
    raw: object,
    *,
    index: int = 0,
    source: str | None = None,
) -> DomainSpec:
    """Parse one entry of the ``domains`` list."""
    prefix = f"domains[{index}]"
    if not isinstance(raw, Mapping):
        raise ParseError(f"{prefix} must be a mapping.", source=source, field=prefix)

    domain_value = raw.get("domain")
    if not isinstance(domain_value, str):
        raise ParseError(
            f"{prefix}.domain must be a string.",
            source=source,
            field=f"{prefix}.domain",
        )
    domain = validate_domain_name(domain_value, source=source, field=f"{prefix}.domain")

    port_value = raw.get("port")
    if isinstance(port_value, bool) or not isinstance(port_value, int):
        raise ParseError(
            f"{prefix}.port must be an integer.",
            source=source,
            field=f"{prefix}.port",
        )
    if not 1 <= port_value <= 65535:
        raise ParseError(
            f"{prefix}.port must be between 1 and 65535 (got {port_value}).",
            source=source,
            field=f"{prefix}.port",
        )

    ssl_value = raw.get("ssl", False)
    if ssl_value is None:
        ssl_value = False
    if not isinstance(ssl_value, bool):
        raise ParseError(f"{prefix}.ssl must be a boolean.", source=source, field=f"{prefix}.ssl")

    email_value = raw.get("email")
    if email_value is not None and not isinstance(email_value, str):
        raise ParseError(
            f"{prefix}.email must be a string or null.",
            source=source,
            field=f"{prefix}.email",
        )
    email = email_value.strip() if isinstance(email_value, str) and email_value.strip() else None
    if ssl_value and email is None:
        raise ParseError(
            f"{prefix}: email is required when ssl is enabled for '{domain}'.",
            source=source,
            field=f"{prefix}.email",
        )

    host_value = raw.get("host", DEFAULT_BACKEND_HOST)
    if host_value is None:
        host_value = DEFAULT_BACKEND_HOST
    if not isinstance(host_value, str) or not host_value.strip():
        raise ParseError(
            f"{prefix}.host must be a non-empty string.",
            source=source,
            field=f"{prefix}.host",
        )

    body_value = raw.get("max_body_size", DEFAULT_MAX_BODY_SIZE)
    if body_value is None:
        body_value = DEFAULT_MAX_BODY_SIZE
    if not isinstance(body_value, str) or not _BODY_SIZE_PATTERN.match(body_value.strip()):
        raise ParseError(
            f"{prefix}.max_body_size must look like '20M' (got {body_value!r}).",
            source=source,
            field=f"{prefix}.max_body_size",
        )

    return DomainSpec(
        domain=domain,
        port=port_value,
        ssl_requested=ssl_value,
        email=email,
        backend_host=host_value.strip(),
        max_body_size=body_value.strip(),
    )


def parse_batch(payload: object, *, source: str | None = None) -> BatchRequest:
    """Build a :class:`BatchRequest` from decoded JSON *payload*."""
    if not isinstance(payload, Mapping):
        raise ParseError("Batch request must be a JSON object.", source=source)

    raw_domains = payload.get("domains")
    if isinstance(raw_domains, (str, bytes)) or not isinstance(raw_domains, Sequence):
        raise ParseError("Batch request requires a 'domains' list.", source=source, field="domains")

    auto_reload = payload.get("auto_reload", False)
    if auto_reload is None:
        auto_reload = False
    if not isinstance(auto_reload, bool):
        raise ParseError("auto_reload must be a boolean.", source=source, field="auto_reload")

    domains = tuple(
        parse_domain(entry, index=index, source=source) for index, entry in enumerate(raw_domains)
    )
    return BatchRequest(domains=domains, auto_reload=auto_reload)


def parse_batch_text(text: str, *, source: str | None = None) -> BatchRequest:
    """Decode JSON *text* and parse it as a batch request."""
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ParseError(f"Invalid JSON batch request: {exc}", source=source) from exc
    return parse_batch(payload, source=source)


def load_batch(location: str, *, stdin: TextIO | None = None) -> BatchRequest:
    """Read a batch request from *location* (``-`` for standard input)."""
    if location == STDIN_SENTINEL:
        stream = stdin if stdin is not None else sys.stdin
        return parse_batch_text(stream.read(), source="<stdin>")

    path = Path(location).expanduser()
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise FilesystemError(
            f"Failed to read batch file {path}: {exc}",
            path=path,
            operation="read",
        ) from exc
    return parse_batch_text(text, source=str(path))


__all__ = [
    "BatchRequest",
    "DomainSpec",
    "STDIN_SENTINEL",
    "load_batch",
    "parse_batch",
    "parse_batch_text",
    "parse_domain",
    "validate_domain_name",
]
