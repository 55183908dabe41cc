"""Tests for the certbot and package manager providers."""
from __future__ import annotations

from collections.abc import Sequence

import pytest

from vhostctl.errors import ProvisioningError
from vhostctl.providers.certbot import (
    PLUGIN_MISSING_SIGNATURE,
    CertbotProvider,
    is_plugin_missing,
)
from vhostctl.providers.packages import PackageManager


class DummyResult:
    """Simple stand-in for ``subprocess.CompletedProcess``."""

    def __init__(self, returncode: int = 0, stdout: str = "", stderr: str = "") -> None:
        """Initialise the dummy result."""
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr


def test_issue_builds_certbot_command(monkeypatch: pytest.MonkeyPatch) -> None:
    """Issuing runs certbot's nginx authenticator non-interactively."""
    calls: list[list[str]] = []

    def fake_run(self: CertbotProvider, args: Sequence[str]) -> DummyResult:
        calls.append(list(args))
        return DummyResult()

    monkeypatch.setattr(CertbotProvider, "_run_command", fake_run)

    CertbotProvider().issue("api.example.com", "ops@example.com")

    assert calls == [
        [
            "certbot",
            "certonly",
            "--nginx",
            "-d",
            "api.example.com",
            "--email",
            "ops@example.com",
            "--agree-tos",
            "--non-interactive",
        ]
    ]


def test_issue_failure_raises(monkeypatch: pytest.MonkeyPatch) -> None:
    """A non-zero certbot exit becomes a ProvisioningError for the domain."""
    monkeypatch.setattr(
        CertbotProvider,
        "_run_command",
        lambda self, args: DummyResult(returncode=1, stderr="Challenge failed\n"),
    )

    with pytest.raises(ProvisioningError) as excinfo:
        CertbotProvider().issue("api.example.com", "ops@example.com")

    error = excinfo.value
    assert error.step == "certbot"
    assert error.domain == "api.example.com"
    assert error.output == "Challenge failed"
    assert not is_plugin_missing(error)


def test_plugin_missing_signature_is_recognised(monkeypatch: pytest.MonkeyPatch) -> None:
    """The nginx plugin error is detected from certbot's output."""
    monkeypatch.setattr(
        CertbotProvider,
        "_run_command",
        lambda self, args: DummyResult(returncode=1, stderr=f"{PLUGIN_MISSING_SIGNATURE}.\n"),
    )

    with pytest.raises(ProvisioningError) as excinfo:
        CertbotProvider().issue("api.example.com", "ops@example.com")

    assert is_plugin_missing(excinfo.value)


def test_version_is_parsed(monkeypatch: pytest.MonkeyPatch) -> None:
    """The version is the last word of certbot --version output."""
    monkeypatch.setattr(
        CertbotProvider,
        "_run_command",
        lambda self, args: DummyResult(stdout="certbot 2.9.0\n"),
    )
    assert CertbotProvider().version() == "2.9.0"


def test_version_none_when_certbot_missing() -> None:
    """A missing certbot binary yields no version."""
    assert CertbotProvider(certbot_bin="/nonexistent/certbot").version() is None


@pytest.mark.parametrize(
    ("result", "expected"),
    [
        (DummyResult(stdout="Package: nginx\nStatus: install ok installed\n"), True),
        (DummyResult(stdout="Status: deinstall ok config-files\n"), False),
        (DummyResult(returncode=1, stderr="package 'nginx' is not installed"), False),
    ],
)
def test_package_is_installed(
    monkeypatch: pytest.MonkeyPatch,
    result: DummyResult,
    expected: bool,
) -> None:
    """Installed state is read from ``dpkg -s``."""
    calls: list[list[str]] = []

    def fake_run(
        self: PackageManager,
        args: Sequence[str],
        *,
        noninteractive: bool = False,
    ) -> DummyResult:
        calls.append(list(args))
        return result

    monkeypatch.setattr(PackageManager, "_run_command", fake_run)

    assert PackageManager().is_installed("nginx") is expected
    assert calls == [["dpkg", "-s", "nginx"]]


def test_package_install_runs_noninteractively(monkeypatch: pytest.MonkeyPatch) -> None:
    """Installs use apt-get with the non-interactive frontend."""
    calls: list[tuple[list[str], bool]] = []

    def fake_run(
        self: PackageManager,
        args: Sequence[str],
        *,
        noninteractive: bool = False,
    ) -> DummyResult:
        calls.append((list(args), noninteractive))
        return DummyResult()

    monkeypatch.setattr(PackageManager, "_run_command", fake_run)

    PackageManager().install(["python3-certbot-nginx"])

    assert calls == [(["apt-get", "install", "-y", "-qq", "python3-certbot-nginx"], True)]


def test_package_install_failure_carries_step(monkeypatch: pytest.MonkeyPatch) -> None:
    """Install failures report the caller's step name."""
    monkeypatch.setattr(
        PackageManager,
        "_run_command",
        lambda self, args, noninteractive=False: DummyResult(returncode=100, stderr="E: boom"),
    )

    with pytest.raises(ProvisioningError) as excinfo:
        PackageManager().install(["git"], step="build-dependencies")

    assert excinfo.value.step == "build-dependencies"
    assert excinfo.value.returncode == 100
    assert excinfo.value.output == "E: boom"
