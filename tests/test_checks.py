"""Tests for the ``check`` requirement probes."""
from __future__ import annotations

from pathlib import Path

import pytest

from vhostctl.checks import ProbeStatus, exit_code_for, run_checks
from vhostctl.exit_codes import ExitCode
from vhostctl.providers.certbot import CertbotProvider
from vhostctl.providers.nginx import NginxProvider
from vhostctl.templates import TemplateEngine


class DummyResult:
    """Simple stand-in for ``subprocess.CompletedProcess``."""

    def __init__(self, returncode: int = 0, stdout: str = "", stderr: str = "") -> None:
        """Initialise the dummy result."""
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr


def _nginx(tmp_path: Path) -> NginxProvider:
    return NginxProvider(
        templates=TemplateEngine.with_overrides(None),
        sites_available=tmp_path / "sites-available",
        sites_enabled=tmp_path / "sites-enabled",
    )


def test_all_requirements_present(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Installed tools and existing stores are green."""
    monkeypatch.setattr(
        NginxProvider,
        "_run_nginx",
        lambda self, args: DummyResult(stderr="nginx version: nginx/1.24.0"),
    )
    monkeypatch.setattr(
        CertbotProvider,
        "_run_command",
        lambda self, args: DummyResult(stdout="certbot 2.9.0"),
    )
    (tmp_path / "sites-available").mkdir()
    (tmp_path / "sites-enabled").mkdir()

    results = run_checks(
        nginx=_nginx(tmp_path),
        certbot=CertbotProvider(),
        backup_root=tmp_path / "backups",
    )

    statuses = {result.id: result.status for result in results}
    assert statuses == {
        "nginx": ProbeStatus.GREEN,
        "certbot": ProbeStatus.GREEN,
        "sites-available": ProbeStatus.GREEN,
        "sites-enabled": ProbeStatus.GREEN,
        "backups": ProbeStatus.YELLOW,
    }
    assert results[0].message == "nginx/1.24.0"
    assert exit_code_for(results) is ExitCode.OK


def test_missing_tools_fail(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Missing binaries and stores are red and map to the environment exit code."""
    monkeypatch.setattr(
        NginxProvider,
        "_run_nginx",
        lambda self, args: DummyResult(returncode=127, stderr="nginx not found"),
    )
    monkeypatch.setattr(
        CertbotProvider,
        "_run_command",
        lambda self, args: DummyResult(returncode=127),
    )

    results = run_checks(
        nginx=_nginx(tmp_path),
        certbot=CertbotProvider(),
        backup_root=tmp_path,
    )

    assert [result.status for result in results] == [
        ProbeStatus.RED,
        ProbeStatus.RED,
        ProbeStatus.RED,
        ProbeStatus.RED,
        ProbeStatus.GREEN,
    ]
    assert exit_code_for(results) is ExitCode.ENVIRONMENT
    assert results[0].to_dict()["status"] == "red"
