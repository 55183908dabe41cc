"""Shared fixtures for the vhostctl test suite."""

from __future__ import annotations

import subprocess
from collections.abc import Sequence
from pathlib import Path
from typing import Any

import pytest

from vhostctl.cli import RuntimeContext, build_runtime
from vhostctl.config import AppConfig, load_config
from vhostctl.providers.nginx import NginxProvider
from vhostctl.providers.systemd import SystemdProvider


def _completed(args: Sequence[str] = (), *, returncode: int = 0, stderr: str = "") -> Any:
    return subprocess.CompletedProcess(list(args), returncode=returncode, stdout="", stderr=stderr)


class ProcessScript:
    """Queue of results handed out to a monkeypatched process seam.

    Results are anything shaped like ``subprocess.CompletedProcess``; an empty
    queue yields a successful result.
    """

    def __init__(self) -> None:
        """Initialise an empty script."""
        self.results: list[Any] = []
        self.calls: list[tuple[str, ...]] = []

    def queue(self, *results: Any) -> None:
        """Append results returned by subsequent calls, in order."""
        self.results.extend(results)

    def next(self, args: Sequence[str]) -> Any:
        """Record *args* and return the next queued result."""
        self.calls.append(tuple(args))
        if self.results:
            return self.results.pop(0)
        return _completed(args)


def make_config(tmp_path: Path) -> AppConfig:
    """Return a configuration rooted entirely under *tmp_path*."""
    nginx_root = tmp_path / "etc" / "nginx"
    modules_dir = tmp_path / "usr" / "share" / "nginx" / "modules"
    return load_config(
        config_file=tmp_path / "absent.yml",
        env={},
        overrides={
            "logs_dir": str(tmp_path / "logs"),
            "runtime_dir": str(tmp_path / "run"),
            "templates_dir": str(tmp_path / "templates"),
            "lock_timeout": 1.0,
            "nginx": {
                "sites_available": str(nginx_root / "sites-available"),
                "sites_enabled": str(nginx_root / "sites-enabled"),
                "main_config": str(nginx_root / "nginx.conf"),
                "modules_dir": str(modules_dir),
                "module_search_paths": [str(modules_dir)],
            },
            "web": {"root": str(tmp_path / "www")},
            "backups": {"root": str(tmp_path / "backups")},
            "certbot": {"live_dir": str(tmp_path / "letsencrypt" / "live")},
            "modules": {"build_dir": str(tmp_path / "build")},
        },
    )


@pytest.fixture
def config(tmp_path: Path) -> AppConfig:
    """Return a configuration bound to temporary directories."""
    return make_config(tmp_path)


@pytest.fixture
def runtime(config: AppConfig) -> RuntimeContext:
    """Return fully wired services bound to temporary directories."""
    return build_runtime(config)


@pytest.fixture
def nginx_script(monkeypatch: pytest.MonkeyPatch) -> ProcessScript:
    """Replace ``nginx`` invocations; ``-v`` always reports 1.24.0."""
    script = ProcessScript()

    def fake_run(self: NginxProvider, args: Sequence[str]) -> Any:
        if list(args) == ["-v"]:
            return _completed(args, stderr="nginx version: nginx/1.24.0\n")
        return script.next(args)

    monkeypatch.setattr(NginxProvider, "_run_nginx", fake_run)
    return script


@pytest.fixture
def systemctl_script(monkeypatch: pytest.MonkeyPatch) -> ProcessScript:
    """Replace ``systemctl`` invocations."""
    script = ProcessScript()

    def fake_run(self: SystemdProvider, args: Sequence[str]) -> Any:
        result = script.next(args)
        result.args = list(args)
        return result

    monkeypatch.setattr(SystemdProvider, "_run_command", fake_run)
    return script
