"""Tests for the vhostctl CLI."""
from __future__ import annotations

import json
from pathlib import Path

import yaml
from typer.testing import CliRunner

from vhostctl import __version__
from vhostctl.cli import app
from vhostctl.locking import LockManager

runner = CliRunner()

NGINX_STUB = """\
#!/bin/sh
if [ "$1" = "-v" ]; then
  echo "nginx version: nginx/1.24.0" >&2
  exit 0
fi
if [ -f "{fail}" ]; then
  cat "{fail}" >&2
  exit 1
fi
echo "nginx: configuration file test is successful" >&2
exit 0
"""

SYSTEMCTL_STUB = """\
#!/bin/sh
echo "$@" >> "{log}"
if [ "$1" = "is-active" ]; then
  echo active
fi
exit 0
"""


def _prepare_environment(tmp_path: Path) -> tuple[dict[str, str], Path]:
    """Write stub binaries and a config file; return (env, bin_dir)."""
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir(parents=True, exist_ok=True)

    def _write_stub(name: str, *, content: str = "#!/bin/sh\nexit 0\n") -> Path:
        path = bin_dir / name
        path.write_text(content, encoding="utf-8")
        path.chmod(0o755)
        return path

    _write_stub("nginx", content=NGINX_STUB.format(fail=bin_dir / "nginx.fail"))
    _write_stub("systemctl", content=SYSTEMCTL_STUB.format(log=bin_dir / "systemctl.log"))
    _write_stub("certbot", content="#!/bin/sh\necho certbot 2.9.0\nexit 0\n")
    _write_stub(
        "dpkg",
        content="#!/bin/sh\necho 'Status: install ok installed'\nexit 0\n",
    )
    _write_stub("apt-get")

    nginx_root = tmp_path / "etc" / "nginx"
    config = {
        "logs_dir": str(tmp_path / "logs"),
        "runtime_dir": str(tmp_path / "run"),
        "templates_dir": str(tmp_path / "templates"),
        "lock_timeout": 1.0,
        "nginx": {
            "bin": str(bin_dir / "nginx"),
            "sites_available": str(nginx_root / "sites-available"),
            "sites_enabled": str(nginx_root / "sites-enabled"),
            "main_config": str(nginx_root / "nginx.conf"),
            "modules_dir": str(tmp_path / "modules"),
            "module_search_paths": [str(tmp_path / "modules")],
        },
        "web": {"root": str(tmp_path / "www")},
        "backups": {"root": str(tmp_path / "backups")},
        "certbot": {
            "bin": str(bin_dir / "certbot"),
            "live_dir": str(tmp_path / "letsencrypt" / "live"),
        },
        "packages": {
            "apt_bin": str(bin_dir / "apt-get"),
            "dpkg_bin": str(bin_dir / "dpkg"),
        },
        "modules": {"build_dir": str(tmp_path / "build")},
        "systemd": {"systemctl_bin": str(bin_dir / "systemctl")},
    }
    config_path = tmp_path / "config.yml"
    config_path.write_text(yaml.safe_dump(config), encoding="utf-8")
    env = {"VHOSTCTL_CONFIG_FILE": str(config_path)}
    return env, bin_dir


def _write_batch(tmp_path: Path, domains: list[dict[str, object]], **extra: object) -> Path:
    path = tmp_path / "batch.json"
    path.write_text(json.dumps({"domains": domains, **extra}), encoding="utf-8")
    return path


def _nginx_root(tmp_path: Path) -> Path:
    return tmp_path / "etc" / "nginx"


def _operations(tmp_path: Path) -> list[dict[str, object]]:
    path = tmp_path / "logs" / "operations.jsonl"
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]


def test_version_option_outputs_package_version(tmp_path: Path) -> None:
    """``--version`` prints the package version."""
    env, _ = _prepare_environment(tmp_path)

    result = runner.invoke(app, ["--version"], env=env)

    assert result.exit_code == 0
    assert __version__ in result.stdout


def test_invocation_without_subcommand_shows_help(tmp_path: Path) -> None:
    """Running without a command prints help."""
    env, _ = _prepare_environment(tmp_path)

    result = runner.invoke(app, env=env)

    assert result.exit_code == 0
    assert "apply" in result.stdout


def test_apply_publishes_batch(tmp_path: Path) -> None:
    """Applying a batch writes, enables and reloads."""
    env, bin_dir = _prepare_environment(tmp_path)
    batch = _write_batch(
        tmp_path,
        [{"domain": "api.example.com", "port": 8080}],
        auto_reload=True,
    )

    result = runner.invoke(app, ["apply", "--config", str(batch), "--json"], env=env)

    assert result.exit_code == 0, result.stdout
    payload = json.loads(result.stdout)
    assert payload["domains"][0]["domain"] == "api.example.com"
    assert payload["reloaded"] is True
    assert payload["snapshot"].startswith("backup_")
    site = _nginx_root(tmp_path) / "sites-available" / "api.example.com"
    assert "proxy_pass http://127.0.0.1:8080;" in site.read_text(encoding="utf-8")
    assert (_nginx_root(tmp_path) / "sites-enabled" / "api.example.com").is_symlink()
    log = (bin_dir / "systemctl.log").read_text(encoding="utf-8")
    assert log.splitlines() == ["reload nginx"]

    record = _operations(tmp_path)[-1]
    assert record["operation"] == "apply"
    assert record["result"]["status"] == "success"
    assert record["result"]["backups"] == [payload["snapshot"]]


def test_apply_rolls_back_on_invalid_configuration(tmp_path: Path) -> None:
    """A failing ``nginx -t`` exits 2 and leaves the stores as they were."""
    env, bin_dir = _prepare_environment(tmp_path)
    (bin_dir / "nginx.fail").write_text(
        "nginx: [emerg] invalid port in upstream\n", encoding="utf-8"
    )
    batch = _write_batch(tmp_path, [{"domain": "api.example.com", "port": 8080}])

    result = runner.invoke(app, ["apply", "-c", str(batch)], env=env)

    assert result.exit_code == 2
    assert "invalid port in upstream" in result.stdout
    assert not (_nginx_root(tmp_path) / "sites-enabled" / "api.example.com").exists()
    record = _operations(tmp_path)[-1]
    assert record["result"]["status"] == "error"
    assert record["result"]["rc"] == 2
    assert record["result"]["context"]["rolled_back"] is True


def test_apply_rejects_invalid_batch(tmp_path: Path) -> None:
    """Malformed requests exit 2 before anything is written."""
    env, _ = _prepare_environment(tmp_path)
    batch = _write_batch(
        tmp_path,
        [{"domain": "api.example.com", "port": 8080, "ssl": True, "email": None}],
    )

    result = runner.invoke(app, ["apply", "-c", str(batch)], env=env)

    assert result.exit_code == 2
    assert "email is required" in result.stdout
    assert not (tmp_path / "backups").exists()


def test_apply_missing_batch_file(tmp_path: Path) -> None:
    """An unreadable batch file is an environment failure."""
    env, _ = _prepare_environment(tmp_path)

    result = runner.invoke(app, ["apply", "-c", str(tmp_path / "missing.json")], env=env)

    assert result.exit_code == 3


def test_apply_reads_standard_input(tmp_path: Path) -> None:
    """``-c -`` reads the batch from standard input."""
    env, _ = _prepare_environment(tmp_path)
    payload = json.dumps({"domains": [{"domain": "a.example.com", "port": 3000}]})

    result = runner.invoke(app, ["apply", "-c", "-", "--no-backup"], input=payload, env=env)

    assert result.exit_code == 0, result.stdout
    assert (_nginx_root(tmp_path) / "sites-enabled" / "a.example.com").is_symlink()
    assert not (tmp_path / "backups").exists()


def test_apply_times_out_when_locked(tmp_path: Path) -> None:
    """A held global lock makes a concurrent apply exit 3."""
    env, _ = _prepare_environment(tmp_path)
    batch = _write_batch(tmp_path, [{"domain": "a.example.com", "port": 3000}])
    locks = LockManager(tmp_path / "run")

    with locks.global_lock():
        result = runner.invoke(
            app,
            ["--lock-timeout", "0.1", "apply", "-c", str(batch)],
            env=env,
        )

    assert result.exit_code == 3
    assert "Timed out" in result.stdout


def test_add_list_and_remove(tmp_path: Path) -> None:
    """Single-domain commands manage one site at a time."""
    env, bin_dir = _prepare_environment(tmp_path)

    added = runner.invoke(app, ["add", "-d", "a.example.com", "-p", "3000"], env=env)
    assert added.exit_code == 0, added.stdout

    listed = runner.invoke(app, ["list"], env=env)
    assert listed.exit_code == 0
    assert "a.example.com" in listed.stdout

    removed = runner.invoke(app, ["remove", "a.example.com"], env=env)
    assert removed.exit_code == 0, removed.stdout
    assert not (_nginx_root(tmp_path) / "sites-available" / "a.example.com").exists()
    log = (bin_dir / "systemctl.log").read_text(encoding="utf-8").splitlines()
    assert log == ["reload nginx", "reload nginx"]

    missing = runner.invoke(app, ["remove", "a.example.com"], env=env)
    assert missing.exit_code == 2
    assert "not configured" in missing.stdout


def test_add_requires_email_for_ssl(tmp_path: Path) -> None:
    """``--ssl`` without ``--email`` is rejected."""
    env, _ = _prepare_environment(tmp_path)

    result = runner.invoke(app, ["add", "-d", "a.example.com", "-p", "3000", "--ssl"], env=env)

    assert result.exit_code == 2


def test_backups_and_restore(tmp_path: Path) -> None:
    """Backups are listed and the latest one can be restored."""
    env, _ = _prepare_environment(tmp_path)
    batch = _write_batch(tmp_path, [{"domain": "a.example.com", "port": 3000}])
    assert runner.invoke(app, ["apply", "-c", str(batch)], env=env).exit_code == 0
    snapshot = sorted(path.name for path in (tmp_path / "backups").iterdir())[0]

    listed = runner.invoke(app, ["backups"], env=env)
    assert listed.exit_code == 0
    assert snapshot in listed.stdout

    restored = runner.invoke(app, ["restore"], env=env)
    assert restored.exit_code == 0, restored.stdout
    assert f"Restored backup {snapshot}" in restored.stdout
    # The snapshot predates a.example.com, so it is no longer enabled.
    assert not (_nginx_root(tmp_path) / "sites-enabled" / "a.example.com").exists()

    unknown = runner.invoke(app, ["restore", "backup_19990101_000000"], env=env)
    assert unknown.exit_code == 3


def test_test_and_status_commands(tmp_path: Path) -> None:
    """``test`` reflects ``nginx -t``; ``status`` reports JSON."""
    env, bin_dir = _prepare_environment(tmp_path)

    ok = runner.invoke(app, ["test"], env=env)
    assert ok.exit_code == 0
    assert "valid" in ok.stdout

    status = runner.invoke(app, ["status", "--json"], env=env)
    assert status.exit_code == 0
    payload = json.loads(status.stdout)
    assert payload["service"] == {"name": "nginx", "active": True}
    assert payload["validation"]["valid"] is True
    assert payload["backups"] == {"count": 0, "latest": None}

    (bin_dir / "nginx.fail").write_text("nginx: [emerg] broken\n", encoding="utf-8")
    failed = runner.invoke(app, ["test"], env=env)
    assert failed.exit_code == 2
    assert "broken" in failed.stdout


def test_clean_removes_broken_sites(tmp_path: Path) -> None:
    """``clean`` removes the sites nginx blames."""
    env, bin_dir = _prepare_environment(tmp_path)
    batch = _write_batch(tmp_path, [{"domain": "bad.example.com", "port": 3000}])
    assert runner.invoke(app, ["apply", "-c", str(batch)], env=env).exit_code == 0
    enabled = _nginx_root(tmp_path) / "sites-enabled"
    (bin_dir / "nginx.fail").write_text(
        f"nginx: [emerg] unknown directive in {enabled}/bad.example.com:3\n",
        encoding="utf-8",
    )

    dry = runner.invoke(app, ["clean", "--dry-run"], env=env)
    assert dry.exit_code == 0
    assert "bad.example.com" in dry.stdout
    assert (enabled / "bad.example.com").exists()

    result = runner.invoke(app, ["clean"], env=env)
    assert result.exit_code == 0
    assert not (enabled / "bad.example.com").exists()


def test_reload_and_check(tmp_path: Path) -> None:
    """``reload`` calls systemctl; ``check`` reports missing directories."""
    env, bin_dir = _prepare_environment(tmp_path)

    reloaded = runner.invoke(app, ["reload"], env=env)
    assert reloaded.exit_code == 0
    assert (bin_dir / "systemctl.log").read_text(encoding="utf-8") == "reload nginx\n"

    missing = runner.invoke(app, ["check"], env=env)
    assert missing.exit_code == 3

    (_nginx_root(tmp_path) / "sites-available").mkdir(parents=True)
    (_nginx_root(tmp_path) / "sites-enabled").mkdir(parents=True)
    ok = runner.invoke(app, ["check"], env=env)
    assert ok.exit_code == 0
    assert "All requirements met" in ok.stdout
