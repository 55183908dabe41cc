"""Typer-powered command line interface for ``vhostctl``.

Every command runs inside a structured operation scope so its outcome lands
in ``operations.jsonl``. Commands that modify the nginx site stores hold the
global lock for their whole duration.
"""
from __future__ import annotations

import textwrap
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.table import Table

from . import __version__
from .apply import ApplyOrchestrator, ApplyResult
from .backups import LATEST, SnapshotManager
from .certificates import CertificateInspector, CertificateState
from .checks import ProbeStatus, exit_code_for, run_checks
from .config import AppConfig, ConfigError, load_config
from .diagnostics import BrokenConfigDetector
from .errors import ValidationError, VhostctlError
from .exit_codes import ExitCode
from .locking import LockError, LockManager
from .logging import OperationScope, StructuredLogger
from .models import BatchRequest, load_batch, parse_domain
from .providers import (
    CertbotProvider,
    HeadersMoreInstaller,
    NginxProvider,
    PackageManager,
    SystemdProvider,
)
from .ssl import SSLProvisioner
from .templates import TemplateEngine, TemplateRenderError
from .validation import Validator

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    help="Path to the vhostctl configuration file.",
)
NO_BACKUP_OPTION = typer.Option(
    False,
    "--no-backup",
    help="Skip the snapshot taken before modifying the site stores (disables rollback).",
)

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Manage nginx reverse-proxy virtual hosts.

        Domains are applied as a single transaction: the site stores are
        snapshotted, the configuration is validated with `nginx -t`, and a
        failing result is rolled back.
        """
    ).strip(),
)


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    locks: LockManager
    logger: StructuredLogger
    templates: TemplateEngine
    nginx: NginxProvider
    systemd: SystemdProvider
    certbot: CertbotProvider
    packages: PackageManager
    snapshots: SnapshotManager
    validator: Validator
    detector: BrokenConfigDetector
    orchestrator: ApplyOrchestrator
    certificates: CertificateInspector


def build_runtime(config: AppConfig) -> RuntimeContext:
    """Wire providers and services from *config*."""
    templates = TemplateEngine.with_overrides(config.templates_dir)
    nginx = NginxProvider(
        templates=templates,
        sites_available=config.nginx.sites_available,
        sites_enabled=config.nginx.sites_enabled,
        main_config=config.nginx.main_config,
        web_root=config.web.root,
        cert_live_dir=config.certbot.live_dir,
        nginx_bin=config.nginx.bin,
    )
    systemd = SystemdProvider(
        service=config.nginx.service,
        systemctl_bin=config.systemd.systemctl_bin,
    )
    certbot = CertbotProvider(certbot_bin=config.certbot.bin)
    packages = PackageManager(apt_bin=config.packages.apt_bin, dpkg_bin=config.packages.dpkg_bin)
    installer = HeadersMoreInstaller(
        nginx=nginx,
        packages=packages,
        modules_dir=config.nginx.modules_dir,
        module_search_paths=config.nginx.module_search_paths,
        build_dir=config.modules.build_dir,
        nginx_source_url=config.modules.nginx_source_url,
        headers_more_repo=config.modules.headers_more_repo,
    )
    validator = Validator(nginx, installer)
    detector = BrokenConfigDetector(
        validator=validator,
        sites_enabled=config.nginx.sites_enabled,
        cert_live_dir=config.certbot.live_dir,
    )
    snapshots = SnapshotManager(
        root=config.backups.root,
        sites_available=config.nginx.sites_available,
        sites_enabled=config.nginx.sites_enabled,
    )
    ssl = SSLProvisioner(
        nginx=nginx,
        systemd=systemd,
        certbot=certbot,
        packages=packages,
        plugin_package=config.certbot.plugin_package,
    )
    orchestrator = ApplyOrchestrator(
        nginx=nginx,
        snapshots=snapshots,
        detector=detector,
        ssl=ssl,
        validator=validator,
        systemd=systemd,
    )
    return RuntimeContext(
        config=config,
        locks=LockManager(config.runtime_dir, config.lock_timeout),
        logger=StructuredLogger(config.logs_dir),
        templates=templates,
        nginx=nginx,
        systemd=systemd,
        certbot=certbot,
        packages=packages,
        snapshots=snapshots,
        validator=validator,
        detector=detector,
        orchestrator=orchestrator,
        certificates=CertificateInspector(config.certbot.live_dir),
    )


def _ensure_runtime(
    ctx: typer.Context,
    config_file: Path | None,
    lock_timeout_override: float | None = None,
) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    overrides: dict[str, object] = {}
    if lock_timeout_override is not None:
        overrides["lock_timeout"] = lock_timeout_override

    try:
        config = load_config(config_file=config_file, overrides=overrides)
    except ConfigError as exc:
        console.print(f"[red]Configuration error: {exc}[/red]")
        raise typer.Exit(code=int(ExitCode.ENVIRONMENT)) from exc
    runtime = build_runtime(config)
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None, None)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the vhostctl version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    lock_timeout: float | None = typer.Option(
        None,
        "--lock-timeout",
        help="Override lock acquisition timeout in seconds.",
    ),
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        console.print(f"vhostctl {__version__}")
        raise typer.Exit(code=0)

    _ensure_runtime(ctx, config_file, lock_timeout)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=0)


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = int(ExitCode.VALIDATION),
    errors: Sequence[str] | None = None,
    context: Mapping[str, object] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{message}[/red]")
    op.error(message, errors=list(errors or [message]), rc=rc, context=context)
    raise typer.Exit(code=rc)


def _fail(op: OperationScope, exc: VhostctlError) -> NoReturn:
    """Report a vhostctl error variant and exit with its code."""
    if isinstance(exc, ValidationError) and exc.diagnostics:
        console.print(exc.diagnostics, markup=False, highlight=False)
    _command_error(
        op,
        exc.message,
        rc=int(exc.exit_code),
        errors=[exc.message],
        context=exc.to_dict(),
    )


@contextmanager
def _guard(op: OperationScope) -> Iterator[None]:
    """Translate vhostctl failures into exit codes."""
    try:
        yield
    except LockError as exc:
        _command_error(op, str(exc), rc=int(ExitCode.ENVIRONMENT))
    except TemplateRenderError as exc:
        _command_error(op, str(exc), rc=int(ExitCode.ENVIRONMENT))
    except VhostctlError as exc:
        _fail(op, exc)


def _render_apply_result(result: ApplyResult) -> None:
    if result.snapshot:
        console.print(f"Backup created: [bold]{result.snapshot}[/bold]")
    for domain in result.purged:
        console.print(f"[yellow]Removed broken configuration:[/yellow] {domain}")
    for entry in result.domains:
        detail = "http"
        if entry.ssl is not None:
            detail = entry.ssl.state.value
        console.print(f"[green]✓[/green] {entry.domain} ({detail})")
    for warning in result.warnings:
        console.print(f"[yellow]Warning:[/yellow] {warning}", highlight=False)
    if result.reloaded:
        console.print("nginx reloaded.")


def _run_apply(
    runtime: RuntimeContext,
    op: OperationScope,
    batch: BatchRequest,
    *,
    backup: bool,
    force: bool,
) -> ApplyResult:
    with runtime.locks.global_lock() as lock:
        op.set_lock_wait_ms(lock.wait_ms)
        return runtime.orchestrator.apply(batch, backup=backup, force=force, op=op)


def _finish_apply(op: OperationScope, result: ApplyResult, *, json_output: bool) -> None:
    if json_output:
        console.print_json(data=result.to_dict())
    else:
        _render_apply_result(result)
    backups = [result.snapshot] if result.snapshot else []
    if result.warnings:
        op.warning(
            "Apply completed with warnings.",
            warnings=result.warnings,
            changed=result.changed,
            backups=backups,
            context=result.to_dict(),
        )
    else:
        op.success(
            "Apply completed.",
            changed=result.changed,
            backups=backups,
            context=result.to_dict(),
        )


@app.command()
def apply(
    ctx: typer.Context,
    config: str = typer.Option(
        ...,
        "--config",
        "-c",
        help="Batch request file (JSON); use '-' to read standard input.",
    ),
    no_backup: bool = NO_BACKUP_OPTION,
    force: bool = typer.Option(
        False,
        "--force",
        help="Commit even when the nginx configuration test fails.",
    ),
    json_output: bool = typer.Option(False, "--json", help="Emit the result as JSON."),
) -> None:
    """Apply a batch of domains as one transaction."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "apply",
        args={"config": config, "no_backup": no_backup, "force": force},
        target={"kind": "batch", "source": config},
    ) as op, _guard(op):
        batch = load_batch(config)
        op.add_step("batch.parse", status="success", detail=f"{len(batch.domains)} domain(s)")
        result = _run_apply(runtime, op, batch, backup=not no_backup, force=force)
        _finish_apply(op, result, json_output=json_output)


@app.command()
def add(
    ctx: typer.Context,
    domain: str = typer.Option(..., "--domain", "-d", help="Domain name to publish."),
    port: int = typer.Option(..., "--port", "-p", help="Backend port."),
    ssl: bool = typer.Option(False, "--ssl", "-s", help="Request a Let's Encrypt certificate."),
    email: str | None = typer.Option(
        None, "--email", "-e", help="Contact email for the certificate."
    ),
    host: str = typer.Option("localhost", "--host", help="Backend host."),
    max_body_size: str = typer.Option(
        "20M", "--max-body-size", help="nginx client_max_body_size value."
    ),
    no_backup: bool = NO_BACKUP_OPTION,
    force: bool = typer.Option(
        False,
        "--force",
        help="Commit even when the nginx configuration test fails.",
    ),
) -> None:
    """Publish a single domain and reload nginx."""
    runtime = _get_runtime(ctx)
    raw = {
        "domain": domain,
        "port": port,
        "ssl": ssl,
        "email": email,
        "host": host,
        "max_body_size": max_body_size,
    }
    with runtime.logger.operation(
        "add",
        args=raw,
        target={"kind": "domain", "domain": domain},
    ) as op, _guard(op):
        spec = parse_domain(raw, source="<command line>")
        batch = BatchRequest(domains=(spec,), auto_reload=True)
        result = _run_apply(runtime, op, batch, backup=not no_backup, force=force)
        _finish_apply(op, result, json_output=False)


@app.command()
def remove(
    ctx: typer.Context,
    domain: str = typer.Argument(..., help="Domain to remove."),
    no_backup: bool = NO_BACKUP_OPTION,
) -> None:
    """Remove a domain's configuration and reload nginx."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "remove",
        args={"domain": domain, "no_backup": no_backup},
        target={"kind": "domain", "domain": domain},
    ) as op, _guard(op):
        if not runtime.nginx.site_exists(domain) and not runtime.nginx.is_enabled(domain):
            _command_error(op, f"Domain '{domain}' is not configured.")
        with runtime.locks.global_lock() as lock:
            op.set_lock_wait_ms(lock.wait_ms)
            result = runtime.orchestrator.remove([domain], backup=not no_backup, op=op)
        console.print(f"[green]Removed {domain}.[/green]")
        op.success(
            f"Removed {domain}.",
            changed=result.changed,
            backups=[result.snapshot] if result.snapshot else [],
        )


@app.command("list")
def list_domains(ctx: typer.Context) -> None:
    """List configured domains."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "list",
        target={"kind": "domain", "scope": "all"},
    ) as op, _guard(op):
        sites = runtime.nginx.list_sites()
        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Domain", style="bold")
        table.add_column("Enabled")
        table.add_column("Certificate")
        if not sites:
            table.add_row("(none)", "", "")
        for name, enabled in sites:
            table.add_row(
                name,
                "yes" if enabled else "no",
                "yes" if runtime.certificates.has_certificate(name) else "no",
            )
        console.print(table)
        op.success("Reported domains.", changed=0, context={"count": len(sites)})


@app.command()
def status(
    ctx: typer.Context,
    json_output: bool = typer.Option(False, "--json", help="Emit status as JSON."),
) -> None:
    """Report service, validation, backup and certificate status."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "status",
        args={"json": json_output},
        target={"kind": "host"},
    ) as op, _guard(op):
        active = runtime.systemd.is_active()
        validation = runtime.validator.test()
        snapshots = runtime.snapshots.list_snapshots()
        domains: list[dict[str, object]] = []
        for name, enabled in runtime.nginx.list_sites():
            entry: dict[str, object] = {"domain": name, "enabled": enabled}
            if runtime.certificates.has_certificate(name):
                entry["certificate"] = runtime.certificates.inspect(name).to_dict()
            domains.append(entry)

        payload = {
            "service": {"name": runtime.systemd.service, "active": active},
            "validation": validation.to_dict(),
            "backups": {"count": len(snapshots), "latest": snapshots[0] if snapshots else None},
            "domains": domains,
        }
        if json_output:
            console.print_json(data=payload)
            op.success("Reported status (JSON).", changed=0, context=payload)
            return

        console.print(
            f"Service {runtime.systemd.service}: "
            + ("[green]active[/green]" if active else "[red]inactive[/red]")
        )
        console.print(
            "Configuration: "
            + ("[green]valid[/green]" if validation.valid else "[red]invalid[/red]")
        )
        if not validation.valid:
            console.print(validation.diagnostics, markup=False, highlight=False)
        latest = snapshots[0] if snapshots else "none"
        console.print(f"Backups: {len(snapshots)} (latest: {latest})")

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Domain", style="bold")
        table.add_column("Enabled")
        table.add_column("Certificate")
        table.add_column("Expires")
        for entry in domains:
            cert = entry.get("certificate")
            if isinstance(cert, dict):
                state = CertificateState(str(cert["state"]))
                style = "green" if state is CertificateState.VALID else "yellow"
                if state in {CertificateState.EXPIRED, CertificateState.UNREADABLE}:
                    style = "red"
                cert_cell = f"[{style}]{state.value}[/{style}]"
                expires = str(cert.get("not_valid_after") or "")
            else:
                cert_cell, expires = "-", ""
            enabled = "yes" if entry["enabled"] else "no"
            table.add_row(str(entry["domain"]), enabled, cert_cell, expires)
        console.print(table)
        op.success("Reported status.", changed=0, context=payload)


@app.command()
def test(ctx: typer.Context) -> None:
    """Run the nginx configuration test."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("test", target={"kind": "config"}) as op, _guard(op):
        result = runtime.validator.test()
        if result.diagnostics:
            console.print(result.diagnostics, markup=False, highlight=False)
        if not result.valid:
            _command_error(
                op,
                "nginx configuration test failed.",
                rc=int(ExitCode.VALIDATION),
                errors=[result.diagnostics or "nginx -t failed"],
            )
        console.print("[green]nginx configuration is valid.[/green]")
        op.success("Configuration valid.", changed=0)


@app.command()
def reload(ctx: typer.Context) -> None:
    """Reload the nginx service."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "reload",
        target={"kind": "service", "service": runtime.systemd.service},
    ) as op, _guard(op):
        runtime.systemd.reload()
        console.print(f"[green]Reloaded {runtime.systemd.service}.[/green]")
        op.success("Service reloaded.", changed=0)


@app.command()
def clean(
    ctx: typer.Context,
    dry_run: bool = typer.Option(
        False,
        "--dry-run",
        help="Report broken configurations without removing them.",
    ),
) -> None:
    """Remove site configurations that break the nginx configuration test."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "clean",
        args={"dry_run": dry_run},
        target={"kind": "domain", "scope": "broken"},
    ) as op, _guard(op):
        with runtime.locks.global_lock() as lock:
            op.set_lock_wait_ms(lock.wait_ms)
            purge = runtime.orchestrator.purge_broken(dry_run=dry_run, op=op)

        if not purge.detected:
            console.print("[green]No broken configurations found.[/green]")
            op.success("No broken configurations.", changed=0)
            return

        console.print(f"[yellow]Found {len(purge.detected)} broken configuration(s):[/yellow]")
        for domain in purge.detected:
            console.print(f"  - {domain}")
        if dry_run:
            console.print("[yellow]Dry run[/yellow]: no changes made.")
            op.success("Dry run complete.", changed=0, context={"detected": purge.detected})
            return

        for domain in purge.removed:
            console.print(f"[green]Removed {domain}.[/green]")
        if purge.warnings:
            for warning in purge.warnings:
                console.print(f"[yellow]Warning:[/yellow] {warning}")
            op.warning(
                "Cleanup completed with warnings.",
                warnings=purge.warnings,
                changed=len(purge.removed),
            )
            return
        op.success("Cleanup complete.", changed=len(purge.removed))


@app.command()
def restore(
    ctx: typer.Context,
    backup_id: str = typer.Argument(LATEST, help="Backup identifier, or 'latest'."),
) -> None:
    """Restore the site stores from a backup."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "restore",
        args={"backup_id": backup_id},
        target={"kind": "backup", "id": backup_id},
    ) as op, _guard(op):
        with runtime.locks.global_lock() as lock:
            op.set_lock_wait_ms(lock.wait_ms)
            restored = runtime.orchestrator.restore(backup_id, op=op)
        console.print(f"[green]Restored backup {restored}.[/green]")

        validation = runtime.validator.test()
        if not validation.valid:
            console.print(validation.diagnostics, markup=False, highlight=False)
            console.print("[yellow]Restored configuration does not validate.[/yellow]")
            op.warning(
                f"Restored backup {restored}; configuration invalid.",
                warnings=[validation.diagnostics],
                changed=1,
                backups=[restored],
            )
            return
        console.print("Run `vhostctl reload` to apply the restored configuration.")
        op.success(f"Restored backup {restored}.", changed=1, backups=[restored])


@app.command()
def backups(ctx: typer.Context) -> None:
    """List available backups, most recent first."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "backups",
        target={"kind": "backup", "scope": "all"},
    ) as op, _guard(op):
        snapshots = runtime.snapshots.list_snapshots()
        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("ID", style="bold")
        table.add_column("Path")
        if not snapshots:
            table.add_row("(none)", "")
        for identifier in snapshots:
            table.add_row(identifier, str(runtime.snapshots.root / identifier))
        console.print(table)
        op.success("Reported backups.", changed=0, context={"count": len(snapshots)})


@app.command()
def check(ctx: typer.Context) -> None:
    """Check that nginx, certbot and the site directories are present."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("check", target={"kind": "host"}) as op:
        results = run_checks(
            nginx=runtime.nginx,
            certbot=runtime.certbot,
            backup_root=runtime.snapshots.root,
        )
        table = Table("Check", "Status", "Details")
        for result in results:
            style = {
                ProbeStatus.GREEN: "green",
                ProbeStatus.YELLOW: "yellow",
                ProbeStatus.RED: "red",
            }[result.status]
            table.add_row(result.label, f"[{style}]{result.status.value}[/{style}]", result.message)
        console.print(table)

        code = exit_code_for(results)
        context = {"checks": [result.to_dict() for result in results]}
        if code is not ExitCode.OK:
            _command_error(
                op,
                "Some requirements are missing. Install nginx and certbot.",
                rc=int(code),
                context=context,
            )
        console.print("[green]All requirements met.[/green]")
        op.success("All requirements met.", changed=0, context=context)


__all__ = ["RuntimeContext", "app", "build_runtime"]
