"""Configuration loader for vhostctl.

This module centralises the logic for reading configuration values from
multiple sources:

1. Built-in defaults.
2. ``/etc/vhostctl/config.yml`` (or an override path).
3. Environment variables prefixed with ``VHOSTCTL_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export VHOSTCTL_NGINX__SITES_AVAILABLE=/srv/nginx/sites-available
    export VHOSTCTL_BACKUPS__ROOT=/srv/backups/vhostctl

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses`` for convenient access and type safety.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import cast

try:  # PyYAML is a runtime dependency (declared in pyproject.toml).
    import yaml
except Exception as exc:  # pragma: no cover - import failure covered in tests
    raise RuntimeError(
        "PyYAML is required to load vhostctl configuration. Install with "
        "`pip install vhostctl` or ensure PyYAML>=6.0 is available."
    ) from exc


ENV_PREFIX = "VHOSTCTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class NginxConfig:
    """Locations and binaries used to manage nginx."""

    bin: str = "nginx"
    sites_available: Path = Path("/etc/nginx/sites-available")
    sites_enabled: Path = Path("/etc/nginx/sites-enabled")
    main_config: Path = Path("/etc/nginx/nginx.conf")
    service: str = "nginx"
    modules_dir: Path = Path("/usr/share/nginx/modules")
    module_search_paths: tuple[Path, ...] = (
        Path("/usr/share/nginx/modules"),
        Path("/usr/lib/nginx/modules"),
    )

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "bin": self.bin,
            "sites_available": str(self.sites_available),
            "sites_enabled": str(self.sites_enabled),
            "main_config": str(self.main_config),
            "service": self.service,
            "modules_dir": str(self.modules_dir),
            "module_search_paths": [str(path) for path in self.module_search_paths],
        }


@dataclass(frozen=True)
class WebConfig:
    """Static web assets served by the default site and error pages."""

    root: Path = Path("/var/www/html")

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"root": str(self.root)}


@dataclass(frozen=True)
class BackupConfig:
    """Snapshot storage location."""

    root: Path = Path("/var/backups/vhostctl")

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"root": str(self.root)}


@dataclass(frozen=True)
class CertbotConfig:
    """Certificate client settings."""

    bin: str = "certbot"
    live_dir: Path = Path("/etc/letsencrypt/live")
    plugin_package: str = "python3-certbot-nginx"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "bin": self.bin,
            "live_dir": str(self.live_dir),
            "plugin_package": self.plugin_package,
        }


@dataclass(frozen=True)
class PackagesConfig:
    """Package manager binaries."""

    apt_bin: str = "apt-get"
    dpkg_bin: str = "dpkg"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"apt_bin": self.apt_bin, "dpkg_bin": self.dpkg_bin}


@dataclass(frozen=True)
class ModulesConfig:
    """Settings for building the headers-more dynamic module."""

    build_dir: Path = Path("/usr/local/src/vhostctl-build")
    nginx_source_url: str = "https://nginx.org/download"
    headers_more_repo: str = "https://github.com/openresty/headers-more-nginx-module.git"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "build_dir": str(self.build_dir),
            "nginx_source_url": self.nginx_source_url,
            "headers_more_repo": self.headers_more_repo,
        }


@dataclass(frozen=True)
class SystemdConfig:
    """Systemd integration configuration values."""

    systemctl_bin: str = "systemctl"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"systemctl_bin": self.systemctl_bin}


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for vhostctl."""

    config_file: Path
    logs_dir: Path
    runtime_dir: Path
    templates_dir: Path
    lock_timeout: float
    nginx: NginxConfig
    web: WebConfig
    backups: BackupConfig
    certbot: CertbotConfig
    packages: PackagesConfig
    modules: ModulesConfig
    systemd: SystemdConfig

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "logs_dir": str(self.logs_dir),
            "runtime_dir": str(self.runtime_dir),
            "templates_dir": str(self.templates_dir),
            "lock_timeout": self.lock_timeout,
            "nginx": self.nginx.to_dict(),
            "web": self.web.to_dict(),
            "backups": self.backups.to_dict(),
            "certbot": self.certbot.to_dict(),
            "packages": self.packages.to_dict(),
            "modules": self.modules.to_dict(),
            "systemd": self.systemd.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/vhostctl/config.yml",
    "logs_dir": "/var/log/vhostctl",
    "runtime_dir": "/run/vhostctl",
    "templates_dir": "/etc/vhostctl/templates",
    "lock_timeout": 30.0,
    "nginx": {
        "bin": "nginx",
        "sites_available": "/etc/nginx/sites-available",
        "sites_enabled": "/etc/nginx/sites-enabled",
        "main_config": "/etc/nginx/nginx.conf",
        "service": "nginx",
        "modules_dir": "/usr/share/nginx/modules",
        "module_search_paths": ["/usr/share/nginx/modules", "/usr/lib/nginx/modules"],
    },
    "web": {
        "root": "/var/www/html",
    },
    "backups": {
        "root": "/var/backups/vhostctl",
    },
    "certbot": {
        "bin": "certbot",
        "live_dir": "/etc/letsencrypt/live",
        "plugin_package": "python3-certbot-nginx",
    },
    "packages": {
        "apt_bin": "apt-get",
        "dpkg_bin": "dpkg",
    },
    "modules": {
        "build_dir": "/usr/local/src/vhostctl-build",
        "nginx_source_url": "https://nginx.org/download",
        "headers_more_repo": "https://github.com/openresty/headers-more-nginx-module.git",
    },
    "systemd": {
        "systemctl_bin": "systemctl",
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
ALLOWED_SECTION_KEYS: dict[str, set[str]] = {
    key: set(cast(Mapping[str, object], value).keys())
    for key, value in DEFAULTS.items()
    if isinstance(value, Mapping)
}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_default = _expect_str(merged["config_file"], "config_file")
    config_path = _determine_config_path(config_default, config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_app_config(merged)


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override)
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR])
    return Path(default_path)


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    lock_timeout = raw.get("lock_timeout")
    if lock_timeout is not None:
        _expect_positive_float(lock_timeout, "lock_timeout", default=30.0)

    for section, allowed in ALLOWED_SECTION_KEYS.items():
        value = raw.get(section)
        if value is None:
            continue
        mapping = _as_dict(value, section)
        unknown = set(mapping.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")

    nginx_map = _as_dict(raw.get("nginx"), "nginx")
    search_paths = nginx_map.get("module_search_paths")
    if search_paths is not None:
        for index, entry in enumerate(_as_sequence(search_paths, "nginx.module_search_paths")):
            if not isinstance(entry, (str, Path)):
                raise ConfigError(
                    f"nginx.module_search_paths[{index}] must be a path string."
                )


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    config_file = _to_path(raw.get("config_file"))
    logs_dir = _to_path(raw.get("logs_dir"))
    runtime_dir = _to_path(raw.get("runtime_dir"))
    templates_dir = _to_path(raw.get("templates_dir"))
    lock_timeout = _expect_positive_float(raw.get("lock_timeout"), "lock_timeout", default=30.0)

    nginx_mapping = _as_dict(raw.get("nginx"), "nginx")
    default_nginx = NginxConfig()
    raw_search_paths = nginx_mapping.get("module_search_paths")
    if raw_search_paths is None:
        search_paths = default_nginx.module_search_paths
    else:
        search_paths = tuple(
            _to_path(entry)
            for entry in _as_sequence(raw_search_paths, "nginx.module_search_paths")
        )
    nginx = NginxConfig(
        bin=_expect_non_empty(nginx_mapping.get("bin", default_nginx.bin), "nginx.bin"),
        sites_available=_to_path(
            nginx_mapping.get("sites_available", default_nginx.sites_available)
        ),
        sites_enabled=_to_path(nginx_mapping.get("sites_enabled", default_nginx.sites_enabled)),
        main_config=_to_path(nginx_mapping.get("main_config", default_nginx.main_config)),
        service=_expect_non_empty(
            nginx_mapping.get("service", default_nginx.service), "nginx.service"
        ),
        modules_dir=_to_path(nginx_mapping.get("modules_dir", default_nginx.modules_dir)),
        module_search_paths=search_paths,
    )

    web_mapping = _as_dict(raw.get("web"), "web")
    web = WebConfig(root=_to_path(web_mapping.get("root", WebConfig.root)))

    backups_mapping = _as_dict(raw.get("backups"), "backups")
    backups = BackupConfig(root=_to_path(backups_mapping.get("root", BackupConfig.root)))

    certbot_mapping = _as_dict(raw.get("certbot"), "certbot")
    default_certbot = CertbotConfig()
    certbot = CertbotConfig(
        bin=_expect_non_empty(certbot_mapping.get("bin", default_certbot.bin), "certbot.bin"),
        live_dir=_to_path(certbot_mapping.get("live_dir", default_certbot.live_dir)),
        plugin_package=_expect_non_empty(
            certbot_mapping.get("plugin_package", default_certbot.plugin_package),
            "certbot.plugin_package",
        ),
    )

    packages_mapping = _as_dict(raw.get("packages"), "packages")
    default_packages = PackagesConfig()
    packages = PackagesConfig(
        apt_bin=_expect_non_empty(
            packages_mapping.get("apt_bin", default_packages.apt_bin), "packages.apt_bin"
        ),
        dpkg_bin=_expect_non_empty(
            packages_mapping.get("dpkg_bin", default_packages.dpkg_bin), "packages.dpkg_bin"
        ),
    )

    modules_mapping = _as_dict(raw.get("modules"), "modules")
    default_modules = ModulesConfig()
    modules = ModulesConfig(
        build_dir=_to_path(modules_mapping.get("build_dir", default_modules.build_dir)),
        nginx_source_url=_expect_non_empty(
            modules_mapping.get("nginx_source_url", default_modules.nginx_source_url),
            "modules.nginx_source_url",
        ).rstrip("/"),
        headers_more_repo=_expect_non_empty(
            modules_mapping.get("headers_more_repo", default_modules.headers_more_repo),
            "modules.headers_more_repo",
        ),
    )

    systemd_mapping = _as_dict(raw.get("systemd"), "systemd")
    systemd = SystemdConfig(
        systemctl_bin=_expect_non_empty(
            systemd_mapping.get("systemctl_bin", "systemctl"), "systemd.systemctl_bin"
        ),
    )

    return AppConfig(
        config_file=config_file,
        logs_dir=logs_dir,
        runtime_dir=runtime_dir,
        templates_dir=templates_dir,
        lock_timeout=lock_timeout,
        nginx=nginx,
        web=web,
        backups=backups,
        certbot=certbot,
        packages=packages,
        modules=modules,
        systemd=systemd,
    )


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        elif isinstance(value, list):
            result[key] = list(value)
        else:
            result[key] = value
    return result


def _as_sequence(value: object, label: str) -> Sequence[object]:
    if isinstance(value, (str, bytes)):
        raise ConfigError(f"Expected {label} to be a sequence. Got {type(value).__name__}.")
    if not isinstance(value, Sequence):
        raise ConfigError(f"Expected {label} to be a sequence. Got {type(value).__name__}.")
    return value


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


def _expect_non_empty(value: object, key: str) -> str:
    text = _expect_str(value, key).strip()
    if not text:
        raise ConfigError(f"{key} must be a non-empty string.")
    return text


def _expect_positive_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        numeric = float(value)
    elif isinstance(value, str):
        try:
            numeric = float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    else:
        raise ConfigError(
            f"Expected {label} to be numeric. Got {type(value).__name__}."
        )
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "AppConfig",
    "BackupConfig",
    "CertbotConfig",
    "ConfigError",
    "ModulesConfig",
    "NginxConfig",
    "PackagesConfig",
    "SystemdConfig",
    "WebConfig",
    "load_config",
]
