"""Snapshots of the nginx site stores used for rollback."""
from __future__ import annotations

import json
import logging
import os
import shutil
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from .errors import FilesystemError, SnapshotError

LOGGER = logging.getLogger(__name__)

SNAPSHOT_PREFIX = "backup_"
TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S"
MANIFEST_NAME = "manifest.json"
AVAILABLE_DIR = "available"
ENABLED_DIR = "enabled"
LATEST = "latest"


@dataclass(frozen=True, slots=True)
class Snapshot:
    """A snapshot directory under the backup root."""

    id: str
    path: Path

    @property
    def available(self) -> Path:
        """Return the copy of the available store."""
        return self.path / AVAILABLE_DIR

    @property
    def enabled(self) -> Path:
        """Return the copy of the enabled store."""
        return self.path / ENABLED_DIR


@dataclass(slots=True)
class SnapshotManager:
    """Create, list and restore snapshots of sites-available/sites-enabled."""

    root: Path
    sites_available: Path
    sites_enabled: Path
    clock: Callable[[], datetime] = datetime.now

    def __post_init__(self) -> None:
        """Normalise paths after initialisation."""
        self.root = self.root.expanduser()
        self.sites_available = self.sites_available.expanduser()
        self.sites_enabled = self.sites_enabled.expanduser()

    def ensure_root(self) -> None:
        """Ensure the backup root directory exists with safe permissions."""
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            os.chmod(self.root, 0o750)
        except OSError as exc:
            raise FilesystemError(
                f"Failed to prepare backup root {self.root}: {exc}",
                path=self.root,
                operation="mkdir",
            ) from exc

    def generate_identifier(self) -> str:
        """Return an unused, chronologically sortable snapshot identifier."""
        base = f"{SNAPSHOT_PREFIX}{self.clock().strftime(TIMESTAMP_FORMAT)}"
        candidate = base
        counter = 0
        while (self.root / candidate).exists():
            counter += 1
            candidate = f"{base}_{counter}"
        return candidate

    def create_snapshot(self) -> Snapshot:
        """Copy both stores into a fresh snapshot directory.

        Must run before any destructive edit: failures raise
        :class:`FilesystemError` and leave whatever was copied in place.
        """
        self.ensure_root()
        identifier = self.generate_identifier()
        snapshot = Snapshot(id=identifier, path=self.root / identifier)
        try:
            snapshot.path.mkdir(parents=True)
        except OSError as exc:
            raise FilesystemError(
                f"Failed to create snapshot directory {snapshot.path}: {exc}",
                path=snapshot.path,
                operation="mkdir",
            ) from exc

        copy_regular_files(self.sites_available, snapshot.available, follow_symlinks=False)
        copy_regular_files(self.sites_enabled, snapshot.enabled, follow_symlinks=True)
        self._write_manifest(snapshot)
        LOGGER.debug("Created snapshot %s", snapshot.path)
        return snapshot

    def list_snapshots(self) -> list[str]:
        """Return snapshot identifiers, most recent first."""
        if not self.root.exists():
            return []
        try:
            names = [entry.name for entry in self.root.iterdir() if entry.is_dir()]
        except OSError as exc:
            raise FilesystemError(
                f"Failed to read backup root {self.root}: {exc}",
                path=self.root,
                operation="list",
            ) from exc
        return sorted(names, key=_sort_key, reverse=True)

    def latest(self) -> str | None:
        """Return the most recent snapshot identifier, if any."""
        snapshots = self.list_snapshots()
        return snapshots[0] if snapshots else None

    def resolve(self, identifier: str = LATEST) -> Snapshot:
        """Return the snapshot for *identifier* (or the latest one)."""
        if identifier == LATEST:
            latest = self.latest()
            if latest is None:
                raise SnapshotError("No backups available.", identifier=identifier, path=self.root)
            identifier = latest
        path = self.root / identifier
        if not path.is_dir():
            raise SnapshotError(f"Backup not found: {path}", identifier=identifier, path=path)
        return Snapshot(id=identifier, path=path)

    def restore_snapshot(self, identifier: str = LATEST) -> Snapshot:
        """Overwrite both stores with the content of a snapshot.

        Every entry of the enabled store is removed first; the available store
        is overwritten file by file (documents created after the snapshot are
        left in place but are no longer enabled).
        """
        snapshot = self.resolve(identifier)
        links = self._read_manifest(snapshot)

        try:
            self.sites_enabled.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise FilesystemError(
                f"Failed to create directory {self.sites_enabled}: {exc}",
                path=self.sites_enabled,
                operation="mkdir",
            ) from exc
        for entry in _list_entries(self.sites_enabled):
            if entry.is_symlink() or entry.is_file():
                _unlink(entry)

        copy_regular_files(snapshot.available, self.sites_available, follow_symlinks=False)

        for source in _list_entries(snapshot.enabled):
            if not source.is_file():
                continue
            destination = self.sites_enabled / source.name
            target = links.get(source.name)
            if target is not None:
                _symlink(destination, Path(target))
            else:
                _copy_file(source, destination)
        LOGGER.debug("Restored snapshot %s", snapshot.path)
        return snapshot

    # ------------------------------------------------------------------
    def _write_manifest(self, snapshot: Snapshot) -> None:
        links: dict[str, str] = {}
        for entry in _list_entries(self.sites_enabled):
            if entry.is_symlink() and entry.is_file():
                links[entry.name] = os.readlink(entry)
        payload = {
            "id": snapshot.id,
            "created_at": self.clock().isoformat(timespec="seconds"),
            "sites_available": str(self.sites_available),
            "sites_enabled": str(self.sites_enabled),
            "enabled_links": links,
        }
        path = snapshot.path / MANIFEST_NAME
        try:
            path.write_text(json.dumps(payload, indent=2) + "\n", encoding="utf-8")
        except OSError as exc:
            raise FilesystemError(
                f"Failed to write snapshot manifest {path}: {exc}",
                path=path,
                operation="write",
            ) from exc

    def _read_manifest(self, snapshot: Snapshot) -> dict[str, str]:
        path = snapshot.path / MANIFEST_NAME
        if not path.exists():
            return {}
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise SnapshotError(
                f"Snapshot manifest unreadable ({path}): {exc}",
                identifier=snapshot.id,
                path=path,
            ) from exc
        links = data.get("enabled_links") if isinstance(data, dict) else None
        if not isinstance(links, dict):
            return {}
        return {str(name): str(target) for name, target in links.items()}


def copy_regular_files(source: Path, destination: Path, *, follow_symlinks: bool) -> None:
    """Copy regular files (not directories) from *source* into *destination*.

    With ``follow_symlinks=False`` symbolic links are skipped; otherwise links
    to regular files are copied by content. A missing *source* yields an empty
    *destination*.
    """
    try:
        destination.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise FilesystemError(
            f"Failed to create directory {destination}: {exc}",
            path=destination,
            operation="mkdir",
        ) from exc
    if not source.exists():
        return
    for entry in _list_entries(source):
        if entry.is_symlink() and not follow_symlinks:
            continue
        if entry.is_file():
            _copy_file(entry, destination / entry.name)


def _sort_key(name: str) -> tuple[str, int]:
    # backup_YYYYMMDD_HHMMSS_<n> sorts after backup_YYYYMMDD_HHMMSS
    base, _, suffix = name.rpartition("_")
    if base.startswith(SNAPSHOT_PREFIX) and suffix.isdigit() and len(suffix) < 6:
        return (base, int(suffix))
    return (name, 0)


def _list_entries(directory: Path) -> list[Path]:
    try:
        return sorted(directory.iterdir())
    except FileNotFoundError:
        return []
    except OSError as exc:
        raise FilesystemError(
            f"Failed to read directory {directory}: {exc}",
            path=directory,
            operation="list",
        ) from exc


def _copy_file(source: Path, destination: Path) -> None:
    try:
        if destination.is_symlink():
            destination.unlink()
        shutil.copy2(source, destination)
    except OSError as exc:
        raise FilesystemError(
            f"Failed to copy {source} to {destination}: {exc}",
            path=source,
            operation="copy",
        ) from exc


def _unlink(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        return
    except OSError as exc:
        raise FilesystemError(
            f"Failed to remove {path}: {exc}",
            path=path,
            operation="unlink",
        ) from exc


def _symlink(link: Path, target: Path) -> None:
    try:
        link.symlink_to(target)
    except OSError as exc:
        raise FilesystemError(
            f"Failed to link {link} -> {target}: {exc}",
            path=link,
            operation="symlink",
        ) from exc


__all__ = [
    "LATEST",
    "Snapshot",
    "SnapshotManager",
    "copy_regular_files",
]
