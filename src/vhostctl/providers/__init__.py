"""Providers wrapping the external processes and files vhostctl manages."""
from __future__ import annotations

from .certbot import CertbotProvider
from .modules import HeadersMoreInstaller
from .nginx import NginxProvider
from .packages import PackageManager
from .systemd import SystemdProvider

__all__ = [
    "CertbotProvider",
    "HeadersMoreInstaller",
    "NginxProvider",
    "PackageManager",
    "SystemdProvider",
]
