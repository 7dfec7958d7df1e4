"""
TLS Certificate Sources.

Live-reloadable certificate accessors for TLS servers: one backed by a
certificate store and renewed by polling, one backed by files on disk and
reloaded on filesystem events.
"""

from certs.access import AccessSource
from certs.file import CertWatcher
from certs.source import (
    CertificateSource,
    ClientHello,
    LoadedCertificate,
    WatcherState,
    load_key_pair,
    server_context,
    sni_callback,
)

__all__ = [
    "AccessSource", "CertWatcher", "CertificateSource", "ClientHello",
    "LoadedCertificate", "WatcherState", "load_key_pair",
    "server_context", "sni_callback",
]
