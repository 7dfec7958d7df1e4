"""Handshake-side view of a managed certificate.

A :class:`CertificateSource` hands out the current :class:`LoadedCertificate`
for every TLS handshake. :func:`sni_callback` plugs any source into
:attr:`ssl.SSLContext.sni_callback`, so a listener picks up a replaced
certificate on the next connection without being restarted.
"""

import logging
import os
import ssl
import tempfile
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Optional, Protocol, runtime_checkable

from cryptography import x509
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization

from certmgmt.engine import public_key_matches
from certmgmt.errors import CertificateLoadError

logger = logging.getLogger(__name__)


class WatcherState(Enum):
    """Lifecycle of a certificate watcher."""

    UNINITIALIZED = "uninitialized"
    ACTIVE = "active"
    STOPPED = "stopped"


@dataclass(frozen=True)
class ClientHello:
    """Per-handshake metadata. Not used for certificate selection yet."""

    server_name: Optional[str] = None


@dataclass(frozen=True)
class LoadedCertificate:
    """A parsed key pair ready to be presented by a TLS server."""

    certificate: x509.Certificate
    chain: tuple[x509.Certificate, ...]
    private_key: object = field(repr=False)
    cert_pem: bytes = field(repr=False)
    key_pem: bytes = field(repr=False)
    context: ssl.SSLContext = field(repr=False, compare=False)

    @classmethod
    def from_pem(cls, cert_pem: Optional[bytes], key_pem: Optional[bytes]) -> "LoadedCertificate":
        """Parse and pair a PEM certificate chain with its private key.

        Raises:
            CertificateLoadError: either blob is empty or malformed, or the
                key does not belong to the first certificate.
        """
        if not cert_pem or not key_pem:
            raise CertificateLoadError("certificate or key is empty")
        try:
            chain = tuple(x509.load_pem_x509_certificates(cert_pem))
            private_key = serialization.load_pem_private_key(key_pem, password=None)
        except (ValueError, TypeError, UnsupportedAlgorithm) as exc:
            raise CertificateLoadError(f"cannot parse key pair: {exc}") from exc
        if not public_key_matches(chain[0], private_key):
            raise CertificateLoadError("private key does not match public key")

        context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
        context.minimum_version = ssl.TLSVersion.TLSv1_2
        load_into_context(context, cert_pem, key_pem)
        return cls(
            certificate=chain[0],
            chain=chain,
            private_key=private_key,
            cert_pem=cert_pem,
            key_pem=key_pem,
            context=context,
        )

    @property
    def not_before(self) -> datetime:
        return self.certificate.not_valid_before_utc

    @property
    def not_after(self) -> datetime:
        return self.certificate.not_valid_after_utc

    @property
    def dns_names(self) -> list[str]:
        try:
            san = self.certificate.extensions.get_extension_for_class(x509.SubjectAlternativeName)
        except x509.ExtensionNotFound:
            return []
        return san.value.get_values_for_type(x509.DNSName)

    def summary(self) -> dict:
        """Plain-data description for logs and status endpoints."""
        return {
            "subject": self.certificate.subject.rfc4514_string(),
            "issuer": self.certificate.issuer.rfc4514_string(),
            "serial_number": format(self.certificate.serial_number, "x"),
            "dns_names": self.dns_names,
            "not_before": self.not_before.isoformat(),
            "not_after": self.not_after.isoformat(),
        }


def load_into_context(context: ssl.SSLContext, cert_pem: bytes, key_pem: bytes) -> None:
    """Load PEM material into ``context``.

    :meth:`ssl.SSLContext.load_cert_chain` only reads files, so the PEM
    blobs pass through a private temporary directory.
    """
    with tempfile.TemporaryDirectory(prefix="certs-") as tmp:
        cert_path = Path(tmp) / "tls.crt"
        key_path = Path(tmp) / "tls.key"
        cert_path.write_bytes(cert_pem)
        fd = os.open(key_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        with os.fdopen(fd, "wb") as f:
            f.write(key_pem)
        try:
            context.load_cert_chain(str(cert_path), str(key_path))
        except ssl.SSLError as exc:
            raise CertificateLoadError(f"TLS layer rejected key pair: {exc}") from exc


def load_key_pair(cert_path: str | Path, key_path: str | Path) -> LoadedCertificate:
    """Read a certificate and key from disk and pair them.

    Raises:
        CertificateLoadError: a file is unreadable or the pair is invalid.
    """
    try:
        cert_pem = Path(cert_path).read_bytes()
        key_pem = Path(key_path).read_bytes()
    except OSError as exc:
        raise CertificateLoadError(f"cannot read key pair: {exc}") from exc
    return LoadedCertificate.from_pem(cert_pem, key_pem)


@runtime_checkable
class CertificateSource(Protocol):
    """Anything that can supply the certificate for a TLS handshake."""

    def get_certificate(self, client_hello: Optional[ClientHello] = None) -> Optional[LoadedCertificate]:
        """Return the current certificate, or ``None`` if none has loaded."""


def sni_callback(source: CertificateSource):
    """Build an :attr:`ssl.SSLContext.sni_callback` backed by ``source``.

    The callback moves each handshake onto the context of the certificate
    that is current at that moment.
    """

    def callback(ssl_object, server_name, _context):
        loaded = source.get_certificate(ClientHello(server_name=server_name))
        if loaded is None:
            logger.warning("No certificate available for handshake (server_name=%s)", server_name)
            return ssl.ALERT_DESCRIPTION_INTERNAL_ERROR
        ssl_object.context = loaded.context
        return None

    return callback


def server_context(source: CertificateSource) -> ssl.SSLContext:
    """Server-side :class:`ssl.SSLContext` that serves ``source``'s certificate."""
    context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    context.minimum_version = ssl.TLSVersion.TLSv1_2
    current = source.get_certificate()
    if current is not None:
        load_into_context(context, current.cert_pem, current.key_pem)
    context.sni_callback = sni_callback(source)
    return context
