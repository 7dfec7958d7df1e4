"""Exceptions raised by certificate management."""


class CertificateError(Exception):
    """Base class for certificate management failures."""


class KeyGenerationError(CertificateError):
    """Raised when a fresh RSA key pair cannot be generated."""


class CAIssuanceError(CertificateError):
    """Raised when the self-signed CA certificate cannot be created."""


class ServerCertIssuanceError(CertificateError):
    """Raised when the CA-signed server certificate cannot be created."""


class CertificateLoadError(CertificateError):
    """Raised when PEM material cannot be turned into a usable key pair."""


class StoreError(CertificateError):
    """Raised by a certificate store that cannot read or write its bundle."""
