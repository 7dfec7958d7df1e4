"""
Certificate Management Module.

Keeps a server certificate and its self-signed issuing CA valid:
validity checks, CA bootstrap, server certificate issuance and the
stores that persist the resulting PEM bundle.
"""

from certmgmt.bundle import CertificateBundle
from certmgmt.engine import issue_ca, issue_server_cert, update_bundle, validate
from certmgmt.errors import (
    CAIssuanceError,
    CertificateError,
    CertificateLoadError,
    KeyGenerationError,
    ServerCertIssuanceError,
    StoreError,
)
from certmgmt.policy import IssuancePolicy
from certmgmt.store import CertificateAccess, JsonFileCertificateAccess, MemoryCertificateAccess

__all__ = [
    "CertificateBundle", "IssuancePolicy",
    "validate", "issue_ca", "issue_server_cert", "update_bundle",
    "CertificateAccess", "MemoryCertificateAccess", "JsonFileCertificateAccess",
    "CertificateError", "KeyGenerationError", "CAIssuanceError",
    "ServerCertIssuanceError", "CertificateLoadError", "StoreError",
]
