"""Certificate engine: validity checks, CA bootstrap and server certificate issuance.

Everything here is synchronous and free of I/O apart from reading the clock
and the system random source. Callers decide when to run it and where to
persist the resulting :class:`~certmgmt.bundle.CertificateBundle`.
"""

import ipaddress
import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional, Sequence

from cryptography import x509
from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from certmgmt.bundle import CertificateBundle
from certmgmt.errors import CAIssuanceError, KeyGenerationError, ServerCertIssuanceError
from certmgmt.policy import IssuancePolicy

logger = logging.getLogger(__name__)

CA_COMMON_NAME_PREFIX = "webhook-certmgmt-ca:"
CA_VALIDITY = timedelta(days=3650)
# A CA is only reused when it stays valid for at least this long.
CA_RENEW_BEFORE = timedelta(days=5)
RSA_KEY_SIZE = 2048
RSA_PUBLIC_EXPONENT = 65537
MAX_SERIAL_NUMBER = 2**63 - 1

_PARSE_ERRORS = (ValueError, TypeError, UnsupportedAlgorithm)


# ------------------------------------------------------------
# Key and PEM helpers
# ------------------------------------------------------------

def new_private_key() -> rsa.RSAPrivateKey:
    """Generate a fresh RSA private key.

    Raises:
        KeyGenerationError: if the key cannot be generated.
    """
    try:
        return rsa.generate_private_key(
            public_exponent=RSA_PUBLIC_EXPONENT,
            key_size=RSA_KEY_SIZE,
        )
    except Exception as exc:
        raise KeyGenerationError(f"failed to generate RSA key: {exc}") from exc


def new_serial_number() -> int:
    """Random positive serial number that fits in 63 bits."""
    return secrets.randbelow(MAX_SERIAL_NUMBER) + 1


def encode_private_key_pem(key: rsa.RSAPrivateKey) -> bytes:
    """PEM-encode a key with the ``RSA PRIVATE KEY`` block label."""
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    )


def encode_cert_pem(cert: x509.Certificate) -> bytes:
    return cert.public_bytes(serialization.Encoding.PEM)


def public_key_matches(cert: x509.Certificate, key) -> bool:
    """True when ``key`` is the private half of the certificate's public key."""
    spki = serialization.PublicFormat.SubjectPublicKeyInfo
    der = serialization.Encoding.DER
    return (
        cert.public_key().public_bytes(der, spki)
        == key.public_key().public_bytes(der, spki)
    )


# ------------------------------------------------------------
# Validity
# ------------------------------------------------------------

def validate(
    bundle: Optional[CertificateBundle],
    dns_name: str,
    lookahead: timedelta,
    now: Optional[datetime] = None,
    log: Optional[logging.Logger] = None,
) -> bool:
    """Decide whether a bundle's server certificate is still usable.

    The certificate is verified as if the clock already read
    ``now + lookahead``, so a certificate expiring inside the lookahead
    window is reported as not valid.

    Args:
        bundle: Bundle to check; ``None`` is never valid.
        dns_name: Name the server certificate must be valid for.
        lookahead: Renewal lookahead added to the current time.
        now: Reference time, defaults to the current UTC time.
        log: Logger receiving the reason for a negative result.

    Returns:
        True if the key matches the certificate and the certificate chains
        to the bundle's CA at the shifted time.
    """
    log = log or logger
    if bundle is None or not bundle.cert or not bundle.key:
        log.debug("certificate or key not set")
        return False
    if not bundle.ca_cert:
        log.debug("CA certificate not set")
        return False
    return valid(bundle.key, bundle.cert, bundle.ca_cert, dns_name, lookahead, now=now, log=log)


def valid(
    key: Optional[bytes],
    cert: Optional[bytes],
    ca_cert: Optional[bytes],
    dns_name: str,
    lookahead: timedelta,
    now: Optional[datetime] = None,
    log: Optional[logging.Logger] = None,
) -> bool:
    """Blob-level validity check shared by :func:`validate` and the CA self-check.

    An empty ``dns_name`` skips the host name check. A naive ``now`` is
    taken to be UTC. Never raises.
    """
    log = log or logger
    if not cert or not key or not ca_cert:
        log.debug("certificate, key or CA certificate is empty")
        return False

    try:
        private_key = serialization.load_pem_private_key(key, password=None)
        leaf = x509.load_pem_x509_certificates(cert)[0]
    except _PARSE_ERRORS as exc:
        log.debug("cannot parse certificate or key: %s", exc)
        return False
    if not public_key_matches(leaf, private_key):
        log.debug("key does not match certificate")
        return False

    try:
        pool = x509.load_pem_x509_certificates(ca_cert)
    except _PARSE_ERRORS as exc:
        log.debug("cannot build CA pool: %s", exc)
        return False

    if now is None:
        now = datetime.now(timezone.utc)
    elif now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    at = now + lookahead
    problem = _verify(leaf, pool, dns_name, at)
    if problem:
        log.debug("certificate %s not valid at %s: %s", leaf.subject.rfc4514_string(), at.isoformat(), problem)
        return False
    return True


def _verify(leaf: x509.Certificate, pool: Sequence[x509.Certificate], dns_name: str, at: datetime) -> Optional[str]:
    """Return the reason ``leaf`` is not trusted at ``at``, or None."""
    if not _within_validity(leaf, at):
        return "certificate has expired or is not yet valid"
    if dns_name and not _matches_name(leaf, dns_name):
        return f"certificate is not valid for {dns_name}"
    if not _allows_server_auth(leaf):
        return "certificate does not permit server authentication"

    for root in pool:
        if root == leaf:
            return None
        if not _is_ca(root) or not _within_validity(root, at):
            continue
        try:
            leaf.verify_directly_issued_by(root)
        except (ValueError, TypeError, InvalidSignature):
            continue
        return None
    return "certificate signed by unknown authority"


def _within_validity(cert: x509.Certificate, at: datetime) -> bool:
    return cert.not_valid_before_utc <= at <= cert.not_valid_after_utc


def _is_ca(cert: x509.Certificate) -> bool:
    try:
        return cert.extensions.get_extension_for_class(x509.BasicConstraints).value.ca
    except x509.ExtensionNotFound:
        return False


def _allows_server_auth(cert: x509.Certificate) -> bool:
    try:
        usages = cert.extensions.get_extension_for_class(x509.ExtendedKeyUsage).value
    except x509.ExtensionNotFound:
        return True
    return (
        ExtendedKeyUsageOID.SERVER_AUTH in usages
        or ExtendedKeyUsageOID.ANY_EXTENDED_KEY_USAGE in usages
    )


def _matches_name(cert: x509.Certificate, name: str) -> bool:
    """Match a host name or IP literal against the certificate's SANs."""
    try:
        san = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName).value
    except x509.ExtensionNotFound:
        return False

    try:
        ip = ipaddress.ip_address(name)
    except ValueError:
        ip = None
    if ip is not None:
        return ip in san.get_values_for_type(x509.IPAddress)

    host = name.lower().rstrip(".")
    for pattern in san.get_values_for_type(x509.DNSName):
        pattern = pattern.lower().rstrip(".")
        if pattern == host:
            return True
        # Wildcards cover exactly one leftmost label.
        if pattern.startswith("*.") and "." in host and host.split(".", 1)[1] == pattern[2:]:
            return True
    return False


# ------------------------------------------------------------
# Issuance
# ------------------------------------------------------------

def _new_ca(common_name: str) -> tuple[rsa.RSAPrivateKey, x509.Certificate]:
    ca_key = new_private_key()
    now = datetime.now(timezone.utc)
    try:
        name = x509.Name([
            x509.NameAttribute(NameOID.COMMON_NAME, CA_COMMON_NAME_PREFIX + common_name),
        ])
        ca_cert = (
            x509.CertificateBuilder()
            .subject_name(name)
            .issuer_name(name)
            .public_key(ca_key.public_key())
            .serial_number(new_serial_number())
            .not_valid_before(now)
            .not_valid_after(now + CA_VALIDITY)
            .add_extension(
                x509.BasicConstraints(ca=True, path_length=None),
                critical=True,
            )
            .add_extension(
                x509.KeyUsage(
                    digital_signature=True,
                    content_commitment=False,
                    key_encipherment=True,
                    data_encipherment=False,
                    key_agreement=False,
                    key_cert_sign=True,
                    crl_sign=False,
                    encipher_only=False,
                    decipher_only=False,
                ),
                critical=True,
            )
            .add_extension(
                x509.SubjectKeyIdentifier.from_public_key(ca_key.public_key()),
                critical=False,
            )
            .sign(ca_key, hashes.SHA256())
        )
    except (ValueError, TypeError) as exc:
        raise CAIssuanceError(f"failed to create the CA certificate: {exc}") from exc
    return ca_key, ca_cert


def issue_ca(common_name: str) -> tuple[bytes, bytes]:
    """Create a self-signed CA for ``common_name``.

    The CA subject is ``webhook-certmgmt-ca:<common_name>``.

    Returns:
        ``(ca_key_pem, ca_cert_pem)``

    Raises:
        KeyGenerationError: the CA key could not be generated.
        CAIssuanceError: the certificate could not be built or signed.
    """
    ca_key, ca_cert = _new_ca(common_name)
    return encode_private_key_pem(ca_key), encode_cert_pem(ca_cert)


def issue_server_cert(
    policy: IssuancePolicy,
    ca_key: rsa.RSAPrivateKey,
    ca_cert: x509.Certificate,
    usages: Sequence[x509.ObjectIdentifier] = (ExtendedKeyUsageOID.SERVER_AUTH,),
) -> tuple[bytes, bytes]:
    """Create a fresh key and a server certificate signed by the given CA.

    The certificate starts at the CA's own ``NotBefore`` so it is never
    issued before its issuer, and ends ``policy.validity`` from now.

    Returns:
        ``(key_pem, cert_pem)``

    Raises:
        KeyGenerationError: the server key could not be generated.
        ServerCertIssuanceError: missing common name or usages, or signing failed.
    """
    if not policy.common_name:
        raise ServerCertIssuanceError("must specify a common name")
    if not usages:
        raise ServerCertIssuanceError("must specify at least one extended key usage")

    key = new_private_key()
    try:
        cert = _new_signed_cert(policy, key, ca_key, ca_cert, usages)
    except (ValueError, TypeError) as exc:
        raise ServerCertIssuanceError(f"failed to create the server certificate: {exc}") from exc
    return encode_private_key_pem(key), encode_cert_pem(cert)


def _new_signed_cert(policy, key, ca_key, ca_cert, usages) -> x509.Certificate:
    attributes = [x509.NameAttribute(NameOID.COMMON_NAME, policy.common_name)]
    attributes.extend(
        x509.NameAttribute(NameOID.ORGANIZATION_NAME, org) for org in policy.organization
    )
    alt_names: list[x509.GeneralName] = [x509.DNSName(name) for name in policy.dns_names]
    alt_names.extend(x509.IPAddress(ipaddress.ip_address(ip)) for ip in policy.ip_addresses)

    builder = (
        x509.CertificateBuilder()
        .subject_name(x509.Name(attributes))
        .issuer_name(ca_cert.subject)
        .public_key(key.public_key())
        .serial_number(new_serial_number())
        .not_valid_before(ca_cert.not_valid_before_utc)
        .not_valid_after(datetime.now(timezone.utc) + policy.validity)
        .add_extension(x509.SubjectAlternativeName(alt_names), critical=False)
        .add_extension(
            x509.KeyUsage(
                digital_signature=True,
                content_commitment=False,
                key_encipherment=True,
                data_encipherment=False,
                key_agreement=False,
                key_cert_sign=False,
                crl_sign=False,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=True,
        )
        .add_extension(x509.ExtendedKeyUsage(list(usages)), critical=False)
        .add_extension(
            x509.AuthorityKeyIdentifier.from_issuer_public_key(ca_cert.public_key()),
            critical=False,
        )
    )
    return builder.sign(ca_key, hashes.SHA256())


# ------------------------------------------------------------
# Orchestration
# ------------------------------------------------------------

def update_bundle(
    old: Optional[CertificateBundle],
    policy: IssuancePolicy,
    log: Optional[logging.Logger] = None,
) -> tuple[Optional[CertificateBundle], bool]:
    """Return a bundle that is valid for ``policy``, issuing what is missing.

    A still-valid bundle is returned as is with ``changed`` False. Otherwise
    a new server certificate is issued, reusing the bundle's CA when that CA
    is itself valid for at least another five days and a new CA otherwise.

    Returns:
        ``(bundle, changed)``

    Raises:
        KeyGenerationError, CAIssuanceError, ServerCertIssuanceError:
            the stage that failed.
    """
    log = log or logger
    working = old if old is not None else CertificateBundle()

    if validate(working, policy.primary_dns_name, policy.rest, log=log):
        return old, False

    log.info("certificate for %s is missing or due for renewal", policy.primary_dns_name)
    ca = _reusable_ca(working, log)
    if ca is None:
        log.info("generating CA certificate for %s", policy.common_name)
        ca_key, ca_cert = _new_ca(policy.common_name)
        working = working.replace(
            ca_key=encode_private_key_pem(ca_key),
            ca_cert=encode_cert_pem(ca_cert),
        )
    else:
        ca_key, ca_cert = ca
        log.debug("reusing CA certificate %s", ca_cert.subject.rfc4514_string())

    log.info("generating server certificate for %s", policy.common_name)
    key_pem, cert_pem = issue_server_cert(policy, ca_key, ca_cert)
    return working.replace(key=key_pem, cert=cert_pem), True


def _reusable_ca(bundle: CertificateBundle, log: logging.Logger):
    """Parsed ``(key, cert)`` of the bundle's CA if it can sign renewals."""
    if not bundle.ca_cert:
        return None
    if not valid(bundle.ca_key, bundle.ca_cert, bundle.ca_cert, "", CA_RENEW_BEFORE, log=log):
        log.info("CA certificate is missing a matching key or expires soon")
        return None
    try:
        ca_key = serialization.load_pem_private_key(bundle.ca_key, password=None)
        ca_cert = x509.load_pem_x509_certificates(bundle.ca_cert)[0]
    except _PARSE_ERRORS as exc:
        log.warning("cannot parse CA material: %s", exc)
        return None
    if not isinstance(ca_key, rsa.RSAPrivateKey):
        log.warning("CA key is not an RSA key")
        return None
    return ca_key, ca_cert
