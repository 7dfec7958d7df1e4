"""Project-wide settings and defaults."""

import os
from datetime import timedelta
from pathlib import Path

from certmgmt.policy import IssuancePolicy

# Base paths
PROJECT_ROOT = Path(__file__).resolve().parent.parent
DATA_DIR = PROJECT_ROOT / "data"

# Server certificate policy
CERT_COMMON_NAME = os.environ.get("CERT_COMMON_NAME", "webhook")
CERT_DNS_NAMES = [
    name.strip()
    for name in os.environ.get("CERT_DNS_NAMES", "localhost").split(",")
    if name.strip()
]
CERT_IP_ADDRESSES = [
    ip.strip()
    for ip in os.environ.get("CERT_IP_ADDRESSES", "").split(",")
    if ip.strip()
]
CERT_ORGANIZATION = os.environ.get("CERT_ORGANIZATION", "")
CERT_VALIDITY_HOURS = float(os.environ.get("CERT_VALIDITY_HOURS", str(24 * 365)))
CERT_RENEW_BEFORE_HOURS = float(os.environ.get("CERT_RENEW_BEFORE_HOURS", str(24 * 30)))

# Certificate store (polling mode)
CERT_STORE_PATH = Path(os.environ.get("CERT_STORE_PATH", str(DATA_DIR / "certificates.json")))
CERT_STORE_KEY = os.environ.get("CERT_STORE_KEY", "default")

# Certificate files (file mode)
CERT_FILE = os.environ.get("CERT_FILE", str(DATA_DIR / "tls.crt"))
KEY_FILE = os.environ.get("KEY_FILE", str(DATA_DIR / "tls.key"))

# HTTPS server
SERVE_HOST = os.environ.get("SERVE_HOST", "127.0.0.1")
SERVE_PORT = int(os.environ.get("SERVE_PORT", "8443"))

# Logging
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def policy_from_settings(
    common_name: str | None = None,
    dns_names: list[str] | None = None,
    validity_hours: float | None = None,
    renew_before_hours: float | None = None,
) -> IssuancePolicy:
    """Build the issuance policy from settings, with optional overrides."""
    return IssuancePolicy(
        common_name=common_name or CERT_COMMON_NAME,
        dns_names=dns_names or CERT_DNS_NAMES,
        validity=timedelta(hours=validity_hours or CERT_VALIDITY_HOURS),
        rest=timedelta(hours=renew_before_hours or CERT_RENEW_BEFORE_HOURS),
        organization=[CERT_ORGANIZATION] if CERT_ORGANIZATION else [],
        ip_addresses=CERT_IP_ADDRESSES,
    )
