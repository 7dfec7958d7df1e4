"""Issuance policy for the managed server certificate."""

from dataclasses import dataclass, field
from datetime import timedelta


@dataclass(frozen=True)
class IssuancePolicy:
    """Describes the server certificate the engine keeps alive.

    Attributes:
        common_name: Subject CN of the server certificate.
        dns_names: Subject alternative DNS names. The first entry is the
            name checked when deciding whether the certificate is still good.
        validity: Lifetime of a freshly issued server certificate.
        rest: Renewal lookahead. A certificate that expires within this
            window is renewed.
        organization: Optional subject organization values.
        ip_addresses: Optional subject alternative IP addresses.
    """

    common_name: str
    dns_names: tuple[str, ...]
    validity: timedelta
    rest: timedelta
    organization: tuple[str, ...] = field(default_factory=tuple)
    ip_addresses: tuple[str, ...] = field(default_factory=tuple)

    def __post_init__(self):
        # Accept any sequence for the list-like fields.
        object.__setattr__(self, "dns_names", tuple(self.dns_names))
        object.__setattr__(self, "organization", tuple(self.organization))
        object.__setattr__(self, "ip_addresses", tuple(self.ip_addresses))
        if not self.dns_names:
            raise ValueError("at least one DNS name is required")
        if self.validity <= timedelta(0):
            raise ValueError("validity must be positive")
        if self.rest <= timedelta(0):
            raise ValueError("renewal lookahead must be positive")

    @property
    def primary_dns_name(self) -> str:
        return self.dns_names[0]
