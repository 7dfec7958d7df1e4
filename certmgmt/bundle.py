"""The four-part PEM bundle persisted by certificate stores."""

from dataclasses import asdict, dataclass, fields, replace
from typing import Optional


@dataclass(frozen=True)
class CertificateBundle:
    """Server certificate, server key, CA certificate and CA key as PEM bytes.

    Any field may be ``None`` or empty, which means the bundle has not been
    provisioned yet.
    """

    cert: Optional[bytes] = None
    key: Optional[bytes] = None
    ca_cert: Optional[bytes] = None
    ca_key: Optional[bytes] = None

    def is_empty(self) -> bool:
        return not any((self.cert, self.key, self.ca_cert, self.ca_key))

    def replace(self, **changes) -> "CertificateBundle":
        """Return a copy with the given fields overwritten."""
        return replace(self, **changes)

    def to_dict(self) -> dict:
        """Text form of the bundle, suitable for JSON storage."""
        return {
            name: value.decode("ascii") if value else None
            for name, value in asdict(self).items()
        }

    @classmethod
    def from_dict(cls, data: dict) -> "CertificateBundle":
        values = {}
        for f in fields(cls):
            value = data.get(f.name)
            if isinstance(value, str):
                value = value.encode("ascii")
            values[f.name] = value or None
        return cls(**values)
