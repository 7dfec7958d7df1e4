"""Certificate stores: where a :class:`CertificateBundle` is persisted between runs."""

import json
import os
import tempfile
import threading
from pathlib import Path
from typing import Optional, Protocol, runtime_checkable

from certmgmt.bundle import CertificateBundle
from certmgmt.errors import StoreError


@runtime_checkable
class CertificateAccess(Protocol):
    """Read and write one bundle in an external store."""

    def get(self) -> Optional[CertificateBundle]:
        """Return the stored bundle, or ``None`` when nothing is stored yet."""

    def set(self, bundle: CertificateBundle) -> None:
        """Replace the stored bundle."""


class MemoryCertificateAccess:
    """Keep the bundle in process memory."""

    def __init__(self, bundle: Optional[CertificateBundle] = None, name: str = "memory"):
        self.name = name
        self._bundle = bundle
        self._lock = threading.Lock()
        self.set_calls = 0

    def get(self) -> Optional[CertificateBundle]:
        with self._lock:
            return self._bundle

    def set(self, bundle: CertificateBundle) -> None:
        with self._lock:
            self._bundle = bundle
            self.set_calls += 1

    def __str__(self) -> str:
        return f"memory:{self.name}"


class JsonFileCertificateAccess:
    """Persist bundles to a JSON file, one entry per key.

    Several identities can share the file; each ``key`` owns one entry::

        {"webhook": {"cert": "-----BEGIN ...", "key": ..., "ca_cert": ..., "ca_key": ...}}
    """

    def __init__(self, path: str | Path, key: str = "default"):
        self._path = Path(path)
        self.key = key
        self._lock = threading.Lock()

    def _load(self) -> dict:
        if not self._path.exists():
            return {}
        try:
            data = json.loads(self._path.read_text())
        except (json.JSONDecodeError, OSError) as exc:
            raise StoreError(f"cannot read certificate store {self._path}: {exc}") from exc
        if not isinstance(data, dict):
            raise StoreError(f"certificate store {self._path} is not a JSON object")
        return data

    def _save(self, data: dict) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=self._path.parent, prefix=f".{self._path.name}.")
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(data, f, indent=2)
            os.chmod(tmp, 0o600)
            os.replace(tmp, self._path)
        except OSError as exc:
            Path(tmp).unlink(missing_ok=True)
            raise StoreError(f"cannot write certificate store {self._path}: {exc}") from exc

    def get(self) -> Optional[CertificateBundle]:
        with self._lock:
            entry = self._load().get(self.key)
        if not entry:
            return None
        if not isinstance(entry, dict):
            raise StoreError(f"entry {self.key!r} in {self._path} is not a JSON object")
        return CertificateBundle.from_dict(entry)

    def set(self, bundle: CertificateBundle) -> None:
        with self._lock:
            data = self._load()
            data[self.key] = bundle.to_dict()
            self._save(data)

    def __str__(self) -> str:
        return f"{self._path}#{self.key}"
