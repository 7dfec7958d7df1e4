"""Certificate source backed by a certificate store.

:class:`AccessSource` reads the bundle from a
:class:`~certmgmt.store.CertificateAccess`, renews it through the
certificate engine when it is missing or about to expire, writes changes
back and serves the result to TLS handshakes. An APScheduler job repeats
the cycle periodically and backs off exponentially while it fails.
"""

import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler

from certmgmt.engine import update_bundle
from certmgmt.policy import IssuancePolicy
from certmgmt.store import CertificateAccess
from certs.source import ClientHello, LoadedCertificate, WatcherState

MAX_INTERVAL = timedelta(minutes=10)
DEFAULT_BACKOFF_BASE = 1.0
DEFAULT_BACKOFF_FACTOR = 1.5
REFRESH_JOB_ID = "certificate_refresh"


class Backoff:
    """Exponential delay between consecutive failed attempts, in seconds."""

    def __init__(
        self,
        base: float = DEFAULT_BACKOFF_BASE,
        factor: float = DEFAULT_BACKOFF_FACTOR,
        cap: Optional[float] = None,
    ):
        self.base = base
        self.factor = factor
        self.cap = cap
        self.current = base

    def next(self) -> float:
        """Return the delay for this failure and grow the next one."""
        delay = self.current if self.cap is None else min(self.current, self.cap)
        self.current = self.current * self.factor
        if self.cap is not None:
            self.current = min(self.current, self.cap)
        return delay

    def reset(self) -> None:
        self.current = self.base


class AccessSource:
    """Keep a stored certificate bundle valid and serve it for TLS handshakes.

    Construction runs one refresh synchronously and raises if it fails;
    nothing is scheduled in that case. Afterwards a background scheduler job
    refreshes every ``min(policy.rest, 10 minutes)`` until ``stop_event`` is
    set or :meth:`stop` is called.

    Args:
        access: Store holding the bundle.
        policy: What the server certificate must look like.
        stop_event: Cancellation signal for the refresh job.
        logger: Logger for refresh activity, defaults to this module's.
        backoff_base: First delay after a failed refresh, in seconds.
        backoff_factor: Growth of the delay per consecutive failure.
    """

    def __init__(
        self,
        access: CertificateAccess,
        policy: IssuancePolicy,
        stop_event: Optional[threading.Event] = None,
        logger: Optional[logging.Logger] = None,
        backoff_base: float = DEFAULT_BACKOFF_BASE,
        backoff_factor: float = DEFAULT_BACKOFF_FACTOR,
    ):
        self.access = access
        self.policy = policy
        self.logger = logger or logging.getLogger(__name__)
        self.interval = min(policy.rest, MAX_INTERVAL).total_seconds()
        self.next_delay: Optional[float] = None
        self.state = WatcherState.UNINITIALIZED

        self._lock = threading.Lock()
        self._current: Optional[LoadedCertificate] = None
        self._backoff = Backoff(backoff_base, backoff_factor, cap=self.interval)
        self._stop_event = stop_event if stop_event is not None else threading.Event()
        self._scheduler = BackgroundScheduler(daemon=True, timezone=timezone.utc)
        self._thread: Optional[threading.Thread] = None

        # Initial read of certificate and key.
        self.read_certificate()

        self._scheduler.add_job(
            func=self._run_refresh,
            trigger="interval",
            seconds=self.interval,
            id=REFRESH_JOB_ID,
            replace_existing=True,
            coalesce=True,
            max_instances=1,
            misfire_grace_time=None,
        )
        self._scheduler.start()
        self.state = WatcherState.ACTIVE
        self.logger.info("Scheduler started: refreshing %s every %.1fs", access, self.interval)

        self._thread = threading.Thread(
            target=self._await_stop, daemon=True, name=f"cert-access-{access}",
        )
        self._thread.start()

    def get_certificate(self, client_hello: Optional[ClientHello] = None) -> Optional[LoadedCertificate]:
        """Return the currently loaded certificate, which may be None."""
        with self._lock:
            return self._current

    def read_certificate(self) -> bool:
        """Fetch, renew if needed, persist and load the certificate.

        Returns:
            True if a new certificate was installed, False if the loaded
            one is still current.
        """
        bundle = self.access.get()
        new, changed = update_bundle(bundle, self.policy, log=self.logger)
        if not changed and self._current is not None:
            return False

        self.access.set(new)
        loaded = LoadedCertificate.from_pem(new.cert, new.key)
        with self._lock:
            self._current = loaded
        self.logger.info(
            "Updated current TLS certificate from %s (expires %s)",
            self.access, loaded.not_after.isoformat(),
        )
        return True

    def stop(self, timeout: Optional[float] = None) -> None:
        """Cancel the refresh job and wait for the scheduler to shut down."""
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)

    def _await_stop(self) -> None:
        self._stop_event.wait()
        if self._scheduler.running:
            self._scheduler.shutdown(wait=True)
        self.state = WatcherState.STOPPED
        self.logger.info("Stopped certificate watch for %s", self.access)

    def _run_refresh(self) -> None:
        """Scheduler job: refresh, then move the next run by the returned delay."""
        delay = self._refresh()
        if self._stop_event.is_set():
            return
        next_run = datetime.now(timezone.utc) + timedelta(seconds=delay)
        self._scheduler.modify_job(REFRESH_JOB_ID, next_run_time=next_run)

    def _refresh(self) -> float:
        """Run one refresh cycle and return the wait before the next one."""
        self.logger.debug("Reconciling certificate %s", self.access)
        try:
            self.read_certificate()
        except Exception as exc:
            delay = self._backoff.next()
            self.logger.error(
                "Cannot reconcile certificate %s: %s (backoff=%.2fs)", self.access, exc, delay,
            )
        else:
            self._backoff.reset()
            delay = self.interval
        self.next_delay = delay
        return delay
