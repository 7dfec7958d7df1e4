"""Certificate source backed by a certificate file and a key file.

:class:`CertWatcher` loads the pair once at construction, then reloads it
whenever either file is written, created, replaced or removed, or when
a symlink swap points either path at a different file.
"""

import logging
import os
import queue
import threading
from pathlib import Path
from typing import Optional

from watchdog.events import (
    EVENT_TYPE_CREATED,
    EVENT_TYPE_DELETED,
    EVENT_TYPE_MODIFIED,
    EVENT_TYPE_MOVED,
    FileSystemEvent,
    FileSystemEventHandler,
)
from watchdog.observers import Observer

from certmgmt.errors import CertificateLoadError
from certs.source import ClientHello, LoadedCertificate, WatcherState, load_key_pair

# How often the event loop checks for cancellation while idle.
EVENT_POLL_INTERVAL = 0.5

_RELOAD_EVENTS = (EVENT_TYPE_MODIFIED, EVENT_TYPE_CREATED, EVENT_TYPE_DELETED)


def _normalize(path) -> str:
    return os.path.abspath(os.fsdecode(path))


class _EventQueueHandler(FileSystemEventHandler):
    """Hands every observed event to the watcher's event loop."""

    def __init__(self, events: queue.Queue):
        self._events = events

    def on_any_event(self, event):
        self._events.put(event)


class CertWatcher:
    """Serve a certificate/key file pair and reload it when the files change.

    Watchdog watches directories, so the parent directory of each file is
    observed, as is the directory each path resolves to through symlinks.
    Events naming one of the files trigger a reload. Any other event
    triggers one only when a path now resolves to a different file than
    the one last loaded, which is how Kubernetes secret volumes swap their
    ``..data`` link.

    Args:
        cert_path: PEM certificate (chain) file. Must exist.
        key_path: PEM private key file. Must exist.
        stop_event: Cancellation signal for the background thread.
        logger: Logger for watch activity, defaults to this module's.
    """

    def __init__(
        self,
        cert_path: str | Path,
        key_path: str | Path,
        stop_event: Optional[threading.Event] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.cert_path = _normalize(cert_path)
        self.key_path = _normalize(key_path)
        self.logger = logger or logging.getLogger(__name__)
        self.state = WatcherState.UNINITIALIZED

        self._lock = threading.Lock()
        self._current: Optional[LoadedCertificate] = None
        self._targets: tuple[str, ...] = ()
        self._stop_event = stop_event if stop_event is not None else threading.Event()
        self._events: queue.Queue = queue.Queue()
        self._handler = _EventQueueHandler(self._events)
        self._observer = Observer()
        self._watches: dict = {}

        # Initial read of certificate and key.
        self.read_certificate()

        self._watch_all()
        self._observer.start()

        self._thread = threading.Thread(target=self._run, daemon=True, name="cert-file-watcher")
        self._thread.start()
        self.state = WatcherState.ACTIVE
        self.logger.info("Starting certificate watcher for %s and %s", self.cert_path, self.key_path)

    @property
    def paths(self) -> tuple[str, str]:
        return self.cert_path, self.key_path

    @property
    def targets(self) -> tuple[str, ...]:
        """Resolved locations of both files as of the last successful load."""
        return self._targets

    def get_certificate(self, client_hello: Optional[ClientHello] = None) -> Optional[LoadedCertificate]:
        """Return the currently loaded certificate, which may be None."""
        with self._lock:
            return self._current

    def read_certificate(self) -> None:
        """Load both files from disk and install the pair.

        Raises:
            CertificateLoadError: the files are missing, unreadable or do
                not form a matching pair.
        """
        targets = self._resolve()
        loaded = load_key_pair(self.cert_path, self.key_path)
        with self._lock:
            self._current = loaded
            self._targets = targets
        self.logger.info("Updated current TLS certificate (expires %s)", loaded.not_after.isoformat())

    def stop(self, timeout: Optional[float] = None) -> None:
        """Cancel the watch and wait for the background thread to exit."""
        self._stop_event.set()
        self._thread.join(timeout)

    def handle_event(self, event: FileSystemEvent) -> None:
        """React to one filesystem event."""
        if event.is_directory and event.event_type == EVENT_TYPE_DELETED:
            self._forget(_normalize(event.src_path))

        kind, path = self._classify(event)
        if path is None:
            if not self._retargeted():
                return
            kind, path = "retarget", event.src_path
        # Only care about events which may modify the contents of the file.
        elif kind not in _RELOAD_EVENTS:
            return

        self.logger.info("Certificate event %s on %s", kind, path)
        try:
            self.read_certificate()
        except CertificateLoadError as exc:
            self.logger.error("Error re-reading certificate: %s", exc)
            return
        self._watch_all()

    def _classify(self, event: FileSystemEvent):
        """Map an event to ``(kind, watched file)``, or ``(None, None)``."""
        if event.is_directory:
            return None, None
        watched = set(self.paths) | set(self._targets)

        if event.event_type == EVENT_TYPE_MOVED:
            # A file moved onto a watched path replaces it; one moved away removes it.
            dest, src = _normalize(event.dest_path), _normalize(event.src_path)
            if dest in watched:
                return EVENT_TYPE_CREATED, dest
            if src in watched:
                return EVENT_TYPE_DELETED, src
            return None, None

        path = _normalize(event.src_path)
        if path not in watched:
            return None, None
        return event.event_type, path

    def _resolve(self) -> tuple[str, ...]:
        return tuple(os.path.realpath(path) for path in self.paths)

    def _retargeted(self) -> bool:
        return self._resolve() != self._targets

    def _watch_all(self) -> None:
        for path in self.paths + self._targets:
            directory = os.path.dirname(path)
            if directory in self._watches or not os.path.isdir(directory):
                continue
            try:
                self._watches[directory] = self._observer.schedule(self._handler, directory, recursive=False)
            except OSError as exc:
                self.logger.error("Error watching %s: %s", directory, exc)

    def _forget(self, directory: str) -> None:
        """Drop the watch of a directory that no longer exists."""
        watch = self._watches.pop(directory, None)
        if watch is None:
            return
        self.logger.warning("Watched directory %s was removed", directory)
        try:
            self._observer.unschedule(watch)
        except KeyError:
            pass

    def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                event = self._events.get(timeout=EVENT_POLL_INTERVAL)
            except queue.Empty:
                continue
            self.handle_event(event)

        self._observer.stop()
        self._observer.join()
        self.state = WatcherState.STOPPED
        self.logger.info("Stopped certificate watcher for %s and %s", self.cert_path, self.key_path)
