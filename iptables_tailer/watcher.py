"""LogWatcher: polls the iptables log file and pushes each new line onto a queue.

Rotation is detected by fingerprint: the first FINGERPRINT_SIZE bytes of the
file are compared with the ones seen on the previous check. A watchdog observer
on the parent directory wakes the poll loop early when the file changes; the
poll interval is only the upper bound between checks.
"""

import logging
import os
import threading
from dataclasses import dataclass

from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from iptables_tailer.errors import RotationCheckError

logger = logging.getLogger(__name__)

# The first iptables log line is expected to be longer than this.
FINGERPRINT_SIZE = 64


@dataclass
class TailState:
    offset: int = 0
    fingerprint: bytes | None = None

    def reset(self, fingerprint: bytes):
        self.offset = 0
        self.fingerprint = fingerprint


class LogWatcher(FileSystemEventHandler):
    def __init__(self, path: str, interval: float, shutdown_event: threading.Event):
        super().__init__()
        self._path = os.path.abspath(path)
        self._interval = interval
        self._shutdown = shutdown_event
        self._wake = threading.Event()
        self.state = TailState()

    @property
    def path(self) -> str:
        return self._path

    def run(self, out_queue):
        """Check the file every interval (or on change) until shutdown."""
        observer = self._start_observer()
        try:
            while not self._shutdown.is_set():
                logger.debug("Watching logs: %s", self._path)
                self.check_file(out_queue)
                self._wake.wait(self._interval)
                self._wake.clear()
        finally:
            if observer is not None:
                observer.stop()
                observer.join(timeout=5)
        logger.info("Log watcher stopped: %s", self._path)

    def stop(self):
        self._wake.set()

    def _start_observer(self):
        watch_dir = os.path.dirname(self._path)
        observer = Observer()
        try:
            observer.schedule(self, watch_dir, recursive=False)
            observer.start()
        except OSError as e:
            logger.warning("Cannot watch %s for changes, polling every %ss only: %s",
                           watch_dir, self._interval, e)
            return None
        return observer

    # watchdog callbacks: only wake the poll loop, never read from here

    def on_modified(self, event):
        self._maybe_wake(event.src_path)

    def on_created(self, event):
        self._maybe_wake(event.src_path)

    def on_moved(self, event):
        self._maybe_wake(event.src_path)
        self._maybe_wake(getattr(event, "dest_path", ""))

    def _maybe_wake(self, path):
        if isinstance(path, bytes):
            path = os.fsdecode(path)
        if path and os.path.abspath(path) == self._path:
            self._wake.set()

    def check_file(self, out_queue) -> int:
        """Open the watched file and push new lines. Returns the number of lines pushed."""
        try:
            f = open(self._path, "rb")
        except OSError as e:
            logger.error("Failed to open the file=%s, error=%s", self._path, e)
            return 0
        with f:
            try:
                return self.check(f, out_queue)
            except RotationCheckError as e:
                logger.error("Failed to check the content of file=%s, error=%s", self._path, e)
                return 0

    def check(self, stream, out_queue) -> int:
        """Push every complete line after the stored offset, then advance the offset."""
        self.check_rotation(stream)

        stream.seek(self.state.offset)
        data = stream.read()
        if not data:
            return 0

        emitted = 0
        start = 0
        while True:
            end = data.find(b"\n", start)
            if end < 0:
                break  # partial line, re-read next cycle
            line = data[start:end]
            out_queue.put(line.decode("utf-8", errors="surrogateescape"))
            emitted += 1
            self.state.offset += end + 1 - start
            start = end + 1
        return emitted

    def check_rotation(self, stream):
        """Reset the tail state when the file's fingerprint changed."""
        stream.seek(0)
        fingerprint = stream.read(FINGERPRINT_SIZE)
        if len(fingerprint) < FINGERPRINT_SIZE:
            raise RotationCheckError(
                f"Error getting fingerprint, insufficient content ({len(fingerprint)} bytes)"
            )
        if self.state.fingerprint is None:
            self.state.fingerprint = fingerprint
        elif fingerprint != self.state.fingerprint:
            logger.info("File rotated (fingerprint changed): %s", self._path)
            self.state.reset(fingerprint)
