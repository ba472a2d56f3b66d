"""JournalWatcher: follows kernel messages in the systemd journal.

Each entry becomes "<timestamp> <hostname> <message>", using the same time
layout as the file log, so the parser sees the same line shape in both modes.
"""

import logging
import threading
from datetime import datetime

from iptables_tailer.errors import JournalFormatError, JournalOpenError

logger = logging.getLogger(__name__)


def format_journal_entry(entry: dict, time_layout: str) -> str:
    """Build a log line from a journal entry dict."""
    message = entry.get("MESSAGE")
    if message is None:
        raise JournalFormatError("no MESSAGE field present in journal entry")
    hostname = entry.get("_HOSTNAME")
    if hostname is None:
        raise JournalFormatError("no _HOSTNAME field present in journal entry")

    timestamp = entry.get("__REALTIME_TIMESTAMP")
    if isinstance(timestamp, (int, float)):
        timestamp = datetime.fromtimestamp(timestamp / 1_000_000)
    if not isinstance(timestamp, datetime):
        raise JournalFormatError("no __REALTIME_TIMESTAMP field present in journal entry")

    if isinstance(message, bytes):
        message = message.decode("utf-8", errors="replace")
    return " ".join([timestamp.astimezone().strftime(time_layout), str(hostname), message])


def _open_journal_reader(journal_dir: str, identifier: str):
    from systemd import journal

    reader = journal.Reader(path=journal_dir)
    reader.add_match(SYSLOG_IDENTIFIER=identifier)
    return reader


class JournalWatcher:
    def __init__(
        self,
        journal_dir: str,
        time_layout: str,
        shutdown_event: threading.Event,
        identifier: str = "kernel",
        reader_factory=None,
        wait_timeout: float = 1.0,
    ):
        self._journal_dir = journal_dir
        self._time_layout = time_layout
        self._shutdown = shutdown_event
        self._identifier = identifier
        self._reader_factory = reader_factory or _open_journal_reader
        self._wait_timeout = wait_timeout
        self._stopped = threading.Event()

    def run(self, out_queue):
        """Follow the journal from its last entry until shutdown."""
        try:
            reader = self._reader_factory(self._journal_dir, self._identifier)
            reader.seek_tail()
            last = reader.get_previous()
        except (OSError, ImportError) as e:
            raise JournalOpenError(f"Cannot open journal at {self._journal_dir}: {e}") from e

        logger.info("Following journal %s (SYSLOG_IDENTIFIER=%s)", self._journal_dir, self._identifier)
        try:
            if last:
                self._push(last, out_queue)
            while not (self._shutdown.is_set() or self._stopped.is_set()):
                self.drain(reader, out_queue)
                reader.wait(self._wait_timeout)
        finally:
            reader.close()
        logger.info("Journal watcher stopped: %s", self._journal_dir)

    def drain(self, reader, out_queue) -> int:
        """Push every entry the reader has not returned yet. Returns the number pushed."""
        return sum(1 for entry in reader if self._push(entry, out_queue))

    def _push(self, entry, out_queue) -> bool:
        try:
            line = format_journal_entry(entry, self._time_layout)
        except JournalFormatError as e:
            logger.error("Skipping journal entry: %s", e)
            return False
        out_queue.put(line)
        return True

    def stop(self):
        """End the follow loop after the current wait, even without a shutdown."""
        self._stopped.set()
