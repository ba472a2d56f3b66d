"""DropParser: turns raw iptables log lines into PacketDrop records.

Expected line shape (time layout configurable, fields in any order):
    2024-01-01T00:00:00.000000-00:00 host <prefix> IN=eth0 OUT=eth1 MAC=.. SRC=1.1.1.1 DST=2.2.2.2 TTL=64 PROTO=TCP SPT=1 DPT=2
"""

import logging
from datetime import datetime, timedelta, timezone

from iptables_tailer.errors import ParseError
from iptables_tailer.models import PACKET_DROP_FIELD_COUNT, PacketDrop

logger = logging.getLogger(__name__)

_YEAR_DIRECTIVES = ("%Y", "%y", "%G", "%c", "%x")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def field_value(tokens: list[str], name: str) -> str | None:
    """Return the value of the first NAME=VALUE token, or None if NAME is absent.

    A bare NAME token with no "=" is malformed and raises ParseError.
    """
    for token in tokens:
        key, sep, value = token.partition("=")
        if key != name:
            continue
        if not sep:
            raise ParseError(f"Missing value: field={name}")
        return value
    return None


def _required(tokens: list[str], name: str, allow_empty: bool = False) -> str:
    value = field_value(tokens, name)
    if value is None:
        raise ParseError(f"Missing field={name}")
    if not value and not allow_empty:
        raise ParseError(f"Missing value: field={name}")
    return value


def _required_int(tokens: list[str], name: str) -> int:
    value = _required(tokens, name)
    try:
        return int(value)
    except ValueError:
        raise ParseError(f"Invalid integer: field={name}, value={value!r}") from None


class DropParser:
    def __init__(self, log_prefix: str, time_layout: str, expiration: timedelta,
                 clock=None, stats=None):
        self._log_prefix = log_prefix
        self._time_layout = time_layout
        self._layout_tokens = len(time_layout.split())
        self._has_year = any(d in time_layout for d in _YEAR_DIRECTIVES)
        self._expiration = expiration
        self._clock = clock or _utc_now
        self._stats = stats

    def is_required_log(self, line: str) -> bool:
        """Only lines carrying the configured prefix as a whole token are packet drops."""
        return self._log_prefix in line.split()

    def parse_time(self, time_str: str) -> datetime:
        """Parse the leading timestamp; missing year and zone default to local now."""
        if self._has_year:
            parsed = datetime.strptime(time_str, self._time_layout)
        else:
            year = self._clock().astimezone().year
            parsed = datetime.strptime(f"{year} {time_str}", f"%Y {self._time_layout}")
        if parsed.tzinfo is None:
            parsed = parsed.astimezone()
        return parsed

    def parse(self, line: str) -> PacketDrop | None:
        """Return a PacketDrop, None for unrelated lines, or raise ParseError."""
        tokens = line.split()
        if self._log_prefix not in tokens:
            return None
        logger.debug("Parsing new packet drop: log=%s", line)

        if len(tokens) < self._layout_tokens:
            raise ParseError(f"Invalid packet drop: log={line}")
        time_str = " ".join(tokens[:self._layout_tokens])
        try:
            log_time = self.parse_time(time_str)
        except ValueError as e:
            raise ParseError(f"Invalid log time {time_str!r}: {e}") from None

        rest = tokens[self._layout_tokens:]
        if 1 + len(rest) < PACKET_DROP_FIELD_COUNT:
            raise ParseError(f"Invalid packet drop: log={line}")

        return PacketDrop(
            log_time=log_time,
            host_name=rest[0],
            src_ip=_required(rest, "SRC"),
            src_port=_required_int(rest, "SPT"),
            dst_ip=_required(rest, "DST"),
            dst_port=_required_int(rest, "DPT"),
            protocol=_required(rest, "PROTO"),
            in_iface=_required(rest, "IN", allow_empty=True),
            out_iface=_required(rest, "OUT", allow_empty=True),
            mac=field_value(rest, "MAC") or "",
            ttl=_required_int(rest, "TTL"),
        )

    def handle(self, line: str, out_queue) -> PacketDrop | None:
        """Parse one line and forward the drop unless it is already expired."""
        self._count("lines_read")
        drop = self.parse(line)
        if drop is None:
            return None
        self._count("drops_parsed")
        if drop.is_expired(self._clock(), self._expiration):
            logger.debug("Ignoring expired packet drop: %s", drop)
            self._count("drops_expired")
            return None
        out_queue.put(drop)
        return drop

    def run(self, in_queue, out_queue):
        """Consume lines until a None sentinel arrives, then pass the sentinel on."""
        while True:
            line = in_queue.get()
            if line is None:
                out_queue.put(None)
                break
            try:
                self.handle(line, out_queue)
            except ParseError as e:
                self._count("parse_errors")
                logger.error("Cannot parse the log: %s, error: %s", line, e)
            except Exception:
                self._count("parse_errors")
                logger.exception("Unexpected error parsing the log: %s", line)
        logger.info("Drop parser stopped")

    def _count(self, name: str):
        if self._stats is not None:
            self._stats.increment(name)
