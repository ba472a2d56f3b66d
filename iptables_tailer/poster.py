"""Poster: correlates packet drops with pods and posts Kubernetes Events.

Drops are handled strictly one at a time. A failing API call retries the
whole drop under exponential backoff, which stalls the drop queue behind it;
that backpressure is what keeps the parser from running ahead of the API.
"""

import logging
import queue
import time
from datetime import datetime, timezone
from enum import Enum

from iptables_tailer.config import Config
from iptables_tailer.errors import PermanentError
from iptables_tailer.locator import DnsResolver, identity_for
from iptables_tailer.models import Notification, PacketDrop, WorkloadRecord
from iptables_tailer.retry import ExponentialBackoff, retry_notify
from iptables_tailer.sink import EVENT_TYPE_WARNING

logger = logging.getLogger(__name__)


class TrafficDirection(Enum):
    SEND = "SEND"
    RECEIVE = "RECEIVE"


def _side_label(name: str, ip: str) -> str:
    if ip and name != ip:
        return f"{name} ({ip})"
    return name


def build_message(drop: PacketDrop, src_name: str, dst_name: str,
                  direction: TrafficDirection) -> str:
    port = f"{drop.dst_port}/{drop.protocol}"
    if direction is TrafficDirection.SEND:
        return (f"Packet dropped when sending traffic from {drop.src_ip} "
                f"to {_side_label(dst_name, drop.dst_ip)} on port {port}")
    return (f"Packet dropped when receiving traffic from {_side_label(src_name, drop.src_ip)} "
            f"to {drop.dst_ip} on port {port}")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Poster:
    def __init__(self, locator, sink, metrics, config: Config, resolver=None,
                 clock=None, sleep=time.sleep, stats=None, backoff: ExponentialBackoff | None = None):
        self._locator = locator
        self._sink = sink
        self._metrics = metrics
        self._resolver = resolver or DnsResolver()
        self._clock = clock or _utc_now
        self._sleep = sleep
        self._stats = stats

        self._identifier = config.pod_identifier
        self._label_key = config.pod_identifier_label
        self._reason = config.event_reason
        self._expiration = config.expiration
        self._repeat_interval = config.repeat_interval
        self._eviction_window = (
            config.repeat_interval * config.dedup_eviction_multiplier
            if config.dedup_eviction_multiplier > 0 else None
        )
        # stop retrying once a drop would have expired anyway
        self._backoff = backoff or ExponentialBackoff(
            initial_interval=config.backoff_initial_interval_ms / 1000,
            max_elapsed=config.expiration.total_seconds(),
        )
        # (src_ip, dst_ip) -> time the last notification was posted
        self._event_submit_times: dict[tuple[str, str], datetime] = {}

    @property
    def event_submit_times(self) -> dict[tuple[str, str], datetime]:
        return self._event_submit_times

    def run(self, shutdown_event, drop_queue):
        """Warm up the pod cache, then handle drops until a None sentinel or an idle shutdown."""
        self._locator.run()
        logger.info("Poster running")
        while True:
            try:
                drop = drop_queue.get(timeout=0.5)
            except queue.Empty:
                if shutdown_event.is_set():
                    break
                continue
            if drop is None:
                break
            self.process(drop)
        logger.info("Poster stopped: %d (src, dst) pairs notified", len(self._event_submit_times))

    def process(self, drop: PacketDrop) -> bool:
        """Handle one drop with retries. Returns False if it was abandoned."""
        def notify(error, delay):
            logger.warning("Error handling packet drop, backing off: packetDrop=%s, retryIn=%.2fs, error=%s",
                           drop, delay, error)

        self._backoff.reset()
        try:
            retry_notify(lambda: self.handle(drop), self._backoff, notify, self._sleep)
        except Exception as e:
            logger.error("Error retrying packet drop handling, giving up: packetDrop=%s, error=%s", drop, e)
            self._count("drops_abandoned")
            return False
        return True

    def should_ignore(self, drop: PacketDrop) -> bool:
        if drop.is_expired(self._clock(), self._expiration):
            logger.info("Ignoring expired packet drop: %s", drop)
            return True
        last_posted = self._event_submit_times.get(drop.dedup_key)
        if last_posted is not None and drop.log_time - last_posted <= self._repeat_interval:
            logger.info("Ignoring duplicate packet drop: %s", drop)
            return True
        return False

    def handle(self, drop: PacketDrop):
        """Post events for both ends of the drop and count it.

        A target the sink permanently rejects is skipped; any other API
        failure propagates so the whole drop is retried.
        """
        if self.should_ignore(drop):
            self._count("drops_ignored")
            return

        src_pod = self._locator.locate(drop.src_ip)
        dst_pod = self._locator.locate(drop.dst_ip)
        src_name = identity_for(src_pod, drop.src_ip, self._identifier, self._label_key, self._resolver)
        dst_name = identity_for(dst_pod, drop.dst_ip, self._identifier, self._label_key, self._resolver)

        if src_pod is not None and not src_pod.host_network:
            self._submit(src_pod, build_message(drop, src_name, dst_name, TrafficDirection.SEND))
        if dst_pod is not None and not dst_pod.host_network:
            self._submit(dst_pod, build_message(drop, src_name, dst_name, TrafficDirection.RECEIVE))

        self._metrics.process_packet_drop(src_name, dst_name)
        self._record_submission(drop.dedup_key)

    def _submit(self, target: WorkloadRecord, message: str):
        try:
            self._sink.submit(Notification(target, EVENT_TYPE_WARNING, self._reason, message))
        except PermanentError as e:
            logger.error("Event rejected, skipping target: pod=%s, error=%s", target.key, e)
            self._count("events_rejected")
            return
        self._count("events_submitted")

    def _record_submission(self, key: tuple[str, str]):
        now = self._clock()
        self._event_submit_times[key] = now
        if self._eviction_window is None:
            return
        cutoff = now - self._eviction_window
        stale = [k for k, posted in self._event_submit_times.items() if posted < cutoff]
        for k in stale:
            del self._event_submit_times[k]

    def _count(self, name: str):
        if self._stats is not None:
            self._stats.increment(name)
