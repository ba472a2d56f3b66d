"""Shared pytest fixtures for the iptables tailer test suite."""

from datetime import datetime, timedelta, timezone

import pytest

from iptables_tailer.config import DEFAULT_TIME_LAYOUT, Config
from iptables_tailer.errors import InvalidTargetError
from iptables_tailer.models import PacketDrop, WorkloadRecord

LOG_PREFIX = "marker"
NOW = datetime(2024, 1, 1, 0, 5, tzinfo=timezone.utc)


class FakeClock:
    """Callable wall clock returning a settable aware datetime."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class FakeTimer:
    """Monotonic clock that only moves when sleep() is called."""

    def __init__(self):
        self.t = 0.0
        self.sleeps: list[float] = []

    def monotonic(self) -> float:
        return self.t

    def sleep(self, delay: float):
        self.sleeps.append(delay)
        self.t += delay


class FakeLocator:
    def __init__(self, records: dict | None = None, failures: int = 0):
        self.records = records or {}
        self.failures = failures
        self.run_called = False
        self.lookups: list[str] = []

    def run(self):
        self.run_called = True

    def locate(self, ip):
        self.lookups.append(ip)
        if self.failures:
            self.failures -= 1
            raise RuntimeError("simulating a pod lookup error")
        return self.records.get(ip)


class RecordingSink:
    def __init__(self, failures: int = 0, error: Exception | None = None, rejected=()):
        self.submitted = []
        self.failures = failures
        self.error = error
        self.rejected = set(rejected)

    def submit(self, notification):
        if self.error is not None:
            raise self.error
        if notification.target.name in self.rejected:
            raise InvalidTargetError(f"namespace gone for {notification.target.key}")
        if self.failures:
            self.failures -= 1
            raise RuntimeError("simulating an event API error")
        self.submitted.append(notification)


class FakeResolver:
    def __init__(self, host_names: dict | None = None, error: Exception | None = None):
        self.host_names = host_names or {}
        self.error = error

    def lookup_addr(self, ip):
        if self.error is not None:
            raise self.error
        return self.host_names.get(ip, [])


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock(NOW)


@pytest.fixture()
def timer() -> FakeTimer:
    return FakeTimer()


@pytest.fixture()
def config() -> Config:
    return Config(log_prefix=LOG_PREFIX, log_path="/var/log/iptables.log")


@pytest.fixture()
def make_line():
    """Build a packet drop log line in the default layout."""
    def _make(log_time: datetime = NOW, src_ip="1.1.1.1", dst_ip="2.2.2.2",
              prefix=LOG_PREFIX, mac: str | None = None, host="host", extra=()):
        parts = [log_time.strftime(DEFAULT_TIME_LAYOUT), host, prefix, "IN=eth0", "OUT=eth1"]
        if mac is not None:
            parts.append(f"MAC={mac}")
        parts += [f"SRC={src_ip}", f"DST={dst_ip}", "TTL=64", "PROTO=TCP", "SPT=1", "DPT=2"]
        parts += list(extra)
        return " ".join(parts)
    return _make


@pytest.fixture()
def make_drop():
    def _make(log_time: datetime = NOW, src_ip="1.1.1.1", dst_ip="2.2.2.2"):
        return PacketDrop(
            log_time=log_time, host_name="host", src_ip=src_ip, src_port=1,
            dst_ip=dst_ip, dst_port=2, protocol="TCP", in_iface="eth0",
            out_iface="eth1", mac="", ttl=64,
        )
    return _make


@pytest.fixture()
def make_pod():
    def _make(name="web-0", namespace="shop", ip="10.0.0.1", host_network=False,
              node_name="node-a", labels=None, resource_version="1", phase="Running"):
        return WorkloadRecord(
            name=name, namespace=namespace, ip=ip, host_network=host_network,
            node_name=node_name, labels=labels or {"app": "web"}, uid=f"uid-{name}",
            resource_version=resource_version, phase=phase,
        )
    return _make
