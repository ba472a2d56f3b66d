"""Value types passed between the watcher, parser, locator and poster."""

from dataclasses import dataclass, field, fields
from datetime import datetime, timedelta
from types import MappingProxyType
from typing import Mapping


@dataclass(frozen=True)
class PacketDrop:
    """One dropped packet parsed from a single iptables log line."""

    log_time: datetime   # timezone-aware
    host_name: str
    src_ip: str
    src_port: int
    dst_ip: str
    dst_port: int
    protocol: str
    in_iface: str
    out_iface: str
    mac: str             # "" when the log line carries no MAC
    ttl: int

    @property
    def dedup_key(self) -> tuple[str, str]:
        return (self.src_ip, self.dst_ip)

    def is_expired(self, now: datetime, expiration: timedelta) -> bool:
        return now - self.log_time > expiration


# A log line needs at least this many tokens (timestamp counted as one).
PACKET_DROP_FIELD_COUNT = len(fields(PacketDrop))


@dataclass(frozen=True)
class WorkloadRecord:
    """Identity of a running pod as seen by the pod cache."""

    name: str
    namespace: str
    ip: str
    host_network: bool = False
    node_name: str = ""
    labels: Mapping[str, str] = field(default_factory=dict, hash=False)
    uid: str = ""
    resource_version: str = ""
    phase: str = "Running"

    def __post_init__(self):
        object.__setattr__(self, "labels", MappingProxyType(dict(self.labels or {})))

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.name}"


@dataclass(frozen=True)
class Notification:
    target: WorkloadRecord
    event_type: str
    reason: str
    message: str
