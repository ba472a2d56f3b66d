"""PodLocator: an IP-indexed cache of running pods kept in sync with the Kubernetes API.

A background thread lists all running pods, then watches for changes from the
list's resourceVersion. Lookups read the index under a short lock and never
wait for the sync thread.
"""

import itertools
import logging
import socket
import threading
from dataclasses import dataclass

from kubernetes import watch
from kubernetes.client.rest import ApiException

from iptables_tailer.errors import CacheSyncTimeoutError
from iptables_tailer.models import WorkloadRecord

logger = logging.getLogger(__name__)

RUNNING_PODS_SELECTOR = "status.phase=Running"

HTTP_GONE = 410


@dataclass(frozen=True)
class IndexEntry:
    owner: str
    record: WorkloadRecord
    version: int


class PodIndex:
    """ip -> IndexEntry. An entry is only replaced by a write that is not older."""

    def __init__(self):
        self._lock = threading.Lock()
        self._by_ip: dict[str, IndexEntry] = {}
        self._by_owner: dict[str, str] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._by_ip)

    def get(self, ip: str) -> WorkloadRecord | None:
        with self._lock:
            entry = self._by_ip.get(ip)
        return entry.record if entry is not None else None

    def entry(self, ip: str) -> IndexEntry | None:
        with self._lock:
            return self._by_ip.get(ip)

    def apply(self, record: WorkloadRecord, version: int) -> bool:
        """Index an added or updated pod. Returns True if the index changed."""
        if record.phase != "Running" or not record.ip:
            return self.remove(record, version)
        with self._lock:
            return self._apply_locked(record, version)

    def _apply_locked(self, record: WorkloadRecord, version: int) -> bool:
        current = self._by_ip.get(record.ip)
        if current is not None and current.version > version:
            logger.debug("Skipping stale update: pod=%s, version=%d < %d",
                         record.key, version, current.version)
            return False

        old_ip = self._by_owner.get(record.key)
        old = self._by_ip.get(old_ip) if old_ip is not None and old_ip != record.ip else None
        if old is not None and old.owner == record.key:
            if old.version > version:
                logger.debug("Skipping stale update: pod=%s, ip=%s, version=%d < %d",
                             record.key, record.ip, version, old.version)
                return False
            del self._by_ip[old_ip]

        if current is not None and current.owner != record.key:
            if self._by_owner.get(current.owner) == record.ip:
                del self._by_owner[current.owner]

        self._by_ip[record.ip] = IndexEntry(owner=record.key, record=record, version=version)
        self._by_owner[record.key] = record.ip
        return True

    def remove(self, record: WorkloadRecord, version: int) -> bool:
        """Clear the entry owned by a deleted pod, unless a newer write replaced it."""
        with self._lock:
            ip = self._by_owner.get(record.key)
            if ip is None:
                return False
            entry = self._by_ip.get(ip)
            if entry is not None and entry.owner == record.key:
                if entry.version > version:
                    return False
                del self._by_ip[ip]
            del self._by_owner[record.key]
            return True

    def replace_all(self, items):
        """Swap in a fresh index built from (record, version) pairs."""
        fresh = PodIndex()
        for record, version in items:
            fresh.apply(record, version)
        with self._lock:
            self._by_ip = fresh._by_ip
            self._by_owner = fresh._by_owner


def record_from_pod(pod) -> WorkloadRecord:
    meta = pod.metadata
    spec = pod.spec
    status = pod.status
    return WorkloadRecord(
        name=meta.name or "",
        namespace=meta.namespace or "",
        ip=(status.pod_ip if status else None) or "",
        host_network=bool(spec.host_network) if spec else False,
        node_name=(spec.node_name if spec else None) or "",
        labels=meta.labels or {},
        uid=meta.uid or "",
        resource_version=meta.resource_version or "",
        phase=(status.phase if status else None) or "",
    )


class PodLocator:
    def __init__(
        self,
        core_api,
        shutdown_event: threading.Event,
        sync_timeout: float = 60.0,
        watch_factory=None,
        watch_timeout_seconds: int = 300,
        field_selector: str = RUNNING_PODS_SELECTOR,
        retry_interval: float = 5.0,
    ):
        self._core_api = core_api
        self._shutdown = shutdown_event
        self._sync_timeout = sync_timeout
        self._watch_factory = watch_factory or watch.Watch
        self._watch_timeout_seconds = watch_timeout_seconds
        self._field_selector = field_selector
        self._retry_interval = retry_interval
        self._index = PodIndex()
        self._synced = threading.Event()
        self._fallback_versions = itertools.count(1)
        self._thread: threading.Thread | None = None

    @property
    def index(self) -> PodIndex:
        return self._index

    @property
    def synced(self) -> bool:
        return self._synced.is_set()

    def run(self):
        """Start the sync thread and block until the first list has been indexed."""
        if self._thread is None:
            self._thread = threading.Thread(target=self._sync_loop, daemon=True, name="pod-locator")
            self._thread.start()
        if not self._synced.wait(self._sync_timeout):
            raise CacheSyncTimeoutError(
                f"Timed out waiting for pod cache to sync after {self._sync_timeout}s"
            )
        logger.info("Pod cache synced: %d pod IPs indexed", len(self._index))

    def locate(self, ip: str) -> WorkloadRecord | None:
        record = self._index.get(ip)
        if record is None:
            logger.warning("Pod not found: ip=%s", ip)
        return record

    def _sync_loop(self):
        resource_version = None
        while not self._shutdown.is_set():
            try:
                if resource_version is None:
                    resource_version = self.list_pods()
                resource_version = self.watch_pods(resource_version)
            except ApiException as e:
                if e.status == HTTP_GONE:
                    logger.info("Pod watch expired (410 Gone), relisting")
                    resource_version = None
                    continue
                logger.error("Pod sync failed: status=%s, reason=%s", e.status, e.reason)
                self._shutdown.wait(self._retry_interval)
            except Exception:
                logger.exception("Pod sync failed, retrying in %.1fs", self._retry_interval)
                self._shutdown.wait(self._retry_interval)
        logger.info("Pod locator stopped")

    def list_pods(self) -> str:
        """List all running pods into a fresh index. Returns the list resourceVersion."""
        pod_list = self._core_api.list_pod_for_all_namespaces(field_selector=self._field_selector)
        records = [record_from_pod(pod) for pod in pod_list.items]
        self._index.replace_all((r, self._version(r)) for r in records)
        self._synced.set()
        resource_version = pod_list.metadata.resource_version
        logger.info("Listed %d running pods (resourceVersion=%s)", len(records), resource_version)
        return resource_version

    def watch_pods(self, resource_version: str) -> str:
        """Apply watch events until the watch times out. Returns the last seen resourceVersion."""
        w = self._watch_factory()
        stream = w.stream(
            self._core_api.list_pod_for_all_namespaces,
            field_selector=self._field_selector,
            resource_version=resource_version,
            timeout_seconds=self._watch_timeout_seconds,
        )
        for event in stream:
            resource_version = self.handle_event(event) or resource_version
            if self._shutdown.is_set():
                w.stop()
                break
        return resource_version

    def handle_event(self, event: dict) -> str | None:
        """Apply one watch event to the index. Returns its resourceVersion, if any."""
        kind = event.get("type")
        if kind == "ERROR":
            raw = event.get("raw_object") or {}
            if isinstance(raw, dict) and raw.get("code") == HTTP_GONE:
                raise ApiException(status=HTTP_GONE, reason=raw.get("reason", "Gone"))
            logger.error("Pod watch error: %s", raw)
            return None
        if kind not in ("ADDED", "MODIFIED", "DELETED"):
            return None

        record = record_from_pod(event["object"])
        version = self._version(record)
        if kind == "DELETED":
            self._index.remove(record, version)
        else:
            self._index.apply(record, version)
        logger.debug("%s pod: name=%s, ip=%s, version=%d", kind, record.key, record.ip, version)
        return record.resource_version or None

    def _version(self, record: WorkloadRecord) -> int:
        if record.resource_version.isdigit():
            return int(record.resource_version)
        return next(self._fallback_versions)


class DnsResolver:
    def lookup_addr(self, ip: str) -> list[str]:
        hostname, aliases, _ = socket.gethostbyaddr(ip)
        return [hostname, *aliases]


def host_name_for(ip: str, resolver) -> str:
    """Reverse-resolve ip; fall back to the IP itself."""
    try:
        names = resolver.lookup_addr(ip)
    except OSError as e:
        logger.error("Unable to resolve address: ip=%s, error=%s", ip, e)
        return ip
    return names[0] if names else ip


def identity_for(record: WorkloadRecord | None, ip: str, identifier: str,
                 label_key: str, resolver) -> str:
    """Name one end of a packet drop.

    1. Pods not using host networking are named by the configured identifier.
    2. Host-network pods are named by their node, since several pods may share
       the node IP.
    3. Anything else is reverse-resolved, or left as the bare IP.
    """
    if record is not None:
        if not record.host_network:
            if identifier == "name":
                return record.name
            if identifier == "label":
                return record.labels.get(label_key, record.name)
            if identifier == "namespace/name":
                return record.key
            return record.namespace
        if record.node_name:
            return record.node_name
    return host_name_for(ip, resolver)
