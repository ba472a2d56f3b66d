"""KubeEventSink: submits packet drop notifications as Kubernetes Events on the affected pod."""

import logging
from datetime import datetime, timezone

from kubernetes import client
from kubernetes.client.rest import ApiException

from iptables_tailer.errors import InvalidTargetError
from iptables_tailer.models import Notification

logger = logging.getLogger(__name__)

EVENT_TYPE_WARNING = "Warning"

# API answers that mean the event itself is unacceptable, not that the API is down
_PERMANENT_STATUSES = (400, 404, 422)


class KubeEventSink:
    def __init__(self, core_api, component: str, host: str | None = None):
        self._core_api = core_api
        self._component = component
        self._host = host

    def build_event(self, notification: Notification) -> "client.CoreV1Event":
        target = notification.target
        if not target.name or not target.namespace:
            raise InvalidTargetError(f"Cannot reference pod without name/namespace: {target}")
        now = datetime.now(timezone.utc)
        return client.CoreV1Event(
            metadata=client.V1ObjectMeta(generate_name=f"{target.name}.", namespace=target.namespace),
            involved_object=client.V1ObjectReference(
                api_version="v1",
                kind="Pod",
                name=target.name,
                namespace=target.namespace,
                uid=target.uid or None,
                resource_version=target.resource_version or None,
            ),
            type=notification.event_type,
            reason=notification.reason,
            message=notification.message,
            source=client.V1EventSource(component=self._component, host=self._host),
            first_timestamp=now,
            last_timestamp=now,
            count=1,
        )

    def submit(self, notification: Notification):
        """Create the event. Raises InvalidTargetError for permanent rejections."""
        event = self.build_event(notification)
        target = notification.target
        try:
            self._core_api.create_namespaced_event(target.namespace, event)
        except ApiException as e:
            if e.status in _PERMANENT_STATUSES:
                raise InvalidTargetError(
                    f"Event rejected for pod={target.key}: status={e.status}, reason={e.reason}"
                ) from e
            raise
        logger.info("Submitted event: pod=%s, message=%s", target.key, notification.message)
