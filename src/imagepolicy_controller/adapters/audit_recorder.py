"""Audit signal recorder backed by Kubernetes Events.

Each audit signal is logged and posted as a core/v1 Event whose
involvedObject is the ImagePolicy, so `kubectl describe imagepolicy` shows
non-compliance detections and remediation outcomes. Event delivery is best
effort: a failed post is logged and does not fail the reconciliation cycle.
"""

from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from imagepolicy_controller.adapters.kubernetes import KubernetesClient
from imagepolicy_controller.core.models import ImagePolicy
from imagepolicy_controller.errors import ClusterAPIError
from imagepolicy_controller.observability import get_logger

logger = get_logger(__name__)

_DEFAULT_COMPONENT = "imagepolicy-controller"


class KubernetesEventRecorder:
    """IAuditRecorder that emits Kubernetes Events on the policy object.

    Args:
        client: Kubernetes client used to create events.
        component: Reporting component name.
        clock: Returns the current UTC time.
    """

    def __init__(
        self,
        client: KubernetesClient,
        component: str = _DEFAULT_COMPONENT,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._client = client
        self._component = component
        self._clock = clock or (lambda: datetime.now(UTC))

    def _build_event(self, policy: ImagePolicy, event_type: str, reason: str, message: str) -> dict[str, Any]:
        timestamp = self._clock().strftime("%Y-%m-%dT%H:%M:%SZ")
        return {
            "apiVersion": "v1",
            "kind": "Event",
            "metadata": {
                "generateName": f"{policy.metadata.name}.",
                "namespace": policy.metadata.namespace,
            },
            "involvedObject": {
                "apiVersion": policy.api_version,
                "kind": policy.kind,
                "name": policy.metadata.name,
                "namespace": policy.metadata.namespace,
                "uid": policy.metadata.uid,
                "resourceVersion": policy.metadata.resource_version,
            },
            "type": event_type,
            "reason": reason,
            "message": message,
            "source": {"component": self._component},
            "reportingComponent": self._component,
            "firstTimestamp": timestamp,
            "lastTimestamp": timestamp,
            "count": 1,
        }

    async def record(self, policy: ImagePolicy, event_type: str, reason: str, message: str) -> None:
        """Log the signal and post it as an Event.

        Args:
            policy: The policy the signal concerns.
            event_type: Normal or Warning.
            reason: CamelCase reason, e.g. NonCompliantImage.
            message: Human-readable description.
        """
        logger.info(
            "Audit event",
            policy=policy.key,
            event_type=event_type,
            reason=reason,
            message=message,
        )
        try:
            await self._client.create_event(
                policy.metadata.namespace,
                self._build_event(policy, event_type, reason, message),
            )
        except ClusterAPIError as exc:
            logger.warning("Failed to record audit event", policy=policy.key, reason=reason, error=str(exc))
