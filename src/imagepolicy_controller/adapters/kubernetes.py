"""Kubernetes API client over the REST interface.

Implements IPolicyStore and IWorkloadClient, plus event creation for the
audit recorder, against the API server's REST endpoints:

- ImagePolicies:  /apis/security.chainguard.dev/v1/.../imagepolicies
- Namespaces:     /api/v1/namespaces
- Deployments:    /apis/apps/v1/namespaces/{ns}/deployments
- Events:         /api/v1/namespaces/{ns}/events

Label selectors are passed through as the `labelSelector` query parameter;
the API server evaluates them. Status is replaced through the `/status`
subresource with the resourceVersion read at the start of the cycle, so a
concurrent writer causes a ConflictError rather than a lost update.
"""

import copy
from pathlib import Path
from typing import Any

import httpx
from pydantic import ValidationError

from imagepolicy_controller.core.models import (
    API_GROUP,
    API_VERSION,
    Container,
    ImagePolicy,
    ImagePolicyStatus,
    Workload,
)
from imagepolicy_controller.errors import (
    ClusterAPIError,
    ConflictError,
    NotFoundError,
    PolicyValidationError,
)
from imagepolicy_controller.observability import get_logger
from imagepolicy_controller.settings import Settings

logger = get_logger(__name__)

_POLICY_PLURAL = "imagepolicies"


def workload_from_deployment(obj: dict[str, Any]) -> Workload:
    """Build a Workload from a Deployment object returned by the API server."""
    metadata = obj.get("metadata") or {}
    pod_spec = ((obj.get("spec") or {}).get("template") or {}).get("spec") or {}
    containers = [
        Container(name=c.get("name", ""), image=c.get("image", ""))
        for c in pod_spec.get("containers") or []
    ]
    return Workload(
        name=metadata.get("name", ""),
        namespace=metadata.get("namespace", ""),
        labels=metadata.get("labels") or {},
        containers=containers,
        resource_version=metadata.get("resourceVersion", ""),
        manifest=obj,
    )


def deployment_from_workload(workload: Workload) -> dict[str, Any]:
    """Apply a Workload's container images onto a copy of its Deployment object."""
    manifest = copy.deepcopy(workload.manifest)
    images = {container.name: container.image for container in workload.containers}
    pod_spec = manifest.setdefault("spec", {}).setdefault("template", {}).setdefault("spec", {})
    for container in pod_spec.get("containers") or []:
        if container.get("name") in images:
            container["image"] = images[container["name"]]
    return manifest


class KubernetesClient:
    """Async REST client for the resources the controller reads and writes.

    Args:
        api_url: API server base URL.
        token: Bearer token, or None for unauthenticated access (local proxies).
        verify: TLS verification flag or CA bundle path.
        timeout_seconds: Per-request timeout.
        transport: Optional httpx transport (tests use httpx.MockTransport).
    """

    def __init__(
        self,
        api_url: str,
        token: str | None = None,
        verify: bool | str = True,
        timeout_seconds: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._client = httpx.AsyncClient(
            base_url=api_url.rstrip("/"),
            headers=headers,
            verify=verify,
            timeout=timeout_seconds,
            transport=transport,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "KubernetesClient":
        """Build a client from in-cluster service account files and settings.

        Args:
            settings: Service settings.

        Returns:
            A configured KubernetesClient.
        """
        token_path = Path(settings.kube_token_path)
        token = token_path.read_text().strip() if token_path.is_file() else None

        verify: bool | str = settings.kube_verify_ssl
        ca_path = Path(settings.kube_ca_path)
        if settings.kube_verify_ssl and ca_path.is_file():
            verify = str(ca_path)

        return cls(
            api_url=settings.kube_api_url,
            token=token,
            verify=verify,
            timeout_seconds=settings.kube_timeout_seconds,
        )

    async def close(self) -> None:
        """Close the underlying HTTP connection pool."""
        await self._client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        params: dict[str, str] | None = None,
        json: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        try:
            response = await self._client.request(method, path, params=params, json=json)
        except httpx.TimeoutException as exc:
            raise ClusterAPIError(f"{method} {path} timed out") from exc
        except httpx.RequestError as exc:
            raise ClusterAPIError(f"{method} {path} failed: {exc}") from exc

        if response.status_code == 404:
            raise NotFoundError(f"{method} {path}: not found", status_code=404)
        if response.status_code == 409:
            raise ConflictError(f"{method} {path}: conflict: {response.text[:200]}", status_code=409)
        if response.status_code >= 400:
            raise ClusterAPIError(
                f"{method} {path} returned status {response.status_code}: {response.text[:300]}",
                status_code=response.status_code,
            )
        try:
            return response.json()
        except ValueError as exc:
            raise ClusterAPIError(f"{method} {path}: undecodable response: {exc}") from exc

    # -------------------------------------------------------------------------
    # IPolicyStore
    # -------------------------------------------------------------------------

    @staticmethod
    def _policy_path(namespace: str, name: str | None = None) -> str:
        path = f"/apis/{API_GROUP}/{API_VERSION}/namespaces/{namespace}/{_POLICY_PLURAL}"
        return f"{path}/{name}" if name else path

    @staticmethod
    def _parse_policy(obj: dict[str, Any]) -> ImagePolicy:
        try:
            return ImagePolicy.model_validate(obj)
        except ValidationError as exc:
            metadata = obj.get("metadata") or {}
            raise PolicyValidationError(
                f"ImagePolicy {metadata.get('namespace')}/{metadata.get('name')} is invalid: {exc}"
            ) from exc

    async def get_policy(self, namespace: str, name: str) -> ImagePolicy:
        """Fetch one ImagePolicy.

        Raises:
            NotFoundError: If the policy does not exist.
            PolicyValidationError: If the stored object does not match the schema.
        """
        obj = await self._request("GET", self._policy_path(namespace, name))
        return self._parse_policy(obj)

    async def list_policies(self, namespace: str | None = None) -> list[ImagePolicy]:
        """List ImagePolicies, skipping objects that fail schema validation."""
        if namespace:
            path = self._policy_path(namespace)
        else:
            path = f"/apis/{API_GROUP}/{API_VERSION}/{_POLICY_PLURAL}"
        body = await self._request("GET", path)

        policies: list[ImagePolicy] = []
        for item in body.get("items") or []:
            try:
                policies.append(self._parse_policy(item))
            except PolicyValidationError as exc:
                logger.warning("Skipping invalid ImagePolicy", error=exc.message)
        return policies

    async def update_policy_status(self, policy: ImagePolicy, status: ImagePolicyStatus) -> ImagePolicy:
        """Replace the status subresource.

        Raises:
            ConflictError: If the policy changed since it was read.
        """
        body = policy.model_copy(update={"status": status}).to_wire()
        obj = await self._request(
            "PUT",
            f"{self._policy_path(policy.metadata.namespace, policy.metadata.name)}/status",
            json=body,
        )
        return self._parse_policy(obj)

    # -------------------------------------------------------------------------
    # IWorkloadClient
    # -------------------------------------------------------------------------

    async def list_namespaces(self, label_selector: str | None = None) -> list[str]:
        """List namespace names, optionally filtered by a label selector string."""
        params = {"labelSelector": label_selector} if label_selector else None
        body = await self._request("GET", "/api/v1/namespaces", params=params)
        return [item["metadata"]["name"] for item in body.get("items") or []]

    async def list_workloads(self, namespace: str, label_selector: str | None = None) -> list[Workload]:
        """List Deployments in a namespace, optionally filtered by a label selector string."""
        params = {"labelSelector": label_selector} if label_selector else None
        body = await self._request("GET", f"/apis/apps/v1/namespaces/{namespace}/deployments", params=params)
        workloads = []
        for item in body.get("items") or []:
            # list responses omit per-item kind/apiVersion; restore them for later PUTs
            item.setdefault("apiVersion", "apps/v1")
            item.setdefault("kind", "Deployment")
            workloads.append(workload_from_deployment(item))
        return workloads

    async def update_workload(self, workload: Workload) -> Workload:
        """PUT the Deployment with the workload's container images."""
        obj = await self._request(
            "PUT",
            f"/apis/apps/v1/namespaces/{workload.namespace}/deployments/{workload.name}",
            json=deployment_from_workload(workload),
        )
        return workload_from_deployment(obj)

    # -------------------------------------------------------------------------
    # Events
    # -------------------------------------------------------------------------

    async def create_event(self, namespace: str, event: dict[str, Any]) -> dict[str, Any]:
        """Create a core/v1 Event in a namespace."""
        return await self._request("POST", f"/api/v1/namespaces/{namespace}/events", json=event)
