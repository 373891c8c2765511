"""Abstract interfaces (Protocol classes) for the image policy controller.

Defines the contracts between the reconciliation services and the adapter
layer using typing.Protocol. Services depend on these protocols, never on
concrete adapters, so tests substitute AsyncMock fakes.

Protocols defined:
- IRegistryClient
- ITransparencyLog
- IAttestationVerifier
- IPolicyStore
- IWorkloadClient
- IAuditRecorder
"""

from collections.abc import Collection
from datetime import timedelta
from typing import Protocol

from imagepolicy_controller.core.models import (
    AttestationResult,
    ImagePolicy,
    ImagePolicyStatus,
    TransparencyLogEntry,
    Workload,
)


class IRegistryClient(Protocol):
    """Single-attempt digest lookup against a container registry."""

    async def fetch_latest_digest(self, repository: str) -> str:
        """Fetch the digest of the repository's `latest` tag.

        Args:
            repository: Repository in owner/name form.

        Returns:
            The digest from the Docker-Content-Digest header.

        Raises:
            TransientRegistryError: If the registry answered 429.
            PermanentRegistryError: On any other failure.
        """
        ...


class ITransparencyLog(Protocol):
    """Lookup of transparency-log entries by subject digest."""

    async def search_entries(self, digest: str) -> list[TransparencyLogEntry]:
        """Return log entries whose in-toto subject matches the digest.

        Args:
            digest: Image digest in sha256:<hex> form.

        Returns:
            Matching entries, possibly empty.
        """
        ...


class IAttestationVerifier(Protocol):
    """Checks cryptographic provenance for a digest against policy constraints."""

    async def verify(
        self,
        digest: str,
        allowed_issuers: Collection[str],
        required_types: Collection[str],
        max_age: timedelta | None = None,
    ) -> AttestationResult:
        """Verify that an accepted attestation exists for the digest.

        Args:
            digest: Image digest in sha256:<hex> form.
            allowed_issuers: Accepted OIDC issuers; empty accepts any.
            required_types: Accepted attestation types; empty accepts any.
            max_age: Optional maximum age of the accepted entry.

        Returns:
            An AttestationResult. Never raises for verification failures.
        """
        ...


class IPolicyStore(Protocol):
    """Read access to ImagePolicy resources and write access to their status."""

    async def get_policy(self, namespace: str, name: str) -> ImagePolicy:
        """Fetch one policy.

        Raises:
            NotFoundError: If the policy does not exist.
        """
        ...

    async def list_policies(self, namespace: str | None = None) -> list[ImagePolicy]:
        """List policies in a namespace, or across all namespaces when None."""
        ...

    async def update_policy_status(self, policy: ImagePolicy, status: ImagePolicyStatus) -> ImagePolicy:
        """Replace the status subresource of a policy.

        Args:
            policy: The policy as loaded at the start of the cycle.
            status: The complete new status.

        Returns:
            The policy as stored after the write.
        """
        ...


class IWorkloadClient(Protocol):
    """Namespace and workload listing plus workload mutation."""

    async def list_namespaces(self, label_selector: str | None = None) -> list[str]:
        """List namespace names, optionally restricted by a label selector string."""
        ...

    async def list_workloads(self, namespace: str, label_selector: str | None = None) -> list[Workload]:
        """List Deployments in a namespace, optionally restricted by a label selector string."""
        ...

    async def update_workload(self, workload: Workload) -> Workload:
        """Apply a workload's container images to the cluster.

        Raises:
            ClusterAPIError: If the API server rejects the update.
        """
        ...


class IAuditRecorder(Protocol):
    """Structured audit signal sink."""

    async def record(self, policy: ImagePolicy, event_type: str, reason: str, message: str) -> None:
        """Emit one audit signal about a policy.

        Args:
            policy: The policy the signal concerns.
            event_type: Normal or Warning.
            reason: CamelCase machine-readable reason.
            message: Human-readable description.
        """
        ...
