"""Test fixtures for imagepolicy-controller.

Provides:
- fixed_now: A deterministic UTC timestamp for clock injection
- mock_registry_client: A mock IRegistryClient returning LATEST_DIGEST
- mock_workload_client: A mock IWorkloadClient capturing list/update calls
- mock_policy_store: A mock IPolicyStore capturing status writes
- mock_audit_recorder: A mock IAuditRecorder capturing audit signals
- mock_verifier: A mock IAttestationVerifier returning a verified result
- make_fake_policy / make_fake_workload / make_fake_status: model builders
"""

from datetime import UTC, datetime
from typing import Any
from unittest.mock import AsyncMock

import pytest

from imagepolicy_controller.core.models import (
    AttestationPolicy,
    AttestationResult,
    Container,
    ImagePolicy,
    ImagePolicySpec,
    ImagePolicyStatus,
    LabelSelector,
    ObjectMeta,
    Workload,
    WorkloadStatus,
)

REPOSITORY = "acme/app"
LATEST_DIGEST = "sha256:" + "a" * 64
OLD_DIGEST = "sha256:" + "b" * 64
OTHER_DIGEST = "sha256:" + "c" * 64

FIXED_NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=UTC)


@pytest.fixture()
def fixed_now() -> datetime:
    """Return a fixed UTC timestamp for consistent time-based assertions.

    Returns:
        The deterministic current time used by injected clocks.
    """
    return FIXED_NOW


@pytest.fixture()
def mock_registry_client() -> AsyncMock:
    """Create a mock registry client that always resolves LATEST_DIGEST.

    Returns:
        AsyncMock with fetch_latest_digest returning LATEST_DIGEST.
    """
    client = AsyncMock()
    client.fetch_latest_digest.return_value = LATEST_DIGEST
    return client


@pytest.fixture()
def mock_workload_client() -> AsyncMock:
    """Create a mock workload client with one namespace and no workloads.

    Returns:
        AsyncMock whose update_workload echoes its argument.
    """
    client = AsyncMock()
    client.list_namespaces.return_value = ["default"]
    client.list_workloads.return_value = []

    async def _echo(workload: Workload) -> Workload:
        return workload

    client.update_workload.side_effect = _echo
    return client


@pytest.fixture()
def mock_policy_store() -> AsyncMock:
    """Create a mock policy store that captures status writes.

    Returns:
        AsyncMock with update_policy_status returning None.
    """
    store = AsyncMock()
    store.update_policy_status.return_value = None
    store.list_policies.return_value = []
    return store


@pytest.fixture()
def mock_audit_recorder() -> AsyncMock:
    """Create a mock audit recorder that captures record() calls.

    Returns:
        AsyncMock with record returning None.
    """
    recorder = AsyncMock()
    recorder.record.return_value = None
    return recorder


@pytest.fixture()
def mock_verifier() -> AsyncMock:
    """Create a mock attestation verifier that accepts every digest.

    Returns:
        AsyncMock with verify returning a verified slsaprovenance result.
    """
    verifier = AsyncMock()
    verifier.verify.return_value = AttestationResult(
        verified=True,
        attestation_type="slsaprovenance",
        issuer="https://token.actions.githubusercontent.com",
        log_index=12345,
        timestamp=FIXED_NOW,
    )
    return verifier


def make_fake_policy(
    name: str = "app-policy",
    namespace: str = "default",
    repository: str = REPOSITORY,
    enforce_latest_digest: bool = True,
    check_interval_seconds: int = 60,
    attestation_policy: AttestationPolicy | None = None,
    namespace_selector: LabelSelector | None = None,
    deployment_selector: LabelSelector | None = None,
    status: ImagePolicyStatus | None = None,
    generation: int | None = 1,
) -> ImagePolicy:
    """Build an ImagePolicy for tests.

    Args:
        name: Policy name.
        namespace: Policy namespace.
        repository: Monitored repository.
        enforce_latest_digest: Enforcement flag.
        check_interval_seconds: Refresh interval.
        attestation_policy: Optional attestation requirements.
        namespace_selector: Optional namespace selector.
        deployment_selector: Optional deployment selector.
        status: Stored status; empty when omitted.
        generation: metadata.generation.

    Returns:
        An ImagePolicy instance.
    """
    return ImagePolicy(
        metadata=ObjectMeta(
            name=name,
            namespace=namespace,
            uid="11111111-2222-3333-4444-555555555555",
            resource_version="100",
            generation=generation,
        ),
        spec=ImagePolicySpec(
            repository=repository,
            namespace_selector=namespace_selector,
            deployment_selector=deployment_selector,
            check_interval_seconds=check_interval_seconds,
            enforce_latest_digest=enforce_latest_digest,
            attestation_policy=attestation_policy,
        ),
        status=status or ImagePolicyStatus(),
    )


def make_fake_workload(
    name: str = "web",
    namespace: str = "default",
    images: list[str] | None = None,
    labels: dict[str, str] | None = None,
) -> Workload:
    """Build a Workload whose manifest mirrors its containers.

    Args:
        name: Deployment name.
        namespace: Deployment namespace.
        images: Container images in order; one image of REPOSITORY at LATEST_DIGEST when omitted.
        labels: Deployment labels.

    Returns:
        A Workload instance.
    """
    images = images if images is not None else [f"{REPOSITORY}@{LATEST_DIGEST}"]
    containers = [Container(name=f"c{index}", image=image) for index, image in enumerate(images)]
    manifest: dict[str, Any] = {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": {
            "name": name,
            "namespace": namespace,
            "labels": labels or {},
            "resourceVersion": "7",
        },
        "spec": {
            "template": {
                "spec": {"containers": [{"name": c.name, "image": c.image} for c in containers]},
            },
        },
    }
    return Workload(
        name=name,
        namespace=namespace,
        labels=labels or {},
        containers=containers,
        resource_version="7",
        manifest=manifest,
    )


def make_fake_status(
    name: str = "web",
    namespace: str = "default",
    is_compliant: bool = True,
    current_digest: str = LATEST_DIGEST,
) -> WorkloadStatus:
    """Build a WorkloadStatus for tests.

    Args:
        name: Deployment name.
        namespace: Deployment namespace.
        is_compliant: Verdict.
        current_digest: Observed digest.

    Returns:
        A WorkloadStatus instance.
    """
    return WorkloadStatus(
        name=name,
        namespace=namespace,
        current_digest=current_digest,
        is_compliant=is_compliant,
        last_updated=FIXED_NOW,
    )
