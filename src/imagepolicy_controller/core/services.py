"""Core services of the reconciliation cycle.

Four service classes:
- DigestResolver: latest-digest lookup with rate-limit-aware retry
- WorkloadScanner: namespace and Deployment discovery filtered by repository
- ComplianceAnalyzer: per-workload digest and attestation verdicts
- RemediationActuator: rewrites opted-in workloads to the latest digest

The services accept injected adapters through their constructors and contain
no framework code. ReconciliationService (reconciler.py) composes them into
one cycle.
"""

import asyncio
import time
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime

from imagepolicy_controller.core.attestation import parse_duration
from imagepolicy_controller.core.backoff import RetryExhaustedError, retry_async
from imagepolicy_controller.core.images import (
    DEFAULT_REGISTRY_PREFIX,
    extract_digest,
    matched_prefix,
    matches_repository,
    pin_to_digest,
)
from imagepolicy_controller.core.interfaces import (
    IAttestationVerifier,
    IRegistryClient,
    IWorkloadClient,
)
from imagepolicy_controller.core.models import (
    TAG_BASED,
    AttestationDetails,
    AttestationPolicy,
    AttestationResult,
    Container,
    ImagePolicy,
    Workload,
    WorkloadStatus,
)
from imagepolicy_controller.core.selectors import to_selector_string
from imagepolicy_controller.errors import (
    ClusterAPIError,
    RateLimitExhaustedError,
    TransientRegistryError,
    WorkloadUpdateError,
)
from imagepolicy_controller.observability import get_logger

logger = get_logger(__name__)

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BASE_DELAY_SECONDS = 5.0


def _is_rate_limited(exc: Exception) -> bool:
    return isinstance(exc, TransientRegistryError)


class DigestResolver:
    """Resolves the latest trusted digest for a repository.

    Only HTTP 429 responses are retried: up to `max_attempts` total attempts
    with linear backoff (0s, base_delay, 2 * base_delay, ...). When every
    attempt is throttled the repository enters a cooldown so concurrent cycles
    of other policies watching the same repository fail fast instead of adding
    load; other repositories are unaffected.

    Args:
        registry_client: Single-attempt registry client.
        max_attempts: Total attempts on persistent 429.
        base_delay: Linear backoff step in seconds.
        sleep: Awaitable sleep, injectable for tests.
        clock: Monotonic clock in seconds, injectable for tests.
    """

    def __init__(
        self,
        registry_client: IRegistryClient,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        base_delay: float = DEFAULT_BASE_DELAY_SECONDS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._registry_client = registry_client
        self._max_attempts = max_attempts
        self._base_delay = base_delay
        self._sleep = sleep
        self._clock = clock
        self._cooldown_until: dict[str, float] = {}

    async def resolve(self, repository: str) -> str:
        """Resolve the digest of the repository's `latest` tag.

        Args:
            repository: Repository in owner/name form.

        Returns:
            The digest in sha256:<hex> form.

        Raises:
            RateLimitExhaustedError: If every attempt was throttled, or the
                repository is still cooling down from an earlier exhaustion.
            PermanentRegistryError: On any non-retryable failure.
        """
        cooldown_until = self._cooldown_until.get(repository)
        if cooldown_until is not None:
            remaining = cooldown_until - self._clock()
            if remaining > 0:
                raise RateLimitExhaustedError(
                    repository,
                    attempts=0,
                    message=f"repository {repository} is rate limited for another {remaining:.1f}s",
                )
            del self._cooldown_until[repository]

        try:
            digest = await retry_async(
                lambda: self._registry_client.fetch_latest_digest(repository),
                max_attempts=self._max_attempts,
                base_delay=self._base_delay,
                is_retryable=_is_rate_limited,
                sleep=self._sleep,
                description=f"resolve digest {repository}",
            )
        except RetryExhaustedError as exc:
            retry_after = getattr(exc.last_error, "retry_after", None)
            cooldown = retry_after if retry_after else self._base_delay * self._max_attempts
            self._cooldown_until[repository] = self._clock() + cooldown
            logger.warning(
                "Registry rate limit exhausted",
                repository=repository,
                attempts=exc.attempts,
                cooldown_seconds=cooldown,
            )
            raise RateLimitExhaustedError(repository, exc.attempts) from exc

        logger.info("Resolved latest digest", repository=repository, digest=digest)
        return digest


class WorkloadScanner:
    """Enumerates Deployments that use images from a policy's repository.

    Args:
        workload_client: Cluster client for namespace and Deployment listing.
        registry_prefix: Default-registry prefix accepted on image references.
    """

    def __init__(
        self,
        workload_client: IWorkloadClient,
        registry_prefix: str = DEFAULT_REGISTRY_PREFIX,
    ) -> None:
        self._workload_client = workload_client
        self._registry_prefix = registry_prefix

    def uses_repository(self, workload: Workload, repository: str) -> bool:
        """Return True if any container image belongs to the repository."""
        return any(
            matches_repository(container.image, repository, self._registry_prefix)
            for container in workload.containers
        )

    async def scan(self, policy: ImagePolicy) -> list[Workload]:
        """Find candidate workloads for a policy.

        Without a namespace selector every namespace is scanned; otherwise
        only namespaces whose labels satisfy it. Deployments are narrowed by
        the deployment selector when present.

        Args:
            policy: The ImagePolicy being reconciled.

        Returns:
            Workloads with at least one container from the repository, in
            namespace listing order.

        Raises:
            SelectorError: If either selector is malformed.
        """
        spec = policy.spec
        namespace_selector = to_selector_string(spec.namespace_selector)
        deployment_selector = to_selector_string(spec.deployment_selector)

        namespaces = await self._workload_client.list_namespaces(namespace_selector)

        candidates: list[Workload] = []
        for namespace in namespaces:
            workloads = await self._workload_client.list_workloads(namespace, deployment_selector)
            candidates.extend(w for w in workloads if self.uses_repository(w, spec.repository))

        logger.debug(
            "Workload scan complete",
            policy=policy.key,
            namespaces=len(namespaces),
            candidates=len(candidates),
        )
        return candidates


class ComplianceAnalyzer:
    """Classifies a workload's image reference into a compliance verdict.

    The first container matching the repository decides the digest verdict.
    When the policy requires attestations, the verifier verdict is ANDed in;
    tag-based and digest-less references fail attestation without a lookup.

    Args:
        verifier: Attestation verifier (present or unavailable variant).
        registry_prefix: Default-registry prefix accepted on image references.
        clock: Returns the current UTC time.
    """

    def __init__(
        self,
        verifier: IAttestationVerifier,
        registry_prefix: str = DEFAULT_REGISTRY_PREFIX,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._verifier = verifier
        self._registry_prefix = registry_prefix
        self._clock = clock or (lambda: datetime.now(UTC))

    async def analyze(
        self,
        workload: Workload,
        repository: str,
        latest_digest: str,
        enforce_latest_digest: bool,
        attestation_policy: AttestationPolicy | None = None,
    ) -> WorkloadStatus:
        """Compute the compliance verdict of one workload.

        Args:
            workload: The scanned Deployment.
            repository: Monitored repository.
            latest_digest: Latest known digest; empty when never resolved.
            enforce_latest_digest: Whether outdated or tag references are non-compliant.
            attestation_policy: Optional attestation requirements.

        Returns:
            A fresh WorkloadStatus.
        """
        now = self._clock()
        current_digest = ""
        is_compliant = True

        for container in workload.containers:
            if not matches_repository(container.image, repository, self._registry_prefix):
                continue
            digest = extract_digest(container.image)
            if digest is None:
                current_digest = TAG_BASED
                is_compliant = not enforce_latest_digest
            else:
                current_digest = digest
                if enforce_latest_digest:
                    is_compliant = self._digest_verdict(workload, digest, latest_digest)
            break

        has_valid_attestation: bool | None = None
        attestation_details: AttestationDetails | None = None

        if attestation_policy is not None and attestation_policy.require_attestation:
            result = await self._verify_attestation(current_digest, attestation_policy)
            has_valid_attestation = result.verified
            attestation_details = AttestationDetails(
                verified=result.verified,
                attestation_type=result.attestation_type,
                issuer=result.issuer,
                rekor_log_index=result.log_index if result.log_index > 0 else None,
                last_checked=now,
                error=result.error,
            )
            if not result.verified:
                logger.info(
                    "Attestation verification failed",
                    deployment=workload.name,
                    namespace=workload.namespace,
                    digest=current_digest,
                    error=result.error,
                )
                is_compliant = False

        return WorkloadStatus(
            name=workload.name,
            namespace=workload.namespace,
            current_digest=current_digest,
            is_compliant=is_compliant,
            has_valid_attestation=has_valid_attestation,
            attestation_details=attestation_details,
            last_updated=now,
        )

    @staticmethod
    def _digest_verdict(workload: Workload, digest: str, latest_digest: str) -> bool:
        if not latest_digest:
            # cannot verify without a latest digest; fail closed
            logger.info(
                "Cannot determine compliance - latest digest unavailable",
                deployment=workload.name,
                namespace=workload.namespace,
                current_digest=digest,
            )
            return False
        if digest != latest_digest:
            logger.info(
                "Digest mismatch detected",
                deployment=workload.name,
                namespace=workload.namespace,
                current_digest=digest,
                latest_digest=latest_digest,
            )
            return False
        return True

    async def _verify_attestation(
        self,
        current_digest: str,
        attestation_policy: AttestationPolicy,
    ) -> AttestationResult:
        if current_digest in (TAG_BASED, ""):
            return AttestationResult(
                verified=False,
                error="Cannot verify attestations for tag-based images - digest required",
            )

        max_age = None
        if attestation_policy.max_age:
            try:
                max_age = parse_duration(attestation_policy.max_age)
            except ValueError as exc:
                return AttestationResult(verified=False, error=f"invalid attestation maxAge: {exc}")

        return await self._verifier.verify(
            current_digest,
            attestation_policy.allowed_issuers,
            attestation_policy.required_types,
            max_age,
        )


class RemediationActuator:
    """Rewrites a workload's matching containers to a digest-pinned reference.

    The caller checks the preconditions (see should_remediate). The result of
    remediation is never written into WorkloadStatus; the next cycle's scan
    observes the applied state.

    Args:
        workload_client: Cluster client used to apply the update.
        registry_prefix: Default-registry prefix accepted on image references.
        automation_label_key: Label that opts a workload in.
        automation_label_value: Required value of the opt-in label.
    """

    def __init__(
        self,
        workload_client: IWorkloadClient,
        registry_prefix: str = DEFAULT_REGISTRY_PREFIX,
        automation_label_key: str = "automation",
        automation_label_value: str = "true",
    ) -> None:
        self._workload_client = workload_client
        self._registry_prefix = registry_prefix
        self._automation_label_key = automation_label_key
        self._automation_label_value = automation_label_value

    def has_automation_enabled(self, workload: Workload) -> bool:
        """Return True if the workload carries the automation opt-in label."""
        return workload.labels.get(self._automation_label_key) == self._automation_label_value

    def should_remediate(
        self,
        status: WorkloadStatus,
        workload: Workload,
        enforce_latest_digest: bool,
        latest_digest: str,
    ) -> bool:
        """Return True only when every remediation precondition holds."""
        return (
            not status.is_compliant
            and enforce_latest_digest
            and latest_digest != ""
            and self.has_automation_enabled(workload)
        )

    async def remediate(self, workload: Workload, repository: str, latest_digest: str) -> Workload:
        """Pin every container of the repository to the latest digest and apply it.

        Containers that used the default-registry-qualified prefix keep it.

        Args:
            workload: The non-compliant workload.
            repository: Monitored repository.
            latest_digest: Digest to pin.

        Returns:
            The workload as returned by the cluster after the update.

        Raises:
            WorkloadUpdateError: If no container matched or the update failed.
        """
        updated = False
        containers: list[Container] = []
        for container in workload.containers:
            prefix = matched_prefix(container.image, repository, self._registry_prefix)
            if prefix is None:
                containers.append(container)
                continue
            containers.append(container.model_copy(update={"image": pin_to_digest(prefix, latest_digest)}))
            updated = True

        if not updated:
            raise WorkloadUpdateError(f"no containers found using repository {repository}")

        try:
            result = await self._workload_client.update_workload(
                workload.model_copy(update={"containers": containers}),
            )
        except ClusterAPIError as exc:
            raise WorkloadUpdateError(f"failed to update deployment: {exc}") from exc

        logger.info(
            "Workload pinned to latest digest",
            deployment=workload.name,
            namespace=workload.namespace,
            digest=latest_digest,
        )
        return result
