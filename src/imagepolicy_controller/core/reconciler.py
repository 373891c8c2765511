"""ReconciliationService — one full compliance cycle per invocation.

Cycle:
1. Load the policy (a deleted policy ends the cycle without requeue).
2. Refresh the latest digest when the cached one is older than the check
   interval. A registry failure keeps the cached digest, marks the cycle as
   Error, and sets the Degraded condition; the cycle continues.
3. Scan workloads and analyze each one.
4. For every non-compliant workload under enforcement: audit it and, when
   the remediation preconditions hold, remediate it.
5. Aggregate counts, set conditions, and write the status exactly once.
6. Requeue after checkIntervalSeconds.
"""

from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from imagepolicy_controller.core.conditions import (
    compute_compliance_status,
    count_compliant,
    merge_condition,
    ready_condition_fields,
)
from imagepolicy_controller.core.interfaces import IAuditRecorder, IPolicyStore
from imagepolicy_controller.core.models import (
    ComplianceStatus,
    Condition,
    ConditionStatus,
    ConditionType,
    ImagePolicy,
    ImagePolicyStatus,
    Workload,
    WorkloadStatus,
)
from imagepolicy_controller.core.services import (
    ComplianceAnalyzer,
    DigestResolver,
    RemediationActuator,
    WorkloadScanner,
)
from imagepolicy_controller.errors import (
    NotFoundError,
    RateLimitExhaustedError,
    RegistryError,
    WorkloadUpdateError,
)
from imagepolicy_controller.observability import get_logger

logger = get_logger(__name__)

EVENT_NORMAL = "Normal"
EVENT_WARNING = "Warning"


@dataclass(frozen=True)
class ReconcileResult:
    """Outcome of one cycle.

    Attributes:
        requeue_after: Seconds until the next cycle; None when the policy is gone.
        status: The status written this cycle, if any.
        remediated: Number of workloads successfully remediated.
    """

    requeue_after: float | None
    status: ImagePolicyStatus | None = None
    remediated: int = 0


def should_refresh(last_checked: datetime | None, interval_seconds: int, now: datetime) -> bool:
    """Return True when the cached digest is missing or older than the interval."""
    return last_checked is None or now - last_checked > timedelta(seconds=interval_seconds)


class ReconciliationService:
    """Orchestrates the reconciliation cycle for ImagePolicy resources.

    Args:
        policy_store: Policy get + status write.
        digest_resolver: Latest-digest resolver with retry.
        scanner: Workload scanner.
        analyzer: Compliance analyzer.
        actuator: Remediation actuator.
        audit_recorder: Audit signal sink.
        clock: Returns the current UTC time.
    """

    def __init__(
        self,
        policy_store: IPolicyStore,
        digest_resolver: DigestResolver,
        scanner: WorkloadScanner,
        analyzer: ComplianceAnalyzer,
        actuator: RemediationActuator,
        audit_recorder: IAuditRecorder,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._policy_store = policy_store
        self._digest_resolver = digest_resolver
        self._scanner = scanner
        self._analyzer = analyzer
        self._actuator = actuator
        self._audit_recorder = audit_recorder
        self._clock = clock or (lambda: datetime.now(UTC))

    async def reconcile(self, namespace: str, name: str) -> ReconcileResult:
        """Run one cycle for the policy namespace/name.

        Args:
            namespace: Policy namespace.
            name: Policy name.

        Returns:
            The cycle outcome with the requeue delay.

        Raises:
            SelectorError: If a policy selector is malformed.
            ClusterAPIError: If listing workloads or writing status fails.
        """
        try:
            policy = await self._policy_store.get_policy(namespace, name)
        except NotFoundError:
            logger.info("ImagePolicy not found; ignoring since it must have been deleted", namespace=namespace, name=name)
            return ReconcileResult(requeue_after=None)

        spec = policy.spec
        previous = policy.status
        now = self._clock()
        generation = policy.metadata.generation

        latest_digest = previous.latest_digest
        last_checked = previous.last_checked
        conditions: list[Condition] = list(previous.conditions)
        digest_failed = False

        logger.info("Reconcile started", policy=policy.key, repository=spec.repository)

        if should_refresh(previous.last_checked, spec.check_interval_seconds, now):
            try:
                latest_digest = await self._digest_resolver.resolve(spec.repository)
                last_checked = now
                conditions = merge_condition(
                    conditions,
                    ConditionType.DEGRADED,
                    ConditionStatus.FALSE,
                    "DigestResolved",
                    f"Resolved latest digest for {spec.repository}",
                    now,
                    generation,
                )
            except RegistryError as exc:
                digest_failed = True
                reason = "RateLimited" if isinstance(exc, RateLimitExhaustedError) else "RegistryError"
                logger.error(
                    "Failed to fetch latest digest",
                    policy=policy.key,
                    repository=spec.repository,
                    error=str(exc),
                    cached_digest=latest_digest,
                )
                conditions = merge_condition(
                    conditions,
                    ConditionType.DEGRADED,
                    ConditionStatus.TRUE,
                    reason,
                    f"Failed to fetch digest: {exc}",
                    now,
                    generation,
                )
                await self._audit_recorder.record(
                    policy,
                    EVENT_WARNING,
                    "DigestResolutionFailed",
                    f"Failed to fetch latest digest for {spec.repository}: {exc}",
                )

        workloads = await self._scanner.scan(policy)

        statuses: list[WorkloadStatus] = []
        remediated = 0
        for workload in workloads:
            status = await self._analyzer.analyze(
                workload,
                spec.repository,
                latest_digest,
                spec.enforce_latest_digest,
                spec.attestation_policy,
            )
            statuses.append(status)
            logger.info(
                "Deployment compliance status",
                deployment=workload.name,
                namespace=workload.namespace,
                is_compliant=status.is_compliant,
            )
            if status.is_compliant or not spec.enforce_latest_digest:
                continue

            await self._audit_recorder.record(
                policy,
                EVENT_WARNING,
                "NonCompliantImage",
                f"Deployment {workload.namespace}/{workload.name} is using outdated image digest",
            )

            if not self._actuator.should_remediate(status, workload, spec.enforce_latest_digest, latest_digest):
                logger.info(
                    "Auto-remediation skipped",
                    deployment=workload.name,
                    namespace=workload.namespace,
                    has_automation=self._actuator.has_automation_enabled(workload),
                    has_latest_digest=latest_digest != "",
                )
                continue

            if await self._remediate(policy, workload, spec.repository, latest_digest):
                remediated += 1

        total = len(statuses)
        compliant = count_compliant(statuses)
        compliance = compute_compliance_status(total, compliant, digest_failed)

        ready_status, ready_reason, ready_message = ready_condition_fields(compliance, total, compliant)
        conditions = merge_condition(
            conditions, ConditionType.READY, ready_status, ready_reason, ready_message, now, generation
        )
        if remediated:
            conditions = merge_condition(
                conditions,
                ConditionType.PROGRESSING,
                ConditionStatus.TRUE,
                "Remediating",
                f"Remediated {remediated} deployment(s); awaiting rollout",
                now,
                generation,
            )
        elif policy.status.get_condition(ConditionType.PROGRESSING) is not None:
            conditions = merge_condition(
                conditions,
                ConditionType.PROGRESSING,
                ConditionStatus.FALSE,
                "Idle",
                "No remediation in progress",
                now,
                generation,
            )

        new_status = ImagePolicyStatus(
            latest_digest=latest_digest,
            last_checked=last_checked,
            compliance_status=compliance,
            monitored_deployments=statuses,
            total_deployments=total,
            compliant_deployments=compliant,
            conditions=conditions,
        )
        await self._policy_store.update_policy_status(policy, new_status)

        log = logger.warning if compliance in (ComplianceStatus.ERROR, ComplianceStatus.NON_COMPLIANT) else logger.info
        log(
            "Reconcile complete",
            policy=policy.key,
            compliance_status=str(compliance),
            total=total,
            compliant=compliant,
            remediated=remediated,
        )
        return ReconcileResult(
            requeue_after=float(spec.check_interval_seconds),
            status=new_status,
            remediated=remediated,
        )

    async def _remediate(self, policy: ImagePolicy, workload: Workload, repository: str, latest_digest: str) -> bool:
        logger.info("Auto-remediation enabled for deployment", deployment=workload.name, namespace=workload.namespace)
        try:
            await self._actuator.remediate(workload, repository, latest_digest)
        except WorkloadUpdateError as exc:
            logger.error(
                "Failed to auto-remediate deployment",
                deployment=workload.name,
                namespace=workload.namespace,
                error=str(exc),
            )
            await self._audit_recorder.record(
                policy,
                EVENT_WARNING,
                "AutoRemediationFailed",
                f"Failed to auto-remediate deployment {workload.namespace}/{workload.name}: {exc}",
            )
            return False

        await self._audit_recorder.record(
            policy,
            EVENT_NORMAL,
            "AutoRemediated",
            f"Auto-remediated deployment {workload.namespace}/{workload.name} to use latest digest",
        )
        return True
