"""Status and condition aggregation.

Summary fields are recomputed from scratch every cycle. Conditions are the
one field merged with the stored status: keyed by type, a condition keeps its
stored lastTransitionTime while its status is unchanged.
"""

from datetime import datetime

from imagepolicy_controller.core.models import (
    ComplianceStatus,
    Condition,
    ConditionStatus,
    WorkloadStatus,
)


def merge_condition(
    conditions: list[Condition],
    condition_type: str,
    status: ConditionStatus,
    reason: str,
    message: str,
    now: datetime,
    observed_generation: int | None = None,
) -> list[Condition]:
    """Return a new condition list with one condition set by type.

    An existing condition of the same type is replaced in place. Its
    lastTransitionTime is kept when the status is unchanged and set to `now`
    when the status flips. A new type is appended with `now`.

    Args:
        conditions: The current conditions (not modified).
        condition_type: Condition type to set.
        status: New condition status.
        reason: CamelCase reason.
        message: Human-readable message.
        now: Current time.
        observed_generation: Policy generation the condition reflects.

    Returns:
        A new list with at most one condition per type.
    """
    merged: list[Condition] = []
    replaced = False
    for existing in conditions:
        if existing.type != condition_type:
            merged.append(existing)
            continue
        if replaced:
            # collapse duplicates left by older writers
            continue
        transition = existing.last_transition_time if existing.status == status else now
        merged.append(
            Condition(
                type=condition_type,
                status=status,
                reason=reason,
                message=message,
                last_transition_time=transition,
                observed_generation=observed_generation,
            )
        )
        replaced = True

    if not replaced:
        merged.append(
            Condition(
                type=condition_type,
                status=status,
                reason=reason,
                message=message,
                last_transition_time=now,
                observed_generation=observed_generation,
            )
        )
    return merged


def compute_compliance_status(total: int, compliant: int, digest_failed: bool) -> ComplianceStatus:
    """Derive the aggregate compliance status.

    Args:
        total: Number of monitored workloads.
        compliant: Number of compliant workloads.
        digest_failed: Whether digest resolution failed this cycle.

    Returns:
        Error when digest resolution failed; otherwise Unknown for no
        workloads, Compliant when all are compliant, else NonCompliant.
    """
    if digest_failed:
        return ComplianceStatus.ERROR
    if total == 0:
        return ComplianceStatus.UNKNOWN
    if compliant == total:
        return ComplianceStatus.COMPLIANT
    return ComplianceStatus.NON_COMPLIANT


def count_compliant(statuses: list[WorkloadStatus]) -> int:
    """Count compliant workload statuses."""
    return sum(1 for status in statuses if status.is_compliant)


def ready_condition_fields(
    compliance: ComplianceStatus,
    total: int,
    compliant: int,
) -> tuple[ConditionStatus, str, str]:
    """Return (status, reason, message) of the Ready condition for a cycle outcome."""
    if compliance == ComplianceStatus.ERROR:
        return (
            ConditionStatus.FALSE,
            "DigestUnavailable",
            f"Latest digest could not be resolved; {compliant} of {total} deployments compliant against cached digest",
        )
    if total == 0:
        return ConditionStatus.TRUE, "NoDeployments", "No deployments found matching the policy"
    if compliant == total:
        return ConditionStatus.TRUE, "AllCompliant", "All monitored deployments are compliant"
    return (
        ConditionStatus.TRUE,
        "NonCompliant",
        f"{total - compliant} of {total} deployments are non-compliant",
    )
