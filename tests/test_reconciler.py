"""Tests for ReconciliationService — one full cycle per call.

Real resolver, scanner, analyzer, and actuator are wired over mock adapters
so each test exercises the cycle end to end.
"""

from datetime import datetime, timedelta
from unittest.mock import AsyncMock

import pytest

from imagepolicy_controller.core.attestation import UnavailableVerifier
from imagepolicy_controller.core.models import (
    AttestationPolicy,
    ComplianceStatus,
    Condition,
    ConditionStatus,
    ConditionType,
    ImagePolicyStatus,
    LabelSelector,
    LabelSelectorRequirement,
)
from imagepolicy_controller.core.reconciler import EVENT_NORMAL, EVENT_WARNING, ReconciliationService, should_refresh
from imagepolicy_controller.core.services import (
    ComplianceAnalyzer,
    DigestResolver,
    RemediationActuator,
    WorkloadScanner,
)
from imagepolicy_controller.errors import (
    ClusterAPIError,
    NotFoundError,
    PermanentRegistryError,
    SelectorError,
    TransientRegistryError,
)
from tests.conftest import FIXED_NOW, LATEST_DIGEST, OLD_DIGEST, make_fake_policy, make_fake_workload


async def _no_sleep(delay: float) -> None:
    return None


def _make_service(
    policy_store: AsyncMock,
    registry_client: AsyncMock,
    workload_client: AsyncMock,
    audit_recorder: AsyncMock,
    verifier=None,
) -> ReconciliationService:
    return ReconciliationService(
        policy_store=policy_store,
        digest_resolver=DigestResolver(registry_client, sleep=_no_sleep),
        scanner=WorkloadScanner(workload_client),
        analyzer=ComplianceAnalyzer(verifier or UnavailableVerifier(), clock=lambda: FIXED_NOW),
        actuator=RemediationActuator(workload_client),
        audit_recorder=audit_recorder,
        clock=lambda: FIXED_NOW,
    )


def _written_status(policy_store: AsyncMock) -> ImagePolicyStatus:
    policy_store.update_policy_status.assert_awaited_once()
    return policy_store.update_policy_status.await_args.args[1]


def _reasons(audit_recorder: AsyncMock) -> list[tuple[str, str]]:
    return [(call.args[1], call.args[2]) for call in audit_recorder.record.await_args_list]


def test_should_refresh() -> None:
    """A refresh happens when unset or strictly older than the interval."""
    assert should_refresh(None, 60, FIXED_NOW)
    assert should_refresh(FIXED_NOW - timedelta(seconds=61), 60, FIXED_NOW)
    assert not should_refresh(FIXED_NOW - timedelta(seconds=60), 60, FIXED_NOW)
    assert not should_refresh(FIXED_NOW - timedelta(seconds=5), 60, FIXED_NOW)


class TestReconcile:
    """End-to-end cycle behaviour."""

    @pytest.mark.asyncio()
    async def test_deleted_policy_ends_without_requeue(
        self,
        mock_policy_store: AsyncMock,
        mock_registry_client: AsyncMock,
        mock_workload_client: AsyncMock,
        mock_audit_recorder: AsyncMock,
    ) -> None:
        """A missing policy is not an error and is not requeued."""
        mock_policy_store.get_policy.side_effect = NotFoundError("gone", status_code=404)
        service = _make_service(mock_policy_store, mock_registry_client, mock_workload_client, mock_audit_recorder)

        result = await service.reconcile("default", "app-policy")

        assert result.requeue_after is None
        mock_policy_store.update_policy_status.assert_not_awaited()
        mock_registry_client.fetch_latest_digest.assert_not_awaited()

    @pytest.mark.asyncio()
    async def test_all_compliant(
        self,
        mock_policy_store: AsyncMock,
        mock_registry_client: AsyncMock,
        mock_workload_client: AsyncMock,
        mock_audit_recorder: AsyncMock,
    ) -> None:
        """A fresh policy resolves the digest and reports Compliant."""
        mock_policy_store.get_policy.return_value = make_fake_policy(check_interval_seconds=120)
        mock_workload_client.list_workloads.return_value = [make_fake_workload("web"), make_fake_workload("api")]
        service = _make_service(mock_policy_store, mock_registry_client, mock_workload_client, mock_audit_recorder)

        result = await service.reconcile("default", "app-policy")

        assert result.requeue_after == 120.0
        status = _written_status(mock_policy_store)
        assert status.latest_digest == LATEST_DIGEST
        assert status.last_checked == FIXED_NOW
        assert status.compliance_status == ComplianceStatus.COMPLIANT
        assert status.total_deployments == 2
        assert status.compliant_deployments == 2
        ready = status.get_condition(ConditionType.READY)
        assert (ready.status, ready.reason) == (ConditionStatus.TRUE, "AllCompliant")
        assert ready.observed_generation == 1
        degraded = status.get_condition(ConditionType.DEGRADED)
        assert (degraded.status, degraded.reason) == (ConditionStatus.FALSE, "DigestResolved")
        assert status.get_condition(ConditionType.PROGRESSING) is None
        mock_audit_recorder.record.assert_not_awaited()

    @pytest.mark.asyncio()
    async def test_no_workloads_is_unknown(
        self,
        mock_policy_store: AsyncMock,
        mock_registry_client: AsyncMock,
        mock_workload_client: AsyncMock,
        mock_audit_recorder: AsyncMock,
    ) -> None:
        """Zero monitored workloads reports Unknown with reason NoDeployments."""
        mock_policy_store.get_policy.return_value = make_fake_policy()
        service = _make_service(mock_policy_store, mock_registry_client, mock_workload_client, mock_audit_recorder)

        await service.reconcile("default", "app-policy")

        status = _written_status(mock_policy_store)
        assert status.compliance_status == ComplianceStatus.UNKNOWN
        assert status.total_deployments == 0
        assert status.get_condition(ConditionType.READY).reason == "NoDeployments"

    @pytest.mark.asyncio()
    async def test_cached_digest_reused_within_interval(
        self,
        mock_policy_store: AsyncMock,
        mock_registry_client: AsyncMock,
        mock_workload_client: AsyncMock,
        mock_audit_recorder: AsyncMock,
    ) -> None:
        """Within the interval the registry is not queried and lastChecked is unchanged."""
        checked = FIXED_NOW - timedelta(seconds=30)
        mock_policy_store.get_policy.return_value = make_fake_policy(
            status=ImagePolicyStatus(latest_digest=OLD_DIGEST, last_checked=checked)
        )
        mock_workload_client.list_workloads.return_value = [make_fake_workload(images=[f"acme/app@{OLD_DIGEST}"])]
        service = _make_service(mock_policy_store, mock_registry_client, mock_workload_client, mock_audit_recorder)

        await service.reconcile("default", "app-policy")

        mock_registry_client.fetch_latest_digest.assert_not_awaited()
        status = _written_status(mock_policy_store)
        assert status.latest_digest == OLD_DIGEST
        assert status.last_checked == checked
        assert status.compliance_status == ComplianceStatus.COMPLIANT

    @pytest.mark.asyncio()
    async def test_registry_failure_keeps_cached_digest_and_reports_error(
        self,
        mock_policy_store: AsyncMock,
        mock_registry_client: AsyncMock,
        mock_workload_client: AsyncMock,
        mock_audit_recorder: AsyncMock,
    ) -> None:
        """A failed refresh continues with the stale digest and reports Error."""
        checked = FIXED_NOW - timedelta(minutes=10)
        mock_policy_store.get_policy.return_value = make_fake_policy(
            status=ImagePolicyStatus(latest_digest=OLD_DIGEST, last_checked=checked)
        )
        mock_registry_client.fetch_latest_digest.side_effect = PermanentRegistryError("401", repository="acme/app")
        mock_workload_client.list_workloads.return_value = [make_fake_workload(images=[f"acme/app@{OLD_DIGEST}"])]
        service = _make_service(mock_policy_store, mock_registry_client, mock_workload_client, mock_audit_recorder)

        result = await service.reconcile("default", "app-policy")

        assert result.requeue_after == 60.0
        status = _written_status(mock_policy_store)
        assert status.latest_digest == OLD_DIGEST
        assert status.last_checked == checked
        assert status.compliance_status == ComplianceStatus.ERROR
        assert status.compliant_deployments == 1
        degraded = status.get_condition(ConditionType.DEGRADED)
        assert (degraded.status, degraded.reason) == (ConditionStatus.TRUE, "RegistryError")
        ready = status.get_condition(ConditionType.READY)
        assert (ready.status, ready.reason) == (ConditionStatus.FALSE, "DigestUnavailable")
        assert (EVENT_WARNING, "DigestResolutionFailed") in _reasons(mock_audit_recorder)

    @pytest.mark.asyncio()
    async def test_rate_limit_exhaustion_marks_rate_limited(
        self,
        mock_policy_store: AsyncMock,
        mock_registry_client: AsyncMock,
        mock_workload_client: AsyncMock,
        mock_audit_recorder: AsyncMock,
    ) -> None:
        """Persistent 429 sets Degraded with reason RateLimited."""
        mock_policy_store.get_policy.return_value = make_fake_policy()
        mock_registry_client.fetch_latest_digest.side_effect = TransientRegistryError("429", repository="acme/app")
        service = _make_service(mock_policy_store, mock_registry_client, mock_workload_client, mock_audit_recorder)

        await service.reconcile("default", "app-policy")

        assert mock_registry_client.fetch_latest_digest.await_count == 3
        status = _written_status(mock_policy_store)
        assert status.compliance_status == ComplianceStatus.ERROR
        assert status.latest_digest == ""
        assert status.get_condition(ConditionType.DEGRADED).reason == "RateLimited"

    @pytest.mark.asyncio()
    async def test_non_compliant_without_opt_in_is_audited_not_remediated(
        self,
        mock_policy_store: AsyncMock,
        mock_registry_client: AsyncMock,
        mock_workload_client: AsyncMock,
        mock_audit_recorder: AsyncMock,
    ) -> None:
        """Outdated workloads emit NonCompliantImage; no update without the opt-in label."""
        mock_policy_store.get_policy.return_value = make_fake_policy()
        mock_workload_client.list_workloads.return_value = [
            make_fake_workload("web"),
            make_fake_workload("old", images=[f"acme/app@{OLD_DIGEST}"]),
        ]
        service = _make_service(mock_policy_store, mock_registry_client, mock_workload_client, mock_audit_recorder)

        result = await service.reconcile("default", "app-policy")

        assert result.remediated == 0
        mock_workload_client.update_workload.assert_not_awaited()
        assert _reasons(mock_audit_recorder) == [(EVENT_WARNING, "NonCompliantImage")]
        status = _written_status(mock_policy_store)
        assert status.compliance_status == ComplianceStatus.NON_COMPLIANT
        assert status.compliant_deployments == 1
        assert status.get_condition(ConditionType.READY).reason == "NonCompliant"

    @pytest.mark.asyncio()
    async def test_opted_in_workload_is_remediated(
        self,
        mock_policy_store: AsyncMock,
        mock_registry_client: AsyncMock,
        mock_workload_client: AsyncMock,
        mock_audit_recorder: AsyncMock,
    ) -> None:
        """An opted-in outdated workload is pinned; its status still reflects the scan."""
        mock_policy_store.get_policy.return_value = make_fake_policy()
        mock_workload_client.list_workloads.return_value = [
            make_fake_workload("old", images=["docker.io/acme/app:1.0"], labels={"automation": "true"}),
        ]
        service = _make_service(mock_policy_store, mock_registry_client, mock_workload_client, mock_audit_recorder)

        result = await service.reconcile("default", "app-policy")

        assert result.remediated == 1
        updated = mock_workload_client.update_workload.await_args.args[0]
        assert updated.containers[0].image == f"docker.io/acme/app@{LATEST_DIGEST}"
        assert _reasons(mock_audit_recorder) == [
            (EVENT_WARNING, "NonCompliantImage"),
            (EVENT_NORMAL, "AutoRemediated"),
        ]
        status = _written_status(mock_policy_store)
        assert status.monitored_deployments[0].is_compliant is False
        assert status.compliance_status == ComplianceStatus.NON_COMPLIANT
        progressing = status.get_condition(ConditionType.PROGRESSING)
        assert (progressing.status, progressing.reason) == (ConditionStatus.TRUE, "Remediating")

    @pytest.mark.asyncio()
    async def test_failed_remediation_is_audited_and_cycle_continues(
        self,
        mock_policy_store: AsyncMock,
        mock_registry_client: AsyncMock,
        mock_workload_client: AsyncMock,
        mock_audit_recorder: AsyncMock,
    ) -> None:
        """An update failure emits AutoRemediationFailed and status is still written."""
        mock_policy_store.get_policy.return_value = make_fake_policy()
        mock_workload_client.list_workloads.return_value = [
            make_fake_workload("a", images=["acme/app:1"], labels={"automation": "true"}),
            make_fake_workload("b"),
        ]
        mock_workload_client.update_workload.side_effect = ClusterAPIError("forbidden", status_code=403)
        service = _make_service(mock_policy_store, mock_registry_client, mock_workload_client, mock_audit_recorder)

        result = await service.reconcile("default", "app-policy")

        assert result.remediated == 0
        assert (EVENT_WARNING, "AutoRemediationFailed") in _reasons(mock_audit_recorder)
        status = _written_status(mock_policy_store)
        assert status.total_deployments == 2
        assert status.get_condition(ConditionType.PROGRESSING) is None

    @pytest.mark.asyncio()
    async def test_no_enforcement_skips_audit_and_remediation(
        self,
        mock_policy_store: AsyncMock,
        mock_registry_client: AsyncMock,
        mock_workload_client: AsyncMock,
        mock_audit_recorder: AsyncMock,
    ) -> None:
        """Non-compliance from attestation without enforcement is neither audited nor remediated."""
        mock_policy_store.get_policy.return_value = make_fake_policy(
            enforce_latest_digest=False,
            attestation_policy=AttestationPolicy(require_attestation=True),
        )
        mock_workload_client.list_workloads.return_value = [
            make_fake_workload(images=["acme/app:1"], labels={"automation": "true"}),
        ]
        service = _make_service(mock_policy_store, mock_registry_client, mock_workload_client, mock_audit_recorder)

        await service.reconcile("default", "app-policy")

        mock_audit_recorder.record.assert_not_awaited()
        mock_workload_client.update_workload.assert_not_awaited()
        status = _written_status(mock_policy_store)
        assert status.monitored_deployments[0].has_valid_attestation is False
        assert status.compliance_status == ComplianceStatus.NON_COMPLIANT

    @pytest.mark.asyncio()
    async def test_progressing_goes_idle_after_remediation(
        self,
        mock_policy_store: AsyncMock,
        mock_registry_client: AsyncMock,
        mock_workload_client: AsyncMock,
        mock_audit_recorder: AsyncMock,
    ) -> None:
        """A stored Progressing=True flips to False/Idle when nothing is remediated."""
        earlier = FIXED_NOW - timedelta(minutes=5)
        mock_policy_store.get_policy.return_value = make_fake_policy(
            status=ImagePolicyStatus(
                conditions=[
                    Condition(
                        type="Progressing",
                        status=ConditionStatus.TRUE,
                        reason="Remediating",
                        last_transition_time=earlier,
                    )
                ]
            )
        )
        mock_workload_client.list_workloads.return_value = [make_fake_workload()]
        service = _make_service(mock_policy_store, mock_registry_client, mock_workload_client, mock_audit_recorder)

        await service.reconcile("default", "app-policy")

        progressing = _written_status(mock_policy_store).get_condition(ConditionType.PROGRESSING)
        assert (progressing.status, progressing.reason) == (ConditionStatus.FALSE, "Idle")
        assert progressing.last_transition_time == FIXED_NOW

    @pytest.mark.asyncio()
    async def test_malformed_selector_aborts_without_status_write(
        self,
        mock_policy_store: AsyncMock,
        mock_registry_client: AsyncMock,
        mock_workload_client: AsyncMock,
        mock_audit_recorder: AsyncMock,
    ) -> None:
        """SelectorError propagates and nothing is written."""
        mock_policy_store.get_policy.return_value = make_fake_policy(
            namespace_selector=LabelSelector(
                match_expressions=[LabelSelectorRequirement(key="env", operator="In", values=[])]
            )
        )
        service = _make_service(mock_policy_store, mock_registry_client, mock_workload_client, mock_audit_recorder)

        with pytest.raises(SelectorError):
            await service.reconcile("default", "app-policy")

        mock_policy_store.update_policy_status.assert_not_awaited()

    @pytest.mark.asyncio()
    async def test_status_write_is_single_and_last(
        self,
        mock_policy_store: AsyncMock,
        mock_registry_client: AsyncMock,
        mock_workload_client: AsyncMock,
        mock_audit_recorder: AsyncMock,
        fixed_now: datetime,
    ) -> None:
        """The policy passed to the status write is the one read at cycle start."""
        policy = make_fake_policy()
        mock_policy_store.get_policy.return_value = policy
        service = _make_service(mock_policy_store, mock_registry_client, mock_workload_client, mock_audit_recorder)

        result = await service.reconcile("default", "app-policy")

        assert mock_policy_store.update_policy_status.await_args.args[0] is policy
        assert result.status == _written_status(mock_policy_store)
        assert result.status.last_checked == fixed_now
