"""Pydantic models for ImagePolicy resources and compliance results.

Field names are snake_case in Python and camelCase on the wire (the
`security.chainguard.dev/v1` ImagePolicy schema), via a camel alias
generator. All models are frozen: each reconciliation cycle builds fresh
status values and swaps them in with model_copy(update=...).

Models:
- ImagePolicy, ImagePolicySpec, ImagePolicyStatus — the policy resource
- LabelSelector, AttestationPolicy               — policy spec parts
- WorkloadStatus, AttestationDetails             — per-workload verdicts
- Condition                                      — typed status condition
- Workload, Container                            — scanned Deployments
- AttestationResult, TransparencyLogEntry        — attestation verification
"""

import re
from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

# Sentinel recorded as currentDigest when a workload references a tag
TAG_BASED = "tag-based"

DIGEST_PATTERN = re.compile(r"^sha256:[0-9a-f]{64}$")

REPOSITORY_PATTERN = r"^[a-z0-9]+(?:[._-][a-z0-9]+)*/[a-z0-9]+(?:[._-][a-z0-9]+)*$"

API_GROUP = "security.chainguard.dev"
API_VERSION = "v1"


class ComplianceStatus(StrEnum):
    """Aggregate compliance state of a policy."""

    COMPLIANT = "Compliant"
    NON_COMPLIANT = "NonCompliant"
    UNKNOWN = "Unknown"
    ERROR = "Error"


class ConditionType(StrEnum):
    """Condition types maintained on the policy status."""

    READY = "Ready"
    PROGRESSING = "Progressing"
    DEGRADED = "Degraded"


class ConditionStatus(StrEnum):
    """Tri-state condition status as used by Kubernetes."""

    TRUE = "True"
    FALSE = "False"
    UNKNOWN = "Unknown"


class _ResourceModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )

    def to_wire(self) -> dict[str, Any]:
        """Serialize to the camelCase JSON shape the API server expects."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


# ---------------------------------------------------------------------------
# Desired state
# ---------------------------------------------------------------------------


class LabelSelectorRequirement(_ResourceModel):
    """One `matchExpressions` entry of a label selector."""

    key: str
    operator: str
    values: list[str] = Field(default_factory=list)


class LabelSelector(_ResourceModel):
    """Kubernetes label selector: equality labels plus set-based expressions."""

    match_labels: dict[str, str] = Field(default_factory=dict)
    match_expressions: list[LabelSelectorRequirement] = Field(default_factory=list)


class AttestationPolicy(_ResourceModel):
    """Cryptographic attestation requirements for compliant images.

    Attributes:
        require_attestation: Mark workloads non-compliant unless a valid attestation exists.
        allowed_issuers: Accepted OIDC issuers. Empty accepts any issuer.
        required_types: Accepted attestation types. Empty accepts any type.
        max_age: Maximum attestation age as a duration string (e.g. "24h").
    """

    require_attestation: bool = False
    allowed_issuers: list[str] = Field(default_factory=list)
    required_types: list[str] = Field(default_factory=list)
    max_age: str | None = None


class ImagePolicySpec(_ResourceModel):
    """Desired state of an ImagePolicy."""

    repository: str = Field(pattern=REPOSITORY_PATTERN, description="Repository to monitor, e.g. acme/app")
    namespace_selector: LabelSelector | None = None
    deployment_selector: LabelSelector | None = None
    check_interval_seconds: int = Field(default=60, ge=10, le=3600)
    enforce_latest_digest: bool = True
    attestation_policy: AttestationPolicy | None = None


# ---------------------------------------------------------------------------
# Status
# ---------------------------------------------------------------------------


class Condition(_ResourceModel):
    """A typed, timestamped status record; unique by `type` within a status."""

    type: str
    status: ConditionStatus
    reason: str
    message: str = ""
    last_transition_time: datetime
    observed_generation: int | None = None


class AttestationDetails(_ResourceModel):
    """Attestation outcome recorded on a workload status."""

    verified: bool
    attestation_type: str = ""
    issuer: str = ""
    rekor_log_index: int | None = None
    last_checked: datetime | None = None
    error: str = ""


class WorkloadStatus(_ResourceModel):
    """Compliance verdict for one monitored Deployment."""

    name: str
    namespace: str
    current_digest: str = ""
    is_compliant: bool
    has_valid_attestation: bool | None = None
    attestation_details: AttestationDetails | None = None
    last_updated: datetime | None = None


class ImagePolicyStatus(_ResourceModel):
    """Observed state of an ImagePolicy, rewritten once per reconciliation cycle."""

    latest_digest: str = ""
    last_checked: datetime | None = None
    compliance_status: ComplianceStatus | None = None
    monitored_deployments: list[WorkloadStatus] = Field(default_factory=list)
    total_deployments: int = 0
    compliant_deployments: int = 0
    conditions: list[Condition] = Field(default_factory=list)

    def get_condition(self, condition_type: str) -> Condition | None:
        """Return the stored condition of a type, or None."""
        for condition in self.conditions:
            if condition.type == condition_type:
                return condition
        return None


class ObjectMeta(_ResourceModel):
    """The subset of Kubernetes object metadata the controller uses."""

    name: str
    namespace: str = ""
    uid: str = ""
    resource_version: str = ""
    generation: int | None = None
    labels: dict[str, str] = Field(default_factory=dict)


class ImagePolicy(_ResourceModel):
    """The ImagePolicy custom resource."""

    api_version: str = f"{API_GROUP}/{API_VERSION}"
    kind: str = "ImagePolicy"
    metadata: ObjectMeta
    spec: ImagePolicySpec
    status: ImagePolicyStatus = Field(default_factory=ImagePolicyStatus)

    @property
    def key(self) -> str:
        """Work-queue key: namespace/name."""
        return f"{self.metadata.namespace}/{self.metadata.name}"


# ---------------------------------------------------------------------------
# Workloads
# ---------------------------------------------------------------------------


class Container(_ResourceModel):
    """A pod-template container: name and image reference."""

    name: str
    image: str


class Workload(_ResourceModel):
    """A Deployment as seen by the scanner.

    Attributes:
        name: Deployment name.
        namespace: Deployment namespace.
        labels: Deployment labels (carry the automation opt-in marker).
        containers: Pod-template containers in declaration order.
        resource_version: Version used for optimistic-concurrency updates.
        manifest: The full object as returned by the API server, used to
            build the update request during remediation.
    """

    name: str
    namespace: str
    labels: dict[str, str] = Field(default_factory=dict)
    containers: list[Container] = Field(default_factory=list)
    resource_version: str = ""
    manifest: dict[str, Any] = Field(default_factory=dict, repr=False)


# ---------------------------------------------------------------------------
# Attestation
# ---------------------------------------------------------------------------


class TransparencyLogEntry(_ResourceModel):
    """A transparency-log entry whose in-toto subject names an image digest.

    Attributes:
        uuid: Log entry UUID.
        log_index: Global log index.
        integrated_time: When the log integrated the entry (UTC).
        issuer: OIDC issuer from the signing certificate; empty if unknown.
        predicate_type: in-toto predicateType URI; empty if not recorded.
        subject_digests: sha256 digests (`sha256:<hex>`) named as statement subjects.
    """

    uuid: str
    log_index: int
    integrated_time: datetime
    issuer: str = ""
    predicate_type: str = ""
    subject_digests: list[str] = Field(default_factory=list)


class AttestationResult(_ResourceModel):
    """Outcome of verifying attestations for a single digest."""

    verified: bool
    attestation_type: str = ""
    issuer: str = ""
    log_index: int = 0
    timestamp: datetime | None = None
    error: str = ""
