"""Service settings for imagepolicy-controller.

Settings use the IMAGEPOLICY_ prefix and cover:
- Container registry (token exchange + manifest lookup)
- Rekor transparency log
- Kubernetes API access
- Controller runner cadence and concurrency
- Remediation opt-in marker
"""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Settings for imagepolicy-controller.

    Environment variable prefix: IMAGEPOLICY_
    """

    service_name: str = "imagepolicy-controller"
    log_level: str = Field(default="INFO", description="Minimum log level.")
    log_json: bool = Field(default=True, description="Emit JSON log lines instead of console output.")
    http_host: str = Field(default="0.0.0.0", description="Bind address of the probe/status API.")
    http_port: int = Field(default=8080, description="Port of the probe/status API.")

    # -------------------------------------------------------------------------
    # Container registry
    # -------------------------------------------------------------------------

    registry_auth_url: str = Field(
        default="https://auth.docker.io",
        description="Token endpoint host for the registry's bearer-token exchange.",
    )
    registry_service: str = Field(
        default="registry.docker.io",
        description="Value of the `service` query parameter sent to the token endpoint.",
    )
    registry_url: str = Field(
        default="https://registry-1.docker.io",
        description="Registry v2 API base URL.",
    )
    registry_timeout_seconds: float = Field(
        default=30.0,
        description="Per-request timeout for registry calls.",
    )
    registry_max_attempts: int = Field(
        default=3,
        ge=1,
        description="Total attempts for a digest lookup when the registry answers 429.",
    )
    registry_base_delay_seconds: float = Field(
        default=5.0,
        ge=0,
        description="Linear backoff step between rate-limited attempts.",
    )
    default_registry_prefix: str = Field(
        default="docker.io/",
        description="Registry host prefix that image references may carry for the default registry.",
    )

    # -------------------------------------------------------------------------
    # Rekor transparency log
    # -------------------------------------------------------------------------

    rekor_enabled: bool = Field(
        default=True,
        description="When false, every attestation check fails closed as 'verifier unavailable'.",
    )
    rekor_url: str = Field(
        default="https://rekor.sigstore.dev",
        description="Rekor REST API base URL.",
    )
    rekor_timeout_seconds: float = Field(default=30.0, description="Per-request timeout for Rekor.")
    rekor_max_entries: int = Field(
        default=50,
        ge=1,
        description="Maximum number of log entries inspected per digest.",
    )

    # -------------------------------------------------------------------------
    # Kubernetes API
    # -------------------------------------------------------------------------

    kube_api_url: str = Field(
        default="https://kubernetes.default.svc",
        description="Kubernetes API server URL.",
    )
    kube_token_path: str = Field(
        default="/var/run/secrets/kubernetes.io/serviceaccount/token",
        description="Service account bearer token file.",
    )
    kube_ca_path: str = Field(
        default="/var/run/secrets/kubernetes.io/serviceaccount/ca.crt",
        description="CA bundle used to verify the API server certificate.",
    )
    kube_verify_ssl: bool = Field(default=True, description="Verify the API server certificate.")
    kube_timeout_seconds: float = Field(default=30.0, description="Per-request timeout for the API server.")
    watch_namespace: str = Field(
        default="",
        description="Namespace whose ImagePolicies are reconciled. Empty means all namespaces.",
    )

    # -------------------------------------------------------------------------
    # Controller runner
    # -------------------------------------------------------------------------

    resync_seconds: float = Field(
        default=30.0,
        gt=0,
        description="How often the runner re-lists ImagePolicies to discover new and deleted ones.",
    )
    max_concurrent_reconciles: int = Field(
        default=4,
        ge=1,
        description="Upper bound on cycles running at once across all policies.",
    )
    cycle_timeout_seconds: float = Field(
        default=120.0,
        gt=0,
        description="Deadline for one reconciliation cycle. Worst-case registry time is about 105s.",
    )
    error_backoff_base_seconds: float = Field(default=5.0, gt=0, description="First requeue delay after a failed cycle.")
    error_backoff_max_seconds: float = Field(default=300.0, gt=0, description="Cap on the failed-cycle requeue delay.")

    # -------------------------------------------------------------------------
    # Remediation
    # -------------------------------------------------------------------------

    automation_label_key: str = Field(
        default="automation",
        description="Deployment label that opts a workload into auto-remediation.",
    )
    automation_label_value: str = Field(default="true", description="Required value of the opt-in label.")

    model_config = SettingsConfigDict(env_prefix="IMAGEPOLICY_")
