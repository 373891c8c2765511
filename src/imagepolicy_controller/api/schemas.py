"""Pydantic response schemas for the controller HTTP API."""

from pydantic import BaseModel, Field

from imagepolicy_controller.core.models import ImagePolicyStatus


class HealthResponse(BaseModel):
    """Liveness/readiness probe body."""

    status: str = Field(description="ok | not-ready")
    service: str = Field(description="Service name")


class PolicyStatusResponse(BaseModel):
    """Stored status of one ImagePolicy."""

    namespace: str = Field(description="Policy namespace")
    name: str = Field(description="Policy name")
    repository: str = Field(description="Monitored repository")
    generation: int | None = Field(default=None, description="metadata.generation of the policy")
    status: ImagePolicyStatus = Field(description="Status as last written by the controller")


class ReconcileAcceptedResponse(BaseModel):
    """Acknowledgement of an on-demand reconciliation request."""

    namespace: str = Field(description="Policy namespace")
    name: str = Field(description="Policy name")
    queued: bool = Field(description="True when a cycle was scheduled")
