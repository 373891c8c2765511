"""API routers for imagepolicy-controller.

The controller's work happens in the background runner; these routes expose
probes and a thin read/trigger surface over it. Shared clients live on
`app.state` and are injected with Depends.

Endpoints:
- GET   /healthz                                           — Liveness probe
- GET   /readyz                                            — Readiness probe
- GET   /api/v1/policies/{namespace}/{name}/status         — Stored policy status
- POST  /api/v1/policies/{namespace}/{name}/reconcile      — Schedule an immediate cycle
"""

from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Request, Response

from imagepolicy_controller.api.schemas import (
    HealthResponse,
    PolicyStatusResponse,
    ReconcileAcceptedResponse,
)
from imagepolicy_controller.core.interfaces import IPolicyStore
from imagepolicy_controller.errors import ClusterAPIError, NotFoundError, PolicyValidationError
from imagepolicy_controller.observability import get_logger
from imagepolicy_controller.runner import ControllerRunner

logger = get_logger(__name__)

health_router = APIRouter(tags=["health"])
router = APIRouter(tags=["imagepolicies"])


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------


def get_runner(request: Request) -> ControllerRunner:
    """Return the controller runner stored on app state."""
    return request.app.state.runner


def get_policy_store(request: Request) -> IPolicyStore:
    """Return the policy store stored on app state."""
    return request.app.state.policy_store


def get_service_name(request: Request) -> str:
    """Return the configured service name."""
    return request.app.state.settings.service_name


# ---------------------------------------------------------------------------
# Probes
# ---------------------------------------------------------------------------


@health_router.get("/healthz", response_model=HealthResponse)
async def healthz(service_name: Annotated[str, Depends(get_service_name)]) -> HealthResponse:
    """Liveness probe: the process is serving requests."""
    return HealthResponse(status="ok", service=service_name)


@health_router.get("/readyz", response_model=HealthResponse)
async def readyz(
    response: Response,
    runner: Annotated[ControllerRunner, Depends(get_runner)],
    service_name: Annotated[str, Depends(get_service_name)],
) -> HealthResponse:
    """Readiness probe: the runner is started and its last policy listing succeeded.

    Returns 503 until then.
    """
    if not runner.is_ready:
        response.status_code = 503
        return HealthResponse(status="not-ready", service=service_name)
    return HealthResponse(status="ok", service=service_name)


# ---------------------------------------------------------------------------
# Policies
# ---------------------------------------------------------------------------


@router.get("/policies/{namespace}/{name}/status", response_model=PolicyStatusResponse)
async def get_policy_status(
    namespace: str,
    name: str,
    policy_store: Annotated[IPolicyStore, Depends(get_policy_store)],
) -> PolicyStatusResponse:
    """Return the status stored on an ImagePolicy.

    Args:
        namespace: Policy namespace.
        name: Policy name.
        policy_store: Injected policy store.

    Returns:
        The policy's stored status.

    Raises:
        HTTPException: 404 if the policy does not exist, 422 if it is invalid,
            502 if the cluster API fails.
    """
    try:
        policy = await policy_store.get_policy(namespace, name)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=f"ImagePolicy {namespace}/{name} not found") from exc
    except PolicyValidationError as exc:
        raise HTTPException(status_code=422, detail=exc.message) from exc
    except ClusterAPIError as exc:
        logger.error("Failed to read ImagePolicy", namespace=namespace, name=name, error=exc.message)
        raise HTTPException(status_code=502, detail="cluster API request failed") from exc

    return PolicyStatusResponse(
        namespace=namespace,
        name=name,
        repository=policy.spec.repository,
        generation=policy.metadata.generation,
        status=policy.status,
    )


@router.post(
    "/policies/{namespace}/{name}/reconcile",
    response_model=ReconcileAcceptedResponse,
    status_code=202,
)
async def trigger_reconcile(
    namespace: str,
    name: str,
    runner: Annotated[ControllerRunner, Depends(get_runner)],
) -> ReconcileAcceptedResponse:
    """Schedule an immediate reconciliation cycle for a policy.

    The cycle runs in the background; a policy that no longer exists ends
    its worker without writing anything.

    Args:
        namespace: Policy namespace.
        name: Policy name.
        runner: Injected controller runner.

    Returns:
        Acknowledgement that the cycle was queued.
    """
    logger.info("POST reconcile", namespace=namespace, name=name)
    runner.trigger(namespace, name)
    return ReconcileAcceptedResponse(namespace=namespace, name=name, queued=True)
