"""imagepolicy-controller service entry point.

Initializes the FastAPI application with:
- Kubernetes API client for ImagePolicies, Deployments, and Events
- Registry client for latest-digest lookups
- Rekor client for attestation lookups (optional)
- Controller runner reconciling every ImagePolicy in the background
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from imagepolicy_controller.adapters.audit_recorder import KubernetesEventRecorder
from imagepolicy_controller.adapters.kubernetes import KubernetesClient
from imagepolicy_controller.adapters.registry_client import RegistryClient
from imagepolicy_controller.adapters.rekor_client import RekorClient
from imagepolicy_controller.api.router import health_router, router
from imagepolicy_controller.core.attestation import build_verifier
from imagepolicy_controller.core.reconciler import ReconciliationService
from imagepolicy_controller.core.services import (
    ComplianceAnalyzer,
    DigestResolver,
    RemediationActuator,
    WorkloadScanner,
)
from imagepolicy_controller.observability import configure_logging, get_logger
from imagepolicy_controller.runner import ControllerRunner
from imagepolicy_controller.settings import Settings

logger = get_logger(__name__)

SERVICE_VERSION = "0.1.0"


def build_runner(settings: Settings, kube_client: KubernetesClient, rekor_client: RekorClient | None) -> ControllerRunner:
    """Wire adapters and services into a ControllerRunner.

    Args:
        settings: Service settings.
        kube_client: Kubernetes client; serves as policy store, workload
            client, and event sink.
        rekor_client: Rekor client, or None to fail every attestation check.

    Returns:
        An unstarted ControllerRunner.
    """
    registry_client = RegistryClient(
        auth_url=settings.registry_auth_url,
        service=settings.registry_service,
        registry_url=settings.registry_url,
        timeout_seconds=settings.registry_timeout_seconds,
    )
    prefix = settings.default_registry_prefix

    reconciler = ReconciliationService(
        policy_store=kube_client,
        digest_resolver=DigestResolver(
            registry_client,
            max_attempts=settings.registry_max_attempts,
            base_delay=settings.registry_base_delay_seconds,
        ),
        scanner=WorkloadScanner(kube_client, registry_prefix=prefix),
        analyzer=ComplianceAnalyzer(build_verifier(rekor_client), registry_prefix=prefix),
        actuator=RemediationActuator(
            kube_client,
            registry_prefix=prefix,
            automation_label_key=settings.automation_label_key,
            automation_label_value=settings.automation_label_value,
        ),
        audit_recorder=KubernetesEventRecorder(kube_client, component=settings.service_name),
    )
    return ControllerRunner(
        reconciler,
        kube_client,
        namespace=settings.watch_namespace or None,
        resync_seconds=settings.resync_seconds,
        max_concurrent_reconciles=settings.max_concurrent_reconciles,
        cycle_timeout_seconds=settings.cycle_timeout_seconds,
        error_backoff_base_seconds=settings.error_backoff_base_seconds,
        error_backoff_max_seconds=settings.error_backoff_max_seconds,
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Manage application startup and shutdown lifecycle.

    Builds the clients and starts the runner on startup; stops the runner
    and closes the Kubernetes connection pool on shutdown.

    Args:
        app: The FastAPI application instance.

    Yields:
        None
    """
    settings: Settings = app.state.settings
    configure_logging(settings.log_level, json_output=settings.log_json)

    logger.info("Initializing Kubernetes client", service=settings.service_name, api_url=settings.kube_api_url)
    kube_client = KubernetesClient.from_settings(settings)

    rekor_client: RekorClient | None = None
    if settings.rekor_enabled:
        rekor_client = RekorClient(
            base_url=settings.rekor_url,
            timeout_seconds=settings.rekor_timeout_seconds,
            max_entries=settings.rekor_max_entries,
        )
        if not await rekor_client.health_check():
            logger.warning(
                "Rekor is not reachable at startup - attestation checks will fail until it is available",
                rekor_url=settings.rekor_url,
            )
    else:
        logger.warning("Rekor disabled - attestation checks will fail closed")

    runner = build_runner(settings, kube_client, rekor_client)
    await runner.start()

    # Store shared clients on app state for dependency injection
    app.state.policy_store = kube_client
    app.state.runner = runner

    logger.info("Controller startup complete", watch_namespace=settings.watch_namespace or "<all>")

    yield

    logger.info("Shutting down controller")
    await runner.stop()
    await kube_client.close()
    logger.info("Controller shutdown complete")


def create_app(settings: Settings | None = None) -> FastAPI:
    """Create the FastAPI application.

    Args:
        settings: Service settings; read from the environment when omitted.

    Returns:
        The configured application.
    """
    application = FastAPI(title="imagepolicy-controller", version=SERVICE_VERSION, lifespan=lifespan)
    application.state.settings = settings or Settings()
    application.include_router(health_router)
    application.include_router(router, prefix="/api/v1")
    return application


app: FastAPI = create_app()
