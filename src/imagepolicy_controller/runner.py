"""Controller runner: schedules reconciliation cycles for every ImagePolicy.

The runner periodically re-lists ImagePolicies and keeps one worker task per
policy key. A worker runs one cycle at a time, so cycles of the same policy
never overlap, and sleeps for the requeue delay the cycle returns (or an
exponential error backoff after a failure). trigger() wakes a worker early.
A global semaphore bounds how many cycles run at once across policies.

Each cycle runs under a deadline; overrunning it cancels the in-flight
request and is treated as a retryable CycleCancelledError.
"""

import asyncio
from collections.abc import Awaitable

from imagepolicy_controller.core.interfaces import IPolicyStore
from imagepolicy_controller.core.reconciler import ReconcileResult, ReconciliationService
from imagepolicy_controller.errors import ControllerError, CycleCancelledError
from imagepolicy_controller.observability import get_logger

logger = get_logger(__name__)


async def run_with_deadline(cycle: Awaitable[ReconcileResult], timeout_seconds: float, key: str) -> ReconcileResult:
    """Await a cycle, converting a deadline overrun into CycleCancelledError.

    Args:
        cycle: The reconcile coroutine.
        timeout_seconds: Deadline in seconds.
        key: Policy key for the error message.

    Returns:
        The cycle result.

    Raises:
        CycleCancelledError: If the deadline elapsed first.
    """
    try:
        async with asyncio.timeout(timeout_seconds):
            return await cycle
    except TimeoutError as exc:
        raise CycleCancelledError(f"reconcile of {key} exceeded its {timeout_seconds}s deadline") from exc


class ControllerRunner:
    """Drives ReconciliationService for all policies.

    Args:
        reconciler: The reconciliation service.
        policy_store: Used to discover policies.
        namespace: Namespace to watch; None for all namespaces.
        resync_seconds: Interval between policy listings.
        max_concurrent_reconciles: Bound on concurrently running cycles.
        cycle_timeout_seconds: Deadline of one cycle.
        error_backoff_base_seconds: First delay after a failed cycle.
        error_backoff_max_seconds: Maximum delay after repeated failures.
    """

    def __init__(
        self,
        reconciler: ReconciliationService,
        policy_store: IPolicyStore,
        namespace: str | None = None,
        resync_seconds: float = 30.0,
        max_concurrent_reconciles: int = 4,
        cycle_timeout_seconds: float = 120.0,
        error_backoff_base_seconds: float = 5.0,
        error_backoff_max_seconds: float = 300.0,
    ) -> None:
        self._reconciler = reconciler
        self._policy_store = policy_store
        self._namespace = namespace or None
        self._resync_seconds = resync_seconds
        self._semaphore = asyncio.Semaphore(max_concurrent_reconciles)
        self._cycle_timeout_seconds = cycle_timeout_seconds
        self._error_backoff_base_seconds = error_backoff_base_seconds
        self._error_backoff_max_seconds = error_backoff_max_seconds

        self._workers: dict[str, asyncio.Task[None]] = {}
        self._wake_events: dict[str, asyncio.Event] = {}
        self._resync_task: asyncio.Task[None] | None = None
        self._last_resync_ok = False

    @property
    def is_ready(self) -> bool:
        """True once started and the most recent policy listing succeeded."""
        return self._resync_task is not None and not self._resync_task.done() and self._last_resync_ok

    @property
    def active_policies(self) -> list[str]:
        """Keys of policies with a running worker."""
        return sorted(self._workers)

    def error_backoff(self, failures: int) -> float:
        """Return the requeue delay after `failures` consecutive failed cycles."""
        delay = self._error_backoff_base_seconds * (2 ** max(failures - 1, 0))
        return min(delay, self._error_backoff_max_seconds)

    async def start(self) -> None:
        """Start the resync loop."""
        if self._resync_task is None:
            self._resync_task = asyncio.create_task(self._resync_loop(), name="imagepolicy-resync")
            logger.info("Controller runner started", namespace=self._namespace or "<all>")

    async def stop(self) -> None:
        """Cancel the resync loop and every worker, waiting for them to finish."""
        tasks = list(self._workers.values())
        if self._resync_task is not None:
            tasks.append(self._resync_task)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._workers.clear()
        self._wake_events.clear()
        self._resync_task = None
        logger.info("Controller runner stopped")

    def trigger(self, namespace: str, name: str) -> None:
        """Run the policy's next cycle immediately, starting a worker if needed."""
        key = f"{namespace}/{name}"
        if key not in self._workers:
            self._ensure_worker(key)
            return
        self._wake_events[key].set()

    async def sync_policies(self) -> None:
        """List policies once and start workers for newly seen ones."""
        policies = await self._policy_store.list_policies(self._namespace)
        for policy in policies:
            self._ensure_worker(policy.key)

    def _ensure_worker(self, key: str) -> None:
        if key in self._workers:
            return
        self._wake_events[key] = asyncio.Event()
        self._workers[key] = asyncio.create_task(self._worker(key), name=f"imagepolicy-{key}")
        logger.info("Started policy worker", policy=key)

    async def _resync_loop(self) -> None:
        while True:
            try:
                await self.sync_policies()
                self._last_resync_ok = True
            except ControllerError as exc:
                self._last_resync_ok = False
                logger.error("Failed to list ImagePolicies", error=exc.message)
            await asyncio.sleep(self._resync_seconds)

    async def _worker(self, key: str) -> None:
        namespace, _, name = key.partition("/")
        failures = 0
        try:
            while True:
                self._wake_events[key].clear()
                async with self._semaphore:
                    delay = await self._run_cycle(key, namespace, name, failures)
                if delay is None:
                    logger.info("Policy removed; stopping worker", policy=key)
                    return
                failures = failures + 1 if delay < 0 else 0
                await self._wait(key, self.error_backoff(failures) if delay < 0 else delay)
        finally:
            self._workers.pop(key, None)
            self._wake_events.pop(key, None)

    async def _run_cycle(self, key: str, namespace: str, name: str, failures: int) -> float | None:
        """Run one cycle. Returns the requeue delay, None to stop, or -1 after a failure."""
        try:
            result = await run_with_deadline(
                self._reconciler.reconcile(namespace, name),
                self._cycle_timeout_seconds,
                key,
            )
        except ControllerError as exc:
            logger.error(
                "Reconcile failed",
                policy=key,
                error=exc.message,
                error_type=type(exc).__name__,
                retryable=exc.retryable,
                consecutive_failures=failures + 1,
            )
            return -1.0
        except Exception:
            logger.exception("Reconcile failed with unexpected error", policy=key, consecutive_failures=failures + 1)
            return -1.0
        return result.requeue_after

    async def _wait(self, key: str, delay: float) -> None:
        event = self._wake_events[key]
        try:
            await asyncio.wait_for(event.wait(), timeout=delay)
        except TimeoutError:
            pass
