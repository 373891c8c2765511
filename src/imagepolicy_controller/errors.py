"""Error taxonomy for the image policy controller.

Every failure the reconciliation cycle distinguishes has its own class so
the scheduler can decide, by type alone, whether to absorb, audit, or
propagate it:

- RegistryError and subclasses  — absorbed; the cycle reports Error status
- TransparencyLogError          — absorbed by the verifier as a failed check
- SelectorError                 — fatal to the cycle; the runner requeues
- WorkloadUpdateError           — audited and logged; never aborts the cycle
- ClusterAPIError and subclasses — cluster transport failures; propagate
- CycleCancelledError           — deadline or shutdown; retryable
"""


class ControllerError(Exception):
    """Base error for all controller failures.

    Attributes:
        message: Human-readable error description.
        retryable: Whether the invoking framework may retry the cycle.
    """

    retryable: bool = False

    def __init__(self, message: str) -> None:
        """Initialize ControllerError.

        Args:
            message: Error description.
        """
        super().__init__(message)
        self.message = message


# ---------------------------------------------------------------------------
# Registry errors
# ---------------------------------------------------------------------------


class RegistryError(ControllerError):
    """Base error for container registry failures.

    Attributes:
        repository: The repository being resolved.
        status_code: HTTP status code from the registry (if available).
    """

    def __init__(
        self,
        message: str,
        repository: str = "",
        status_code: int | None = None,
    ) -> None:
        """Initialize RegistryError.

        Args:
            message: Error description.
            repository: Repository the request targeted.
            status_code: Optional HTTP status code.
        """
        super().__init__(message)
        self.repository = repository
        self.status_code = status_code


class TransientRegistryError(RegistryError):
    """Raised when the registry throttles a request (HTTP 429).

    Attributes:
        retry_after: Seconds from the Retry-After header, if the registry sent one.
    """

    retryable = True

    def __init__(
        self,
        message: str,
        repository: str = "",
        retry_after: float | None = None,
    ) -> None:
        """Initialize TransientRegistryError.

        Args:
            message: Error description.
            repository: Repository the request targeted.
            retry_after: Optional Retry-After hint in seconds.
        """
        super().__init__(message, repository=repository, status_code=429)
        self.retry_after = retry_after


class PermanentRegistryError(RegistryError):
    """Raised on auth failures, unexpected statuses, bad payloads, or network errors."""


class RateLimitExhaustedError(RegistryError):
    """Raised when every attempt allowed by the retry policy was throttled."""

    retryable = True

    def __init__(self, repository: str, attempts: int, message: str | None = None) -> None:
        """Initialize RateLimitExhaustedError.

        Args:
            repository: Repository that stayed rate limited.
            attempts: Number of attempts made.
            message: Optional override of the default description.
        """
        super().__init__(
            message
            or f"failed to fetch digest for {repository} after {attempts} attempts due to rate limiting",
            repository=repository,
            status_code=429,
        )
        self.attempts = attempts


class TransparencyLogError(ControllerError):
    """Raised by the transparency-log client on transport or decode failures.

    The attestation verifier turns this into a fail-closed result; it never
    reaches the reconciliation cycle.
    """


# ---------------------------------------------------------------------------
# Cluster errors
# ---------------------------------------------------------------------------


class SelectorError(ControllerError):
    """Raised when a namespace or deployment label selector is malformed."""


class WorkloadUpdateError(ControllerError):
    """Raised when remediation cannot rewrite or apply a workload update."""


class ClusterAPIError(ControllerError):
    """Raised when the cluster API rejects a request or is unreachable.

    Attributes:
        status_code: HTTP status code from the API server (if available).
    """

    retryable = True

    def __init__(self, message: str, status_code: int | None = None) -> None:
        """Initialize ClusterAPIError.

        Args:
            message: Error description.
            status_code: Optional HTTP status code.
        """
        super().__init__(message)
        self.status_code = status_code


class NotFoundError(ClusterAPIError):
    """Raised when the requested cluster object does not exist."""

    retryable = False


class ConflictError(ClusterAPIError):
    """Raised when a write loses an optimistic-concurrency race (HTTP 409)."""


class PolicyValidationError(ControllerError):
    """Raised when a stored ImagePolicy does not match the expected schema."""


class CycleCancelledError(ControllerError):
    """Raised when a reconciliation cycle is aborted by its deadline or shutdown."""

    retryable = True
