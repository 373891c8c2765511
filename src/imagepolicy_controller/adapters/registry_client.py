"""Container registry client (Docker Registry HTTP API v2).

Resolves the digest of a repository's `latest` tag in two hops:

1. GET {auth_url}/token?service=...&scope=repository:<repo>:pull -> {token}
2. GET {registry_url}/v2/<repo>/manifests/latest with the bearer token and an
   explicit manifest Accept header.

The digest is read from the Docker-Content-Digest response header, not the
JSON body. Each call is a single attempt: HTTP 429 from either hop raises
TransientRegistryError so the DigestResolver can back off; every other failure
raises PermanentRegistryError.
"""

import httpx

from imagepolicy_controller.core.images import is_valid_digest
from imagepolicy_controller.errors import PermanentRegistryError, TransientRegistryError
from imagepolicy_controller.observability import get_logger

logger = get_logger(__name__)

_DEFAULT_AUTH_URL = "https://auth.docker.io"
_DEFAULT_SERVICE = "registry.docker.io"
_DEFAULT_REGISTRY_URL = "https://registry-1.docker.io"
_DEFAULT_TIMEOUT_SECONDS = 30.0

MANIFEST_ACCEPT = "application/vnd.docker.distribution.manifest.v2+json"
DIGEST_HEADER = "Docker-Content-Digest"


def _retry_after(response: httpx.Response) -> float | None:
    value = response.headers.get("Retry-After")
    if value is None:
        return None
    try:
        return max(float(value), 0.0)
    except ValueError:
        return None


class RegistryClient:
    """Async client for token exchange and manifest digest lookup.

    Args:
        auth_url: Token endpoint host.
        service: `service` parameter for the token request.
        registry_url: Registry v2 API base URL.
        timeout_seconds: Per-request timeout.
        transport: Optional httpx transport (tests use httpx.MockTransport).
    """

    def __init__(
        self,
        auth_url: str = _DEFAULT_AUTH_URL,
        service: str = _DEFAULT_SERVICE,
        registry_url: str = _DEFAULT_REGISTRY_URL,
        timeout_seconds: float = _DEFAULT_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._auth_url = auth_url.rstrip("/")
        self._service = service
        self._registry_url = registry_url.rstrip("/")
        self._timeout_seconds = timeout_seconds
        self._transport = transport

    async def fetch_latest_digest(self, repository: str) -> str:
        """Fetch the digest of the repository's `latest` tag (single attempt).

        Args:
            repository: Repository in owner/name form.

        Returns:
            The sha256 digest from the Docker-Content-Digest header.

        Raises:
            TransientRegistryError: If either hop answered HTTP 429.
            PermanentRegistryError: On auth failure, unexpected status,
                malformed response, timeout, or network error.
        """
        try:
            async with httpx.AsyncClient(timeout=self._timeout_seconds, transport=self._transport) as client:
                token = await self._fetch_token(client, repository)
                return await self._fetch_manifest_digest(client, repository, token)
        except httpx.TimeoutException as exc:
            raise PermanentRegistryError(
                f"registry request for {repository} timed out after {self._timeout_seconds}s",
                repository=repository,
            ) from exc
        except httpx.RequestError as exc:
            raise PermanentRegistryError(
                f"registry request for {repository} failed: {exc}",
                repository=repository,
            ) from exc

    async def _fetch_token(self, client: httpx.AsyncClient, repository: str) -> str:
        response = await client.get(
            f"{self._auth_url}/token",
            params={"service": self._service, "scope": f"repository:{repository}:pull"},
        )

        if response.status_code == 429:
            raise TransientRegistryError(
                "registry auth API returned status 429",
                repository=repository,
                retry_after=_retry_after(response),
            )
        if response.status_code != 200:
            raise PermanentRegistryError(
                f"registry auth API returned status {response.status_code}",
                repository=repository,
                status_code=response.status_code,
            )

        try:
            body = response.json()
        except ValueError as exc:
            raise PermanentRegistryError(
                f"failed to decode token response: {exc}",
                repository=repository,
            ) from exc

        token = None
        if isinstance(body, dict):
            token = body.get("token") or body.get("access_token")
        if not token:
            raise PermanentRegistryError("token response did not contain a token", repository=repository)
        return str(token)

    async def _fetch_manifest_digest(self, client: httpx.AsyncClient, repository: str, token: str) -> str:
        url = f"{self._registry_url}/v2/{repository}/manifests/latest"
        logger.debug("Fetching manifest", repository=repository, url=url)

        response = await client.get(
            url,
            headers={"Authorization": f"Bearer {token}", "Accept": MANIFEST_ACCEPT},
        )

        if response.status_code == 429:
            raise TransientRegistryError(
                "registry manifest API returned status 429",
                repository=repository,
                retry_after=_retry_after(response),
            )
        if response.status_code != 200:
            raise PermanentRegistryError(
                f"registry manifest API returned status {response.status_code}",
                repository=repository,
                status_code=response.status_code,
            )

        digest = response.headers.get(DIGEST_HEADER, "").strip()
        if not digest:
            raise PermanentRegistryError("no digest found in response headers", repository=repository)
        if not is_valid_digest(digest):
            raise PermanentRegistryError(f"malformed digest in response headers: {digest}", repository=repository)
        return digest
