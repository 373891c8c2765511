"""Image reference helpers.

A container image reference matches a monitored repository when it starts
with the repository (or its default-registry-qualified form) and the prefix
ends at a reference boundary: end of string, a `:` tag separator, or an
`@` digest separator. Requiring the boundary keeps `acme/app` from claiming
`acme/application`.
"""

from imagepolicy_controller.core.models import DIGEST_PATTERN

DEFAULT_REGISTRY_PREFIX = "docker.io/"

_REFERENCE_BOUNDARIES = (":", "@")


def _has_boundary(image: str, prefix: str) -> bool:
    if not image.startswith(prefix):
        return False
    rest = image[len(prefix):]
    return rest == "" or rest.startswith(_REFERENCE_BOUNDARIES)


def matched_prefix(
    image: str,
    repository: str,
    registry_prefix: str = DEFAULT_REGISTRY_PREFIX,
) -> str | None:
    """Return the repository prefix an image reference uses, if it matches.

    Args:
        image: Container image reference, e.g. docker.io/acme/app@sha256:...
        repository: Monitored repository, e.g. acme/app.
        registry_prefix: Default-registry host prefix, e.g. docker.io/.

    Returns:
        The matched prefix (qualified or bare repository), or None.
    """
    qualified = f"{registry_prefix}{repository}"
    if _has_boundary(image, qualified):
        return qualified
    if _has_boundary(image, repository):
        return repository
    return None


def matches_repository(
    image: str,
    repository: str,
    registry_prefix: str = DEFAULT_REGISTRY_PREFIX,
) -> bool:
    """Return True if an image reference belongs to the monitored repository."""
    return matched_prefix(image, repository, registry_prefix) is not None


def extract_digest(image: str) -> str | None:
    """Extract the `sha256:` digest from a digest-qualified reference.

    Args:
        image: Container image reference.

    Returns:
        The digest after `@`, or None for tag-based references.
    """
    if "@sha256:" not in image:
        return None
    _, _, digest = image.rpartition("@")
    return digest


def pin_to_digest(prefix: str, digest: str) -> str:
    """Build a digest-pinned reference, e.g. acme/app@sha256:..."""
    return f"{prefix}@{digest}"


def is_valid_digest(digest: str) -> bool:
    """Return True for `sha256:<64 lowercase hex>` digests."""
    return bool(DIGEST_PATTERN.match(digest))
