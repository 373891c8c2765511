"""Attestation verification against a transparency log.

The verifier is an optional capability with two variants:

- TransparencyLogVerifier — looks up log entries whose in-toto subject is the
  digest and accepts the first entry that satisfies the issuer, type, and age
  constraints.
- UnavailableVerifier     — used when no transparency log is configured;
  every check fails closed with an explicit reason.

Empty allow-lists are permissive: no allowed issuers accepts any issuer and
no required types accepts any type. Failures name the constraint that
rejected the candidates, using the reason codes below as message prefixes.
"""

import re
from collections.abc import Callable, Collection
from datetime import UTC, datetime, timedelta

from imagepolicy_controller.core.images import is_valid_digest
from imagepolicy_controller.core.interfaces import IAttestationVerifier, ITransparencyLog
from imagepolicy_controller.core.models import AttestationResult, TransparencyLogEntry
from imagepolicy_controller.errors import TransparencyLogError
from imagepolicy_controller.observability import get_logger

logger = get_logger(__name__)

# Failure reason codes
NO_ENTRIES_FOUND = "no-entries-found"
ISSUER_NOT_ALLOWED = "issuer-not-allowed"
TYPE_NOT_REQUIRED = "type-not-required"
ATTESTATION_EXPIRED = "attestation-expired"
VERIFIER_UNAVAILABLE = "verifier-unavailable"

# cosign attestation type names and the in-toto predicate types they denote
PREDICATE_TYPE_ALIASES: dict[str, str] = {
    "slsaprovenance": "https://slsa.dev/provenance/v0.2",
    "slsaprovenance02": "https://slsa.dev/provenance/v0.2",
    "slsaprovenance1": "https://slsa.dev/provenance/v1",
    "spdx": "https://spdx.dev/Document",
    "spdxjson": "https://spdx.dev/Document",
    "cyclonedx": "https://cyclonedx.org/bom",
    "vuln": "https://cosign.sigstore.dev/attestation/vuln/v1",
    "openvex": "https://openvex.dev/ns",
    "link": "https://in-toto.io/Link/v1",
    "custom": "https://cosign.sigstore.dev/attestation/v1",
}

_SHORT_NAMES: dict[str, str] = {}
for _name, _uri in PREDICATE_TYPE_ALIASES.items():
    _SHORT_NAMES.setdefault(_uri, _name)

_DURATION_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h)")
_DURATION_UNITS: dict[str, float] = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}


def parse_duration(value: str) -> timedelta:
    """Parse a Go-style duration string such as "24h", "90m", or "1h30m".

    Args:
        value: Duration string.

    Returns:
        The duration as a timedelta.

    Raises:
        ValueError: If the string is not a valid non-negative duration.
    """
    text = value.strip()
    if text == "0":
        return timedelta(0)
    if not text:
        raise ValueError("empty duration")

    seconds = 0.0
    position = 0
    for match in _DURATION_PART.finditer(text):
        if match.start() != position:
            break
        seconds += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        position = match.end()

    if position != len(text) or position == 0:
        raise ValueError(f"invalid duration {value!r}")
    return timedelta(seconds=seconds)


def attestation_type_for(predicate_type: str) -> str:
    """Return the short cosign type name for a predicate type, or the URI itself."""
    return _SHORT_NAMES.get(predicate_type, predicate_type)


def type_matches(predicate_type: str, required_types: Collection[str]) -> bool:
    """Return True if the predicate type satisfies the required types.

    A required type may be a cosign short name or a full predicate type URI.
    An empty collection accepts any type.
    """
    if not required_types:
        return True
    for required in required_types:
        if required == predicate_type:
            return True
        if PREDICATE_TYPE_ALIASES.get(required.lower()) == predicate_type:
            return True
    return False


def issuer_matches(issuer: str, allowed_issuers: Collection[str]) -> bool:
    """Return True if the issuer is allowed. An empty collection accepts any issuer."""
    return not allowed_issuers or issuer in allowed_issuers


def _failed(error: str) -> AttestationResult:
    return AttestationResult(verified=False, error=error)


class UnavailableVerifier:
    """Verifier variant used when no transparency log is configured."""

    async def verify(
        self,
        digest: str,
        allowed_issuers: Collection[str],
        required_types: Collection[str],
        max_age: timedelta | None = None,
    ) -> AttestationResult:
        """Fail closed for every digest."""
        if not digest:
            return _failed("no image digest available for verification")
        return _failed(f"{VERIFIER_UNAVAILABLE}: attestation verifier unavailable")


class TransparencyLogVerifier:
    """Verifier backed by a transparency-log lookup keyed by digest subject.

    Args:
        log: Transparency log client.
        clock: Returns the current UTC time; injectable for tests.
    """

    def __init__(
        self,
        log: ITransparencyLog,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._log = log
        self._clock = clock or (lambda: datetime.now(UTC))

    async def verify(
        self,
        digest: str,
        allowed_issuers: Collection[str],
        required_types: Collection[str],
        max_age: timedelta | None = None,
    ) -> AttestationResult:
        """Verify that an accepted attestation exists for the digest.

        Args:
            digest: Image digest in sha256:<hex> form.
            allowed_issuers: Accepted OIDC issuers; empty accepts any.
            required_types: Accepted attestation types; empty accepts any.
            max_age: Optional maximum age measured from the log integration time.

        Returns:
            The first accepted entry as a verified result, or a fail-closed
            result naming the constraint that rejected every candidate.
        """
        if not digest:
            return _failed("no image digest available for verification")
        if not is_valid_digest(digest):
            return _failed(f"invalid digest format: {digest}")

        try:
            entries = await self._log.search_entries(digest)
        except TransparencyLogError as exc:
            logger.warning("Transparency log lookup failed", digest=digest, error=str(exc))
            return _failed(f"transparency log lookup failed: {exc}")

        candidates = [entry for entry in entries if digest in entry.subject_digests]
        if not candidates:
            return _failed(f"{NO_ENTRIES_FOUND}: no attestation entries found for digest {digest}")

        allowed = set(allowed_issuers)
        required = set(required_types)
        now = self._clock()

        issuer_ok_seen = False
        type_ok_seen = False
        for entry in candidates:
            if not issuer_matches(entry.issuer, allowed):
                continue
            issuer_ok_seen = True
            if not type_matches(entry.predicate_type, required):
                continue
            type_ok_seen = True
            if max_age is not None and now - entry.integrated_time > max_age:
                continue
            logger.debug(
                "Attestation accepted",
                digest=digest,
                log_index=entry.log_index,
                issuer=entry.issuer,
                predicate_type=entry.predicate_type,
            )
            return AttestationResult(
                verified=True,
                attestation_type=attestation_type_for(entry.predicate_type),
                issuer=entry.issuer,
                log_index=entry.log_index,
                timestamp=entry.integrated_time,
            )

        return _failed(self._describe_rejection(candidates, allowed, required, max_age, issuer_ok_seen, type_ok_seen))

    @staticmethod
    def _describe_rejection(
        candidates: list[TransparencyLogEntry],
        allowed: set[str],
        required: set[str],
        max_age: timedelta | None,
        issuer_ok_seen: bool,
        type_ok_seen: bool,
    ) -> str:
        if not issuer_ok_seen:
            issuers = sorted({entry.issuer or "<none>" for entry in candidates})
            return f"{ISSUER_NOT_ALLOWED}: entry issuers {issuers} not in allowed issuers {sorted(allowed)}"
        if not type_ok_seen:
            types = sorted({entry.predicate_type or "<none>" for entry in candidates})
            return f"{TYPE_NOT_REQUIRED}: entry types {types} not in required types {sorted(required)}"
        return f"{ATTESTATION_EXPIRED}: no matching attestation newer than {max_age}"


def build_verifier(log: ITransparencyLog | None) -> IAttestationVerifier:
    """Return the verifier variant for an optional transparency log."""
    if log is None:
        return UnavailableVerifier()
    return TransparencyLogVerifier(log)
