"""Rekor transparency-log client.

Finds attestations for an image digest in two calls:

1. POST /api/v1/index/retrieve {"hash": "sha256:<hex>"} -> entry UUIDs
2. POST /api/v1/log/entries/retrieve {"entryUUIDs": [...]} -> entries

Each entry carries a base64 canonical `body` (the signed envelope and signing
certificate), `integratedTime`, `logIndex`, and for in-toto entries an
`attestation.data` field holding the base64 in-toto statement. The statement
supplies the predicate type and subject digests; the Fulcio certificate
supplies the OIDC issuer.

Entries that cannot be decoded are skipped with a warning. Transport
failures raise TransparencyLogError.
"""

import base64
import binascii
import json
from datetime import UTC, datetime
from typing import Any

import httpx
from cryptography import x509
from cryptography.x509 import ObjectIdentifier

from imagepolicy_controller.core.models import TransparencyLogEntry
from imagepolicy_controller.errors import TransparencyLogError
from imagepolicy_controller.observability import get_logger

logger = get_logger(__name__)

_DEFAULT_REKOR_URL = "https://rekor.sigstore.dev"
_DEFAULT_TIMEOUT_SECONDS = 30.0
_DEFAULT_MAX_ENTRIES = 50

# Fulcio certificate extensions carrying the OIDC issuer
FULCIO_ISSUER_V1_OID = ObjectIdentifier("1.3.6.1.4.1.57264.1.1")
FULCIO_ISSUER_V2_OID = ObjectIdentifier("1.3.6.1.4.1.57264.1.8")


def _b64decode(value: str) -> bytes:
    return base64.b64decode(value, validate=False)


def _decode_der_utf8(raw: bytes) -> str | None:
    # DER UTF8String: tag 0x0C, definite length (short or long form)
    if len(raw) < 2 or raw[0] != 0x0C:
        return None
    length = raw[1]
    index = 2
    if length & 0x80:
        octets = length & 0x7F
        if octets == 0 or len(raw) < 2 + octets:
            return None
        length = int.from_bytes(raw[index : index + octets], "big")
        index += octets
    if len(raw) < index + length:
        return None
    try:
        return raw[index : index + length].decode("utf-8")
    except UnicodeDecodeError:
        return None


def extract_oidc_issuer(certificate_pem: bytes) -> str:
    """Return the OIDC issuer recorded in a Fulcio signing certificate.

    Args:
        certificate_pem: PEM-encoded certificate. A bare public key (keyed
            signing) has no issuer.

    Returns:
        The issuer URL, or an empty string when absent or unparseable.
    """
    try:
        certificate = x509.load_pem_x509_certificate(certificate_pem)
    except ValueError:
        return ""

    try:
        raw = certificate.extensions.get_extension_for_oid(FULCIO_ISSUER_V1_OID).value.value
        return raw.decode("utf-8")
    except (x509.ExtensionNotFound, UnicodeDecodeError):
        pass

    try:
        raw = certificate.extensions.get_extension_for_oid(FULCIO_ISSUER_V2_OID).value.value
    except x509.ExtensionNotFound:
        return ""
    return _decode_der_utf8(raw) or ""


def _object(value: Any) -> dict[str, Any]:
    # JSON values of the wrong shape read as empty objects
    return value if isinstance(value, dict) else {}


def _first_object(value: Any) -> dict[str, Any]:
    if isinstance(value, list) and value:
        return _object(value[0])
    return {}


def _signing_certificate(body: dict[str, Any]) -> bytes | None:
    """Locate the base64 PEM signing certificate in a canonical entry body."""
    kind = body.get("kind")
    spec = _object(body.get("spec"))
    encoded: Any = None

    if kind == "intoto":
        signatures = _object(_object(spec.get("content")).get("envelope")).get("signatures")
        if signatures:
            encoded = _first_object(signatures).get("publicKey")
        else:
            encoded = spec.get("publicKey")
    elif kind == "dsse":
        encoded = _first_object(spec.get("signatures")).get("verifier")
    elif kind == "hashedrekord":
        encoded = _object(_object(spec.get("signature")).get("publicKey")).get("content")

    if not encoded or not isinstance(encoded, str):
        return None
    return _b64decode(encoded)


def _statement_fields(entry: dict[str, Any]) -> tuple[str, list[str]]:
    """Return (predicateType, subject digests) from an entry's stored attestation."""
    data = _object(entry.get("attestation")).get("data")
    if not data:
        return "", []
    if not isinstance(data, str):
        raise ValueError("attestation data is not a base64 string")
    statement = json.loads(_b64decode(data))
    if not isinstance(statement, dict):
        raise ValueError("in-toto statement is not a JSON object")
    predicate_type = str(statement.get("predicateType", ""))
    digests = [
        f"sha256:{subject['digest']['sha256']}"
        for subject in statement.get("subject") or []
        if isinstance(subject, dict) and isinstance(subject.get("digest"), dict) and subject["digest"].get("sha256")
    ]
    return predicate_type, digests


def parse_log_entry(entry_uuid: str, entry: dict[str, Any]) -> TransparencyLogEntry:
    """Convert a raw Rekor log entry into a TransparencyLogEntry.

    Args:
        entry_uuid: The entry UUID key from the retrieve response.
        entry: The entry object.

    Returns:
        The parsed entry.

    Raises:
        ValueError: If the body, attestation, or metadata cannot be decoded.
        KeyError: If required metadata is missing.
    """
    if not isinstance(entry, dict):
        raise ValueError("log entry is not a JSON object")
    try:
        body = json.loads(_b64decode(entry["body"]))
    except binascii.Error as exc:
        raise ValueError(f"entry body is not base64: {exc}") from exc
    if not isinstance(body, dict):
        raise ValueError("entry body is not a JSON object")

    certificate = _signing_certificate(body)
    issuer = extract_oidc_issuer(certificate) if certificate else ""
    predicate_type, subject_digests = _statement_fields(entry)

    return TransparencyLogEntry(
        uuid=entry_uuid,
        log_index=int(entry["logIndex"]),
        integrated_time=datetime.fromtimestamp(int(entry["integratedTime"]), UTC),
        issuer=issuer,
        predicate_type=predicate_type,
        subject_digests=subject_digests,
    )


class RekorClient:
    """Async client for the Rekor REST API.

    Args:
        base_url: Rekor base URL.
        timeout_seconds: Per-request timeout.
        max_entries: Maximum number of entries fetched per digest.
        transport: Optional httpx transport (tests use httpx.MockTransport).
    """

    def __init__(
        self,
        base_url: str = _DEFAULT_REKOR_URL,
        timeout_seconds: float = _DEFAULT_TIMEOUT_SECONDS,
        max_entries: int = _DEFAULT_MAX_ENTRIES,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout_seconds = timeout_seconds
        self._max_entries = max_entries
        self._transport = transport

    async def search_entries(self, digest: str) -> list[TransparencyLogEntry]:
        """Return log entries indexed under the digest.

        Args:
            digest: Image digest in sha256:<hex> form.

        Returns:
            Parsed entries, newest log index first. Undecodable entries are skipped.

        Raises:
            TransparencyLogError: On timeout, network error, or unexpected status.
        """
        try:
            async with httpx.AsyncClient(timeout=self._timeout_seconds, transport=self._transport) as client:
                uuids = await self._retrieve_uuids(client, digest)
                if not uuids:
                    return []
                raw_entries = await self._retrieve_entries(client, uuids[: self._max_entries])
        except httpx.TimeoutException as exc:
            raise TransparencyLogError(f"Rekor request timed out after {self._timeout_seconds}s") from exc
        except httpx.RequestError as exc:
            raise TransparencyLogError(f"Rekor request error: {exc}") from exc

        entries: list[TransparencyLogEntry] = []
        for entry_uuid, entry in raw_entries:
            try:
                entries.append(parse_log_entry(entry_uuid, entry))
            except (ValueError, KeyError, TypeError) as exc:
                logger.warning("Skipping undecodable Rekor entry", uuid=entry_uuid, error=str(exc))

        entries.sort(key=lambda e: e.log_index, reverse=True)
        logger.debug("Rekor search complete", digest=digest, entries=len(entries))
        return entries

    async def _retrieve_uuids(self, client: httpx.AsyncClient, digest: str) -> list[str]:
        response = await client.post(f"{self._base_url}/api/v1/index/retrieve", json={"hash": digest})
        if response.status_code == 404:
            return []
        if response.status_code != 200:
            raise TransparencyLogError(
                f"Rekor index search returned status {response.status_code}: {response.text[:200]}"
            )
        try:
            body = response.json()
        except ValueError as exc:
            raise TransparencyLogError(f"failed to decode Rekor index response: {exc}") from exc
        if body is None:
            return []
        if not isinstance(body, list):
            raise TransparencyLogError("Rekor index response is not a JSON array")
        return [str(uuid) for uuid in body]

    async def _retrieve_entries(
        self,
        client: httpx.AsyncClient,
        uuids: list[str],
    ) -> list[tuple[str, dict[str, Any]]]:
        response = await client.post(
            f"{self._base_url}/api/v1/log/entries/retrieve",
            json={"entryUUIDs": uuids},
        )
        if response.status_code != 200:
            raise TransparencyLogError(
                f"Rekor entry retrieval returned status {response.status_code}: {response.text[:200]}"
            )
        try:
            body = response.json()
        except ValueError as exc:
            raise TransparencyLogError(f"failed to decode Rekor entries response: {exc}") from exc

        if body is None:
            return []
        if not isinstance(body, list):
            raise TransparencyLogError("Rekor entries response is not a JSON array")

        pairs: list[tuple[str, dict[str, Any]]] = []
        for item in body:
            if not isinstance(item, dict):
                logger.warning("Skipping malformed Rekor retrieve item", item_type=type(item).__name__)
                continue
            pairs.extend(item.items())
        return pairs

    async def health_check(self) -> bool:
        """Return True if Rekor answers its log-info endpoint."""
        try:
            async with httpx.AsyncClient(timeout=3.0, transport=self._transport) as client:
                response = await client.get(f"{self._base_url}/api/v1/log")
                return response.status_code == 200
        except httpx.RequestError:
            logger.warning("Rekor health check failed - Rekor not reachable", rekor_url=self._base_url)
            return False
