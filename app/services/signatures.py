"""Keyed-hash signing and verification of gateway messages.

Each gateway defines its own canonical string: which fields take part, in
which order, and whether values are form-encoded. A :class:`CanonicalScheme`
captures those rules so the same engine serves every gateway.
"""
from __future__ import annotations

import hashlib
import hmac
import logging
from dataclasses import dataclass, field
from typing import Any, Mapping
from urllib.parse import quote_plus

logger = logging.getLogger(__name__)

SUPPORTED_DIGESTS = {"sha256", "sha512"}


class CanonicalizationError(ValueError):
    """Raised when a parameter set cannot be turned into a canonical string."""


@dataclass(frozen=True)
class CanonicalScheme:
    """Canonicalization and hashing rules of one gateway message type.

    ``field_order`` lists the signed fields in the documented order; when it is
    ``None`` every field matching ``key_prefix`` is signed in lexicographic key
    order. ``exclude`` names fields never signed (the signature itself).
    ``static_fields`` are merged into the parameters before canonicalization,
    for values both sides know but the message does not carry (e.g. an access key).
    """

    digest: str
    field_order: tuple[str, ...] | None = None
    key_prefix: str = ""
    exclude: frozenset[str] = frozenset()
    encode_values: bool = False
    static_fields: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.digest not in SUPPORTED_DIGESTS:
            raise ValueError(f"Unsupported digest algorithm: {self.digest}")


def _stringify(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (str, int)):
        return str(value)
    raise CanonicalizationError(f"Unsupported value type: {type(value).__name__}")


def canonicalize(params: Mapping[str, Any], scheme: CanonicalScheme) -> str:
    """Build the canonical ``key=value&...`` string for ``params``."""

    merged: dict[str, Any] = {**params, **scheme.static_fields}

    if scheme.field_order is not None:
        missing = [name for name in scheme.field_order if name not in merged]
        if missing:
            raise CanonicalizationError(f"Missing signed fields: {', '.join(missing)}")
        keys = list(scheme.field_order)
    else:
        keys = sorted(
            key
            for key in merged
            if key.startswith(scheme.key_prefix) and key not in scheme.exclude
        )
        if not keys:
            raise CanonicalizationError("No signable fields present")

    parts = []
    for key in keys:
        value = _stringify(merged[key])
        if scheme.encode_values:
            value = quote_plus(value)
        parts.append(f"{key}={value}")
    return "&".join(parts)


def sign(canonical: str, secret: str, digest: str) -> str:
    """Return the lowercase hex HMAC of ``canonical`` under ``secret``."""

    return hmac.new(secret.encode("utf-8"), canonical.encode("utf-8"), getattr(hashlib, digest)).hexdigest()


def sign_params(params: Mapping[str, Any], secret: str, scheme: CanonicalScheme) -> str:
    return sign(canonicalize(params, scheme), secret, scheme.digest)


def verify(
    params: Mapping[str, Any],
    secret: str | None,
    received_signature: Any,
    scheme: CanonicalScheme,
) -> bool:
    """Check ``received_signature`` against ``params``; malformed input yields ``False``."""

    if not secret or not isinstance(received_signature, str) or not received_signature:
        return False
    try:
        expected = sign_params(params, secret, scheme)
        return hmac.compare_digest(expected, received_signature.strip().lower())
    except (CanonicalizationError, TypeError, UnicodeError) as exc:
        logger.debug("Signature verification input rejected", extra={"reason": str(exc)})
        return False


def secret_fingerprint(secret: str | None) -> str | None:
    """Return a short, non-reversible marker for logging which secret is configured."""

    if not secret:
        return None
    return "sha256:" + hashlib.sha256(secret.encode()).hexdigest()[:8]


__all__ = [
    "CanonicalScheme",
    "CanonicalizationError",
    "canonicalize",
    "sign",
    "sign_params",
    "verify",
    "secret_fingerprint",
]
