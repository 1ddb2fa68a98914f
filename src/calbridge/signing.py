"""HMAC-SHA256 signed compact tokens.

Used for two things: the bearer token handed to direct principals and the
OAuth ``state`` parameter.  The wire format is the JWS compact serialization
with a fixed ``HS256`` header (``header.payload.signature``, each part
unpadded base64url), so issued tokens can be inspected with ordinary JWT
tooling.

Only ``HS256`` is ever accepted; the header is compared byte-for-byte against
the one this module emits, which rules out algorithm-confusion tricks.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
from typing import Any

_HEADER = {"alg": "HS256", "typ": "JWT"}


class SignatureError(ValueError):
    """Token is malformed, carries a bad signature, or has expired."""


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _b64decode(segment: str) -> bytes:
    padding = -len(segment) % 4
    try:
        return base64.urlsafe_b64decode(segment + "=" * padding)
    except (ValueError, TypeError) as exc:
        raise SignatureError("token segment is not valid base64url") from exc


_ENCODED_HEADER = _b64encode(json.dumps(_HEADER, separators=(",", ":")).encode())


class Signer:
    """Signs and verifies JSON payloads with a shared secret.

    Parameters
    ----------
    secret:
        Server-side signing secret.  Must be non-empty.
    leeway_s:
        Clock skew tolerated when checking ``exp``.
    """

    def __init__(self, secret: str, *, leeway_s: int = 0) -> None:
        if not secret:
            raise ValueError("signing secret must not be empty")
        self._key = secret.encode("utf-8")
        self._leeway_s = leeway_s

    def __repr__(self) -> str:
        return "Signer(secret=<REDACTED>)"

    def _signature(self, signing_input: str) -> str:
        digest = hmac.new(self._key, signing_input.encode("ascii"), hashlib.sha256).digest()
        return _b64encode(digest)

    def sign(self, payload: dict[str, Any]) -> str:
        """Serialize and sign *payload*, returning the compact token."""
        body = _b64encode(json.dumps(payload, separators=(",", ":"), sort_keys=True).encode())
        signing_input = f"{_ENCODED_HEADER}.{body}"
        return f"{signing_input}.{self._signature(signing_input)}"

    def verify(self, token: str, *, now: float | None = None) -> dict[str, Any]:
        """Return the payload of *token* after checking signature and expiry.

        A payload without ``exp`` never expires at this layer; callers that
        need a lifetime put one in the payload.

        Raises
        ------
        SignatureError
            On any structural, signature or expiry failure.
        """
        if not isinstance(token, str) or token.count(".") != 2:
            raise SignatureError("token must have three dot-separated segments")
        header, body, signature = token.split(".")
        if not hmac.compare_digest(header, _ENCODED_HEADER):
            raise SignatureError("unsupported token header")
        expected = self._signature(f"{header}.{body}")
        if not hmac.compare_digest(signature, expected):
            raise SignatureError("signature mismatch")

        try:
            payload = json.loads(_b64decode(body))
        except json.JSONDecodeError as exc:
            raise SignatureError("token payload is not JSON") from exc
        if not isinstance(payload, dict):
            raise SignatureError("token payload must be an object")

        exp = payload.get("exp")
        if exp is not None:
            if not isinstance(exp, (int, float)):
                raise SignatureError("exp claim must be numeric")
            current = time.time() if now is None else now
            if current > exp + self._leeway_s:
                raise SignatureError("token has expired")
        return payload
