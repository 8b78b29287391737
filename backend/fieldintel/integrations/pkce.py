"""PKCE verifier/challenge generation and the self-contained OAuth ``state`` blob.

The verifier travels inside ``state`` because the provider echoes ``state``
back unchanged, while browser storage is not guaranteed to survive the
cross-origin redirect.
"""

import base64
import hashlib
import hmac
import json
import secrets
import string
import time
from dataclasses import asdict, dataclass
from typing import Any

# RFC 7636 unreserved characters minus "~", which some URL encoders mangle
VERIFIER_ALPHABET = string.ascii_letters + string.digits + "-._"
VERIFIER_LENGTH = 128
NONCE_LENGTH = 32

STATE_MAX_AGE_SECONDS = 10 * 60


def base64url(data: bytes) -> str:
    """Base64url-encode without padding."""
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def _base64url_decode(value: str) -> bytes:
    padding = "=" * (-len(value) % 4)
    return base64.urlsafe_b64decode(value + padding)


def generate_code_verifier(length: int = VERIFIER_LENGTH) -> str:
    """Random verifier drawn from :data:`VERIFIER_ALPHABET`."""
    if not 43 <= length <= 128:
        raise ValueError("code_verifier length must be between 43 and 128")
    return "".join(secrets.choice(VERIFIER_ALPHABET) for _ in range(length))


def compute_code_challenge(verifier: str) -> str:
    """S256 challenge: base64url(sha256(verifier)) without padding."""
    return base64url(hashlib.sha256(verifier.encode("ascii")).digest())


def challenge_matches(verifier: str, challenge: str) -> bool:
    """Constant-time comparison of a recomputed challenge."""
    try:
        recomputed = compute_code_challenge(verifier)
    except UnicodeEncodeError:
        return False
    return hmac.compare_digest(recomputed, challenge)


@dataclass(frozen=True)
class OAuthState:
    """Decoded contents of the ``state`` parameter."""

    random: str
    verifier: str
    challenge: str
    timestamp: int  # epoch milliseconds

    @classmethod
    def create(cls, now_ms: int | None = None) -> "OAuthState":
        verifier = generate_code_verifier()
        return cls(
            random=secrets.token_urlsafe(NONCE_LENGTH),
            verifier=verifier,
            challenge=compute_code_challenge(verifier),
            timestamp=now_ms if now_ms is not None else int(time.time() * 1000),
        )

    def encode(self) -> str:
        return base64url(json.dumps(asdict(self), separators=(",", ":")).encode("utf-8"))

    @classmethod
    def decode(cls, blob: str) -> "OAuthState":
        """Decode a ``state`` blob.

        Raises:
            ValueError: If the blob is not base64url JSON of the expected shape.
        """
        try:
            data: Any = json.loads(_base64url_decode(blob))
        except (ValueError, TypeError) as e:
            raise ValueError(f"state is not valid base64url JSON: {e}") from e
        if not isinstance(data, dict):
            raise ValueError("state must decode to an object")
        try:
            return cls(
                random=str(data["random"]),
                verifier=str(data["verifier"]),
                challenge=str(data["challenge"]),
                timestamp=int(data["timestamp"]),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ValueError(f"state is missing fields: {e}") from e

    def age_seconds(self, now_ms: int | None = None) -> float:
        now = now_ms if now_ms is not None else int(time.time() * 1000)
        return (now - self.timestamp) / 1000.0

    def is_expired(self, now_ms: int | None = None) -> bool:
        return self.age_seconds(now_ms) > STATE_MAX_AGE_SECONDS
