"""PKCE (Proof Key for Code Exchange) and CSRF state generation.

:rfc:`7636` -- the client keeps a random *verifier* secret until the token
exchange and sends only its SHA-256 derived *challenge* in the
authorization URL (the ``S256`` method).

A fresh :class:`PKCEChallenge` and state token are created for every
authentication attempt and discarded afterwards; neither is ever persisted.
"""

from __future__ import annotations

import hashlib
import secrets
from base64 import urlsafe_b64encode
from dataclasses import dataclass, field

from deskauth.exceptions import RandomSourceError

VERIFIER_BYTES = 32
STATE_BYTES = 16


def _b64url(data: bytes) -> str:
    """Base64url-encode without padding."""
    return urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def _random_bytes(n: int) -> bytes:
    try:
        return secrets.token_bytes(n)
    except (NotImplementedError, OSError) as exc:
        raise RandomSourceError(
            "Cannot start secure authentication: the system random source is unavailable"
        ) from exc


def compute_code_challenge(verifier: str) -> str:
    """Return ``base64url(sha256(verifier))`` without padding."""
    return _b64url(hashlib.sha256(verifier.encode("ascii")).digest())


@dataclass(frozen=True)
class PKCEChallenge:
    """PKCE code verifier and challenge pair.

    The verifier is excluded from ``repr`` so it does not end up in logs.

    Attributes:
        verifier: 32 random bytes, base64url-encoded (43 characters).
        challenge: base64url SHA-256 digest of the verifier.
        method: The challenge method, always ``"S256"``.
    """

    verifier: str = field(repr=False)
    challenge: str
    method: str = "S256"


def generate_pkce() -> PKCEChallenge:
    """Generate a new PKCE verifier and S256 challenge.

    Raises:
        RandomSourceError: If the OS secure random source fails.
    """
    verifier = _b64url(_random_bytes(VERIFIER_BYTES))
    return PKCEChallenge(verifier=verifier, challenge=compute_code_challenge(verifier))


def generate_state() -> str:
    """Generate an opaque CSRF state token (16 random bytes, base64url).

    Raises:
        RandomSourceError: If the OS secure random source fails.
    """
    return _b64url(_random_bytes(STATE_BYTES))
