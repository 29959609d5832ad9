"""OAuth PKCE (RFC 7636) verifier and S256 challenge helpers."""

import base64
import hashlib
import secrets

VERIFIER_LENGTH = 64
MIN_VERIFIER_LENGTH = 43
MAX_VERIFIER_LENGTH = 128


def generate_code_verifier(length: int = VERIFIER_LENGTH) -> str:
    """Return a random verifier drawn from the unreserved URL-safe alphabet."""
    if not MIN_VERIFIER_LENGTH <= length <= MAX_VERIFIER_LENGTH:
        raise ValueError(f"PKCE verifier length must be between {MIN_VERIFIER_LENGTH} and {MAX_VERIFIER_LENGTH}")
    # token_urlsafe yields ~1.3 chars per byte from [A-Za-z0-9_-]
    return secrets.token_urlsafe(length)[:length]


def code_challenge_for(verifier: str) -> str:
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")
