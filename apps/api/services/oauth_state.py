"""
Encrypted OAuth transport state carried in a short-lived httpOnly cookie.

The payload is never persisted server side. It is serialized to JSON, sealed
with the credential cipher and decoded in exactly one place so malformed or
tampered cookies fail a single well-defined step.
"""

from __future__ import annotations

import json
import secrets
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

from config import settings
from services.crypto import CredentialCipher, get_cipher
from services.errors import IntegrityError, OAuthStateError

COOKIE_NAME_PREFIX = "oauth_transport_"


@dataclass(frozen=True)
class OAuthTransportState:
    state: str
    redirect_uri: str
    platform: str
    user_id: str
    code_verifier: Optional[str] = None
    issued_at: int = 0

    @classmethod
    def issue(
        cls,
        platform: str,
        user_id: str,
        redirect_uri: str,
        code_verifier: Optional[str] = None,
    ) -> "OAuthTransportState":
        return cls(
            state=secrets.token_urlsafe(32),
            redirect_uri=redirect_uri,
            platform=platform,
            user_id=user_id,
            code_verifier=code_verifier,
            issued_at=int(time.time()),
        )


def cookie_name(platform: str) -> str:
    return f"{COOKIE_NAME_PREFIX}{platform}"


def encode_transport_state(payload: OAuthTransportState, cipher: Optional[CredentialCipher] = None) -> str:
    cipher = cipher or get_cipher()
    body: Dict[str, Any] = {
        "v": 1,
        "state": payload.state,
        "redirect_uri": payload.redirect_uri,
        "platform": payload.platform,
        "user_id": payload.user_id,
        "issued_at": payload.issued_at,
    }
    if payload.code_verifier:
        body["code_verifier"] = payload.code_verifier
    return cipher.encrypt(json.dumps(body, separators=(",", ":")))


def decode_transport_state(
    raw: Optional[str],
    *,
    cipher: Optional[CredentialCipher] = None,
    max_age_seconds: Optional[int] = None,
    now: Optional[float] = None,
) -> OAuthTransportState:
    """
    Decode and validate a transport cookie value.

    Raises:
        OAuthStateError: missing, expired, tampered or structurally invalid payload
    """
    if not raw:
        raise OAuthStateError("OAuth session cookie is missing", code="session_expired")

    cipher = cipher or get_cipher()
    try:
        decoded = json.loads(cipher.decrypt(raw))
    except IntegrityError as exc:
        raise OAuthStateError("OAuth session cookie failed integrity check", code="session_expired") from exc
    except ValueError as exc:
        raise OAuthStateError("OAuth session cookie is not valid JSON", code="session_expired") from exc

    if not isinstance(decoded, dict):
        raise OAuthStateError("OAuth session cookie has an unexpected shape", code="session_expired")

    state = decoded.get("state")
    redirect_uri = decoded.get("redirect_uri")
    platform = decoded.get("platform")
    user_id = decoded.get("user_id")
    issued_at = decoded.get("issued_at")
    code_verifier = decoded.get("code_verifier")
    if not all(isinstance(value, str) and value for value in (state, redirect_uri, platform, user_id)):
        raise OAuthStateError("OAuth session cookie is missing required fields", code="session_expired")
    if not isinstance(issued_at, int):
        raise OAuthStateError("OAuth session cookie is missing issued_at", code="session_expired")
    if code_verifier is not None and not isinstance(code_verifier, str):
        raise OAuthStateError("OAuth session cookie has an invalid code_verifier", code="session_expired")

    max_age = settings.OAUTH_COOKIE_MAX_AGE_SECONDS if max_age_seconds is None else max_age_seconds
    current = time.time() if now is None else now
    if current - issued_at > max_age:
        raise OAuthStateError("OAuth session expired", code="session_expired")

    return OAuthTransportState(
        state=state,
        redirect_uri=redirect_uri,
        platform=platform,
        user_id=user_id,
        code_verifier=code_verifier,
        issued_at=issued_at,
    )


def transport_cookie_attributes(max_age: Optional[int] = None) -> Dict[str, Any]:
    """Keyword arguments for ``Response.set_cookie``."""
    return {
        "max_age": settings.OAUTH_COOKIE_MAX_AGE_SECONDS if max_age is None else max_age,
        "httponly": True,
        "samesite": "lax",
        "secure": settings.APP_URL.startswith("https://"),
        "path": "/",
    }
