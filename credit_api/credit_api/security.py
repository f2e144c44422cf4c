"""HMAC-signed bearer tokens.

Token format::

    ctk.<urlsafe-base64(payload JSON)>.<hex HMAC-SHA256(payload JSON)>

The payload carries ``sub`` (the user id), ``iat`` and ``exp`` (epoch
seconds).  Identity is issued by the platform's auth service; this module
only verifies it.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import logging
import secrets
import time
from typing import Any

from pydantic import BaseModel, SecretStr, ValidationError

logger = logging.getLogger(__name__)

TOKEN_PREFIX = "ctk"


class TokenClaims(BaseModel):
    """Validated claims of a bearer token."""

    sub: str
    iat: float
    exp: float


class TokenManager:
    """Issue and validate HMAC bearer tokens.

    Parameters
    ----------
    secret:
        Signing key.  When empty a random per-process key is generated, so
        tokens do not survive a restart.
    ttl_seconds:
        Default lifetime of issued tokens.
    """

    def __init__(self, secret: SecretStr, ttl_seconds: int = 3600) -> None:
        value = secret.get_secret_value()
        if not value:
            value = f"dev-{secrets.token_hex(32)}"
            logger.warning("token_secret not set; generated a random per-process secret")
        self._key = value.encode("utf-8")
        self._ttl = ttl_seconds

    def _sign(self, payload_json: str) -> str:
        return hmac.new(self._key, payload_json.encode("utf-8"), hashlib.sha256).hexdigest()

    def issue_token(self, sub: str, ttl_seconds: int | None = None) -> str:
        now = time.time()
        payload: dict[str, Any] = {"sub": sub, "iat": now, "exp": now + (ttl_seconds or self._ttl)}
        payload_json = json.dumps(payload)
        encoded = base64.urlsafe_b64encode(payload_json.encode("utf-8")).decode("ascii")
        return f"{TOKEN_PREFIX}.{encoded}.{self._sign(payload_json)}"

    def validate_token(self, token: str) -> TokenClaims:
        """Verify signature and expiry and return the claims.

        Raises
        ------
        PermissionError
            If the token is malformed, badly signed or expired.
        """
        parts = token.split(".")
        if len(parts) != 3 or parts[0] != TOKEN_PREFIX:
            raise PermissionError("Malformed token")

        try:
            payload_json = base64.urlsafe_b64decode(parts[1].encode("ascii")).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError, ValueError) as exc:
            raise PermissionError("Malformed token payload") from exc

        if not hmac.compare_digest(self._sign(payload_json), parts[2]):
            raise PermissionError("Invalid token signature")

        try:
            claims = TokenClaims.model_validate_json(payload_json)
        except ValidationError as exc:
            raise PermissionError("Invalid token claims") from exc

        if claims.exp <= time.time():
            raise PermissionError("Token expired")
        return claims
