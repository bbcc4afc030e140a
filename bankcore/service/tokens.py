from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from datetime import timedelta
from typing import Any, Optional

from bankcore.config import Settings
from bankcore.logging import get_logger

logger = get_logger(__name__)


class TokenIssuer:
    """HS256 signed tokens for sessions and pending-MFA handles.

    Tokens carry ``iss``/``aud``/``exp`` plus a ``token_type`` so a handle
    issued for one purpose is never accepted for another.
    """

    def __init__(
        self, settings: Settings, *, clock_skew_leeway: timedelta = timedelta(seconds=30)
    ) -> None:
        self.settings = settings
        self._clock_skew_leeway = clock_skew_leeway

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(
                self.settings.jwt_secret.encode(),
                signing_input.encode(),
                hashlib.sha256,
            ).digest()
        )

    def issue(
        self,
        identity_id: str,
        ttl: timedelta,
        *,
        token_type: str = "access",
        claims: Optional[dict[str, Any]] = None,
    ) -> str:
        now = time.time()
        payload = {
            **(claims or {}),
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": identity_id,
            "token_type": token_type,
            "jti": str(uuid.uuid4()),
            "iat": int(now),
            "exp": int(now + ttl.total_seconds()),
        }
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def verify(
        self, token: Optional[str], *, token_type: str = "access"
    ) -> Optional[dict[str, Any]]:
        """Return the payload of a valid, unexpired token of ``token_type``."""
        if not token:
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # Reject anything but HS256 before checking the signature
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            return None

        if not hmac.compare_digest(self._sign(f"{header_b64}.{payload_b64}"), sig_b64):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        if payload.get("aud") != self.settings.jwt_audience:
            return None
        if payload.get("token_type") != token_type:
            return None
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        if exp_ts <= time.time() - self._clock_skew_leeway.total_seconds():
            return None
        return payload
