from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Optional, Tuple

from accountkit.config import Settings
from accountkit.logging import get_logger
from accountkit.storage.models import Account

logger = get_logger(__name__)


class TokenIssuer:
    """Signs and validates HS256 access tokens and mints refresh tokens.

    Refresh tokens are opaque random strings; their validity lives entirely
    in the session store. Access tokens carry a ``jti`` so a session row can
    be matched to the access token issued alongside it.
    """

    def __init__(self, settings: Settings, *, clock_skew_seconds: int = 120) -> None:
        self.settings = settings
        # Allowance for small clock skew across nodes
        self._clock_skew_leeway = timedelta(seconds=clock_skew_seconds)

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

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

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _split(self, token: str) -> Optional[Tuple[str, str, str]]:
        if not token or not isinstance(token, str) or not token.isascii():
            return None
        parts = token.split(".")
        if len(parts) != 3:
            return None
        return parts[0], parts[1], parts[2]

    def _decode_payload(self, payload_b64: str) -> Optional[dict[str, Any]]:
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        return payload if isinstance(payload, dict) else None

    def issue_access_token(self, account: Account) -> Tuple[str, str]:
        """Return ``(token, jti)`` for a freshly authenticated account."""
        now = self._now()
        exp = int(
            (now + timedelta(minutes=self.settings.access_token_ttl_minutes)).timestamp()
        )
        jti = str(uuid.uuid4())
        payload = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": account.id,
            "username": account.username,
            "token_type": "access",
            "jti": jti,
            "iat": int(now.timestamp()),
            "exp": exp,
        }
        return self._encode_jwt(payload), jti

    def issue_refresh_token(self) -> str:
        return secrets.token_urlsafe(48)

    def extract_jti(self, token: str) -> Optional[str]:
        """Read the ``jti`` claim without checking the signature."""
        parts = self._split(token)
        if parts is None:
            return None
        payload = self._decode_payload(parts[1])
        if payload is None:
            return None
        jti = payload.get("jti")
        return jti if isinstance(jti, str) else None

    def validate(self, token: str) -> Optional[dict[str, Any]]:
        """Return the claims of a valid access token, or None.

        The reason for a rejection is logged at debug level only and never
        returned to the caller.
        """
        parts = self._split(token)
        if parts is None:
            return None
        header_b64, payload_b64, sig_b64 = parts

        # Pin the algorithm to prevent algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.debug("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.debug("jwt_invalid_algorithm")
            return None

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            return None
        payload = self._decode_payload(payload_b64)
        if payload is None:
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, str):
            valid_aud = aud == self.settings.jwt_audience
        elif isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = False
        if not valid_aud:
            return None
        if payload.get("token_type") != "access":
            return None
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        if exp_ts <= time.time() - self._clock_skew_leeway.total_seconds():
            return None
        return payload
