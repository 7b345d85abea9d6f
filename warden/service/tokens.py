from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from warden.config import Settings
from warden.logging import get_logger
from warden.service.errors import InvalidTokenError

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"


def hash_token(raw_token: str) -> str:
    """Digest stored in place of a raw refresh token (SHA-256, base64)."""

    return base64.b64encode(hashlib.sha256(raw_token.encode("utf-8")).digest()).decode("ascii")


class JwtService:
    """HS256 signer for access and refresh tokens."""

    def __init__(
        self,
        settings: Settings,
        *,
        clock: Callable[[], float] = time.time,
        leeway_seconds: int = 120,
    ) -> None:
        self.settings = settings
        self._clock = clock
        # Allowance for small clock skew across nodes
        self._leeway = leeway_seconds
        self.access_ttl = timedelta(minutes=settings.access_token_ttl_minutes)
        self.refresh_ttl = timedelta(days=settings.refresh_token_ttl_days)

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(
                self.settings.jwt_secret.encode(), signing_input.encode(), hashlib.sha256
            ).digest()
        )

    def _encode(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _issue(self, user_id: str, token_type: str, ttl: timedelta) -> str:
        now = int(self._clock())
        payload = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": user_id,
            "iat": now,
            "exp": now + int(ttl.total_seconds()),
            # Unique per token so two tokens minted in the same second never share a digest.
            "jti": str(uuid.uuid4()),
            "token_type": token_type,
        }
        return self._encode(payload)

    def generate_access_token(self, user_id: str) -> str:
        return self._issue(user_id, ACCESS, self.access_ttl)

    def generate_refresh_token(self, user_id: str) -> str:
        return self._issue(user_id, REFRESH, self.refresh_ttl)

    def refresh_expires_at(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc) + self.refresh_ttl

    def decode(self, token: str) -> Optional[dict[str, Any]]:
        """Return the verified payload, or None when any check fails."""

        if not token:
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # Pin the algorithm before touching the signature.
        try:
            header = json.loads(self._decode_segment(header_b64))
            if header.get("alg") != "HS256":
                logger.warning("jwt_invalid_algorithm", alg=header.get("alg"))
                return None
        except Exception:
            logger.warning("jwt_header_decode_failed")
            return None

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig, sig_b64):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except Exception as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
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
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        if exp_ts <= self._clock() - self._leeway:
            return None
        if not payload.get("sub"):
            return None
        return payload

    def validate_refresh_token(self, token: str) -> bool:
        payload = self.decode(token)
        return bool(payload and payload.get("token_type") == REFRESH)

    def validate_access_token(self, token: str) -> bool:
        payload = self.decode(token)
        return bool(payload and payload.get("token_type") == ACCESS)

    def get_user_id_from_token(self, token: str) -> str:
        payload = self.decode(token)
        if not payload:
            raise InvalidTokenError("Invalid token", reason="malformed")
        return str(payload["sub"])
