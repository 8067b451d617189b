from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
from typing import Any, Callable, Optional

from authkeep.logging import get_logger
from authkeep.service.errors import TokenError, TokenErrorReason

logger = get_logger(__name__)


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


class TokenSigner:
    """HS256 compact JWS with a single shared secret.

    ``clock`` returns epoch seconds and is injectable so expiry can be checked
    at a fixed instant in tests.
    """

    def __init__(
        self,
        secret: str,
        *,
        leeway_seconds: int = 0,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        if not secret:
            raise ValueError("signing secret must not be empty")
        self._secret = secret.encode()
        self.leeway_seconds = leeway_seconds
        self._clock = clock or time.time

    def _sign(self, signing_input: str) -> str:
        data = signing_input.encode("utf-8", "surrogatepass")
        return _encode_segment(hmac.new(self._secret, data, hashlib.sha256).digest())

    def encode(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def verify(self, token: str) -> dict[str, Any]:
        """Return the claims of a correctly signed, unexpired token.

        Raises ``TokenError(INVALID_SIGNATURE)`` for anything malformed or
        tampered with and ``TokenError(EXPIRED)`` once ``exp`` has passed.
        """

        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (AttributeError, ValueError):
            raise TokenError(TokenErrorReason.INVALID_SIGNATURE)

        # Reject anything but HS256 (algorithm confusion)
        try:
            header = json.loads(_decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            raise TokenError(TokenErrorReason.INVALID_SIGNATURE)
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise TokenError(TokenErrorReason.INVALID_SIGNATURE)

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        # Bytes compare: non-ASCII text would make compare_digest raise TypeError
        presented_sig = sig_b64.encode("utf-8", "surrogatepass")
        if not hmac.compare_digest(expected_sig.encode(), presented_sig):
            raise TokenError(TokenErrorReason.INVALID_SIGNATURE)

        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise TokenError(TokenErrorReason.INVALID_SIGNATURE)
        if not isinstance(payload, dict):
            raise TokenError(TokenErrorReason.INVALID_SIGNATURE)

        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            raise TokenError(TokenErrorReason.INVALID_SIGNATURE)
        if exp_ts + self.leeway_seconds < self._clock():
            raise TokenError(TokenErrorReason.EXPIRED)
        return payload

    @staticmethod
    def peek(token: str) -> Optional[dict[str, Any]]:
        """Decode claims without checking the signature. Logging use only."""

        try:
            _, payload_b64, _ = token.split(".")
            payload = json.loads(_decode_segment(payload_b64))
        except (AttributeError, ValueError, TypeError):
            return None
        return payload if isinstance(payload, dict) else None
