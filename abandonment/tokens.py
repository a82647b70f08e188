"""
Resume tokens — self-contained, tamper-evident links back into the wizard.

Format:  base64url(JSON{brandId, userId, step, exp}) + "." + hex(HMAC-SHA256)

The signature covers the compact JSON bytes, so any change to the payload
or the signature invalidates the token. Only the canonical unpadded
base64url spelling of those bytes is accepted. `exp` is epoch milliseconds
and is enforced on every verification.
"""
from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from models.schemas import now_ms

DEFAULT_TTL_SECONDS = 24 * 60 * 60


class InvalidResumeTokenError(ValueError):
    """Malformed token, bad signature, or wrong owner."""


class ExpiredResumeTokenError(InvalidResumeTokenError):
    """Signature is valid but `exp` has passed."""


class ResumeTokenPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    brand_id: str = Field(alias="brandId")
    user_id: str = Field(alias="userId")
    step: str
    exp: int                                   # epoch ms


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _b64decode(segment: str) -> bytes:
    padded = segment + "=" * (-len(segment) % 4)
    return base64.urlsafe_b64decode(padded.encode("ascii"))


class ResumeTokenSigner:

    def __init__(self, secret: str, ttl_seconds: int = DEFAULT_TTL_SECONDS):
        if not secret:
            raise ValueError("resume token secret must not be empty")
        self._key = secret.encode("utf-8")
        self.ttl_seconds = ttl_seconds

    def _signature(self, body: bytes) -> str:
        return hmac.new(self._key, body, hashlib.sha256).hexdigest()

    def sign(self, brand_id: str, user_id: str, step: str, now: Optional[int] = None) -> str:
        issued = now if now is not None else now_ms()
        payload = ResumeTokenPayload(
            brand_id=brand_id, user_id=user_id, step=step,
            exp=issued + self.ttl_seconds * 1000,
        )
        return self.encode(payload)

    def encode(self, payload: ResumeTokenPayload) -> str:
        body = json.dumps(payload.model_dump(by_alias=True), separators=(",", ":"),
                          ensure_ascii=False).encode("utf-8")
        return f"{_b64encode(body)}.{self._signature(body)}"

    def verify(
        self, token: str, user_id: Optional[str] = None, now: Optional[int] = None,
    ) -> ResumeTokenPayload:
        """
        Return the payload of a valid token.

        Raises InvalidResumeTokenError for malformed, tampered or foreign
        tokens and ExpiredResumeTokenError once `exp` has passed.
        """
        if not token or not isinstance(token, str) or "." not in token or not token.isascii():
            raise InvalidResumeTokenError("malformed token")

        encoded, _, signature = token.rpartition(".")
        try:
            raw = _b64decode(encoded)
        except (binascii.Error, ValueError) as e:
            raise InvalidResumeTokenError("undecodable payload") from e
        # base64 tolerates unused trailing bits; only the canonical form is accepted
        if _b64encode(raw) != encoded:
            raise InvalidResumeTokenError("non-canonical payload encoding")

        if not hmac.compare_digest(signature, self._signature(raw)):
            raise InvalidResumeTokenError("bad signature")

        try:
            payload = ResumeTokenPayload.model_validate(json.loads(raw))
        except (ValueError, PydanticValidationError) as e:
            raise InvalidResumeTokenError("invalid payload") from e

        if (now if now is not None else now_ms()) > payload.exp:
            raise ExpiredResumeTokenError("token expired")
        if user_id is not None and payload.user_id != user_id:
            raise InvalidResumeTokenError("token belongs to another user")
        return payload
