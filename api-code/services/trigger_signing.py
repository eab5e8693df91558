from __future__ import annotations

import hashlib
import hmac
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import jwt

from domain import InvalidTriggerSignature


SIGNATURE_HEADER = "X-Promote-Signature"


def body_digest(body: bytes) -> str:
    return hashlib.sha256(body or b"").hexdigest()


class TriggerSigner:
    """Signs and verifies control-plane requests with the shared webhook secret.

    Each request carries a short-lived HS256 token whose ``bh`` claim binds it
    to the exact request body, so a captured header cannot be replayed with a
    different payload.
    """

    algorithm = "HS256"
    issuer = "promote-console"
    audience = "promote-production"

    def __init__(self, secret: str, *, ttl_seconds: int = 60, leeway_seconds: int = 5):
        if not secret:
            raise ValueError("A shared webhook secret is required to sign triggers.")
        self.secret = secret
        self.ttl_seconds = ttl_seconds
        self.leeway_seconds = leeway_seconds

    def sign(self, body: bytes, *, now: Optional[datetime] = None) -> str:
        issued_at = now or datetime.now(timezone.utc)
        payload = {
            "iss": self.issuer,
            "aud": self.audience,
            "iat": int(issued_at.timestamp()),
            "exp": int((issued_at + timedelta(seconds=self.ttl_seconds)).timestamp()),
            "bh": body_digest(body),
        }
        return jwt.encode(payload, self.secret, algorithm=self.algorithm)

    def verify(self, token: Optional[str], body: bytes) -> Dict[str, Any]:
        if not token:
            raise InvalidTriggerSignature("Signature header missing.")
        try:
            claims = jwt.decode(
                token,
                self.secret,
                algorithms=[self.algorithm],
                audience=self.audience,
                issuer=self.issuer,
                leeway=self.leeway_seconds,
                options={"require": ["exp", "iat", "bh"]},
            )
        except jwt.ExpiredSignatureError as exc:
            raise InvalidTriggerSignature("Signature expired.") from exc
        except jwt.InvalidTokenError as exc:
            raise InvalidTriggerSignature("Invalid signature.") from exc

        if not hmac.compare_digest(str(claims.get("bh", "")), body_digest(body)):
            raise InvalidTriggerSignature("Signature does not match request body.")
        return claims
