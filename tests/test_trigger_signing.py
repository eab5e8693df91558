from __future__ import annotations

import sys
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path

import jwt

PROJECT_ROOT = Path(__file__).resolve().parent.parent
API_CODE_PATH = PROJECT_ROOT / "api-code"
if str(API_CODE_PATH) not in sys.path:
    sys.path.insert(0, str(API_CODE_PATH))

from domain import InvalidTriggerSignature  # noqa: E402
from services import TriggerSigner  # noqa: E402


SECRET = "promote-test-shared-secret-0123456789"
BODY = b'{"promotedBy": "ops", "headSha": "abc1234"}'


class TriggerSignerTest(unittest.TestCase):
    def setUp(self) -> None:
        self.signer = TriggerSigner(SECRET, ttl_seconds=60, leeway_seconds=0)

    def test_round_trip(self) -> None:
        token = self.signer.sign(BODY)
        claims = self.signer.verify(token, BODY)
        self.assertEqual(claims["iss"], "promote-console")
        self.assertEqual(claims["aud"], "promote-production")

    def test_tampered_body_is_rejected(self) -> None:
        token = self.signer.sign(BODY)
        with self.assertRaises(InvalidTriggerSignature):
            self.signer.verify(token, BODY.replace(b"ops", b"mallory"))

    def test_wrong_secret_is_rejected(self) -> None:
        token = TriggerSigner("another-shared-secret-of-enough-length").sign(BODY)
        with self.assertRaises(InvalidTriggerSignature):
            self.signer.verify(token, BODY)

    def test_expired_token_is_rejected(self) -> None:
        token = self.signer.sign(BODY, now=datetime.now(timezone.utc) - timedelta(minutes=5))
        with self.assertRaises(InvalidTriggerSignature) as ctx:
            self.signer.verify(token, BODY)
        self.assertIn("expired", str(ctx.exception))

    def test_missing_header_is_rejected(self) -> None:
        with self.assertRaises(InvalidTriggerSignature):
            self.signer.verify(None, BODY)

    def test_token_without_body_hash_is_rejected(self) -> None:
        now = datetime.now(timezone.utc)
        token = jwt.encode(
            {
                "iss": "promote-console",
                "aud": "promote-production",
                "iat": int(now.timestamp()),
                "exp": int((now + timedelta(seconds=30)).timestamp()),
            },
            SECRET,
            algorithm="HS256",
        )
        with self.assertRaises(InvalidTriggerSignature):
            self.signer.verify(token, BODY)

    def test_empty_secret_is_refused(self) -> None:
        with self.assertRaises(ValueError):
            TriggerSigner("")


if __name__ == "__main__":
    unittest.main()
