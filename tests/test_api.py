from __future__ import annotations

import asyncio
import json
import sys
import unittest
from pathlib import Path
from typing import Optional

from fastapi.testclient import TestClient

PROJECT_ROOT = Path(__file__).resolve().parent.parent
API_CODE_PATH = PROJECT_ROOT / "api-code"
if str(API_CODE_PATH) not in sys.path:
    sys.path.insert(0, str(API_CODE_PATH))
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from app_main import create_app  # noqa: E402
from domain import PromotionTriggerFailed  # noqa: E402
from models import Commit, PromotionLock, RemoteStatus, utc_now  # noqa: E402
from repositories import InMemoryPromotionStateRepository  # noqa: E402
from services import SIGNATURE_HEADER, TriggerAccepted, TriggerSigner  # noqa: E402
from settings import Settings  # noqa: E402


SECRET = "promote-test-shared-secret-0123456789"
HISTORY = [
    Commit(sha="abc1234", short_sha="abc1234", subject="Tune build", parents=["bbb1111"]),
    Commit(sha="bbb1111", short_sha="bbb1111", subject="Add installer", parents=["aaa0000"]),
    Commit(sha="aaa0000", short_sha="aaa0000", subject="Initial"),
]


class FakeHistory:
    async def resolve_head(self) -> str:
        return HISTORY[0].sha

    async def current_branch(self) -> str:
        return "main"

    async def list_commits(self, limit: int, rev: str = "HEAD") -> list[Commit]:
        start = 0 if rev == "HEAD" else next(i for i, c in enumerate(HISTORY) if c.sha == rev)
        return HISTORY[start : start + limit]

    async def is_ancestor(self, ancestor: str, descendant: str) -> bool:
        return False


class FakeGateway:
    def __init__(self, error: Optional[Exception] = None) -> None:
        self.error = error

    async def trigger_promotion(self, promoted_by: str, head_sha: Optional[str] = None) -> TriggerAccepted:
        if self.error is not None:
            raise self.error
        return TriggerAccepted(accepted_at=utc_now(), message="Promotion started")


class FakePoller:
    async def fetch_remote_status(self) -> RemoteStatus:
        return RemoteStatus(in_progress=False, deployed_sha="aaa0000")


def make_client(**overrides) -> tuple[TestClient, InMemoryPromotionStateRepository]:
    values = {
        "APP_ENV": "production",
        "PROMOTE_PROD_WEBHOOK_SECRET": SECRET,
        "PROMOTE_DRY_RUN": True,
        "PM2_PROCESS_NAMES": "",
    }
    values.update(overrides)
    repository = InMemoryPromotionStateRepository(deployed_sha="aaa0000")
    app = create_app(Settings.model_validate(values), repository=repository, history=FakeHistory())
    return TestClient(app), repository


def signed(body: bytes) -> dict[str, str]:
    return {
        "Content-Type": "application/json",
        SIGNATURE_HEADER: TriggerSigner(SECRET).sign(body),
    }


class WebhookApiTest(unittest.TestCase):
    def test_signed_trigger_runs_promotion(self) -> None:
        client, repository = make_client()
        body = json.dumps({"promotedBy": "ops", "headSha": "bbb1111"}).encode()

        with client:
            response = client.post("/api/webhooks/promote-production", content=body, headers=signed(body))
            status = client.get("/api/webhooks/promote-production/status", headers=signed(b""))

        self.assertEqual(response.status_code, 202)
        self.assertEqual(response.json()["heldBy"], "ops")
        self.assertEqual(status.status_code, 200)
        self.assertEqual(status.headers["cache-control"], "no-store")
        payload = status.json()
        self.assertFalse(payload["inProgress"])
        self.assertEqual(payload["deployedSha"], "bbb1111")
        self.assertIn("Production promotion completed", payload["recentLogLines"])

    def test_bad_signature_is_unauthorized(self) -> None:
        client, _ = make_client()
        body = json.dumps({"promotedBy": "ops"}).encode()
        headers = signed(b'{"promotedBy": "someone-else"}')

        with client:
            response = client.post("/api/webhooks/promote-production", content=body, headers=headers)
            unsigned = client.get("/api/webhooks/promote-production/status")

        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.json()["code"], "invalid_signature")
        self.assertEqual(unsigned.status_code, 401)

    def test_locked_executor_conflicts(self) -> None:
        client, repository = make_client()
        asyncio.run(repository.acquire_lock(PromotionLock(held_by="other", token="t-1")))
        body = json.dumps({"promotedBy": "ops"}).encode()

        with client:
            response = client.post("/api/webhooks/promote-production", content=body, headers=signed(body))

        self.assertEqual(response.status_code, 409)
        payload = response.json()
        self.assertEqual(payload["error"], "Promotion already in progress")
        self.assertEqual(payload["code"], "promotion_in_progress")
        self.assertEqual(payload["heldBy"], "other")
        self.assertIn("startedAt", payload)

    def test_missing_secret_is_unavailable(self) -> None:
        client, _ = make_client(PROMOTE_PROD_WEBHOOK_SECRET="")
        body = b"{}"

        with client:
            response = client.post("/api/webhooks/promote-production", content=body, headers=signed(body))

        self.assertEqual(response.status_code, 503)
        self.assertEqual(response.json()["code"], "executor_not_configured")

    def test_invalid_head_sha_is_rejected(self) -> None:
        client, repository = make_client()
        body = json.dumps({"promotedBy": "ops", "headSha": "--upload-pack=evil"}).encode()

        with client:
            response = client.post("/api/webhooks/promote-production", content=body, headers=signed(body))

        self.assertEqual(response.status_code, 422)
        self.assertIsNone(asyncio.run(repository.get_lock()))


class AdminApiTest(unittest.TestCase):
    def make_admin_client(self, gateway: Optional[FakeGateway] = None, **overrides):
        settings = {"APP_ENV": "staging", "PROMOTE_PROD_WEBHOOK_URL": "https://prod.example.com"}
        settings.update(overrides)
        client, repository = make_client(**settings)
        aggregator = client.app.state.aggregator
        aggregator.gateway = gateway or FakeGateway()
        aggregator.poller = FakePoller()
        return client, repository

    def test_status_view(self) -> None:
        client, _ = self.make_admin_client()

        with client:
            response = client.get("/api/admin/staging/status")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.headers["cache-control"], "no-store")
        payload = response.json()
        self.assertEqual(payload["appEnv"], "staging")
        self.assertEqual(payload["headSha"], "abc1234")
        self.assertEqual(payload["prodDeployedSha"], "aaa0000")
        self.assertEqual(payload["pendingCount"], 2)
        self.assertEqual([c["sha"] for c in payload["pendingCommits"]], ["abc1234", "bbb1111"])
        self.assertTrue(payload["promoteAvailable"])
        self.assertEqual(payload["promotion"]["phase"], "idle")
        self.assertEqual(payload["errors"], {})

    def test_promote_is_accepted(self) -> None:
        client, _ = self.make_admin_client()

        with client:
            response = client.post("/api/admin/staging/promote", json={"promotedBy": "ops"})
            status = client.get("/api/admin/staging/status")

        self.assertEqual(response.status_code, 202)
        self.assertTrue(response.json()["accepted"])
        self.assertEqual(response.json()["headSha"], "abc1234")
        self.assertIn("triggeredAt", response.json())
        self.assertTrue(status.json()["promotion"]["isRunning"])
        self.assertEqual(status.json()["promotion"]["pollIntervalSeconds"], 3)

    def test_promote_without_body(self) -> None:
        client, _ = self.make_admin_client()

        with client:
            response = client.post("/api/admin/staging/promote")

        self.assertEqual(response.status_code, 202)
        self.assertEqual(response.json()["requestedBy"], "admin")

    def test_promote_while_locked(self) -> None:
        client, repository = self.make_admin_client()
        asyncio.run(repository.acquire_lock(PromotionLock(held_by="other", token="t-1")))

        with client:
            response = client.post("/api/admin/staging/promote", json={"promotedBy": "ops"})

        self.assertEqual(response.status_code, 409)
        self.assertEqual(
            response.json(),
            {"error": "Promotion already in progress", "code": "promotion_in_progress"},
        )
        self.assertIsNone(client.app.state.aggregator.tracker.intent)

    def test_promote_without_webhook_url(self) -> None:
        client, _ = self.make_admin_client(PROMOTE_PROD_WEBHOOK_URL="")

        with client:
            response = client.post("/api/admin/staging/promote")

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["code"], "webhook_url_missing")

    def test_promote_without_secret(self) -> None:
        client, _ = self.make_admin_client(PROMOTE_PROD_WEBHOOK_SECRET="")

        with client:
            response = client.post("/api/admin/staging/promote")

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["code"], "webhook_secret_missing")

    def test_trigger_failure_is_bad_gateway(self) -> None:
        client, _ = self.make_admin_client(
            FakeGateway(PromotionTriggerFailed("Could not reach production server: refused"))
        )

        with client:
            response = client.post("/api/admin/staging/promote")

        self.assertEqual(response.status_code, 502)
        self.assertEqual(response.json()["code"], "trigger_failed")
        self.assertIsNone(client.app.state.aggregator.tracker.intent)


class HealthApiTest(unittest.TestCase):
    def test_healthz_reports_store_and_lock(self) -> None:
        client, _ = make_client()

        with client:
            response = client.get("/healthz")

        self.assertEqual(response.status_code, 200)
        payload = response.json()
        self.assertEqual(payload["status"], "healthy")
        self.assertEqual(payload["store"], "InMemoryPromotionStateRepository")
        self.assertFalse(payload["promotion_locked"])
        self.assertEqual(payload["pm2_processes"], {})


if __name__ == "__main__":
    unittest.main()
