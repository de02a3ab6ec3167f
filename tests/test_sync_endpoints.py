from __future__ import annotations

import os
import tempfile
import unittest
from datetime import timedelta

from fastapi.testclient import TestClient

from stepsync.db import db, init_db, iso, utcnow
from stepsync.main import create_app
from stepsync.players import create_player


class SyncEndpointsTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.db_path = os.path.join(self._tmp.name, "test_sync_endpoints.db")
        self._old_api_key = os.environ.get("API_KEY")
        os.environ["API_KEY"] = "test-api-key"

        init_db(self.db_path)
        self.last_sync = utcnow() - timedelta(hours=2)
        with db(self.db_path) as conn:
            create_player(conn, "p1", last_sync=self.last_sync)

        self.client_ctx = TestClient(create_app(db_path=self.db_path))
        self.client = self.client_ctx.__enter__()
        self.headers = {"X-Api-Key": "test-api-key"}

    def tearDown(self) -> None:
        self.client_ctx.__exit__(None, None, None)
        if self._old_api_key is None:
            os.environ.pop("API_KEY", None)
        else:
            os.environ["API_KEY"] = self._old_api_key
        self._tmp.cleanup()

    def sync_body(self, total: int = 1000, daily: int | None = None, **extra) -> dict:
        body = {
            "playerId": "p1",
            "stepData": {
                "totalSteps": total,
                "dailySteps": total if daily is None else daily,
                "lastUpdated": iso(utcnow()),
                "source": "tracker",
                "validated": True,
            },
            "operations": [],
            "lastSync": iso(self.last_sync),
        }
        body.update(extra)
        return body

    def test_requires_api_key(self) -> None:
        r = self.client.post("/sync/player-data", json=self.sync_body())
        self.assertEqual(r.status_code, 401)
        r = self.client.get("/sync/status/p1", headers={"X-Api-Key": "wrong"})
        self.assertEqual(r.status_code, 401)

        self.assertEqual(self.client.get("/health").json()["ok"], True)

    def test_sync_happy_path(self) -> None:
        r = self.client.post("/sync/player-data", headers=self.headers, json=self.sync_body())
        self.assertEqual(r.status_code, 200)
        body = r.json()
        self.assertTrue(body["success"])
        self.assertEqual(body["syncedDays"], 1)
        self.assertEqual(body["errors"], [])
        self.assertEqual(body["conflicts"], [])
        self.assertEqual(body["earnedResources"], {"cells": 1, "experiencePoints": 0})
        self.assertIn("timestamp", body)
        self.assertTrue(body["transactionId"].startswith("txn_"))
        self.assertNotIn("validationErrors", body)

        status = self.client.get("/sync/status/p1", headers=self.headers).json()
        self.assertEqual(status["playerId"], "p1")
        self.assertEqual(status["pendingConflicts"], 0)
        self.assertFalse(status["syncInProgress"])

    def test_validation_errors_are_400(self) -> None:
        r = self.client.post("/sync/player-data", headers=self.headers, json=self.sync_body(60_000))
        self.assertEqual(r.status_code, 400)
        body = r.json()
        self.assertFalse(body["success"])
        self.assertEqual(body["error"]["code"], "EXCESSIVE_STEPS")
        self.assertEqual(body["error"]["details"][0]["data"]["dailySteps"], 60_000)

        stale = self.sync_body(lastSync=iso(utcnow() - timedelta(days=8)))
        r = self.client.post("/sync/player-data", headers=self.headers, json=stale)
        self.assertEqual(r.json()["error"]["code"], "OFFLINE_LIMIT_EXCEEDED")

        r = self.client.post("/sync/player-data", headers=self.headers, json={"playerId": "p1"})
        self.assertEqual(r.status_code, 400)
        self.assertEqual(r.json()["error"]["code"], "VALIDATION_ERROR")

    def test_blocked_conflict_resolve_flow(self) -> None:
        r = self.client.post(
            "/sync/player-data", headers=self.headers, json=self.sync_body(state={"unknownField": "blue"})
        )
        self.assertEqual(r.status_code, 200)
        body = r.json()
        self.assertFalse(body["success"])
        self.assertEqual(body["syncedDays"], 0)
        self.assertEqual(body["errors"], ["Conflicts detected that require manual resolution"])
        self.assertEqual(body["conflicts"][0]["field"], "unknownField")

        history = self.client.get("/sync/conflicts/p1", headers=self.headers).json()
        self.assertEqual(len(history), 1)
        self.assertEqual(history[0]["status"], "pending")
        conflict_id = history[0]["id"]

        r = self.client.post(
            "/sync/resolve-conflict",
            headers=self.headers,
            json={"conflictId": conflict_id, "strategy": "manual_review", "resolvedValue": "green"},
        )
        self.assertEqual(r.status_code, 200)
        self.assertEqual(r.json()["success"], True)
        self.assertEqual(r.json()["data"]["state"], {"unknownField": "green"})

        r = self.client.post(
            "/sync/resolve-conflict",
            headers=self.headers,
            json={"conflictId": conflict_id, "strategy": "server_wins"},
        )
        self.assertEqual(r.status_code, 409)

        r = self.client.post(
            "/sync/resolve-conflict",
            headers=self.headers,
            json={"conflictId": "conflict_missing", "strategy": "server_wins"},
        )
        self.assertEqual(r.status_code, 404)

        history = self.client.get("/sync/conflicts/p1?limit=1&offset=0", headers=self.headers).json()
        self.assertEqual(history[0]["status"], "resolved")
        self.assertEqual(history[0]["resolutionStrategy"], "manual_review")
        self.assertEqual(history[0]["resolvedValue"], "green")

        r = self.client.get("/sync/conflicts/p1?limit=500", headers=self.headers)
        self.assertEqual(r.status_code, 400)

    def test_manual_review_requires_value(self) -> None:
        self.client.post("/sync/player-data", headers=self.headers, json=self.sync_body(state={"unknownField": 1}))
        conflict_id = self.client.get("/sync/conflicts/p1", headers=self.headers).json()[0]["id"]
        r = self.client.post(
            "/sync/resolve-conflict",
            headers=self.headers,
            json={"conflictId": conflict_id, "strategy": "manual_review"},
        )
        self.assertEqual(r.status_code, 400)

    def test_rollback_endpoint(self) -> None:
        body = self.client.post("/sync/player-data", headers=self.headers, json=self.sync_body(2000)).json()
        txn = body["transactionId"]

        r = self.client.post(f"/sync/rollback/{txn}", headers=self.headers)
        self.assertEqual(r.status_code, 200)
        self.assertTrue(r.json()["success"])
        self.assertTrue(r.json()["rollbackPointId"].startswith("txn_"))

        # The restored window accepts the same sync again
        again = self.client.post("/sync/player-data", headers=self.headers, json=self.sync_body(2000)).json()
        self.assertTrue(again["success"])
        self.assertEqual(again["earnedResources"]["cells"], 2)

        r = self.client.post("/sync/rollback/txn_missing", headers=self.headers)
        self.assertEqual(r.status_code, 404)

    def test_unknown_player_status(self) -> None:
        r = self.client.get("/sync/status/nobody", headers=self.headers)
        self.assertEqual(r.status_code, 404)


if __name__ == "__main__":
    unittest.main()
