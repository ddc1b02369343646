import os
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from fastapi.testclient import TestClient

from tandem.errors import RemoteFetchError
from tandem.models import RemoteEvent, RemoteLabel
from tandem.web_api import create_app


class FakeRemoteClient:
    def __init__(self, labels=None, events=None, error: Exception | None = None) -> None:
        self.labels = labels or []
        self.events = events or []
        self.error = error

    def list_labels(self, start, end):
        if self.error is not None:
            raise self.error
        return list(self.labels)

    def list_events(self, start, end):
        if self.error is not None:
            raise self.error
        return list(self.events)


class WebApiTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        os.environ["TANDEM_CONFIG_PATH"] = str(Path(self.temp_dir.name) / "config.yaml")
        os.environ["TANDEM_STATE_PATH"] = str(Path(self.temp_dir.name) / "tandem.db")
        self.app = create_app()
        self.client = TestClient(self.app)
        resp = self.client.post("/api/users", json={"email": "song@example.com", "display_name": "Song"})
        self.assertEqual(resp.status_code, 201)
        self.user_id = resp.json()["id"]

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def _use_remote(self, client: FakeRemoteClient) -> None:
        self.app.state.context.sync_engine.client_factory = lambda config, user: client

    def _connect(self) -> None:
        resp = self.client.put(
            f"/api/users/{self.user_id}/credentials",
            json={"remote_account": "song", "access_token": "token"},
        )
        self.assertEqual(resp.status_code, 200)
        self.assertTrue(resp.json()["connected"])

    def test_healthz(self) -> None:
        resp = self.client.get("/healthz")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json(), {"status": "ok"})

    def test_config_update(self) -> None:
        resp = self.client.put("/api/config", json={"payload": {"sync": {"lookahead_months": 2}}})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(self.client.get("/api/config").json()["sync"]["lookahead_months"], 2)
        rejected = self.client.put("/api/config", json={"payload": {"sync": {"lookahead": 2}}})
        self.assertEqual(rejected.status_code, 400)
        self.assertIn("sync.lookahead", rejected.json()["detail"])

    def test_sync_returns_counts(self) -> None:
        self._connect()
        self._use_remote(
            FakeRemoteClient(
                labels=[RemoteLabel("c1", "Apollo", "preset1")],
                events=[
                    RemoteEvent(external_id="E1", title="A", start="2024-06-03T10:00:00", labels=["Apollo"]),
                    RemoteEvent(external_id="E2", title="B", start="2024-06-04T10:00:00"),
                ],
            )
        )
        resp = self.client.post(f"/api/users/{self.user_id}/sync")
        self.assertEqual(resp.status_code, 200)
        body = resp.json()
        self.assertEqual((body["created"], body["updated"], body["deleted"]), (2, 0, 0))

        again = self.client.post(f"/api/users/{self.user_id}/sync").json()
        self.assertEqual((again["created"], again["updated"], again["deleted"]), (0, 0, 0))

        schedules = self.client.get(f"/api/users/{self.user_id}/schedules").json()["schedules"]
        self.assertEqual(len(schedules), 2)
        groups = self.client.get(f"/api/users/{self.user_id}/groups").json()["groups"]
        self.assertEqual([group["name"] for group in groups], ["Apollo"])
        group_schedules = self.client.get(
            f"/api/users/{self.user_id}/groups/{groups[0]['id']}/schedules"
        ).json()["schedules"]
        self.assertEqual([item["external_event_id"] for item in group_schedules], ["E1"])

        status = self.client.get(f"/api/users/{self.user_id}/sync/status").json()
        self.assertEqual(status["synced_schedules"], 2)
        runs = self.client.get("/api/sync/runs", params={"user_id": self.user_id}).json()["runs"]
        self.assertEqual(len(runs), 2)

    def test_sync_failure_is_bad_gateway(self) -> None:
        self._connect()
        self._use_remote(FakeRemoteClient(error=RemoteFetchError("HTTP 503: busy")))
        resp = self.client.post(f"/api/users/{self.user_id}/sync")
        self.assertEqual(resp.status_code, 502)
        self.assertEqual(resp.json()["detail"], "sync failed: HTTP 503: busy")
        events = self.client.get("/api/audit/events", params={"user_id": self.user_id}).json()["events"]
        self.assertEqual(events[0]["action"], "run_error")

    def test_sync_requires_connection(self) -> None:
        resp = self.client.post(f"/api/users/{self.user_id}/sync")
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(self.client.post("/api/users/missing/sync").status_code, 404)

    def test_label_crud_and_mirror(self) -> None:
        resp = self.client.post(f"/api/users/{self.user_id}/labels", json={"name": "Research"})
        self.assertEqual(resp.status_code, 201)
        label_id = resp.json()["id"]
        dup = self.client.post(f"/api/users/{self.user_id}/labels", json={"name": "Research"})
        self.assertEqual(dup.status_code, 409)

        renamed = self.client.put(f"/api/users/{self.user_id}/labels/{label_id}", json={"name": "R&D"})
        self.assertEqual(renamed.status_code, 200)
        groups = self.client.get(f"/api/users/{self.user_id}/groups").json()["groups"]
        self.assertEqual([group["name"] for group in groups], ["R&D"])

        deleted = self.client.delete(f"/api/users/{self.user_id}/labels/{label_id}")
        self.assertEqual(deleted.status_code, 200)
        self.assertEqual(self.client.get(f"/api/users/{self.user_id}/groups").json()["groups"], [])

    def test_group_files_block_mirrored_delete(self) -> None:
        created = self.client.post(f"/api/users/{self.user_id}/labels", json={"name": "Apollo"}).json()
        group = self.client.get(f"/api/users/{self.user_id}/groups").json()["groups"][0]
        file_resp = self.client.post(
            f"/api/users/{self.user_id}/groups/{group['id']}/files", json={"file_name": "brief.pdf"}
        )
        self.assertEqual(file_resp.status_code, 201)
        self.client.delete(f"/api/users/{self.user_id}/labels/{created['id']}")
        kept = self.client.get(f"/api/users/{self.user_id}/groups/{group['id']}").json()
        self.assertEqual(kept["status"], "ACTIVE")
        files = self.client.get(f"/api/users/{self.user_id}/groups/{group['id']}/files").json()["files"]
        self.assertEqual([item["file_name"] for item in files], ["brief.pdf"])

    def test_group_update_and_missing(self) -> None:
        group = self.client.post(f"/api/users/{self.user_id}/groups", json={"name": "Apollo"}).json()
        resp = self.client.put(
            f"/api/users/{self.user_id}/groups/{group['id']}", json={"name": "Artemis", "description": "moon"}
        )
        self.assertEqual(resp.status_code, 200)
        labels = self.client.get(f"/api/users/{self.user_id}/labels").json()["labels"]
        self.assertEqual([label["name"] for label in labels], ["Artemis"])
        self.assertEqual(self.client.get(f"/api/users/{self.user_id}/groups/nope").status_code, 404)

    def test_reorder_labels(self) -> None:
        first = self.client.post(f"/api/users/{self.user_id}/labels", json={"name": "A"}).json()
        second = self.client.post(f"/api/users/{self.user_id}/labels", json={"name": "B"}).json()
        resp = self.client.put(
            f"/api/users/{self.user_id}/labels/order",
            json={"orders": [{"label_id": first["id"], "order": 3}, {"label_id": second["id"], "order": 0}]},
        )
        self.assertEqual(resp.status_code, 200)
        self.assertEqual([label["name"] for label in resp.json()["labels"]], ["B", "A"])

    def test_schedule_crud(self) -> None:
        label = self.client.post(f"/api/users/{self.user_id}/labels", json={"name": "Apollo"}).json()
        resp = self.client.post(
            f"/api/users/{self.user_id}/schedules",
            json={
                "title": "Launch prep",
                "start": "2024-06-03T09:00:00Z",
                "end": "2024-06-03T10:00:00Z",
                "label_ids": [label["id"]],
            },
        )
        self.assertEqual(resp.status_code, 201)
        created = resp.json()
        self.assertEqual(created["start"], "2024-06-03T09:00:00+00:00")
        self.assertFalse(created["is_from_remote"])
        self.assertIsNotNone(created["group_id"])

        in_range = self.client.get(
            f"/api/users/{self.user_id}/schedules/range",
            params={"start": "2024-06-01T00:00:00Z", "end": "2024-06-30T00:00:00Z"},
        ).json()["schedules"]
        self.assertEqual([item["id"] for item in in_range], [created["id"]])
        upcoming = self.client.get(f"/api/users/{self.user_id}/schedules/upcoming").json()["schedules"]
        self.assertEqual(upcoming, [])

        updated = self.client.put(
            f"/api/users/{self.user_id}/schedules/{created['id']}",
            json={"title": "Launch", "start": "2024-06-03T09:30:00Z"},
        )
        self.assertEqual(updated.status_code, 200)
        self.assertEqual(updated.json()["label_ids"], [label["id"]])
        fetched = self.client.get(f"/api/users/{self.user_id}/schedules/{created['id']}").json()
        self.assertEqual(fetched["title"], "Launch")

        bad = self.client.put(
            f"/api/users/{self.user_id}/schedules/{created['id']}",
            json={"title": "Launch", "start": "2024-06-03T09:30:00Z", "end": "2024-06-03T08:00:00Z"},
        )
        self.assertEqual(bad.status_code, 400)

        self.assertEqual(self.client.delete(f"/api/users/{self.user_id}/schedules/{created['id']}").status_code, 200)
        self.assertEqual(self.client.get(f"/api/users/{self.user_id}/schedules/{created['id']}").status_code, 404)

    def test_local_schedule_survives_sync(self) -> None:
        self._connect()
        self.client.post(
            f"/api/users/{self.user_id}/schedules",
            json={"title": "Dentist", "start": "2024-06-05T15:00:00Z"},
        )
        self._use_remote(FakeRemoteClient())
        body = self.client.post(f"/api/users/{self.user_id}/sync").json()
        self.assertEqual(body["deleted"], 0)
        schedules = self.client.get(f"/api/users/{self.user_id}/schedules").json()["schedules"]
        self.assertEqual([item["title"] for item in schedules], ["Dentist"])

    def test_delete_user(self) -> None:
        self.assertEqual(self.client.delete(f"/api/users/{self.user_id}").status_code, 200)
        self.assertEqual(self.client.get(f"/api/users/{self.user_id}").status_code, 404)

    def test_manual_trigger_requires_running_scheduler(self) -> None:
        self.assertEqual(self.client.post("/api/sync/run").status_code, 409)
        with mock.patch.object(type(self.app.state.context.scheduler), "running", new_callable=mock.PropertyMock) as running:
            running.return_value = True
            with mock.patch.object(self.app.state.context.scheduler, "trigger_manual") as trigger:
                resp = self.client.post("/api/sync/run")
        self.assertEqual(resp.status_code, 200)
        trigger.assert_called_once()


if __name__ == "__main__":
    unittest.main()
