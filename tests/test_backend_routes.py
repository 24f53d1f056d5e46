import configparser
import json
import os
import tempfile
import unittest
from unittest.mock import MagicMock, patch

from ai_extractor import JobExtractor
from app_settings import build_app_settings
from backend_server import STATE_KEY, create_app
from distance_annotator import DistanceAnnotator
from push_sender import PushSender
from repositories.memory_job_repo import InMemoryJobRepo

ADMIN = {"Authorization": "Bearer admin-token"}
WORKER = {"Authorization": "Bearer w1-token"}
WORKER_TWO = {"Authorization": "Bearer w2-token"}
PENDING = {"Authorization": "Bearer pending-token"}

GEMINI_REPLY = json.dumps([
    {"date": "1/9/2026", "lot_number": "226552", "company_name": "NORTHERN SS", "address": "851 Mount Pleasant Rd"},
    {"date": None, "lot_number": None, "company_name": "ACME", "address": "1 Yonge St"},
])


class _FakeGeocoder:
    def geocode(self, address):
        return {"1 Yonge St, Toronto": (43.6426, -79.3871)}.get(address)


def _repo():
    return InMemoryJobRepo(
        jobs=[
            {"id": "j1", "job_date": "2026-01-09", "company_name": "ACME", "address": "1 Yonge St, Toronto",
             "lot_number": "100", "status": "on_way", "created_at": "2026-01-08T10:00:00Z"},
            {"id": "j2", "job_date": "2026-01-09", "company_name": "GLOBEX", "address": "Unknown Rd",
             "lot_number": "200", "status": "pending", "created_at": "2026-01-08T11:00:00Z"},
            {"id": "j3", "job_date": "2026-01-09", "company_name": "INITECH", "address": "",
             "lot_number": "300", "status": "pending", "created_at": "2026-01-08T12:00:00Z"},
        ],
        assignments=[
            {"job_id": "j1", "user_id": "w1", "status": "on_way"},
            {"job_id": "j2", "user_id": "w1", "status": "pending"},
        ],
        profiles=[
            {"id": "admin", "full_name": "Admin", "role": "admin", "status": "active"},
            {"id": "w1", "full_name": "Worker One", "role": "employee", "status": "active", "contact_number": "555"},
            {"id": "w2", "full_name": "Worker Two", "role": "employee", "status": "active"},
            {"id": "p1", "full_name": "New Hire", "role": "employee", "status": "pending"},
        ],
        tokens={"admin-token": "admin", "w1-token": "w1", "w2-token": "w2", "pending-token": "p1"},
    )


def _gemini_ok(text):
    resp = MagicMock()
    resp.status_code = 200
    resp.ok = True
    resp.json.return_value = {"candidates": [{"content": {"parts": [{"text": text}]}}]}
    return resp


class BackendRoutesTests(unittest.TestCase):
    def setUp(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        parser = configparser.ConfigParser()
        parser.read_string(
            "[Credentials]\nWebhook_Secret = hook-secret\n"
            f"[Settings]\nlog_dir = {self.temp_dir.name}\n"
        )
        with patch.dict(os.environ, {}, clear=True):
            self.settings = build_app_settings(parser)
        self.repo = _repo()
        self.send_fn = MagicMock()
        self.app = create_app(
            app_settings=self.settings,
            repo=self.repo,
            service_repo=self.repo,
            annotator=DistanceAnnotator(_FakeGeocoder()),
            extractor=JobExtractor("test-key", ["model-a"], api_versions=("v1beta",)),
            push_sender=PushSender(self.repo, "vapid-private", send_fn=self.send_fn),
        )
        self.state = self.app.extensions[STATE_KEY]
        self.client = self.app.test_client()

    def tearDown(self):
        self.state.tasks.shutdown()
        self.temp_dir.cleanup()

    def _load_board(self, headers=WORKER, mode="all"):
        return self.client.get(f"/api/jobs/active?mode={mode}&date=2026-01-09", headers=headers)

    # --- auth ---

    def test_health(self):
        resp = self.client.get("/health")
        self.assertEqual(resp.status_code, 200)
        self.assertTrue(resp.get_json()["success"])

    def test_auth_and_roles(self):
        self.assertEqual(self.client.get("/api/jobs/active").status_code, 401)
        self.assertEqual(self.client.get("/api/jobs/active", headers={"Authorization": "Bearer nope"}).status_code, 401)
        self.assertEqual(self.client.get("/api/jobs/active", headers=PENDING).status_code, 403)
        self.assertEqual(self.client.get("/api/jobs", headers=WORKER).status_code, 403)
        self.assertEqual(self.client.get("/api/jobs", headers=ADMIN).status_code, 200)

    # --- board and status ---

    def test_active_jobs_filters(self):
        mine = self._load_board(mode="mine").get_json()
        self.assertEqual(sorted(j["id"] for j in mine["jobs"]), ["j1", "j2"])
        self.assertEqual(mine["filter_mode"], "mine")

        everything = self._load_board(mode="all").get_json()
        self.assertEqual(len(everything["jobs"]), 3)
        j1 = next(j for j in everything["jobs"] if j["id"] == "j1")
        self.assertEqual(j1["assigned_users"][0]["full_name"], "Worker One")

        resp = self.client.get("/api/jobs/active?mode=everyone", headers=WORKER)
        self.assertEqual(resp.status_code, 400)

    def test_conflict_then_resolution(self):
        self._load_board()
        resp = self.client.post("/api/jobs/j2/status", json={"status": "on_site"}, headers=WORKER)
        self.assertEqual(resp.status_code, 409)
        payload = resp.get_json()
        self.assertEqual(payload["outcome"], "conflict")
        self.assertEqual(payload["conflict"]["old_job_id"], "j1")

        resp = self.client.post("/api/jobs/conflict/resolve", json={"action": "picked_up"}, headers=WORKER)
        self.assertEqual(resp.status_code, 200)
        statuses = {(a["job_id"], a["user_id"]): a["status"] for a in self.repo.assignments}
        self.assertEqual(statuses[("j1", "w1")], "picked_up")
        self.assertEqual(statuses[("j2", "w1")], "on_site")

    def test_cancel_conflict(self):
        self._load_board()
        self.client.post("/api/jobs/j2/status", json={"status": "on_way"}, headers=WORKER)
        resp = self.client.delete("/api/jobs/conflict", headers=WORKER)
        self.assertTrue(resp.get_json()["cancelled"])
        resp = self.client.post("/api/jobs/conflict/resolve", json={"action": "pending"}, headers=WORKER)
        self.assertEqual(resp.status_code, 404)

    def test_unassigned_job_requires_confirmation(self):
        self._load_board()
        resp = self.client.post("/api/jobs/j3/status", json={"status": "picked_up"}, headers=WORKER)
        self.assertEqual(resp.status_code, 428)
        self.assertEqual(resp.get_json()["outcome"], "needs_confirmation")

        resp = self.client.post("/api/jobs/j3/status", json={"status": "picked_up", "confirm": True}, headers=WORKER)
        self.assertEqual(resp.status_code, 200)
        self.assertIn({"job_id": "j3", "user_id": "w1", "status": "picked_up"}, self.repo.assignments)

    def test_status_validation_errors(self):
        self._load_board()
        resp = self.client.post("/api/jobs/j1/status", json={"status": "flying"}, headers=WORKER)
        self.assertEqual(resp.status_code, 400)
        self.assertFalse(resp.get_json()["success"])
        resp = self.client.post("/api/jobs/j404/status", json={"status": "pending"}, headers=WORKER)
        self.assertEqual(resp.status_code, 404)

    def test_backend_failure_maps_to_502(self):
        self.repo.fail_on.add("list_jobs")
        resp = self._load_board()
        self.assertEqual(resp.status_code, 502)

    # --- location and distances ---

    def test_location_validation(self):
        resp = self.client.post("/api/location", json={"lat": "north", "lng": 1}, headers=WORKER)
        self.assertEqual(resp.status_code, 400)
        resp = self.client.post("/api/location", json={"lat": 95, "lng": 1}, headers=WORKER)
        self.assertEqual(resp.status_code, 400)

    def test_location_starts_distance_pass_and_streams_progress(self):
        self._load_board()
        resp = self.client.post("/api/location", json={"lat": 43.6532, "lng": -79.3832, "accuracy": 12}, headers=WORKER)
        self.assertEqual(resp.status_code, 202)
        task_id = resp.get_json()["task_id"]

        stream = self.client.get(f"/api/location/tasks/{task_id}/stream?access_token=w1-token")
        self.assertEqual(stream.mimetype, "text/event-stream")
        events = [
            json.loads(line[len("data: "):])
            for line in stream.get_data(as_text=True).splitlines()
            if line.startswith("data: ")
        ]
        self.assertEqual(events[-1]["type"], "complete")
        self.assertEqual(sum(1 for e in events if e["type"] == "distance"), 3)

        jobs = {j["id"]: j for j in self._load_board().get_json()["jobs"]}
        self.assertIsInstance(jobs["j1"]["distance"], float)
        self.assertIsNone(jobs["j2"]["distance"])

        status = self.client.get(f"/api/location/tasks/{task_id}", headers=WORKER).get_json()
        self.assertEqual(status["task"]["status"], "success")
        self.assertEqual(self.client.get(f"/api/location/tasks/{task_id}", headers=WORKER_TWO).status_code, 404)

    # --- realtime ---

    def test_realtime_webhook_requires_secret(self):
        self._load_board()
        change = {"type": "UPDATE", "table": "jobs", "record": {"id": "j2", "status": "delivered"}}
        resp = self.client.post("/api/realtime/jobs", json=change)
        self.assertEqual(resp.status_code, 401)

        resp = self.client.post("/api/realtime/jobs", json=change, headers={"X-Webhook-Secret": "hook-secret"})
        self.assertEqual(resp.status_code, 200)
        board = self.state.registry.get("w1")
        self.assertEqual(board.find_job("j2")["status"], "delivered")

        resp = self.client.post("/api/realtime/jobs", json={"nope": 1}, headers={"X-Webhook-Secret": "hook-secret"})
        self.assertEqual(resp.status_code, 400)

    def test_change_stream_is_sse(self):
        resp = self.client.get("/api/jobs/changes/stream", headers=WORKER)
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.mimetype, "text/event-stream")
        resp.close()

    # --- import ---

    @patch("ai_extractor.requests.post")
    def test_import_extract_and_approve(self, mock_post):
        mock_post.return_value = _gemini_ok(GEMINI_REPLY)
        resp = self.client.post("/api/import/extract", json={"text": "1/9/2026 226552 NORTHERN SS"}, headers=ADMIN)
        self.assertEqual(resp.status_code, 200)
        payload = resp.get_json()
        drafts = payload["drafts"]
        self.assertEqual(len(drafts), 2)
        self.assertEqual(drafts[1]["issues"], ["missing_lot"])
        self.assertIsNotNone(payload["batch_id"])

        resp = self.client.post(f"/api/import/drafts/{drafts[0]['temp_id']}/approve", headers=ADMIN)
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.get_json()["job"]["job_date"], "2026-01-09")

        resp = self.client.post("/api/import/drafts/approve_all", headers=ADMIN)
        self.assertTrue(resp.get_json()["success"])
        self.assertEqual(self.client.get("/api/import/drafts", headers=ADMIN).get_json()["drafts"], [])
        self.assertEqual(len(self.repo.jobs), 5)

    def test_import_validation(self):
        resp = self.client.post("/api/import/extract", json={"text": "  "}, headers=ADMIN)
        self.assertEqual(resp.status_code, 400)
        resp = self.client.post("/api/import/drafts/J1-missing/reject", headers=ADMIN)
        self.assertEqual(resp.status_code, 404)

    @patch("ai_extractor.requests.post")
    def test_all_models_failing_is_502(self, mock_post):
        failing = MagicMock(status_code=500, ok=False, text="boom")
        mock_post.return_value = failing
        resp = self.client.post("/api/import/extract", json={"text": "something"}, headers=ADMIN)
        self.assertEqual(resp.status_code, 502)

    # --- admin ---

    def test_assignment_sync_sends_push(self):
        self.repo.replace_push_subscription("w2", "https://push.example/w2", {"p256dh": "k", "auth": "a"})
        resp = self.client.put("/api/jobs/j3/assignments", json={"user_ids": ["w2"]}, headers=ADMIN)
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.get_json()["added"], ["w2"])
        data = json.loads(self.send_fn.call_args.kwargs["data"])
        self.assertEqual(data["title"], "New Job Assigned")
        self.assertEqual(data["url"], "/active-jobs")

        resp = self.client.put("/api/jobs/j3/assignments", json={"user_ids": "w2"}, headers=ADMIN)
        self.assertEqual(resp.status_code, 400)

    def test_unassign_all_for_date(self):
        resp = self.client.delete("/api/assignments?date=2026-01-09", headers=ADMIN)
        self.assertEqual(resp.get_json()["jobs_cleared"], 3)
        self.assertEqual(self.repo.assignments, [])
        self.assertEqual(self.client.delete("/api/assignments", headers=ADMIN).status_code, 400)

    def test_internal_key_error_is_not_reported_as_missing(self):
        with patch("backend_server.load_employee_stats", side_effect=KeyError("status")):
            resp = self.client.get("/api/dashboard/stats?date=2026-01-09", headers=ADMIN)
        self.assertEqual(resp.status_code, 500)

    def test_dashboard_stats(self):
        resp = self.client.get("/api/dashboard/stats?date=2026-01-09", headers=ADMIN)
        stats = resp.get_json()["stats"]
        self.assertEqual(stats[0]["user_id"], "w1")
        self.assertEqual(stats[0]["total_jobs"], 2)
        self.assertEqual(stats[0]["active_job"]["lot_number"], "100")
        self.assertEqual(stats[0]["contact_number"], "555")

    def test_share_link_round_trip(self):
        resp = self.client.post("/api/dashboard/share", json={"name": "Ops", "expiration_hours": 2}, headers=ADMIN)
        token = resp.get_json()["token"]

        shared = self.client.get(f"/api/shared/{token}?date=2026-01-09")
        self.assertEqual(shared.status_code, 200)
        self.assertEqual(len(shared.get_json()["jobs"]), 3)
        self.assertEqual(shared.get_json()["stats"][0]["user_id"], "w1")

        self.assertEqual(self.client.get("/api/shared/not-a-token").status_code, 404)
        resp = self.client.post("/api/dashboard/share", json={"expiration_hours": 0}, headers=ADMIN)
        self.assertEqual(resp.status_code, 400)

    # --- push ---

    def test_send_push_contract(self):
        self.assertEqual(self.client.get("/api/send-push").status_code, 405)
        resp = self.client.post("/api/send-push", json={"title": "Hi"}, headers=ADMIN)
        self.assertEqual(resp.status_code, 400)

        self.repo.replace_push_subscription("w1", "https://push.example/w1", {"p256dh": "k", "auth": "a"})
        resp = self.client.post("/api/send-push", json={"title": "Hi", "body": "There", "url": "/"}, headers=ADMIN)
        self.assertEqual(resp.get_json(), {"success": True, "total": 1, "sent": 1, "failures": []})

    def test_send_push_without_configuration(self):
        self.state.push_sender = PushSender(self.repo, "")
        resp = self.client.post("/api/send-push", json={"title": "Hi", "body": "There"}, headers=ADMIN)
        self.assertEqual(resp.status_code, 500)

    def test_public_key_requires_configuration(self):
        self.assertEqual(self.client.get("/api/push/public-key").status_code, 500)
        with patch.dict(os.environ, {"VAPID_PUBLIC_KEY": "BPublicKey"}):
            resp = self.client.get("/api/push/public-key")
        self.assertEqual(resp.get_json()["public_key"], "BPublicKey")

    def test_push_subscription_registration(self):
        body = {"subscription": {"endpoint": "https://push.example/p1", "keys": {"p256dh": "k", "auth": "a"}}}
        self.assertEqual(self.client.post("/api/push/subscriptions", json=body, headers=PENDING).status_code, 200)
        self.assertEqual(self.client.post("/api/push/subscriptions", json=body, headers=PENDING).status_code, 200)
        self.assertEqual(len(self.repo.push_subscriptions), 1)

    # --- users ---

    def test_user_management(self):
        users = self.client.get("/api/users?status=pending", headers=ADMIN).get_json()["users"]
        self.assertEqual([u["id"] for u in users], ["p1"])

        resp = self.client.patch("/api/users/p1", json={"status": "active"}, headers=ADMIN)
        self.assertEqual(resp.get_json()["user"]["status"], "active")
        self.assertEqual(self.client.patch("/api/users/p1", json={"role": "owner"}, headers=ADMIN).status_code, 400)
        self.assertEqual(self.client.patch("/api/users/ghost", json={"role": "admin"}, headers=ADMIN).status_code, 404)

    def test_profile_name_update(self):
        resp = self.client.patch("/api/profile", json={"full_name": "Renamed"}, headers=WORKER)
        self.assertEqual(resp.get_json()["profile"]["full_name"], "Renamed")
        self.assertEqual(self.client.patch("/api/profile", json={"full_name": ""}, headers=WORKER).status_code, 400)

    def test_admin_actions_are_audited(self):
        self.client.delete("/api/assignments?date=2026-01-09", headers=ADMIN)
        path = os.path.join(self.temp_dir.name, "usage_audit.jsonl")
        with open(path, "r", encoding="utf-8") as fh:
            rows = [json.loads(line) for line in fh if line.strip()]
        self.assertEqual(rows[-1]["action"], "unassign_all")
        self.assertEqual(rows[-1]["user_id"], "admin")


if __name__ == "__main__":
    unittest.main()
