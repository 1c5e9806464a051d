import json
import os
import sys
import unittest
from fastapi.testclient import TestClient

sys.path.append(os.path.dirname(os.path.dirname(__file__)))
from assistant_client import AssistantReply
from rest_api import PlannerAPI


def workout_draft(exercises, name="API Push"):
    return {
        "kind": "create_workout",
        "confidence": 0.8,
        "risk": "low",
        "title": name,
        "summary": "Pressing day",
        "payload": {"name": name, "exercises": exercises},
    }


class CannedAssistant:
    def __init__(self, content):
        self.content = content

    def send(self, messages, tools=None):
        return AssistantReply(content=self.content)


class APITestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.db_path = "test_planner_api.db"
        self.yaml_path = "test_planner_api.yaml"
        os.environ.pop("PLANNER_DB_PATH", None)
        for path in (self.db_path, self.yaml_path):
            if os.path.exists(path):
                os.remove(path)
        self.api = PlannerAPI(db_path=self.db_path, yaml_path=self.yaml_path)

    def tearDown(self) -> None:
        for path in (self.db_path, self.yaml_path):
            if os.path.exists(path):
                os.remove(path)

    def exercise_id(self, client, name) -> int:
        rows = client.get("/exercises").json()
        return next(row["id"] for row in rows if row["name"] == name)

    def test_health_and_resolve(self) -> None:
        with TestClient(self.api.app) as client:
            response = client.get("/health")
            self.assertEqual(response.status_code, 200)
            self.assertEqual(response.json()["status"], "ok")

            response = client.post("/resolve", json={"text": "ohp"})
            self.assertEqual(response.status_code, 200)
            self.assertEqual(response.json()["status"], "resolved")
            self.assertEqual(response.json()["name"], "Overhead Press")

            response = client.post("/resolve", json={"text": "curl"})
            self.assertEqual(response.json()["status"], "needs_review")
            self.assertTrue(response.json()["suggestions"])

    def test_draft_workflow(self) -> None:
        with TestClient(self.api.app) as client:
            bench = self.exercise_id(client, "Bench Press")
            draft = workout_draft([{"exerciseId": bench, "sets": [{"reps": 5, "weight": 80}]}, {"name": "dips"}])

            response = client.post("/drafts/validate", json=draft)
            self.assertEqual(response.status_code, 200)
            body = response.json()
            self.assertTrue(body["valid"])
            self.assertEqual(body["normalized_draft"]["kind"], "create_workout")
            self.assertEqual(client.get("/workouts").json(), [])

            response = client.post("/drafts/execute", json=draft)
            self.assertEqual(response.status_code, 200)
            created = response.json()
            self.assertEqual(created["kind"], "create_workout")
            self.assertEqual(created["name"], "API Push")

            self.assertEqual(client.get("/workouts/active").json(), {"id": created["id"]})
            detail = client.get(f"/workouts/{created['id']}").json()
            self.assertEqual([i["sort_order"] for i in detail["items"]], [0, 1])
            self.assertEqual(detail["items"][0]["sets"][0]["weight"], "80")

            response = client.post(f"/workouts/{created['id']}/finish")
            self.assertEqual(response.status_code, 200)
            finished = client.get("/workouts", params={"finished": True}).json()
            self.assertEqual([w["id"] for w in finished], [created["id"]])
            self.assertEqual(client.get("/workouts/active").json(), {"id": None})

            usage = client.get("/exercises/usage").json()
            self.assertIn(bench, [u["exercise_id"] for u in usage])
            history = client.get(f"/exercises/{bench}/history").json()
            self.assertEqual(history[0]["workout_id"], created["id"])

            response = client.delete(f"/exercises/{bench}")
            self.assertEqual(response.status_code, 409)
            self.assertEqual(response.json()["kind"], "referential")
            self.assertFalse(response.json()["retryable"])

    def test_invalid_draft_is_rejected(self) -> None:
        with TestClient(self.api.app) as client:
            draft = workout_draft([{"exerciseId": 9999}])
            response = client.post("/drafts/validate", json=draft)
            self.assertEqual(response.status_code, 200)
            self.assertFalse(response.json()["valid"])

            response = client.post("/drafts/execute", json=draft)
            self.assertEqual(response.status_code, 400)
            detail = response.json()["detail"]
            self.assertEqual(detail["errors"][0]["message"], "Unknown exercise IDs: 9999.")
            self.assertEqual(client.get("/workouts").json(), [])

            response = client.post("/drafts/execute", json={"kind": "create_gym"})
            self.assertEqual(response.status_code, 400)

    def test_not_found(self) -> None:
        with TestClient(self.api.app) as client:
            self.assertEqual(client.get("/templates/42").status_code, 404)
            self.assertEqual(client.post("/templates/42/start").status_code, 404)
            self.assertEqual(client.get("/workouts/42").status_code, 404)
            self.assertEqual(client.post("/workouts/42/finish").status_code, 404)
            self.assertEqual(client.delete("/exercises/4242").status_code, 404)
            self.assertEqual(client.post("/spaces/42/default").status_code, 404)

    def test_spaces_and_catalog(self) -> None:
        with TestClient(self.api.app) as client:
            self.assertEqual(client.get("/spaces/active").json()["name"], "Default Gym")
            response = client.post(
                "/spaces",
                json={"name": "Garage", "equipment_ids": ["barbell", "squat_rack"], "is_default": True},
            )
            self.assertEqual(response.status_code, 200)
            garage = response.json()["id"]
            self.assertEqual(client.get("/spaces/active").json()["id"], garage)
            self.assertEqual([s["name"] for s in client.get("/spaces").json()], ["Default Gym", "Garage"])

            equipment = client.get("/equipment").json()
            self.assertIn("bodyweight", [e["id"] for e in equipment])
            self.assertEqual(client.get("/templates").json(), [])
            self.assertEqual(client.get("/planned").json(), [])
            self.assertEqual(client.get("/settings").json()["rest_default_seconds"], 90)

    def test_exercise_availability(self) -> None:
        with TestClient(self.api.app) as client:
            space = client.post("/spaces", json={"name": "Dumbbell Corner", "equipment_ids": ["dumbbell"]}).json()["id"]
            bench = self.exercise_id(client, "Bench Press")
            plank = self.exercise_id(client, "Plank")

            body = client.get(f"/exercises/{bench}/availability", params={"space_id": space}).json()
            self.assertEqual(body["space_id"], space)
            self.assertFalse(body["available"])
            self.assertEqual(body["missing_equipment_ids"], ["barbell", "bench"])
            self.assertIsInstance(body["substitutions"], list)

            body = client.get(f"/exercises/{plank}/availability", params={"space_id": space}).json()
            self.assertTrue(body["available"])
            self.assertEqual(body["missing_equipment_ids"], [])
            self.assertEqual(body["substitutions"], [])

            response = client.get(f"/exercises/{bench}/availability", params={"space_id": 4242})
            self.assertEqual(response.status_code, 404)
            self.assertEqual(client.get("/exercises/4242/availability").status_code, 404)

    def test_coach_requires_assistant(self) -> None:
        with TestClient(self.api.app) as client:
            response = client.post("/coach/messages", json={"message": "hello"})
            self.assertEqual(response.status_code, 503)

    def test_coach_message_returns_validated_draft(self) -> None:
        contract = {
            "contractVersion": "coach_action_v1",
            "assistantText": "Try this.",
            "actionDraft": workout_draft([{"name": "Plank"}], name="Core"),
        }
        reply = "```json\n" + json.dumps(contract) + "\n```"
        api = PlannerAPI(db_path=self.db_path, yaml_path=self.yaml_path, assistant=CannedAssistant(reply))
        with TestClient(api.app) as client:
            response = client.post("/coach/messages", json={"message": "core please"})
            self.assertEqual(response.status_code, 200)
            body = response.json()
            self.assertEqual(body["assistant_text"], "Try this.")
            self.assertTrue(body["validation"]["valid"])
            self.assertEqual(client.get("/workouts").json(), [])


if __name__ == "__main__":
    unittest.main()
