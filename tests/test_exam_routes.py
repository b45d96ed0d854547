import sys
from pathlib import Path

import pytest
from flask import Flask

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from errors import GenerationFailure  # noqa: E402
from exam import ControllerRegistry, create_exam_blueprint  # noqa: E402
from exam_lifecycle import ExamState  # noqa: E402
from stores import AttemptStore, MemoryKVStore, SubjectStore  # noqa: E402


class FakeGeneration:
    def __init__(self, api_key="server-key"):
        self.api_key = api_key
        self.keys_used = []
        self.fail_grading = False

    def with_api_key(self, api_key):
        clone = FakeGeneration(api_key)
        clone.keys_used = self.keys_used
        return clone

    def generate_exam(self, material, count):
        self.keys_used.append(self.api_key)
        return [
            {"question": "2 + 2 = ?", "type": "multiple_choice", "options": ["3", "4"], "correctAnswer": "4", "topic": "Math"},
            {"question": "Ice is cold.", "type": "true_false", "correctAnswer": "True", "topic": "Physics"},
            {"question": "Largest planet?", "type": "short_answer", "correctAnswer": "Jupiter", "topic": "Space"},
        ][:count]

    def grade_exam(self, material, questions, answers):
        if self.fail_grading:
            raise GenerationFailure("grader unavailable")
        verdicts = [a.strip().lower() == str(q["correctAnswer"]).lower() for q, a in zip(questions, answers)]
        return {
            "results": [{"isCorrect": v} for v in verdicts],
            "topicsToReview": [q["topic"] for q, v in zip(questions, verdicts) if not v],
        }

    def find_readings(self, topic):
        return [{"title": f"About {topic}", "url": f"https://example.org/{topic.lower()}"}]


@pytest.fixture
def env():
    return _make_env(ControllerRegistry())


def _make_env(registry):
    kv = MemoryKVStore()
    attempts = AttemptStore(kv)
    subjects = SubjectStore(kv)
    subject = subjects.create("Science")
    gen = FakeGeneration()

    app = Flask(__name__)
    app.testing = True
    app.secret_key = "test"
    app.register_blueprint(create_exam_blueprint("", {
        "generation": gen,
        "attempt_store": attempts,
        "subject_store": subjects,
        "exam_registry": registry,
    }))
    return {"client": app.test_client(), "gen": gen, "attempts": attempts,
            "sid": subject["id"], "registry": registry}


def _take_exam(client, sid, answers=("4", "False", "Jupiter")):
    resp = client.post(f"/subjects/{sid}/exam/generate",
                       json={"material": "Planets and arithmetic", "name": "Quiz night", "questionCount": 3})
    assert resp.status_code == 200, resp.get_json()
    for i, a in enumerate(answers):
        client.post(f"/subjects/{sid}/exam/answer", json={"index": i, "value": a})
    return client.post(f"/subjects/{sid}/exam/submit")


def test_full_exam_flow(env):
    client, sid = env["client"], env["sid"]

    assert client.get(f"/subjects/{sid}/exam").get_json()["state"] == "idle"

    resp = _take_exam(client, sid)
    body = resp.get_json()

    assert resp.status_code == 200
    assert body["state"] == "completed"
    assert body["saved"] is True
    assert body["attempt"]["overallScoreDisplay"] == 66.7
    assert body["attempt"]["topicsToReview"] == ["Physics"]

    history = client.get(f"/subjects/{sid}/exams").get_json()["items"]
    assert len(history) == 1
    assert history[0]["name"] == "Quiz night"


def test_blank_material_is_rejected(env):
    client, sid = env["client"], env["sid"]

    resp = client.post(f"/subjects/{sid}/exam/generate", json={"material": "  ", "name": "X"})

    assert resp.status_code == 400
    body = resp.get_json()
    assert body["ok"] is False
    assert body["kind"] == "validation"
    assert body["state"] == "idle"
    assert env["gen"].keys_used == []


def test_grading_failure_keeps_session(env):
    client, sid = env["client"], env["sid"]
    env["gen"].fail_grading = True

    resp = _take_exam(client, sid)

    assert resp.status_code == 502
    assert resp.get_json()["state"] == "in_progress"
    session = client.get(f"/subjects/{sid}/exam").get_json()["session"]
    assert session["answers"] == {"0": "4", "1": "False", "2": "Jupiter"}


def test_submit_without_exam_is_conflict(env):
    resp = env["client"].post(f"/subjects/{env['sid']}/exam/submit")

    assert resp.status_code == 409
    assert resp.get_json()["kind"] == "lifecycle"


def test_navigation(env):
    client, sid = env["client"], env["sid"]
    client.post(f"/subjects/{sid}/exam/generate", json={"material": "m", "name": "n", "questionCount": 3})

    body = client.post(f"/subjects/{sid}/exam/navigate", json={"direction": "last"}).get_json()
    assert body["session"]["currentIndex"] == 2
    body = client.post(f"/subjects/{sid}/exam/navigate", json={"direction": "next"}).get_json()
    assert body["session"]["currentIndex"] == 2


def test_readings_history_view_and_delete(env):
    client, sid = env["client"], env["sid"]
    attempt_id = _take_exam(client, sid).get_json()["attempt"]["id"]

    first = client.post(f"/subjects/{sid}/exam/readings", json={"topic": "Physics"}).get_json()
    again = client.post(f"/subjects/{sid}/exam/readings", json={"topic": "Physics"}).get_json()
    assert len(first["added"]) == 1
    assert again["added"] == []
    assert len(env["attempts"].find_by_id(attempt_id)["extraReadings"]) == 1

    client.post(f"/subjects/{sid}/exam/close")
    view = client.get(f"/subjects/{sid}/exams/{attempt_id}").get_json()
    assert view["state"] == "viewing_history"
    assert view["attempt"]["extraReadings"][0]["url"] == "https://example.org/physics"

    deleted = client.delete(f"/subjects/{sid}/exams/{attempt_id}").get_json()
    assert deleted["removed"] is True
    assert deleted["state"] == "idle"
    assert env["attempts"].list_all() == []

    missing = client.get(f"/subjects/{sid}/exams/{attempt_id}")
    assert missing.status_code == 404
    assert missing.get_json()["state"] == "idle"


def test_api_key_header_is_used_for_that_request(env):
    client, sid = env["client"], env["sid"]

    client.post(f"/subjects/{sid}/exam/generate", json={"material": "m", "name": "n", "questionCount": 1},
                headers={"X-Api-Key": "user-key"})
    client.post(f"/subjects/{sid}/exam/close")
    client.post(f"/subjects/{sid}/exam/generate", json={"material": "m", "name": "n", "questionCount": 1})

    assert env["gen"].keys_used == ["user-key", "server-key"]


def test_unknown_subject_is_404(env):
    resp = env["client"].get("/subjects/nope/exam")

    assert resp.status_code == 404
    assert resp.get_json()["kind"] == "not_found"


def test_sessions_are_isolated_per_client(env):
    client, sid = env["client"], env["sid"]
    client.post(f"/subjects/{sid}/exam/generate", json={"material": "m", "name": "n", "questionCount": 2})

    other = client.application.test_client()
    assert other.get(f"/subjects/{sid}/exam").get_json()["state"] == "idle"
    assert client.get(f"/subjects/{sid}/exam").get_json()["state"] == "in_progress"


def test_idle_controllers_are_evicted_past_the_cache_size():
    env = _make_env(ControllerRegistry(2))
    app, sid = env["client"].application, env["sid"]

    clients = [app.test_client() for _ in range(3)]
    for c in clients:
        assert c.get(f"/subjects/{sid}/exam").get_json()["state"] == "idle"

    assert len(env["registry"]) == 2


def test_controller_mid_generation_is_not_evicted():
    class Busy:
        state = ExamState.GENERATING

    class Idle:
        state = ExamState.IDLE

    registry = ControllerRegistry(1)
    busy = registry.get_or_create(("a", "s1"), Busy)
    registry.get_or_create(("b", "s1"), Idle)
    registry.get_or_create(("c", "s1"), Idle)

    assert registry.get_or_create(("a", "s1"), Idle) is busy
    assert len(registry) == 1


def test_close_drops_the_controller(env):
    client, sid = env["client"], env["sid"]
    client.post(f"/subjects/{sid}/exam/generate", json={"material": "m", "name": "n", "questionCount": 2})
    assert len(env["registry"]) == 1

    assert client.post(f"/subjects/{sid}/exam/close").get_json()["state"] == "idle"
    assert len(env["registry"]) == 0
