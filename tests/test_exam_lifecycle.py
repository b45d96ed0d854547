import sys
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from errors import (  # noqa: E402
    GenerationFailure, LifecycleError, NotFoundError, SessionBusy, ValidationError,
)
from exam_lifecycle import (  # noqa: E402
    ExamLifecycleController, ExamState, display_score, merge_readings, overall_score,
)
from stores import AttemptStore, MemoryKVStore  # noqa: E402


QUESTIONS = [
    {"question": "2 + 2 = ?", "type": "multiple_choice", "options": ["3", "4"], "correctAnswer": "4", "topic": "Arithmetic"},
    {"question": "The sky is green.", "type": "true_false", "correctAnswer": "False", "topic": "Colors"},
    {"question": "Name the capital of France.", "type": "short_answer", "correctAnswer": "Paris", "topic": "Geography"},
]


class FakeGeneration:
    def __init__(self, questions=None, verdicts=None, topics=None, readings=None):
        self.questions = QUESTIONS if questions is None else questions
        self.verdicts = verdicts if verdicts is not None else [True, False, True]
        self.topics = topics if topics is not None else ["Colors"]
        self.readings = readings or []
        self.calls = []
        self.grade_error = None
        self.on_generate = None
        self.on_grade = None
        self.on_find = None

    def generate_exam(self, material, count):
        self.calls.append(("generate_exam", material, count))
        if self.on_generate:
            self.on_generate()
        return [dict(q) for q in self.questions[:count]]

    def grade_exam(self, material, questions, answers):
        self.calls.append(("grade_exam", material, list(answers)))
        if self.on_grade:
            self.on_grade()
        if self.grade_error:
            raise self.grade_error
        return {
            "results": [{"isCorrect": v} for v in self.verdicts],
            "topicsToReview": list(self.topics),
        }

    def find_readings(self, topic):
        self.calls.append(("find_readings", topic))
        if self.on_find:
            self.on_find()
        return [dict(r) for r in self.readings]


def _controller(gen=None, store=None, **kwargs):
    store = store or AttemptStore(MemoryKVStore())
    kwargs.setdefault("clock", lambda: 1700000000.0)
    kwargs.setdefault("today", lambda: "2024-05-01")
    return ExamLifecycleController(gen or FakeGeneration(), store, "subj-1", "Biology", **kwargs)


def _run_exam(ctl, answers=("4", "True", "Paris")):
    ctl.start_new()
    ctl.generate("Some course material", "Midterm", 3)
    for i, a in enumerate(answers):
        ctl.answer(i, a)
    return ctl.submit()


def test_three_question_exam_scores_two_of_three():
    store = AttemptStore(MemoryKVStore())
    ctl = _controller(store=store)

    attempt = _run_exam(ctl)

    assert ctl.state == ExamState.COMPLETED
    assert attempt["overallScore"] == pytest.approx(200.0 / 3)
    assert display_score(attempt["overallScore"]) == 66.7
    assert attempt["type"] == "Exam"
    assert attempt["date"] == "2024-05-01"
    assert attempt["subjectName"] == "Biology"
    assert attempt["topicsToReview"] == ["Colors"]
    assert attempt["extraReadings"] == []

    history = store.list_by_subject_and_type("subj-1", "Exam")
    assert len(history) == 1
    assert history[0] == attempt
    assert ctl.saved is True
    assert ctl.snapshot()["attempt"]["overallScoreDisplay"] == 66.7


def test_results_align_with_questions():
    ctl = _controller()
    attempt = _run_exam(ctl)

    assert len(attempt["examResults"]) == len(attempt["examQuestions"]) == 3
    for q, r in zip(attempt["examQuestions"], attempt["examResults"]):
        assert r["question"] == q["question"]
        assert r["correctAnswer"] == q["correctAnswer"]
        assert r["topic"] == q["topic"]


def test_blank_material_rejected_without_service_call():
    gen = FakeGeneration()
    ctl = _controller(gen)

    with pytest.raises(ValidationError):
        ctl.generate("   ", "Midterm")
    with pytest.raises(ValidationError):
        ctl.generate("material", "  ")

    assert gen.calls == []
    assert ctl.state == ExamState.IDLE


def test_question_count_bounds_checked_before_generation():
    gen = FakeGeneration()
    ctl = _controller(gen, max_questions=50)

    with pytest.raises(ValidationError):
        ctl.generate("material", "Midterm", 0)
    with pytest.raises(ValidationError):
        ctl.generate("material", "Midterm", 51)
    assert gen.calls == []

    ctl.generate("material", "Midterm")
    assert gen.calls[0][2] == 30


def test_grading_error_returns_to_in_progress_with_answers_kept():
    gen = FakeGeneration()
    gen.grade_error = GenerationFailure("grader down")
    store = AttemptStore(MemoryKVStore())
    ctl = _controller(gen, store)

    ctl.generate("material", "Midterm", 3)
    ctl.answer(0, "4")
    ctl.answer(2, "Paris")

    with pytest.raises(GenerationFailure):
        ctl.submit()

    assert ctl.state == ExamState.IN_PROGRESS
    assert ctl.session.answers == {0: "4", 2: "Paris"}
    assert store.list_all() == []

    gen.grade_error = None
    attempt = ctl.submit()
    assert ctl.state == ExamState.COMPLETED
    assert attempt["examResults"][0]["userAnswer"] == "4"


def test_missing_answers_are_sent_as_empty_strings():
    gen = FakeGeneration(verdicts=[True, False, False])
    ctl = _controller(gen)

    ctl.generate("material", "Midterm", 3)
    ctl.answer(0, "4")
    attempt = ctl.submit()

    grade_call = [c for c in gen.calls if c[0] == "grade_exam"][0]
    assert grade_call[2] == ["4", "", ""]
    assert attempt["examResults"][1]["userAnswer"] == ""


def test_generation_failure_rolls_back_to_idle():
    gen = FakeGeneration(questions=[{"question": "broken", "type": "essay", "correctAnswer": "x"}])
    ctl = _controller(gen)

    with pytest.raises(GenerationFailure):
        ctl.generate("material", "Midterm", 1)

    assert ctl.state == ExamState.IDLE
    assert ctl.session is None


def test_zero_questions_returns_to_idle_with_warning():
    ctl = _controller(FakeGeneration(questions=[]))

    assert ctl.generate("material", "Midterm", 3) == []

    snap = ctl.snapshot()
    assert snap["state"] == "idle"
    assert snap["warnings"]


def test_second_generate_while_generating_is_busy():
    gen = FakeGeneration()
    ctl = _controller(gen)
    seen = []

    def reenter():
        try:
            ctl.generate("other material", "Again", 1)
        except SessionBusy as e:
            seen.append(e)

    gen.on_generate = reenter
    ctl.generate("material", "Midterm", 3)

    assert len(seen) == 1
    assert ctl.state == ExamState.IN_PROGRESS
    assert len([c for c in gen.calls if c[0] == "generate_exam"]) == 1


def test_answers_rejected_while_grading():
    gen = FakeGeneration()
    ctl = _controller(gen)
    seen = []

    def late_answer():
        try:
            ctl.answer(0, "3")
        except SessionBusy as e:
            seen.append(e)

    gen.on_grade = late_answer
    attempt = _run_exam(ctl)

    assert len(seen) == 1
    assert attempt["examResults"][0]["userAnswer"] == "4"


def test_actions_outside_their_states_are_rejected():
    ctl = _controller()

    with pytest.raises(LifecycleError):
        ctl.submit()
    with pytest.raises(LifecycleError):
        ctl.answer(0, "x")
    with pytest.raises(LifecycleError):
        ctl.fetch_readings("Colors")

    ctl.generate("material", "Midterm", 3)
    with pytest.raises(ValidationError):
        ctl.answer(5, "x")


def test_navigation_clamps_to_question_range():
    ctl = _controller()
    ctl.generate("material", "Midterm", 3)

    assert ctl.navigate("prev") == 0
    assert ctl.navigate("next") == 1
    assert ctl.navigate("last") == 2
    assert ctl.navigate("next") == 2
    assert ctl.navigate(-10) == 0


def test_persistence_failure_keeps_results_visible_unsaved():
    store = AttemptStore(MemoryKVStore(quota_bytes=10))
    ctl = _controller(store=store)

    attempt = _run_exam(ctl)

    assert ctl.state == ExamState.COMPLETED
    assert ctl.saved is False
    snap = ctl.snapshot()
    assert snap["attempt"]["id"] == attempt["id"]
    assert snap["saved"] is False
    assert any("could not be saved" in w for w in snap["warnings"])


def test_readings_are_merged_without_duplicate_urls_and_persisted():
    gen = FakeGeneration(readings=[
        {"title": "Color theory", "url": "https://example.org/color"},
        {"title": "Sky", "url": "https://example.org/sky"},
    ])
    store = AttemptStore(MemoryKVStore())
    ctl = _controller(gen, store)
    attempt = _run_exam(ctl)

    added = ctl.fetch_readings("Colors")
    assert [r["url"] for r in added] == ["https://example.org/color", "https://example.org/sky"]

    gen.readings = [
        {"title": "Sky again", "url": "https://example.org/sky"},
        {"title": "Rainbows", "url": "https://example.org/rainbow"},
    ]
    added = ctl.fetch_readings("Colors")
    assert [r["url"] for r in added] == ["https://example.org/rainbow"]

    urls = [r["url"] for r in store.find_by_id(attempt["id"])["extraReadings"]]
    assert urls == ["https://example.org/color", "https://example.org/sky", "https://example.org/rainbow"]
    assert len(urls) == len(set(urls))


def test_view_history_readings_persist_and_missing_attempt_goes_idle():
    gen = FakeGeneration(readings=[{"title": "Maps", "url": "https://example.org/maps"}])
    store = AttemptStore(MemoryKVStore())
    ctl = _controller(gen, store)
    attempt = _run_exam(ctl)
    ctl.start_new()

    ctl.view_history(attempt["id"])
    assert ctl.state == ExamState.VIEWING_HISTORY
    ctl.fetch_readings("Geography")
    assert store.find_by_id(attempt["id"])["extraReadings"] == [{"title": "Maps", "url": "https://example.org/maps"}]

    with pytest.raises(NotFoundError):
        ctl.view_history("does-not-exist")
    assert ctl.state == ExamState.IDLE
    assert ctl.active_attempt is None


def test_delete_active_attempt_removes_exactly_one():
    store = AttemptStore(MemoryKVStore())
    ctl = _controller(store=store)
    first = _run_exam(ctl)
    second = _run_exam(ctl)
    assert first["id"] != second["id"]

    ctl.view_history(first["id"])
    assert ctl.delete_attempt(first["id"]) is True

    assert ctl.state == ExamState.IDLE
    assert [a["id"] for a in store.list_all()] == [second["id"]]
    assert ctl.delete_attempt("nope") is False
    assert len(store.list_all()) == 1


def test_overall_score_bounds():
    assert overall_score([]) == 0.0
    assert overall_score([{"isCorrect": True}] * 4) == 100.0
    assert overall_score([{"isCorrect": False}] * 4) == 0.0
    assert display_score(100.0 / 3) == 33.3


def test_merge_readings_dedupes_by_url():
    existing = [{"title": "A", "url": "https://a"}]
    merged, added = merge_readings(existing, [
        {"title": "A2", "url": "https://a"},
        {"title": "B", "url": "https://b"},
        {"title": "B2", "url": "https://b"},
    ])
    assert [r["url"] for r in merged] == ["https://a", "https://b"]
    assert added == [{"title": "B", "url": "https://b"}]


def test_controllers_sharing_a_store_never_reuse_an_attempt_id():
    store = AttemptStore(MemoryKVStore())
    first = _run_exam(_controller(store=store))
    second = _run_exam(_controller(store=store))

    assert first["id"] != second["id"]
    assert len({a["id"] for a in store.list_all()}) == 2

    assert store.delete_by_id(first["id"]) is True
    assert [a["id"] for a in store.list_all()] == [second["id"]]


def test_blank_answer_is_wrong_even_if_grader_accepts_it():
    gen = FakeGeneration(verdicts=[True, True, True], topics=[])
    ctl = _controller(gen)

    attempt = _run_exam(ctl, answers=("4", "False", "   "))

    assert [r["isCorrect"] for r in attempt["examResults"]] == [True, True, False]
    assert attempt["overallScore"] == pytest.approx(200.0 / 3)


def test_readings_for_a_closed_attempt_are_discarded():
    gen = FakeGeneration(readings=[{"title": "Sky", "url": "https://example.org/sky"}])
    store = AttemptStore(MemoryKVStore())
    ctl = _controller(gen, store)
    attempt = _run_exam(ctl)

    gen.on_find = ctl.start_new
    assert ctl.fetch_readings("Colors") == []

    assert ctl.state == ExamState.IDLE
    assert store.find_by_id(attempt["id"])["extraReadings"] == []
    assert any("discarded" in w for w in ctl.snapshot()["warnings"])
