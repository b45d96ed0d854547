# exam_lifecycle.py
# -----------------------------------------------------------------------------
# Exam attempt lifecycle: generation -> answers -> grading -> persisted history.
# - Explicit state enum + one transition table (no scattered flags)
# - One generate/submit in flight per controller (re-entrancy guard)
# - Failed service calls roll the state back one step, session intact
# - Store write failures keep the graded attempt visible, flagged unsaved
# -----------------------------------------------------------------------------

import copy
import threading
import time
from datetime import date
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from errors import (
    GenerationFailure, LifecycleError, NotFoundError, PersistenceFailure,
    SessionBusy, StudyError, ValidationError,
)
from generation import normalize_question


class ExamState(str, Enum):
    IDLE = "idle"
    GENERATING = "generating"
    IN_PROGRESS = "in_progress"
    GRADING = "grading"
    COMPLETED = "completed"
    VIEWING_HISTORY = "viewing_history"


TRANSIENT_STATES = (ExamState.GENERATING, ExamState.GRADING)

# action -> states it may start from
TRANSITIONS = {
    "generate":       {ExamState.IDLE, ExamState.IN_PROGRESS},
    "answer":         {ExamState.IN_PROGRESS},
    "navigate":       {ExamState.IN_PROGRESS},
    "submit":         {ExamState.IN_PROGRESS},
    "view_history":   {ExamState.IDLE, ExamState.COMPLETED, ExamState.VIEWING_HISTORY},
    "fetch_readings": {ExamState.COMPLETED, ExamState.VIEWING_HISTORY},
    "delete_attempt": {ExamState.IDLE, ExamState.COMPLETED, ExamState.VIEWING_HISTORY},
    "start_new":      {ExamState.IDLE, ExamState.IN_PROGRESS, ExamState.COMPLETED, ExamState.VIEWING_HISTORY},
}

NAV_STEPS = {"next": 1, "prev": -1, "previous": -1}


# -----------------------------------------------------------------------------
# Scoring / record helpers
# -----------------------------------------------------------------------------
def overall_score(results: List[Dict[str, Any]]) -> float:
    total = len(results)
    if total == 0:
        return 0.0
    correct = sum(1 for r in results if r.get("isCorrect"))
    return 100.0 * correct / total


def display_score(score: float) -> float:
    return round(float(score or 0.0), 1)


def merge_readings(existing: List[Dict[str, str]], incoming: List[Dict[str, str]]) -> Tuple[List[Dict[str, str]], List[Dict[str, str]]]:
    """Append incoming readings whose url is not present yet. Returns (merged, added)."""
    merged = [dict(r) for r in (existing or [])]
    seen = {r.get("url") for r in merged}
    added: List[Dict[str, str]] = []
    for r in incoming or []:
        url = r.get("url")
        if not url or url in seen:
            continue
        item = {"title": r.get("title") or url, "url": url}
        merged.append(item)
        added.append(item)
        seen.add(url)
    return merged, added


def merge_results(questions: List[Dict[str, Any]], answers: List[str], graded: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Positional merge of grader verdicts with the question set the user actually saw."""
    if len(graded) != len(questions):
        raise GenerationFailure("Grading returned a different number of results than questions.")
    out: List[Dict[str, Any]] = []
    for q, a, r in zip(questions, answers, graded):
        # blank answers are only right when nothing was expected
        if not str(a or "").strip():
            is_correct = not str(q.get("correctAnswer") or "").strip()
        else:
            is_correct = bool((r or {}).get("isCorrect"))
        out.append({
            "question": q.get("question"),
            "type": q.get("type"),
            "topic": q.get("topic"),
            "userAnswer": a,
            "correctAnswer": q.get("correctAnswer"),
            "isCorrect": is_correct,
        })
    return out


class LifecycleSession:
    """Working state of one exam pass; never persisted."""

    def __init__(self, course_material: str, exam_name: str, questions: List[Dict[str, Any]]):
        self.course_material = course_material
        self.exam_name = exam_name
        self.questions = questions
        self.answers: Dict[int, str] = {}
        self.current_index = 0

    def aligned_answers(self) -> List[str]:
        return [self.answers.get(i, "") for i in range(len(self.questions))]

    def progress_percent(self) -> float:
        if not self.questions:
            return 0.0
        return 100.0 * len(self.answers) / len(self.questions)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "examName": self.exam_name,
            "questions": self.questions,
            "answers": {str(k): v for k, v in sorted(self.answers.items())},
            "currentIndex": self.current_index,
            "currentQuestion": self.questions[self.current_index] if self.questions else None,
            "progress": round(self.progress_percent(), 1),
        }


# -----------------------------------------------------------------------------
# Controller
# -----------------------------------------------------------------------------
class ExamLifecycleController:

    def __init__(self,
                 generation,
                 store,
                 subject_id: str,
                 subject_name: str = "",
                 default_question_count: int = 30,
                 max_questions: int = 50,
                 clock: Callable[[], float] = time.time,
                 today: Optional[Callable[[], str]] = None):
        self.generation = generation
        self.store = store
        self.subject_id = str(subject_id)
        self.subject_name = subject_name or ""
        self.default_question_count = int(default_question_count)
        self.max_questions = int(max_questions)
        self._clock = clock
        self._today = today or (lambda: date.today().isoformat())

        self._state = ExamState.IDLE
        self.session: Optional[LifecycleSession] = None
        self.active_attempt: Optional[Dict[str, Any]] = None
        self.saved: Optional[bool] = None
        self.warnings: List[str] = []

        self._busy = threading.Lock()
        self._readings_lock = threading.Lock()
        self._last_attempt_ms = 0

    @property
    def state(self) -> ExamState:
        return self._state

    def _require(self, action: str):
        if self._state in TRANSIENT_STATES and self._state not in TRANSITIONS[action]:
            raise SessionBusy(f"Cannot {action.replace('_', ' ')} while {self._state.value}.")
        if self._state not in TRANSITIONS[action]:
            raise LifecycleError(f"Cannot {action.replace('_', ' ')} while {self._state.value}.")

    def _acquire(self, action: str):
        if not self._busy.acquire(blocking=False):
            raise SessionBusy("Another exam request is still running. Please wait for it to finish.")
        try:
            self._require(action)
        except StudyError:
            self._busy.release()
            raise

    def _warn(self, msg: str):
        print(f"[exam] subject={self.subject_id}: {msg}")
        self.warnings.append(msg)

    def pop_warnings(self) -> List[str]:
        out, self.warnings = self.warnings, []
        return out

    def _question_count(self, value: Any) -> int:
        if value is None or value == "":
            return self.default_question_count
        try:
            n = int(value)
        except (TypeError, ValueError):
            raise ValidationError("Question count must be a whole number.")
        if not (1 <= n <= self.max_questions):
            raise ValidationError(f"Question count must be between 1 and {self.max_questions}.")
        return n

    def _new_attempt_id(self) -> str:
        ms = int(self._clock() * 1000)
        if ms <= self._last_attempt_ms:
            ms = self._last_attempt_ms + 1
        self._last_attempt_ms = ms
        return str(ms)

    # ------------------------------- transitions ------------------------------
    def generate(self, material: str, name: str, question_count: Any = None, generation=None) -> List[Dict[str, Any]]:
        """idle -> generating -> in_progress (or back to idle when nothing was generated)."""
        self._require("generate")
        material_s = (material or "").strip()
        name_s = (name or "").strip()
        if not material_s:
            raise ValidationError("Please provide course material to generate an exam.")
        if not name_s:
            raise ValidationError("Please provide a name for this exam attempt.")
        count = self._question_count(question_count)

        self._acquire("generate")
        prev_state, prev_session = self._state, self.session
        try:
            self._state = ExamState.GENERATING
            try:
                raw = (generation or self.generation).generate_exam(material_s, count)
                questions = [normalize_question(q, i) for i, q in enumerate(raw or [], start=1)]
            except StudyError:
                self._state, self.session = prev_state, prev_session
                raise
            except Exception as e:
                self._state, self.session = prev_state, prev_session
                raise GenerationFailure(f"Exam generation failed: {e}") from e

            self.active_attempt = None
            self.saved = None
            if not questions:
                self.session = None
                self._state = ExamState.IDLE
                self._warn("No questions were generated. Try different material.")
                return []

            self.session = LifecycleSession(material_s, name_s, questions)
            self._state = ExamState.IN_PROGRESS
            return questions
        finally:
            self._busy.release()

    def answer(self, index: Any, value: Any) -> None:
        self._require("answer")
        try:
            idx = int(index)
        except (TypeError, ValueError):
            raise ValidationError("Question index must be a whole number.")
        if not (0 <= idx < len(self.session.questions)):
            raise ValidationError(f"Question index {idx} is out of range.")
        self.session.answers[idx] = "" if value is None else str(value)

    def navigate(self, direction: Union[str, int]) -> int:
        self._require("navigate")
        last = len(self.session.questions) - 1
        if isinstance(direction, str) and direction.strip().lower() in ("first", "last"):
            target = 0 if direction.strip().lower() == "first" else last
        else:
            if isinstance(direction, str) and direction.strip().lower() in NAV_STEPS:
                step = NAV_STEPS[direction.strip().lower()]
            else:
                try:
                    step = int(direction)
                except (TypeError, ValueError):
                    raise ValidationError(f"Unknown direction '{direction}'.")
            target = self.session.current_index + step
        self.session.current_index = max(0, min(target, last))
        return self.session.current_index

    def submit(self, generation=None) -> Dict[str, Any]:
        """in_progress -> grading -> completed; grading errors return to in_progress."""
        self._acquire("submit")
        try:
            s = self.session
            answers = s.aligned_answers()
            self._state = ExamState.GRADING
            try:
                outcome = (generation or self.generation).grade_exam(s.course_material, s.questions, answers)
                results = merge_results(s.questions, answers, list((outcome or {}).get("results") or []))
            except StudyError:
                self._state = ExamState.IN_PROGRESS
                raise
            except Exception as e:
                self._state = ExamState.IN_PROGRESS
                raise GenerationFailure(f"Grading failed: {e}") from e

            topics: List[str] = []
            for t in (outcome or {}).get("topicsToReview") or []:
                t = str(t or "").strip()
                if t and t not in topics:
                    topics.append(t)

            attempt = {
                "id": self._new_attempt_id(),
                "subjectId": self.subject_id,
                "subjectName": self.subject_name,
                "name": s.exam_name,
                "type": "Exam",
                "date": self._today(),
                "examQuestions": copy.deepcopy(s.questions),
                "examResults": results,
                "overallScore": overall_score(results),
                "topicsToReview": topics,
                "extraReadings": [],
            }
            try:
                self.store.append(attempt)
                self.saved = True
            except PersistenceFailure as e:
                self.saved = False
                self._warn(f"Results are ready, but could not be saved to history: {e.message}")

            self.active_attempt = attempt
            self.session = None
            self._state = ExamState.COMPLETED
            return attempt
        finally:
            self._busy.release()

    def view_history(self, attempt_id: str) -> Dict[str, Any]:
        self._require("view_history")
        record = self.store.find_by_id(attempt_id)
        if not record or str(record.get("subjectId")) != self.subject_id:
            self.active_attempt = None
            self.saved = None
            self._state = ExamState.IDLE
            self._warn(f"Attempt {attempt_id} no longer exists.")
            raise NotFoundError(f"Attempt {attempt_id} not found.")
        record.setdefault("extraReadings", [])
        self.active_attempt = record
        self.saved = True
        self.session = None
        self._state = ExamState.VIEWING_HISTORY
        return record

    def fetch_readings(self, topic: str, generation=None) -> List[Dict[str, str]]:
        """Merge readings for a topic into the active attempt; returns only the new entries."""
        self._require("fetch_readings")
        t = (topic or "").strip()
        if not t:
            raise ValidationError("Topic is required.")
        target = self.active_attempt
        try:
            found = (generation or self.generation).find_readings(t)
        except StudyError:
            raise
        except Exception as e:
            raise GenerationFailure(f"Reading lookup failed: {e}") from e

        with self._readings_lock:
            if target is not self.active_attempt:
                self._warn(f"Readings for '{t}' arrived after the attempt was closed; discarded.")
                return []
            merged, added = merge_readings(target.get("extraReadings") or [], found or [])
            if not added:
                return []
            target["extraReadings"] = merged
            if self.saved:
                try:
                    self.store.update_extra_readings(target["id"], merged)
                except PersistenceFailure as e:
                    self._warn(f"Readings are shown but could not be saved: {e.message}")
        return added

    def delete_attempt(self, attempt_id: str) -> bool:
        self._require("delete_attempt")
        removed = self.store.delete_by_id(attempt_id)
        if self.active_attempt and str(self.active_attempt.get("id")) == str(attempt_id):
            self.active_attempt = None
            self.saved = None
            self._state = ExamState.IDLE
        return removed

    def start_new(self) -> None:
        self._require("start_new")
        self.session = None
        self.active_attempt = None
        self.saved = None
        self._state = ExamState.IDLE

    close = start_new

    # --------------------------------- views ----------------------------------
    def history(self) -> List[Dict[str, Any]]:
        return self.store.list_by_subject_and_type(self.subject_id, "Exam")

    def snapshot(self) -> Dict[str, Any]:
        attempt = None
        if self.active_attempt is not None:
            attempt = dict(self.active_attempt)
            attempt["overallScoreDisplay"] = display_score(attempt.get("overallScore"))
        return {
            "state": self._state.value,
            "subjectId": self.subject_id,
            "session": self.session.to_dict() if self.session else None,
            "attempt": attempt,
            "saved": self.saved,
            "warnings": self.pop_warnings(),
        }


__all__ = [
    "ExamState", "ExamLifecycleController", "LifecycleSession", "TRANSITIONS",
    "overall_score", "display_score", "merge_readings", "merge_results",
]
