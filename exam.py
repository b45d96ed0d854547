# exam.py
# -----------------------------------------------------------------------------
# Exam blueprint: JSON endpoints driving one ExamLifecycleController per
# (browser session, subject).
# - generate -> answer/navigate -> submit -> results; history view/delete
# - Extra readings per review topic, merged into the active attempt
# - BYOK: an X-Api-Key header routes that request's LLM calls through the
#   caller's own key
# -----------------------------------------------------------------------------

import os
import threading
import uuid
from collections import OrderedDict
from typing import Any, Callable, Dict, Optional, Tuple

from flask import Blueprint, request, jsonify, session, g

from errors import NotFoundError, StudyError, ValidationError
from exam_lifecycle import TRANSIENT_STATES, ExamLifecycleController, display_score
from stores import ATTEMPT_TYPES

SESSION_KEY = "study_sid"


class ControllerRegistry:
    """LRU of lifecycle controllers keyed by (session id, subject id).

    Controllers mid-generate/grade are never evicted.
    """

    def __init__(self, max_size: int = 256):
        self.max_size = int(max_size)
        self._items: "OrderedDict[Tuple[str, str], ExamLifecycleController]" = OrderedDict()
        self._lock = threading.Lock()

    @classmethod
    def from_env(cls) -> "ControllerRegistry":
        return cls(int(os.getenv("EXAM_SESSION_CACHE") or 256))

    def __len__(self) -> int:
        return len(self._items)

    def get_or_create(self, key: Tuple[str, str],
                      factory: Callable[[], ExamLifecycleController]) -> ExamLifecycleController:
        with self._lock:
            ctl = self._items.get(key)
            if ctl is None:
                ctl = factory()
                self._items[key] = ctl
            self._items.move_to_end(key)
            while len(self._items) > self.max_size:
                victim = next((k for k, c in self._items.items() if c.state not in TRANSIENT_STATES), None)
                if victim is None or victim == key:
                    break
                del self._items[victim]
            return ctl

    def discard(self, key: Tuple[str, str]) -> None:
        with self._lock:
            self._items.pop(key, None)

    def drop_subject(self, subject_id: str) -> int:
        with self._lock:
            keys = [k for k in self._items if k[1] == str(subject_id)]
            for k in keys:
                del self._items[k]
        if keys:
            print(f"[exam] dropped {len(keys)} controller(s) for deleted subject {subject_id}")
        return len(keys)


def create_exam_blueprint(base_path: str, deps: Dict[str, Any], name: str = "exam") -> Blueprint:
    """
    Factory that returns a Blueprint mounted at base_path (e.g. "" or "/study").
    Required deps: generation, attempt_store, subject_store
    Optional deps: exam_registry (shared with the study blueprint for subject deletes)
    """
    bp = Blueprint(name, __name__, url_prefix=base_path or None)

    # ---- Required deps -------------------------------------------------------
    generation    = deps["generation"]
    attempt_store = deps["attempt_store"]
    subject_store = deps["subject_store"]

    # ---- Config --------------------------------------------------------------
    DEFAULT_Q_COUNT = int(os.getenv("EXAM_QUESTION_COUNT") or 30)
    MAX_Q_COUNT     = int(os.getenv("EXAM_MAX_QUESTIONS") or 50)

    # ---- Controller registry -------------------------------------------------
    registry = deps.get("exam_registry")
    if registry is None:
        registry = ControllerRegistry.from_env()
    bp.registry = registry

    def _session_id() -> str:
        sid = session.get(SESSION_KEY)
        if not sid:
            sid = uuid.uuid4().hex
            session[SESSION_KEY] = sid
        return sid

    def _key(subject_id: str) -> Tuple[str, str]:
        return (_session_id(), str(subject_id))

    def _subject(subject_id: str) -> Dict[str, Any]:
        subj = subject_store.find(subject_id)
        if not subj:
            raise NotFoundError(f"Subject {subject_id} not found.")
        return subj

    def _controller(subject_id: str) -> ExamLifecycleController:
        subj = _subject(subject_id)
        ctl = registry.get_or_create(_key(subject_id), lambda: ExamLifecycleController(
            generation, attempt_store, subject_id, subj.get("name") or "",
            default_question_count=DEFAULT_Q_COUNT, max_questions=MAX_Q_COUNT,
        ))
        ctl.subject_name = subj.get("name") or ctl.subject_name
        g._exam_ctl = ctl
        return ctl

    def _request_generation() -> Optional[Any]:
        api_key = (request.headers.get("X-Api-Key") or "").strip()
        return generation.with_api_key(api_key) if api_key else None

    def _body() -> Dict[str, Any]:
        data = request.get_json(silent=True)
        return data if isinstance(data, dict) else {}

    def _ok(ctl: ExamLifecycleController, status: int = 200, **extra):
        payload = {"ok": True, **ctl.snapshot()}
        payload.update(extra)
        return jsonify(payload), status

    @bp.errorhandler(StudyError)
    def _study_error(e: StudyError):
        ctl = getattr(g, "_exam_ctl", None)
        body = e.to_dict(state=ctl.state.value if ctl else None)
        if ctl is not None:
            body["warnings"] = ctl.pop_warnings()
        return jsonify(body), e.status

    # --------------------------------- session --------------------------------
    @bp.get("/subjects/<subject_id>/exam")
    def exam_state(subject_id: str):
        return _ok(_controller(subject_id))

    @bp.post("/subjects/<subject_id>/exam/generate")
    def exam_generate(subject_id: str):
        ctl = _controller(subject_id)
        data = _body()
        questions = ctl.generate(
            data.get("material") or data.get("courseMaterial") or "",
            data.get("name") or data.get("examName") or "",
            data.get("questionCount"),
            generation=_request_generation(),
        )
        return _ok(ctl, questionsGenerated=len(questions))

    @bp.post("/subjects/<subject_id>/exam/answer")
    def exam_answer(subject_id: str):
        ctl = _controller(subject_id)
        data = _body()
        if "index" not in data:
            raise ValidationError("Question index is required.")
        ctl.answer(data.get("index"), data.get("value"))
        return _ok(ctl)

    @bp.post("/subjects/<subject_id>/exam/navigate")
    def exam_navigate(subject_id: str):
        ctl = _controller(subject_id)
        ctl.navigate(_body().get("direction", "next"))
        return _ok(ctl)

    @bp.post("/subjects/<subject_id>/exam/submit")
    def exam_submit(subject_id: str):
        ctl = _controller(subject_id)
        attempt = ctl.submit(generation=_request_generation())
        print(f"[exam] graded attempt {attempt['id']} subject={subject_id} "
              f"score={display_score(attempt['overallScore'])} saved={ctl.saved}")
        return _ok(ctl)

    @bp.post("/subjects/<subject_id>/exam/close")
    def exam_close(subject_id: str):
        ctl = _controller(subject_id)
        ctl.close()
        registry.discard(_key(subject_id))
        return _ok(ctl)

    @bp.post("/subjects/<subject_id>/exam/readings")
    def exam_readings(subject_id: str):
        ctl = _controller(subject_id)
        topic = _body().get("topic") or ""
        added = ctl.fetch_readings(topic, generation=_request_generation())
        return _ok(ctl, added=added, topic=topic.strip())

    # --------------------------------- history --------------------------------
    @bp.get("/subjects/<subject_id>/exams")
    def exam_history(subject_id: str):
        _subject(subject_id)
        a_type = request.args.get("type") or "Exam"
        if a_type == "all":
            a_type = None
        elif a_type not in ATTEMPT_TYPES:
            raise ValidationError(f"Unknown attempt type '{a_type}'.")
        items = []
        for a in attempt_store.list_by_subject_and_type(subject_id, a_type):
            items.append({
                "id": a.get("id"),
                "name": a.get("name"),
                "type": a.get("type"),
                "date": a.get("date"),
                "overallScore": a.get("overallScore"),
                "overallScoreDisplay": display_score(a.get("overallScore")),
                "topicsToReview": a.get("topicsToReview") or [],
            })
        return jsonify({"ok": True, "items": items})

    @bp.get("/subjects/<subject_id>/exams/<attempt_id>")
    def exam_view(subject_id: str, attempt_id: str):
        ctl = _controller(subject_id)
        ctl.view_history(attempt_id)
        return _ok(ctl)

    @bp.delete("/subjects/<subject_id>/exams/<attempt_id>")
    def exam_delete(subject_id: str, attempt_id: str):
        ctl = _controller(subject_id)
        removed = ctl.delete_attempt(attempt_id)
        return _ok(ctl, removed=removed)

    return bp
