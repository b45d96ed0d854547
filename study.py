# study.py
# -----------------------------------------------------------------------------
# Study blueprint: subjects, material upload, notes, flashcard quizzes and
# "explain this term".
# - Every collection is scoped by subject id
# - Finishing a quiz run records a Quiz attempt in the shared attempt history
# - X-Api-Key header = bring-your-own-key for that request's LLM calls
# -----------------------------------------------------------------------------

import os
import time
import uuid
from datetime import date
from typing import Any, Dict, List, Optional

from flask import Blueprint, request, jsonify

from errors import NotFoundError, StudyError, ValidationError
from generation import MAX_QUIZ_LENGTH
from rendering import render_rich
from stores import utc_now_iso

MATERIAL_EXTRACT_CHARS = 500


def create_study_blueprint(base_path: str, deps: Dict[str, Any], name: str = "study") -> Blueprint:
    """
    Factory that returns a Blueprint mounted at base_path.
    Required deps: generation, subject_store, note_store, quiz_store,
                   attempt_store, extractor
    Optional deps: exam_registry (live exam controllers, dropped on subject delete)
    """
    bp = Blueprint(name, __name__, url_prefix=base_path or None)

    generation    = deps["generation"]
    subject_store = deps["subject_store"]
    note_store    = deps["note_store"]
    quiz_store    = deps["quiz_store"]
    attempt_store = deps["attempt_store"]
    extractor     = deps["extractor"]
    exam_registry = deps.get("exam_registry")

    QUIZ_DEFAULT_LENGTH = int(os.getenv("QUIZ_DEFAULT_LENGTH") or 5)

    @bp.errorhandler(StudyError)
    def _study_error(e: StudyError):
        return jsonify(e.to_dict()), e.status

    # ---- helpers -------------------------------------------------------------
    def _gen():
        api_key = (request.headers.get("X-Api-Key") or "").strip()
        return generation.with_api_key(api_key) if api_key else generation

    def _body() -> Dict[str, Any]:
        data = request.get_json(silent=True)
        return data if isinstance(data, dict) else {}

    def _subject(subject_id: str) -> Dict[str, Any]:
        subj = subject_store.find(subject_id)
        if not subj:
            raise NotFoundError(f"Subject {subject_id} not found.")
        return subj

    def _scoped(store, subject_id: str, record_id: str, label: str) -> Dict[str, Any]:
        rec = store.find(record_id)
        if not rec or str(rec.get("subjectId")) != str(subject_id):
            raise NotFoundError(f"{label} {record_id} not found.")
        return rec

    def _quiz_length(value: Any) -> int:
        if value is None or value == "":
            return QUIZ_DEFAULT_LENGTH
        try:
            n = int(value)
        except (TypeError, ValueError):
            raise ValidationError("Quiz length must be a whole number.")
        if not (1 <= n <= MAX_QUIZ_LENGTH):
            raise ValidationError(f"Quiz length must be between 1 and {MAX_QUIZ_LENGTH}.")
        return n

    # -------------------------------- subjects --------------------------------
    @bp.get("/subjects")
    def subjects_list():
        items = sorted(subject_store.list_all(), key=lambda s: str(s.get("name") or "").lower())
        return jsonify({"ok": True, "items": items})

    @bp.post("/subjects")
    def subjects_create():
        subj_name = str(_body().get("name") or "").strip()
        if not subj_name:
            raise ValidationError("Subject name is required.")
        subj = subject_store.create(subj_name)
        print(f"[study] created subject {subj['id']} '{subj_name}'")
        return jsonify({"ok": True, "subject": subj}), 201

    @bp.get("/subjects/<subject_id>")
    def subjects_get(subject_id: str):
        return jsonify({"ok": True, "subject": _subject(subject_id)})

    @bp.delete("/subjects/<subject_id>")
    def subjects_delete(subject_id: str):
        _subject(subject_id)
        subject_store.delete(subject_id)
        if exam_registry is not None:
            exam_registry.drop_subject(subject_id)
        return jsonify({"ok": True, "removed": True})

    # -------------------------------- materials -------------------------------
    @bp.post("/subjects/<subject_id>/materials")
    def materials_upload(subject_id: str):
        _subject(subject_id)
        f = request.files.get("file")
        if f is None:
            raise ValidationError("No file uploaded. Use the 'file' form field.")
        text, meta = extractor.extract(f.read(), f.filename or "", f.mimetype)
        return jsonify({"ok": True, "material": text, "meta": meta, "chars": len(text)})

    # ---------------------------------- notes ---------------------------------
    @bp.get("/subjects/<subject_id>/notes")
    def notes_list(subject_id: str):
        _subject(subject_id)
        items = sorted(note_store.list_by_subject(subject_id),
                       key=lambda n: str(n.get("createdAt") or ""), reverse=True)
        return jsonify({"ok": True, "items": items})

    @bp.post("/subjects/<subject_id>/notes")
    def notes_generate(subject_id: str):
        _subject(subject_id)
        data = _body()
        source_name = (data.get("sourceName") or "").strip() or None
        content = _gen().generate_notes(data.get("material") or "", source_name)
        now = utc_now_iso()
        note = note_store.add({
            "id": uuid.uuid4().hex,
            "subjectId": str(subject_id),
            "content": content,
            "sourceName": source_name,
            "createdAt": now,
            "updatedAt": now,
        })
        return jsonify({"ok": True, "note": note, "html": str(render_rich(content))}), 201

    @bp.get("/subjects/<subject_id>/notes/<note_id>")
    def notes_get(subject_id: str, note_id: str):
        note = _scoped(note_store, subject_id, note_id, "Note")
        return jsonify({"ok": True, "note": note, "html": str(render_rich(note.get("content")))})

    @bp.put("/subjects/<subject_id>/notes/<note_id>")
    def notes_update(subject_id: str, note_id: str):
        _scoped(note_store, subject_id, note_id, "Note")
        content = _body().get("content")
        if not isinstance(content, str) or not content.strip():
            raise ValidationError("Note content is required.")
        note = note_store.update(note_id, {"content": content, "updatedAt": utc_now_iso()})
        return jsonify({"ok": True, "note": note, "html": str(render_rich(content))})

    @bp.delete("/subjects/<subject_id>/notes/<note_id>")
    def notes_delete(subject_id: str, note_id: str):
        _scoped(note_store, subject_id, note_id, "Note")
        return jsonify({"ok": True, "removed": note_store.delete(note_id)})

    # --------------------------------- quizzes --------------------------------
    @bp.get("/subjects/<subject_id>/quizzes")
    def quizzes_list(subject_id: str):
        _subject(subject_id)
        items = []
        for q in quiz_store.list_by_subject(subject_id):
            items.append({
                "id": q.get("id"),
                "name": q.get("name"),
                "cards": len(q.get("flashcards") or []),
                "createdAt": q.get("createdAt"),
            })
        items.sort(key=lambda q: str(q["createdAt"] or ""), reverse=True)
        return jsonify({"ok": True, "items": items})

    @bp.post("/subjects/<subject_id>/quizzes")
    def quizzes_generate(subject_id: str):
        _subject(subject_id)
        data = _body()
        material = (data.get("material") or "").strip()
        if not material:
            raise ValidationError("Course material is required.")
        n = _quiz_length(data.get("quizLength"))
        cards = _gen().generate_quiz(material, n)
        now = utc_now_iso()
        quiz = quiz_store.add({
            "id": uuid.uuid4().hex,
            "subjectId": str(subject_id),
            "name": (data.get("name") or "").strip() or f"Quiz {date.today().isoformat()}",
            "flashcards": cards,
            "courseMaterialExtract": material[:MATERIAL_EXTRACT_CHARS],
            "quizLengthUsed": n,
            "createdAt": now,
            "updatedAt": now,
        })
        return jsonify({"ok": True, "quiz": quiz}), 201

    @bp.get("/subjects/<subject_id>/quizzes/<quiz_id>")
    def quizzes_get(subject_id: str, quiz_id: str):
        return jsonify({"ok": True, "quiz": _scoped(quiz_store, subject_id, quiz_id, "Quiz")})

    @bp.delete("/subjects/<subject_id>/quizzes/<quiz_id>")
    def quizzes_delete(subject_id: str, quiz_id: str):
        _scoped(quiz_store, subject_id, quiz_id, "Quiz")
        return jsonify({"ok": True, "removed": quiz_store.delete(quiz_id)})

    @bp.post("/subjects/<subject_id>/quizzes/<quiz_id>/finish")
    def quizzes_finish(subject_id: str, quiz_id: str):
        subj = _subject(subject_id)
        quiz = _scoped(quiz_store, subject_id, quiz_id, "Quiz")
        cards: List[Dict[str, Any]] = quiz.get("flashcards") or []
        if not cards:
            raise ValidationError("This quiz has no flashcards.")
        known_raw = _body().get("known")
        if not isinstance(known_raw, list):
            raise ValidationError("'known' must be a list of flashcard ids.")
        card_ids = {str(c.get("id")) for c in cards}
        known = {str(k) for k in known_raw} & card_ids

        attempt = {
            "id": str(int(time.time() * 1000)),
            "subjectId": str(subject_id),
            "subjectName": subj.get("name") or "",
            "name": quiz.get("name") or "Quiz",
            "type": "Quiz",
            "date": date.today().isoformat(),
            "examQuestions": [],
            "examResults": [],
            "overallScore": 100.0 * len(known) / len(cards),
            "topicsToReview": [],
            "extraReadings": [],
        }
        attempt_store.append(attempt)
        print(f"[study] quiz {quiz_id} finished: {len(known)}/{len(cards)} known")
        return jsonify({"ok": True, "attempt": attempt}), 201

    # --------------------------------- explain --------------------------------
    @bp.post("/explain")
    def explain():
        data = _body()
        context: Optional[str] = data.get("context") or None
        out = _gen().explain_term(data.get("term") or "", context)
        return jsonify({"ok": True, **out, "html": str(render_rich(out["explanation"]))})

    return bp
