# analytics.py
from typing import Any, Dict, List

from flask import Blueprint, jsonify

from errors import StudyError

QUIZ_SCORE_BUCKETS = (
    ("0-59%", 0, 60),
    ("60-69%", 60, 70),
    ("70-79%", 70, 80),
    ("80-89%", 80, 90),
    ("90-100%", 90, 101),
)


def _score(attempt: Dict[str, Any]) -> float:
    try:
        return float(attempt.get("overallScore") or 0.0)
    except (TypeError, ValueError):
        return 0.0


def summarize_attempts(attempts: List[Dict[str, Any]]) -> Dict[str, Any]:
    """Performance summary over exam and quiz attempts (topic stats come from exams)."""
    exams = [a for a in attempts if a.get("type") == "Exam"]
    quizzes = [a for a in attempts if a.get("type") == "Quiz"]

    progress = sorted(
        ({"date": a.get("date"), "score": _score(a), "name": a.get("name"), "type": a.get("type")}
         for a in attempts),
        key=lambda d: str(d["date"] or ""),
    )
    average = (sum(p["score"] for p in progress) / len(progress)) if progress else 0.0
    last_date = progress[-1]["date"] if progress else None

    per_topic: Dict[str, Dict[str, int]] = {}
    for a in exams:
        for r in a.get("examResults") or []:
            topic = str(r.get("topic") or "General")
            bucket = per_topic.setdefault(topic, {"correct": 0, "total": 0})
            bucket["total"] += 1
            if r.get("isCorrect"):
                bucket["correct"] += 1
    topic_perf = [
        {"topic": t, "correct": v["correct"], "total": v["total"],
         "accuracy": (100.0 * v["correct"] / v["total"]) if v["total"] else 0.0}
        for t, v in per_topic.items()
    ]
    topic_perf.sort(key=lambda x: x["accuracy"], reverse=True)
    weak = sorted((t for t in topic_perf if t["accuracy"] < 100), key=lambda x: x["accuracy"])[:5]

    distribution = []
    for label, lo, hi in QUIZ_SCORE_BUCKETS:
        count = sum(1 for q in quizzes if lo <= _score(q) < hi)
        distribution.append({"name": label, "count": count})

    return {
        "overallAverageScore": average,
        "quizzesTaken": len(quizzes),
        "examsTaken": len(exams),
        "lastActivityDate": last_date,
        "overallScoreProgress": progress,
        "topicPerformance": topic_perf,
        "areasForImprovement": weak,
        "quizScoreDistribution": distribution if quizzes else [],
    }


def create_analytics_blueprint(base_path: str, deps: Dict[str, Any], name: str = "analytics") -> Blueprint:
    """
    Registers:
      - GET "/analytics"                          -> all subjects
      - GET "/subjects/<subject_id>/analytics"    -> one subject
    Required deps: attempt_store
    """
    bp = Blueprint(name, __name__, url_prefix=base_path or None)
    attempt_store = deps["attempt_store"]

    @bp.errorhandler(StudyError)
    def _study_error(e: StudyError):
        return jsonify(e.to_dict()), e.status

    @bp.get("/analytics")
    def analytics_all():
        return jsonify({"ok": True, "summary": summarize_attempts(attempt_store.list_all())})

    @bp.get("/subjects/<subject_id>/analytics")
    def analytics_subject(subject_id: str):
        rows = attempt_store.list_by_subject(subject_id)
        return jsonify({"ok": True, "subjectId": subject_id, "summary": summarize_attempts(rows)})

    return bp


__all__ = ["summarize_attempts", "create_analytics_blueprint"]
