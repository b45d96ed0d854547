# generation.py
# -----------------------------------------------------------------------------
# LLM-backed generation service (OpenAI chat completions, JSON mode).
# - Exams: generate, grade (per-position verdicts merged locally), readings
# - Study aids: notes, flashcard quizzes, term explanations
# - Every call has an explicit timeout; failures map to GenerationFailure
# - BYOK: with_api_key() returns the same service bound to a caller's key
# -----------------------------------------------------------------------------

import json
import os
import re
from typing import Any, Dict, List, Optional

import requests

from errors import GenerationFailure, GenerationTimeout, ValidationError

QUESTION_TYPES = ("multiple_choice", "true_false", "short_answer")
DIFFICULTIES = ("Easy", "Medium", "Hard")
NO_ARTICLES_PLACEHOLDER = "No Relevant Articles Found"

MAX_QUIZ_LENGTH = 20
MATERIAL_CHAR_CAP = 60000


def _norm_type(value: Any) -> str:
    return re.sub(r"[\s\-]+", "_", str(value or "").strip().lower())


def normalize_question(raw: Any, position: int) -> Dict[str, Any]:
    """Validate one generated question; raises GenerationFailure on schema violations."""
    if not isinstance(raw, dict):
        raise GenerationFailure(f"Q{position}: not an object")
    text = str(raw.get("question") or "").strip()
    if not text:
        raise GenerationFailure(f"Q{position}: missing question text")
    q_type = _norm_type(raw.get("type"))
    if q_type not in QUESTION_TYPES:
        raise GenerationFailure(f"Q{position}: unknown type '{raw.get('type')}'")
    correct = str(raw.get("correctAnswer") if raw.get("correctAnswer") is not None else "").strip()
    topic = str(raw.get("topic") or "").strip() or "General"

    q: Dict[str, Any] = {"question": text, "type": q_type}
    if q_type == "multiple_choice":
        opts = raw.get("options")
        if not isinstance(opts, list):
            raise GenerationFailure(f"Q{position}: multiple_choice without options")
        options = [str(o).strip() for o in opts if str(o).strip()]
        if len(options) < 2:
            raise GenerationFailure(f"Q{position}: multiple_choice needs at least two options")
        if correct not in options:
            raise GenerationFailure(f"Q{position}: correctAnswer is not one of the options")
        q["options"] = options
    elif q_type == "true_false":
        if correct.lower() not in ("true", "false"):
            raise GenerationFailure(f"Q{position}: true_false answer must be True or False")
        correct = correct.capitalize()
    q["correctAnswer"] = correct
    q["topic"] = topic
    return q


def _unique(labels: Any) -> List[str]:
    out: List[str] = []
    seen = set()
    for label in labels or []:
        s = str(label or "").strip()
        if s and s not in seen:
            out.append(s)
            seen.add(s)
    return out


def _verdicts_by_index(verdicts: List[Any]) -> Dict[int, bool]:
    """Map grader verdicts to question positions.

    Without any "index" keys the list order is used. With them, the indices
    must cover 0..n-1 exactly once; anything else (1-based, repeated,
    skipped, mixed) would shift verdicts onto the wrong questions.
    """
    n = len(verdicts)
    raw = [v.get("index") if isinstance(v, dict) else None for v in verdicts]
    flags = [bool(v.get("isCorrect")) if isinstance(v, dict) else bool(v) for v in verdicts]
    if all(i is None for i in raw):
        return dict(enumerate(flags))
    try:
        indices = [int(i) for i in raw]
    except (TypeError, ValueError):
        raise GenerationFailure("Grader returned verdicts with missing or non-numeric indices.")
    if sorted(indices) != list(range(n)):
        raise GenerationFailure(f"Grader verdict indices {indices} do not match questions 0..{n - 1}.")
    return dict(zip(indices, flags))


def clean_readings(items: Any) -> List[Dict[str, str]]:
    out: List[Dict[str, str]] = []
    for it in items or []:
        if not isinstance(it, dict):
            continue
        title = str(it.get("title") or "").strip()
        url = str(it.get("url") or "").strip()
        if not title or title == NO_ARTICLES_PLACEHOLDER:
            continue
        if not url.lower().startswith(("http://", "https://")):
            continue
        out.append({"title": title, "url": url})
    return out


class GenerationService:
    """Request/response contract to the hosted model. One instance per credential."""

    def __init__(self,
                 api_key: str,
                 base_url: str = "https://api.openai.com/v1",
                 exam_model: str = "gpt-4o-mini",
                 grader_model: str = "gpt-4o-mini",
                 study_model: str = "gpt-4o-mini",
                 timeout: float = 90.0):
        self.api_key = (api_key or "").strip()
        self.base_url = (base_url or "https://api.openai.com/v1").rstrip("/")
        self.exam_model = exam_model
        self.grader_model = grader_model
        self.study_model = study_model
        self.timeout = float(timeout)

    @classmethod
    def from_env(cls) -> "GenerationService":
        return cls(
            api_key=(os.getenv("OPENAI_API_KEY") or "").strip(),
            base_url=(os.getenv("OPENAI_BASE_URL") or "https://api.openai.com/v1").strip(),
            exam_model=(os.getenv("OPENAI_EXAM_MODEL") or "gpt-4o-mini").strip(),
            grader_model=(os.getenv("OPENAI_GRADER_MODEL") or "gpt-4o-mini").strip(),
            study_model=(os.getenv("OPENAI_STUDY_MODEL") or "gpt-4o-mini").strip(),
            timeout=float(os.getenv("GENERATION_TIMEOUT_SEC") or 90),
        )

    def with_api_key(self, api_key: str) -> "GenerationService":
        return GenerationService(api_key, self.base_url, self.exam_model, self.grader_model,
                                 self.study_model, self.timeout)

    # ------------------------------- transport --------------------------------
    def _chat_json(self, messages: List[Dict[str, str]], model: str, temperature: float, max_tokens: int) -> Dict[str, Any]:
        if not self.api_key:
            raise GenerationFailure("OPENAI_API_KEY is not set.")
        try:
            r = requests.post(
                f"{self.base_url}/chat/completions",
                headers={"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"},
                json={
                    "model": model,
                    "messages": messages,
                    "temperature": temperature,
                    "max_tokens": max_tokens,
                    "response_format": {"type": "json_object"},
                },
                timeout=self.timeout,
            )
        except requests.Timeout as e:
            print(f"[generation] {model} timed out after {self.timeout}s")
            raise GenerationTimeout(f"The model did not answer within {self.timeout:g}s.") from e
        except requests.RequestException as e:
            print(f"[generation] {model} unreachable: {e}")
            raise GenerationFailure(f"Generation service unavailable: {e}") from e

        if r.status_code >= 400:
            print(f"[generation] {model} HTTP {r.status_code}: {r.text[:300]}")
            raise GenerationFailure(f"Generation service returned HTTP {r.status_code}.")
        try:
            content = (r.json()["choices"][0]["message"]["content"] or "").strip()
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise GenerationFailure("Generation service returned an unexpected payload.") from e

        try:
            data = json.loads(content)
        except ValueError:
            m = re.search(r"```(?:json)?\s*(\{.*?\})\s*```", content, re.DOTALL)
            try:
                data = json.loads(m.group(1) if m else content)
            except ValueError as e:
                raise GenerationFailure("Model output was not valid JSON.") from e
        if not isinstance(data, dict):
            raise GenerationFailure("Model output was not a JSON object.")
        return data

    # --------------------------------- exams ----------------------------------
    def generate_exam(self, course_material: str, question_count: int) -> List[Dict[str, Any]]:
        material = (course_material or "").strip()
        if not material:
            raise ValidationError("Course material is required.")
        if int(question_count) < 1:
            raise ValidationError("Question count must be at least 1.")

        sys = (
            "You are an exam generator. Create ONLY JSON. Questions MUST be answerable from the "
            "provided course material. Mix multiple_choice, true_false and short_answer questions."
        )
        usr = f"""
COURSE MATERIAL:
---
{material[:MATERIAL_CHAR_CAP]}
---

REQUIREMENTS:
- Exactly {int(question_count)} questions.
- Each item:
  {{
    "question": "text",
    "type": "multiple_choice" | "true_false" | "short_answer",
    "options": ["A", "B", "C", "D"],   (multiple_choice only)
    "correctAnswer": "for multiple_choice: one of options verbatim; for true_false: True or False",
    "topic": "short topic label, e.g. Calculus"
  }}

Return ONLY JSON: {{"exam": [ ... ]}}
"""
        data = self._chat_json(
            [{"role": "system", "content": sys}, {"role": "user", "content": usr}],
            model=self.exam_model, temperature=0.3, max_tokens=6000,
        )
        raw = data.get("exam")
        if raw is None:
            raw = data.get("questions")
        if not isinstance(raw, list):
            raise GenerationFailure("Model output has no exam list.")
        return [normalize_question(q, i) for i, q in enumerate(raw[:int(question_count)], start=1)]

    def grade_exam(self, course_material: str, questions: List[Dict[str, Any]], answers: List[str]) -> Dict[str, Any]:
        """Returns {"results": [...], "topicsToReview": [...]}, results aligned with questions."""
        if len(answers) != len(questions):
            raise ValidationError("Answers must align with questions.")
        if not questions:
            return {"results": [], "topicsToReview": []}

        listing = []
        for i, (q, a) in enumerate(zip(questions, answers)):
            listing.append({
                "index": i,
                "question": q.get("question"),
                "type": q.get("type"),
                "options": q.get("options"),
                "correctAnswer": q.get("correctAnswer"),
                "topic": q.get("topic"),
                "userAnswer": a,
            })
        sys = (
            "You are a fair exam grader. For each item decide whether userAnswer is correct. "
            "multiple_choice and true_false must match correctAnswer; short_answer is correct when it "
            "conveys the same meaning. An empty userAnswer is incorrect. "
            "Return JSON {\"verdicts\": [{\"index\": n, \"isCorrect\": bool}], \"topicsToReview\": [\"topic\"]}."
        )
        usr = f"""
COURSE MATERIAL:
---
{(course_material or '').strip()[:MATERIAL_CHAR_CAP]}
---

ITEMS:
{json.dumps(listing, ensure_ascii=False)}

List in topicsToReview the topics of the questions answered incorrectly.
"""
        data = self._chat_json(
            [{"role": "system", "content": sys}, {"role": "user", "content": usr}],
            model=self.grader_model, temperature=0.0, max_tokens=3000,
        )
        verdicts = data.get("verdicts")
        if not isinstance(verdicts, list) or len(verdicts) != len(questions):
            raise GenerationFailure("Grader returned a verdict list that does not match the exam.")

        by_index = _verdicts_by_index(verdicts)

        results: List[Dict[str, Any]] = []
        for i, (q, a) in enumerate(zip(questions, answers)):
            user_answer = str(a or "")
            correct_answer = str(q.get("correctAnswer") or "")
            if not user_answer.strip():
                is_correct = not correct_answer.strip()
            else:
                is_correct = by_index.get(i, False)
            results.append({
                "question": q.get("question"),
                "type": q.get("type"),
                "topic": q.get("topic"),
                "userAnswer": user_answer,
                "correctAnswer": correct_answer,
                "isCorrect": is_correct,
            })

        topics = data.get("topicsToReview")
        if not isinstance(topics, list):
            topics = [r["topic"] for r in results if not r["isCorrect"]]
        return {"results": results, "topicsToReview": _unique(topics)}

    def find_readings(self, topic: str) -> List[Dict[str, str]]:
        t = (topic or "").strip()
        if not t:
            raise ValidationError("Topic is required.")
        sys = (
            "You recommend reputable, freely accessible articles for a study topic. "
            "Return JSON {\"articles\": [{\"title\": \"...\", \"url\": \"https://...\"}]}. "
            "If nothing relevant exists return an empty list."
        )
        data = self._chat_json(
            [{"role": "system", "content": sys}, {"role": "user", "content": f"TOPIC: {t}"}],
            model=self.study_model, temperature=0.2, max_tokens=800,
        )
        return clean_readings(data.get("articles"))

    # ------------------------------ study aids --------------------------------
    def generate_notes(self, material: str, source_name: Optional[str] = None) -> str:
        text = (material or "").strip()
        if not text:
            raise ValidationError("Material is required.")
        sys = (
            "You turn course material into comprehensive, well-structured study notes in Markdown "
            "(headings, bullet points, key terms in bold, short summaries). Return JSON {\"notes\": \"markdown\"}."
        )
        src = f"SOURCE: {source_name}\n\n" if source_name else ""
        data = self._chat_json(
            [{"role": "system", "content": sys},
             {"role": "user", "content": f"{src}MATERIAL:\n---\n{text[:MATERIAL_CHAR_CAP]}\n---"}],
            model=self.study_model, temperature=0.3, max_tokens=4000,
        )
        notes = str(data.get("notes") or "").strip()
        if not notes:
            raise GenerationFailure("The model returned empty notes.")
        return notes

    def generate_quiz(self, course_material: str, quiz_length: int = 5) -> List[Dict[str, Any]]:
        text = (course_material or "").strip()
        if not text:
            raise ValidationError("Course material is required.")
        n = int(quiz_length)
        if not (1 <= n <= MAX_QUIZ_LENGTH):
            raise ValidationError(f"Quiz length must be between 1 and {MAX_QUIZ_LENGTH}.")
        sys = "You are an expert quiz generator specializing in flashcard-style questions. Return ONLY JSON."
        usr = f"""
Generate a quiz with {n} flashcards from the course material.
Each flashcard:
  {{"id": "fc-1", "question": "prompt or concept", "answer": "detailed answer with context",
    "difficulty": "Easy" | "Medium" | "Hard", "tags": ["topic"]}}

Return ONLY JSON: {{"flashcards": [ ... ]}}

COURSE MATERIAL:
---
{text[:MATERIAL_CHAR_CAP]}
---
"""
        data = self._chat_json(
            [{"role": "system", "content": sys}, {"role": "user", "content": usr}],
            model=self.study_model, temperature=0.4, max_tokens=4000,
        )
        raw = data.get("flashcards")
        if not isinstance(raw, list):
            raise GenerationFailure("The model returned invalid quiz data.")
        cards: List[Dict[str, Any]] = []
        for i, fc in enumerate(raw[:n], start=1):
            if not isinstance(fc, dict):
                continue
            question = str(fc.get("question") or "").strip()
            answer = str(fc.get("answer") or "").strip()
            if not question or not answer:
                continue
            difficulty = str(fc.get("difficulty") or "").strip().capitalize()
            tags = fc.get("tags") if isinstance(fc.get("tags"), list) else []
            cards.append({
                "id": str(fc.get("id") or f"fc-{i}"),
                "question": question,
                "answer": answer,
                "difficulty": difficulty if difficulty in DIFFICULTIES else "Medium",
                "tags": _unique(tags),
            })
        if not cards:
            raise GenerationFailure("The model returned an empty quiz. Try different material or quiz length.")
        return cards

    def explain_term(self, term: str, context: Optional[str] = None) -> Dict[str, Any]:
        t = (term or "").strip()
        if not t:
            raise ValidationError("Term is required.")
        sys = (
            "You are a helpful learning assistant. Explain the highlighted term concisely for a student. "
            "Return JSON {\"explanation\": \"...\", \"relatedLinks\": [{\"title\": \"...\", \"url\": \"https://...\"}]}; "
            "relatedLinks may be empty."
        )
        usr = f"TERM: {t}"
        if context:
            usr += f"\nCONTEXT: {context.strip()[:4000]}"
        data = self._chat_json(
            [{"role": "system", "content": sys}, {"role": "user", "content": usr}],
            model=self.study_model, temperature=0.2, max_tokens=800,
        )
        explanation = str(data.get("explanation") or "").strip()
        if not explanation:
            raise GenerationFailure("The model returned an empty explanation.")
        return {"explanation": explanation, "relatedLinks": clean_readings(data.get("relatedLinks"))[:3]}


__all__ = ["GenerationService", "normalize_question", "clean_readings", "QUESTION_TYPES"]
