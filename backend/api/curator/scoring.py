"""
Relevance scorer: 0-100 interview-relevance rating from content heuristics.

Pure: reads only the item's text and metadata fields. Timestamps, status and
any previously stored score never influence the result.
"""

from __future__ import annotations

import re
from typing import Dict

from curator.models import ContentItem, ScoreResult

BASE_SCORE = 50

ANSWER_MIN_CHARS = 20
ANSWER_MAX_CHARS = 300
EXPLANATION_DEPTH_CHARS = 100
QUESTION_MIN_CHARS = 15

VALID_DIFFICULTIES = ("beginner", "intermediate", "advanced")

WEIGHTS: Dict[str, int] = {
    "well_formed_question": 5,
    "question_too_short": -20,
    "concrete_example": 10,
    "code_present": 15,
    "answer_missing": -30,
    "answer_length_out_of_range": -15,
    "explanation_depth": 10,
    "diagram_present": 5,
    "tagged": 5,
    "company_signal": 5,
    "company_signal_strong": 10,
    "difficulty_set": 5,
    "difficulty_missing": -5,
}

_EXAMPLE_RE = re.compile(
    r"\b(for example|for instance|such as|consider|imagine|suppose)\b|\be\.g\.",
    re.IGNORECASE,
)

_CODE_RE = re.compile(
    r"```"
    r"|`[^`\n]+`"
    r"|^\s*(def|class|function|const|let|import|public|private|SELECT|INSERT|UPDATE)\b"
    r"|=>|\(\)\s*\{",
    re.MULTILINE,
)


def _has_example(*texts: str) -> bool:
    return any(t and _EXAMPLE_RE.search(t) for t in texts)


def _has_code(*texts: str) -> bool:
    return any(t and _CODE_RE.search(t) for t in texts)


def score(item: ContentItem) -> ScoreResult:
    """
    Scores an item and names every heuristic that moved the score.

    details maps heuristic name -> points contributed (negative for penalties).
    """
    details: Dict[str, int] = {}

    question = (item.question or "").strip()
    answer = (item.answer or "").strip()
    explanation = (item.explanation or "").strip()

    if len(question) < QUESTION_MIN_CHARS:
        details["question_too_short"] = WEIGHTS["question_too_short"]
    elif question.endswith("?"):
        details["well_formed_question"] = WEIGHTS["well_formed_question"]

    if not answer:
        details["answer_missing"] = WEIGHTS["answer_missing"]
    elif len(answer) < ANSWER_MIN_CHARS or len(answer) > ANSWER_MAX_CHARS:
        details["answer_length_out_of_range"] = WEIGHTS["answer_length_out_of_range"]

    if _has_example(answer, explanation):
        details["concrete_example"] = WEIGHTS["concrete_example"]

    if _has_code(answer, explanation, item.diagram or ""):
        details["code_present"] = WEIGHTS["code_present"]

    if len(explanation) >= EXPLANATION_DEPTH_CHARS:
        details["explanation_depth"] = WEIGHTS["explanation_depth"]

    if item.diagram and item.diagram.strip():
        details["diagram_present"] = WEIGHTS["diagram_present"]

    if item.tags:
        details["tagged"] = WEIGHTS["tagged"]

    if len(item.companies) >= 3:
        details["company_signal_strong"] = WEIGHTS["company_signal_strong"]
    elif item.companies:
        details["company_signal"] = WEIGHTS["company_signal"]

    if (item.difficulty or "").strip().lower() in VALID_DIFFICULTIES:
        details["difficulty_set"] = WEIGHTS["difficulty_set"]
    else:
        details["difficulty_missing"] = WEIGHTS["difficulty_missing"]

    total = BASE_SCORE + sum(details.values())
    return ScoreResult(score=max(0, min(100, total)), details=details)


def passes_gate(result: ScoreResult, min_score: int) -> bool:
    return result.score >= min_score
