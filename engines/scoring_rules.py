"""
Scoring Rules Engine

Resolves the marking rule for one question with the hierarchy
question-specific → exam default → system default (+4 / −1), and scores a
single answer against it. Resolved rules are cached per (exam, question).
"""

import math
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Dict, Hashable, Tuple

SYSTEM_POSITIVE_MARKS = 4.0
SYSTEM_NEGATIVE_MARKS = 1.0
NUMERICAL_TOLERANCE = 0.01
DEFAULT_CACHE_SIZE = 1024


@dataclass(frozen=True)
class ScoringRule:
    positive_marks: float
    negative_marks: float
    partial_marking_rules: Dict[str, Any] = field(default_factory=dict)
    source: str = "system"  # question | exam | system


@dataclass(frozen=True)
class QuestionScore:
    marks: float
    status: str  # correct | incorrect | unattempted | partially_correct


def is_unattempted(answer: Any) -> bool:
    return answer is None or answer == "" or answer == [] or answer == ()


def _norm(value: Any) -> str:
    return str(value).strip().upper()


def _as_set(value: Any) -> set:
    if isinstance(value, (list, tuple, set)):
        return {_norm(v) for v in value if not is_unattempted(v)}
    if isinstance(value, str) and "," in value:
        return {_norm(v) for v in value.split(",") if v.strip()}
    return {_norm(value)}


def _numeric_equal(a: Any, b: Any) -> bool:
    try:
        return math.isclose(float(a), float(b), abs_tol=NUMERICAL_TOLERANCE)
    except (TypeError, ValueError):
        return False


class ScoringRulesEngine:

    def __init__(self, cache_size: int = DEFAULT_CACHE_SIZE):
        self.cache_size = cache_size
        self._cache: "OrderedDict[Tuple[Hashable, Hashable], ScoringRule]" = OrderedDict()

    def clear_cache(self):
        self._cache.clear()

    def resolve_rule(self, exam, question) -> ScoringRule:
        key = (getattr(exam, "id", None), getattr(question, "id", None))
        cached = self._cache.get(key)
        if cached is not None:
            self._cache.move_to_end(key)
            return cached

        rule = self._build_rule(exam, question)
        self._cache[key] = rule
        if len(self._cache) > self.cache_size:
            self._cache.popitem(last=False)
        return rule

    @staticmethod
    def _build_rule(exam, question) -> ScoringRule:
        q_pos, q_neg = getattr(question, "marks", None), getattr(question, "negative_marks", None)
        e_pos, e_neg = getattr(exam, "positive_marks", None), getattr(exam, "negative_marks", None)

        if q_pos is not None:
            positive, source = float(q_pos), "question"
        elif e_pos is not None:
            positive, source = float(e_pos), "exam"
        else:
            positive, source = SYSTEM_POSITIVE_MARKS, "system"

        if q_neg is not None:
            negative = float(q_neg)
        elif e_neg is not None:
            negative = float(e_neg)
        else:
            negative = SYSTEM_NEGATIVE_MARKS

        partial = {}
        if getattr(question, "is_multiple_answer", False) and getattr(question, "partial_marking", False):
            partial = {"enabled": True, "mode": "proportional"}
        return ScoringRule(positive_marks=positive, negative_marks=abs(negative),
                           partial_marking_rules=partial, source=source)

    def score_question(self, exam, question, answer: Any) -> QuestionScore:
        if is_unattempted(answer):
            return QuestionScore(marks=0.0, status="unattempted")

        rule = self.resolve_rule(exam, question)
        correct = question.correct_answer

        if getattr(question, "is_multiple_answer", False):
            return self._score_multiple(rule, _as_set(answer), _as_set(correct))

        if isinstance(correct, (list, tuple)):
            correct = correct[0] if len(correct) == 1 else correct
        if getattr(question, "question_type", "MCQ") == "NUMERICAL":
            matched = _numeric_equal(answer, correct)
        elif isinstance(correct, (list, tuple)):
            matched = _norm(answer) in _as_set(correct)
        else:
            matched = _norm(answer) == _norm(correct)

        if matched:
            return QuestionScore(marks=rule.positive_marks, status="correct")
        return QuestionScore(marks=-rule.negative_marks, status="incorrect")

    @staticmethod
    def _score_multiple(rule: ScoringRule, selected: set, correct: set) -> QuestionScore:
        if selected == correct:
            return QuestionScore(marks=rule.positive_marks, status="correct")
        if selected and selected < correct and rule.partial_marking_rules.get("enabled"):
            marks = math.floor(rule.positive_marks * len(selected) / len(correct))
            return QuestionScore(marks=float(marks), status="partially_correct")
        return QuestionScore(marks=-rule.negative_marks, status="incorrect")
