"""
Unit Tests for the Scoring Rules Engine and traditional computation
"""

from types import SimpleNamespace

import pytest

from engines.scoring_rules import ScoringRulesEngine
from engines.traditional import score_exam


def _exam(id=1, positive=None, negative=None, total=None):
    return SimpleNamespace(id=id, positive_marks=positive, negative_marks=negative, total_marks=total)


def _question(id=1, correct="A", marks=None, negative=None, multiple=False, partial=False,
              qtype="MCQ", subject="Physics"):
    return SimpleNamespace(id=id, correct_answer=correct, marks=marks, negative_marks=negative,
                           is_multiple_answer=multiple, partial_marking=partial,
                           question_type=qtype, subject=subject)


class TestResolveRule:

    def test_resolve_rule_when_nothing_configured_then_system_default(self):
        rule = ScoringRulesEngine().resolve_rule(_exam(), _question())
        assert (rule.positive_marks, rule.negative_marks, rule.source) == (4.0, 1.0, "system")

    def test_resolve_rule_when_exam_default_then_used(self):
        rule = ScoringRulesEngine().resolve_rule(_exam(positive=3, negative=0.5), _question())
        assert (rule.positive_marks, rule.negative_marks, rule.source) == (3.0, 0.5, "exam")

    def test_resolve_rule_when_question_specific_then_overrides_exam(self):
        rule = ScoringRulesEngine().resolve_rule(_exam(positive=3, negative=1), _question(marks=5, negative=2))
        assert (rule.positive_marks, rule.negative_marks, rule.source) == (5.0, 2.0, "question")

    def test_resolve_rule_when_cache_full_then_oldest_evicted(self):
        engine = ScoringRulesEngine(cache_size=2)
        exam = _exam()
        for qid in range(3):
            engine.resolve_rule(exam, _question(id=qid))
        assert list(engine._cache) == [(1, 1), (1, 2)]


class TestScoreQuestion:

    @pytest.mark.parametrize("answer,marks,status", [
        ("A", 4.0, "correct"),
        (" a ", 4.0, "correct"),
        ("B", -1.0, "incorrect"),
        (None, 0.0, "unattempted"),
        ("", 0.0, "unattempted"),
    ])
    def test_score_question_when_single_answer_then_marked(self, answer, marks, status):
        score = ScoringRulesEngine().score_question(_exam(), _question(), answer)
        assert (score.marks, score.status) == (marks, status)

    def test_score_question_when_numerical_within_tolerance_then_correct(self):
        q = _question(correct="3.14", qtype="NUMERICAL")
        assert ScoringRulesEngine().score_question(_exam(), q, "3.145").status == "correct"

    def test_score_question_when_partial_subset_then_floor_proportional(self):
        q = _question(correct=["A", "C", "D"], multiple=True, partial=True)
        score = ScoringRulesEngine().score_question(_exam(), q, ["A", "C"])
        assert (score.marks, score.status) == (2.0, "partially_correct")

    def test_score_question_when_wrong_option_in_multi_then_negative(self):
        q = _question(correct=["A", "C"], multiple=True, partial=True)
        score = ScoringRulesEngine().score_question(_exam(), q, ["A", "B"])
        assert (score.marks, score.status) == (-1.0, "incorrect")

    def test_score_question_when_multi_exact_then_full_marks(self):
        q = _question(correct=["A", "C"], multiple=True)
        assert ScoringRulesEngine().score_question(_exam(), q, ["C", "A"]).marks == 4.0


class TestScoreExam:

    def test_score_exam_when_mixed_answers_then_counts_and_subjects(self):
        questions = [_question(id=1), _question(id=2, subject="Chemistry"), _question(id=3)]
        scored = score_exam(ScoringRulesEngine(), _exam(), questions, {"1": "A", "2": "D"})

        assert scored.score == 3.0
        assert scored.total_marks == 12.0
        assert (scored.correct_answers, scored.incorrect_answers, scored.unattempted) == (1, 1, 1)
        physics = next(s for s in scored.subject_performance if s["subject"] == "Physics")
        assert physics == {"subject": "Physics", "total": 2, "correct": 1, "incorrect": 0,
                           "unattempted": 1, "score": 4.0}

    def test_score_exam_when_exam_total_configured_then_used(self):
        scored = score_exam(ScoringRulesEngine(), _exam(total=10), [_question()], {"1": "A"})
        assert scored.total_marks == 10.0
