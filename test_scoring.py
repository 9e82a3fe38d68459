"""
Tests for objective checking, subjective grading and score aggregation
"""

import asyncio

import pytest

from app.core.exceptions import EvaluationUnavailable
from app.schemas.quiz import (
    MultipleChoiceQuestion,
    QuestionScore,
    SubjectiveQuestion,
    TrueFalseQuestion,
)
from app.services.scoring import (
    NO_ANSWER_FEEDBACK,
    ScoringService,
    aggregate,
    grade_objective,
    letter_grade,
)
from app.utils.ai import marks_from_score
from conftest import LESSON, FakeEvaluator

MCQ = MultipleChoiceQuestion(
    question_id="mcq",
    scope=LESSON,
    prompt="Which organelle produces ATP?",
    options=["Nucleus", "Mitochondria", "Ribosome", "Golgi"],
    correct_answer=1,
)
TFQ = TrueFalseQuestion(
    question_id="tf", scope=LESSON, prompt="Cells have membranes", correct_answer=True
)
SUBJ = SubjectiveQuestion(
    question_id="subj",
    scope=LESSON,
    prompt="Explain osmosis",
    suggested_answer="Movement of water across a membrane",
)


@pytest.mark.parametrize(
    "percentage, grade",
    [(100, "S"), (99, "A"), (80, "A"), (79, "B"), (60, "B"), (59, "C"), (40, "C"), (39, "F"), (0, "F")],
)
def test_letter_grade_bands(percentage, grade):
    assert letter_grade(percentage) == grade


def test_multiple_choice_accepts_index_digit_string_and_option_text():
    assert grade_objective(MCQ, 1) is True
    assert grade_objective(MCQ, "1") is True
    assert grade_objective(MCQ, "  mitochondria ") is True
    assert grade_objective(MCQ, 0) is False
    assert grade_objective(MCQ, "Nucleus") is False
    assert grade_objective(MCQ, None) is False


def test_multiple_choice_never_matches_a_boolean():
    assert grade_objective(MCQ, True) is False


def test_true_false_accepts_booleans_and_strings():
    assert grade_objective(TFQ, True) is True
    assert grade_objective(TFQ, "TRUE") is True
    assert grade_objective(TFQ, "false") is False
    assert grade_objective(TFQ, 1) is False


def test_grade_objective_rejects_subjective_questions():
    with pytest.raises(ValueError):
        grade_objective(SUBJ, "anything")


def test_aggregate_mixed_deck():
    # Three objective (two right) plus one subjective worth 3 of 4 marks
    questions = [
        MCQ,
        TFQ,
        TrueFalseQuestion(question_id="tf2", scope=LESSON, prompt="x", correct_answer=False),
        SUBJ,
    ]
    results = {
        "mcq": QuestionScore(correct=True, marks_awarded=1, max_marks=1),
        "tf": QuestionScore(correct=True, marks_awarded=1, max_marks=1),
        "tf2": QuestionScore(correct=False, marks_awarded=0, max_marks=1),
        "subj": QuestionScore(correct=True, marks_awarded=3, max_marks=4),
    }

    summary = aggregate(questions, results)

    assert summary.total_marks == 5
    assert summary.max_marks == 7
    assert summary.percentage == 71
    assert summary.grade == "B"


def test_aggregate_rounds_half_up():
    questions = [
        MultipleChoiceQuestion(
            question_id=f"q{i}", scope=LESSON, prompt=f"q{i}", options=["a", "b"], correct_answer=0
        )
        for i in range(8)
    ]
    results = {
        f"q{i}": QuestionScore(correct=True, marks_awarded=1, max_marks=1) for i in range(5)
    }

    # 5/8 = 62.5%
    assert aggregate(questions, results).percentage == 63


def test_aggregate_counts_missing_results_as_zero():
    summary = aggregate([MCQ, TFQ], {"mcq": QuestionScore(correct=True, marks_awarded=1, max_marks=1)})

    assert summary.total_marks == 1
    assert summary.max_marks == 2
    assert summary.percentage == 50


def test_aggregate_of_empty_deck():
    summary = aggregate([], {})

    assert summary.percentage == 0
    assert summary.grade == "F"


@pytest.mark.parametrize("answer", [None, "", "   \n"])
def test_empty_subjective_answer_skips_evaluator(answer):
    evaluator = FakeEvaluator()
    scoring = ScoringService(evaluator)

    score = asyncio.run(scoring.grade_subjective(SUBJ, answer))

    assert evaluator.calls == []
    assert score.correct is False
    assert score.marks_awarded == 0
    assert score.feedback == NO_ANSWER_FEEDBACK


def test_subjective_marks_are_clamped():
    scoring = ScoringService(FakeEvaluator(marks=9))
    assert asyncio.run(scoring.grade_subjective(SUBJ, "water moves")).marks_awarded == 4

    scoring = ScoringService(FakeEvaluator(marks=-2))
    assert asyncio.run(scoring.grade_subjective(SUBJ, "water moves")).marks_awarded == 0


def test_evaluator_errors_become_evaluation_unavailable():
    class BrokenEvaluator:
        async def evaluate_answer(self, prompt, user_answer, reference_answer=None):
            raise RuntimeError("connection reset")

    scoring = ScoringService(BrokenEvaluator())

    with pytest.raises(EvaluationUnavailable):
        asyncio.run(scoring.grade_subjective(SUBJ, "water moves"))


def test_grade_attempt_marks_failed_subjective_as_ungraded():
    scoring = ScoringService(FakeEvaluator(fail=True))

    scores, ungraded = asyncio.run(
        scoring.grade_attempt([MCQ, SUBJ], {"mcq": 1, "subj": "water moves"})
    )

    assert ungraded == ["subj"]
    assert scores["subj"].ungraded is True
    assert scores["subj"].marks_awarded == 0
    assert scores["mcq"].marks_awarded == 1


@pytest.mark.parametrize(
    "score, marks", [(1.0, 4), (0.9, 4), (0.75, 3), (0.7, 3), (0.5, 2), (0.49, 0), (0.0, 0)]
)
def test_evaluator_score_banding(score, marks):
    assert marks_from_score(score) == marks
