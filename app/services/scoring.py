# app/services/scoring.py
import logging
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from app.core.exceptions import EvaluationUnavailable
from app.schemas.quiz import (
    SUBJECTIVE_MARKS,
    AnswerValue,
    MultipleChoiceQuestion,
    QuestionScore,
    QuizQuestion,
    ScoreSummary,
    SubjectiveQuestion,
    TrueFalseQuestion,
)

logger = logging.getLogger(__name__)

NO_ANSWER_FEEDBACK = "No answer provided"
UNGRADED_FEEDBACK = "Evaluation unavailable, retry grading later"


def letter_grade(percentage: int) -> str:
    """Letter grade for a percentage. Used by every response that shows a grade."""
    if percentage >= 100:
        return "S"
    if percentage >= 80:
        return "A"
    if percentage >= 60:
        return "B"
    if percentage >= 40:
        return "C"
    return "F"


def _as_option_index(question: MultipleChoiceQuestion, answer: Any) -> Optional[int]:
    # bool is an int subclass; True must never select option 1
    if isinstance(answer, bool):
        return None
    if isinstance(answer, int):
        return answer
    if isinstance(answer, str):
        text = answer.strip()
        if text.isdigit():
            return int(text)
        for index, option in enumerate(question.options):
            if option.strip().lower() == text.lower():
                return index
    return None


def _as_bool(answer: Any) -> Optional[bool]:
    if isinstance(answer, bool):
        return answer
    if isinstance(answer, str):
        text = answer.strip().lower()
        if text == "true":
            return True
        if text == "false":
            return False
    return None


def grade_objective(question: QuizQuestion, answer: Optional[AnswerValue]) -> bool:
    """Check an objective answer against the stored correct answer"""
    if answer is None:
        return False
    if isinstance(question, MultipleChoiceQuestion):
        return _as_option_index(question, answer) == question.correct_answer
    if isinstance(question, TrueFalseQuestion):
        return _as_bool(answer) == question.correct_answer
    raise ValueError(f"{question.question_type} is not an objective question")


def objective_score(question: QuizQuestion, answer: Optional[AnswerValue]) -> QuestionScore:
    correct = grade_objective(question, answer)
    return QuestionScore(
        correct=correct,
        marks_awarded=question.max_marks if correct else 0,
        max_marks=question.max_marks,
    )


def ungraded_score(question: QuizQuestion) -> QuestionScore:
    return QuestionScore(
        correct=False,
        marks_awarded=0,
        max_marks=question.max_marks,
        feedback=UNGRADED_FEEDBACK,
        ungraded=True,
    )


def _round_half_up(value: float) -> int:
    return int(value + 0.5)


def aggregate(
    questions: Sequence[QuizQuestion], results: Mapping[str, QuestionScore]
) -> ScoreSummary:
    """
    Combine per-question results into one normalized score.

    max_marks counts every question in the deck, answered or not, so a missing
    result contributes zero marks rather than shrinking the denominator.
    """
    max_marks = sum(q.max_marks for q in questions)
    total_marks = 0
    for question in questions:
        result = results.get(question.question_id)
        if result is not None:
            total_marks += min(result.marks_awarded, question.max_marks)

    percentage = _round_half_up(100 * total_marks / max_marks) if max_marks else 0
    return ScoreSummary(
        total_marks=total_marks,
        max_marks=max_marks,
        percentage=percentage,
        grade=letter_grade(percentage),
    )


class ScoringService:
    """Grades a deck. Subjective answers go through the injected evaluator."""

    def __init__(self, evaluator):
        self.evaluator = evaluator

    async def grade_subjective(
        self, question: SubjectiveQuestion, answer: Optional[AnswerValue]
    ) -> QuestionScore:
        text = answer.strip() if isinstance(answer, str) else ""
        if not text:
            # Empty answers never reach the evaluator
            return QuestionScore(
                correct=False,
                marks_awarded=0,
                max_marks=SUBJECTIVE_MARKS,
                feedback=NO_ANSWER_FEEDBACK,
            )

        try:
            evaluation = await self.evaluator.evaluate_answer(
                question.prompt, text, question.suggested_answer
            )
        except EvaluationUnavailable:
            raise
        except Exception as e:
            logger.warning(
                f"Evaluator failed for question {question.question_id[:8]}: {e}"
            )
            raise EvaluationUnavailable(
                "Subjective evaluation is unavailable",
                question_id=question.question_id,
            ) from e

        marks = int(evaluation.get("marks") or 0)
        marks = max(0, min(SUBJECTIVE_MARKS, marks))
        return QuestionScore(
            correct=bool(evaluation.get("correct")),
            marks_awarded=marks,
            max_marks=SUBJECTIVE_MARKS,
            feedback=evaluation.get("feedback"),
        )

    async def grade_question(
        self, question: QuizQuestion, answer: Optional[AnswerValue]
    ) -> QuestionScore:
        if question.kind == "subjective":
            return await self.grade_subjective(question, answer)
        return objective_score(question, answer)

    async def grade_attempt(
        self,
        questions: Sequence[QuizQuestion],
        answers: Mapping[str, AnswerValue],
    ) -> Tuple[Dict[str, QuestionScore], List[str]]:
        """
        Grade every question of a deck.

        Returns (scores, ungraded_ids). A subjective question whose evaluation
        fails is stored as ungraded with zero marks instead of failing the whole
        submission. Any other error propagates.
        """
        scores: Dict[str, QuestionScore] = {}
        ungraded: List[str] = []

        for question in questions:
            answer = answers.get(question.question_id)
            try:
                scores[question.question_id] = await self.grade_question(
                    question, answer
                )
            except EvaluationUnavailable:
                scores[question.question_id] = ungraded_score(question)
                ungraded.append(question.question_id)

        if ungraded:
            logger.warning(f"⚠️ {len(ungraded)} subjective question(s) left ungraded")
        return scores, ungraded
