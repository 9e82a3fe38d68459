"""
Shared pytest fixtures.

Settings are read from the environment at import time, so the SQLite test
database is configured here before anything under ``app`` is imported.
"""

import os
import tempfile
from datetime import datetime, timedelta, timezone

_TEST_DIR = tempfile.mkdtemp(prefix="quiz-arena-tests-")
os.environ["DB_CONNECTION"] = "sqlite"
os.environ["DB_DATABASE"] = os.path.join(_TEST_DIR, "test.db")
os.environ["LOG_FILE"] = os.path.join(_TEST_DIR, "app.log")
os.environ["CHALLENGE_SWEEP_ENABLED"] = "false"
os.environ["CHALLENGE_TIME_TIEBREAK"] = "false"
os.environ["DEBUG"] = "false"
os.environ["AI_API_KEY"] = ""
os.environ["AI_API_ENDPOINT"] = ""

import pytest

from app.core.database import Base, SessionLocal, engine
from app.core.exceptions import EvaluationUnavailable
from app.models import *  # noqa: F401,F403
from app.schemas.quiz import (
    KindSplit,
    MultipleChoiceQuestion,
    QuizScope,
    SubjectiveQuestion,
    TrueFalseQuestion,
)
from app.services.challenge import ChallengeService
from app.services.notification import NotificationService
from app.services.question_pool import QuestionPoolService, make_question_id
from app.services.scoring import ScoringService
from app.services.wallet import WalletService

LESSON = QuizScope(course_id=7, quiz_type="lesson", module_index=1, lesson_index=2)
OTHER_LESSON = QuizScope(course_id=7, quiz_type="lesson", module_index=1, lesson_index=3)
MODULE = QuizScope(course_id=7, quiz_type="module", module_index=1)
COURSE = QuizScope(course_id=7, quiz_type="course")


class FakeClock:
    def __init__(self, start: datetime = None):
        self.now = start or datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeGenerator:
    """Content generator returning numbered questions. Answers: option 0 / True."""

    def __init__(self, shortfall: int = 0, error: Exception = None):
        self.calls = []
        self.shortfall = shortfall
        self.error = error
        self._serial = 0

    def _next_prompt(self, label: str) -> str:
        self._serial += 1
        return f"{label} question number {self._serial}"

    async def generate_questions(self, scope, count, kind_split=None, topic=None):
        self.calls.append((scope, count, kind_split, topic))
        if self.error is not None:
            raise self.error

        kind_split = kind_split or KindSplit(objective=count)
        questions = []
        for i in range(kind_split.objective):
            if i % 2 == 0:
                prompt = self._next_prompt("Multiple choice")
                questions.append(
                    MultipleChoiceQuestion(
                        question_id=make_question_id(scope.scope_key, "multiple_choice", prompt),
                        scope=scope,
                        prompt=prompt,
                        options=["right", "wrong", "also wrong", "nope"],
                        correct_answer=0,
                    )
                )
            else:
                prompt = self._next_prompt("True or false")
                questions.append(
                    TrueFalseQuestion(
                        question_id=make_question_id(scope.scope_key, "true_false", prompt),
                        scope=scope,
                        prompt=prompt,
                        correct_answer=True,
                    )
                )
        for _ in range(kind_split.subjective):
            prompt = self._next_prompt("Explain")
            questions.append(
                SubjectiveQuestion(
                    question_id=make_question_id(scope.scope_key, "subjective", prompt),
                    scope=scope,
                    prompt=prompt,
                    suggested_answer="A thorough explanation",
                )
            )
        if self.shortfall:
            questions = questions[: -self.shortfall]
        return questions


class FakeEvaluator:
    """Subjective evaluator awarding a fixed number of marks"""

    def __init__(self, marks: int = 3, fail: bool = False):
        self.calls = []
        self.marks = marks
        self.fail = fail

    async def evaluate_answer(self, prompt, user_answer, reference_answer=None):
        self.calls.append((prompt, user_answer, reference_answer))
        if self.fail:
            raise EvaluationUnavailable("Evaluator is down")
        return {
            "correct": self.marks >= 2,
            "feedback": "Reasonable answer",
            "marks": self.marks,
        }


def correct_answer(question):
    if question.question_type == "multiple_choice":
        return question.correct_answer
    if question.question_type == "true_false":
        return question.correct_answer
    return "A thorough explanation of the idea"


def wrong_answer(question):
    if question.question_type == "multiple_choice":
        return 1
    if question.question_type == "true_false":
        return not question.correct_answer
    return ""


@pytest.fixture
def db():
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def generator():
    return FakeGenerator()


@pytest.fixture
def evaluator():
    return FakeEvaluator()


def build_challenge_service(session, generator, evaluator, clock, **kwargs):
    return ChallengeService(
        session,
        pool=QuestionPoolService(session, generator=generator),
        scoring=ScoringService(evaluator),
        wallet=WalletService(session),
        notifications=NotificationService(session),
        clock=clock,
        **kwargs,
    )


@pytest.fixture
def challenges(db, generator, evaluator, clock):
    return build_challenge_service(db, generator, evaluator, clock)


@pytest.fixture
def sessions(challenges):
    return challenges.sessions()
