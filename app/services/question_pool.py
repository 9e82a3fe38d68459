# app/services/question_pool.py
import asyncio
import hashlib
import logging
import random
from typing import Iterable, List, Optional, Sequence

from sqlalchemy import and_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.exceptions import (
    GenerationTimeout,
    NoQuestionsAvailable,
    StaleAttemptReference,
)
from app.models.quiz_question import QuizQuestion as QuizQuestionModel
from app.schemas.quiz import (
    KindSplit,
    QuizQuestion,
    QuizScope,
    question_from_record,
)

logger = logging.getLogger(__name__)


def normalize_prompt(prompt: str) -> str:
    return " ".join(prompt.split()).lower()


def make_question_id(scope_key: str, question_type: str, prompt: str) -> str:
    """Content address of a question: identical content always maps to the same id"""
    payload = f"{scope_key}|{question_type}|{normalize_prompt(prompt)}"
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def default_kind_split(quiz_type: str) -> KindSplit:
    """Deck composition per scope type, taken from settings"""
    return KindSplit(
        objective=getattr(settings, f"{quiz_type}_quiz_objective_count"),
        subjective=getattr(settings, f"{quiz_type}_quiz_subjective_count"),
    )


def count_kinds(questions: Iterable[QuizQuestion]) -> KindSplit:
    objective = subjective = 0
    for question in questions:
        if question.kind == "subjective":
            subjective += 1
        else:
            objective += 1
    return KindSplit(objective=objective, subjective=subjective)


def select_random(
    pool: Sequence[QuizQuestion], n: int, rng: Optional[random.Random] = None
) -> List[QuizQuestion]:
    """Uniform sample of n distinct questions"""
    rng = rng or random
    if n > len(pool):
        raise NoQuestionsAvailable(
            f"Requested {n} questions but only {len(pool)} are available",
            requested=n,
            available=len(pool),
        )
    return rng.sample(list(pool), n)


def select_deck(
    pool: Sequence[QuizQuestion],
    kind_split: KindSplit,
    rng: Optional[random.Random] = None,
) -> List[QuizQuestion]:
    """Sample each kind independently, then shuffle so kind order is not observable"""
    rng = rng or random
    objective = [q for q in pool if q.kind == "objective"]
    subjective = [q for q in pool if q.kind == "subjective"]

    deck = select_random(objective, kind_split.objective, rng) + select_random(
        subjective, kind_split.subjective, rng
    )
    rng.shuffle(deck)
    return deck


class QuestionPoolService:
    """Persisted question bank per scope, topped up by the content generator"""

    def __init__(self, db: Session, generator=None):
        self.db = db
        self.generator = generator

    # ==================== Reads ====================

    def _scope_filter(self, scope: QuizScope):
        # Lesson draws from the lesson, module from its lessons and itself,
        # course from everything in the course
        if scope.quiz_type == "lesson":
            return QuizQuestionModel.scope_key == scope.scope_key
        if scope.quiz_type == "module":
            return and_(
                QuizQuestionModel.course_id == scope.course_id,
                QuizQuestionModel.module_index == scope.module_index,
            )
        return QuizQuestionModel.course_id == scope.course_id

    def load_pool(self, scope: QuizScope) -> List[QuizQuestion]:
        records = (
            self.db.query(QuizQuestionModel)
            .filter(self._scope_filter(scope))
            .order_by(QuizQuestionModel.created_at, QuizQuestionModel.question_id)
            .all()
        )
        return [question_from_record(r) for r in records]

    def get_questions(self, question_ids: Sequence[str]) -> List[QuizQuestion]:
        """Fetch questions by id, preserving the given order"""
        if not question_ids:
            return []
        records = (
            self.db.query(QuizQuestionModel)
            .filter(QuizQuestionModel.question_id.in_(list(question_ids)))
            .all()
        )
        by_id = {r.question_id: r for r in records}

        missing = [qid for qid in question_ids if qid not in by_id]
        if missing:
            raise StaleAttemptReference(
                "Some questions of this quiz no longer exist",
                missing_question_ids=missing,
            )
        return [question_from_record(by_id[qid]) for qid in question_ids]

    # ==================== Writes ====================

    def _to_record(self, question: QuizQuestion) -> QuizQuestionModel:
        scope = question.scope
        return QuizQuestionModel(
            question_id=make_question_id(
                scope.scope_key, question.question_type, question.prompt
            ),
            **scope.columns(),
            question_type=question.question_type,
            kind=question.kind,
            prompt=question.prompt,
            options=getattr(question, "options", None),
            correct_answer=getattr(question, "correct_answer", None),
            suggested_answer=getattr(question, "suggested_answer", None),
        )

    def _insert_missing(self, questions: Sequence[QuizQuestion]) -> int:
        records = {}
        for question in questions:
            record = self._to_record(question)
            records.setdefault(record.question_id, record)

        existing = {
            row[0]
            for row in self.db.query(QuizQuestionModel.question_id)
            .filter(QuizQuestionModel.question_id.in_(list(records)))
            .all()
        }
        new_records = [r for qid, r in records.items() if qid not in existing]
        self.db.add_all(new_records)
        self.db.commit()
        return len(new_records)

    def store_questions(self, questions: Sequence[QuizQuestion]) -> int:
        """
        Persist generated questions. Additive only: a question whose content
        address already exists is skipped.
        """
        try:
            added = self._insert_missing(questions)
        except IntegrityError:
            # A concurrent generation stored some of the same content first
            self.db.rollback()
            added = self._insert_missing(questions)

        logger.info(
            f"💾 Stored {added} new question(s), skipped {len(questions) - added} duplicate(s)"
        )
        return added

    # ==================== Pool ====================

    @staticmethod
    def _is_short(
        pool: Sequence[QuizQuestion], min_count: int, kind_split: Optional[KindSplit]
    ) -> bool:
        if len(pool) < min_count:
            return True
        if kind_split is not None:
            have = count_kinds(pool)
            return (
                have.objective < kind_split.objective
                or have.subjective < kind_split.subjective
            )
        return False

    async def ensure_pool(
        self,
        scope: QuizScope,
        min_count: int,
        kind_split: Optional[KindSplit] = None,
        topic: Optional[str] = None,
    ) -> List[QuizQuestion]:
        """
        Return the bank for a scope, generating more questions when it is short.

        Generation asks for twice the requirement so later attempts can draw a
        different deck. Raises NoQuestionsAvailable if the bank is still short
        afterwards; a short quiz is never produced.
        """
        pool = self.load_pool(scope)
        if not self._is_short(pool, min_count, kind_split):
            return pool

        if self.generator is None:
            raise NoQuestionsAvailable(
                f"Not enough questions for {scope.scope_key}",
                scope=scope.scope_key,
                available=len(pool),
            )

        request_count = 2 * min_count
        request_split = kind_split.scaled(2) if kind_split is not None else None
        logger.info(
            f"🧠 Pool for {scope.scope_key} has {len(pool)} question(s), generating {request_count}"
        )

        try:
            generated = await self.generator.generate_questions(
                scope, request_count, request_split, topic
            )
        except asyncio.TimeoutError as e:
            raise GenerationTimeout(
                "Question generation timed out, please retry",
                scope=scope.scope_key,
            ) from e

        self.store_questions(generated)

        pool = self.load_pool(scope)
        if self._is_short(pool, min_count, kind_split):
            raise NoQuestionsAvailable(
                f"Not enough questions for {scope.scope_key} after generation",
                scope=scope.scope_key,
                available=len(pool),
            )
        return pool

    async def draw_deck(
        self,
        scope: QuizScope,
        kind_split: Optional[KindSplit] = None,
        topic: Optional[str] = None,
        rng: Optional[random.Random] = None,
    ) -> List[QuizQuestion]:
        """Ensure the bank and sample a fresh deck for one attempt"""
        kind_split = kind_split or default_kind_split(scope.quiz_type)
        pool = await self.ensure_pool(scope, kind_split.total, kind_split, topic)
        return select_deck(pool, kind_split, rng)
