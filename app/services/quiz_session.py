# app/services/quiz_session.py
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional, Sequence

from sqlalchemy import and_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.events import attempt_topic, change_feed
from app.core.exceptions import (
    AttemptNotInProgress,
    EvaluationUnavailable,
    OtherQuizInProgress,
    QuestionNotInDeck,
    StaleAttemptReference,
    SubmissionInProgress,
)
from app.models.quiz_attempt import QuizAttempt
from app.schemas.quiz import (
    AnswerValue,
    QuestionScore,
    QuizQuestion,
    QuizScope,
    RetakeMode,
    ScoreSummary,
)
from app.services.question_pool import QuestionPoolService
from app.services.scoring import ScoringService, aggregate, letter_grade
from app.utils.dates import elapsed_seconds, get_utc_now

logger = logging.getLogger(__name__)


@dataclass
class StartResult:
    attempt: QuizAttempt
    questions: List[QuizQuestion]
    resume_index: int
    resumed: bool
    previous_attempt_id: Optional[int] = None

    @property
    def message(self) -> str:
        if self.resumed:
            return "Resumed your unfinished quiz"
        if self.attempt.is_retake:
            return "Retake started"
        return "Quiz started"


@dataclass
class SubmissionResult:
    attempt: QuizAttempt
    summary: ScoreSummary
    ungraded_question_ids: List[str] = field(default_factory=list)
    cached: bool = False
    challenge_id: Optional[int] = None


def resume_position(attempt: QuizAttempt) -> int:
    """current_index if in range, else first unanswered question, else the last one"""
    question_ids = list(attempt.question_ids or [])
    if not question_ids:
        return 0
    index = attempt.current_index
    if index is not None and 0 <= index < len(question_ids):
        return index
    answers = attempt.answers or {}
    for position, question_id in enumerate(question_ids):
        if question_id not in answers:
            return position
    return len(question_ids) - 1


def clamp_index(index: int, deck_size: int) -> int:
    if deck_size <= 0:
        return 0
    return max(0, min(index, deck_size - 1))


def stored_scores(attempt: QuizAttempt) -> Dict[str, QuestionScore]:
    return {
        question_id: QuestionScore(**score)
        for question_id, score in (attempt.scores or {}).items()
    }


def summary_of(attempt: QuizAttempt) -> ScoreSummary:
    percentage = attempt.percentage or 0
    return ScoreSummary(
        total_marks=attempt.total_marks or 0,
        max_marks=attempt.max_marks or 0,
        percentage=percentage,
        grade=attempt.grade or letter_grade(percentage),
    )


def ungraded_ids(attempt: QuizAttempt) -> List[str]:
    return [
        question_id
        for question_id in attempt.question_ids or []
        if (attempt.scores or {}).get(question_id, {}).get("ungraded")
    ]


class QuizSessionService:
    """Owns a user's quiz attempts from start to submission"""

    def __init__(
        self,
        db: Session,
        pool: QuestionPoolService,
        scoring: Optional[ScoringService] = None,
        challenges=None,
        clock: Callable[[], datetime] = get_utc_now,
    ):
        self.db = db
        self.pool = pool
        self.scoring = scoring
        self.challenges = challenges
        self.clock = clock

    # ==================== Reads ====================

    def get_active_attempt(self, user_id: int) -> Optional[QuizAttempt]:
        """The user's single unfinished attempt, if any"""
        return (
            self.db.query(QuizAttempt)
            .filter(
                and_(
                    QuizAttempt.user_id == user_id,
                    QuizAttempt.completed_at.is_(None),
                )
            )
            .first()
        )

    def get_attempt(self, user_id: int, attempt_id: int) -> QuizAttempt:
        attempt = (
            self.db.query(QuizAttempt)
            .filter(
                and_(QuizAttempt.id == attempt_id, QuizAttempt.user_id == user_id)
            )
            .first()
        )
        if not attempt or attempt.status == "abandoned":
            raise StaleAttemptReference(
                "This quiz attempt no longer exists, please start a new one",
                attempt_id=attempt_id,
            )
        return attempt

    def get_history(
        self, user_id: int, scope: Optional[QuizScope] = None, limit: int = 20
    ) -> List[QuizAttempt]:
        query = self.db.query(QuizAttempt).filter(
            and_(
                QuizAttempt.user_id == user_id,
                QuizAttempt.status == "completed",
            )
        )
        if scope is not None:
            query = query.filter(QuizAttempt.scope_key == scope.scope_key)
        return (
            query.order_by(QuizAttempt.completed_at.desc(), QuizAttempt.id.desc())
            .limit(limit)
            .all()
        )

    def get_questions(self, attempt: QuizAttempt) -> List[QuizQuestion]:
        return self.pool.get_questions(attempt.question_ids)

    def _latest_completed(self, user_id: int, scope: QuizScope) -> Optional[QuizAttempt]:
        return (
            self.db.query(QuizAttempt)
            .filter(
                and_(
                    QuizAttempt.user_id == user_id,
                    QuizAttempt.scope_key == scope.scope_key,
                    QuizAttempt.status == "completed",
                    QuizAttempt.challenge_id.is_(None),
                )
            )
            .order_by(QuizAttempt.completed_at.desc(), QuizAttempt.id.desc())
            .first()
        )

    def _publish(self, attempt: QuizAttempt, event: str, **extra) -> None:
        change_feed.publish(
            attempt_topic(attempt.id),
            {
                "type": event,
                "attempt_id": attempt.id,
                "status": attempt.status,
                "current_index": attempt.current_index,
                **extra,
            },
        )

    # ==================== Start / resume ====================

    def _resume_or_reject(
        self,
        active: QuizAttempt,
        scope: QuizScope,
        challenge_id: Optional[int],
    ) -> StartResult:
        if active.scope_key != scope.scope_key or active.challenge_id != challenge_id:
            raise OtherQuizInProgress(
                f"You have an unfinished quiz: {active.title or active.scope_key}",
                attempt_id=active.id,
                scope=active.scope_key,
                title=active.title,
            )

        logger.info(f"▶️ Resuming attempt {active.id} for user {active.user_id}")
        return StartResult(
            attempt=active,
            questions=self.get_questions(active),
            resume_index=resume_position(active),
            resumed=True,
        )

    async def start(
        self,
        user_id: int,
        scope: QuizScope,
        retake_mode: Optional[RetakeMode] = None,
        title: Optional[str] = None,
        question_ids: Optional[Sequence[str]] = None,
        challenge_id: Optional[int] = None,
    ) -> StartResult:
        """
        Start a quiz in a scope, or resume the user's unfinished one.

        A user holds at most one unfinished attempt system-wide. An unfinished
        attempt in another scope raises OtherQuizInProgress so the caller can
        offer to continue or abandon it.
        """
        active = self.get_active_attempt(user_id)
        if active:
            return self._resume_or_reject(active, scope, challenge_id)

        previous = None
        if challenge_id is None:
            previous = self._latest_completed(user_id, scope)

        if question_ids is not None:
            questions = self.pool.get_questions(question_ids)
        elif retake_mode == "same" and previous is not None:
            questions = self.pool.get_questions(previous.question_ids)
        else:
            questions = await self.pool.draw_deck(scope, topic=title)

        attempt = QuizAttempt(
            user_id=user_id,
            **scope.columns(),
            title=title,
            question_ids=[q.question_id for q in questions],
            answers={},
            current_index=None,
            status="in_progress",
            is_retake=previous is not None,
            challenge_id=challenge_id,
            created_at=self.clock(),
        )
        self.db.add(attempt)
        try:
            self.db.commit()
        except IntegrityError:
            # Another device started a quiz between our check and insert
            self.db.rollback()
            winner = self.get_active_attempt(user_id)
            if winner is None:
                raise
            logger.info(f"Concurrent start for user {user_id} lost to attempt {winner.id}")
            return self._resume_or_reject(winner, scope, challenge_id)

        self.db.refresh(attempt)
        logger.info(
            f"📝 Attempt {attempt.id} started for user {user_id} in {scope.scope_key} "
            f"({len(questions)} questions, retake={attempt.is_retake})"
        )
        self._publish(attempt, "attempt.started")
        return StartResult(
            attempt=attempt,
            questions=list(questions),
            resume_index=0,
            resumed=False,
            previous_attempt_id=previous.id if previous else None,
        )

    # ==================== Checkpoints ====================

    def _get_in_progress(self, user_id: int, attempt_id: int, lock: bool = False) -> QuizAttempt:
        query = self.db.query(QuizAttempt).filter(
            and_(QuizAttempt.id == attempt_id, QuizAttempt.user_id == user_id)
        )
        if lock:
            query = query.with_for_update()
        attempt = query.first()

        if not attempt or attempt.status == "abandoned":
            raise StaleAttemptReference(
                "This quiz attempt no longer exists, please start a new one",
                attempt_id=attempt_id,
            )
        if attempt.status != "in_progress":
            raise AttemptNotInProgress(
                "This quiz has already been submitted",
                attempt_id=attempt_id,
                status=attempt.status,
            )
        return attempt

    def record_answer(
        self,
        user_id: int,
        attempt_id: int,
        question_id: str,
        value: Optional[AnswerValue],
        current_index: Optional[int] = None,
    ) -> QuizAttempt:
        """Checkpoint one answer. Last write wins per question; None clears it."""
        attempt = self._get_in_progress(user_id, attempt_id, lock=True)
        if question_id not in attempt.question_ids:
            raise QuestionNotInDeck(
                "This question is not part of the quiz",
                attempt_id=attempt_id,
                question_id=question_id,
            )

        # Reassign so the JSON column is flagged dirty
        answers = dict(attempt.answers or {})
        if value is None:
            answers.pop(question_id, None)
        else:
            answers[question_id] = value
        attempt.answers = answers

        if current_index is not None:
            attempt.current_index = clamp_index(current_index, len(attempt.question_ids))

        self.db.commit()
        self.db.refresh(attempt)
        self._publish(attempt, "attempt.answer_recorded", question_id=question_id)
        return attempt

    def navigate(self, user_id: int, attempt_id: int, new_index: int) -> int:
        attempt = self._get_in_progress(user_id, attempt_id)
        attempt.current_index = clamp_index(new_index, len(attempt.question_ids))
        self.db.commit()
        self.db.refresh(attempt)
        self._publish(attempt, "attempt.navigated")
        return attempt.current_index

    # ==================== Submission ====================

    def _cached_result(self, attempt: QuizAttempt) -> SubmissionResult:
        return SubmissionResult(
            attempt=attempt,
            summary=summary_of(attempt),
            ungraded_question_ids=ungraded_ids(attempt),
            cached=True,
            challenge_id=attempt.challenge_id,
        )

    def _set_status(self, attempt_id: int, from_status: str, to_status: str) -> bool:
        """Conditional status transition. Returns False if another writer moved first."""
        rows = (
            self.db.query(QuizAttempt)
            .filter(
                and_(QuizAttempt.id == attempt_id, QuizAttempt.status == from_status)
            )
            .update({"status": to_status}, synchronize_session=False)
        )
        self.db.commit()
        return rows == 1

    async def submit(
        self,
        user_id: int,
        attempt_id: int,
        challenge_recipient_id: Optional[int] = None,
        bet_amount: int = 0,
    ) -> SubmissionResult:
        """
        Grade and complete an attempt.

        Submitting an already graded attempt returns the stored result. When
        subjective evaluation is unavailable the affected questions are stored
        as ungraded with zero marks and can be regraded later.
        """
        attempt = self.get_attempt(user_id, attempt_id)
        if attempt.status == "completed":
            return self._cached_result(attempt)

        if challenge_recipient_id is not None and self.challenges is not None:
            self.challenges.check_can_create(user_id, challenge_recipient_id, bet_amount)

        if not self._set_status(attempt_id, "in_progress", "submitting"):
            self.db.refresh(attempt)
            if attempt.status == "completed":
                return self._cached_result(attempt)
            if attempt.status == "submitting":
                raise SubmissionInProgress(
                    "This quiz is already being submitted", attempt_id=attempt_id
                )
            raise StaleAttemptReference(
                "This quiz attempt no longer exists, please start a new one",
                attempt_id=attempt_id,
            )

        self.db.refresh(attempt)
        try:
            questions = self.get_questions(attempt)
            scores, ungraded = await self.scoring.grade_attempt(
                questions, attempt.answers or {}
            )
            summary = aggregate(questions, scores)
        except Exception:
            self.db.rollback()
            self._set_status(attempt_id, "submitting", "in_progress")
            logger.error(f"❌ Grading failed for attempt {attempt_id}, reverted to in_progress")
            raise

        now = self.clock()
        attempt.scores = {qid: s.model_dump() for qid, s in scores.items()}
        attempt.total_marks = summary.total_marks
        attempt.max_marks = summary.max_marks
        attempt.percentage = summary.percentage
        attempt.grade = summary.grade
        attempt.completed_at = now
        attempt.time_taken = elapsed_seconds(attempt.created_at, now)
        attempt.status = "completed"
        self.db.commit()
        self.db.refresh(attempt)

        logger.info(
            f"✅ Attempt {attempt.id} submitted: {summary.total_marks}/{summary.max_marks} "
            f"({summary.percentage}%, {summary.grade})"
        )
        self._publish(
            attempt, "attempt.submitted", summary=summary.model_dump(), ungraded=ungraded
        )

        challenge_id = attempt.challenge_id
        if self.challenges is not None:
            if attempt.challenge_id is not None:
                self.challenges.record_result(attempt)
            elif challenge_recipient_id is not None:
                challenge = await self.challenges.create_challenge(
                    challenger_id=user_id,
                    challenged_id=challenge_recipient_id,
                    scope=QuizScope.from_record(attempt),
                    bet_amount=bet_amount,
                    from_attempt_id=attempt.id,
                    title=attempt.title,
                )
                challenge_id = challenge.id

        return SubmissionResult(
            attempt=attempt,
            summary=summary,
            ungraded_question_ids=ungraded,
            challenge_id=challenge_id,
        )

    async def regrade(self, user_id: int, attempt_id: int) -> SubmissionResult:
        """Retry evaluation of the ungraded subjective questions of a completed attempt"""
        attempt = self.get_attempt(user_id, attempt_id)
        if attempt.status != "completed":
            raise AttemptNotInProgress(
                "Only a submitted quiz can be regraded",
                attempt_id=attempt_id,
                status=attempt.status,
            )

        pending = set(ungraded_ids(attempt))
        if not pending:
            return self._cached_result(attempt)

        questions = self.get_questions(attempt)
        scores = stored_scores(attempt)
        answers = attempt.answers or {}
        for question in questions:
            if question.question_id not in pending:
                continue
            try:
                scores[question.question_id] = await self.scoring.grade_subjective(
                    question, answers.get(question.question_id)
                )
                pending.discard(question.question_id)
            except EvaluationUnavailable:
                logger.warning(
                    f"Question {question.question_id[:8]} of attempt {attempt_id} still ungraded"
                )

        summary = aggregate(questions, scores)
        attempt.scores = {qid: s.model_dump() for qid, s in scores.items()}
        attempt.total_marks = summary.total_marks
        attempt.max_marks = summary.max_marks
        attempt.percentage = summary.percentage
        attempt.grade = summary.grade
        self.db.commit()
        self.db.refresh(attempt)

        logger.info(
            f"🔁 Attempt {attempt.id} regraded: {summary.total_marks}/{summary.max_marks}, "
            f"{len(pending)} still ungraded"
        )
        self._publish(attempt, "attempt.regraded", summary=summary.model_dump())

        if self.challenges is not None:
            if attempt.challenge_id is not None:
                self.challenges.record_result(attempt)
            else:
                self.challenges.record_opening_result(attempt)

        return SubmissionResult(
            attempt=attempt,
            summary=summary,
            ungraded_question_ids=[q for q in attempt.question_ids if q in pending],
            challenge_id=attempt.challenge_id,
        )

    # ==================== Abandon ====================

    def abandon(self, user_id: int, attempt_id: int) -> QuizAttempt:
        """
        Discard an unfinished attempt, releasing the single active slot.

        The row stays as a tombstone with status abandoned. An abandon racing
        an in-flight submit is last write wins.
        """
        attempt = (
            self.db.query(QuizAttempt)
            .filter(
                and_(QuizAttempt.id == attempt_id, QuizAttempt.user_id == user_id)
            )
            .first()
        )
        if not attempt:
            raise StaleAttemptReference(
                "This quiz attempt no longer exists", attempt_id=attempt_id
            )
        if attempt.status == "abandoned":
            return attempt
        if attempt.status == "completed":
            raise AttemptNotInProgress(
                "A submitted quiz cannot be abandoned", attempt_id=attempt_id
            )

        attempt.status = "abandoned"
        attempt.answers = {}
        attempt.scores = None
        attempt.current_index = None
        attempt.total_marks = 0
        attempt.max_marks = 0
        attempt.percentage = 0
        attempt.grade = None
        attempt.completed_at = self.clock()
        self.db.commit()
        self.db.refresh(attempt)

        logger.info(f"🗑️ Attempt {attempt.id} abandoned by user {user_id}")
        self._publish(attempt, "attempt.abandoned")
        return attempt
