# app/services/challenge.py
import logging
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from sqlalchemy import and_, or_
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.events import challenge_topic, change_feed
from app.core.exceptions import (
    ChallengeAlreadyPlayed,
    ChallengeExpired,
    ChallengeNotFound,
    DeckMismatch,
    InsufficientBalance,
    InvalidChallengeTransition,
    StaleAttemptReference,
)
from app.models.challenge import Challenge
from app.models.quiz_attempt import QuizAttempt
from app.schemas.challenge import TERMINAL_STATUSES
from app.schemas.quiz import QuizScope
from app.services.notification import NotificationService
from app.services.question_pool import QuestionPoolService
from app.services.quiz_session import QuizSessionService, StartResult
from app.services.scoring import ScoringService
from app.services.wallet import WalletService
from app.utils.dates import get_utc_now, make_aware

logger = logging.getLogger(__name__)


def decide_winner(challenge: Challenge, time_tiebreak: bool = False) -> Optional[int]:
    """Strictly higher score wins. A tie is a draw unless time breaks it."""
    if challenge.challenger_score > challenge.challenged_score:
        return challenge.challenger_id
    if challenge.challenged_score > challenge.challenger_score:
        return challenge.challenged_id
    if time_tiebreak:
        challenger_time = challenge.challenger_time
        challenged_time = challenge.challenged_time
        if challenger_time is not None and challenged_time is not None:
            if challenger_time < challenged_time:
                return challenge.challenger_id
            if challenged_time < challenger_time:
                return challenge.challenged_id
    return None


def forfeit_winner(challenge: Challenge) -> Optional[int]:
    """Winner of an accepted challenge whose completion deadline elapsed"""
    if challenge.has_challenger_played and not challenge.has_challenged_played:
        return challenge.challenger_id
    if challenge.has_challenged_played and not challenge.has_challenger_played:
        return challenge.challenged_id
    return None


def opponent_of(challenge: Challenge, user_id: int) -> int:
    if user_id == challenge.challenger_id:
        return challenge.challenged_id
    return challenge.challenger_id


class ChallengeService:
    """Two-player asynchronous duels over a shared deck"""

    def __init__(
        self,
        db: Session,
        pool: Optional[QuestionPoolService] = None,
        scoring: Optional[ScoringService] = None,
        wallet: Optional[WalletService] = None,
        notifications: Optional[NotificationService] = None,
        clock: Callable[[], datetime] = get_utc_now,
        time_tiebreak: Optional[bool] = None,
    ):
        self.db = db
        self.pool = pool or QuestionPoolService(db)
        self.scoring = scoring
        self.wallet = wallet or WalletService(db)
        self.notifications = notifications or NotificationService(db)
        self.clock = clock
        self.time_tiebreak = (
            settings.challenge_time_tiebreak if time_tiebreak is None else time_tiebreak
        )

    def sessions(self) -> QuizSessionService:
        return QuizSessionService(
            self.db,
            pool=self.pool,
            scoring=self.scoring,
            challenges=self,
            clock=self.clock,
        )

    # ==================== Helpers ====================

    def _get(self, challenge_id: int) -> Challenge:
        challenge = self.db.query(Challenge).filter(Challenge.id == challenge_id).first()
        if not challenge:
            raise ChallengeNotFound("Challenge not found", challenge_id=challenge_id)
        return challenge

    def _get_for_participant(self, user_id: int, challenge_id: int) -> Challenge:
        challenge = self._get(challenge_id)
        if user_id not in (challenge.challenger_id, challenge.challenged_id):
            # Outsiders cannot learn that the challenge exists
            raise ChallengeNotFound("Challenge not found", challenge_id=challenge_id)
        return challenge

    def _transition(self, challenge: Challenge, from_status: str, **values) -> bool:
        """Conditional UPDATE on the current status. False when another writer moved first."""
        rows = (
            self.db.query(Challenge)
            .filter(and_(Challenge.id == challenge.id, Challenge.status == from_status))
            .update(values, synchronize_session=False)
        )
        self.db.commit()
        self.db.refresh(challenge)
        return rows == 1

    def _publish(self, challenge: Challenge, event: str) -> None:
        change_feed.publish(
            challenge_topic(challenge.id),
            {
                "type": event,
                "challenge_id": challenge.id,
                "status": challenge.status,
                "has_challenger_played": challenge.has_challenger_played,
                "has_challenged_played": challenge.has_challenged_played,
                "challenger_score": challenge.challenger_score,
                "challenged_score": challenge.challenged_score,
                "winner_id": challenge.winner_id,
            },
        )

    def _label(self, challenge: Challenge) -> str:
        return challenge.title or f"{challenge.quiz_type} quiz"

    def _require_balance(self, user_id: int, amount: int) -> None:
        if not self.wallet.has_balance(user_id, amount):
            raise InsufficientBalance(
                "Not enough coins to cover the bet",
                required=amount,
                balance=self.wallet.get_balance(user_id),
            )

    def _raise_if_expired(self, challenge: Challenge) -> None:
        if self.expire_if_due(challenge) or challenge.status == "expired":
            raise ChallengeExpired(
                "This challenge has expired", challenge_id=challenge.id
            )

    # ==================== Creation ====================

    def check_can_create(
        self, challenger_id: int, challenged_id: int, bet_amount: int
    ) -> None:
        if challenger_id == challenged_id:
            raise InvalidChallengeTransition("You cannot challenge yourself")
        if bet_amount < 0:
            raise InvalidChallengeTransition("Bet amount cannot be negative")
        self._require_balance(challenger_id, bet_amount)

    async def create_challenge(
        self,
        challenger_id: int,
        challenged_id: int,
        scope: Optional[QuizScope] = None,
        bet_amount: int = 0,
        from_attempt_id: Optional[int] = None,
        title: Optional[str] = None,
    ) -> Challenge:
        """
        Open a challenge. From a completed attempt the challenger's deck and
        score are reused; otherwise a fresh deck is drawn and both sides play.
        """
        self.check_can_create(challenger_id, challenged_id, bet_amount)
        now = self.clock()

        values = {}
        if from_attempt_id is not None:
            attempt = (
                self.db.query(QuizAttempt)
                .filter(
                    and_(
                        QuizAttempt.id == from_attempt_id,
                        QuizAttempt.user_id == challenger_id,
                    )
                )
                .first()
            )
            if not attempt or attempt.status == "abandoned":
                raise StaleAttemptReference(
                    "This quiz attempt no longer exists", attempt_id=from_attempt_id
                )
            if attempt.status != "completed" or attempt.challenge_id is not None:
                raise InvalidChallengeTransition(
                    "Only a completed solo quiz can open a challenge",
                    attempt_id=from_attempt_id,
                )
            attempt_scope = QuizScope.from_record(attempt)
            if scope is not None and scope.scope_key != attempt_scope.scope_key:
                raise InvalidChallengeTransition(
                    "The attempt belongs to a different quiz",
                    attempt_id=from_attempt_id,
                )
            scope = attempt_scope
            title = title or attempt.title
            values.update(
                question_ids=list(attempt.question_ids),
                max_marks=attempt.max_marks,
                challenger_attempt_id=attempt.id,
                challenger_score=attempt.total_marks,
                challenger_time=attempt.time_taken,
                has_challenger_played=True,
            )
        else:
            if scope is None:
                raise InvalidChallengeTransition(
                    "A challenge needs a quiz scope or a completed attempt"
                )
            deck = await self.pool.draw_deck(scope, topic=title)
            values.update(
                question_ids=[q.question_id for q in deck],
                max_marks=sum(q.max_marks for q in deck),
            )

        challenge = Challenge(
            challenger_id=challenger_id,
            challenged_id=challenged_id,
            **scope.columns(),
            title=title,
            status="pending",
            bet_amount=bet_amount,
            expires_at=now + timedelta(hours=settings.challenge_accept_hours),
            created_at=now,
            **values,
        )
        self.db.add(challenge)
        self.db.commit()
        self.db.refresh(challenge)

        logger.info(
            f"⚔️ Challenge {challenge.id} created: {challenger_id} vs {challenged_id} "
            f"on {challenge.scope_key} (bet {bet_amount})"
        )
        self._publish(challenge, "challenge.created")
        self.notifications.notify(
            challenged_id,
            f"You have been challenged to the {self._label(challenge)}"
            + (f" for {bet_amount} coins" if bet_amount else ""),
            kind="challenge",
            ref_id=challenge.id,
        )
        return challenge

    # ==================== Responses ====================

    def accept(self, user_id: int, challenge_id: int) -> Challenge:
        challenge = self._get_for_participant(user_id, challenge_id)
        if user_id != challenge.challenged_id:
            raise InvalidChallengeTransition(
                "Only the challenged player can accept", challenge_id=challenge_id
            )
        self._raise_if_expired(challenge)
        if challenge.status != "pending":
            raise InvalidChallengeTransition(
                f"Challenge is already {challenge.status}", challenge_id=challenge_id
            )
        self._require_balance(user_id, challenge.bet_amount)

        now = self.clock()
        if not self._transition(
            challenge,
            "pending",
            status="accepted",
            accepted_at=now,
            completion_deadline=now
            + timedelta(hours=settings.challenge_completion_hours),
        ):
            raise InvalidChallengeTransition(
                f"Challenge is already {challenge.status}", challenge_id=challenge_id
            )

        logger.info(f"🤝 Challenge {challenge.id} accepted by {user_id}")
        self._publish(challenge, "challenge.accepted")
        self.notifications.notify(
            challenge.challenger_id,
            f"Your challenge on the {self._label(challenge)} was accepted",
            kind="challenge",
            ref_id=challenge.id,
        )
        return challenge

    def _close_pending(
        self, user_id: int, challenge_id: int, role_id_attr: str, new_status: str
    ) -> Challenge:
        challenge = self._get_for_participant(user_id, challenge_id)
        if user_id != getattr(challenge, role_id_attr):
            raise InvalidChallengeTransition(
                f"You cannot mark this challenge {new_status}",
                challenge_id=challenge_id,
            )
        self._raise_if_expired(challenge)
        if not self._transition(
            challenge, "pending", status=new_status, completed_at=self.clock()
        ):
            raise InvalidChallengeTransition(
                f"Challenge is already {challenge.status}", challenge_id=challenge_id
            )

        logger.info(f"Challenge {challenge.id} {new_status} by {user_id}")
        self._publish(challenge, f"challenge.{new_status}")
        self._release_attempts(challenge)
        self.notifications.notify(
            opponent_of(challenge, user_id),
            f"The challenge on the {self._label(challenge)} was {new_status}",
            kind="challenge",
            ref_id=challenge.id,
        )
        return challenge

    def reject(self, user_id: int, challenge_id: int) -> Challenge:
        return self._close_pending(user_id, challenge_id, "challenged_id", "rejected")

    def cancel(self, user_id: int, challenge_id: int) -> Challenge:
        return self._close_pending(user_id, challenge_id, "challenger_id", "cancelled")

    # ==================== Play ====================

    async def start_challenge_attempt(
        self, user_id: int, challenge_id: int
    ) -> StartResult:
        """Start or resume the participant's attempt on the challenge deck"""
        challenge = self._get_for_participant(user_id, challenge_id)
        self._raise_if_expired(challenge)
        if challenge.status in TERMINAL_STATUSES:
            raise InvalidChallengeTransition(
                f"Challenge is already {challenge.status}", challenge_id=challenge_id
            )

        is_challenger = user_id == challenge.challenger_id
        if is_challenger and challenge.has_challenger_played:
            raise ChallengeAlreadyPlayed(
                "You have already played this challenge", challenge_id=challenge_id
            )
        if not is_challenger:
            if challenge.has_challenged_played:
                raise ChallengeAlreadyPlayed(
                    "You have already played this challenge", challenge_id=challenge_id
                )
            if challenge.status != "accepted":
                raise InvalidChallengeTransition(
                    "Accept the challenge before playing", challenge_id=challenge_id
                )

        result = await self.sessions().start(
            user_id,
            QuizScope.from_record(challenge),
            title=challenge.title,
            question_ids=list(challenge.question_ids),
            challenge_id=challenge.id,
        )

        side = "challenger" if is_challenger else "challenged"
        if getattr(challenge, f"{side}_attempt_id") != result.attempt.id:
            setattr(challenge, f"{side}_attempt_id", result.attempt.id)
            self.db.commit()
            self.db.refresh(challenge)
            self._publish(challenge, "challenge.started")
        return result

    def record_result(self, attempt: QuizAttempt) -> Challenge:
        """
        Record a completed attempt's score on its challenge and resolve the
        challenge once both sides have played. Safe to call more than once for
        the same attempt.
        """
        challenge = self._get(attempt.challenge_id)
        if list(attempt.question_ids) != list(challenge.question_ids):
            raise DeckMismatch(
                "The attempt was played on a different deck",
                challenge_id=challenge.id,
                attempt_id=attempt.id,
            )
        if attempt.user_id == challenge.challenger_id:
            side = "challenger"
        elif attempt.user_id == challenge.challenged_id:
            side = "challenged"
        else:
            raise ChallengeNotFound("Challenge not found", challenge_id=challenge.id)

        self.expire_if_due(challenge)
        if challenge.status not in ("pending", "accepted"):
            logger.info(
                f"Result of attempt {attempt.id} arrived after challenge {challenge.id} "
                f"was {challenge.status}, not recorded"
            )
            return challenge

        recorded_attempt = getattr(challenge, f"{side}_attempt_id")
        if getattr(challenge, f"has_{side}_played") and recorded_attempt != attempt.id:
            raise ChallengeAlreadyPlayed(
                "This side has already played the challenge",
                challenge_id=challenge.id,
            )

        setattr(challenge, f"{side}_attempt_id", attempt.id)
        setattr(challenge, f"{side}_score", attempt.total_marks)
        setattr(challenge, f"{side}_time", attempt.time_taken)
        setattr(challenge, f"has_{side}_played", True)
        if challenge.max_marks is None:
            challenge.max_marks = attempt.max_marks
        self.db.commit()
        self.db.refresh(challenge)

        logger.info(
            f"🎯 Challenge {challenge.id}: {side} scored {attempt.total_marks}"
        )
        self._publish(challenge, "challenge.played")
        self._complete_if_ready(challenge)
        return challenge

    def record_opening_result(self, attempt: QuizAttempt) -> List[Challenge]:
        """
        Carry a regraded solo attempt's score onto the open challenges it
        started, so the winner is decided on the final marks.
        """
        opened = (
            self.db.query(Challenge)
            .filter(
                and_(
                    Challenge.challenger_attempt_id == attempt.id,
                    Challenge.challenger_id == attempt.user_id,
                    Challenge.status.in_(("pending", "accepted")),
                )
            )
            .all()
        )
        for challenge in opened:
            if self.expire_if_due(challenge):
                continue
            challenge.challenger_score = attempt.total_marks
            challenge.max_marks = attempt.max_marks
            self.db.commit()
            self.db.refresh(challenge)

            logger.info(
                f"🎯 Challenge {challenge.id}: challenger regraded to {attempt.total_marks}"
            )
            self._publish(challenge, "challenge.played")
            self._complete_if_ready(challenge)
        return opened

    def _complete_if_ready(self, challenge: Challenge) -> bool:
        if (
            challenge.status != "accepted"
            or challenge.challenger_score is None
            or challenge.challenged_score is None
        ):
            return False

        winner_id = decide_winner(challenge, self.time_tiebreak)
        rows = (
            self.db.query(Challenge)
            .filter(
                and_(
                    Challenge.id == challenge.id,
                    Challenge.status == "accepted",
                    Challenge.challenger_score.isnot(None),
                    Challenge.challenged_score.isnot(None),
                )
            )
            .update(
                {
                    "status": "completed",
                    "winner_id": winner_id,
                    "completed_at": self.clock(),
                },
                synchronize_session=False,
            )
        )
        self.db.commit()
        self.db.refresh(challenge)
        if rows != 1:
            return False

        logger.info(
            f"🏁 Challenge {challenge.id} completed: "
            f"{challenge.challenger_score}-{challenge.challenged_score}, "
            f"winner={winner_id or 'draw'}"
        )
        self._publish(challenge, "challenge.completed")
        self.settle(challenge)
        return True

    # ==================== Deadlines ====================

    def expire_if_due(self, challenge: Challenge) -> bool:
        """
        Apply the stored deadlines. Returns True when this call expired the
        challenge.
        """
        now = make_aware(self.clock())

        if challenge.status == "pending":
            if now < make_aware(challenge.expires_at):
                return False
            moved = self._transition(
                challenge, "pending", status="expired", winner_id=None, completed_at=now
            )
        elif challenge.status == "accepted" and challenge.completion_deadline is not None:
            if now < make_aware(challenge.completion_deadline):
                return False
            if challenge.has_challenger_played and challenge.has_challenged_played:
                winner_id = decide_winner(challenge, self.time_tiebreak)
            else:
                winner_id = forfeit_winner(challenge)
            moved = self._transition(
                challenge,
                "accepted",
                status="expired",
                winner_id=winner_id,
                completed_at=now,
            )
        else:
            return False

        if not moved:
            return False

        logger.info(
            f"⌛ Challenge {challenge.id} expired, winner={challenge.winner_id or 'none'}"
        )
        self._publish(challenge, "challenge.expired")
        self._release_attempts(challenge)
        self.settle(challenge)
        return True

    def _release_attempts(self, challenge: Challenge) -> None:
        """Abandon unfinished attempts bound to a closed challenge, freeing each player's slot"""
        unfinished = (
            self.db.query(QuizAttempt)
            .filter(
                and_(
                    QuizAttempt.challenge_id == challenge.id,
                    QuizAttempt.completed_at.is_(None),
                )
            )
            .all()
        )
        sessions = self.sessions()
        for attempt in unfinished:
            sessions.abandon(attempt.user_id, attempt.id)

    @staticmethod
    def _overdue(now: datetime):
        return or_(
            and_(Challenge.status == "pending", Challenge.expires_at <= now),
            and_(
                Challenge.status == "accepted",
                Challenge.completion_deadline <= now,
            ),
        )

    def expire_overdue(self) -> int:
        """Sweep every challenge whose deadline has passed"""
        overdue = self.db.query(Challenge).filter(self._overdue(self.clock())).all()
        expired = sum(1 for challenge in overdue if self.expire_if_due(challenge))
        if expired:
            logger.info(f"⌛ Expired {expired} overdue challenge(s)")
        return expired

    # ==================== Settlement ====================

    def settle(self, challenge: Challenge) -> bool:
        """
        Apply the result exactly once. The winner receives bet_amount from the
        loser; draws and no-winner expiries move nothing. Returns True only for
        the call that applied the settlement.
        """
        if challenge.status not in ("completed", "expired") or challenge.settlement_applied:
            return False

        if challenge.winner_id is not None and challenge.bet_amount > 0:
            loser_id = opponent_of(challenge, challenge.winner_id)
            # Bets are not escrowed; never take the loser below zero
            amount = min(challenge.bet_amount, max(0, self.wallet.get_balance(loser_id)))
            if amount < challenge.bet_amount:
                logger.warning(
                    f"Challenge {challenge.id}: loser {loser_id} can only cover "
                    f"{amount} of the {challenge.bet_amount} coin bet"
                )
            # Ledger entries are unique per (user, source, reference)
            self.wallet.transfer(
                from_user_id=loser_id,
                to_user_id=challenge.winner_id,
                amount=amount,
                reference_id=f"challenge:{challenge.id}",
                description=f"Challenge {challenge.id} on {challenge.scope_key}",
            )

        rows = (
            self.db.query(Challenge)
            .filter(
                and_(
                    Challenge.id == challenge.id,
                    Challenge.settlement_applied == False,
                )
            )
            .update({"settlement_applied": True}, synchronize_session=False)
        )
        self.db.commit()
        self.db.refresh(challenge)
        if rows != 1:
            return False

        logger.info(f"💰 Challenge {challenge.id} settled")
        self._publish(challenge, "challenge.settled")
        self._notify_result(challenge)
        return True

    def _notify_result(self, challenge: Challenge) -> None:
        label = self._label(challenge)
        for user_id in (challenge.challenger_id, challenge.challenged_id):
            if challenge.winner_id is None:
                message = f"The challenge on the {label} ended without a winner"
            elif challenge.winner_id == user_id:
                message = f"You won the challenge on the {label}"
                if challenge.bet_amount:
                    message += f" and {challenge.bet_amount} coins"
            else:
                message = f"You lost the challenge on the {label}"
            self.notifications.notify(
                user_id, message, kind="challenge_result", ref_id=challenge.id
            )

    # ==================== Reads ====================

    def get_challenge(self, user_id: int, challenge_id: int) -> Challenge:
        challenge = self._get_for_participant(user_id, challenge_id)
        self.expire_if_due(challenge)
        return challenge

    def _participant_query(self, user_id: int, role: Optional[str] = None):
        if role == "sent":
            return self.db.query(Challenge).filter(Challenge.challenger_id == user_id)
        if role == "received":
            return self.db.query(Challenge).filter(Challenge.challenged_id == user_id)
        return self.db.query(Challenge).filter(
            or_(
                Challenge.challenger_id == user_id,
                Challenge.challenged_id == user_id,
            )
        )

    def _filtered_query(self, user_id: int, role: Optional[str], status: Optional[str]):
        # Expire first so the status filter sees current statuses
        overdue = (
            self._participant_query(user_id, role)
            .filter(self._overdue(self.clock()))
            .all()
        )
        for challenge in overdue:
            self.expire_if_due(challenge)

        query = self._participant_query(user_id, role)
        if status is not None:
            query = query.filter(Challenge.status == status)
        return query

    def list_challenges(
        self,
        user_id: int,
        role: Optional[str] = None,
        status: Optional[str] = None,
        skip: int = 0,
        limit: int = 20,
    ) -> List[Challenge]:
        return (
            self._filtered_query(user_id, role, status)
            .order_by(Challenge.created_at.desc(), Challenge.id.desc())
            .offset(skip)
            .limit(limit)
            .all()
        )

    def count_challenges(
        self, user_id: int, role: Optional[str] = None, status: Optional[str] = None
    ) -> int:
        return self._filtered_query(user_id, role, status).count()
