"""
Tests for the challenge lifecycle: creation, acceptance, play, resolution,
deadlines and settlement
"""

import asyncio
from types import SimpleNamespace

import pytest

from app.core.exceptions import (
    ChallengeAlreadyPlayed,
    ChallengeExpired,
    ChallengeNotFound,
    DeckMismatch,
    InsufficientBalance,
    InvalidChallengeTransition,
)
from app.models.challenge import Challenge
from app.models.notification import Notification
from app.models.quiz_attempt import QuizAttempt
from app.services.challenge import decide_winner, forfeit_winner
from conftest import (
    LESSON,
    FakeEvaluator,
    FakeGenerator,
    build_challenge_service,
    correct_answer,
    wrong_answer,
)

CHALLENGER = 1
CHALLENGED = 2
OUTSIDER = 3


def _fund(challenges, *user_ids, amount=100):
    for user_id in user_ids:
        challenges.wallet.grant(user_id, amount, f"welcome:{user_id}")


def _open(challenges, bet=10):
    _fund(challenges, CHALLENGER, CHALLENGED)
    return asyncio.run(
        challenges.create_challenge(
            CHALLENGER, CHALLENGED, scope=LESSON, bet_amount=bet, title="Lesson 2"
        )
    )


def _played(db, clock, challenge, user_id, marks, seconds=60, question_ids=None):
    """A finished attempt on the challenge deck"""
    attempt = QuizAttempt(
        user_id=user_id,
        **LESSON.columns(),
        question_ids=question_ids or list(challenge.question_ids),
        answers={},
        status="completed",
        total_marks=marks,
        max_marks=challenge.max_marks,
        percentage=0,
        time_taken=seconds,
        challenge_id=challenge.id,
        created_at=clock(),
        completed_at=clock(),
    )
    db.add(attempt)
    db.commit()
    db.refresh(attempt)
    return attempt


def _balances(challenges):
    return (
        challenges.wallet.get_balance(CHALLENGER),
        challenges.wallet.get_balance(CHALLENGED),
    )


def test_create_from_scope_draws_a_shared_deck(challenges, clock):
    challenge = _open(challenges)

    assert challenge.status == "pending"
    assert len(challenge.question_ids) == 3
    assert challenge.max_marks == 3
    assert challenge.has_challenger_played is False
    assert challenge.bet_amount == 10
    assert (challenge.expires_at.replace(tzinfo=None) - clock().replace(tzinfo=None)).total_seconds() == 48 * 3600


def test_cannot_challenge_yourself(challenges):
    _fund(challenges, CHALLENGER)

    with pytest.raises(InvalidChallengeTransition):
        asyncio.run(challenges.create_challenge(CHALLENGER, CHALLENGER, scope=LESSON))


def test_bet_requires_challenger_balance(challenges):
    with pytest.raises(InsufficientBalance) as exc_info:
        asyncio.run(
            challenges.create_challenge(CHALLENGER, CHALLENGED, scope=LESSON, bet_amount=10)
        )

    assert exc_info.value.data["required"] == 10
    assert exc_info.value.data["balance"] == 0


def test_accept_requires_challenged_balance(challenges):
    _fund(challenges, CHALLENGER)
    challenge = asyncio.run(
        challenges.create_challenge(CHALLENGER, CHALLENGED, scope=LESSON, bet_amount=10)
    )

    with pytest.raises(InsufficientBalance):
        challenges.accept(CHALLENGED, challenge.id)


def test_accept_sets_completion_deadline(challenges, clock):
    challenge = _open(challenges)
    clock.advance(hours=1)

    accepted = challenges.accept(CHALLENGED, challenge.id)

    assert accepted.status == "accepted"
    assert accepted.accepted_at is not None
    deadline = accepted.completion_deadline.replace(tzinfo=None)
    assert (deadline - clock().replace(tzinfo=None)).total_seconds() == 24 * 3600


def test_only_the_challenged_player_can_accept(challenges):
    challenge = _open(challenges)

    with pytest.raises(InvalidChallengeTransition):
        challenges.accept(CHALLENGER, challenge.id)


def test_outsiders_cannot_see_a_challenge(challenges):
    challenge = _open(challenges)

    with pytest.raises(ChallengeNotFound):
        challenges.get_challenge(OUTSIDER, challenge.id)


def test_higher_score_wins_and_bet_moves(db, clock, challenges):
    challenge = _open(challenges)
    challenges.accept(CHALLENGED, challenge.id)

    challenges.record_result(_played(db, clock, challenge, CHALLENGER, marks=2))
    assert challenge.status == "accepted"
    challenges.record_result(_played(db, clock, challenge, CHALLENGED, marks=3))

    assert challenge.status == "completed"
    assert challenge.winner_id == CHALLENGED
    assert challenge.settlement_applied is True
    assert _balances(challenges) == (90, 110)


def test_equal_scores_are_a_draw(db, clock, challenges):
    challenge = _open(challenges)
    challenges.accept(CHALLENGED, challenge.id)

    challenges.record_result(_played(db, clock, challenge, CHALLENGER, marks=2, seconds=30))
    challenges.record_result(_played(db, clock, challenge, CHALLENGED, marks=2, seconds=90))

    assert challenge.status == "completed"
    assert challenge.winner_id is None
    assert _balances(challenges) == (100, 100)
    assert len(challenges.wallet.list_transactions(CHALLENGER)) == 1


def test_time_breaks_ties_when_enabled(db, clock, generator, evaluator):
    challenges = build_challenge_service(db, generator, evaluator, clock, time_tiebreak=True)
    challenge = _open(challenges)
    challenges.accept(CHALLENGED, challenge.id)

    challenges.record_result(_played(db, clock, challenge, CHALLENGER, marks=2, seconds=120))
    challenges.record_result(_played(db, clock, challenge, CHALLENGED, marks=2, seconds=90))

    assert challenge.winner_id == CHALLENGED


def test_decide_winner_and_forfeit_winner():
    row = SimpleNamespace(
        challenger_id=CHALLENGER,
        challenged_id=CHALLENGED,
        challenger_score=5,
        challenged_score=5,
        challenger_time=10,
        challenged_time=20,
        has_challenger_played=True,
        has_challenged_played=False,
    )

    assert decide_winner(row) is None
    assert decide_winner(row, time_tiebreak=True) == CHALLENGER
    assert forfeit_winner(row) == CHALLENGER
    row.has_challenged_played = True
    assert forfeit_winner(row) is None


def test_settlement_recovers_after_a_crash_before_the_flag(db, clock, challenges):
    challenge = _open(challenges)
    challenges.accept(CHALLENGED, challenge.id)
    challenges.record_result(_played(db, clock, challenge, CHALLENGER, marks=3))
    challenges.record_result(_played(db, clock, challenge, CHALLENGED, marks=1))
    # Coins moved but the process died before the flag was written
    db.query(Challenge).filter(Challenge.id == challenge.id).update(
        {"settlement_applied": False}
    )
    db.commit()

    assert challenges.settle(challenge) is True
    assert challenges.settle(challenge) is False
    assert _balances(challenges) == (110, 90)


def test_settlement_is_applied_once(db, clock, challenges):
    challenge = _open(challenges)
    challenges.accept(CHALLENGED, challenge.id)
    challenges.record_result(_played(db, clock, challenge, CHALLENGER, marks=3))
    challenges.record_result(_played(db, clock, challenge, CHALLENGED, marks=1))

    assert challenges.settle(challenge) is False
    assert _balances(challenges) == (110, 90)


def test_recording_the_same_attempt_twice_is_harmless(db, clock, challenges):
    challenge = _open(challenges)
    challenges.accept(CHALLENGED, challenge.id)
    attempt = _played(db, clock, challenge, CHALLENGER, marks=3)

    challenges.record_result(attempt)
    challenges.record_result(attempt)

    assert challenge.challenger_score == 3
    assert challenge.status == "accepted"


def test_a_side_cannot_play_twice(db, clock, challenges):
    challenge = _open(challenges)
    challenges.accept(CHALLENGED, challenge.id)
    challenges.record_result(_played(db, clock, challenge, CHALLENGER, marks=1))

    with pytest.raises(ChallengeAlreadyPlayed):
        challenges.record_result(_played(db, clock, challenge, CHALLENGER, marks=3))
    assert challenge.challenger_score == 1


def test_result_on_a_different_deck_is_rejected(db, clock, challenges):
    challenge = _open(challenges)
    reordered = list(reversed(challenge.question_ids))

    with pytest.raises(DeckMismatch):
        challenges.record_result(
            _played(db, clock, challenge, CHALLENGER, marks=3, question_ids=reordered)
        )


def test_challenged_must_accept_before_playing(challenges):
    challenge = _open(challenges)

    with pytest.raises(InvalidChallengeTransition):
        asyncio.run(challenges.start_challenge_attempt(CHALLENGED, challenge.id))


def test_challenger_can_play_while_pending(challenges):
    challenge = _open(challenges)

    result = asyncio.run(challenges.start_challenge_attempt(CHALLENGER, challenge.id))

    assert result.attempt.challenge_id == challenge.id
    assert result.attempt.question_ids == challenge.question_ids
    assert challenge.challenger_attempt_id == result.attempt.id


def test_pending_challenge_expires_without_winner(challenges, clock):
    challenge = _open(challenges)
    clock.advance(hours=49)

    with pytest.raises(ChallengeExpired):
        challenges.accept(CHALLENGED, challenge.id)

    assert challenge.status == "expired"
    assert challenge.winner_id is None
    assert _balances(challenges) == (100, 100)


def test_only_player_who_finished_wins_by_forfeit(db, clock, challenges):
    challenge = _open(challenges)
    challenges.accept(CHALLENGED, challenge.id)
    challenges.record_result(_played(db, clock, challenge, CHALLENGER, marks=0))
    clock.advance(hours=25)

    assert challenges.expire_overdue() == 1

    db.refresh(challenge)
    assert challenge.status == "expired"
    assert challenge.winner_id == CHALLENGER
    assert _balances(challenges) == (110, 90)


def test_accepted_challenge_nobody_played_expires_without_transfer(db, clock, challenges):
    challenge = _open(challenges)
    challenges.accept(CHALLENGED, challenge.id)
    clock.advance(hours=25)

    viewed = challenges.get_challenge(CHALLENGER, challenge.id)

    assert viewed.status == "expired"
    assert viewed.winner_id is None
    assert _balances(challenges) == (100, 100)


def test_result_after_expiry_is_not_recorded(db, clock, challenges):
    challenge = _open(challenges)
    challenges.accept(CHALLENGED, challenge.id)
    challenges.record_result(_played(db, clock, challenge, CHALLENGER, marks=1))
    clock.advance(hours=30)

    late = challenges.record_result(_played(db, clock, challenge, CHALLENGED, marks=3))

    assert late.status == "expired"
    assert late.has_challenged_played is False
    assert late.winner_id == CHALLENGER


def test_expire_overdue_sweeps_every_due_challenge(challenges, clock):
    _open(challenges)
    asyncio.run(challenges.create_challenge(CHALLENGER, CHALLENGED, scope=LESSON))
    clock.advance(hours=47)
    assert challenges.expire_overdue() == 0

    clock.advance(hours=2)
    assert challenges.expire_overdue() == 2
    assert challenges.expire_overdue() == 0


def test_reject_and_cancel_close_pending_challenges(challenges):
    rejected = _open(challenges, bet=0)
    cancelled = asyncio.run(challenges.create_challenge(CHALLENGER, CHALLENGED, scope=LESSON))

    with pytest.raises(InvalidChallengeTransition):
        challenges.reject(CHALLENGER, rejected.id)

    assert challenges.reject(CHALLENGED, rejected.id).status == "rejected"
    assert challenges.cancel(CHALLENGER, cancelled.id).status == "cancelled"
    with pytest.raises(InvalidChallengeTransition):
        challenges.accept(CHALLENGED, rejected.id)


def test_list_challenges_by_role(challenges):
    challenge = _open(challenges)

    assert [c.id for c in challenges.list_challenges(CHALLENGER, role="sent")] == [challenge.id]
    assert challenges.list_challenges(CHALLENGER, role="received") == []
    assert [c.id for c in challenges.list_challenges(CHALLENGED, role="received")] == [challenge.id]
    assert challenges.list_challenges(CHALLENGED, status="accepted") == []


def test_participants_are_notified(db, clock, challenges):
    challenge = _open(challenges)
    invite = challenges.notifications.list_for_user(CHALLENGED)
    assert [(n.kind, n.ref_id) for n in invite] == [("challenge", str(challenge.id))]

    challenges.accept(CHALLENGED, challenge.id)
    challenges.record_result(_played(db, clock, challenge, CHALLENGER, marks=3))
    challenges.record_result(_played(db, clock, challenge, CHALLENGED, marks=1))

    results = db.query(Notification).filter(Notification.kind == "challenge_result").all()
    assert {n.user_id for n in results} == {CHALLENGER, CHALLENGED}
    won = next(n for n in results if n.user_id == CHALLENGER)
    assert "won" in won.message


def test_submitting_with_a_recipient_opens_and_resolves_a_challenge(challenges, sessions):
    _fund(challenges, CHALLENGER, CHALLENGED)
    started = asyncio.run(sessions.start(CHALLENGER, LESSON, title="Lesson 2"))
    for question in started.questions:
        sessions.record_answer(
            CHALLENGER, started.attempt.id, question.question_id, correct_answer(question)
        )

    submitted = asyncio.run(
        sessions.submit(
            CHALLENGER, started.attempt.id, challenge_recipient_id=CHALLENGED, bet_amount=10
        )
    )

    challenge = challenges.get_challenge(CHALLENGER, submitted.challenge_id)
    assert challenge.question_ids == started.attempt.question_ids
    assert challenge.has_challenger_played is True
    assert challenge.challenger_score == 3
    assert challenge.challenger_attempt_id == started.attempt.id
    with pytest.raises(ChallengeAlreadyPlayed):
        asyncio.run(challenges.start_challenge_attempt(CHALLENGER, challenge.id))

    challenges.accept(CHALLENGED, challenge.id)
    played = asyncio.run(challenges.start_challenge_attempt(CHALLENGED, challenge.id))
    for question in played.questions:
        sessions.record_answer(
            CHALLENGED, played.attempt.id, question.question_id, wrong_answer(question)
        )
    asyncio.run(sessions.submit(CHALLENGED, played.attempt.id))

    challenge = challenges.get_challenge(CHALLENGED, challenge.id)
    assert challenge.status == "completed"
    assert challenge.challenged_score == 0
    assert challenge.winner_id == CHALLENGER
    assert _balances(challenges) == (110, 90)


def test_recipient_is_checked_before_grading(challenges, sessions):
    started = asyncio.run(sessions.start(CHALLENGER, LESSON))

    with pytest.raises(InvalidChallengeTransition):
        asyncio.run(
            sessions.submit(CHALLENGER, started.attempt.id, challenge_recipient_id=CHALLENGER)
        )

    assert sessions.get_attempt(CHALLENGER, started.attempt.id).status == "in_progress"


def test_completion_does_not_depend_on_who_finishes_first(db, clock, challenges):
    challenge = _open(challenges)
    challenges.accept(CHALLENGED, challenge.id)

    challenges.record_result(_played(db, clock, challenge, CHALLENGED, marks=3))
    assert challenge.status == "accepted"
    challenges.record_result(_played(db, clock, challenge, CHALLENGER, marks=1))

    assert challenge.status == "completed"
    assert challenge.winner_id == CHALLENGED
    assert challenge.settlement_applied is True
    assert challenges.settle(challenge) is False
    assert _balances(challenges) == (90, 110)
    assert len(challenges.wallet.list_transactions(CHALLENGED)) == 2


def test_regrade_carries_final_marks_onto_the_opened_challenge(db, clock, monkeypatch):
    from app.core.config import settings

    monkeypatch.setattr(settings, "lesson_quiz_subjective_count", 1)
    evaluator = FakeEvaluator(marks=4, fail=True)
    challenges = build_challenge_service(db, FakeGenerator(), evaluator, clock)
    sessions = challenges.sessions()
    _fund(challenges, CHALLENGER, CHALLENGED)
    started = asyncio.run(sessions.start(CHALLENGER, LESSON))
    for question in started.questions:
        sessions.record_answer(
            CHALLENGER, started.attempt.id, question.question_id, correct_answer(question)
        )
    submitted = asyncio.run(
        sessions.submit(
            CHALLENGER, started.attempt.id, challenge_recipient_id=CHALLENGED, bet_amount=10
        )
    )
    assert submitted.summary.total_marks == 3

    evaluator.fail = False
    regraded = asyncio.run(sessions.regrade(CHALLENGER, started.attempt.id))

    challenge = challenges.get_challenge(CHALLENGER, submitted.challenge_id)
    assert regraded.summary.total_marks == 7
    assert challenge.challenger_score == 7
    assert challenge.max_marks == 7

    challenges.accept(CHALLENGED, challenge.id)
    challenges.record_result(_played(db, clock, challenge, CHALLENGED, marks=6))

    assert challenge.status == "completed"
    assert challenge.winner_id == CHALLENGER


def test_status_filter_applies_before_paging(challenges, clock):
    older = _open(challenges, bet=0)
    clock.advance(minutes=1)
    newer = asyncio.run(challenges.create_challenge(CHALLENGER, CHALLENGED, scope=LESSON))
    challenges.reject(CHALLENGED, older.id)

    rejected = challenges.list_challenges(CHALLENGER, status="rejected", limit=1)

    assert [c.id for c in rejected] == [older.id]
    assert challenges.count_challenges(CHALLENGER, status="pending") == 1
    assert challenges.count_challenges(CHALLENGER) == 2

    clock.advance(hours=49)
    expired = challenges.list_challenges(CHALLENGER, status="expired", limit=1)
    assert [c.id for c in expired] == [newer.id]
    assert challenges.list_challenges(CHALLENGER, status="pending") == []


def test_settlement_never_takes_the_loser_below_zero(db, clock, challenges):
    challenge = _open(challenges)
    challenges.accept(CHALLENGED, challenge.id)
    # The challenged player spent most of their coins after accepting
    challenges.wallet.grant(CHALLENGED, -95, "store:1", "Avatar frame")

    challenges.record_result(_played(db, clock, challenge, CHALLENGER, marks=3))
    challenges.record_result(_played(db, clock, challenge, CHALLENGED, marks=1))

    assert challenge.winner_id == CHALLENGER
    assert _balances(challenges) == (105, 0)


def test_cancelling_frees_the_challengers_unfinished_attempt(challenges):
    challenge = _open(challenges)
    started = asyncio.run(challenges.start_challenge_attempt(CHALLENGER, challenge.id))

    challenges.cancel(CHALLENGER, challenge.id)

    sessions = challenges.sessions()
    assert sessions.get_active_attempt(CHALLENGER) is None
    db_attempt = challenges.db.get(QuizAttempt, started.attempt.id)
    assert db_attempt.status == "abandoned"


def test_expiry_frees_unfinished_challenge_attempts(challenges, clock):
    challenge = _open(challenges)
    challenges.accept(CHALLENGED, challenge.id)
    asyncio.run(challenges.start_challenge_attempt(CHALLENGED, challenge.id))
    clock.advance(hours=25)

    assert challenges.expire_overdue() == 1

    assert challenges.sessions().get_active_attempt(CHALLENGED) is None
    assert challenge.winner_id is None
    assert _balances(challenges) == (100, 100)
