"""
Domain errors for the quiz and challenge lifecycle.

Each error carries a stable ``code`` so callers can branch on the kind of
failure without inspecting message text, plus an HTTP status used by the
application-level exception handler in ``main.py``.
"""

from typing import Any, Dict


class QuizDomainError(Exception):
    code = "quiz_error"
    status_code = 400

    def __init__(self, message: str, status_code: int = None, **data: Any):
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.data: Dict[str, Any] = data
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.message, "type": self.code, **self.data}


# ==================== Attempt errors ====================


class OtherQuizInProgress(QuizDomainError):
    """The user already has an unfinished attempt in another scope."""

    code = "other_quiz_in_progress"
    status_code = 409


class StaleAttemptReference(QuizDomainError):
    """The attempt no longer exists or was abandoned; start fresh."""

    code = "stale_attempt_reference"
    status_code = 410


class AttemptNotInProgress(QuizDomainError):
    code = "attempt_not_in_progress"
    status_code = 409


class SubmissionInProgress(QuizDomainError):
    code = "submission_in_progress"
    status_code = 409


class QuestionNotInDeck(QuizDomainError):
    code = "question_not_in_deck"
    status_code = 400


# ==================== Collaborator errors ====================


class GenerationTimeout(QuizDomainError):
    """Content generation did not finish in time. Retryable."""

    code = "generation_timeout"
    status_code = 504


class GenerationFailed(QuizDomainError):
    code = "generation_failed"
    status_code = 502


class EvaluationUnavailable(QuizDomainError):
    code = "evaluation_unavailable"
    status_code = 503


class NoQuestionsAvailable(QuizDomainError):
    code = "no_questions_available"
    status_code = 422


# ==================== Challenge errors ====================


class ChallengeNotFound(QuizDomainError):
    code = "challenge_not_found"
    status_code = 404


class InvalidChallengeTransition(QuizDomainError):
    code = "invalid_challenge_transition"
    status_code = 409


class ChallengeExpired(QuizDomainError):
    code = "challenge_expired"
    status_code = 410


class ChallengeAlreadyPlayed(QuizDomainError):
    code = "challenge_already_played"
    status_code = 409


class DeckMismatch(QuizDomainError):
    code = "deck_mismatch"
    status_code = 409


class InsufficientBalance(QuizDomainError):
    code = "insufficient_balance"
    status_code = 402
