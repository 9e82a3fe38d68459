from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from app.schemas.quiz import QuizScope
from app.utils.dates import seconds_remaining

ChallengeStatus = Literal[
    "pending", "accepted", "completed", "expired", "rejected", "cancelled"
]
TERMINAL_STATUSES = ("completed", "expired", "rejected", "cancelled")


class ChallengeCreate(BaseModel):
    """Create a challenge either from a finished attempt or from a fresh deck"""

    challenged_id: int
    bet_amount: int = Field(0, ge=0)
    from_attempt_id: Optional[int] = Field(
        None, description="Completed attempt whose deck and score open the duel"
    )
    scope: Optional[QuizScope] = None
    title: Optional[str] = Field(None, max_length=255)

    @model_validator(mode="after")
    def check_source(self):
        if self.from_attempt_id is None and self.scope is None:
            raise ValueError("Provide either from_attempt_id or scope")
        return self


class ChallengeResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    challenger_id: int
    challenged_id: int
    course_id: int
    quiz_type: str
    module_index: Optional[int] = None
    lesson_index: Optional[int] = None
    title: Optional[str] = None
    question_ids: List[str]
    max_marks: Optional[int] = None
    challenger_attempt_id: Optional[int] = None
    challenger_score: Optional[int] = None
    challenger_time: Optional[int] = None
    has_challenger_played: bool
    challenged_attempt_id: Optional[int] = None
    challenged_score: Optional[int] = None
    challenged_time: Optional[int] = None
    has_challenged_played: bool
    status: ChallengeStatus
    bet_amount: int
    expires_at: datetime
    completion_deadline: Optional[datetime] = None
    winner_id: Optional[int] = None
    settlement_applied: bool
    created_at: datetime
    accepted_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    # Display countdowns, derived from the stored deadlines at read time
    accept_seconds_remaining: Optional[int] = None
    completion_seconds_remaining: Optional[int] = None

    @classmethod
    def build(cls, challenge, now: datetime) -> "ChallengeResponse":
        response = cls.model_validate(challenge)
        if challenge.status == "pending":
            response.accept_seconds_remaining = seconds_remaining(
                challenge.expires_at, now
            )
        elif challenge.status == "accepted":
            response.completion_seconds_remaining = seconds_remaining(
                challenge.completion_deadline, now
            )
        return response


class ChallengeListResponse(BaseModel):
    challenges: List[ChallengeResponse]
    total: int
