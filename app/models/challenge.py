from sqlalchemy import Boolean, Column, DateTime, Integer, String
from sqlalchemy.sql import func

from app.core.database import Base, JSONDocument


class Challenge(Base):
    __tablename__ = "challenges"

    id = Column(Integer, primary_key=True, index=True)

    # Participants
    challenger_id = Column(Integer, nullable=False, index=True)
    challenged_id = Column(Integer, nullable=False, index=True)

    # Scope and shared deck
    course_id = Column(Integer, nullable=False)
    quiz_type = Column(String(10), nullable=False)
    module_index = Column(Integer, nullable=True)
    lesson_index = Column(Integer, nullable=True)
    scope_key = Column(String(64), nullable=False)
    title = Column(String(255), nullable=True)
    question_ids = Column(JSONDocument, nullable=False)
    max_marks = Column(Integer, nullable=True)

    # Challenger side
    challenger_attempt_id = Column(Integer, nullable=True)
    challenger_score = Column(Integer, nullable=True)
    challenger_time = Column(Integer, nullable=True)  # seconds
    has_challenger_played = Column(Boolean, default=False, nullable=False)

    # Challenged side
    challenged_attempt_id = Column(Integer, nullable=True)
    challenged_score = Column(Integer, nullable=True)
    challenged_time = Column(Integer, nullable=True)
    has_challenged_played = Column(Boolean, default=False, nullable=False)

    # Lifecycle
    status = Column(
        String(10), nullable=False, default="pending", index=True
    )  # pending, accepted, completed, expired, rejected, cancelled
    bet_amount = Column(Integer, default=0, nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    completion_deadline = Column(DateTime(timezone=True), nullable=True)
    winner_id = Column(Integer, nullable=True)  # null = draw / no winner
    settlement_applied = Column(Boolean, default=False, nullable=False)

    # Timestamps
    created_at = Column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    accepted_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    def __repr__(self):
        return f"<Challenge(id={self.id}, status={self.status}, winner_id={self.winner_id})>"
