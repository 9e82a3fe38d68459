# app/models/quiz_attempt.py
from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    text,
)
from sqlalchemy.sql import func

from app.core.database import Base, JSONDocument


class QuizAttempt(Base):
    __tablename__ = "quiz_attempts"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, nullable=False, index=True)

    # Scope
    course_id = Column(Integer, nullable=False, index=True)
    quiz_type = Column(String(10), nullable=False)
    module_index = Column(Integer, nullable=True)
    lesson_index = Column(Integer, nullable=True)
    scope_key = Column(String(64), nullable=False, index=True)
    title = Column(String(255), nullable=True)

    # Deck: fixed at creation, defines order for the life of the attempt
    question_ids = Column(JSONDocument, nullable=False)

    # Play state
    answers = Column(
        JSONDocument, nullable=False, default=dict
    )  # {question_id: answer}, partial while in progress
    current_index = Column(Integer, nullable=True)  # last visited position
    status = Column(
        String(12), nullable=False, default="in_progress", index=True
    )  # in_progress, submitting, completed, abandoned

    # Results (null until submission)
    scores = Column(
        JSONDocument, nullable=True
    )  # {question_id: {correct, marks_awarded, max_marks, feedback, ungraded}}
    total_marks = Column(Integer, nullable=True)
    max_marks = Column(Integer, nullable=True)
    percentage = Column(Integer, nullable=True)
    grade = Column(String(1), nullable=True)
    time_taken = Column(Integer, nullable=True)  # seconds

    is_retake = Column(Boolean, default=False, nullable=False)
    challenge_id = Column(
        Integer, ForeignKey("challenges.id"), nullable=True, index=True
    )

    # Timestamps
    created_at = Column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    completed_at = Column(
        DateTime(timezone=True), nullable=True  # Null while in progress
    )

    # At most one unfinished attempt per user, system-wide
    __table_args__ = (
        Index(
            "uix_quiz_attempts_one_active",
            "user_id",
            unique=True,
            postgresql_where=text("completed_at IS NULL"),
            sqlite_where=text("completed_at IS NULL"),
        ),
    )

    def __repr__(self):
        return f"<QuizAttempt(id={self.id}, user_id={self.user_id}, status={self.status})>"
