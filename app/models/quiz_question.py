from sqlalchemy import Column, DateTime, Integer, String, Text
from sqlalchemy.sql import func

from app.core.database import Base, JSONDocument


class QuizQuestion(Base):
    """Generated question. Written once, never updated."""

    __tablename__ = "quiz_questions"

    # Content-addressed: sha256(scope_key, question_type, normalized prompt)
    question_id = Column(String(64), primary_key=True)

    # Scope
    course_id = Column(Integer, nullable=False, index=True)
    quiz_type = Column(String(10), nullable=False)  # lesson, module, course
    module_index = Column(Integer, nullable=True, index=True)
    lesson_index = Column(Integer, nullable=True)
    scope_key = Column(String(64), nullable=False, index=True)

    # Variant
    question_type = Column(
        String(20), nullable=False
    )  # multiple_choice, true_false, subjective
    kind = Column(String(12), nullable=False, index=True)  # objective, subjective
    prompt = Column(Text, nullable=False)
    options = Column(JSONDocument, nullable=True)  # multiple_choice only
    correct_answer = Column(JSONDocument, nullable=True)  # int index or bool
    suggested_answer = Column(Text, nullable=True)  # subjective only

    created_at = Column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    def __repr__(self):
        return f"<QuizQuestion(question_id={self.question_id[:8]}, type={self.question_type})>"
