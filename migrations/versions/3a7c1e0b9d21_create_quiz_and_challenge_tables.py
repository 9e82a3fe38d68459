"""create quiz attempt, challenge, wallet and notification tables

Revision ID: 3a7c1e0b9d21
Revises:
Create Date: 2026-10-19 10:12:44.318220

"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "3a7c1e0b9d21"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

JSON_DOC = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


def upgrade() -> None:
    op.create_table(
        "quiz_questions",
        sa.Column("question_id", sa.String(64), primary_key=True),
        sa.Column("course_id", sa.Integer(), nullable=False),
        sa.Column("quiz_type", sa.String(10), nullable=False),
        sa.Column("module_index", sa.Integer(), nullable=True),
        sa.Column("lesson_index", sa.Integer(), nullable=True),
        sa.Column("scope_key", sa.String(64), nullable=False),
        sa.Column("question_type", sa.String(20), nullable=False),
        sa.Column("kind", sa.String(12), nullable=False),
        sa.Column("prompt", sa.Text(), nullable=False),
        sa.Column("options", JSON_DOC, nullable=True),
        sa.Column("correct_answer", JSON_DOC, nullable=True),
        sa.Column("suggested_answer", sa.Text(), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
    )
    op.create_index("ix_quiz_questions_course_id", "quiz_questions", ["course_id"])
    op.create_index("ix_quiz_questions_module_index", "quiz_questions", ["module_index"])
    op.create_index("ix_quiz_questions_scope_key", "quiz_questions", ["scope_key"])
    op.create_index("ix_quiz_questions_kind", "quiz_questions", ["kind"])

    op.create_table(
        "challenges",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("challenger_id", sa.Integer(), nullable=False),
        sa.Column("challenged_id", sa.Integer(), nullable=False),
        sa.Column("course_id", sa.Integer(), nullable=False),
        sa.Column("quiz_type", sa.String(10), nullable=False),
        sa.Column("module_index", sa.Integer(), nullable=True),
        sa.Column("lesson_index", sa.Integer(), nullable=True),
        sa.Column("scope_key", sa.String(64), nullable=False),
        sa.Column("title", sa.String(255), nullable=True),
        sa.Column("question_ids", JSON_DOC, nullable=False),
        sa.Column("max_marks", sa.Integer(), nullable=True),
        sa.Column("challenger_attempt_id", sa.Integer(), nullable=True),
        sa.Column("challenger_score", sa.Integer(), nullable=True),
        sa.Column("challenger_time", sa.Integer(), nullable=True),
        sa.Column("has_challenger_played", sa.Boolean(), nullable=False),
        sa.Column("challenged_attempt_id", sa.Integer(), nullable=True),
        sa.Column("challenged_score", sa.Integer(), nullable=True),
        sa.Column("challenged_time", sa.Integer(), nullable=True),
        sa.Column("has_challenged_played", sa.Boolean(), nullable=False),
        sa.Column("status", sa.String(10), nullable=False),
        sa.Column("bet_amount", sa.Integer(), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completion_deadline", sa.DateTime(timezone=True), nullable=True),
        sa.Column("winner_id", sa.Integer(), nullable=True),
        sa.Column("settlement_applied", sa.Boolean(), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.Column("accepted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_challenges_challenger_id", "challenges", ["challenger_id"])
    op.create_index("ix_challenges_challenged_id", "challenges", ["challenged_id"])
    op.create_index("ix_challenges_status", "challenges", ["status"])

    op.create_table(
        "quiz_attempts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("course_id", sa.Integer(), nullable=False),
        sa.Column("quiz_type", sa.String(10), nullable=False),
        sa.Column("module_index", sa.Integer(), nullable=True),
        sa.Column("lesson_index", sa.Integer(), nullable=True),
        sa.Column("scope_key", sa.String(64), nullable=False),
        sa.Column("title", sa.String(255), nullable=True),
        sa.Column("question_ids", JSON_DOC, nullable=False),
        sa.Column("answers", JSON_DOC, nullable=False),
        sa.Column("current_index", sa.Integer(), nullable=True),
        sa.Column("status", sa.String(12), nullable=False),
        sa.Column("scores", JSON_DOC, nullable=True),
        sa.Column("total_marks", sa.Integer(), nullable=True),
        sa.Column("max_marks", sa.Integer(), nullable=True),
        sa.Column("percentage", sa.Integer(), nullable=True),
        sa.Column("grade", sa.String(1), nullable=True),
        sa.Column("time_taken", sa.Integer(), nullable=True),
        sa.Column("is_retake", sa.Boolean(), nullable=False),
        sa.Column(
            "challenge_id", sa.Integer(), sa.ForeignKey("challenges.id"), nullable=True
        ),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_quiz_attempts_user_id", "quiz_attempts", ["user_id"])
    op.create_index("ix_quiz_attempts_course_id", "quiz_attempts", ["course_id"])
    op.create_index("ix_quiz_attempts_scope_key", "quiz_attempts", ["scope_key"])
    op.create_index("ix_quiz_attempts_status", "quiz_attempts", ["status"])
    op.create_index("ix_quiz_attempts_challenge_id", "quiz_attempts", ["challenge_id"])
    # At most one unfinished attempt per user
    op.create_index(
        "uix_quiz_attempts_one_active",
        "quiz_attempts",
        ["user_id"],
        unique=True,
        postgresql_where=sa.text("completed_at IS NULL"),
        sqlite_where=sa.text("completed_at IS NULL"),
    )

    op.create_table(
        "wallet_transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("source", sa.String(30), nullable=False),
        sa.Column("reference_id", sa.String(64), nullable=False),
        sa.Column("description", sa.String(255), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.UniqueConstraint(
            "user_id", "source", "reference_id", name="uix_wallet_user_source_ref"
        ),
    )
    op.create_index("ix_wallet_transactions_user_id", "wallet_transactions", ["user_id"])

    op.create_table(
        "user_notifications",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("kind", sa.String(50), nullable=True),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("ref_id", sa.String(64), nullable=True),
        sa.Column("is_read", sa.Boolean(), nullable=False),
        sa.Column(
            "created_at", sa.DateTime(), server_default=sa.func.now(), nullable=False
        ),
    )
    op.create_index("ix_user_notifications_user_id", "user_notifications", ["user_id"])


def downgrade() -> None:
    op.drop_table("user_notifications")
    op.drop_table("wallet_transactions")
    op.drop_index("uix_quiz_attempts_one_active", table_name="quiz_attempts")
    op.drop_table("quiz_attempts")
    op.drop_table("challenges")
    op.drop_table("quiz_questions")
