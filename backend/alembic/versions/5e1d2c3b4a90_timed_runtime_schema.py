"""timed runtime schema

Revision ID: 5e1d2c3b4a90
Revises:
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = "5e1d2c3b4a90"
down_revision = None
branch_labels = None
depends_on = None


JSONType = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("full_name", sa.String(length=255), nullable=True),
        sa.Column("role", sa.String(length=32), nullable=False, server_default="student"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default="true"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_users_id"), "users", ["id"], unique=False)
    op.create_index(op.f("ix_users_email"), "users", ["email"], unique=True)

    op.create_table(
        "problem_sets",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("mode", sa.String(length=20), nullable=False, server_default=sa.text("'PRACTICE'")),
        sa.Column("time_limit_seconds", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "problems",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("problem_set_id", sa.Integer(), nullable=False),
        sa.Column("order_no", sa.Integer(), nullable=False),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("prompt", sa.Text(), nullable=False),
        sa.Column("default_code_json", JSONType, nullable=True),
        sa.Column("test_cases_json", JSONType, nullable=True),
        sa.Column("hints_json", JSONType, nullable=True),
        sa.ForeignKeyConstraint(["problem_set_id"], ["problem_sets.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_problems_problem_set_id"), "problems", ["problem_set_id"], unique=False)

    op.create_table(
        "runtime_sessions",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("problem_set_id", sa.Integer(), nullable=False),
        sa.Column("mode", sa.String(length=20), nullable=False),
        sa.Column("state", sa.String(length=20), nullable=False, server_default=sa.text("'NOT_STARTED'")),
        sa.Column("anchor_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("deadline", sa.DateTime(timezone=True), nullable=True),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("forced", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("language", sa.String(length=32), nullable=True),
        sa.Column("finalize_status", sa.String(length=16), nullable=True),
        sa.Column("finalize_error", sa.Text(), nullable=True),
        sa.Column("verdicts_json", JSONType, nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.ForeignKeyConstraint(["problem_set_id"], ["problem_sets.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_runtime_sessions_user_id"), "runtime_sessions", ["user_id"], unique=False)
    op.create_index(op.f("ix_runtime_sessions_problem_set_id"), "runtime_sessions", ["problem_set_id"], unique=False)

    op.create_table(
        "submission_records",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("session_id", sa.String(length=36), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=True),
        sa.Column("passed", sa.Boolean(), nullable=False),
        sa.Column("duration_seconds", sa.Integer(), nullable=False),
        sa.Column("language", sa.String(length=32), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
        sa.ForeignKeyConstraint(["session_id"], ["runtime_sessions.id"]),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("session_id", name="uq_submission_records_session"),
    )
    op.create_index(op.f("ix_submission_records_session_id"), "submission_records", ["session_id"], unique=False)
    op.create_index(op.f("ix_submission_records_user_id"), "submission_records", ["user_id"], unique=False)


def downgrade() -> None:
    op.drop_index(op.f("ix_submission_records_user_id"), table_name="submission_records")
    op.drop_index(op.f("ix_submission_records_session_id"), table_name="submission_records")
    op.drop_table("submission_records")
    op.drop_index(op.f("ix_runtime_sessions_problem_set_id"), table_name="runtime_sessions")
    op.drop_index(op.f("ix_runtime_sessions_user_id"), table_name="runtime_sessions")
    op.drop_table("runtime_sessions")
    op.drop_index(op.f("ix_problems_problem_set_id"), table_name="problems")
    op.drop_table("problems")
    op.drop_table("problem_sets")
    op.drop_index(op.f("ix_users_email"), table_name="users")
    op.drop_index(op.f("ix_users_id"), table_name="users")
    op.drop_table("users")
