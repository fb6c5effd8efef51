"""Initial schema: content, accounts, subscriptions, attempts and collection markers."""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op

revision = "20261018_01_initial_schema"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "topics",
        sa.Column("id", sa.String(length=64), primary_key=True, nullable=False),
        *_timestamps(),
        sa.Column("title", sa.String(length=200), nullable=False),
        sa.Column("description", sa.Text(), nullable=False, server_default=""),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
    )

    op.create_table(
        "subtopics",
        sa.Column("id", sa.String(length=64), primary_key=True, nullable=False),
        *_timestamps(),
        sa.Column("topic_id", sa.String(length=64), nullable=False),
        sa.Column("title", sa.String(length=200), nullable=False),
        sa.Column("description", sa.Text(), nullable=False, server_default=""),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
    )
    op.create_index("ix_subtopics_topic_id", "subtopics", ["topic_id"])

    op.create_table(
        "questions",
        sa.Column("id", sa.String(length=64), primary_key=True, nullable=False),
        *_timestamps(),
        sa.Column("topic_id", sa.String(length=64), nullable=False),
        sa.Column("subtopic_id", sa.String(length=64), nullable=True),
        sa.Column("prompt", sa.Text(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("connected_kpi_ids", sa.JSON(), nullable=False),
    )
    op.create_index("ix_questions_topic_id", "questions", ["topic_id"])
    op.create_index("ix_questions_subtopic_id", "questions", ["subtopic_id"])

    op.create_table(
        "kpis",
        sa.Column("id", sa.String(length=64), primary_key=True, nullable=False),
        *_timestamps(),
        sa.Column("topic_id", sa.String(length=64), nullable=False),
        sa.Column("subtopic_id", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("is_essential", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("connected_question_ids", sa.JSON(), nullable=False),
    )
    op.create_index("ix_kpis_topic_id", "kpis", ["topic_id"])
    op.create_index("ix_kpis_subtopic_id", "kpis", ["subtopic_id"])

    op.create_table(
        "company_codes",
        sa.Column("id", sa.String(length=64), primary_key=True, nullable=False),
        *_timestamps(),
        sa.Column("code", sa.String(length=64), nullable=False),
        sa.Column("company_name", sa.String(length=200), nullable=False),
        sa.Column("admin_email", sa.String(length=254), nullable=False, server_default=""),
        sa.Column("authorized_emails", sa.JSON(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("max_users", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_company_codes_code", "company_codes", ["code"], unique=True)

    for table, extra in (("sample_answers", []), ("training_examples", ["example_type"])):
        columns = [
            sa.Column("id", sa.String(length=64), primary_key=True, nullable=False),
            *_timestamps(),
            sa.Column("question_id", sa.String(length=64), nullable=False),
            sa.Column("answer_text", sa.Text(), nullable=False),
            sa.Column("quality_rating", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("detected_kpis", sa.JSON(), nullable=False),
            sa.Column("feedback", sa.Text(), nullable=False, server_default=""),
        ]
        if extra:
            columns.append(sa.Column("example_type", sa.String(length=32), nullable=False, server_default="training"))
        op.create_table(table, *columns)
        op.create_index(f"ix_{table}_question_id", table, ["question_id"])

    op.create_table(
        "users",
        sa.Column("id", sa.String(length=64), primary_key=True, nullable=False),
        *_timestamps(),
        sa.Column("email", sa.String(length=254), nullable=False),
        sa.Column("name", sa.String(length=200), nullable=False, server_default=""),
        sa.Column("role", sa.String(length=16), nullable=False, server_default="user"),
        sa.Column("company_code", sa.String(length=64), nullable=True),
        sa.Column("company_name", sa.String(length=200), nullable=True),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)

    op.create_table(
        "subscriptions",
        sa.Column("id", sa.String(length=64), primary_key=True, nullable=False),
        *_timestamps(),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("start_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("plan_type", sa.String(length=16), nullable=False, server_default="trial"),
        sa.Column("auto_renew", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("reminder_seven_days", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("reminder_one_day", sa.Boolean(), nullable=False, server_default=sa.false()),
    )
    op.create_index("ix_subscriptions_user_id", "subscriptions", ["user_id"])

    op.create_table(
        "attempts",
        sa.Column("id", sa.String(length=64), primary_key=True, nullable=False),
        *_timestamps(),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("topic_id", sa.String(length=64), nullable=False),
        sa.Column("selected_question_ids", sa.JSON(), nullable=False),
        sa.Column("start_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="in_progress"),
        sa.Column("total_time", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("time_remaining", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("score", sa.Float(), nullable=True),
        sa.Column("passed", sa.Boolean(), nullable=True),
        sa.Column("submitted_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_attempts_user_id", "attempts", ["user_id"])

    op.create_table(
        "attempt_items",
        sa.Column("id", sa.String(length=64), primary_key=True, nullable=False),
        *_timestamps(),
        sa.Column("attempt_id", sa.String(length=64), nullable=False),
        sa.Column("question_id", sa.String(length=64), nullable=False),
        sa.Column("answer", sa.Text(), nullable=False, server_default=""),
        sa.Column("kpis_detected", sa.JSON(), nullable=False),
        sa.Column("kpis_missing", sa.JSON(), nullable=False),
        sa.Column("score", sa.Float(), nullable=False, server_default="0"),
        sa.Column("max_score", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("feedback", sa.Text(), nullable=False, server_default=""),
        sa.Column("is_evaluated", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("duration_sec", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("submitted_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_attempt_items_attempt_id", "attempt_items", ["attempt_id"])

    op.create_table(
        "collection_markers",
        sa.Column("name", sa.String(length=64), primary_key=True, nullable=False),
        sa.Column("initialized_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
    )


def downgrade() -> None:
    op.drop_table("collection_markers")
    op.drop_index("ix_attempt_items_attempt_id", table_name="attempt_items")
    op.drop_table("attempt_items")
    op.drop_index("ix_attempts_user_id", table_name="attempts")
    op.drop_table("attempts")
    op.drop_index("ix_subscriptions_user_id", table_name="subscriptions")
    op.drop_table("subscriptions")
    op.drop_index("ix_users_email", table_name="users")
    op.drop_table("users")
    for table in ("training_examples", "sample_answers"):
        op.drop_index(f"ix_{table}_question_id", table_name=table)
        op.drop_table(table)
    op.drop_index("ix_company_codes_code", table_name="company_codes")
    op.drop_table("company_codes")
    op.drop_index("ix_kpis_subtopic_id", table_name="kpis")
    op.drop_index("ix_kpis_topic_id", table_name="kpis")
    op.drop_table("kpis")
    op.drop_index("ix_questions_subtopic_id", table_name="questions")
    op.drop_index("ix_questions_topic_id", table_name="questions")
    op.drop_table("questions")
    op.drop_index("ix_subtopics_topic_id", table_name="subtopics")
    op.drop_table("subtopics")
    op.drop_table("topics")
