"""create_studyplan_tables

Revision ID: studyplan_001
Revises:
Create Date: 2026-01-05 00:00:00.000000

"""

from __future__ import annotations

from alembic import op

# revision identifiers, used by Alembic.
revision = "studyplan_001"
down_revision = None
branch_labels = ("studyplan",)
depends_on = None


def upgrade() -> None:
    op.execute("""
        CREATE TABLE IF NOT EXISTS study_plan_events (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            user_id TEXT NOT NULL,
            event_date DATE NOT NULL,
            start_time TIME NOT NULL,
            end_time TIME NOT NULL,
            title TEXT NOT NULL DEFAULT '',
            subject_id TEXT,
            grade_id TEXT,
            chapter_number INTEGER,
            session_number INTEGER,
            topics JSONB NOT NULL DEFAULT '[]',
            status TEXT NOT NULL DEFAULT 'scheduled',
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            CONSTRAINT study_plan_events_time_order CHECK (start_time < end_time)
        )
    """)

    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_study_plan_events_user_date
        ON study_plan_events (user_id, event_date, start_time)
    """)

    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_study_plan_events_subject
        ON study_plan_events (user_id, subject_id, grade_id)
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS token_usage_logs (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            user_id TEXT NOT NULL,
            model TEXT NOT NULL,
            provider TEXT NOT NULL,
            prompt_tokens INTEGER NOT NULL DEFAULT 0,
            completion_tokens INTEGER NOT NULL DEFAULT 0,
            total_tokens INTEGER NOT NULL DEFAULT 0,
            estimated_cost NUMERIC(14, 8) NOT NULL DEFAULT 0,
            cost_adjusted_tokens INTEGER NOT NULL DEFAULT 0,
            purpose TEXT NOT NULL,
            metadata JSONB NOT NULL DEFAULT '{}',
            created_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """)

    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_token_usage_logs_user_created
        ON token_usage_logs (user_id, created_at DESC)
    """)


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS token_usage_logs")
    op.execute("DROP TABLE IF EXISTS study_plan_events")
