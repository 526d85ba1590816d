"""pipeline_baseline

Revision ID: core_001
Revises:
Create Date: 2026-10-01 00:00:00.000000

"""

from __future__ import annotations

from alembic import op

# revision identifiers, used by Alembic.
revision = "core_001"
down_revision = None
branch_labels = ("core",)
depends_on = None


def upgrade() -> None:
    op.execute("CREATE EXTENSION IF NOT EXISTS vector")
    op.execute('CREATE EXTENSION IF NOT EXISTS "pgcrypto"')

    op.execute("""
        CREATE TABLE IF NOT EXISTS raw_events (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            user_id TEXT NOT NULL,
            provider TEXT NOT NULL,
            source_id TEXT,
            payload JSONB NOT NULL,
            occurred_at TIMESTAMPTZ NOT NULL,
            batch_id UUID,
            source_meta JSONB NOT NULL DEFAULT '{}',
            created_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """)
    op.execute("""
        CREATE UNIQUE INDEX IF NOT EXISTS uq_raw_events_source
        ON raw_events (user_id, provider, source_id)
        WHERE source_id IS NOT NULL
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_raw_events_window
        ON raw_events (user_id, provider, occurred_at)
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS jobs (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            kind TEXT NOT NULL,
            payload JSONB NOT NULL DEFAULT '{}',
            user_id TEXT NOT NULL,
            batch_id UUID,
            status TEXT NOT NULL DEFAULT 'queued'
                CHECK (status IN ('queued', 'processing', 'completed', 'error', 'dead')),
            attempts INTEGER NOT NULL DEFAULT 0,
            last_error TEXT,
            item_errors JSONB,
            claimed_by TEXT,
            run_after TIMESTAMPTZ NOT NULL DEFAULT now(),
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            completed_at TIMESTAMPTZ
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_jobs_claimable
        ON jobs (created_at)
        WHERE status IN ('queued', 'error', 'processing')
    """)
    op.execute("CREATE INDEX IF NOT EXISTS idx_jobs_batch ON jobs (batch_id)")
    op.execute("CREATE INDEX IF NOT EXISTS idx_jobs_user_status ON jobs (user_id, status)")

    op.execute("""
        CREATE TABLE IF NOT EXISTS contacts (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            user_id TEXT NOT NULL,
            display_name TEXT,
            primary_email TEXT,
            primary_phone TEXT,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """)
    op.execute("CREATE INDEX IF NOT EXISTS idx_contacts_user ON contacts (user_id)")
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_contacts_primary_email
        ON contacts (user_id, primary_email)
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS contact_identities (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            user_id TEXT NOT NULL,
            contact_id UUID REFERENCES contacts(id) ON DELETE SET NULL,
            kind TEXT NOT NULL,
            value TEXT NOT NULL,
            provider TEXT NOT NULL,
            display_name TEXT,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            UNIQUE (user_id, kind, value, provider)
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_contact_identities_lookup
        ON contact_identities (user_id, kind, value)
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS interactions (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            user_id TEXT NOT NULL,
            contact_id UUID REFERENCES contacts(id) ON DELETE SET NULL,
            type TEXT NOT NULL,
            subject TEXT,
            body_text TEXT,
            body_raw JSONB,
            source_meta JSONB NOT NULL DEFAULT '{}',
            source TEXT NOT NULL,
            source_id TEXT NOT NULL,
            raw_event_id UUID REFERENCES raw_events(id),
            batch_id UUID,
            occurred_at TIMESTAMPTZ NOT NULL,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            UNIQUE (user_id, source, source_id)
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_interactions_contact
        ON interactions (user_id, contact_id, occurred_at)
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_interactions_participants
        ON interactions USING gin ((source_meta -> 'participants'))
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS embeddings (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            user_id TEXT NOT NULL,
            owner_type TEXT NOT NULL,
            owner_id UUID NOT NULL,
            content_hash TEXT NOT NULL,
            chunk_index INTEGER NOT NULL,
            embedding vector(384) NOT NULL,
            text TEXT NOT NULL,
            meta JSONB NOT NULL DEFAULT '{}',
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            UNIQUE (user_id, owner_type, owner_id, content_hash, chunk_index)
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_embeddings_vector
        ON embeddings USING ivfflat (embedding vector_cosine_ops) WITH (lists = 100)
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS insights (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            user_id TEXT NOT NULL,
            kind TEXT NOT NULL,
            subject_type TEXT NOT NULL,
            subject_id UUID NOT NULL,
            model TEXT NOT NULL,
            title TEXT NOT NULL,
            fingerprint TEXT NOT NULL UNIQUE,
            body JSONB NOT NULL DEFAULT '{}',
            activity_marker TEXT,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_insights_subject
        ON insights (user_id, subject_type, subject_id, kind)
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS contact_timeline (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            user_id TEXT NOT NULL,
            contact_id UUID NOT NULL REFERENCES contacts(id) ON DELETE CASCADE,
            interaction_id UUID NOT NULL REFERENCES interactions(id) ON DELETE CASCADE,
            occurred_at TIMESTAMPTZ NOT NULL,
            event_type TEXT NOT NULL,
            title TEXT NOT NULL,
            summary TEXT,
            event_data JSONB NOT NULL DEFAULT '{}',
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            UNIQUE (contact_id, interaction_id)
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_contact_timeline_contact
        ON contact_timeline (user_id, contact_id, occurred_at DESC)
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS raw_event_errors (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            user_id TEXT NOT NULL,
            provider TEXT NOT NULL,
            stage TEXT NOT NULL,
            raw_event_id UUID,
            job_id UUID,
            error TEXT NOT NULL,
            context JSONB NOT NULL DEFAULT '{}',
            error_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_raw_event_errors_user
        ON raw_event_errors (user_id, provider, stage, error_at DESC)
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS ai_quotas (
            user_id TEXT PRIMARY KEY,
            period_start DATE NOT NULL,
            credits_left INTEGER NOT NULL CHECK (credits_left >= 0),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """)


def downgrade() -> None:
    for table in (
        "ai_quotas",
        "raw_event_errors",
        "contact_timeline",
        "insights",
        "embeddings",
        "interactions",
        "contact_identities",
        "contacts",
        "jobs",
        "raw_events",
    ):
        op.execute(f"DROP TABLE IF EXISTS {table}")
