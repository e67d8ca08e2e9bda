"""calendar_sync_tables

Revision ID: hearth_001
Revises:
Create Date: 2026-10-18 00:00:00.000000

"""

from __future__ import annotations

from alembic import op

# revision identifiers, used by Alembic.
revision = "hearth_001"
down_revision = None
branch_labels = ("hearth",)
depends_on = None

# Tables whose row changes are announced on the hearth_changes channel.
_WATCHED_TABLES = ("calendar_events", "tasks", "travel_details", "academic_events")


def upgrade() -> None:
    op.execute("""
        CREATE TABLE IF NOT EXISTS state (
            key TEXT PRIMARY KEY,
            value JSONB NOT NULL DEFAULT '{}',
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            version INTEGER NOT NULL DEFAULT 1
        )
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS app_users (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            email TEXT,
            display_name TEXT,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS people (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            display_name TEXT,
            email TEXT,
            sync_to_provider BOOLEAN NOT NULL DEFAULT false,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """)
    op.execute("CREATE INDEX IF NOT EXISTS idx_people_email ON people (lower(email))")

    op.execute("""
        CREATE TABLE IF NOT EXISTS provider_tokens (
            user_id TEXT NOT NULL,
            provider TEXT NOT NULL DEFAULT 'google',
            access_token TEXT,
            refresh_token TEXT,
            expires_at TIMESTAMPTZ,
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            PRIMARY KEY (user_id, provider)
        )
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS provider_calendars (
            user_id TEXT NOT NULL,
            provider_calendar_id TEXT NOT NULL,
            summary TEXT,
            timezone TEXT,
            can_read BOOLEAN NOT NULL DEFAULT true,
            can_write BOOLEAN NOT NULL DEFAULT false,
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            PRIMARY KEY (user_id, provider_calendar_id)
        )
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS calendar_events (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            title TEXT NOT NULL DEFAULT '',
            description TEXT,
            location TEXT,
            start_time TEXT NOT NULL,
            end_time TEXT,
            all_day BOOLEAN NOT NULL DEFAULT false,
            timezone TEXT,
            category TEXT,
            source TEXT,
            source_reference TEXT,
            metadata JSONB NOT NULL DEFAULT '{}',
            attendees TEXT[] NOT NULL DEFAULT '{}',
            is_virtual BOOLEAN NOT NULL DEFAULT false,
            meeting_link TEXT,
            reminder_minutes INTEGER,
            recurring_pattern TEXT,
            provider_event_id TEXT,
            provider_etag TEXT,
            provider_calendar_id TEXT,
            sync_enabled BOOLEAN NOT NULL DEFAULT false,
            last_synced_at TIMESTAMPTZ,
            created_by TEXT,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """)
    op.execute("""
        CREATE UNIQUE INDEX IF NOT EXISTS uq_calendar_events_provider_identity
        ON calendar_events (provider_calendar_id, provider_event_id)
        WHERE provider_event_id IS NOT NULL
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_calendar_events_pending_push
        ON calendar_events (provider_calendar_id)
        WHERE sync_enabled AND provider_event_id IS NULL
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS calendar_sync_cursors (
            user_id TEXT NOT NULL,
            provider_calendar_id TEXT NOT NULL,
            sync_token TEXT NOT NULL,
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            PRIMARY KEY (user_id, provider_calendar_id)
        )
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS calendar_sync_log (
            id BIGSERIAL PRIMARY KEY,
            provider_calendar_id TEXT,
            event_id TEXT,
            provider_event_id TEXT,
            direction TEXT NOT NULL,
            status TEXT NOT NULL,
            action TEXT NOT NULL,
            error_message TEXT,
            details JSONB NOT NULL DEFAULT '{}',
            synced_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """)
    op.execute(
        "CREATE INDEX IF NOT EXISTS idx_calendar_sync_log_synced_at"
        " ON calendar_sync_log (synced_at)"
    )

    op.execute("""
        CREATE TABLE IF NOT EXISTS calendar_watch_channels (
            channel_id TEXT PRIMARY KEY,
            resource_id TEXT NOT NULL,
            user_id TEXT NOT NULL,
            provider_calendar_id TEXT NOT NULL,
            token TEXT NOT NULL,
            expires_at TIMESTAMPTZ,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            UNIQUE (user_id, provider_calendar_id)
        )
    """)

    op.execute("""
        CREATE OR REPLACE FUNCTION hearth_notify_change() RETURNS trigger AS $$
        DECLARE
            row_data JSONB;
        BEGIN
            IF TG_OP = 'DELETE' THEN
                row_data := to_jsonb(OLD);
            ELSE
                row_data := to_jsonb(NEW);
            END IF;
            PERFORM pg_notify(
                'hearth_changes',
                json_build_object(
                    'table', TG_TABLE_NAME,
                    'operation', TG_OP,
                    'row_id', row_data->>'id',
                    'source', row_data->>'source',
                    'category', row_data->>'category'
                )::text
            );
            RETURN NULL;
        END;
        $$ LANGUAGE plpgsql
    """)

    for table in _WATCHED_TABLES:
        op.execute(f"""
            DO $$
            BEGIN
                IF to_regclass('{table}') IS NOT NULL THEN
                    DROP TRIGGER IF EXISTS hearth_notify_change ON {table};
                    CREATE TRIGGER hearth_notify_change
                        AFTER INSERT OR UPDATE OR DELETE ON {table}
                        FOR EACH ROW EXECUTE FUNCTION hearth_notify_change();
                END IF;
            END
            $$
        """)


def downgrade() -> None:
    for table in _WATCHED_TABLES:
        op.execute(f"""
            DO $$
            BEGIN
                IF to_regclass('{table}') IS NOT NULL THEN
                    DROP TRIGGER IF EXISTS hearth_notify_change ON {table};
                END IF;
            END
            $$
        """)
    op.execute("DROP FUNCTION IF EXISTS hearth_notify_change()")
    op.execute("DROP TABLE IF EXISTS calendar_watch_channels")
    op.execute("DROP TABLE IF EXISTS calendar_sync_log")
    op.execute("DROP TABLE IF EXISTS calendar_sync_cursors")
    op.execute("DROP TABLE IF EXISTS calendar_events")
    op.execute("DROP TABLE IF EXISTS provider_calendars")
    op.execute("DROP TABLE IF EXISTS provider_tokens")
    op.execute("DROP TABLE IF EXISTS people")
    op.execute("DROP TABLE IF EXISTS app_users")
    op.execute("DROP TABLE IF EXISTS state")
