"""Initial schema

Revision ID: 001
Revises:
Create Date: 2026-10-19

"""
from alembic import op


# revision identifiers, used by Alembic.
revision = '001'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Per-user calendar sync configuration; tokens are Fernet-encrypted
    op.execute("""
        CREATE TABLE IF NOT EXISTS calendar_sync_configs (
            user_id VARCHAR(255) PRIMARY KEY,
            enabled BOOLEAN NOT NULL DEFAULT FALSE,
            access_token TEXT,
            refresh_token TEXT,
            selected_calendars JSON NOT NULL DEFAULT '[]',
            sync_frequency VARCHAR(20) NOT NULL DEFAULT '15min'
                CHECK (sync_frequency IN ('manual', '5min', '15min', '30min', '1hour')),
            sync_direction VARCHAR(20) NOT NULL DEFAULT 'bidirectional'
                CHECK (sync_direction IN ('import', 'export', 'bidirectional')),
            auto_sync_enabled BOOLEAN NOT NULL DEFAULT TRUE,
            sync_status VARCHAR(20) NOT NULL DEFAULT 'idle'
                CHECK (sync_status IN ('idle', 'syncing', 'error', 'success')),
            last_sync_at TIMESTAMP,
            created_at TIMESTAMP NOT NULL DEFAULT NOW(),
            updated_at TIMESTAMP NOT NULL DEFAULT NOW()
        )
    """)

    # Run history; status stays NULL until the run is finalized
    op.execute("""
        CREATE TABLE IF NOT EXISTS sync_logs (
            id UUID PRIMARY KEY,
            user_id VARCHAR(255) NOT NULL,
            sync_type VARCHAR(20) NOT NULL DEFAULT 'manual',
            direction VARCHAR(20) NOT NULL,
            status VARCHAR(20) CHECK (status IN ('success', 'partial', 'error')),
            started_at TIMESTAMP NOT NULL DEFAULT NOW(),
            completed_at TIMESTAMP,
            events_processed INTEGER NOT NULL DEFAULT 0,
            events_created INTEGER NOT NULL DEFAULT 0,
            events_updated INTEGER NOT NULL DEFAULT 0,
            events_deleted INTEGER NOT NULL DEFAULT 0,
            errors JSON NOT NULL DEFAULT '[]',
            metadata JSON NOT NULL DEFAULT '{}'
        )
    """)

    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_sync_logs_user_started
        ON sync_logs(user_id, started_at DESC)
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS categories (
            id UUID PRIMARY KEY,
            user_id VARCHAR(255) NOT NULL,
            name VARCHAR(255) NOT NULL,
            color VARCHAR(20),
            created_at TIMESTAMP NOT NULL DEFAULT NOW()
        )
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS tasks (
            id UUID PRIMARY KEY,
            user_id VARCHAR(255) NOT NULL,
            title VARCHAR(500) NOT NULL,
            description TEXT,
            priority VARCHAR(20) NOT NULL DEFAULT 'medium',
            status VARCHAR(20) NOT NULL DEFAULT 'pending',
            start_date TIMESTAMP,
            due_date TIMESTAMP,
            estimated_minutes INTEGER,
            category_id UUID REFERENCES categories(id) ON DELETE SET NULL,
            notes TEXT,
            created_at TIMESTAMP NOT NULL DEFAULT NOW(),
            updated_at TIMESTAMP NOT NULL DEFAULT NOW()
        )
    """)

    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_tasks_user_dates
        ON tasks(user_id, start_date, due_date)
    """)

    # Ledger binding tasks to calendar events
    op.execute("""
        CREATE TABLE IF NOT EXISTS event_sync_records (
            id SERIAL PRIMARY KEY,
            user_id VARCHAR(255) NOT NULL,
            task_id UUID NOT NULL REFERENCES tasks(id) ON DELETE CASCADE,
            external_event_id VARCHAR(1024) NOT NULL,
            calendar_id VARCHAR(1024) NOT NULL,
            sync_status VARCHAR(20) NOT NULL DEFAULT 'synced'
                CHECK (sync_status IN ('pending', 'synced', 'conflict')),
            last_sync_at TIMESTAMP NOT NULL DEFAULT NOW(),
            created_at TIMESTAMP NOT NULL DEFAULT NOW(),
            updated_at TIMESTAMP NOT NULL DEFAULT NOW(),
            CONSTRAINT uq_event_sync_user_event UNIQUE (user_id, external_event_id),
            CONSTRAINT uq_event_sync_user_task_calendar UNIQUE (user_id, task_id, calendar_id)
        )
    """)

    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_event_sync_user_task
        ON event_sync_records(user_id, task_id)
    """)


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS event_sync_records CASCADE")
    op.execute("DROP TABLE IF EXISTS tasks CASCADE")
    op.execute("DROP TABLE IF EXISTS categories CASCADE")
    op.execute("DROP TABLE IF EXISTS sync_logs CASCADE")
    op.execute("DROP TABLE IF EXISTS calendar_sync_configs CASCADE")
