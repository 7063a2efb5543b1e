"""SQLAlchemy database models for the task to Google Calendar sync application."""

from sqlalchemy import (
    Column, String, Integer, Boolean, Text, DateTime, ForeignKey, Index, JSON,
    TypeDecorator, UniqueConstraint
)
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.sql import func
import uuid


class UUID(TypeDecorator):
    """Platform-independent UUID type.

    Uses PostgreSQL's UUID type when available, otherwise uses
    CHAR(36), storing as stringified hex values.
    """
    impl = String
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == 'postgresql':
            return dialect.type_descriptor(PG_UUID(as_uuid=True))
        else:
            return dialect.type_descriptor(String(36))

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        elif dialect.name == 'postgresql':
            return value
        else:
            if isinstance(value, uuid.UUID):
                return str(value)
            return value

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        elif dialect.name == 'postgresql':
            return value
        else:
            if isinstance(value, str):
                return uuid.UUID(value)
            return value


Base = declarative_base()


class CalendarSyncConfig(Base):
    """Model for calendar_sync_configs table (one row per user)."""
    __tablename__ = 'calendar_sync_configs'

    user_id = Column(String(255), primary_key=True)
    enabled = Column(Boolean, nullable=False, default=False)
    access_token = Column(Text, nullable=True)   # Encrypted
    refresh_token = Column(Text, nullable=True)  # Encrypted
    selected_calendars = Column(JSON, nullable=False, default=list)
    sync_frequency = Column(String(20), nullable=False, default='15min')
    sync_direction = Column(String(20), nullable=False, default='bidirectional')
    auto_sync_enabled = Column(Boolean, nullable=False, default=True)
    sync_status = Column(String(20), nullable=False, default='idle')
    last_sync_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, server_default=func.now())
    updated_at = Column(DateTime, nullable=False, server_default=func.now(), onupdate=func.now())


class SyncLogEntry(Base):
    """Model for sync_logs table. Rows are finalized once and never rewritten."""
    __tablename__ = 'sync_logs'

    id = Column(UUID(), primary_key=True)
    user_id = Column(String(255), nullable=False)
    sync_type = Column(String(20), nullable=False, default='manual')
    direction = Column(String(20), nullable=False)
    status = Column(String(20), nullable=True)  # success, partial, error; NULL while running
    started_at = Column(DateTime, nullable=False, server_default=func.now())
    completed_at = Column(DateTime, nullable=True)
    events_processed = Column(Integer, nullable=False, default=0)
    events_created = Column(Integer, nullable=False, default=0)
    events_updated = Column(Integer, nullable=False, default=0)
    events_deleted = Column(Integer, nullable=False, default=0)
    errors = Column(JSON, nullable=False, default=list)
    run_metadata = Column('metadata', JSON, nullable=False, default=dict)

    __table_args__ = (
        Index('idx_sync_logs_user_started', 'user_id', 'started_at'),
    )


class Category(Base):
    """Model for categories table."""
    __tablename__ = 'categories'

    id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    user_id = Column(String(255), nullable=False)
    name = Column(String(255), nullable=False)
    color = Column(String(20), nullable=True)
    created_at = Column(DateTime, nullable=False, server_default=func.now())


class Task(Base):
    """Model for tasks table."""
    __tablename__ = 'tasks'

    id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    user_id = Column(String(255), nullable=False)
    title = Column(String(500), nullable=False)
    description = Column(Text, nullable=True)
    priority = Column(String(20), nullable=False, default='medium')
    status = Column(String(20), nullable=False, default='pending')
    start_date = Column(DateTime, nullable=True)
    due_date = Column(DateTime, nullable=True)
    estimated_minutes = Column(Integer, nullable=True)
    category_id = Column(UUID(), ForeignKey('categories.id', ondelete='SET NULL'), nullable=True)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, server_default=func.now())
    updated_at = Column(DateTime, nullable=False, server_default=func.now(), onupdate=func.now())

    category = relationship('Category', lazy='joined')

    __table_args__ = (
        Index('idx_tasks_user_dates', 'user_id', 'start_date', 'due_date'),
    )


class EventSyncRecord(Base):
    """Model for event_sync_records table: the task <-> calendar event ledger."""
    __tablename__ = 'event_sync_records'

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(255), nullable=False)
    task_id = Column(UUID(), ForeignKey('tasks.id', ondelete='CASCADE'), nullable=False)
    external_event_id = Column(String(1024), nullable=False)
    calendar_id = Column(String(1024), nullable=False)
    sync_status = Column(String(20), nullable=False, default='synced')
    last_sync_at = Column(DateTime, nullable=False, server_default=func.now())
    created_at = Column(DateTime, nullable=False, server_default=func.now())
    updated_at = Column(DateTime, nullable=False, server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        UniqueConstraint('user_id', 'external_event_id', name='uq_event_sync_user_event'),
        UniqueConstraint('user_id', 'task_id', 'calendar_id', name='uq_event_sync_user_task_calendar'),
        Index('idx_event_sync_user_task', 'user_id', 'task_id'),
    )
