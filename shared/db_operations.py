"""Database operations for the task to Google Calendar sync application."""

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Union
from uuid import UUID
from sqlalchemy import create_engine, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, joinedload, sessionmaker
from sqlalchemy.pool import StaticPool

from shared.db_models import (
    Base, CalendarSyncConfig, SyncLogEntry, EventSyncRecord, Task, Category
)
from shared.config import get_database_url
from shared.models import (
    OAuthTokens, RunStatus, SyncResult, SyncStatus, to_db_datetime, utcnow
)

TASK_UPDATABLE_FIELDS = (
    'title', 'description', 'priority', 'status', 'start_date', 'due_date',
    'estimated_minutes', 'category_id', 'notes',
)
CONFIG_UPDATABLE_FIELDS = (
    'enabled', 'selected_calendars', 'sync_frequency', 'sync_direction',
    'auto_sync_enabled', 'sync_status',
)


class LedgerConflictError(Exception):
    """Raised when a sync record would violate a ledger uniqueness rule."""


def _as_uuid(value: Union[str, UUID, None]) -> Optional[UUID]:
    if value is None or isinstance(value, UUID):
        return value
    return UUID(str(value))


def _now() -> datetime:
    return to_db_datetime(utcnow())


class DatabaseOperations:
    """Handles all database operations for the sync application."""

    def __init__(self, database_url: Optional[str] = None):
        """Initialize database connection."""
        self.database_url = database_url or get_database_url()
        if self.database_url.startswith("sqlite") and ":memory:" in self.database_url:
            # Share the single in-memory database across threads and sessions
            self.engine = create_engine(
                self.database_url,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )
        else:
            self.engine = create_engine(self.database_url, pool_pre_ping=True)
        self.SessionLocal = sessionmaker(
            autocommit=False, autoflush=False, expire_on_commit=False, bind=self.engine
        )

    def create_tables(self):
        """Create all tables in the database."""
        Base.metadata.create_all(bind=self.engine)

    def get_session(self) -> Session:
        """Get a new database session."""
        return self.SessionLocal()

    # Sync Configuration Operations

    def get_sync_config(self, user_id: str) -> Optional[CalendarSyncConfig]:
        """
        Get the calendar sync configuration for a user.

        Args:
            user_id: The user ID

        Returns:
            CalendarSyncConfig record or None if the user never connected
        """
        with self.get_session() as session:
            return session.get(CalendarSyncConfig, user_id)

    def get_or_create_sync_config(self, user_id: str) -> CalendarSyncConfig:
        """Get the configuration, creating the disabled default row if missing."""
        with self.get_session() as session:
            config = session.get(CalendarSyncConfig, user_id)
            if config:
                return config

            config = CalendarSyncConfig(
                user_id=user_id,
                enabled=False,
                selected_calendars=[],
                sync_frequency='15min',
                sync_direction='bidirectional',
                auto_sync_enabled=True,
                sync_status=SyncStatus.IDLE.value,
            )
            session.add(config)
            try:
                session.commit()
            except IntegrityError:
                # Created concurrently by another request
                session.rollback()
                return session.get(CalendarSyncConfig, user_id)
            session.refresh(config)
            return config

    def update_sync_config(self, user_id: str, **fields: Any) -> Optional[CalendarSyncConfig]:
        """
        Update configuration fields for a user.

        Args:
            user_id: The user ID
            **fields: Any of enabled, selected_calendars, sync_frequency,
                      sync_direction, auto_sync_enabled, sync_status

        Returns:
            The updated record or None if not found
        """
        unknown = set(fields) - set(CONFIG_UPDATABLE_FIELDS)
        if unknown:
            raise ValueError(f"Unknown configuration fields: {', '.join(sorted(unknown))}")

        with self.get_session() as session:
            config = session.get(CalendarSyncConfig, user_id)
            if not config:
                return None

            for name, value in fields.items():
                setattr(config, name, value)
            config.updated_at = _now()

            session.commit()
            session.refresh(config)
            return config

    def store_tokens(
        self,
        user_id: str,
        tokens: OAuthTokens,
        encryption_service: 'EncryptionService'
    ) -> CalendarSyncConfig:
        """
        Store OAuth tokens (encrypted), creating the configuration if needed.

        A missing refresh token in `tokens` keeps the previously stored one.
        """
        self.get_or_create_sync_config(user_id)
        with self.get_session() as session:
            config = session.get(CalendarSyncConfig, user_id)
            config.access_token = encryption_service.encrypt(tokens.access_token)
            if tokens.refresh_token:
                config.refresh_token = encryption_service.encrypt(tokens.refresh_token)
            config.updated_at = _now()

            session.commit()
            session.refresh(config)
            return config

    def get_tokens(
        self,
        user_id: str,
        encryption_service: 'EncryptionService'
    ) -> Optional[OAuthTokens]:
        """
        Retrieve and decrypt the stored OAuth tokens.

        Returns:
            OAuthTokens or None if no access token is stored
        """
        config = self.get_sync_config(user_id)
        if not config or not config.access_token:
            return None

        return OAuthTokens(
            access_token=encryption_service.decrypt(config.access_token),
            refresh_token=encryption_service.decrypt(config.refresh_token),
        )

    def clear_tokens(self, user_id: str) -> bool:
        """
        Disconnect the calendar account: drop tokens and disable sync.

        Returns:
            True if a configuration existed, False otherwise
        """
        with self.get_session() as session:
            config = session.get(CalendarSyncConfig, user_id)
            if not config:
                return False

            config.access_token = None
            config.refresh_token = None
            config.enabled = False
            config.sync_status = SyncStatus.IDLE.value
            config.updated_at = _now()
            session.commit()
            return True

    def try_begin_sync(self, user_id: str, stale_after: Optional[timedelta] = None) -> bool:
        """
        Atomically move the configuration into 'syncing'.

        The status check and the write happen in one UPDATE statement, so two
        concurrent callers cannot both succeed. With stale_after, a 'syncing'
        lease not renewed for that long (its holder died) is taken over.

        Returns:
            True if this caller acquired the run, False if a run is in progress
            or the configuration is missing or disabled
        """
        free = CalendarSyncConfig.sync_status != SyncStatus.SYNCING.value
        if stale_after is not None:
            free = or_(free, CalendarSyncConfig.updated_at < _now() - stale_after)

        with self.get_session() as session:
            stmt = (
                update(CalendarSyncConfig)
                .where(
                    CalendarSyncConfig.user_id == user_id,
                    CalendarSyncConfig.enabled.is_(True),
                    free,
                )
                .values(sync_status=SyncStatus.SYNCING.value, updated_at=_now())
            )
            result = session.execute(stmt)
            session.commit()
            return result.rowcount == 1

    def finish_sync(
        self,
        user_id: str,
        status: SyncStatus,
        completed_at: Optional[datetime] = None
    ) -> None:
        """Release the run, recording its outcome and completion time."""
        values: Dict[str, Any] = {"sync_status": status.value, "updated_at": _now()}
        if completed_at is not None:
            values["last_sync_at"] = to_db_datetime(completed_at)

        with self.get_session() as session:
            session.execute(
                update(CalendarSyncConfig)
                .where(CalendarSyncConfig.user_id == user_id)
                .values(**values)
            )
            session.commit()

    # Sync Log Operations

    def create_sync_log(
        self,
        log_id: UUID,
        user_id: str,
        direction: str,
        sync_type: str = 'manual',
        metadata: Optional[dict] = None
    ) -> SyncLogEntry:
        """
        Create the log entry of a run that is starting.

        Args:
            log_id: Unique run identifier (returned to the caller as sync_id)
            user_id: The user ID
            direction: import, export or bidirectional
            sync_type: manual or automatic
            metadata: Extra run parameters (dry_run, calendar_ids)

        Returns:
            The created SyncLogEntry record
        """
        with self.get_session() as session:
            entry = SyncLogEntry(
                id=log_id,
                user_id=user_id,
                sync_type=sync_type,
                direction=direction,
                status=None,
                started_at=_now(),
                errors=[],
                run_metadata=metadata or {},
            )
            session.add(entry)
            session.commit()
            session.refresh(entry)
            return entry

    def finalize_sync_log(
        self,
        log_id: UUID,
        status: RunStatus,
        result: SyncResult,
        completed_at: Optional[datetime] = None
    ) -> bool:
        """
        Write the final status and counters of a run.

        Only the first call for a given entry has any effect.

        Returns:
            True if the entry was finalized by this call
        """
        with self.get_session() as session:
            stmt = (
                update(SyncLogEntry)
                .where(SyncLogEntry.id == log_id, SyncLogEntry.completed_at.is_(None))
                .values(
                    status=status.value,
                    completed_at=to_db_datetime(completed_at or utcnow()),
                    events_processed=result.processed,
                    events_created=result.created,
                    events_updated=result.updated,
                    events_deleted=result.deleted,
                    errors=[error.to_dict() for error in result.errors],
                )
            )
            updated = session.execute(stmt)
            session.commit()
            return updated.rowcount == 1

    def get_sync_log(self, log_id: UUID) -> Optional[SyncLogEntry]:
        """Get a log entry by ID."""
        with self.get_session() as session:
            return session.get(SyncLogEntry, log_id)

    def get_sync_logs(
        self,
        user_id: str,
        limit: int = 20,
        offset: int = 0
    ) -> List[SyncLogEntry]:
        """
        Get a user's log entries, most recent first.

        Args:
            user_id: The user ID
            limit: Maximum number of entries to return
            offset: Number of entries to skip

        Returns:
            List of SyncLogEntry records
        """
        with self.get_session() as session:
            stmt = select(SyncLogEntry).where(
                SyncLogEntry.user_id == user_id
            ).order_by(
                SyncLogEntry.started_at.desc()
            ).limit(limit).offset(offset)

            result = session.execute(stmt)
            return list(result.scalars().all())

    def get_sync_stats(self, user_id: str, days_back: int = 30) -> Dict[str, Any]:
        """Aggregate run statistics for the last `days_back` days."""
        since = _now() - timedelta(days=days_back)
        with self.get_session() as session:
            rows = session.execute(
                select(SyncLogEntry.status, func.count(), func.coalesce(func.sum(SyncLogEntry.events_processed), 0))
                .where(SyncLogEntry.user_id == user_id, SyncLogEntry.started_at >= since)
                .group_by(SyncLogEntry.status)
            ).all()
            last_sync_at = session.execute(
                select(func.max(SyncLogEntry.started_at)).where(SyncLogEntry.user_id == user_id)
            ).scalar()

        by_status = {status: count for status, count, _ in rows}
        return {
            "total_syncs": sum(by_status.values()),
            "successful_syncs": by_status.get(RunStatus.SUCCESS.value, 0),
            "partial_syncs": by_status.get(RunStatus.PARTIAL.value, 0),
            "failed_syncs": by_status.get(RunStatus.ERROR.value, 0),
            "events_processed": int(sum(processed for _, _, processed in rows)),
            "last_sync_at": last_sync_at,
        }

    # Sync Record (ledger) Operations

    def get_sync_record_by_event(
        self,
        user_id: str,
        external_event_id: str
    ) -> Optional[EventSyncRecord]:
        """
        Get the ledger entry bound to an external event.

        Args:
            user_id: The user ID
            external_event_id: The Google Calendar event ID

        Returns:
            EventSyncRecord or None if the event is not bound
        """
        with self.get_session() as session:
            stmt = select(EventSyncRecord).where(
                EventSyncRecord.user_id == user_id,
                EventSyncRecord.external_event_id == external_event_id
            )
            return session.execute(stmt).scalar_one_or_none()

    def get_sync_record_by_task(
        self,
        user_id: str,
        task_id: Union[str, UUID],
        calendar_id: Optional[str] = None
    ) -> Optional[EventSyncRecord]:
        """
        Get the ledger entry bound to a task.

        Args:
            user_id: The user ID
            task_id: The task ID
            calendar_id: Restrict to the binding in this calendar

        Returns:
            EventSyncRecord or None; the most recently synced one when the task
            is bound in several calendars and no calendar_id is given
        """
        with self.get_session() as session:
            stmt = select(EventSyncRecord).where(
                EventSyncRecord.user_id == user_id,
                EventSyncRecord.task_id == _as_uuid(task_id)
            )
            if calendar_id is not None:
                stmt = stmt.where(EventSyncRecord.calendar_id == calendar_id)
            stmt = stmt.order_by(EventSyncRecord.last_sync_at.desc()).limit(1)
            return session.execute(stmt).scalar_one_or_none()

    def create_sync_record(
        self,
        user_id: str,
        task_id: Union[str, UUID],
        external_event_id: str,
        calendar_id: str,
        sync_status: str = 'synced'
    ) -> EventSyncRecord:
        """
        Bind a task to an external event.

        Raises:
            LedgerConflictError: If the event is already bound, or the task
                already has a binding in this calendar
        """
        with self.get_session() as session:
            record = EventSyncRecord(
                user_id=user_id,
                task_id=_as_uuid(task_id),
                external_event_id=external_event_id,
                calendar_id=calendar_id,
                sync_status=sync_status,
                last_sync_at=_now(),
            )
            session.add(record)
            try:
                session.commit()
            except IntegrityError as e:
                session.rollback()
                raise LedgerConflictError(
                    f"Sync record for event {external_event_id} / task {task_id} "
                    f"in calendar {calendar_id} already exists"
                ) from e
            session.refresh(record)
            return record

    def touch_sync_record(self, user_id: str, external_event_id: str) -> Optional[EventSyncRecord]:
        """Mark an existing binding as synced now."""
        with self.get_session() as session:
            record = session.execute(
                select(EventSyncRecord).where(
                    EventSyncRecord.user_id == user_id,
                    EventSyncRecord.external_event_id == external_event_id
                )
            ).scalar_one_or_none()
            if not record:
                return None

            record.sync_status = 'synced'
            record.last_sync_at = _now()
            session.commit()
            session.refresh(record)
            return record

    def repoint_sync_record(
        self,
        user_id: str,
        task_id: Union[str, UUID],
        calendar_id: str,
        new_external_event_id: str
    ) -> Optional[EventSyncRecord]:
        """
        Move a task's binding in a calendar to a replacement event.

        Returns:
            The updated record or None if the task had no binding there
        """
        with self.get_session() as session:
            record = session.execute(
                select(EventSyncRecord).where(
                    EventSyncRecord.user_id == user_id,
                    EventSyncRecord.task_id == _as_uuid(task_id),
                    EventSyncRecord.calendar_id == calendar_id
                )
            ).scalar_one_or_none()
            if not record:
                return None

            record.external_event_id = new_external_event_id
            record.sync_status = 'synced'
            record.last_sync_at = _now()
            try:
                session.commit()
            except IntegrityError as e:
                session.rollback()
                raise LedgerConflictError(
                    f"Event {new_external_event_id} is already bound to another task"
                ) from e
            session.refresh(record)
            return record

    # Task Store Operations

    def get_task(self, user_id: str, task_id: Union[str, UUID]) -> Optional[Task]:
        """Get one of the user's tasks with its category loaded."""
        with self.get_session() as session:
            stmt = select(Task).options(joinedload(Task.category)).where(
                Task.user_id == user_id,
                Task.id == _as_uuid(task_id)
            )
            return session.execute(stmt).scalar_one_or_none()

    def create_task(self, user_id: str, fields: Dict[str, Any]) -> Task:
        """
        Insert a task for a user.

        Args:
            user_id: The user ID
            fields: Column values (see TASK_UPDATABLE_FIELDS); title is required

        Returns:
            The created Task record
        """
        if not fields.get('title'):
            raise ValueError("Task title is required")

        with self.get_session() as session:
            values = self._task_values(session, user_id, fields)
            task = Task(user_id=user_id, **values)
            session.add(task)
            session.commit()
            task_id = task.id

        # Fetch and return the record with its category
        return self.get_task(user_id, task_id)

    def update_task(
        self,
        user_id: str,
        task_id: Union[str, UUID],
        fields: Dict[str, Any]
    ) -> Optional[Task]:
        """
        Update one of the user's tasks.

        Returns:
            The updated Task record or None if not found
        """
        with self.get_session() as session:
            task = session.execute(
                select(Task).where(Task.user_id == user_id, Task.id == _as_uuid(task_id))
            ).scalar_one_or_none()
            if not task:
                return None

            for name, value in self._task_values(session, user_id, fields).items():
                setattr(task, name, value)
            task.updated_at = _now()
            session.commit()

        return self.get_task(user_id, task_id)

    def delete_task(self, user_id: str, task_id: Union[str, UUID]) -> bool:
        """Delete one of the user's tasks (its ledger entries cascade)."""
        with self.get_session() as session:
            # Explicit ledger delete: SQLite does not enforce ON DELETE CASCADE by default
            session.query(EventSyncRecord).filter(
                EventSyncRecord.user_id == user_id,
                EventSyncRecord.task_id == _as_uuid(task_id)
            ).delete()
            deleted = session.query(Task).filter(
                Task.user_id == user_id,
                Task.id == _as_uuid(task_id)
            ).delete()
            session.commit()
            return deleted == 1

    def get_tasks(self, user_id: str) -> List[Task]:
        """Get all tasks for a user."""
        with self.get_session() as session:
            stmt = select(Task).where(Task.user_id == user_id).order_by(Task.created_at)
            return list(session.execute(stmt).scalars().all())

    def get_tasks_in_window(
        self,
        user_id: str,
        window_start: datetime,
        window_end: datetime,
        exclude_status: str = 'cancelled'
    ) -> List[Task]:
        """
        Get the user's tasks scheduled inside a time window.

        A task is inside when it starts at or after window_start and is due at
        or before window_end. A missing start or due date falls back to the
        other one; tasks with neither are never returned.

        Returns:
            List of Task records with categories loaded, ordered by start
        """
        start_or_due = func.coalesce(Task.start_date, Task.due_date)
        due_or_start = func.coalesce(Task.due_date, Task.start_date)

        with self.get_session() as session:
            stmt = select(Task).options(joinedload(Task.category)).where(
                Task.user_id == user_id,
                Task.status != exclude_status,
                start_or_due >= to_db_datetime(window_start),
                due_or_start <= to_db_datetime(window_end),
            ).order_by(start_or_due)

            return list(session.execute(stmt).scalars().all())

    def _task_values(self, session: Session, user_id: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        values = {name: fields[name] for name in TASK_UPDATABLE_FIELDS if name in fields}
        for name in ('start_date', 'due_date'):
            if name in values:
                values[name] = to_db_datetime(values[name])

        if values.get('category_id') is not None:
            # Drop references to categories the user does not own
            try:
                category_id = _as_uuid(values['category_id'])
            except ValueError:
                category_id = None
            category = session.get(Category, category_id) if category_id else None
            values['category_id'] = category.id if category and category.user_id == user_id else None

        return values
