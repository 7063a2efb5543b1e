"""Sync orchestration logic."""

import logging
from datetime import datetime, timedelta
from typing import Callable, List, Optional
from uuid import UUID, uuid4

import httpx
from dateutil.relativedelta import relativedelta
from sqlalchemy.exc import SQLAlchemyError

from shared.config import get_sync_lease_timeout
from shared.db_models import CalendarSyncConfig
from shared.db_operations import DatabaseOperations, LedgerConflictError
from shared.encryption import EncryptionService, TokenDecryptionError
from shared.models import (
    RunStatus, SyncDirection, SyncError, SyncErrorKind, SyncRequest, SyncResult,
    SyncRun, SyncStatus, utcnow
)
from shared.rate_limit import RateLimiter
from services.calendar_client.client import (
    CalendarAPIError, CalendarClientError, CalendarRateLimitError, GoogleCalendarClient,
    TokenError, create_calendar_client
)
from services.calendar_client.token_manager import TokenManager
from services.sync_service.mapper import (
    event_overlaps, event_to_task, is_internal_event, should_exclude, task_to_event
)
from services.sync_service.notifications import NotificationService

logger = logging.getLogger(__name__)

DEFAULT_CALENDAR_ID = "primary"

IMPORT_WINDOW_BEFORE = relativedelta(months=1)
IMPORT_WINDOW_AFTER = relativedelta(months=3)
EXPORT_WINDOW_BEFORE = relativedelta(weeks=1)
EXPORT_WINDOW_AFTER = relativedelta(months=1)

CREATED = "created"
UPDATED = "updated"


class SyncPreconditionError(Exception):
    """Raised when a sync run cannot start; nothing has been modified."""


class SyncNotConfiguredError(SyncPreconditionError):
    """The user has no calendar configuration or sync is disabled."""


class SyncAuthRequiredError(SyncPreconditionError):
    """The configuration holds no access token."""


class SyncInProgressError(SyncPreconditionError):
    """Another run holds the user's sync lease."""


class SyncAbort(Exception):
    """Setup failure that stops the remaining work of a run."""

    def __init__(self, error: SyncError):
        self.error = error
        super().__init__(error.message)


def _error_kind(error: Exception) -> SyncErrorKind:
    if isinstance(error, TokenError):
        return SyncErrorKind.TOKEN_ERROR
    return SyncErrorKind.API_ERROR


class SyncOrchestrator:
    """Runs import and export passes between a user's tasks and Google Calendar."""

    def __init__(
        self,
        db_ops: DatabaseOperations,
        encryption_service: EncryptionService,
        http_client: httpx.AsyncClient,
        rate_limiter: Optional[RateLimiter] = None,
        notification_service: Optional[NotificationService] = None,
        client_factory: Callable[..., GoogleCalendarClient] = create_calendar_client,
        clock: Callable[[], datetime] = utcnow,
        lease_timeout: Optional[timedelta] = None
    ):
        """
        Initialize the sync orchestrator.

        Args:
            db_ops: Database operations instance
            encryption_service: Encryption service for stored tokens
            http_client: Shared HTTP client used by calendar clients
            rate_limiter: Process-wide Calendar API rate limiter
            notification_service: Receives aborted runs
            client_factory: Builds a GoogleCalendarClient for a user
            clock: Returns the current aware UTC time
            lease_timeout: Age after which a stuck syncing lease is taken over
        """
        self.db_ops = db_ops
        self.encryption_service = encryption_service
        self.http_client = http_client
        self.rate_limiter = rate_limiter
        self.notification_service = notification_service or NotificationService()
        self.client_factory = client_factory
        self.clock = clock
        self.lease_timeout = lease_timeout or timedelta(seconds=get_sync_lease_timeout())

    def check_preconditions(self, config: Optional[CalendarSyncConfig]) -> None:
        """
        Validate that a run may start for this configuration.

        Whether another run holds the lease is decided atomically by
        try_begin_sync, which also takes over stale leases.

        Raises:
            SyncNotConfiguredError: Missing or disabled configuration
            SyncAuthRequiredError: No access token stored
        """
        if config is None or not config.enabled:
            raise SyncNotConfiguredError("Google Calendar sync is not configured or disabled")
        if not config.access_token:
            raise SyncAuthRequiredError("Google Calendar is not connected")

    @staticmethod
    def resolve_calendars(config: CalendarSyncConfig, request: SyncRequest) -> List[str]:
        """Calendars for this run: request override, then configured selection, then primary."""
        if request.calendar_ids:
            return list(request.calendar_ids)
        if config.selected_calendars:
            return list(config.selected_calendars)
        return [DEFAULT_CALENDAR_ID]

    async def run(
        self,
        user_id: str,
        config: Optional[CalendarSyncConfig],
        request: SyncRequest
    ) -> SyncRun:
        """
        Execute one sync run for a user.

        Acquires the user's sync lease, makes sure the access token is valid,
        then runs the import pass and/or the export pass depending on the
        requested direction. Item failures are collected in the result; a
        setup failure stops the run with status error. The run log entry is
        finalized and the lease released however the run ends, including on
        cancellation.

        Args:
            user_id: User to sync for
            config: The user's CalendarSyncConfig
            request: Direction, calendar override and dry-run flag

        Returns:
            SyncRun with the run ID, final status and counters

        Raises:
            SyncPreconditionError: If the run could not start
        """
        self.check_preconditions(config)

        if not self.db_ops.try_begin_sync(user_id, stale_after=self.lease_timeout):
            raise SyncInProgressError("A sync is already in progress")

        direction = SyncDirection(request.direction)
        calendar_ids = self.resolve_calendars(config, request)
        sync_id = uuid4()

        try:
            self.db_ops.create_sync_log(
                log_id=sync_id,
                user_id=user_id,
                direction=direction.value,
                sync_type=request.sync_type,
                metadata={"dry_run": request.dry_run, "calendar_ids": calendar_ids},
            )
        except Exception:
            self.db_ops.finish_sync(user_id, SyncStatus.ERROR)
            raise

        logger.info(
            f"Starting sync {sync_id} for user {user_id} "
            f"(direction={direction.value}, calendars={calendar_ids}, dry_run={request.dry_run})"
        )

        result = SyncResult()
        status = RunStatus.ERROR
        now = self.clock()

        try:
            try:
                client = await self._prepare_client(user_id)

                if direction in (SyncDirection.IMPORT, SyncDirection.BIDIRECTIONAL):
                    await self._import_pass(client, user_id, calendar_ids, request.dry_run, result, now)

                if direction in (SyncDirection.EXPORT, SyncDirection.BIDIRECTIONAL):
                    await self._export_pass(client, user_id, calendar_ids[0], request.dry_run, result, now)

                status = RunStatus.PARTIAL if result.errors else RunStatus.SUCCESS

            except SyncAbort as abort:
                logger.error(f"Sync {sync_id} for user {user_id} aborted: {abort.error.message}")
                result.errors.append(abort.error)
                await self.notification_service.send_critical_error_notification(
                    sync_id=str(sync_id),
                    user_id=user_id,
                    error_message=abort.error.message,
                    context={"kind": abort.error.kind.value, "direction": direction.value},
                )

            except Exception as e:
                logger.error(f"Sync {sync_id} for user {user_id} failed with error: {e}", exc_info=True)
                result.errors.append(SyncError(SyncErrorKind.API_ERROR, "Sync failed"))

        finally:
            # Also reached on cancellation, which then propagates with status error
            self._complete(user_id, sync_id, status, result)

        logger.info(
            f"Sync {sync_id} for user {user_id} finished with status {status.value}: "
            f"{result.processed} processed, {result.created} created, "
            f"{result.updated} updated, {len(result.errors)} errors"
        )
        return SyncRun(sync_id=str(sync_id), status=status, result=result, dry_run=request.dry_run)

    def _complete(self, user_id: str, sync_id: UUID, status: RunStatus, result: SyncResult) -> None:
        completed_at = self.clock()
        config_status = SyncStatus.SUCCESS if status == RunStatus.SUCCESS else SyncStatus.ERROR
        try:
            self.db_ops.finalize_sync_log(sync_id, status, result, completed_at)
        finally:
            self.db_ops.finish_sync(user_id, config_status, completed_at)

    async def _prepare_client(self, user_id: str) -> GoogleCalendarClient:
        """Load the stored tokens and make sure they are valid before any pass."""
        try:
            tokens = self.db_ops.get_tokens(user_id, self.encryption_service)
        except TokenDecryptionError as e:
            raise SyncAbort(SyncError(SyncErrorKind.TOKEN_ERROR, str(e)))

        if tokens is None:
            raise SyncAbort(SyncError(SyncErrorKind.TOKEN_ERROR, "No Google Calendar credentials stored"))

        client = self.client_factory(
            self.http_client,
            rate_limiter=self.rate_limiter,
            user_id=user_id,
            tokens=tokens,
        )
        token_manager = TokenManager(client, self.db_ops, self.encryption_service, user_id)

        try:
            await token_manager.ensure_valid()
        except TokenError as e:
            raise SyncAbort(SyncError(SyncErrorKind.TOKEN_ERROR, f"Failed to refresh access token: {e}"))

        return client

    # Import pass

    async def _import_pass(
        self,
        client: GoogleCalendarClient,
        user_id: str,
        calendar_ids: List[str],
        dry_run: bool,
        result: SyncResult,
        now: datetime
    ) -> None:
        window_start = now - IMPORT_WINDOW_BEFORE
        window_end = now + IMPORT_WINDOW_AFTER

        for calendar_id in calendar_ids:
            try:
                events = await client.list_events(calendar_id, window_start, window_end)
            except CalendarClientError as e:
                raise SyncAbort(SyncError(
                    _error_kind(e), f"Failed to list events in calendar {calendar_id}: {e}"
                ))

            logger.info(f"Fetched {len(events)} events from calendar {calendar_id} for user {user_id}")

            for event in events:
                if not event_overlaps(event, window_start, window_end):
                    continue

                result.processed += 1

                if should_exclude(event) or is_internal_event(event):
                    continue

                try:
                    outcome = self._import_event(user_id, calendar_id, event, dry_run, now)
                except ValueError as e:
                    logger.warning(f"Skipping event {event.id}: {e}")
                    result.errors.append(SyncError(
                        SyncErrorKind.VALIDATION_ERROR, str(e), external_event_id=event.id
                    ))
                    continue
                except Exception as e:
                    logger.error(f"Error importing event {event.id}: {e}", exc_info=True)
                    result.errors.append(SyncError(
                        SyncErrorKind.API_ERROR, "Failed to import event", external_event_id=event.id
                    ))
                    continue

                if outcome == CREATED:
                    result.created += 1
                else:
                    result.updated += 1

    def _import_event(self, user_id: str, calendar_id: str, event, dry_run: bool, now: datetime) -> str:
        """Create or update the task bound to one external event."""
        if not event.id:
            raise ValueError("Event has no ID")

        fields = event_to_task(event, user_id, now=now)
        record = self.db_ops.get_sync_record_by_event(user_id, event.id)

        if record is not None:
            if not dry_run:
                task = self.db_ops.update_task(user_id, record.task_id, fields.to_row())
                if task is None:
                    raise LookupError(f"Task {record.task_id} bound to event {event.id} no longer exists")
                self.db_ops.touch_sync_record(user_id, event.id)
            return UPDATED

        if not dry_run:
            task = self.db_ops.create_task(user_id, fields.to_row())
            try:
                self.db_ops.create_sync_record(user_id, task.id, event.id, calendar_id)
            except LedgerConflictError:
                # Bound concurrently; drop the duplicate task
                self.db_ops.delete_task(user_id, task.id)
                raise
        return CREATED

    # Export pass

    async def _export_pass(
        self,
        client: GoogleCalendarClient,
        user_id: str,
        calendar_id: str,
        dry_run: bool,
        result: SyncResult,
        now: datetime
    ) -> None:
        window_start = now - EXPORT_WINDOW_BEFORE
        window_end = now + EXPORT_WINDOW_AFTER

        try:
            tasks = self.db_ops.get_tasks_in_window(user_id, window_start, window_end)
        except SQLAlchemyError as e:
            logger.error(f"Failed to load tasks for user {user_id}: {e}", exc_info=True)
            raise SyncAbort(SyncError(SyncErrorKind.API_ERROR, "Failed to load tasks"))

        logger.info(f"Exporting {len(tasks)} tasks to calendar {calendar_id} for user {user_id}")

        for task in tasks:
            result.processed += 1
            try:
                outcome = await self._export_task(client, user_id, calendar_id, task, dry_run, now)
            except CalendarClientError as e:
                logger.error(f"Error exporting task {task.id}: {e}")
                result.errors.append(SyncError(
                    _error_kind(e), f"Failed to export task: {e}", task_id=str(task.id)
                ))
                continue
            except Exception as e:
                logger.error(f"Error exporting task {task.id}: {e}", exc_info=True)
                result.errors.append(SyncError(
                    SyncErrorKind.API_ERROR, "Failed to export task", task_id=str(task.id)
                ))
                continue

            if outcome == CREATED:
                result.created += 1
            else:
                result.updated += 1

    async def _export_task(
        self,
        client: GoogleCalendarClient,
        user_id: str,
        calendar_id: str,
        task,
        dry_run: bool,
        now: datetime
    ) -> str:
        """Create or update the event bound to one task, recreating it if the update fails."""
        event = task_to_event(task, calendar_id, now=now)
        record = self.db_ops.get_sync_record_by_task(user_id, task.id, calendar_id)

        if record is not None:
            if dry_run:
                return UPDATED
            try:
                await client.update_event(calendar_id, record.external_event_id, event)
            except CalendarRateLimitError:
                raise
            except CalendarAPIError as e:
                logger.warning(
                    f"Updating event {record.external_event_id} for task {task.id} failed ({e}), "
                    f"creating a replacement"
                )
                replacement = await client.create_event(calendar_id, event)
                self.db_ops.repoint_sync_record(user_id, task.id, calendar_id, replacement.id)
                return CREATED

            self.db_ops.touch_sync_record(user_id, record.external_event_id)
            return UPDATED

        if dry_run:
            return CREATED

        created = await client.create_event(calendar_id, event)
        try:
            self.db_ops.create_sync_record(user_id, task.id, created.id, calendar_id)
        except LedgerConflictError:
            await client.delete_event(calendar_id, created.id)
            raise
        return CREATED
