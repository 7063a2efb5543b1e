"""Unit tests for the sync orchestrator.

Tests cover:
- Import and export passes against an in-memory calendar
- Idempotence of repeated runs and loop prevention
- Isolation of per-item failures
- Dry runs, token refresh, window boundaries and export self-heal
- Run lease, preconditions and cancellation
"""

import asyncio
import pytest
from datetime import datetime, timedelta, timezone
from unittest.mock import Mock, patch
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.exc import OperationalError

from shared.db_models import CalendarSyncConfig, EventSyncRecord
from shared.models import (
    EventTime, ExternalEvent, OAuthTokens, RunStatus, SyncDirection, SyncErrorKind, SyncRequest
)
from services.calendar_client.client import CalendarAPIError, TokenError
from services.sync_service.orchestrator import (
    SyncAuthRequiredError, SyncInProgressError, SyncNotConfiguredError, SyncOrchestrator
)

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def orchestrator(db_ops, encryption_service, client_factory, mock_notification_service):
    """Create SyncOrchestrator wired to the fake calendar client and a fixed clock."""
    return SyncOrchestrator(
        db_ops=db_ops,
        encryption_service=encryption_service,
        http_client=Mock(),
        notification_service=mock_notification_service,
        client_factory=client_factory,
        clock=lambda: NOW,
    )


def user_event(event_id, start, hours=1, summary="Dentist", **overrides):
    return ExternalEvent(
        id=event_id,
        summary=summary,
        start=EventTime(date_time=start),
        end=EventTime(date_time=start + timedelta(hours=hours)),
        html_link=f"https://calendar.google.com/event?eid={event_id}",
        **overrides
    )


def make_task(db_ops, user_id, title, start, hours=1):
    return db_ops.create_task(user_id, {
        "title": title,
        "start_date": start,
        "due_date": start + timedelta(hours=hours) if start else None,
    })


async def run_sync(orchestrator, db_ops, user_id, **request):
    return await orchestrator.run(user_id, db_ops.get_sync_config(user_id), SyncRequest(**request))


def ledger_entries(db_ops, user_id):
    with db_ops.get_session() as session:
        stmt = select(EventSyncRecord).where(EventSyncRecord.user_id == user_id)
        return list(session.execute(stmt).scalars().all())


# Import pass

@pytest.mark.asyncio
async def test_import_creates_task_and_ledger_entry(orchestrator, db_ops, fake_client, connected_user):
    fake_client.add_event("primary", user_event("evt_1", NOW + timedelta(days=2)))

    run = await run_sync(orchestrator, db_ops, connected_user, direction=SyncDirection.IMPORT)

    assert run.status == RunStatus.SUCCESS
    assert run.result.processed == 1
    assert run.result.created == 1
    assert run.result.updated == 0

    tasks = db_ops.get_tasks(connected_user)
    assert [task.title for task in tasks] == ["Dentist"]
    record = db_ops.get_sync_record_by_event(connected_user, "evt_1")
    assert record.task_id == tasks[0].id
    assert record.calendar_id == "primary"

    log = db_ops.get_sync_log(UUID(run.sync_id))
    assert log.status == "success"
    assert log.events_created == 1

    config = db_ops.get_sync_config(connected_user)
    assert config.sync_status == "success"
    assert config.last_sync_at == datetime(2026, 3, 1, 12, 0)


@pytest.mark.asyncio
async def test_repeated_import_is_idempotent(orchestrator, db_ops, fake_client, connected_user):
    """A second run over the same event updates the bound task instead of duplicating it."""
    event = fake_client.add_event("primary", user_event("evt_1", NOW + timedelta(days=2)))
    await run_sync(orchestrator, db_ops, connected_user, direction=SyncDirection.IMPORT)

    event.summary = "Dentist (moved)"
    run = await run_sync(orchestrator, db_ops, connected_user, direction=SyncDirection.IMPORT)

    assert run.result.created == 0
    assert run.result.updated == 1
    tasks = db_ops.get_tasks(connected_user)
    assert len(tasks) == 1
    assert tasks[0].title == "Dentist (moved)"
    assert len(ledger_entries(db_ops, connected_user)) == 1


@pytest.mark.asyncio
async def test_excluded_events_are_processed_but_not_imported(orchestrator, db_ops, fake_client, connected_user):
    start = NOW + timedelta(days=3)
    fake_client.add_event("primary", user_event("evt_1", start, summary="Birthday of Alex"))
    fake_client.add_event("primary", user_event("evt_2", start, visibility="private"))
    fake_client.add_event("primary", user_event("evt_3", start, status="cancelled"))

    run = await run_sync(orchestrator, db_ops, connected_user, direction=SyncDirection.IMPORT)

    assert run.result.processed == 3
    assert run.result.created == 0
    assert db_ops.get_tasks(connected_user) == []


@pytest.mark.asyncio
async def test_invalid_event_is_isolated(orchestrator, db_ops, fake_client, connected_user):
    """One malformed event yields a validation error; the rest of the batch proceeds."""
    start = NOW + timedelta(days=2)
    fake_client.add_event("primary", user_event("evt_bad", start, hours=-1))
    fake_client.add_event("primary", user_event("evt_good", start))

    run = await run_sync(orchestrator, db_ops, connected_user, direction=SyncDirection.IMPORT)

    assert run.status == RunStatus.PARTIAL
    assert run.result.processed == 2
    assert run.result.created == 1
    assert len(run.result.errors) == 1
    error = run.result.errors[0]
    assert error.kind == SyncErrorKind.VALIDATION_ERROR
    assert error.external_event_id == "evt_bad"
    assert db_ops.get_sync_log(UUID(run.sync_id)).status == "partial"
    assert db_ops.get_sync_config(connected_user).sync_status == "error"


@pytest.mark.asyncio
async def test_failing_event_does_not_stop_the_batch(orchestrator, db_ops, fake_client, connected_user):
    """The second of five events cannot be stored; the other four are imported."""
    for index in range(1, 6):
        fake_client.add_event(
            "primary", user_event(f"evt_{index}", NOW + timedelta(days=index), summary=f"Event {index}")
        )
    create_task = db_ops.create_task

    def create_task_or_fail(user_id, fields):
        if fields["title"] == "Event 2":
            raise OperationalError(
                "INSERT INTO tasks (title, user_id) VALUES (?, ?)",
                ("Event 2", user_id),
                Exception("database is locked"),
            )
        return create_task(user_id, fields)

    with patch.object(db_ops, "create_task", side_effect=create_task_or_fail):
        run = await run_sync(orchestrator, db_ops, connected_user, direction=SyncDirection.IMPORT)

    assert run.status == RunStatus.PARTIAL
    assert run.result.processed == 5
    assert run.result.created == 4
    assert sorted(task.title for task in db_ops.get_tasks(connected_user)) == [
        "Event 1", "Event 3", "Event 4", "Event 5"
    ]
    assert run.result.to_response()["errors"] == [{
        "type": "api_error",
        "message": "Failed to import event",
        "external_event_id": "evt_2",
    }]


@pytest.mark.asyncio
async def test_task_load_failure_hides_database_details(orchestrator, db_ops, fake_client, connected_user):
    error = OperationalError("SELECT tasks.title FROM tasks", {}, Exception("disk I/O error"))

    with patch.object(db_ops, "get_tasks_in_window", side_effect=error):
        run = await run_sync(orchestrator, db_ops, connected_user, direction=SyncDirection.EXPORT)

    assert run.status == RunStatus.ERROR
    assert [e.message for e in run.result.errors] == ["Failed to load tasks"]
    assert fake_client.creates == []


@pytest.mark.asyncio
async def test_unexpected_failure_is_reported_generically(orchestrator, db_ops, fake_client, connected_user):
    with patch.object(db_ops, "get_tokens", side_effect=RuntimeError("connection to 10.0.0.5 refused")):
        run = await run_sync(orchestrator, db_ops, connected_user)

    assert run.status == RunStatus.ERROR
    assert [(e.kind, e.message) for e in run.result.errors] == [(SyncErrorKind.API_ERROR, "Sync failed")]
    assert db_ops.try_begin_sync(connected_user) is True


# Export pass and loop prevention

@pytest.mark.asyncio
async def test_export_creates_event_with_marker(orchestrator, db_ops, fake_client, connected_user):
    task = make_task(db_ops, connected_user, "Write report", NOW + timedelta(days=1))

    run = await run_sync(orchestrator, db_ops, connected_user, direction=SyncDirection.EXPORT)

    assert run.result.processed == 1
    assert run.result.created == 1
    created = fake_client.events["primary"][0]
    assert created.summary == "Write report"
    assert created.provenance.task_id == str(task.id)
    record = db_ops.get_sync_record_by_task(connected_user, task.id, "primary")
    assert record.external_event_id == created.id


@pytest.mark.asyncio
async def test_exported_events_are_not_imported_back(orchestrator, db_ops, fake_client, connected_user):
    """Events written by the export pass carry the marker and are skipped on import."""
    make_task(db_ops, connected_user, "Write report", NOW + timedelta(days=1))

    first = await run_sync(orchestrator, db_ops, connected_user)
    second = await run_sync(orchestrator, db_ops, connected_user)

    assert first.result.created == 1
    assert second.result.processed == 2
    assert second.result.created == 0
    assert second.result.updated == 1
    assert len(db_ops.get_tasks(connected_user)) == 1
    assert len(fake_client.events["primary"]) == 1
    assert len(fake_client.creates) == 1


@pytest.mark.asyncio
async def test_export_failure_is_isolated_per_task(orchestrator, db_ops, fake_client, connected_user):
    good = make_task(db_ops, connected_user, "Good", NOW + timedelta(days=1))
    bad = make_task(db_ops, connected_user, "Bad", NOW + timedelta(days=2))
    fake_client.fail_create_titles = {"Bad"}

    run = await run_sync(orchestrator, db_ops, connected_user, direction=SyncDirection.EXPORT)

    assert run.status == RunStatus.PARTIAL
    assert run.result.processed == 2
    assert run.result.created == 1
    assert [(e.kind, e.task_id) for e in run.result.errors] == [(SyncErrorKind.API_ERROR, str(bad.id))]
    assert db_ops.get_sync_record_by_task(connected_user, good.id) is not None
    assert db_ops.get_sync_record_by_task(connected_user, bad.id) is None


@pytest.mark.asyncio
async def test_export_self_heals_failed_update(orchestrator, db_ops, fake_client, connected_user):
    """A bound event that can no longer be updated is replaced and the ledger repointed."""
    task = make_task(db_ops, connected_user, "Write report", NOW + timedelta(days=1))
    await run_sync(orchestrator, db_ops, connected_user, direction=SyncDirection.EXPORT)
    original_id = db_ops.get_sync_record_by_task(connected_user, task.id).external_event_id
    fake_client.fail_update_ids = {original_id}

    run = await run_sync(orchestrator, db_ops, connected_user, direction=SyncDirection.EXPORT)

    assert run.status == RunStatus.SUCCESS
    assert run.result.created == 1
    assert run.result.updated == 0
    record = db_ops.get_sync_record_by_task(connected_user, task.id, "primary")
    assert record.external_event_id != original_id
    assert record.external_event_id == fake_client.creates[-1]


# Windows

@pytest.mark.asyncio
async def test_import_window_boundaries(orchestrator, db_ops, fake_client, connected_user):
    """Import covers events overlapping [now - 1 month, now + 3 months]."""
    window_start = datetime(2026, 2, 1, 12, 0, tzinfo=timezone.utc)
    window_end = datetime(2026, 6, 1, 12, 0, tzinfo=timezone.utc)
    fake_client.add_event("primary", user_event("old", window_start - timedelta(hours=2)))
    fake_client.add_event("primary", user_event("edge", window_start - timedelta(minutes=30)))
    fake_client.add_event("primary", user_event("last", window_end))
    fake_client.add_event("primary", user_event("future", window_end + timedelta(hours=1)))

    run = await run_sync(orchestrator, db_ops, connected_user, direction=SyncDirection.IMPORT)

    assert run.result.processed == 2
    assert db_ops.get_sync_record_by_event(connected_user, "edge") is not None
    assert db_ops.get_sync_record_by_event(connected_user, "last") is not None
    assert db_ops.get_sync_record_by_event(connected_user, "old") is None


@pytest.mark.asyncio
async def test_export_window_boundaries(orchestrator, db_ops, fake_client, connected_user):
    """Export covers tasks inside [now - 1 week, now + 1 month]."""
    window_start = datetime(2026, 2, 22, 12, 0, tzinfo=timezone.utc)
    window_end = datetime(2026, 4, 1, 12, 0, tzinfo=timezone.utc)
    make_task(db_ops, connected_user, "at start", window_start)
    make_task(db_ops, connected_user, "too early", window_start - timedelta(hours=1))
    make_task(db_ops, connected_user, "at end", window_end - timedelta(hours=1))
    make_task(db_ops, connected_user, "too late", window_end)
    make_task(db_ops, connected_user, "undated", None)

    run = await run_sync(orchestrator, db_ops, connected_user, direction=SyncDirection.EXPORT)

    assert run.result.processed == 2
    assert sorted(e.summary for e in fake_client.events["primary"]) == ["at end", "at start"]


# Dry run

@pytest.mark.asyncio
async def test_dry_run_reports_without_mutating(orchestrator, db_ops, fake_client, connected_user):
    fake_client.add_event("primary", user_event("evt_1", NOW + timedelta(days=2)))
    make_task(db_ops, connected_user, "Write report", NOW + timedelta(days=1))

    run = await run_sync(orchestrator, db_ops, connected_user, dry_run=True)

    assert run.dry_run is True
    assert run.result.processed == 2
    assert run.result.created == 2
    assert len(db_ops.get_tasks(connected_user)) == 1
    assert ledger_entries(db_ops, connected_user) == []
    assert fake_client.creates == []
    assert fake_client.updates == []
    assert db_ops.get_sync_log(UUID(run.sync_id)).run_metadata["dry_run"] is True


@pytest.mark.asyncio
async def test_dry_run_counts_updates_for_bound_items(orchestrator, db_ops, fake_client, connected_user):
    event = fake_client.add_event("primary", user_event("evt_1", NOW + timedelta(days=2)))
    await run_sync(orchestrator, db_ops, connected_user, direction=SyncDirection.IMPORT)
    event.summary = "Changed upstream"

    run = await run_sync(orchestrator, db_ops, connected_user, direction=SyncDirection.IMPORT, dry_run=True)

    assert run.result.updated == 1
    assert db_ops.get_tasks(connected_user)[0].title == "Dentist"


# Tokens

@pytest.mark.asyncio
async def test_expired_token_is_refreshed_and_stored(
    orchestrator, db_ops, fake_client, encryption_service, connected_user
):
    fake_client.token_valid = False
    fake_client.add_event("primary", user_event("evt_1", NOW + timedelta(days=2)))

    run = await run_sync(orchestrator, db_ops, connected_user, direction=SyncDirection.IMPORT)

    assert run.status == RunStatus.SUCCESS
    assert fake_client.refresh_calls == 1
    assert db_ops.get_tokens(connected_user, encryption_service).access_token == "refreshed-access"


@pytest.mark.asyncio
async def test_refresh_failure_aborts_run(
    orchestrator, db_ops, fake_client, mock_notification_service, connected_user
):
    """A failed refresh stops the run with one token error and releases the lease."""
    fake_client.token_valid = False
    fake_client.refresh_error = TokenError("invalid_grant")
    make_task(db_ops, connected_user, "Write report", NOW + timedelta(days=1))

    run = await run_sync(orchestrator, db_ops, connected_user)

    assert run.status == RunStatus.ERROR
    assert [error.kind for error in run.result.errors] == [SyncErrorKind.TOKEN_ERROR]
    assert fake_client.list_calls == []
    assert fake_client.creates == []
    mock_notification_service.send_critical_error_notification.assert_awaited_once()
    assert db_ops.get_sync_log(UUID(run.sync_id)).status == "error"
    assert db_ops.get_sync_config(connected_user).sync_status == "error"
    assert db_ops.try_begin_sync(connected_user) is True


@pytest.mark.asyncio
async def test_missing_refresh_token_aborts_run(
    orchestrator, db_ops, fake_client, encryption_service, mock_notification_service
):
    """An expired access token without a refresh token stops the run before any listing."""
    db_ops.store_tokens("user_2", OAuthTokens("expired-access"), encryption_service)
    db_ops.update_sync_config("user_2", enabled=True)
    fake_client.token_valid = False
    fake_client.add_event("primary", user_event("evt_1", NOW + timedelta(days=2)))

    run = await run_sync(orchestrator, db_ops, "user_2")

    assert run.status == RunStatus.ERROR
    assert run.result.processed == 0
    assert [error.kind for error in run.result.errors] == [SyncErrorKind.TOKEN_ERROR]
    assert fake_client.list_calls == []
    assert db_ops.get_tasks("user_2") == []
    mock_notification_service.send_critical_error_notification.assert_awaited_once()


@pytest.mark.asyncio
async def test_listing_failure_aborts_remaining_work(orchestrator, db_ops, fake_client, connected_user):
    fake_client.list_error = CalendarAPIError(503, "Backend Error")
    make_task(db_ops, connected_user, "Write report", NOW + timedelta(days=1))

    run = await run_sync(orchestrator, db_ops, connected_user)

    assert run.status == RunStatus.ERROR
    assert len(run.result.errors) == 1
    assert run.result.errors[0].kind == SyncErrorKind.API_ERROR
    assert "primary" in run.result.errors[0].message
    assert fake_client.creates == []


# Calendar selection

@pytest.mark.asyncio
async def test_calendar_override_limits_import_and_targets_export(orchestrator, db_ops, fake_client, connected_user):
    fake_client.add_event("primary", user_event("evt_p", NOW + timedelta(days=2)))
    fake_client.add_event("work", user_event("evt_w", NOW + timedelta(days=2)))
    task = make_task(db_ops, connected_user, "Write report", NOW + timedelta(days=1))

    await run_sync(orchestrator, db_ops, connected_user, calendar_ids=["work"])

    assert fake_client.list_calls == ["work"]
    assert db_ops.get_sync_record_by_event(connected_user, "evt_p") is None
    assert db_ops.get_sync_record_by_task(connected_user, task.id, "work") is not None


@pytest.mark.asyncio
async def test_configured_calendars_are_used(orchestrator, db_ops, fake_client, connected_user):
    db_ops.update_sync_config(connected_user, selected_calendars=["team", "primary"])
    task = make_task(db_ops, connected_user, "Write report", NOW + timedelta(days=1))

    await run_sync(orchestrator, db_ops, connected_user)

    assert fake_client.list_calls == ["team", "primary"]
    assert db_ops.get_sync_record_by_task(connected_user, task.id, "team") is not None


# Preconditions and lease

@pytest.mark.asyncio
async def test_precondition_errors(orchestrator, db_ops):
    with pytest.raises(SyncNotConfiguredError):
        await orchestrator.run("nobody", None, SyncRequest())

    db_ops.get_or_create_sync_config("disabled_user")
    with pytest.raises(SyncNotConfiguredError):
        await run_sync(orchestrator, db_ops, "disabled_user")

    db_ops.get_or_create_sync_config("no_token_user")
    db_ops.update_sync_config("no_token_user", enabled=True)
    with pytest.raises(SyncAuthRequiredError):
        await run_sync(orchestrator, db_ops, "no_token_user")


@pytest.mark.asyncio
async def test_run_in_progress_is_rejected(orchestrator, db_ops, fake_client, connected_user):
    """The lease is checked atomically even when the caller holds a stale config."""
    stale_config = db_ops.get_sync_config(connected_user)
    assert db_ops.try_begin_sync(connected_user) is True

    with pytest.raises(SyncInProgressError):
        await orchestrator.run(connected_user, stale_config, SyncRequest())
    with pytest.raises(SyncInProgressError):
        await run_sync(orchestrator, db_ops, connected_user)

    assert db_ops.get_sync_logs(connected_user) == []
    assert fake_client.list_calls == []


@pytest.mark.asyncio
async def test_stale_lease_is_taken_over(orchestrator, db_ops, connected_user):
    """A lease left behind by a run that never finished does not block the user forever."""
    assert db_ops.try_begin_sync(connected_user) is True
    with db_ops.get_session() as session:
        session.execute(
            update(CalendarSyncConfig)
            .where(CalendarSyncConfig.user_id == connected_user)
            .values(updated_at=datetime(2000, 1, 1))
        )
        session.commit()

    run = await run_sync(orchestrator, db_ops, connected_user)

    assert run.status == RunStatus.SUCCESS
    assert db_ops.get_sync_config(connected_user).sync_status == "success"


@pytest.mark.asyncio
async def test_cancellation_finalizes_log_and_releases_lease(orchestrator, db_ops, fake_client, connected_user):
    fake_client.list_error = asyncio.CancelledError()

    with pytest.raises(asyncio.CancelledError):
        await run_sync(orchestrator, db_ops, connected_user)

    logs = db_ops.get_sync_logs(connected_user)
    assert len(logs) == 1
    assert logs[0].status == "error"
    assert logs[0].completed_at is not None
    assert db_ops.get_sync_config(connected_user).sync_status == "error"
