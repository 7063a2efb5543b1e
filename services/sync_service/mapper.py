"""Conversion between tasks and Google Calendar events.

Every function here is pure: no database or network access. Events produced
by `task_to_event` always carry the provenance marker that `is_internal_event`
checks on import, which is what keeps exported tasks from being imported back.
"""

import re
from datetime import datetime, time, timedelta, timezone
from typing import Any, List, Optional

from shared.models import (
    EventTime, ExternalEvent, ProvenanceMarker, TaskFields, to_utc, utcnow
)

TASK_PRIORITIES = ("low", "medium", "high", "urgent")
TASK_STATUSES = ("pending", "in_progress", "completed", "cancelled")

DEFAULT_EVENT_DURATION = timedelta(hours=2)
MIN_ESTIMATED_MINUTES = 15
MAX_ESTIMATED_MINUTES = 24 * 60
MAX_TITLE_LENGTH = 500

INFO_SECTION_HEADER = "--- Task Information ---"
INFO_SECTION_FOOTER = "Managed by Task Calendar Sync"

PRIORITY_COLORS = {
    "urgent": "11",  # red
    "high": "6",     # orange
    "medium": "5",   # yellow
    "low": "2",      # green
}
DEFAULT_COLOR_ID = "1"
COLOR_PRIORITIES = {color: priority for priority, color in PRIORITY_COLORS.items()}

PRIORITY_REMINDERS = {
    "urgent": [{"method": "popup", "minutes": 15}, {"method": "popup", "minutes": 60}],
    "high": [{"method": "popup", "minutes": 30}],
    "medium": [{"method": "popup", "minutes": 60}],
    "low": [],
}

EXCLUDED_TITLE_PATTERNS = (
    re.compile(r"^(Birthday|Anniversar(y|ies))", re.IGNORECASE),
    re.compile(r"^(Holiday|Vacation)", re.IGNORECASE),
    re.compile(r"^(Meeting|会議).*recurring", re.IGNORECASE),
)


class TaskValidationError(ValueError):
    """Raised when an event cannot be turned into a valid task."""


def task_to_event(task: Any, calendar_id: str, now: Optional[datetime] = None) -> ExternalEvent:
    """
    Build the calendar event for a task.

    Args:
        task: Task record (tasks table row or any object with the same attributes)
        calendar_id: Target calendar; the mapping is the same for every calendar
        now: Reference time used when the task has no start date

    Returns:
        ExternalEvent carrying the provenance marker
    """
    start = to_utc(task.start_date) if task.start_date else (now or utcnow())
    end = to_utc(task.due_date) if task.due_date else start + DEFAULT_EVENT_DURATION
    if end < start:
        end = start + DEFAULT_EVENT_DURATION

    if _is_all_day_span(start, end):
        event_start = EventTime(date=start.date())
        # Google treats an all-day end date as exclusive
        event_end = EventTime(date=end.date() + timedelta(days=1))
    else:
        event_start = EventTime(date_time=start, time_zone="UTC")
        event_end = EventTime(date_time=end, time_zone="UTC")

    category = getattr(task, "category", None)
    marker = ProvenanceMarker(
        task_id=str(task.id),
        priority=task.priority,
        status=task.status,
        category_id=str(task.category_id) if task.category_id else None,
        estimated_minutes=task.estimated_minutes,
    )

    return ExternalEvent(
        summary=task.title,
        description=_build_description(task, category),
        start=event_start,
        end=event_end,
        color_id=PRIORITY_COLORS.get(task.priority, DEFAULT_COLOR_ID),
        location=category.name if category is not None else None,
        reminders={
            "useDefault": False,
            "overrides": PRIORITY_REMINDERS.get(task.priority, PRIORITY_REMINDERS["medium"]),
        },
        private_properties=marker.to_private_properties(),
    )


def event_to_task(event: ExternalEvent, user_id: str, now: Optional[datetime] = None) -> TaskFields:
    """
    Build task fields from a calendar event.

    Missing optional fields fall back to defaults: no title gives
    "Untitled Event", no start uses `now`, no end means two hours after start.
    The owning user is supplied by the caller when the fields are stored.

    Raises:
        TaskValidationError: If the event ends before it starts
    """
    start = _event_start(event) or (now or utcnow())
    end = _event_end(event, start)
    if end < start:
        raise TaskValidationError(f"Event {event.id} for user {user_id} ends before it starts")

    marker = event.provenance

    if marker is not None and marker.estimated_minutes:
        estimated_minutes = marker.estimated_minutes
    else:
        estimated_minutes = _duration_minutes(start, end)

    if marker is not None and marker.priority in TASK_PRIORITIES:
        priority = marker.priority
    else:
        priority = infer_priority(event)

    status = marker.status if marker is not None and marker.status in TASK_STATUSES else "pending"

    title = (event.summary or "").strip() or "Untitled Event"

    return TaskFields(
        title=title[:MAX_TITLE_LENGTH],
        description=extract_description(event.description),
        priority=priority,
        status=status,
        start_date=start,
        due_date=end,
        estimated_minutes=estimated_minutes,
        category_id=marker.category_id if marker is not None else None,
        notes=f"Google Calendar: {event.html_link or 'N/A'}",
    )


def should_exclude(event: ExternalEvent) -> bool:
    """True for hidden, deleted or unschedulable events, which are never imported."""
    if event.deleted or event.hidden:
        return True
    if event.start is None or event.end is None:
        return True
    if event.start.resolve() is None or event.end.resolve() is None:
        return True

    summary = event.summary or ""
    return any(pattern.search(summary) for pattern in EXCLUDED_TITLE_PATTERNS)


def is_internal_event(event: ExternalEvent) -> bool:
    """True when the event carries this system's provenance marker."""
    return event.provenance is not None


def event_overlaps(event: ExternalEvent, window_start: datetime, window_end: datetime) -> bool:
    """True when the event's time span intersects [window_start, window_end]."""
    start = _event_start(event)
    if start is None:
        # Unschedulable events stay candidates so that exclusion counts them
        return True
    end = _event_end(event, start)
    return start <= window_end and end >= window_start


def infer_priority(event: ExternalEvent) -> str:
    """Guess a priority from the event colour, then from title keywords."""
    if event.color_id in COLOR_PRIORITIES:
        return COLOR_PRIORITIES[event.color_id]

    title = (event.summary or "").lower()
    if "urgent" in title or "緊急" in title or "!!!" in title:
        return "urgent"
    if "high" in title or "重要" in title or "!!" in title:
        return "high"
    if "low" in title or "!" in title:
        return "low"
    return "medium"


def extract_description(description: Optional[str]) -> str:
    """Strip the task information section appended by task_to_event."""
    if not description:
        return ""
    index = description.find(INFO_SECTION_HEADER)
    if index != -1:
        return description[:index].strip()
    return description


def _build_description(task: Any, category: Any) -> str:
    parts: List[str] = []
    if task.description:
        parts.append(task.description)

    parts.append(f"\n{INFO_SECTION_HEADER}")
    parts.append(f"Priority: {task.priority}")
    parts.append(f"Status: {task.status}")

    if task.estimated_minutes:
        hours, minutes = divmod(task.estimated_minutes, 60)
        parts.append(f"Estimated: {f'{hours}h ' if hours else ''}{minutes}m")

    if category is not None:
        parts.append(f"Category: {category.name}")

    if task.notes:
        parts.append(f"\nNotes: {task.notes}")

    parts.append(f"\n{INFO_SECTION_FOOTER}")
    return "\n".join(parts)


def _is_all_day_span(start: datetime, end: datetime) -> bool:
    return (
        end - start >= timedelta(hours=24)
        and start.hour == 0 and start.minute == 0
        and end.hour == 23 and end.minute == 59
    )


def _event_start(event: ExternalEvent) -> Optional[datetime]:
    return event.start.resolve() if event.start is not None else None


def _event_end(event: ExternalEvent, start: datetime) -> datetime:
    if event.end is not None and event.end.date_time is not None:
        return to_utc(event.end.date_time)
    if event.end is not None and event.end.date is not None:
        # All-day end dates are exclusive: finish at the end of the previous day
        last_day = event.end.date - timedelta(days=1)
        return datetime.combine(last_day, time(23, 59, 59), tzinfo=timezone.utc)
    return start + DEFAULT_EVENT_DURATION


def _duration_minutes(start: datetime, end: datetime) -> int:
    minutes = int((end - start).total_seconds() // 60)
    return max(MIN_ESTIMATED_MINUTES, min(minutes, MAX_ESTIMATED_MINUTES))
