"""Shared data models for the task to Google Calendar sync application."""

from dataclasses import dataclass, field
from datetime import date, datetime, time, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


# Provenance marker stamped into every event this engine writes, stored under
# the event's private extended properties.
ORIGIN_SYSTEM_ID = "task-calendar-sync"
PROVENANCE_ORIGIN_KEY = "tasksync_origin"
PROVENANCE_SOURCE_KEY = "tasksync_source"
PROVENANCE_TASK_ID_KEY = "tasksync_task_id"
PROVENANCE_PRIORITY_KEY = "tasksync_priority"
PROVENANCE_STATUS_KEY = "tasksync_status"
PROVENANCE_CATEGORY_KEY = "tasksync_category_id"
PROVENANCE_ESTIMATE_KEY = "tasksync_estimated_minutes"

MAX_SELECTED_CALENDARS = 10


class SyncDirection(str, Enum):
    IMPORT = "import"
    EXPORT = "export"
    BIDIRECTIONAL = "bidirectional"


class SyncStatus(str, Enum):
    """Configuration-level status; anything but SYNCING counts as idle."""
    IDLE = "idle"
    SYNCING = "syncing"
    ERROR = "error"
    SUCCESS = "success"


class RunStatus(str, Enum):
    """Final status of one sync run as written to its log entry."""
    SUCCESS = "success"
    PARTIAL = "partial"
    ERROR = "error"


class SyncErrorKind(str, Enum):
    TOKEN_ERROR = "token_error"
    API_ERROR = "api_error"
    VALIDATION_ERROR = "validation_error"


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def to_utc(value: datetime) -> datetime:
    """Normalize a datetime to aware UTC; naive values are taken as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_db_datetime(value: Optional[datetime]) -> Optional[datetime]:
    """Convert to the naive UTC form stored in DateTime columns."""
    if value is None:
        return None
    return to_utc(value).replace(tzinfo=None)


def parse_rfc3339(value: str) -> datetime:
    """Parse an RFC 3339 timestamp as returned by Google APIs."""
    return datetime.fromisoformat(value.replace('Z', '+00:00'))


@dataclass
class OAuthTokens:
    """OAuth credentials for the calendar service."""
    access_token: str
    refresh_token: Optional[str] = None
    token_type: str = "Bearer"
    scope: str = ""
    expires_at: Optional[datetime] = None


@dataclass
class EventTime:
    """Start or end of a calendar event: either an all-day date or a date-time."""
    date: Optional[date] = None
    date_time: Optional[datetime] = None
    time_zone: Optional[str] = None

    @property
    def is_all_day(self) -> bool:
        return self.date_time is None and self.date is not None

    def resolve(self) -> Optional[datetime]:
        """Return the instant as aware UTC, or None when nothing is set."""
        if self.date_time is not None:
            return to_utc(self.date_time)
        if self.date is not None:
            return datetime.combine(self.date, time.min, tzinfo=timezone.utc)
        return None

    @classmethod
    def from_google(cls, payload: Optional[Dict[str, Any]]) -> Optional["EventTime"]:
        if not payload:
            return None
        event_time = cls(time_zone=payload.get('timeZone'))
        try:
            if payload.get('dateTime'):
                event_time.date_time = parse_rfc3339(payload['dateTime'])
            elif payload.get('date'):
                event_time.date = date.fromisoformat(payload['date'])
        except ValueError:
            return None
        if event_time.date is None and event_time.date_time is None:
            return None
        return event_time

    def to_google(self) -> Dict[str, str]:
        if self.date_time is not None:
            payload = {"dateTime": self.date_time.isoformat()}
            if self.time_zone:
                payload["timeZone"] = self.time_zone
            return payload
        return {"date": self.date.isoformat()}


@dataclass
class ProvenanceMarker:
    """Tagged origin of an event written by this engine."""
    task_id: str
    origin: str = ORIGIN_SYSTEM_ID
    priority: Optional[str] = None
    status: Optional[str] = None
    category_id: Optional[str] = None
    estimated_minutes: Optional[int] = None

    def to_private_properties(self) -> Dict[str, str]:
        return {
            PROVENANCE_ORIGIN_KEY: self.origin,
            PROVENANCE_SOURCE_KEY: "true",
            PROVENANCE_TASK_ID_KEY: self.task_id,
            PROVENANCE_PRIORITY_KEY: self.priority or "",
            PROVENANCE_STATUS_KEY: self.status or "",
            PROVENANCE_CATEGORY_KEY: self.category_id or "",
            PROVENANCE_ESTIMATE_KEY: str(self.estimated_minutes) if self.estimated_minutes else "",
        }

    @classmethod
    def from_private_properties(cls, properties: Optional[Dict[str, str]]) -> Optional["ProvenanceMarker"]:
        """Read a marker back; returns None unless both origin and source flag match."""
        if not properties:
            return None
        if properties.get(PROVENANCE_SOURCE_KEY) != "true":
            return None
        if properties.get(PROVENANCE_ORIGIN_KEY) != ORIGIN_SYSTEM_ID:
            return None

        estimate = properties.get(PROVENANCE_ESTIMATE_KEY) or ""
        return cls(
            task_id=properties.get(PROVENANCE_TASK_ID_KEY, ""),
            origin=ORIGIN_SYSTEM_ID,
            priority=properties.get(PROVENANCE_PRIORITY_KEY) or None,
            status=properties.get(PROVENANCE_STATUS_KEY) or None,
            category_id=properties.get(PROVENANCE_CATEGORY_KEY) or None,
            estimated_minutes=int(estimate) if estimate.isdigit() else None,
        )


@dataclass
class ExternalEvent:
    """Represents an event in the external calendar."""
    id: Optional[str] = None
    summary: Optional[str] = None
    description: Optional[str] = None
    start: Optional[EventTime] = None
    end: Optional[EventTime] = None
    status: Optional[str] = None
    visibility: Optional[str] = None
    color_id: Optional[str] = None
    location: Optional[str] = None
    html_link: Optional[str] = None
    reminders: Optional[Dict[str, Any]] = None
    private_properties: Dict[str, str] = field(default_factory=dict)

    @property
    def deleted(self) -> bool:
        return self.status == "cancelled"

    @property
    def hidden(self) -> bool:
        return self.visibility == "private"

    @property
    def provenance(self) -> Optional[ProvenanceMarker]:
        return ProvenanceMarker.from_private_properties(self.private_properties)

    @classmethod
    def from_google(cls, payload: Dict[str, Any]) -> "ExternalEvent":
        extended = payload.get('extendedProperties') or {}
        return cls(
            id=payload.get('id'),
            summary=payload.get('summary'),
            description=payload.get('description'),
            start=EventTime.from_google(payload.get('start')),
            end=EventTime.from_google(payload.get('end')),
            status=payload.get('status'),
            visibility=payload.get('visibility'),
            color_id=payload.get('colorId'),
            location=payload.get('location'),
            html_link=payload.get('htmlLink'),
            reminders=payload.get('reminders'),
            private_properties=dict(extended.get('private') or {}),
        )

    def to_google(self) -> Dict[str, Any]:
        """Build a request body for event insert/update."""
        body: Dict[str, Any] = {"summary": self.summary or ""}
        if self.description is not None:
            body["description"] = self.description
        if self.start is not None:
            body["start"] = self.start.to_google()
        if self.end is not None:
            body["end"] = self.end.to_google()
        if self.color_id:
            body["colorId"] = self.color_id
        if self.location:
            body["location"] = self.location
        if self.reminders is not None:
            body["reminders"] = self.reminders
        if self.private_properties:
            body["extendedProperties"] = {"private": dict(self.private_properties)}
        return body


@dataclass
class CalendarInfo:
    """Entry of the user's calendar list."""
    id: str
    summary: str = ""
    description: Optional[str] = None
    primary: bool = False
    access_role: Optional[str] = None
    background_color: Optional[str] = None
    foreground_color: Optional[str] = None
    time_zone: Optional[str] = None
    hidden: bool = False
    deleted: bool = False

    @classmethod
    def from_google(cls, payload: Dict[str, Any]) -> "CalendarInfo":
        return cls(
            id=payload['id'],
            summary=payload.get('summary', ''),
            description=payload.get('description'),
            primary=bool(payload.get('primary', False)),
            access_role=payload.get('accessRole'),
            background_color=payload.get('backgroundColor'),
            foreground_color=payload.get('foregroundColor'),
            time_zone=payload.get('timeZone'),
            hidden=bool(payload.get('hidden', False)),
            deleted=bool(payload.get('deleted', False)),
        )


@dataclass
class TaskFields:
    """Task attributes produced from an external event."""
    title: str
    description: str = ""
    priority: str = "medium"
    status: str = "pending"
    start_date: Optional[datetime] = None
    due_date: Optional[datetime] = None
    estimated_minutes: Optional[int] = None
    category_id: Optional[str] = None
    notes: Optional[str] = None

    def to_row(self) -> Dict[str, Any]:
        """Column values for the tasks table."""
        return {
            "title": self.title,
            "description": self.description,
            "priority": self.priority,
            "status": self.status,
            "start_date": to_db_datetime(self.start_date),
            "due_date": to_db_datetime(self.due_date),
            "estimated_minutes": self.estimated_minutes,
            "category_id": self.category_id,
            "notes": self.notes,
        }


@dataclass
class SyncError:
    """One failure recorded during a sync run."""
    kind: SyncErrorKind
    message: str
    task_id: Optional[str] = None
    external_event_id: Optional[str] = None

    def to_dict(self) -> Dict[str, str]:
        data = {"type": self.kind.value, "message": self.message}
        if self.task_id is not None:
            data["task_id"] = self.task_id
        if self.external_event_id is not None:
            data["external_event_id"] = self.external_event_id
        return data


@dataclass
class SyncResult:
    """Aggregated counters and errors of a sync run or pass."""
    processed: int = 0
    created: int = 0
    updated: int = 0
    deleted: int = 0
    errors: List[SyncError] = field(default_factory=list)

    def to_response(self) -> Dict[str, Any]:
        return {
            "eventsProcessed": self.processed,
            "eventsCreated": self.created,
            "eventsUpdated": self.updated,
            "eventsDeleted": self.deleted,
            "errors": [error.to_dict() for error in self.errors],
        }


@dataclass
class SyncRequest:
    """Request to run a sync for one user."""
    direction: SyncDirection = SyncDirection.BIDIRECTIONAL
    calendar_ids: Optional[List[str]] = None
    dry_run: bool = False
    sync_type: str = "manual"  # manual, automatic


@dataclass
class SyncRun:
    """Outcome of SyncOrchestrator.run."""
    sync_id: str
    status: RunStatus
    result: SyncResult
    dry_run: bool = False
