from __future__ import annotations

import enum
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, time, timezone
from typing import Any, Callable

from dateutil.parser import isoparse
from dateutil.relativedelta import relativedelta

from agenda.errors import SyncError


EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
UNTITLED = "Untitled"
DEFAULT_SCOPES = [
    "https://www.googleapis.com/auth/calendar",
    "https://www.googleapis.com/auth/calendar.events",
]

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _ensure_tz(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def parse_iso_datetime(value: str | datetime | None) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return _ensure_tz(value).astimezone(timezone.utc)
    text = str(value).strip()
    if not text:
        return None
    return _ensure_tz(isoparse(text)).astimezone(timezone.utc)


def serialize_datetime(value: datetime | None) -> str | None:
    if value is None:
        return None
    return _ensure_tz(value).astimezone(timezone.utc).isoformat()


def whole_day_to_datetime(value: date, is_end: bool = False) -> datetime:
    # Whole-day dates are pinned to UTC regardless of the user's timezone.
    if is_end:
        return datetime.combine(value, time(23, 59, 59), tzinfo=timezone.utc)
    return datetime.combine(value, time.min, tzinfo=timezone.utc)


def sync_window(now: datetime, months_back: int = 1, months_ahead: int = 3) -> tuple[datetime, datetime]:
    now_utc = _ensure_tz(now).astimezone(timezone.utc)
    return now_utc - relativedelta(months=months_back), now_utc + relativedelta(months=months_ahead)


class EventCategory(str, enum.Enum):
    MEETING = "meeting"
    DEVELOPMENT = "development"
    TASK = "task"
    BREAK = "break"
    TRAINING = "training"
    UNAVAILABLE = "unavailable"
    DEADLINE = "deadline"
    REMINDER = "reminder"
    OTHER = "other"

    @classmethod
    def parse(cls, value: str | EventCategory | None) -> EventCategory:
        """Accept either casing used by callers; anything unknown is OTHER."""
        if isinstance(value, EventCategory):
            return value
        text = str(value or "").strip().lower()
        for member in cls:
            if member.value == text:
                return member
        return cls.OTHER


class SyncState(str, enum.Enum):
    LOCAL = "LOCAL"
    SYNCED = "SYNCED"
    REMOTE_ONLY = "REMOTE_ONLY"
    CONFLICT = "CONFLICT"


@dataclass
class GoogleConfig:
    client_id: str = ""
    client_secret: str = ""
    redirect_uri: str = ""
    calendar_id: str = "primary"
    api_base_url: str = "https://www.googleapis.com/calendar/v3"
    auth_url: str = "https://accounts.google.com/o/oauth2/v2/auth"
    token_url: str = "https://oauth2.googleapis.com/token"
    revoke_url: str = "https://oauth2.googleapis.com/revoke"
    scopes: list[str] = field(default_factory=lambda: list(DEFAULT_SCOPES))

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "GoogleConfig":
        data = data or {}
        defaults = cls()
        scopes = [str(x).strip() for x in data.get("scopes", DEFAULT_SCOPES) or [] if str(x).strip()]
        return cls(
            client_id=str(data.get("client_id", "")).strip(),
            client_secret=str(data.get("client_secret", "")).strip(),
            redirect_uri=str(data.get("redirect_uri", "")).strip(),
            calendar_id=str(data.get("calendar_id", "primary")).strip() or "primary",
            api_base_url=str(data.get("api_base_url", defaults.api_base_url)).strip().rstrip("/")
            or defaults.api_base_url,
            auth_url=str(data.get("auth_url", defaults.auth_url)).strip() or defaults.auth_url,
            token_url=str(data.get("token_url", defaults.token_url)).strip() or defaults.token_url,
            revoke_url=str(data.get("revoke_url", defaults.revoke_url)).strip() or defaults.revoke_url,
            scopes=scopes or list(DEFAULT_SCOPES),
        )


_FALSE_STRINGS = {"false", "no", "off", "0", ""}


def _as_bool(value: Any, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, str):
        return value.strip().lower() not in _FALSE_STRINGS
    return bool(value)


@dataclass
class SyncConfig:
    window_months_back: int = 1
    window_months_ahead: int = 3
    request_timeout_seconds: int = 30
    max_results: int = 2500
    push_local_edits: bool = True
    sync_on_connect: bool = True

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SyncConfig":
        data = data or {}
        return cls(
            window_months_back=max(0, int(data.get("window_months_back", 1))),
            window_months_ahead=max(1, int(data.get("window_months_ahead", 3))),
            request_timeout_seconds=max(1, int(data.get("request_timeout_seconds", 30))),
            max_results=min(2500, max(1, int(data.get("max_results", 2500)))),
            push_local_edits=_as_bool(data.get("push_local_edits"), True),
            sync_on_connect=_as_bool(data.get("sync_on_connect"), True),
        )


@dataclass
class AppConfig:
    google: GoogleConfig = field(default_factory=GoogleConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AppConfig":
        data = data or {}
        return cls(
            google=GoogleConfig.from_dict(data.get("google")),
            sync=SyncConfig.from_dict(data.get("sync")),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class Event:
    id: str
    user_id: str
    title: str
    start_at: datetime
    end_at: datetime
    description: str | None = None
    category: EventCategory = EventCategory.OTHER
    remote_id: str | None = None
    sync_state: SyncState = SyncState.LOCAL
    last_synced_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "userId": self.user_id,
            "title": self.title,
            "description": self.description,
            "type": self.category.value,
            "startDate": serialize_datetime(self.start_at),
            "endDate": serialize_datetime(self.end_at),
            "googleEventId": self.remote_id,
            "syncStatus": self.sync_state.value,
            "lastSyncedAt": serialize_datetime(self.last_synced_at),
            "createdAt": serialize_datetime(self.created_at),
            "updatedAt": serialize_datetime(self.updated_at),
        }

    @property
    def changed_since_sync(self) -> bool:
        if self.updated_at is None:
            return False
        return self.updated_at > (self.last_synced_at or EPOCH)


@dataclass
class RemoteEvent:
    id: str
    summary: str = ""
    description: str | None = None
    start_date_time: datetime | None = None
    start_date: date | None = None
    end_date_time: datetime | None = None
    end_date: date | None = None
    color_id: str | None = None
    updated: datetime | None = None
    status: str = "confirmed"
    raw: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_api(cls, item: dict[str, Any]) -> "RemoteEvent":
        start = item.get("start") or {}
        end = item.get("end") or {}
        return cls(
            id=str(item.get("id", "")),
            summary=str(item.get("summary") or ""),
            description=item.get("description"),
            start_date_time=parse_iso_datetime(start.get("dateTime")),
            start_date=date.fromisoformat(start["date"]) if start.get("date") else None,
            end_date_time=parse_iso_datetime(end.get("dateTime")),
            end_date=date.fromisoformat(end["date"]) if end.get("date") else None,
            color_id=str(item["colorId"]) if item.get("colorId") else None,
            updated=parse_iso_datetime(item.get("updated")),
            status=str(item.get("status") or "confirmed"),
            raw=dict(item),
        )

    @property
    def is_cancelled(self) -> bool:
        return self.status.lower() == "cancelled"

    @property
    def start_at(self) -> datetime | None:
        if self.start_date_time is not None:
            return self.start_date_time
        if self.start_date is not None:
            return whole_day_to_datetime(self.start_date)
        return None

    @property
    def end_at(self) -> datetime | None:
        if self.end_date_time is not None:
            return self.end_date_time
        if self.end_date is not None:
            return whole_day_to_datetime(self.end_date, is_end=True)
        return None


@dataclass
class SyncCredential:
    user_id: str
    access_token: str | None = None
    refresh_token: str | None = None
    token_expiry: datetime | None = None
    calendar_id: str = "primary"
    last_sync_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def is_expired(self, now: datetime) -> bool:
        return self.token_expiry is not None and now >= self.token_expiry


@dataclass
class ConflictRecord:
    event_id: str
    title: str
    local_updated: datetime | None
    remote_updated: datetime | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "eventId": self.event_id,
            "title": self.title,
            "localUpdated": serialize_datetime(self.local_updated),
            "googleUpdated": serialize_datetime(self.remote_updated),
        }


@dataclass
class SyncSummary:
    imported: int = 0
    updated: int = 0
    deleted: int = 0
    conflicts: list[ConflictRecord] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "imported": self.imported,
            "updated": self.updated,
            "deleted": self.deleted,
            "conflicts": [item.to_dict() for item in self.conflicts],
        }


@dataclass
class SyncResult:
    status: str
    message: str
    duration_ms: int
    trigger: str
    user_id: str
    summary: SyncSummary = field(default_factory=SyncSummary)
    error: SyncError | None = None
    run_at: datetime = field(default_factory=utc_now)

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class ResolveResult:
    event_id: str
    choice: str
    event: Event | None = None
    deleted: bool = False
    error: SyncError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None
