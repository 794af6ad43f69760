from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import date, datetime, time, timezone
from typing import Any


DEFAULT_SERVER_URL = "https://caldav.icloud.com"
DEFAULT_PRODUCT_ID = "-//Family Hub//EN"
DEFAULT_CALENDAR_NAME = "Home"


def parse_date(value: str | date | None) -> date | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    if not text:
        return None
    return date.fromisoformat(text[:10])


def parse_time(value: str | time | None) -> time | None:
    if value is None:
        return None
    if isinstance(value, time):
        return value.replace(microsecond=0)
    text = str(value).strip()
    if not text:
        return None
    parts = text.split(":")
    if len(parts) not in {2, 3}:
        raise ValueError(f"Invalid time value: {value!r}")
    hour, minute = int(parts[0]), int(parts[1])
    second = int(parts[2]) if len(parts) == 3 else 0
    return time(hour, minute, second)


def format_time(value: time | None) -> str | None:
    if value is None:
        return None
    if value.second:
        return value.strftime("%H:%M:%S")
    return value.strftime("%H:%M")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class CalDAVConfig:
    server_url: str = DEFAULT_SERVER_URL
    timeout_seconds: int = 30
    preferred_calendar_name: str = DEFAULT_CALENDAR_NAME
    product_id: str = DEFAULT_PRODUCT_ID

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "CalDAVConfig":
        data = data or {}
        return cls(
            server_url=str(data.get("server_url", DEFAULT_SERVER_URL)).strip().rstrip("/")
            or DEFAULT_SERVER_URL,
            timeout_seconds=max(1, int(data.get("timeout_seconds", 30))),
            preferred_calendar_name=str(data.get("preferred_calendar_name", DEFAULT_CALENDAR_NAME)).strip()
            or DEFAULT_CALENDAR_NAME,
            product_id=str(data.get("product_id", DEFAULT_PRODUCT_ID)).strip() or DEFAULT_PRODUCT_ID,
        )


@dataclass
class SyncConfig:
    max_workers: int = 4
    include_color: bool = True

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SyncConfig":
        data = data or {}
        return cls(
            max_workers=max(1, int(data.get("max_workers", 4))),
            include_color=bool(data.get("include_color", True)),
        )


@dataclass
class LoggingConfig:
    level: str = "INFO"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "LoggingConfig":
        data = data or {}
        return cls(level=str(data.get("level", "INFO")).strip().upper() or "INFO")


@dataclass
class AppConfig:
    caldav: CalDAVConfig = field(default_factory=CalDAVConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AppConfig":
        data = data or {}
        return cls(
            caldav=CalDAVConfig.from_dict(data.get("caldav")),
            sync=SyncConfig.from_dict(data.get("sync")),
            logging=LoggingConfig.from_dict(data.get("logging")),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def default_app_config() -> AppConfig:
    return AppConfig()


@dataclass
class CalendarEventData:
    """A locally stored calendar event, as read from the record store.

    Dates and times are floating: they carry no timezone and are sent to the
    remote calendar exactly as entered.
    """

    title: str
    date: date
    description: str | None = None
    time: time | None = None
    end_date: date | None = None
    end_time: time | None = None
    all_day: bool = False
    color: str | None = None
    id: int | None = None
    recurring_group_id: str | None = None

    @property
    def is_all_day(self) -> bool:
        # A timed event without a start time cannot be placed on the clock.
        return self.all_day or self.time is None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CalendarEventData":
        event_date = parse_date(data.get("date"))
        if event_date is None:
            raise ValueError("event date is required")
        raw_id = data.get("id")
        return cls(
            id=int(raw_id) if raw_id is not None else None,
            title=str(data.get("title", "") or ""),
            description=data.get("description") or None,
            date=event_date,
            time=parse_time(data.get("time")),
            end_date=parse_date(data.get("end_date")),
            end_time=parse_time(data.get("end_time")),
            all_day=bool(data.get("all_day", False)),
            color=data.get("color") or None,
            recurring_group_id=data.get("recurring_group_id") or None,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "date": self.date.isoformat(),
            "time": format_time(self.time),
            "end_date": self.end_date.isoformat() if self.end_date else None,
            "end_time": format_time(self.end_time),
            "all_day": self.all_day,
            "color": self.color,
            "recurring_group_id": self.recurring_group_id,
        }


@dataclass
class SyncAccount:
    id: int
    email: str
    app_password: str = field(default="", repr=False)
    calendar_url: str | None = None
    calendar_name: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SyncAccount":
        return cls(
            id=int(data["id"]),
            email=str(data.get("email", "")).strip(),
            app_password=str(data.get("app_password", "") or ""),
            calendar_url=data.get("calendar_url") or None,
            calendar_name=data.get("calendar_name") or None,
        )

    def to_public_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "email": self.email,
            "calendar_url": self.calendar_url,
            "calendar_name": self.calendar_name,
            "has_password": bool(self.app_password),
        }


@dataclass(frozen=True)
class EventAccountSync:
    event_id: int
    account_id: int
    ical_uid: str | None = None

    @property
    def pending(self) -> bool:
        return not self.ical_uid

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_id": self.event_id,
            "account_id": self.account_id,
            "ical_uid": self.ical_uid,
            "pending": self.pending,
        }


@dataclass
class CalendarCollection:
    url: str
    name: str


@dataclass
class ConnectionTestResult:
    connected: bool
    calendar_name: str | None = None
    calendar_url: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"connected": self.connected}
        if self.calendar_name is not None:
            payload["calendar_name"] = self.calendar_name
        if self.error is not None:
            payload["error"] = self.error
        return payload


@dataclass
class AccountOutcome:
    account_id: int
    action: str
    success: bool
    ical_uid: str | None = None
    error: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class SyncResult:
    operation: str
    event_id: int | None = None
    outcomes: list[AccountOutcome] = field(default_factory=list)

    @property
    def succeeded(self) -> list[AccountOutcome]:
        return [item for item in self.outcomes if item.success]

    @property
    def failed(self) -> list[AccountOutcome]:
        return [item for item in self.outcomes if not item.success]

    def by_account(self) -> dict[int, AccountOutcome]:
        return {item.account_id: item for item in self.outcomes}

    def to_dict(self) -> dict[str, Any]:
        return {
            "operation": self.operation,
            "event_id": self.event_id,
            "outcomes": [item.to_dict() for item in self.outcomes],
        }
