from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any

from dateutil.relativedelta import relativedelta

from tandem.normalizer import DEFAULT_COLOR


GROUP_STATUS_ACTIVE = "ACTIVE"
GROUP_STATUS_DELETED = "DELETED"
GROUP_STATUSES = {GROUP_STATUS_ACTIVE, GROUP_STATUS_DELETED}

REMOTE_PROVIDERS = {"graph", "caldav"}


def new_id() -> str:
    return uuid.uuid4().hex


def _ensure_tz(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def parse_iso_datetime(value: str | datetime | None) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return _ensure_tz(value)
    text = value.strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    return _ensure_tz(parsed)


def serialize_datetime(value: datetime | None) -> str | None:
    if value is None:
        return None
    return _ensure_tz(value).astimezone(timezone.utc).isoformat()


@dataclass
class RemoteConfig:
    provider: str = "graph"
    base_url: str = "https://graph.microsoft.com/v1.0"
    caldav_url: str = ""
    timeout_seconds: int = 30
    page_size: int = 100

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "RemoteConfig":
        data = data or {}
        provider = str(data.get("provider", "graph")).strip().lower()
        if provider not in REMOTE_PROVIDERS:
            provider = "graph"
        return cls(
            provider=provider,
            base_url=str(data.get("base_url", "https://graph.microsoft.com/v1.0")).strip().rstrip("/")
            or "https://graph.microsoft.com/v1.0",
            caldav_url=str(data.get("caldav_url", "")).strip(),
            timeout_seconds=max(1, int(data.get("timeout_seconds", 30))),
            page_size=min(1000, max(1, int(data.get("page_size", 100)))),
        )


@dataclass
class SyncConfig:
    lookback_months: int = 1
    lookahead_months: int = 6
    interval_seconds: int = 900
    scheduler_enabled: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SyncConfig":
        data = data or {}
        return cls(
            lookback_months=max(0, int(data.get("lookback_months", 1))),
            lookahead_months=max(1, int(data.get("lookahead_months", 6))),
            interval_seconds=max(60, int(data.get("interval_seconds", 900))),
            scheduler_enabled=bool(data.get("scheduler_enabled", False)),
        )


@dataclass
class AppConfig:
    remote: RemoteConfig = field(default_factory=RemoteConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AppConfig":
        data = data or {}
        return cls(
            remote=RemoteConfig.from_dict(data.get("remote")),
            sync=SyncConfig.from_dict(data.get("sync")),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def default_app_config() -> AppConfig:
    return AppConfig()


@dataclass
class User:
    email: str
    display_name: str = ""
    remote_account: str = ""
    remote_access_token: str = ""
    id: str = field(default_factory=new_id)

    @property
    def has_remote_credentials(self) -> bool:
        return bool(self.remote_access_token.strip())

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "email": self.email,
            "display_name": self.display_name,
            "remote_account": self.remote_account,
            "connected": self.has_remote_credentials,
        }


@dataclass
class LabelRecord:
    user_id: str
    name: str
    color: str = DEFAULT_COLOR
    description: str = ""
    external_id: str | None = None
    is_from_remote: bool = False
    display_order: int = 0
    is_default: bool = False
    id: str = field(default_factory=new_id)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class GroupRecord:
    user_id: str
    name: str
    description: str = ""
    status: str = GROUP_STATUS_ACTIVE
    id: str = field(default_factory=new_id)

    @property
    def is_active(self) -> bool:
        return self.status == GROUP_STATUS_ACTIVE

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class GroupFile:
    group_id: str
    file_name: str
    id: str = field(default_factory=new_id)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class ScheduleRecord:
    user_id: str
    title: str = ""
    description: str = ""
    start: datetime | None = None
    end: datetime | None = None
    all_day: bool = False
    color: str = DEFAULT_COLOR
    location: str = ""
    organizer: str = ""
    attendees: str = ""
    external_event_id: str | None = None
    is_from_remote: bool = False
    label_ids: list[str] = field(default_factory=list)
    group_id: str | None = None
    id: str = field(default_factory=new_id)

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["start"] = serialize_datetime(self.start)
        payload["end"] = serialize_datetime(self.end)
        return payload


@dataclass
class RemoteLabel:
    external_id: str
    name: str
    color_token: str | None = None


@dataclass
class RemoteEvent:
    external_id: str
    title: str = ""
    body: str = ""
    start: str = ""
    start_timezone: str = "UTC"
    end: str = ""
    end_timezone: str = "UTC"
    all_day: bool = False
    location: str = ""
    organizer_name: str = ""
    organizer_address: str = ""
    attendees: list[str] = field(default_factory=list)
    labels: list[str] = field(default_factory=list)
    parse_error: str = ""


@dataclass
class SyncCounts:
    created: int = 0
    updated: int = 0
    deleted: int = 0

    def add(self, other: "SyncCounts") -> "SyncCounts":
        return SyncCounts(
            created=self.created + other.created,
            updated=self.updated + other.updated,
            deleted=self.deleted + other.deleted,
        )

    @property
    def is_empty(self) -> bool:
        return self.created == 0 and self.updated == 0 and self.deleted == 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


@dataclass
class SyncResult:
    user_id: str
    status: str
    message: str
    duration_ms: int
    counts: SyncCounts
    trigger: str
    run_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "status": self.status,
            "message": self.message,
            "duration_ms": self.duration_ms,
            "created": self.counts.created,
            "updated": self.counts.updated,
            "deleted": self.counts.deleted,
            "trigger": self.trigger,
            "run_at": serialize_datetime(self.run_at),
        }


def summarize_counts(counts: SyncCounts) -> str:
    if counts.is_empty:
        return "Calendar sync complete"
    parts: list[str] = []
    if counts.created:
        parts.append(f"{counts.created} added")
    if counts.updated:
        parts.append(f"{counts.updated} updated")
    if counts.deleted:
        parts.append(f"{counts.deleted} removed")
    return f"Calendar sync complete ({', '.join(parts)})"


def sync_window(now: datetime, lookback_months: int, lookahead_months: int) -> tuple[datetime, datetime]:
    now_utc = _ensure_tz(now).astimezone(timezone.utc)
    start = now_utc - relativedelta(months=max(0, lookback_months))
    end = now_utc + relativedelta(months=max(1, lookahead_months))
    return start, end
