from __future__ import annotations

import logging
import re
from datetime import date, datetime, time, timedelta, timezone
from typing import Any

import caldav
from caldav.lib.error import AuthorizationError
from icalendar import Calendar as ICalendar
from icalendar import Event as ICEvent

from tandem.errors import RemoteAuthError, RemoteFetchError
from tandem.models import RemoteConfig, RemoteEvent, RemoteLabel, User

logger = logging.getLogger(__name__)

CATEGORY_ID_PREFIX = "category:"
_MAILTO_PATTERN = re.compile(r"^mailto:", re.IGNORECASE)


def _decode_raw_ical(raw_data: Any) -> str:
    if isinstance(raw_data, bytes):
        return raw_data.decode("utf-8", errors="replace")
    return str(raw_data)


def _first_vevent(calendar_obj: ICalendar) -> ICEvent | None:
    for component in calendar_obj.walk():
        if component.name == "VEVENT":
            return component
    return None


def _extract_uid_from_raw_ical(raw_ical: str) -> str:
    match = re.search(r"^UID:(.+)$", raw_ical, re.MULTILINE)
    return match.group(1).strip() if match else ""


def _as_utc_text(value: datetime | date) -> str:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc).isoformat()
    return datetime.combine(value, time.min, tzinfo=timezone.utc).isoformat()


def _decoded_when(vevent: ICEvent, name: str) -> datetime | date | None:
    if vevent.get(name) is None:
        return None
    value = vevent.decoded(name)
    if not isinstance(value, date):
        raise ValueError(f"{name} is not a date or date-time: {value!r}")
    return value


def _person_name(prop: Any) -> str:
    if prop is None:
        return ""
    params = getattr(prop, "params", {}) or {}
    name = str(params.get("CN", "") or "").strip()
    if name:
        return name
    return _MAILTO_PATTERN.sub("", str(prop)).strip()


def _categories(vevent: ICEvent) -> list[str]:
    raw = vevent.get("CATEGORIES")
    if raw is None:
        return []
    props = raw if isinstance(raw, list) else [raw]
    names: list[str] = []
    for prop in props:
        values = getattr(prop, "cats", None)
        if values is None:
            values = str(prop).split(",")
        for value in values:
            text = str(value).strip()
            if text and text not in names:
                names.append(text)
    return names


def parse_vevent(vevent: ICEvent) -> RemoteEvent:
    uid = str(vevent.get("UID", "")).strip()
    external_id = uid
    recurrence_id = vevent.get("RECURRENCE-ID")
    if recurrence_id is not None:
        external_id = f"{uid}:{_as_utc_text(vevent.decoded('RECURRENCE-ID'))}"

    errors = getattr(vevent, "errors", None)
    if errors:
        raise ValueError(f"Invalid VEVENT properties: {errors}")
    dtstart_raw = _decoded_when(vevent, "DTSTART")
    if dtstart_raw is None:
        raise ValueError("VEVENT has no DTSTART.")
    all_day = not isinstance(dtstart_raw, datetime)
    dtend_raw = _decoded_when(vevent, "DTEND")
    if dtend_raw is None:
        if vevent.get("DURATION") is not None:
            dtend_raw = dtstart_raw + vevent.decoded("DURATION")
        else:
            dtend_raw = dtstart_raw + (timedelta(days=1) if all_day else timedelta(hours=1))

    attendees_raw = vevent.get("ATTENDEE")
    if attendees_raw is None:
        attendees_raw = []
    elif not isinstance(attendees_raw, list):
        attendees_raw = [attendees_raw]
    organizer = vevent.get("ORGANIZER")
    organizer_params = getattr(organizer, "params", {}) or {}

    return RemoteEvent(
        external_id=external_id,
        title=str(vevent.get("SUMMARY", "")).strip(),
        body=str(vevent.get("DESCRIPTION", "")).strip(),
        start=_as_utc_text(dtstart_raw),
        end=_as_utc_text(dtend_raw),
        all_day=all_day,
        location=str(vevent.get("LOCATION", "")).strip(),
        organizer_name=str(organizer_params.get("CN", "") or "").strip(),
        organizer_address=_MAILTO_PATTERN.sub("", str(organizer or "")).strip(),
        attendees=[name for name in (_person_name(item) for item in attendees_raw) if name],
        labels=_categories(vevent),
    )


class CalDAVCalendarClient:
    """Read-only CalDAV provider. Labels are the distinct VEVENT categories in the window."""

    def __init__(self, config: RemoteConfig, user: User) -> None:
        self.config = config
        self.user = user
        self._principal: Any = None
        self._events_cache: dict[tuple[datetime, datetime], list[RemoteEvent]] = {}

    def _connect(self) -> None:
        if self._principal is not None:
            return
        if not self.config.caldav_url or not self.user.remote_account:
            raise RemoteFetchError("CalDAV config is incomplete.", retryable=False)
        client = caldav.DAVClient(
            url=self.config.caldav_url,
            username=self.user.remote_account,
            password=self.user.remote_access_token,
            timeout=self.config.timeout_seconds,
        )
        self._principal = client.principal()

    def _parse_resource(self, resource: Any) -> RemoteEvent | None:
        raw_ical = _decode_raw_ical(resource.data)
        try:
            vevent = _first_vevent(ICalendar.from_ical(raw_ical))
            if vevent is None:
                raise ValueError("VEVENT missing in calendar resource.")
            return parse_vevent(vevent)
        except Exception as exc:
            uid = _extract_uid_from_raw_ical(raw_ical)
            if not uid:
                logger.warning("Dropping unreadable CalDAV resource %s: %s", getattr(resource, "url", ""), exc)
                return None
            return RemoteEvent(external_id=uid, parse_error=f"{type(exc).__name__}: {exc}")

    def list_events(self, start: datetime, end: datetime) -> list[RemoteEvent]:
        key = (start, end)
        if key in self._events_cache:
            return list(self._events_cache[key])
        try:
            self._connect()
            events: list[RemoteEvent] = []
            for calendar in self._principal.calendars():
                for resource in calendar.search(start=start, end=end, event=True, expand=True):
                    event = self._parse_resource(resource)
                    if event is not None and event.external_id:
                        events.append(event)
        except RemoteFetchError:
            raise
        except AuthorizationError as exc:
            raise RemoteAuthError(f"CalDAV authorization failed: {exc}") from exc
        except Exception as exc:
            raise RemoteFetchError(f"{type(exc).__name__}: {exc}") from exc
        self._events_cache[key] = events
        return list(events)

    def list_labels(self, start: datetime, end: datetime) -> list[RemoteLabel]:
        labels: list[RemoteLabel] = []
        seen: set[str] = set()
        for event in self.list_events(start, end):
            for name in event.labels:
                if name in seen:
                    continue
                seen.add(name)
                labels.append(RemoteLabel(external_id=f"{CATEGORY_ID_PREFIX}{name}", name=name))
        return labels
