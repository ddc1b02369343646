from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

import requests

from tandem.errors import RemoteAuthError, RemoteFetchError
from tandem.models import RemoteConfig, RemoteEvent, RemoteLabel

MAX_PAGES = 200
EVENT_FIELDS = (
    "id",
    "subject",
    "body",
    "start",
    "end",
    "isAllDay",
    "location",
    "categories",
    "organizer",
    "attendees",
)


def _iso_utc(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _email_name(container: Any) -> str:
    email = (container or {}).get("emailAddress") or {}
    return str(email.get("name") or email.get("address") or "").strip()


def parse_category(item: dict[str, Any]) -> RemoteLabel:
    return RemoteLabel(
        external_id=str(item.get("id") or "").strip(),
        name=str(item.get("displayName") or "").strip(),
        color_token=item.get("color"),
    )


def parse_event(item: dict[str, Any]) -> RemoteEvent:
    start = item.get("start") or {}
    end = item.get("end") or {}
    organizer = (item.get("organizer") or {}).get("emailAddress") or {}
    attendees: list[str] = []
    for attendee in item.get("attendees") or []:
        name = _email_name(attendee)
        if name:
            attendees.append(name)
    return RemoteEvent(
        external_id=str(item.get("id") or "").strip(),
        title=str(item.get("subject") or ""),
        body=str((item.get("body") or {}).get("content") or ""),
        start=str(start.get("dateTime") or ""),
        start_timezone=str(start.get("timeZone") or "UTC"),
        end=str(end.get("dateTime") or ""),
        end_timezone=str(end.get("timeZone") or "UTC"),
        all_day=bool(item.get("isAllDay", False)),
        location=str((item.get("location") or {}).get("displayName") or ""),
        organizer_name=str(organizer.get("name") or ""),
        organizer_address=str(organizer.get("address") or ""),
        attendees=attendees,
        labels=[str(name) for name in item.get("categories") or [] if str(name).strip()],
    )


class GraphCalendarClient:
    """Read-only client for a Microsoft Graph style calendar API."""

    def __init__(self, config: RemoteConfig, access_token: str) -> None:
        self.config = config
        self.access_token = access_token

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.access_token}",
            "Accept": "application/json",
            "Prefer": 'outlook.timezone="UTC"',
        }

    def _get_all(self, url: str, params: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        items: list[dict[str, Any]] = []
        next_url: str | None = url
        next_params = params
        pages = 0
        while next_url:
            try:
                response = requests.get(
                    next_url,
                    headers=self._headers(),
                    params=next_params,
                    timeout=self.config.timeout_seconds,
                )
            except requests.Timeout as exc:
                raise RemoteFetchError(f"Remote request timed out: {exc}") from exc
            except requests.RequestException as exc:
                raise RemoteFetchError(f"{type(exc).__name__}: {exc}") from exc

            if response.status_code in {401, 403}:
                raise RemoteAuthError(f"HTTP {response.status_code}: {response.text[:300]}")
            if not response.ok:
                status = response.status_code
                raise RemoteFetchError(
                    f"HTTP {status}: {response.text[:300]}",
                    retryable=status >= 500 or status == 429,
                )
            try:
                payload = response.json()
            except ValueError as exc:
                raise RemoteFetchError("Remote response is not valid JSON.") from exc
            if not isinstance(payload, dict) or not isinstance(payload.get("value"), list):
                raise RemoteFetchError("Remote response has no 'value' list.")

            items.extend(item for item in payload["value"] if isinstance(item, dict))
            next_url = payload.get("@odata.nextLink")
            # The next link already carries the query string.
            next_params = None
            pages += 1
            if pages >= MAX_PAGES and next_url:
                raise RemoteFetchError(f"Remote listing exceeded {MAX_PAGES} pages.")
        return items

    def list_labels(self, start: datetime, end: datetime) -> list[RemoteLabel]:
        items = self._get_all(f"{self.config.base_url}/me/outlook/masterCategories")
        return [parse_category(item) for item in items]

    def list_events(self, start: datetime, end: datetime) -> list[RemoteEvent]:
        items = self._get_all(
            f"{self.config.base_url}/me/calendarView",
            params={
                "startDateTime": _iso_utc(start),
                "endDateTime": _iso_utc(end),
                "$top": self.config.page_size,
                "$orderby": "start/dateTime",
                "$select": ",".join(EVENT_FIELDS),
            },
        )
        return [parse_event(item) for item in items]
