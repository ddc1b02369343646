from __future__ import annotations

from datetime import datetime
from typing import Protocol

from tandem.caldav_client import CalDAVCalendarClient
from tandem.graph_client import GraphCalendarClient
from tandem.models import RemoteConfig, RemoteEvent, RemoteLabel, User


class RemoteCalendarClient(Protocol):
    """Listing calls raise ``RemoteFetchError`` on failure and return a list, maybe empty, on success."""

    def list_labels(self, start: datetime, end: datetime) -> list[RemoteLabel]:
        ...

    def list_events(self, start: datetime, end: datetime) -> list[RemoteEvent]:
        ...


def build_remote_client(config: RemoteConfig, user: User) -> RemoteCalendarClient:
    if config.provider == "caldav":
        return CalDAVCalendarClient(config, user)
    return GraphCalendarClient(config, user.remote_access_token)
