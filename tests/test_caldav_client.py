import unittest
from datetime import datetime, timezone
from unittest import mock

from caldav.lib.error import AuthorizationError

from tandem.caldav_client import CalDAVCalendarClient
from tandem.errors import RemoteAuthError, RemoteFetchError
from tandem.models import RemoteConfig, User

START = datetime(2024, 5, 1, tzinfo=timezone.utc)
END = datetime(2024, 11, 1, tzinfo=timezone.utc)

TIMED_EVENT = """BEGIN:VCALENDAR
VERSION:2.0
PRODID:-//test//EN
BEGIN:VEVENT
UID:evt-1
SUMMARY:Sprint planning
DESCRIPTION:Bring notes
LOCATION:Room 2
DTSTART;TZID=Asia/Seoul:20240603T090000
DTEND;TZID=Asia/Seoul:20240603T100000
ORGANIZER;CN=Kim:mailto:kim@example.com
ATTENDEE;CN=Lee:mailto:lee@example.com
ATTENDEE:mailto:park@example.com
CATEGORIES:Work,Apollo
END:VEVENT
END:VCALENDAR
"""

ALL_DAY_EVENT = """BEGIN:VCALENDAR
VERSION:2.0
PRODID:-//test//EN
BEGIN:VEVENT
UID:evt-2
SUMMARY:Offsite
DTSTART;VALUE=DATE:20240610
CATEGORIES:Apollo
END:VEVENT
END:VCALENDAR
"""

BROKEN_EVENT = """BEGIN:VCALENDAR
VERSION:2.0
BEGIN:VEVENT
UID:evt-3
DTSTART:not-a-date
END:VEVENT
END:VCALENDAR
"""


def _resource(data: str) -> mock.Mock:
    resource = mock.Mock()
    resource.data = data
    resource.url = "https://dav.example.com/cal/x.ics"
    return resource


class CalDAVCalendarClientTests(unittest.TestCase):
    def setUp(self) -> None:
        self.config = RemoteConfig(provider="caldav", caldav_url="https://dav.example.com")
        self.user = User(email="kim@example.com", remote_account="kim", remote_access_token="secret")
        self.calendar = mock.Mock()
        self.calendar.search.return_value = [
            _resource(TIMED_EVENT),
            _resource(ALL_DAY_EVENT),
            _resource(BROKEN_EVENT),
        ]
        principal = mock.Mock()
        principal.calendars.return_value = [self.calendar]
        self.dav_client = mock.Mock()
        self.dav_client.principal.return_value = principal

    def test_list_events_parses_resources(self) -> None:
        with mock.patch("tandem.caldav_client.caldav.DAVClient", return_value=self.dav_client) as dav_cls:
            events = CalDAVCalendarClient(self.config, self.user).list_events(START, END)

        dav_cls.assert_called_once_with(
            url="https://dav.example.com", username="kim", password="secret", timeout=30
        )
        self.calendar.search.assert_called_once_with(start=START, end=END, event=True, expand=True)
        by_id = {event.external_id: event for event in events}
        self.assertEqual(set(by_id), {"evt-1", "evt-2", "evt-3"})

        timed = by_id["evt-1"]
        self.assertEqual(timed.title, "Sprint planning")
        self.assertEqual(timed.start, "2024-06-03T00:00:00+00:00")
        self.assertEqual(timed.end, "2024-06-03T01:00:00+00:00")
        self.assertEqual(timed.organizer_name, "Kim")
        self.assertEqual(timed.organizer_address, "kim@example.com")
        self.assertEqual(timed.attendees, ["Lee", "park@example.com"])
        self.assertEqual(timed.labels, ["Work", "Apollo"])
        self.assertFalse(timed.all_day)

        all_day = by_id["evt-2"]
        self.assertTrue(all_day.all_day)
        self.assertEqual(all_day.start, "2024-06-10T00:00:00+00:00")
        self.assertEqual(all_day.end, "2024-06-11T00:00:00+00:00")

        self.assertTrue(by_id["evt-3"].parse_error)

    def test_labels_are_distinct_categories(self) -> None:
        with mock.patch("tandem.caldav_client.caldav.DAVClient", return_value=self.dav_client):
            client = CalDAVCalendarClient(self.config, self.user)
            labels = client.list_labels(START, END)
            client.list_events(START, END)
        self.assertEqual([label.name for label in labels], ["Work", "Apollo"])
        self.assertEqual(labels[0].external_id, "category:Work")
        self.calendar.search.assert_called_once()

    def test_authorization_failure(self) -> None:
        self.dav_client.principal.side_effect = AuthorizationError("denied")
        with mock.patch("tandem.caldav_client.caldav.DAVClient", return_value=self.dav_client):
            with self.assertRaises(RemoteAuthError):
                CalDAVCalendarClient(self.config, self.user).list_events(START, END)

    def test_connection_failure_is_fetch_error(self) -> None:
        self.calendar.search.side_effect = ConnectionError("reset")
        with mock.patch("tandem.caldav_client.caldav.DAVClient", return_value=self.dav_client):
            with self.assertRaises(RemoteFetchError):
                CalDAVCalendarClient(self.config, self.user).list_events(START, END)

    def test_missing_url_is_not_retryable(self) -> None:
        with self.assertRaises(RemoteFetchError) as ctx:
            CalDAVCalendarClient(RemoteConfig(provider="caldav"), self.user).list_events(START, END)
        self.assertFalse(ctx.exception.retryable)


if __name__ == "__main__":
    unittest.main()
