import tempfile
import unittest
from datetime import datetime, timezone
from pathlib import Path

from tandem.errors import ConflictError, NotFoundError, UserNotFoundError, ValidationError
from tandem.mirror import GROUP_PROVENANCE, MirrorDispatcher
from tandem.models import GROUP_STATUS_DELETED, LabelRecord, ScheduleRecord
from tandem.services import GroupService, LabelService, ScheduleService, UserService
from tandem.store import Store


class ServiceTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.store = Store(str(Path(self.temp_dir.name) / "tandem.db"))
        dispatcher = MirrorDispatcher()
        self.users = UserService(self.store)
        self.labels = LabelService(self.store, dispatcher)
        self.groups = GroupService(self.store, dispatcher)
        self.user = self.users.create("han@example.com", "Han")

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def test_duplicate_email_conflicts(self) -> None:
        with self.assertRaises(ConflictError):
            self.users.create("han@example.com")

    def test_credentials_toggle_connection(self) -> None:
        self.assertFalse(self.users.get(self.user.id).has_remote_credentials)
        self.users.set_credentials(self.user.id, "han", "token")
        self.assertTrue(self.users.get(self.user.id).has_remote_credentials)
        self.users.clear_credentials(self.user.id)
        self.assertFalse(self.users.get(self.user.id).has_remote_credentials)
        with self.assertRaises(ValidationError):
            self.users.set_credentials(self.user.id, "han", "  ")

    def test_create_label_mirrors_group(self) -> None:
        label = self.labels.create(self.user.id, "Research", color="#ABCDEF")
        self.assertEqual(label.display_order, 0)
        self.assertEqual(self.labels.create(self.user.id, "Ops").display_order, 1)
        groups = {group.name: group for group in self.groups.list(self.user.id)}
        self.assertIn("Research", groups)
        self.assertIn(GROUP_PROVENANCE, groups["Research"].description)
        with self.assertRaises(ConflictError):
            self.labels.create(self.user.id, "Research")

    def test_rename_label_renames_group(self) -> None:
        label = self.labels.create(self.user.id, "Research")
        self.labels.update(self.user.id, label.id, "R&D")
        names = [group.name for group in self.groups.list(self.user.id)]
        self.assertEqual(names, ["R&D"])

    def test_default_label_rules(self) -> None:
        with self.store.session() as session:
            default = session.save_label(LabelRecord(user_id=self.user.id, name="General", is_default=True))
        with self.assertRaises(ValidationError):
            self.labels.update(self.user.id, default.id, "Misc")
        updated = self.labels.update(self.user.id, default.id, "General", color="#000000")
        self.assertEqual(updated.color, "#000000")
        with self.assertRaises(ValidationError):
            self.labels.delete(self.user.id, default.id)

    def test_delete_label_soft_deletes_mirrored_group(self) -> None:
        label = self.labels.create(self.user.id, "Research")
        self.labels.delete(self.user.id, label.id)
        self.assertEqual(self.groups.list(self.user.id), [])
        deleted = self.groups.list(self.user.id, include_deleted=True)
        self.assertEqual(deleted[0].status, GROUP_STATUS_DELETED)

    def test_group_with_files_survives_label_delete(self) -> None:
        label = self.labels.create(self.user.id, "Research")
        group = self.groups.list(self.user.id)[0]
        self.groups.add_file(self.user.id, group.id, "notes.pdf")
        self.labels.delete(self.user.id, label.id)
        self.assertTrue(self.groups.get(self.user.id, group.id).is_active)

    def test_create_group_mirrors_label(self) -> None:
        self.groups.create(self.user.id, "Apollo")
        labels = self.labels.list(self.user.id)
        self.assertEqual([label.name for label in labels], ["Apollo"])
        self.assertFalse(labels[0].is_from_remote)
        # The mirrored label did not spawn a second group.
        self.assertEqual(len(self.groups.list(self.user.id, include_deleted=True)), 1)

    def test_group_rename_and_delete_follow_to_label(self) -> None:
        group = self.groups.create(self.user.id, "Apollo")
        self.groups.update(self.user.id, group.id, name="Artemis")
        self.assertEqual([label.name for label in self.labels.list(self.user.id)], ["Artemis"])
        self.groups.delete(self.user.id, group.id)
        self.assertEqual(self.labels.list(self.user.id), [])

    def test_group_name_conflict_and_bad_status(self) -> None:
        self.groups.create(self.user.id, "Apollo")
        other = self.groups.create(self.user.id, "Gemini")
        with self.assertRaises(ConflictError):
            self.groups.update(self.user.id, other.id, name="Apollo")
        with self.assertRaises(ValidationError):
            self.groups.update(self.user.id, other.id, status="ARCHIVED")

    def test_reorder_ignores_unknown_ids(self) -> None:
        first = self.labels.create(self.user.id, "A")
        second = self.labels.create(self.user.id, "B")
        ordered = self.labels.reorder(self.user.id, [(first.id, 5), (second.id, 1), ("missing", 0)])
        self.assertEqual([label.name for label in ordered], ["B", "A"])

    def test_missing_entities(self) -> None:
        with self.assertRaises(UserNotFoundError):
            self.labels.list("nobody")
        with self.assertRaises(NotFoundError):
            self.groups.get(self.user.id, "missing")
        with self.assertRaises(NotFoundError):
            self.labels.delete(self.user.id, "missing")

    def test_delete_user_cascades(self) -> None:
        self.labels.create(self.user.id, "Research")
        self.users.delete(self.user.id)
        with self.assertRaises(UserNotFoundError):
            self.users.get(self.user.id)
        with self.store.session() as session:
            self.assertEqual(session.list_labels(self.user.id), [])


class ScheduleServiceTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.store = Store(str(Path(self.temp_dir.name) / "tandem.db"))
        dispatcher = MirrorDispatcher()
        self.labels = LabelService(self.store, dispatcher)
        self.groups = GroupService(self.store, dispatcher)
        self.schedules = ScheduleService(self.store)
        self.user = UserService(self.store).create("yoon@example.com", "Yoon")

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def test_create_links_group_through_first_label(self) -> None:
        label = self.labels.create(self.user.id, "Apollo", color="#123456")
        group = self.groups.list(self.user.id)[0]
        schedule = self.schedules.create(
            self.user.id,
            " Kickoff ",
            "2024-06-03T09:00:00Z",
            "2024-06-03T10:00:00Z",
            label_ids=[label.id, label.id],
        )
        self.assertEqual(schedule.title, "Kickoff")
        self.assertEqual(schedule.label_ids, [label.id])
        self.assertEqual(schedule.group_id, group.id)
        self.assertEqual(schedule.color, "#123456")
        self.assertFalse(schedule.is_from_remote)
        self.assertIsNone(schedule.external_event_id)
        self.assertEqual(self.schedules.get(self.user.id, schedule.id), schedule)

    def test_create_rejects_bad_input(self) -> None:
        with self.assertRaises(ValidationError):
            self.schedules.create(self.user.id, "  ", "2024-06-03T09:00:00Z")
        with self.assertRaises(ValidationError):
            self.schedules.create(self.user.id, "Late", "2024-06-03T09:00:00Z", "2024-06-03T08:00:00Z")
        with self.assertRaises(NotFoundError):
            self.schedules.create(self.user.id, "Tagged", "2024-06-03T09:00:00Z", label_ids=["missing"])
        group = self.groups.create(self.user.id, "Gone")
        self.groups.delete(self.user.id, group.id)
        with self.assertRaises(ValidationError):
            self.schedules.create(self.user.id, "Grouped", "2024-06-03T09:00:00Z", group_id=group.id)
        with self.assertRaises(UserNotFoundError):
            self.schedules.create("nobody", "Ghost", "2024-06-03T09:00:00Z")

    def test_range_and_upcoming(self) -> None:
        self.schedules.create(self.user.id, "Past", "2024-05-01T09:00:00Z", "2024-05-01T10:00:00Z")
        self.schedules.create(self.user.id, "June", "2024-06-10T09:00:00Z", "2024-06-10T10:00:00Z")
        self.schedules.create(self.user.id, "July", "2024-07-10T09:00:00Z")

        in_june = self.schedules.list_range(self.user.id, "2024-06-01T00:00:00Z", "2024-06-30T23:59:59Z")
        self.assertEqual([item.title for item in in_june], ["June"])
        with self.assertRaises(ValidationError):
            self.schedules.list_range(self.user.id, "2024-07-01T00:00:00Z", "2024-06-01T00:00:00Z")

        now = datetime(2024, 6, 10, 9, 30, tzinfo=timezone.utc)
        upcoming = self.schedules.upcoming(self.user.id, now=now)
        self.assertEqual([item.title for item in upcoming], ["June", "July"])

    def test_update_keeps_remote_identity(self) -> None:
        with self.store.session() as session:
            synced = session.save_schedule(
                ScheduleRecord(user_id=self.user.id, title="Standup", external_event_id="E1", is_from_remote=True)
            )
        updated = self.schedules.update(
            self.user.id, synced.id, "Standup (moved)", "2024-06-04T09:00:00Z", location="Room 2"
        )
        self.assertEqual(updated.title, "Standup (moved)")
        self.assertEqual(updated.location, "Room 2")
        stored = self.schedules.get(self.user.id, synced.id)
        self.assertEqual(stored.external_event_id, "E1")
        self.assertTrue(stored.is_from_remote)

    def test_update_without_label_ids_keeps_labels(self) -> None:
        label = self.labels.create(self.user.id, "Gemini")
        schedule = self.schedules.create(self.user.id, "Review", "2024-06-03T09:00:00Z", label_ids=[label.id])
        updated = self.schedules.update(self.user.id, schedule.id, "Review v2", "2024-06-03T09:00:00Z")
        self.assertEqual(updated.label_ids, [label.id])
        cleared = self.schedules.update(self.user.id, schedule.id, "Review v3", "2024-06-03T09:00:00Z", label_ids=[])
        self.assertEqual(cleared.label_ids, [])
        self.assertIsNone(cleared.group_id)

    def test_delete_and_missing(self) -> None:
        schedule = self.schedules.create(self.user.id, "Lunch", "2024-06-03T12:00:00Z")
        self.schedules.delete(self.user.id, schedule.id)
        with self.assertRaises(NotFoundError):
            self.schedules.get(self.user.id, schedule.id)
        with self.assertRaises(NotFoundError):
            self.schedules.delete(self.user.id, schedule.id)
        other = UserService(self.store).create("other@example.com")
        mine = self.schedules.create(self.user.id, "Mine", "2024-06-03T12:00:00Z")
        with self.assertRaises(NotFoundError):
            self.schedules.get(other.id, mine.id)


if __name__ == "__main__":
    unittest.main()
