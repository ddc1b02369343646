"""User-facing CRUD over users, labels, groups and schedules.

Every label or group change is reported to the ``MirrorDispatcher`` inside the same
transaction, so the mirrored entity on the other side commits or rolls back with it.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from tandem.errors import ConflictError, NotFoundError, UserNotFoundError, ValidationError
from tandem.mirror import MirrorDispatcher
from tandem.models import (
    GROUP_STATUS_ACTIVE,
    GROUP_STATUS_DELETED,
    GROUP_STATUSES,
    GroupFile,
    GroupRecord,
    LabelRecord,
    ScheduleRecord,
    User,
    parse_iso_datetime,
)
from tandem.normalizer import DEFAULT_COLOR
from tandem.store import Store, StoreSession

logger = logging.getLogger(__name__)


def _require_user(session: StoreSession, user_id: str) -> User:
    user = session.get_user(user_id)
    if user is None:
        raise UserNotFoundError(user_id)
    return user


def _clean_name(value: Any, kind: str) -> str:
    name = str(value or "").strip()
    if not name:
        raise ValidationError(f"{kind} name must not be empty")
    return name


class UserService:
    def __init__(self, store: Store) -> None:
        self.store = store

    def create(self, email: str, display_name: str = "") -> User:
        email = str(email or "").strip()
        if not email:
            raise ValidationError("email must not be empty")
        with self.store.session() as session:
            if session.find_user_by_email(email) is not None:
                raise ConflictError(f"User with email '{email}' already exists")
            user = session.save_user(User(email=email, display_name=display_name.strip()))
        logger.info("Created user %s", user.id)
        return user

    def get(self, user_id: str) -> User:
        with self.store.session() as session:
            return _require_user(session, user_id)

    def list(self) -> list[User]:
        with self.store.session() as session:
            return session.list_users()

    def set_credentials(self, user_id: str, remote_account: str, access_token: str) -> User:
        if not str(access_token or "").strip():
            raise ValidationError("access token must not be empty")
        with self.store.session() as session:
            user = _require_user(session, user_id)
            user.remote_account = str(remote_account or "").strip()
            user.remote_access_token = str(access_token).strip()
            session.save_user(user)
        logger.info("Stored remote credentials for user %s", user_id)
        return user

    def clear_credentials(self, user_id: str) -> User:
        with self.store.session() as session:
            user = _require_user(session, user_id)
            user.remote_account = ""
            user.remote_access_token = ""
            session.save_user(user)
        logger.info("Cleared remote credentials for user %s", user_id)
        return user

    def delete(self, user_id: str) -> None:
        with self.store.session() as session:
            if not session.delete_user(user_id):
                raise UserNotFoundError(user_id)
        logger.info("Deleted user %s", user_id)


class LabelService:
    def __init__(self, store: Store, dispatcher: MirrorDispatcher) -> None:
        self.store = store
        self.dispatcher = dispatcher

    def list(self, user_id: str) -> list[LabelRecord]:
        with self.store.session() as session:
            _require_user(session, user_id)
            return session.list_labels(user_id)

    def create(
        self,
        user_id: str,
        name: str,
        color: str | None = None,
        description: str = "",
    ) -> LabelRecord:
        name = _clean_name(name, "label")
        with self.store.session() as session:
            _require_user(session, user_id)
            if session.label_exists(user_id, name):
                raise ConflictError(f"Label with name '{name}' already exists")
            label = LabelRecord(
                user_id=user_id,
                name=name,
                color=color or DEFAULT_COLOR,
                description=description,
                display_order=session.next_label_display_order(user_id),
            )
            session.save_label(label)
            self.dispatcher.on_label_created(session, user_id, name)
        return label

    def update(
        self,
        user_id: str,
        label_id: str,
        name: str,
        color: str | None = None,
        description: str | None = None,
    ) -> LabelRecord:
        name = _clean_name(name, "label")
        with self.store.session() as session:
            label = session.get_label(user_id, label_id)
            if label is None:
                raise NotFoundError(f"Label not found: {label_id}")
            old_name = label.name
            if name != old_name:
                if label.is_default:
                    raise ValidationError("Cannot rename default label")
                if session.label_exists(user_id, name):
                    raise ConflictError(f"Label with name '{name}' already exists")
            label.name = name
            if color:
                label.color = color
            if description is not None:
                label.description = description
            session.save_label(label)
            self.dispatcher.on_label_renamed(session, user_id, old_name, name)
        return label

    def delete(self, user_id: str, label_id: str) -> None:
        with self.store.session() as session:
            label = session.get_label(user_id, label_id)
            if label is None:
                raise NotFoundError(f"Label not found: {label_id}")
            if label.is_default:
                raise ValidationError("Cannot delete default label")
            session.delete_label(label.id)
            self.dispatcher.on_label_deleted(session, user_id, label.name)

    def reorder(self, user_id: str, orders: list[tuple[str, int]]) -> list[LabelRecord]:
        """Apply ``(label_id, display_order)`` pairs; unknown ids are ignored."""
        with self.store.session() as session:
            _require_user(session, user_id)
            for label_id, order in orders:
                label = session.get_label(user_id, label_id)
                if label is None:
                    continue
                label.display_order = int(order)
                session.save_label(label)
            return session.list_labels(user_id)


class GroupService:
    def __init__(self, store: Store, dispatcher: MirrorDispatcher) -> None:
        self.store = store
        self.dispatcher = dispatcher

    def _require_group(self, session: StoreSession, user_id: str, group_id: str) -> GroupRecord:
        group = session.get_group(user_id, group_id)
        if group is None:
            raise NotFoundError(f"Group not found: {group_id}")
        return group

    def list(self, user_id: str, include_deleted: bool = False) -> list[GroupRecord]:
        with self.store.session() as session:
            _require_user(session, user_id)
            return session.list_groups(user_id, include_deleted=include_deleted)

    def get(self, user_id: str, group_id: str) -> GroupRecord:
        with self.store.session() as session:
            return self._require_group(session, user_id, group_id)

    def create(self, user_id: str, name: str, description: str = "") -> GroupRecord:
        name = _clean_name(name, "group")
        with self.store.session() as session:
            _require_user(session, user_id)
            if session.group_exists(user_id, name):
                raise ConflictError(f"Group with name '{name}' already exists")
            group = session.save_group(GroupRecord(user_id=user_id, name=name, description=description))
            self.dispatcher.on_group_created(session, user_id, name)
        return group

    def update(
        self,
        user_id: str,
        group_id: str,
        name: str | None = None,
        description: str | None = None,
        status: str | None = None,
    ) -> GroupRecord:
        with self.store.session() as session:
            group = self._require_group(session, user_id, group_id)
            old_name = group.name
            was_active = group.is_active
            if name is not None:
                name = _clean_name(name, "group")
                if name != old_name and group.is_active and session.group_exists(user_id, name):
                    raise ConflictError(f"Group with name '{name}' already exists")
                group.name = name
            if description is not None:
                group.description = description
            if status is not None:
                status = status.strip().upper()
                if status not in GROUP_STATUSES:
                    raise ValidationError(f"Unknown group status: {status}")
                if status == GROUP_STATUS_ACTIVE and not was_active and session.group_exists(user_id, group.name):
                    raise ConflictError(f"Group with name '{group.name}' already exists")
                group.status = status
            session.save_group(group)
            if group.name != old_name and group.is_active:
                self.dispatcher.on_group_renamed(session, user_id, old_name, group.name)
            if was_active and not group.is_active:
                self.dispatcher.on_group_deleted(session, user_id, old_name)
        return group

    def delete(self, user_id: str, group_id: str) -> GroupRecord:
        with self.store.session() as session:
            group = self._require_group(session, user_id, group_id)
            if not group.is_active:
                return group
            group.status = GROUP_STATUS_DELETED
            session.save_group(group)
            self.dispatcher.on_group_deleted(session, user_id, group.name)
        return group

    def add_file(self, user_id: str, group_id: str, file_name: str) -> GroupFile:
        file_name = str(file_name or "").strip()
        if not file_name:
            raise ValidationError("file name must not be empty")
        with self.store.session() as session:
            self._require_group(session, user_id, group_id)
            return session.add_group_file(GroupFile(group_id=group_id, file_name=file_name))

    def list_files(self, user_id: str, group_id: str) -> list[GroupFile]:
        with self.store.session() as session:
            self._require_group(session, user_id, group_id)
            return session.list_group_files(group_id)

    def remove_file(self, user_id: str, group_id: str, file_id: str) -> None:
        with self.store.session() as session:
            self._require_group(session, user_id, group_id)
            if not session.delete_group_file(group_id, file_id):
                raise NotFoundError(f"File not found: {file_id}")

    def list_schedules(self, user_id: str, group_id: str) -> list[ScheduleRecord]:
        with self.store.session() as session:
            self._require_group(session, user_id, group_id)
            return session.list_schedules(user_id, group_id=group_id)


class ScheduleService:
    """Schedules the user keeps by hand, next to the ones a sync pulls in.

    Editing a synced schedule keeps its remote identity, so the next sync still
    matches it by external id and overwrites the remote-owned fields.
    """

    def __init__(self, store: Store) -> None:
        self.store = store

    def _require_schedule(self, session: StoreSession, user_id: str, schedule_id: str) -> ScheduleRecord:
        schedule = session.get_schedule(user_id, schedule_id)
        if schedule is None:
            raise NotFoundError(f"Schedule not found: {schedule_id}")
        return schedule

    def _resolve_labels(self, session: StoreSession, user_id: str, label_ids: list[str]) -> list[LabelRecord]:
        labels: list[LabelRecord] = []
        for label_id in label_ids:
            if any(label.id == label_id for label in labels):
                continue
            label = session.get_label(user_id, label_id)
            if label is None:
                raise NotFoundError(f"Label not found: {label_id}")
            labels.append(label)
        return labels

    def _resolve_group(
        self,
        session: StoreSession,
        user_id: str,
        group_id: str | None,
        labels: list[LabelRecord],
    ) -> GroupRecord | None:
        if group_id:
            group = session.get_group(user_id, group_id)
            if group is None:
                raise NotFoundError(f"Group not found: {group_id}")
            if not group.is_active:
                raise ValidationError(f"Group {group_id} is deleted")
            return group
        # Without an explicit group, the first label picks the group of the same name.
        if labels:
            return session.find_group_by_name(user_id, labels[0].name)
        return None

    def _apply(
        self,
        session: StoreSession,
        schedule: ScheduleRecord,
        *,
        title: str,
        start: datetime | str | None,
        end: datetime | str | None,
        description: str,
        all_day: bool,
        color: str | None,
        location: str,
        label_ids: list[str] | None,
        group_id: str | None,
    ) -> ScheduleRecord:
        title = str(title or "").strip()
        if not title:
            raise ValidationError("schedule title must not be empty")
        start_at = parse_iso_datetime(start)
        if start_at is None:
            raise ValidationError("schedule start time is required")
        end_at = parse_iso_datetime(end)
        if end_at is not None and end_at < start_at:
            raise ValidationError("schedule end time must not be before its start time")

        if label_ids is None:
            labels = self._resolve_labels(session, schedule.user_id, schedule.label_ids)
        else:
            labels = self._resolve_labels(session, schedule.user_id, label_ids)
        group = self._resolve_group(session, schedule.user_id, group_id, labels)

        schedule.title = title
        schedule.description = description or ""
        schedule.start = start_at
        schedule.end = end_at
        schedule.all_day = bool(all_day)
        schedule.location = location or ""
        schedule.label_ids = [label.id for label in labels]
        schedule.group_id = group.id if group is not None else None
        schedule.color = color or (labels[0].color if labels else DEFAULT_COLOR)
        return session.save_schedule(schedule)

    def list(self, user_id: str) -> list[ScheduleRecord]:
        with self.store.session() as session:
            _require_user(session, user_id)
            return session.list_schedules(user_id)

    def list_range(self, user_id: str, start: datetime | str, end: datetime | str) -> list[ScheduleRecord]:
        """Schedules whose start falls inside ``[start, end]``."""
        range_start = parse_iso_datetime(start)
        range_end = parse_iso_datetime(end)
        if range_start is None or range_end is None:
            raise ValidationError("range start and end are required")
        if range_end < range_start:
            raise ValidationError("range end must not be before range start")
        with self.store.session() as session:
            _require_user(session, user_id)
            return session.list_schedules_between(user_id, range_start, range_end)

    def upcoming(self, user_id: str, now: datetime | None = None) -> list[ScheduleRecord]:
        moment = parse_iso_datetime(now) or datetime.now(timezone.utc)
        with self.store.session() as session:
            _require_user(session, user_id)
            return session.list_schedules_ending_after(user_id, moment)

    def get(self, user_id: str, schedule_id: str) -> ScheduleRecord:
        with self.store.session() as session:
            return self._require_schedule(session, user_id, schedule_id)

    def create(
        self,
        user_id: str,
        title: str,
        start: datetime | str,
        end: datetime | str | None = None,
        description: str = "",
        all_day: bool = False,
        color: str | None = None,
        location: str = "",
        label_ids: list[str] | None = None,
        group_id: str | None = None,
    ) -> ScheduleRecord:
        with self.store.session() as session:
            _require_user(session, user_id)
            schedule = self._apply(
                session,
                ScheduleRecord(user_id=user_id),
                title=title,
                start=start,
                end=end,
                description=description,
                all_day=all_day,
                color=color,
                location=location,
                label_ids=label_ids or [],
                group_id=group_id,
            )
        logger.info("Created schedule %s for user %s", schedule.id, user_id)
        return schedule

    def update(
        self,
        user_id: str,
        schedule_id: str,
        title: str,
        start: datetime | str,
        end: datetime | str | None = None,
        description: str = "",
        all_day: bool = False,
        color: str | None = None,
        location: str = "",
        label_ids: list[str] | None = None,
        group_id: str | None = None,
    ) -> ScheduleRecord:
        """Replace the editable fields; ``label_ids=None`` keeps the current labels."""
        with self.store.session() as session:
            schedule = self._require_schedule(session, user_id, schedule_id)
            return self._apply(
                session,
                schedule,
                title=title,
                start=start,
                end=end,
                description=description,
                all_day=all_day,
                color=color,
                location=location,
                label_ids=label_ids,
                group_id=group_id,
            )

    def delete(self, user_id: str, schedule_id: str) -> None:
        with self.store.session() as session:
            schedule = self._require_schedule(session, user_id, schedule_id)
            session.delete_schedule(user_id, schedule.id)
        if schedule.is_from_remote:
            logger.info(
                "Deleted synced schedule %s for user %s; it returns on the next sync while %s exists remotely",
                schedule.id,
                user_id,
                schedule.external_event_id,
            )
