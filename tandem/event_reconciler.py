from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable

from tandem.diff import compute_removals
from tandem.models import GroupRecord, LabelRecord, RemoteEvent, ScheduleRecord, SyncCounts
from tandem.normalizer import strip_markup, to_instant
from tandem.store import StoreSession

logger = logging.getLogger(__name__)

PLACEHOLDER_TITLE = "(No title)"


@dataclass
class EventSyncOutcome:
    schedule: ScheduleRecord
    created: bool
    changed_fields: list[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.changed_fields)


def _resolve_labels(label_names: list[str], labels_by_name: dict[str, LabelRecord]) -> list[LabelRecord]:
    resolved: list[LabelRecord] = []
    seen: set[str] = set()
    for name in label_names:
        label = labels_by_name.get(name)
        if label is None or label.id in seen:
            continue
        seen.add(label.id)
        resolved.append(label)
    return resolved


def _first_group(label_names: list[str], groups_by_name: dict[str, GroupRecord]) -> GroupRecord | None:
    for name in label_names:
        group = groups_by_name.get(name)
        if group is not None:
            return group
    return None


def apply_remote_event(
    schedule: ScheduleRecord,
    remote: RemoteEvent,
    labels_by_name: dict[str, LabelRecord],
    groups_by_name: dict[str, GroupRecord],
) -> list[str]:
    """Copy remote fields onto ``schedule`` in place and return the names of fields that changed."""
    changed: list[str] = []

    def _set(name: str, value: Any) -> None:
        if getattr(schedule, name) != value:
            setattr(schedule, name, value)
            changed.append(name)

    title = remote.title if remote.title and remote.title.strip() else PLACEHOLDER_TITLE
    _set("title", title)
    _set("description", strip_markup(remote.body))

    start = to_instant(remote.start, remote.start_timezone)
    if start is not None:
        _set("start", start)
    end = to_instant(remote.end, remote.end_timezone)
    if end is not None:
        _set("end", end)

    _set("all_day", bool(remote.all_day))
    _set("location", remote.location or "")
    _set("organizer", remote.organizer_name or remote.organizer_address or "")
    _set("attendees", ", ".join(name for name in remote.attendees if name))

    label_names = list(remote.labels or [])
    labels = _resolve_labels(label_names, labels_by_name)
    label_ids = [label.id for label in labels]
    if set(label_ids) != set(schedule.label_ids):
        schedule.label_ids = label_ids
        changed.append("labels")

    group = _first_group(label_names, groups_by_name)
    _set("group_id", group.id if group is not None else None)

    if labels:
        _set("color", labels[0].color)
    return changed


class EventReconciler:
    """Pull remote calendar events into local schedule records for one user."""

    def reconcile(
        self,
        session: StoreSession,
        user_id: str,
        remote_events: Iterable[RemoteEvent],
    ) -> SyncCounts:
        remote_events = list(remote_events)

        # Snapshots for this run only; labels and groups may change between runs.
        labels_by_name: dict[str, LabelRecord] = {}
        for label in session.list_labels(user_id):
            labels_by_name.setdefault(label.name, label)
        groups_by_name: dict[str, GroupRecord] = {}
        for group in session.list_groups(user_id):
            groups_by_name.setdefault(group.name, group)

        created = 0
        updated = 0
        for remote in remote_events:
            if not remote.external_id:
                logger.warning("Skipping remote event without id for user %s: %r", user_id, remote.title)
                continue
            try:
                with session.savepoint():
                    outcome = self._reconcile_one(session, user_id, remote, labels_by_name, groups_by_name)
            except Exception as exc:
                logger.warning(
                    "Skipping remote event %s for user %s: %s: %s",
                    remote.external_id,
                    user_id,
                    type(exc).__name__,
                    exc,
                )
                session.record_audit_event(
                    user_id=user_id,
                    entity="schedule",
                    entity_id=remote.external_id,
                    action="skip_event_error",
                    details={"title": remote.title, "error": f"{type(exc).__name__}: {exc}"},
                )
                continue
            if outcome.created:
                created += 1
            elif outcome.changed:
                updated += 1
                logger.debug(
                    "Updated schedule %s from remote event %s: %s",
                    outcome.schedule.id,
                    remote.external_id,
                    ", ".join(outcome.changed_fields),
                )

        remote_ids = {remote.external_id for remote in remote_events if remote.external_id}
        removals = compute_removals(remote_ids, session.remote_schedule_external_ids(user_id))
        deleted = 0
        for external_id in sorted(removals):
            try:
                with session.savepoint():
                    removed = session.delete_schedule_by_external_id(user_id, external_id)
            except Exception as exc:
                logger.warning("Failed to delete schedule %s for user %s: %s", external_id, user_id, exc)
                continue
            if removed:
                deleted += 1

        if removals:
            session.record_audit_event(
                user_id=user_id,
                entity="schedule",
                entity_id="batch",
                action="delete_removed_events",
                details={"requested": len(removals), "deleted": deleted},
            )
        logger.info(
            "Event sync for user %s: created=%d updated=%d deleted=%d",
            user_id,
            created,
            updated,
            deleted,
        )
        return SyncCounts(created=created, updated=updated, deleted=deleted)

    def _reconcile_one(
        self,
        session: StoreSession,
        user_id: str,
        remote: RemoteEvent,
        labels_by_name: dict[str, LabelRecord],
        groups_by_name: dict[str, GroupRecord],
    ) -> EventSyncOutcome:
        if remote.parse_error:
            raise ValueError(remote.parse_error)
        existing = session.find_schedule_by_external_id(user_id, remote.external_id)
        if existing is None:
            schedule = ScheduleRecord(
                user_id=user_id,
                external_event_id=remote.external_id,
                is_from_remote=True,
            )
            changed = apply_remote_event(schedule, remote, labels_by_name, groups_by_name)
            session.save_schedule(schedule)
            return EventSyncOutcome(schedule=schedule, created=True, changed_fields=changed)

        changed = apply_remote_event(existing, remote, labels_by_name, groups_by_name)
        if changed:
            session.save_schedule(existing)
        return EventSyncOutcome(schedule=existing, created=False, changed_fields=changed)
