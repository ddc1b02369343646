"""Keep work-item groups and labels in lock-step by name.

A change on one side is turned into a ``MirrorEvent`` and handed to the
``MirrorDispatcher``. The dispatcher runs one of two reconciliation functions, which
apply the matching change to the other side and report it as a follow-up event. The
follow-up is dispatched under the same ``SyncContext`` whose guard is still set, so it
is suppressed and the cascade ends after one hop.

The guard lives on the context object the caller passes in, so two call chains never
share it.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator

from tandem.models import GROUP_STATUS_DELETED, GroupRecord, LabelRecord
from tandem.store import StoreSession

logger = logging.getLogger(__name__)

SOURCE_GROUP = "group"
SOURCE_LABEL = "label"

ACTION_CREATED = "created"
ACTION_RENAMED = "renamed"
ACTION_DELETED = "deleted"

LABEL_PROVENANCE = "Mirrored from group"
GROUP_PROVENANCE = "Mirrored from label"

LABEL_PALETTE = (
    "#3B82F6",
    "#10B981",
    "#8B5CF6",
    "#F59E0B",
    "#EF4444",
    "#EC4899",
    "#06B6D4",
    "#84CC16",
    "#F97316",
    "#6366F1",
)


@dataclass
class SyncContext:
    guard_active: bool = False

    @contextmanager
    def guarded(self) -> Iterator["SyncContext"]:
        self.guard_active = True
        try:
            yield self
        finally:
            self.guard_active = False


@dataclass(frozen=True)
class MirrorEvent:
    source: str
    action: str
    user_id: str
    name: str
    old_name: str = ""


@dataclass
class MirrorOutcome:
    applied: bool
    reason: str
    follow_up: MirrorEvent | None = None


def pick_label_color(used_colors: set[str]) -> str:
    for color in LABEL_PALETTE:
        if color not in used_colors:
            return color
    return LABEL_PALETTE[0]


def is_mirrored_group(group: GroupRecord) -> bool:
    return (group.description or "").startswith(f"{GROUP_PROVENANCE}: ")


def reconcile_label_from_group_event(session: StoreSession, event: MirrorEvent) -> MirrorOutcome:
    user_id = event.user_id
    if event.action == ACTION_CREATED:
        if session.label_exists(user_id, event.name):
            return MirrorOutcome(applied=False, reason="label_exists")
        label = LabelRecord(
            user_id=user_id,
            name=event.name,
            color=pick_label_color(session.used_label_colors(user_id)),
            description=f"{LABEL_PROVENANCE}: {event.name}",
            display_order=session.next_label_display_order(user_id),
            is_from_remote=False,
        )
        session.save_label(label)
        return MirrorOutcome(
            applied=True,
            reason="label_created",
            follow_up=MirrorEvent(SOURCE_LABEL, ACTION_CREATED, user_id, event.name),
        )

    if event.action == ACTION_RENAMED:
        if event.old_name == event.name:
            return MirrorOutcome(applied=False, reason="no_change")
        label = session.find_label_by_name(user_id, event.old_name)
        if label is None:
            return MirrorOutcome(applied=False, reason="label_missing")
        if session.label_exists(user_id, event.name):
            logger.warning(
                "Label %r already exists for user %s, not renaming %r", event.name, user_id, event.old_name
            )
            return MirrorOutcome(applied=False, reason="name_conflict")
        label.name = event.name
        session.save_label(label)
        return MirrorOutcome(
            applied=True,
            reason="label_renamed",
            follow_up=MirrorEvent(SOURCE_LABEL, ACTION_RENAMED, user_id, event.name, event.old_name),
        )

    if event.action == ACTION_DELETED:
        label = session.find_label_by_name(user_id, event.name)
        if label is None:
            return MirrorOutcome(applied=False, reason="label_missing")
        if label.is_from_remote:
            return MirrorOutcome(applied=False, reason="remote_owned")
        if label.is_default:
            return MirrorOutcome(applied=False, reason="default_label")
        session.delete_label(label.id)
        return MirrorOutcome(
            applied=True,
            reason="label_deleted",
            follow_up=MirrorEvent(SOURCE_LABEL, ACTION_DELETED, user_id, event.name),
        )

    raise ValueError(f"Unknown mirror action: {event.action}")


def reconcile_group_from_label_event(session: StoreSession, event: MirrorEvent) -> MirrorOutcome:
    user_id = event.user_id
    if event.action == ACTION_CREATED:
        if session.group_exists(user_id, event.name):
            return MirrorOutcome(applied=False, reason="group_exists")
        group = GroupRecord(
            user_id=user_id,
            name=event.name,
            description=f"{GROUP_PROVENANCE}: {event.name}",
        )
        session.save_group(group)
        return MirrorOutcome(
            applied=True,
            reason="group_created",
            follow_up=MirrorEvent(SOURCE_GROUP, ACTION_CREATED, user_id, event.name),
        )

    if event.action == ACTION_RENAMED:
        if event.old_name == event.name:
            return MirrorOutcome(applied=False, reason="no_change")
        group = session.find_group_by_name(user_id, event.old_name)
        if group is None:
            return MirrorOutcome(applied=False, reason="group_missing")
        if session.group_exists(user_id, event.name):
            logger.warning(
                "Group %r already exists for user %s, not renaming %r", event.name, user_id, event.old_name
            )
            return MirrorOutcome(applied=False, reason="name_conflict")
        group.name = event.name
        session.save_group(group)
        return MirrorOutcome(
            applied=True,
            reason="group_renamed",
            follow_up=MirrorEvent(SOURCE_GROUP, ACTION_RENAMED, user_id, event.name, event.old_name),
        )

    if event.action == ACTION_DELETED:
        group = session.find_group_by_name(user_id, event.name)
        if group is None:
            return MirrorOutcome(applied=False, reason="group_missing")
        if not is_mirrored_group(group):
            return MirrorOutcome(applied=False, reason="not_mirrored")
        # Attached files promote a mirrored group to its own lifecycle.
        if session.count_group_files(group.id) > 0:
            return MirrorOutcome(applied=False, reason="has_files")
        group.status = GROUP_STATUS_DELETED
        session.save_group(group)
        return MirrorOutcome(
            applied=True,
            reason="group_deleted",
            follow_up=MirrorEvent(SOURCE_GROUP, ACTION_DELETED, user_id, event.name),
        )

    raise ValueError(f"Unknown mirror action: {event.action}")


class MirrorDispatcher:
    def dispatch(
        self,
        session: StoreSession,
        context: SyncContext,
        event: MirrorEvent,
    ) -> MirrorOutcome | None:
        if context.guard_active:
            logger.debug("Mirror cascade active, suppressing %s %s %r", event.source, event.action, event.name)
            return None

        with context.guarded():
            if event.source == SOURCE_GROUP:
                outcome = reconcile_label_from_group_event(session, event)
            elif event.source == SOURCE_LABEL:
                outcome = reconcile_group_from_label_event(session, event)
            else:
                raise ValueError(f"Unknown mirror source: {event.source}")

            if outcome.applied:
                logger.info(
                    "Mirrored %s %s %r for user %s (%s)",
                    event.source,
                    event.action,
                    event.name,
                    event.user_id,
                    outcome.reason,
                )
                session.record_audit_event(
                    user_id=event.user_id,
                    entity="mirror",
                    entity_id=event.name,
                    action=outcome.reason,
                    details={"source": event.source, "action": event.action, "old_name": event.old_name},
                )
            else:
                logger.debug("Mirror no-op for %s %s %r: %s", event.source, event.action, event.name, outcome.reason)

            if outcome.follow_up is not None:
                self.dispatch(session, context, outcome.follow_up)
        return outcome

    def on_group_created(
        self, session: StoreSession, user_id: str, name: str, context: SyncContext | None = None
    ) -> MirrorOutcome | None:
        return self.dispatch(session, context or SyncContext(), MirrorEvent(SOURCE_GROUP, ACTION_CREATED, user_id, name))

    def on_group_renamed(
        self,
        session: StoreSession,
        user_id: str,
        old_name: str,
        new_name: str,
        context: SyncContext | None = None,
    ) -> MirrorOutcome | None:
        return self.dispatch(
            session,
            context or SyncContext(),
            MirrorEvent(SOURCE_GROUP, ACTION_RENAMED, user_id, new_name, old_name),
        )

    def on_group_deleted(
        self, session: StoreSession, user_id: str, name: str, context: SyncContext | None = None
    ) -> MirrorOutcome | None:
        return self.dispatch(session, context or SyncContext(), MirrorEvent(SOURCE_GROUP, ACTION_DELETED, user_id, name))

    def on_label_created(
        self, session: StoreSession, user_id: str, name: str, context: SyncContext | None = None
    ) -> MirrorOutcome | None:
        return self.dispatch(session, context or SyncContext(), MirrorEvent(SOURCE_LABEL, ACTION_CREATED, user_id, name))

    def on_label_renamed(
        self,
        session: StoreSession,
        user_id: str,
        old_name: str,
        new_name: str,
        context: SyncContext | None = None,
    ) -> MirrorOutcome | None:
        return self.dispatch(
            session,
            context or SyncContext(),
            MirrorEvent(SOURCE_LABEL, ACTION_RENAMED, user_id, new_name, old_name),
        )

    def on_label_deleted(
        self, session: StoreSession, user_id: str, name: str, context: SyncContext | None = None
    ) -> MirrorOutcome | None:
        return self.dispatch(session, context or SyncContext(), MirrorEvent(SOURCE_LABEL, ACTION_DELETED, user_id, name))
