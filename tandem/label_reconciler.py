from __future__ import annotations

import logging
from typing import Iterable

from tandem.diff import compute_removals
from tandem.mirror import MirrorDispatcher, SyncContext
from tandem.models import LabelRecord, RemoteLabel, SyncCounts
from tandem.normalizer import map_color
from tandem.store import StoreSession

logger = logging.getLogger(__name__)


class LabelReconciler:
    """Pull remote labels into local label records for one user."""

    def __init__(self, dispatcher: MirrorDispatcher) -> None:
        self.dispatcher = dispatcher

    def reconcile(
        self,
        session: StoreSession,
        user_id: str,
        remote_labels: Iterable[RemoteLabel],
        context: SyncContext,
    ) -> SyncCounts:
        remote_labels = list(remote_labels)
        created = 0
        updated = 0

        for remote in remote_labels:
            try:
                with session.savepoint():
                    result = self._reconcile_one(session, user_id, remote, context)
            except Exception as exc:
                logger.warning(
                    "Skipping remote label %r for user %s: %s: %s",
                    remote.name,
                    user_id,
                    type(exc).__name__,
                    exc,
                )
                session.record_audit_event(
                    user_id=user_id,
                    entity="label",
                    entity_id=str(remote.external_id),
                    action="skip_label_error",
                    details={"name": remote.name, "error": f"{type(exc).__name__}: {exc}"},
                )
                continue
            if result == "created":
                created += 1
            elif result in {"updated", "adopted"}:
                updated += 1

        remote_ids = {remote.external_id for remote in remote_labels if remote.external_id}
        removals = compute_removals(remote_ids, session.remote_label_external_ids(user_id))
        deleted = 0
        for external_id in sorted(removals):
            try:
                with session.savepoint():
                    removed = session.delete_label_by_external_id(user_id, external_id)
            except Exception as exc:
                # Retried on the next run, the removal set is recomputed every time.
                logger.warning("Failed to delete label %s for user %s: %s", external_id, user_id, exc)
                continue
            if removed:
                deleted += 1
                session.record_audit_event(
                    user_id=user_id,
                    entity="label",
                    entity_id=external_id,
                    action="delete_removed_label",
                    details={},
                )

        logger.info(
            "Label sync for user %s: created=%d updated=%d deleted=%d",
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
        remote: RemoteLabel,
        context: SyncContext,
    ) -> str:
        name = (remote.name or "").strip()
        if not remote.external_id or not name:
            raise ValueError("remote label is missing id or name")
        color = map_color(remote.color_token)

        existing = session.find_label_by_external_id(user_id, remote.external_id)
        if existing is not None:
            old_name = existing.name
            changed = False
            if existing.name != name:
                existing.name = name
                changed = True
            if existing.color != color:
                existing.color = color
                changed = True
            if not changed:
                return "unchanged"
            session.save_label(existing)
            if old_name != name:
                self.dispatcher.on_label_renamed(session, user_id, old_name, name, context)
            return "updated"

        by_name = session.find_label_by_name(user_id, name)
        if by_name is not None:
            by_name.external_id = remote.external_id
            by_name.is_from_remote = True
            by_name.color = color
            session.save_label(by_name)
            self.dispatcher.on_label_created(session, user_id, name, context)
            return "adopted"

        label = LabelRecord(
            user_id=user_id,
            name=name,
            color=color,
            external_id=remote.external_id,
            is_from_remote=True,
            display_order=0,
        )
        session.save_label(label)
        self.dispatcher.on_label_created(session, user_id, name, context)
        return "created"
