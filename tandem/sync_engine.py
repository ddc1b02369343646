from __future__ import annotations

import logging
import threading
import traceback
from datetime import datetime, timezone
from typing import Any, Callable

from tandem.config_manager import ConfigManager
from tandem.errors import (
    NotConnectedError,
    RemoteFetchError,
    SyncCancelledError,
    SyncFailedError,
    TandemError,
    UserNotFoundError,
)
from tandem.event_reconciler import EventReconciler
from tandem.label_reconciler import LabelReconciler
from tandem.mirror import MirrorDispatcher, SyncContext
from tandem.models import RemoteConfig, SyncCounts, SyncResult, User, summarize_counts, sync_window
from tandem.remote import RemoteCalendarClient, build_remote_client
from tandem.store import Store

logger = logging.getLogger(__name__)

ClientFactory = Callable[[RemoteConfig, User], RemoteCalendarClient]


def _elapsed_ms(started_at: datetime) -> int:
    return int((datetime.now(timezone.utc) - started_at).total_seconds() * 1000)


class SyncEngine:
    def __init__(
        self,
        config_manager: ConfigManager,
        store: Store,
        client_factory: ClientFactory = build_remote_client,
        dispatcher: MirrorDispatcher | None = None,
    ) -> None:
        self.config_manager = config_manager
        self.store = store
        self.client_factory = client_factory
        self.dispatcher = dispatcher or MirrorDispatcher()
        self.label_reconciler = LabelReconciler(self.dispatcher)
        self.event_reconciler = EventReconciler()
        self._user_locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, user_id: str) -> threading.Lock:
        with self._locks_guard:
            return self._user_locks.setdefault(user_id, threading.Lock())

    def _load_user(self, user_id: str) -> User:
        with self.store.session() as session:
            user = session.get_user(user_id)
        if user is None:
            raise UserNotFoundError(user_id)
        if not user.has_remote_credentials:
            raise NotConnectedError(user_id)
        return user

    def sync_user(
        self,
        user_id: str,
        trigger: str = "manual",
        cancel_event: threading.Event | None = None,
    ) -> SyncResult:
        """Pull the user's remote labels and events into local records.

        Both listings are fetched before anything local changes. Labels are
        reconciled and committed first so the event phase sees their final names.
        The returned counts cover schedules only.
        """
        user = self._load_user(user_id)
        with self._lock_for(user_id):
            return self._run(user, trigger, cancel_event)

    def _run(self, user: User, trigger: str, cancel_event: threading.Event | None) -> SyncResult:
        started_at = datetime.now(timezone.utc)
        counts = SyncCounts()
        label_counts = SyncCounts()
        try:
            config = self.config_manager.load()
            window_start, window_end = sync_window(
                started_at, config.sync.lookback_months, config.sync.lookahead_months
            )
            client = self.client_factory(config.remote, user)
            try:
                remote_labels = client.list_labels(window_start, window_end)
                remote_events = client.list_events(window_start, window_end)
            except RemoteFetchError as exc:
                raise SyncFailedError(exc) from exc
            logger.info(
                "Fetched %d labels and %d events for user %s (%s .. %s)",
                len(remote_labels),
                len(remote_events),
                user.id,
                window_start.isoformat(),
                window_end.isoformat(),
            )

            with self.store.session() as session:
                label_counts = self.label_reconciler.reconcile(session, user.id, remote_labels, SyncContext())

            if cancel_event is not None and cancel_event.is_set():
                raise SyncCancelledError(f"Sync cancelled for user {user.id} after label phase.")

            with self.store.session() as session:
                counts = self.event_reconciler.reconcile(session, user.id, remote_events)
        except Exception as exc:
            failure = exc if isinstance(exc, TandemError) else SyncFailedError(f"{type(exc).__name__}: {exc}")
            duration_ms = _elapsed_ms(started_at)
            status = "cancelled" if isinstance(failure, SyncCancelledError) else "error"
            retryable = failure.retryable if isinstance(failure, SyncFailedError) else None
            error_message = str(failure)
            if retryable is not None:
                error_message += " (retryable)" if retryable else " (not retryable)"
            logger.warning("Sync %s for user %s: %s", status, user.id, error_message)
            self.store.record_sync_run(
                user_id=user.id,
                trigger=trigger,
                status=status,
                message=error_message,
                duration_ms=duration_ms,
                created=counts.created,
                updated=counts.updated,
                deleted=counts.deleted,
                retryable=retryable,
            )
            self.store.record_audit_event(
                user_id=user.id,
                entity="sync",
                entity_id=user.id,
                action="run_error" if status == "error" else "run_cancelled",
                details={
                    "trigger": trigger,
                    "error": str(failure),
                    "retryable": retryable,
                    "traceback": traceback.format_exc(limit=5),
                },
            )
            if failure is exc:
                raise
            raise failure from exc

        duration_ms = _elapsed_ms(started_at)
        message = summarize_counts(counts)
        label_summary = (
            f"labels: {label_counts.created} added, {label_counts.updated} updated, "
            f"{label_counts.deleted} removed"
        )
        run_id = self.store.record_sync_run(
            user_id=user.id,
            trigger=trigger,
            status="success",
            message=f"{message}; {label_summary}",
            duration_ms=duration_ms,
            created=counts.created,
            updated=counts.updated,
            deleted=counts.deleted,
        )
        logger.info("%s for user %s (%s, run_id=%d, %d ms)", message, user.id, label_summary, run_id, duration_ms)
        return SyncResult(
            user_id=user.id,
            status="success",
            message=message,
            duration_ms=duration_ms,
            counts=counts,
            trigger=trigger,
            run_at=started_at,
        )

    def sync_all(self, trigger: str = "scheduled", cancel_event: threading.Event | None = None) -> list[SyncResult]:
        with self.store.session() as session:
            users = session.list_connected_users()
        results: list[SyncResult] = []
        for user in users:
            if cancel_event is not None and cancel_event.is_set():
                break
            try:
                results.append(self.sync_user(user.id, trigger=trigger, cancel_event=cancel_event))
            except SyncFailedError as exc:
                if exc.retryable:
                    logger.warning("Scheduled sync failed for user %s, retrying next pass: %s", user.id, exc)
                else:
                    logger.error("Scheduled sync failed for user %s and needs attention: %s", user.id, exc)
            except TandemError as exc:
                # Already recorded as a failed run; the next user still syncs.
                logger.warning("Scheduled sync failed for user %s: %s", user.id, exc)
        return results

    def status(self, user_id: str) -> dict[str, Any]:
        with self.store.session() as session:
            user = session.get_user(user_id)
            if user is None:
                raise UserNotFoundError(user_id)
            synced = session.count_remote_schedules(user_id)
        runs = self.store.recent_sync_runs(limit=1, user_id=user_id)
        return {
            "user_id": user_id,
            "connected": user.has_remote_credentials,
            "synced_schedules": synced,
            "last_run": runs[0] if runs else None,
        }
