from __future__ import annotations

import itertools
import json
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator

from tandem.models import (
    GROUP_STATUS_ACTIVE,
    GroupFile,
    GroupRecord,
    LabelRecord,
    ScheduleRecord,
    User,
    parse_iso_datetime,
    serialize_datetime,
)


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS users (
    id TEXT PRIMARY KEY,
    email TEXT NOT NULL UNIQUE,
    display_name TEXT NOT NULL DEFAULT '',
    remote_account TEXT NOT NULL DEFAULT '',
    remote_access_token TEXT NOT NULL DEFAULT '',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS labels (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    name TEXT NOT NULL,
    color TEXT NOT NULL,
    description TEXT NOT NULL DEFAULT '',
    external_id TEXT,
    is_from_remote INTEGER NOT NULL DEFAULT 0,
    display_order INTEGER NOT NULL DEFAULT 0,
    is_default INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE (user_id, name)
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_labels_external
    ON labels(user_id, external_id) WHERE external_id IS NOT NULL;

CREATE TABLE IF NOT EXISTS work_groups (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    name TEXT NOT NULL,
    description TEXT NOT NULL DEFAULT '',
    status TEXT NOT NULL DEFAULT 'ACTIVE',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_work_groups_active_name
    ON work_groups(user_id, name) WHERE status = 'ACTIVE';

CREATE TABLE IF NOT EXISTS group_files (
    id TEXT PRIMARY KEY,
    group_id TEXT NOT NULL REFERENCES work_groups(id) ON DELETE CASCADE,
    file_name TEXT NOT NULL,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS schedules (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    title TEXT NOT NULL DEFAULT '',
    description TEXT NOT NULL DEFAULT '',
    start_at TEXT,
    end_at TEXT,
    all_day INTEGER NOT NULL DEFAULT 0,
    color TEXT NOT NULL,
    location TEXT NOT NULL DEFAULT '',
    organizer TEXT NOT NULL DEFAULT '',
    attendees TEXT NOT NULL DEFAULT '',
    external_event_id TEXT,
    is_from_remote INTEGER NOT NULL DEFAULT 0,
    group_id TEXT REFERENCES work_groups(id) ON DELETE SET NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    CHECK (external_event_id IS NULL OR is_from_remote = 1)
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_schedules_external
    ON schedules(user_id, external_event_id) WHERE external_event_id IS NOT NULL;

CREATE TABLE IF NOT EXISTS schedule_labels (
    schedule_id TEXT NOT NULL REFERENCES schedules(id) ON DELETE CASCADE,
    label_id TEXT NOT NULL REFERENCES labels(id) ON DELETE CASCADE,
    position INTEGER NOT NULL DEFAULT 0,
    PRIMARY KEY (schedule_id, label_id)
);

CREATE TABLE IF NOT EXISTS sync_runs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    run_at TEXT NOT NULL,
    trigger TEXT NOT NULL,
    status TEXT NOT NULL,
    message TEXT,
    duration_ms INTEGER NOT NULL,
    created_count INTEGER NOT NULL,
    updated_count INTEGER NOT NULL,
    deleted_count INTEGER NOT NULL,
    retryable INTEGER
);

CREATE TABLE IF NOT EXISTS audit_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    created_at TEXT NOT NULL,
    entity TEXT NOT NULL,
    entity_id TEXT NOT NULL,
    action TEXT NOT NULL,
    details_json TEXT NOT NULL
);
"""


def _user_from_row(row: sqlite3.Row) -> User:
    return User(
        id=row["id"],
        email=row["email"],
        display_name=row["display_name"],
        remote_account=row["remote_account"],
        remote_access_token=row["remote_access_token"],
    )


def _label_from_row(row: sqlite3.Row) -> LabelRecord:
    return LabelRecord(
        id=row["id"],
        user_id=row["user_id"],
        name=row["name"],
        color=row["color"],
        description=row["description"],
        external_id=row["external_id"],
        is_from_remote=bool(row["is_from_remote"]),
        display_order=int(row["display_order"]),
        is_default=bool(row["is_default"]),
    )


def _group_from_row(row: sqlite3.Row) -> GroupRecord:
    return GroupRecord(
        id=row["id"],
        user_id=row["user_id"],
        name=row["name"],
        description=row["description"],
        status=row["status"],
    )


def _schedule_from_row(row: sqlite3.Row, label_ids: list[str]) -> ScheduleRecord:
    return ScheduleRecord(
        id=row["id"],
        user_id=row["user_id"],
        title=row["title"],
        description=row["description"],
        start=parse_iso_datetime(row["start_at"]),
        end=parse_iso_datetime(row["end_at"]),
        all_day=bool(row["all_day"]),
        color=row["color"],
        location=row["location"],
        organizer=row["organizer"],
        attendees=row["attendees"],
        external_event_id=row["external_event_id"],
        is_from_remote=bool(row["is_from_remote"]),
        label_ids=label_ids,
        group_id=row["group_id"],
    )


def _run_from_row(row: sqlite3.Row) -> dict[str, Any]:
    item = dict(row)
    if item.get("retryable") is not None:
        item["retryable"] = bool(item["retryable"])
    return item


def _audit_from_row(row: sqlite3.Row) -> dict[str, Any]:
    item = dict(row)
    item["details"] = json.loads(item.pop("details_json") or "{}")
    return item


class StoreSession:
    """Repository operations bound to one open transaction."""

    _savepoint_ids = itertools.count(1)

    def __init__(self, conn: sqlite3.Connection) -> None:
        self.conn = conn

    @contextmanager
    def savepoint(self) -> Iterator["StoreSession"]:
        name = f"sp_{next(self._savepoint_ids)}"
        self.conn.execute(f"SAVEPOINT {name}")
        try:
            yield self
        except BaseException:
            self.conn.execute(f"ROLLBACK TO SAVEPOINT {name}")
            self.conn.execute(f"RELEASE SAVEPOINT {name}")
            raise
        self.conn.execute(f"RELEASE SAVEPOINT {name}")

    # users

    def save_user(self, user: User) -> User:
        now = _utc_now()
        self.conn.execute(
            """
            INSERT INTO users(id, email, display_name, remote_account, remote_access_token, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                email = excluded.email,
                display_name = excluded.display_name,
                remote_account = excluded.remote_account,
                remote_access_token = excluded.remote_access_token,
                updated_at = excluded.updated_at
            """,
            (user.id, user.email, user.display_name, user.remote_account, user.remote_access_token, now, now),
        )
        return user

    def get_user(self, user_id: str) -> User | None:
        row = self.conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
        return _user_from_row(row) if row else None

    def find_user_by_email(self, email: str) -> User | None:
        row = self.conn.execute("SELECT * FROM users WHERE email = ?", (email,)).fetchone()
        return _user_from_row(row) if row else None

    def list_users(self) -> list[User]:
        rows = self.conn.execute("SELECT * FROM users ORDER BY created_at, id").fetchall()
        return [_user_from_row(row) for row in rows]

    def list_connected_users(self) -> list[User]:
        rows = self.conn.execute(
            "SELECT * FROM users WHERE TRIM(remote_access_token) != '' ORDER BY created_at, id"
        ).fetchall()
        return [_user_from_row(row) for row in rows]

    def delete_user(self, user_id: str) -> bool:
        cursor = self.conn.execute("DELETE FROM users WHERE id = ?", (user_id,))
        return cursor.rowcount > 0

    # labels

    def get_label(self, user_id: str, label_id: str) -> LabelRecord | None:
        row = self.conn.execute(
            "SELECT * FROM labels WHERE id = ? AND user_id = ?", (label_id, user_id)
        ).fetchone()
        return _label_from_row(row) if row else None

    def find_label_by_external_id(self, user_id: str, external_id: str) -> LabelRecord | None:
        row = self.conn.execute(
            "SELECT * FROM labels WHERE user_id = ? AND external_id = ?", (user_id, external_id)
        ).fetchone()
        return _label_from_row(row) if row else None

    def find_label_by_name(self, user_id: str, name: str) -> LabelRecord | None:
        row = self.conn.execute(
            "SELECT * FROM labels WHERE user_id = ? AND name = ?", (user_id, name)
        ).fetchone()
        return _label_from_row(row) if row else None

    def label_exists(self, user_id: str, name: str) -> bool:
        return self.find_label_by_name(user_id, name) is not None

    def list_labels(self, user_id: str) -> list[LabelRecord]:
        rows = self.conn.execute(
            "SELECT * FROM labels WHERE user_id = ? ORDER BY display_order, created_at, name",
            (user_id,),
        ).fetchall()
        return [_label_from_row(row) for row in rows]

    def remote_label_external_ids(self, user_id: str) -> set[str]:
        rows = self.conn.execute(
            """
            SELECT external_id FROM labels
            WHERE user_id = ? AND is_from_remote = 1 AND is_default = 0 AND external_id IS NOT NULL
            """,
            (user_id,),
        ).fetchall()
        return {str(row["external_id"]) for row in rows}

    def next_label_display_order(self, user_id: str) -> int:
        row = self.conn.execute(
            "SELECT MAX(display_order) AS max_order FROM labels WHERE user_id = ?", (user_id,)
        ).fetchone()
        if row is None or row["max_order"] is None:
            return 0
        return int(row["max_order"]) + 1

    def used_label_colors(self, user_id: str) -> set[str]:
        rows = self.conn.execute("SELECT DISTINCT color FROM labels WHERE user_id = ?", (user_id,)).fetchall()
        return {str(row["color"]) for row in rows}

    def save_label(self, label: LabelRecord) -> LabelRecord:
        now = _utc_now()
        self.conn.execute(
            """
            INSERT INTO labels(id, user_id, name, color, description, external_id, is_from_remote,
                               display_order, is_default, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                name = excluded.name,
                color = excluded.color,
                description = excluded.description,
                external_id = excluded.external_id,
                is_from_remote = excluded.is_from_remote,
                display_order = excluded.display_order,
                is_default = excluded.is_default,
                updated_at = excluded.updated_at
            """,
            (
                label.id,
                label.user_id,
                label.name,
                label.color,
                label.description,
                label.external_id,
                int(label.is_from_remote),
                int(label.display_order),
                int(label.is_default),
                now,
                now,
            ),
        )
        return label

    def delete_label(self, label_id: str) -> bool:
        cursor = self.conn.execute("DELETE FROM labels WHERE id = ?", (label_id,))
        return cursor.rowcount > 0

    def delete_label_by_external_id(self, user_id: str, external_id: str) -> bool:
        cursor = self.conn.execute(
            "DELETE FROM labels WHERE user_id = ? AND external_id = ? AND is_default = 0",
            (user_id, external_id),
        )
        return cursor.rowcount > 0

    # groups

    def get_group(self, user_id: str, group_id: str) -> GroupRecord | None:
        row = self.conn.execute(
            "SELECT * FROM work_groups WHERE id = ? AND user_id = ?", (group_id, user_id)
        ).fetchone()
        return _group_from_row(row) if row else None

    def find_group_by_name(self, user_id: str, name: str) -> GroupRecord | None:
        row = self.conn.execute(
            "SELECT * FROM work_groups WHERE user_id = ? AND name = ? AND status = ?",
            (user_id, name, GROUP_STATUS_ACTIVE),
        ).fetchone()
        return _group_from_row(row) if row else None

    def group_exists(self, user_id: str, name: str) -> bool:
        return self.find_group_by_name(user_id, name) is not None

    def list_groups(self, user_id: str, include_deleted: bool = False) -> list[GroupRecord]:
        if include_deleted:
            rows = self.conn.execute(
                "SELECT * FROM work_groups WHERE user_id = ? ORDER BY created_at, name", (user_id,)
            ).fetchall()
        else:
            rows = self.conn.execute(
                "SELECT * FROM work_groups WHERE user_id = ? AND status = ? ORDER BY created_at, name",
                (user_id, GROUP_STATUS_ACTIVE),
            ).fetchall()
        return [_group_from_row(row) for row in rows]

    def save_group(self, group: GroupRecord) -> GroupRecord:
        now = _utc_now()
        self.conn.execute(
            """
            INSERT INTO work_groups(id, user_id, name, description, status, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                name = excluded.name,
                description = excluded.description,
                status = excluded.status,
                updated_at = excluded.updated_at
            """,
            (group.id, group.user_id, group.name, group.description, group.status, now, now),
        )
        return group

    def add_group_file(self, group_file: GroupFile) -> GroupFile:
        self.conn.execute(
            "INSERT INTO group_files(id, group_id, file_name, created_at) VALUES (?, ?, ?, ?)",
            (group_file.id, group_file.group_id, group_file.file_name, _utc_now()),
        )
        return group_file

    def list_group_files(self, group_id: str) -> list[GroupFile]:
        rows = self.conn.execute(
            "SELECT id, group_id, file_name FROM group_files WHERE group_id = ? ORDER BY created_at, id",
            (group_id,),
        ).fetchall()
        return [GroupFile(id=row["id"], group_id=row["group_id"], file_name=row["file_name"]) for row in rows]

    def count_group_files(self, group_id: str) -> int:
        row = self.conn.execute(
            "SELECT COUNT(*) AS total FROM group_files WHERE group_id = ?", (group_id,)
        ).fetchone()
        return int(row["total"]) if row else 0

    def delete_group_file(self, group_id: str, file_id: str) -> bool:
        cursor = self.conn.execute(
            "DELETE FROM group_files WHERE id = ? AND group_id = ?", (file_id, group_id)
        )
        return cursor.rowcount > 0

    # schedules

    def _label_ids_for(self, schedule_ids: list[str]) -> dict[str, list[str]]:
        output: dict[str, list[str]] = {sid: [] for sid in schedule_ids}
        if not schedule_ids:
            return output
        placeholders = ", ".join("?" for _ in schedule_ids)
        rows = self.conn.execute(
            f"""
            SELECT schedule_id, label_id FROM schedule_labels
            WHERE schedule_id IN ({placeholders})
            ORDER BY schedule_id, position
            """,
            schedule_ids,
        ).fetchall()
        for row in rows:
            output[row["schedule_id"]].append(row["label_id"])
        return output

    def _schedules_from_rows(self, rows: list[sqlite3.Row]) -> list[ScheduleRecord]:
        label_map = self._label_ids_for([row["id"] for row in rows])
        return [_schedule_from_row(row, label_map[row["id"]]) for row in rows]

    def get_schedule(self, user_id: str, schedule_id: str) -> ScheduleRecord | None:
        rows = self.conn.execute(
            "SELECT * FROM schedules WHERE id = ? AND user_id = ?", (schedule_id, user_id)
        ).fetchall()
        found = self._schedules_from_rows(rows)
        return found[0] if found else None

    def find_schedule_by_external_id(self, user_id: str, external_event_id: str) -> ScheduleRecord | None:
        rows = self.conn.execute(
            "SELECT * FROM schedules WHERE user_id = ? AND external_event_id = ?",
            (user_id, external_event_id),
        ).fetchall()
        found = self._schedules_from_rows(rows)
        return found[0] if found else None

    def list_schedules(self, user_id: str, group_id: str | None = None) -> list[ScheduleRecord]:
        if group_id is None:
            rows = self.conn.execute(
                "SELECT * FROM schedules WHERE user_id = ? ORDER BY start_at, id", (user_id,)
            ).fetchall()
        else:
            rows = self.conn.execute(
                "SELECT * FROM schedules WHERE user_id = ? AND group_id = ? ORDER BY start_at, id",
                (user_id, group_id),
            ).fetchall()
        return self._schedules_from_rows(rows)

    def list_schedules_between(self, user_id: str, start: datetime, end: datetime) -> list[ScheduleRecord]:
        rows = self.conn.execute(
            """
            SELECT * FROM schedules
            WHERE user_id = ? AND start_at >= ? AND start_at <= ?
            ORDER BY start_at, id
            """,
            (user_id, serialize_datetime(start), serialize_datetime(end)),
        ).fetchall()
        return self._schedules_from_rows(rows)

    def list_schedules_ending_after(self, user_id: str, moment: datetime) -> list[ScheduleRecord]:
        rows = self.conn.execute(
            """
            SELECT * FROM schedules
            WHERE user_id = ? AND COALESCE(end_at, start_at) > ?
            ORDER BY start_at, id
            """,
            (user_id, serialize_datetime(moment)),
        ).fetchall()
        return self._schedules_from_rows(rows)

    def delete_schedule(self, user_id: str, schedule_id: str) -> bool:
        cursor = self.conn.execute("DELETE FROM schedules WHERE id = ? AND user_id = ?", (schedule_id, user_id))
        return cursor.rowcount > 0

    def remote_schedule_external_ids(self, user_id: str) -> set[str]:
        rows = self.conn.execute(
            """
            SELECT external_event_id FROM schedules
            WHERE user_id = ? AND is_from_remote = 1 AND external_event_id IS NOT NULL
            """,
            (user_id,),
        ).fetchall()
        return {str(row["external_event_id"]) for row in rows}

    def count_remote_schedules(self, user_id: str) -> int:
        row = self.conn.execute(
            "SELECT COUNT(*) AS total FROM schedules WHERE user_id = ? AND is_from_remote = 1", (user_id,)
        ).fetchone()
        return int(row["total"]) if row else 0

    def save_schedule(self, schedule: ScheduleRecord) -> ScheduleRecord:
        now = _utc_now()
        self.conn.execute(
            """
            INSERT INTO schedules(id, user_id, title, description, start_at, end_at, all_day, color,
                                  location, organizer, attendees, external_event_id, is_from_remote,
                                  group_id, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                title = excluded.title,
                description = excluded.description,
                start_at = excluded.start_at,
                end_at = excluded.end_at,
                all_day = excluded.all_day,
                color = excluded.color,
                location = excluded.location,
                organizer = excluded.organizer,
                attendees = excluded.attendees,
                external_event_id = excluded.external_event_id,
                is_from_remote = excluded.is_from_remote,
                group_id = excluded.group_id,
                updated_at = excluded.updated_at
            """,
            (
                schedule.id,
                schedule.user_id,
                schedule.title,
                schedule.description,
                serialize_datetime(schedule.start),
                serialize_datetime(schedule.end),
                int(schedule.all_day),
                schedule.color,
                schedule.location,
                schedule.organizer,
                schedule.attendees,
                schedule.external_event_id,
                int(schedule.is_from_remote),
                schedule.group_id,
                now,
                now,
            ),
        )
        self.conn.execute("DELETE FROM schedule_labels WHERE schedule_id = ?", (schedule.id,))
        self.conn.executemany(
            "INSERT INTO schedule_labels(schedule_id, label_id, position) VALUES (?, ?, ?)",
            [(schedule.id, label_id, position) for position, label_id in enumerate(schedule.label_ids)],
        )
        return schedule

    def delete_schedule_by_external_id(self, user_id: str, external_event_id: str) -> bool:
        cursor = self.conn.execute(
            "DELETE FROM schedules WHERE user_id = ? AND external_event_id = ? AND is_from_remote = 1",
            (user_id, external_event_id),
        )
        return cursor.rowcount > 0

    # audit

    def record_audit_event(
        self,
        *,
        user_id: str,
        entity: str,
        entity_id: str,
        action: str,
        details: dict[str, Any],
    ) -> None:
        self.conn.execute(
            """
            INSERT INTO audit_events(user_id, created_at, entity, entity_id, action, details_json)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (user_id, _utc_now(), entity, entity_id, action, json.dumps(details, ensure_ascii=False)),
        )


class Store:
    def __init__(self, db_path: str) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=30, isolation_level=None, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def _init_schema(self) -> None:
        with self._lock:
            conn = self._connect()
            try:
                conn.execute("PRAGMA journal_mode = WAL")
                conn.executescript(SCHEMA_SQL)
            finally:
                conn.close()

    @contextmanager
    def session(self) -> Iterator[StoreSession]:
        """Open one transaction; commit when the block exits cleanly, roll back otherwise."""
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield StoreSession(conn)
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        finally:
            conn.close()

    def record_sync_run(
        self,
        *,
        user_id: str,
        trigger: str,
        status: str,
        message: str,
        duration_ms: int,
        created: int,
        updated: int,
        deleted: int,
        retryable: bool | None = None,
    ) -> int:
        with self._lock:
            with self.session() as session:
                cursor = session.conn.execute(
                    """
                    INSERT INTO sync_runs(user_id, run_at, trigger, status, message, duration_ms,
                                          created_count, updated_count, deleted_count, retryable)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        user_id,
                        _utc_now(),
                        trigger,
                        status,
                        message,
                        duration_ms,
                        created,
                        updated,
                        deleted,
                        None if retryable is None else int(retryable),
                    ),
                )
                return int(cursor.lastrowid)

    def recent_sync_runs(self, limit: int = 20, user_id: str | None = None) -> list[dict[str, Any]]:
        with self._lock:
            with self.session() as session:
                if user_id is None:
                    rows = session.conn.execute(
                        "SELECT * FROM sync_runs ORDER BY id DESC LIMIT ?", (max(1, limit),)
                    ).fetchall()
                else:
                    rows = session.conn.execute(
                        "SELECT * FROM sync_runs WHERE user_id = ? ORDER BY id DESC LIMIT ?",
                        (user_id, max(1, limit)),
                    ).fetchall()
        return [_run_from_row(row) for row in rows]

    def record_audit_event(
        self,
        *,
        user_id: str,
        entity: str,
        entity_id: str,
        action: str,
        details: dict[str, Any],
    ) -> None:
        with self._lock:
            with self.session() as session:
                session.record_audit_event(
                    user_id=user_id, entity=entity, entity_id=entity_id, action=action, details=details
                )

    def recent_audit_events(self, limit: int = 100, user_id: str | None = None) -> list[dict[str, Any]]:
        with self._lock:
            with self.session() as session:
                if user_id is None:
                    rows = session.conn.execute(
                        "SELECT * FROM audit_events ORDER BY id DESC LIMIT ?", (max(1, limit),)
                    ).fetchall()
                else:
                    rows = session.conn.execute(
                        "SELECT * FROM audit_events WHERE user_id = ? ORDER BY id DESC LIMIT ?",
                        (user_id, max(1, limit)),
                    ).fetchall()
        return [_audit_from_row(row) for row in rows]
