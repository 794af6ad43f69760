from __future__ import annotations

import sqlite3
import threading
import uuid
from contextlib import contextmanager
from dataclasses import replace
from pathlib import Path
from typing import Any, Iterator

from familyhub.errors import MappingStoreError
from familyhub.models import (
    CalendarEventData,
    EventAccountSync,
    SyncAccount,
    format_time,
    parse_date,
    parse_time,
    utc_now,
)


def _utc_now() -> str:
    return utc_now().isoformat()


EVENT_COLUMNS = "id, title, description, date, time, end_date, end_time, all_day, color, recurring_group_id"
EVENT_FIELDS = ("title", "description", "date", "time", "end_date", "end_time", "all_day", "color")


def _event_row_values(event: CalendarEventData) -> dict[str, Any]:
    payload = event.to_dict()
    payload["all_day"] = 1 if event.all_day else 0
    return payload


def _event_from_row(row: sqlite3.Row) -> CalendarEventData:
    return CalendarEventData.from_dict(dict(row))


def _mapping_from_row(row: sqlite3.Row) -> EventAccountSync:
    return EventAccountSync(
        event_id=int(row["event_id"]),
        account_id=int(row["account_id"]),
        ical_uid=row["ical_uid"] or None,
    )


class StateStore:
    """SQLite persistence for sync accounts, calendar events and their mapping rows."""

    def __init__(self, db_path: str) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def _session(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            try:
                conn = self._connect()
            except sqlite3.Error as exc:
                raise MappingStoreError(f"Cannot open state database {self.db_path}: {exc}") from exc
            try:
                with conn:
                    yield conn
            except sqlite3.Error as exc:
                raise MappingStoreError(f"State database error: {exc}") from exc
            finally:
                conn.close()

    def _init_schema(self) -> None:
        schema_sql = """
        CREATE TABLE IF NOT EXISTS sync_accounts (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            email TEXT NOT NULL,
            app_password TEXT NOT NULL,
            calendar_url TEXT,
            calendar_name TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS calendar_events (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            title TEXT NOT NULL,
            description TEXT,
            date TEXT NOT NULL,
            time TEXT,
            end_date TEXT,
            end_time TEXT,
            all_day INTEGER NOT NULL DEFAULT 0,
            color TEXT,
            recurring_group_id TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_calendar_events_group
            ON calendar_events(recurring_group_id);

        CREATE TABLE IF NOT EXISTS event_account_sync (
            event_id INTEGER NOT NULL REFERENCES calendar_events(id) ON DELETE CASCADE,
            account_id INTEGER NOT NULL REFERENCES sync_accounts(id) ON DELETE CASCADE,
            ical_uid TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            PRIMARY KEY (event_id, account_id)
        );

        CREATE INDEX IF NOT EXISTS idx_event_account_sync_account
            ON event_account_sync(account_id);
        """
        with self._session() as conn:
            conn.executescript(schema_sql)

    # Accounts

    def create_account(self, *, email: str, app_password: str) -> SyncAccount:
        now = _utc_now()
        with self._session() as conn:
            cursor = conn.execute(
                """
                INSERT INTO sync_accounts(email, app_password, created_at, updated_at)
                VALUES (?, ?, ?, ?)
                """,
                (email.strip(), app_password, now, now),
            )
            account_id = int(cursor.lastrowid)
        return SyncAccount(id=account_id, email=email.strip(), app_password=app_password)

    def get_account(self, account_id: int) -> SyncAccount | None:
        with self._session() as conn:
            row = conn.execute(
                """
                SELECT id, email, app_password, calendar_url, calendar_name
                FROM sync_accounts
                WHERE id = ?
                """,
                (int(account_id),),
            ).fetchone()
        return SyncAccount.from_dict(dict(row)) if row else None

    def list_accounts(self) -> list[SyncAccount]:
        with self._session() as conn:
            rows = conn.execute(
                """
                SELECT id, email, app_password, calendar_url, calendar_name
                FROM sync_accounts
                ORDER BY id
                """
            ).fetchall()
        return [SyncAccount.from_dict(dict(row)) for row in rows]

    def update_account(
        self,
        account_id: int,
        *,
        email: str | None = None,
        app_password: str | None = None,
    ) -> SyncAccount | None:
        """Change credentials. Any change drops the discovered calendar URL."""
        current = self.get_account(account_id)
        if current is None:
            return None
        new_email = current.email if email is None else email.strip()
        new_password = current.app_password if app_password is None else app_password
        credentials_changed = new_email != current.email or new_password != current.app_password
        with self._session() as conn:
            if credentials_changed:
                conn.execute(
                    """
                    UPDATE sync_accounts
                    SET email = ?, app_password = ?, calendar_url = NULL, calendar_name = NULL, updated_at = ?
                    WHERE id = ?
                    """,
                    (new_email, new_password, _utc_now(), int(account_id)),
                )
        return self.get_account(account_id)

    def set_calendar_url(self, account_id: int, calendar_url: str | None, calendar_name: str | None = None) -> None:
        with self._session() as conn:
            conn.execute(
                """
                UPDATE sync_accounts
                SET calendar_url = ?, calendar_name = ?, updated_at = ?
                WHERE id = ?
                """,
                (calendar_url, calendar_name, _utc_now(), int(account_id)),
            )

    def clear_calendar_urls(self) -> None:
        with self._session() as conn:
            conn.execute(
                "UPDATE sync_accounts SET calendar_url = NULL, calendar_name = NULL, updated_at = ?",
                (_utc_now(),),
            )

    def delete_account(self, account_id: int) -> bool:
        with self._session() as conn:
            cursor = conn.execute("DELETE FROM sync_accounts WHERE id = ?", (int(account_id),))
        return cursor.rowcount > 0

    # Events

    def create_event(self, event: CalendarEventData) -> CalendarEventData:
        values = _event_row_values(event)
        now = _utc_now()
        with self._session() as conn:
            cursor = conn.execute(
                """
                INSERT INTO calendar_events(
                    title, description, date, time, end_date, end_time, all_day, color,
                    recurring_group_id, created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    values["title"],
                    values["description"],
                    values["date"],
                    values["time"],
                    values["end_date"],
                    values["end_time"],
                    values["all_day"],
                    values["color"],
                    values["recurring_group_id"],
                    now,
                    now,
                ),
            )
            event_id = int(cursor.lastrowid)
        return replace(event, id=event_id)

    def create_series(self, events: list[CalendarEventData]) -> list[CalendarEventData]:
        group_id = str(uuid.uuid4())
        created: list[CalendarEventData] = []
        for event in events:
            created.append(self.create_event(replace(event, recurring_group_id=group_id)))
        return created

    def get_event(self, event_id: int) -> CalendarEventData | None:
        with self._session() as conn:
            row = conn.execute(
                f"SELECT {EVENT_COLUMNS} FROM calendar_events WHERE id = ?",
                (int(event_id),),
            ).fetchone()
        return _event_from_row(row) if row else None

    def list_events_in_group(self, group_id: str) -> list[CalendarEventData]:
        with self._session() as conn:
            rows = conn.execute(
                f"SELECT {EVENT_COLUMNS} FROM calendar_events WHERE recurring_group_id = ? ORDER BY date, id",
                (str(group_id),),
            ).fetchall()
        return [_event_from_row(row) for row in rows]

    def update_event(self, event_id: int, changes: dict[str, Any]) -> CalendarEventData | None:
        assignments: list[str] = []
        params: list[Any] = []
        for field_name in EVENT_FIELDS:
            if field_name not in changes:
                continue
            value = changes[field_name]
            if field_name == "all_day":
                value = 1 if value else 0
            elif field_name in {"date", "end_date"}:
                parsed_date = parse_date(value)
                value = parsed_date.isoformat() if parsed_date else None
            elif field_name in {"time", "end_time"}:
                value = format_time(parse_time(value))
            assignments.append(f"{field_name} = ?")
            params.append(value)
        if assignments:
            assignments.append("updated_at = ?")
            params.append(_utc_now())
            params.append(int(event_id))
            with self._session() as conn:
                conn.execute(
                    f"UPDATE calendar_events SET {', '.join(assignments)} WHERE id = ?",
                    params,
                )
        return self.get_event(event_id)

    def delete_event(self, event_id: int) -> bool:
        with self._session() as conn:
            cursor = conn.execute("DELETE FROM calendar_events WHERE id = ?", (int(event_id),))
        return cursor.rowcount > 0

    def delete_group(self, group_id: str) -> int:
        with self._session() as conn:
            cursor = conn.execute("DELETE FROM calendar_events WHERE recurring_group_id = ?", (str(group_id),))
        return int(cursor.rowcount)

    # Mapping rows

    def insert_mapping(self, event_id: int, account_id: int, ical_uid: str | None = None) -> None:
        now = _utc_now()
        with self._session() as conn:
            conn.execute(
                """
                INSERT INTO event_account_sync(event_id, account_id, ical_uid, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(event_id, account_id) DO NOTHING
                """,
                (int(event_id), int(account_id), ical_uid, now, now),
            )

    def update_mapping_uid(self, event_id: int, account_id: int, ical_uid: str | None) -> bool:
        """Return False when the row is gone, e.g. removed by a cascade."""
        with self._session() as conn:
            cursor = conn.execute(
                """
                UPDATE event_account_sync
                SET ical_uid = ?, updated_at = ?
                WHERE event_id = ? AND account_id = ?
                """,
                (ical_uid, _utc_now(), int(event_id), int(account_id)),
            )
        return cursor.rowcount > 0

    def delete_mapping(self, event_id: int, account_id: int) -> None:
        with self._session() as conn:
            conn.execute(
                "DELETE FROM event_account_sync WHERE event_id = ? AND account_id = ?",
                (int(event_id), int(account_id)),
            )

    def list_mappings_by_event(self, event_id: int) -> list[EventAccountSync]:
        with self._session() as conn:
            rows = conn.execute(
                """
                SELECT event_id, account_id, ical_uid
                FROM event_account_sync
                WHERE event_id = ?
                ORDER BY account_id
                """,
                (int(event_id),),
            ).fetchall()
        return [_mapping_from_row(row) for row in rows]

    def list_mappings_by_account(self, account_id: int) -> list[EventAccountSync]:
        with self._session() as conn:
            rows = conn.execute(
                """
                SELECT event_id, account_id, ical_uid
                FROM event_account_sync
                WHERE account_id = ?
                ORDER BY event_id
                """,
                (int(account_id),),
            ).fetchall()
        return [_mapping_from_row(row) for row in rows]

    def list_mappings_by_group(self, group_id: str) -> list[EventAccountSync]:
        with self._session() as conn:
            rows = conn.execute(
                """
                SELECT m.event_id, m.account_id, m.ical_uid
                FROM event_account_sync AS m
                JOIN calendar_events AS e ON e.id = m.event_id
                WHERE e.recurring_group_id = ?
                ORDER BY m.event_id, m.account_id
                """,
                (str(group_id),),
            ).fetchall()
        return [_mapping_from_row(row) for row in rows]

    def list_pending_mappings(self) -> list[EventAccountSync]:
        with self._session() as conn:
            rows = conn.execute(
                """
                SELECT event_id, account_id, ical_uid
                FROM event_account_sync
                WHERE ical_uid IS NULL OR ical_uid = ''
                ORDER BY event_id, account_id
                """
            ).fetchall()
        return [_mapping_from_row(row) for row in rows]
