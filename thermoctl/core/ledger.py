"""Append-only command ledger and schedule-window store.

Records are never deleted here; `executed` is the only field that changes
after a record is appended. Every mutation is atomic per record.
"""

from __future__ import annotations

import itertools
import json
import logging
import sqlite3
import threading
from dataclasses import replace
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Protocol

from thermoctl.core.errors import LedgerError
from thermoctl.core.model import CommandRecord, OffsetValue, ScheduleWindow

LOGGER = logging.getLogger(__name__)


class CommandLedger(Protocol):
    def append(self, record: CommandRecord) -> CommandRecord:
        """Store a new record and return it with its assigned id."""

    def get(self, command_id: int) -> CommandRecord:
        """Return one record or raise LedgerError."""

    def mark_executed(self, command_id: int) -> CommandRecord:
        """Flip `executed` to true and return the updated record."""

    def list_for_device(self, device_id: int) -> list[CommandRecord]:
        """Records of one device, oldest first."""

    def replace_windows(self, device_id: int, windows: list[ScheduleWindow]) -> list[ScheduleWindow]:
        """Drop every window of the device, then store `windows` with fresh ids."""

    def windows_for(self, device_id: int, day: int | None = None) -> list[ScheduleWindow]:
        """Windows of one device, optionally restricted to a canonical start day."""


class InMemoryLedger:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._records: dict[int, CommandRecord] = {}
        self._windows: dict[int, ScheduleWindow] = {}
        self._record_ids = itertools.count(1)
        self._window_ids = itertools.count(1)

    def append(self, record: CommandRecord) -> CommandRecord:
        with self._lock:
            stored = replace(record, id=next(self._record_ids))
            self._records[stored.id] = stored
        return stored

    def get(self, command_id: int) -> CommandRecord:
        with self._lock:
            record = self._records.get(command_id)
        if record is None:
            raise LedgerError(f"No command record with id {command_id}")
        return record

    def mark_executed(self, command_id: int) -> CommandRecord:
        with self._lock:
            record = self._records.get(command_id)
            if record is None:
                raise LedgerError(f"No command record with id {command_id}")
            record = replace(record, executed=True)
            self._records[command_id] = record
        return record

    def list_for_device(self, device_id: int) -> list[CommandRecord]:
        with self._lock:
            return [r for r in self._records.values() if r.device_id == device_id]

    def replace_windows(self, device_id: int, windows: list[ScheduleWindow]) -> list[ScheduleWindow]:
        with self._lock:
            for window_id in [k for k, w in self._windows.items() if w.device_id == device_id]:
                del self._windows[window_id]
            stored = []
            for window in windows:
                window = replace(window, id=next(self._window_ids))
                self._windows[window.id] = window
                stored.append(window)
        return stored

    def windows_for(self, device_id: int, day: int | None = None) -> list[ScheduleWindow]:
        with self._lock:
            return [
                w for w in self._windows.values()
                if w.device_id == device_id and (day is None or w.start_day == day)
            ]


def _encode_value(value: Any) -> str:
    def default(obj: Any) -> Any:
        if isinstance(obj, OffsetValue):
            return {"sign": obj.sign, "magnitude": obj.magnitude}
        if isinstance(obj, Decimal):
            return str(obj)
        raise TypeError(f"Cannot store value of type {type(obj).__name__}")

    return json.dumps(value, default=default)


def _decode_value(text: str) -> Any:
    return _revive(json.loads(text))


def _revive(value: Any) -> Any:
    if isinstance(value, dict):
        if set(value) == {"sign", "magnitude"}:
            return OffsetValue(sign=bool(value["sign"]), magnitude=int(value["magnitude"]))
        return {key: _revive(item) for key, item in value.items()}
    if isinstance(value, list):
        return [_revive(item) for item in value]
    if isinstance(value, str):
        return Decimal(value)
    return value


def _setup_db_adapters() -> None:
    def adapt_datetime_iso(val: datetime) -> str:
        return val.isoformat(timespec="microseconds")

    sqlite3.register_adapter(datetime, adapt_datetime_iso)

    def convert_datetime(val: bytes) -> datetime:
        return datetime.fromisoformat(val.decode())

    sqlite3.register_converter("DTM", convert_datetime)


class SQLiteLedger:
    """Ledger backed by a SQLite file (or ":memory:")."""

    def __init__(self, path: Path | str = ":memory:") -> None:
        _setup_db_adapters()
        if str(path) != ":memory:":
            Path(path).parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._cx = sqlite3.connect(
            str(path),
            detect_types=sqlite3.PARSE_DECLTYPES | sqlite3.PARSE_COLNAMES,
            check_same_thread=False,
        )
        self._setup_db_schema()

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}()"

    def _setup_db_schema(self) -> None:
        with self._lock, self._cx:
            self._cx.execute(
                """
                CREATE TABLE IF NOT EXISTS commands (
                    id            INTEGER  PRIMARY KEY AUTOINCREMENT,
                    user_id       INTEGER  NOT NULL,
                    device_id     INTEGER  NOT NULL,
                    register_name TEXT     NOT NULL,
                    value         TEXT     NOT NULL,
                    frame         TEXT     NOT NULL,
                    channel_tag   INTEGER,
                    executed      INTEGER  NOT NULL DEFAULT 0,
                    created_at    DTM      NOT NULL
                )
                """
            )
            self._cx.execute(
                """
                CREATE TABLE IF NOT EXISTS schedule_windows (
                    id            INTEGER  PRIMARY KEY AUTOINCREMENT,
                    device_id     INTEGER  NOT NULL,
                    user_id       INTEGER  NOT NULL,
                    command_name  TEXT     NOT NULL,
                    command_value TEXT     NOT NULL,
                    start_time    TEXT     NOT NULL,
                    end_time      TEXT     NOT NULL,
                    start_day     INTEGER  NOT NULL,
                    end_day       INTEGER  NOT NULL,
                    timezone      TEXT     NOT NULL,
                    frame         TEXT     NOT NULL
                )
                """
            )
            self._cx.execute("CREATE INDEX IF NOT EXISTS idx_commands_device ON commands (device_id)")

    def close(self) -> None:
        self._cx.close()

    def append(self, record: CommandRecord) -> CommandRecord:
        with self._lock, self._cx:
            cursor = self._cx.execute(
                "INSERT INTO commands (user_id, device_id, register_name, value, frame, channel_tag, executed, created_at)"
                " VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    record.user_id,
                    record.device_id,
                    record.register_name,
                    _encode_value(record.value),
                    record.frame,
                    record.channel_tag,
                    int(record.executed),
                    record.created_at,
                ),
            )
        return replace(record, id=cursor.lastrowid)

    def get(self, command_id: int) -> CommandRecord:
        with self._lock:
            row = self._cx.execute(
                "SELECT * FROM commands WHERE id = ?", (command_id,)
            ).fetchone()
        if row is None:
            raise LedgerError(f"No command record with id {command_id}")
        return _record_from_row(row)

    def mark_executed(self, command_id: int) -> CommandRecord:
        with self._lock, self._cx:
            cursor = self._cx.execute(
                "UPDATE commands SET executed = 1 WHERE id = ?", (command_id,)
            )
        if cursor.rowcount == 0:
            raise LedgerError(f"No command record with id {command_id}")
        return self.get(command_id)

    def list_for_device(self, device_id: int) -> list[CommandRecord]:
        with self._lock:
            rows = self._cx.execute(
                "SELECT * FROM commands WHERE device_id = ? ORDER BY id", (device_id,)
            ).fetchall()
        return [_record_from_row(row) for row in rows]

    def replace_windows(self, device_id: int, windows: list[ScheduleWindow]) -> list[ScheduleWindow]:
        stored: list[ScheduleWindow] = []
        with self._lock, self._cx:
            self._cx.execute("DELETE FROM schedule_windows WHERE device_id = ?", (device_id,))
            for window in windows:
                cursor = self._cx.execute(
                    "INSERT INTO schedule_windows (device_id, user_id, command_name, command_value,"
                    " start_time, end_time, start_day, end_day, timezone, frame)"
                    " VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        window.device_id,
                        window.user_id,
                        window.command_name,
                        _encode_value(window.command_value),
                        window.start_time,
                        window.end_time,
                        window.start_day,
                        window.end_day,
                        window.timezone,
                        window.frame,
                    ),
                )
                stored.append(replace(window, id=cursor.lastrowid))
        LOGGER.debug("Stored %d schedule windows for device %s", len(stored), device_id)
        return stored

    def windows_for(self, device_id: int, day: int | None = None) -> list[ScheduleWindow]:
        query = "SELECT * FROM schedule_windows WHERE device_id = ?"
        params: tuple[Any, ...] = (device_id,)
        if day is not None:
            query += " AND start_day = ?"
            params += (day,)
        with self._lock:
            rows = self._cx.execute(query + " ORDER BY id", params).fetchall()
        return [_window_from_row(row) for row in rows]


def _record_from_row(row: tuple[Any, ...]) -> CommandRecord:
    id_, user_id, device_id, register_name, value, frame, channel_tag, executed, created_at = row
    return CommandRecord(
        id=id_,
        user_id=user_id,
        device_id=device_id,
        register_name=register_name,
        value=_decode_value(value),
        frame=frame,
        channel_tag=channel_tag,
        executed=bool(executed),
        created_at=created_at,
    )


def _window_from_row(row: tuple[Any, ...]) -> ScheduleWindow:
    (
        id_, device_id, user_id, command_name, command_value,
        start_time, end_time, start_day, end_day, timezone_name, frame,
    ) = row
    return ScheduleWindow(
        id=id_,
        device_id=device_id,
        user_id=user_id,
        command_name=command_name,
        command_value=_decode_value(command_value),
        start_time=start_time,
        end_time=end_time,
        start_day=start_day,
        end_day=end_day,
        timezone=timezone_name,
        frame=frame,
    )
