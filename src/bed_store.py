from __future__ import annotations

import json
import logging
import re
import sqlite3
from datetime import date, datetime
from pathlib import Path
from typing import Any

from src.bed_models import (
    VACANT_INITIALS,
    VACANT_STATUS,
    Bed,
    DailyMetricSnapshot,
    DischargeRecord,
    ExtubationCounters,
    HistoryEntry,
    MobilityScale,
    from_iso,
    to_iso,
    utc_now,
)

LOGGER = logging.getLogger(__name__)

BED_FIELDS = (
    "status",
    "initials",
    "ventilation_start_time",
    "mobility_scale",
    "extubation_counters",
    "history",
    "last_generated_record",
)

SNAPSHOT_FIELDS = ("mobility_target", "mobility_achieved", "on_ventilation")


def _bed_sort_key(bed_number: Any) -> tuple[int, int | str]:
    text = str(bed_number or "").strip()
    match = re.search(r"\d+", text)
    if match:
        return (0, int(match.group(0)))
    return (1, text)


def _bed_columns(fields: dict[str, Any]) -> dict[str, Any]:
    columns: dict[str, Any] = {}
    for name, value in fields.items():
        if name not in BED_FIELDS:
            raise ValueError(f"Unknown bed field: {name}")
        if name == "ventilation_start_time":
            columns["ventilation_start_time"] = to_iso(value)
        elif name == "mobility_scale":
            columns["mobility_target"] = value.target if value is not None else None
            columns["mobility_achieved"] = value.achieved if value is not None else None
        elif name == "extubation_counters":
            counters = value or ExtubationCounters()
            columns["extubation_success"] = counters.success
            columns["extubation_fail"] = counters.fail
            columns["extubation_accidental"] = counters.accidental
            columns["extubation_self"] = counters.self_extubation
            columns["extubation_total"] = counters.total
        elif name == "history":
            columns["history"] = json.dumps([entry.as_dict() for entry in value or ()])
        else:
            columns[name] = value
    return columns


def _bed_from_row(row: sqlite3.Row) -> Bed:
    mobility = None
    if row["mobility_target"] is not None and row["mobility_achieved"] is not None:
        mobility = MobilityScale(
            target=float(row["mobility_target"]),
            achieved=float(row["mobility_achieved"]),
        )
    history = tuple(HistoryEntry.from_dict(item) for item in json.loads(row["history"] or "[]"))
    return Bed(
        bed_number=str(row["bed_number"]),
        status=str(row["status"] or VACANT_STATUS),
        initials=str(row["initials"] or VACANT_INITIALS),
        ventilation_start_time=from_iso(row["ventilation_start_time"]),
        mobility_scale=mobility,
        extubation_counters=ExtubationCounters(
            success=row["extubation_success"],
            fail=row["extubation_fail"],
            accidental=row["extubation_accidental"],
            self_extubation=row["extubation_self"],
        ),
        history=history,
        last_generated_record=row["last_generated_record"],
        updated_at=from_iso(row["updated_at"]),
    )


def _discharge_from_row(row: sqlite3.Row) -> DischargeRecord:
    return DischargeRecord(
        record_id=int(row["record_id"]),
        discharge_timestamp=from_iso(row["discharge_timestamp"]),
        bed_number=str(row["bed_number"]),
        ventilation_duration_days=int(row["ventilation_duration_days"]),
        extubation_counters=ExtubationCounters(
            success=row["extubation_success"],
            fail=row["extubation_fail"],
            accidental=row["extubation_accidental"],
            self_extubation=row["extubation_self"],
        ),
    )


def _snapshot_from_row(row: sqlite3.Row) -> DailyMetricSnapshot:
    return DailyMetricSnapshot(
        date=date.fromisoformat(str(row["date"])),
        bed_number=str(row["bed_number"]),
        mobility_target=float(row["mobility_target"] or 0),
        mobility_achieved=float(row["mobility_achieved"] or 0),
        on_ventilation=bool(row["on_ventilation"]),
    )


class ICUBedStore:
    def __init__(self, db_path: Path | str) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.ensure_schema()

    def _connect(self) -> sqlite3.Connection:
        connection = sqlite3.connect(str(self.db_path))
        connection.row_factory = sqlite3.Row
        return connection

    def ensure_schema(self) -> None:
        with self._connect() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS beds (
                    bed_number TEXT PRIMARY KEY,
                    status TEXT NOT NULL DEFAULT 'Vago',
                    initials TEXT NOT NULL DEFAULT '-',
                    ventilation_start_time TEXT,
                    mobility_target REAL,
                    mobility_achieved REAL,
                    extubation_success INTEGER NOT NULL DEFAULT 0,
                    extubation_fail INTEGER NOT NULL DEFAULT 0,
                    extubation_accidental INTEGER NOT NULL DEFAULT 0,
                    extubation_self INTEGER NOT NULL DEFAULT 0,
                    extubation_total INTEGER NOT NULL DEFAULT 0,
                    history TEXT NOT NULL DEFAULT '[]',
                    last_generated_record TEXT,
                    updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
                );

                CREATE TABLE IF NOT EXISTS discharges (
                    record_id INTEGER PRIMARY KEY AUTOINCREMENT,
                    discharge_timestamp TEXT NOT NULL,
                    bed_number TEXT NOT NULL,
                    ventilation_duration_days INTEGER NOT NULL DEFAULT 0,
                    extubation_success INTEGER NOT NULL DEFAULT 0,
                    extubation_fail INTEGER NOT NULL DEFAULT 0,
                    extubation_accidental INTEGER NOT NULL DEFAULT 0,
                    extubation_self INTEGER NOT NULL DEFAULT 0
                );

                CREATE INDEX IF NOT EXISTS idx_discharges_timestamp
                    ON discharges(discharge_timestamp);

                CREATE TABLE IF NOT EXISTS daily_metrics (
                    date TEXT NOT NULL,
                    bed_number TEXT NOT NULL,
                    mobility_target REAL NOT NULL DEFAULT 0,
                    mobility_achieved REAL NOT NULL DEFAULT 0,
                    on_ventilation INTEGER NOT NULL DEFAULT 0,
                    updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
                    PRIMARY KEY (date, bed_number)
                );

                CREATE TABLE IF NOT EXISTS settings (
                    settings_id INTEGER PRIMARY KEY CHECK (settings_id = 1),
                    unit_name TEXT NOT NULL,
                    total_beds INTEGER NOT NULL
                );
                """
            )

    def get_bed(self, bed_number: str) -> Bed | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM beds WHERE bed_number = ?", (bed_number,)).fetchone()
        return _bed_from_row(row) if row is not None else None

    def list_beds(self) -> list[Bed]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM beds").fetchall()
        ordered = sorted(rows, key=lambda row: _bed_sort_key(row["bed_number"]))
        return [_bed_from_row(row) for row in ordered]

    def insert_vacant_bed(self, bed_number: str) -> bool:
        with self._connect() as conn:
            cursor = conn.execute(
                "INSERT INTO beds(bed_number) VALUES (?) ON CONFLICT(bed_number) DO NOTHING",
                (bed_number,),
            )
            return cursor.rowcount > 0

    def _write_bed(self, conn: sqlite3.Connection, bed_number: str, fields: dict[str, Any]) -> None:
        columns = _bed_columns(fields)
        conn.execute(
            "INSERT INTO beds(bed_number) VALUES (?) ON CONFLICT(bed_number) DO NOTHING",
            (bed_number,),
        )
        if not columns:
            return
        assignments = ", ".join(f"{name} = ?" for name in columns)
        conn.execute(
            f"UPDATE beds SET {assignments}, updated_at = ? WHERE bed_number = ?",
            (*columns.values(), to_iso(utc_now()), bed_number),
        )

    def upsert_bed(self, bed_number: str, fields: dict[str, Any]) -> None:
        """Partial update: only the given fields are written."""
        with self._connect() as conn:
            self._write_bed(conn, bed_number, fields)

    def insert_discharge_record(self, record: DischargeRecord) -> int:
        with self._connect() as conn:
            return self._insert_discharge(conn, record)

    def _insert_discharge(self, conn: sqlite3.Connection, record: DischargeRecord) -> int:
        counters = record.extubation_counters
        cursor = conn.execute(
            """
            INSERT INTO discharges(
                discharge_timestamp,
                bed_number,
                ventilation_duration_days,
                extubation_success,
                extubation_fail,
                extubation_accidental,
                extubation_self
            )
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                to_iso(record.discharge_timestamp),
                record.bed_number,
                int(record.ventilation_duration_days),
                counters.success,
                counters.fail,
                counters.accidental,
                counters.self_extubation,
            ),
        )
        return int(cursor.lastrowid)

    def discharge_and_reset(
        self,
        *,
        record: DischargeRecord | None,
        bed_number: str,
        reset_fields: dict[str, Any],
    ) -> int | None:
        """Archive then reset inside one transaction; an archive failure rolls back the reset."""
        record_id = None
        with self._connect() as conn:
            if record is not None:
                record_id = self._insert_discharge(conn, record)
            self._write_bed(conn, bed_number, reset_fields)
        return record_id

    def list_discharges(self, start: datetime, end: datetime) -> list[DischargeRecord]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT *
                FROM discharges
                WHERE discharge_timestamp >= ? AND discharge_timestamp <= ?
                ORDER BY discharge_timestamp ASC, record_id ASC
                """,
                (to_iso(start), to_iso(end)),
            ).fetchall()
        return [_discharge_from_row(row) for row in rows]

    def upsert_daily_metric_snapshot(self, snapshot_date: date, bed_number: str, fields: dict[str, Any]) -> None:
        with self._connect() as conn:
            self._write_snapshot(conn, snapshot_date, bed_number, fields)

    def save_bed_with_snapshot(
        self,
        bed_number: str,
        fields: dict[str, Any],
        *,
        snapshot_date: date,
        snapshot_fields: dict[str, Any],
    ) -> None:
        """Bed fields and the day's metric snapshot commit together or not at all."""
        with self._connect() as conn:
            self._write_bed(conn, bed_number, fields)
            self._write_snapshot(conn, snapshot_date, bed_number, snapshot_fields)

    def _write_snapshot(
        self,
        conn: sqlite3.Connection,
        snapshot_date: date,
        bed_number: str,
        fields: dict[str, Any],
    ) -> None:
        unknown = set(fields) - set(SNAPSHOT_FIELDS)
        if unknown:
            raise ValueError(f"Unknown snapshot fields: {', '.join(sorted(unknown))}")
        conn.execute(
            """
            INSERT INTO daily_metrics(date, bed_number, mobility_target, mobility_achieved, on_ventilation, updated_at)
            VALUES (?, ?, ?, ?, ?, CURRENT_TIMESTAMP)
            ON CONFLICT(date, bed_number)
            DO UPDATE SET
                mobility_target = excluded.mobility_target,
                mobility_achieved = excluded.mobility_achieved,
                on_ventilation = excluded.on_ventilation,
                updated_at = CURRENT_TIMESTAMP
            """,
            (
                snapshot_date.isoformat(),
                bed_number,
                float(fields.get("mobility_target") or 0),
                float(fields.get("mobility_achieved") or 0),
                1 if fields.get("on_ventilation") else 0,
            ),
        )

    def list_daily_metrics(self, start: date, end: date) -> list[DailyMetricSnapshot]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT date, bed_number, mobility_target, mobility_achieved, on_ventilation
                FROM daily_metrics
                WHERE date >= ? AND date <= ?
                ORDER BY date ASC, bed_number ASC
                """,
                (start.isoformat(), end.isoformat()),
            ).fetchall()
        return [_snapshot_from_row(row) for row in rows]

    def get_settings(self) -> dict[str, Any] | None:
        with self._connect() as conn:
            row = conn.execute("SELECT unit_name, total_beds FROM settings WHERE settings_id = 1").fetchone()
        return dict(row) if row is not None else None

    def save_settings(self, *, unit_name: str, total_beds: int) -> None:
        if int(total_beds) < 1:
            raise ValueError("Total beds must be at least 1.")
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO settings(settings_id, unit_name, total_beds)
                VALUES (1, ?, ?)
                ON CONFLICT(settings_id)
                DO UPDATE SET
                    unit_name = excluded.unit_name,
                    total_beds = excluded.total_beds
                """,
                (unit_name.strip(), int(total_beds)),
            )
        LOGGER.info("Saved unit settings: %s with %d beds", unit_name.strip(), int(total_beds))
