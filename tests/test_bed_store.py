from __future__ import annotations

import tempfile
import unittest
from datetime import date, datetime, timezone
from pathlib import Path

from src.bed_models import (
    DischargeRecord,
    ExtubationCounters,
    HistoryEntry,
    MobilityScale,
)
from src.bed_store import ICUBedStore


class BedStoreTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmpdir = tempfile.TemporaryDirectory()
        self.store = ICUBedStore(Path(self._tmpdir.name) / "icu.db")

    def tearDown(self) -> None:
        self._tmpdir.cleanup()

    def test_missing_bed_returns_none(self) -> None:
        self.assertIsNone(self.store.get_bed("01"))

    def test_insert_vacant_bed_is_idempotent(self) -> None:
        self.assertTrue(self.store.insert_vacant_bed("01"))
        self.assertFalse(self.store.insert_vacant_bed("01"))
        bed = self.store.get_bed("01")
        self.assertEqual(bed.status, "Vago")
        self.assertEqual(bed.initials, "-")
        self.assertEqual(bed.history, ())
        self.assertEqual(bed.extubation_counters.total, 0)

    def test_upsert_bed_writes_only_given_fields(self) -> None:
        start = datetime(2026, 10, 1, 8, 30, tzinfo=timezone.utc)
        entry = HistoryEntry(entry_id="a1", timestamp=start, text="Admitted", metrics_summary="IMS target: 4 / achieved: 2")
        self.store.upsert_bed(
            "03",
            {
                "status": "VMI",
                "initials": "J.P.",
                "ventilation_start_time": start,
                "mobility_scale": MobilityScale(target=4, achieved=2),
                "extubation_counters": ExtubationCounters(success=2, fail=1),
                "history": (entry,),
            },
        )
        self.store.upsert_bed("03", {"last_generated_record": "Note"})

        bed = self.store.get_bed("03")
        self.assertEqual(bed.status, "VMI")
        self.assertEqual(bed.initials, "J.P.")
        self.assertEqual(bed.ventilation_start_time, start)
        self.assertEqual(bed.mobility_scale, MobilityScale(target=4.0, achieved=2.0))
        self.assertEqual(bed.extubation_counters.total, 3)
        self.assertEqual(bed.history, (entry,))
        self.assertEqual(bed.last_generated_record, "Note")

    def test_stored_total_matches_sub_counts(self) -> None:
        self.store.upsert_bed("02", {"extubation_counters": ExtubationCounters(1, 2, 3, 4)})
        with self.store._connect() as conn:
            row = conn.execute("SELECT extubation_total FROM beds WHERE bed_number = '02'").fetchone()
        self.assertEqual(row["extubation_total"], 10)

    def test_upsert_bed_rejects_unknown_field(self) -> None:
        with self.assertRaises(ValueError):
            self.store.upsert_bed("01", {"extubation_total": 4})

    def test_list_beds_orders_numerically(self) -> None:
        for number in ("10", "02", "01"):
            self.store.insert_vacant_bed(number)
        self.assertEqual([bed.bed_number for bed in self.store.list_beds()], ["01", "02", "10"])

    def test_list_discharges_filters_by_window(self) -> None:
        for day in (1, 15, 30):
            self.store.insert_discharge_record(
                DischargeRecord(
                    discharge_timestamp=datetime(2026, 9, day, 12, tzinfo=timezone.utc),
                    bed_number="01",
                    ventilation_duration_days=day,
                    extubation_counters=ExtubationCounters(success=1),
                )
            )
        records = self.store.list_discharges(
            datetime(2026, 9, 10, tzinfo=timezone.utc),
            datetime(2026, 9, 20, tzinfo=timezone.utc),
        )
        self.assertEqual([record.ventilation_duration_days for record in records], [15])
        self.assertIsNotNone(records[0].record_id)

    def test_daily_metric_snapshot_upserts_on_date_and_bed(self) -> None:
        day = date(2026, 10, 5)
        self.store.upsert_daily_metric_snapshot(day, "01", {"mobility_target": 6, "mobility_achieved": 3})
        self.store.upsert_daily_metric_snapshot(
            day, "01", {"mobility_target": 6, "mobility_achieved": 6, "on_ventilation": True}
        )
        self.store.upsert_daily_metric_snapshot(day, "02", {"mobility_target": 4, "mobility_achieved": 1})

        snapshots = self.store.list_daily_metrics(day, day)
        self.assertEqual(len(snapshots), 2)
        first = snapshots[0]
        self.assertEqual(first.bed_number, "01")
        self.assertEqual(first.mobility_achieved, 6.0)
        self.assertTrue(first.on_ventilation)
        self.assertEqual(self.store.list_daily_metrics(date(2026, 10, 6), date(2026, 10, 7)), [])

    def test_discharge_and_reset_rolls_back_when_archive_fails(self) -> None:
        self.store.upsert_bed("04", {"status": "VMI", "extubation_counters": ExtubationCounters(success=2)})
        with self.store._connect() as conn:
            conn.execute(
                """
                CREATE TRIGGER block_archive BEFORE INSERT ON discharges
                BEGIN
                    SELECT RAISE(ABORT, 'archive unavailable');
                END
                """
            )
        record = DischargeRecord(
            discharge_timestamp=datetime(2026, 10, 5, tzinfo=timezone.utc),
            bed_number="04",
            ventilation_duration_days=0,
            extubation_counters=ExtubationCounters(success=2),
        )
        with self.assertRaises(Exception):
            self.store.discharge_and_reset(record=record, bed_number="04", reset_fields={"status": "Vago"})

        bed = self.store.get_bed("04")
        self.assertEqual(bed.status, "VMI")
        self.assertEqual(bed.extubation_counters.success, 2)

    def test_settings_round_trip(self) -> None:
        self.assertIsNone(self.store.get_settings())
        self.store.save_settings(unit_name="UTI Neuro", total_beds=12)
        self.store.save_settings(unit_name="UTI Neuro", total_beds=8)
        self.assertEqual(self.store.get_settings(), {"unit_name": "UTI Neuro", "total_beds": 8})
        with self.assertRaises(ValueError):
            self.store.save_settings(unit_name="UTI Neuro", total_beds=0)


if __name__ == "__main__":
    unittest.main()
