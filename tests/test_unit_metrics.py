from __future__ import annotations

import tempfile
import unittest
from datetime import date, datetime, timedelta, timezone
from pathlib import Path

from src.bed_models import Bed, DailyMetricSnapshot, DischargeRecord, ExtubationCounters
from src.bed_store import ICUBedStore
from src.unit_metrics import (
    aggregate_unit_metrics,
    compute_metrics,
    month_window,
    round_half_up,
    week_window,
    window_for_period,
)

NOW = datetime(2026, 10, 19, 9, 0, tzinfo=timezone.utc)
WINDOW_START = datetime(2026, 10, 1, tzinfo=timezone.utc)
WINDOW_END = datetime(2026, 10, 31, 23, 59, 59, tzinfo=timezone.utc)


def _discharge(day: int, ventilation_days: int, **counters: int) -> DischargeRecord:
    return DischargeRecord(
        discharge_timestamp=datetime(2026, 10, day, 12, tzinfo=timezone.utc),
        bed_number="01",
        ventilation_duration_days=ventilation_days,
        extubation_counters=ExtubationCounters(**counters),
    )


def _snapshot(day: int, bed_number: str, target: float, achieved: float) -> DailyMetricSnapshot:
    return DailyMetricSnapshot(
        date=date(2026, 10, day),
        bed_number=bed_number,
        mobility_target=target,
        mobility_achieved=achieved,
        on_ventilation=False,
    )


class AggregateUnitMetricsTests(unittest.TestCase):
    def test_empty_unit_is_all_zero(self) -> None:
        kpi = aggregate_unit_metrics([], [], [], NOW)
        self.assertEqual(kpi.ventilation_average, 0)
        self.assertEqual(kpi.mobility_compliance_rate, 0)
        self.assertEqual(kpi.extubation_fail_rate, 0)
        self.assertEqual(kpi.extubation_total, 0)

    def test_ventilation_average_combines_discharges_and_active_beds(self) -> None:
        active = Bed(bed_number="02", status="VMI", initials="J.P.", ventilation_start_time=NOW - timedelta(days=3))
        kpi = aggregate_unit_metrics([_discharge(5, 7)], [], [active], NOW)
        self.assertEqual(kpi.ventilation_average, 5)
        self.assertEqual(kpi.ventilation_contributors, 2)

    def test_zero_day_discharges_and_unventilated_beds_are_skipped(self) -> None:
        active = Bed(bed_number="03", status="VNI", initials="M.S.")
        kpi = aggregate_unit_metrics([_discharge(5, 0), _discharge(6, 4)], [], [active], NOW)
        self.assertEqual(kpi.ventilation_average, 4)
        self.assertEqual(kpi.ventilation_contributors, 1)

    def test_average_rounds_half_up(self) -> None:
        kpi = aggregate_unit_metrics([_discharge(5, 2), _discharge(6, 3)], [], [], NOW)
        self.assertEqual(kpi.ventilation_average, 3)
        self.assertEqual(round_half_up(2.5), 3)
        self.assertEqual(round_half_up(2.49), 2)

    def test_mobility_compliance_counts_only_targeted_snapshots(self) -> None:
        snapshots = [
            _snapshot(2, "01", 6, 6),
            _snapshot(3, "01", 6, 4),
            _snapshot(3, "02", 4, 5),
            _snapshot(4, "02", 0, 3),
        ]
        kpi = aggregate_unit_metrics([], snapshots, [], NOW)
        self.assertEqual(kpi.mobility_assessments, 3)
        self.assertEqual(kpi.mobility_compliance_rate, 67)

    def test_extubations_include_active_beds_running_counters(self) -> None:
        active = Bed(
            bed_number="04",
            status="Desmame",
            initials="A.C.",
            extubation_counters=ExtubationCounters(fail=1, self_extubation=1),
        )
        vacant = Bed(bed_number="05", extubation_counters=ExtubationCounters(success=9))
        kpi = aggregate_unit_metrics([_discharge(5, 0, success=2, accidental=1)], [], [active, vacant], NOW)
        self.assertEqual(kpi.extubation_total, 5)
        self.assertEqual(kpi.extubation_breakdown, ExtubationCounters(success=2, fail=1, accidental=1, self_extubation=1))
        self.assertEqual(kpi.extubation_fail_rate, 20)

    def test_breakdown_rows_hide_zero_counts_by_default(self) -> None:
        kpi = aggregate_unit_metrics([_discharge(5, 0, success=2)], [], [], NOW)
        self.assertEqual(kpi.breakdown_rows(), [{"type": "Planned (success)", "count": 2}])
        self.assertEqual(len(kpi.breakdown_rows(include_zero=True)), 4)


class ComputeMetricsTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmpdir = tempfile.TemporaryDirectory()
        self.store = ICUBedStore(Path(self._tmpdir.name) / "icu.db")

    def tearDown(self) -> None:
        self._tmpdir.cleanup()

    def test_empty_store_returns_zero_kpis(self) -> None:
        kpi = compute_metrics(self.store, WINDOW_START, WINDOW_END, now=NOW)
        self.assertEqual(
            (kpi.ventilation_average, kpi.mobility_compliance_rate, kpi.extubation_fail_rate, kpi.extubation_total),
            (0, 0, 0, 0),
        )

    def test_window_filters_history_but_not_active_beds(self) -> None:
        self.store.insert_discharge_record(_discharge(10, 7, success=1))
        self.store.insert_discharge_record(
            DischargeRecord(
                discharge_timestamp=datetime(2026, 9, 20, tzinfo=timezone.utc),
                bed_number="03",
                ventilation_duration_days=30,
                extubation_counters=ExtubationCounters(fail=4),
            )
        )
        self.store.upsert_bed(
            "02",
            {
                "status": "VMI",
                "initials": "J.P.",
                "ventilation_start_time": NOW - timedelta(days=40),
                "extubation_counters": ExtubationCounters(fail=1),
            },
        )
        self.store.insert_vacant_bed("01")
        self.store.upsert_daily_metric_snapshot(date(2026, 10, 3), "02", {"mobility_target": 5, "mobility_achieved": 5})
        self.store.upsert_daily_metric_snapshot(date(2026, 9, 3), "02", {"mobility_target": 5, "mobility_achieved": 1})

        kpi = compute_metrics(self.store, WINDOW_START, WINDOW_END, now=NOW)

        self.assertEqual(kpi.ventilation_average, round_half_up((7 + 40) / 2))
        self.assertEqual(kpi.mobility_compliance_rate, 100)
        self.assertEqual(kpi.extubation_total, 2)
        self.assertEqual(kpi.extubation_fail_rate, 50)

    def test_inverted_window_is_rejected(self) -> None:
        with self.assertRaises(ValueError):
            compute_metrics(self.store, WINDOW_END, WINDOW_START, now=NOW)


class WindowTests(unittest.TestCase):
    def test_week_window_runs_sunday_to_saturday(self) -> None:
        start, end = week_window(NOW)
        self.assertEqual(start, datetime(2026, 10, 18, tzinfo=timezone.utc))
        self.assertEqual(end, datetime(2026, 10, 24, 23, 59, 59, tzinfo=timezone.utc))

    def test_month_window_covers_calendar_month(self) -> None:
        start, end = month_window(datetime(2026, 2, 10, tzinfo=timezone.utc))
        self.assertEqual(start, datetime(2026, 2, 1, tzinfo=timezone.utc))
        self.assertEqual(end, datetime(2026, 2, 28, 23, 59, 59, tzinfo=timezone.utc))

    def test_unknown_period_raises(self) -> None:
        self.assertEqual(window_for_period("monthly", NOW), month_window(NOW))
        with self.assertRaises(ValueError):
            window_for_period("yearly", NOW)


if __name__ == "__main__":
    unittest.main()
