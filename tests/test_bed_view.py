from __future__ import annotations

import unittest
from datetime import datetime, timedelta, timezone

from src.bed_models import Bed, ExtubationCounters, HistoryEntry, MobilityScale
from src.bed_view import (
    bed_table_rows,
    calendar_days_on_ventilation,
    indicator_summary,
    recent_history,
    status_counts,
)

NOW = datetime(2026, 10, 19, 9, 0, tzinfo=timezone.utc)


def _entry(index: int) -> HistoryEntry:
    return HistoryEntry(entry_id=str(index), timestamp=NOW - timedelta(hours=10 - index), text=f"event {index}")


class BedViewTests(unittest.TestCase):
    def test_calendar_days_count_date_boundaries(self) -> None:
        bed = Bed(bed_number="02", status="VMI", initials="J.P.", ventilation_start_time=datetime(2026, 10, 18, 23, 0, tzinfo=timezone.utc))
        self.assertEqual(calendar_days_on_ventilation(bed, NOW), 1)
        self.assertEqual(calendar_days_on_ventilation(Bed.vacant("01"), NOW), 0)

    def test_recent_history_is_newest_first(self) -> None:
        bed = Bed(bed_number="02", status="VMI", history=tuple(_entry(index) for index in range(6)))
        recent = recent_history(bed, limit=3)
        self.assertEqual([entry.text for entry in recent], ["event 5", "event 4", "event 3"])
        self.assertEqual(recent_history(bed, limit=0), [])

    def test_indicator_summary_lines(self) -> None:
        bed = Bed(
            bed_number="02",
            status="VMI",
            initials="J.P.",
            ventilation_start_time=NOW - timedelta(days=12),
            mobility_scale=MobilityScale(target=4, achieved=2),
            extubation_counters=ExtubationCounters(success=1, fail=1),
        )
        self.assertEqual(
            indicator_summary(bed, NOW).splitlines(),
            ["Ventilation days: 12", "IMS target: 4", "IMS achieved: 2", "Extubations: 2"],
        )

    def test_table_rows_and_status_counts(self) -> None:
        beds = [
            Bed.vacant("01"),
            Bed(bed_number="02", status="VNI", initials="M.S.", history=(_entry(1),)),
        ]
        rows = bed_table_rows(beds, NOW)
        self.assertEqual(rows[0]["IMS (target / achieved)"], "-")
        self.assertEqual(rows[1]["Last update"], "event 1")
        counts = status_counts(beds)
        self.assertEqual(counts["Vago"], 1)
        self.assertEqual(counts["VNI"], 1)
        self.assertEqual(counts["VMI"], 0)


if __name__ == "__main__":
    unittest.main()
