from __future__ import annotations

import calendar
import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, time, timedelta, timezone
from typing import Any, Iterable

from src.bed_models import Bed, DailyMetricSnapshot, DischargeRecord, ExtubationCounters, as_utc, utc_now
from src.bed_store import ICUBedStore
from src.discharge import ventilation_duration_days

LOGGER = logging.getLogger(__name__)

VENTILATION_TARGET_DAYS = 5
MOBILITY_TARGET_RATE = 80

PERIODS = ("weekly", "monthly")

EXTUBATION_LABELS = [
    ("success", "Planned (success)"),
    ("fail", "Failed"),
    ("accidental", "Accidental"),
    ("self_extubation", "Self-extubation"),
]


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _percentage(part: int, whole: int) -> int:
    if whole <= 0:
        return 0
    return round_half_up(100 * part / whole)


@dataclass(frozen=True)
class UnitKPI:
    ventilation_average: int = 0
    mobility_compliance_rate: int = 0
    extubation_total: int = 0
    extubation_fail_rate: int = 0
    extubation_breakdown: ExtubationCounters = field(default_factory=ExtubationCounters)
    ventilation_contributors: int = 0
    mobility_assessments: int = 0

    @property
    def ventilation_on_target(self) -> bool:
        return self.ventilation_average <= VENTILATION_TARGET_DAYS

    @property
    def mobility_on_target(self) -> bool:
        return self.mobility_compliance_rate >= MOBILITY_TARGET_RATE

    def breakdown_rows(self, include_zero: bool = False) -> list[dict[str, Any]]:
        rows = []
        for attribute, label in EXTUBATION_LABELS:
            value = getattr(self.extubation_breakdown, attribute)
            if value or include_zero:
                rows.append({"type": label, "count": value})
        return rows

    def as_dict(self) -> dict[str, Any]:
        return {
            "ventilation_average": self.ventilation_average,
            "mobility_compliance_rate": self.mobility_compliance_rate,
            "extubation_total": self.extubation_total,
            "extubation_fail_rate": self.extubation_fail_rate,
            "extubation_breakdown": self.extubation_breakdown.as_dict(),
        }


def aggregate_unit_metrics(
    discharges: Iterable[DischargeRecord],
    snapshots: Iterable[DailyMetricSnapshot],
    active_beds: Iterable[Bed],
    now: datetime,
) -> UnitKPI:
    """Combine windowed discharge history with the current state of active beds.

    Discharges and daily snapshots are expected to be pre-filtered to the
    window. Active beds always count with their running values as of ``now``.
    """
    discharges = list(discharges)
    active_beds = [bed for bed in active_beds if bed.is_active]

    ventilation_days = 0
    ventilation_count = 0
    for record in discharges:
        if record.ventilation_duration_days > 0:
            ventilation_days += record.ventilation_duration_days
            ventilation_count += 1
    for bed in active_beds:
        if bed.ventilation_start_time is not None:
            ventilation_days += ventilation_duration_days(bed.ventilation_start_time, now)
            ventilation_count += 1
    ventilation_average = round_half_up(ventilation_days / ventilation_count) if ventilation_count else 0

    assessed = 0
    met = 0
    for snapshot in snapshots:
        if snapshot.mobility_target > 0:
            assessed += 1
            if snapshot.mobility_achieved >= snapshot.mobility_target:
                met += 1

    breakdown = ExtubationCounters()
    for record in discharges:
        breakdown = breakdown.plus(record.extubation_counters)
    for bed in active_beds:
        breakdown = breakdown.plus(bed.extubation_counters)

    return UnitKPI(
        ventilation_average=ventilation_average,
        mobility_compliance_rate=_percentage(met, assessed),
        extubation_total=breakdown.total,
        extubation_fail_rate=_percentage(breakdown.fail, breakdown.total),
        extubation_breakdown=breakdown,
        ventilation_contributors=ventilation_count,
        mobility_assessments=assessed,
    )


def compute_metrics(
    store: ICUBedStore,
    window_start: datetime,
    window_end: datetime,
    now: datetime | None = None,
) -> UnitKPI:
    moment = as_utc(now or utc_now())
    start = as_utc(window_start)
    end = as_utc(window_end)
    if end < start:
        raise ValueError("Window end must not precede window start.")

    discharges = store.list_discharges(start, end)
    snapshots = store.list_daily_metrics(start.date(), end.date())
    active_beds = [bed for bed in store.list_beds() if bed.is_active]
    LOGGER.debug(
        "Aggregating %d discharges, %d snapshots, %d active beds for %s..%s",
        len(discharges),
        len(snapshots),
        len(active_beds),
        start.isoformat(),
        end.isoformat(),
    )
    return aggregate_unit_metrics(discharges, snapshots, active_beds, moment)


def week_window(now: datetime) -> tuple[datetime, datetime]:
    """Sunday 00:00 to Saturday 23:59:59 around ``now``."""
    moment = as_utc(now)
    days_since_sunday = (moment.weekday() + 1) % 7
    first_day = moment.date() - timedelta(days=days_since_sunday)
    last_day = first_day + timedelta(days=6)
    return (
        datetime.combine(first_day, time.min, tzinfo=timezone.utc),
        datetime.combine(last_day, time.max, tzinfo=timezone.utc).replace(microsecond=0),
    )


def month_window(now: datetime) -> tuple[datetime, datetime]:
    moment = as_utc(now)
    last = calendar.monthrange(moment.year, moment.month)[1]
    return (
        datetime(moment.year, moment.month, 1, tzinfo=timezone.utc),
        datetime(moment.year, moment.month, last, 23, 59, 59, tzinfo=timezone.utc),
    )


def window_for_period(period: str, now: datetime | None = None) -> tuple[datetime, datetime]:
    moment = now or utc_now()
    if period == "weekly":
        return week_window(moment)
    if period == "monthly":
        return month_window(moment)
    raise ValueError(f"Unknown period: {period}. Expected one of: {', '.join(PERIODS)}.")
