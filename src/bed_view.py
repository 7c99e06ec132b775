from __future__ import annotations

from collections import Counter
from datetime import datetime
from typing import Any, Sequence

from src.bed_models import BED_STATUSES, STATUS_LABELS, Bed, HistoryEntry, as_utc

STATUS_COLOR = {
    "Vago": "#94a3b8",
    "VMI": "#b91c1c",
    "VNI": "#b45309",
    "Desmame": "#0369a1",
    "Alta": "#15803d",
}

BED_TABLE_COLUMNS = [
    "Bed",
    "Initials",
    "Status",
    "Days on ventilation",
    "IMS (target / achieved)",
    "Extubations",
    "Last update",
]


def status_color(status: str) -> str:
    return STATUS_COLOR.get(status, "#334155")


def status_label(status: str) -> str:
    return STATUS_LABELS.get(status, status)


def calendar_days_on_ventilation(bed: Bed, now: datetime) -> int:
    if bed.ventilation_start_time is None:
        return 0
    return max(0, (as_utc(now).date() - as_utc(bed.ventilation_start_time).date()).days)


def _mobility_text(bed: Bed) -> str:
    if bed.mobility_scale is None:
        return "-"
    return f"{bed.mobility_scale.target:g} / {bed.mobility_scale.achieved:g}"


def recent_history(bed: Bed, limit: int = 5) -> list[HistoryEntry]:
    if limit <= 0:
        return []
    return list(reversed(bed.history[-limit:]))


def indicator_summary(bed: Bed, now: datetime) -> str:
    """Plain-text indicator block nurses paste into the chart."""
    mobility = bed.mobility_scale
    lines = [
        f"Ventilation days: {calendar_days_on_ventilation(bed, now)}",
        f"IMS target: {mobility.target:g}" if mobility else "IMS target: 0",
        f"IMS achieved: {mobility.achieved:g}" if mobility else "IMS achieved: 0",
        f"Extubations: {bed.extubation_counters.total}",
    ]
    return "\n".join(lines)


def bed_table_rows(beds: Sequence[Bed], now: datetime) -> list[dict[str, Any]]:
    rows: list[dict[str, Any]] = []
    for bed in beds:
        latest = bed.history[-1] if bed.history else None
        rows.append(
            {
                "Bed": bed.bed_number,
                "Initials": bed.initials,
                "Status": bed.status,
                "Days on ventilation": calendar_days_on_ventilation(bed, now) if bed.is_active else 0,
                "IMS (target / achieved)": _mobility_text(bed),
                "Extubations": bed.extubation_counters.total,
                "Last update": latest.text if latest else "",
            }
        )
    return rows


def status_counts(beds: Sequence[Bed]) -> dict[str, int]:
    counts = Counter(bed.status for bed in beds)
    return {status: counts.get(status, 0) for status in BED_STATUSES}
