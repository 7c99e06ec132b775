from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any

VACANT_STATUS = "Vago"
VACANT_INITIALS = "-"

BED_STATUSES = ("Vago", "VMI", "VNI", "Desmame", "Alta")

STATUS_LABELS = {
    "Vago": "Vacant",
    "VMI": "Invasive ventilation",
    "VNI": "Non-invasive ventilation",
    "Desmame": "Weaning",
    "Alta": "Discharge pending",
}


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    return as_utc(value).isoformat(timespec="seconds")


def from_iso(value: Any) -> datetime | None:
    text = str(value or "").strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return as_utc(datetime.fromisoformat(text))


def _non_negative(value: Any) -> int:
    try:
        number = int(value or 0)
    except (TypeError, ValueError):
        return 0
    return max(0, number)


@dataclass(frozen=True)
class MobilityScale:
    target: float
    achieved: float

    @property
    def compliant(self) -> bool:
        return self.achieved >= self.target


@dataclass(frozen=True)
class ExtubationCounters:
    """Four extubation outcome counts. The total is always their sum."""

    success: int = 0
    fail: int = 0
    accidental: int = 0
    self_extubation: int = 0

    def __post_init__(self) -> None:
        for name in ("success", "fail", "accidental", "self_extubation"):
            object.__setattr__(self, name, _non_negative(getattr(self, name)))

    @property
    def total(self) -> int:
        return self.success + self.fail + self.accidental + self.self_extubation

    def plus(self, other: ExtubationCounters) -> ExtubationCounters:
        return ExtubationCounters(
            success=self.success + other.success,
            fail=self.fail + other.fail,
            accidental=self.accidental + other.accidental,
            self_extubation=self.self_extubation + other.self_extubation,
        )

    def as_dict(self) -> dict[str, int]:
        return {
            "success": self.success,
            "fail": self.fail,
            "accidental": self.accidental,
            "self": self.self_extubation,
            "total": self.total,
        }


@dataclass(frozen=True)
class HistoryEntry:
    entry_id: str
    timestamp: datetime
    text: str
    metrics_summary: str | None = None

    def as_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.entry_id,
            "timestamp": to_iso(self.timestamp),
            "text": self.text,
        }
        if self.metrics_summary:
            data["metrics"] = self.metrics_summary
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> HistoryEntry:
        return cls(
            entry_id=str(data.get("id", "")),
            timestamp=from_iso(data.get("timestamp")) or utc_now(),
            text=str(data.get("text", "")),
            metrics_summary=data.get("metrics") or None,
        )


@dataclass(frozen=True)
class Bed:
    bed_number: str
    status: str = VACANT_STATUS
    initials: str = VACANT_INITIALS
    ventilation_start_time: datetime | None = None
    mobility_scale: MobilityScale | None = None
    extubation_counters: ExtubationCounters = field(default_factory=ExtubationCounters)
    history: tuple[HistoryEntry, ...] = ()
    last_generated_record: str | None = None
    updated_at: datetime | None = None

    @classmethod
    def vacant(cls, bed_number: str) -> Bed:
        return cls(bed_number=bed_number)

    @property
    def is_vacant(self) -> bool:
        return self.status == VACANT_STATUS

    @property
    def is_active(self) -> bool:
        return self.status != VACANT_STATUS

    @property
    def is_occupied(self) -> bool:
        return self.status != VACANT_STATUS or self.initials != VACANT_INITIALS


@dataclass(frozen=True)
class DischargeRecord:
    discharge_timestamp: datetime
    bed_number: str
    ventilation_duration_days: int
    extubation_counters: ExtubationCounters
    record_id: int | None = None


@dataclass(frozen=True)
class DailyMetricSnapshot:
    date: date
    bed_number: str
    mobility_target: float
    mobility_achieved: float
    on_ventilation: bool
