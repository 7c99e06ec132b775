from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, fields, replace
from datetime import datetime
from typing import Any

from src.bed_models import (
    VACANT_STATUS,
    Bed,
    ExtubationCounters,
    HistoryEntry,
    MobilityScale,
    as_utc,
    utc_now,
)
from src.bed_store import BED_FIELDS, ICUBedStore

LOGGER = logging.getLogger(__name__)

# Status given to a vacant bed on its first recorded event when none is supplied.
ADMISSION_STATUS = "VMI"


@dataclass(frozen=True)
class StructuredUpdate:
    """Partial clinical update from a recording. ``None`` means the field was not reported."""

    narrative_text: str | None = None
    status: str | None = None
    initials: str | None = None
    ventilation_start_time: datetime | None = None
    extubation_increment: ExtubationCounters | None = None
    mobility_target: float | None = None
    mobility_achieved: float | None = None
    formatted_clinical_note: str | None = None

    def is_empty(self) -> bool:
        return all(getattr(self, item.name) is None for item in fields(self))

    def present_fields(self) -> list[str]:
        return [item.name for item in fields(self) if getattr(self, item.name) is not None]


@dataclass(frozen=True)
class ManualEdit:
    initials: str | None = None
    status: str | None = None
    mobility_target: float | None = None
    mobility_achieved: float | None = None
    ventilation_start_time: datetime | None = None
    clear_ventilation_start: bool = False
    extubation_success: int | None = None
    extubation_fail: int | None = None
    extubation_accidental: int | None = None
    extubation_self: int | None = None
    clinical_note: str | None = None
    narrative_text: str | None = None

    def is_empty(self) -> bool:
        return not self.clear_ventilation_start and all(
            getattr(self, item.name) is None
            for item in fields(self)
            if item.name != "clear_ventilation_start"
        )


def recompute_counters(
    current: ExtubationCounters,
    *,
    increment: ExtubationCounters | None = None,
    success: int | None = None,
    fail: int | None = None,
    accidental: int | None = None,
    self_extubation: int | None = None,
) -> ExtubationCounters:
    """Single entry point for counter writes: sub-counts in, total derived."""
    base = ExtubationCounters(
        success=current.success if success is None else success,
        fail=current.fail if fail is None else fail,
        accidental=current.accidental if accidental is None else accidental,
        self_extubation=current.self_extubation if self_extubation is None else self_extubation,
    )
    return base.plus(increment) if increment is not None else base


def _merge_mobility(
    current: MobilityScale | None,
    target: float | None,
    achieved: float | None,
) -> MobilityScale | None:
    if target is None and achieved is None:
        return None
    base_target = current.target if current is not None else 0.0
    base_achieved = current.achieved if current is not None else 0.0
    return MobilityScale(
        target=max(0.0, float(base_target if target is None else target)),
        achieved=max(0.0, float(base_achieved if achieved is None else achieved)),
    )


def _metrics_summary(mobility: MobilityScale | None) -> str | None:
    if mobility is None:
        return None
    return f"IMS target: {mobility.target:g} / achieved: {mobility.achieved:g}"


def _history_entry(text: str, now: datetime, mobility: MobilityScale | None) -> HistoryEntry:
    return HistoryEntry(
        entry_id=uuid.uuid4().hex,
        timestamp=now,
        text=text.strip(),
        metrics_summary=_metrics_summary(mobility),
    )


def _accepted_status(status: str | None, bed_number: str) -> str | None:
    if status == VACANT_STATUS:
        LOGGER.warning("Ignoring request to set bed %s vacant outside of discharge.", bed_number)
        return None
    return status


def _is_first_contact(bed: Bed) -> bool:
    return bed.ventilation_start_time is None and (bed.is_vacant or not bed.history)


def _admit(bed: Bed, changes: dict[str, Any], now: datetime) -> None:
    if not _is_first_contact(bed):
        return
    if "ventilation_start_time" not in changes:
        changes["ventilation_start_time"] = now
    if bed.is_vacant and "status" not in changes:
        changes["status"] = ADMISSION_STATUS
    LOGGER.info("First contact for bed %s: admission at %s", bed.bed_number, changes["ventilation_start_time"])


def apply_update(bed: Bed, update: StructuredUpdate, now: datetime | None = None) -> Bed:
    """Merge a partial clinical update into a bed.

    Absent fields keep their current value, extubation increments are added
    to the existing sub-counts, and a narrative is appended to the history.
    The first update on a vacant bed starts the ventilation clock and moves
    it out of ``Vago``; later updates never move the clock.
    """
    if update.is_empty():
        LOGGER.info("Update for bed %s carries no recognized field; nothing applied.", bed.bed_number)
        return bed

    moment = as_utc(now or utc_now())
    changes: dict[str, Any] = {}

    status = _accepted_status(update.status, bed.bed_number)
    if status is not None:
        changes["status"] = status
    if update.initials is not None and update.initials.strip():
        changes["initials"] = update.initials.strip()
    if update.ventilation_start_time is not None:
        changes["ventilation_start_time"] = as_utc(update.ventilation_start_time)

    reported_mobility = _merge_mobility(bed.mobility_scale, update.mobility_target, update.mobility_achieved)
    if reported_mobility is not None:
        changes["mobility_scale"] = reported_mobility

    if update.extubation_increment is not None:
        changes["extubation_counters"] = recompute_counters(
            bed.extubation_counters,
            increment=update.extubation_increment,
        )

    if update.formatted_clinical_note is not None:
        changes["last_generated_record"] = update.formatted_clinical_note

    if update.narrative_text is not None and update.narrative_text.strip():
        entry = _history_entry(update.narrative_text, moment, reported_mobility)
        changes["history"] = (*bed.history, entry)

    if not changes:
        LOGGER.info("Update for bed %s left nothing to apply.", bed.bed_number)
        return bed
    _admit(bed, changes, moment)
    return replace(bed, updated_at=moment, **changes)


def apply_manual_edit(bed: Bed, edit: ManualEdit, now: datetime | None = None) -> Bed:
    """Form edits: absolute counter values and direct ventilation-start correction."""
    if edit.is_empty():
        return bed

    moment = as_utc(now or utc_now())
    changes: dict[str, Any] = {}

    status = _accepted_status(edit.status, bed.bed_number)
    if status is not None:
        changes["status"] = status
    if edit.initials is not None and edit.initials.strip():
        changes["initials"] = edit.initials.strip()

    if edit.clear_ventilation_start:
        changes["ventilation_start_time"] = None
    elif edit.ventilation_start_time is not None:
        changes["ventilation_start_time"] = as_utc(edit.ventilation_start_time)

    mobility = _merge_mobility(bed.mobility_scale, edit.mobility_target, edit.mobility_achieved)
    if mobility is not None:
        changes["mobility_scale"] = mobility

    counter_values = (edit.extubation_success, edit.extubation_fail, edit.extubation_accidental, edit.extubation_self)
    if any(value is not None for value in counter_values):
        changes["extubation_counters"] = recompute_counters(
            bed.extubation_counters,
            success=edit.extubation_success,
            fail=edit.extubation_fail,
            accidental=edit.extubation_accidental,
            self_extubation=edit.extubation_self,
        )

    if edit.clinical_note is not None:
        changes["last_generated_record"] = edit.clinical_note

    if edit.narrative_text is not None and edit.narrative_text.strip():
        changes["history"] = (*bed.history, _history_entry(edit.narrative_text, moment, mobility))

    if not changes:
        return bed
    if bed.is_vacant:
        if edit.clear_ventilation_start:
            # An explicit clear wins over the automatic clock start.
            changes.setdefault("status", ADMISSION_STATUS)
        else:
            _admit(bed, changes, moment)
    return replace(bed, updated_at=moment, **changes)


def _changed_fields(before: Bed, after: Bed) -> dict[str, Any]:
    return {
        name: getattr(after, name)
        for name in BED_FIELDS
        if getattr(after, name) != getattr(before, name)
    }


def _load_bed(store: ICUBedStore, bed_number: str) -> Bed:
    bed = store.get_bed(bed_number)
    return bed if bed is not None else Bed.vacant(bed_number)


def save_structured_update(
    store: ICUBedStore,
    bed_number: str,
    update: StructuredUpdate,
    now: datetime | None = None,
) -> Bed:
    bed = _load_bed(store, bed_number)
    updated = apply_update(bed, update, now=now)
    changes = _changed_fields(bed, updated)
    if not changes:
        return bed
    store.upsert_bed(bed_number, changes)
    LOGGER.info("Bed %s updated from recording: %s", bed_number, ", ".join(sorted(changes)))
    return _load_bed(store, bed_number)


def save_manual_edit(
    store: ICUBedStore,
    bed_number: str,
    edit: ManualEdit,
    now: datetime | None = None,
) -> Bed:
    moment = as_utc(now or utc_now())
    bed = _load_bed(store, bed_number)
    updated = apply_manual_edit(bed, edit, now=moment)
    if updated is bed:
        return bed
    changes = _changed_fields(bed, updated)

    mobility = updated.mobility_scale
    store.save_bed_with_snapshot(
        bed_number,
        changes,
        snapshot_date=moment.date(),
        snapshot_fields={
            "mobility_target": mobility.target if mobility is not None else 0,
            "mobility_achieved": mobility.achieved if mobility is not None else 0,
            "on_ventilation": updated.ventilation_start_time is not None,
        },
    )
    LOGGER.info("Bed %s manually edited: %s", bed_number, ", ".join(sorted(changes)) or "snapshot only")
    return _load_bed(store, bed_number)


def save_clinical_note(store: ICUBedStore, bed_number: str, text: str) -> Bed:
    bed = _load_bed(store, bed_number)
    if bed.last_generated_record == text:
        return bed
    store.upsert_bed(bed_number, {"last_generated_record": text})
    return _load_bed(store, bed_number)
