from __future__ import annotations

import logging
import math
from dataclasses import replace
from datetime import datetime

from src.bed_models import Bed, DischargeRecord, as_utc, utc_now
from src.bed_store import BED_FIELDS, ICUBedStore

LOGGER = logging.getLogger(__name__)

SECONDS_PER_DAY = 24 * 60 * 60


def ventilation_duration_days(start: datetime | None, now: datetime) -> int:
    if start is None:
        return 0
    elapsed = (as_utc(now) - as_utc(start)).total_seconds()
    if elapsed <= 0:
        return 0
    return math.ceil(elapsed / SECONDS_PER_DAY)


def build_discharge(bed: Bed, now: datetime | None = None) -> tuple[DischargeRecord | None, Bed]:
    """Snapshot an occupied bed into a discharge record and return the vacant bed.

    A bed that is already vacant yields no record.
    """
    moment = as_utc(now or utc_now())
    record = None
    if bed.is_occupied:
        record = DischargeRecord(
            discharge_timestamp=moment,
            bed_number=bed.bed_number,
            ventilation_duration_days=ventilation_duration_days(bed.ventilation_start_time, moment),
            extubation_counters=bed.extubation_counters,
        )
    return record, Bed.vacant(bed.bed_number)


def discharge_bed(
    store: ICUBedStore,
    bed_number: str,
    now: datetime | None = None,
) -> tuple[DischargeRecord | None, Bed]:
    current = store.get_bed(bed_number)
    if current is None:
        LOGGER.warning("Discharge requested for unknown bed %s; nothing written.", bed_number)
        return None, Bed.vacant(bed_number)
    record, reset = build_discharge(current, now=now)
    reset_fields = {name: getattr(reset, name) for name in BED_FIELDS}

    record_id = store.discharge_and_reset(record=record, bed_number=bed_number, reset_fields=reset_fields)
    if record is None:
        LOGGER.info("Bed %s was already vacant; defaults re-asserted, nothing archived.", bed_number)
    else:
        LOGGER.info(
            "Bed %s discharged: %d ventilation days, %d extubations archived.",
            bed_number,
            record.ventilation_duration_days,
            record.extubation_counters.total,
        )
        record = replace(record, record_id=record_id)
    return record, store.get_bed(bed_number) or reset
