from __future__ import annotations

import logging
import re

from src.bed_models import Bed
from src.bed_store import ICUBedStore

LOGGER = logging.getLogger(__name__)


def bed_key(number: int) -> str:
    return f"{int(number):02d}"


def bed_index(bed_number: str) -> int | None:
    match = re.search(r"\d+", str(bed_number or ""))
    return int(match.group(0)) if match else None


def ensure_roster(store: ICUBedStore, target_count: int) -> list[Bed]:
    """Make beds 1..target_count exist and return them in order.

    Beds above the configured count stay in the store and are only hidden,
    so growing the unit again brings them back untouched.
    """
    count = int(target_count)
    if count < 1:
        raise ValueError("A unit needs at least one bed.")

    existing = {bed_index(bed.bed_number) for bed in store.list_beds()}
    created = [
        bed_key(number)
        for number in range(1, count + 1)
        if number not in existing and store.insert_vacant_bed(bed_key(number))
    ]
    if created:
        LOGGER.info("Provisioned %d vacant beds: %s", len(created), ", ".join(created))

    visible = []
    for bed in store.list_beds():
        index = bed_index(bed.bed_number)
        if index is not None and 1 <= index <= count:
            visible.append(bed)
    return visible
