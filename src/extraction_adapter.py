from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import replace
from datetime import date, datetime
from typing import Any

from openai import OpenAI

from src.bed_models import BED_STATUSES, ExtubationCounters, as_utc, utc_now
from src.reconciliation import StructuredUpdate

LOGGER = logging.getLogger(__name__)


class ExtractionError(Exception):
    """Raised when a recording cannot be turned into a structured update."""


class ExtractionTransportError(ExtractionError):
    """Raised when the transcription or extraction service call fails."""


class ExtractionPayloadError(ExtractionError):
    """Raised when the extraction service returns a payload of the wrong shape."""


SYSTEM_PROMPT = """
You extract structured data from a spoken ICU physiotherapy update (Brazilian Portuguese).
Return a single JSON object and nothing else. Omit any key the speaker did not mention.
Keys:
- narrativeText: string, one-paragraph summary of the event
- status: one of "VMI", "VNI", "Desmame", "Alta"
- initials: string, patient initials if mentioned
- ventilationStartDate: ISO date (YYYY-MM-DD) when invasive ventilation started
- extubationIncrement: object with integer keys success, fail, accidental, self for extubations reported now
- mobilityTarget: number, IMS target
- mobilityAchieved: number, IMS achieved
- formattedClinicalNote: string, the update rewritten as a clinical record entry
Do not invent values.
"""

TEXT_FIELDS = {
    "narrativeText": "narrative_text",
    "initials": "initials",
    "formattedClinicalNote": "formatted_clinical_note",
}
NUMBER_FIELDS = {
    "mobilityTarget": "mobility_target",
    "mobilityAchieved": "mobility_achieved",
}
KNOWN_KEYS = set(TEXT_FIELDS) | set(NUMBER_FIELDS) | {
    "status",
    "ventilationStartDate",
    "extubationIncrement",
    "extubationTotal",
}
INCREMENT_KEYS = {
    "success": "success",
    "fail": "fail",
    "accidental": "accidental",
    "self": "self_extubation",
}


def _extract_output_text(response: object) -> str:
    output_text = getattr(response, "output_text", "")
    if output_text:
        return output_text.strip()

    parts: list[str] = []
    for item in getattr(response, "output", []):
        for content_item in getattr(item, "content", []):
            text = getattr(content_item, "text", None)
            if text:
                parts.append(text)
    return "\n".join(parts).strip()


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _count(key: str, value: Any) -> int:
    if not _is_number(value) or value < 0 or int(value) != value:
        raise ExtractionPayloadError(f"{key} must be a non-negative whole number, got {value!r}.")
    return int(value)


def _parse_increment(value: Any) -> ExtubationCounters:
    if _is_number(value):
        return ExtubationCounters(success=_count("extubationIncrement", value))
    if not isinstance(value, dict):
        raise ExtractionPayloadError("extubationIncrement must be a number or an object.")
    unknown = set(value) - set(INCREMENT_KEYS)
    if unknown:
        raise ExtractionPayloadError(f"Unknown extubation outcome(s): {', '.join(sorted(unknown))}.")
    counts = {
        INCREMENT_KEYS[key]: _count(f"extubationIncrement.{key}", item)
        for key, item in value.items()
        if item is not None
    }
    return ExtubationCounters(**counts)


def _parse_start(value: Any) -> datetime:
    if not isinstance(value, str):
        raise ExtractionPayloadError("ventilationStartDate must be an ISO date string.")
    text = value.strip()
    try:
        if re.fullmatch(r"\d{4}-\d{2}-\d{2}", text):
            return as_utc(datetime.combine(date.fromisoformat(text), datetime.min.time()))
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        return as_utc(datetime.fromisoformat(text))
    except ValueError as exc:
        raise ExtractionPayloadError(f"ventilationStartDate is not a valid date: {value!r}.") from exc


def _unwrap(payload: Any) -> Any:
    if isinstance(payload, list):
        if not payload:
            raise ExtractionPayloadError("Extraction returned an empty list.")
        payload = payload[0]
        if isinstance(payload, dict) and isinstance(payload.get("output"), dict):
            payload = payload["output"]
    return payload


def parse_extraction_payload(payload: Any) -> StructuredUpdate:
    """Validate a decoded extraction payload and turn it into a StructuredUpdate.

    Keys with a ``null`` value count as absent. Any present key of the wrong
    type rejects the whole payload.
    """
    data = _unwrap(payload)
    if not isinstance(data, dict):
        raise ExtractionPayloadError(f"Extraction payload must be a JSON object, got {type(data).__name__}.")

    unknown = sorted(set(data) - KNOWN_KEYS)
    if unknown:
        LOGGER.info("Ignoring unknown extraction keys: %s", ", ".join(unknown))
    if data.get("extubationTotal") is not None:
        LOGGER.warning("Ignoring extubationTotal from extraction; totals are derived from sub-counts.")

    values: dict[str, Any] = {}
    for key, attribute in TEXT_FIELDS.items():
        value = data.get(key)
        if value is None:
            continue
        if not isinstance(value, str):
            raise ExtractionPayloadError(f"{key} must be a string.")
        if value.strip():
            values[attribute] = value.strip()

    for key, attribute in NUMBER_FIELDS.items():
        value = data.get(key)
        if value is None:
            continue
        if not _is_number(value) or value < 0:
            raise ExtractionPayloadError(f"{key} must be a non-negative number, got {value!r}.")
        values[attribute] = float(value)

    status = data.get("status")
    if status is not None:
        if status not in BED_STATUSES:
            raise ExtractionPayloadError(f"Unknown status {status!r}.")
        values["status"] = status

    if data.get("ventilationStartDate") is not None:
        values["ventilation_start_time"] = _parse_start(data["ventilationStartDate"])
    if data.get("extubationIncrement") is not None:
        values["extubation_increment"] = _parse_increment(data["extubationIncrement"])

    update = StructuredUpdate(**values)
    missing = [key for key in sorted(KNOWN_KEYS - {"extubationTotal"}) if data.get(key) is None]
    if missing:
        LOGGER.info("Partial extraction; not reported: %s", ", ".join(missing))
    return update


def parse_extraction_text(text: str) -> StructuredUpdate:
    cleaned = re.sub(r"```(?:json)?", "", text or "").strip()
    if not cleaned:
        raise ExtractionPayloadError("Extraction returned no text.")
    try:
        payload = json.loads(cleaned)
    except json.JSONDecodeError as exc:
        raise ExtractionPayloadError("Extraction did not return valid JSON.") from exc
    return parse_extraction_payload(payload)


class ClinicalExtractionAdapter:
    def __init__(
        self,
        model: str | None = None,
        transcription_model: str | None = None,
        timeout: float | None = None,
        client: Any = None,
    ) -> None:
        self.model = model or os.getenv("OPENAI_MODEL", "gpt-4.1-mini")
        self.transcription_model = transcription_model or os.getenv("OPENAI_TRANSCRIPTION_MODEL", "whisper-1")
        if client is not None:
            self._client = client
        else:
            api_key = os.getenv("OPENAI_API_KEY", "").strip()
            options: dict[str, Any] = {"api_key": api_key}
            if timeout is not None:
                options["timeout"] = timeout
            self._client = OpenAI(**options) if api_key else None

    @property
    def llm_available(self) -> bool:
        return self._client is not None

    def transcribe(self, audio_bytes: bytes, mime_type: str, filename: str = "recording.webm") -> str:
        if self._client is None:
            raise ExtractionError("OPENAI_API_KEY missing; recordings cannot be processed.")
        try:
            transcription = self._client.audio.transcriptions.create(
                model=self.transcription_model,
                file=(filename, audio_bytes, mime_type),
                language="pt",
            )
        except Exception as error:
            raise ExtractionTransportError(f"Transcription failed: {error}") from error
        return str(getattr(transcription, "text", "") or "").strip()

    def extract_fields(self, transcript: str, today: date | None = None) -> StructuredUpdate:
        if self._client is None:
            raise ExtractionError("OPENAI_API_KEY missing; recordings cannot be processed.")
        reference_day = (today or utc_now().date()).isoformat()
        prompt = f"Today is {reference_day}. Resolve relative dates against it.\n\nTRANSCRIPT:\n{transcript}"
        try:
            response = self._client.responses.create(
                model=self.model,
                temperature=0.0,
                input=[
                    {"role": "system", "content": [{"type": "input_text", "text": SYSTEM_PROMPT.strip()}]},
                    {"role": "user", "content": [{"type": "input_text", "text": prompt}]},
                ],
            )
        except Exception as error:
            raise ExtractionTransportError(f"Extraction failed: {error}") from error
        return parse_extraction_text(_extract_output_text(response))

    def extract(self, audio_bytes: bytes, mime_type: str, filename: str = "recording.webm") -> StructuredUpdate:
        if not audio_bytes:
            raise ExtractionError("The recording is empty.")
        transcript = self.transcribe(audio_bytes, mime_type, filename)
        if not transcript:
            raise ExtractionPayloadError("Transcription returned no text.")
        update = self.extract_fields(transcript)
        if update.narrative_text is None:
            update = replace(update, narrative_text=transcript)
        LOGGER.info("Extracted fields from %s: %s", filename, ", ".join(update.present_fields()))
        return update
