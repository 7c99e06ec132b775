from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

REPO_ROOT = Path(__file__).resolve().parents[1]
ENV_FILE = REPO_ROOT / ".env"

DEFAULT_UNIT_NAME = "EvoluiAI ICU"
DEFAULT_TOTAL_BEDS = 10
DEFAULT_DB_PATH = REPO_ROOT / "data" / "icu_beds.db"
DEFAULT_MODEL = "gpt-4.1-mini"
DEFAULT_TRANSCRIPTION_MODEL = "whisper-1"
DEFAULT_EXTRACTION_TIMEOUT = 60.0
LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


class UnitConfigError(Exception):
    """Raised when unit configuration is missing or invalid."""


@dataclass
class UnitConfig:
    unit_name: str
    total_beds: int
    db_path: Path
    openai_model: str
    transcription_model: str
    extraction_timeout: float
    log_level: str


def load_local_env_file(path: Path = ENV_FILE) -> None:
    """
    Load key=value pairs from a local .env file into process env without overriding
    values that are already present.
    """
    if not path.exists():
        return

    for raw_line in path.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        value = value.strip().strip('"').strip("'")
        if key and (key not in os.environ or not os.environ.get(key, "").strip()):
            os.environ[key] = value


def _env_text(name: str, default: str) -> str:
    return os.getenv(name, "").strip() or default


def parse_total_beds(raw: Any) -> int:
    try:
        value = int(str(raw).strip())
    except (TypeError, ValueError) as exc:
        raise UnitConfigError(f"Total beds must be a whole number, got {raw!r}.") from exc
    if value < 1:
        raise UnitConfigError("Total beds must be at least 1.")
    return value


def _parse_timeout(raw: str) -> float:
    try:
        value = float(raw)
    except ValueError as exc:
        raise UnitConfigError(f"EXTRACTION_TIMEOUT_SECONDS must be a number, got {raw!r}.") from exc
    if value <= 0:
        raise UnitConfigError("EXTRACTION_TIMEOUT_SECONDS must be positive.")
    return value


def read_unit_config(env_file: Path = ENV_FILE) -> UnitConfig:
    load_local_env_file(env_file)

    log_level = _env_text("LOG_LEVEL", "INFO").upper()
    if log_level not in LOG_LEVELS:
        raise UnitConfigError(f"LOG_LEVEL must be one of: {', '.join(sorted(LOG_LEVELS))}.")

    db_path = Path(_env_text("ICU_DB_PATH", str(DEFAULT_DB_PATH)))
    if not db_path.is_absolute():
        db_path = REPO_ROOT / db_path

    return UnitConfig(
        unit_name=_env_text("ICU_UNIT_NAME", DEFAULT_UNIT_NAME),
        total_beds=parse_total_beds(_env_text("ICU_TOTAL_BEDS", str(DEFAULT_TOTAL_BEDS))),
        db_path=db_path,
        openai_model=_env_text("OPENAI_MODEL", DEFAULT_MODEL),
        transcription_model=_env_text("OPENAI_TRANSCRIPTION_MODEL", DEFAULT_TRANSCRIPTION_MODEL),
        extraction_timeout=_parse_timeout(_env_text("EXTRACTION_TIMEOUT_SECONDS", str(DEFAULT_EXTRACTION_TIMEOUT))),
        log_level=log_level,
    )
