from __future__ import annotations

import logging
from datetime import date, datetime, time, timezone
from html import escape
from typing import Any

import pandas as pd
import streamlit as st

from src.bed_models import BED_STATUSES, VACANT_STATUS, Bed, utc_now
from src.bed_store import ICUBedStore
from src.bed_view import (
    BED_TABLE_COLUMNS,
    bed_table_rows,
    indicator_summary,
    recent_history,
    status_color,
    status_counts,
    status_label,
)
from src.discharge import discharge_bed
from src.extraction_adapter import ClinicalExtractionAdapter, ExtractionError
from src.reconciliation import ManualEdit, save_clinical_note, save_manual_edit, save_structured_update
from src.roster import ensure_roster
from src.unit_config import UnitConfigError, parse_total_beds, read_unit_config
from src.unit_metrics import (
    MOBILITY_TARGET_RATE,
    VENTILATION_TARGET_DAYS,
    compute_metrics,
    window_for_period,
)

AUDIO_TYPES = ["webm", "wav", "mp3", "m4a", "ogg", "mp4"]
HISTORY_LIMIT = 5
PERIOD_LABELS = {"weekly": "This week", "monthly": "This month"}
KEEP_STATUS = "Keep current"

LOGGER = logging.getLogger("icu_bed_board")


def _inject_dashboard_theme() -> None:
    st.markdown(
        """
        <style>
        .bed-chip {
            display: inline-block;
            padding: 2px 10px;
            border-radius: 999px;
            color: #ffffff;
            font-size: 12px;
            font-weight: 700;
        }
        .bed-metric-grid {
            display: grid;
            grid-template-columns: repeat(auto-fit, minmax(140px, 1fr));
            gap: 10px;
            margin-bottom: 12px;
        }
        .bed-metric-card {
            border: 1px solid #e2e8f0;
            border-radius: 10px;
            padding: 10px 12px;
            background: #f8fafc;
        }
        .bed-metric-label { color: #64748b; font-size: 12px; text-transform: uppercase; }
        .bed-metric-value { color: #0f172a; font-size: 26px; font-weight: 800; }
        </style>
        """,
        unsafe_allow_html=True,
    )


def _status_chip(status: str) -> str:
    return (
        f"<span class='bed-chip' style='background:{status_color(status)}'>"
        f"{escape(status)} · {escape(status_label(status))}</span>"
    )


def _flash(kind: str, message: str) -> None:
    st.session_state["flash_message"] = (kind, message)


def _render_flash() -> None:
    pending = st.session_state.pop("flash_message", None)
    if not pending:
        return
    kind, message = pending
    if kind == "success":
        st.success(message)
    else:
        st.error(message)


def _unit_settings(store: ICUBedStore, defaults: Any) -> tuple[str, int]:
    saved = store.get_settings()
    if saved is None:
        return defaults.unit_name, defaults.total_beds
    return str(saved["unit_name"]), int(saved["total_beds"])


def _render_settings_sidebar(store: ICUBedStore, unit_name: str, total_beds: int) -> None:
    st.sidebar.header("Settings")
    with st.sidebar.form("unit_settings_form"):
        name_value = st.text_input("Unit name", value=unit_name)
        beds_value = st.number_input("Total beds", min_value=1, max_value=200, value=total_beds, step=1)
        submitted = st.form_submit_button("Save settings", use_container_width=True)
    if submitted:
        try:
            store.save_settings(unit_name=name_value.strip() or unit_name, total_beds=parse_total_beds(beds_value))
        except Exception as error:
            st.sidebar.error(f"Could not save settings: {error}")
        else:
            _flash("success", "Settings saved.")
            st.rerun()


def _render_summary_tiles(beds: list[Bed]) -> None:
    counts = status_counts(beds)
    metric_cards = [("Beds", len(beds))] + [(status_label(status), counts[status]) for status in BED_STATUSES]
    cards_html = "".join(
        (
            "<div class='bed-metric-card'>"
            f"<div class='bed-metric-label'>{escape(label)}</div>"
            f"<div class='bed-metric-value'>{value}</div>"
            "</div>"
        )
        for label, value in metric_cards
    )
    st.markdown(f"<div class='bed-metric-grid'>{cards_html}</div>", unsafe_allow_html=True)


def _render_bed_table(beds: list[Bed], now: datetime) -> None:
    frame = pd.DataFrame(bed_table_rows(beds, now), columns=BED_TABLE_COLUMNS)
    st.dataframe(frame, hide_index=True, use_container_width=True)


def _bed_option_label(bed: Bed) -> str:
    if bed.is_vacant:
        return f"Bed {bed.bed_number} (vacant)"
    return f"Bed {bed.bed_number} | {bed.initials} | {bed.status}"


def _start_date_to_datetime(value: date | None, bed: Bed) -> datetime | None:
    if value is None:
        return None
    current = bed.ventilation_start_time
    if current is not None and current.date() == value:
        return None
    return datetime.combine(value, time.min, tzinfo=timezone.utc)


def _render_recording_section(store: ICUBedStore, adapter: ClinicalExtractionAdapter, bed: Bed) -> None:
    st.markdown("**Voice update**")
    if not adapter.llm_available:
        st.caption("OPENAI_API_KEY missing: recordings are disabled, use manual entry.")
        return
    audio = st.file_uploader(
        "Upload a recording",
        type=AUDIO_TYPES,
        key=f"audio_upload_{bed.bed_number}",
    )
    if audio is None:
        return
    if not st.button("Process recording", type="primary", key=f"process_audio_{bed.bed_number}"):
        return

    with st.spinner("Transcribing and extracting clinical fields ..."):
        try:
            update = adapter.extract(audio.getvalue(), audio.type or "audio/webm", audio.name)
        except ExtractionError as error:
            LOGGER.warning("Recording for bed %s rejected: %s", bed.bed_number, error)
            st.error(f"Recording not applied: {error}. Retry or use manual entry.")
            return

    try:
        save_structured_update(store, bed.bed_number, update)
    except Exception as error:
        st.error(f"Could not save the update: {error}")
        return
    if update.is_empty():
        _flash("success", f"Bed {bed.bed_number}: recording processed, nothing to update.")
    else:
        _flash("success", f"Bed {bed.bed_number}: record updated from recording.")
    st.rerun()


def _render_manual_form(store: ICUBedStore, bed: Bed) -> None:
    counters = bed.extubation_counters
    mobility = bed.mobility_scale
    status_options = [KEEP_STATUS] + [status for status in BED_STATUSES if status != VACANT_STATUS]

    with st.form(f"manual_edit_{bed.bed_number}"):
        st.markdown("**Manual entry**")
        initials = st.text_input("Initials", value="" if bed.initials == "-" else bed.initials)
        status = st.selectbox("Status", options=status_options, index=0)
        col_target, col_achieved = st.columns(2)
        with col_target:
            mobility_target = st.number_input(
                "IMS target", min_value=0.0, max_value=10.0, step=1.0, value=min(10.0, float(mobility.target if mobility else 0))
            )
        with col_achieved:
            mobility_achieved = st.number_input(
                "IMS achieved", min_value=0.0, max_value=10.0, step=1.0, value=min(10.0, float(mobility.achieved if mobility else 0))
            )
        start_value = st.date_input(
            "Invasive ventilation start",
            value=bed.ventilation_start_time.date() if bed.ventilation_start_time else None,
        )
        clear_start = st.checkbox("No invasive ventilation (clear start date)", value=False)
        st.markdown("Extubations")
        col_a, col_b, col_c, col_d = st.columns(4)
        with col_a:
            success = st.number_input("Planned", min_value=0, step=1, value=counters.success)
        with col_b:
            fail = st.number_input("Failed", min_value=0, step=1, value=counters.fail)
        with col_c:
            accidental = st.number_input("Accidental", min_value=0, step=1, value=counters.accidental)
        with col_d:
            self_extubation = st.number_input("Self", min_value=0, step=1, value=counters.self_extubation)
        st.caption(f"Total is computed from the four outcomes (currently {counters.total}).")
        note = st.text_area("Event note (optional)", value="", height=80)
        submitted = st.form_submit_button("Save", type="primary", use_container_width=True)

    if not submitted:
        return
    edit = ManualEdit(
        initials=initials.strip() or None,
        status=None if status == KEEP_STATUS else status,
        mobility_target=float(mobility_target),
        mobility_achieved=float(mobility_achieved),
        ventilation_start_time=None if clear_start else _start_date_to_datetime(start_value, bed),
        clear_ventilation_start=bool(clear_start),
        extubation_success=int(success),
        extubation_fail=int(fail),
        extubation_accidental=int(accidental),
        extubation_self=int(self_extubation),
        narrative_text=note.strip() or None,
    )
    try:
        save_manual_edit(store, bed.bed_number, edit)
    except Exception as error:
        st.error(f"Could not save bed {bed.bed_number}: {error}")
        return
    _flash("success", f"Bed {bed.bed_number} saved.")
    st.rerun()


def _render_clinical_note(store: ICUBedStore, bed: Bed) -> None:
    st.markdown("**Last generated clinical note**")
    edited = st.text_area(
        "Clinical note",
        value=bed.last_generated_record or "",
        height=180,
        key=f"clinical_note_{bed.bed_number}",
        label_visibility="collapsed",
    )
    if st.button("Save note", key=f"save_note_{bed.bed_number}"):
        try:
            save_clinical_note(store, bed.bed_number, edited)
        except Exception as error:
            st.error(f"Could not save the note: {error}")
        else:
            _flash("success", f"Bed {bed.bed_number}: clinical note saved.")
            st.rerun()


def _render_clear_bed(store: ICUBedStore, bed: Bed) -> None:
    with st.expander("Clear bed (discharge)", expanded=False):
        confirm = st.checkbox(
            f"Confirm discharge of bed {bed.bed_number}",
            value=False,
            key=f"confirm_clear_{bed.bed_number}",
        )
        if not st.button("Clear bed", key=f"clear_bed_{bed.bed_number}", use_container_width=True):
            return
        if not confirm:
            st.warning("Tick confirmation first to clear this bed.")
            return
        try:
            record, _ = discharge_bed(store, bed.bed_number)
        except Exception as error:
            st.error(f"Bed {bed.bed_number} was not cleared: {error}")
            return
        if record is None:
            _flash("success", f"Bed {bed.bed_number} was already vacant.")
        else:
            _flash(
                "success",
                f"Bed {bed.bed_number} discharged and archived "
                f"({record.ventilation_duration_days} ventilation days, "
                f"{record.extubation_counters.total} extubations).",
            )
        st.rerun()


def _render_bed_panel(store: ICUBedStore, adapter: ClinicalExtractionAdapter, bed: Bed, now: datetime) -> None:
    st.markdown(f"### Bed {escape(bed.bed_number)} {_status_chip(bed.status)}", unsafe_allow_html=True)
    info_col, action_col = st.columns([1, 1])
    with info_col:
        st.markdown(f"**Patient:** {bed.initials}")
        st.code(indicator_summary(bed, now), language=None)
        st.markdown("**Recent history**")
        entries = recent_history(bed, HISTORY_LIMIT)
        if not entries:
            st.caption("No history for this stay.")
        for entry in entries:
            stamp = entry.timestamp.strftime("%d/%m %H:%M")
            suffix = f" ({entry.metrics_summary})" if entry.metrics_summary else ""
            st.markdown(f"- `{stamp}` {entry.text}{suffix}")
        _render_clinical_note(store, bed)
    with action_col:
        _render_recording_section(store, adapter, bed)
        _render_manual_form(store, bed)
        _render_clear_bed(store, bed)


def _render_dashboard(store: ICUBedStore, now: datetime) -> None:
    period = st.radio(
        "Period",
        options=list(PERIOD_LABELS),
        format_func=lambda value: PERIOD_LABELS[value],
        horizontal=True,
        index=1,
    )
    window_start, window_end = window_for_period(period, now)
    st.caption(f"Window: {window_start:%d/%m/%Y} to {window_end:%d/%m/%Y}. Active beds count with their current values.")
    try:
        kpi = compute_metrics(store, window_start, window_end, now=now)
    except Exception as error:
        st.error(f"Could not load unit metrics: {error}")
        return

    col_vent, col_ims, col_ext = st.columns(3)
    with col_vent:
        st.metric(
            "Average ventilation",
            f"{kpi.ventilation_average} days",
            delta="on target" if kpi.ventilation_on_target else f"above {VENTILATION_TARGET_DAYS} days",
            delta_color="normal" if kpi.ventilation_on_target else "inverse",
        )
    with col_ims:
        st.metric(
            "IMS compliance",
            f"{kpi.mobility_compliance_rate}%",
            delta="on target" if kpi.mobility_on_target else f"below {MOBILITY_TARGET_RATE}%",
            delta_color="normal" if kpi.mobility_on_target else "inverse",
        )
    with col_ext:
        st.metric(
            "Extubations",
            f"{kpi.extubation_total} total",
            delta=f"{kpi.extubation_breakdown.fail} failed ({kpi.extubation_fail_rate}%)",
            delta_color="off",
        )

    chart_col, compliance_col = st.columns(2)
    with chart_col:
        st.markdown("**Extubation types**")
        breakdown = pd.DataFrame(kpi.breakdown_rows(include_zero=True)).set_index("type")
        st.bar_chart(breakdown)
    with compliance_col:
        st.markdown("**IMS target reached**")
        compliance = pd.DataFrame(
            {
                "share": [kpi.mobility_compliance_rate, 100 - kpi.mobility_compliance_rate]
                if kpi.mobility_assessments
                else [0, 0],
            },
            index=["Reached", "Not reached"],
        )
        st.bar_chart(compliance)
        st.caption(f"{kpi.mobility_assessments} daily assessments with a target in this window.")


st.set_page_config(page_title="ICU Bed Board", layout="wide")
try:
    config = read_unit_config()
except UnitConfigError as error:
    st.title("Configuration error")
    st.error(str(error))
    st.stop()

logging.basicConfig(level=config.log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
_inject_dashboard_theme()

if "bed_store" not in st.session_state:
    st.session_state.bed_store = ICUBedStore(config.db_path)
if "extraction_adapter" not in st.session_state:
    st.session_state.extraction_adapter = ClinicalExtractionAdapter(
        model=config.openai_model,
        transcription_model=config.transcription_model,
        timeout=config.extraction_timeout,
    )

bed_store: ICUBedStore = st.session_state.bed_store
extraction_adapter: ClinicalExtractionAdapter = st.session_state.extraction_adapter

unit_name, total_beds = _unit_settings(bed_store, config)
_render_settings_sidebar(bed_store, unit_name, total_beds)
if extraction_adapter.llm_available:
    st.sidebar.success("OPENAI_API_KEY detected")
else:
    st.sidebar.warning("OPENAI_API_KEY missing - manual entry only")
st.sidebar.caption(f"Local DB: `{config.db_path.name}`")

st.title(unit_name)
st.caption("Bed overview, voice updates and unit indicators.")
_render_flash()

current_time = utc_now()
try:
    roster = ensure_roster(bed_store, total_beds)
except Exception as error:
    st.error(f"Could not load the bed roster: {error}")
    st.stop()

beds_tab, dashboard_tab = st.tabs(["Beds", "Unit dashboard"])

with beds_tab:
    _render_summary_tiles(roster)
    _render_bed_table(roster, current_time)
    bed_numbers = [bed.bed_number for bed in roster]
    beds_by_number = {bed.bed_number: bed for bed in roster}
    selected_number = st.selectbox(
        "Open bed",
        options=bed_numbers,
        format_func=lambda number: _bed_option_label(beds_by_number[number]),
        key="selected_bed_number",
    )
    if selected_number in beds_by_number:
        _render_bed_panel(bed_store, extraction_adapter, beds_by_number[selected_number], current_time)

with dashboard_tab:
    _render_dashboard(bed_store, current_time)
