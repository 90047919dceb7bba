"""NiceGUI web pages: zone overview, processing thresholds, server logs."""

import datetime
import os
from zoneinfo import ZoneInfo
from nicegui import ui, app

from analysis import format_hhmmss
from database import SessionLocal, DEFAULT_THRESHOLDS
from models import AttendanceSession, Config, Subject, Zone
from processing import get_active_subjects, record_daily_metrics
from productivity import calculate
from reports import utcnow


async def _ensure_timezone():
    """Detect browser timezone via JS and store in the user session."""
    if "timezone" not in app.storage.user:
        tz = await ui.run_javascript(
            "Intl.DateTimeFormat().resolvedOptions().timeZone"
        )
        if tz:
            app.storage.user["timezone"] = tz


def _fmt(dt: datetime.datetime | None, fmt: str = "%Y-%m-%d %H:%M:%S") -> str:
    """Format a naive-UTC datetime in the browser's local timezone."""
    if dt is None:
        return "-"
    tz_name = app.storage.user.get("timezone", "UTC")
    try:
        tz = ZoneInfo(tz_name)
    except KeyError:
        tz = ZoneInfo("UTC")
    utc_dt = dt.replace(tzinfo=ZoneInfo("UTC"))
    return utc_dt.astimezone(tz).strftime(fmt)


def _nav_link(icon: str, label: str, href: str):
    """Render a navigation link with an icon."""
    with ui.element("a").props(f'href="{href}"').classes(
        "flex items-center gap-3 q-pa-sm q-pl-md no-underline text-dark"
        " rounded-borders cursor-pointer hover:bg-blue-2"
    ).style("text-decoration: none; transition: background 0.15s"):
        ui.icon(icon).classes("text-blue-8")
        ui.label(label)


def _nav_drawer():
    """Shared left-drawer navigation."""
    with ui.left_drawer().classes("bg-blue-1"):
        ui.label("Field Telemetry").classes("text-h6 q-pa-sm q-mb-sm")
        _nav_link("dashboard", "Zones", "/")
        ui.separator().classes("q-my-sm")
        _nav_link("tune", "Thresholds", "/settings")
        _nav_link("article", "Logs", "/logs")


def _header():
    with ui.header().classes("items-center justify-between"):
        ui.label("Field Telemetry").classes("text-h6")
        ui.label(f"{utcnow():%Y-%m-%d %H:%M} UTC").classes("text-caption")


# ---------------------------------------------------------------------------
# Zone overview (home)
# ---------------------------------------------------------------------------
@ui.page("/")
async def dashboard_page():
    await _ensure_timezone()
    _header()
    _nav_drawer()

    db = SessionLocal()
    zones = db.query(Zone).order_by(Zone.name).all()
    zone_options = {z.id: z.name for z in zones}
    db.close()

    with ui.column().classes("q-pa-md w-full"):
        ui.label("Zone Overview").classes("text-h5 q-mb-md")
        if not zone_options:
            ui.label("No zones configured yet.").classes("text-grey")
            return

        zone_selector = ui.select(
            options=zone_options,
            label="Zone",
            value=next(iter(zone_options)),
        ).classes("w-64 q-mb-md").props("outlined dense")

        content = ui.column().classes("w-full")

        def render_zone():
            content.clear()
            inner_db = SessionLocal()
            zone = inner_db.query(Zone).filter(Zone.id == zone_selector.value).first()
            if zone is None:
                inner_db.close()
                return

            active = get_active_subjects(inner_db, zone)
            names = {s.id: s.name for s in inner_db.query(Subject).all()}
            today = utcnow().date()
            sessions = (
                inner_db.query(AttendanceSession)
                .filter(AttendanceSession.zone_id == zone.id, AttendanceSession.date == today)
                .order_by(AttendanceSession.entry_time.asc())
                .all()
            )

            with content:
                with ui.row().classes("q-gutter-md"):
                    with ui.card().classes("w-48"):
                        ui.label("Active Subjects").classes("text-subtitle2 text-grey")
                        ui.label(str(len(active))).classes("text-h4")
                    with ui.card().classes("w-48"):
                        ui.label("In Zone").classes("text-subtitle2 text-grey")
                        ui.label(str(sum(1 for a in active if a.is_in_zone))).classes("text-h4")
                    with ui.card().classes("w-48"):
                        ui.label("Sessions Today").classes("text-subtitle2 text-grey")
                        ui.label(str(len(sessions))).classes("text-h4")

                ui.label("Active Now").classes("text-h6 q-mt-lg q-mb-sm")
                if active:
                    rows = [
                        {
                            "subject": names.get(a.subject_id, str(a.subject_id)),
                            "in_zone": "yes" if a.is_in_zone else "no",
                            "lat": f"{a.coordinate[0]:.6f}",
                            "lon": f"{a.coordinate[1]:.6f}",
                            "time": _fmt(a.last_update),
                        }
                        for a in active
                    ]
                    columns = [
                        {"name": "subject", "label": "Subject", "field": "subject", "align": "left"},
                        {"name": "in_zone", "label": "In Zone", "field": "in_zone"},
                        {"name": "lat", "label": "Latitude", "field": "lat"},
                        {"name": "lon", "label": "Longitude", "field": "lon"},
                        {"name": "time", "label": "Last Report", "field": "time"},
                    ]
                    ui.table(columns=columns, rows=rows).classes("w-full")
                else:
                    ui.label("Nobody has reported recently.").classes("text-grey")

                ui.label("Today's Attendance").classes("text-h6 q-mt-lg q-mb-sm")
                if sessions:
                    rows = []
                    for s in sessions:
                        score = calculate(s.total_in_zone_duration, s.total_out_zone_duration)
                        rows.append({
                            "id": s.id,
                            "subject": names.get(s.subject_id, str(s.subject_id)),
                            "status": s.status,
                            "entry": _fmt(s.entry_time),
                            "exit": _fmt(s.exit_time),
                            "in_zone": format_hhmmss(s.total_in_zone_duration),
                            "out_zone": format_hhmmss(s.total_out_zone_duration),
                            "productivity": f"{score:.1f}%" if score is not None else "-",
                        })
                    columns = [
                        {"name": "subject", "label": "Subject", "field": "subject", "align": "left"},
                        {"name": "status", "label": "Status", "field": "status"},
                        {"name": "entry", "label": "Entry", "field": "entry"},
                        {"name": "exit", "label": "Exit", "field": "exit"},
                        {"name": "in_zone", "label": "In Zone", "field": "in_zone"},
                        {"name": "out_zone", "label": "Out of Zone", "field": "out_zone"},
                        {"name": "productivity", "label": "Productivity", "field": "productivity"},
                    ]
                    ui.table(columns=columns, rows=rows, row_key="id").classes("w-full")
                else:
                    ui.label("No attendance sessions today.").classes("text-grey")

            inner_db.close()

        zone_selector.on_value_change(lambda _: render_zone())
        ui.button("Refresh", on_click=render_zone).props("flat icon=refresh")
        render_zone()

        commit_sha = os.environ.get("COMMIT_SHA", "")[:8]
        if commit_sha:
            ui.label(f"Build: {commit_sha}").classes("text-caption text-grey q-mt-lg")


# ---------------------------------------------------------------------------
# Settings page: processing thresholds
# ---------------------------------------------------------------------------

_THRESHOLD_LABELS = {
    "stoppage_threshold_s": ("Stoppage Threshold (s)", "Stopped runs shorter than this count as movement"),
    "exit_debounce_s": ("Exit Debounce (s)", "Time outside the zone before a session closes (1800 = 30 min)"),
    "consecutive_movements_to_confirm": ("Movements To Confirm", "Moving spans in a row before work counts as started"),
    "active_window_s": ("Active Window (s)", "A subject is active if it reported within this window (600 = 10 min)"),
    "kalman_process_noise": ("Kalman Process Noise (Q)", "Higher values follow new positions faster"),
    "kalman_measurement_noise": ("Kalman Measurement Noise (R)", "Higher values smooth harder"),
    "median_window_size": ("Median Window", "Reports per median filter window (odd, at least 3)"),
}


@ui.page("/settings")
async def settings_page():
    await _ensure_timezone()
    _header()
    _nav_drawer()

    with ui.column().classes("q-pa-md w-full"):
        ui.label("Processing Thresholds").classes("text-h5 q-mb-md")
        _render_threshold_editor()

        ui.separator().classes("q-my-md")
        _render_daily_metrics()


def _render_threshold_editor():
    ui.label(
        "These parameters control how position reports are segmented into movement "
        "and stoppages, and how attendance sessions open and close."
    ).classes("text-caption text-grey q-mb-md")

    inner_db = SessionLocal()
    config_rows = inner_db.query(Config).all()
    current_values = {r.key: r.value for r in config_rows}
    inner_db.close()

    inputs = {}
    with ui.card().classes("w-full q-mb-lg"):
        for key in _THRESHOLD_LABELS:
            label, hint = _THRESHOLD_LABELS[key]
            val = float(current_values.get(key, DEFAULT_THRESHOLDS[key]))
            inp = ui.number(label, value=val).classes("w-full").tooltip(hint)
            inputs[key] = inp

        with ui.row().classes("q-mt-md q-gutter-sm"):
            def save_thresholds():
                tdb = SessionLocal()
                for key, inp in inputs.items():
                    row = tdb.query(Config).filter(Config.key == key).first()
                    if row:
                        row.value = str(inp.value)
                    else:
                        tdb.add(Config(key=key, value=str(inp.value)))
                tdb.commit()
                tdb.close()
                ui.notify("Thresholds saved", type="positive")

            def reset_defaults():
                tdb = SessionLocal()
                for key, default_val in DEFAULT_THRESHOLDS.items():
                    row = tdb.query(Config).filter(Config.key == key).first()
                    if row:
                        row.value = default_val
                tdb.commit()
                tdb.close()
                for key, inp in inputs.items():
                    inp.value = float(DEFAULT_THRESHOLDS[key])
                ui.notify("Reset to defaults", type="info")

            ui.button("Save Thresholds", on_click=save_thresholds).props("color=primary")
            ui.button("Reset to Defaults", on_click=reset_defaults).props("flat")


def _render_daily_metrics():
    """Recompute today's summary for every subject with the current thresholds."""
    ui.label("Daily Metrics").classes("text-h6 q-mb-sm")
    ui.label(
        "Recompute today's movement summary for every subject using the current thresholds."
    ).classes("text-caption text-grey q-mb-md")

    def do_recompute():
        rdb = SessionLocal()
        today = utcnow().date()
        recorded = 0
        for subject in rdb.query(Subject).all():
            if record_daily_metrics(rdb, subject.id, today) is not None:
                recorded += 1
        rdb.close()
        ui.notify(f"Daily metrics recorded for {recorded} subjects", type="positive")

    ui.button("Recompute Today", on_click=do_recompute).props("color=primary icon=refresh")


# ---------------------------------------------------------------------------
# Logs page
# ---------------------------------------------------------------------------
@ui.page("/logs")
async def logs_page():
    await _ensure_timezone()
    _header()
    _nav_drawer()

    LOG_DIR = os.environ.get("LOG_DIR", "/data" if os.path.isdir("/data") else ".")
    LOG_FILE = os.path.join(LOG_DIR, "field-telemetry.log")

    with ui.column().classes("q-pa-md w-full"):
        ui.label("Server Logs").classes("text-h5 q-mb-md")

        log_area = ui.textarea("").classes("w-full font-mono").props(
            "readonly outlined autogrow"
        ).style("min-height: 500px; font-size: 12px;")

        def load_logs(tail_lines=200):
            try:
                with open(LOG_FILE, "r") as f:
                    lines = f.readlines()
                log_area.value = "".join(lines[-tail_lines:])
            except FileNotFoundError:
                log_area.value = "Log file not found."

        with ui.row().classes("q-gutter-sm q-mb-md"):
            ui.button("Refresh", on_click=lambda: load_logs()).props("icon=refresh")
            ui.button("Last 50", on_click=lambda: load_logs(50)).props("flat")
            ui.button("Last 200", on_click=lambda: load_logs(200)).props("flat")
            ui.button("All", on_click=lambda: load_logs(100000)).props("flat")

        load_logs()
