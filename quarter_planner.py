"""
Quarter Planner
Reads the team and project list from Excel, lays the quarter out on the timeline
engine, and outputs the planning board (lanes, project bars, capacity heatmap) as a PNG.

Features:
  - Quarter / month / 6-week / 2-week views of any Qn-YYYY period
  - Per-week team capacity heatmap from man-day estimates
  - ICE scoring (impact x confidence / effort) shown on bars
  - Backlog of unassigned projects
  - BoardHost: applies drag/resize/reassign/unschedule/create intents to the project list
  - Excel template with dropdowns and conditional formatting
"""

import argparse
import math
import os
import sys
from datetime import datetime

import matplotlib
matplotlib.use("Agg")
import matplotlib.pyplot as plt
import matplotlib.patches as mpatches
from matplotlib.patches import FancyBboxPatch
import numpy as np
import pandas as pd
from openpyxl import Workbook
from openpyxl.styles import Font, PatternFill, Alignment, Border, Side
from openpyxl.worksheet.datavalidation import DataValidation
from openpyxl.formatting.rule import CellIsRule

from timeline_engine import (
    DAY,
    VIEW_TYPES,
    TimelineEngine,
    coerce_date,
    format_iso_date,
    norm_date,
    project_assignees,
    quarter_label_for,
)


# ── Constants ────────────────────────────────────────────────────────────────

_DIR = os.path.dirname(os.path.abspath(__file__))
DEFAULT_INPUT = os.path.join(_DIR, "quarter_data.xlsx")
DEFAULT_OUTDIR = os.path.join(_DIR, "output")

STATUS_VALUES = ["planned", "in-progress", "at-risk", "blocked", "completed"]
CONFIDENCE_VALUES = ["high", "medium", "low"]
TYPE_VALUES = ["feature", "infrastructure", "bug-fix", "tech-debt"]

DEFAULT_STATUS = "planned"
DEFAULT_CONFIDENCE = "medium"
DEFAULT_TYPE = "feature"

# Undated backlog projects dropped on a lane get one week
DEFAULT_PLACEMENT_DAYS = 6

THEME_COLORS = {
    "feature": "#2196F3",
    "infrastructure": "#9C27B0",
    "bug-fix": "#F44336",
    "tech-debt": "#FF9800",
}
FALLBACK_THEME_COLORS = ["#00BCD4", "#4CAF50", "#607D8B", "#795548"]

HEAT_COLORS = {
    "low": "#C8E6C9",
    "medium": "#FFF59D",
    "high": "#FFCC80",
    "over": "#EF9A9A",
}

STATUS_SYMBOLS = {
    "planned": "–",       # en dash
    "in-progress": "•",   # bullet
    "at-risk": "!",
    "blocked": "‖",       # double vertical line
    "completed": "✔",     # heavy check mark
}

STYLE = {
    "font_family": "DejaVu Sans",
    "title_size": 18,
    "subtitle_size": 13,
    "label_size": 9.5,
    "tick_size": 8.5,
    "small_size": 7.5,
    "bg_color": "#FAFAFA",
    "panel_bg": "#FFFFFF",
    "text_primary": "#1A1A2E",
    "text_secondary": "#555555",
    "text_muted": "#999999",
    "grid_color": "#E0E0E0",
    "today_color": "#D32F2F",
    "current_week_color": "#E3F2FD",
    "row_shade_even": "#F5F5F5",
    "row_shade_odd": "#FFFFFF",
    "bar_height": 0.6,
    "dpi": 150,
    "fig_width": 20,
    "completed_alpha": 0.45,
    "low_confidence_edge": "#E53935",
}


# ── Style Helpers ────────────────────────────────────────────────────────────

def apply_style():
    """Configure matplotlib rcParams for consistent styling."""
    plt.rcParams.update({
        "font.family": STYLE["font_family"],
        "font.size": STYLE["label_size"],
        "axes.facecolor": STYLE["panel_bg"],
        "figure.facecolor": STYLE["bg_color"],
        "axes.edgecolor": STYLE["grid_color"],
        "axes.linewidth": 0.8,
        "axes.grid": False,
        "xtick.color": STYLE["text_secondary"],
        "ytick.color": STYLE["text_secondary"],
        "text.color": STYLE["text_primary"],
    })


def style_axes(ax, title=""):
    """Apply consistent axis styling to the board."""
    if title:
        ax.set_title(title, fontsize=STYLE["subtitle_size"], fontweight="bold",
                     color=STYLE["text_primary"], pad=12, loc="left")
    for side in ("top", "right", "bottom"):
        ax.spines[side].set_visible(False)
    ax.spines["left"].set_linewidth(0.6)
    ax.set_axisbelow(True)


def add_header_footer(fig, title, subtitle=""):
    """Add a title block and generation timestamp footer."""
    fig.suptitle(title, fontsize=STYLE["title_size"], fontweight="bold",
                 color=STYLE["text_primary"], y=0.98, x=0.04, ha="left")
    if subtitle:
        fig.text(0.04, 0.945, subtitle, fontsize=STYLE["small_size"] + 1,
                 color=STYLE["text_muted"], ha="left")
    fig.text(0.98, 0.008, f"Generated {datetime.now().strftime('%d %b %Y %H:%M')}",
             ha="right", fontsize=STYLE["small_size"], color=STYLE["text_muted"])
    fig.text(0.04, 0.008, "Quarter Planner",
             ha="left", fontsize=STYLE["small_size"], color=STYLE["text_muted"])


def draw_rounded_bar(ax, x, y, width, height, color, alpha=1.0,
                     edgecolor=None, linewidth=1.2, hatch="", zorder=3):
    """Draw a horizontal bar with rounded corners using FancyBboxPatch."""
    if width <= 0:
        return None
    rounding = min(0.12, height * 0.3, width * 0.05)
    fancy = FancyBboxPatch(
        (x, y - height / 2), width, height,
        boxstyle=f"round,pad=0,rounding_size={rounding}",
        facecolor=color, alpha=alpha,
        edgecolor=edgecolor or color, linewidth=linewidth,
        hatch=hatch, zorder=zorder,
    )
    ax.add_patch(fancy)
    return fancy


def theme_color(theme):
    """Bar colour for a project type slug; unknown types get a stable fallback."""
    if theme in THEME_COLORS:
        return THEME_COLORS[theme]
    return FALLBACK_THEME_COLORS[sum(map(ord, theme)) % len(FALLBACK_THEME_COLORS)]


# ── Cell Helpers ─────────────────────────────────────────────────────────────

def clean_str(val):
    """Return stripped string or empty string for NaN/None."""
    if val is None or (isinstance(val, float) and math.isnan(val)) or val is pd.NaT:
        return ""
    return str(val).strip()


def parse_date(val, context=""):
    """Parse a date cell (datetime, Timestamp or string) to a midnight datetime."""
    ctx = f" ({context})" if context else ""
    if val is None or val is pd.NaT or (isinstance(val, float) and math.isnan(val)):
        raise ValueError(f"Date is blank{ctx}")
    if isinstance(val, str) and not val.strip():
        raise ValueError(f"Date is blank{ctx}")
    parsed = coerce_date(val)
    if parsed is None:
        raise ValueError(f"Cannot parse date{ctx}: {val!r}. Expected YYYY-MM-DD or DD/MM/YYYY")
    return norm_date(parsed)


def normalize_columns(df, expected):
    """Rename columns to their canonical casing in place. Returns the missing names."""
    lookup = {name.strip().lower(): name for name in expected}
    renames = {}
    for col in df.columns:
        key = str(col).strip().lower()
        if key in lookup:
            renames[col] = lookup[key]
    df.rename(columns=renames, inplace=True)
    return set(expected) - set(df.columns)


def parse_id(val):
    """Integer ids stay integers (Excel hands them back as floats); anything else is a string."""
    if isinstance(val, (int, np.integer)) and not isinstance(val, bool):
        return int(val)
    if isinstance(val, (float, np.floating)):
        if math.isnan(val):
            return None
        return int(val) if float(val).is_integer() else float(val)
    text = clean_str(val)
    if not text:
        return None
    try:
        return int(text)
    except ValueError:
        return text


def parse_assignees(val, team=None):
    """'1, 3' or 'Alice Chen; Bob' -> list of lane ids. Names are resolved against team."""
    if isinstance(val, (int, float, np.integer, np.floating)) and not isinstance(val, bool):
        single = parse_id(val)
        return [single] if single is not None else []
    text = clean_str(val)
    if not text:
        return []
    by_name = {clean_str(m.get("name")).lower(): m["id"] for m in (team or [])}
    assignees = []
    for token in text.replace(";", ",").split(","):
        token = token.strip()
        if not token:
            continue
        lane_id = by_name.get(token.lower(), parse_id(token))
        if lane_id not in assignees:
            assignees.append(lane_id)
    return assignees


def get_initials(name):
    parts = [p for p in clean_str(name).split() if p]
    return "".join(p[0].upper() for p in parts[:2]) or "?"


# ── ICE Scoring ──────────────────────────────────────────────────────────────

def normalize_ice_value(value):
    """Clamp an ICE input to 1..10; unreadable values count as 1."""
    try:
        parsed = int(float(value))
    except (TypeError, ValueError):
        return 1
    return max(1, min(10, parsed))


def calculate_ice_score(impact, confidence, effort):
    """ICE = impact x confidence / effort, one decimal."""
    score = normalize_ice_value(impact) * normalize_ice_value(confidence) / normalize_ice_value(effort)
    return math.floor(score * 10 + 0.5) / 10


# ── Template Generation ─────────────────────────────────────────────────────

def generate_template(output_path):
    """Create an Excel template with 3 sheets (Team, Projects, Settings),
    example data, dropdowns, and conditional formatting."""
    wb = Workbook()

    header_font = Font(bold=True, color="FFFFFF", size=11)
    header_fill = PatternFill(start_color="2E3B4E", end_color="2E3B4E", fill_type="solid")
    header_alignment = Alignment(horizontal="center", vertical="center")
    thin_border = Border(
        left=Side(style="thin"), right=Side(style="thin"),
        top=Side(style="thin"), bottom=Side(style="thin"),
    )

    def style_header(ws, row=1):
        for cell in ws[row]:
            cell.font = header_font
            cell.fill = header_fill
            cell.alignment = header_alignment
            cell.border = thin_border

    def style_data_rows(ws, start_row=2):
        for row in ws.iter_rows(min_row=start_row, max_row=ws.max_row):
            for cell in row:
                cell.border = thin_border
                cell.alignment = Alignment(vertical="center")

    quarter = quarter_label_for(datetime.now())
    year = int(quarter.split("-")[1])
    first_month = (int(quarter[1]) - 1) * 3 + 1

    def day(month_offset, d):
        return format_iso_date(datetime(year, first_month + month_offset, d))

    # ── Sheet 1: Team ──
    ws_team = wb.active
    ws_team.title = "Team"
    ws_team.append(["ID", "Name", "Color"])
    example_team = [
        [1, "Alice Chen", "#2196F3"],
        [2, "Bob Smith", "#4CAF50"],
        [3, "Carol Davis", "#FF9800"],
    ]
    for member in example_team:
        ws_team.append(member)
    ws_team.column_dimensions["A"].width = 8
    ws_team.column_dimensions["B"].width = 24
    ws_team.column_dimensions["C"].width = 12
    style_header(ws_team)
    style_data_rows(ws_team)
    ws_team.freeze_panes = "A2"

    for row_idx in range(2, ws_team.max_row + 1):
        color_cell = ws_team.cell(row=row_idx, column=3)
        hex_color = color_cell.value.lstrip("#") if color_cell.value else "FFFFFF"
        color_cell.fill = PatternFill(start_color=hex_color, end_color=hex_color, fill_type="solid")

    # ── Sheet 2: Projects ──
    ws_projects = wb.create_sheet("Projects")
    ws_projects.append([
        "ID", "Name", "Type", "Status", "Confidence", "Start Date", "End Date",
        "Assignees", "Manday Estimate", "Impact", "ICE Confidence", "Effort", "Description",
    ])
    example_projects = [
        [1, "Checkout redesign", "feature", "in-progress", "high",
         day(0, 6), day(1, 14), "1", 30, 8, 7, 5, "New payment flow"],
        [2, "Database upgrade", "infrastructure", "planned", "medium",
         day(1, 1), day(1, 28), "2, 3", 25, 6, 8, 6, ""],
        [3, "Flaky test cleanup", "tech-debt", "at-risk", "low",
         day(2, 2), day(2, 20), "3", 8, 4, 6, 2, ""],
        [4, "Search relevance", "feature", "planned", "medium",
         "", "", "", 15, 7, 5, 4, "Backlog: not yet scheduled"],
    ]
    for project in example_projects:
        ws_projects.append(project)
    widths = {"A": 6, "B": 28, "C": 16, "D": 14, "E": 13, "F": 13, "G": 13,
              "H": 12, "I": 16, "J": 9, "K": 15, "L": 9, "M": 34}
    for col, width in widths.items():
        ws_projects.column_dimensions[col].width = width
    style_header(ws_projects)
    style_data_rows(ws_projects)
    ws_projects.freeze_panes = "C2"

    max_project_row = 200

    dv_type = DataValidation(type="list", formula1=f'"{",".join(TYPE_VALUES)}"', allow_blank=True)
    dv_type.error = "Please select a project type"
    dv_type.errorTitle = "Invalid Type"
    ws_projects.add_data_validation(dv_type)
    dv_type.add(f"C2:C{max_project_row}")

    dv_status = DataValidation(type="list", formula1=f'"{",".join(STATUS_VALUES)}"', allow_blank=True)
    dv_status.error = "Please select a valid status"
    dv_status.errorTitle = "Invalid Status"
    ws_projects.add_data_validation(dv_status)
    dv_status.add(f"D2:D{max_project_row}")

    dv_confidence = DataValidation(type="list", formula1=f'"{",".join(CONFIDENCE_VALUES)}"', allow_blank=True)
    dv_confidence.error = "Please select high, medium, or low"
    dv_confidence.errorTitle = "Invalid Confidence"
    ws_projects.add_data_validation(dv_confidence)
    dv_confidence.add(f"E2:E{max_project_row}")

    dv_ice = DataValidation(type="whole", operator="between", formula1="1", formula2="10", allow_blank=True)
    dv_ice.error = "ICE inputs are whole numbers from 1 to 10"
    dv_ice.errorTitle = "Invalid ICE value"
    ws_projects.add_data_validation(dv_ice)
    dv_ice.add(f"J2:L{max_project_row}")

    status_range = f"D2:D{max_project_row}"
    ws_projects.conditional_formatting.add(
        status_range,
        CellIsRule(operator="equal", formula=['"blocked"'],
                   font=Font(bold=True, color="B71C1C"), fill=PatternFill(bgColor="FFCDD2")))
    ws_projects.conditional_formatting.add(
        status_range,
        CellIsRule(operator="equal", formula=['"at-risk"'],
                   font=Font(bold=True, color="E65100"), fill=PatternFill(bgColor="FFE0B2")))
    ws_projects.conditional_formatting.add(
        status_range,
        CellIsRule(operator="equal", formula=['"completed"'],
                   font=Font(color="1B5E20"), fill=PatternFill(bgColor="C8E6C9")))

    # ── Sheet 3: Settings ──
    ws_settings = wb.create_sheet("Settings")
    ws_settings.append(["Quarter", "View"])
    ws_settings.append([quarter, "quarter"])
    ws_settings.column_dimensions["A"].width = 14
    ws_settings.column_dimensions["B"].width = 12
    style_header(ws_settings)
    style_data_rows(ws_settings)

    dv_view = DataValidation(type="list", formula1=f'"{",".join(VIEW_TYPES)}"', allow_blank=False)
    dv_view.error = "Please select quarter, month, 6weeks, or 2weeks"
    dv_view.errorTitle = "Invalid View"
    ws_settings.add_data_validation(dv_view)
    dv_view.add("B2")

    wb.save(output_path)
    print(f"Template created: {output_path}")
    print("  - Sheet 'Team': one row per lane (ID, Name, Color)")
    print("  - Sheet 'Projects': dates, assignee IDs or names, man-day estimate, ICE inputs")
    print("  - Sheet 'Settings': quarter (Q1-2026) and view (quarter, month, 6weeks, 2weeks)")
    print("  - Projects without assignees stay in the backlog")
    print(f"\nEdit the file, then run again without --template to generate the board.")


# ── Data Loading ─────────────────────────────────────────────────────────────

def load_team(filepath):
    """Load lanes (team members) from the 'Team' sheet."""
    try:
        df = pd.read_excel(filepath, sheet_name="Team")
    except Exception as e:
        print(f"  WARNING: Could not read Team sheet: {e}")
        return []
    if df.empty:
        return []
    missing = normalize_columns(df, {"ID", "Name", "Color"})
    if "Name" in missing:
        print(f"  ERROR: Team sheet is missing column 'Name'. Found: {', '.join(map(str, df.columns))}")
        return []
    team = []
    seen = set()
    for idx, row in df.iterrows():
        name = clean_str(row["Name"])
        if not name:
            continue
        member_id = parse_id(row.get("ID")) if "ID" in df.columns else None
        if member_id is None:
            member_id = len(team) + 1
        if member_id in seen:
            print(f"  WARNING: Team row {idx + 2}: duplicate ID {member_id!r} for '{name}', skipping.")
            continue
        seen.add(member_id)
        team.append({
            "id": member_id,
            "name": name,
            "avatar": get_initials(name),
            "color": clean_str(row.get("Color", "")),
        })
    return team


def load_projects(filepath, team=None):
    """Load projects from the 'Projects' sheet. Team is used to resolve assignee names."""
    try:
        df = pd.read_excel(filepath, sheet_name="Projects")
    except Exception as e:
        print(f"  WARNING: Could not read Projects sheet: {e}")
        return []
    if df.empty:
        return []
    optional = {"ID", "Type", "Status", "Confidence", "Assignees", "Manday Estimate",
                "Impact", "ICE Confidence", "Effort", "Description"}
    required = {"Name", "Start Date", "End Date"}
    missing = normalize_columns(df, required | optional) & required
    if missing:
        print(f"  ERROR: Projects sheet is missing column(s): {', '.join(sorted(missing))}. "
              f"Found: {', '.join(map(str, df.columns))}")
        return []

    projects = []
    for idx, row in df.iterrows():
        row_num = idx + 2
        try:
            name = clean_str(row["Name"])
            if not name:
                continue  # skip blank rows

            project_id = parse_id(row.get("ID")) if "ID" in df.columns else None
            if project_id is None:
                project_id = row_num

            # Dates are optional: undated projects live in the backlog
            dates = {}
            for column, key in (("Start Date", "start_date"), ("End Date", "end_date")):
                if clean_str(row[column]):
                    try:
                        dates[key] = format_iso_date(
                            parse_date(row[column], context=f"Projects row {row_num}, '{column}'"))
                    except ValueError as e:
                        print(f"  WARNING: {e}")
                        dates[key] = None
                else:
                    dates[key] = None

            estimate = None
            if "Manday Estimate" in df.columns and pd.notna(row.get("Manday Estimate")):
                try:
                    estimate = float(row["Manday Estimate"])
                except (ValueError, TypeError):
                    print(f"  WARNING: Projects row {row_num}: invalid Manday Estimate, ignoring.")

            ice_score = None
            if all(c in df.columns and pd.notna(row.get(c)) for c in ("Impact", "ICE Confidence", "Effort")):
                ice_score = calculate_ice_score(row["Impact"], row["ICE Confidence"], row["Effort"])

            projects.append({
                "id": project_id,
                "name": name,
                "type": clean_str(row.get("Type", "")).lower() or DEFAULT_TYPE,
                "status": clean_str(row.get("Status", "")).lower() or DEFAULT_STATUS,
                "confidence": clean_str(row.get("Confidence", "")).lower() or DEFAULT_CONFIDENCE,
                "start_date": dates["start_date"],
                "end_date": dates["end_date"],
                "assignees": parse_assignees(row.get("Assignees"), team),
                "manday_estimate": estimate,
                "ice_score": ice_score,
                "description": clean_str(row.get("Description", "")),
                "_row": row_num,
            })
        except Exception as e:
            print(f"  WARNING: Could not parse row {row_num}: {e}")
    return projects


def load_settings(filepath):
    """Load quarter and view from the 'Settings' sheet. Missing sheet -> defaults."""
    settings = {"quarter": quarter_label_for(datetime.now()), "view_type": "quarter"}
    try:
        df = pd.read_excel(filepath, sheet_name="Settings")
    except (ValueError, Exception):
        # Sheet doesn't exist
        return settings
    if df.empty:
        return settings
    normalize_columns(df, {"Quarter", "View"})
    row = df.iloc[0]
    quarter = clean_str(row.get("Quarter", ""))
    if quarter:
        settings["quarter"] = quarter
    view = clean_str(row.get("View", "")).lower()
    if view:
        if view in VIEW_TYPES:
            settings["view_type"] = view
        else:
            print(f"  WARNING: Settings: view '{view}' not recognised, using 'quarter'.")
    return settings


def load_data(filepath):
    """Load all data from the Excel file."""
    team = load_team(filepath)
    projects = load_projects(filepath, team)
    settings = load_settings(filepath)
    return team, projects, settings


# ── Data Validation ──────────────────────────────────────────────────────────

def validate_data(team, projects):
    """Validate loaded data. Returns (errors, warnings) lists."""
    errors = []
    warnings = []

    if not team:
        errors.append("Team sheet is empty. Add at least one team member.")
    if not projects:
        warnings.append("Projects sheet is empty. The board will only show lanes.")
        return errors, warnings

    team_ids = {m["id"] for m in team}
    seen_ids = set()
    for project in projects:
        row = project.get("_row", "?")
        label = project.get("name") or project.get("id")

        if project["id"] in seen_ids:
            errors.append(f"Row {row}: duplicate project ID {project['id']!r}.")
        seen_ids.add(project["id"])

        for lane_id in project_assignees(project):
            if lane_id not in team_ids:
                errors.append(f"Row {row}: assignee {lane_id!r} on '{label}' not in Team sheet. "
                              f"Team IDs: {', '.join(str(i) for i in sorted(team_ids, key=str))}")

        start = coerce_date(project.get("start_date"))
        end = coerce_date(project.get("end_date"))
        if start and end and start > end:
            errors.append(f"Row {row}: '{label}' ends ({project['end_date']}) before it starts "
                          f"({project['start_date']}).")
        if (start is None or end is None) and project_assignees(project):
            warnings.append(f"Row {row}: '{label}' is assigned but has no complete date range; "
                            f"it will not appear on the board.")

        if project.get("status") not in STATUS_VALUES:
            warnings.append(f"Row {row}: Status '{project.get('status')}' not recognised. "
                            f"Valid: {', '.join(STATUS_VALUES)}")
        if project.get("confidence") not in CONFIDENCE_VALUES:
            warnings.append(f"Row {row}: Confidence '{project.get('confidence')}' not recognised. "
                            f"Valid: {', '.join(CONFIDENCE_VALUES)}")

    return errors, warnings


# ── Board Host ───────────────────────────────────────────────────────────────

class BoardHost:
    """Applies the timeline engine's intents to an in-memory project list.

    Persistence and the edit form live elsewhere; this keeps the list consistent,
    records what a form should open with, and re-renders the attached engine.
    """

    def __init__(self, projects, team=None, search=""):
        self.projects = projects
        self.team = team or []
        self.search = search
        self.engine = None
        self.selected = None
        self.editing = None
        self.pending_create = None
        self.messages = []

    def attach(self, engine, view_options=None):
        self.engine = engine
        return engine.update(self.visible_projects(), self.team, view_options)

    def refresh(self):
        if self.engine is not None:
            self.engine.update(self.visible_projects(), self.team)

    def find(self, project_id):
        for project in self.projects:
            if project.get("id") == project_id:
                return project
        return None

    def visible_projects(self):
        """Projects matching the search term (name or description, case-insensitive)."""
        term = clean_str(self.search).lower()
        if not term:
            return list(self.projects)
        return [p for p in self.projects
                if term in f"{p.get('name', '')} {p.get('description', '')}".lower()]

    def unassigned_projects(self):
        return [p for p in self.projects if not project_assignees(p)]

    def notify(self, message, level="success"):
        self.messages.append((level, message))

    # ── Engine callbacks ──

    def on_project_selected(self, project_id):
        self.selected = project_id

    def on_project_edit_requested(self, project_id):
        if self.find(project_id) is not None:
            self.editing = project_id

    def on_create_requested(self, defaults):
        self.pending_create = dict(defaults)

    def on_timeline_update(self, project_id, new_start=None, new_end=None, reassignment=None):
        """Write new dates and/or move the project between lanes. Returns True when applied."""
        project = self.find(project_id)
        if project is None:
            self.notify("Project could not be found", "error")
            return False
        start = format_iso_date(new_start) if new_start is not None else project.get("start_date")
        end = format_iso_date(new_end) if new_end is not None else project.get("end_date")
        start_dt, end_dt = coerce_date(start), coerce_date(end)
        if start_dt is not None and end_dt is not None and start_dt > end_dt:
            self.notify("End date must be after start date", "error")
            return False

        project["start_date"] = start
        project["end_date"] = end
        if reassignment:
            assignees = []
            for lane_id in project_assignees(project):
                lane_id = reassignment["to"] if lane_id == reassignment["from"] else lane_id
                if lane_id not in assignees:
                    assignees.append(lane_id)
            project["assignees"] = assignees
            self.notify("Project reassigned")
        if new_start is not None or new_end is not None:
            self.notify("Project timeline updated")
        self.refresh()
        return True

    def on_unschedule_requested(self, project_id):
        project = self.find(project_id)
        if project is None:
            return False
        project["assignees"] = []
        self.notify("Project moved to backlog")
        self.refresh()
        return True

    def on_backlog_drop(self, project_id, lane_id, drop_date):
        """Assign a backlog project to a lane, starting on the drop day with its duration kept."""
        project = self.find(project_id)
        if project is None or drop_date is None:
            return False
        start = coerce_date(project.get("start_date"))
        end = coerce_date(project.get("end_date"))
        if start is not None and end is not None and end >= start:
            duration = norm_date(end) - norm_date(start)
        else:
            duration = DEFAULT_PLACEMENT_DAYS * DAY
        new_start = norm_date(drop_date)
        project["start_date"] = format_iso_date(new_start)
        project["end_date"] = format_iso_date(new_start + duration)
        project["assignees"] = [lane_id]
        self.notify("Project scheduled")
        self.refresh()
        return True


# ── Chart: Planning Board ────────────────────────────────────────────────────

def render_board(layout, output_path, title=None):
    """Render the board (week headers, capacity heatmap, lanes with bars) as a PNG."""
    apply_style()

    if not layout or not layout["lanes"]:
        print("  No board data. Check: the Team sheet has at least one member.")
        return None

    weeks = layout["weeks"]
    span_start, span_end = layout["span_start"], layout["span_end"]
    span_seconds = max(DAY, span_end - span_start).total_seconds()
    week_lefts = np.array([(w["start"] - span_start).total_seconds() / span_seconds * 100
                           for w in weeks])
    week_rights = np.append(week_lefts[1:], 100.0)
    week_centres = (week_lefts + week_rights) / 2

    lanes = layout["lanes"]
    n_lanes = len(lanes)
    heat_y = n_lanes  # heatmap row sits above the lanes
    fig_height = max(5, n_lanes * 0.7 + 3)
    fig = plt.figure(figsize=(STYLE["fig_width"], fig_height), facecolor=STYLE["bg_color"])
    ax = fig.add_axes([0.12, 0.08, 0.85, 0.78])

    # ── Lane shading + current week ──
    for i in range(n_lanes):
        shade = STYLE["row_shade_even"] if i % 2 == 0 else STYLE["row_shade_odd"]
        ax.axhspan(i - 0.5, i + 0.5, color=shade, alpha=0.6, zorder=0)
    for i, week in enumerate(weeks):
        if week["is_current"]:
            ax.add_patch(mpatches.Rectangle(
                (week_lefts[i], -0.5), week_rights[i] - week_lefts[i], n_lanes,
                facecolor=STYLE["current_week_color"], alpha=0.6, zorder=0))
        ax.axvline(week_lefts[i], color=STYLE["grid_color"], linewidth=0.6, zorder=1)

    # ── Heatmap row ──
    for i, cell in enumerate(layout["heatmap"]):
        ax.add_patch(mpatches.Rectangle(
            (week_lefts[i], heat_y - 0.4), week_rights[i] - week_lefts[i], 0.8,
            facecolor=HEAT_COLORS[cell["tier"]], edgecolor="white", linewidth=1, zorder=2))
        weight = "bold" if cell["tier"] == "over" else "normal"
        ax.text(week_centres[i], heat_y, f"{cell['percent']}%", ha="center", va="center",
                fontsize=STYLE["small_size"], fontweight=weight, zorder=3)

    # ── Bars (lane 0 at the top) ──
    bar_height = STYLE["bar_height"]
    for lane_idx, lane in enumerate(lanes):
        y = n_lanes - 1 - lane_idx
        for bar in lane["bars"]:
            status = bar.get("status")
            alpha = STYLE["completed_alpha"] if status == "completed" else 0.9
            edge = STYLE["low_confidence_edge"] if bar.get("confidence") == "low" else None
            draw_rounded_bar(ax, bar["left"], y, bar["width"], bar_height,
                             theme_color(bar["theme"]), alpha=alpha, edgecolor=edge,
                             hatch="//" if status == "blocked" else "")
            label = f"{STATUS_SYMBOLS.get(status, '')} {bar['title']}".strip()
            ax.text(bar["left"] + 0.4, y, label, ha="left", va="center",
                    fontsize=STYLE["small_size"], color=STYLE["text_primary"],
                    clip_on=True, zorder=4)

    # ── Today marker ──
    today = datetime.now()
    if span_start <= today <= span_end + DAY:
        today_x = (today - span_start).total_seconds() / span_seconds * 100
        if today_x <= 100:
            ax.axvline(today_x, color=STYLE["today_color"], linewidth=2, alpha=0.7, zorder=10)

    # ── Axes ──
    ax.set_xlim(0, 100)
    ax.set_ylim(-0.6, heat_y + 0.6)
    ax.set_yticks(list(range(n_lanes + 1)))
    ax.set_yticklabels([lane["name"] for lane in reversed(lanes)] + ["Capacity"],
                       fontsize=STYLE["tick_size"])
    ax.xaxis.tick_top()
    ax.set_xticks(week_centres)
    ax.set_xticklabels([f"{h['label']}\n{h['range']}" for h in layout["headers"]],
                       fontsize=STYLE["small_size"])
    ax.tick_params(axis="x", length=0)
    style_axes(ax)

    legend_handles = [mpatches.Patch(facecolor=HEAT_COLORS[t], label=f"Capacity: {t}")
                      for t in ("low", "medium", "high", "over")]
    themes = sorted({bar["theme"] for lane in lanes for bar in lane["bars"]})
    legend_handles += [mpatches.Patch(facecolor=theme_color(t), label=t) for t in themes]
    ax.legend(handles=legend_handles, loc="upper left", bbox_to_anchor=(0, -0.02),
              ncol=min(8, len(legend_handles)), fontsize=STYLE["small_size"],
              framealpha=0.9, edgecolor=STYLE["grid_color"])

    subtitle = f"{span_start.strftime('%d %b %Y')} — {span_end.strftime('%d %b %Y')}"
    if layout["unassigned"]:
        subtitle += f"  ·  {len(layout['unassigned'])} in backlog"
    add_header_footer(fig, title or f"Quarter Plan: {layout['period'].replace('-', ' ')}", subtitle)

    out_dir = os.path.dirname(output_path)
    if out_dir:
        os.makedirs(out_dir, exist_ok=True)
    fig.savefig(output_path, dpi=STYLE["dpi"], bbox_inches="tight", facecolor=STYLE["bg_color"])
    plt.close(fig)
    print(f"  Board saved: {output_path}")
    return output_path


# ── Summary ──────────────────────────────────────────────────────────────────

def print_summary(layout, projects):
    """Print board statistics to console."""
    heatmap = layout["heatmap"]
    weeks = layout["weeks"]
    ratios = [cell["ratio"] for cell in heatmap]
    avg_util = (sum(ratios) / len(ratios) * 100) if ratios else 0
    peak = max(heatmap, key=lambda c: c["ratio"]) if heatmap else None
    over = [cell for cell in heatmap if cell["tier"] == "over"]
    scheduled = sum(1 for p in projects if project_assignees(p))
    backlog = [p for p in projects if not project_assignees(p)]

    print()
    print("=" * 60)
    print(f"  BOARD SUMMARY: {layout['period'].replace('-', ' ')} ({layout['view_type']} view)")
    print("=" * 60)
    print(f"  Projects:      {len(projects)} total ({scheduled} scheduled, {len(backlog)} in backlog)")
    print(f"  Timeline:      {len(weeks)} week{'s' if len(weeks) != 1 else ''} "
          f"({layout['span_start'].strftime('%d %b')} - {layout['span_end'].strftime('%d %b %Y')})")
    print(f"  Utilisation:   {avg_util:.0f}% average")
    if peak is not None:
        week = weeks[peak["index"]]
        print(f"  Peak week:     Week {week['number']} (w/c {week['start'].strftime('%d %b')}) "
              f"at {peak['percent']}% ({peak['load']:g}/{peak['capacity']} days)")
    print(f"  Over-capacity: {len(over)} of {len(weeks)} weeks")
    for cell in over:
        week = weeks[cell["index"]]
        print(f"    WARNING: w/c {week['start'].strftime('%d %b')} at {cell['percent']}%")

    print()
    print("  By lane:")
    for lane in layout["lanes"]:
        count = len(lane["bars"])
        print(f"    {lane['name']}: {count} project{'s' if count != 1 else ''}")

    if backlog:
        print()
        print(f"  Backlog: {len(backlog)}")
        for project in backlog:
            print(f"    {project.get('name')} ({project.get('status', DEFAULT_STATUS)})")

    low_conf = [p for p in projects
                if p.get("confidence") == "low" and p.get("status") != "completed"]
    if low_conf:
        print()
        print(f"  Low confidence: {len(low_conf)}")
        for project in low_conf:
            print(f"    {project.get('name')}")

    print("=" * 60)
    print()


# ── Main ─────────────────────────────────────────────────────────────────────

def main(argv=None):
    parser = argparse.ArgumentParser(
        description="Quarter Planner — lay out a quarter's projects per person and chart team capacity"
    )
    parser.add_argument(
        "--template", action="store_true",
        help="Generate a blank Excel template with example data"
    )
    parser.add_argument(
        "--input", default=DEFAULT_INPUT,
        help="Path to Excel input file (default: quarter_data.xlsx)"
    )
    parser.add_argument(
        "--quarter", default=None,
        help="Quarter to show, e.g. Q1-2026 (default: Settings sheet, then current quarter)"
    )
    parser.add_argument(
        "--view", default=None, choices=VIEW_TYPES,
        help="View mode (default: Settings sheet, then quarter)"
    )
    parser.add_argument(
        "--outdir", default=None,
        help="Output directory for the board PNG (default: output/)"
    )
    parser.add_argument(
        "--search", default="",
        help="Only show projects whose name or description contains this text"
    )
    args = parser.parse_args(argv)

    if args.template:
        generate_template(args.input)
        return

    if not os.path.exists(args.input):
        print(f"Error: Input file not found: {args.input}")
        print("Run with --template first to create a template.")
        sys.exit(1)

    out_dir = args.outdir or DEFAULT_OUTDIR

    print(f"Loading data from: {args.input}")
    team, projects, settings = load_data(args.input)
    print(f"  Team: {', '.join(m['name'] for m in team)}")
    print(f"  Projects: {len(projects)}")

    errors, warnings = validate_data(team, projects)
    for w in warnings:
        print(f"  WARNING: {w}")
    if errors:
        for e in errors:
            print(f"  ERROR: {e}")
        sys.exit(1)

    view_options = {
        "quarter": args.quarter or settings["quarter"],
        "view_type": args.view or settings["view_type"],
    }
    host = BoardHost(projects, team, search=args.search)
    engine = TimelineEngine(host=host)
    layout = host.attach(engine, view_options)
    if args.search:
        print(f"  Search '{args.search}': {len(host.visible_projects())} project(s) shown")

    board_path = os.path.join(out_dir, f"board_{layout['period']}_{layout['view_type']}.png")
    render_board(layout, board_path)
    print_summary(layout, host.visible_projects())


if __name__ == "__main__":
    main()
