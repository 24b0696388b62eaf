"""
Timeline Engine
Headless layout and interaction core for the quarter-planning board.

Features:
  - Week grid generation from a quarter label and view mode (quarter, month, 6 or 2 weeks)
  - Date range <-> percentage geometry for project bars, and pixel offset -> date
  - Snapping of dragged/resized ranges to span edges and neighbouring project edges
  - Pointer gesture state machine: create, move, resize, reassign, unschedule
  - Per-week team capacity heatmap from overlapping man-day estimates

The engine never draws and never persists. Rendering and hit-testing go through an
injected Surface; every change the user makes is handed to the host as one callback.
"""

import math
import re
from calendar import monthrange
from datetime import date, datetime, timedelta

import pandas as pd


# ── Constants ────────────────────────────────────────────────────────────────

DAY = timedelta(days=1)
HALF_DAY = timedelta(hours=12)
SNAP_THRESHOLD = timedelta(hours=12)
DRAG_THRESHOLD_PX = 5
MIN_WIDTH_PERCENT = 2
FULL_TIME_DAYS_PER_WEEK = 5

VIEW_WEEK_LIMITS = {
    "quarter": 13,
    "month": 6,     # enough to cover any month
    "6weeks": 6,
    "2weeks": 2,
}
VIEW_TYPES = list(VIEW_WEEK_LIMITS)

# Checked in order; anything at or below 60% is "low"
HEAT_THRESHOLDS = [("over", 100), ("high", 85), ("medium", 60)]
HEAT_TIERS = ["low", "medium", "high", "over"]

PERIOD_RE = re.compile(r"^Q([1-4])-(\d{1,4})$")
DATE_FORMATS = ("%Y-%m-%d", "%d/%m/%Y", "%d-%m-%Y", "%Y-%m-%dT%H:%M:%S", "%Y-%m-%d %H:%M:%S")

DEFAULT_THEME = "feature"

# Gesture kinds (what was pressed)
KIND_MOVE = "bar"
KIND_RESIZE_START = "resize-start"
KIND_RESIZE_END = "resize-end"
KIND_CREATE = "cell"
GESTURE_KINDS = [KIND_MOVE, KIND_RESIZE_START, KIND_RESIZE_END, KIND_CREATE]

# Snap modes
MODE_MOVE = "move"
MODE_RESIZE_START = "resize-start"
MODE_RESIZE_END = "resize-end"

# Gesture states
STATE_IDLE = "idle"
STATE_ARMED = "armed"
STATE_DRAGGING = "dragging"
STATE_COMMITTED = "committed"
STATE_CANCELLED = "cancelled"

TRANSITIONS = {
    STATE_IDLE: (STATE_ARMED,),
    # create gestures commit straight from armed (single-week click)
    STATE_ARMED: (STATE_DRAGGING, STATE_COMMITTED, STATE_CANCELLED),
    STATE_DRAGGING: (STATE_COMMITTED, STATE_CANCELLED),
    STATE_COMMITTED: (),
    STATE_CANCELLED: (),
}


# ── Date Helpers ─────────────────────────────────────────────────────────────

def round_half_up(value):
    """Round .5 away from zero for positives (banker's rounding would skew day counts)."""
    return math.floor(value + 0.5)


def norm_date(d):
    """Normalise to midnight datetime."""
    if isinstance(d, pd.Timestamp):
        d = d.to_pydatetime()
    if not isinstance(d, (datetime, date)):
        raise TypeError(f"norm_date expected datetime, got {type(d).__name__}: {d!r}")
    return datetime(d.year, d.month, d.day)


def coerce_date(val):
    """Return a naive datetime for val, or None when it cannot be read as a date.

    Accepts datetime, date, pandas Timestamp and the string formats in DATE_FORMATS
    (plus anything datetime.fromisoformat understands). Times of day are kept.
    """
    if val is None or val is pd.NaT:
        return None
    if isinstance(val, pd.Timestamp):
        val = val.to_pydatetime()
    if isinstance(val, datetime):
        return val.replace(tzinfo=None)
    if isinstance(val, date):
        return datetime(val.year, val.month, val.day)
    if not isinstance(val, str):
        return None
    val = val.strip()
    if not val:
        return None
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(val, fmt)
        except ValueError:
            pass
    try:
        parsed = datetime.fromisoformat(val.replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed.replace(tzinfo=None)


def format_iso_date(d):
    """'2024-02-13' for a datetime; passes other values through unchanged."""
    if isinstance(d, (datetime, date)):
        return f"{d.year:04d}-{d.month:02d}-{d.day:02d}"
    return d


def format_short_date(d):
    """'Feb 13' style label, or an em dash for a missing date."""
    d = coerce_date(d)
    if d is None:
        return "—"
    return f"{d.strftime('%b')} {d.day}"


def format_date_range(start, end):
    return f"{format_short_date(start)} - {format_short_date(end)}"


def format_tooltip(start, end):
    """Live drag tooltip text, e.g. 'Feb 13 → Feb 23'."""
    return f"{format_short_date(start)} → {format_short_date(end)}"


# ── Range Generator ──────────────────────────────────────────────────────────

def quarter_label_for(d):
    """Return 'Q1-2024' style label for the quarter containing d."""
    quarter = (d.month - 1) // 3 + 1
    return f"Q{quarter}-{d.year}"


def quarter_bounds(year, quarter):
    """First day of the quarter's first month and last day of its third month."""
    start_month = (quarter - 1) * 3 + 1
    end_month = start_month + 2
    _, last_day = monthrange(year, end_month)
    return datetime(year, start_month, 1), datetime(year, end_month, last_day)


def parse_quarter_label(label, today=None):
    """Parse 'Q{1-4}-{year}' into (quarter, year). Malformed labels give today's quarter."""
    match = PERIOD_RE.match(label.strip()) if isinstance(label, str) else None
    if match and int(match.group(2)) > 0:
        return int(match.group(1)), int(match.group(2))
    today = today or datetime.now()
    return (today.month - 1) // 3 + 1, today.year


def parse_period(label, today=None):
    """Resolve a quarter label to its (start, end) midnight datetimes."""
    quarter, year = parse_quarter_label(label, today)
    return quarter_bounds(year, quarter)


def quarter_order(label, today=None):
    """Monotonic integer for a quarter label (year * 4 + quarter index)."""
    quarter, year = parse_quarter_label(label, today)
    return year * 4 + (quarter - 1)


def order_to_quarter_label(order):
    if order < 4:
        return None
    return f"Q{order % 4 + 1}-{order // 4}"


def shift_quarter(label, steps, today=None):
    """Label of the quarter `steps` quarters after (or before) label."""
    return order_to_quarter_label(quarter_order(label, today) + steps)


def get_month_anchor(range_start, range_end, today):
    """Today if it falls inside the range, otherwise the range start."""
    today = norm_date(today)
    if range_start <= today <= range_end:
        return today
    return range_start


def is_current_week(week_start, week_end, today):
    today = norm_date(today)
    return week_start <= today <= week_end


def span_duration(span_start, span_end):
    """Span length with a one-day floor so later divisions are safe."""
    return max(DAY, span_end - span_start)


def generate_weeks(period, view_mode="quarter", today=None):
    """Turn a quarter label and view mode into week buckets.

    Returns (weeks, span_start, span_end). Each bucket is a dict with index, number,
    start, end (inclusive, midnight) and is_current.
    """
    today = norm_date(today or datetime.now())
    quarter_start, quarter_end = parse_period(period, today)
    if view_mode not in VIEW_WEEK_LIMITS:
        view_mode = "quarter"
    week_limit = VIEW_WEEK_LIMITS[view_mode]

    range_start, range_end = quarter_start, quarter_end
    if view_mode in ("2weeks", "6weeks"):
        range_end = min(range_start + timedelta(days=week_limit * 7 - 1), quarter_end)
    elif view_mode == "month":
        anchor = get_month_anchor(quarter_start, quarter_end, today)
        _, last_day = monthrange(anchor.year, anchor.month)
        range_start = max(datetime(anchor.year, anchor.month, 1), quarter_start)
        range_end = min(datetime(anchor.year, anchor.month, last_day), quarter_end)

    weeks = []
    cursor = range_start
    while cursor <= range_end and len(weeks) < week_limit:
        week_end = min(cursor + timedelta(days=6), range_end)
        weeks.append({
            "index": len(weeks),
            "number": len(weeks) + 1,
            "start": cursor,
            "end": week_end,
            "is_current": is_current_week(cursor, week_end, today),
        })
        cursor += timedelta(days=7)

    if not weeks:
        weeks.append({
            "index": 0,
            "number": 1,
            "start": range_start,
            "end": range_end,
            "is_current": is_current_week(range_start, range_end, today),
        })

    return weeks, weeks[0]["start"], weeks[-1]["end"]


def week_header(week, view_mode="quarter"):
    """Header label and date range text for one week column."""
    if view_mode == "month":
        label = week["start"].strftime("%b")
    else:
        label = f"Week {week['number']}"
    return {
        "label": label,
        "range": format_date_range(week["start"], week["end"]),
        "is_current": week["is_current"],
    }


# ── Bar Geometry ─────────────────────────────────────────────────────────────

def _clamp_percent(value):
    return max(0.0, min(100.0, value))


def bar_position(start_date, end_date, span_start, span_end):
    """Map a date range to {'left', 'width'} percentages of the span, or None.

    None when either date is unreadable, the span is empty, or the range misses the
    span entirely. Width has a MIN_WIDTH_PERCENT floor; a bar that would run past
    the right edge is pulled left instead.
    """
    if span_start is None or span_end is None:
        return None
    start = coerce_date(start_date)
    end = coerce_date(end_date)
    if start is None or end is None:
        return None
    total = (span_end - span_start).total_seconds()
    if total <= 0:
        return None
    if end < span_start or start > span_end:
        return None

    clamped_start = max(start, span_start)
    clamped_end = min(end, span_end)
    left = _clamp_percent((clamped_start - span_start).total_seconds() / total * 100)
    raw_width = (clamped_end - clamped_start).total_seconds() / total * 100
    width = _clamp_percent(max(MIN_WIDTH_PERCENT, raw_width))
    # floored bars at the right edge grow leftwards
    if left + width > 100.0:
        left = 100.0 - width
    return {"left": left, "width": width}


def date_from_offset(offset_px, lane_width_px, span_start, span_end):
    """Inverse mapping: horizontal pixel offset within a lane -> datetime."""
    if span_start is None or span_end is None:
        return None
    if not lane_width_px or lane_width_px <= 0:
        return span_start
    offset_px = max(0, min(offset_px, lane_width_px))
    ratio = offset_px / lane_width_px
    return span_start + timedelta(seconds=ratio * span_duration(span_start, span_end).total_seconds())


# ── Snap Resolver ────────────────────────────────────────────────────────────

def snap_date_to_day(value):
    """Midnight of the same day before noon, the next midnight from noon on."""
    if value is None:
        return None
    midnight = norm_date(value)
    if value - midnight >= HALF_DAY:
        midnight += DAY
    return midnight


def project_assignees(project):
    """Assignee lane ids as a list, whatever shape the host stored them in."""
    assignees = project.get("assignees")
    if isinstance(assignees, (list, tuple, set)):
        return list(assignees)
    if assignees is None or assignees == "":
        return []
    return [assignees]


def project_has_lane(project, lane_id):
    return lane_id in project_assignees(project)


def snap_targets(projects, span_start, span_end, exclude_project_id=None, lane_filter=None):
    """Anchor datetimes: the span edges plus every other project's start and end."""
    targets = []
    if span_start is not None:
        targets.append(snap_date_to_day(span_start))
    if span_end is not None:
        targets.append(snap_date_to_day(span_end))
    for project in projects:
        if project.get("id") == exclude_project_id:
            continue
        if lane_filter is not None and not project_has_lane(project, lane_filter):
            continue
        start = coerce_date(project.get("start_date"))
        end = coerce_date(project.get("end_date"))
        if start is None or end is None:
            continue
        targets.extend((start, end))
    return targets


def find_snap_delta(value, targets):
    """Signed timedelta to the closest anchor within SNAP_THRESHOLD, or None."""
    best = None
    for target in targets:
        delta = target - value
        if abs(delta) <= SNAP_THRESHOLD and (best is None or abs(delta) < abs(best)):
            best = delta
    return best


def snap_range(start, end, targets, mode=MODE_MOVE):
    """Snap a candidate range to the anchors, then quantize to whole days."""
    if start is None or end is None:
        return start, end
    duration = max(DAY, end - start)

    if mode == MODE_MOVE:
        delta_start = find_snap_delta(start, targets)
        delta_end = find_snap_delta(end, targets)
        if delta_start is not None and delta_end is not None:
            delta = delta_start if abs(delta_start) <= abs(delta_end) else delta_end
        else:
            delta = delta_start if delta_start is not None else delta_end
        if delta:
            start += delta
            end += delta
        start = snap_date_to_day(start)
        duration_days = max(1, round_half_up(duration / DAY))
        end = start + duration_days * DAY
    elif mode == MODE_RESIZE_START:
        delta = find_snap_delta(start, targets)
        if delta:
            start += delta
        start = snap_date_to_day(start)
        end = snap_date_to_day(end)
        if end <= start:
            end = start + DAY
    elif mode == MODE_RESIZE_END:
        delta = find_snap_delta(end, targets)
        if delta:
            end += delta
        start = snap_date_to_day(start)
        end = snap_date_to_day(end)
        if end <= start:
            end = start + DAY
    return start, end


# ── Clamping ─────────────────────────────────────────────────────────────────

def min_duration(window=None):
    """One day, or the whole window when that is shorter."""
    if window is None or window <= timedelta(0):
        return DAY
    return min(DAY, window)


def clamp_move(start, end, span_start, span_end):
    """Shift a range rigidly back inside the span, keeping at least a day."""
    minimum = min_duration()
    span = max(minimum, span_end - span_start)
    duration = min(max(minimum, end - start), span)
    if start < span_start:
        start = span_start
        end = start + duration
    if end > span_end:
        end = span_end
        start = end - duration
    if end - start < minimum:
        end = start + minimum
    return start, end


def clamp_resize_start(candidate, fixed_end, span_start, span_end):
    """Bound a moving start by the span start and by fixed_end minus the minimum duration."""
    minimum = min_duration(fixed_end - span_start)
    max_start = min(span_end - minimum, fixed_end - minimum)
    return max(span_start, min(candidate, max_start))


def clamp_resize_end(fixed_start, candidate, span_start, span_end):
    """Bound a moving end by the span end and by fixed_start plus the minimum duration."""
    effective_start = max(fixed_start, span_start)
    minimum = min_duration(span_end - effective_start)
    min_end = effective_start + minimum
    return min(span_end, max(candidate, min_end))


def enforce_min_duration(start, end, free_edge):
    """Last-resort guard: push the free edge out so the range is at least a day."""
    if end - start >= DAY:
        return start, end
    if free_edge == KIND_RESIZE_START:
        return end - DAY, end
    return start, start + DAY


# ── Capacity Heatmap ─────────────────────────────────────────────────────────

def _manday_estimate(project):
    value = project.get("manday_estimate")
    if value is None or isinstance(value, bool):
        return 0.0
    try:
        value = float(value)
    except (TypeError, ValueError):
        return 0.0
    if not math.isfinite(value) or value <= 0:
        return 0.0
    return value


def calculate_week_load(week_start, week_end, projects):
    """Man-days of work falling inside one week (inclusive day counting), 1 decimal."""
    total = 0.0
    for project in projects:
        start = coerce_date(project.get("start_date"))
        end = coerce_date(project.get("end_date"))
        if start is None or end is None or end < start:
            continue
        if end < week_start or start > week_end:
            continue
        estimate = _manday_estimate(project)
        if not estimate or not project_assignees(project):
            continue
        overlap_start = max(start, week_start)
        overlap_end = min(end, week_end)
        overlap_days = math.ceil((overlap_end - overlap_start) / DAY) + 1
        duration_days = math.ceil((end - start) / DAY) + 1
        total += estimate / duration_days * overlap_days
    return round_half_up(total * 10) / 10


def heat_tier(percent):
    for tier, threshold in HEAT_THRESHOLDS:
        if percent > threshold:
            return tier
    return "low"


def capacity_heatmap(weeks, projects, lane_count):
    """Per-week utilisation cells: load, capacity, ratio, percent, tier and title."""
    capacity = lane_count * FULL_TIME_DAYS_PER_WEEK
    cells = []
    for week in weeks:
        load = calculate_week_load(week["start"], week["end"], projects)
        ratio = load / capacity if capacity > 0 else 0.0
        percent = round_half_up(ratio * 100)
        cells.append({
            "index": week["index"],
            "load": load,
            "capacity": capacity,
            "ratio": ratio,
            "percent": percent,
            "tier": heat_tier(ratio * 100),
            "title": f"{percent}% capacity used ({load:g}/{capacity} days)",
        })
    return cells


# ── Bar Presentation ─────────────────────────────────────────────────────────

def get_project_theme(project):
    """Slug of the project type ('Bug Fix' -> 'bug-fix'), 'feature' when blank."""
    raw = project.get("type") if project else None
    raw = raw.strip().lower() if isinstance(raw, str) else ""
    slug = re.sub(r"[^a-z0-9]+", "-", raw).strip("-")
    return slug or DEFAULT_THEME


def format_ice_score(score):
    if isinstance(score, bool) or not isinstance(score, (int, float)) or not math.isfinite(score):
        return None
    if float(score).is_integer():
        return f"{score:.0f}"
    return f"{score:.1f}"


def bar_title(project):
    name = project.get("name") or ""
    ice = format_ice_score(project.get("ice_score"))
    if ice is not None:
        return f"{name} • ICE {ice}"
    return name


# ── Surfaces ─────────────────────────────────────────────────────────────────

class Surface:
    """Rendering and hit-testing collaborator. Every method is a no-op by default."""

    def render(self, layout):
        pass

    def lane_at(self, x, y):
        return None

    def cell_at(self, x, y):
        return None

    def is_over_backlog(self, x, y):
        return False

    def lane_width(self, lane_id):
        return 0

    def preview_bar(self, project_id, lane_id, position):
        pass

    def restore_bar(self, project_id, lane_id, position):
        pass

    def show_tooltip(self, text):
        pass

    def hide_tooltip(self):
        pass

    def highlight_lane(self, lane_id):
        pass

    def highlight_backlog(self, active):
        pass

    def preview_create(self, lane_id, first_index, last_index):
        pass

    def clear_create_preview(self):
        pass


class GridSurface(Surface):
    """Geometry-only surface: lanes stacked top to bottom, equal-width week columns.

    The backlog drop target is an optional (x0, y0, x1, y1) rectangle in the same
    coordinate space. Whatever the engine shows is kept on attributes so a caller
    can inspect the current picture without a GUI.
    """

    def __init__(self, lane_ids, width=910, lane_height=40, top=0, backlog=None):
        self.lane_ids = list(lane_ids)
        self.width = width
        self.lane_height = lane_height
        self.top = top
        self.backlog = backlog
        self.layout = None
        self.previews = {}
        self.tooltip = None
        self.highlighted_lane = None
        self.backlog_highlighted = False
        self.create_preview = None

    def render(self, layout):
        self.layout = layout
        self.lane_ids = [lane["id"] for lane in layout["lanes"]]
        self.previews = {}

    def lane_at(self, x, y):
        if x < 0 or x > self.width or y < self.top:
            return None
        row = int((y - self.top) // self.lane_height)
        if 0 <= row < len(self.lane_ids):
            return self.lane_ids[row]
        return None

    def cell_at(self, x, y):
        lane_id = self.lane_at(x, y)
        if lane_id is None or not self.layout or not self.layout["weeks"]:
            return None
        week_count = len(self.layout["weeks"])
        index = min(week_count - 1, int(x / (self.width / week_count)))
        return lane_id, index

    def is_over_backlog(self, x, y):
        if not self.backlog:
            return False
        x0, y0, x1, y1 = self.backlog
        return x0 <= x <= x1 and y0 <= y <= y1

    def lane_width(self, lane_id):
        return self.width

    def preview_bar(self, project_id, lane_id, position):
        self.previews[project_id] = (lane_id, position)

    def restore_bar(self, project_id, lane_id, position):
        self.previews.pop(project_id, None)

    def show_tooltip(self, text):
        self.tooltip = text

    def hide_tooltip(self):
        self.tooltip = None

    def highlight_lane(self, lane_id):
        self.highlighted_lane = lane_id

    def highlight_backlog(self, active):
        self.backlog_highlighted = bool(active)

    def preview_create(self, lane_id, first_index, last_index):
        self.create_preview = (lane_id, first_index, last_index)

    def clear_create_preview(self):
        self.create_preview = None


# ── Gesture State ────────────────────────────────────────────────────────────

def transition(state, new_state):
    """Validate one state machine step and return the new state."""
    if new_state not in TRANSITIONS.get(state, ()):
        raise ValueError(f"Illegal gesture transition {state} -> {new_state}")
    return new_state


class Gesture:
    """Transient state of one pointer gesture, discarded on release or cancel."""

    def __init__(self, kind, x, y, project_id=None, lane_id=None,
                 start=None, end=None, lane_width=1, span=DAY, week_index=None):
        self.kind = kind
        self.state = transition(STATE_IDLE, STATE_ARMED)
        self.project_id = project_id
        self.origin_lane = lane_id
        self.drop_lane = lane_id
        self.start_x = x
        self.start_y = y
        self.original_start = start
        self.original_end = end
        self.candidate_start = start
        self.candidate_end = end
        self.lane_width = lane_width or 1
        self.span_seconds = span.total_seconds()
        self.origin_index = week_index
        self.hover_index = week_index
        self.moved = False
        self.over_backlog = False
        self.timeline_changed = False
        self.highlighted_lane = None
        self.tooltip = None

    def advance(self, new_state):
        self.state = transition(self.state, new_state)

    def time_delta(self, x):
        return timedelta(seconds=(x - self.start_x) / self.lane_width * self.span_seconds)

    def passed_dead_zone(self, x, y):
        return (abs(x - self.start_x) >= DRAG_THRESHOLD_PX
                or abs(y - self.start_y) >= DRAG_THRESHOLD_PX)

    def week_range(self):
        """Order-independent (first, last) bucket indexes for a create gesture."""
        return min(self.origin_index, self.hover_index), max(self.origin_index, self.hover_index)


def _first_lane(*lane_ids):
    for lane_id in lane_ids:
        if lane_id is not None:
            return lane_id
    return None


# ── Engine ───────────────────────────────────────────────────────────────────

class TimelineEngine:
    """Owns the week grid, the layout and at most one active gesture.

    host: any object implementing some of on_timeline_update, on_create_requested,
    on_unschedule_requested, on_project_selected, on_project_edit_requested and
    on_backlog_drop. Missing methods (or no host at all) turn the call into a no-op.
    """

    def __init__(self, host=None, surface=None, today=None):
        self.host = host
        self.surface = surface or Surface()
        self._today = today
        self.projects = []
        self.lanes = []
        self.period = None
        self.view_type = "quarter"
        self.weeks = []
        self.span_start = None
        self.span_end = None
        self.gesture = None
        self._layout = None
        self._suppressed_click = None

    def today(self):
        if callable(self._today):
            return self._today()
        return self._today or datetime.now()

    # ── Host → core ──

    def update(self, projects=None, lanes=None, view_options=None):
        """Recompute weeks and layout for the given data and hand it to the surface."""
        self.projects = list(projects or [])
        self.lanes = list(lanes or [])
        period = self.period
        view_type = self.view_type or "quarter"
        if isinstance(view_options, str) and view_options:
            period = view_options
        elif isinstance(view_options, dict):
            period = view_options.get("quarter") or view_options.get("period") or period
            view_type = view_options.get("view_type") or view_options.get("view_mode") or view_type
        today = self.today()
        if not period:
            period = quarter_label_for(today)
        if view_type not in VIEW_WEEK_LIMITS:
            view_type = "quarter"
        self.period = period
        self.view_type = view_type

        self.weeks, self.span_start, self.span_end = generate_weeks(period, view_type, today)
        self._layout = self.build_layout()
        self.surface.render(self._layout)
        return self._layout

    def layout(self):
        return self._layout

    def build_layout(self):
        lanes = []
        for lane in self.lanes:
            bars = []
            for project in self.projects:
                if not project_has_lane(project, lane.get("id")):
                    continue
                bar = self.bar_for(project, lane.get("id"))
                if bar:
                    bars.append(bar)
            lanes.append({"id": lane.get("id"), "name": lane.get("name", ""), "bars": bars})
        unassigned = [p.get("id") for p in self.projects if not project_assignees(p)]
        return {
            "period": self.period,
            "view_type": self.view_type,
            "weeks": [dict(w) for w in self.weeks],
            "headers": [week_header(w, self.view_type) for w in self.weeks],
            "span_start": self.span_start,
            "span_end": self.span_end,
            "heatmap": capacity_heatmap(self.weeks, self.projects, len(self.lanes)),
            "lanes": lanes,
            "unassigned": unassigned,
        }

    def bar_for(self, project, lane_id):
        position = self.position(project.get("start_date"), project.get("end_date"))
        if not position:
            return None
        return {
            "project_id": project.get("id"),
            "lane_id": lane_id,
            "name": project.get("name", ""),
            "left": position["left"],
            "width": position["width"],
            "theme": get_project_theme(project),
            "status": project.get("status"),
            "confidence": project.get("confidence"),
            "title": bar_title(project),
        }

    # ── Geometry / snapping against the current span ──

    def position(self, start_date, end_date):
        return bar_position(start_date, end_date, self.span_start, self.span_end)

    def inverse(self, offset_px, lane_width_px):
        return date_from_offset(offset_px, lane_width_px, self.span_start, self.span_end)

    def span(self):
        if self.span_start is None:
            return DAY
        return span_duration(self.span_start, self.span_end)

    def snap(self, start, end, mode=MODE_MOVE, exclude_project_id=None, lane_filter=None):
        """Snap a candidate range against a fresh anchor set for the current projects."""
        targets = snap_targets(self.projects, self.span_start, self.span_end,
                               exclude_project_id, lane_filter)
        return snap_range(start, end, targets, mode)

    def find_project(self, project_id):
        for project in self.projects:
            if project.get("id") == project_id:
                return project
        return None

    # ── Pointer input ──

    def pointer_down(self, kind, x, y, project_id=None, lane_id=None, week_index=None, button=0):
        """Arm a gesture. Returns True when one was armed."""
        if button != 0 or self.gesture is not None or self.span_start is None:
            return False
        # a new press starts a new event turn
        self._suppressed_click = None
        if kind == KIND_CREATE:
            return self._arm_create(x, y, lane_id, week_index)
        if kind not in (KIND_MOVE, KIND_RESIZE_START, KIND_RESIZE_END):
            return False
        project = self.find_project(project_id)
        if project is None:
            return False
        start = coerce_date(project.get("start_date"))
        end = coerce_date(project.get("end_date"))
        if start is None or end is None:
            return False
        if kind == KIND_MOVE:
            self._call_host("on_project_selected", project_id)
        self.gesture = Gesture(kind, x, y, project_id=project_id, lane_id=lane_id,
                               start=start, end=end,
                               lane_width=self.surface.lane_width(lane_id),
                               span=self.span())
        return True

    def _arm_create(self, x, y, lane_id, week_index):
        if lane_id is None or week_index is None or not 0 <= week_index < len(self.weeks):
            return False
        week = self.weeks[week_index]
        self.gesture = Gesture(KIND_CREATE, x, y, lane_id=lane_id,
                               start=week["start"], end=week["end"],
                               lane_width=self.surface.lane_width(lane_id),
                               span=self.span(), week_index=week_index)
        self.surface.preview_create(lane_id, week_index, week_index)
        return True

    def pointer_move(self, x, y):
        """Advance the active gesture by one pointer sample. Returns its candidate range."""
        g = self.gesture
        if g is None:
            return None
        if g.kind == KIND_CREATE:
            self._drag_create(g, x, y)
        else:
            if g.state == STATE_ARMED:
                if not g.passed_dead_zone(x, y):
                    return None
                g.advance(STATE_DRAGGING)
                self._show_tooltip(g, g.original_start, g.original_end)
            g.moved = True
            if g.kind == KIND_MOVE:
                self._drag_move(g, x, y)
            else:
                self._drag_resize(g, x, y)
        return g.candidate_start, g.candidate_end

    def _drag_move(self, g, x, y):
        delta = g.time_delta(x)
        start, end = clamp_move(g.original_start + delta, g.original_end + delta,
                                self.span_start, self.span_end)
        pointer_lane = self.surface.lane_at(x, y)
        over_backlog = bool(self.surface.is_over_backlog(x, y))
        snap_lane = None if over_backlog else _first_lane(pointer_lane, g.origin_lane)
        start, end = self.snap(start, end, MODE_MOVE, g.project_id, snap_lane)
        start, end = clamp_move(start, end, self.span_start, self.span_end)
        g.candidate_start, g.candidate_end = start, end
        g.timeline_changed = start != g.original_start or end != g.original_end

        if over_backlog:
            if not g.over_backlog:
                self.surface.highlight_backlog(True)
            g.over_backlog = True
            g.drop_lane = g.origin_lane
            self._highlight_lane(g, None)
        else:
            if g.over_backlog:
                self.surface.highlight_backlog(False)
            g.over_backlog = False
            g.drop_lane = _first_lane(pointer_lane, g.origin_lane)
            self._highlight_lane(g, pointer_lane)

        self._preview(g, g.drop_lane, start, end)

    def _drag_resize(self, g, x, y):
        delta = g.time_delta(x)
        start, end = g.original_start, g.original_end
        if g.kind == KIND_RESIZE_START:
            start = clamp_resize_start(start + delta, end, self.span_start, self.span_end)
            start, end = self.snap(start, end, MODE_RESIZE_START, g.project_id, g.origin_lane)
            start = clamp_resize_start(start, end, self.span_start, self.span_end)
        else:
            end = clamp_resize_end(start, end + delta, self.span_start, self.span_end)
            start, end = self.snap(start, end, MODE_RESIZE_END, g.project_id, g.origin_lane)
            end = clamp_resize_end(start, end, self.span_start, self.span_end)
        start, end = enforce_min_duration(start, end, g.kind)
        g.candidate_start, g.candidate_end = start, end
        g.timeline_changed = start != g.original_start or end != g.original_end
        self._preview(g, g.origin_lane, start, end)

    def _drag_create(self, g, x, y):
        cell = self.surface.cell_at(x, y)
        if not cell:
            return
        lane_id, week_index = cell
        # create gestures never leave their lane
        if lane_id != g.origin_lane or not 0 <= week_index < len(self.weeks):
            return
        if g.state == STATE_ARMED:
            g.advance(STATE_DRAGGING)
        g.moved = True
        g.hover_index = week_index
        first, last = g.week_range()
        g.candidate_start = self.weeks[first]["start"]
        g.candidate_end = self.weeks[last]["end"]
        self.surface.preview_create(lane_id, first, last)

    def pointer_up(self):
        """Resolve the active gesture. Returns an outcome dict, or None when idle."""
        g = self.gesture
        if g is None:
            return None
        self.gesture = None
        self.surface.hide_tooltip()
        if g.kind == KIND_CREATE:
            return self._release_create(g)
        self._highlight_lane(g, None)
        if g.over_backlog:
            self.surface.highlight_backlog(False)

        if g.state != STATE_DRAGGING:
            g.advance(STATE_CANCELLED)
            if g.kind == KIND_MOVE:
                self.click(g.project_id)
                return _outcome(g, "click")
            return _outcome(g, None)

        if g.kind == KIND_MOVE and g.over_backlog:
            g.advance(STATE_COMMITTED)
            self._suppressed_click = g.project_id
            self._call_host("on_unschedule_requested", g.project_id)
            return _outcome(g, "unschedule")

        reassignment = None
        if (g.kind == KIND_MOVE and g.drop_lane is not None and g.origin_lane is not None
                and g.drop_lane != g.origin_lane):
            reassignment = {"from": g.origin_lane, "to": g.drop_lane}

        if not g.timeline_changed and reassignment is None:
            g.advance(STATE_CANCELLED)
            self._restore(g)
            return _outcome(g, None)

        g.advance(STATE_COMMITTED)
        self._suppressed_click = g.project_id
        if g.kind == KIND_MOVE:
            new_start = g.candidate_start if g.timeline_changed else None
            new_end = g.candidate_end if g.timeline_changed else None
        else:
            new_start, new_end = g.candidate_start, g.candidate_end
        self._call_host("on_timeline_update", g.project_id, new_start, new_end, reassignment)
        return _outcome(g, "timeline", start=new_start, end=new_end, reassignment=reassignment)

    def _release_create(self, g):
        self.surface.clear_create_preview()
        first, last = g.week_range()
        defaults = {
            "start_date": format_iso_date(self.weeks[first]["start"]),
            "end_date": format_iso_date(self.weeks[last]["end"]),
            "lane_id": g.origin_lane,
        }
        g.advance(STATE_COMMITTED)
        self._call_host("on_create_requested", defaults)
        return _outcome(g, "create", defaults=defaults)

    def pointer_leave(self):
        """Pointer left the board without releasing."""
        return self.cancel()

    def cancel(self):
        """Abandon the active gesture and put the bar back where it was."""
        g = self.gesture
        if g is None:
            return None
        self.gesture = None
        self.surface.hide_tooltip()
        if g.kind == KIND_CREATE:
            self.surface.clear_create_preview()
        else:
            self._highlight_lane(g, None)
            if g.over_backlog:
                self.surface.highlight_backlog(False)
            if g.state == STATE_DRAGGING:
                self._restore(g)
        g.advance(STATE_CANCELLED)
        return _outcome(g, None)

    # ── Clicks and drops ──

    def click(self, project_id):
        """A resolved click on a bar. Ignored right after that bar committed a drag."""
        if self._suppressed_click is not None and self._suppressed_click == project_id:
            return False
        if self.find_project(project_id) is None:
            return False
        self._call_host("on_project_selected", project_id)
        self._call_host("on_project_edit_requested", project_id)
        return True

    def end_event_turn(self):
        """Called by the host once the current event has fully dispatched."""
        self._suppressed_click = None

    def unschedule(self, project_id):
        """Send a bar back to the backlog (its unschedule button was clicked)."""
        self._call_host("on_unschedule_requested", project_id)

    def drop_from_backlog(self, project_id, lane_id, offset_px):
        """Place a backlog project onto a lane at the date under the drop point."""
        if self.span_start is None or lane_id is None:
            return None
        drop_date = self.inverse(offset_px, self.surface.lane_width(lane_id))
        self._call_host("on_backlog_drop", project_id, lane_id, drop_date)
        return drop_date

    # ── Internals ──

    def _call_host(self, name, *args):
        handler = getattr(self.host, name, None) if self.host is not None else None
        if callable(handler):
            return handler(*args)
        return None

    def _preview(self, g, lane_id, start, end):
        position = self.position(start, end)
        if not position:
            self.surface.hide_tooltip()
            g.tooltip = None
            return
        self.surface.preview_bar(g.project_id, lane_id, position)
        self._show_tooltip(g, start, end)

    def _restore(self, g):
        position = self.position(g.original_start, g.original_end)
        self.surface.restore_bar(g.project_id, g.origin_lane, position)

    def _show_tooltip(self, g, start, end):
        g.tooltip = format_tooltip(start, end)
        self.surface.show_tooltip(g.tooltip)

    def _highlight_lane(self, g, lane_id):
        if g.highlighted_lane == lane_id:
            return
        g.highlighted_lane = lane_id
        self.surface.highlight_lane(lane_id)


def _outcome(g, intent, **details):
    outcome = {"state": g.state, "kind": g.kind, "project_id": g.project_id, "intent": intent}
    outcome.update(details)
    return outcome
