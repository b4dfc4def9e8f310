import math
from datetime import datetime

DEFAULT_CENTER = (39.8283, -98.5795)
DEFAULT_ZOOM = 4
SINGLE_LOCATION_ZOOM = 12
FIT_PADDING = (30, 30)
POPUP_INCIDENT_LIMIT = 5
BRAND_COLOR = "#293e40"
FALLBACK_COLOR = "#666"

PRIORITY_LABELS = {
    "1": "Critical",
    "2": "High",
    "3": "Moderate",
    "4": "Low",
    "5": "Planning",
}

STATE_LABELS = {
    "1": "New",
    "2": "In Progress",
    "3": "On Hold",
}

PRIORITY_COLORS = {
    "1": "#d32f2f",  # Critical - red
    "2": "#f57c00",  # High - orange
    "3": "#fbc02d",  # Moderate - yellow
    "4": "#388e3c",  # Low - green
    "5": "#1976d2",  # Planning - blue
}

STATE_COLORS = {
    "1": "#1976d2",
    "2": "#f57c00",
    "3": "#9c27b0",
}

EMPTY_FILTERS = {
    "search": "",
    "priority": [],
    "state": [],
    "date_from": "",
    "date_to": "",
    "location": "",
    "map_area": False,
    "bounds": None,
}


def field_value(field):
    """Return the raw value of a field that may be a ``{value, display_value}`` pair."""

    if isinstance(field, dict):
        return field.get("value")
    return field


def display_value(field):
    """Return the human readable form of a possibly wrapped field."""

    if isinstance(field, dict):
        return field.get("display_value")
    return field


def _key(field):
    value = field_value(field)
    return "" if value is None else str(value)


def priority_label(priority):
    return PRIORITY_LABELS.get(_key(priority), "Unknown")


def state_label(state):
    return STATE_LABELS.get(_key(state), "Unknown")


def priority_color(priority):
    return PRIORITY_COLORS.get(_key(priority), FALLBACK_COLOR)


def state_color(state):
    return STATE_COLORS.get(_key(state), FALLBACK_COLOR)


def parse_datetime(raw_value):
    if not raw_value:
        return None

    raw_value = str(raw_value).strip()
    candidates = [raw_value]
    if raw_value.endswith("Z"):
        candidates.append(raw_value[:-1] + "+00:00")

    for value in candidates:
        for fmt in (
            "%Y-%m-%d %H:%M:%S",
            "%Y-%m-%dT%H:%M:%S",
            "%Y-%m-%d",
            "%m/%d/%Y %I:%M:%S %p",
            "%m/%d/%Y %H:%M:%S",
            "%m/%d/%Y %H:%M",
            "%m/%d/%Y",
        ):
            try:
                return datetime.strptime(value, fmt)
            except ValueError:
                continue

        try:
            return datetime.fromisoformat(value).replace(tzinfo=None)
        except ValueError:
            continue

    return None


def opened_datetime(incident):
    """Parse ``opened_at``, preferring the raw value over the display form."""

    field = incident.get("opened_at")
    return parse_datetime(field_value(field)) or parse_datetime(display_value(field))


def format_opened_at(value):
    if not value:
        return "N/A"

    parsed = parse_datetime(display_value(value))
    if parsed is None:
        return "Invalid Date"

    return f"{parsed.strftime('%b')} {parsed.day}, {parsed.strftime('%I:%M %p')}"


def derive_filter_options(incidents):
    """Collect the sorted, distinct raw priority and state values."""

    priorities = {_key(inc.get("priority")) for inc in incidents}
    states = {_key(inc.get("state")) for inc in incidents}

    return {
        "priorities": sorted(value for value in priorities if value),
        "states": sorted(value for value in states if value),
    }


def build_location_lookup(locations):
    lookup = {}
    for location in locations:
        sys_id = field_value(location.get("sys_id"))
        if sys_id:
            lookup[sys_id] = location
    return lookup


def _coordinate(field):
    # Raw value first; it always uses a dot decimal. The display form may not.
    for candidate in (field_value(field), display_value(field)):
        if candidate in (None, ""):
            continue
        try:
            number = float(str(candidate).strip())
        except ValueError:
            continue
        if math.isfinite(number):
            return number
    return None


def location_coordinates(location):
    if not location:
        return None

    lat = _coordinate(location.get("latitude"))
    lng = _coordinate(location.get("longitude"))
    if lat is None or lng is None:
        return None
    if abs(lat) > 90 or abs(lng) > 180:
        return None
    return (lat, lng)


def location_display_name(location):
    name = display_value(location.get("name")) or ""
    city = display_value(location.get("city"))
    region = display_value(location.get("state"))

    if city and region:
        name += f" ({city}, {region})"
    elif city:
        name += f" ({city})"
    elif region:
        name += f" ({region})"

    return name or "Unknown Location"


def incident_location(incident, location_lookup):
    return location_lookup.get(field_value(incident.get("location")))


def incident_location_name(incident, location_lookup):
    location = incident_location(incident, location_lookup)
    if location:
        return location_display_name(location)
    return display_value(incident.get("location")) or "No Location"


def parse_bounds(raw_value):
    """Parse ``"south,west,north,east"`` into a tuple of floats."""

    if not raw_value:
        return None

    parts = str(raw_value).split(",")
    if len(parts) != 4:
        return None

    try:
        south, west, north, east = (float(part) for part in parts)
    except ValueError:
        return None

    if south > north:
        return None

    # Map views that wrap the world report longitudes outside [-180, 180].
    if east - west >= 360:
        return (south, -180.0, north, 180.0)
    return (south, _wrap_longitude(west), north, _wrap_longitude(east))


def _wrap_longitude(lng):
    if -180 <= lng <= 180:
        return lng
    return ((lng + 180) % 360) - 180


def within_bounds(position, bounds):
    lat, lng = position
    south, west, north, east = bounds
    if not south <= lat <= north:
        return False
    if west <= east:
        return west <= lng <= east
    # Bounds crossing the antimeridian.
    return lng >= west or lng <= east


def _parse_day(raw_value):
    parsed = parse_datetime(raw_value)
    return parsed.date() if parsed else None


def filter_incidents(incidents, filters, location_lookup=None):
    """Apply the dashboard predicates to an in-memory incident list.

    Predicates run in order: search, priority, state, date range, location
    and map area. Each one is skipped when its filter value is empty.
    """

    filters = filters or {}
    location_lookup = location_lookup or {}
    filtered = list(incidents)

    search = (filters.get("search") or "").strip().lower()
    if search:

        def matches(incident):
            number = display_value(incident.get("number")) or ""
            short_desc = display_value(incident.get("short_description")) or ""
            return search in str(number).lower() or search in str(short_desc).lower()

        filtered = [inc for inc in filtered if matches(inc)]

    priorities = {str(p) for p in filters.get("priority") or []}
    if priorities:
        filtered = [inc for inc in filtered if _key(inc.get("priority")) in priorities]

    states = {str(s) for s in filters.get("state") or []}
    if states:
        filtered = [inc for inc in filtered if _key(inc.get("state")) in states]

    date_from = _parse_day(filters.get("date_from"))
    date_to = _parse_day(filters.get("date_to"))
    if date_from or date_to:
        in_range = []
        for incident in filtered:
            opened = opened_datetime(incident)
            if opened is None:
                continue
            if date_from and opened.date() < date_from:
                continue
            if date_to and opened.date() > date_to:
                continue
            in_range.append(incident)
        filtered = in_range

    location_id = filters.get("location")
    if location_id:
        filtered = [inc for inc in filtered if field_value(inc.get("location")) == location_id]

    bounds = filters.get("bounds")
    if filters.get("map_area") and bounds:
        in_view = []
        for incident in filtered:
            position = location_coordinates(incident_location(incident, location_lookup))
            if position and within_bounds(position, bounds):
                in_view.append(incident)
        filtered = in_view

    return filtered


def count_active_filters(filters):
    return (
        len(filters.get("priority") or [])
        + len(filters.get("state") or [])
        + (1 if filters.get("search") else 0)
        + (1 if _parse_day(filters.get("date_from")) else 0)
        + (1 if _parse_day(filters.get("date_to")) else 0)
    )


def _priority_rank(incident):
    try:
        return int(_key(incident.get("priority")))
    except ValueError:
        return math.inf


def sort_incidents(incidents):
    """Order by priority (Critical first), then newest opened date first."""

    def opened_sort_key(incident):
        opened = opened_datetime(incident)
        return opened or datetime.min

    by_date = sorted(incidents, key=opened_sort_key, reverse=True)
    return sorted(by_date, key=_priority_rank)


def group_incidents_by_coordinate(incidents, location_lookup):
    groups = {}
    for incident in incidents:
        location = incident_location(incident, location_lookup)
        position = location_coordinates(location)
        if position is None:
            continue

        group = groups.get(position)
        if group is None:
            group = groups[position] = {
                "position": position,
                "location": location,
                "incidents": [],
            }
        group["incidents"].append(incident)

    return list(groups.values())


def marker_radius(count):
    return max(8, min(20, 8 + math.log2(count) * 4))


def marker_color(group):
    if len(group["incidents"]) == 1:
        return priority_color(group["incidents"][0].get("priority"))
    return BRAND_COLOR


def incident_url(incident, base_url=""):
    sys_id = field_value(incident.get("sys_id"))
    return f"{(base_url or '').rstrip('/')}/incident.do?sys_id={sys_id}"


def build_map_markers(groups, base_url=""):
    markers = []
    for group in groups:
        count = len(group["incidents"])
        summaries = []
        for incident in group["incidents"][:POPUP_INCIDENT_LIMIT]:
            summaries.append(
                {
                    "number": display_value(incident.get("number")),
                    "description": display_value(incident.get("short_description"))
                    or "No description",
                    "priority_label": priority_label(incident.get("priority")),
                    "priority_color": priority_color(incident.get("priority")),
                    "state_label": state_label(incident.get("state")),
                    "url": incident_url(incident, base_url),
                }
            )

        markers.append(
            {
                "position": list(group["position"]),
                "radius": marker_radius(count),
                "color": marker_color(group),
                "location_name": location_display_name(group["location"]),
                "count": count,
                "incidents": summaries,
                "more": max(count - POPUP_INCIDENT_LIMIT, 0),
            }
        )
    return markers


def map_viewport(groups):
    """Return how the map should frame the given coordinate groups."""

    positions = [group["position"] for group in groups]
    if not positions:
        return {"center": list(DEFAULT_CENTER), "zoom": DEFAULT_ZOOM, "bounds": None}

    if len(positions) == 1:
        return {"center": list(positions[0]), "zoom": SINGLE_LOCATION_ZOOM, "bounds": None}

    lats = [lat for lat, _ in positions]
    lngs = [lng for _, lng in positions]
    return {
        "center": None,
        "zoom": None,
        "bounds": [[min(lats), min(lngs)], [max(lats), max(lngs)]],
        "padding": list(FIT_PADDING),
    }


def incident_card(incident, location_lookup, base_url=""):
    priority = incident.get("priority")
    state = incident.get("state")

    return {
        "number": display_value(incident.get("number")),
        "description": display_value(incident.get("short_description"))
        or "No description available",
        "priority": _key(priority),
        "priority_label": priority_label(priority),
        "priority_color": priority_color(priority),
        "state_label": state_label(state),
        "state_color": state_color(state),
        "location_name": incident_location_name(incident, location_lookup),
        "assigned_to": display_value(incident.get("assigned_to")) or None,
        "caller": display_value(incident.get("caller_id")) or None,
        "opened": format_opened_at(incident.get("opened_at")),
        "url": incident_url(incident, base_url),
    }
