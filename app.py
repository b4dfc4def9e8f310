from flask import Flask, Response, jsonify, render_template, request
from datetime import datetime, timedelta, timezone
import json
import logging
import os
import time

import incident_data
import marker_icons
import servicenow_client

app = Flask(__name__)

BASE_DIR = os.path.dirname(os.path.abspath(__file__))
CONFIG_FILE = os.getenv("DASHBOARD_CONFIG_FILE") or os.path.join(BASE_DIR, "dashboard_config.json")
LOG_FILE = os.getenv("LOG_FILE") or os.path.join(BASE_DIR, "app.log")
LOG_TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%SZ"
LOG_WINDOW = timedelta(hours=24)

DEFAULT_CONFIG = {
    "instance_url": "",
    "token": "",
    "username": "",
    "password": "",
    "timeout": servicenow_client.DEFAULT_TIMEOUT,
    "tile_url": "https://{s}.basemaps.cartocdn.com/light_all/{z}/{x}/{y}{r}.png",
    "tile_attribution": (
        '&copy; <a href="https://www.openstreetmap.org/copyright">OpenStreetMap</a> '
        'contributors &copy; <a href="https://carto.com/attributions">CARTO</a>'
    ),
}

CONFIG_ENV_VARS = {
    "instance_url": "SERVICENOW_INSTANCE_URL",
    "token": "SERVICENOW_TOKEN",
    "username": "SERVICENOW_USERNAME",
    "password": "SERVICENOW_PASSWORD",
    "timeout": "SERVICENOW_TIMEOUT",
    "tile_url": "DASHBOARD_TILE_URL",
    "tile_attribution": "DASHBOARD_TILE_ATTRIBUTION",
}

logger = logging.getLogger("incident_map")
_log_handlers = []


def _configure_logging(path):
    """Send log records to ``path`` and stderr, replacing handlers from earlier calls."""

    root = logging.getLogger()
    for handler in _log_handlers:
        root.removeHandler(handler)
        handler.close()
    _log_handlers.clear()

    formatter = logging.Formatter(
        "%(asctime)s %(levelname)s %(name)s %(message)s", datefmt=LOG_TIMESTAMP_FORMAT
    )
    formatter.converter = time.gmtime

    try:
        file_handler = logging.FileHandler(path, encoding="utf-8")
    except OSError:
        file_handler = None

    stream_handler = logging.StreamHandler()
    for handler in (file_handler, stream_handler):
        if handler is None:
            continue
        handler.setFormatter(formatter)
        root.addHandler(handler)
        _log_handlers.append(handler)

    root.setLevel(logging.INFO)


_configure_logging(LOG_FILE)


def load_dashboard_config(path=None):
    path = path or CONFIG_FILE
    data = {}

    if os.path.exists(path):
        try:
            with open(path, "r") as f:
                data = json.load(f)
        except (json.JSONDecodeError, OSError):
            logger.warning("Ignoring unreadable config file %s", path)
            data = {}

    if not isinstance(data, dict):
        data = {}

    config = dict(DEFAULT_CONFIG)
    for key, env_name in CONFIG_ENV_VARS.items():
        file_value = data.get(key)
        if file_value not in (None, ""):
            config[key] = file_value

        env_value = os.getenv(env_name)
        if env_value:
            config[key] = env_value

    try:
        config["timeout"] = float(config["timeout"])
    except (TypeError, ValueError):
        config["timeout"] = servicenow_client.DEFAULT_TIMEOUT

    config["instance_url"] = str(config.get("instance_url") or "").strip().rstrip("/")
    return config


def connection_settings(config, req=None):
    """Build client keyword arguments, preferring a token forwarded by the caller."""

    forwarded_token = (req.headers.get("X-UserToken") or "").strip() if req is not None else ""

    return {
        "base_url": config.get("instance_url") or None,
        "token": forwarded_token or config.get("token") or None,
        "username": config.get("username") or None,
        "password": config.get("password") or None,
        "timeout": config.get("timeout") or None,
    }


def parse_filters(args):
    bounds = incident_data.parse_bounds(args.get("bounds"))

    return {
        "search": (args.get("search") or "").strip(),
        "priority": [value for value in args.getlist("priority") if value],
        "state": [value for value in args.getlist("state") if value],
        "date_from": (args.get("date_from") or "").strip(),
        "date_to": (args.get("date_to") or "").strip(),
        "location": (args.get("location") or "").strip(),
        "map_area": args.get("map_area") == "1" and bounds is not None,
        "bounds": bounds,
    }


def load_snapshot(connection):
    """Fetch the active incidents and the locations they reference."""

    incidents = servicenow_client.list_active_incidents(**connection)
    locations = servicenow_client.list_active_incident_locations(incidents, **connection)
    return incidents, locations


def build_dashboard_view(incidents, locations, filters, base_url=""):
    location_lookup = incident_data.build_location_lookup(locations)
    filtered = incident_data.filter_incidents(incidents, filters, location_lookup)
    groups = incident_data.group_incidents_by_coordinate(filtered, location_lookup)

    if filters.get("map_area") and filters.get("bounds"):
        south, west, north, east = filters["bounds"]
        if west > east:
            # Crosses the antimeridian; Leaflet wants east greater than west.
            east += 360
        viewport = {
            "center": None,
            "zoom": None,
            "bounds": [[south, west], [north, east]],
            "padding": [0, 0],
        }
    else:
        viewport = incident_data.map_viewport(groups)

    sorted_incidents = incident_data.sort_incidents(filtered)

    return {
        "total": len(incidents),
        "visible": len(filtered),
        "filter_options": incident_data.derive_filter_options(incidents),
        "active_filter_count": incident_data.count_active_filters(filters),
        "filtered": sorted_incidents,
        "cards": [
            incident_data.incident_card(incident, location_lookup, base_url)
            for incident in sorted_incidents
        ],
        "markers": incident_data.build_map_markers(groups, base_url),
        "mapped_count": sum(len(group["incidents"]) for group in groups),
        "viewport": viewport,
        "location_options": [
            {
                "sys_id": incident_data.field_value(location.get("sys_id")),
                "name": incident_data.location_display_name(location),
            }
            for location in locations
            if incident_data.field_value(location.get("sys_id"))
        ],
    }


def _fetch_for_request():
    config = load_dashboard_config()
    filters = parse_filters(request.args)
    incidents, locations = load_snapshot(connection_settings(config, request))
    return config, filters, incidents, locations


@app.route("/", methods=["GET"])
def index():
    config = load_dashboard_config()
    filters = parse_filters(request.args)

    try:
        incidents, locations = load_snapshot(connection_settings(config, request))
    except servicenow_client.ServiceNowAPIError as exc:
        logger.error("Error loading data: %s", exc)
        return (
            render_template(
                "index.html",
                error=f"Failed to load active incident data: {exc}",
                config=config,
                filters=filters,
            ),
            502,
        )

    view = build_dashboard_view(incidents, locations, filters, config["instance_url"])

    return render_template(
        "index.html",
        error=None,
        config=config,
        filters=filters,
        view=view,
        priority_label=incident_data.priority_label,
        state_label=incident_data.state_label,
        priority_color=incident_data.priority_color,
        state_color=incident_data.state_color,
    )


@app.route("/api/incidents", methods=["GET"])
def api_incidents():
    try:
        config, filters, incidents, locations = _fetch_for_request()
    except servicenow_client.ServiceNowAPIError as exc:
        return jsonify({"error": str(exc)}), 502

    view = build_dashboard_view(incidents, locations, filters, config["instance_url"])
    return jsonify(
        {
            "total": view["total"],
            "visible": view["visible"],
            "active_filter_count": view["active_filter_count"],
            "incidents": view["filtered"],
        }
    )


@app.route("/api/locations", methods=["GET"])
def api_locations():
    try:
        _config, _filters, _incidents, locations = _fetch_for_request()
    except servicenow_client.ServiceNowAPIError as exc:
        return jsonify({"error": str(exc)}), 502

    return jsonify({"locations": locations})


@app.route("/api/filter-options", methods=["GET"])
def api_filter_options():
    config = load_dashboard_config()
    options = servicenow_client.get_filter_options(**connection_settings(config, request))
    return jsonify(options)


@app.route("/api/map", methods=["GET"])
def api_map():
    try:
        config, filters, incidents, locations = _fetch_for_request()
    except servicenow_client.ServiceNowAPIError as exc:
        return jsonify({"error": str(exc)}), 502

    view = build_dashboard_view(incidents, locations, filters, config["instance_url"])
    return jsonify({"markers": view["markers"], "viewport": view["viewport"]})


@app.route("/markers/<priority>.png", methods=["GET"])
def marker_icon(priority):
    return Response(marker_icons.priority_marker_png(priority), mimetype="image/png")


def read_recent_log_lines(path, now=None):
    now = now or datetime.now(timezone.utc)
    cutoff = now - LOG_WINDOW

    if not os.path.exists(path):
        return []

    with open(path, "r", encoding="utf-8", errors="replace") as handle:
        lines = handle.read().splitlines()

    recent = []
    keep = False
    for line in lines:
        stamp = line.split(" ", 1)[0]
        try:
            logged_at = datetime.strptime(stamp, LOG_TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)
        except ValueError:
            # Continuation lines (tracebacks) follow the record they belong to.
            if keep:
                recent.append(line)
            continue

        keep = logged_at >= cutoff
        if keep:
            recent.append(line)

    return recent


@app.route("/logs", methods=["GET"])
def logs():
    lines = read_recent_log_lines(LOG_FILE)
    return Response("\n".join(lines) + ("\n" if lines else ""), mimetype="text/plain")


if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description="Active Incident Map")
    parser.add_argument(
        "--dump-incidents",
        action="store_true",
        help="Fetch the active incidents and their locations and print them as JSON.",
    )
    parser.add_argument("--host", default="0.0.0.0", help="Host to bind the Flask server")
    parser.add_argument("--port", default=8080, type=int, help="Port for the Flask server")

    args = parser.parse_args()

    if args.dump_incidents:
        snapshot_incidents, snapshot_locations = load_snapshot(
            connection_settings(load_dashboard_config())
        )
        print(
            json.dumps(
                {"incidents": snapshot_incidents, "locations": snapshot_locations},
                indent=2,
            )
        )
    else:
        app.run(host=args.host, port=args.port, debug=False)
