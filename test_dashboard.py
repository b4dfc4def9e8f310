import json
import os
import tempfile
import unittest
from datetime import datetime, timedelta, timezone
from io import BytesIO
from unittest import mock

from PIL import Image
from flask import request

import app
import marker_icons
from servicenow_client import ServiceNowAPIError

INCIDENTS = [
    {
        "sys_id": {"value": "id1", "display_value": "id1"},
        "number": {"value": "INC0010001", "display_value": "INC0010001"},
        "short_description": {"value": "Email outage", "display_value": "Email outage"},
        "priority": {"value": "2", "display_value": "2 - High"},
        "state": {"value": "1", "display_value": "New"},
        "location": {"value": "loc1", "display_value": "Headquarters"},
        "opened_at": {"value": "2024-04-01 10:00:00", "display_value": "2024-04-01 06:00:00"},
        "assigned_to": {"value": "", "display_value": ""},
        "caller_id": {"value": "u1", "display_value": "Abel Tuter"},
    },
    {
        "sys_id": "id2",
        "number": "INC0010002",
        "short_description": "VPN <down>",
        "priority": "1",
        "state": "2",
        "location": "loc2",
        "opened_at": "2024-04-02 11:00:00",
        "assigned_to": "Beth Anglin",
        "caller_id": "",
    },
]

LOCATIONS = [
    {
        "sys_id": {"value": "loc1", "display_value": "loc1"},
        "name": {"value": "Headquarters", "display_value": "Headquarters"},
        "city": {"value": "Chicago", "display_value": "Chicago"},
        "state": {"value": "IL", "display_value": "IL"},
        "latitude": {"value": "41.8781", "display_value": "41.8781"},
        "longitude": {"value": "-87.6298", "display_value": "-87.6298"},
    },
    {
        "sys_id": "loc2",
        "name": "Remote Site",
        "city": "",
        "state": "",
        "latitude": "",
        "longitude": "",
    },
]


class DashboardTestCase(unittest.TestCase):
    def setUp(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.original_config_file = app.CONFIG_FILE
        self.original_log_file = app.LOG_FILE

        app.CONFIG_FILE = os.path.join(self.temp_dir.name, "dashboard_config.json")
        app.LOG_FILE = os.path.join(self.temp_dir.name, "app.log")
        app._configure_logging(app.LOG_FILE)

        env_patcher = mock.patch.dict(os.environ, {}, clear=True)
        env_patcher.start()
        self.addCleanup(env_patcher.stop)

        self.client = app.app.test_client()

    def tearDown(self):
        app.CONFIG_FILE = self.original_config_file
        app.LOG_FILE = self.original_log_file
        app._configure_logging(app.LOG_FILE)
        self.temp_dir.cleanup()

    def patch_snapshot(self, incidents=INCIDENTS, locations=LOCATIONS):
        list_incidents = mock.patch(
            "app.servicenow_client.list_active_incidents", return_value=list(incidents)
        )
        list_locations = mock.patch(
            "app.servicenow_client.list_active_incident_locations", return_value=list(locations)
        )
        mocks = (list_incidents.start(), list_locations.start())
        self.addCleanup(list_incidents.stop)
        self.addCleanup(list_locations.stop)
        return mocks


class ConfigTests(DashboardTestCase):
    def test_defaults_without_file(self):
        config = app.load_dashboard_config()

        self.assertEqual(config["instance_url"], "")
        self.assertEqual(config["timeout"], 30.0)
        self.assertIn("cartocdn", config["tile_url"])

    def test_file_values_and_environment_override(self):
        with open(app.CONFIG_FILE, "w") as f:
            json.dump(
                {"instance_url": "https://file.service-now.com/", "token": "t1", "timeout": "12"},
                f,
            )

        config = app.load_dashboard_config()
        self.assertEqual(config["instance_url"], "https://file.service-now.com")
        self.assertEqual(config["token"], "t1")
        self.assertEqual(config["timeout"], 12.0)

        with mock.patch.dict(os.environ, {"SERVICENOW_TOKEN": "env-token"}):
            config = app.load_dashboard_config()
        self.assertEqual(config["token"], "env-token")

    def test_invalid_file_is_ignored(self):
        with open(app.CONFIG_FILE, "w") as f:
            f.write("{not json")

        config = app.load_dashboard_config()
        self.assertEqual(config["token"], "")

    def test_forwarded_token_wins(self):
        config = dict(app.DEFAULT_CONFIG, token="configured", instance_url="https://x")
        with app.app.test_request_context("/", headers={"X-UserToken": "forwarded"}):
            settings = app.connection_settings(config, request)

        self.assertEqual(settings["token"], "forwarded")
        self.assertEqual(settings["base_url"], "https://x")
        self.assertEqual(app.connection_settings(config)["token"], "configured")


class IndexPageTests(DashboardTestCase):
    def test_renders_map_list_and_facets(self):
        self.patch_snapshot()

        response = self.client.get("/")

        self.assertEqual(response.status_code, 200)
        body = response.get_data(as_text=True)
        self.assertIn("Active Incident Map", body)
        self.assertIn("Showing 2 of 2 active incidents", body)
        self.assertIn("INC0010001", body)
        self.assertIn("Headquarters (Chicago, IL)", body)
        self.assertIn("Unassigned", body)
        self.assertIn("VPN &lt;down&gt;", body)
        self.assertIn('name="priority" value="1"', body)
        self.assertIn("leaflet.markercluster", body)
        self.assertNotIn("Clear All", body)

    def test_list_is_sorted_by_priority(self):
        self.patch_snapshot()

        body = self.client.get("/").get_data(as_text=True)

        self.assertLess(body.index("INC0010002"), body.index("INC0010001"))

    def test_filters_from_query_string(self):
        self.patch_snapshot()

        response = self.client.get("/?priority=2&search=email")

        body = response.get_data(as_text=True)
        self.assertIn("Showing 1 of 2 active incidents", body)
        self.assertIn("Clear All (2)", body)
        self.assertNotIn("INC0010002", body.split('class="list-container"')[1])

    def test_map_area_filter(self):
        self.patch_snapshot()

        response = self.client.get("/?map_area=1&bounds=40,-90,43,-85")

        body = response.get_data(as_text=True)
        self.assertIn("Showing 1 of 2 active incidents", body)
        self.assertIn("In map view", body)

    def test_map_area_across_antimeridian(self):
        incidents = [dict(INCIDENTS[0], location={"value": "fiji", "display_value": "Suva"})]
        locations = [
            {"sys_id": "fiji", "name": "Suva", "latitude": "-18.1416", "longitude": "-170.0"}
        ]
        self.patch_snapshot(incidents, locations)

        response = self.client.get("/api/map?map_area=1&bounds=-30,100,10,190")

        payload = response.get_json()
        self.assertEqual(len(payload["markers"]), 1)
        self.assertEqual(payload["viewport"]["bounds"], [[-30.0, 100.0], [10.0, 190.0]])

    def test_error_state_offers_retry(self):
        with mock.patch(
            "app.servicenow_client.list_active_incidents",
            side_effect=ServiceNowAPIError("HTTP 401: Unauthorized"),
        ):
            response = self.client.get("/")

        self.assertEqual(response.status_code, 502)
        body = response.get_data(as_text=True)
        self.assertIn("Unable to load incidents", body)
        self.assertIn("Failed to load active incident data: HTTP 401: Unauthorized", body)
        self.assertIn("Try Again", body)

    def test_fetch_forwards_connection_settings(self):
        list_incidents, list_locations = self.patch_snapshot()

        with mock.patch.dict(os.environ, {"SERVICENOW_INSTANCE_URL": "https://dev.service-now.com"}):
            self.client.get("/", headers={"X-UserToken": "session-token"})

        kwargs = list_incidents.call_args.kwargs
        self.assertEqual(kwargs["base_url"], "https://dev.service-now.com")
        self.assertEqual(kwargs["token"], "session-token")
        self.assertEqual(list_locations.call_args.args[0], INCIDENTS)


class ApiTests(DashboardTestCase):
    def test_incidents_endpoint(self):
        self.patch_snapshot()

        response = self.client.get("/api/incidents?state=2")

        self.assertEqual(response.status_code, 200)
        payload = response.get_json()
        self.assertEqual(payload["total"], 2)
        self.assertEqual(payload["visible"], 1)
        self.assertEqual(payload["incidents"][0]["number"], "INC0010002")

    def test_locations_endpoint(self):
        self.patch_snapshot()

        payload = self.client.get("/api/locations").get_json()

        self.assertEqual(len(payload["locations"]), 2)

    def test_map_endpoint_skips_unmapped_locations(self):
        self.patch_snapshot()

        payload = self.client.get("/api/map").get_json()

        self.assertEqual(len(payload["markers"]), 1)
        marker = payload["markers"][0]
        self.assertEqual(marker["position"], [41.8781, -87.6298])
        self.assertEqual(marker["color"], "#f57c00")
        self.assertEqual(payload["viewport"]["zoom"], 12)

    def test_filter_options_endpoint(self):
        with mock.patch(
            "app.servicenow_client.get_filter_options",
            return_value={"priorities": ["1"], "states": ["2"]},
        ):
            payload = self.client.get("/api/filter-options").get_json()

        self.assertEqual(payload, {"priorities": ["1"], "states": ["2"]})

    def test_api_errors_return_bad_gateway(self):
        with mock.patch(
            "app.servicenow_client.list_active_incidents",
            side_effect=ServiceNowAPIError("timeout"),
        ):
            response = self.client.get("/api/incidents")

        self.assertEqual(response.status_code, 502)
        self.assertEqual(response.get_json(), {"error": "timeout"})


class MarkerIconTests(DashboardTestCase):
    def test_marker_endpoint_returns_png(self):
        response = self.client.get("/markers/1.png")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.mimetype, "image/png")
        img = Image.open(BytesIO(response.data))
        self.assertEqual(img.size, (24, 24))

    def test_icon_center_uses_priority_color(self):
        img = Image.open(BytesIO(marker_icons.render_marker_icon("#d32f2f", size=32)))
        red, green, blue, _alpha = img.convert("RGBA").getpixel((16, 16))

        self.assertGreater(red, 180)
        self.assertLess(green, 90)
        self.assertLess(blue, 90)

    def test_unknown_color_falls_back(self):
        data = marker_icons.render_marker_icon("not-a-color")
        self.assertEqual(Image.open(BytesIO(data)).format, "PNG")


class LogsEndpointTests(DashboardTestCase):
    def test_logs_endpoint_returns_recent_entries(self):
        old_line = datetime.now(timezone.utc) - timedelta(hours=25)
        recent_line = datetime.now(timezone.utc)

        with open(app.LOG_FILE, "w", encoding="utf-8") as handle:
            handle.write(old_line.strftime("%Y-%m-%dT%H:%M:%SZ old entry") + "\n")
            handle.write("Traceback for old entry\n")
            handle.write(recent_line.strftime("%Y-%m-%dT%H:%M:%SZ new entry") + "\n")

        response = self.client.get("/logs")

        self.assertEqual(response.status_code, 200)
        body = response.get_data(as_text=True)
        self.assertIn("new entry", body)
        self.assertNotIn("old entry", body)

    def test_fetch_errors_are_logged(self):
        with mock.patch(
            "app.servicenow_client.list_active_incidents",
            side_effect=ServiceNowAPIError("HTTP 500: Internal Server Error"),
        ):
            self.client.get("/")

        body = self.client.get("/logs").get_data(as_text=True)
        self.assertIn("Error loading data: HTTP 500", body)


if __name__ == "__main__":
    unittest.main()
