import math
from datetime import datetime, timedelta

import pytest
import requests

from helpers.errors import UpstreamUnavailable
from helpers.moonraker import MoonrakerClient, parse_telemetry

NOW = datetime(2024, 1, 1, 12, 0, 0)


class FakeResponse:
    def __init__(self, payload, status=200):
        self.payload = payload
        self.status_code = status

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code}")

    def json(self):
        return self.payload


class FakeHttp:
    def __init__(self, routes):
        self.routes = routes
        self.requests = []

    def get(self, url, params=None, headers=None, timeout=None):
        self.requests.append((url, params, headers))
        for prefix, reply in self.routes.items():
            if prefix in url:
                if isinstance(reply, Exception):
                    raise reply
                return reply
        return FakeResponse({}, 404)


PRINTING = {
    "extruder": {"temperature": 215.2, "target": 215},
    "heater_bed": {"temperature": 60.1, "target": 60},
    "print_stats": {"state": "printing", "filename": "cube.gcode", "print_duration": 600,
                    "filament_used": 1500.0, "info": {"current_layer": 5, "total_layer": None}},
    "display_status": {"progress": 0.2},
    "virtual_sdcard": {"progress": 0.25},
    "gcode_move": {"speed": 3000, "speed_factor": 1.1, "extrude_factor": 1.0},
    "motion_report": {"live_velocity": 42.0, "live_extruder_velocity": 1.0},
}


def test_parse_full_status():
    t = parse_telemetry(PRINTING, {"layer_count": 50, "slicer": "PrusaSlicer"}, NOW)
    assert t.nozzle == 215.2
    assert t.bed_target == 60.0
    assert t.state == "printing"
    assert t.current_layer == 5
    assert t.total_layers == 50
    assert t.slicer == "PrusaSlicer"
    assert t.progress == pytest.approx(25.0)
    assert t.speed == 42.0
    assert t.speed_factor == pytest.approx(110.0)
    assert t.flow == pytest.approx(math.pi * (1.75 / 2) ** 2)
    assert t.eta == NOW + timedelta(seconds=1800)


def test_progress_falls_back_to_display_status_then_layers():
    status = {"print_stats": {"state": "printing", "info": {"current_layer": 3, "total_layer": 12}},
              "virtual_sdcard": {"progress": 0.0}, "display_status": {"progress": 0.5}}
    assert parse_telemetry(status, now=NOW).progress == pytest.approx(50.0)
    del status["display_status"]
    assert parse_telemetry(status, now=NOW).progress == pytest.approx(25.0)


def test_missing_subtrees_yield_unknowns():
    t = parse_telemetry({}, now=NOW)
    assert math.isnan(t.nozzle) and math.isnan(t.bed)
    assert t.state is None
    assert t.progress is None
    assert t.speed is None
    assert t.eta is None


def test_idle_printer_reports_no_motion():
    status = {"print_stats": {"state": "standby"}, "motion_report": {"live_velocity": 80}}
    t = parse_telemetry(status, now=NOW)
    assert t.speed is None
    assert t.flow is None


def test_client_queries_status_and_caches_metadata():
    http = FakeHttp({
        "/printer/objects/query": FakeResponse({"result": {"status": PRINTING}}),
        "/server/files/metadata": FakeResponse({"result": {"layer_count": 50}}),
    })
    client = MoonrakerClient("http://printer:7125/", api_key="k", http=http)
    assert client.configured
    assert client.telemetry(NOW).total_layers == 50
    assert client.telemetry(NOW).total_layers == 50
    metadata_calls = [r for r in http.requests if "/server/files/metadata" in r[0]]
    assert len(metadata_calls) == 1
    assert metadata_calls[0][1] == {"filename": "cube.gcode"}
    assert http.requests[0][2] == {"X-Api-Key": "k"}
    assert http.requests[0][0].startswith("http://printer:7125/printer/objects/query")


def test_custom_auth_header_wins():
    http = FakeHttp({"/printer": FakeResponse({"result": {"status": {}}})})
    client = MoonrakerClient("http://printer", api_key="k", auth_header="Authorization: Bearer t", http=http)
    client.query_status()
    assert http.requests[0][2] == {"Authorization": "Bearer t"}


def test_unreachable_printer_raises_upstream_unavailable():
    http = FakeHttp({"/printer": requests.ConnectionError("refused")})
    client = MoonrakerClient("http://printer", http=http)
    with pytest.raises(UpstreamUnavailable):
        client.telemetry()
    with pytest.raises(UpstreamUnavailable):
        MoonrakerClient("").query_status()
    assert not MoonrakerClient("").configured
