"""
tests/api/test_source_routes.py

API tests for the /sources endpoints.

Coverage
--------
  - GET  /sources without key → 401
  - GET  /sources → registered adapters with capabilities and performance
  - POST /sources/health → per-source results and healthy/unhealthy counts;
    subsequent GET reflects the recorded health
  - GET  /sources → health published by the worker in Redis is shown when newer
"""
from __future__ import annotations

import json


class TestListSources:
    def test_requires_key(self, client):
        assert client.get("/sources").status_code == 401

    def test_lists_registered_adapters(self, client, auth_headers):
        resp = client.get("/sources", headers=auth_headers)

        assert resp.status_code == 200
        data = resp.json()
        assert data["total"] == 2
        by_type = {item["type"]: item for item in data["items"]}
        assert set(by_type) == {"RING_BUFFER", "AGGREGATE_STORE"}
        ring = by_type["RING_BUFFER"]
        assert ring["capabilities"] == ["FILTERING", "TIME_RANGE"]
        assert ring["health_status"] == "unknown"
        assert ring["last_health_check"] is None
        assert 0.0 <= ring["performance"]["reliability"] <= 1.0


class TestHealthProbe:
    def test_probe_all(self, client, auth_headers):
        resp = client.post("/sources/health", headers=auth_headers)

        assert resp.status_code == 200
        data = resp.json()
        assert data["results"] == {"RING_BUFFER": True, "AGGREGATE_STORE": False}
        assert data["healthy"] == 1
        assert data["unhealthy"] == 1

        listed = client.get("/sources", headers=auth_headers).json()
        status = {item["type"]: item["health_status"] for item in listed["items"]}
        assert status == {"RING_BUFFER": "healthy", "AGGREGATE_STORE": "unhealthy"}


class TestPublishedHealth:
    def test_worker_reading_shown_when_newer(self, client, auth_headers, redis):
        redis.data["source:health:AGGREGATE_STORE"] = json.dumps(
            {"healthy": False, "checked_at": "2024-01-01T00:00:00+00:00"}
        )

        listed = client.get("/sources", headers=auth_headers).json()

        by_type = {item["type"]: item for item in listed["items"]}
        assert by_type["AGGREGATE_STORE"]["health_status"] == "unhealthy"
        assert by_type["AGGREGATE_STORE"]["last_health_check"].startswith("2024-01-01")
        assert by_type["RING_BUFFER"]["health_status"] == "unknown"
