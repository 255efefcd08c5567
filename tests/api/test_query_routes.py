"""
tests/api/test_query_routes.py

API tests for the /query endpoints and the service health check.

Coverage
--------
  - GET  /health → 200 with app/version and redis flag; X-Request-ID echoed or generated
  - POST /query without / with a wrong X-API-Key → 401
  - POST /query happy path → 200, plan summary, execution id, result
  - POST /query twice → second response cached with identical result
  - POST /query invalid body → 400 structured InvalidRequest
  - POST /query cost over max_cost → 400 InvalidRequest from the compiler
  - POST /query cyclic custom plan → 400 CyclicPlan
  - POST /query unregistered source → 400; all sources filtered → 503 with execution id
  - GET  /query/executions/{id} → 200 record with node trail, 404 when absent
"""
from __future__ import annotations

from datetime import datetime, timezone
from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

from sellerlens.storage import execution_store

_BODY = {
    "sellerId": "seller-1",
    "queryType": "ANOMALY",
    "window": {"start": 1_700_000_000_000, "end": 1_700_086_400_000},
    "operators": ["FIR", "FFT"],
    "output": ["JSON"],
}


def _body(**overrides):
    return {**_BODY, **overrides}


class TestHealth:
    def test_health(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "healthy"
        assert data["app"] == "SellerLens"
        assert data["redis"] is False

    def test_request_id_echoed(self, client):
        resp = client.get("/health", headers={"X-Request-ID": "req-42"})
        assert resp.headers["X-Request-ID"] == "req-42"

    def test_request_id_generated(self, client):
        assert len(client.get("/health").headers["X-Request-ID"]) == 32


class TestAuth:
    def test_missing_key(self, client):
        resp = client.post("/query", json=_BODY)
        assert resp.status_code == 401

    def test_wrong_key(self, client):
        resp = client.post("/query", json=_BODY, headers={"X-API-Key": "nope"})
        assert resp.status_code == 401


class TestPostQuery:
    def test_happy_path(self, client, auth_headers, store):
        resp = client.post("/query", json=_BODY, headers=auth_headers)

        assert resp.status_code == 200
        data = resp.json()
        assert data["cached"] is False
        assert data["plan"]["nodes"] == 5
        assert len(data["plan"]["reproducibility_hash"]) == 64
        assert data["execution_id"] == store.executions[0].id
        assert data["result"]["score_type"] == "ANOMALY"
        assert len(store.nodes) == 5

    def test_second_call_served_from_cache(self, client, auth_headers, store, redis):
        first = client.post("/query", json=_BODY, headers=auth_headers).json()
        second = client.post("/query", json=_BODY, headers=auth_headers).json()

        assert second["cached"] is True
        assert second["result"] == first["result"]
        assert second["fingerprint"] == first["fingerprint"]
        assert len(store.executions) == 1
        assert f"query:result:{first['fingerprint']}" in redis.data

    def test_validation_error_is_structured(self, client, auth_headers):
        resp = client.post("/query", json=_body(window={"start": 10, "end": 5}), headers=auth_headers)
        assert resp.status_code == 400
        data = resp.json()
        assert data["error"] == "InvalidRequest"
        assert data["execution_id"] is None
        assert "window" in data["detail"]

    def test_missing_field(self, client, auth_headers):
        body = {k: v for k, v in _BODY.items() if k != "sellerId"}
        resp = client.post("/query", json=body, headers=auth_headers)
        assert resp.status_code == 400
        assert resp.json()["error"] == "InvalidRequest"

    def test_blank_seller(self, client, auth_headers, store):
        resp = client.post("/query", json=_body(sellerId="   "), headers=auth_headers)
        assert resp.status_code == 400
        assert "blank" in resp.json()["detail"]
        assert store.executions == []

    def test_cost_over_budget(self, client, auth_headers, store):
        resp = client.post("/query", json=_body(constraints={"maxCost": 1.0}), headers=auth_headers)
        assert resp.status_code == 400
        assert "max_cost" in resp.json()["detail"]
        assert store.executions == []

    def test_cyclic_plan(self, client, auth_headers):
        plan = {
            "nodes": [
                {"id": "a", "type": "OUTPUT", "dependencies": ["b"]},
                {"id": "b", "type": "OUTPUT", "dependencies": ["a"]},
            ]
        }
        resp = client.post("/query", json=_body(customPlan=plan), headers=auth_headers)
        assert resp.status_code == 400
        assert resp.json()["error"] == "CyclicPlan"

    def test_source_errors(self, client, auth_headers, store):
        plan = {
            "nodes": [
                {
                    "id": "agg",
                    "type": "SOURCE",
                    "config": {
                        "sourceType": "AGGREGATE_STORE",
                        "sellerId": "seller-1",
                        "timeWindow": {"start": 0, "end": 10},
                        "federatedSources": ["CACHED_METRICS"],
                        "requiredCapabilities": ["AGGREGATION"],
                    },
                },
            ]
        }
        resp = client.post("/query", json=_body(customPlan=plan), headers=auth_headers)
        assert resp.status_code == 400
        assert resp.json()["error"] == "UnknownDataSource"

        plan["nodes"][0]["config"]["federatedSources"] = ["RING_BUFFER"]
        resp = client.post("/query", json=_body(customPlan=plan), headers=auth_headers)
        assert resp.status_code == 503
        data = resp.json()
        assert data["error"] == "AllSourcesFailed"
        assert data["execution_id"] == store.executions[-1].id


class TestGetExecution:
    def test_found(self, client, auth_headers):
        now = datetime(2024, 1, 1, tzinfo=timezone.utc)
        node = SimpleNamespace(
            node_id="source-0", node_type="SOURCE", status="COMPLETED", latency_ms=1.5,
            output_data=[{"value": 1}], error=None, started_at=now, completed_at=now,
        )
        row = SimpleNamespace(
            id="exec-1", seller_id="seller-1", query_type="ANOMALY", status="COMPLETED",
            reproducibility_hash="h" * 64, config_version="1.0.0", submitted_at=now,
            started_at=now, completed_at=now, nodes_executed=1, total_latency_ms=2.0,
            data_points_processed=1, result_data={"score": 0.1}, error=None, error_kind=None,
            nodes=[node],
        )
        with patch.object(execution_store, "get_execution", AsyncMock(return_value=row)):
            resp = client.get("/query/executions/exec-1", headers=auth_headers)

        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "COMPLETED"
        assert data["nodes"][0]["node_id"] == "source-0"
        assert data["result"] == {"score": 0.1}

    def test_not_found(self, client, auth_headers):
        with patch.object(execution_store, "get_execution", AsyncMock(return_value=None)):
            resp = client.get("/query/executions/missing", headers=auth_headers)
        assert resp.status_code == 404
