"""
Tests for the Flask routes.

The app is built with an injected engine wired to the fake package API, so
every endpoint runs end to end without a server or data directory.
"""

import pytest

from app import create_app


CODE = "PKG-AB12-20240101"
RIDER = {"id": "u-rider", "name": "Rita Rider", "role": "rider"}
RIDER_HEADERS = {"X-Operator-Id": "u-rider", "X-Operator-Role": "rider"}


@pytest.fixture
def app(engine):
    app = create_app(engine=engine, config_object="config.TestingConfig")
    yield app
    engine.stop()


@pytest.fixture
def client(app):
    return app.test_client()


def queue_offline_collect(client, fake_api, connectivity):
    fake_api.add_package(CODE, "submitted")
    client.get(f"/api/packages/{CODE}", headers=RIDER_HEADERS)
    connectivity.set_online(False)
    response = client.post("/api/scan", json={"package_code": CODE, "action_type": "collect", "operator": RIDER})
    return response.get_json()["token"]


class TestHealth:

    def test_health_ok(self, client):
        response = client.get("/health")
        body = response.get_json()

        assert response.status_code == 200
        assert body["status"] == "ok"
        assert body["queue"]["pending_actions"] == 0

    def test_health_after_stop(self, client, engine):
        engine.stop()
        response = client.get("/health")
        assert response.status_code == 503

    def test_unknown_route_is_json(self, client):
        response = client.get("/nope")
        assert response.status_code == 404
        assert response.get_json()["success"] is False


class TestPackageDetails:

    def test_found(self, client, fake_api):
        fake_api.add_package(CODE, "in_transit")

        response = client.get(f"/api/packages/{CODE}", headers=RIDER_HEADERS)
        body = response.get_json()

        assert response.status_code == 200
        assert body["package"]["state"] == "in_transit"
        assert body["offline"] is False
        assert "deliver" in [a["action"] for a in body["available_actions"]]

    def test_offline_uses_cache(self, client, fake_api, connectivity):
        fake_api.add_package(CODE, "in_transit")
        client.get(f"/api/packages/{CODE}", headers=RIDER_HEADERS)
        connectivity.set_online(False)

        body = client.get(f"/api/packages/{CODE}", headers=RIDER_HEADERS).get_json()

        assert body["offline"] is True
        assert body["cached_at"] is not None

    def test_errors(self, client, connectivity):
        assert client.get("/api/packages/garbage", headers=RIDER_HEADERS).status_code == 400
        assert client.get(f"/api/packages/{CODE}", headers=RIDER_HEADERS).status_code == 404
        connectivity.set_online(False)
        assert client.get(f"/api/packages/{CODE}", headers=RIDER_HEADERS).status_code == 503

    def test_operator_required(self, client):
        assert client.get(f"/api/packages/{CODE}").status_code == 400


class TestScan:

    def test_applied(self, client, fake_api):
        fake_api.add_package(CODE, "submitted")

        response = client.post("/api/scan", json={"package_code": CODE, "action_type": "collect", "operator": RIDER})
        body = response.get_json()

        assert response.status_code == 200
        assert body["status"] == "applied"
        assert body["new_state"] == "in_transit"

    def test_queued(self, client, fake_api, connectivity):
        token = queue_offline_collect(client, fake_api, connectivity)

        pending = client.get("/api/pending").get_json()
        assert pending["count"] == 1
        assert pending["actions"][0]["token"] == token

    def test_queued_status_code(self, client, fake_api, connectivity):
        fake_api.add_package(CODE, "submitted")
        client.get(f"/api/packages/{CODE}", headers=RIDER_HEADERS)
        connectivity.set_online(False)

        response = client.post("/api/scan", json={"package_code": CODE, "action_type": "collect", "operator": RIDER})

        assert response.status_code == 202
        assert response.get_json()["offline"] is True

    def test_rejected(self, client, fake_api):
        fake_api.add_package(CODE, "in_transit")

        response = client.post(
            "/api/scan", json={"package_code": CODE, "action_type": "collect_from_sender", "operator": RIDER}
        )

        assert response.status_code == 409
        assert response.get_json()["status"] == "rejected"
        assert fake_api.submitted == []

    def test_server_rejection(self, client, fake_api):
        fake_api.add_package(CODE, "submitted")
        fake_api.reject(CODE, "Package already collected by another rider")

        response = client.post("/api/scan", json={"package_code": CODE, "action_type": "collect", "operator": RIDER})
        body = response.get_json()

        assert response.status_code == 422
        assert body["message"] == "Package already collected by another rider"

    def test_not_found(self, client):
        response = client.post("/api/scan", json={"package_code": CODE, "action_type": "collect", "operator": RIDER})
        assert response.status_code == 404

    def test_missing_fields(self, client):
        response = client.post("/api/scan", json={"operator": RIDER})
        assert response.status_code == 400

    def test_operator_from_headers(self, client, fake_api):
        fake_api.add_package(CODE, "submitted")

        response = client.post(
            "/api/scan", json={"package_code": CODE, "action_type": "collect"}, headers=RIDER_HEADERS
        )

        assert response.status_code == 200
        assert fake_api.submitted[0]["operator"]["id"] == "u-rider"


class TestBulkScan:

    def test_partial_failure(self, client, fake_api):
        for code in ("PKG-A-20240101", "PKG-B-20240101", "PKG-C-20240101"):
            fake_api.add_package(code, "in_transit")
        fake_api.packages["PKG-B-20240101"]["state"] = "delivered"

        response = client.post("/api/bulk_scan", json={
            "package_codes": ["PKG-A-20240101", "PKG-B-20240101", "PKG-C-20240101"],
            "action_type": "deliver",
            "operator": RIDER,
        })
        body = response.get_json()

        assert response.status_code == 200
        assert body["success"] is False
        assert body["summary"] == {"total": 3, "successful": 2, "failed": 1, "queued": 0}

    def test_client_role_forbidden(self, client):
        response = client.post("/api/bulk_scan", json={
            "package_codes": [CODE],
            "action_type": "confirm_receipt",
            "operator": {"id": "u-client", "role": "client"},
        })
        assert response.status_code == 403

    def test_rider_bulk_process_refused_per_code(self, client, fake_api):
        fake_api.add_package(CODE, "in_transit")

        response = client.post("/api/bulk_scan", json={
            "package_codes": [CODE],
            "action_type": "process",
            "operator": RIDER,
        })
        body = response.get_json()

        assert response.status_code == 200
        assert body["summary"]["failed"] == 1
        assert fake_api.bulk_requests == []

    def test_requires_codes(self, client):
        response = client.post("/api/bulk_scan", json={"package_codes": [], "action_type": "deliver", "operator": RIDER})
        assert response.status_code == 400


class TestPermissions:

    def test_rider(self, client):
        body = client.get("/api/permissions", headers=RIDER_HEADERS).get_json()

        assert body["role"] == "rider"
        assert body["can_bulk_scan"] is True
        assert "deliver" in body["available_actions"]

    def test_client(self, client):
        body = client.get("/api/permissions", headers={"X-Operator-Id": "c", "X-Operator-Role": "client"}).get_json()

        assert body["can_scan_packages"] is False
        assert body["available_actions"] == ["confirm_receipt"]


class TestSyncAndQueue:

    def test_force_sync(self, client, fake_api):
        fake_api.add_package(CODE, "submitted")
        client.get(f"/api/packages/{CODE}", headers=RIDER_HEADERS)
        # Outage without a reported connectivity change, so nothing syncs in the background
        fake_api.fail_network = True
        queued = client.post("/api/scan", json={"package_code": CODE, "action_type": "collect", "operator": RIDER})
        assert queued.status_code == 202
        fake_api.fail_network = False

        response = client.post("/api/sync")
        body = response.get_json()

        assert response.status_code == 200
        assert body["success"] is True
        assert body["synced"] == 1
        assert body["remaining"] == 0
        assert fake_api.state_of(CODE) == "in_transit"

    def test_force_sync_offline(self, client, connectivity):
        connectivity.set_online(False)
        body = client.post("/api/sync").get_json()

        assert body["success"] is False
        assert body["abort_reason"] == "Device is offline"

    def test_sync_status(self, client):
        body = client.get("/api/sync_status").get_json()
        assert body["pending_actions"] == 0
        assert body["is_online"] is True

    def test_retry_and_discard(self, client, fake_api, connectivity, engine):
        token = queue_offline_collect(client, fake_api, connectivity)
        engine.queue.mark_needs_attention(token, "Rejected")

        response = client.post(f"/api/pending/{token}/retry")
        assert response.status_code == 200
        assert response.get_json()["action"]["needs_attention"] is False

        assert client.delete(f"/api/pending/{token}").status_code == 200
        assert client.delete(f"/api/pending/{token}").status_code == 404
        assert client.post(f"/api/pending/{token}/retry").status_code == 404

    def test_clear_cache(self, client, fake_api):
        fake_api.add_package(CODE, "submitted")
        client.get(f"/api/packages/{CODE}", headers=RIDER_HEADERS)

        body = client.post("/api/cache/clear").get_json()

        assert body["removed"] == 1


class TestConnectivity:

    def test_report_offline(self, client, connectivity):
        response = client.post("/api/connectivity", json={"online": False})

        assert response.status_code == 200
        assert response.get_json()["changed"] is True
        assert connectivity.is_online is False

    def test_requires_boolean(self, client):
        assert client.post("/api/connectivity", json={"online": "yes"}).status_code == 400

    def test_reconnect_triggers_sync(self, client, fake_api, connectivity, engine):
        queue_offline_collect(client, fake_api, connectivity)

        client.post("/api/connectivity", json={"online": True})

        assert engine.sync_engine.wait_idle(timeout=5.0)
        assert engine.queue.size == 0
