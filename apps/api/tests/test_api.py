"""
HTTP surface: routing, request validation, error rendering and the admin guard.
"""

import json
from datetime import timedelta

import pytest
from fastapi.testclient import TestClient
from sse_starlette.sse import EventSourceResponse

from aurora_sync.dependencies import get_services
from aurora_sync.main import app
from aurora_sync.routers.terminals import stream_events
from conftest import MACHINE_A, MACHINE_B

ADMIN = {"X-Admin-Token": "test-admin-token"}


@pytest.fixture
def client(services):
    app.dependency_overrides[get_services] = lambda: services
    # Lifespan (Redis) is not entered without the context manager
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def license_key(checkout):
    return checkout().license.license_key


class TestHealth:
    def test_healthz(self, client):
        response = client.get("/healthz")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    def test_metrics_exposed(self, client):
        response = client.get("/metrics")
        assert response.status_code == 200
        assert "license_transitions_total" in response.text


class TestTerminalEndpoints:
    def test_activate_heartbeat_disconnect(self, client, license_key):
        response = client.post(
            "/api/v1/terminals/activate",
            json={"license_key": license_key, "machine_id_hash": MACHINE_A, "terminal_name": "Till 1"},
        )
        assert response.status_code == 200
        body = response.json()
        assert body["is_new"] is True
        assert body["is_primary"] is True
        assert body["connected_terminals"] == 1
        assert body["session"]["terminal_name"] == "Till 1"

        payload = {"license_key": license_key, "machine_id_hash": MACHINE_A}
        assert client.post("/api/v1/terminals/heartbeat", json=payload).json()["connection_status"] == "connected"
        assert client.post("/api/v1/terminals/disconnect", json=payload).json()["connection_status"] == "disconnected"

        listed = client.get(f"/api/v1/terminals/{license_key}").json()
        assert [s["machine_id_hash"] for s in listed] == [MACHINE_A]
        assert client.get(f"/api/v1/terminals/{license_key}", params={"status": "connected"}).json() == []

    def test_unknown_license(self, client):
        response = client.post(
            "/api/v1/terminals/activate",
            json={"license_key": "AUR-PRO-V2-NOPE0000-00000000", "machine_id_hash": MACHINE_A},
        )
        assert response.status_code == 404
        assert response.json()["error_code"] == "LICENSE_NOT_FOUND"

    def test_heartbeat_without_session(self, client, license_key):
        response = client.post(
            "/api/v1/terminals/heartbeat",
            json={"license_key": license_key, "machine_id_hash": MACHINE_B},
        )
        assert response.status_code == 404
        assert response.json()["error_code"] == "SESSION_NOT_FOUND"

    def test_request_validation(self, client, license_key):
        response = client.post(
            "/api/v1/terminals/activate",
            json={"license_key": license_key, "machine_id_hash": "short"},
        )
        assert response.status_code == 422

    def test_stream_accepts_naive_since(self, clock, services, checkout, connect):
        result = checkout()
        key = result.license.license_key
        connect(key, MACHINE_A)
        connect(key, MACHINE_B)

        naive_since = (clock.now - timedelta(hours=1)).replace(tzinfo=None)
        response = stream_events(
            request=None,
            license_key=key,
            machine_id_hash=MACHINE_A,
            since=naive_since,
            services=services,
            client=None,
        )

        assert isinstance(response, EventSourceResponse)


class TestTerminalBroadcastEndpoint:
    def test_requires_admin_token(self, client, license_key):
        response = client.post(
            "/api/v1/terminals/broadcast",
            json={"action": "deactivate", "license_key": license_key},
        )
        assert response.status_code == 401

    def test_broadcast_pushes_to_connected_terminals(self, client, channel, license_key, connect):
        connect(license_key, MACHINE_A)
        connect(license_key, MACHINE_B)

        response = client.post(
            "/api/v1/terminals/broadcast",
            headers=ADMIN,
            json={
                "action": "broadcast",
                "license_key": license_key,
                "event_type": "primary_changed",
                "source_machine_id_hash": MACHINE_A,
                "payload": {
                    "previous_primary": MACHINE_A,
                    "new_primary": MACHINE_B,
                    "reason": "manual",
                    "changed_at": "2026-03-02T09:00:00Z",
                },
            },
        )

        assert response.status_code == 200
        body = response.json()
        assert body["machine_id_hashes"] == [MACHINE_B]
        assert body["event_id"].startswith("evt_")
        assert "primary_changed" in [e["event_type"] for e in channel.pushed_to(MACHINE_B)]

    def test_broadcast_needs_event_type(self, client, license_key):
        response = client.post(
            "/api/v1/terminals/broadcast",
            headers=ADMIN,
            json={"action": "broadcast", "license_key": license_key, "payload": {}},
        )
        assert response.status_code == 422

    def test_broadcast_rejects_mismatched_payload(self, client, license_key, connect):
        connect(license_key, MACHINE_A)
        response = client.post(
            "/api/v1/terminals/broadcast",
            headers=ADMIN,
            json={"action": "broadcast", "license_key": license_key, "event_type": "primary_changed", "payload": {}},
        )
        assert response.status_code == 422
        assert response.json()["error_code"] == "INVALID_EVENT_PAYLOAD"

    def test_deactivate_all_terminals(self, client, channel, license_key, connect):
        connect(license_key, MACHINE_A)
        connect(license_key, MACHINE_B)

        response = client.post(
            "/api/v1/terminals/broadcast",
            headers=ADMIN,
            json={"action": "deactivate", "license_key": license_key, "reason": "store_closed"},
        )

        assert response.status_code == 200
        assert response.json()["machine_id_hashes"] == [MACHINE_A, MACHINE_B]
        listed = client.get(f"/api/v1/terminals/{license_key}").json()
        assert {s["connection_status"] for s in listed} == {"deactivated"}
        assert "deactivation_broadcast" in [e["event_type"] for e in channel.pushed_to(MACHINE_B)]

    def test_deactivate_unknown_license(self, client):
        response = client.post(
            "/api/v1/terminals/broadcast",
            headers=ADMIN,
            json={"action": "deactivate", "license_key": "AUR-PRO-V2-NOPE0000-00000000"},
        )
        assert response.status_code == 404


class TestEventEndpoints:
    def test_acknowledge_is_idempotent(self, client, services, checkout, connect):
        result = checkout()
        connect(result.license.license_key, MACHINE_A)
        event_id = services.state.mark_past_due(result.subscription.id).event_ids[0]
        ack = {"event_id": event_id, "machine_id_hash": MACHINE_A, "status": "success", "processing_time_ms": 12}

        first = client.post("/api/v1/events/ack", json=ack)
        second = client.post("/api/v1/events/ack", json=ack)

        assert first.status_code == 200
        assert first.json()["duplicate"] is False
        assert first.json()["delivery_status"] == "delivered"
        assert second.json()["duplicate"] is True

    def test_replay(self, client, clock, services, checkout, connect):
        result = checkout()
        key = result.license.license_key
        connect(key, MACHINE_A)
        since = clock.now
        services.state.mark_past_due(result.subscription.id)

        body = client.get(f"/api/v1/events/replay/{key}", params={"since": since.isoformat()}).json()

        assert body["replay_gap"] is False
        assert [e["event_type"] for e in body["events"]] == ["terminal_added", "subscription_past_due"]
        assert set(body["events"][0]) == {"event_id", "event_type", "payload", "created_at"}

    def test_replay_with_naive_since_is_read_as_utc(self, client, clock, services, checkout, connect):
        result = checkout()
        key = result.license.license_key
        connect(key, MACHINE_A)
        since = clock.now.replace(tzinfo=None)
        services.state.mark_past_due(result.subscription.id)

        response = client.get(f"/api/v1/events/replay/{key}", params={"since": since.isoformat()})

        assert response.status_code == 200
        assert response.json()["replay_gap"] is False
        assert [e["event_type"] for e in response.json()["events"]] == ["terminal_added", "subscription_past_due"]

    def test_replay_requires_since(self, client, license_key):
        assert client.get(f"/api/v1/events/replay/{license_key}").status_code == 422

    def test_state_sync_round_trip(self, client, license_key, connect):
        connect(license_key, MACHINE_A)
        connect(license_key, MACHINE_B)

        started = client.post(
            "/api/v1/events/sync",
            json={
                "license_key": license_key,
                "source_machine_id_hash": MACHINE_A,
                "sync_type": "settings",
                "data": {"tax_rate": "0.19"},
            },
        ).json()
        assert started["status"] == "in_progress"
        assert started["expected_acknowledgers"] == [MACHINE_B]

        acked = client.post(f"/api/v1/events/sync/{started['sync_id']}/ack", json={"machine_id_hash": MACHINE_B})
        assert acked.json()["status"] == "completed"
        assert client.get(f"/api/v1/events/sync/{started['sync_id']}").json()["status"] == "completed"

    def test_unknown_sync(self, client):
        response = client.get("/api/v1/events/sync/sync_missing")
        assert response.status_code == 404
        assert response.json()["error_code"] == "SYNC_NOT_FOUND"


class TestSubscriptionEndpoints:
    def test_schedule_then_reactivate(self, client, checkout):
        subscription_id = checkout().subscription.id

        scheduled = client.post(f"/api/v1/subscriptions/{subscription_id}/cancel", json={}).json()
        assert scheduled["subscription"]["cancel_at_period_end"] is True
        assert scheduled["license"]["status"] == "active"

        reactivated = client.post(f"/api/v1/subscriptions/{subscription_id}/reactivate", json={}).json()
        assert reactivated["subscription"]["cancel_at_period_end"] is False

    def test_cancel_immediately(self, client, checkout):
        subscription_id = checkout().subscription.id

        body = client.post(
            f"/api/v1/subscriptions/{subscription_id}/cancel",
            json={"cancel_immediately": True, "reason": "customer_request"},
        ).json()

        assert body["license"]["status"] == "cancelled"
        assert body["license"]["is_active"] is False
        assert len(body["event_ids"]) == 1

    def test_change_plan_reissues_key(self, client, checkout):
        result = checkout(plan_id="professional")

        body = client.post(
            f"/api/v1/subscriptions/{result.subscription.id}/change-plan",
            json={"plan_id": "enterprise"},
        ).json()

        assert body["previous_license_key"] == result.license.license_key
        assert body["license"]["license_key"].startswith("AUR-ENT-V2-")

    def test_invalid_transition_is_conflict(self, client, checkout):
        subscription_id = checkout().subscription.id
        client.post(f"/api/v1/subscriptions/{subscription_id}/cancel", json={"cancel_immediately": True})

        response = client.post(f"/api/v1/subscriptions/{subscription_id}/cancel", json={"cancel_immediately": True})

        assert response.status_code == 409

    def test_get_license(self, client, license_key):
        assert client.get(f"/api/v1/licenses/{license_key}").json()["license_key"] == license_key
        assert client.get("/api/v1/licenses/AUR-PRO-V2-NOPE0000-00000000").status_code == 404

    def test_revoke_requires_admin_token(self, client, license_key):
        denied = client.post(f"/api/v1/licenses/{license_key}/revoke", json={"reason": "fraud"})
        assert denied.status_code == 401
        assert denied.json()["error_code"] == "UNAUTHORIZED"

        wrong = client.post(
            f"/api/v1/licenses/{license_key}/revoke",
            json={"reason": "fraud"},
            headers={"X-Admin-Token": "guess"},
        )
        assert wrong.status_code == 401

        revoked = client.post(f"/api/v1/licenses/{license_key}/revoke", json={"reason": "fraud"}, headers=ADMIN)
        assert revoked.status_code == 200
        assert revoked.json()["license"]["status"] == "revoked"


class TestWebhookEndpoint:
    CHECKOUT = {
        "id": "evt_api_1",
        "type": "checkout.session.completed",
        "data": {
            "object": {
                "id": "cs_api_1",
                "subscription": "sub_api_1",
                "customer": "cus_api_1",
                "metadata": {"customerId": "cust_2002", "planId": "basic", "billingCycle": "monthly"},
            }
        },
    }

    def test_processed_then_duplicate(self, client):
        first = client.post("/api/v1/webhooks/billing", content=json.dumps(self.CHECKOUT))
        second = client.post("/api/v1/webhooks/billing", content=json.dumps(self.CHECKOUT))

        assert first.status_code == 200
        assert first.json()["status"] == "processed"
        assert second.json() == {"received": True, "status": "duplicate", "event_ids": []}

    def test_unhandled_type_is_ignored(self, client):
        body = {"id": "evt_api_2", "type": "charge.refunded", "data": {"object": {}}}
        assert client.post("/api/v1/webhooks/billing", json=body).json()["status"] == "ignored"

    def test_body_must_be_json(self, client):
        response = client.post("/api/v1/webhooks/billing", content=b"not json")
        assert response.status_code == 400
        assert response.json()["error_code"] == "INVALID_WEBHOOK_PAYLOAD"

    def test_body_must_carry_id_and_type(self, client):
        response = client.post("/api/v1/webhooks/billing", json={"type": "invoice.paid"})
        assert response.status_code == 400
        assert response.json()["details"] == {"has_id": False, "has_type": True}


class TestAdminEndpoints:
    @pytest.fixture
    def entry_id(self, clock, services, checkout, connect):
        result = checkout()
        connect(result.license.license_key, MACHINE_A, open_stream=False)
        services.state.mark_past_due(result.subscription.id)
        for _ in range(4):
            clock.advance(seconds=300)
            services.coordinator.process_due()
        return services.dead_letters.list_entries()[0].id

    def test_dlq_requires_admin_token(self, client):
        assert client.get("/api/v1/admin/dlq").status_code == 401

    def test_list_get_and_stats(self, client, entry_id):
        listed = client.get("/api/v1/admin/dlq", headers=ADMIN).json()
        assert [item["id"] for item in listed["items"]] == [entry_id]
        assert listed["items"][0]["retry_count"] == 5

        filtered = client.get("/api/v1/admin/dlq", params={"status": "resolved"}, headers=ADMIN).json()
        assert filtered["items"] == []

        assert client.get(f"/api/v1/admin/dlq/{entry_id}", headers=ADMIN).json()["status"] == "pending_review"
        assert client.get("/api/v1/admin/dlq/stats", headers=ADMIN).json()["total"] == 1

    def test_resolve_then_requeue_conflicts(self, client, entry_id):
        resolved = client.post(
            f"/api/v1/admin/dlq/{entry_id}/resolve",
            json={"notes": "Terminal replaced", "resolver_id": "ops-7"},
            headers=ADMIN,
        )
        assert resolved.json()["status"] == "resolved"
        assert resolved.json()["resolved_by"] == "ops-7"

        conflict = client.post(f"/api/v1/admin/dlq/{entry_id}/requeue", headers=ADMIN)
        assert conflict.status_code == 409
        assert conflict.json()["error_code"] == "DEAD_LETTER_CLOSED"

    def test_requeue(self, client, channel, services, entry_id):
        entry = services.dead_letters.get(entry_id)
        channel.open_stream(entry.license_key, MACHINE_A)

        body = client.post(f"/api/v1/admin/dlq/{entry_id}/requeue", headers=ADMIN).json()

        assert body["event_id"] == entry.event_id
        assert body["delivery_status"] == "awaiting_ack"

    def test_missing_entry(self, client):
        response = client.get("/api/v1/admin/dlq/999", headers=ADMIN)
        assert response.status_code == 404
        assert response.json()["error_code"] == "DEAD_LETTER_NOT_FOUND"


class TestAnalyticsEndpoints:
    def test_health_requires_calculation(self, client, license_key):
        assert client.get(f"/api/v1/analytics/health/{license_key}", headers=ADMIN).status_code == 404

        body = client.get(f"/api/v1/analytics/health/{license_key}", params={"refresh": "true"}, headers=ADMIN).json()
        assert body["health_status"] == "inactive"
        assert client.get(f"/api/v1/analytics/health/{license_key}", headers=ADMIN).status_code == 200

    def test_patterns_and_performance(self, client, license_key):
        assert client.get("/api/v1/analytics/patterns", headers=ADMIN).json() == []
        assert client.get(f"/api/v1/analytics/performance/{license_key}", headers=ADMIN).json() == []
        assert client.get("/api/v1/analytics/patterns").status_code == 401
