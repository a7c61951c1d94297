"""HTTP contract tests for the ToolTrust API.

Services are wired with in-memory stores and fake collaborators; the app's
lifespan is not run, so no database, broker or Redis is needed.
"""

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from tests.fakes import (
    ADMIN,
    OWNER,
    PAYMENT,
    RENTAL,
    RENTER,
    STRANGER,
    FakeDirectory,
    FakeEvidenceStorage,
    FakePaymentProcessor,
    RecordingPublisher,
)
from tooltrust.api.dependencies import build_services, get_services
from tooltrust.domains.disputes.config import DisputeConfig
from tooltrust.domains.fraud.config import FraudConfig
from tooltrust.main import app

pytestmark = pytest.mark.integration

BASE_URL = "http://test"
ERROR_KEYS = {"error", "message", "details", "retryable", "request_id"}


@pytest.fixture
def processor() -> FakePaymentProcessor:
    return FakePaymentProcessor()


@pytest_asyncio.fixture
async def client(processor):
    services = build_services(
        FakeDirectory(),
        processor,
        FakeEvidenceStorage(),
        RecordingPublisher(),
        fraud_config=FraudConfig(),
        dispute_config=DisputeConfig(),
    )
    app.dependency_overrides[get_services] = lambda: services
    try:
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url=BASE_URL) as http:
            yield http
    finally:
        app.dependency_overrides.clear()


async def _create_dispute(client: AsyncClient, **overrides) -> dict:
    body = {
        "rental_id": RENTAL,
        "payment_id": PAYMENT,
        "initiated_by": RENTER,
        "dispute_type": "damage",
        "title": "Mower blade bent",
        "claimed_amount": "40.00",
    }
    body.update(overrides)
    response = await client.post("/api/v1/disputes", json=body)
    assert response.status_code == 201, response.text
    return response.json()


class TestErrorMapping:
    @pytest.mark.asyncio
    async def test_not_found(self, client):
        response = await client.get("/api/v1/disputes/missing")

        assert response.status_code == 404
        body = response.json()
        assert set(body) == ERROR_KEYS
        assert body["error"] == "not_found"
        assert body["retryable"] is False
        assert body["request_id"] == response.headers["X-Request-ID"]

    @pytest.mark.asyncio
    async def test_request_id_is_propagated(self, client):
        response = await client.get("/api/v1/disputes/missing", headers={"X-Request-ID": "req-42"})

        assert response.json()["request_id"] == "req-42"

    @pytest.mark.asyncio
    async def test_validation(self, client):
        response = await client.post(
            "/api/v1/disputes",
            json={
                "rental_id": "rental-404",
                "initiated_by": RENTER,
                "dispute_type": "damage",
                "title": "Broken",
            },
        )

        assert response.status_code == 400
        assert response.json()["error"] == "validation_error"

    @pytest.mark.asyncio
    async def test_access_denied(self, client):
        dispute = await _create_dispute(client)

        response = await client.post(
            f"/api/v1/disputes/{dispute['id']}/assign",
            json={"admin_id": OWNER, "assigned_by": OWNER},
        )

        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_duplicate(self, client):
        await _create_dispute(client)

        response = await client.post(
            "/api/v1/disputes",
            json={
                "rental_id": RENTAL,
                "initiated_by": OWNER,
                "dispute_type": "non_return",
                "title": "Never returned",
            },
        )

        assert response.status_code == 409

    @pytest.mark.asyncio
    async def test_processor_outage_is_retryable(self, client, processor):
        dispute = await _create_dispute(client)
        await client.post(
            f"/api/v1/disputes/{dispute['id']}/assign", json={"admin_id": ADMIN, "assigned_by": ADMIN}
        )
        processor.fail_escalations = True

        response = await client.post(
            f"/api/v1/disputes/{dispute['id']}/escalate", json={"admin_user_id": ADMIN}
        )

        assert response.status_code == 503
        assert response.json()["retryable"] is True
        assert response.headers["Retry-After"] == "1"


class TestDisputeFlow:
    @pytest.mark.asyncio
    async def test_refund_resolution(self, client, processor):
        dispute = await _create_dispute(client)
        dispute_id = dispute["id"]
        assert dispute["status"] == "opened"

        response = await client.post(
            f"/api/v1/disputes/{dispute_id}/assign", json={"admin_id": ADMIN, "assigned_by": ADMIN}
        )
        assert response.json()["status"] == "under_review"

        response = await client.post(
            f"/api/v1/disputes/{dispute_id}/resolve",
            json={"resolved_by": ADMIN, "kind": "refund", "payload": {"refund_amount": "25.00"}},
        )
        assert response.status_code == 200
        resolved = response.json()
        assert resolved["status"] == "resolved"
        assert resolved["refund_transaction_id"] == "txn-1"

        response = await client.post(
            f"/api/v1/disputes/{dispute_id}/close", json={"closed_by": RENTER, "reason": "again"}
        )
        assert response.status_code == 409
        assert len(processor.refunds) == 1

    @pytest.mark.asyncio
    async def test_messages_and_timeline(self, client):
        dispute = await _create_dispute(client)
        dispute_id = dispute["id"]

        response = await client.post(
            f"/api/v1/disputes/{dispute_id}/messages",
            json={"author_id": OWNER, "body": "The blade was fine when it left"},
        )
        assert response.status_code == 201

        response = await client.get(f"/api/v1/disputes/{dispute_id}/messages", params={"user_id": RENTER})
        assert response.json()["count"] == 2

        response = await client.post(f"/api/v1/disputes/{dispute_id}/messages/read", json={"user_id": RENTER})
        assert response.json()["marked_read"] == 2

        response = await client.get(f"/api/v1/disputes/{dispute_id}/timeline", params={"user_id": STRANGER})
        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_evidence_upload_and_scan(self, client):
        dispute = await _create_dispute(client)

        response = await client.post(
            f"/api/v1/disputes/{dispute['id']}/evidence",
            data={"uploaded_by": RENTER, "description": "Close-up"},
            files=[("files", ("blade.jpg", b"\xff\xd8\xff", "image/jpeg"))],
        )
        assert response.status_code == 201
        evidence = response.json()["items"][0]
        assert evidence["is_scanned"] is False

        response = await client.post(
            "/api/v1/disputes/evidence/scan",
            json={"storage_reference": evidence["storage_reference"], "is_safe": True},
        )
        assert response.status_code == 200
        assert response.json()["is_safe"] is True

    @pytest.mark.asyncio
    async def test_scan_callback_schema(self, client):
        response = await client.post("/api/v1/disputes/evidence/scan", json={"is_safe": "yes"})

        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_list_and_statistics(self, client):
        await _create_dispute(client)

        response = await client.get("/api/v1/disputes", params={"user_id": OWNER})
        assert response.json()["count"] == 1

        response = await client.get("/api/v1/disputes/statistics")
        assert response.json()["total"] == 1
        assert response.json()["by_status"] == {"opened": 1}


class TestMutualClosureApi:
    @pytest.mark.asyncio
    async def test_accept_closes_dispute(self, client, processor):
        dispute = await _create_dispute(client)
        dispute_id = dispute["id"]

        response = await client.get(
            f"/api/v1/disputes/{dispute_id}/mutual-closure/eligibility", params={"user_id": RENTER}
        )
        assert response.json()["is_eligible"] is True
        assert response.json()["max_refund_amount"] == "95.00"

        response = await client.post(
            f"/api/v1/disputes/{dispute_id}/mutual-closure",
            json={"proposer_id": RENTER, "notes": "Split the repair", "refund_amount": "15.00"},
        )
        assert response.status_code == 201
        closure_id = response.json()["id"]

        response = await client.post(
            f"/api/v1/mutual-closures/{closure_id}/respond",
            json={"responder_id": OWNER, "accept": True},
        )
        assert response.status_code == 200
        assert response.json()["status"] == "accepted"

        response = await client.get(f"/api/v1/disputes/{dispute_id}")
        assert response.json()["status"] == "closed"
        response = await client.get(f"/api/v1/mutual-closures/{closure_id}/audit-log")
        assert response.json()["count"] == 2
        assert processor.refund_calls[f"closure:{closure_id}"] == 1

    @pytest.mark.asyncio
    async def test_complete_after_refund_outage(self, client, processor):
        dispute = await _create_dispute(client)
        dispute_id = dispute["id"]
        response = await client.post(
            f"/api/v1/disputes/{dispute_id}/mutual-closure",
            json={"proposer_id": RENTER, "notes": "Split the repair", "refund_amount": "15.00"},
        )
        closure_id = response.json()["id"]
        processor.fail_refunds = True

        response = await client.post(
            f"/api/v1/mutual-closures/{closure_id}/respond",
            json={"responder_id": OWNER, "accept": True},
        )
        assert response.status_code == 503
        response = await client.get(f"/api/v1/mutual-closures/{closure_id}")
        assert response.json()["status"] == "accepted"

        processor.fail_refunds = False
        response = await client.post(f"/api/v1/mutual-closures/{closure_id}/complete")

        assert response.status_code == 200
        assert response.json()["refund_transaction_id"] == "txn-1"
        response = await client.get(f"/api/v1/disputes/{dispute_id}")
        assert response.json()["status"] == "closed"
        assert response.json()["refund_amount"] == "15.00"

    @pytest.mark.asyncio
    async def test_complete_needs_an_accepted_closure(self, client):
        dispute = await _create_dispute(client)
        response = await client.post(
            f"/api/v1/disputes/{dispute['id']}/mutual-closure",
            json={"proposer_id": RENTER, "notes": "settle"},
        )

        response = await client.post(f"/api/v1/mutual-closures/{response.json()['id']}/complete")

        assert response.status_code == 409

    @pytest.mark.asyncio
    async def test_second_proposal_conflicts(self, client):
        dispute = await _create_dispute(client)
        url = f"/api/v1/disputes/{dispute['id']}/mutual-closure"
        await client.post(url, json={"proposer_id": RENTER, "notes": "first"})

        response = await client.post(url, json={"proposer_id": OWNER, "notes": "second"})

        assert response.status_code == 409
        assert response.json()["error"] == "already_active"

    @pytest.mark.asyncio
    async def test_refund_above_ceiling(self, client):
        dispute = await _create_dispute(client)

        response = await client.post(
            f"/api/v1/disputes/{dispute['id']}/mutual-closure",
            json={"proposer_id": RENTER, "notes": "everything", "refund_amount": "100.00"},
        )

        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_cancel_and_list(self, client):
        dispute = await _create_dispute(client)
        response = await client.post(
            f"/api/v1/disputes/{dispute['id']}/mutual-closure",
            json={"proposer_id": RENTER, "notes": "settle"},
        )
        closure_id = response.json()["id"]

        response = await client.post(
            f"/api/v1/mutual-closures/{closure_id}/cancel", json={"user_id": OWNER}
        )
        assert response.status_code == 403
        response = await client.post(
            f"/api/v1/mutual-closures/{closure_id}/cancel", json={"user_id": RENTER, "reason": "oops"}
        )
        assert response.json()["status"] == "cancelled"

        response = await client.get(f"/api/v1/disputes/{dispute['id']}/mutual-closures")
        assert response.json()["count"] == 1
        response = await client.post("/api/v1/mutual-closures/expire")
        assert response.json() == {"expired": [], "count": 0}
        response = await client.get("/api/v1/mutual-closures/statistics")
        assert response.json()["by_status"] == {"cancelled": 1}


class TestWebhookApi:
    @pytest.mark.asyncio
    async def test_resolution_event(self, client, processor):
        dispute = await _create_dispute(client)
        dispute_id = dispute["id"]
        await client.post(
            f"/api/v1/disputes/{dispute_id}/assign", json={"admin_id": ADMIN, "assigned_by": ADMIN}
        )
        response = await client.post(
            f"/api/v1/disputes/{dispute_id}/escalate", json={"admin_user_id": ADMIN}
        )
        external_id = response.json()["external_dispute_id"]
        event = {
            "disputeId": external_id,
            "eventType": "CUSTOMER.DISPUTE.RESOLVED",
            "eventId": "evt-77",
            "status": "RESOLVED_BUYER_FAVOUR",
            "amount": "40.00",
        }

        first = await client.post("/api/v1/webhooks/payment-processor/disputes", json=event)
        second = await client.post("/api/v1/webhooks/payment-processor/disputes", json=event)

        assert first.json()["outcome"] == "applied"
        assert first.json()["status"] == "resolved"
        assert second.status_code == 200
        assert second.json()["outcome"] == "duplicate"
        assert processor.refund_calls == {f"dispute-{dispute_id}": 1}

    @pytest.mark.asyncio
    async def test_unknown_dispute_is_acknowledged(self, client):
        response = await client.post(
            "/api/v1/webhooks/payment-processor/disputes",
            json={"disputeId": "ext-nope", "eventType": "UPDATED"},
        )

        assert response.status_code == 200
        assert response.json()["outcome"] == "ignored"

    @pytest.mark.asyncio
    async def test_malformed_payload(self, client):
        response = await client.post(
            "/api/v1/webhooks/payment-processor/disputes", json={"eventType": "RESOLVED"}
        )

        assert response.status_code == 400
        assert response.json()["details"]["path"] == "<root>"


class TestFraudApi:
    @pytest.mark.asyncio
    async def test_evaluate_small_payment(self, client):
        response = await client.post(
            "/api/v1/fraud/evaluate",
            json={"action_type": "payment", "user_id": "buyer-9", "payment_id": "p-1", "amount": "35.00"},
        )

        assert response.status_code == 200
        body = response.json()
        assert body["allowed"] is True
        assert body["check"]["status"] == "approved"

        response = await client.get(f"/api/v1/fraud/checks/{body['check']['id']}")
        assert response.json()["user_id"] == "buyer-9"

    @pytest.mark.asyncio
    async def test_velocity_override_blocks(self, client):
        response = await client.put(
            "/api/v1/fraud/users/buyer-9/velocity-limits/hourly_transactions",
            json={"limit": "1", "reason": "chargeback investigation"},
        )
        assert response.status_code == 200

        payment = {"action_type": "payment", "user_id": "buyer-9", "amount": "10.00"}
        assert (await client.post("/api/v1/fraud/evaluate", json=payment)).json()["allowed"] is True
        blocked = (await client.post("/api/v1/fraud/evaluate", json=payment)).json()

        assert blocked["allowed"] is False
        assert blocked["check"]["check_type"] == "velocity_check"
        assert blocked["check"]["triggered_rules"] == ["velocity_limit:hourly_transactions"]

        response = await client.get("/api/v1/fraud/users/buyer-9/checks")
        assert response.json()["count"] == 2

    @pytest.mark.asyncio
    async def test_flag_and_unflag(self, client):
        response = await client.post(
            "/api/v1/fraud/users/buyer-9/flag", json={"reason": "stolen card report", "flagged_by": ADMIN}
        )
        assert response.status_code == 201
        assert response.json()["activity_type"] == "high_risk_user"

        assert (await client.get("/api/v1/fraud/users/buyer-9/flagged")).json()["flagged"] is True
        response = await client.get("/api/v1/fraud/activities", params={"user_id": "buyer-9"})
        assert response.json()["count"] == 1

        response = await client.post("/api/v1/fraud/users/buyer-9/unflag", json={"resolved_by": ADMIN})
        assert response.json() == {"user_id": "buyer-9", "resolved": 1}
        assert (await client.get("/api/v1/fraud/users/buyer-9/flagged")).json()["flagged"] is False

    @pytest.mark.asyncio
    async def test_unknown_check(self, client):
        response = await client.post(
            "/api/v1/fraud/checks/missing/review", json={"reviewer_id": ADMIN, "approve": True}
        )

        assert response.status_code == 404


class TestHealth:
    @pytest.mark.asyncio
    async def test_health(self):
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url=BASE_URL) as client:
            response = await client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
        assert "uptime_seconds" in response.json()

    @pytest.mark.asyncio
    async def test_ready_with_in_memory_backends(self):
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url=BASE_URL) as client:
            response = await client.get("/ready")

        assert response.status_code == 200
        assert response.json() == {"status": "ready"}
