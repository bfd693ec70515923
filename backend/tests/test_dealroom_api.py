"""
HTTP API tests: error mapping and an end-to-end deal flow
"""
from uuid import uuid4

import pytest

ADMIN = {"X-Participant-Id": "p1"}


def _setup_deal(client):
    r = client.post("/api/deals/", json={"name": "Joint venture", "currency": "usd"}, headers=ADMIN)
    assert r.status_code == 201
    deal = r.json()
    assert deal["currency"] == "USD"
    for participant_id in ("p2", "p3"):
        r = client.post(f"/api/deals/{deal['id']}/participants", json={"participant_id": participant_id})
        assert r.status_code == 201
    return deal["id"]


def _active_formulation(client, deal_id):
    r = client.post(f"/api/deals/{deal_id}/ingredients/", json={"name": "Routing engine", "ingredient_type": "software_module"}, headers=ADMIN)
    assert r.status_code == 201
    ingredient_id = r.json()["id"]

    r = client.post(f"/api/deals/{deal_id}/formulations/", json={"name": "Launch terms"}, headers=ADMIN)
    formulation_id = r.json()["id"]
    r = client.post(
        f"/api/deals/{deal_id}/formulations/{formulation_id}/ingredients",
        json={"ingredient_id": ingredient_id, "ownership_percent": "100"}
    )
    assert r.status_code == 201
    return ingredient_id, formulation_id


def test_health_and_metrics(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json()["status"] == "healthy"

    r = client.get("/health/detailed")
    assert r.json()["components"]["database"]["status"] == "healthy"

    r = client.get("/metrics")
    assert r.status_code == 200
    assert "dealroom_http_requests_total" in r.text


def test_request_id_and_metric_labels(client):
    r = client.get(f"/api/deals/{uuid4()}", headers={"X-Request-ID": "req-abc"})
    assert r.headers["X-Request-ID"] == "req-abc"
    assert 'endpoint="/api/deals/{id}"' in client.get("/metrics").text


def test_error_bodies_carry_reason(client):
    r = client.get(f"/api/deals/{uuid4()}")
    assert r.status_code == 404
    assert r.json()["error"] == "NotFoundError"

    deal_id = _setup_deal(client)
    r = client.post(
        f"/api/deals/{deal_id}/attribution/rules",
        json={"participant_id": "p1", "credit_type": "contribution", "percentage": "150"}
    )
    assert r.status_code == 422
    body = r.json()
    assert body["reason"] == "percentage_out_of_range"
    assert body["details"]["field"] == "percentage"


def test_locked_and_illegal_transitions(client):
    deal_id = _setup_deal(client)
    ingredient_id, formulation_id = _active_formulation(client, deal_id)

    r = client.post(f"/api/deals/{deal_id}/formulations/{formulation_id}/activate", json={}, headers=ADMIN)
    assert r.status_code == 409
    assert r.json()["reason"] == "review_required"

    r = client.post(f"/api/deals/{deal_id}/formulations/{formulation_id}/activate", json={"admin_override": True}, headers=ADMIN)
    assert r.status_code == 200
    assert r.json()["status"] == "active"

    r = client.patch(f"/api/deals/{deal_id}/ingredients/{ingredient_id}", json={"changes": {"name": "Renamed"}})
    assert r.status_code == 423
    assert r.json()["error"] == "LockedError"

    r = client.get(f"/api/deals/{deal_id}/ingredients/{ingredient_id}/lock")
    assert r.json()["locked"] is True


def test_voting_requires_participant_header(client):
    deal_id = _setup_deal(client)
    ingredient_id, _ = _active_formulation(client, deal_id)

    r = client.post(f"/api/deals/{deal_id}/proposals/", json={"change_type": "remove", "ingredient_id": ingredient_id})
    assert r.status_code == 401


def test_resources_of_another_deal_are_not_found(client):
    deal_id = _setup_deal(client)
    ingredient_id, formulation_id = _active_formulation(client, deal_id)
    base = f"/api/deals/{deal_id}"
    other = f"/api/deals/{_setup_deal(client)}"
    client.post(f"{base}/formulations/{formulation_id}/activate", json={"admin_override": True}, headers=ADMIN)

    r = client.post(
        f"{base}/proposals/",
        json={"change_type": "modify", "ingredient_id": ingredient_id, "proposed_changes": {"name": "Renamed"}},
        headers=ADMIN
    )
    proposal_id = r.json()["id"]
    assert client.get(f"{other}/proposals/{proposal_id}").status_code == 404
    assert client.get(f"{other}/proposals/{proposal_id}/pending-voters").status_code == 404
    r = client.post(f"{other}/proposals/{proposal_id}/votes", json={"approve": False}, headers={"X-Participant-Id": "p2"})
    assert r.status_code == 404
    assert client.get(f"{base}/proposals/{proposal_id}").json()["status"] == "pending"

    assert client.get(f"{other}/ingredients/{ingredient_id}").status_code == 404
    assert client.patch(f"{other}/ingredients/{ingredient_id}", json={"changes": {"name": "x"}}).status_code == 404

    r = client.post(f"{base}/attribution/rules", json={"participant_id": "p1", "credit_type": "contribution", "percentage": "100"})
    rule_id = r.json()["id"]
    assert client.delete(f"{other}/attribution/rules/{rule_id}").status_code == 404
    assert client.get(f"{base}/attribution/rules/{rule_id}").json()["is_active"] is True

    r = client.post(
        f"{base}/settlement/contracts",
        json={"name": "Revenue share", "trigger_type": "revenue_received", "distribution_logic": {"type": "proportional"}}
    )
    r = client.post(f"{base}/settlement/contracts/{r.json()['id']}/trigger", json={"event": {"amount": "100"}})
    execution_id = r.json()["id"]
    payout_id = r.json()["payouts"][0]["id"]

    assert client.get(f"{other}/settlement/executions/{execution_id}").status_code == 404
    assert client.get(f"{other}/settlement/executions/{execution_id}/payouts").status_code == 404
    r = client.post(f"{other}/settlement/payouts/{payout_id}/paid", json={"payment_reference": "wire-1"}, headers=ADMIN)
    assert r.status_code == 404

    r = client.post(f"{base}/settlement/payouts/{payout_id}/paid", json={"payment_reference": "wire-1"})
    assert r.status_code == 401
    r = client.get(f"{base}/settlement/executions/{execution_id}/payouts")
    assert r.json()[0]["status"] == "pending"


@pytest.mark.integration
def test_deal_to_settlement_flow(client):
    deal_id = _setup_deal(client)
    ingredient_id, formulation_id = _active_formulation(client, deal_id)
    base = f"/api/deals/{deal_id}"

    # Review and activate
    r = client.post(f"{base}/formulations/{formulation_id}/submit", headers=ADMIN)
    assert r.json()["status"] == "pending_review"
    for participant_id in ("p1", "p2", "p3"):
        r = client.post(
            f"{base}/formulations/{formulation_id}/reviews",
            json={"status": "approved"},
            headers={"X-Participant-Id": participant_id}
        )
        assert r.status_code == 200
    assert r.json()["counts"]["approved"] == 3
    r = client.post(f"{base}/formulations/{formulation_id}/activate", headers=ADMIN)
    assert r.json()["status"] == "active"

    # Unanimous change to the locked ingredient
    r = client.post(
        f"{base}/proposals/",
        json={"change_type": "modify", "ingredient_id": ingredient_id, "proposed_changes": {"name": "Routing engine v2"}},
        headers=ADMIN
    )
    assert r.status_code == 201
    proposal_id = r.json()["id"]
    assert client.get(f"{base}/proposals/{proposal_id}/pending-voters").json() == ["p2", "p3"]
    for participant_id in ("p2", "p3"):
        r = client.post(f"{base}/proposals/{proposal_id}/votes", json={"approve": True}, headers={"X-Participant-Id": participant_id})
    assert r.json()["status"] == "approved"
    assert client.get(f"{base}/ingredients/{ingredient_id}").json()["name"] == "Routing engine v2"
    assert client.get(f"{base}/formulations/{formulation_id}").json()["snapshot_revision"] == 2

    # Attribution
    for participant_id, percentage in (("p1", "50"), ("p2", "30"), ("p3", "20")):
        r = client.post(
            f"{base}/attribution/rules",
            json={"participant_id": participant_id, "credit_type": "contribution", "percentage": percentage},
            headers=ADMIN
        )
        assert r.status_code == 201
    assert client.get(f"{base}/attribution/allocation").json()["status"] == "balanced"

    r = client.post(f"{base}/attribution/calculations", json={"pool_value": "2000", "persist": False})
    assert r.status_code == 200
    assert r.json()["total_payout"] == "2000.00"

    # Usage is idempotent per event key
    payload = {"ingredient_id": ingredient_id, "usage_type": "api_call", "quantity": "25", "event_key": "evt-42"}
    assert client.post(f"{base}/usage/", json=payload).status_code == 201
    r = client.post(f"{base}/usage/", json=payload)
    assert r.status_code == 200
    assert r.json()["duplicate"] is True
    assert client.get(f"{base}/usage/total").json()["total_quantity"] in ("25", "25.0000")

    # Settlement
    r = client.post(
        f"{base}/settlement/contracts",
        json={
            "name": "Revenue share",
            "trigger_type": "revenue_received",
            "trigger_conditions": {"min_amount": "100"},
            "distribution_logic": {"type": "proportional"},
        },
        headers=ADMIN
    )
    assert r.status_code == 201
    contract_id = r.json()["id"]

    r = client.post(f"{base}/settlement/contracts/{contract_id}/trigger", json={"event": {"amount": "50"}})
    assert r.status_code == 204

    r = client.post(f"{base}/settlement/contracts/{contract_id}/trigger", json={"event": {"amount": "1000"}})
    assert r.status_code == 200
    execution = r.json()
    assert execution["status"] == "completed"
    assert {p["participant_id"]: p["amount"] for p in execution["payouts"]} == {
        "p1": "500.00", "p2": "300.00", "p3": "200.00",
    }

    payout_id = execution["payouts"][0]["id"]
    r = client.post(f"{base}/settlement/payouts/{payout_id}/paid", json={"payment_reference": "wire-9"}, headers=ADMIN)
    assert r.json()["status"] == "paid"
    assert r.json()["paid_by"] == "p1"
    r = client.post(f"{base}/settlement/payouts/{payout_id}/paid", json={"payment_reference": "wire-10"}, headers=ADMIN)
    assert r.status_code == 409
    assert r.json()["reason"] == "already_paid"

    # Outbox
    undelivered = client.get("/api/events/undelivered").json()
    assert "execution.completed" in {e["event_type"] for e in undelivered}
    r = client.post("/api/events/delivered", json={"event_ids": [e["id"] for e in undelivered]})
    assert r.json()["marked"] == len(undelivered)
