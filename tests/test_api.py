import httpx
import pytest

from app.main import create_app

from conftest import PLAN_FINISH, PLAN_START


def as_person(person_id):
    return {"X-Person-Id": str(person_id)}


@pytest.fixture
async def app(test_settings, session_factory, notifier):
    app = create_app(test_settings, notifier=notifier)
    async with app.router.lifespan_context(app):
        yield app


@pytest.fixture
async def client(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest.fixture
def create_ticket(client, seed):
    async def _create(title="Abnormal vibration on mixer"):
        response = await client.post(
            "/api/v1/tickets",
            json={"title": title, "production_unit_id": seed.unit},
            headers=as_person(seed.creator),
        )
        assert response.status_code == 201
        return response.json()

    return _create


async def test_health(client):
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json()["checks"]["database"] == "connected"


async def test_create_ticket(create_ticket, app, notifier, seed):
    ticket = await create_ticket()
    await app.state.jobs.join()

    assert ticket["status"] == "open"
    assert ticket["ticket_number"].startswith("AB")
    assert ticket["created_by"] == seed.creator
    assert notifier.emailed_person_ids == {seed.supervisor, seed.technician, seed.creator}


async def test_caller_identity_is_required(client, seed):
    body = {"title": "x", "production_unit_id": seed.unit}
    assert (await client.post("/api/v1/tickets", json=body)).status_code == 401
    assert (await client.post("/api/v1/tickets", json=body, headers=as_person(424242))).status_code == 403
    assert (await client.post("/api/v1/tickets", json=body, headers=as_person(seed.inactive))).status_code == 403


async def test_ticket_detail_lists_allowed_actions(client, create_ticket, seed):
    ticket = await create_ticket()

    response = await client.get(f"/api/v1/tickets/{ticket['id']}", headers=as_person(seed.supervisor))
    assert response.json()["allowed_actions"] == ["accept", "reject"]

    response = await client.get(f"/api/v1/tickets/{ticket['id']}", headers=as_person(seed.creator))
    assert response.json()["allowed_actions"] == []


async def test_accept_creates_work_order(client, app, create_ticket, seed):
    ticket = await create_ticket()

    response = await client.post(f"/api/v1/tickets/{ticket['id']}/accept", headers=as_person(seed.supervisor))
    await app.state.jobs.join()

    assert response.status_code == 200
    assert response.json() == {
        "success": True,
        "ticket_id": ticket["id"],
        "old_status": "open",
        "new_status": "accepted",
        "error": None,
    }

    work_order = (await client.get(f"/api/v1/tickets/{ticket['id']}/work-order")).json()
    assert work_order["wf_status_code"] == "10"
    assert work_order["external_code"] == "WO000001"
    assert work_order["sync_status"] == "success"

    logs = (await client.get(f"/api/v1/tickets/{ticket['id']}/work-order/logs")).json()
    assert [(log["action"], log["status"]) for log in logs] == [("create", "success")]

    history = (await client.get(f"/api/v1/tickets/{ticket['id']}/history")).json()
    assert [(h["old_status"], h["new_status"]) for h in history] == [(None, "open"), ("open", "accepted")]


async def test_plan_with_payload(client, app, create_ticket, seed):
    ticket = await create_ticket()
    await client.post(f"/api/v1/tickets/{ticket['id']}/accept", headers=as_person(seed.supervisor))
    await app.state.jobs.join()

    missing = await client.post(
        f"/api/v1/tickets/{ticket['id']}/plan", json={}, headers=as_person(seed.supervisor),
    )
    assert missing.status_code == 422
    assert missing.json()["error"]["code"] == "INVALID_ACTION_PAYLOAD"

    response = await client.post(
        f"/api/v1/tickets/{ticket['id']}/plan",
        json={
            "assigned_to": seed.technician,
            "schedule_start": PLAN_START.isoformat(),
            "schedule_finish": PLAN_FINISH.isoformat(),
        },
        headers=as_person(seed.supervisor),
    )
    await app.state.jobs.join()

    assert response.json()["new_status"] == "planed"
    pending = (await client.get("/api/v1/tickets/pending", headers=as_person(seed.technician))).json()
    assert [(item["ticket_id"], item["user_relationship"]) for item in pending["items"]] == [
        (ticket["id"], "assignee"),
    ]
    pending = (await client.get("/api/v1/tickets/pending", headers=as_person(seed.supervisor))).json()
    assert pending["total"] == 0

    work_order = (await client.get(f"/api/v1/tickets/{ticket['id']}/work-order")).json()
    assert work_order["wf_status_code"] == "30"


async def test_invalid_transition_response(client, create_ticket, seed):
    ticket = await create_ticket()

    response = await client.post(
        f"/api/v1/tickets/{ticket['id']}/approve_review", headers=as_person(seed.plant_admin),
    )

    assert response.status_code == 409
    body = response.json()
    assert body["success"] is False
    assert body["new_status"] is None
    assert body["error"]["code"] == "INVALID_TRANSITION"
    assert body["error"]["allowed_actions"] == ["accept", "reject"]


async def test_insufficient_level_response(client, create_ticket, seed):
    ticket = await create_ticket()

    response = await client.post(
        f"/api/v1/tickets/{ticket['id']}/reject",
        json={"rejection_reason": "duplicate"},
        headers=as_person(seed.creator),
    )

    assert response.status_code == 403
    error = response.json()["error"]
    assert error["code"] == "INSUFFICIENT_APPROVAL_LEVEL"
    assert (error["actor_level"], error["required_level"]) == (0, 2)


async def test_unknown_ticket_and_action(client, seed):
    response = await client.post("/api/v1/tickets/424242/accept", headers=as_person(seed.supervisor))
    assert response.status_code == 404
    assert response.json()["error"]["code"] == "TICKET_NOT_FOUND"

    response = await client.post("/api/v1/tickets/1/approve_everything", headers=as_person(seed.supervisor))
    assert response.status_code == 422


async def test_effective_level_and_approvers(client, seed):
    response = await client.get(
        "/api/v1/approvals/effective-level",
        params={"person_id": seed.technician, "production_unit_id": seed.unit},
    )
    assert response.json()["approval_level"] == 2

    response = await client.get(
        "/api/v1/approvals/approvers", params={"production_unit_id": seed.unit, "level": 2},
    )
    items = response.json()["items"]
    assert [(a["person_id"], a["scope_description"]) for a in items] == [
        (seed.supervisor, "Plant: DJ, Area: DMH"),
        (seed.technician, "Line: L01"),
    ]

    response = await client.get(
        "/api/v1/approvals/effective-level",
        params={"person_id": seed.technician, "production_unit_id": 9999},
    )
    assert response.status_code == 404
    assert response.json()["error"]["code"] == "NOT_FOUND"


async def test_grant_administration(client, seed):
    grant = {"person_id": seed.creator, "approval_level": 2, "plant_code": "DJ", "area_code": "DMH"}

    response = await client.post("/api/v1/approvals/grants", json=grant, headers=as_person(seed.manager))
    assert response.status_code == 403
    assert response.json()["error"]["code"] == "INSUFFICIENT_APPROVAL_LEVEL"

    response = await client.post("/api/v1/approvals/grants", json=grant, headers=as_person(seed.plant_admin))
    assert response.status_code == 201
    grant_id = response.json()["id"]
    assert response.json()["created_by"] == seed.plant_admin

    level = await client.get(
        "/api/v1/approvals/effective-level",
        params={"person_id": seed.creator, "production_unit_id": seed.unit},
    )
    assert level.json()["approval_level"] == 2

    response = await client.patch(
        f"/api/v1/approvals/grants/{grant_id}", json={"approval_level": 3}, headers=as_person(seed.plant_admin),
    )
    assert response.json()["approval_level"] == 3

    response = await client.delete(f"/api/v1/approvals/grants/{grant_id}", headers=as_person(seed.plant_admin))
    assert response.status_code == 204
    grants = (await client.get("/api/v1/approvals/grants", params={"person_id": seed.creator})).json()
    assert grants["total"] == 0


async def test_grant_with_gap_is_rejected(client, seed):
    response = await client.post(
        "/api/v1/approvals/grants",
        json={"person_id": seed.creator, "approval_level": 2, "plant_code": "DJ", "line_code": "L01"},
        headers=as_person(seed.plant_admin),
    )
    assert response.status_code == 400


async def test_other_plant_admin_cannot_manage_grants(client, seed):
    response = await client.post(
        "/api/v1/approvals/grants",
        json={"person_id": seed.creator, "approval_level": 4, "plant_code": "DJ"},
        headers=as_person(seed.other_plant),
    )
    assert response.status_code == 403


async def test_recipient_preview(client, seed):
    response = await client.post(
        "/api/v1/notifications/recipients/preview",
        json={
            "production_unit_id": seed.unit,
            "action_type": "approve_review",
            "created_by": seed.creator,
            "assigned_to": seed.technician,
        },
    )
    assert response.status_code == 200
    items = response.json()["items"]
    assert [(r["person_id"], r["recipient_type"]) for r in items] == [
        (seed.plant_admin, "approver"), (seed.technician, "assignee"),
    ]
    assert items[0]["avatar_url"] == "https://cdn.example.com/avatars/5.png"
    assert items[1]["channels"] == ["email", "line"]

    response = await client.post(
        "/api/v1/notifications/recipients/preview",
        json={"production_unit_id": seed.unit, "action_type": "approve_everything"},
    )
    assert response.status_code == 422
