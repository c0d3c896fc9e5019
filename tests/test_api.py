import pytest
from fastapi.testclient import TestClient

from src.scaffolder.api.main import app
from src.scaffolder.infrastructure.event_bus import get_event_bus
from src.scaffolder.services.orchestration import get_scaffolder_service


@pytest.fixture
def client(service, bus):
    app.dependency_overrides[get_scaffolder_service] = lambda: service
    app.dependency_overrides[get_event_bus] = lambda: bus
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def test_health_endpoint(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "ok"
    assert data["components"]["store"] == "InMemoryStateStore"


def test_start_conversation(client):
    r = client.post("/scaffolder/conversations", json={"message": "track my coffee shop orders", "ownerId": "u-1"})
    assert r.status_code == 201
    body = r.json()
    assert body["conversationId"] == body["state"]["id"]
    assert body["state"]["phase"] == "clarification"
    assert body["state"]["owner_id"] == "u-1"

    r = client.get(f"/api/scaffolder/conversations/{body['conversationId']}")
    assert r.status_code == 200
    assert r.json()["id"] == body["conversationId"]


def test_empty_message_is_rejected_by_schema(client):
    r = client.post("/scaffolder/conversations", json={"message": ""})
    assert r.status_code == 422


def test_unknown_conversation_is_404(client):
    r = client.get("/scaffolder/conversations/conv-missing")
    assert r.status_code == 404
    detail = r.json()["detail"]
    assert detail["error"] == "NOT_FOUND"
    assert detail["technicalDetails"] == 'Conversation with ID "conv-missing" does not exist'


def test_answer_flow(client):
    conversation_id = client.post("/scaffolder/conversations", json={"message": "track my coffee shop orders"}).json()[
        "conversationId"
    ]
    r = client.post(
        f"/scaffolder/conversations/{conversation_id}/answers",
        json={"questionId": "q_fields", "answer": ["taskName", "status", "dueDate"]},
    )
    assert r.status_code == 200
    body = r.json()
    assert body["knownQuestion"] is True
    assert body["state"]["answers"]["q_fields"] == ["taskName", "status", "dueDate"]
    assert body["messages"][-1]["metadata"]["questionId"] == "q_statuses"

    bad = client.post(f"/scaffolder/conversations/{conversation_id}/answers", json={"questionId": "q_statuses", "answer": []})
    assert bad.status_code == 400
    assert bad.json()["detail"]["error"] == "VALIDATION_ERROR"

    events = client.get("/status/events/recent", params={"conversationId": conversation_id}).json()["events"]
    assert [e["name"] for e in events] == ["conversation_started", "question_answered"]


def test_consent_endpoints(client):
    assert client.get("/scaffolder/consent").json() == {"requests": []}
    r = client.post("/scaffolder/consent/consent_missing", json={"allowed": True})
    assert r.status_code == 404
    assert r.json()["detail"]["message"] == "Consent request not found"


def test_cancel_without_running_build(client):
    r = client.post("/scaffolder/conversations/conv-idle/cancel")
    assert r.json() == {"cancelled": False}


def test_status_stats(client):
    client.post("/scaffolder/conversations", json={"message": "log my runs", "channelId": "tmp-chan"})
    stats = client.get("/status/stats").json()
    assert stats["channels"] >= 2
    assert stats["detail"]["tmp-chan"]["buffered"] == 0


def test_preview_requires_designed_app(client):
    conversation_id = client.post("/scaffolder/conversations", json={"message": "track my coffee shop orders"}).json()[
        "conversationId"
    ]
    r = client.get(f"/scaffolder/conversations/{conversation_id}/preview")
    assert r.status_code == 400
    assert r.json()["detail"]["technicalDetails"] == "No specification has been designed yet"
