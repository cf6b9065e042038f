# test/test_api.py
import httpx
import pytest

from mailla.main import app
from mailla.services.triage_service import TriageService

from fakes import FakeLLMClient, FakeNotifier, tool_args


@pytest.fixture()
async def client(repo, settings):
    llm = FakeLLMClient(
        [
            tool_args("Thanks! What's your email?", conversationSlots={"issueSummary": "Leaking sink"}),
            tool_args("You're all set!", nextAction="complete_triage"),
        ]
    )
    # ASGITransport does not run the lifespan, so wire the service directly
    app.state.triage_service = TriageService(
        repo, notifier=FakeNotifier(), llm_client=llm, settings=settings
    )
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
    del app.state.triage_service


@pytest.mark.asyncio
async def test_full_conversation_over_http(client: httpx.AsyncClient):
    res = await client.post(
        "/api/triage/start",
        json={"studentId": "s1", "orgId": "mit", "initialRequest": "Sink leaking in Tang Hall room 204"},
    )
    assert res.status_code == 200
    body = res.json()
    conv_id = body["conversationId"]
    assert body["maillaResponse"]["nextAction"] == "ask_followup"
    assert body["maillaResponse"]["location"]["buildingName"] == "Tang Hall"

    res = await client.post(f"/api/triage/{conv_id}/messages", json={"message": "a@b.edu"})
    assert res.status_code == 200
    reply = res.json()
    assert reply["isComplete"] is True
    assert reply["caseNumber"] == "MIT-0001"

    res = await client.get(f"/api/triage/{conv_id}")
    assert res.status_code == 200
    view = res.json()
    assert view["currentPhase"] == "completed"
    assert view["smartCaseId"] == reply["caseId"]
    assert len(view["conversationHistory"]) == 4

    res = await client.post(f"/api/triage/{conv_id}/complete")
    assert res.status_code == 200
    assert res.json()["caseId"] == reply["caseId"]


@pytest.mark.asyncio
async def test_unknown_conversation_is_404(client: httpx.AsyncClient):
    res = await client.post("/api/triage/nope/messages", json={"message": "hello"})
    assert res.status_code == 404
    assert res.json()["error"] == "Triage conversation with id 'nope' not found"

    assert (await client.get("/api/triage/nope")).status_code == 404
    assert (await client.post("/api/triage/nope/complete")).status_code == 404


@pytest.mark.asyncio
async def test_empty_initial_request_is_rejected(client: httpx.AsyncClient):
    res = await client.post("/api/triage/start", json={"studentId": "s1", "orgId": "mit", "initialRequest": ""})
    assert res.status_code == 422


@pytest.mark.asyncio
async def test_start_failure_is_500(client: httpx.AsyncClient, repo, monkeypatch):
    async def boom(*args, **kwargs):
        raise RuntimeError("db down")

    monkeypatch.setattr(repo, "create_triage_conversation", boom)
    res = await client.post("/api/triage/start", json={"studentId": "s1", "orgId": "mit", "initialRequest": "hi"})
    assert res.status_code == 500
    assert res.json()["error"] == "Failed to start triage conversation"
