# test/test_services/test_triage_service.py
import pytest
from sqlalchemy import select

from mailla.core.exceptions import ConversationNotFoundError, LLMError, TriageStartError
from mailla.db.models import SmartCase
from mailla.runtime.nodes.escalate import GAS_MESSAGE
from mailla.runtime.nodes.finalize import REASSURANCE
from mailla.runtime.nodes.mailla_chat import FALLBACK_MESSAGE
from mailla.services.repo import Repo
from mailla.services.triage_service import TriageService, build_case_fields

from fakes import FakeLLMClient, FakeNotifier, make_conversation, tool_args


def _service(repo, settings, replies, notifier=None):
    llm = FakeLLMClient(replies)
    notifier = notifier or FakeNotifier()
    return TriageService(repo, notifier=notifier, llm_client=llm, settings=settings), llm, notifier


async def _cases(session_factory):
    async with session_factory() as s:
        return (await s.execute(select(SmartCase))).scalars().all()


@pytest.mark.asyncio
async def test_start_persists_first_turn(repo: Repo, settings):
    service, llm, _ = _service(
        repo,
        settings,
        [tool_args("Sorry about that! Which building and room are you in?", conversationSlots={"issueSummary": "Leaking sink"})],
    )

    conv_id, resp = await service.start("s1", "mit", "My sink is leaking")

    assert resp.next_action == "ask_followup"
    assert resp.conversation_slots.issue_summary == "Leaking sink"
    assert len(llm.calls) == 1
    assert "This is the initial request." in llm.calls[0]["messages"][-1]["content"]

    conv = await repo.get_triage_conversation(conv_id)
    assert conv.current_phase == "gathering_info"
    assert [t["role"] for t in conv.conversation_history] == ["student", "mailla"]
    assert conv.conversation_history[0]["message"] == "My sink is leaking"
    assert conv.triage_data["issue_summary"] == "Leaking sink"
    assert [a.action for a in await repo.list_audits("mit")] == ["triage.turn"]


@pytest.mark.asyncio
async def test_conversation_runs_to_a_smart_case(repo: Repo, settings, session_factory):
    service, llm, notifier = _service(
        repo,
        settings,
        [
            tool_args("Got it. What's your email?", conversationSlots={"issueSummary": "Leaking sink"}),
            tool_args("Thanks, you're all set!", nextAction="complete_triage"),
        ],
    )

    conv_id, first = await service.start("s1", "mit", "My sink is leaking in Tang Hall room 204")
    assert first.location.building_name == "Tang Hall"
    assert first.location.is_location_confirmed is True

    resp = await service.continue_(conv_id, "sure, it's a@b.edu")

    assert resp.is_complete is True
    assert resp.case_number == "MIT-0001"
    assert resp.student_email == "a@b.edu"
    # prior turns are sent back to the model
    assert [m["content"] for m in llm.calls[1]["messages"][1:3]] == [
        "My sink is leaking in Tang Hall room 204",
        "Got it. What's your email?",
    ]

    conv = await repo.get_triage_conversation(conv_id)
    assert conv.current_phase == "completed"
    assert conv.is_complete is True
    assert conv.smart_case_id == resp.case_id
    assert conv.completed_at is not None
    assert len(conv.conversation_history) == 4

    (case,) = await _cases(session_factory)
    assert case.id == resp.case_id
    assert case.building_name == "Tang Hall"
    assert case.room_number == "204"
    assert case.property_id == "mit-tang-hall"
    assert case.student_email == "a@b.edu"
    assert case.priority == "Medium"
    assert case.reported_by == "s1"
    assert case.metadata_json["triage_conversation_id"] == conv_id

    assert notifier.student[0]["email"] == "a@b.edu"
    assert "MIT-0001" in notifier.student[0]["subject"]
    assert notifier.admins[0]["type"] == "case_created"
    assert notifier.admins[0]["case_id"] == resp.case_id

    actions = [a.action for a in await repo.list_audits("mit")]
    assert actions.count("triage.turn") == 2
    assert actions.count("smart_case.create") == 1


@pytest.mark.asyncio
async def test_completion_is_refused_without_email(repo: Repo, settings, session_factory):
    service, _, notifier = _service(
        repo, settings, [tool_args("Done!", nextAction="complete_triage")]
    )

    conv_id, resp = await service.start("s1", "mit", "Heater broken in Baker House room 12")

    assert resp.next_action == "ask_followup"
    assert resp.is_complete is False
    assert "email address" in resp.message
    assert await _cases(session_factory) == []
    assert notifier.admins == []
    conv = await repo.get_triage_conversation(conv_id)
    assert conv.conversation_history[-1]["next_action"] == "ask_followup"


@pytest.mark.asyncio
async def test_emergency_skips_the_model(repo: Repo, settings, session_factory):
    service, llm, notifier = _service(repo, settings, [])

    conv_id, resp = await service.start("s1", "mit", "I smell gas in Baker House room 12")

    assert llm.calls == []
    assert resp.next_action == "escalate_immediate"
    assert resp.urgency_level == "emergency"
    assert resp.message == GAS_MESSAGE
    assert notifier.admins[0]["type"] == "emergency_escalation"

    conv = await repo.get_triage_conversation(conv_id)
    assert conv.urgency_level == "emergency"
    assert conv.safety_flags == ["emergency_gas_leak"]
    assert conv.triage_data["building_name"] == "Baker House"
    assert [a.action for a in await repo.list_audits("mit")] == ["triage.escalate"]

    result = await service.complete(conv_id)
    (case,) = await _cases(session_factory)
    assert result.case_id == case.id
    assert case.priority == "Critical"


@pytest.mark.asyncio
async def test_model_failure_falls_back(repo: Repo, settings):
    service, _, _ = _service(
        repo,
        settings,
        [tool_args("Is it urgent?", urgencyLevel="urgent"), LLMError("down")],
    )
    conv_id, _ = await service.start("s1", "mit", "The heater makes noise")

    resp = await service.continue_(conv_id, "yes very loud")

    assert resp.message == FALLBACK_MESSAGE
    assert resp.degraded is True
    conv = await repo.get_triage_conversation(conv_id)
    assert conv.urgency_level == "urgent"
    assert conv.conversation_history[-1]["message"] == FALLBACK_MESSAGE


@pytest.mark.asyncio
async def test_continue_unknown_conversation(repo: Repo, settings, session_factory):
    service, llm, notifier = _service(repo, settings, [tool_args()])
    with pytest.raises(ConversationNotFoundError):
        await service.continue_("missing", "I smell gas")
    assert llm.calls == []
    assert notifier.admins == []
    assert notifier.student == []
    assert await _cases(session_factory) == []
    assert await repo.list_audits("mit") == []


@pytest.mark.asyncio
async def test_complete_unknown_conversation(repo: Repo, settings):
    service, _, _ = _service(repo, settings, [])
    with pytest.raises(ConversationNotFoundError):
        await service.complete("missing")


@pytest.mark.asyncio
async def test_failed_case_creation_does_not_fail_the_turn(repo: Repo, settings, monkeypatch):
    async def boom(*args, **kwargs):
        raise RuntimeError("case store unavailable")

    monkeypatch.setattr(repo, "create_smart_case", boom)
    service, _, notifier = _service(repo, settings, [tool_args("All set!", nextAction="complete_triage")])

    conv_id, resp = await service.start("s1", "mit", "Sink leaking in Tang Hall room 204, email a@b.edu")

    assert resp.is_complete is False
    assert resp.case_id is None
    assert resp.message.endswith(REASSURANCE)
    assert notifier.student == []

    conv = await repo.get_triage_conversation(conv_id)
    assert conv.current_phase == "gathering_info"
    assert conv.smart_case_id is None
    assert conv.conversation_history[-1]["message"] == resp.message


@pytest.mark.asyncio
async def test_notification_failures_do_not_undo_the_case(repo: Repo, settings, session_factory):
    service, _, _ = _service(
        repo,
        settings,
        [tool_args("All set!", nextAction="complete_triage")],
        notifier=FakeNotifier(fail_student=True, fail_admins=True),
    )

    conv_id, resp = await service.start("s1", "mit", "Sink leaking in Tang Hall room 204, email a@b.edu")

    assert resp.is_complete is True
    assert len(await _cases(session_factory)) == 1
    conv = await repo.get_triage_conversation(conv_id)
    assert conv.current_phase == "completed"


@pytest.mark.asyncio
async def test_complete_is_idempotent(repo: Repo, settings, session_factory):
    service, _, notifier = _service(repo, settings, [tool_args()])
    conv_id, _ = await service.start("s1", "mit", "Window stuck in Next House room 301")

    first = await service.complete(conv_id)
    second = await service.complete(conv_id)

    assert first.case_id == second.case_id
    assert second.case_number == "MIT-0001"
    assert len(await _cases(session_factory)) == 1
    assert len(notifier.admins) == 1


@pytest.mark.asyncio
async def test_turn_after_completion_keeps_phase(repo: Repo, settings):
    service, _, _ = _service(repo, settings, [tool_args(), tool_args("Anything else?")])
    conv_id, _ = await service.start("s1", "mit", "Window stuck in Next House room 301")
    result = await service.complete(conv_id)

    resp = await service.continue_(conv_id, "thanks!")

    assert resp.is_complete is True
    assert resp.case_id == result.case_id
    conv = await repo.get_triage_conversation(conv_id)
    assert conv.current_phase == "completed"
    assert len(conv.conversation_history) == 4


@pytest.mark.asyncio
async def test_start_failure_is_wrapped(repo: Repo, settings, monkeypatch):
    async def boom(*args, **kwargs):
        raise RuntimeError("db down")

    monkeypatch.setattr(repo, "create_triage_conversation", boom)
    service, _, _ = _service(repo, settings, [])
    with pytest.raises(TriageStartError) as exc_info:
        await service.start("s1", "mit", "hello")
    assert exc_info.value.details == {"student_id": "s1", "org_id": "mit"}


def test_case_fields():
    conv = make_conversation(
        initial_request="The radiator in my room has been clanking loudly every night for a week",
        urgency_level="urgent",
        safety_flags=["urgent_no_heat"],
        triage_data={
            "building_name": "Tang Hall",
            "room_number": "204",
            "issue_summary": "Clanking radiator",
            "student_phone": "617-555-0199",
        },
    )
    fields = build_case_fields(conv, "MIT-0042")
    assert fields["case_number"] == "MIT-0042"
    assert fields["priority"] == "High"
    assert fields["title"].startswith("Maintenance Request: The radiator")
    assert fields["title"].endswith("...")
    assert "Location: Tang Hall, Room 204" in fields["description"]
    assert "Issue: Clanking radiator" in fields["description"]
    assert fields["student_email"] is None
    assert fields["student_phone"] == "617-555-0199"
    assert fields["metadata_json"]["safety_flags"] == ["urgent_no_heat"]


@pytest.mark.asyncio
async def test_email_follow_up_keeps_location(repo: Repo, settings):
    service, _, _ = _service(
        repo,
        settings,
        [
            tool_args("Thanks! What's your email?", urgencyLevel="normal"),
            tool_args("Got it, and a phone number?"),
        ],
    )

    conv_id, resp = await service.start("s1", "org1", "My sink is leaking in Baker House room 12")
    assert resp.urgency_level != "emergency"
    assert resp.location.building_name == "Baker House"
    assert resp.location.room_number == "12"

    resp = await service.continue_(conv_id, "my email is a@b.com")

    assert resp.student_email == "a@b.com"
    conv = await repo.get_triage_conversation(conv_id)
    assert conv.triage_data["building_name"] == "Baker House"
    assert conv.triage_data["room_number"] == "12"
    assert conv.triage_data["student_email"] == "a@b.com"


@pytest.mark.asyncio
async def test_duration_does_not_count_as_room(repo: Repo, settings, session_factory):
    service, _, notifier = _service(repo, settings, [tool_args("All set!", nextAction="complete_triage")])

    conv_id, resp = await service.start("s1", "mit", "Baker House sink leaking for 10 days, email a@b.edu")

    assert resp.is_complete is False
    assert resp.next_action == "ask_followup"
    assert "Which building and room" in resp.message
    assert await _cases(session_factory) == []
    assert notifier.admins == []
    conv = await repo.get_triage_conversation(conv_id)
    assert conv.triage_data["building_name"] == "Baker House"
    assert "room_number" not in conv.triage_data
