# mailla/runtime/nodes/escalate.py
from __future__ import annotations

from typing import Any, Dict

from pocketflow import AsyncNode

from mailla.core.logging import get_logger
from mailla.runtime.nodes.context import extract_contact, extract_location
from mailla.runtime.nodes.safety import SafetyAssessment
from mailla.runtime.nodes.slots import heuristic_slot_updates, merge_triage_data
from mailla.schemas.triage import ConversationSlots, LocationInfo, MaillaResponse

logger = get_logger(__name__)

GAS_MESSAGE = (
    "EMERGENCY - POSSIBLE GAS LEAK\n\n"
    "Immediately:\n"
    "- Leave the building now\n"
    "- Do NOT use electrical switches or phones inside\n"
    "- Call 911 or the gas company emergency line once outside\n"
    "- Do NOT return until authorities say it's safe\n\n"
    "Our on-call team has been alerted."
)

ELECTRICAL_WATER_MESSAGE = (
    "ELECTRICAL HAZARD\n\n"
    "Immediately:\n"
    "- Stay away from the area\n"
    "- Turn off electricity at the circuit breaker only if you can reach it safely\n"
    "- Do NOT touch water near electrical outlets\n"
    "- Call the maintenance emergency line\n\n"
    "Our on-call team has been alerted."
)

GENERIC_MESSAGE = (
    "This sounds like a safety emergency. Please get to a safe place right away and call 911 "
    "if anyone is in danger. Our on-call maintenance team has been alerted and will follow up "
    "with you. Which building and room are you in?"
)


def escalation_message(flags: list[str]) -> str:
    if any("gas" in f or "carbon_monoxide" in f for f in flags):
        return GAS_MESSAGE
    if any("water_near_outlet" in f for f in flags):
        return ELECTRICAL_WATER_MESSAGE
    return GENERIC_MESSAGE


class EmergencyEscalationNode(AsyncNode):
    """Deterministic reply for emergency-tier messages; the model is not consulted.
    Prep: gather safety result, message and persisted slots
    Exec: build the escalation reply and merge any location the student gave (pure)
    Post: commit to shared, alert admins (best-effort), route
    """

    async def prep_async(self, shared: Dict[str, Any]) -> Dict[str, Any]:
        conversation = shared["conversation"]
        return {
            "safety": shared.get("safety") or SafetyAssessment(),
            "student_message": str(shared.get("student_message") or ""),
            "existing": dict(conversation.triage_data or {}),
        }

    async def exec_async(self, prep: Dict[str, Any]) -> Dict[str, Any]:
        safety: SafetyAssessment = prep["safety"]
        email, phone = extract_contact(prep["student_message"])
        triage_data = merge_triage_data(
            prep["existing"],
            gap_fill=heuristic_slot_updates(
                extract_location(prep["student_message"]),
                None,
                {"student_email": email, "student_phone": phone},
            ),
        )
        response = MaillaResponse(
            message=escalation_message(safety.flags),
            urgency_level="emergency",
            safety_flags=list(safety.flags),
            next_action="escalate_immediate",
            conversation_slots=ConversationSlots(**{k: triage_data.get(k) for k in ConversationSlots.model_fields}),
            location=LocationInfo(
                building_name=triage_data.get("building_name"),
                room_number=triage_data.get("room_number"),
                is_location_confirmed=bool(triage_data.get("is_location_confirmed")),
            ),
            student_email=triage_data.get("student_email"),
            student_phone=triage_data.get("student_phone"),
        )
        return {"response": response, "triage_data": triage_data}

    async def post_async(self, shared: Dict[str, Any], prep: Dict[str, Any], exec_res: Dict[str, Any]) -> str:
        shared["mailla_response"] = exec_res["response"]
        shared["triage_data"] = exec_res["triage_data"]

        conversation = shared["conversation"]
        notifier = shared.get("notifier")
        logger.warning(
            "Emergency escalation",
            extra={"conversation_id": conversation.id, "flags": prep["safety"].flags},
        )
        if notifier is not None:
            data = exec_res["triage_data"]
            try:
                await notifier.notify_admins(
                    {
                        "type": "emergency_escalation",
                        "subject": "EMERGENCY maintenance report",
                        "message": (
                            f"{data.get('building_name') or 'Unknown building'} "
                            f"{data.get('room_number') or ''}: {prep['student_message']}"
                        ).strip(),
                        "conversation_id": conversation.id,
                        "safety_flags": prep["safety"].flags,
                        "urgency_level": "emergency",
                    },
                    conversation.org_id,
                )
            except Exception:
                logger.exception("Emergency admin notification failed", extra={"conversation_id": conversation.id})
        return "ok"
