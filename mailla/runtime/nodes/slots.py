# mailla/runtime/nodes/slots.py
from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional

from pocketflow import AsyncNode

from mailla.runtime.nodes.context import ContextAnalysis, LocationMatch, find_building
from mailla.runtime.nodes.safety import SafetyAssessment
from mailla.schemas.triage import ConversationSlots, LocationInfo, MaillaResponse

SLOT_KEYS = (
    "building_name",
    "room_number",
    "issue_summary",
    "timeline",
    "severity",
    "student_email",
    "student_phone",
    "is_location_confirmed",
    "property_id",
)


def _filled(value: Any) -> bool:
    if isinstance(value, str):
        return bool(value.strip())
    return value is not None


def merge_triage_data(
    existing: Optional[Dict[str, Any]],
    authoritative: Optional[Dict[str, Any]] = None,
    gap_fill: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """
    Merge one turn's slot values into the persisted bag.

    `authoritative` (the model's own values) overwrites when non-empty;
    `gap_fill` (local heuristics) only fills slots that are still empty.
    Empty values never erase anything, so applying an update twice is a no-op.
    """
    merged = dict(existing or {})
    for key, value in (authoritative or {}).items():
        if key in SLOT_KEYS and _filled(value):
            merged[key] = value.strip() if isinstance(value, str) else value
    for key, value in (gap_fill or {}).items():
        if key in SLOT_KEYS and _filled(value) and not _filled(merged.get(key)):
            merged[key] = value.strip() if isinstance(value, str) else value

    building = find_building(merged.get("building_name"))
    if building is not None:
        merged["building_name"] = building.name
        merged["property_id"] = building.property_id
    elif merged.get("building_name") != (existing or {}).get("building_name"):
        # a building outside the gazetteer has no known property
        merged.pop("property_id", None)
    if _filled(merged.get("building_name")) and _filled(merged.get("room_number")):
        merged["is_location_confirmed"] = True
    return merged


def model_slot_updates(response: MaillaResponse) -> Dict[str, Any]:
    """Slot values the model returned this turn; location wins over conversationSlots."""
    updates: Dict[str, Any] = {}
    if response.conversation_slots is not None:
        updates.update(response.conversation_slots.model_dump(exclude_none=True))
    if response.location is not None:
        updates.update({k: v for k, v in response.location.model_dump(exclude_none=True).items() if _filled(v)})
    if response.student_email:
        updates["student_email"] = response.student_email
    if response.student_phone:
        updates["student_phone"] = response.student_phone
    return updates


def heuristic_slot_updates(
    location: Optional[LocationMatch],
    context: Optional[ContextAnalysis],
    contact: Optional[Dict[str, Optional[str]]],
) -> Dict[str, Any]:
    updates: Dict[str, Any] = {}
    if location is not None:
        updates["building_name"] = location.building_name
        updates["room_number"] = location.room_number
    if context is not None:
        updates["timeline"] = context.timeline
        updates["severity"] = context.severity
    if contact:
        updates.update(contact)
    return {k: v for k, v in updates.items() if _filled(v)}


def has_location(data: Dict[str, Any]) -> bool:
    return _filled(data.get("building_name")) and _filled(data.get("room_number"))


def next_missing_slot(data: Dict[str, Any], initial_request: Optional[str] = None) -> Optional[str]:
    """Highest-priority missing item: location, issue, email, then phone."""
    if not has_location(data):
        return "location"
    if not (_filled(data.get("issue_summary")) or _filled(initial_request)):
        return "issue"
    if not _filled(data.get("student_email")):
        return "email"
    if not _filled(data.get("student_phone")):
        return "phone"
    return None


def can_complete(data: Dict[str, Any], initial_request: Optional[str] = None) -> bool:
    """Location, issue and an email are required before a case may be created."""
    missing = next_missing_slot(data, initial_request)
    return missing is None or missing == "phone"


def dedup(items: Iterable[str]) -> List[str]:
    out: List[str] = []
    for x in items:
        s = str(x).strip()
        if s and s not in out:
            out.append(s)
    return out


class SlotMergeNode(AsyncNode):
    """
    Fold the model's response and the local heuristics into the slot bag.
    - prep_async: gather response, persisted slots and heuristic results
    - exec_async: pure merge
    - post_async: publish merged slots and the enriched response
    """

    async def prep_async(self, shared: Dict[str, Any]) -> Dict[str, Any]:
        conversation = shared["conversation"]
        return {
            "response": shared["mailla_response"],
            "existing": dict(conversation.triage_data or {}),
            "location": shared.get("location"),
            "context": shared.get("context"),
            "contact": shared.get("contact"),
            "safety": shared.get("safety") or SafetyAssessment(),
        }

    async def exec_async(self, prep: Dict[str, Any]) -> Dict[str, Any]:
        response: MaillaResponse = prep["response"]
        merged = merge_triage_data(
            prep["existing"],
            model_slot_updates(response),
            heuristic_slot_updates(prep["location"], prep["context"], prep["contact"]),
        )
        enriched = response.model_copy(
            update={
                "conversation_slots": ConversationSlots(
                    **{k: merged.get(k) for k in ConversationSlots.model_fields}
                ),
                "location": LocationInfo(
                    building_name=merged.get("building_name"),
                    room_number=merged.get("room_number"),
                    is_location_confirmed=bool(merged.get("is_location_confirmed")),
                ),
                "student_email": merged.get("student_email"),
                "student_phone": merged.get("student_phone"),
                "safety_flags": dedup([*response.safety_flags, *prep["safety"].flags]),
            }
        )
        return {"triage_data": merged, "response": enriched}

    async def post_async(self, shared: Dict[str, Any], prep: Dict[str, Any], exec_res: Dict[str, Any]) -> str:
        shared["triage_data"] = exec_res["triage_data"]
        shared["mailla_response"] = exec_res["response"]
        return "ok"
