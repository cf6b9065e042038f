# mailla/runtime/nodes/prompt.py
from __future__ import annotations

from typing import Any, Dict, List, Optional

from pocketflow import AsyncNode

from mailla.runtime.nodes.context import ContextAnalysis, LocationMatch
from mailla.runtime.nodes.safety import SafetyAssessment
from mailla.runtime.nodes.slots import has_location, next_missing_slot

SYSTEM_PROMPT = (
    "You are Mailla, the campus housing maintenance assistant. You help students with maintenance "
    "issues through a short, friendly conversation.\n\n"
    "Most requests are routine dorm issues: dripping faucets, heating too hot or cold, small repairs. "
    "True emergencies are active fire, gas smell, electrical sparking or shock, major flooding, complete "
    "loss of heat in winter and other immediate safety hazards. Do not over-react to normal issues.\n\n"
    "Your job is to gather the location (building and room), a description of the issue, and the "
    "student's contact details (email for updates, phone for urgent issues).\n"
    "Confirm the location once you have it: \"Just to confirm, you're in [Building] room [Number]?\"\n"
    "Only choose nextAction=complete_triage once you have location, issue and email.\n\n"
    "Ask ONE question at a time, keep it conversational, and acknowledge what the student shared. "
    "Always answer by calling the triage_response function."
)

_MISSING_QUESTIONS = {
    "location": "Which building and room are you in?",
    "issue": "Could you describe the problem in a bit more detail?",
    "email": "What's your email address so our maintenance team can send you updates?",
    "phone": "What's the best phone number to reach you if it's urgent?",
}

_KNOWN_LABELS = [
    ("building_name", "Building"),
    ("room_number", "Room"),
    ("issue_summary", "Issue"),
    ("timeline", "Timeline"),
    ("severity", "Severity"),
]


def missing_item_question(item: Optional[str]) -> Optional[str]:
    return _MISSING_QUESTIONS.get(item or "")


def _mark(ok: Any) -> str:
    return "known" if ok else "missing"


def build_context_prompt(
    student_message: str,
    *,
    is_initial: bool,
    triage_data: Dict[str, Any],
    initial_request: str = "",
    safety: Optional[SafetyAssessment] = None,
    location: Optional[LocationMatch] = None,
    context: Optional[ContextAnalysis] = None,
) -> str:
    """Deterministic per-turn instructions for the model."""
    lines: List[str] = [f'Student message: "{student_message}"', ""]

    cues: List[str] = []
    if context is not None:
        if context.timeline_cues:
            cues.append(f"Timeline cues: {', '.join(context.timeline_cues)}")
        if context.severity_cues:
            cues.append(f"Severity cues: {', '.join(context.severity_cues)}")
        if context.inferred_urgency != "normal":
            cues.append(f"Wording suggests: {context.inferred_urgency}")
    if cues:
        lines.append("Context:")
        lines.extend(f"- {c}" for c in cues)
        lines.append("")

    if location is not None and location.found:
        lines.append(
            f'Detected location: Building="{location.building_name or "unknown"}", '
            f'Room="{location.room_number or "unknown"}" (confidence: {location.confidence})'
        )
        lines.append("")

    if is_initial:
        lines.append(
            "This is the initial request. Give a warm greeting, acknowledge the issue, "
            "and start gathering the most important missing information."
        )
    else:
        lines.append("This is a follow-up message in an ongoing conversation.")
        known = [f"- {label}: {triage_data[key]}" for key, label in _KNOWN_LABELS if triage_data.get(key)]
        if known:
            lines.append("What we already know:")
            lines.extend(known)

    has_issue = triage_data.get("issue_summary") or initial_request
    lines.append("")
    lines.append(
        f"Checklist: Location={_mark(has_location(triage_data))}, Issue={_mark(has_issue)}, "
        f"Email={_mark(triage_data.get('student_email'))}, Phone={_mark(triage_data.get('student_phone'))}"
    )
    if triage_data.get("is_location_confirmed"):
        lines.append("Location is confirmed.")

    missing = next_missing_slot(triage_data, initial_request)
    if missing:
        lines.append(f"Next missing item: {missing}. Ask for exactly this one item.")
    else:
        lines.append("Everything required is known. You may complete the triage.")

    if safety is not None and safety.flags:
        lines.append(
            f"Safety context: {', '.join(safety.flags)} - use your judgment to assess if this is truly urgent."
        )

    lines.append("")
    lines.append("Remember: ONE question at a time, be conversational, acknowledge what they shared.")
    return "\n".join(lines)


def window_history(history: List[Dict[str, Any]], window: int) -> List[Dict[str, str]]:
    """Last `window` turns as chat messages (student -> user, mailla -> assistant)."""
    if window <= 0:
        return []
    out: List[Dict[str, str]] = []
    for turn in history[-window:]:
        text = turn.get("message")
        if not text:
            continue
        role = "assistant" if turn.get("role") == "mailla" else "user"
        out.append({"role": role, "content": str(text)})
    return out


class PromptBuildNode(AsyncNode):
    """Assemble system prompt, windowed history and the per-turn context prompt."""

    def __init__(self, *, history_window: int = 12, **kwargs) -> None:
        super().__init__(**kwargs)
        self.history_window = history_window

    async def prep_async(self, shared: Dict[str, Any]) -> Dict[str, Any]:
        conversation = shared["conversation"]
        return {
            "student_message": str(shared.get("student_message") or ""),
            "is_initial": bool(shared.get("is_initial")),
            "history": list(conversation.conversation_history or []),
            "triage_data": dict(conversation.triage_data or {}),
            "initial_request": conversation.initial_request,
            "safety": shared.get("safety"),
            "location": shared.get("location"),
            "context": shared.get("context"),
        }

    async def exec_async(self, prep: Dict[str, Any]) -> List[Dict[str, str]]:
        prompt = build_context_prompt(
            prep["student_message"],
            is_initial=prep["is_initial"],
            triage_data=prep["triage_data"],
            initial_request=prep["initial_request"],
            safety=prep["safety"],
            location=prep["location"],
            context=prep["context"],
        )
        messages: List[Dict[str, str]] = [{"role": "system", "content": SYSTEM_PROMPT}]
        messages.extend(window_history(prep["history"], self.history_window))
        messages.append({"role": "user", "content": prompt})
        return messages

    async def post_async(self, shared: Dict[str, Any], prep: Dict[str, Any], exec_res: List[Dict[str, str]]) -> str:
        shared["llm_messages"] = exec_res
        return "ok"
