# mailla/schemas/triage.py
from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

UrgencyLevel = Literal["emergency", "urgent", "normal", "low"]
NextAction = Literal[
    "ask_followup",
    "request_media",
    "escalate_immediate",
    "complete_triage",
    "recommend_diy",
    "self_resolved",
]


class CamelModel(BaseModel):
    """Snake-case in Python, camelCase on the wire (model tool call and HTTP)."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ConversationSlots(CamelModel):
    building_name: Optional[str] = None
    room_number: Optional[str] = None
    issue_summary: Optional[str] = None
    timeline: Optional[str] = None
    severity: Optional[str] = None


class LocationInfo(CamelModel):
    building_name: Optional[str] = None
    room_number: Optional[str] = None
    is_location_confirmed: Optional[bool] = None


class MaillaResponse(CamelModel):
    """One assistant turn, as returned by the model tool call and enriched locally."""
    message: str
    urgency_level: UrgencyLevel = "normal"
    safety_flags: List[str] = Field(default_factory=list)
    next_action: NextAction = "ask_followup"
    conversation_slots: Optional[ConversationSlots] = None
    location: Optional[LocationInfo] = None
    student_email: Optional[str] = None
    student_phone: Optional[str] = None
    is_complete: bool = False
    case_id: Optional[str] = None
    case_number: Optional[str] = None
    # true when the model could not be reached and a fallback message was used
    degraded: bool = False


class CompletionResult(CamelModel):
    success: bool = True
    conversation_id: str
    case_id: str
    case_number: Optional[str] = None
    message: str = "Triage completed successfully. A maintenance case has been created."
    triage_data: Dict[str, Any] = Field(default_factory=dict)
    safety_flags: List[str] = Field(default_factory=list)


# -------------------------
# HTTP payloads
# -------------------------

class StartTriageIn(CamelModel):
    student_id: str
    org_id: str
    initial_request: str = Field(min_length=1)


class StartTriageOut(CamelModel):
    conversation_id: str
    mailla_response: MaillaResponse


class ContinueTriageIn(CamelModel):
    message: str = Field(min_length=1)
    media_urls: List[str] = Field(default_factory=list)


class ConversationView(CamelModel):
    id: str
    student_id: str
    org_id: str
    initial_request: str
    current_phase: str
    urgency_level: str
    safety_flags: List[str] = Field(default_factory=list)
    conversation_history: List[Dict[str, Any]] = Field(default_factory=list)
    triage_data: Dict[str, Any] = Field(default_factory=dict)
    smart_case_id: Optional[str] = None
    is_complete: bool = False
