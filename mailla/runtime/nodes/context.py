# mailla/runtime/nodes/context.py
from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Pattern, Tuple

from pocketflow import AsyncNode

# (alias pattern, canonical name, property id). Iteration order decides ties.
_BUILDINGS = [
    (r"senior house", "Senior House", "mit-senior-house"),
    (r"baker(?: house)?", "Baker House", "mit-baker-house"),
    (r"burton[\s-]?conner", "Burton-Conner", "mit-burton-conner"),
    (r"tang(?: hall)?", "Tang Hall", "mit-tang-hall"),
    (r"simmons(?: hall)?", "Simmons Hall", "mit-simmons-hall"),
    (r"mccormick(?: hall)?", "McCormick Hall", "mit-mccormick-hall"),
    (r"next house", "Next House", "mit-next-house"),
    (r"new house", "New House", "mit-new-house"),
    (r"macgregor(?: house)?", "MacGregor House", "mit-macgregor-house"),
    (r"random hall", "Random Hall", "mit-random-hall"),
    (r"westgate", "Westgate", "mit-westgate"),
    (r"ashdown(?: house)?", "Ashdown House", "mit-ashdown-house"),
    (r"sidney[\s-]?pacific", "Sidney-Pacific", "mit-sidney-pacific"),
]


@dataclass(frozen=True)
class Building:
    pattern: Pattern[str]
    name: str
    property_id: str


DEFAULT_GAZETTEER: List[Building] = [
    Building(re.compile(rf"\b{p}\b", re.I), name, pid) for p, name, pid in _BUILDINGS
]

_ROOM_PATTERNS = [
    re.compile(r"\b(?:room|unit|apt\.?|apartment)\s*#?\s*(\d+[a-z]?)\b", re.I),
    re.compile(r"(?:\brm\.?|#)\s*(\d+[a-z]?)\b", re.I),
    re.compile(r"\b(\d{2,4}[a-z]?)\b(?!\s*(?:days?|weeks?|hours?|minutes?|months?|years?|mins?|hrs?)\b)", re.I),
]
_UNIT_RE = re.compile(r"\bunit\s+(\d+[a-z]?)\b", re.I)
_EMAIL_RE = re.compile(r"[\w.+-]+@[\w-]+(?:\.[\w-]+)+")
_PHONE_RE = re.compile(r"(?:\+?1[\s.-]?)?\(?\d{3}\)?[\s.-]?\d{3}[\s.-]?\d{4}\b")

_URGENT_WORDS = (
    "urgent", "asap", "immediately", "emergency", "right away",
    "broken", "not working", "leaking", "flooding",
)
_TIMELINE_CUES = [
    (("yesterday", "last night"), "started recently"),
    (("week", "days"), "ongoing for days"),
]
_SEVERITY_CUES = [
    (("completely", "totally", "not working at all"), "complete failure"),
    (("little bit", "slightly", "sometimes"), "intermittent issue"),
]


@dataclass(frozen=True)
class LocationMatch:
    building_name: Optional[str] = None
    room_number: Optional[str] = None
    property_id: Optional[str] = None
    confidence: float = 0.0
    reasoning: str = ""

    @property
    def found(self) -> bool:
        return bool(self.building_name or self.room_number)


@dataclass(frozen=True)
class ContextAnalysis:
    inferred_urgency: str = "normal"
    timeline_cues: List[str] = field(default_factory=list)
    severity_cues: List[str] = field(default_factory=list)

    @property
    def timeline(self) -> Optional[str]:
        return ", ".join(self.timeline_cues) or None

    @property
    def severity(self) -> Optional[str]:
        return ", ".join(self.severity_cues) or None


def analyze_message_context(text: str) -> ContextAnalysis:
    """Advisory urgency plus timeline/severity cues. Never decides urgency on its own."""
    lower = (text or "").lower()
    timeline = [cue for words, cue in _TIMELINE_CUES if any(w in lower for w in words)]
    severity = [cue for words, cue in _SEVERITY_CUES if any(w in lower for w in words)]
    urgent = any(w in lower for w in _URGENT_WORDS)
    return ContextAnalysis(
        inferred_urgency="urgent" if urgent else "normal",
        timeline_cues=timeline,
        severity_cues=severity,
    )


def find_building(name: Optional[str], gazetteer: List[Building] | None = None) -> Optional[Building]:
    if not name:
        return None
    for b in gazetteer or DEFAULT_GAZETTEER:
        if b.name.lower() == name.strip().lower() or b.pattern.search(name):
            return b
    return None


def extract_location(text: str, gazetteer: List[Building] | None = None) -> LocationMatch:
    text = text or ""
    building: Optional[Building] = None
    room: Optional[str] = None
    confidence = 0.0

    for b in gazetteer or DEFAULT_GAZETTEER:
        if b.pattern.search(text):
            building = b
            confidence += 0.8
            break

    # contact details must not be read as room numbers
    scrubbed = _PHONE_RE.sub(" ", _EMAIL_RE.sub(" ", text))
    for pattern in _ROOM_PATTERNS:
        m = pattern.search(scrubbed)
        if m:
            room = m.group(1)
            confidence += 0.5
            break

    unit = _UNIT_RE.search(scrubbed)
    if unit:
        room = unit.group(1)
        confidence += 0.4

    return LocationMatch(
        building_name=building.name if building else None,
        room_number=room,
        property_id=building.property_id if building else None,
        confidence=round(confidence, 2),
        reasoning=f"Detected building: {building.name if building else 'none'}, room/unit: {room or 'none'}",
    )


def extract_contact(text: str) -> Tuple[Optional[str], Optional[str]]:
    """(email, phone) found in free text, either may be None."""
    text = text or ""
    email = _EMAIL_RE.search(text)
    phone = _PHONE_RE.search(_EMAIL_RE.sub(" ", text))
    return (email.group(0) if email else None, phone.group(0).strip() if phone else None)


class ContextAnalysisNode(AsyncNode):
    """Runs the local heuristics over the student's message; results are advisory."""

    def __init__(self, gazetteer: List[Building] | None = None, **kwargs):
        super().__init__(**kwargs)
        self.gazetteer = gazetteer

    async def prep_async(self, shared: Dict[str, Any]) -> str:
        return str(shared.get("student_message") or "")

    async def exec_async(self, prep: str) -> Dict[str, Any]:
        email, phone = extract_contact(prep)
        return {
            "context": analyze_message_context(prep),
            "location": extract_location(prep, self.gazetteer),
            "contact": {"student_email": email, "student_phone": phone},
        }

    async def post_async(self, shared: Dict[str, Any], prep: str, exec_res: Dict[str, Any]) -> str:
        shared["context"] = exec_res["context"]
        shared["location"] = exec_res["location"]
        shared["contact"] = exec_res["contact"]
        return "ok"
