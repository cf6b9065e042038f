# mailla/services/triage_service.py
from __future__ import annotations

from typing import Any, Callable, Dict, List, Optional, Tuple

from pocketflow import AsyncFlow

from mailla.config import Settings, get_settings
from mailla.core.exceptions import (
    ConversationNotFoundError,
    TriageContinueError,
    TriageStartError,
)
from mailla.core.logging import get_logger
from mailla.db.models import PHASE_COMPLETED, PHASE_GATHERING, TriageConversation, utcnow
from mailla.runtime.flow import make_triage_flow
from mailla.schemas.triage import CompletionResult, MaillaResponse
from mailla.services.notifier import Notifier
from mailla.services.repo import Repo

logger = get_logger(__name__)

_PRIORITY_BY_URGENCY = {
    "emergency": "Critical",
    "urgent": "High",
    "normal": "Medium",
    "low": "Low",
}


def _truncate(text: str, limit: int) -> str:
    text = (text or "").strip()
    return text if len(text) <= limit else text[:limit].rstrip() + "..."


def build_case_fields(conversation: TriageConversation, case_number: str) -> Dict[str, Any]:
    """SmartCase columns derived from the conversation and its best-known slots."""
    data = dict(conversation.triage_data or {})
    building = data.get("building_name")
    room = data.get("room_number")

    description = [conversation.initial_request.strip()]
    if building or room:
        location = building or "Unknown building"
        if room:
            location += f", Room {room}"
        description.append(f"Location: {location}")
    details = [
        f"{label}: {data[key]}"
        for key, label in (("issue_summary", "Issue"), ("timeline", "Timeline"), ("severity", "Severity"))
        if data.get(key)
    ]
    if details:
        description.append("\n".join(details))

    return {
        "org_id": conversation.org_id,
        "case_number": case_number,
        "title": f"Maintenance Request: {_truncate(conversation.initial_request, 50)}",
        "description": "\n\n".join(description),
        "category": "maintenance",
        "priority": _PRIORITY_BY_URGENCY.get(conversation.urgency_level, "Medium"),
        "status": "New",
        "reported_by": conversation.student_id,
        "building_name": building,
        "room_number": room,
        "property_id": data.get("property_id"),
        "student_email": data.get("student_email"),
        "student_phone": data.get("student_phone"),
        "metadata_json": {
            "triage_conversation_id": conversation.id,
            "safety_flags": list(conversation.safety_flags or []),
            "triage_data": data,
            "urgency_level": conversation.urgency_level,
        },
    }


class TriageService:
    """
    Orchestrates triage conversations: start, continue, complete.

    Each turn runs the triage flow over a `shared` dict; persistence, the
    model client and notifications are injected so tests can swap them.
    """

    def __init__(
        self,
        repo: Repo,
        *,
        notifier: Optional[Notifier] = None,
        llm_client: Any = None,
        settings: Optional[Settings] = None,
        flow_factory: Callable[[Settings], AsyncFlow] = make_triage_flow,
    ) -> None:
        self.repo = repo
        self.notifier = notifier
        self.llm_client = llm_client
        self.settings = settings or get_settings()
        self._flow_factory = flow_factory

    # ---------------------------
    # Entry points
    # ---------------------------
    async def start(self, student_id: str, org_id: str, initial_request: str) -> Tuple[str, MaillaResponse]:
        """Create a conversation and process its first turn. Returns (conversation_id, response)."""
        logger.info("Starting triage", extra={"student_id": student_id, "org_id": org_id})
        try:
            conversation_id = await self.repo.create_triage_conversation(
                {
                    "student_id": student_id,
                    "org_id": org_id,
                    "initial_request": initial_request,
                    "current_phase": PHASE_GATHERING,
                    "urgency_level": "normal",
                    "safety_flags": [],
                    "conversation_history": [],
                    "triage_data": {},
                }
            )
            conversation = await self.repo.get_triage_conversation(conversation_id)
            if conversation is None:
                raise ConversationNotFoundError(conversation_id)
            response = await self._run_turn(conversation, initial_request, None, is_initial=True)
        except Exception as e:
            logger.exception("Triage start failed", extra={"student_id": student_id, "org_id": org_id})
            raise TriageStartError({"student_id": student_id, "org_id": org_id}) from e

        logger.info(
            "Triage started",
            extra={"conversation_id": conversation_id, "urgency_level": response.urgency_level},
        )
        return conversation_id, response

    async def continue_(
        self,
        conversation_id: str,
        student_message: str,
        media_urls: Optional[List[str]] = None,
    ) -> MaillaResponse:
        try:
            conversation = await self.repo.get_triage_conversation(conversation_id)
        except Exception as e:
            logger.exception("Could not load conversation", extra={"conversation_id": conversation_id})
            raise TriageContinueError({"conversation_id": conversation_id}) from e
        if conversation is None:
            raise ConversationNotFoundError(conversation_id)

        try:
            response = await self._run_turn(conversation, student_message, media_urls, is_initial=False)
        except Exception as e:
            logger.exception("Triage turn failed", extra={"conversation_id": conversation_id})
            raise TriageContinueError({"conversation_id": conversation_id}) from e

        logger.info(
            "Triage turn processed",
            extra={
                "conversation_id": conversation_id,
                "urgency_level": response.urgency_level,
                "next_action": response.next_action,
                "is_complete": response.is_complete,
            },
        )
        return response

    async def complete(self, conversation_id: str) -> CompletionResult:
        """Materialize the smart case and notify. Idempotent once completed."""
        conversation = await self.repo.get_triage_conversation(conversation_id)
        if conversation is None:
            raise ConversationNotFoundError(conversation_id)

        if conversation.current_phase == PHASE_COMPLETED and conversation.smart_case_id:
            case = await self.repo.get_smart_case(conversation.smart_case_id)
            return CompletionResult(
                conversation_id=conversation_id,
                case_id=conversation.smart_case_id,
                case_number=case.case_number if case else None,
                message="Triage was already completed.",
                triage_data=dict(conversation.triage_data or {}),
                safety_flags=list(conversation.safety_flags or []),
            )

        async with self.repo.transaction() as s:
            case_number = await self.repo.next_case_number(
                conversation.org_id, self.settings.case_number_prefix, session=s
            )
            fields = build_case_fields(conversation, case_number)
            case_id = await self.repo.create_smart_case(fields, session=s)
            await self.repo.update_triage_conversation(
                conversation_id,
                {
                    "current_phase": PHASE_COMPLETED,
                    "is_complete": True,
                    "smart_case_id": case_id,
                    "completed_at": utcnow(),
                },
                session=s,
            )
            await self.repo.audit(
                conversation.org_id,
                "smart_case.create",
                "smart_case",
                case_id,
                {"conversation_id": conversation_id, "case_number": case_number, "priority": fields["priority"]},
                session=s,
            )
        logger.info("Smart case created", extra={"conversation_id": conversation_id, "case_id": case_id})

        await self._notify_case_created(conversation, case_id, case_number, fields)

        return CompletionResult(
            conversation_id=conversation_id,
            case_id=case_id,
            case_number=case_number,
            triage_data=dict(conversation.triage_data or {}),
            safety_flags=list(conversation.safety_flags or []),
        )

    async def get_conversation(self, conversation_id: str) -> TriageConversation:
        conversation = await self.repo.get_triage_conversation(conversation_id)
        if conversation is None:
            raise ConversationNotFoundError(conversation_id)
        return conversation

    # ---------------------------
    # Internals
    # ---------------------------
    async def _run_turn(
        self,
        conversation: TriageConversation,
        student_message: str,
        media_urls: Optional[List[str]],
        *,
        is_initial: bool,
    ) -> MaillaResponse:
        shared: Dict[str, Any] = {
            "repo": self.repo,
            "notifier": self.notifier,
            "llm_client": self.llm_client,
            "finalizer": self.complete,
            "conversation": conversation,
            "conversation_id": conversation.id,
            "student_message": student_message,
            "media_urls": media_urls or [],
            "is_initial": is_initial,
        }
        flow = self._flow_factory(self.settings)
        await flow.run_async(shared)
        return shared["mailla_response"]

    async def _notify_case_created(
        self,
        conversation: TriageConversation,
        case_id: str,
        case_number: str,
        fields: Dict[str, Any],
    ) -> None:
        """Best-effort: failures are logged and never undo the case."""
        if self.notifier is None:
            return
        email = fields.get("student_email")
        location = " ".join(x for x in (fields.get("building_name"), fields.get("room_number")) if x) or "Unknown location"

        if email:
            body = (
                f"Your maintenance request has been submitted as case {case_number}.\n\n"
                f"Issue: {conversation.initial_request}\n"
                f"Location: {location}\n"
                f"Priority: {fields['priority']}\n\n"
                "We'll update you as soon as someone is assigned."
            )
            try:
                await self.notifier.notify_student(
                    email, f"Maintenance Request Submitted - Case {case_number}", body, conversation.org_id
                )
            except Exception:
                logger.exception("Student notification failed", extra={"case_id": case_id})

        try:
            await self.notifier.notify_admins(
                {
                    "type": "case_created",
                    "subject": f"New maintenance case: {case_number}",
                    "message": f"{location}: {conversation.initial_request}",
                    "case_id": case_id,
                    "case_number": case_number,
                    "conversation_id": conversation.id,
                    "urgency_level": conversation.urgency_level,
                },
                conversation.org_id,
            )
        except Exception:
            logger.exception("Admin notification failed", extra={"case_id": case_id})
