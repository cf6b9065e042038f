# mailla/runtime/nodes/mailla_chat.py
from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional

from pocketflow import AsyncNode

from mailla.core.logging import get_logger
from mailla.schemas.triage import MaillaResponse
from mailla.services.llm_client import OpenAIChatClient

logger = get_logger(__name__)

_SLOT_PROPS = {
    "buildingName": {"type": "string"},
    "roomNumber": {"type": "string"},
    "issueSummary": {"type": "string"},
    "timeline": {"type": "string"},
    "severity": {"type": "string"},
}

TRIAGE_TOOL: Dict[str, Any] = {
    "type": "function",
    "function": {
        "name": "triage_response",
        "description": "Generate structured maintenance triage response",
        "parameters": {
            "type": "object",
            "properties": {
                "message": {"type": "string", "description": "Response to the student"},
                "urgencyLevel": {"type": "string", "enum": ["emergency", "urgent", "normal", "low"]},
                "safetyFlags": {"type": "array", "items": {"type": "string"}},
                "nextAction": {
                    "type": "string",
                    "enum": [
                        "ask_followup",
                        "request_media",
                        "escalate_immediate",
                        "complete_triage",
                        "recommend_diy",
                        "self_resolved",
                    ],
                },
                "conversationSlots": {"type": "object", "properties": _SLOT_PROPS},
                "studentEmail": {"type": "string", "description": "Student's email address for updates"},
                "studentPhone": {"type": "string", "description": "Student's phone number for urgent notifications"},
                "location": {
                    "type": "object",
                    "properties": {
                        "buildingName": {"type": "string"},
                        "roomNumber": {"type": "string"},
                        "isLocationConfirmed": {"type": "boolean"},
                    },
                },
            },
            "required": ["message", "urgencyLevel", "safetyFlags", "nextAction"],
        },
    },
}

_LOCAL_FIELDS = ("isComplete", "is_complete", "caseId", "case_id", "caseNumber", "case_number", "degraded")

FALLBACK_MESSAGE = (
    "I'm having technical difficulties right now. Can you help me with a few more details? "
    "What's your email address so our maintenance team can contact you?"
)


class MaillaChatNode(AsyncNode):
    """
    One model call per turn with a forced `triage_response` tool call.
    Any failure (transport, timeout, malformed arguments) falls back to a fixed
    message; there is no retry here.
    """

    def __init__(self, *, temperature: float = 0.7, timeout: Optional[float] = 30.0, **kwargs) -> None:
        super().__init__(**kwargs)
        self.temperature = temperature
        self.timeout = timeout

    async def prep_async(self, shared: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "messages": shared["llm_messages"],
            "client": shared.get("llm_client"),
            "conversation_id": shared.get("conversation_id"),
        }

    async def exec_async(self, prep: Dict[str, Any]) -> Dict[str, Any]:
        client = prep["client"]
        if client is None:
            # no shared client configured: one short-lived client for this call
            own = OpenAIChatClient()
            try:
                args = await self._call(own, prep["messages"])
            finally:
                await own.aclose()
        else:
            args = await self._call(client, prep["messages"])
        # completion state is decided locally, never by the model
        args = {k: v for k, v in args.items() if k not in _LOCAL_FIELDS}
        return {"response": MaillaResponse.model_validate(args)}

    async def _call(self, client: Any, messages: List[Dict[str, Any]]) -> Dict[str, Any]:
        call = client.tool_call(messages=messages, tool=TRIAGE_TOOL, temperature=self.temperature)
        return await asyncio.wait_for(call, timeout=self.timeout)

    async def exec_fallback_async(self, prep: Dict[str, Any], exc: Exception) -> Dict[str, Any]:
        logger.error(
            "Model call failed, using fallback reply",
            extra={"conversation_id": prep.get("conversation_id"), "error": repr(exc)},
        )
        return {
            "response": MaillaResponse(
                message=FALLBACK_MESSAGE,
                urgency_level="normal",
                safety_flags=[],
                next_action="ask_followup",
                degraded=True,
            ),
        }

    async def post_async(self, shared: Dict[str, Any], prep: Dict[str, Any], exec_res: Dict[str, Any]) -> str:
        shared["mailla_response"] = exec_res["response"]
        return "ok"
