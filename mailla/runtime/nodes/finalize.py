# mailla/runtime/nodes/finalize.py
from __future__ import annotations

from copy import deepcopy
from typing import Any, Dict

from pocketflow import AsyncNode

from mailla.core.logging import get_logger
from mailla.db.models import PHASE_COMPLETED
from mailla.runtime.nodes.prompt import missing_item_question
from mailla.runtime.nodes.slots import can_complete, next_missing_slot
from mailla.schemas.triage import MaillaResponse

logger = get_logger(__name__)

REASSURANCE = "I'm getting help dispatched right away - you'll get updates soon!"


class CompletionGuardNode(AsyncNode):
    """Refuse a model-requested completion until location, issue and email are known."""

    async def prep_async(self, shared: Dict[str, Any]) -> Dict[str, Any]:
        conversation = shared["conversation"]
        return {
            "response": shared["mailla_response"],
            "triage_data": shared.get("triage_data") or dict(conversation.triage_data or {}),
            "initial_request": conversation.initial_request,
            "completed": conversation.current_phase == PHASE_COMPLETED,
        }

    async def exec_async(self, prep: Dict[str, Any]) -> Dict[str, Any]:
        response: MaillaResponse = prep["response"]
        if response.next_action != "complete_triage" or prep["completed"]:
            return {"response": response, "blocked": None}
        if can_complete(prep["triage_data"], prep["initial_request"]):
            return {"response": response, "blocked": None}

        missing = next_missing_slot(prep["triage_data"], prep["initial_request"])
        question = missing_item_question(missing)
        message = response.message
        if question and question not in message:
            message = f"{message}\n\n{question}"
        return {
            "response": response.model_copy(update={"next_action": "ask_followup", "message": message}),
            "blocked": missing,
        }

    async def post_async(self, shared: Dict[str, Any], prep: Dict[str, Any], exec_res: Dict[str, Any]) -> str:
        if exec_res["blocked"]:
            logger.info(
                "Completion requested before required slots were known",
                extra={"conversation_id": shared["conversation"].id, "missing": exec_res["blocked"]},
            )
        shared["mailla_response"] = exec_res["response"]
        return "ok"


class FinalizeNode(AsyncNode):
    """
    Create the smart case once the turn is persisted and completion was requested.
    A failing finalizer leaves the conversation in gathering_info; the reply gets a
    reassurance line and the next turn may try again.
    """

    async def prep_async(self, shared: Dict[str, Any]) -> Dict[str, Any]:
        conversation = shared["conversation"]
        return {
            "conversation_id": conversation.id,
            "already_complete": conversation.current_phase == PHASE_COMPLETED,
            "smart_case_id": conversation.smart_case_id,
            "response": shared["mailla_response"],
            "finalizer": shared.get("finalizer"),
        }

    async def exec_async(self, prep: Dict[str, Any]) -> Dict[str, Any]:
        if prep["already_complete"]:
            return {"is_complete": True, "case_id": prep["smart_case_id"], "case_number": None}
        if prep["response"].next_action != "complete_triage":
            return {"is_complete": False}

        finalizer = prep["finalizer"]
        if finalizer is None:
            raise RuntimeError("No finalizer configured")
        result = await finalizer(prep["conversation_id"])
        return {"is_complete": True, "case_id": result.case_id, "case_number": result.case_number}

    async def exec_fallback_async(self, prep: Dict[str, Any], exc: Exception) -> Dict[str, Any]:
        logger.error(
            "Triage completion failed",
            extra={"conversation_id": prep["conversation_id"], "error": repr(exc)},
        )
        return {"is_complete": False, "failed": True}

    async def post_async(self, shared: Dict[str, Any], prep: Dict[str, Any], exec_res: Dict[str, Any]) -> str:
        response: MaillaResponse = prep["response"]
        update: Dict[str, Any] = {"is_complete": exec_res["is_complete"]}
        if exec_res.get("case_id"):
            update["case_id"] = exec_res["case_id"]
            update["case_number"] = exec_res.get("case_number")

        if exec_res.get("failed"):
            update["message"] = f"{response.message}\n\n{REASSURANCE}"
            await self._patch_last_reply(shared, update["message"])

        shared["mailla_response"] = response.model_copy(update=update)
        return "ok"

    async def _patch_last_reply(self, shared: Dict[str, Any], message: str) -> None:
        """Keep the stored history in line with what the student is shown."""
        history = deepcopy(shared.get("persisted_history") or [])
        if not history or history[-1].get("role") != "mailla":
            return
        history[-1]["message"] = message
        try:
            await shared["repo"].update_triage_conversation(
                shared["conversation"].id, {"conversation_history": history}
            )
        except Exception:
            logger.exception("Could not update stored reply", extra={"conversation_id": shared["conversation"].id})
