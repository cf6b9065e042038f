# mailla/runtime/nodes/persist.py
from __future__ import annotations

from copy import deepcopy
from typing import Any, Dict, List

from pocketflow import AsyncNode

from mailla.db.models import utcnow
from mailla.runtime.nodes.slots import dedup
from mailla.schemas.triage import MaillaResponse


class PersistNode(AsyncNode):
    """
    Persist one turn (student + Mailla) and its audit entry in a single transaction.
    - prep_async: snapshot inputs (no side-effects)
    - exec_async: compute the update plan (no side-effects)
    - post_async: execute DB writes in a transaction and route
    """

    async def prep_async(self, shared: Dict[str, Any]) -> Dict[str, Any]:
        conversation = shared["conversation"]
        return {
            "repo": shared["repo"],
            "conversation_id": conversation.id,
            "org_id": conversation.org_id,
            "history": deepcopy(list(conversation.conversation_history or [])),
            "existing_flags": list(conversation.safety_flags or []),
            "existing_urgency": conversation.urgency_level,
            "triage_data": deepcopy(shared.get("triage_data") or dict(conversation.triage_data or {})),
            "student_message": str(shared.get("student_message") or ""),
            "media_urls": list(shared.get("media_urls") or []),
            "response": shared["mailla_response"],
        }

    async def exec_async(self, prep: Dict[str, Any]) -> Dict[str, Any]:
        response: MaillaResponse = prep["response"]
        now = utcnow().isoformat()

        student_turn: Dict[str, Any] = {"role": "student", "message": prep["student_message"], "timestamp": now}
        if prep["media_urls"]:
            student_turn["media_urls"] = prep["media_urls"]
        mailla_turn = {
            "role": "mailla",
            "message": response.message,
            "urgency_level": response.urgency_level,
            "next_action": response.next_action,
            "safety_flags": list(response.safety_flags),
            "timestamp": now,
        }
        history: List[Dict[str, Any]] = [*prep["history"], student_turn, mailla_turn]

        fields: Dict[str, Any] = {
            "conversation_history": history,
            "safety_flags": dedup([*prep["existing_flags"], *response.safety_flags]),
            "triage_data": prep["triage_data"],
            # a fallback reply carries no judgement, keep what we had
            "urgency_level": prep["existing_urgency"] if response.degraded else response.urgency_level,
        }
        action = "triage.escalate" if response.next_action == "escalate_immediate" else "triage.turn"
        return {
            "fields": fields,
            "action": action,
            "audit_meta": {
                "turns": len(history),
                "urgency_level": fields["urgency_level"],
                "next_action": response.next_action,
                "degraded": response.degraded,
            },
        }

    async def post_async(self, shared: Dict[str, Any], prep: Dict[str, Any], exec_res: Dict[str, Any]) -> str:
        repo = prep["repo"]

        async with repo.transaction() as s:
            await repo.update_triage_conversation(prep["conversation_id"], exec_res["fields"], session=s)
            await repo.audit(
                prep["org_id"],
                exec_res["action"],
                "triage_conversation",
                prep["conversation_id"],
                exec_res["audit_meta"],
                session=s,
            )

        shared["persisted_history"] = exec_res["fields"]["conversation_history"]
        return "ok"
