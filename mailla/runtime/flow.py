# mailla/runtime/flow.py
from __future__ import annotations

from typing import Optional

from pocketflow import AsyncFlow

from mailla.config import Settings, get_settings
from mailla.runtime.nodes.context import ContextAnalysisNode
from mailla.runtime.nodes.escalate import EmergencyEscalationNode
from mailla.runtime.nodes.finalize import CompletionGuardNode, FinalizeNode
from mailla.runtime.nodes.mailla_chat import MaillaChatNode
from mailla.runtime.nodes.persist import PersistNode
from mailla.runtime.nodes.prompt import PromptBuildNode
from mailla.runtime.nodes.safety import SafetyCheckNode
from mailla.runtime.nodes.slots import SlotMergeNode


def make_triage_flow(settings: Optional[Settings] = None) -> AsyncFlow:
    """One conversational turn:
    safety → (emergency → escalate → persist → finalize)
           → (ok → context → prompt → mailla_chat → slot_merge → guard → persist → finalize)
    """
    settings = settings or get_settings()

    # Instantiate all nodes
    safety = SafetyCheckNode(force_escalation=settings.force_emergency_escalation)
    escalate = EmergencyEscalationNode()
    context = ContextAnalysisNode()
    prompt = PromptBuildNode(history_window=settings.history_window)
    chat = MaillaChatNode(temperature=settings.llm_temperature, timeout=settings.llm_timeout_seconds)
    slot_merge = SlotMergeNode()
    guard = CompletionGuardNode()
    persist = PersistNode()
    finalize = FinalizeNode()

    # --- Routing setup ---

    # 1. safety routes
    safety.successors = {
        "emergency": escalate,
        "ok": context,
    }

    # 2. normal (ok) path
    context.successors = {"ok": prompt}
    prompt.successors = {"ok": chat}
    chat.successors = {"ok": slot_merge}
    slot_merge.successors = {"ok": guard}
    guard.successors = {"ok": persist}

    # 3. emergency path
    escalate.successors = {"ok": persist}

    # 4. shared tail
    persist.successors = {"ok": finalize}

    # --- Flow entry point ---
    return AsyncFlow(start=safety)
