# mailla/api/triage.py
from fastapi import APIRouter, Depends, Request

from mailla.schemas.triage import (
    CompletionResult,
    ContinueTriageIn,
    ConversationView,
    MaillaResponse,
    StartTriageIn,
    StartTriageOut,
)
from mailla.services.triage_service import TriageService

router = APIRouter(prefix="/api/triage", tags=["triage"])


def get_triage_service(request: Request) -> TriageService:
    """The process-wide service built in the app lifespan."""
    return request.app.state.triage_service


@router.post("/start", response_model=StartTriageOut, response_model_by_alias=True)
async def start_triage(
    payload: StartTriageIn,
    service: TriageService = Depends(get_triage_service),
):
    """
    Open a conversation with the student's first message:
    1. Create the conversation record
    2. Run the first turn (safety check, model reply, slot merge, persist)
    3. Return the conversation id and Mailla's reply
    """
    conversation_id, response = await service.start(
        payload.student_id, payload.org_id, payload.initial_request
    )
    return StartTriageOut(conversation_id=conversation_id, mailla_response=response)


@router.post("/{conversation_id}/messages", response_model=MaillaResponse, response_model_by_alias=True)
async def continue_triage(
    conversation_id: str,
    payload: ContinueTriageIn,
    service: TriageService = Depends(get_triage_service),
):
    return await service.continue_(conversation_id, payload.message, payload.media_urls)


@router.post("/{conversation_id}/complete", response_model=CompletionResult, response_model_by_alias=True)
async def complete_triage(
    conversation_id: str,
    service: TriageService = Depends(get_triage_service),
):
    """Create the smart case now, regardless of what the model asked for."""
    return await service.complete(conversation_id)


@router.get("/{conversation_id}", response_model=ConversationView, response_model_by_alias=True)
async def get_conversation(
    conversation_id: str,
    service: TriageService = Depends(get_triage_service),
):
    c = await service.get_conversation(conversation_id)
    return ConversationView(
        id=c.id,
        student_id=c.student_id,
        org_id=c.org_id,
        initial_request=c.initial_request,
        current_phase=c.current_phase,
        urgency_level=c.urgency_level,
        safety_flags=list(c.safety_flags or []),
        conversation_history=list(c.conversation_history or []),
        triage_data=dict(c.triage_data or {}),
        smart_case_id=c.smart_case_id,
        is_complete=c.is_complete,
    )
