"""
Coach endpoints.

POST   /coach/ask                      answer one question (JSON)
POST   /coach/stream                   same, as server-sent events
DELETE /coach/conversations/{id}       forget a conversation

Omitted ``events`` default to the upcoming visits of the server dataset.
A client disconnect cancels the in-flight LLM call.
"""
import asyncio
import uuid

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import StreamingResponse

from aria_coach.core.logging import get_logger, set_conversation_id
from aria_coach.models.requests import AskRequest
from aria_coach.models.responses import AskResponse
from aria_coach.services.ai.conversation import get_session_store
from aria_coach.services.ai.orchestration import get_coach_pipeline
from aria_coach.services.crm.dataset import get_crm_dataset
from aria_coach.services.llm.invocation import CancellationToken

logger = get_logger(__name__)

router = APIRouter()

DISCONNECT_POLL_SECONDS = 0.5


async def _cancel_on_disconnect(request: Request, token: CancellationToken) -> None:
    while not token.cancelled:
        if await request.is_disconnected():
            logger.info("coach_client_disconnected")
            token.cancel("client disconnected")
            return
        await asyncio.sleep(DISCONNECT_POLL_SECONDS)


def _prepare(body: AskRequest):
    question = body.question.strip()
    if not question:
        raise HTTPException(status_code=400, detail="Field 'question' must not be blank")
    conversation_id = body.conversation_id or uuid.uuid4().hex
    set_conversation_id(conversation_id)
    events = body.events if body.events is not None else get_crm_dataset().upcoming_visits
    return question, conversation_id, events


@router.post("/ask", response_model=AskResponse, response_model_by_alias=True, response_model_exclude_none=True)
async def ask(request: Request, body: AskRequest):
    question, conversation_id, events = _prepare(body)
    session = get_session_store().get_or_create(conversation_id)

    token = CancellationToken()
    watcher = asyncio.create_task(_cancel_on_disconnect(request, token))
    try:
        result = await get_coach_pipeline().answer_in_session(
            session,
            question,
            body.period_label,
            entities=body.entities,
            events=events,
            objectives=body.objectives,
            cancel_token=token,
        )
    finally:
        watcher.cancel()

    logger.info("coach_answered", source=result.source, provider_tier=result.provider_tier)
    return AskResponse(**result.model_dump(), conversation_id=conversation_id)


@router.post("/stream")
async def stream(request: Request, body: AskRequest):
    question, conversation_id, events = _prepare(body)
    session = get_session_store().get_or_create(conversation_id)
    pipeline = get_coach_pipeline()

    async def event_source():
        token = CancellationToken()
        watcher = asyncio.create_task(_cancel_on_disconnect(request, token))
        try:
            async with session.lock:
                async for event in pipeline.stream_question(
                    question,
                    session.messages,
                    body.period_label,
                    entities=body.entities,
                    events=events,
                    objectives=body.objectives,
                    chart_history=session.chart_history,
                    cancel_token=token,
                ):
                    if event.type == "done" and event.result is not None:
                        session.record_turn(question, event.result)
                    payload = event.model_dump_json(by_alias=True, exclude_none=True)
                    yield f"event: {event.type}\ndata: {payload}\n\n"
        finally:
            watcher.cancel()

    return StreamingResponse(
        event_source(),
        media_type="text/event-stream",
        headers={"X-Conversation-ID": conversation_id, "Cache-Control": "no-cache"},
    )


@router.delete("/conversations/{conversation_id}")
async def delete_conversation(conversation_id: str):
    if not get_session_store().delete(conversation_id):
        raise HTTPException(status_code=404, detail=f"Unknown conversation '{conversation_id}'")
    logger.info("coach_conversation_deleted", conversation_id=conversation_id)
    return {"deleted": True, "conversationId": conversation_id}
