# =============================================================================
# Chat API — Conversational Turns, Streaming, Resume
# =============================================================================
#
# POST   /chat                  run one turn to completion
# POST   /chat/stream           same, as Server-Sent Events
# GET    /chat/{run_id}         current checkpoint (owner or admin)
# POST   /chat/{run_id}/resume  resume an interrupted run / continue it
# DELETE /chat/{run_id}         delete a run's checkpoint
#
# This module is thin by design: request validation, error mapping and
# response shaping. The pipeline lives in convoflow.agents.
#
# ERROR MAPPING: every ConvoflowError carries a status code
# (403 access denied, 404 unknown run, 409 stale checkpoint, 502 model
# or tool failure, 499 cancelled). RunAbortedError takes the code of
# the error that caused it.
# =============================================================================

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator

from fastapi import APIRouter, Depends, HTTPException, Request, Response
from fastapi.responses import StreamingResponse

from convoflow.agents.orchestrator import resume_chat, run_chat, stream_chat
from convoflow.agents.services import PipelineServices
from convoflow.api.deps import (
    get_checkpoint_store,
    get_current_principal,
    get_pipeline_services,
    to_http_error,
)
from convoflow.errors import ConvoflowError
from convoflow.graph.state import PRIMARY_TASK_ID, RunState
from convoflow.models.requests import ChatRequest, ResumeRequest
from convoflow.models.responses import ChatResponse, CheckpointResponse
from convoflow.services.auth import Principal
from convoflow.services.checkpoints import SecureCheckpointStore

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Chat"])


# ---------------------------------------------------------------------------
# POST /chat — Run one turn
# ---------------------------------------------------------------------------


@router.post(
    "/chat",
    response_model=ChatResponse,
    summary="Send a message",
    description=(
        "Run the retrieval pipeline for a new or existing conversation. "
        "The assistant selects retrieval tasks, evaluates what it found, "
        "widens the search or calls a tool when needed, and answers with "
        "numbered citations."
    ),
)
async def chat_endpoint(
    http_request: Request,
    request: ChatRequest,
    principal: Principal = Depends(get_current_principal),
    store: SecureCheckpointStore = Depends(get_checkpoint_store),
    services: PipelineServices = Depends(get_pipeline_services),
) -> ChatResponse:
    logger.info(
        "Chat request: user=%s, run_id=%s, messages=%d",
        principal.user_id, request.run_id, len(request.to_messages()),
    )
    try:
        state = await run_chat(
            request.to_messages(),
            principal,
            store=store,
            services=services,
            run_id=request.run_id,
            options=request.options.to_state(),
        )
    except ConvoflowError as e:
        logger.warning("Chat failed for run %s: %s", request.run_id, e)
        raise to_http_error(e) from e

    response = to_chat_response(state)
    http_request.state.audit_run_id = response.run_id
    return response


# ---------------------------------------------------------------------------
# POST /chat/stream — Server-Sent Events
# ---------------------------------------------------------------------------


async def _sse_generator(
    request: ChatRequest,
    principal: Principal,
    store: SecureCheckpointStore,
    services: PipelineServices,
) -> AsyncIterator[str]:
    """Yield one `step` event per graph step, then `done` or `error`."""
    final: RunState | None = None
    try:
        async for event in stream_chat(
            request.to_messages(),
            principal,
            store=store,
            services=services,
            run_id=request.run_id,
            options=request.options.to_state(),
        ):
            final = event.state
            metadata = event.state.get("metadata", {})
            payload = {
                "run_id": metadata.get("run_id"),
                "step": event.step,
                "node": event.node,
                "iteration": metadata.get("iteration", 0),
            }
            yield f"event: step\ndata: {json.dumps(payload)}\n\n"
    except ConvoflowError as e:
        logger.warning("Chat stream failed: %s", e)
        payload = {"message": e.message, "status_code": e.status_code}
        yield f"event: error\ndata: {json.dumps(payload)}\n\n"
        return
    except Exception as e:
        logger.exception("Chat stream failed unexpectedly")
        yield f"event: error\ndata: {json.dumps({'message': str(e), 'status_code': 500})}\n\n"
        return

    if final is not None:
        yield f"event: done\ndata: {to_chat_response(final).model_dump_json()}\n\n"


@router.post(
    "/chat/stream",
    summary="Send a message (SSE stream)",
    description="Stream pipeline progress via Server-Sent Events. Events: step, done, error.",
)
async def chat_stream_endpoint(
    request: ChatRequest,
    principal: Principal = Depends(get_current_principal),
    store: SecureCheckpointStore = Depends(get_checkpoint_store),
    services: PipelineServices = Depends(get_pipeline_services),
) -> StreamingResponse:
    logger.info("Chat stream request: user=%s, run_id=%s", principal.user_id, request.run_id)
    return StreamingResponse(
        _sse_generator(request, principal, store, services),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


# ---------------------------------------------------------------------------
# GET /chat/{run_id} — Current checkpoint
# ---------------------------------------------------------------------------


@router.get(
    "/chat/{run_id}",
    response_model=CheckpointResponse,
    summary="Get a conversation's latest checkpoint",
)
async def get_run_endpoint(
    run_id: str,
    principal: Principal = Depends(get_current_principal),
    store: SecureCheckpointStore = Depends(get_checkpoint_store),
) -> CheckpointResponse:
    try:
        record = await store.get(run_id, principal)
    except ConvoflowError as e:
        raise to_http_error(e) from e

    state = record.state
    metadata = state.get("metadata", {})
    messages = state.get("messages", [])
    generated = state.get("generated_text", "")
    return CheckpointResponse(
        run_id=record.run_id,
        owner_id=record.owner_id,
        step=record.step,
        current_node=metadata.get("current_node", ""),
        is_final=bool(metadata.get("is_final_state")),
        iterations=metadata.get("iteration", 0),
        # Fields that failed decryption stay as ciphertext strings
        messages=messages if isinstance(messages, list) else [],
        answer=generated if isinstance(generated, str) else "",
        sources=state.get("sources", []),
        errors=metadata.get("errors", []),
        created_at=record.created_at,
        updated_at=record.updated_at,
    )


# ---------------------------------------------------------------------------
# POST /chat/{run_id}/resume — Resume or continue
# ---------------------------------------------------------------------------


@router.post(
    "/chat/{run_id}/resume",
    response_model=ChatResponse,
    summary="Resume an interrupted run, or continue it with a new message",
)
async def resume_endpoint(
    run_id: str,
    request: ResumeRequest,
    principal: Principal = Depends(get_current_principal),
    store: SecureCheckpointStore = Depends(get_checkpoint_store),
    services: PipelineServices = Depends(get_pipeline_services),
) -> ChatResponse:
    logger.info(
        "Resume request: user=%s, run_id=%s, new_message=%s",
        principal.user_id, run_id, request.message is not None,
    )
    try:
        state = await resume_chat(
            run_id, principal, store=store, services=services, message=request.message
        )
    except ConvoflowError as e:
        logger.warning("Resume failed for run %s: %s", run_id, e)
        raise to_http_error(e) from e
    return to_chat_response(state)


# ---------------------------------------------------------------------------
# DELETE /chat/{run_id}
# ---------------------------------------------------------------------------


@router.delete(
    "/chat/{run_id}",
    status_code=204,
    summary="Delete a conversation's checkpoint",
)
async def delete_run_endpoint(
    run_id: str,
    principal: Principal = Depends(get_current_principal),
    store: SecureCheckpointStore = Depends(get_checkpoint_store),
) -> Response:
    try:
        await store.delete(run_id, principal)
    except ConvoflowError as e:
        raise to_http_error(e) from e
    return Response(status_code=204)


# ---------------------------------------------------------------------------
# Response Mapping
# ---------------------------------------------------------------------------


def to_chat_response(state: RunState) -> ChatResponse:
    metadata = state.get("metadata", {})
    run_id = metadata.get("run_id")
    if not run_id:
        raise HTTPException(status_code=500, detail="Run state has no run_id")

    include_sources = state.get("options", {}).get("include_source_info", True)
    entity = state.get("task_entities", {}).get(PRIMARY_TASK_ID, {})
    return ChatResponse(
        run_id=run_id,
        answer=state.get("generated_text", ""),
        sources=state.get("sources", []) if include_sources else [],
        iterations=metadata.get("iteration", 0),
        tool_results=entity.get("tool_results", []),
        errors=metadata.get("errors", []),
        is_final=bool(metadata.get("is_final_state")),
    )
