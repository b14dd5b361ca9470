# REST endpoints for chat, index refresh and session history
from fastapi import APIRouter, Depends, HTTPException, Query, status

from taskpilot.application.api.dependencies import get_credential, get_orchestrator, get_request_id
from taskpilot.application.api.schema.chat import (
    ChatRequest, ChatResponse, HistoryResponse, IndexRefreshRequest, IndexRefreshResponse, TurnView,
)
from taskpilot.domain.models.errors import IndexNotReady, MemoryUnavailable
from taskpilot.domain.orchestration.core.main_agent import TaskPilotOrchestrator

router = APIRouter(prefix="/api/v1/agent", tags=["Agent"])


@router.post("/chat", response_model=ChatResponse)
async def chat_endpoint(
    request: ChatRequest,
    credential: str = Depends(get_credential),
    request_id: str = Depends(get_request_id),
    orchestrator: TaskPilotOrchestrator = Depends(get_orchestrator),
):
    # one complete response per request
    result = await orchestrator.process_message(
        user_id=request.user_id,
        session_id=request.session_id,
        message=request.message,
        credential=credential,
        request_id=request_id,
    )
    return ChatResponse(**result.model_dump())


@router.post("/index/refresh", response_model=IndexRefreshResponse)
async def refresh_index(
    request: IndexRefreshRequest,
    credential: str = Depends(get_credential),
    request_id: str = Depends(get_request_id),
    orchestrator: TaskPilotOrchestrator = Depends(get_orchestrator),
):
    if orchestrator.similarity_index is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Similarity index is disabled")

    try:
        entries = await orchestrator.refresh_index(request.user_id, credential, request_id=request_id)
    except IndexNotReady as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=e.reason or str(e))

    return IndexRefreshResponse(
        user_id=request.user_id,
        entries=entries,
        state=orchestrator.similarity_index.state(request.user_id).value,
    )


@router.get("/sessions/{session_id}/history", response_model=HistoryResponse)
async def session_history(
    session_id: str,
    user_id: str = Query(..., min_length=1),
    limit: int = Query(default=50, ge=1, le=500),
    credential: str = Depends(get_credential),
    orchestrator: TaskPilotOrchestrator = Depends(get_orchestrator),
):
    try:
        turns = await orchestrator.session_history(user_id, session_id, limit)
    except MemoryUnavailable:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Conversation memory unavailable")

    return HistoryResponse(
        user_id=user_id,
        session_id=session_id,
        turns=[
            TurnView(sequence=t.sequence, role=t.role, content=t.content, timestamp=t.timestamp)
            for t in turns
        ],
    )
