from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from cvflow.api.deps import get_db_session
from cvflow.schemas.api import (
    ConversationAnswerRequest,
    ConversationOut,
    ConversationStartRequest,
)
from cvflow.services.effect_executor import EffectExecutor
from cvflow.services.flow_runner import (
    ConversationNotFoundError,
    ConversationSnapshot,
    ConversationStateError,
    FlowNotFoundError,
    FlowRunner,
)

router = APIRouter(prefix="/conversations", tags=["conversations"])


def get_effect_executor() -> EffectExecutor:
    return EffectExecutor()


def get_flow_runner(
    session: AsyncSession = Depends(get_db_session),
    executor: EffectExecutor = Depends(get_effect_executor),
) -> FlowRunner:
    return FlowRunner(session=session, executor=executor)


def _out(snapshot: ConversationSnapshot) -> ConversationOut:
    return ConversationOut(
        session_id=snapshot.session_id,
        flow_id=snapshot.flow_id,
        status=snapshot.status,
        current_node_id=snapshot.current_node_id,
        bindings=snapshot.bindings,
        effects=snapshot.effects,
        resume_at=snapshot.resume_at,
        error=snapshot.error,
    )


def _not_found(detail: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=detail)


@router.post("", response_model=ConversationOut)
async def start_conversation(
    payload: ConversationStartRequest,
    runner: FlowRunner = Depends(get_flow_runner),
) -> ConversationOut:
    try:
        snapshot = await runner.start(payload.flow_id, session_id=payload.session_id)
    except FlowNotFoundError:
        raise _not_found("Flow not found")
    return _out(snapshot)


@router.post("/{session_id}/answer", response_model=ConversationOut)
async def answer_question(
    session_id: str,
    payload: ConversationAnswerRequest,
    runner: FlowRunner = Depends(get_flow_runner),
) -> ConversationOut:
    try:
        snapshot = await runner.answer(session_id, payload.message)
    except ConversationNotFoundError:
        raise _not_found("Conversation not found")
    except FlowNotFoundError:
        raise _not_found("Flow not found")
    except ConversationStateError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    return _out(snapshot)


@router.post("/{session_id}/resume", response_model=ConversationOut)
async def resume_conversation(
    session_id: str,
    runner: FlowRunner = Depends(get_flow_runner),
) -> ConversationOut:
    try:
        snapshot = await runner.resume(session_id)
    except ConversationNotFoundError:
        raise _not_found("Conversation not found")
    except FlowNotFoundError:
        raise _not_found("Flow not found")
    return _out(snapshot)


@router.get("/{session_id}", response_model=ConversationOut)
async def read_conversation(
    session_id: str,
    runner: FlowRunner = Depends(get_flow_runner),
) -> ConversationOut:
    try:
        snapshot = await runner.get_state(session_id)
    except ConversationNotFoundError:
        raise _not_found("Conversation not found")
    return _out(snapshot)
