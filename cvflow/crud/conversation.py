from __future__ import annotations

import datetime as dt
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from cvflow.models.conversation import ConversationState, ConversationStatus
from cvflow.schemas.flow import utcnow


async def load_conversation_state(
    session: AsyncSession, session_id: str
) -> ConversationState | None:
    return await session.get(ConversationState, session_id)


async def save_conversation_state(
    session: AsyncSession,
    *,
    session_id: str,
    flow_id: str,
    current_node_id: str | None,
    bindings: dict[str, Any],
    status: str = ConversationStatus.ACTIVE,
    resume_at: dt.datetime | None = None,
    last_error: str | None = None,
) -> ConversationState:
    state = await load_conversation_state(session, session_id)
    now = utcnow()
    if state is None:
        state = ConversationState(session_id=session_id, created_at=now)
        session.add(state)

    state.flow_id = flow_id
    state.current_node_id = current_node_id
    # new dict so the JSON column is flagged dirty
    state.bindings = dict(bindings)
    state.status = status
    state.resume_at = resume_at
    state.last_error = last_error
    state.updated_at = now

    await session.commit()
    await session.refresh(state)
    return state


async def delete_conversation_state(session: AsyncSession, session_id: str) -> bool:
    state = await load_conversation_state(session, session_id)
    if not state:
        return False
    await session.delete(state)
    await session.commit()
    return True


async def list_due_conversations(
    session: AsyncSession, now: dt.datetime | None = None, limit: int = 100
) -> list[ConversationState]:
    """Parked conversations whose wait has elapsed."""
    result = await session.execute(
        select(ConversationState)
        .where(
            ConversationState.status == ConversationStatus.WAITING,
            ConversationState.resume_at <= (now or utcnow()),
        )
        .order_by(ConversationState.resume_at)
        .limit(limit)
    )
    return list(result.scalars().all())


async def cleanup_old_conversations(session: AsyncSession, days: int = 30) -> int:
    """Delete finished or failed conversations untouched for `days`; active and waiting ones stay."""
    cutoff = utcnow() - dt.timedelta(days=days)
    result = await session.execute(
        select(ConversationState).where(
            ConversationState.status.in_(
                [ConversationStatus.COMPLETED, ConversationStatus.ERROR]
            ),
            ConversationState.updated_at < cutoff,
        )
    )
    stale = list(result.scalars().all())
    for state in stale:
        await session.delete(state)
    await session.commit()
    return len(stale)
