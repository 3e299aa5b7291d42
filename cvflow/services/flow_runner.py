from __future__ import annotations

import datetime as dt
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from cvflow.core.config import settings
from cvflow.crud.conversation import load_conversation_state, save_conversation_state
from cvflow.crud.flow import get_flow_document
from cvflow.models.conversation import (
    LAST_ERROR_MAX_LENGTH,
    ConversationState,
    ConversationStatus,
)
from cvflow.schemas.flow import Bindings, FlowDocument, utcnow
from cvflow.services.effect_executor import EffectExecutor
from cvflow.services.flow_engine import (
    EffectResult,
    EffectType,
    FlowLoopError,
    StepResult,
    StepStatus,
    advance,
    find_start_node,
)

logger = logging.getLogger(__name__)

SKIP_PHRASES = frozenset({"skip", "skip this", "skip question"})


def _clip(message: str | None) -> str | None:
    if message is None or len(message) <= LAST_ERROR_MAX_LENGTH:
        return message
    return message[: LAST_ERROR_MAX_LENGTH - 3] + "..."


class FlowNotFoundError(LookupError):
    pass


class ConversationNotFoundError(LookupError):
    pass


class ConversationStateError(Exception):
    """The conversation cannot take this request in its current status."""


@dataclass(slots=True)
class ConversationSnapshot:
    session_id: str
    flow_id: str
    status: str
    current_node_id: Optional[str]
    bindings: Bindings
    effects: list[dict[str, Any]] = field(default_factory=list)
    resume_at: Optional[dt.datetime] = None
    error: Optional[str] = None

    @classmethod
    def from_state(cls, state: ConversationState, effects=None) -> "ConversationSnapshot":
        return cls(
            session_id=state.session_id,
            flow_id=state.flow_id,
            status=state.status,
            current_node_id=state.current_node_id,
            bindings=dict(state.bindings or {}),
            effects=list(effects or []),
            resume_at=state.resume_at,
            error=state.last_error,
        )


@dataclass(slots=True)
class _Outcome:
    status: str
    node_id: Optional[str]
    bindings: Bindings
    effects: list[dict[str, Any]]
    resume_at: Optional[dt.datetime] = None
    error: Optional[str] = None


def is_skip_phrase(text: str) -> bool:
    return text.strip().lower() in SKIP_PHRASES


def _holds_deferred_effect(doc: FlowDocument, node_id: Optional[str]) -> bool:
    node = doc.get_node(node_id) if node_id else None
    if node is None:
        return False
    if node.type == "action":
        return node.data.kind != "set_variable"
    return node.type in ("wait", "api-call")


class FlowRunner:
    """
    Drives conversations through flows: runs the engine, executes the
    effects it asks for and keeps each session's position in the database.
    """

    def __init__(
        self,
        session: AsyncSession,
        executor: EffectExecutor | None = None,
        max_steps: int | None = None,
    ):
        self.session = session
        self.executor = executor or EffectExecutor()
        self.max_steps = max_steps or settings.flow_max_auto_steps

    async def _document(self, flow_id: str) -> FlowDocument:
        doc = await get_flow_document(self.session, flow_id)
        if doc is None:
            raise FlowNotFoundError(flow_id)
        return doc

    async def _state(self, session_id: str) -> ConversationState:
        state = await load_conversation_state(self.session, session_id)
        if state is None:
            raise ConversationNotFoundError(session_id)
        return state

    async def _persist(self, session_id: str, flow_id: str, outcome: _Outcome) -> ConversationSnapshot:
        state = await save_conversation_state(
            self.session,
            session_id=session_id,
            flow_id=flow_id,
            current_node_id=outcome.node_id,
            bindings=outcome.bindings,
            status=outcome.status,
            resume_at=outcome.resume_at,
            last_error=_clip(outcome.error),
        )
        return ConversationSnapshot.from_state(state, outcome.effects)

    # ------------------------------------------------------------------
    # public API
    # ------------------------------------------------------------------

    async def start(self, flow_id: str, session_id: str | None = None) -> ConversationSnapshot:
        doc = await self._document(flow_id)
        session_id = session_id or uuid.uuid4().hex
        start = find_start_node(doc)
        if start is None:
            outcome = _Outcome(
                ConversationStatus.ERROR, None, {}, [], error=f"Flow {flow_id} has no start node"
            )
        else:
            logger.info("Starting flow %s for session %s", flow_id, session_id)
            outcome = await self._drive(doc, start.id, {})
        return await self._persist(session_id, doc.id, outcome)

    async def answer(self, session_id: str, text: str) -> ConversationSnapshot:
        state = await self._state(session_id)
        if state.status != ConversationStatus.ACTIVE or not state.current_node_id:
            raise ConversationStateError(
                f"Conversation {session_id} is {state.status} and does not accept answers"
            )
        doc = await self._document(state.flow_id)
        skipped = is_skip_phrase(text)
        outcome = await self._drive(
            doc,
            state.current_node_id,
            dict(state.bindings or {}),
            None if skipped else text,
            skipped=skipped,
        )
        return await self._persist(session_id, state.flow_id, outcome)

    async def resume(self, session_id: str, now: dt.datetime | None = None) -> ConversationSnapshot:
        """
        Continue a parked wait whose time has come, or retry the effect that
        put the conversation into error. Anything else is returned unchanged.
        """
        state = await self._state(session_id)
        now = now or utcnow()

        if state.status == ConversationStatus.WAITING:
            resume_at = state.resume_at
            if resume_at is not None and resume_at.tzinfo is None:
                resume_at = resume_at.replace(tzinfo=dt.timezone.utc)
            if resume_at is not None and resume_at > now:
                return ConversationSnapshot.from_state(state)
            doc = await self._document(state.flow_id)
            outcome = await self._drive(
                doc,
                state.current_node_id,
                dict(state.bindings or {}),
                effect_result=EffectResult(ok=True),
            )
            return await self._persist(session_id, state.flow_id, outcome)

        if state.status == ConversationStatus.ERROR:
            doc = await self._document(state.flow_id)
            if _holds_deferred_effect(doc, state.current_node_id):
                logger.info("Retrying node %s for session %s", state.current_node_id, session_id)
                outcome = await self._drive(doc, state.current_node_id, dict(state.bindings or {}))
                return await self._persist(session_id, state.flow_id, outcome)

        return ConversationSnapshot.from_state(state)

    async def get_state(self, session_id: str) -> ConversationSnapshot:
        return ConversationSnapshot.from_state(await self._state(session_id))

    # ------------------------------------------------------------------
    # driving
    # ------------------------------------------------------------------

    async def _drive(
        self,
        doc: FlowDocument,
        node_id: str,
        bindings: Bindings,
        value: Any = None,
        *,
        skipped: bool = False,
        effect_result: EffectResult | None = None,
    ) -> _Outcome:
        visible: list[dict[str, Any]] = []
        try:
            result = advance(
                doc,
                node_id,
                bindings,
                value,
                effect_result=effect_result,
                skipped=skipped,
                max_steps=self.max_steps,
            )
            rounds = 0
            last_error: str | None = None
            while True:
                visible.extend(e.to_dict() for e in result.effects if not e.deferred)
                if result.status is not StepStatus.AWAITING_EFFECT:
                    return self._settle(result, visible, last_error)

                rounds += 1
                if rounds > self.max_steps:
                    raise FlowLoopError(doc.id, result.node_id, self.max_steps)

                effect = next(e for e in reversed(result.effects) if e.deferred)
                outcome = await self.executor.execute(effect)
                last_error = outcome.error

                if effect.type is EffectType.WAIT and outcome.ok:
                    delay_ms = (outcome.data or {}).get("delayMs", 0)
                    if delay_ms > 0:
                        resume_at = dt.datetime.fromisoformat(outcome.data["resumeAt"])
                        logger.info("Node %s waits until %s", result.node_id, resume_at.isoformat())
                        return _Outcome(
                            ConversationStatus.WAITING,
                            result.node_id,
                            result.bindings,
                            visible,
                            resume_at=resume_at,
                        )

                result = advance(
                    doc,
                    result.node_id,
                    result.bindings,
                    effect_result=outcome,
                    max_steps=self.max_steps,
                )
        except FlowLoopError as e:
            logger.error(str(e))
            return _Outcome(ConversationStatus.ERROR, e.node_id, bindings, visible, error=str(e))

    def _settle(self, result: StepResult, visible, last_error: str | None) -> _Outcome:
        status = result.status
        if status is StepStatus.AWAITING_INPUT:
            return _Outcome(ConversationStatus.ACTIVE, result.node_id, result.bindings, visible)
        if status is StepStatus.COMPLETED:
            return _Outcome(ConversationStatus.COMPLETED, result.node_id, result.bindings, visible)
        if status is StepStatus.EFFECT_FAILED:
            error = f"Effect on node {result.node_id} failed: {last_error or 'unknown error'}"
        else:
            messages = [e.payload.get("message") for e in result.effects if e.payload.get("message")]
            error = messages[-1] if messages else status.value
        return _Outcome(ConversationStatus.ERROR, result.node_id, result.bindings, visible, error=error)
