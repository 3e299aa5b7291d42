from __future__ import annotations

import datetime as dt
from typing import Any

from sqlalchemy import DateTime, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from cvflow.models.base import Base, JSONType
from cvflow.schemas.flow import utcnow


LAST_ERROR_MAX_LENGTH = 1024


class ConversationStatus:
    ACTIVE = "active"
    WAITING = "waiting"
    COMPLETED = "completed"
    ERROR = "error"


class ConversationState(Base):
    __tablename__ = "conversation_states"

    session_id: Mapped[str] = mapped_column(String(128), primary_key=True)

    # No FK: system flows may run straight from the bundled templates
    flow_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    current_node_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    bindings: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)

    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=ConversationStatus.ACTIVE
    )
    # Set while a wait node is parked
    resume_at: Mapped[dt.datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    last_error: Mapped[str | None] = mapped_column(String(LAST_ERROR_MAX_LENGTH), nullable=True)

    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    __table_args__ = (
        Index("ix_conversation_states_status_updated_at", "status", "updated_at"),
    )
