from __future__ import annotations

import datetime as dt
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class FlowOut(_CamelModel):
    model_config = ConfigDict(populate_by_name=True, from_attributes=True)

    id: str
    name: str
    description: str
    data: dict[str, Any]
    is_active: bool = Field(alias="isActive")
    is_live: bool = Field(alias="isLive")
    mapping_config: dict[str, Any] | None = Field(default=None, alias="mappingConfig")
    created_by: str = Field(alias="createdBy")
    created_at: dt.datetime = Field(alias="createdAt")
    updated_at: dt.datetime = Field(alias="updatedAt")


class FlowCreateRequest(_CamelModel):
    # Both are checked by the route so a missing one is a 400, not a 422
    name: str | None = None
    description: str | None = None
    data: dict[str, Any] | None = None


class FlowUpdateRequest(_CamelModel):
    id: str | None = None
    name: str | None = None
    description: str | None = None
    data: dict[str, Any] | None = None
    is_live: bool | None = Field(default=None, alias="isLive")
    mapping_config: dict[str, Any] | None = Field(default=None, alias="mappingConfig")


class DeleteResponse(BaseModel):
    success: bool


class ConversationStartRequest(_CamelModel):
    flow_id: str = Field(min_length=1, alias="flowId")
    session_id: str | None = Field(default=None, min_length=1, max_length=128, alias="sessionId")


class ConversationAnswerRequest(BaseModel):
    message: str = Field(max_length=8000)


class ConversationOut(_CamelModel):
    session_id: str = Field(alias="sessionId")
    flow_id: str = Field(alias="flowId")
    status: str  # "active" | "waiting" | "completed" | "error"
    current_node_id: str | None = Field(default=None, alias="currentNodeId")
    bindings: dict[str, Any] = Field(default_factory=dict)
    effects: list[dict[str, Any]] = Field(default_factory=list)
    resume_at: dt.datetime | None = Field(default=None, alias="resumeAt")
    error: str | None = None
