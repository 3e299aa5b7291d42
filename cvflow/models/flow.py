from __future__ import annotations

import datetime as dt
from typing import Any

from sqlalchemy import Boolean, DateTime, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from cvflow.models.base import Base, JSONType
from cvflow.schemas.flow import utcnow


class Flow(Base):
    __tablename__ = "flows"

    # Designer-generated ids ("cv-flow-1712345678901") or system ids ("basic_cv_flow")
    id: Mapped[str] = mapped_column(String(64), primary_key=True)

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")

    # The whole FlowDocument as the designer serializes it
    data: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False)

    is_active: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=True, server_default="true"
    )
    is_live: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default="false"
    )
    mapping_config: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)

    created_by: Mapped[str] = mapped_column(String(255), nullable=False, default="system")

    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    __table_args__ = (
        Index("ix_flows_active_updated_at", "is_active", "updated_at"),
    )
