from __future__ import annotations

import datetime as dt
import logging
import uuid
from pathlib import Path
from typing import Any, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from cvflow.core.config import settings
from cvflow.models.flow import Flow
from cvflow.schemas.flow import FlowDocument, utcnow
from cvflow.services.validation import (
    FlowValidationError,
    ValidationIssue,
    ValidationResult,
    ensure_valid,
    parse_flow,
)

logger = logging.getLogger(__name__)

# Bundled flows that anyone may read or overwrite
SYSTEM_FLOW_IDS = frozenset({"basic_cv_flow", "advanced_cv_flow"})


def is_system_flow(flow_id: str | None) -> bool:
    return flow_id in SYSTEM_FLOW_IDS


def load_system_template(flow_id: str, templates_dir: Path | None = None) -> FlowDocument | None:
    if not is_system_flow(flow_id):
        return None
    path = Path(templates_dir or settings.flow_templates_dir) / f"{flow_id}.json"
    if not path.is_file():
        logger.warning("System flow template %s is missing at %s", flow_id, path)
        return None
    return parse_flow(path.read_bytes())


def _aware(value: dt.datetime) -> dt.datetime:
    # SQLite hands back naive datetimes; they were written as UTC.
    return value if value.tzinfo else value.replace(tzinfo=dt.timezone.utc)


def flow_to_document(flow: Flow) -> FlowDocument:
    """Build the document stored in a row; the row's id, name and timestamps win over the stored copy."""
    payload = dict(flow.data or {})
    payload["id"] = flow.id
    payload["name"] = flow.name
    payload["createdAt"] = _aware(flow.created_at).isoformat()
    payload["updatedAt"] = _aware(flow.updated_at).isoformat()
    return parse_flow(payload)


def _validated_data(flow_id: str, data: dict[str, Any] | str | bytes) -> tuple[FlowDocument, dict[str, Any]]:
    doc = parse_flow(data)
    doc.id = flow_id
    ensure_valid(doc)
    return doc, doc.to_dict()


async def get_flow(session: AsyncSession, flow_id: str) -> Flow | None:
    return await session.get(Flow, flow_id)


async def get_flow_document(session: AsyncSession, flow_id: str) -> FlowDocument | None:
    flow = await get_flow(session, flow_id)
    if flow is not None:
        return flow_to_document(flow)
    return load_system_template(flow_id)


async def list_flows(session: AsyncSession) -> Sequence[Flow]:
    stmt = (
        select(Flow)
        .where(Flow.is_active.is_(True))
        .order_by(Flow.updated_at.desc())
    )
    result = await session.execute(stmt)
    return result.scalars().all()


async def get_live_flow(session: AsyncSession) -> Flow | None:
    """The flow visitors should be served: newest live active flow, else the newest active one."""
    for live_only in (True, False):
        stmt = select(Flow).where(Flow.is_active.is_(True))
        if live_only:
            stmt = stmt.where(Flow.is_live.is_(True))
        result = await session.execute(stmt.order_by(Flow.updated_at.desc()).limit(1))
        flow = result.scalars().first()
        if flow is not None:
            return flow
    return None


async def create_flow(
    session: AsyncSession,
    *,
    name: str,
    data: dict[str, Any],
    created_by: str,
    description: str | None = None,
    flow_id: str | None = None,
) -> Flow:
    flow_id = flow_id or uuid.uuid4().hex
    doc, stored = _validated_data(flow_id, data)
    now = utcnow()
    flow = Flow(
        id=flow_id,
        name=name,
        description=description or "",
        data=stored,
        created_by=created_by,
        created_at=now,
        updated_at=now,
    )
    session.add(flow)
    await session.commit()
    await session.refresh(flow)
    logger.info("Flow %s created by %s (%d nodes)", flow.id, created_by, len(doc.nodes))
    return flow


async def update_flow(
    session: AsyncSession,
    flow_id: str,
    *,
    name: str | None = None,
    description: str | None = None,
    data: dict[str, Any] | None = None,
    is_live: bool | None = None,
    mapping_config: dict[str, Any] | None = None,
    created_by: str | None = None,
) -> Flow:
    """
    Replace a flow's fields, creating the row when the id is unknown.

    There is no version check: concurrent writers overwrite each other and the
    last write wins.
    """
    stored = _validated_data(flow_id, data)[1] if data is not None else None
    flow = await get_flow(session, flow_id)
    now = utcnow()

    if flow is None:
        logger.info("Flow %s not found, creating it", flow_id)
        if stored is None:
            template = load_system_template(flow_id)
            if template is None:
                raise FlowValidationError(
                    ValidationResult(
                        errors=[ValidationIssue("missing_data", f"Flow {flow_id} does not exist; data is required")]
                    )
                )
            stored = template.to_dict()
        flow = Flow(
            id=flow_id,
            name=name or stored.get("name") or flow_id,
            description=description or "",
            data=stored,
            is_live=bool(is_live),
            mapping_config=mapping_config,
            created_by=created_by or "system",
            created_at=now,
            updated_at=now,
        )
        session.add(flow)
    else:
        if name:
            flow.name = name
        if description:
            flow.description = description
        if stored is not None:
            flow.data = stored
        if is_live is not None:
            flow.is_live = is_live
        if mapping_config is not None:
            flow.mapping_config = mapping_config
        flow.updated_at = now

    await session.commit()
    await session.refresh(flow)
    return flow


async def delete_flow(session: AsyncSession, flow_id: str) -> bool:
    flow = await get_flow(session, flow_id)
    if not flow:
        return False
    await session.delete(flow)
    await session.commit()
    return True
