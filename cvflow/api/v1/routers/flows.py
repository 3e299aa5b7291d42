from __future__ import annotations

import logging
from typing import Any, Union

from fastapi import APIRouter, Body, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from cvflow.api.deps import get_current_principal, get_db_session, require_principal
from cvflow.crud.flow import (
    create_flow,
    delete_flow,
    get_flow,
    get_live_flow,
    is_system_flow,
    list_flows,
    load_system_template,
    update_flow,
)
from cvflow.schemas.api import DeleteResponse, FlowCreateRequest, FlowOut, FlowUpdateRequest
from cvflow.services.validation import FlowValidationError, parse_flow, validate_flow

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/flows", tags=["flows"])


def _unauthorized() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Unauthorized",
        headers={"WWW-Authenticate": "Bearer"},
    )


def _invalid(e: FlowValidationError) -> HTTPException:
    return HTTPException(status_code=422, detail=e.result.to_dict())


@router.get("", response_model=Union[FlowOut, list[FlowOut]])
async def read_flows(
    id: str | None = Query(default=None),
    principal: str | None = Depends(get_current_principal),
    session: AsyncSession = Depends(get_db_session),
):
    # System flows are readable without signing in
    if not is_system_flow(id) and not principal:
        raise _unauthorized()

    if id is None:
        return [FlowOut.model_validate(f) for f in await list_flows(session)]

    flow = await get_flow(session, id)
    if flow is not None:
        return FlowOut.model_validate(flow)

    template = load_system_template(id)
    if template is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Flow not found")
    return FlowOut(
        id=template.id,
        name=template.name,
        description=template.description,
        data=template.to_dict(),
        is_active=True,
        is_live=False,
        created_by="system",
        created_at=template.created_at,
        updated_at=template.updated_at,
    )


@router.post("", response_model=FlowOut)
async def add_flow(
    payload: FlowCreateRequest,
    principal: str = Depends(require_principal),
    session: AsyncSession = Depends(get_db_session),
) -> FlowOut:
    if not payload.name or not payload.data:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="Name and data are required"
        )
    try:
        flow = await create_flow(
            session,
            name=payload.name,
            description=payload.description,
            data=payload.data,
            created_by=principal,
        )
    except FlowValidationError as e:
        raise _invalid(e)
    return FlowOut.model_validate(flow)


@router.put("", response_model=FlowOut)
async def save_flow(
    payload: FlowUpdateRequest,
    principal: str | None = Depends(get_current_principal),
    session: AsyncSession = Depends(get_db_session),
) -> FlowOut:
    # System flows may be saved without signing in
    if not is_system_flow(payload.id) and not principal:
        raise _unauthorized()
    if not payload.id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="Flow ID is required"
        )
    try:
        flow = await update_flow(
            session,
            payload.id,
            name=payload.name,
            description=payload.description,
            data=payload.data,
            is_live=payload.is_live,
            mapping_config=payload.mapping_config,
            created_by=principal,
        )
    except FlowValidationError as e:
        raise _invalid(e)
    return FlowOut.model_validate(flow)


@router.delete("", response_model=DeleteResponse)
async def remove_flow(
    id: str | None = Query(default=None),
    principal: str = Depends(require_principal),
    session: AsyncSession = Depends(get_db_session),
) -> DeleteResponse:
    if not id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="Flow ID is required"
        )
    if not await delete_flow(session, id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Flow not found")
    logger.info("Flow %s deleted by %s", id, principal)
    return DeleteResponse(success=True)


@router.post("/validate")
async def check_flow(document: dict[str, Any] = Body(...)) -> dict:
    try:
        doc = parse_flow(document)
    except FlowValidationError as e:
        return e.result.to_dict()
    return validate_flow(doc).to_dict()


@router.get("/live", response_model=FlowOut)
async def read_live_flow(session: AsyncSession = Depends(get_db_session)) -> FlowOut:
    # Public: the chat widget loads whichever flow is live
    flow = await get_live_flow(session)
    if flow is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No active flow found")
    return FlowOut.model_validate(flow)
