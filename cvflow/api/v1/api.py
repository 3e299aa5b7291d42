from __future__ import annotations

from fastapi import APIRouter

from cvflow.api.v1.routers import conversations, flows

api_router = APIRouter(prefix="/v1")
api_router.include_router(flows.router)
api_router.include_router(conversations.router)
