from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from cvflow.api.health import router as health_router
from cvflow.api.v1.api import api_router
from cvflow.core.config import settings
from cvflow.db.session import engine


def _parse_cors_origins(value: str) -> list[str]:
    raw = (value or "").strip()
    if not raw:
        return []
    if raw == "*":
        return ["*"]
    return [o.strip() for o in raw.split(",") if o.strip()]


@asynccontextmanager
async def lifespan(app: FastAPI):
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    # Ensure models are imported before creating tables.
    import cvflow.models  # noqa: F401
    from cvflow.models.base import Base

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield

    await engine.dispose()


app = FastAPI(title="CV Flow Engine", lifespan=lifespan)

origins = _parse_cors_origins(settings.cors_allow_origins)

# If allowing '*', credentials must be False.
allow_credentials = False if "*" in origins else True

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins or [],
    allow_credentials=allow_credentials,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Mount API router with /api prefix so paths are /api/v1/...
app.include_router(api_router, prefix="/api")
app.include_router(health_router)
