from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from fastapi import FastAPI

from ..bootstrap import build_stack
from ..config import Settings, get_settings
from ..db.base import BaseDBManager
from .middleware import CreditConsumptionMiddleware
from .router import router


def create_app(
    settings: Optional[Settings] = None, db: Optional[BaseDBManager] = None
) -> FastAPI:
    """
    Build the ledger HTTP app. The stack lives on `app.state.ledger` and is
    handed to routes through a dependency, never through module globals.
    """
    settings = settings or get_settings()
    logging.basicConfig(level=settings.log_level)
    stack = build_stack(settings, db=db)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        await stack.db.init_schema()
        yield
        await stack.db.close()

    app = FastAPI(title="Credit ledger", lifespan=lifespan)
    app.state.ledger = stack

    app.add_middleware(
        CreditConsumptionMiddleware,
        credit_service=stack.credit_service,
        costs={path: settings.meme_generation_cost for path in settings.paid_paths},
        skip_paths=("/healthz",),
    )
    app.include_router(router)

    @app.get("/healthz")
    async def healthz() -> dict:
        return {"status": "ok"}

    return app
