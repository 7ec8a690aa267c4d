from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from dispatch_engine.core.config import settings
from dispatch_engine.core.database import AsyncSessionLocal, engine
from dispatch_engine.core.errors import DispatchError
from dispatch_engine.core.init_db import init_db
from dispatch_engine.api.v1.api import api_router
from dispatch_engine.services.core import DispatchCore
from dispatch_engine.websockets.rooms_ws import router as rooms_ws_router


def create_app(core: Optional[DispatchCore] = None) -> FastAPI:
    """Build the API. A prepared ``core`` skips the startup wiring (used by tests)."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if core is not None:
            yield
            return
        await init_db(engine)
        app.state.core = DispatchCore(AsyncSessionLocal, settings)
        await app.state.core.start()
        try:
            yield
        finally:
            await app.state.core.stop()

    app = FastAPI(
        title=settings.PROJECT_NAME,
        version=settings.VERSION,
        openapi_url=f"{settings.API_V1_STR}/openapi.json",
        lifespan=lifespan,
    )
    if core is not None:
        app.state.core = core

    # CORS
    if settings.BACKEND_CORS_ORIGINS:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=[str(origin) for origin in settings.BACKEND_CORS_ORIGINS],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    @app.exception_handler(DispatchError)
    async def dispatch_error_handler(request: Request, exc: DispatchError):
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    # API v1 routers
    app.include_router(api_router, prefix=settings.API_V1_STR)

    # Same routers without the prefix for older clients
    app.include_router(api_router, prefix="")

    # Order room websockets
    app.include_router(rooms_ws_router)

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    return app


app = create_app()
