import logging
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from gym_enrollment.api.v1 import api as v1_api
from gym_enrollment.core.config import settings
from gym_enrollment.core.container import Container

logging.basicConfig(level=settings.LOG_LEVEL)
logger = logging.getLogger("api")


def create_app(container: Optional[Container] = None) -> FastAPI:

    # --- LIFESPAN (STARTUP / SHUTDOWN) ---
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # 1. Startup: build services, connect the document store
        logger.info("[APP] System starting...")
        app.state.container = container or Container()
        await app.state.container.start()

        yield

        # 2. Shutdown: drop in-flight context, disconnect the store
        logger.info("[APP] System shutting down...")
        await app.state.container.stop()

    app = FastAPI(
        title=settings.PROJECT_NAME,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error(f"[APP] Unhandled exception: {exc}", exc_info=True)
        return JSONResponse(status_code=500, content={"detail": "Internal server error"})

    @app.get("/api/health", tags=["Health"])
    def health_check():
        return {"status": "ok", "service": settings.PROJECT_NAME}

    app.include_router(
        v1_api.api_router,
        prefix="/api/v1"
    )

    return app


app = create_app()


def run():
    """Console entry point: serve the API with uvicorn (HOST/PORT from the settings)."""
    uvicorn.run("gym_enrollment.main:app", host=settings.HOST, port=settings.PORT,
                log_level=settings.LOG_LEVEL.lower())


if __name__ == "__main__":
    run()
