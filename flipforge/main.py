from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional
import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles

from flipforge.api.endpoints import health, pipeline, product_streams, products, publish
from flipforge.db import engine
from flipforge.models import Base
from flipforge.runtime import PipelineRuntime, build_runtime
from flipforge.services.exceptions import PipelineError
from flipforge.session_factory import session_factory
from flipforge.settings import Settings, settings

logger = logging.getLogger(__name__)


async def pipeline_error_handler(request: Request, exc: PipelineError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(f"[API] {request.method} {request.url.path} failed: {exc.error_code} {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.message, "code": exc.error_code, "context": exc.context},
    )


def serves_local_uploads(config: Settings) -> bool:
    """로컬 저장소이고 공개 URL 이 같은 서버의 경로일 때만 직접 서빙."""
    return config.storage_backend == "local" and config.local_storage_base_url.rstrip("/").startswith("/")


def create_app(runtime: Optional[PipelineRuntime] = None) -> FastAPI:
    config = runtime.config if runtime is not None else settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if serves_local_uploads(config):
            Path(config.local_storage_dir).mkdir(parents=True, exist_ok=True)
        if getattr(app.state, "runtime", None) is None:
            if settings.db_auto_create_tables:
                Base.metadata.create_all(bind=engine)
            app.state.runtime = build_runtime(session_factory, settings)
        await app.state.runtime.start()
        try:
            yield
        finally:
            await app.state.runtime.stop()

    app = FastAPI(title="flipforge", lifespan=lifespan)
    app.state.runtime = runtime
    app.add_exception_handler(PipelineError, pipeline_error_handler)

    app.include_router(product_streams.router, prefix="/api/products", tags=["Products"])
    app.include_router(products.router, prefix="/api/products", tags=["Products"])
    app.include_router(pipeline.router, prefix="/api/pipeline", tags=["Pipeline"])
    app.include_router(publish.router, prefix="/api/publish", tags=["Publish"])
    app.include_router(health.router, prefix="/health", tags=["Health"])

    if serves_local_uploads(config):
        app.mount(
            config.local_storage_base_url.rstrip("/"),
            StaticFiles(directory=config.local_storage_dir, check_dir=False),
            name="uploads",
        )
        logger.info(f"[API] Serving local uploads from {config.local_storage_dir} at {config.local_storage_base_url}")
    return app


app = create_app()
