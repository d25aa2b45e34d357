from pathlib import Path

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles
from slowapi.middleware import SlowAPIMiddleware

from app.api.v1 import api_router
from app.core.errors import register_exception_handlers
from app.core.limiter import limiter
from app.core.logging import configure_logging
from app.core.settings import settings
from app.events import register_event_handlers
from app.middlewares.request_context import RequestContextMiddleware


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(title="Equipment Loan Backend", version="0.1.0")
    register_exception_handlers(app)
    app.state.limiter = limiter
    app.add_middleware(SlowAPIMiddleware)
    app.add_middleware(RequestContextMiddleware)
    # Forms are posted from static pages on other origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Pipeline-Run-Id", "X-Request-Id"],
    )
    app.include_router(api_router, prefix="/api/v1")
    if settings.storage_provider == "local":
        public_dir = Path(settings.local_upload_dir) / "public"
        public_dir.mkdir(parents=True, exist_ok=True)
        app.mount("/files", StaticFiles(directory=public_dir), name="files")
    register_event_handlers(app)
    return app


app = create_app()
