import os

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from slowapi.util import get_remote_address

from .config import settings
from .db import Base, engine
from .logging import setup_logging, RequestIdMiddleware
from .models import models  # noqa: F401  registers tables on Base.metadata
from .routes.activity import router as activity_router
from .routes.admin import router as admin_router
from .routes.assignment_changes import router as assignment_changes_router
from .routes.files import router as files_router
from .routes.notifications import router as notifications_router
from .routes.requests import router as requests_router
from .services.email import BackgroundMailer, get_mailer
from .services.errors import ServiceQueueError


log = structlog.get_logger(__name__)


async def service_queue_error_handler(request: Request, exc: ServiceQueueError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message, "field": exc.field})


def create_app() -> FastAPI:
    setup_logging()
    app = FastAPI(title=settings.app_name)

    # Middlewares
    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    limiter = Limiter(key_func=get_remote_address, default_limits=[settings.rate_limit])
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_middleware(SlowAPIMiddleware)

    app.add_exception_handler(ServiceQueueError, service_queue_error_handler)

    # Routers
    app.include_router(requests_router)
    app.include_router(assignment_changes_router)
    app.include_router(notifications_router)
    app.include_router(activity_router)
    app.include_router(files_router)
    app.include_router(admin_router)

    # Metrics
    Instrumentator().instrument(app).expose(app)

    @app.get("/healthz")
    def healthz():
        return {"ok": True}

    @app.on_event("startup")
    def _startup():
        if settings.database_url.startswith("sqlite:///./"):
            os.makedirs("var", exist_ok=True)
        if settings.auto_create_db:
            Base.metadata.create_all(bind=engine)
            log.info("tables_verified", count=len(Base.metadata.tables))

    @app.on_event("shutdown")
    def _shutdown():
        mailer = get_mailer()
        if isinstance(mailer, BackgroundMailer):
            mailer.shutdown(wait=True)

    return app


app = create_app()
