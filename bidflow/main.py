import os

import structlog
from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from prometheus_fastapi_instrumentator import Instrumentator
from pydantic import ValidationError as PydanticValidationError
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from slowapi.util import get_remote_address
from sqlalchemy import text
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException as StarletteHTTPException

from .config import settings
from .db import Base, engine, get_db
from .logging import setup_logging, RequestIdMiddleware
from .routes.bids import router as bids_router
from .routes.designs import router as designs_router
from .routes.notifications import router as notifications_router
from .routes.payments import router as payments_router
from .routes.progress import router as progress_router
from .services.errors import WorkflowError


logger = structlog.get_logger(__name__)


def _field_errors(errors):
    out = []
    for err in errors:
        loc = [str(p) for p in err.get("loc", ()) if p not in ("body", "query", "path", "form")]
        message = str(err.get("msg", "Invalid value"))
        if message.startswith("Value error, "):
            message = message[len("Value error, "):]
        out.append({"field": ".".join(loc) or "request", "message": message})
    return out


def _validation_response(errors) -> JSONResponse:
    return JSONResponse(
        status_code=400,
        content={"success": False, "message": "Validation failed", "errors": _field_errors(errors)},
    )


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(WorkflowError)
    async def _workflow_error(request: Request, exc: WorkflowError):
        content = {"success": False, "message": exc.message}
        if exc.errors:
            content["errors"] = exc.errors
        if exc.status_code >= 500:
            logger.error("workflow_error", path=request.url.path, error=exc.message)
        else:
            logger.info("workflow_rejected", path=request.url.path, status=exc.status_code, error=exc.message)
        return JSONResponse(status_code=exc.status_code, content=content)

    @app.exception_handler(RequestValidationError)
    async def _request_validation_error(request: Request, exc: RequestValidationError):
        return _validation_response(exc.errors())

    @app.exception_handler(PydanticValidationError)
    async def _model_validation_error(request: Request, exc: PydanticValidationError):
        return _validation_response(exc.errors())

    @app.exception_handler(StarletteHTTPException)
    async def _http_error(request: Request, exc: StarletteHTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content={"success": False, "message": str(exc.detail)},
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(Exception)
    async def _unexpected_error(request: Request, exc: Exception):
        logger.exception("unhandled_error", path=request.url.path)
        content = {"success": False, "message": "Internal server error"}
        if not settings.is_production:
            content["error"] = str(exc)
        return JSONResponse(status_code=500, content=content)


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

    register_exception_handlers(app)

    # Routers
    app.include_router(bids_router)
    app.include_router(progress_router)
    app.include_router(designs_router)
    app.include_router(payments_router)
    app.include_router(notifications_router)

    # Locally stored progress photos and design files
    app.mount(
        "/files/local",
        StaticFiles(directory=os.path.join(settings.storage_dir, "uploads"), check_dir=False),
        name="local-files",
    )

    # Metrics
    Instrumentator().instrument(app).expose(app)

    @app.get("/health")
    def health(db: Session = Depends(get_db)):
        db.execute(text("SELECT 1"))
        return {"success": True, "status": "ok", "environment": settings.environment}

    @app.on_event("startup")
    def _startup():
        logger.info("startup", app=settings.app_name, environment=settings.environment)
        # Ensure local SQLite directory exists
        if settings.database_url.startswith("sqlite:///./"):
            os.makedirs("var", exist_ok=True)
        if settings.auto_create_db:
            Base.metadata.create_all(bind=engine)
            logger.info("tables_verified", tables=len(Base.metadata.tables))

    return app


app = create_app()
