import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from starlette.responses import JSONResponse

from .attempts import AttemptStateMachine
from .config import get_settings
from .email_delivery import build_sender
from .errors import AttemptStateError, RemoteOperationError, ValidationError
from .logging_config import configure_logging
from .reconciliation import ReconciliationEngine
from .routes import content_router, exam_router, subscription_router
from .subscriptions import SubscriptionLifecycle


configure_logging()
logger = logging.getLogger(__name__)


def create_app(
    engine: Optional[ReconciliationEngine] = None,
    attempts: Optional[AttemptStateMachine] = None,
    lifecycle: Optional[SubscriptionLifecycle] = None,
) -> FastAPI:
    settings = get_settings()
    engine = engine or ReconciliationEngine.from_settings(settings)
    attempts = attempts or AttemptStateMachine(engine)
    lifecycle = lifecycle or SubscriptionLifecycle(
        engine, trial_days=settings.trial_days, sender=build_sender(settings)
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if not engine.wait_until_loaded(timeout=0):
            report = engine.load()
            logger.info("Startup load finished from %s (%s)", report.source, report.counts)
        engine.outbox.start()
        try:
            yield
        finally:
            engine.outbox.stop(flush=True)

    app = FastAPI(title="IPMA Level C Prep Backend", version="0.1.0", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.engine = engine
    app.state.attempts = attempts
    app.state.lifecycle = lifecycle

    @app.exception_handler(ValidationError)
    async def _validation_error(request: Request, exc: ValidationError) -> JSONResponse:
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={"detail": str(exc), "field": exc.field},
        )

    @app.exception_handler(LookupError)
    async def _not_found(request: Request, exc: LookupError) -> JSONResponse:
        detail = str(exc.args[0]) if exc.args else str(exc)
        return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"detail": detail})

    @app.exception_handler(AttemptStateError)
    async def _attempt_closed(request: Request, exc: AttemptStateError) -> JSONResponse:
        return JSONResponse(status_code=status.HTTP_409_CONFLICT, content={"detail": str(exc)})

    @app.exception_handler(RemoteOperationError)
    async def _remote_failed(request: Request, exc: RemoteOperationError) -> JSONResponse:
        logger.warning("Remote operation failed while serving %s: %s", request.url.path, exc)
        return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content={"detail": str(exc)})

    @app.get("/healthz")
    def health() -> Dict[str, Any]:
        return {"status": "ok", "source": engine.source, "loaded": engine.wait_until_loaded(timeout=0)}

    @app.get("/healthz/database")
    def database_health() -> JSONResponse:
        try:
            engine.remote.ping()
        except RemoteOperationError as exc:
            return JSONResponse(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                content={"status": "error", "detail": exc.detail},
            )
        return JSONResponse(
            content={
                "status": "ok",
                "outbox_pending": len(engine.outbox.pending()),
                "outbox_dead_letters": len(engine.outbox.dead_letters()),
            }
        )

    app.include_router(content_router)
    app.include_router(exam_router)
    app.include_router(subscription_router)
    return app


__all__ = ["create_app"]
