"""
FastAPI Application — inbound timer requests.

Provides:
- POST /api/v1/timers          typed request (entity, location, workflow, delay range)
- POST /api/enqueue-contact    webhook payload (native or humanizer_drip shape)
- GET  /health                 store and broker reachability

Errors are always {"error": {"code", "message"}}: 400 for InvalidRange /
MissingField, 502 for DownstreamFieldNotFound, 500 for InternalError.
"""
from __future__ import annotations

import structlog
from contextlib import asynccontextmanager
from typing import Any, Optional

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from core.runtime import Runtime
from models.errors import MissingField, TimerDripError
from models.schemas import DEFAULT_WORKFLOW, EnqueueResult, TimerRequest

logger = structlog.get_logger()


# ──────────────────────────────────────────────────────────────
#  Request/Response Models
# ──────────────────────────────────────────────────────────────

class ScheduleTimerRequest(BaseModel):
    entity_id: str
    location_id: str
    workflow_id: str = DEFAULT_WORKFLOW
    min_delay: float
    max_delay: float


def _scheduled(result: EnqueueResult) -> dict[str, Any]:
    return {
        "success": True,
        "runAt": result.run_at.isoformat(),
        "delaySeconds": result.delay_seconds,
        "partitionKey": result.partition_key,
    }


# ──────────────────────────────────────────────────────────────
#  App
# ──────────────────────────────────────────────────────────────

def create_app(runtime: Optional[Runtime] = None) -> FastAPI:
    """Build the app; tests pass a Runtime wired to in-memory backends."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        rt = runtime or Runtime()
        await rt.start()
        app.state.runtime = rt
        app.state.enqueue = rt.enqueue_service()
        logger.info("timer_api_started", store=type(rt.store).__name__)
        yield
        await rt.shutdown()
        logger.info("timer_api_stopped")

    app = FastAPI(
        title="Timer Drip API",
        description="Sequential randomized-delay timers per location and workflow",
        version="1.0.0",
        lifespan=lifespan,
    )

    @app.exception_handler(TimerDripError)
    async def timer_error_handler(request: Request, exc: TimerDripError):
        logger.warning("request_rejected", path=request.url.path, code=exc.code, message=exc.message)
        return JSONResponse(status_code=exc.http_status, content={"error": exc.to_dict()})

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        missing = MissingField("; ".join(
            f"{'.'.join(str(p) for p in err['loc'][1:])}: {err['msg']}" for err in exc.errors()
        ))
        return JSONResponse(status_code=missing.http_status, content={"error": missing.to_dict()})

    @app.get("/health")
    async def health(request: Request):
        return await request.app.state.runtime.health()

    @app.post("/api/v1/timers")
    async def schedule_timer(body: ScheduleTimerRequest, request: Request):
        result = await request.app.state.enqueue.enqueue_request(TimerRequest(**body.model_dump()))
        return _scheduled(result)

    @app.post("/api/enqueue-contact")
    async def enqueue_contact(request: Request):
        try:
            body = await request.json()
        except ValueError:
            raise MissingField("Request body must be JSON")
        if not isinstance(body, dict):
            raise MissingField("Request body must be a JSON object")
        logger.info("webhook_received", keys=sorted(body.keys()))
        timer = TimerRequest.from_payload(body)
        result = await request.app.state.enqueue.enqueue_request(timer)
        return _scheduled(result)

    return app


app = create_app()
