"""
FastAPI Application — HTTP ingress for the message relay.

Provides:
- POST /messages to accept a message for delivery
- Read access to stored messages
- Dependency health and queue depth reporting

Delivery itself happens in the worker process (worker/main.py) unless
``api.embedded_worker`` runs the consumer in this process.
"""
from __future__ import annotations

import structlog
from typing import Optional
from contextlib import asynccontextmanager

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import APIRouter, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse

from config.settings import Settings, get_settings
from core.errors import MessageNotFound, RelayError, ValidationError
from core.runtime import RelayServices
from utils.log_config import configure_logging

logger = structlog.get_logger()

INTERNAL_ERROR = "Internal server error."

router = APIRouter()


def _services(request: Request) -> RelayServices:
    return request.app.state.services


# ══════════════════════════════════════════════════════════════
#  MESSAGES
# ══════════════════════════════════════════════════════════════

@router.post("/messages", status_code=201)
async def submit_message(request: Request):
    try:
        payload = await request.json()
    except ValueError:
        raise ValidationError(['"body" must be valid JSON'])
    message = await _services(request).producer.submit(payload)
    return message.to_receipt()


@router.get("/messages")
async def list_messages(request: Request):
    messages = await _services(request).producer.list_all()
    return [m.to_public() for m in messages]


@router.get("/messages/{message_id}")
async def get_message(message_id: str, request: Request):
    message = await _services(request).producer.get(message_id)
    return message.to_public()


# ══════════════════════════════════════════════════════════════
#  HEALTH & DIAGNOSTICS
# ══════════════════════════════════════════════════════════════

@router.get("/health")
async def health(request: Request):
    report = await _services(request).health.check()
    return report.to_public()


@router.get("/queue/stats")
async def queue_stats(request: Request):
    services = _services(request)
    stats = await services.queue.depths()
    consumer = services.consumer
    stats["consumer_running"] = bool(consumer and consumer.running)
    if consumer is not None:
        stats["consumer"] = dict(consumer.stats, in_flight=consumer.in_flight)
    stats["channel"] = await services.channel.health_check()
    return stats


@router.get("/", response_class=PlainTextResponse)
async def banner(request: Request):
    return f"{request.app.title} is running."


# ══════════════════════════════════════════════════════════════
#  Error mapping
# ══════════════════════════════════════════════════════════════

async def _validation_error(request: Request, exc: ValidationError):
    return JSONResponse(status_code=400, content={"error": str(exc)})


async def _not_found(request: Request, exc: MessageNotFound):
    return JSONResponse(status_code=404, content={"error": "Message not found."})


async def _internal_error(request: Request, exc: Exception):
    # Client sees a generic body; the detail stays in the logs
    logger.error("request_failed",
                 method=request.method,
                 path=request.url.path,
                 error=str(exc),
                 error_type=type(exc).__name__)
    return JSONResponse(status_code=500, content={"error": INTERNAL_ERROR})


# ══════════════════════════════════════════════════════════════
#  App
# ══════════════════════════════════════════════════════════════

def create_app(
    settings: Optional[Settings] = None,
    services: Optional[RelayServices] = None,
) -> FastAPI:
    """
    Build the API. Clients are created (or taken from ``services``) and
    connected in the lifespan, so importing this module opens nothing.
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        svc = services or RelayServices(settings)
        app.state.services = svc

        # Start even when a dependency is down; /health reports it
        connected = await svc.connect(required=False)
        if settings.api.embedded_worker:
            await svc.start_delivery()

        logger.info("message_relay_api_started",
                    store_backend=type(svc.store).__name__,
                    queue_backend=type(svc.queue).__name__,
                    embedded_worker=settings.api.embedded_worker,
                    **connected)
        try:
            yield
        finally:
            await svc.shutdown()
            logger.info("message_relay_api_stopped")

    app = FastAPI(
        title=settings.app_name,
        description="Accepts messages and delivers each one asynchronously",
        version="1.0.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(ValidationError, _validation_error)
    app.add_exception_handler(MessageNotFound, _not_found)
    app.add_exception_handler(RelayError, _internal_error)
    # Anything unexpected still gets the JSON error body
    app.add_exception_handler(Exception, _internal_error)
    app.include_router(router)
    return app


app = create_app()


# ══════════════════════════════════════════════════════════════
#  Entry Point
# ══════════════════════════════════════════════════════════════

def main():
    import uvicorn

    settings = get_settings()
    configure_logging(settings.log_level, json=settings.log_json)
    uvicorn.run(create_app(settings), host=settings.api.host, port=settings.api.port)


if __name__ == "__main__":
    main()
