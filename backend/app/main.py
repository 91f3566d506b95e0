"""HTTP surface for scraping job control and live progress."""

import os
import time
import uuid
from contextlib import asynccontextmanager
from typing import AsyncIterator, Iterator, Optional

from fastapi import Depends, FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from pydantic import BaseModel

from harvester.pipeline.orchestrator import SourceOrchestrator
from harvester.pipeline.progress import ProgressBroadcaster, format_sse
from harvester.utils.logging_config import (
    bind_request_context,
    get_logger,
    setup_logging,
    unbind_trace_context,
)

from backend.app.lifecycle import (
    check_db_health,
    get_broadcaster,
    get_orchestrator,
    shutdown_resources,
    startup_resources,
)

logger = get_logger(__name__)

# Seconds between SSE keepalive comments while no event arrives
KEEPALIVE_SECONDS = float(os.getenv("SSE_KEEPALIVE_SECONDS", "15"))


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    from harvester import config

    setup_logging(level=config.LOG_LEVEL, service_name="api")
    logger.info("Structured logging initialized", log_level=config.LOG_LEVEL)

    await startup_resources(app)
    yield
    await shutdown_resources(app)


app = FastAPI(title="Article Harvester API", lifespan=lifespan)

allowed = os.environ.get("ALLOWED_ORIGINS", "*")
origins = ["*"] if allowed == "*" else [o.strip() for o in allowed.split(",") if o.strip()]

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def log_requests(request, call_next):
    """Log every request with a request id bound to the logging context."""
    request_id = str(uuid.uuid4())
    bind_request_context(request_id=request_id, method=request.method, path=request.url.path)

    start_time = time.time()
    try:
        response = await call_next(request)
        logger.info(
            "request_completed",
            status_code=response.status_code,
            duration_ms=round((time.time() - start_time) * 1000, 2),
        )
        response.headers["X-Request-ID"] = request_id
        return response
    except Exception as exc:
        logger.error(
            "request_failed",
            duration_ms=round((time.time() - start_time) * 1000, 2),
            error=str(exc),
            exc_info=True,
        )
        raise
    finally:
        unbind_trace_context()


class JobControlResponse(BaseModel):
    status: str
    jobId: Optional[str] = None


def _require_orchestrator(
    orchestrator: Optional[SourceOrchestrator] = Depends(get_orchestrator),
) -> SourceOrchestrator:
    if orchestrator is None:
        raise HTTPException(status_code=503, detail="Scraping orchestrator unavailable")
    return orchestrator


@app.get("/health")
async def health_check():
    """Health check endpoint for load balancer probes."""
    ready = getattr(app.state, "ready", False)
    db_healthy, db_message = check_db_health(getattr(app.state, "repository", None))
    return {
        "status": "healthy" if ready and db_healthy else "degraded",
        "service": "api",
        "database": db_message,
    }


@app.post("/api/scrape/start", response_model=JobControlResponse)
def start_scrape(orchestrator: SourceOrchestrator = Depends(_require_orchestrator)):
    result = orchestrator.start_run(background=True)
    logger.info("scrape_start_requested", status=result["status"], job_id=result.get("jobId"))
    return result


@app.post("/api/scrape/stop", response_model=JobControlResponse)
def stop_scrape(orchestrator: SourceOrchestrator = Depends(_require_orchestrator)):
    result = orchestrator.stop_run()
    logger.info("scrape_stop_requested", status=result["status"])
    return result


@app.get("/api/scrape/status")
def scrape_status(orchestrator: SourceOrchestrator = Depends(_require_orchestrator)):
    return orchestrator.get_status()


def _event_stream(
    broadcaster: ProgressBroadcaster, job_type: str, audience: str, keepalive: float
) -> Iterator[str]:
    subscription = broadcaster.subscribe(job_type, audience)
    try:
        yield ": connected\n\n"
        while True:
            event = subscription.get(timeout=keepalive)
            if event is None:
                if subscription.closed:
                    # Dropped by the broadcaster after its queue filled up
                    logger.warning("progress_stream_dropped", job_type=job_type, audience=audience)
                    yield ": stream closed, reconnect to resume\n\n"
                    break
                yield ": keepalive\n\n"
                continue
            yield format_sse(event)
            if event.is_terminal:
                break
    finally:
        broadcaster.unsubscribe(subscription)


@app.get("/api/progress/{job_type}")
def progress_stream(
    job_type: str,
    audience: str = Query("global"),
    broadcaster: Optional[ProgressBroadcaster] = Depends(get_broadcaster),
):
    """Server-Sent Events feed of progress for ``job_type``.

    The current event is replayed on connect; the stream ends after a
    terminal event so clients reconnect for the next job.
    """
    if broadcaster is None:
        raise HTTPException(status_code=503, detail="Progress stream unavailable")
    return StreamingResponse(
        _event_stream(broadcaster, job_type, audience, KEEPALIVE_SECONDS),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )
