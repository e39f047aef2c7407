import asyncio
import functools
import logging
import re
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import ORJSONResponse, StreamingResponse
from pydantic import BaseModel, Field
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from api.metrics import instrument_app
from api.streaming import QueueEventSink
from pipeline.config import (
    ALLOWED_ORIGINS,
    EXTRACT_DECISIONS_RATE_LIMIT,
    MEETINGS_STREAM_RATE_LIMIT,
    PIPELINE_WORKER_COUNT,
    TEST_ENDPOINT_SAMPLE_SIZE,
)
from pipeline.decisions import extract_meeting_decisions
from pipeline.llm_provider import ProviderError, get_provider
from pipeline.meetings_service import FetchError, load_ordered_meetings
from pipeline.models import DateRangeFilter
from pipeline.ordered_pool import run_pipeline

# Set up Rate Limiting
# Every stream request fans out into one Gemini call per meeting.
limiter = Limiter(key_func=get_remote_address)

logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
logger = logging.getLogger("council-decisions-api")

app = FastAPI(
    title="Council Decisions API",
    description="Streams council meetings with AI-extracted decisions, in meeting order.",
    default_response_class=ORJSONResponse,
)

# Add /metrics and request timing counters (route-template labels to avoid cardinality blowups).
instrument_app(app)

# Pipeline runs outlive the request handler that starts them; keep a strong
# reference so the event loop doesn't garbage-collect a running task.
_active_runs: set = set()


def _finish_run(run: asyncio.Task, sink: QueueEventSink) -> None:
    _active_runs.discard(run)
    if sink.client_disconnected:
        logger.info(f"Meetings run finished after client disconnect ({sink.dropped} events not delivered)")
    if run.cancelled():
        return
    exc = run.exception()
    if exc is not None:
        # The client already got an error event; this is for the operator.
        logger.critical(f"Meetings pipeline crashed: {exc!r}")


@app.on_event("startup")
async def check_runtime_config():
    if get_provider() is None:
        logger.warning("GEMINI_API_KEY is not set: meetings will be streamed without decisions.")
    logger.info(f"pipeline_worker_count={PIPELINE_WORKER_COUNT}")


app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


# This catches any crash (500 error) and hides the stack trace from the user.
@app.middleware("http")
async def catch_exceptions_middleware(request: Request, call_next):
    try:
        return await call_next(request)
    except Exception as e:
        logger.error(f"Unhandled Exception: {str(e)}", exc_info=True)
        return ORJSONResponse(
            status_code=500,
            content={"error": "Internal server error", "detail": "Internal Server Error. Our team has been notified."},
        )


app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization"],
)


def validate_date_format(date_str: str):
    """Ensures date is YYYY-MM-DD"""
    if not re.match(r'^\d{4}-\d{2}-\d{2}$', date_str):
        raise HTTPException(status_code=400, detail="Invalid date format. Use YYYY-MM-DD.")
    try:
        datetime.strptime(date_str, "%Y-%m-%d")
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid date. Use YYYY-MM-DD.")


def _date_range(start_date: Optional[str], end_date: Optional[str]) -> DateRangeFilter:
    if start_date:
        validate_date_format(start_date)
    if end_date:
        validate_date_format(end_date)
    return DateRangeFilter(start_date=start_date or None, end_date=end_date or None)


@app.get("/")
def read_root():
    return {"status": "ok", "message": "Council Decisions API is running. Go to /docs for the Swagger UI."}


@app.get("/health")
def health_check():
    return {"status": "ok", "timestamp": datetime.now(timezone.utc).isoformat()}


@app.get("/api/meetings")
@limiter.limit(MEETINGS_STREAM_RATE_LIMIT)
async def stream_meetings(
    request: Request,
    start_date: Optional[str] = Query(None, alias="startDate"),
    end_date: Optional[str] = Query(None, alias="endDate"),
):
    """
    Server-sent events stream of meetings with their decisions.

    Events:
    - meeting:  one meeting (with "decisions" when extraction succeeded), in
                most-recent-first order regardless of which finished first
    - complete: {"count": N} after the last meeting
    - error:    {"message": "..."} if the meeting list could not be fetched
    """
    _ = request
    date_range = _date_range(start_date, end_date)
    logger.info(f"=== Fetching Meetings (SSE) === Date range: {date_range.describe()}")

    sink = QueueEventSink()
    run = asyncio.create_task(run_pipeline(date_range, PIPELINE_WORKER_COUNT, sink))
    _active_runs.add(run)
    run.add_done_callback(functools.partial(_finish_run, sink=sink))

    return StreamingResponse(
        sink.stream(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            # Stop reverse proxies from buffering the whole stream.
            "X-Accel-Buffering": "no",
        },
    )


@app.get("/api/meetings/test")
def meetings_connectivity_test(
    start_date: Optional[str] = Query(None, alias="startDate"),
    end_date: Optional[str] = Query(None, alias="endDate"),
):
    """
    Verify the city API without PDF extraction or Gemini calls.
    """
    date_range = _date_range(start_date, end_date)
    try:
        meetings = load_ordered_meetings(date_range)
    except FetchError as e:
        logger.error(f"Error in /api/meetings/test: {e}")
        return ORJSONResponse(
            status_code=500,
            content={"success": False, "error": "Failed to fetch meetings", "message": str(e)},
        )

    sample = meetings[:TEST_ENDPOINT_SAMPLE_SIZE]
    return {
        "success": True,
        "totalCount": len(meetings),
        "sampleCount": len(sample),
        "meetings": [meeting.to_wire() for meeting in sample],
    }


class ExtractDecisionsRequest(BaseModel):
    """
    Raw meeting minutes text to run decision extraction on.
    """
    prompt: Optional[str] = Field(None, description="Plain-text council meeting minutes")


@app.post("/api/extract-decisions")
@limiter.limit(EXTRACT_DECISIONS_RATE_LIMIT)
def extract_decisions(request: Request, body: ExtractDecisionsRequest):
    _ = request
    if not body.prompt or not body.prompt.strip():
        raise HTTPException(
            status_code=400,
            detail="Please provide a valid prompt string in the request body",
        )

    provider = get_provider()
    if provider is None:
        raise HTTPException(status_code=503, detail="GEMINI_API_KEY is not configured")

    try:
        decisions = extract_meeting_decisions(body.prompt, provider)
    except ProviderError as e:
        logger.error(f"Error processing prompt: {e}")
        raise HTTPException(status_code=502, detail="Failed to process the meeting minutes with Gemini API")

    return {"success": True, "decisions": [d.model_dump() for d in decisions]}
