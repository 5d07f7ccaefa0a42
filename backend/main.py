"""
Red Chamber Grounded QA — FastAPI Application

Main entry point. Serves the SSE question stream, the one-shot and batch
question endpoints, and health/info descriptors.
Orchestrates: Validation → GroqClient → Citation Engine → Streaming Bridge → SSE
"""

import json
import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, Tuple

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError

from backend.batch.orchestrator import run_batch
from backend.config import APP_NAME, APP_VERSION, LOG_LEVEL, MODEL_KEYS, MODEL_TIERS, PORT
from backend.db import crud, database
from backend.db.trace_recorder import build_recorder
from backend.errors.exceptions import QAValidationError
from backend.llm.groq_client import GroqClient, build_qa_client
from backend.models.schemas import (
    BatchRequest,
    BatchResult,
    QAResponse,
    QuestionRequest,
    StreamQARequest,
    validate_question_request,
)
from backend.streaming.bridge import StreamingBridge

# Configure logging
logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s | %(levelname)s | %(message)s"
)
logger = logging.getLogger(__name__)


SSE_HEADERS = {
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def rebuild_qa_client(app: FastAPI, client: GroqClient = None) -> GroqClient:
    """Replace the app's QA client (a fresh one from the environment by default)."""
    app.state.qa_client = client or build_qa_client(recorder=getattr(app.state, "recorder", None))
    return app.state.qa_client


@asynccontextmanager
async def lifespan(app):
    """Initialize the trace store and the Groq client on server startup."""
    logger.info(f"Initializing {APP_NAME}...")

    app.state.recorder = None
    try:
        if await database.init_db():
            app.state.recorder = build_recorder()
    except (SQLAlchemyError, OSError) as e:
        logger.warning(f"Trace store unavailable, continuing without it: {e}")

    try:
        rebuild_qa_client(app)
        logger.info("Groq client initialized successfully.")
    except Exception as e:
        logger.error(f"Failed to initialize Groq client: {e}")
        raise

    logger.info(f"{APP_NAME} ready!")
    yield
    await database.close_db()


app = FastAPI(
    title=APP_NAME,
    description="Grounded, cited question answering about Dream of the Red Chamber",
    version=APP_VERSION,
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# --- Request Helpers ---

def _bad_request(message: str, details: Any = None) -> JSONResponse:
    content = {"error": message}
    if details:
        content["details"] = details
    return JSONResponse(status_code=400, content=content)


async def _read_json(request: Request) -> Tuple[Any, JSONResponse]:
    try:
        return await request.json(), None
    except (json.JSONDecodeError, UnicodeDecodeError):
        return None, _bad_request("Request body must be valid JSON")


def _parse_question(body: Any) -> Tuple[QuestionRequest, JSONResponse]:
    """Turn a raw JSON body into a QuestionRequest, or a 400 response."""
    if not isinstance(body, dict):
        return None, _bad_request("Request body must be a JSON object")

    question = body.get("userQuestion", body.get("user_question"))
    if not isinstance(question, str) or not question.strip():
        return None, _bad_request("userQuestion is required and must be a non-empty string")

    try:
        parsed = StreamQARequest.model_validate(body).to_question_request()
    except ValidationError as e:
        return None, _bad_request("Invalid request", e.errors(include_url=False, include_context=False))

    errors = validate_question_request(parsed)
    if errors:
        return None, _bad_request("; ".join(errors))
    return parsed, None


def _get_client(request: Request) -> GroqClient:
    client = getattr(request.app.state, "qa_client", None)
    if client is None:
        raise HTTPException(status_code=503, detail="QA client is not initialized.")
    return client


# --- Main Endpoints ---

@app.post("/api/qa/stream")
async def qa_stream(request: Request):
    """Streaming endpoint — returns StreamChunks via Server-Sent Events (SSE)."""
    body, error = await _read_json(request)
    if error:
        return error
    question, error = _parse_question(body)
    if error:
        return error

    bridge = StreamingBridge(
        _get_client(request),
        question,
        is_disconnected=request.is_disconnected,
        recorder=getattr(request.app.state, "recorder", None),
    )
    return StreamingResponse(bridge.sse_events(), media_type="text/event-stream", headers=SSE_HEADERS)


@app.get("/api/qa/stream")
async def qa_stream_info():
    """Static descriptor of the streaming endpoint."""
    return {
        "name": APP_NAME,
        "version": APP_VERSION,
        "description": "Server-Sent Events stream of grounded answers about Dream of the Red Chamber",
        "usage": {
            "method": "POST",
            "contentType": "application/json",
            "requiredFields": ["userQuestion"],
            "optionalFields": [
                "selectedTextInfo",
                "chapterContext",
                "currentChapter",
                "modelKey",
                "reasoningEffort",
                "questionContext",
                "enableStreaming",
                "includeDetailedCitations",
                "showThinkingProcess",
                "temperature",
                "maxTokens",
            ],
        },
        "supportedModels": {key: MODEL_TIERS[key]["name"] for key in MODEL_KEYS},
        "endpoint": "/api/qa/stream",
    }


@app.post("/api/qa", response_model=QAResponse)
async def qa(request: Request):
    """One-shot endpoint — the full answer with citations."""
    body, error = await _read_json(request)
    if error:
        return error
    question, error = _parse_question(body)
    if error:
        return error

    try:
        return await _get_client(request).complete(question)
    except QAValidationError as e:
        return _bad_request(str(e))


@app.post("/api/qa/batch", response_model=BatchResult)
async def qa_batch(request: Request):
    """Answer several questions with bounded concurrency."""
    body, error = await _read_json(request)
    if error:
        return error

    try:
        batch = BatchRequest.model_validate(body)
    except ValidationError as e:
        return _bad_request("Invalid batch request", e.errors(include_url=False, include_context=False))

    for index, question in enumerate(batch.questions):
        errors = validate_question_request(question)
        if errors:
            return _bad_request(f"questions[{index}]: " + "; ".join(errors))

    try:
        return await run_batch(
            _get_client(request),
            batch.questions,
            max_concurrency=batch.max_concurrency,
            parallel=batch.parallel,
            shared_config=batch.shared_config,
        )
    except ValidationError as e:
        return _bad_request("Invalid sharedConfig", e.errors(include_url=False, include_context=False))


# --- Traces & Health ---

@app.get("/api/qa/traces")
async def qa_traces(limit: int = 20) -> Dict[str, Any]:
    """Most recent stream traces and classified errors from the trace store."""
    if database.AsyncSessionLocal is None:
        raise HTTPException(status_code=503, detail="Trace store is disabled (DATABASE_URL not set).")

    async with database.AsyncSessionLocal() as db:
        traces = await crud.get_recent_stream_traces(db, limit)
        errors = await crud.get_recent_error_logs(db, limit)

    return {
        "streams": [
            {"question": t.question, "model_key": t.model_key, "state": t.state, "chunk_count": t.chunk_count,
             "response_time": t.response_time, "error_category": t.error_category, "created_at": t.created_at}
            for t in traces
        ],
        "errors": [
            {"category": e.category, "technical_message": e.technical_message, "question": e.question,
             "created_at": e.created_at}
            for e in errors
        ],
    }


@app.get("/health")
async def health(request: Request, check_upstream: bool = False):
    """Liveness; with ?check_upstream=true also pings the Groq API."""
    status = {"status": "ok"}
    if check_upstream:
        client = getattr(request.app.state, "qa_client", None)
        if client is None:
            status["upstream"] = {"success": False, "error": "QA client is not initialized."}
        else:
            status["upstream"] = await client.check_connection()
    return status


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("backend.main:app", host="0.0.0.0", port=PORT)
