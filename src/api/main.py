"""FastAPI application for video ingestion and course chat.

Provides ingestion and reprocessing endpoints for creators, status polling,
and a streaming chat endpoint for students.
"""

import os
from datetime import UTC, datetime
from pathlib import Path

from dotenv import load_dotenv
from fastapi import BackgroundTasks, FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel

from src.chat.completion_service import CompletionService
from src.chat.config import get_chat_config
from src.chat.context_builder import ContextBuilder
from src.chat.schemas import ChatRequest, ChatSession
from src.chat.service import ChatService
from src.chat.session_manager import SessionManager
from src.chat.storage import ChatStore
from src.ingestion.config import get_config
from src.ingestion.pipeline import VideoPipeline
from src.ingestion.schemas import IngestionRequest, ReprocessResult, VideoStatusRecord
from src.ingestion.storage_service import StorageService
from src.retrieval.config import get_retrieval_config
from src.retrieval.ranking import RetrievalService
from src.retrieval.vector_store import create_vector_store
from src.utils.clients import get_supabase_client
from src.utils.errors import (
    InvalidReferenceError,
    InvalidTransitionError,
    NotFoundError,
    SessionOwnershipError,
    VideoRAGError,
)
from src.utils.logging import get_logger

logger = get_logger(__name__)

# Check if we're in production
is_production = os.getenv("ENVIRONMENT") == "production"

if not is_production:
    # Development: prioritize .env file
    project_root = Path(__file__).resolve().parent.parent.parent
    dotenv_path = project_root / ".env"
    load_dotenv(dotenv_path, override=True)
else:
    # Production: use cloud platform env vars only
    load_dotenv()

# Global services initialized in lifespan
pipeline: VideoPipeline | None = None
chat_service: ChatService | None = None

ERROR_STATUS_CODES: dict[type[VideoRAGError], int] = {
    InvalidReferenceError: 400,
    SessionOwnershipError: 403,
    NotFoundError: 404,
    InvalidTransitionError: 409,
}


# ==============================================================================
# Lifespan Management
# ==============================================================================


def build_services() -> tuple[VideoPipeline, ChatService]:
    """Wire the ingestion pipeline and chat service from environment config."""
    ingestion_config = get_config()
    retrieval_config = get_retrieval_config()
    chat_config = get_chat_config()

    supabase = get_supabase_client()
    storage = StorageService(ingestion_config, supabase)
    vector_store = create_vector_store(
        retrieval_config.vector_backend,
        supabase,
        dimensions=ingestion_config.embedding_dimensions,
        train_threshold=retrieval_config.ivf_train_threshold,
        n_probe=retrieval_config.ivf_n_probe,
    )
    video_pipeline = VideoPipeline(ingestion_config, storage, vector_store)

    retrieval = RetrievalService(
        retrieval_config, video_pipeline.embeddings, vector_store, storage
    )
    service = ChatService(
        chat_config,
        SessionManager(chat_config, ChatStore(chat_config, supabase)),
        retrieval,
        ContextBuilder(chat_config),
        CompletionService(chat_config),
        storage,
    )
    return video_pipeline, service


async def lifespan(app: FastAPI):  # type: ignore[misc]
    """Lifecycle manager for the FastAPI application.

    Handles initialization and cleanup of resources.
    """
    global pipeline, chat_service

    logger.info("application_startup_started")

    try:
        pipeline, chat_service = build_services()
        logger.info(
            "application_startup_completed",
            services=["pipeline", "chat_service"],
        )

    except Exception:
        logger.exception("application_startup_failed")
        raise

    yield  # Application runs here

    logger.info("application_shutdown_started")
    pipeline = None
    chat_service = None
    logger.info("application_shutdown_completed")


# ==============================================================================
# FastAPI Application Setup
# ==============================================================================

app = FastAPI(
    title="Video RAG API",
    description="Video ingestion pipeline and retrieval-augmented course chat",
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


@app.exception_handler(VideoRAGError)
async def video_rag_error_handler(request: Request, exc: VideoRAGError) -> JSONResponse:
    """Map domain errors to HTTP responses without internal details."""
    status_code = ERROR_STATUS_CODES.get(type(exc), 500)
    if status_code == 500:
        logger.error(
            "request_failed",
            path=request.url.path,
            reason=exc.reason,
            error_type=type(exc).__name__,
        )
    else:
        logger.warning(
            "request_rejected",
            path=request.url.path,
            reason=exc.reason,
            status_code=status_code,
        )
    return JSONResponse(
        status_code=status_code,
        content={"error": exc.reason, "detail": exc.user_message},
    )


# ==============================================================================
# Request/Response Models
# ==============================================================================


class BatchReprocessRequest(BaseModel):
    """Reprocess the listed videos, or every failed and stuck video."""

    video_ids: list[str] | None = None
    owner_id: str | None = None
    force: bool = False


class BatchReprocessResponse(BaseModel):
    results: list[ReprocessResult]


# ==============================================================================
# Helper Functions
# ==============================================================================


def get_pipeline() -> VideoPipeline:
    if pipeline is None:
        raise RuntimeError("Pipeline not initialized")
    return pipeline


def get_chat_service() -> ChatService:
    if chat_service is None:
        raise RuntimeError("Chat service not initialized")
    return chat_service


async def run_ingestion_job(video_id: str) -> None:
    """Background job: take one pending video through the pipeline."""
    try:
        video = await get_pipeline().process_video(video_id)
        logger.info(
            "ingestion_job_finished",
            video_id=video_id,
            status=video.status.value,
            error_reason=video.error_reason,
        )
    except Exception as e:
        logger.exception(
            "ingestion_job_failed",
            video_id=video_id,
            error_type=type(e).__name__,
        )


async def stream_chat_events(service: ChatService, request: ChatRequest, session: ChatSession):
    """Encode chat events as newline-delimited JSON."""
    async for event in service.ask(request, session):
        yield event.model_dump_json(exclude_none=True).encode("utf-8") + b"\n"


# ==============================================================================
# API Endpoints
# ==============================================================================


@app.get("/health")
async def health_check():
    """Health check endpoint.

    Returns:
        Health status and timestamp.
    """
    return {
        "status": "healthy",
        "timestamp": datetime.now(UTC).isoformat(),
        "services": {
            "pipeline": pipeline is not None,
            "chat_service": chat_service is not None,
        },
    }


@app.post("/api/videos", status_code=202, response_model=VideoStatusRecord)
async def ingest_video(request: IngestionRequest, background_tasks: BackgroundTasks):
    """Register a video and schedule its processing.

    Returns:
        The pending status record; poll the status endpoint for progress.
    """
    logger.info(
        "ingest_request_received",
        owner_id=request.owner_id,
        source_kind=request.source_kind.value,
    )
    video = await get_pipeline().ingest(request)
    background_tasks.add_task(run_ingestion_job, video.id)
    return VideoStatusRecord.from_video(video)


@app.get("/api/videos/{video_id}/status", response_model=VideoStatusRecord)
async def get_video_status(video_id: str):
    return await get_pipeline().get_status(video_id)


@app.post("/api/videos/{video_id}/reprocess", response_model=ReprocessResult)
async def reprocess_video(video_id: str, force: bool = Query(False)):
    return await get_pipeline().reprocess(video_id, force=force)


@app.post("/api/videos/reprocess", response_model=BatchReprocessResponse)
async def reprocess_videos(request: BatchReprocessRequest):
    """Reprocess a batch of videos.

    With ``video_ids`` only those videos are re-entered; without, every
    failed video (optionally for one owner) and every stuck video is.
    """
    video_pipeline = get_pipeline()
    if request.video_ids:
        results = await video_pipeline.reprocess_many(request.video_ids, force=request.force)
    else:
        results = await video_pipeline.recover_stuck()
        recovered = {result.video_id for result in results}
        results += await video_pipeline.reprocess_failed(request.owner_id, exclude=recovered)
    return BatchReprocessResponse(results=results)


@app.post("/api/chat")
async def chat_endpoint(request: ChatRequest):
    """Answer a student's question as a stream of NDJSON chat events.

    Session lookup happens before streaming so an unknown or foreign
    session fails with a plain HTTP error.
    """
    logger.info(
        "chat_request_received",
        student_id=request.student_id,
        creator_id=request.creator_id,
        session_id=request.session_id,
        query_length=len(request.message),
    )
    service = get_chat_service()
    session = await service.open_session(request)
    return StreamingResponse(
        stream_chat_events(service, request, session),
        media_type="application/x-ndjson",
    )


@app.get("/api/chat/sessions/{session_id}")
async def get_chat_session(
    session_id: str,
    student_id: str = Query(...),
    creator_id: str = Query(...),
):
    """Return a session and its messages in arrival order."""
    sessions = get_chat_service().sessions
    session = await sessions.get_or_create(session_id, student_id, creator_id)
    messages = await sessions.history(session)
    return {
        "session": session.model_dump(mode="json"),
        "messages": [message.model_dump(mode="json") for message in messages],
    }
