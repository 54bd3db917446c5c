"""
Clinical extraction review service (FastAPI)
"""

from contextlib import asynccontextmanager
from datetime import date, datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from clinex.ai.types import PendingReviewItem, SourceUnit, SpeakerRole
from clinex.api.middleware import RequestLoggingMiddleware
from clinex.core.unified_config import get_config
from clinex.exceptions import (
    AIError,
    BaseExtractionError,
    ConfigurationError,
    InvalidTransitionError,
    ItemNotFoundError,
    ValidationError,
)
from clinex.logging_config import get_logger
from clinex.pipelines.extraction import ExtractionPipeline
from clinex.review.queue import ReviewQueue

logger = get_logger(__name__)

API_VERSION = "1.0"


# Pydantic models for API requests and responses
class HealthResponse(BaseModel):
    status: str
    timestamp: str
    version: str
    environment: str
    pending_items: int


class ReviewItemResponse(BaseModel):
    id: str
    unit_id: str
    domain: str
    extracted_data: Dict[str, Any]
    confidence: float
    grounding: str
    status: str
    duplicate_of: Optional[str] = None
    source_messages: List[int] = Field(default_factory=list)
    source_quote: str = ""
    flags: List[str] = Field(default_factory=list)
    anchor_date: Optional[str] = None
    created_at: Optional[str] = None
    reviewed_at: Optional[str] = None


class PendingCountResponse(BaseModel):
    pending: int


class DismissAllResponse(BaseModel):
    dismissed: int


class ConfirmWithEditsRequest(BaseModel):
    field_overrides: Dict[str, Any]


class MessageIn(BaseModel):
    role: str
    text: str


class ExtractRequest(BaseModel):
    unit_id: str
    kind: str = "conversation"
    type_label: Optional[str] = None
    language: str = "en"
    anchor_date: date
    messages: List[MessageIn] = Field(default_factory=list)
    text: Optional[str] = None


class ExtractResponse(BaseModel):
    unit_id: str
    queued: List[ReviewItemResponse]
    rejected: List[Dict[str, Any]]
    unparsed: List[Dict[str, Any]]
    failures: List[Dict[str, Any]]
    flags: List[str]
    skipped_domains: List[str]
    negative_domains: List[str]
    questions_asked: int
    processing_time: float


def _item_response(item: PendingReviewItem) -> ReviewItemResponse:
    return ReviewItemResponse(**item.to_dict())


def build_unit(request: ExtractRequest) -> SourceUnit:
    """Turn an extraction request into a source unit, validating its shape."""
    if request.kind == "conversation":
        if not request.messages:
            raise ValidationError("A conversation needs at least one message", field="messages", validation_rule="non_empty")
        roles = {role.value for role in SpeakerRole} - {SpeakerRole.DOCUMENT.value}
        for message in request.messages:
            if message.role not in roles:
                raise ValidationError(
                    f"Unknown speaker role '{message.role}'",
                    field="messages.role",
                    value=message.role,
                    validation_rule="speaker_role",
                )
        return SourceUnit.conversation(
            request.unit_id,
            [(message.role, message.text) for message in request.messages],
            language=request.language,
            anchor_date=request.anchor_date,
            type_label=request.type_label or "conversation",
        )
    if request.kind == "document":
        if not request.text or not request.text.strip():
            raise ValidationError("A document needs text", field="text", validation_rule="non_empty")
        return SourceUnit.document(
            request.unit_id,
            request.text,
            type_label=request.type_label or "document",
            language=request.language,
            anchor_date=request.anchor_date,
        )
    raise ValidationError(
        f"Unknown unit kind '{request.kind}'", field="kind", value=request.kind, validation_rule="unit_kind"
    )


router = APIRouter()


def _queue(request: Request) -> ReviewQueue:
    return request.app.state.review_queue


def _pipeline(request: Request) -> ExtractionPipeline:
    return request.app.state.pipeline


@router.get("/health", response_model=HealthResponse)
async def health_check(request: Request):
    """Health check with the current queue depth"""
    config = get_config()
    return HealthResponse(
        status="healthy",
        timestamp=datetime.now().isoformat(),
        version=API_VERSION,
        environment=config.environment.value,
        pending_items=_queue(request).pending_count(),
    )


@router.get("/review/pending", response_model=List[ReviewItemResponse])
async def pending_items(request: Request):
    return [_item_response(item) for item in _queue(request).refresh()]


@router.get("/review/count", response_model=PendingCountResponse)
async def pending_count(request: Request):
    return PendingCountResponse(pending=_queue(request).pending_count())


@router.get("/review/{item_id}", response_model=ReviewItemResponse)
async def get_item(item_id: str, request: Request):
    return _item_response(_queue(request).get(item_id))


@router.post("/review/dismiss-all", response_model=DismissAllResponse)
async def dismiss_all(request: Request):
    return DismissAllResponse(dismissed=_queue(request).dismiss_all())


@router.post("/review/{item_id}/confirm", response_model=ReviewItemResponse)
async def confirm_item(item_id: str, request: Request):
    return _item_response(_queue(request).confirm(item_id))


@router.post("/review/{item_id}/confirm-with-edits", response_model=ReviewItemResponse)
async def confirm_item_with_edits(item_id: str, body: ConfirmWithEditsRequest, request: Request):
    return _item_response(_queue(request).confirm_with_edits(item_id, body.field_overrides))


@router.post("/review/{item_id}/dismiss", response_model=ReviewItemResponse)
async def dismiss_item(item_id: str, request: Request):
    return _item_response(_queue(request).dismiss(item_id))


@router.post("/extract", response_model=ExtractResponse)
async def extract(body: ExtractRequest, request: Request):
    """
    Run one source unit through the pipeline and queue what survives

    Args:
        body: Unit descriptor (conversation messages or document text)
    """
    unit = build_unit(body)
    report = await _pipeline(request).aprocess_unit(unit)
    return ExtractResponse(**report.to_dict())


@router.get("/stats")
async def get_statistics(request: Request):
    """Pipeline performance statistics"""
    return {
        "processing_stats": _pipeline(request).performance_stats(),
        "review_stats": _queue(request).stats(),
        "api_info": {"version": API_VERSION},
    }


def _error_response(status_code: int, exc: BaseExtractionError) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=exc.to_dict())


def _register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(ItemNotFoundError)
    async def not_found_handler(request: Request, exc: ItemNotFoundError):
        return _error_response(404, exc)

    @app.exception_handler(InvalidTransitionError)
    async def invalid_transition_handler(request: Request, exc: InvalidTransitionError):
        return _error_response(409, exc)

    @app.exception_handler(ValidationError)
    async def validation_error_handler(request: Request, exc: ValidationError):
        return _error_response(422, exc)

    @app.exception_handler(ConfigurationError)
    async def configuration_error_handler(request: Request, exc: ConfigurationError):
        logger.error("Configuration error: %s", exc)
        return _error_response(503, exc)

    @app.exception_handler(AIError)
    async def ai_error_handler(request: Request, exc: AIError):
        logger.error("Model backend error: %s", exc)
        return _error_response(502, exc)

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        return JSONResponse(status_code=exc.status_code, content={"error": "HTTP Error", "detail": exc.detail})


def create_app(
    pipeline: Optional[ExtractionPipeline] = None,
    review_queue: Optional[ReviewQueue] = None,
) -> FastAPI:
    """Create and configure the FastAPI application"""
    config = get_config()
    review_queue = review_queue or (pipeline.review_queue if pipeline is not None else ReviewQueue())
    owns_pipeline = pipeline is None
    pipeline = pipeline or ExtractionPipeline(config, review_queue=review_queue)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Clinex API starting up in %s environment", config.environment.value)
        logger.info("Model backend: %s, review database: %s", config.llm_backend, review_queue.store.database_url)
        try:
            yield
        finally:
            if owns_pipeline:
                pipeline.shutdown(wait=False)
            logger.info("Clinex API shutting down")

    app = FastAPI(
        title="Clinical Extraction Review API",
        description="Queue of model-extracted clinical records awaiting human confirmation",
        version=API_VERSION,
        debug=config.is_development(),
        lifespan=lifespan,
    )
    app.state.review_queue = review_queue
    app.state.pipeline = pipeline

    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins or ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    _register_error_handlers(app)
    app.include_router(router)
    return app


app = create_app()
