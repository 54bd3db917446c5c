"""
Exception hierarchy for the clinical extraction pipeline.

Every error carries a machine-readable ``error_code`` and a ``details`` map
so API handlers and log records can serialise it without string parsing.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional


class BaseExtractionError(Exception):
    """Root of all clinex errors."""

    default_code = "CLINEX_ERROR"

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.default_code
        self.details: Dict[str, Any] = dict(details or {})
        self.timestamp = datetime.now().isoformat()

    def __str__(self) -> str:
        return self.message

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error_type": type(self).__name__,
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details,
            "timestamp": self.timestamp,
        }


def _collect(details: Optional[Dict[str, Any]], **fields: Any) -> Dict[str, Any]:
    merged = dict(details or {})
    merged.update({key: value for key, value in fields.items() if value is not None})
    return merged


class ProcessingError(BaseExtractionError):
    """A source unit could not be pushed through the pipeline."""

    default_code = "PROCESSING_ERROR"

    def __init__(
        self,
        message: str,
        unit_id: Optional[str] = None,
        domain: Optional[str] = None,
        processing_stage: Optional[str] = None,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(
            message,
            error_code=error_code,
            details=_collect(details, unit_id=unit_id, domain=domain, processing_stage=processing_stage),
        )


class AIError(BaseExtractionError):
    """Model backend failure (load, transport, malformed stream)."""

    default_code = "AI_ERROR"

    def __init__(
        self,
        message: str,
        model_name: Optional[str] = None,
        ai_operation: Optional[str] = None,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(
            message,
            error_code=error_code,
            details=_collect(details, model_name=model_name, ai_operation=ai_operation),
        )


class GenerationError(AIError):
    """A generation attempt was aborted by the watchdog."""

    default_code = "GENERATION_ERROR"

    def __init__(self, message: str, kind: str, pattern: Optional[str] = None, **kwargs: Any):
        details = _collect(kwargs.pop("details", None), kind=kind, pattern=pattern)
        super().__init__(message, details=details, **kwargs)
        self.kind = kind
        self.pattern = pattern


class ValidationError(BaseExtractionError):
    """Input that fails a structural rule (bad overrides, malformed unit)."""

    default_code = "VALIDATION_ERROR"

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        value: Any = None,
        validation_rule: Optional[str] = None,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(
            message,
            error_code=error_code,
            details=_collect(details, field=field, value=value, validation_rule=validation_rule),
        )


class ConfigurationError(BaseExtractionError):
    default_code = "CONFIGURATION_ERROR"

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, error_code=error_code, details=_collect(details, config_key=config_key))


class ReviewQueueError(BaseExtractionError):
    default_code = "REVIEW_QUEUE_ERROR"

    def __init__(
        self,
        message: str,
        item_id: Optional[str] = None,
        status: Optional[str] = None,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(
            message,
            error_code=error_code,
            details=_collect(details, item_id=item_id, status=status),
        )
        self.item_id = item_id


class ItemNotFoundError(ReviewQueueError):
    default_code = "ITEM_NOT_FOUND"


class InvalidTransitionError(ReviewQueueError):
    """Raised when a decided review item is asked to change state again."""

    default_code = "INVALID_TRANSITION"


__all__ = [
    "AIError",
    "BaseExtractionError",
    "ConfigurationError",
    "GenerationError",
    "InvalidTransitionError",
    "ItemNotFoundError",
    "ProcessingError",
    "ReviewQueueError",
    "ValidationError",
]
