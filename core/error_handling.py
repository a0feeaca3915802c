"""
Error taxonomy for the video-to-guide pipeline.

Every failure that crosses a component boundary is a ``PipelineError``. Each
carries a category (used by the API to pick an HTTP status and by the
orchestrator to record the failed stage), a user-facing message, and the
underlying library exception as ``cause``.
"""

import logging
import traceback
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


class ErrorSeverity(Enum):
    """Error severity levels for classification."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ErrorCategory(Enum):
    """Error categories understood by the API and the orchestrator."""
    VALIDATION = "validation"
    UPSTREAM = "upstream"
    TIMEOUT = "timeout"
    AUTHORIZATION = "authorization"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    DATABASE = "database"
    UNKNOWN = "unknown"


class PipelineError(Exception):
    """Base class for all pipeline errors."""

    category = ErrorCategory.UNKNOWN
    severity = ErrorSeverity.MEDIUM

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.message = message
        self.cause = cause
        if cause is not None:
            self.__cause__ = cause

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        data = {
            'error': self.message,
            'category': self.category.value,
            'type': type(self).__name__,
        }
        if self.cause is not None:
            data['cause'] = describe_error(self.cause)
        return data


class ValidationError(PipelineError):
    """Input rejected before any work was done."""
    category = ErrorCategory.VALIDATION
    severity = ErrorSeverity.LOW


class UpstreamError(PipelineError):
    """An external tool or provider failed."""
    category = ErrorCategory.UPSTREAM
    severity = ErrorSeverity.HIGH


class PipelineTimeoutError(PipelineError):
    category = ErrorCategory.TIMEOUT
    severity = ErrorSeverity.HIGH


class AuthorizationError(PipelineError):
    """The caller does not own the record."""
    category = ErrorCategory.AUTHORIZATION
    severity = ErrorSeverity.LOW


class NotFoundError(PipelineError):
    category = ErrorCategory.NOT_FOUND
    severity = ErrorSeverity.LOW


class JobStateError(PipelineError):
    """Operation not allowed in the job's current state."""
    category = ErrorCategory.CONFLICT
    severity = ErrorSeverity.MEDIUM


class DuplicateJobError(JobStateError):
    """A non-terminal job already exists for the same user and video."""

    def __init__(self, message: str, existing_job_id: Optional[str] = None,
                 cause: Optional[BaseException] = None):
        super().__init__(message, cause)
        self.existing_job_id = existing_job_id

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        if self.existing_job_id:
            data['existing_job_id'] = self.existing_job_id
        return data


class InvalidTransitionError(JobStateError):
    """Status change that would move a job backwards or out of a terminal state."""
    severity = ErrorSeverity.HIGH


class StorageError(PipelineError):
    """The job or guide store could not be read or written."""
    category = ErrorCategory.DATABASE
    severity = ErrorSeverity.HIGH


def describe_error(error: BaseException) -> str:
    """Render an exception as a short human-readable cause."""
    if isinstance(error, PipelineError):
        return error.message
    message = str(error).strip()
    if not message:
        return type(error).__name__
    return f"{type(error).__name__}: {message}"


@dataclass
class ErrorDetails:
    """Detailed error information recorded alongside a failed job."""
    error_id: str
    category: ErrorCategory
    severity: ErrorSeverity
    message: str
    exception_type: str
    traceback: str
    context: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            'error_id': self.error_id,
            'category': self.category.value,
            'severity': self.severity.value,
            'message': self.message,
            'exception_type': self.exception_type,
            'traceback': self.traceback,
            'context': self.context,
            'timestamp': self.timestamp.isoformat(),
        }


def analyze_error(error: BaseException, context: Optional[Dict[str, Any]] = None) -> ErrorDetails:
    """Classify an exception into ``ErrorDetails``."""
    if isinstance(error, PipelineError):
        category, severity = error.category, error.severity
    else:
        category, severity = ErrorCategory.UNKNOWN, ErrorSeverity.HIGH

    return ErrorDetails(
        error_id=uuid.uuid4().hex[:12],
        category=category,
        severity=severity,
        message=describe_error(error),
        exception_type=type(error).__name__,
        traceback=''.join(traceback.format_exception(type(error), error, error.__traceback__)),
        context=dict(context or {}),
    )
