"""
Custom exception classes for the Collections Escalation Sequencer.
"""
from typing import Optional, Any, Dict
import uuid
from fastapi import HTTPException, status


# Core exceptions raised by the sequencing engine (non-API context)
class SequencerError(Exception):
    """Base exception for collections sequencing errors."""

    error_code = "SEQ_000"

    def __init__(self, detail: str, **context):
        self.detail = detail
        self.context = {k: v for k, v in context.items() if v is not None}
        super().__init__(detail)


class InvalidArgument(SequencerError):
    """Exception for bad input such as an unknown step offset or a non-positive payment."""

    error_code = "SEQ_001"

    def __init__(self, detail: str, field: Optional[str] = None, value: Optional[Any] = None, **context):
        self.field = field
        self.value = value
        if field:
            detail = f"Invalid value for '{field}': {detail}"
        super().__init__(detail, field=field, value=_safe_value(value), **context)


class InvalidState(SequencerError):
    """Exception for operations not permitted in the sequence's current status."""

    error_code = "SEQ_002"

    def __init__(
        self,
        detail: str,
        sequence_id: Optional[str] = None,
        current_status: Optional[str] = None,
        **context
    ):
        self.sequence_id = sequence_id
        self.current_status = current_status
        super().__init__(
            detail,
            sequence_id=sequence_id,
            current_status=current_status,
            **context
        )


class NotFound(SequencerError):
    """Exception for sequences or accounts unknown to the caller."""

    error_code = "SEQ_003"

    def __init__(self, detail: str, sequence_id: Optional[str] = None, account_id: Optional[str] = None):
        self.sequence_id = sequence_id
        self.account_id = account_id
        super().__init__(detail, sequence_id=sequence_id, account_id=account_id)


class CorruptRecord(SequencerError):
    """Exception for persisted sequences missing required fields or holding invalid values."""

    error_code = "SEQ_004"

    def __init__(self, detail: str, sequence_id: Optional[str] = None, field: Optional[str] = None):
        self.sequence_id = sequence_id
        self.field = field
        super().__init__(detail, sequence_id=sequence_id, field=field)


def _safe_value(value: Any) -> Any:
    if value is None or isinstance(value, (str, int, bool)):
        return value
    return str(value)


# API exceptions
class BaseAPIException(HTTPException):
    """Base exception for API errors."""

    def __init__(
        self,
        status_code: int,
        detail: str,
        error_code: Optional[str] = None,
        headers: Optional[dict[str, Any]] = None,
        correlation_id: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(status_code=status_code, detail=detail, headers=headers)
        self.error_code = error_code
        self.correlation_id = correlation_id or str(uuid.uuid4())
        self.context = context or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for API response."""
        return {
            "error": True,
            "error_code": self.error_code,
            "message": self.detail,
            "correlation_id": self.correlation_id,
            "context": self.context,
        }


class ServiceUnavailableError(BaseAPIException):
    """Exception for external service unavailability."""

    def __init__(
        self,
        service_name: str,
        detail: Optional[str] = None,
        retry_after: Optional[int] = None,
        **context
    ):
        self.service_name = service_name
        self.retry_after = retry_after
        if not detail:
            detail = f"External service '{service_name}' is currently unavailable"

        context_dict = {
            "service_name": service_name,
            "retry_after": retry_after,
            **context
        }

        headers = {}
        if retry_after:
            headers["Retry-After"] = str(retry_after)

        super().__init__(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=detail,
            error_code="SEQ_005",
            headers=headers,
            context=context_dict,
        )


# External Service Exceptions
class ExternalServiceError(Exception):
    """Exception for external service call errors."""

    def __init__(
        self,
        service_name: str,
        message: str,
        status_code: Optional[int] = None,
        retry_after: Optional[int] = None,
        **context
    ):
        self.service_name = service_name
        self.status_code = status_code
        self.retry_after = retry_after
        self.context = context
        super().__init__(f"[{service_name}] {message}")


class ExternalServiceTimeoutError(ExternalServiceError):
    """Exception for external service timeout errors."""

    def __init__(self, service_name: str, timeout_seconds: float, **context):
        super().__init__(
            service_name=service_name,
            message=f"Service timed out after {timeout_seconds} seconds",
            **context
        )
        self.timeout_seconds = timeout_seconds


# Error mapping utilities
_STATUS_BY_ERROR = {
    InvalidArgument: status.HTTP_422_UNPROCESSABLE_ENTITY,
    InvalidState: status.HTTP_409_CONFLICT,
    NotFound: status.HTTP_404_NOT_FOUND,
    CorruptRecord: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


def map_sequencer_error(error: SequencerError, correlation_id: Optional[str] = None) -> BaseAPIException:
    """Map a core sequencing error to an API exception."""
    status_code = _STATUS_BY_ERROR.get(type(error), status.HTTP_400_BAD_REQUEST)
    return BaseAPIException(
        status_code=status_code,
        detail=error.detail,
        error_code=error.error_code,
        correlation_id=correlation_id,
        context=error.context,
    )


def get_user_friendly_error_message(error_code: str) -> str:
    """Get user-friendly error message for error code."""
    error_messages = {
        "SEQ_001": "The request contained an invalid value. Please check your input.",
        "SEQ_002": "This collection sequence cannot perform that action in its current status.",
        "SEQ_003": "Collection sequence not found.",
        "SEQ_004": "The collection sequence record is damaged. Please contact support.",
        "SEQ_005": "Service temporarily unavailable. Please try again later.",
    }
    return error_messages.get(error_code, "An error occurred. Please try again.")
