"""Error handling utilities for the bid analysis pipeline."""

from dataclasses import dataclass
from typing import Optional, Dict, Any
from enum import Enum


class ErrorType(Enum):
    """Enumeration of error types in the bid analysis pipeline."""

    # Model provider errors
    PROVIDER_RATE_LIMIT = "PROVIDER_RATE_LIMIT"
    PROVIDER_TIMEOUT = "PROVIDER_TIMEOUT"
    PROVIDER_AUTH_ERROR = "PROVIDER_AUTH_ERROR"
    PROVIDER_MODEL_ERROR = "PROVIDER_MODEL_ERROR"
    PROVIDER_INVALID_REQUEST = "PROVIDER_INVALID_REQUEST"
    PROVIDER_SERVICE_ERROR = "PROVIDER_SERVICE_ERROR"

    # Plan analysis errors
    IMAGE_LOAD_FAILED = "IMAGE_LOAD_FAILED"
    ANALYSIS_PARSE_FAILED = "ANALYSIS_PARSE_FAILED"
    ANALYSIS_EMPTY_RESPONSE = "ANALYSIS_EMPTY_RESPONSE"

    # Document extraction errors
    EXTRACTION_PARSE_FAILED = "EXTRACTION_PARSE_FAILED"
    EXTRACTION_INSUFFICIENT_TEXT = "EXTRACTION_INSUFFICIENT_TEXT"
    PDF_EXTRACTION_FAILED = "PDF_EXTRACTION_FAILED"

    # Consensus errors
    CONSENSUS_INSUFFICIENT_MODELS = "CONSENSUS_INSUFFICIENT_MODELS"

    # Configuration errors
    CONFIG_MISSING = "CONFIG_MISSING"
    CONFIG_INVALID = "CONFIG_INVALID"

    # System errors
    INITIALIZATION_FAILED = "INITIALIZATION_FAILED"

    # General errors
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


# Category labels shown to end users instead of raw stack traces
USER_CATEGORIES = {
    ErrorType.PROVIDER_RATE_LIMIT: "AI provider busy",
    ErrorType.PROVIDER_TIMEOUT: "AI provider timeout",
    ErrorType.PROVIDER_AUTH_ERROR: "AI provider credentials",
    ErrorType.PROVIDER_MODEL_ERROR: "AI model unavailable",
    ErrorType.PROVIDER_INVALID_REQUEST: "AI request rejected",
    ErrorType.PROVIDER_SERVICE_ERROR: "AI provider error",
    ErrorType.IMAGE_LOAD_FAILED: "Image could not be loaded",
    ErrorType.ANALYSIS_PARSE_FAILED: "Plan analysis unreadable",
    ErrorType.ANALYSIS_EMPTY_RESPONSE: "Plan analysis empty",
    ErrorType.EXTRACTION_PARSE_FAILED: "Document extraction failed",
    ErrorType.EXTRACTION_INSUFFICIENT_TEXT: "Document text unavailable",
    ErrorType.PDF_EXTRACTION_FAILED: "PDF could not be read",
    ErrorType.CONSENSUS_INSUFFICIENT_MODELS: "Not enough models agreed",
    ErrorType.CONFIG_MISSING: "Configuration missing",
    ErrorType.CONFIG_INVALID: "Configuration invalid",
    ErrorType.INITIALIZATION_FAILED: "System not initialized",
    ErrorType.UNKNOWN_ERROR: "Unexpected error",
}


@dataclass
class ErrorContext:
    """
    Context information for errors in the bid analysis pipeline.

    Attributes:
        error_type: Type of error from ErrorType enum
        message: Human-readable error message
        recoverable: Whether the error can be recovered from
        fallback_action: Optional description of fallback action taken
        details: Optional additional error details
        original_exception: Optional original exception that caused this error
    """

    error_type: ErrorType
    message: str
    recoverable: bool
    fallback_action: Optional[str] = None
    details: Optional[Dict[str, Any]] = None
    original_exception: Optional[Exception] = None

    def to_dict(self) -> Dict[str, Any]:
        """
        Convert error context to dictionary for logging/serialization.

        Returns:
            Dictionary representation of error context
        """
        return {
            "error_type": self.error_type.value,
            "message": self.message,
            "recoverable": self.recoverable,
            "fallback_action": self.fallback_action,
            "details": self.details or {},
            "original_exception": str(self.original_exception) if self.original_exception else None
        }


class BidAnalysisError(Exception):
    """
    Base exception for all bid analysis errors.

    Wraps errors with an ErrorContext so callers can report a category and
    a readable cause instead of a stack trace.

    Attributes:
        context: ErrorContext with detailed error information
    """

    def __init__(self, context: ErrorContext):
        self.context = context
        super().__init__(context.message)

    def __str__(self) -> str:
        """String representation of the error."""
        base = f"{self.context.error_type.value}: {self.context.message}"
        if self.context.fallback_action:
            base += f" (Fallback: {self.context.fallback_action})"
        return base

    @property
    def error_type(self) -> ErrorType:
        return self.context.error_type

    @property
    def user_message(self) -> str:
        """Category plus human-readable cause, safe to show to end users."""
        category = USER_CATEGORIES.get(self.context.error_type, "Unexpected error")
        return f"{category}: {self.context.message}"

    def to_dict(self) -> Dict[str, Any]:
        """
        Convert error to dictionary for logging/serialization.

        Returns:
            Dictionary representation of error
        """
        data = self.context.to_dict()
        data["user_message"] = self.user_message
        return data


class ProviderError(BidAnalysisError):
    """Exception for failed upstream model calls."""

    RETRYABLE_TYPES = (
        ErrorType.PROVIDER_RATE_LIMIT,
        ErrorType.PROVIDER_TIMEOUT,
        ErrorType.PROVIDER_SERVICE_ERROR,
        ErrorType.PROVIDER_MODEL_ERROR,
    )

    @property
    def status_code(self) -> Optional[int]:
        return (self.context.details or {}).get("status_code")

    @property
    def error_code(self) -> str:
        return (self.context.details or {}).get("error_code", "Unknown")

    @property
    def model_id(self) -> Optional[str]:
        return (self.context.details or {}).get("model_id")

    @property
    def is_retryable(self) -> bool:
        """Whether the failure is transient (rate limiting, timeouts, 5xx)."""
        status = self.status_code
        if status is not None and (status == 429 or status >= 500):
            return True
        return self.context.error_type in self.RETRYABLE_TYPES

    @classmethod
    def from_client_error(
        cls,
        error: Exception,
        operation: str,
        model_id: Optional[str] = None,
        recoverable: bool = False,
        fallback_action: Optional[str] = None
    ) -> "ProviderError":
        """
        Create ProviderError from a botocore ClientError.

        Args:
            error: Original botocore ClientError
            operation: Description of operation that failed
            model_id: Model the call was addressed to
            recoverable: Whether error is recoverable
            fallback_action: Optional fallback action description

        Returns:
            ProviderError instance
        """
        error_code = "Unknown"
        error_message = str(error)
        status_code = None

        if hasattr(error, 'response'):
            error_info = error.response.get("Error", {})
            error_code = error_info.get("Code", "Unknown")
            error_message = error_info.get("Message", str(error))
            status_code = error.response.get("ResponseMetadata", {}).get("HTTPStatusCode")

        # Map error codes to error types
        error_type_map = {
            "ThrottlingException": ErrorType.PROVIDER_RATE_LIMIT,
            "TooManyRequestsException": ErrorType.PROVIDER_RATE_LIMIT,
            "RequestTimeout": ErrorType.PROVIDER_TIMEOUT,
            "RequestTimeoutException": ErrorType.PROVIDER_TIMEOUT,
            "UnauthorizedException": ErrorType.PROVIDER_AUTH_ERROR,
            "AccessDeniedException": ErrorType.PROVIDER_AUTH_ERROR,
            "UnrecognizedClientException": ErrorType.PROVIDER_AUTH_ERROR,
            "ValidationException": ErrorType.PROVIDER_INVALID_REQUEST,
            "ModelNotReadyException": ErrorType.PROVIDER_MODEL_ERROR,
            "ResourceNotFoundException": ErrorType.PROVIDER_INVALID_REQUEST,
            "ModelTimeoutException": ErrorType.PROVIDER_TIMEOUT,
            "ServiceUnavailableException": ErrorType.PROVIDER_SERVICE_ERROR,
            "InternalServerException": ErrorType.PROVIDER_SERVICE_ERROR,
        }

        error_type = error_type_map.get(error_code, ErrorType.PROVIDER_SERVICE_ERROR)

        context = ErrorContext(
            error_type=error_type,
            message=f"Provider error during {operation}: {error_message}",
            recoverable=recoverable,
            fallback_action=fallback_action,
            details={
                "error_code": error_code,
                "status_code": status_code,
                "operation": operation,
                "model_id": model_id,
            },
            original_exception=error
        )

        return cls(context)

    @classmethod
    def timeout(cls, model_id: str, seconds: float) -> "ProviderError":
        """Create error for a model call that exceeded its wall-clock timeout."""
        context = ErrorContext(
            error_type=ErrorType.PROVIDER_TIMEOUT,
            message=f"Model {model_id} did not respond within {seconds:g}s",
            recoverable=True,
            fallback_action="Model excluded from consensus round",
            details={"model_id": model_id, "timeout": seconds, "status_code": None}
        )
        return cls(context)


class ParseFailureMixin:
    """Accessors for parse diagnostics stored in the error details."""

    @property
    def raw_text(self) -> str:
        return (self.context.details or {}).get("raw_text", "")

    @property
    def repaired_text(self) -> Optional[str]:
        return (self.context.details or {}).get("repaired_text")

    @property
    def direct_error(self) -> Optional[str]:
        return (self.context.details or {}).get("direct_error")

    @property
    def repair_error(self) -> Optional[str]:
        return (self.context.details or {}).get("repair_error")


class AnalysisError(ParseFailureMixin, BidAnalysisError):
    """Exception for model output that stays unparseable after repair."""

    @classmethod
    def unparseable(
        cls,
        model_id: str,
        raw_text: str,
        repaired_text: Optional[str],
        direct_error: str,
        repair_error: str
    ) -> "AnalysisError":
        """
        Create error for a plan analysis response that could not be parsed.

        Args:
            model_id: Model that produced the response
            raw_text: Response text exactly as returned
            repaired_text: Output of the JSON repair pass
            direct_error: Parser error on the raw text
            repair_error: Parser error on the repaired text

        Returns:
            AnalysisError instance
        """
        context = ErrorContext(
            error_type=ErrorType.ANALYSIS_PARSE_FAILED,
            message=f"Response from {model_id} is not valid JSON after repair: {repair_error}",
            recoverable=True,
            fallback_action="Model excluded from consensus round",
            details={
                "model_id": model_id,
                "raw_text": raw_text,
                "repaired_text": repaired_text,
                "direct_error": direct_error,
                "repair_error": repair_error,
            }
        )
        return cls(context)

    @classmethod
    def empty_response(cls, model_id: str, finish_reason: Optional[str]) -> "AnalysisError":
        context = ErrorContext(
            error_type=ErrorType.ANALYSIS_EMPTY_RESPONSE,
            message=f"Model {model_id} returned no content (finish reason: {finish_reason})",
            recoverable=True,
            fallback_action="Model excluded from consensus round",
            details={"model_id": model_id, "raw_text": "", "finish_reason": finish_reason}
        )
        return cls(context)


class ExtractionError(ParseFailureMixin, BidAnalysisError):
    """Exception for invoice/bid text extraction failures."""

    @classmethod
    def unparseable(
        cls,
        file_name: str,
        raw_text: str,
        repaired_text: Optional[str],
        direct_error: str,
        repair_error: str
    ) -> "ExtractionError":
        """
        Create error when direct parse, repair and brace matching all failed.

        Args:
            file_name: Name of the source document
            raw_text: Model response exactly as returned
            repaired_text: Output of the JSON repair pass
            direct_error: Parser error on the raw text
            repair_error: Parser error on the repaired text

        Returns:
            ExtractionError instance
        """
        context = ErrorContext(
            error_type=ErrorType.EXTRACTION_PARSE_FAILED,
            message=f"Could not parse extracted data for {file_name}: {repair_error}",
            recoverable=False,
            fallback_action="Manual data entry required",
            details={
                "file_name": file_name,
                "raw_text": raw_text,
                "repaired_text": repaired_text,
                "direct_error": direct_error,
                "repair_error": repair_error,
            }
        )
        return cls(context)

    @classmethod
    def insufficient_text(cls, file_name: str, length: int) -> "ExtractionError":
        """Create error for documents whose text layer is (nearly) empty."""
        context = ErrorContext(
            error_type=ErrorType.EXTRACTION_INSUFFICIENT_TEXT,
            message=(
                f"Could not extract sufficient text from {file_name} "
                f"({length} characters); document may be image-based/scanned"
            ),
            recoverable=False,
            fallback_action="Upload a text-based PDF or run OCR first",
            details={"file_name": file_name, "text_length": length, "raw_text": ""}
        )
        return cls(context)

    @classmethod
    def pdf_failed(cls, file_name: str, error: Exception) -> "ExtractionError":
        context = ErrorContext(
            error_type=ErrorType.PDF_EXTRACTION_FAILED,
            message=f"Failed to read PDF {file_name}: {str(error)}",
            recoverable=False,
            fallback_action="Document may be corrupted or password protected",
            details={"file_name": file_name, "raw_text": ""},
            original_exception=error
        )
        return cls(context)


class InsufficientConsensusError(BidAnalysisError):
    """Raised when fewer than the minimum number of models succeeded."""

    @classmethod
    def from_failures(
        cls,
        succeeded: int,
        required: int,
        invoked: int,
        failures: Dict[str, str]
    ) -> "InsufficientConsensusError":
        """
        Create error for a consensus round without enough corroboration.

        Args:
            succeeded: Number of models that returned parseable results
            required: Minimum number of successful models
            invoked: Number of models invoked
            failures: Mapping of model id to failure description

        Returns:
            InsufficientConsensusError instance
        """
        context = ErrorContext(
            error_type=ErrorType.CONSENSUS_INSUFFICIENT_MODELS,
            message=(
                f"Only {succeeded} of {invoked} models returned usable results "
                f"({required} required)"
            ),
            recoverable=False,
            fallback_action="Retry the analysis later",
            details={
                "succeeded": succeeded,
                "required": required,
                "invoked": invoked,
                "failures": dict(failures),
            }
        )
        return cls(context)

    @property
    def failures(self) -> Dict[str, str]:
        return (self.context.details or {}).get("failures", {})


class ImageLoadError(BidAnalysisError):
    """Exception for image references that could not be resolved."""

    @classmethod
    def from_reference(cls, reference: str, error: Exception) -> "ImageLoadError":
        preview = reference if len(reference) <= 80 else reference[:77] + "..."
        context = ErrorContext(
            error_type=ErrorType.IMAGE_LOAD_FAILED,
            message=f"Could not load image {preview}: {str(error)}",
            recoverable=False,
            details={"reference": preview},
            original_exception=error
        )
        return cls(context)


class ConfigurationError(BidAnalysisError):
    """Exception for missing or invalid configuration."""

    @classmethod
    def missing(cls, path: str) -> "ConfigurationError":
        context = ErrorContext(
            error_type=ErrorType.CONFIG_MISSING,
            message=f"Configuration file not found: {path}",
            recoverable=False,
            details={"path": path}
        )
        return cls(context)

    @classmethod
    def invalid(cls, reason: str, details: Optional[Dict[str, Any]] = None) -> "ConfigurationError":
        context = ErrorContext(
            error_type=ErrorType.CONFIG_INVALID,
            message=f"Invalid configuration: {reason}",
            recoverable=False,
            details=details or {}
        )
        return cls(context)


def summarize_failure(error: BaseException) -> str:
    """
    One-line description of a per-model failure for agreement summaries.

    Args:
        error: Exception raised by a model invocation

    Returns:
        Short failure description
    """
    if isinstance(error, BidAnalysisError):
        return f"{error.context.error_type.value}: {error.context.message}"
    return f"{ErrorType.UNKNOWN_ERROR.value}: {type(error).__name__}: {str(error)}"
