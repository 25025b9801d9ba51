import sys
import logging

def error_message_detail(error: Exception, error_detail: sys) -> str:
    """
    Extract detailed error information including file name, line number, and the error message.

    Args:
        error (Exception): The exception that occurred.
        error_detail (sys): The sys module to access traceback details.

    Returns:
        str: Formatted error message string.
    """
    exc_type, exc_value, exc_tb = error_detail.exc_info()

    if exc_tb is not None:
        file_name = exc_tb.tb_frame.f_code.co_filename
        line_number = exc_tb.tb_lineno
        error_message = (
            f"Error occurred in file: [{file_name}] "
            f"at line number [{line_number}] "
            f"with error: {str(error)}"
        )
    else:
        error_message = f"Error occurred: {str(error)} (no traceback available)"

    logging.error(error_message)
    return error_message


class AppException(Exception):
    """
    Custom application-level exception for standardized error handling.
    """

    def __init__(self, error_message: str, error_detail: sys = sys):
        """
        Initialize the AppException with a detailed error message.

        Args:
            error_message (str): A string describing the error.
            error_detail (sys): The sys module to access traceback details.
        """
        super().__init__(error_message)
        self.error_message = error_message_detail(error_message, error_detail)

    def __str__(self) -> str:
        """Return a clean, human-readable string representation."""
        return self.error_message

    def __repr__(self) -> str:
        """Return an unambiguous developer-friendly representation."""
        return f"{self.__class__.__name__}({self.error_message})"


class PipelineError(AppException):
    """
    Base class for expected, classified failures.

    Each subclass carries a stable ``code`` for the boundary layer and a
    ``user_message`` that can be shown to a reviewer as-is.
    """

    code = "pipeline_error"
    user_message = "Something went wrong while processing this invoice."

    def __init__(self, message: str = None):
        message = message or self.user_message
        Exception.__init__(self, message)
        self.error_message = message

    def to_dict(self) -> dict:
        return {
            "code": self.code,
            "message": self.user_message,
            "detail": self.error_message,
        }


# Input errors

class FormatError(PipelineError):
    code = "unsupported_format"
    user_message = "This invoice failed automatic extraction — please attach a clearer copy."


class SizeLimitError(PipelineError):
    code = "document_too_large"
    user_message = "This attachment is too large to process — please send a smaller file."


class ExtractionError(PipelineError):
    """Raised by a single extraction strategy. Never escapes the engine."""

    code = "extraction_failed"


class ConfigurationError(PipelineError):
    code = "configuration_error"
    user_message = "The invoice pipeline is misconfigured."


# Checkpoint / token errors

class DuplicateCheckpointError(PipelineError):
    code = "duplicate_checkpoint"
    user_message = "This invoice is already awaiting review."


class CheckpointPersistenceError(PipelineError):
    code = "checkpoint_persistence_failed"
    user_message = "This invoice could not be queued for review and has been marked as failed."


class StoreUnavailableError(PipelineError):
    """Transient persistence failure, safe to retry."""

    code = "store_unavailable"
    user_message = "The review service is temporarily unavailable — please try again shortly."


class TokenNotFoundError(PipelineError):
    code = "link_invalid"
    user_message = "This review link is not recognised."


class TokenExpiredError(PipelineError):
    code = "link_expired"
    user_message = "This review link has expired — request a new one."


class TokenAlreadyConsumedError(PipelineError):
    code = "already_processed"
    user_message = "This invoice has already been processed."


class InvalidReviewActionError(PipelineError):
    """Rejected before any token or checkpoint is touched."""

    code = "invalid_review_action"
    user_message = "That review action is not recognised. Choose approve, modify or reject."


class CheckpointNotFoundError(PipelineError):
    code = "review_not_found"
    user_message = "This review is no longer available."
