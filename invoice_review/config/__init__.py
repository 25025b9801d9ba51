"""
Configuration Package

Contains configuration utilities:
- logger: Logging setup with file rotation
- exception: Application exception and the classified error taxonomy
- settings: PipelineConfig, the explicit configuration passed to every component
"""

from invoice_review.config.logger import setup_logger
from invoice_review.config.exception import AppException, PipelineError, error_message_detail
from invoice_review.config.settings import PipelineConfig

__all__ = [
    "setup_logger",
    "AppException",
    "PipelineError",
    "error_message_detail",
    "PipelineConfig",
]
