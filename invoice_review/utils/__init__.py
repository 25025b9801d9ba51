"""
Utils Package

Contains utility functions:
- prompt_loader: PromptManager for loading external prompt files
- retry: bounded exponential backoff for transient boundary failures
"""

from invoice_review.utils.prompt_loader import PromptManager
from invoice_review.utils.retry import retry_async

__all__ = [
    "PromptManager",
    "retry_async",
]
