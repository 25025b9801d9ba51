"""
Notification boundary.

A notifier receives the opaque resume token and a display summary; it must
never be given workflow or checkpoint identifiers.
"""

from typing import Any, Dict, Protocol, runtime_checkable

from invoice_review.config.logger import setup_logger

logger = setup_logger("Notifier", "notifier.log")


@runtime_checkable
class Notifier(Protocol):
    async def notify(self, token: str, summary: Dict[str, Any]) -> None:
        ...


class LoggingNotifier:
    """Writes review requests to the log instead of delivering them"""

    def __init__(self, review_url: str = "https://review.invalid/resume"):
        self.review_url = review_url

    async def notify(self, token: str, summary: Dict[str, Any]) -> None:
        logger.info(
            f"Review requested: {summary.get('vendor') or 'unknown vendor'} "
            f"{summary.get('total')} {summary.get('currency') or ''} "
            f"({summary.get('reason')}) -> {self.review_url}?token={token}"
        )
