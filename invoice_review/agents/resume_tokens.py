from datetime import datetime, timedelta, timezone
from typing import Callable, Tuple, Union
import secrets

from invoice_review.config.logger import setup_logger
from invoice_review.models.schemas import ResumeToken
from invoice_review.stores.base import WorkflowStore

logger = setup_logger("ResumeTokenService", "resume_tokens.log")

TOKEN_BYTES = 32  # 256 bits of entropy


class ResumeTokenService:
    """
    Issues and redeems single-use, expiring resume tokens.

    A token stands in for a (workflow_id, checkpoint_id) pair so outbound
    notifications never carry internal identifiers.
    """

    def __init__(self, store: WorkflowStore, clock: Callable[[], datetime] = None):
        self.store = store
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    async def issue(self, workflow_id: str, checkpoint_ref: str, ttl: Union[timedelta, int, float]) -> str:
        if not isinstance(ttl, timedelta):
            ttl = timedelta(seconds=ttl)
        if ttl <= timedelta(0):
            raise ValueError("Token TTL must be positive")

        now = self.clock()
        token = ResumeToken(
            token=secrets.token_urlsafe(TOKEN_BYTES),
            workflow_id=workflow_id,
            checkpoint_id=checkpoint_ref,
            created_at=now,
            expires_at=now + ttl,
        )
        await self.store.create_token(token)
        logger.info(f"Issued resume token for workflow {workflow_id} (expires {token.expires_at.isoformat()})")
        return token.token

    async def redeem(self, token_value: str) -> Tuple[str, str]:
        """
        Consume a token. Only the token is claimed; the checkpoint it points
        at stays live until CheckpointController.resume_redeemed claims it.

        Returns:
            Tuple of (workflow_id, checkpoint_ref)

        Raises:
            TokenNotFoundError, TokenExpiredError, TokenAlreadyConsumedError
        """
        token, _ = await self.store.consume_token(token_value, self.clock())
        logger.info(f"Redeemed resume token for workflow {token.workflow_id}")
        return token.workflow_id, token.checkpoint_id
