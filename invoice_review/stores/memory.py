import asyncio
from datetime import datetime
from typing import Dict, Optional, Tuple

from invoice_review.config.exception import (
    CheckpointNotFoundError,
    DuplicateCheckpointError,
    TokenAlreadyConsumedError,
    TokenExpiredError,
    TokenNotFoundError,
)
from invoice_review.config.logger import setup_logger
from invoice_review.models.schemas import ResumeToken, WorkflowCheckpoint

logger = setup_logger("InMemoryWorkflowStore", "workflow_store.log")


class InMemoryWorkflowStore:
    """
    Process-local WorkflowStore.

    All mutations run under one asyncio.Lock and never await while holding
    it, so each is atomic with respect to other tasks on the loop.
    """

    def __init__(self):
        self._checkpoints: Dict[str, WorkflowCheckpoint] = {}
        self._tokens: Dict[str, ResumeToken] = {}
        self._lock = asyncio.Lock()

    async def create_checkpoint(self, checkpoint: WorkflowCheckpoint) -> WorkflowCheckpoint:
        async with self._lock:
            live = self._find_live(checkpoint.workflow_id)
            if live is not None:
                raise DuplicateCheckpointError(
                    f"Workflow {checkpoint.workflow_id} already has live checkpoint {live.checkpoint_id}"
                )
            self._checkpoints[checkpoint.checkpoint_id] = checkpoint.model_copy(deep=True)
            logger.debug(f"Stored checkpoint {checkpoint.checkpoint_id} for {checkpoint.workflow_id}")
            return checkpoint

    async def get_checkpoint(self, checkpoint_id: str) -> Optional[WorkflowCheckpoint]:
        checkpoint = self._checkpoints.get(checkpoint_id)
        return checkpoint.model_copy(deep=True) if checkpoint else None

    async def get_live_checkpoint(self, workflow_id: str) -> Optional[WorkflowCheckpoint]:
        checkpoint = self._find_live(workflow_id)
        return checkpoint.model_copy(deep=True) if checkpoint else None

    async def create_token(self, token: ResumeToken) -> ResumeToken:
        async with self._lock:
            if token.token in self._tokens:
                raise ValueError("Token value collision")
            self._tokens[token.token] = token.model_copy(deep=True)
            return token

    async def get_token(self, token_value: str) -> Optional[ResumeToken]:
        token = self._tokens.get(token_value)
        return token.model_copy(deep=True) if token else None

    async def consume_token(
        self, token_value: str, now: datetime, consume_checkpoint: bool = False
    ) -> Tuple[ResumeToken, Optional[WorkflowCheckpoint]]:
        async with self._lock:
            token = self._tokens.get(token_value)
            if token is None:
                raise TokenNotFoundError()
            if token.is_expired(now):
                raise TokenExpiredError(f"Token expired at {token.expires_at.isoformat()}")
            if token.consumed:
                raise TokenAlreadyConsumedError()

            checkpoint = None
            if consume_checkpoint:
                checkpoint = self._checkpoints.get(token.checkpoint_id)
                if checkpoint is None:
                    raise CheckpointNotFoundError(f"Checkpoint {token.checkpoint_id} not found")
                if checkpoint.consumed:
                    raise TokenAlreadyConsumedError("Checkpoint already resumed")
                checkpoint.consumed = True
                checkpoint.consumed_at = now

            token.consumed = True
            token.consumed_at = now
            return (
                token.model_copy(deep=True),
                checkpoint.model_copy(deep=True) if checkpoint else None,
            )

    async def consume_checkpoint(self, workflow_id: str, checkpoint_id: str, now: datetime) -> WorkflowCheckpoint:
        async with self._lock:
            checkpoint = self._checkpoints.get(checkpoint_id)
            if checkpoint is None or checkpoint.workflow_id != workflow_id:
                raise CheckpointNotFoundError(f"Checkpoint {checkpoint_id} not found for {workflow_id}")
            if checkpoint.consumed:
                raise TokenAlreadyConsumedError("Checkpoint already resumed")
            checkpoint.consumed = True
            checkpoint.consumed_at = now
            return checkpoint.model_copy(deep=True)

    def _find_live(self, workflow_id: str) -> Optional[WorkflowCheckpoint]:
        for checkpoint in self._checkpoints.values():
            if checkpoint.workflow_id == workflow_id and not checkpoint.consumed:
                return checkpoint
        return None
