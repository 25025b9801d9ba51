from datetime import datetime
from typing import Optional, Protocol, Tuple, runtime_checkable

from invoice_review.models.schemas import ResumeToken, WorkflowCheckpoint


@runtime_checkable
class WorkflowStore(Protocol):
    """
    Persistence for checkpoints and resume tokens.

    The only mutations are creating a checkpoint, creating a token and the
    atomic consume operations. ``consume_token`` and ``consume_checkpoint``
    must each behave as a single compare-and-swap: of two concurrent calls
    for the same record, at most one succeeds. Failures are reported with the classified token/checkpoint
    errors, checked in this order: not found, expired, already consumed,
    checkpoint not found.
    """

    async def create_checkpoint(self, checkpoint: WorkflowCheckpoint) -> WorkflowCheckpoint:
        """Persist a checkpoint; DuplicateCheckpointError if the workflow has a live one."""
        ...

    async def get_checkpoint(self, checkpoint_id: str) -> Optional[WorkflowCheckpoint]:
        ...

    async def get_live_checkpoint(self, workflow_id: str) -> Optional[WorkflowCheckpoint]:
        ...

    async def create_token(self, token: ResumeToken) -> ResumeToken:
        ...

    async def get_token(self, token_value: str) -> Optional[ResumeToken]:
        ...

    async def consume_token(
        self, token_value: str, now: datetime, consume_checkpoint: bool = False
    ) -> Tuple[ResumeToken, Optional[WorkflowCheckpoint]]:
        """
        Mark a token consumed and, when ``consume_checkpoint`` is set, its
        checkpoint too, in one atomic step. Returns the consumed records.
        """
        ...

    async def consume_checkpoint(self, workflow_id: str, checkpoint_id: str, now: datetime) -> WorkflowCheckpoint:
        """
        Claim a checkpoint on its own, as a compare-and-swap on ``consumed``.

        Raises CheckpointNotFoundError when it does not exist or belongs to
        another workflow, TokenAlreadyConsumedError when already claimed.
        """
        ...
