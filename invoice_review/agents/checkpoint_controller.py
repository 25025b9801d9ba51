from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from invoice_review.config.exception import (
    CheckpointPersistenceError,
    InvalidReviewActionError,
    PipelineError,
)
from invoice_review.config.logger import setup_logger
from invoice_review.models.steps import (
    PIPELINE_STEPS,
    STEP_FINALIZE,
    STEP_MERGE_CORRECTIONS,
)
from invoice_review.models.schemas import (
    ResumePlan,
    ReviewAction,
    WorkflowCheckpoint,
    WorkflowStatus,
)
from invoice_review.stores.base import WorkflowStore

logger = setup_logger("CheckpointController", "checkpoint_controller.log")


class CheckpointController:
    """
    Suspends workflows at the human-review boundary and resumes them from
    stored checkpoints, at most once per checkpoint.
    """

    def __init__(self, store: WorkflowStore, clock: Callable[[], datetime] = None):
        self.store = store
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    async def suspend(self, workflow_id: str, step_id: str, state_payload: Dict[str, Any]) -> WorkflowCheckpoint:
        """
        Persist a checkpoint for a workflow.

        Raises:
            DuplicateCheckpointError: the workflow already has a live checkpoint
            StoreUnavailableError: transient store failure (retryable)
            CheckpointPersistenceError: any other failure to persist
        """
        if step_id not in PIPELINE_STEPS:
            raise CheckpointPersistenceError(f"Cannot checkpoint unknown step: {step_id}")

        checkpoint = WorkflowCheckpoint(
            workflow_id=workflow_id,
            step_id=step_id,
            state_payload=state_payload,
            created_at=self.clock(),
        )
        try:
            await self.store.create_checkpoint(checkpoint)
        except PipelineError:
            raise
        except Exception as e:
            logger.error(f"Failed to persist checkpoint for {workflow_id}: {e}")
            raise CheckpointPersistenceError(f"Could not persist checkpoint for {workflow_id}: {e}") from e

        logger.info(f"Workflow {workflow_id} suspended at '{step_id}' (checkpoint {checkpoint.checkpoint_id})")
        return checkpoint

    async def resume(self, token: str) -> WorkflowCheckpoint:
        """
        Redeem a resume token and consume its checkpoint in one atomic step.

        Raises:
            TokenNotFoundError, TokenExpiredError, TokenAlreadyConsumedError,
            CheckpointNotFoundError: all terminal, do not retry with the same token
        """
        _, checkpoint = await self.store.consume_token(token, self.clock(), consume_checkpoint=True)
        logger.info(f"Resuming workflow {checkpoint.workflow_id} from '{checkpoint.step_id}'")
        return checkpoint

    async def resume_redeemed(self, workflow_id: str, checkpoint_ref: str) -> WorkflowCheckpoint:
        """
        Claim the checkpoint behind a token already redeemed through
        ResumeTokenService.redeem.

        Raises:
            CheckpointNotFoundError: no such checkpoint for this workflow
            TokenAlreadyConsumedError: the checkpoint was already resumed
        """
        checkpoint = await self.store.consume_checkpoint(workflow_id, checkpoint_ref, self.clock())
        logger.info(f"Resuming workflow {workflow_id} from '{checkpoint.step_id}' (redeemed token)")
        return checkpoint

    async def release(self, checkpoint: WorkflowCheckpoint) -> None:
        """Retire a checkpoint that never got a resume token."""
        await self.store.consume_checkpoint(checkpoint.workflow_id, checkpoint.checkpoint_id, self.clock())
        logger.warning(f"Released checkpoint {checkpoint.checkpoint_id} of {checkpoint.workflow_id}")

    @staticmethod
    def parse_action(action, corrections: Optional[Dict[str, Any]] = None) -> ReviewAction:
        """
        Check a reviewer request before anything is consumed.

        Raises:
            InvalidReviewActionError: unknown action or malformed corrections
        """
        try:
            action = ReviewAction(action)
        except ValueError as e:
            raise InvalidReviewActionError(f"Unknown review action: {action!r}") from e
        if corrections is not None and not isinstance(corrections, dict):
            raise InvalidReviewActionError("Corrections must map field names to values")
        return action

    def determine_resume_action(
        self,
        step_id: str,
        action,
        feedback: Optional[str] = None,
        corrections: Optional[Dict[str, Any]] = None,
    ) -> ResumePlan:
        """
        Compute where execution continues after a reviewer acts.

        approve continues right after the suspension point; modify restarts
        upstream at the corrections merge so validation and routing run again
        on the corrected fields; reject ends the workflow.
        """
        action = self.parse_action(action, corrections)
        if step_id not in PIPELINE_STEPS or step_id == STEP_FINALIZE:
            raise InvalidReviewActionError(f"Cannot resume from step: {step_id}")

        if action == ReviewAction.APPROVE:
            return ResumePlan(
                next_step=PIPELINE_STEPS[PIPELINE_STEPS.index(step_id) + 1],
                status=WorkflowStatus.RESUMED_APPROVED,
                state_updates={
                    "review_action": action.value,
                    "reviewer_feedback": feedback,
                },
            )

        if action == ReviewAction.MODIFY:
            if PIPELINE_STEPS.index(STEP_MERGE_CORRECTIONS) >= PIPELINE_STEPS.index(step_id):
                raise InvalidReviewActionError(f"Cannot restart upstream of '{step_id}'")
            return ResumePlan(
                next_step=STEP_MERGE_CORRECTIONS,
                status=WorkflowStatus.RESUMED_MODIFIED,
                state_updates={
                    "review_action": action.value,
                    "reviewer_feedback": feedback,
                    "reviewer_corrections": dict(corrections or {}),
                },
            )

        return ResumePlan(
            next_step=STEP_FINALIZE,
            status=WorkflowStatus.RESUMED_REJECTED,
            state_updates={
                "review_action": action.value,
                "reviewer_feedback": feedback,
                "rejection_reason": feedback or "rejected_by_reviewer",
            },
        )
