import asyncio

import pytest

from invoice_review.agents.checkpoint_controller import CheckpointController
from invoice_review.agents.resume_tokens import ResumeTokenService
from invoice_review.config.exception import (
    CheckpointNotFoundError,
    CheckpointPersistenceError,
    DuplicateCheckpointError,
    InvalidReviewActionError,
    StoreUnavailableError,
    TokenAlreadyConsumedError,
    TokenExpiredError,
)
from invoice_review.models.schemas import WorkflowStatus
from invoice_review.models.steps import (
    PIPELINE_STEPS,
    STEP_FINALIZE,
    STEP_MERGE_CORRECTIONS,
    STEP_SUSPEND_FOR_REVIEW,
)
from invoice_review.stores.memory import InMemoryWorkflowStore

PAYLOAD = {"workflow_id": "wf-001", "status": "awaiting_review", "errors": []}


@pytest.fixture
def controller(store, clock):
    return CheckpointController(store, clock=clock)


@pytest.fixture
def tokens(store, clock):
    return ResumeTokenService(store, clock=clock)


async def suspend_with_token(controller, tokens, workflow_id="wf-001", ttl=3600):
    checkpoint = await controller.suspend(workflow_id, STEP_SUSPEND_FOR_REVIEW, PAYLOAD)
    token = await tokens.issue(workflow_id, checkpoint.checkpoint_id, ttl)
    return checkpoint, token


@pytest.mark.asyncio
async def test_suspend_and_resume_round_trip(controller, tokens, store):
    checkpoint, token = await suspend_with_token(controller, tokens)

    resumed = await controller.resume(token)

    assert resumed.checkpoint_id == checkpoint.checkpoint_id
    assert resumed.state_payload == PAYLOAD
    stored = await store.get_checkpoint(checkpoint.checkpoint_id)
    assert stored.consumed
    assert await store.get_live_checkpoint("wf-001") is None


@pytest.mark.asyncio
async def test_second_live_checkpoint_rejected(controller):
    await controller.suspend("wf-001", STEP_SUSPEND_FOR_REVIEW, PAYLOAD)

    with pytest.raises(DuplicateCheckpointError):
        await controller.suspend("wf-001", STEP_SUSPEND_FOR_REVIEW, PAYLOAD)


@pytest.mark.asyncio
async def test_can_suspend_again_after_resume(controller, tokens):
    _, token = await suspend_with_token(controller, tokens)
    await controller.resume(token)

    again = await controller.suspend("wf-001", STEP_SUSPEND_FOR_REVIEW, PAYLOAD)

    assert not again.consumed


@pytest.mark.asyncio
async def test_other_workflows_are_independent(controller):
    await controller.suspend("wf-001", STEP_SUSPEND_FOR_REVIEW, PAYLOAD)
    other = await controller.suspend("wf-002", STEP_SUSPEND_FOR_REVIEW, PAYLOAD)

    assert other.workflow_id == "wf-002"


@pytest.mark.asyncio
async def test_concurrent_resume_yields_one_continuation(controller, tokens):
    _, token = await suspend_with_token(controller, tokens)

    results = await asyncio.gather(controller.resume(token), controller.resume(token), return_exceptions=True)

    assert sum(1 for r in results if not isinstance(r, Exception)) == 1
    assert sum(1 for r in results if isinstance(r, TokenAlreadyConsumedError)) == 1


@pytest.mark.asyncio
async def test_resume_with_expired_token(controller, tokens, clock):
    _, token = await suspend_with_token(controller, tokens, ttl=60)
    clock.advance(minutes=2)

    with pytest.raises(TokenExpiredError):
        await controller.resume(token)


@pytest.mark.asyncio
async def test_resume_with_missing_checkpoint(controller, tokens):
    token = await tokens.issue("wf-001", "no-such-checkpoint", 3600)

    with pytest.raises(CheckpointNotFoundError) as exc:
        await controller.resume(token)
    assert exc.value.code == "review_not_found"


@pytest.mark.asyncio
async def test_store_failure_becomes_persistence_error(clock):
    class BrokenStore(InMemoryWorkflowStore):
        async def create_checkpoint(self, checkpoint):
            raise RuntimeError("disk full")

    controller = CheckpointController(BrokenStore(), clock=clock)

    with pytest.raises(CheckpointPersistenceError):
        await controller.suspend("wf-001", STEP_SUSPEND_FOR_REVIEW, PAYLOAD)


@pytest.mark.asyncio
async def test_transient_store_failure_propagates_for_retry(clock):
    class FlakyStore(InMemoryWorkflowStore):
        async def create_checkpoint(self, checkpoint):
            raise StoreUnavailableError("connection reset")

    controller = CheckpointController(FlakyStore(), clock=clock)

    with pytest.raises(StoreUnavailableError):
        await controller.suspend("wf-001", STEP_SUSPEND_FOR_REVIEW, PAYLOAD)


def test_approve_continues_after_suspension(controller):
    plan = controller.determine_resume_action(STEP_SUSPEND_FOR_REVIEW, "approve", feedback="ok")

    assert plan.next_step == STEP_FINALIZE
    assert plan.status == WorkflowStatus.RESUMED_APPROVED
    assert plan.state_updates["reviewer_feedback"] == "ok"
    assert "reviewer_corrections" not in plan.state_updates


def test_modify_restarts_upstream_with_feedback(controller):
    plan = controller.determine_resume_action(
        STEP_SUSPEND_FOR_REVIEW, "modify", feedback="vendor name corrected", corrections={"vendor": "Acme Ltd"}
    )

    assert plan.next_step == STEP_MERGE_CORRECTIONS
    assert PIPELINE_STEPS.index(plan.next_step) < PIPELINE_STEPS.index(STEP_SUSPEND_FOR_REVIEW)
    assert plan.status == WorkflowStatus.RESUMED_MODIFIED
    assert plan.state_updates["reviewer_feedback"] == "vendor name corrected"
    assert plan.state_updates["reviewer_corrections"] == {"vendor": "Acme Ltd"}


def test_reject_terminates(controller):
    plan = controller.determine_resume_action(STEP_SUSPEND_FOR_REVIEW, "reject")

    assert plan.next_step == STEP_FINALIZE
    assert plan.status == WorkflowStatus.RESUMED_REJECTED
    assert plan.state_updates["rejection_reason"] == "rejected_by_reviewer"


@pytest.mark.parametrize("step_id,action", [
    (STEP_SUSPEND_FOR_REVIEW, "escalate"),
    (STEP_SUSPEND_FOR_REVIEW, "Approve"),
    ("unknown_step", "approve"),
    (STEP_FINALIZE, "approve"),
])
def test_invalid_resume_requests(controller, step_id, action):
    with pytest.raises(InvalidReviewActionError) as exc_info:
        controller.determine_resume_action(step_id, action)

    assert exc_info.value.code == "invalid_review_action"


def test_corrections_must_be_a_mapping(controller):
    with pytest.raises(InvalidReviewActionError):
        controller.parse_action("modify", corrections=["vendor", "Acme Ltd"])


@pytest.mark.asyncio
async def test_redeemed_token_resumes_checkpoint_once(controller, tokens, store):
    checkpoint, token = await suspend_with_token(controller, tokens)

    workflow_id, checkpoint_ref = await tokens.redeem(token)
    # Redeeming claims the token only
    assert (await store.get_live_checkpoint(workflow_id)).checkpoint_id == checkpoint_ref

    resumed = await controller.resume_redeemed(workflow_id, checkpoint_ref)
    assert resumed.checkpoint_id == checkpoint.checkpoint_id
    assert resumed.consumed
    assert await store.get_live_checkpoint(workflow_id) is None

    with pytest.raises(TokenAlreadyConsumedError):
        await controller.resume_redeemed(workflow_id, checkpoint_ref)

    # The workflow can be suspended again
    await controller.suspend(workflow_id, STEP_SUSPEND_FOR_REVIEW, PAYLOAD)


@pytest.mark.asyncio
async def test_resume_redeemed_checks_workflow(controller, tokens):
    _, token = await suspend_with_token(controller, tokens)
    _, checkpoint_ref = await tokens.redeem(token)

    with pytest.raises(CheckpointNotFoundError):
        await controller.resume_redeemed("wf-other", checkpoint_ref)
    with pytest.raises(CheckpointNotFoundError):
        await controller.resume_redeemed("wf-001", "no-such-checkpoint")


@pytest.mark.asyncio
async def test_release_frees_workflow_for_a_new_checkpoint(controller, store):
    checkpoint = await controller.suspend("wf-001", STEP_SUSPEND_FOR_REVIEW, PAYLOAD)

    await controller.release(checkpoint)

    assert await store.get_live_checkpoint("wf-001") is None
    await controller.suspend("wf-001", STEP_SUSPEND_FOR_REVIEW, PAYLOAD)


@pytest.mark.asyncio
async def test_suspend_rejects_unknown_step(controller, store):
    with pytest.raises(CheckpointPersistenceError):
        await controller.suspend("wf-001", "unknown_step", PAYLOAD)
    assert await store.get_live_checkpoint("wf-001") is None
