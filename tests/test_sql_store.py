import asyncio
from datetime import timedelta

import pytest

from invoice_review.config.exception import (
    CheckpointNotFoundError,
    DuplicateCheckpointError,
    TokenAlreadyConsumedError,
    TokenExpiredError,
    TokenNotFoundError,
)
from invoice_review.models.schemas import ResumeToken, WorkflowCheckpoint
from invoice_review.stores.sql import SqlWorkflowStore


@pytest.fixture
def sql_store(tmp_path):
    store = SqlWorkflowStore(f"sqlite:///{tmp_path / 'workflows.db'}")
    store.create_tables()
    yield store
    store.engine.dispose()


def checkpoint(workflow_id="wf-001", *, clock):
    return WorkflowCheckpoint(
        workflow_id=workflow_id,
        step_id="suspend_for_review",
        state_payload={"workflow_id": workflow_id, "extraction": {"fields": {"total": 120.0}}},
        created_at=clock(),
    )


def token_for(cp, clock, ttl=timedelta(hours=24), value="tok-1"):
    now = clock()
    return ResumeToken(
        token=value,
        workflow_id=cp.workflow_id,
        checkpoint_id=cp.checkpoint_id,
        created_at=now,
        expires_at=now + ttl,
    )


@pytest.mark.asyncio
async def test_checkpoint_round_trip(sql_store, clock):
    cp = checkpoint(clock=clock)
    await sql_store.create_checkpoint(cp)

    loaded = await sql_store.get_checkpoint(cp.checkpoint_id)

    assert loaded.state_payload == cp.state_payload
    assert loaded.created_at == clock()
    assert loaded.created_at.tzinfo is not None
    assert (await sql_store.get_live_checkpoint("wf-001")).checkpoint_id == cp.checkpoint_id


@pytest.mark.asyncio
async def test_one_live_checkpoint_per_workflow(sql_store, clock):
    await sql_store.create_checkpoint(checkpoint(clock=clock))

    with pytest.raises(DuplicateCheckpointError):
        await sql_store.create_checkpoint(checkpoint(clock=clock))
    await sql_store.create_checkpoint(checkpoint("wf-002", clock=clock))


@pytest.mark.asyncio
async def test_consume_marks_token_and_checkpoint(sql_store, clock):
    cp = checkpoint(clock=clock)
    await sql_store.create_checkpoint(cp)
    await sql_store.create_token(token_for(cp, clock))

    token, consumed = await sql_store.consume_token("tok-1", clock(), consume_checkpoint=True)

    assert token.consumed and token.consumed_at == clock()
    assert consumed.checkpoint_id == cp.checkpoint_id
    assert consumed.consumed
    assert await sql_store.get_live_checkpoint("wf-001") is None
    # The workflow may suspend again once its checkpoint is consumed
    await sql_store.create_checkpoint(checkpoint(clock=clock))


@pytest.mark.asyncio
async def test_consume_errors_are_classified(sql_store, clock):
    cp = checkpoint(clock=clock)
    await sql_store.create_checkpoint(cp)
    await sql_store.create_token(token_for(cp, clock, value="once"))
    await sql_store.create_token(token_for(cp, clock, ttl=timedelta(seconds=30), value="short"))

    with pytest.raises(TokenNotFoundError):
        await sql_store.consume_token("missing", clock())

    await sql_store.consume_token("once", clock())
    with pytest.raises(TokenAlreadyConsumedError):
        await sql_store.consume_token("once", clock())

    clock.advance(minutes=1)
    with pytest.raises(TokenExpiredError):
        await sql_store.consume_token("short", clock())
    # Expiry is reported even for a consumed token
    with pytest.raises(TokenExpiredError):
        await sql_store.consume_token("once", clock() + timedelta(days=2))


@pytest.mark.asyncio
async def test_missing_checkpoint_leaves_token_unconsumed(sql_store, clock):
    dangling = WorkflowCheckpoint(workflow_id="wf-001", step_id="suspend_for_review", state_payload={})
    await sql_store.create_token(token_for(dangling, clock))

    with pytest.raises(CheckpointNotFoundError):
        await sql_store.consume_token("tok-1", clock(), consume_checkpoint=True)
    assert not (await sql_store.get_token("tok-1")).consumed


@pytest.mark.asyncio
async def test_concurrent_consume_succeeds_once(sql_store, clock):
    cp = checkpoint(clock=clock)
    await sql_store.create_checkpoint(cp)
    await sql_store.create_token(token_for(cp, clock))

    results = await asyncio.gather(
        *(sql_store.consume_token("tok-1", clock(), consume_checkpoint=True) for _ in range(4)),
        return_exceptions=True,
    )

    assert sum(1 for r in results if not isinstance(r, Exception)) == 1
    assert all(isinstance(r, TokenAlreadyConsumedError) for r in results if isinstance(r, Exception))


@pytest.mark.asyncio
async def test_consume_checkpoint_claims_once(sql_store, clock):
    cp = checkpoint(clock=clock)
    await sql_store.create_checkpoint(cp)

    with pytest.raises(CheckpointNotFoundError):
        await sql_store.consume_checkpoint("wf-other", cp.checkpoint_id, clock())

    results = await asyncio.gather(
        *(sql_store.consume_checkpoint("wf-001", cp.checkpoint_id, clock()) for _ in range(4)),
        return_exceptions=True,
    )

    claimed = [r for r in results if not isinstance(r, Exception)]
    assert len(claimed) == 1
    assert claimed[0].consumed and claimed[0].consumed_at == clock()
    assert all(isinstance(r, TokenAlreadyConsumedError) for r in results if isinstance(r, Exception))
    assert await sql_store.get_live_checkpoint("wf-001") is None
