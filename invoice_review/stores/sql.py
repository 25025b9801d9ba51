"""
SQLAlchemy-backed WorkflowStore.

Works with SQLite and Postgres URLs. The at-most-once guarantee comes from
conditional UPDATEs (``... WHERE consumed = false``) whose rowcount is the
compare-and-swap result; token and checkpoint are consumed in one transaction.
"""

import asyncio
import threading
from datetime import datetime, timezone
from typing import Optional, Tuple

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Index,
    MetaData,
    String,
    Table,
    create_engine,
    event,
    false,
    insert,
    select,
    update,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, OperationalError

from invoice_review.config.exception import (
    CheckpointNotFoundError,
    DuplicateCheckpointError,
    StoreUnavailableError,
    TokenAlreadyConsumedError,
    TokenExpiredError,
    TokenNotFoundError,
)
from invoice_review.config.logger import setup_logger
from invoice_review.models.schemas import ResumeToken, WorkflowCheckpoint

logger = setup_logger("SqlWorkflowStore", "workflow_store.log")

metadata = MetaData()

checkpoints = Table(
    "workflow_checkpoints",
    metadata,
    Column("checkpoint_id", String(64), primary_key=True),
    Column("workflow_id", String(255), nullable=False, index=True),
    Column("step_id", String(64), nullable=False),
    Column("state_payload", JSON, nullable=False),
    Column("created_at", DateTime, nullable=False),
    Column("consumed", Boolean, nullable=False, default=False),
    Column("consumed_at", DateTime, nullable=True),
)

# At most one unconsumed checkpoint per workflow
Index(
    "uq_live_checkpoint_per_workflow",
    checkpoints.c.workflow_id,
    unique=True,
    sqlite_where=checkpoints.c.consumed == false(),
    postgresql_where=checkpoints.c.consumed == false(),
)

resume_tokens = Table(
    "resume_tokens",
    metadata,
    Column("token", String(128), primary_key=True),
    Column("workflow_id", String(255), nullable=False),
    Column("checkpoint_id", String(64), nullable=False),
    Column("expires_at", DateTime, nullable=False),
    Column("created_at", DateTime, nullable=False),
    Column("consumed", Boolean, nullable=False, default=False),
    Column("consumed_at", DateTime, nullable=True),
)


def _to_db(value: Optional[datetime]) -> Optional[datetime]:
    """Store timestamps as naive UTC."""
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _from_db(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value


def _set_sqlite_pragmas(dbapi_conn, connection_record):
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA busy_timeout=5000")
    cursor.close()


def get_engine(database_url: str) -> Engine:
    if database_url.startswith("sqlite"):
        engine = create_engine(database_url, connect_args={"check_same_thread": False})
        event.listen(engine, "connect", _set_sqlite_pragmas)
        return engine
    return create_engine(database_url, pool_pre_ping=True)


class SqlWorkflowStore:
    """Durable WorkflowStore on a relational database"""

    def __init__(self, database_url: str = None, engine: Engine = None):
        if engine is None and not database_url:
            raise ValueError("SqlWorkflowStore needs a database_url or an engine")
        self.engine = engine or get_engine(database_url)
        # SQLite has a single writer; serialise this process's writers
        self._write_lock = threading.Lock()

    def create_tables(self) -> None:
        metadata.create_all(self.engine)
        logger.info("Workflow store tables ready")

    # Checkpoints

    async def create_checkpoint(self, checkpoint: WorkflowCheckpoint) -> WorkflowCheckpoint:
        return await asyncio.to_thread(self._create_checkpoint, checkpoint)

    def _create_checkpoint(self, checkpoint: WorkflowCheckpoint) -> WorkflowCheckpoint:
        try:
            with self._write_lock, self.engine.begin() as conn:
                conn.execute(
                    insert(checkpoints).values(
                        checkpoint_id=checkpoint.checkpoint_id,
                        workflow_id=checkpoint.workflow_id,
                        step_id=checkpoint.step_id,
                        state_payload=checkpoint.state_payload,
                        created_at=_to_db(checkpoint.created_at),
                        consumed=checkpoint.consumed,
                        consumed_at=_to_db(checkpoint.consumed_at),
                    )
                )
        except IntegrityError as e:
            raise DuplicateCheckpointError(
                f"Workflow {checkpoint.workflow_id} already has a live checkpoint"
            ) from e
        except OperationalError as e:
            raise StoreUnavailableError(f"Could not write checkpoint: {e}") from e
        logger.debug(f"Stored checkpoint {checkpoint.checkpoint_id} for {checkpoint.workflow_id}")
        return checkpoint

    async def get_checkpoint(self, checkpoint_id: str) -> Optional[WorkflowCheckpoint]:
        return await asyncio.to_thread(
            self._fetch_checkpoint, checkpoints.c.checkpoint_id == checkpoint_id
        )

    async def get_live_checkpoint(self, workflow_id: str) -> Optional[WorkflowCheckpoint]:
        return await asyncio.to_thread(
            self._fetch_checkpoint,
            (checkpoints.c.workflow_id == workflow_id) & (checkpoints.c.consumed == false()),
        )

    def _fetch_checkpoint(self, condition) -> Optional[WorkflowCheckpoint]:
        try:
            with self.engine.connect() as conn:
                row = conn.execute(select(checkpoints).where(condition)).mappings().first()
        except OperationalError as e:
            raise StoreUnavailableError(f"Could not read checkpoint: {e}") from e
        return self._checkpoint_from_row(row) if row else None

    @staticmethod
    def _checkpoint_from_row(row) -> WorkflowCheckpoint:
        return WorkflowCheckpoint(
            checkpoint_id=row["checkpoint_id"],
            workflow_id=row["workflow_id"],
            step_id=row["step_id"],
            state_payload=row["state_payload"],
            created_at=_from_db(row["created_at"]),
            consumed=bool(row["consumed"]),
            consumed_at=_from_db(row["consumed_at"]),
        )

    async def consume_checkpoint(self, workflow_id: str, checkpoint_id: str, now: datetime) -> WorkflowCheckpoint:
        return await asyncio.to_thread(self._consume_checkpoint, workflow_id, checkpoint_id, now)

    def _consume_checkpoint(self, workflow_id: str, checkpoint_id: str, now: datetime) -> WorkflowCheckpoint:
        db_now = _to_db(now)
        owned = (checkpoints.c.checkpoint_id == checkpoint_id) & (checkpoints.c.workflow_id == workflow_id)
        try:
            with self._write_lock, self.engine.begin() as conn:
                claimed = conn.execute(
                    update(checkpoints)
                    .where(owned & (checkpoints.c.consumed == false()))
                    .values(consumed=True, consumed_at=db_now)
                ).rowcount
                row = conn.execute(select(checkpoints).where(owned)).mappings().first()
        except OperationalError as e:
            raise StoreUnavailableError(f"Could not consume checkpoint: {e}") from e

        if row is None:
            raise CheckpointNotFoundError(f"Checkpoint {checkpoint_id} not found for {workflow_id}")
        if not claimed:
            raise TokenAlreadyConsumedError("Checkpoint already resumed")
        return self._checkpoint_from_row(row)

    # Tokens

    async def create_token(self, token: ResumeToken) -> ResumeToken:
        return await asyncio.to_thread(self._create_token, token)

    def _create_token(self, token: ResumeToken) -> ResumeToken:
        try:
            with self._write_lock, self.engine.begin() as conn:
                conn.execute(
                    insert(resume_tokens).values(
                        token=token.token,
                        workflow_id=token.workflow_id,
                        checkpoint_id=token.checkpoint_id,
                        expires_at=_to_db(token.expires_at),
                        created_at=_to_db(token.created_at),
                        consumed=token.consumed,
                        consumed_at=_to_db(token.consumed_at),
                    )
                )
        except IntegrityError as e:
            raise ValueError("Token value collision") from e
        except OperationalError as e:
            raise StoreUnavailableError(f"Could not write resume token: {e}") from e
        return token

    async def get_token(self, token_value: str) -> Optional[ResumeToken]:
        return await asyncio.to_thread(self._fetch_token, token_value)

    def _fetch_token(self, token_value: str, conn=None) -> Optional[ResumeToken]:
        query = select(resume_tokens).where(resume_tokens.c.token == token_value)
        try:
            if conn is not None:
                row = conn.execute(query).mappings().first()
            else:
                with self.engine.connect() as own_conn:
                    row = own_conn.execute(query).mappings().first()
        except OperationalError as e:
            raise StoreUnavailableError(f"Could not read resume token: {e}") from e
        if row is None:
            return None
        return ResumeToken(
            token=row["token"],
            workflow_id=row["workflow_id"],
            checkpoint_id=row["checkpoint_id"],
            expires_at=_from_db(row["expires_at"]),
            created_at=_from_db(row["created_at"]),
            consumed=bool(row["consumed"]),
            consumed_at=_from_db(row["consumed_at"]),
        )

    async def consume_token(
        self, token_value: str, now: datetime, consume_checkpoint: bool = False
    ) -> Tuple[ResumeToken, Optional[WorkflowCheckpoint]]:
        return await asyncio.to_thread(self._consume_token, token_value, now, consume_checkpoint)

    def _consume_token(self, token_value: str, now: datetime, consume_checkpoint: bool):
        db_now = _to_db(now)
        try:
            with self._write_lock, self.engine.begin() as conn:
                # Write first: the conditional UPDATE is the compare-and-swap
                swapped = conn.execute(
                    update(resume_tokens)
                    .where(
                        (resume_tokens.c.token == token_value)
                        & (resume_tokens.c.consumed == false())
                        & (resume_tokens.c.expires_at > db_now)
                    )
                    .values(consumed=True, consumed_at=db_now)
                ).rowcount

                token = self._fetch_token(token_value, conn)
                if not swapped:
                    if token is None:
                        raise TokenNotFoundError()
                    if token.is_expired(now):
                        raise TokenExpiredError(f"Token expired at {token.expires_at.isoformat()}")
                    raise TokenAlreadyConsumedError()

                checkpoint = None
                if consume_checkpoint:
                    claimed = conn.execute(
                        update(checkpoints)
                        .where(
                            (checkpoints.c.checkpoint_id == token.checkpoint_id)
                            & (checkpoints.c.consumed == false())
                        )
                        .values(consumed=True, consumed_at=db_now)
                    ).rowcount
                    row = conn.execute(
                        select(checkpoints).where(checkpoints.c.checkpoint_id == token.checkpoint_id)
                    ).mappings().first()
                    if row is None:
                        raise CheckpointNotFoundError(f"Checkpoint {token.checkpoint_id} not found")
                    if not claimed:
                        raise TokenAlreadyConsumedError("Checkpoint already resumed")
                    checkpoint = self._checkpoint_from_row(row)
        except OperationalError as e:
            raise StoreUnavailableError(f"Could not consume resume token: {e}") from e

        return token, checkpoint
