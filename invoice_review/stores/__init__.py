"""
Stores Package

Persistence for workflow checkpoints and resume tokens:
- base: the WorkflowStore protocol
- memory: InMemoryWorkflowStore, process-local
- sql: SqlWorkflowStore, SQLAlchemy-backed and durable
"""

from invoice_review.stores.base import WorkflowStore
from invoice_review.stores.memory import InMemoryWorkflowStore
from invoice_review.stores.sql import SqlWorkflowStore

__all__ = [
    "WorkflowStore",
    "InMemoryWorkflowStore",
    "SqlWorkflowStore",
]
