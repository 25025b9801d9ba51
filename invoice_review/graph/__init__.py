"""
Graph Package

Contains LangGraph workflow components:
- state: WorkflowState and checkpoint (de)serialization
- workflow: InvoiceReviewWorkflow for orchestrating the pipeline
"""

from invoice_review.graph.state import WorkflowState, serialize_state, deserialize_state
from invoice_review.graph.workflow import InvoiceReviewWorkflow

__all__ = [
    "WorkflowState",
    "serialize_state",
    "deserialize_state",
    "InvoiceReviewWorkflow",
]
