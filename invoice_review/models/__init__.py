"""
Models Package

Pydantic data models shared by every stage of the pipeline, and the
pipeline step identifiers.
"""

from invoice_review.models.schemas import (
    ApprovalDecision,
    Decision,
    Document,
    ExtractionMethod,
    ExtractionResult,
    ResumePlan,
    ResumeToken,
    ReviewAction,
    Severity,
    ValidationResult,
    Violation,
    WorkflowCheckpoint,
    WorkflowOutcome,
    WorkflowStatus,
)

__all__ = [
    "ApprovalDecision",
    "Decision",
    "Document",
    "ExtractionMethod",
    "ExtractionResult",
    "ResumePlan",
    "ResumeToken",
    "ReviewAction",
    "Severity",
    "ValidationResult",
    "Violation",
    "WorkflowCheckpoint",
    "WorkflowOutcome",
    "WorkflowStatus",
]
