from typing import TypedDict, List, Optional, Dict, Any

from invoice_review.models.schemas import (
    ApprovalDecision,
    Document,
    ExtractionResult,
    ValidationResult,
)

from invoice_review.models.steps import (
    STEP_EXTRACT,
    STEP_MERGE_CORRECTIONS,
    STEP_VALIDATE,
    STEP_ROUTE,
    STEP_SUSPEND_FOR_REVIEW,
    STEP_FINALIZE,
    PIPELINE_STEPS,
)

# Keys holding pydantic models and how to rebuild them from a checkpoint
MODEL_KEYS = {
    "extraction": ExtractionResult,
    "validation": ValidationResult,
    "decision": ApprovalDecision,
}

# Never written to a checkpoint: raw bytes stay with the ingestion boundary,
# and a token must not be stored alongside the state it unlocks
TRANSIENT_KEYS = ("document", "resume_token")


class WorkflowState(TypedDict):
    # Input
    workflow_id: str
    document: Optional[Document]
    document_info: Dict[str, Any]

    # Extraction / validation / routing
    extraction: Optional[ExtractionResult]
    validation: Optional[ValidationResult]
    decision: Optional[ApprovalDecision]

    # Human review
    resume_token: Optional[str]
    review_action: Optional[str]
    reviewer_feedback: Optional[str]
    reviewer_corrections: Dict[str, Any]
    rejection_reason: Optional[str]
    review_history: List[Dict[str, Any]]

    # Outcome
    status: str
    final_decision: Optional[str]
    errors: List[str]

    # Metadata
    processing_timestamp: str
    execution_trace: Dict[str, Any]

    # Control flow
    resume_from: str
    current_step: str


def serialize_state(state: WorkflowState) -> Dict[str, Any]:
    """Convert a workflow state into a JSON-compatible checkpoint payload."""
    payload: Dict[str, Any] = {}
    for key, value in state.items():
        if key in TRANSIENT_KEYS:
            continue
        if key in MODEL_KEYS and value is not None:
            value = value.model_dump(mode="json")
        payload[key] = value
    return payload


def deserialize_state(payload: Dict[str, Any]) -> WorkflowState:
    """Rebuild a workflow state from a checkpoint payload."""
    state: Dict[str, Any] = dict(payload)
    for key, model in MODEL_KEYS.items():
        if state.get(key) is not None:
            state[key] = model.model_validate(state[key])
    state["document"] = None
    state["resume_token"] = None
    return WorkflowState(**state)
