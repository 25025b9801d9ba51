from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
import uuid

from pydantic import BaseModel, ConfigDict, Field, model_validator

from invoice_review.config.exception import FormatError

PDF_SIGNATURE = b"%PDF-"
PNG_SIGNATURE = b"\x89PNG\r\n\x1a\n"
JPEG_SIGNATURE = b"\xff\xd8\xff"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def sniff_mime_type(content: bytes) -> Optional[str]:
    """Return the MIME type matching the content's signature, if recognised."""
    if content.startswith(PDF_SIGNATURE):
        return "application/pdf"
    if content.startswith(PNG_SIGNATURE):
        return "image/png"
    if content.startswith(JPEG_SIGNATURE):
        return "image/jpeg"
    return None


class Document(BaseModel):
    """One inbound file. Immutable once created."""

    model_config = ConfigDict(frozen=True)

    document_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    content: bytes = Field(repr=False)
    size: int
    mime_type: str
    filename: Optional[str] = None

    @classmethod
    def from_bytes(cls, content: bytes, filename: str = None, document_id: str = None) -> "Document":
        if not content:
            raise FormatError("Document is empty")
        mime_type = sniff_mime_type(content)
        if mime_type is None:
            raise FormatError("Document does not match a supported format signature (PDF, PNG, JPEG)")
        kwargs = {"content": content, "size": len(content), "mime_type": mime_type, "filename": filename}
        if document_id:
            kwargs["document_id"] = document_id
        return cls(**kwargs)

    def summary(self) -> Dict[str, Any]:
        return {
            "document_id": self.document_id,
            "filename": self.filename,
            "size": self.size,
            "mime_type": self.mime_type,
        }


class ExtractionMethod(str, Enum):
    FAST_PATH = "fast-path"
    FALLBACK = "fallback"
    HYBRID = "hybrid"


class ExtractionResult(BaseModel):
    fields: Dict[str, Any] = {}
    field_confidence: Dict[str, float] = {}
    overall_confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    method: ExtractionMethod
    notes: List[str] = []
    raw_text: str = ""
    quality_score: float = Field(default=0.0, ge=0.0, le=1.0)

    @model_validator(mode="after")
    def _every_field_has_confidence(self) -> "ExtractionResult":
        missing = [name for name in self.fields if name not in self.field_confidence]
        if missing:
            raise ValueError(f"fields without a confidence entry: {missing}")
        for name, conf in self.field_confidence.items():
            if not 0.0 <= conf <= 1.0:
                raise ValueError(f"confidence for {name} out of range: {conf}")
        return self

    @classmethod
    def empty(cls, method: ExtractionMethod, notes: List[str] = None) -> "ExtractionResult":
        return cls(method=method, notes=notes or [])


class Severity(str, Enum):
    BLOCKING = "blocking"
    ADVISORY = "advisory"


class Violation(BaseModel):
    rule_id: str
    message: str
    severity: Severity
    field: Optional[str] = None

    @property
    def is_blocking(self) -> bool:
        return self.severity == Severity.BLOCKING


class ValidationResult(BaseModel):
    is_valid: bool
    violations: List[Violation] = []
    adjusted_confidence: float = Field(ge=0.0, le=1.0)

    @model_validator(mode="after")
    def _validity_matches_blocking(self) -> "ValidationResult":
        has_blocking = any(v.is_blocking for v in self.violations)
        if self.is_valid == has_blocking:
            raise ValueError("is_valid must be False exactly when a blocking violation is present")
        return self

    @property
    def blocking_count(self) -> int:
        return sum(1 for v in self.violations if v.is_blocking)

    @property
    def advisory_count(self) -> int:
        return len(self.violations) - self.blocking_count


class Decision(str, Enum):
    AUTO_APPROVE = "auto_approve"
    AUTO_REJECT = "auto_reject"
    HUMAN_REVIEW = "human_review"


class ApprovalDecision(BaseModel):
    model_config = ConfigDict(frozen=True)

    decision: Decision
    reason: str
    confidence: float
    amount: Optional[float] = None
    thresholds: Dict[str, float]
    review_ttl_seconds: Optional[int] = None

    @model_validator(mode="after")
    def _review_needs_expiry(self) -> "ApprovalDecision":
        if self.decision == Decision.HUMAN_REVIEW and not self.review_ttl_seconds:
            raise ValueError("human_review decisions require a review expiration policy")
        return self


class WorkflowCheckpoint(BaseModel):
    checkpoint_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    workflow_id: str
    step_id: str
    state_payload: Dict[str, Any]
    created_at: datetime = Field(default_factory=utcnow)
    consumed: bool = False
    consumed_at: Optional[datetime] = None


class ResumeToken(BaseModel):
    token: str
    workflow_id: str
    checkpoint_id: str
    expires_at: datetime
    created_at: datetime = Field(default_factory=utcnow)
    consumed: bool = False
    consumed_at: Optional[datetime] = None

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


class ReviewAction(str, Enum):
    APPROVE = "approve"
    MODIFY = "modify"
    REJECT = "reject"


class WorkflowStatus(str, Enum):
    RUNNING = "running"
    AWAITING_REVIEW = "awaiting_review"
    RESUMED_APPROVED = "resumed_approved"
    RESUMED_MODIFIED = "resumed_modified"
    RESUMED_REJECTED = "resumed_rejected"
    APPROVED = "approved"
    REJECTED = "rejected"
    FAILED = "failed"


class ResumePlan(BaseModel):
    next_step: str
    status: WorkflowStatus
    state_updates: Dict[str, Any] = {}


class WorkflowOutcome(BaseModel):
    workflow_id: str
    status: WorkflowStatus
    decision: Optional[ApprovalDecision] = None
    final_decision: Optional[str] = None
    review_history: List[Dict[str, Any]] = []
    extraction: Optional[ExtractionResult] = None
    validation: Optional[ValidationResult] = None
    resume_token: Optional[str] = None
    reviewer_feedback: Optional[str] = None
    rejection_reason: Optional[str] = None
    errors: List[str] = []
    execution_trace: Dict[str, Any] = {}

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")
