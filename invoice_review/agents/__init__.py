"""
Agents Package

Contains the pipeline stages:
- ExtractionEngine: fast-path / fallback extraction with quality assessment
- LLMFieldParser: LLM field extraction used by the OCR fallback
- ValidationEngine: business rules and confidence adjustment
- ApprovalRouter: auto-approve, auto-reject or human review
- CheckpointController: suspension and at-most-once resumption
- ResumeTokenService: single-use, expiring resume tokens
"""

from invoice_review.agents.extraction_engine import ExtractionEngine, assess_quality
from invoice_review.agents.llm_field_parser import LLMFieldParser
from invoice_review.agents.validation_engine import ValidationEngine, RuleSet, build_rule_set, default_rule_definitions
from invoice_review.agents.approval_router import ApprovalRouter
from invoice_review.agents.checkpoint_controller import CheckpointController
from invoice_review.agents.resume_tokens import ResumeTokenService

__all__ = [
    "ExtractionEngine",
    "assess_quality",
    "LLMFieldParser",
    "ValidationEngine",
    "RuleSet",
    "build_rule_set",
    "default_rule_definitions",
    "ApprovalRouter",
    "CheckpointController",
    "ResumeTokenService",
]
