from typing import Any, Optional

from invoice_review.config.logger import setup_logger
from invoice_review.config.settings import PipelineConfig
from invoice_review.models.schemas import ApprovalDecision, Decision, ValidationResult
from invoice_review.tools.field_parser import parse_amount

logger = setup_logger("ApprovalRouter", "approval_router.log")

REASON_AUTO_APPROVE = "within_auto_approve_limits"
REASON_BLOCKING = "blocking_violation"
REASON_BELOW_FLOOR = "confidence_below_floor"
REASON_REVIEW_BAND = "confidence_in_review_band"
REASON_AMOUNT_LIMIT = "amount_above_auto_approve_limit"
REASON_AMOUNT_MISSING = "amount_missing"


class ApprovalRouter:
    """Maps validation outcome, confidence and amount to an approval decision"""

    def __init__(self, config: PipelineConfig):
        self.config = config

    @property
    def thresholds(self) -> dict:
        return {
            "auto_approve_max_amount": self.config.auto_approve_max_amount,
            "auto_approve_min_confidence": self.config.auto_approve_min_confidence,
            "manual_review_min_confidence": self.config.manual_review_min_confidence,
        }

    def route(self, validation: ValidationResult, amount: Any) -> ApprovalDecision:
        """
        Decide auto_approve, auto_reject or human_review.

        A blocking violation always goes to a human; an amount that is
        missing or unparseable never auto-approves.
        """
        decision, reason = self.decide(
            validation.is_valid, validation.adjusted_confidence, parse_amount(amount)
        )
        result = ApprovalDecision(
            decision=decision,
            reason=reason,
            confidence=validation.adjusted_confidence,
            amount=parse_amount(amount),
            thresholds=self.thresholds,
            review_ttl_seconds=self.config.resume_token_ttl_seconds if decision == Decision.HUMAN_REVIEW else None,
        )
        logger.info(f"Routing decision: {decision.value} ({reason})")
        return result

    def decide(self, is_valid: bool, confidence: float, amount: Optional[float]):
        cfg = self.config
        if not is_valid:
            return Decision.HUMAN_REVIEW, REASON_BLOCKING

        confident = confidence >= cfg.auto_approve_min_confidence
        within_limit = amount is not None and amount <= cfg.auto_approve_max_amount
        if confident and within_limit:
            return Decision.AUTO_APPROVE, REASON_AUTO_APPROVE

        if confidence < cfg.manual_review_min_confidence:
            return Decision.AUTO_REJECT, REASON_BELOW_FLOOR

        if confident:
            return Decision.HUMAN_REVIEW, REASON_AMOUNT_MISSING if amount is None else REASON_AMOUNT_LIMIT
        return Decision.HUMAN_REVIEW, REASON_REVIEW_BAND
