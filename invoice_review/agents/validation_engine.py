"""
Business-rule validation and confidence adjustment.

Rules are independent predicates over extracted field values. Each failing
rule yields a violation with the rule's severity; blocking violations make
the result invalid. Malformed data never raises here, only a malformed rule
set does (ConfigurationError, at startup).
"""

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from invoice_review.config.exception import ConfigurationError
from invoice_review.config.logger import setup_logger
from invoice_review.config.settings import PipelineConfig
from invoice_review.models.schemas import ExtractionResult, Severity, ValidationResult, Violation
from invoice_review.tools.field_parser import parse_amount, parse_date
from invoice_review.tools.fuzzy_matcher import FuzzyMatcher

logger = setup_logger("ValidationEngine", "validation_engine.log")

# (message, field) pairs produced by a failing rule
Findings = List[Tuple[str, Optional[str]]]
RuleCheck = Callable[[Dict[str, Any], Dict[str, float], Dict[str, Any], date], Findings]


def _check_required_field(fields, confidence, params, today) -> Findings:
    name = params["field"]
    value = fields.get(name)
    if value is None or (isinstance(value, str) and not value.strip()):
        return [(f"Required field '{name}' is missing", name)]
    return []


def _check_amount_range(fields, confidence, params, today) -> Findings:
    name = params.get("field", "total")
    if fields.get(name) is None:
        return []
    amount = parse_amount(fields[name])
    if amount is None:
        return [(f"'{name}' is not a valid amount: {fields[name]!r}", name)]
    minimum = params.get("min_exclusive", 0.0)
    maximum = params["max"]
    if amount <= minimum:
        return [(f"'{name}' must be greater than {minimum}, got {amount}", name)]
    if amount >= maximum:
        return [(f"'{name}' of {amount} exceeds the reasonable maximum of {maximum}", name)]
    return []


def _check_date_not_future(fields, confidence, params, today) -> Findings:
    name = params.get("field", "invoice_date")
    if fields.get(name) is None:
        return []
    parsed = parse_date(fields[name])
    if parsed is None:
        return [(f"'{name}' is not a recognisable date: {fields[name]!r}", name)]
    if parsed.date() > today:
        return [(f"'{name}' {parsed.date().isoformat()} is in the future", name)]
    return []


_matcher = FuzzyMatcher()


def _check_vendor_denylist(fields, confidence, params, today) -> Findings:
    name = params.get("field", "vendor")
    vendor = fields.get(name)
    if not vendor or not params["denylist"]:
        return []
    hit = _matcher.find_in_list(str(vendor), params["denylist"])
    if hit:
        return [(f"Vendor '{vendor}' matches denylisted '{hit[0]}' ({hit[1]:.0%})", name)]
    return []


def _check_currency_allowed(fields, confidence, params, today) -> Findings:
    currency = fields.get("currency")
    if currency is None:
        return []
    allowed = [c.upper() for c in params["allowed"]]
    if str(currency).upper() not in allowed:
        return [(f"Currency {currency} is not one of {', '.join(allowed)}", "currency")]
    return []


def _check_totals_consistent(fields, confidence, params, today) -> Findings:
    subtotal = parse_amount(fields.get("subtotal"))
    tax = parse_amount(fields.get("tax"))
    total = parse_amount(fields.get("total"))
    if subtotal is None or total is None:
        return []
    expected = subtotal + (tax or 0.0)
    if abs(expected - total) > params["tolerance"]:
        return [(f"Subtotal {subtotal:.2f} + tax {tax or 0.0:.2f} does not match total {total:.2f}", "total")]
    return []


def _check_field_confidence_min(fields, confidence, params, today) -> Findings:
    floor = params["min_confidence"]
    return [
        (f"Field '{name}' extracted with low confidence ({conf:.2f})", name)
        for name, conf in sorted(confidence.items())
        if conf < floor
    ]


RULE_KINDS: Dict[str, Tuple[RuleCheck, Tuple[str, ...]]] = {
    "required_field": (_check_required_field, ("field",)),
    "amount_range": (_check_amount_range, ("max",)),
    "date_not_future": (_check_date_not_future, ()),
    "vendor_denylist": (_check_vendor_denylist, ("denylist",)),
    "currency_allowed": (_check_currency_allowed, ("allowed",)),
    "totals_consistent": (_check_totals_consistent, ("tolerance",)),
    "field_confidence_min": (_check_field_confidence_min, ("min_confidence",)),
}

REQUIRED_RULE_KINDS = ("amount_range", "date_not_future")


@dataclass(frozen=True)
class Rule:
    rule_id: str
    kind: str
    severity: Severity
    params: Dict[str, Any] = field(default_factory=dict)

    def evaluate(self, fields: Dict[str, Any], confidence: Dict[str, float], today: date) -> List[Violation]:
        check, _ = RULE_KINDS[self.kind]
        return [
            Violation(rule_id=self.rule_id, message=message, severity=self.severity, field=field_name)
            for message, field_name in check(fields, confidence, self.params, today)
        ]


@dataclass(frozen=True)
class RuleSet:
    rules: Tuple[Rule, ...]

    def __len__(self) -> int:
        return len(self.rules)


def default_rule_definitions(config: PipelineConfig) -> List[Dict[str, Any]]:
    return [
        {"id": "total_present", "kind": "required_field", "severity": "blocking", "params": {"field": "total"}},
        {"id": "vendor_present", "kind": "required_field", "severity": "blocking", "params": {"field": "vendor"}},
        {
            "id": "amount_in_range",
            "kind": "amount_range",
            "severity": "blocking",
            "params": {"field": "total", "min_exclusive": 0.0, "max": config.max_reasonable_amount},
        },
        {"id": "date_not_in_future", "kind": "date_not_future", "severity": "blocking", "params": {"field": "invoice_date"}},
        {"id": "vendor_not_denylisted", "kind": "vendor_denylist", "severity": "blocking", "params": {"denylist": list(config.vendor_denylist)}},
        {"id": "currency_supported", "kind": "currency_allowed", "severity": "advisory", "params": {"allowed": list(config.allowed_currencies)}},
        {"id": "totals_add_up", "kind": "totals_consistent", "severity": "advisory", "params": {"tolerance": 0.05}},
        {"id": "field_confidence", "kind": "field_confidence_min", "severity": "advisory", "params": {"min_confidence": 0.6}},
    ]


def build_rule_set(definitions: List[Dict[str, Any]]) -> RuleSet:
    """
    Build and check a rule set from plain definitions.

    Raises:
        ConfigurationError: for an empty list, duplicate ids, unknown kinds,
            bad severities, missing parameters or missing required rule kinds
    """
    if not definitions:
        raise ConfigurationError("Rule set is empty")

    rules: List[Rule] = []
    seen_ids = set()
    for index, definition in enumerate(definitions):
        if not isinstance(definition, dict):
            raise ConfigurationError(f"Rule #{index} is not a mapping")
        rule_id = definition.get("id")
        kind = definition.get("kind")
        if not rule_id:
            raise ConfigurationError(f"Rule #{index} has no id")
        if rule_id in seen_ids:
            raise ConfigurationError(f"Duplicate rule id: {rule_id}")
        if kind not in RULE_KINDS:
            raise ConfigurationError(f"Rule {rule_id} has unknown kind: {kind!r}")
        try:
            severity = Severity(definition.get("severity"))
        except ValueError as e:
            raise ConfigurationError(f"Rule {rule_id} has invalid severity: {definition.get('severity')!r}") from e

        params = dict(definition.get("params") or {})
        missing = [p for p in RULE_KINDS[kind][1] if p not in params]
        if missing:
            raise ConfigurationError(f"Rule {rule_id} is missing parameters: {missing}")

        seen_ids.add(rule_id)
        rules.append(Rule(rule_id=rule_id, kind=kind, severity=severity, params=params))

    present = {rule.kind for rule in rules}
    absent = [kind for kind in REQUIRED_RULE_KINDS if kind not in present]
    if absent:
        raise ConfigurationError(f"Rule set lacks required rule kinds: {absent}")

    logger.info(f"Rule set built with {len(rules)} rules")
    return RuleSet(rules=tuple(rules))


class ValidationEngine:
    """Applies a RuleSet to an ExtractionResult"""

    def __init__(self, config: PipelineConfig, clock: Callable[[], datetime] = None):
        self.config = config
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def validate(self, extraction_result: ExtractionResult, rule_set: RuleSet) -> ValidationResult:
        today = self.clock().date()
        violations: List[Violation] = []

        for rule in rule_set.rules:
            violations.extend(
                rule.evaluate(extraction_result.fields, extraction_result.field_confidence, today)
            )

        adjusted = self.adjust_confidence(extraction_result.overall_confidence, violations)
        is_valid = not any(v.is_blocking for v in violations)

        logger.info(
            f"Validation: valid={is_valid}, {len(violations)} violations, "
            f"confidence {extraction_result.overall_confidence:.2f} -> {adjusted:.2f}"
        )
        return ValidationResult(is_valid=is_valid, violations=violations, adjusted_confidence=adjusted)

    def adjust_confidence(self, confidence: float, violations: List[Violation]) -> float:
        blocking = sum(1 for v in violations if v.is_blocking)
        advisory = len(violations) - blocking
        adjusted = confidence - blocking * self.config.blocking_penalty - advisory * self.config.advisory_penalty
        return round(min(max(adjusted, 0.0), 1.0), 4)
