import pytest

from invoice_review.agents.validation_engine import (
    ValidationEngine,
    build_rule_set,
    default_rule_definitions,
)
from invoice_review.config.exception import ConfigurationError
from invoice_review.config.settings import PipelineConfig
from invoice_review.models.schemas import ExtractionMethod, ExtractionResult, Severity

from tests.conftest import GOOD_FIELDS, confidences


def extraction(fields, confidence=0.95, overall=0.95):
    return ExtractionResult(
        fields=fields,
        field_confidence=confidences(fields, confidence),
        overall_confidence=overall,
        method=ExtractionMethod.FAST_PATH,
    )


def with_fields(**changes):
    fields = dict(GOOD_FIELDS)
    for name, value in changes.items():
        if value is None:
            fields.pop(name, None)
        else:
            fields[name] = value
    return extraction(fields)


@pytest.fixture
def engine(config, clock):
    return ValidationEngine(config, clock=clock)


@pytest.fixture
def rules(config):
    return build_rule_set(default_rule_definitions(config))


def rule_ids(result):
    return {v.rule_id for v in result.violations}


def test_clean_invoice_passes_unchanged(engine, rules, good_extraction):
    result = engine.validate(good_extraction, rules)

    assert result.is_valid
    assert result.violations == []
    assert result.adjusted_confidence == 0.95


def test_missing_total_is_blocking(engine, rules):
    result = engine.validate(with_fields(total=None), rules)

    assert not result.is_valid
    assert "total_present" in rule_ids(result)
    # total is also part of the arithmetic check, which is skipped without it
    assert result.adjusted_confidence == round(0.95 - 0.15, 4)


def test_future_invoice_date_is_blocking(engine, rules):
    result = engine.validate(with_fields(invoice_date="2024-12-25"), rules)

    assert not result.is_valid
    assert rule_ids(result) == {"date_not_in_future"}


def test_unreadable_values_become_violations(engine, rules):
    result = engine.validate(with_fields(invoice_date="sometime soon", total="twelve"), rules)

    assert not result.is_valid
    assert {"date_not_in_future", "amount_in_range"} <= rule_ids(result)


@pytest.mark.parametrize("total", [0.0, -5.0, 100_000.0, 250_000.0])
def test_amount_outside_reasonable_range(engine, rules, total):
    result = engine.validate(with_fields(total=total, subtotal=None, tax=None), rules)

    assert "amount_in_range" in rule_ids(result)
    assert not result.is_valid


def test_denylisted_vendor_matched_fuzzily(clock):
    config = PipelineConfig(vendor_denylist=["Shady Supplies Ltd"])
    engine = ValidationEngine(config, clock=clock)
    rules = build_rule_set(default_rule_definitions(config))

    result = engine.validate(with_fields(vendor="SHADY SUPPLIES LIMITED"), rules)

    assert not result.is_valid
    assert rule_ids(result) == {"vendor_not_denylisted"}


def test_advisory_violations_keep_invoice_valid(engine, rules):
    result = engine.validate(with_fields(currency="JPY", total=125.0), rules)

    assert result.is_valid
    assert rule_ids(result) == {"currency_supported", "totals_add_up"}
    assert all(v.severity == Severity.ADVISORY for v in result.violations)
    assert result.adjusted_confidence == round(0.95 - 2 * 0.05, 4)


def test_low_field_confidence_is_advisory(engine, rules):
    result = engine.validate(extraction(dict(GOOD_FIELDS), confidence=0.4, overall=0.4), rules)

    assert result.is_valid
    assert len(result.violations) == len(GOOD_FIELDS)
    assert result.adjusted_confidence == 0.05


def test_adjusted_confidence_never_negative(engine, rules):
    result = engine.validate(extraction({}, overall=0.1), rules)

    assert not result.is_valid
    assert result.adjusted_confidence == 0.0


def test_more_violations_never_raise_confidence(engine):
    base = [
        {"id": "amount", "kind": "amount_range", "severity": "blocking", "params": {"max": 100_000}},
        {"id": "date", "kind": "date_not_future", "severity": "blocking", "params": {}},
    ]
    extra = [
        {"id": f"needs_{name}", "kind": "required_field", "severity": severity, "params": {"field": name}}
        for name, severity in [("a", "advisory"), ("b", "blocking"), ("c", "advisory"), ("d", "blocking")]
    ]
    previous = 1.0
    for count in range(len(extra) + 1):
        result = engine.validate(extraction(dict(GOOD_FIELDS)), build_rule_set(base + extra[:count]))
        assert result.adjusted_confidence <= previous
        previous = result.adjusted_confidence


def test_validation_is_deterministic(engine, rules):
    data = with_fields(vendor=None, currency="CHF")

    assert engine.validate(data, rules) == engine.validate(data, rules)


@pytest.mark.parametrize("definitions", [
    [],
    [{"id": "x", "kind": "no_such_kind", "severity": "blocking", "params": {}}],
    [{"id": "x", "kind": "amount_range", "severity": "fatal", "params": {"max": 10}}],
    [{"id": "x", "kind": "amount_range", "severity": "blocking", "params": {}}],
    [
        {"id": "x", "kind": "amount_range", "severity": "blocking", "params": {"max": 10}},
        {"id": "x", "kind": "date_not_future", "severity": "blocking", "params": {}},
    ],
    [{"id": "only_amount", "kind": "amount_range", "severity": "blocking", "params": {"max": 10}}],
    ["not a mapping"],
])
def test_malformed_rule_sets_rejected(definitions):
    with pytest.raises(ConfigurationError):
        build_rule_set(definitions)
