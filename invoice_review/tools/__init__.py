"""
Tools Package

Contains utility tools for invoice processing:
- pdf_extractor: pdfplumber fast path and OCR fallback extraction strategies
- field_parser: rule-based invoice field parsing
- fuzzy_matcher: fuzzy vendor-name matching
- notifier: review notification boundary
"""

from invoice_review.tools.field_parser import FieldParser
from invoice_review.tools.fuzzy_matcher import FuzzyMatcher
from invoice_review.tools.notifier import LoggingNotifier, Notifier
from invoice_review.tools.pdf_extractor import (
    ExtractionStrategy,
    FallbackStrategy,
    FastPathStrategy,
    RawExtraction,
)

__all__ = [
    "FieldParser",
    "FuzzyMatcher",
    "LoggingNotifier",
    "Notifier",
    "ExtractionStrategy",
    "FallbackStrategy",
    "FastPathStrategy",
    "RawExtraction",
]
