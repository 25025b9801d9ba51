"""
Deterministic invoice field parsing.
Turns extracted text into field values with a per-field confidence.
"""

import re
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from invoice_review.config.logger import setup_logger

logger = setup_logger("FieldParser", "field_parser.log")

DATE_FORMATS = [
    "%Y-%m-%d",
    "%d/%m/%Y",
    "%d-%m-%Y",
    "%d.%m.%Y",
    "%d %B %Y",
    "%d %b %Y",
    "%B %d, %Y",
    "%b %d, %Y",
    "%B %d %Y",
    "%b %d %Y",
]

CURRENCY_SYMBOLS = {"£": "GBP", "€": "EUR", "$": "USD"}
CURRENCY_CODES = ("GBP", "EUR", "USD", "CHF", "CAD", "AUD", "JPY", "INR")

_AMOUNT = r"(?:[£€$]\s?)?(-?[\d,]+(?:\.\d{1,2})?)"

# (field, pattern, confidence) in priority order; first match per field wins
LABELLED_PATTERNS: List[Tuple[str, str, float]] = [
    ("invoice_number", r"invoice\s*(?:no\.?|number|num|#)\s*[:#]?\s*([A-Z0-9][A-Z0-9\-/]{2,})", 0.92),
    ("invoice_number", r"receipt\s*(?:no\.?|number|#)\s*[:#]?\s*([A-Z0-9][A-Z0-9\-/]{2,})", 0.85),
    ("po_reference", r"\b(?:p\.?o\.?|purchase\s+order)\s*(?:no\.?|number|ref(?:erence)?|#)?\s*[:#]?\s*([A-Z]{1,4}-[A-Z0-9\-]+|\d{4,})", 0.88),
    ("invoice_date", r"(?<!due\s)(?:invoice\s+)?\bdate\s*(?:of\s+issue)?\s*[:\-]?\s*([0-9]{1,4}[\-/.][0-9]{1,2}[\-/.][0-9]{1,4}|[0-9]{1,2}\s+[A-Za-z]{3,9}\s+[0-9]{4}|[A-Za-z]{3,9}\s+[0-9]{1,2},?\s+[0-9]{4})", 0.9),
    ("due_date", r"due\s*(?:date)?\s*[:\-]?\s*([0-9]{1,4}[\-/.][0-9]{1,2}[\-/.][0-9]{1,4}|[0-9]{1,2}\s+[A-Za-z]{3,9}\s+[0-9]{4})", 0.85),
    ("subtotal", r"sub\s*-?\s*total\s*[:\-]?\s*" + _AMOUNT, 0.9),
    ("tax", r"\b(?:vat|tax|gst)(?:\s*\(?\d{1,2}(?:\.\d+)?%\)?)?\s*(?:amount)?\s*[:\-]?\s*" + _AMOUNT, 0.85),
    ("total", r"(?:grand\s+total|total\s+due|amount\s+due|balance\s+due|total\s+amount)\s*[:\-]?\s*(?:[A-Z]{3}\s*)?" + _AMOUNT, 0.93),
    ("total", r"(?<!sub)(?<!sub\s)(?<!-)\btotal\s*[:\-]?\s*(?:[A-Z]{3}\s*)?" + _AMOUNT, 0.85),
    ("vendor", r"\b(?:vendor|supplier|from|bill\s+from|sold\s+by)\s*[:\-]\s*([^\n]{2,80})", 0.85),
]

AMOUNT_FIELDS = {"total", "subtotal", "tax"}
DATE_FIELDS = {"invoice_date", "due_date"}


def parse_amount(value) -> Optional[float]:
    """Parse an amount such as '£1,234.50' into a float; None if unparseable."""
    if value is None:
        return None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    text = str(value).strip()
    for symbol in CURRENCY_SYMBOLS:
        text = text.replace(symbol, "")
    text = re.sub(r"[A-Za-z\s]", "", text).replace(",", "")
    try:
        return float(text)
    except ValueError:
        return None


def parse_date(value) -> Optional[datetime]:
    """Parse a date in one of the supported invoice formats."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value
    text = re.sub(r"\s+", " ", str(value).strip())
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt)
        except ValueError:
            continue
    return None


class FieldParser:
    """Regex-based field parser for invoice and receipt text"""

    def parse(self, text: str, tables: Optional[List[List[List[str]]]] = None) -> Tuple[Dict, Dict[str, float]]:
        """
        Parse invoice fields from text.

        Args:
            text: Extracted document text
            tables: Optional tables (rows of cells) found in the document

        Returns:
            Tuple of (fields, field_confidence)
        """
        fields: Dict = {}
        confidence: Dict[str, float] = {}

        if not text or not text.strip():
            return fields, confidence

        for name, pattern, conf in LABELLED_PATTERNS:
            if name in fields:
                continue
            match = re.search(pattern, text, flags=re.IGNORECASE)
            if not match:
                continue
            value = self._normalize(name, match.group(1))
            if value is None:
                continue
            fields[name] = value
            confidence[name] = conf

        if "vendor" not in fields:
            vendor = self._guess_vendor(text)
            if vendor:
                fields["vendor"] = vendor
                confidence["vendor"] = 0.5

        currency, currency_conf = self._detect_currency(text)
        if currency:
            fields["currency"] = currency
            confidence["currency"] = currency_conf

        if tables:
            rows = [row for table in tables for row in table[1:] if any(cell for cell in row)]
            if rows:
                fields["line_item_count"] = len(rows)
                confidence["line_item_count"] = 0.8

        logger.debug(f"Parsed {len(fields)} fields: {sorted(fields)}")
        return fields, confidence

    def _normalize(self, name: str, raw: str):
        raw = raw.strip()
        if name in AMOUNT_FIELDS:
            return parse_amount(raw)
        if name in DATE_FIELDS:
            parsed = parse_date(raw)
            # Keep unparseable dates as text; validation reports them
            return parsed.date().isoformat() if parsed else raw
        if name == "vendor":
            return raw.strip(" .,:;") or None
        return raw.upper() if name in ("invoice_number", "po_reference") else raw

    def _guess_vendor(self, text: str) -> Optional[str]:
        for line in text.splitlines():
            line = line.strip()
            if len(line) < 3:
                continue
            if re.search(r"invoice|receipt|bill\b|date|page|tax", line, flags=re.IGNORECASE):
                continue
            if sum(ch.isalpha() for ch in line) < 3:
                continue
            return line[:80]
        return None

    def _detect_currency(self, text: str) -> Tuple[Optional[str], float]:
        for code in CURRENCY_CODES:
            if re.search(rf"\b{code}\b", text):
                return code, 0.9
        for symbol, code in CURRENCY_SYMBOLS.items():
            if symbol in text:
                return code, 0.8
        return None, 0.0
