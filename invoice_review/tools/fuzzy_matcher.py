"""
Fuzzy vendor-name matching for denylist checks.
Uses rapidfuzz for high-performance string matching.
"""

from rapidfuzz import fuzz
from typing import List, Optional, Tuple
import re

from invoice_review.config.logger import setup_logger

logger = setup_logger("FuzzyMatcher", "fuzzy_matcher.log")

BUSINESS_SUFFIXES = [' ltd', ' limited', ' inc', ' plc', ' corp', ' co.', ' llc', ' gmbh', ' ab']


class FuzzyMatcher:
    """Fuzzy matching of vendor names"""

    def __init__(self, threshold: float = 90.0):
        """
        Initialize fuzzy matcher.

        Args:
            threshold: Minimum similarity score (0-100) to consider a match
        """
        self.threshold = threshold
        logger.debug(f"Initialized FuzzyMatcher with threshold: {threshold}")

    def _normalize_text(self, text: str) -> str:
        """Normalize text for comparison"""
        if not text:
            return ""
        text = text.lower().strip()
        text = re.sub(r'[^\w\s.&]', ' ', text)
        text = re.sub(r'\s+', ' ', text)
        for suffix in BUSINESS_SUFFIXES:
            if text.endswith(suffix):
                text = text[:-len(suffix)]
        return text.strip(" .")

    def match_vendor(self, candidate: str, reference: str) -> Tuple[bool, float]:
        """
        Match two vendor names.

        Returns:
            Tuple of (is_match, confidence_score)
        """
        if not candidate or not reference:
            return False, 0.0

        norm_a = self._normalize_text(candidate)
        norm_b = self._normalize_text(reference)
        if not norm_a or not norm_b:
            return False, 0.0

        # token_set_ratio treats "Acme" and "Acme Trading" as the same vendor
        best_score = max(
            fuzz.ratio(norm_a, norm_b),
            fuzz.token_sort_ratio(norm_a, norm_b),
            fuzz.token_set_ratio(norm_a, norm_b),
        )
        is_match = best_score >= self.threshold
        logger.debug(f"Vendor match: '{candidate}' vs '{reference}' -> {is_match} (score: {best_score})")
        return is_match, best_score / 100.0

    def find_in_list(self, vendor: str, names: List[str]) -> Optional[Tuple[str, float]]:
        """
        Return the best-matching entry of ``names`` for ``vendor``, or None.
        """
        best = None
        for name in names:
            is_match, conf = self.match_vendor(vendor, name)
            if is_match and (best is None or conf > best[1]):
                best = (name, conf)
        return best
