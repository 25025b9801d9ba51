from typing import List, Optional, Tuple
import re

from invoice_review.config.exception import ExtractionError, FormatError, SizeLimitError
from invoice_review.config.logger import setup_logger
from invoice_review.config.settings import PipelineConfig
from invoice_review.models.schemas import Document, ExtractionMethod, ExtractionResult, sniff_mime_type
from invoice_review.tools.pdf_extractor import ExtractionStrategy, RawExtraction

logger = setup_logger("ExtractionEngine", "extraction_engine.log")

DOMAIN_KEYWORDS = (
    "invoice",
    "total",
    "vendor",
    "amount",
    "date",
    "tax",
    "receipt",
    "bill",
    "due",
    "subtotal",
)

LENGTH_TARGET = 400
KEYWORD_TARGET = 3


def assess_quality(text: str) -> float:
    """
    Score extracted text in [0, 1].

    Combines text length, the share of alphanumeric characters among
    non-whitespace characters and how many domain keywords appear.
    """
    if not text or not text.strip():
        return 0.0

    stripped = text.strip()
    length_score = min(len(stripped) / LENGTH_TARGET, 1.0)

    visible = [ch for ch in stripped if not ch.isspace()]
    alnum_ratio = sum(ch.isalnum() for ch in visible) / len(visible) if visible else 0.0

    lowered = stripped.lower()
    hits = sum(1 for kw in DOMAIN_KEYWORDS if re.search(rf"\b{kw}\b", lowered))
    keyword_score = min(hits / KEYWORD_TARGET, 1.0)

    score = 0.3 * length_score + 0.3 * alnum_ratio + 0.4 * keyword_score
    return round(min(max(score, 0.0), 1.0), 4)


def attempt_confidence(raw: RawExtraction, quality: float) -> float:
    """Overall confidence of one attempt: bounded by quality and by its fields."""
    if not raw.field_confidence:
        return 0.0
    mean_field = sum(raw.field_confidence.values()) / len(raw.field_confidence)
    return round(min(quality, mean_field), 4)


class ExtractionEngine:
    """
    Tiered extraction: a fast strategy first, the fallback only when the
    fast result's quality is below the configured threshold.
    """

    def __init__(self, config: PipelineConfig, fast: ExtractionStrategy, fallback: ExtractionStrategy):
        self.config = config
        self.fast = fast
        self.fallback = fallback

    def check_size(self, size: int) -> None:
        if size > self.config.max_document_bytes:
            raise SizeLimitError(
                f"Document is {size} bytes; the limit is {self.config.max_document_bytes}"
            )

    def check_document(self, document: Document) -> None:
        """Reject oversized or unrecognised input before any strategy runs."""
        self.check_size(max(document.size, len(document.content)))
        if not document.content:
            raise FormatError("Document is empty")
        if sniff_mime_type(document.content) is None:
            raise FormatError("Document does not match a supported format signature (PDF, PNG, JPEG)")

    async def extract(self, document: Document) -> ExtractionResult:
        """
        Extract fields from a document.

        Raises:
            SizeLimitError: document larger than max_document_bytes
            FormatError: empty document or unknown signature
        """
        self.check_document(document)
        mime_type = sniff_mime_type(document.content)
        notes: List[str] = []

        fast_raw, fast_quality = await self._attempt(self.fast, document.content, mime_type, notes)
        if fast_raw is not None and fast_quality >= self.config.quality_threshold:
            logger.info(f"Fast path accepted (quality {fast_quality:.2f})")
            return self._build(fast_raw, fast_quality, ExtractionMethod.FAST_PATH, notes)

        if fast_raw is not None:
            notes.append(
                f"{self.fast.name} quality {fast_quality:.2f} below threshold {self.config.quality_threshold:.2f}"
            )
        logger.info("Fast path insufficient, invoking fallback strategy")

        fallback_raw, fallback_quality = await self._attempt(self.fallback, document.content, mime_type, notes)

        if fast_raw is None and fallback_raw is None:
            logger.warning("Both extraction strategies failed")
            return ExtractionResult.empty(ExtractionMethod.FALLBACK, notes)

        if fallback_raw is not None and (fast_raw is None or fallback_quality > fast_quality):
            logger.info(f"Fallback accepted (quality {fallback_quality:.2f})")
            return self._build(fallback_raw, fallback_quality, ExtractionMethod.FALLBACK, notes)

        best_raw, best_quality = self._best(fast_raw, fast_quality, fallback_raw, fallback_quality)
        notes.append(f"No strategy reached the quality threshold; confidence discounted x{self.config.hybrid_penalty}")
        logger.info(f"Returning hybrid result (quality {best_quality:.2f})")
        return self._build(
            best_raw, best_quality, ExtractionMethod.HYBRID, notes, penalty=self.config.hybrid_penalty
        )

    async def _attempt(
        self, strategy: ExtractionStrategy, content: bytes, mime_type: str, notes: List[str]
    ) -> Tuple[Optional[RawExtraction], float]:
        try:
            raw = await strategy.extract_raw(content, mime_type)
        except ExtractionError as e:
            logger.warning(f"{strategy.name} failed: {e}")
            notes.append(f"{strategy.name} failed: {e}")
            return None, 0.0
        except Exception as e:
            # Corrupt-but-well-formed input can surface arbitrary library errors
            logger.error(f"{strategy.name} raised unexpectedly: {e}")
            notes.append(f"{strategy.name} error: {e}")
            return None, 0.0
        quality = assess_quality(raw.text)
        logger.debug(f"{strategy.name} quality {quality:.2f}, {len(raw.fields)} fields")
        return raw, quality

    @staticmethod
    def _best(a: Optional[RawExtraction], qa: float, b: Optional[RawExtraction], qb: float):
        if b is None or (a is not None and qa >= qb):
            return a, qa
        return b, qb

    @staticmethod
    def _build(
        raw: RawExtraction,
        quality: float,
        method: ExtractionMethod,
        notes: List[str],
        penalty: float = 1.0,
    ) -> ExtractionResult:
        # Drop field values that came without a confidence entry
        fields = {k: v for k, v in raw.fields.items() if k in raw.field_confidence}
        confidence = {k: min(max(float(raw.field_confidence[k]), 0.0), 1.0) for k in fields}
        overall = attempt_confidence(
            RawExtraction(text=raw.text, fields=fields, field_confidence=confidence), quality
        )
        return ExtractionResult(
            fields=fields,
            field_confidence=confidence,
            overall_confidence=round(overall * penalty, 4),
            method=method,
            notes=notes,
            raw_text=raw.text,
            quality_score=quality,
        )
