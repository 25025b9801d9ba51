import numpy as np
import pytest
from PIL import Image

from invoice_review.agents.extraction_engine import ExtractionEngine, assess_quality
from invoice_review.config.exception import ExtractionError, FormatError, SizeLimitError
from invoice_review.config.settings import PipelineConfig
from invoice_review.models.schemas import Document, ExtractionMethod
from invoice_review.tools.pdf_extractor import FallbackStrategy, FastPathStrategy

from tests.conftest import GOOD_FIELDS, GOOD_TEXT, PDF_BYTES, FakeStrategy, confidences, make_invoice_pdf

NOISY_TEXT = "x1 ## ~~"
PARTIAL_TEXT = "Inv0ice t0tal 120 d@te ??"


def pdf_document(content=PDF_BYTES):
    return Document.from_bytes(content, filename="invoice.pdf")


def test_quality_of_empty_text_is_zero():
    assert assess_quality("") == 0.0
    assert assess_quality("   \n ") == 0.0


def test_quality_rewards_length_keywords_and_clean_characters():
    good = assess_quality(GOOD_TEXT)
    noisy = assess_quality(NOISY_TEXT)

    assert 0.0 <= noisy < 0.7 <= good <= 1.0
    assert good > 0.9


@pytest.mark.asyncio
async def test_fast_path_accepted_without_calling_fallback(config):
    fast = FakeStrategy(name="fast", text=GOOD_TEXT, fields=GOOD_FIELDS)
    fallback = FakeStrategy(name="ocr", text=GOOD_TEXT, fields=GOOD_FIELDS)
    engine = ExtractionEngine(config, fast, fallback)

    result = await engine.extract(pdf_document())

    assert result.method == ExtractionMethod.FAST_PATH
    assert fallback.calls == 0
    assert result.fields["total"] == 120.0
    # Bounded by both text quality and field confidence
    assert result.overall_confidence == min(assess_quality(GOOD_TEXT), 0.95)


@pytest.mark.asyncio
async def test_fallback_used_when_fast_path_fails(config):
    fast = FakeStrategy(name="fast", error=ExtractionError("no text layer"))
    fallback = FakeStrategy(name="ocr", text=GOOD_TEXT, fields=GOOD_FIELDS)
    engine = ExtractionEngine(config, fast, fallback)

    result = await engine.extract(pdf_document())

    assert result.method == ExtractionMethod.FALLBACK
    assert fallback.calls == 1
    assert any("no text layer" in note for note in result.notes)


@pytest.mark.asyncio
async def test_fallback_used_when_fast_path_quality_is_low(config):
    fast = FakeStrategy(name="fast", text=NOISY_TEXT, fields={"total": 1.0})
    fallback = FakeStrategy(name="ocr", text=GOOD_TEXT, fields=GOOD_FIELDS)
    engine = ExtractionEngine(config, fast, fallback)

    result = await engine.extract(pdf_document())

    assert result.method == ExtractionMethod.FALLBACK
    assert result.fields == GOOD_FIELDS


@pytest.mark.asyncio
async def test_hybrid_result_is_discounted(config):
    fast_fields = {"total": 120.0, "vendor": "Acme"}
    fast = FakeStrategy(name="fast", text=PARTIAL_TEXT, fields=fast_fields, field_confidence=confidences(fast_fields, 0.6))
    fallback = FakeStrategy(name="ocr", text=NOISY_TEXT, fields={"total": 12.0})
    engine = ExtractionEngine(config, fast, fallback)

    result = await engine.extract(pdf_document())

    quality = assess_quality(PARTIAL_TEXT)
    assert quality < config.quality_threshold
    assert result.method == ExtractionMethod.HYBRID
    assert result.fields == fast_fields
    assert result.overall_confidence == round(round(min(quality, 0.6), 4) * config.hybrid_penalty, 4)


@pytest.mark.asyncio
async def test_both_strategies_failing_gives_zero_confidence(config):
    fast = FakeStrategy(name="fast", error=ExtractionError("no text layer"))
    fallback = FakeStrategy(name="ocr", error=RuntimeError("corrupt stream"))
    engine = ExtractionEngine(config, fast, fallback)

    result = await engine.extract(pdf_document())

    assert result.fields == {}
    assert result.field_confidence == {}
    assert result.overall_confidence == 0.0
    assert len(result.notes) == 2


@pytest.mark.asyncio
async def test_confidences_are_clamped_and_unscored_fields_dropped(config):
    fast = FakeStrategy(
        name="fast",
        text=GOOD_TEXT,
        fields={"total": 120.0, "vendor": "Acme"},
        field_confidence={"total": 1.7},
    )
    engine = ExtractionEngine(config, fast, FakeStrategy(name="ocr"))

    result = await engine.extract(pdf_document())

    assert result.fields == {"total": 120.0}
    assert result.field_confidence == {"total": 1.0}


@pytest.mark.asyncio
async def test_empty_document_rejected_before_strategies_run(config):
    fast = FakeStrategy(name="fast", text=GOOD_TEXT, fields=GOOD_FIELDS)
    engine = ExtractionEngine(config, fast, FakeStrategy(name="ocr"))

    with pytest.raises(FormatError):
        await engine.extract(Document(content=b"", size=0, mime_type="application/pdf"))
    assert fast.calls == 0


def test_unknown_signature_rejected():
    with pytest.raises(FormatError) as exc:
        Document.from_bytes(b"GIF89a....")
    assert exc.value.code == "unsupported_format"


@pytest.mark.asyncio
async def test_oversized_document_rejected(config):
    engine = ExtractionEngine(PipelineConfig(max_document_bytes=16), FakeStrategy(), FakeStrategy())

    with pytest.raises(SizeLimitError) as exc:
        await engine.extract(pdf_document(PDF_BYTES + b"0" * 64))
    assert exc.value.code == "document_too_large"


@pytest.mark.asyncio
async def test_fast_path_reads_real_pdf(config):
    content = make_invoice_pdf([
        "Acme Office Supplies Ltd",
        "Invoice Number: INV-2024-001",
        "Invoice Date: 15/01/2024",
        "Subtotal: 100.00",
        "VAT (20%): 20.00",
        "Total: GBP 120.00",
    ])

    raw = await FastPathStrategy().extract_raw(content, "application/pdf")

    assert "INV-2024-001" in raw.text
    assert raw.fields["total"] == 120.0
    assert raw.fields["invoice_date"] == "2024-01-15"


@pytest.mark.asyncio
async def test_fast_path_refuses_images():
    with pytest.raises(ExtractionError):
        await FastPathStrategy().extract_raw(b"\x89PNG\r\n\x1a\n", "image/png")


@pytest.mark.asyncio
async def test_corrupt_input_never_escapes_the_engine(config):
    corrupt_png = b"\x89PNG\r\n\x1a\n" + b"\x00" * 32
    engine = ExtractionEngine(config, FastPathStrategy(), FallbackStrategy())

    result = await engine.extract(Document.from_bytes(corrupt_png))

    assert result.overall_confidence == 0.0
    assert result.fields == {}


def test_preprocessing_binarises_without_resizing():
    image = Image.new("RGB", (120, 60), "white")
    pixels = np.array(image)
    pixels[20:40, 10:110] = 0
    strategy = FallbackStrategy()

    processed = strategy._preprocess_image(Image.fromarray(pixels))

    values = set(np.unique(np.array(processed)).tolist())
    assert processed.size == (120, 60)
    assert values <= {0, 255}
