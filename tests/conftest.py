from datetime import datetime, timedelta, timezone

import pytest

from invoice_review.config.settings import PipelineConfig
from invoice_review.models.schemas import ExtractionMethod, ExtractionResult
from invoice_review.stores.memory import InMemoryWorkflowStore
from invoice_review.tools.pdf_extractor import RawExtraction

PDF_BYTES = b"%PDF-1.4\n% test document\n"

GOOD_TEXT = "\n".join([
    "Acme Office Supplies Ltd",
    "12 High Street London EC1A 1BB",
    "Invoice Number INV 2024 001",
    "Invoice Date 15 January 2024",
    "Due Date 14 February 2024",
    "Vendor Acme Office Supplies Ltd",
    "PO Reference PO 2024 005",
    "Description Quantity Unit Price Amount",
    "A4 Printer Paper 80gsm 10 boxes 5 00 50 00",
    "Blue Ballpoint Pens 20 packs 1 50 30 00",
    "Stapler Heavy Duty 2 units 10 00 20 00",
    "Subtotal 100 00",
    "VAT 20 percent 20 00",
    "Total 120 00 GBP",
    "Amount due within 30 days of the invoice date",
    "Thank you for your business",
])

GOOD_FIELDS = {
    "invoice_number": "INV-2024-001",
    "invoice_date": "2024-01-15",
    "vendor": "Acme Office Supplies Ltd",
    "currency": "GBP",
    "subtotal": 100.0,
    "tax": 20.0,
    "total": 120.0,
}


def confidences(fields, value=0.95):
    return {name: value for name in fields}


class FrozenClock:
    """Callable clock that only moves when told to"""

    def __init__(self, now: datetime = None):
        self.now = now or datetime(2024, 6, 1, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class FakeStrategy:
    """ExtractionStrategy returning canned output, or raising"""

    def __init__(self, name="fake", text="", fields=None, field_confidence=None, error=None):
        self.name = name
        self.text = text
        self.fields = fields or {}
        self.field_confidence = field_confidence if field_confidence is not None else confidences(self.fields)
        self.error = error
        self.calls = 0

    async def extract_raw(self, content: bytes, mime_type: str) -> RawExtraction:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return RawExtraction(text=self.text, fields=self.fields, field_confidence=self.field_confidence)


class FakeNotifier:
    def __init__(self):
        self.sent = []

    async def notify(self, token, summary):
        self.sent.append((token, summary))


@pytest.fixture
def config():
    return PipelineConfig(retry_delay=0.0)


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def store():
    return InMemoryWorkflowStore()


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def good_extraction():
    return ExtractionResult(
        fields=dict(GOOD_FIELDS),
        field_confidence=confidences(GOOD_FIELDS),
        overall_confidence=0.95,
        method=ExtractionMethod.FAST_PATH,
    )



def make_invoice_pdf(lines):
    """Render text lines into a real text-layer PDF"""
    from fpdf import FPDF

    pdf = FPDF()
    pdf.add_page()
    pdf.set_font("Helvetica", size=11)
    for line in lines:
        pdf.cell(0, 8, line, new_x="LMARGIN", new_y="NEXT")
    return bytes(pdf.output())
