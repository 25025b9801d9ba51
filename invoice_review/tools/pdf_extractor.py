"""
Extraction strategies: a fast pdfplumber text-layer path and an
enhancement-based OCR fallback.

Both satisfy the ExtractionStrategy protocol and raise ExtractionError when
they cannot produce anything; the ExtractionEngine decides between them.
"""

import asyncio
import io
from typing import Dict, List, Optional, Protocol, runtime_checkable

import cv2
import numpy as np
import pdfplumber
import pytesseract
from pdf2image import convert_from_bytes
from PIL import Image
from pydantic import BaseModel

from invoice_review.config.exception import ExtractionError
from invoice_review.config.logger import setup_logger
from invoice_review.tools.field_parser import FieldParser

logger = setup_logger("PDFExtractor", "pdf_extractor.log")


class RawExtraction(BaseModel):
    text: str
    fields: Dict = {}
    field_confidence: Dict[str, float] = {}
    text_confidence: float = 1.0


@runtime_checkable
class ExtractionStrategy(Protocol):
    name: str

    async def extract_raw(self, content: bytes, mime_type: str) -> RawExtraction:
        ...


class FastPathStrategy:
    """
    Direct text extraction for digital PDFs via pdfplumber.

    Fails with ExtractionError for images and for PDFs without a text layer
    (typically scans), leaving those to the fallback strategy.
    """

    name = "pdfplumber"

    def __init__(self, field_parser: Optional[FieldParser] = None):
        self.field_parser = field_parser or FieldParser()

    async def extract_raw(self, content: bytes, mime_type: str) -> RawExtraction:
        if mime_type != "application/pdf":
            raise ExtractionError(f"{self.name} cannot read {mime_type}")
        return await asyncio.to_thread(self._extract, content)

    def _extract(self, content: bytes) -> RawExtraction:
        try:
            with pdfplumber.open(io.BytesIO(content)) as pdf:
                text = ""
                tables: List[List[List[str]]] = []
                for page in pdf.pages:
                    page_text = page.extract_text()
                    if page_text:
                        text += page_text + "\n"
                    page_tables = page.extract_tables()
                    if page_tables:
                        tables.extend(page_tables)
        except Exception as e:
            logger.warning(f"Direct PDF extraction failed: {e}")
            raise ExtractionError(f"pdfplumber could not open document: {e}") from e

        text = text.strip()
        if not text:
            raise ExtractionError("PDF has no text layer")

        fields, confidence = self.field_parser.parse(text, tables)
        logger.debug(f"Fast path extracted {len(text)} chars, {len(tables)} tables")
        return RawExtraction(text=text, fields=fields, field_confidence=confidence)


class FallbackStrategy:
    """
    OCR-based extraction with image enhancement.

    Requires the Poppler and Tesseract system binaries; when they are missing
    the strategy fails with ExtractionError like any other OCR failure.
    """

    name = "tesseract_ocr"

    def __init__(self, field_parser: Optional[FieldParser] = None, llm_parser=None, dpi: int = 300):
        self.field_parser = field_parser or FieldParser()
        self.llm_parser = llm_parser
        self.dpi = dpi

    async def extract_raw(self, content: bytes, mime_type: str) -> RawExtraction:
        text, ocr_conf = await asyncio.to_thread(self._ocr, content, mime_type)
        if not text:
            raise ExtractionError("OCR produced no text")

        fields, confidence = None, None
        if self.llm_parser is not None:
            try:
                fields, confidence = await self.llm_parser.parse(text)
            except Exception as e:
                logger.warning(f"LLM field extraction failed, using rule-based parser: {e}")
        if fields is None:
            fields, confidence = self.field_parser.parse(text)

        # OCR quality bounds how much any field read from it can be trusted
        confidence = {name: round(min(conf, ocr_conf), 4) for name, conf in confidence.items()}
        return RawExtraction(
            text=text,
            fields=fields,
            field_confidence=confidence,
            text_confidence=ocr_conf,
        )

    def _load_images(self, content: bytes, mime_type: str) -> List[Image.Image]:
        if mime_type == "application/pdf":
            return convert_from_bytes(content, dpi=self.dpi)
        image = Image.open(io.BytesIO(content))
        image.load()
        return [image]

    def _ocr(self, content: bytes, mime_type: str):
        try:
            images = self._load_images(content, mime_type)
        except Exception as e:
            error_msg = str(e)
            if "poppler" in error_msg.lower() or "Unable to get page count" in error_msg:
                raise ExtractionError("Poppler is not installed or not in PATH") from e
            raise ExtractionError(f"Could not rasterise document: {error_msg}") from e

        full_text = ""
        confidences = []
        try:
            for img in images:
                processed = self._preprocess_image(img)
                data = pytesseract.image_to_data(processed, output_type=pytesseract.Output.DICT)

                words = []
                word_confs = []
                for word, conf in zip(data["text"], data["conf"]):
                    conf = float(conf)
                    if conf > 0 and word.strip():
                        words.append(word)
                        word_confs.append(conf)

                full_text += " ".join(words) + "\n"
                confidences.append(np.mean(word_confs) / 100.0 if word_confs else 0.0)
        except pytesseract.TesseractNotFoundError as e:
            raise ExtractionError("Tesseract OCR is not installed or not in PATH") from e
        except Exception as e:
            raise ExtractionError(f"Unexpected error during OCR: {e}") from e

        avg_conf = float(np.mean(confidences)) if confidences else 0.0
        logger.debug(f"OCR read {len(images)} page(s), mean confidence {avg_conf:.2f}")
        return full_text.strip(), avg_conf

    def _preprocess_image(self, img: Image.Image) -> Image.Image:
        """Grayscale, deskew, denoise and binarise for better OCR"""
        img_array = np.array(img.convert("RGB"))
        gray = cv2.cvtColor(img_array, cv2.COLOR_RGB2GRAY)
        gray = self._deskew(gray)
        gray = cv2.fastNlMeansDenoising(gray)
        _, binary = cv2.threshold(gray, 0, 255, cv2.THRESH_BINARY + cv2.THRESH_OTSU)
        return Image.fromarray(binary)

    def _deskew(self, image: np.ndarray) -> np.ndarray:
        """Correct small page rotations using the ink pixels' bounding box"""
        _, inverted = cv2.threshold(image, 0, 255, cv2.THRESH_BINARY_INV + cv2.THRESH_OTSU)
        coords = np.column_stack(np.where(inverted > 0)).astype(np.float32)
        if len(coords) < 10:
            return image

        angle = cv2.minAreaRect(coords)[-1]
        if angle > 45:
            angle -= 90
        elif angle < -45:
            angle += 90
        if abs(angle) < 0.1:
            return image

        (h, w) = image.shape[:2]
        center = (w // 2, h // 2)
        M = cv2.getRotationMatrix2D(center, angle, 1.0)
        return cv2.warpAffine(
            image, M, (w, h),
            flags=cv2.INTER_CUBIC,
            borderMode=cv2.BORDER_REPLICATE
        )
