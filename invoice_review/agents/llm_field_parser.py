from langchain_groq import ChatGroq
from langchain_core.prompts import ChatPromptTemplate
from invoice_review.config.settings import PipelineConfig
from invoice_review.utils.prompt_loader import PromptManager
from invoice_review.config.logger import setup_logger
from invoice_review.config.exception import AppException, ConfigurationError, ExtractionError
from invoice_review.tools.field_parser import AMOUNT_FIELDS, parse_amount
from typing import Dict, Tuple
import json
import re
import sys

logger = setup_logger("LLMFieldParser", "llm_field_parser.log")

KNOWN_FIELDS = (
    "invoice_number",
    "invoice_date",
    "due_date",
    "vendor",
    "po_reference",
    "currency",
    "subtotal",
    "tax",
    "total",
)


class LLMFieldParser:
    """Extracts invoice fields from OCR text with an LLM"""

    def __init__(self, config: PipelineConfig, llm=None, prompt_manager: PromptManager = None):
        try:
            logger.info("Initializing LLMFieldParser")
            self.llm = llm or ChatGroq(
                model=config.llm_model,
                temperature=config.llm_temperature,
                groq_api_key=config.groq_api_key
            )
            self.prompt_manager = prompt_manager or PromptManager()
            self.prompt = self._create_prompt()
            logger.info("LLMFieldParser initialized successfully")
        except ConfigurationError:
            raise
        except Exception as e:
            logger.error(f"Failed to initialize LLMFieldParser: {e}")
            raise AppException(e, sys)

    def _create_prompt(self) -> ChatPromptTemplate:
        system_prompt = self.prompt_manager.load_prompt("field_extraction")

        return ChatPromptTemplate.from_messages([
            ("system", system_prompt),
            ("human", "Extract fields from this document text:\n\n{document_text}")
        ])

    async def parse(self, text: str) -> Tuple[Dict, Dict[str, float]]:
        """
        Ask the LLM for fields and per-field confidence.

        Raises:
            ExtractionError: if the response is not usable JSON
        """
        logger.info("Invoking LLM for field extraction")
        response = await self.llm.ainvoke(
            self.prompt.format_messages(document_text=text)
        )
        return self._parse_response(response.content)

    def _parse_response(self, content: str) -> Tuple[Dict, Dict[str, float]]:
        # Models sometimes wrap JSON in a markdown fence
        content = re.sub(r"^```(?:json)?\s*|\s*```$", "", content.strip())
        try:
            data = json.loads(content)
        except json.JSONDecodeError as e:
            logger.error(f"JSON parsing failed: {e}")
            raise ExtractionError(f"LLM returned invalid JSON: {e}") from e
        if not isinstance(data, dict):
            raise ExtractionError("LLM response is not a JSON object")

        fields: Dict = {}
        confidence: Dict[str, float] = {}
        for name in KNOWN_FIELDS:
            entry = data.get(name)
            if not isinstance(entry, dict) or entry.get("value") in (None, ""):
                continue
            value = entry["value"]
            if name in AMOUNT_FIELDS:
                value = parse_amount(value)
                if value is None:
                    continue
            try:
                conf = float(entry.get("confidence", 0.5))
            except (TypeError, ValueError):
                conf = 0.5
            fields[name] = value
            confidence[name] = min(max(conf, 0.0), 1.0)

        logger.info(f"LLM extracted {len(fields)} fields")
        return fields, confidence
