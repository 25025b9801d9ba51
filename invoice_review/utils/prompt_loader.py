import string
from pathlib import Path
from typing import Dict, Iterable

from invoice_review.config.exception import ConfigurationError
from invoice_review.config.logger import setup_logger

logger = setup_logger("PromptManager", "prompt_manager.log")

PROMPTS_DIR = Path(__file__).parent.parent / "prompts"

DEFAULT_PROMPTS = {
    "field_extraction": (
        "You extract invoice fields from OCR text. Reply with a single JSON object "
        "mapping each field name to {{\"value\": ..., \"confidence\": 0.0-1.0}}."
    ),
}


def template_variables(text: str) -> set:
    """Names of the ``{placeholders}`` a prompt template expects."""
    return {name for _, name, _, _ in string.Formatter().parse(text) if name}


class PromptManager:
    """Loads named prompt templates from the prompts directory, once each."""

    def __init__(self, prompts_dir: Path = PROMPTS_DIR):
        self.prompts_dir = Path(prompts_dir)
        self._cache: Dict[str, str] = {}

    def load_prompt(self, name: str, allowed_variables: Iterable[str] = ()) -> str:
        """
        Load ``<name>.txt``, falling back to the built-in default.

        Args:
            name (str): Prompt name without extension.
            allowed_variables: Placeholders the caller will fill in. Literal
                braces in a prompt must be doubled (``{{``), otherwise the
                template would expect a variable nobody provides.

        Returns:
            str: The prompt template text.

        Raises:
            ConfigurationError: unknown prompt, unreadable file or a template
                with unexpected placeholders.
        """
        if name in self._cache:
            return self._cache[name]

        prompt_path = self.prompts_dir / f"{name}.txt"
        if prompt_path.exists():
            try:
                prompt_text = prompt_path.read_text(encoding="utf-8").strip()
            except OSError as e:
                raise ConfigurationError(f"Cannot read prompt file {prompt_path}: {e}") from e
            logger.info(f"Prompt '{name}' loaded from {prompt_path}")
        elif name in DEFAULT_PROMPTS:
            logger.warning(f"Prompt file not found: {prompt_path}. Using default prompt.")
            prompt_text = DEFAULT_PROMPTS[name]
        else:
            raise ConfigurationError(f"No prompt named '{name}'")

        try:
            unexpected = template_variables(prompt_text) - set(allowed_variables)
        except ValueError as e:
            raise ConfigurationError(f"Prompt '{name}' is not a valid template: {e}") from e
        if unexpected:
            raise ConfigurationError(
                f"Prompt '{name}' has unexpected placeholders {sorted(unexpected)}; escape literal braces as {{{{ }}}}"
            )

        self._cache[name] = prompt_text
        return prompt_text
