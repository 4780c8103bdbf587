"""
OpenAI-backed text generator.

Implements the TextGenerator contract with chat completions: a fast model
for first drafts and polishing, a higher-fidelity model for regeneration
and targeted refinement.
"""

import logging
from typing import Any, Dict, List, Optional

from openai import OpenAI, OpenAIError

from ..core.errors import GenerationFailure

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "gpt-4o-mini"
DEFAULT_REFINE_MODEL = "gpt-4o"


class OpenAITextGenerator:
    """Text generator over OpenAI chat completions.

    Every API failure surfaces as GenerationFailure so the caller can roll
    back the request's credits.
    """

    def __init__(
        self,
        model: str = DEFAULT_MODEL,
        refine_model: str = DEFAULT_REFINE_MODEL,
        temperature: Optional[float] = 0.7,
        client: Optional[Any] = None
    ):
        """Initialize the generator.

        Args:
            model: Model used for generate() (drafts and polishing)
            refine_model: Model used for regenerate() (rewrites and refinement)
            temperature: Sampling temperature
            client: Pre-built OpenAI client (defaults to one configured from the environment)

        Raises:
            ValueError: If a model name is missing/empty
        """
        if not model or not model.strip():
            raise ValueError("model is required and cannot be empty")
        if not refine_model or not refine_model.strip():
            raise ValueError("refine_model is required and cannot be empty")

        self.model = model
        self.refine_model = refine_model
        self.temperature = temperature
        self.client = client or OpenAI()

    def generate(self, prompt_text: str) -> str:
        return self._complete(self.model, prompt_text)

    def regenerate(self, prompt_text: str, recommendations: List[str]) -> str:
        if recommendations:
            guidance = "\n".join(f"- {item}" for item in recommendations)
            prompt_text = f"Regenerate content following these recommendations:\n{guidance}\n\n{prompt_text}"
        return self._complete(self.refine_model, prompt_text)

    def _complete(self, model: str, prompt_text: str) -> str:
        if not prompt_text or not prompt_text.strip():
            raise ValueError("prompt_text is required and cannot be empty")

        messages: List[Dict[str, str]] = [{"role": "user", "content": prompt_text}]
        try:
            response = self.client.chat.completions.create(
                model=model,
                messages=messages,
                temperature=self.temperature
            )
        except OpenAIError as e:
            logger.error("OpenAI request to %s failed: %s", model, e)
            raise GenerationFailure(f"text generation failed: {e}") from e

        if not response.choices:
            raise GenerationFailure("OpenAI response contained no choices")
        content = response.choices[0].message.content
        if not content:
            raise GenerationFailure("OpenAI response contained no text")

        usage = getattr(response, "usage", None)
        if usage is not None:
            logger.debug(
                "%s used %s prompt + %s completion tokens", model,
                usage.prompt_tokens, usage.completion_tokens
            )
        return content
