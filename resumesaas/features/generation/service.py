"""
LLM text generation for the metered feature endpoints.

One Groq chat completion per request. Callers must only reach this after
the access facade has debited credits.
"""
import logging
from typing import Any, Dict, Optional

import groq

from resumesaas.core.config import settings
from resumesaas.features.plans import catalog

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are an expert career coach and professional resume writer. "
    "Write concise, specific, ATS-friendly content. Never invent employers, dates or degrees."
)

FEATURE_INSTRUCTIONS = {
    catalog.RESUME_GENERATION: "Write a complete professional resume from the candidate details below.",
    catalog.JOB_TAILORING: "Rewrite the resume below so it targets the job description that follows it.",
    catalog.COVER_LETTER_GENERATION: "Write a one-page cover letter for the role below using the candidate details.",
    catalog.LINKEDIN_OPTIMIZATION: "Write an optimized LinkedIn headline, About section and three experience bullets.",
    catalog.SALARY_ANALYSIS: "Estimate a realistic salary range with reasoning for the role and location below.",
    catalog.MOCK_INTERVIEW: "Ask five interview questions for the role below, each with a model answer.",
    catalog.PERSONAL_BRAND_STRATEGY: "Draft a 90-day personal brand strategy for the professional below.",
    catalog.AI_SUGGESTIONS: "Give three short, concrete suggestions to improve the resume section below.",
}


class GenerationError(Exception):
    """The LLM call failed or returned nothing."""


def _render_fields(fields: Dict[str, Any]) -> str:
    lines = []
    for key, value in fields.items():
        if value is None or value == "":
            continue
        lines.append(f"{key.replace('_', ' ').title()}: {value}")
    return "\n".join(lines)


class TextGenerator:
    """Thin wrapper around the Groq chat completions API."""

    def __init__(self, client: Optional[Any] = None, model: Optional[str] = None):
        self._client = client
        self.model = model or settings.GROQ_MODEL

    def _get_client(self):
        if self._client is None:
            if not settings.GROQ_API_KEY:
                raise GenerationError("GROQ_API_KEY not configured")
            self._client = groq.Groq(api_key=settings.GROQ_API_KEY)
        return self._client

    def generate(self, feature: str, fields: Dict[str, Any], max_tokens: int = 1024) -> str:
        instruction = FEATURE_INSTRUCTIONS.get(feature)
        if instruction is None:
            raise GenerationError(f"No prompt for feature {feature}")

        prompt = f"{instruction}\n\n{_render_fields(fields)}"
        try:
            completion = self._get_client().chat.completions.create(
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": prompt},
                ],
                model=self.model,
                temperature=0.7,
                max_tokens=max_tokens,
            )
        except groq.GroqError as e:
            logger.error("[generation] groq call failed", extra={"feature": feature}, exc_info=True)
            raise GenerationError(str(e)) from e

        content = completion.choices[0].message.content if completion.choices else None
        if not content or not content.strip():
            raise GenerationError("Empty completion")
        return content.strip()


_generator: Optional[TextGenerator] = None


def get_text_generator() -> TextGenerator:
    """FastAPI dependency; tests override it with a fake client."""
    global _generator
    if _generator is None:
        _generator = TextGenerator()
    return _generator
