"""
AI Diagnosis Service

Boundary to the external multimodal model.  Request: animal type, optional
text, optional image bytes, language tag.  Response: a list of
(condition_name, confidence) guesses.  The response is untrusted: anything
that does not parse into that shape raises AIResponseInvalid.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Optional, Protocol

from pydantic import BaseModel, Field, ValidationError

from pashucare.core.errors import AIResponseInvalid, UpstreamUnavailable
from pashucare.core.gemini_client import GeminiClient
from pashucare.models.schemas import AnimalType
from pashucare.prompts.diagnosis import DIAGNOSIS_SYSTEM_PROMPT, format_diagnosis_prompt

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AIRequest:
    animal_type: AnimalType
    text: Optional[str]
    image_bytes: Optional[bytes]
    image_mime_type: Optional[str]
    language: str


class AIConditionGuess(BaseModel):
    condition_name: str = Field(min_length=1)
    confidence: float = Field(ge=0.0, le=1.0)


class _AIResponse(BaseModel):
    conditions: list[AIConditionGuess]


class AIService(Protocol):
    async def diagnose(self, request: AIRequest) -> list[AIConditionGuess]:
        ...


def _clean_json_text(text: str) -> str:
    """Strip markdown code fences and leading/trailing whitespace."""
    text = text.strip()
    text = re.sub(r"^```(?:json)?\s*", "", text)
    text = re.sub(r"\s*```$", "", text)
    return text.strip()


def parse_ai_response(raw: str) -> list[AIConditionGuess]:
    """Parse and validate the model's JSON answer.

    Raises:
        AIResponseInvalid: on any deviation from the expected shape.
    """
    try:
        payload = json.loads(_clean_json_text(raw))
        return _AIResponse.model_validate(payload).conditions
    except (json.JSONDecodeError, ValidationError, TypeError) as exc:
        logger.warning("ai_service: response failed validation: %s", type(exc).__name__)
        raise AIResponseInvalid() from exc


class GeminiDiagnosisService:
    """AIService backed by Gemini on Vertex AI."""

    def __init__(self, client: GeminiClient) -> None:
        self.client = client

    async def diagnose(self, request: AIRequest) -> list[AIConditionGuess]:
        if not self.client.is_available:
            raise UpstreamUnavailable("AI diagnosis is not configured.")

        user_prompt = format_diagnosis_prompt(
            animal_type=request.animal_type.value,
            text=request.text,
            language=request.language,
            has_image=request.image_bytes is not None,
        )
        raw = await self.client.generate(
            system_prompt=DIAGNOSIS_SYSTEM_PROMPT,
            user_prompt=user_prompt,
            image_bytes=request.image_bytes,
            image_mime_type=request.image_mime_type,
        )
        if raw is None:
            raise UpstreamUnavailable("AI diagnosis returned no content.")
        return parse_ai_response(raw)
