"""
Gemini Client

Wrapper for Vertex AI Gemini API calls.
Handles initialization and multimodal (text + photo) prompts.
Provides a global singleton for use across the application.
"""

import json
import logging
import os
from typing import Optional

from pashucare.config import settings

logger = logging.getLogger(__name__)


class GeminiClient:
    """Wrapper around Vertex AI Gemini generative model.

    Initializes Vertex AI on construction.  If credentials are missing or
    the project is not configured, the client gracefully degrades and
    ``is_available`` returns False.
    """

    def __init__(self) -> None:
        self._initialized = False
        self._initialize()

    def _resolve_project(self) -> str | None:
        """Return the GCP project ID from settings or credentials file."""
        if settings.GOOGLE_CLOUD_PROJECT:
            return settings.GOOGLE_CLOUD_PROJECT
        # Fall back: read project_id from the service-account JSON
        creds_path = os.environ.get("GOOGLE_APPLICATION_CREDENTIALS", "")
        if creds_path and os.path.isfile(creds_path):
            with open(creds_path) as f:
                return json.load(f).get("project_id")
        return None

    def _initialize(self) -> None:
        """Attempt to initialise the Vertex AI SDK."""
        project = self._resolve_project()
        if not project:
            logger.warning(
                "GCP project not found - AI diagnosis disabled, keyword fallback only"
            )
            return

        try:
            import vertexai

            vertexai.init(
                project=project,
                location=settings.GOOGLE_CLOUD_LOCATION,
            )
            self._initialized = True
            logger.info("Gemini client initialized successfully")
        except Exception as exc:
            logger.warning("Gemini initialization failed: %s", exc)
            self._initialized = False

    @property
    def is_available(self) -> bool:
        """Return True if Gemini is ready to accept requests."""
        return self._initialized

    async def generate(
        self,
        system_prompt: str,
        user_prompt: str,
        image_bytes: Optional[bytes] = None,
        image_mime_type: Optional[str] = None,
        temperature: float = 0.1,
        max_output_tokens: int = 1024,
    ) -> str | None:
        """Generate a JSON text response from the model.

        Args:
            system_prompt: The system-level instruction.
            user_prompt: The user-level input.
            image_bytes: Optional photo sent alongside the prompt.
            image_mime_type: MIME type of ``image_bytes``.
            temperature: Sampling temperature (default 0.1 for determinism).
            max_output_tokens: Maximum tokens in the response.

        Returns:
            The generated text, or None if the client is unavailable.
        """
        if not self._initialized:
            return None

        from vertexai.generative_models import Content, GenerativeModel, Part

        model = GenerativeModel(
            settings.GEMINI_MODEL,
            system_instruction=system_prompt,
        )

        parts = [Part.from_text(user_prompt)]
        if image_bytes:
            parts.append(Part.from_data(data=image_bytes, mime_type=image_mime_type or "image/jpeg"))

        response = await model.generate_content_async(
            contents=[Content(role="user", parts=parts)],
            generation_config={
                "temperature": temperature,
                "max_output_tokens": max_output_tokens,
                "response_mime_type": "application/json",
            },
        )
        return response.text


# ---------------------------------------------------------------------------
# Global singleton
# ---------------------------------------------------------------------------
gemini_client = GeminiClient()
