"""Card extraction over a vision-language model.

The inference boundary is abstracted behind ``InferenceBackend`` so the
pipeline only ever sees ``ExtractedFields`` or a domain error. One attempt is
made per submission and it is bounded by a hard timeout.
"""

from __future__ import annotations

import asyncio
import json
import time
from abc import ABC, abstractmethod
from typing import Any

import httpx
import structlog
from pydantic import ValidationError

from card_intake.core.config import settings
from card_intake.core.errors import ExtractionFailed, ExtractionMalformed, ExtractionTimeout
from card_intake.modules.extraction.schemas import CARD_RESPONSE_SCHEMA, ExtractedFields

logger = structlog.get_logger()

EXTRACTION_PROMPT = """\
This is a photo of an Egyptian national ID card (front side).
Extract:
- name_lines: every line of the holder's full name, in order from top to bottom,
  exactly as printed. Do not merge, reorder or translate the lines.
- national_id: the 14-digit national ID number, exactly as printed.
Return only the JSON object."""


def strip_code_fences(raw_text: str) -> str:
    """Strip markdown code fences (```json ... ```) from a model response."""
    text = raw_text.strip()
    if text.startswith("```"):
        first_newline = text.find("\n")
        text = text[first_newline + 1:] if first_newline != -1 else text[3:]
    if text.endswith("```"):
        text = text[:-3]
    return text.strip()


class InferenceBackend(ABC):
    """One schema-constrained call to a vision model."""

    @abstractmethod
    async def generate(
        self,
        image_bytes: bytes,
        mime_type: str,
        prompt: str,
        schema: dict[str, Any],
    ) -> str | None:
        """Return the raw response body (expected to be JSON), or None if empty."""
        ...


class GeminiBackend(InferenceBackend):
    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        http_timeout_ms: int | None = None,
    ) -> None:
        self.api_key = api_key if api_key is not None else settings.google_ai_api_key
        self.model = model or settings.extraction_model
        # Transport timeout sits above the pipeline timeout so the latter fires first
        self.http_timeout_ms = http_timeout_ms or settings.extraction_timeout_ms + 5_000
        self._client: Any = None

    def _get_client(self) -> Any:
        if self._client is None:
            from google import genai
            from google.genai import types as genai_types

            self._client = genai.Client(
                api_key=self.api_key,
                http_options=genai_types.HttpOptions(timeout=self.http_timeout_ms),
            )
        return self._client

    async def generate(
        self,
        image_bytes: bytes,
        mime_type: str,
        prompt: str,
        schema: dict[str, Any],
    ) -> str | None:
        from google.genai import types

        client = self._get_client()
        start = time.monotonic()

        response = await client.aio.models.generate_content(
            model=self.model,
            contents=[
                types.Part.from_bytes(data=image_bytes, mime_type=mime_type),
                prompt,
            ],
            config=types.GenerateContentConfig(
                response_mime_type="application/json",
                response_schema=schema,
                temperature=0.0,
            ),
        )

        usage = response.usage_metadata
        logger.info(
            "Gemini card extraction call",
            model=self.model,
            input_tokens=getattr(usage, "prompt_token_count", 0) or 0,
            output_tokens=getattr(usage, "candidates_token_count", 0) or 0,
            duration_ms=int((time.monotonic() - start) * 1000),
        )
        return response.text


class ExtractionClient:
    """Maps an inference backend onto the card extraction contract."""

    def __init__(
        self,
        backend: InferenceBackend,
        prompt: str = EXTRACTION_PROMPT,
        schema: dict[str, Any] | None = None,
    ) -> None:
        self.backend = backend
        self.prompt = prompt
        self.schema = schema or CARD_RESPONSE_SCHEMA

    async def extract(
        self,
        image_bytes: bytes,
        timeout_ms: int,
        mime_type: str = "image/jpeg",
    ) -> ExtractedFields:
        """Run a single bounded extraction.

        Raises:
            ExtractionTimeout: no answer within ``timeout_ms``.
            ExtractionMalformed: empty or non-JSON-object response body.
            ExtractionFailed: provider error, or a required field missing.
        """
        try:
            raw = await asyncio.wait_for(
                self.backend.generate(image_bytes, mime_type, self.prompt, self.schema),
                timeout=timeout_ms / 1000,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException) as exc:
            logger.warning("Card extraction timed out", timeout_ms=timeout_ms)
            raise ExtractionTimeout() from exc
        except Exception as exc:
            logger.error("Card extraction provider error", error=str(exc), exc_info=True)
            raise ExtractionFailed() from exc

        return self.parse_response(raw)

    @staticmethod
    def parse_response(raw: str | None) -> ExtractedFields:
        if raw is None or not raw.strip():
            logger.warning("Card extraction returned an empty body")
            raise ExtractionMalformed()

        try:
            data = json.loads(strip_code_fences(raw))
        except ValueError as exc:
            logger.warning("Card extraction returned non-JSON body", preview=raw[:200])
            raise ExtractionMalformed() from exc

        if not isinstance(data, dict):
            logger.warning("Card extraction returned non-object JSON", preview=raw[:200])
            raise ExtractionMalformed()

        try:
            return ExtractedFields.model_validate(data)
        except ValidationError as exc:
            logger.warning(
                "Card extraction missing required fields",
                errors=exc.errors(include_url=False),
            )
            raise ExtractionFailed() from exc
