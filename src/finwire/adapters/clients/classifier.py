from __future__ import annotations

from dataclasses import dataclass
import os
from typing import Protocol

import openai
from openai import AsyncOpenAI

from finwire.errors import ClassificationError


@dataclass(frozen=True)
class ClassifierResponse:
    """Raw text returned by one classifier call."""

    text: str
    truncated: bool = False
    max_output_tokens: int | None = None


class ClassifierClient(Protocol):
    """A single request/response text-classification call, no streaming."""

    @property
    def model(self) -> str: ...

    async def complete(
        self, system_prompt: str, user_content: str
    ) -> ClassifierResponse: ...


class OpenAIClassifierClient:
    """Classifier backed by the OpenAI Responses API."""

    def __init__(
        self,
        *,
        model: str,
        max_output_tokens: int = 8192,
        client: AsyncOpenAI | None = None,
    ) -> None:
        self._model = model
        self._max_output_tokens = max_output_tokens
        if client is None:
            api_key = os.environ.get("OPENAI_API_KEY", "").strip()
            if not api_key:
                raise RuntimeError("OPENAI_API_KEY is required to call OpenAI.")
            client = AsyncOpenAI(api_key=api_key)
        self._client = client

    @property
    def model(self) -> str:
        return self._model

    async def complete(
        self, system_prompt: str, user_content: str
    ) -> ClassifierResponse:
        try:
            resp = await self._client.responses.create(
                model=self._model,
                instructions=system_prompt,
                input=user_content,
                max_output_tokens=self._max_output_tokens,
            )
        except openai.OpenAIError as e:
            raise ClassificationError(f"Classifier API error: {e}") from e

        return ClassifierResponse(
            text=self._extract_response_text(resp),
            truncated=self._is_truncated(resp),
            max_output_tokens=self._max_output_tokens,
        )

    def _extract_response_text(self, resp: object) -> str:
        """Extract text from OpenAI response object."""
        response_text: str | None = getattr(resp, "output_text", None)
        if response_text is None:
            response_text = str(resp)
        return response_text

    @staticmethod
    def _is_truncated(resp: object) -> bool:
        if getattr(resp, "status", None) != "incomplete":
            return False
        details = getattr(resp, "incomplete_details", None)
        return getattr(details, "reason", None) == "max_output_tokens"
