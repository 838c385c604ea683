"""Ollama implementation of the structured-output LLM provider."""

import asyncio
import logging
from typing import Any

import ollama
from pydantic import ValidationError

from bmgraph.errors import HttpError, LLMResponseValidationError, LLMTimeoutError
from bmgraph.pipeline.interfaces import ChatMessage, LLMProviderInterface, ModelT

logger = logging.getLogger(__name__)


class OllamaLLMProvider(LLMProviderInterface):
    """Structured generation via Ollama's JSON-schema ``format`` option."""

    def __init__(
        self,
        model: str = "llama3.1:8b",
        host: str = "http://localhost:11434",
        timeout: float = 120.0,
    ):
        """Initialize Ollama client.

        Args:
            model: Ollama model name; must be multimodal when images are attached.
            host: Ollama server URL
            timeout: Request timeout in seconds
        """
        self.model = model
        self.host = host
        self.timeout = timeout
        self._client = ollama.Client(host=host, timeout=timeout)

    @staticmethod
    def _to_ollama(message: ChatMessage) -> dict[str, Any]:
        payload: dict[str, Any] = {"role": message.role, "content": message.content}
        if message.images:
            payload["images"] = [image.data for image in message.images]
        return payload

    async def generate_object(
        self,
        messages: list[ChatMessage],
        response_model: type[ModelT],
        *,
        temperature: float = 0.2,
        max_tokens: int | None = None,
    ) -> ModelT:
        options: dict[str, Any] = {"temperature": temperature}
        if max_tokens:
            options["num_predict"] = max_tokens

        def _chat() -> str:
            response = self._client.chat(
                model=self.model,
                messages=[self._to_ollama(m) for m in messages],
                format=response_model.model_json_schema(),
                options=options,
            )
            return response["message"]["content"]

        try:
            response_text = await asyncio.wait_for(asyncio.to_thread(_chat), timeout=self.timeout)
        except asyncio.TimeoutError:
            raise LLMTimeoutError(f"Ollama request timed out after {self.timeout}s")
        except ollama.ResponseError as e:
            raise HttpError(f"Ollama error: {e.error}", status=e.status_code, url=self.host, cause=e) from e

        try:
            return response_model.model_validate_json(response_text)
        except ValidationError as e:
            logger.debug("Invalid %s from %s: %s", response_model.__name__, self.model, response_text[:500])
            raise LLMResponseValidationError(
                f"{self.model} returned a response that does not match {response_model.__name__}",
                raw_response=response_text,
                cause=e,
            ) from e
