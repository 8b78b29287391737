"""Schema-constrained extraction through the Anthropic Messages API.

The model is forced to call a single tool whose input schema is the
extraction shape, so the reply is a JSON object rather than free text.
"""

import logging
from dataclasses import dataclass
from typing import Any

import anthropic
from anthropic import AsyncAnthropic

from fieldintel.core.circuit_breaker import get_circuit_breaker
from fieldintel.core.exceptions import ExternalServiceError, ExtractionError

logger = logging.getLogger(__name__)

_breaker = get_circuit_breaker("anthropic")

DEFAULT_MODEL = "claude-sonnet-4-20250514"
DEFAULT_MAX_TOKENS = 4096

EXTRACTION_TOOL_NAME = "record_sales_call_extraction"

# USD per 1K tokens
INPUT_COST_PER_1K = 0.003
OUTPUT_COST_PER_1K = 0.015


@dataclass
class ExtractionCall:
    """Raw tool input plus token usage of one extraction call."""

    data: Any
    input_tokens: int
    output_tokens: int

    @property
    def cost(self) -> float:
        return (self.input_tokens / 1000) * INPUT_COST_PER_1K + (
            self.output_tokens / 1000
        ) * OUTPUT_COST_PER_1K


class ExtractionClient:
    """Thin wrapper over ``AsyncAnthropic`` for structured extraction."""

    def __init__(
        self,
        api_key: str,
        model: str = DEFAULT_MODEL,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        temperature: float = 0.1,
        client: AsyncAnthropic | None = None,
    ) -> None:
        self._model = model
        self._max_tokens = max_tokens
        self._temperature = temperature
        self._client = client or AsyncAnthropic(api_key=api_key)

    async def extract(
        self,
        prompt: str,
        input_schema: dict[str, Any],
        system_prompt: str | None = None,
    ) -> ExtractionCall:
        """Run one forced-tool extraction.

        Args:
            prompt: User message containing the transcript.
            input_schema: JSON schema of the expected object.
            system_prompt: Optional system prompt.

        Returns:
            ExtractionCall with the tool input and token usage.

        Raises:
            ExternalServiceError: If the API call fails.
            ExtractionError: If the reply holds no tool call.
        """
        kwargs: dict[str, Any] = {
            "model": self._model,
            "max_tokens": self._max_tokens,
            "temperature": self._temperature,
            "messages": [{"role": "user", "content": prompt}],
            "tools": [
                {
                    "name": EXTRACTION_TOOL_NAME,
                    "description": "Record the structured CRM data extracted from the transcript.",
                    "input_schema": input_schema,
                }
            ],
            "tool_choice": {"type": "tool", "name": EXTRACTION_TOOL_NAME},
        }
        if system_prompt:
            kwargs["system"] = system_prompt

        _breaker.check()
        try:
            response = await self._client.messages.create(**kwargs)
        except anthropic.APIStatusError as e:
            if e.status_code >= 500 or e.status_code == 429:
                _breaker.record_failure()
            logger.error(
                "Anthropic API error",
                extra={"status": e.status_code, "model": self._model},
            )
            raise ExternalServiceError(
                "anthropic",
                f"Anthropic API error: {e.message}",
                details={"provider_status": e.status_code},
            ) from e
        except anthropic.APIConnectionError as e:
            _breaker.record_failure()
            raise ExternalServiceError("anthropic", f"Anthropic API unreachable: {e}") from e
        _breaker.record_success()

        tool_input = next(
            (
                block.input
                for block in response.content
                if block.type == "tool_use" and block.name == EXTRACTION_TOOL_NAME
            ),
            None,
        )
        if tool_input is None:
            logger.warning(
                "Extraction reply had no tool call",
                extra={"stop_reason": response.stop_reason, "model": self._model},
            )
            raise ExtractionError(
                f"Model returned no structured extraction (stop_reason={response.stop_reason})"
            )

        return ExtractionCall(
            data=tool_input,
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens,
        )
