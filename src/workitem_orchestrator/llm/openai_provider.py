"""OpenAI LLM provider implementation."""

import json
import logging
from typing import Any

import openai
from openai import OpenAI

from workitem_orchestrator.core.config import LLMConfig
from workitem_orchestrator.errors import LLMProviderError, OperationTimeoutError
from workitem_orchestrator.llm.provider import LLMProvider, LLMResponse, TokenUsage, ToolCallRequest

logger = logging.getLogger(__name__)


def _parse_arguments(raw: str | None) -> tuple[dict[str, Any], str | None]:
    if not raw:
        return {}, None
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as e:
        return {}, f"Tool arguments are not valid JSON: {e}"
    if not isinstance(parsed, dict):
        return {}, "Tool arguments must be a JSON object"
    return parsed, None


class OpenAIProvider(LLMProvider):
    """OpenAI API provider implementation (chat completions with function calling)."""

    def __init__(self, config: LLMConfig, client: OpenAI | None = None) -> None:
        """Initialize the OpenAI provider.

        Args:
            config: LLM configuration.
            client: Pre-built client (mainly for tests). Built from config when omitted.

        Raises:
            ValueError: If API key is not provided.
        """
        if client is None and not config.openai_api_key:
            raise ValueError("OpenAI API key is required")

        self.config = config
        self.client = client or OpenAI(
            api_key=config.openai_api_key,
            base_url=config.openai_base_url,
            timeout=config.request_timeout_seconds,
        )
        self.model = config.openai_model
        self.temperature = config.openai_temperature

        logger.info(f"OpenAI provider initialized with model: {self.model}")

    def chat(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        max_tokens: int | None = None,
        temperature: float | None = None,
        **kwargs: Any,
    ) -> LLMResponse:
        temp = temperature if temperature is not None else self.temperature

        logger.debug(f"Requesting chat completion with {len(messages)} messages")

        request: dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "temperature": temp,
            **kwargs,
        }
        if max_tokens is not None:
            request["max_tokens"] = max_tokens
        if tools:
            request["tools"] = tools

        try:
            response = self.client.chat.completions.create(**request)
        except openai.APITimeoutError as e:
            raise OperationTimeoutError(
                f"OpenAI request timed out: {e}",
                timeout_seconds=self.config.request_timeout_seconds,
            ) from e
        except openai.OpenAIError as e:
            raise LLMProviderError(f"OpenAI request failed: {e}") from e

        message = response.choices[0].message
        tool_calls: list[ToolCallRequest] = []
        for call in message.tool_calls or []:
            arguments, arguments_error = _parse_arguments(call.function.arguments)
            tool_calls.append(
                ToolCallRequest(
                    id=call.id,
                    name=call.function.name,
                    arguments=arguments,
                    arguments_error=arguments_error,
                )
            )

        usage = TokenUsage()
        if response.usage is not None:
            usage = TokenUsage(
                prompt_tokens=response.usage.prompt_tokens or 0,
                completion_tokens=response.usage.completion_tokens or 0,
            )

        logger.debug(
            f"Received {len(tool_calls)} tool calls, {usage.total_tokens} tokens",
        )
        return LLMResponse(content=message.content, tool_calls=tuple(tool_calls), usage=usage)
