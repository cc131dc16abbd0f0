"""
Anthropic LLM client used by the triage classifier.

Usage:
    response = client.generate(messages)
    response.content  # text of the reply
"""

import logging
from typing import Any

import anthropic
from pydantic import BaseModel

from clients.vault_client import get_llm_config

logger = logging.getLogger(__name__)


class LLMResponse(BaseModel):
    """Non-streaming response."""

    content: str
    thinking: str | None = None
    raw_response: dict[str, Any] | None = None
    usage: dict[str, int] | None = None


class LLMError(Exception):
    """LLM operation error."""


class LLMClient:
    """Anthropic API client."""

    DEFAULT_MODEL = "claude-haiku-4-5"

    def __init__(self, api_key: str | None = None, model: str | None = None):
        """
        Initialize Anthropic client.

        Args:
            api_key: Anthropic API key. If None, fetched from Vault along with the model name.
            model: Model name. If None, the configured or DEFAULT_MODEL.
        """
        if api_key is None:
            config = get_llm_config()
            api_key = config["api_key"]
            model = model or config.get("model_name")

        self.model = model or self.DEFAULT_MODEL
        self._client = anthropic.Anthropic(api_key=api_key)
        logger.info(f"LLM client initialized with model: {self.model}")

    def generate(
        self,
        messages: list[dict],
        temperature: float = 0.7,
        max_tokens: int = 1024,
        model: str | None = None,
        thinking: bool = True,
        thinking_budget: int = 1024,
        timeout_seconds: float = 30.0,
    ) -> LLMResponse:
        """
        Single non-streaming completion.

        Args:
            messages: [{"role": "system"|"user"|"assistant", "content": str}]
            temperature: Sampling temperature (0-1), ignored when thinking=True
            max_tokens: Maximum output tokens
            model: Override model for this call
            thinking: Enable extended thinking
            thinking_budget: Token budget for thinking
            timeout_seconds: Request timeout

        Returns:
            LLMResponse with content, raw_response, and usage stats

        Raises:
            LLMError: If the API call fails or times out
        """
        system_prompt, api_messages = self._prepare_messages(messages)

        params = {
            "model": model or self.model,
            "messages": api_messages,
            "max_tokens": max_tokens,
            "timeout": timeout_seconds,
        }
        if system_prompt:
            params["system"] = system_prompt

        if thinking:
            # Extended thinking requires temperature=1 and max_tokens > budget_tokens
            params["temperature"] = 1
            params["max_tokens"] = max_tokens + thinking_budget
            params["thinking"] = {"type": "enabled", "budget_tokens": thinking_budget}
        else:
            params["temperature"] = temperature

        try:
            response = self._client.messages.create(**params)
        except anthropic.APIError as e:
            logger.error(f"Anthropic API error: {e}")
            raise LLMError(f"LLM API call failed: {e}")

        return LLMResponse(
            content=self._extract_text(response),
            thinking=self._extract_thinking(response),
            raw_response={"id": response.id, "model": response.model},
            usage=self._extract_usage(response),
        )

    # === Private ===

    def _prepare_messages(self, messages: list[dict]) -> tuple[str | None, list[dict]]:
        """Split out the system prompt; Anthropic takes it as a separate parameter."""
        system_content = None
        api_messages = []

        for msg in messages:
            if msg["role"] == "system":
                system_content = msg["content"]
            else:
                api_messages.append(msg)

        return system_content, api_messages

    def _extract_text(self, response) -> str:
        return "".join(b.text for b in response.content if b.type == "text")

    def _extract_thinking(self, response) -> str | None:
        thinking_blocks = [b.thinking for b in response.content if b.type == "thinking"]
        if not thinking_blocks:
            return None
        return "".join(thinking_blocks)

    def _extract_usage(self, response) -> dict[str, int] | None:
        if not response.usage:
            return None
        return {
            "input_tokens": response.usage.input_tokens,
            "output_tokens": response.usage.output_tokens,
        }
