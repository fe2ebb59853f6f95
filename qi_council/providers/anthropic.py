"""Anthropic Claude adapter using anthropic SDK with native async."""

import logging
from typing import Any

import anthropic as anthropic_sdk

from qi_council.providers.base import Completion, LLMAdapter, ProviderError

logger = logging.getLogger(__name__)


class AnthropicAdapter(LLMAdapter):
    """Claude via the Messages API. The persona goes in the system parameter."""

    def _build_client(self, api_key: str) -> Any:
        return anthropic_sdk.AsyncAnthropic(api_key=api_key, base_url=self._config.base_url)

    async def _complete(self, system: str, prompt: str) -> Completion:
        response = await self._client.messages.create(
            model=self._config.model,
            max_tokens=self._config.max_tokens,
            temperature=self._config.temperature,
            system=system,
            messages=[{"role": "user", "content": prompt}],
        )

        text_blocks = [b.text for b in (response.content or []) if b.type == "text"]
        if not text_blocks:
            raise ProviderError(self._agent_id, "No text blocks in response")

        usage = response.usage
        completion = Completion(
            text="\n".join(text_blocks),
            input_tokens=usage.input_tokens if usage else 0,
            output_tokens=usage.output_tokens if usage else 0,
            finish_reason=response.stop_reason or "unknown",
        )
        logger.debug("Anthropic %s: %d/%d tokens", self._agent_id, completion.input_tokens, completion.output_tokens)
        return completion
