"""OpenAI adapter using openai SDK with native async."""

import logging
from typing import Any

from openai import AsyncOpenAI

from qi_council.providers.base import Completion, LLMAdapter, ProviderError

logger = logging.getLogger(__name__)


class OpenAIAdapter(LLMAdapter):
    """OpenAI chat completions. The persona is sent as the system message."""

    def _build_client(self, api_key: str) -> Any:
        return AsyncOpenAI(api_key=api_key, base_url=self._config.base_url)

    async def _complete(self, system: str, prompt: str) -> Completion:
        response = await self._client.chat.completions.create(
            model=self._config.model,
            messages=[
                {"role": "system", "content": system},
                {"role": "user", "content": prompt},
            ],
            max_tokens=self._config.max_tokens,
            temperature=self._config.temperature,
        )

        choice = response.choices[0] if response.choices else None
        if not choice or not choice.message.content:
            raise ProviderError(self._agent_id, "Empty response content")

        usage = response.usage
        completion = Completion(
            text=choice.message.content,
            input_tokens=usage.prompt_tokens if usage else 0,
            output_tokens=usage.completion_tokens if usage else 0,
            finish_reason=choice.finish_reason or "unknown",
        )
        logger.debug("%s %s: %d/%d tokens", self._config.name, self._agent_id,
                     completion.input_tokens, completion.output_tokens)
        return completion
