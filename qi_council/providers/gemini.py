"""Gemini adapter using google-genai SDK with native async."""

import logging
from typing import Any

from google import genai
from google.genai import types as genai_types

from qi_council.providers.base import Completion, LLMAdapter, ProviderError

logger = logging.getLogger(__name__)


class GeminiAdapter(LLMAdapter):
    """Google Gemini. The persona is passed as system_instruction."""

    def _build_client(self, api_key: str) -> Any:
        return genai.Client(api_key=api_key)

    async def _complete(self, system: str, prompt: str) -> Completion:
        response = await self._client.aio.models.generate_content(
            model=self._config.model,
            contents=prompt,
            config=genai_types.GenerateContentConfig(
                system_instruction=system,
                max_output_tokens=self._config.max_tokens,
                temperature=self._config.temperature,
            ),
        )

        if not response.text:
            raise ProviderError(self._agent_id, "Empty response text")

        finish_reason = "unknown"
        if response.candidates and response.candidates[0].finish_reason is not None:
            reason = response.candidates[0].finish_reason
            finish_reason = getattr(reason, "name", str(reason))

        usage = response.usage_metadata
        completion = Completion(
            text=response.text,
            input_tokens=(usage.prompt_token_count or 0) if usage else 0,
            output_tokens=(usage.candidates_token_count or 0) if usage else 0,
            finish_reason=finish_reason,
        )
        logger.debug("Gemini %s: %d/%d tokens", self._agent_id, completion.input_tokens, completion.output_tokens)
        return completion
