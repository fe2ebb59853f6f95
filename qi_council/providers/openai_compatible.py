"""Adapter for OpenAI-compatible endpoints (Mistral, Lambda/Nous Hermes, NVIDIA, xAI)."""

from qi_council.providers.openai_provider import OpenAIAdapter


class OpenAICompatibleAdapter(OpenAIAdapter):
    """Same wire protocol as OpenAI, pointed at a configured base_url."""

    def _unavailable_reason(self) -> str | None:
        if not self._config.base_url:
            return f"base_url is required for provider '{self._config.name}'"
        return None
