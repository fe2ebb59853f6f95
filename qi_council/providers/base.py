"""Provider adapter interface and the shared call template for SDK-backed adapters."""

import asyncio
import logging
import os
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from collections.abc import Callable
from typing import Any

from config.config_loader import PromptsConfig, ProviderConfig
from qi_council.models import ScenarioInput
from qi_council.observability import ObservabilityRecorder, ProviderCallRecord
from qi_council.parsing import extract_json_object
from qi_council.schema import Decision, ValidationError, validate_decision

logger = logging.getLogger(__name__)


class ProviderError(Exception):
    """Raised when a provider call fails: transport, timeout, auth or missing key."""

    def __init__(self, provider_name: str, message: str) -> None:
        self.provider_name = provider_name
        super().__init__(f"[{provider_name}] {message}")


class ParseError(ProviderError):
    """Raised when a provider replied but no JSON object could be extracted."""


@dataclass
class Completion:
    """Raw vendor reply, before JSON extraction."""

    text: str
    input_tokens: int = 0
    output_tokens: int = 0
    finish_reason: str = "unknown"


@dataclass
class JSONReply:
    payload: dict[str, Any]
    latency_ms: float = 0.0
    input_tokens: int = 0
    output_tokens: int = 0


class ProviderAdapter(ABC):
    """One council agent behind one provider connection."""

    @abstractmethod
    def name(self) -> str:
        """Return the agent id this adapter speaks for (e.g. 'lynn')."""
        ...

    @abstractmethod
    def model_string(self) -> str:
        """Return the actual model identifier string."""
        ...

    @property
    def served_by(self) -> str:
        return f"{self.name()}-{self.model_string()}"

    @abstractmethod
    async def request_json(self, prompt: str, system: str | None = None) -> JSONReply:
        """Send prompt and return the JSON object extracted from the reply.

        Args:
            prompt: The full user prompt.
            system: System instruction; defaults to the agent persona.

        Raises:
            ProviderError: On missing key, transport failure or timeout.
            ParseError: When the reply holds no JSON object.
        """
        ...

    @abstractmethod
    async def invoke(self, scenario: ScenarioInput) -> Decision:
        """Ask for advice on scenario and return a validated Decision.

        Raises:
            ProviderError: On missing key, transport failure or timeout.
            ParseError: When the reply holds no JSON object.
            ValidationError: When the JSON does not match the Decision schema.
        """
        ...


class LLMAdapter(ProviderAdapter):
    """Call template shared by the vendor adapters.

    Subclasses build their SDK client and implement _complete(); this class
    handles credentials, timeouts, telemetry, JSON extraction and validation.
    The constructor never raises for a missing key: the adapter is created
    unavailable and every call fails fast without touching the network.
    """

    def __init__(
        self,
        agent_id: str,
        config: ProviderConfig,
        persona: str,
        prompts: PromptsConfig,
        recorder: ObservabilityRecorder,
    ) -> None:
        self._agent_id = agent_id
        self._config = config
        self._persona = persona
        self._prompts = prompts
        self._recorder = recorder
        api_key = os.environ.get(config.api_key_env, "").strip()
        self._client: Any = None
        if api_key and self._unavailable_reason() is None:
            self._client = self._build_client(api_key)

    def name(self) -> str:
        return self._agent_id

    def model_string(self) -> str:
        return self._config.model

    @property
    def provider_name(self) -> str:
        return self._config.name

    @property
    def persona(self) -> str:
        return self._persona

    @property
    def available(self) -> bool:
        return self._client is not None

    def _unavailable_reason(self) -> str | None:
        """Configuration problem that prevents any call, if there is one."""
        return None

    @abstractmethod
    def _build_client(self, api_key: str) -> Any:
        ...

    @abstractmethod
    async def _complete(self, system: str, prompt: str) -> Completion:
        """Make one vendor call. Raise ProviderError for an empty reply."""
        ...

    def _record(self, latency_ms: float, completion: Completion | None, error: str | None) -> None:
        self._recorder.record(ProviderCallRecord(
            provider=self._config.name,
            model=self._config.model,
            latency_ms=latency_ms,
            input_tokens=completion.input_tokens if completion else 0,
            output_tokens=completion.output_tokens if completion else 0,
            finish_reason=completion.finish_reason if completion else "error",
            success=error is None,
            error=error,
            agent_id=self._agent_id,
        ))

    async def request_json(self, prompt: str, system: str | None = None) -> JSONReply:
        reply, _ = await self._call(prompt, system)
        return reply

    async def _call(
        self,
        prompt: str,
        system: str | None = None,
        validate: Callable[[dict[str, Any]], Decision] | None = None,
    ) -> tuple[JSONReply, Decision | None]:
        """One recorded call. The outcome is recorded after validate runs, so a
        schema failure counts as a failed call.
        """
        if self._client is None:
            reason = self._unavailable_reason() or f"Missing API key: {self._config.api_key_env}"
            self._record(0.0, None, f"ConfigurationError: {reason}")
            raise ProviderError(self._agent_id, reason)

        system_text = self._persona if system is None else system
        start = time.monotonic()
        try:
            completion = await asyncio.wait_for(
                self._complete(system_text, prompt),
                timeout=self._config.timeout_sec,
            )
        except TimeoutError as exc:
            latency_ms = (time.monotonic() - start) * 1000
            self._record(latency_ms, None, f"Timeout: no reply after {self._config.timeout_sec}s")
            raise ProviderError(self._agent_id, f"Request timed out after {self._config.timeout_sec}s") from exc
        except ProviderError as exc:
            latency_ms = (time.monotonic() - start) * 1000
            self._record(latency_ms, None, f"EmptyResponse: {exc}")
            raise
        except Exception as exc:
            latency_ms = (time.monotonic() - start) * 1000
            self._record(latency_ms, None, f"{type(exc).__name__}: {exc}")
            raise ProviderError(self._agent_id, f"API call failed: {exc}") from exc

        latency_ms = (time.monotonic() - start) * 1000
        payload = extract_json_object(completion.text)
        if payload is None:
            self._record(latency_ms, completion, "ParseError: no JSON object in response")
            logger.debug("Unparseable reply from %s: %.200s", self._agent_id, completion.text)
            raise ParseError(self._agent_id, "No JSON object found in response")

        decision = None
        if validate is not None:
            try:
                decision = validate(payload)
            except ValidationError as exc:
                self._record(latency_ms, completion, f"ValidationError: {'; '.join(exc.issues)}")
                raise

        self._record(latency_ms, completion, None)
        reply = JSONReply(
            payload=payload,
            latency_ms=latency_ms,
            input_tokens=completion.input_tokens,
            output_tokens=completion.output_tokens,
        )
        return reply, decision

    async def invoke(self, scenario: ScenarioInput) -> Decision:
        prompt = self._prompts.advice.format(scenario=scenario.as_prompt())
        _, decision = await self._call(prompt, validate=lambda payload: validate_decision(payload, self.served_by))
        return decision
