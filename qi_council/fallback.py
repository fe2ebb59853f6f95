"""Sequential fallback across provider adapters, ending in a static Decision."""

import logging

from qi_council.models import ScenarioInput
from qi_council.providers.base import ParseError, ProviderAdapter, ProviderError
from qi_council.schema import Decision, ValidationError, Verdict

logger = logging.getLogger(__name__)

STATIC_FALLBACK_SERVED_BY = "static-fallback"
STATIC_FALLBACK_FLAG = "All AI providers unavailable - static fallback response"


class ChainExhaustedError(Exception):
    """Every adapter in the chain failed."""

    def __init__(self, failures: list[tuple[str, Exception]]) -> None:
        self.failures = failures
        names = ", ".join(name for name, _ in failures) or "none configured"
        super().__init__(f"All {len(failures)} providers failed ({names})")


def static_fallback_decision() -> Decision:
    return Decision(
        summary=(
            "No AI provider could review this pilot. Treat it as needing revision and "
            "hold it for human review before rollout."
        ),
        required_changes=(
            "Have a human reviewer assess the pilot against dignity-first criteria",
            "Confirm opt-out paths that require no disclosure",
            "Document data collected and its retention period",
        ),
        risk_flags=(STATIC_FALLBACK_FLAG,),
        universal_benefits=("Manual review keeps affected people in the loop",),
        verdict=Verdict.REVISE,
        served_by=STATIC_FALLBACK_SERVED_BY,
    )


def _log_failure(adapter: ProviderAdapter, exc: Exception) -> None:
    if isinstance(exc, ParseError):
        logger.warning("%s returned no parseable JSON, trying next provider: %s", adapter.name(), exc)
    elif isinstance(exc, ProviderError):
        logger.warning("%s unavailable, trying next provider: %s", adapter.name(), exc)
    elif isinstance(exc, ValidationError):
        logger.warning(
            "%s failed schema validation, trying next provider: %s",
            adapter.name(), "; ".join(exc.issues),
        )
    else:
        logger.warning(
            "%s raised unexpected %s, trying next provider: %s",
            adapter.name(), type(exc).__name__, exc,
        )


class FallbackChain:
    """Try adapters strictly in order; first valid Decision wins.

    A later adapter is never started before the earlier one has failed, and a
    failed adapter is not retried.
    """

    def __init__(self, adapters: list[ProviderAdapter]) -> None:
        self._adapters = list(adapters)

    @property
    def adapters(self) -> list[ProviderAdapter]:
        return list(self._adapters)

    async def _first_valid(self, scenario: ScenarioInput) -> Decision:
        failures: list[tuple[str, Exception]] = []
        for adapter in self._adapters:
            logger.info("Requesting advice from %s (%s)", adapter.name(), adapter.model_string())
            try:
                decision = await adapter.invoke(scenario)
            except Exception as exc:
                _log_failure(adapter, exc)
                failures.append((adapter.name(), exc))
                continue
            logger.info("Advice served by %s: %s", decision.served_by, decision.verdict.value)
            return decision
        raise ChainExhaustedError(failures)

    async def advise(self, scenario: ScenarioInput) -> Decision:
        """Return the first valid Decision, or the static fallback. Never raises for provider failures."""
        try:
            return await self._first_valid(scenario)
        except ChainExhaustedError as exc:
            logger.error("%s; serving static fallback", exc)
            return static_fallback_decision()
