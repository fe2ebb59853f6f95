"""Veto agent: a protective reviewer whose BLOCK overrides the rest of the council."""

import logging
import time
from collections.abc import Iterable

from config.config_loader import PromptsConfig
from qi_council.models import AgentVote, ScenarioInput, VetoVote
from qi_council.providers.base import ProviderAdapter, ProviderError
from qi_council.schema import (
    Decision,
    ValidationError,
    VetoPayload,
    VetoReviewPayload,
    Verdict,
    validate_decision,
    validate_payload,
)

logger = logging.getLogger(__name__)

HEURISTIC_SERVED_BY = "veto-fallback-heuristic"

# Phrase -> what it often encodes.
FLAGGED_PHRASES: dict[str, str] = {
    "traditional values": "may encode anti-LGBTQ+ hostility",
    "family values": "often signals exclusion of non-traditional families",
    "protect children": "frequently used to target trans people",
    "biological reality": "common anti-trans dog whistle",
    "merit-based": "may mask discrimination against disabled workers",
    "cultural fit": "often used to exclude neurodivergent and marginalized workers",
    "safety concerns": "sometimes used to justify surveillance",
    "return to normal": "may signal erasure of accessibility accommodations",
}
SURVEILLANCE_KEYWORDS = ("monitor", "track", "surveillance")
IDENTITY_KEYWORDS = ("identity", "disclosure", "documentation")
DOG_WHISTLE_SIGNAL = "dog_whistle"


def heuristic_vote(scenario: ScenarioInput) -> VetoVote:
    """Keyword scan used when the veto model cannot be reached.

    BLOCK on two or more flagged phrases, on surveillance plus identity
    keywords together, or on a dog_whistle signal. REVISE on any single hit.
    """
    text = scenario.combined_text()
    phrase_hits = [phrase for phrase in FLAGGED_PHRASES if phrase in text]
    surveillance = any(word in text for word in SURVEILLANCE_KEYWORDS)
    identity = any(word in text for word in IDENTITY_KEYWORDS)
    dog_whistle = DOG_WHISTLE_SIGNAL in (scenario.detected_signals or "").lower()

    concerns = [f'"{phrase}" {FLAGGED_PHRASES[phrase]}' for phrase in phrase_hits]
    if surveillance and identity:
        concerns.append("Surveillance combined with identity exposure")
    elif surveillance:
        concerns.append("Surveillance mechanism present")
    elif identity:
        concerns.append("Identity disclosure or documentation requirement present")
    if dog_whistle:
        concerns.append("Detected signals include a dog whistle")

    if len(phrase_hits) >= 2 or (surveillance and identity) or dog_whistle:
        verdict = Verdict.BLOCK
    elif phrase_hits or surveillance or identity:
        verdict = Verdict.REVISE
    else:
        verdict = Verdict.APPROVE

    triggered = verdict is Verdict.BLOCK
    reason = f"Heuristic detected {len(concerns)} critical pattern(s)" if triggered else None
    if verdict is Verdict.APPROVE:
        summary = "Keyword review found no coded threat patterns; model review was unavailable."
    else:
        summary = f"Keyword review flagged: {'; '.join(concerns)}."

    decision = Decision(
        summary=summary,
        required_changes=(
            ("Remove or clarify coded language before rollout",) if phrase_hits else ()
        ) + (
            ("Remove monitoring that can expose identity",) if surveillance and identity else ()
        ),
        risk_flags=tuple(concerns) + ("Veto model unavailable - keyword heuristic used",),
        universal_benefits=(),
        verdict=verdict,
        served_by=HEURISTIC_SERVED_BY,
    )
    return VetoVote(decision=decision, veto_triggered=triggered, veto_reason=reason, detected_concerns=tuple(concerns))


def _dedupe(*groups: Iterable[str]) -> tuple[str, ...]:
    seen: dict[str, None] = {}
    for group in groups:
        for item in group:
            seen.setdefault(item, None)
    return tuple(seen)


def combine(primary: Decision, veto: VetoVote) -> Decision:
    """Apply the veto override. The only place a veto changes a Decision."""
    if not veto.veto_triggered:
        return primary
    reason = veto.veto_reason or veto.decision.summary
    return Decision(
        summary=f"VETO: {reason}",
        required_changes=_dedupe(veto.decision.required_changes, primary.required_changes),
        risk_flags=_dedupe(veto.decision.risk_flags, primary.risk_flags),
        universal_benefits=_dedupe(veto.decision.universal_benefits, primary.universal_benefits),
        verdict=Verdict.BLOCK,
        served_by=f"veto:{veto.decision.served_by}",
    )


def format_vote_digest(votes: Iterable[AgentVote]) -> str:
    lines = []
    for vote in votes:
        if vote.decision is None:
            continue
        lines.append(f"- {vote.agent_id}: {vote.decision.verdict.value} - {vote.decision.summary}")
    return "\n".join(lines)


class VetoAgent:
    """Wraps the adapter of the agent holding veto power."""

    def __init__(self, adapter: ProviderAdapter, prompts: PromptsConfig) -> None:
        self._adapter = adapter
        self._prompts = prompts

    @property
    def agent_id(self) -> str:
        return self._adapter.name()

    async def invoke(self, scenario: ScenarioInput) -> VetoVote:
        """First-pass veto review. Falls back to the keyword heuristic on any adapter failure."""
        start = time.monotonic()
        prompt = self._prompts.veto.format(scenario=scenario.as_prompt())
        try:
            reply = await self._adapter.request_json(prompt)
            decision = validate_decision(reply.payload, self._adapter.served_by)
            extras = validate_payload(VetoPayload, reply.payload, self.agent_id)
        except (ProviderError, ValidationError) as exc:
            logger.warning("Veto agent %s failed, using keyword heuristic: %s", self.agent_id, exc)
            return heuristic_vote(scenario)
        except Exception as exc:
            logger.warning(
                "Veto agent %s raised unexpected %s, using keyword heuristic: %s",
                self.agent_id, type(exc).__name__, exc,
            )
            return heuristic_vote(scenario)

        triggered = decision.verdict is Verdict.BLOCK
        reason = None
        if triggered:
            reason = extras.veto_reason or decision.summary
            logger.warning("VETO by %s: %s", self.agent_id, reason)
        return VetoVote(
            decision=decision,
            veto_triggered=triggered,
            veto_reason=reason,
            detected_concerns=extras.concerns,
            latency_ms=(time.monotonic() - start) * 1000,
        )

    async def review(self, original: VetoVote, other_votes: Iterable[AgentVote]) -> VetoVote:
        """Second pass: may escalate to BLOCK after seeing the other votes. Never de-escalates."""
        if original.veto_triggered:
            return original
        digest = format_vote_digest(other_votes)
        if not digest:
            return original

        start = time.monotonic()
        prompt = self._prompts.veto_review.format(
            verdict=original.decision.verdict.value,
            summary=original.decision.summary,
            votes=digest,
        )
        try:
            reply = await self._adapter.request_json(prompt)
            review = validate_payload(VetoReviewPayload, reply.payload, self.agent_id)
        except (ProviderError, ValidationError) as exc:
            logger.warning("Veto review by %s failed, keeping first vote: %s", self.agent_id, exc)
            return original
        except Exception as exc:
            logger.warning(
                "Veto review by %s raised unexpected %s, keeping first vote: %s",
                self.agent_id, type(exc).__name__, exc,
            )
            return original

        if not review.escalate:
            logger.info("Veto review by %s: no escalation", self.agent_id)
            return original

        reason = review.veto_reason or "Concerns surfaced by the council review"
        logger.warning("VETO ESCALATED by %s: %s", self.agent_id, reason)
        escalated = Decision(
            summary=f"Escalated after council review: {reason}",
            required_changes=original.decision.required_changes,
            risk_flags=_dedupe(original.decision.risk_flags, review.additional_concerns),
            universal_benefits=original.decision.universal_benefits,
            verdict=Verdict.BLOCK,
            served_by=original.decision.served_by,
        )
        return VetoVote(
            decision=escalated,
            veto_triggered=True,
            veto_reason=reason,
            detected_concerns=_dedupe(original.detected_concerns, review.additional_concerns),
            latency_ms=original.latency_ms + (time.monotonic() - start) * 1000,
            escalated=True,
        )
