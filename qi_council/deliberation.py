"""Multi-phase council deliberation: briefs, cross-critique, synthesis, reflection.

Each phase is a barrier: every agent's call settles (success or failure)
before the next phase starts. The engine never raises for provider failures;
when a whole phase fails it substitutes deterministic heuristic records so
the run always reaches reflection.

Optional advisory agents run first. Their notes are folded into every brief
prompt; a failed advisor is logged and left out.
"""

import asyncio
import logging
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass

from config.config_loader import AgentConfig, PromptsConfig
from qi_council.models import (
    AdvisoryContext,
    AgentVote,
    ConsensusLevel,
    ConsensusResult,
    Phase,
    PhaseRecord,
    ScenarioInput,
)
from qi_council.providers.base import JSONReply, ProviderAdapter
from qi_council.schema import (
    AdvisoryNote,
    AgentPoint,
    Attribution,
    BlindSpot,
    BriefPayload,
    Conflict,
    Counterfactual,
    CritiquePayload,
    Decision,
    OverruledObjection,
    ReflectionPayload,
    SynthesisPayload,
    TradeOff,
    UnifiedPolicy,
    Verdict,
    validate_decision,
    validate_payload,
)

logger = logging.getLogger(__name__)

HEURISTIC_SYNTHESIS_SERVED_BY = "heuristic-synthesis"
HEURISTIC_REFLECTION_SERVED_BY = "heuristic-reflection"

_MAX_REQUIRED_CHANGES = 12
_MAX_RISK_FLAGS = 10
_MAX_BENEFITS = 8

CRITICAL_DISTRESS_FLAG = "Critical emotional distress detected in community testimony"

_TRADE_OFFS: dict[Verdict, TradeOff] = {
    Verdict.BLOCK: TradeOff(
        we_accept="Pausing the pilot until the blocking concerns are resolved",
        we_forgo="Immediate rollout",
        rationale="At least one council member found harm that cannot be revised away",
    ),
    Verdict.REVISE: TradeOff(
        we_accept="A slower rollout with required changes",
        we_forgo="Launching the pilot as proposed",
        rationale="The council found gaps that are fixable before launch",
    ),
    Verdict.APPROVE: TradeOff(
        we_accept="Proceeding with ongoing review",
        we_forgo="Further pre-launch changes",
        rationale="No council member found blocking or revisable harm",
    ),
}


@dataclass
class CouncilMember:
    agent: AgentConfig
    adapter: ProviderAdapter

    @property
    def agent_id(self) -> str:
        return self.agent.id


PhaseCallback = Callable[[PhaseRecord], None]


def derive_consensus_level(status_votes: dict[Verdict, frozenset[str]]) -> ConsensusLevel:
    """Classify agreement among participating agents' verdicts."""
    counts = [len(agents) for agents in status_votes.values() if agents]
    total = sum(counts)
    # SINGLE also covers zero participants; there is no separate "none" level.
    if total <= 1:
        return ConsensusLevel.SINGLE
    top = max(counts)
    if top == total:
        return ConsensusLevel.UNANIMOUS
    if top * 2 > total:
        return ConsensusLevel.MAJORITY
    return ConsensusLevel.PLURALITY


def aggregate_verdict(votes: Iterable[AgentVote]) -> Verdict:
    """BLOCK if any vote blocks, else REVISE if any revises or nobody voted, else APPROVE."""
    verdicts = [v.decision.verdict for v in votes if v.decision is not None]
    if Verdict.BLOCK in verdicts:
        return Verdict.BLOCK
    if not verdicts or Verdict.REVISE in verdicts:
        return Verdict.REVISE
    return Verdict.APPROVE


def _dedupe(items: Iterable[str], limit: int | None = None) -> tuple[str, ...]:
    seen: dict[str, None] = {}
    for item in items:
        if item:
            seen.setdefault(item, None)
    result = tuple(seen)
    return result[:limit] if limit is not None else result


def format_briefs(briefs: Iterable[BriefPayload]) -> str:
    blocks = []
    for brief in briefs:
        verdict = brief.verdict.value if brief.verdict else "no verdict"
        blocks.append(
            f"=== {brief.agent_id.upper()} ({verdict}) ===\n"
            f"Summary: {brief.summary}\n"
            f"Observations: {'; '.join(brief.observations)}\n"
            f"Recommendations: {'; '.join(brief.recommendations)}\n"
            f"Urgency: {brief.urgency} | Confidence: {brief.confidence:.0f}%"
        )
    return "\n\n".join(blocks) or "(no briefs available)"


def format_critiques(critiques: Iterable[CritiquePayload]) -> str:
    blocks = []
    for critique in critiques:
        blocks.append(
            f"=== {critique.agent_id.upper()} ===\n"
            f"Agrees with {critique.agreement.agent}: {critique.agreement.point}\n"
            f"Blind spot in {critique.blind_spot.agent}: {critique.blind_spot.concern}\n"
            f"Gap addressed: {critique.gap_addressed}"
        )
    return "\n\n".join(blocks) or "(no critiques available)"


def heuristic_brief(agent: AgentConfig) -> BriefPayload:
    canned = agent.fallback
    return BriefPayload(
        agent_id=agent.id,
        summary=canned.summary,
        observations=tuple(canned.observations),
        recommendations=tuple(canned.recommendations),
        urgency=canned.urgency,
        confidence=canned.confidence,
        heuristic=True,
    )


def heuristic_critique(agent: AgentConfig) -> CritiquePayload:
    canned = agent.fallback
    return CritiquePayload(
        agent_id=agent.id,
        agreement=AgentPoint(agent=canned.agreement_agent, point=canned.agreement_point),
        blind_spot=BlindSpot(agent=canned.blind_spot_agent, concern=canned.blind_spot_concern),
        gap_addressed=canned.gap_addressed,
        heuristic=True,
    )


def heuristic_synthesis(
    votes: list[AgentVote],
    briefs: list[BriefPayload],
    critiques: list[CritiquePayload],
) -> SynthesisPayload:
    """Build a synthesis from the recorded votes without a model call."""
    verdict = aggregate_verdict(votes)
    cast = [v for v in votes if v.decision is not None]

    by_verdict: dict[Verdict, list[str]] = {}
    for vote in cast:
        by_verdict.setdefault(vote.decision.verdict, []).append(vote.agent_id)
    conflicts = []
    present = [v for v in Verdict if v in by_verdict]
    for i, first in enumerate(present):
        for second in present[i + 1:]:
            conflicts.append(Conflict(
                between=tuple(by_verdict[first] + by_verdict[second]),
                nature=f"{first.value} versus {second.value}",
            ))
    for critique in critiques:
        if not critique.heuristic:
            conflicts.append(Conflict(
                between=(critique.agent_id, critique.blind_spot.agent),
                nature=critique.blind_spot.concern,
            ))

    immediate = _dedupe(
        change
        for vote in cast if vote.decision.verdict is not Verdict.APPROVE
        for change in vote.decision.required_changes
    )
    short_term = _dedupe(rec for brief in briefs for rec in brief.recommendations)
    long_term = _dedupe(critique.gap_addressed for critique in critiques)
    attributions = tuple(
        Attribution(decision=brief.recommendations[0], source_agent=brief.agent_id, contribution="Initial brief")
        for brief in briefs if brief.recommendations
    )
    overruled = tuple(
        OverruledObjection(
            from_agent=vote.agent_id,
            objection=vote.decision.summary,
            reason=f"Council verdict is {verdict.value}",
        )
        for vote in cast if vote.decision.verdict is not verdict
    )

    return SynthesisPayload(
        summary=f"Heuristic synthesis of {len(cast)} council vote(s): {verdict.value}.",
        conflicts=tuple(conflicts),
        trade_offs=(_TRADE_OFFS[verdict],),
        unified_policy=UnifiedPolicy(
            immediate_actions=immediate,
            short_term_changes=short_term,
            long_term_reforms=long_term,
            attributions=attributions,
        ),
        overruled_objections=overruled,
        verdict=verdict,
        served_by=HEURISTIC_SYNTHESIS_SERVED_BY,
        heuristic=True,
    )


def heuristic_counterfactual(agent: AgentConfig) -> Counterfactual:
    return Counterfactual(
        agent=agent.id,
        outcome=agent.fallback.counterfactual_outcome,
        flaw=agent.fallback.counterfactual_flaw,
    )


def heuristic_reflection(agents: list[AgentConfig]) -> ReflectionPayload:
    names = ", ".join(agent.name for agent in agents) or "the council"
    return ReflectionPayload(
        counterfactuals=tuple(heuristic_counterfactual(agent) for agent in agents),
        collective_advantage=(
            f"Combining {names} surfaces risks that any single perspective would miss "
            "and forces trade-offs to be stated explicitly."
        ),
        key_insight="No single lens sees the whole harm surface of a policy.",
        served_by=HEURISTIC_REFLECTION_SERVED_BY,
        heuristic=True,
    )


def _final_decision(
    synthesis: SynthesisPayload,
    votes: list[AgentVote],
    heuristic_phases: list[Phase],
    advisory: AdvisoryContext,
) -> Decision:
    cast = [v.decision for v in votes if v.decision is not None]
    policy = synthesis.unified_policy
    required = _dedupe(
        [*policy.immediate_actions, *policy.short_term_changes, *policy.long_term_reforms]
        or [change for d in cast for change in d.required_changes],
        _MAX_REQUIRED_CHANGES,
    )
    disclosures = [f"Degraded deliberation: heuristic {phase.value} used" for phase in heuristic_phases]
    if advisory.critical_distress:
        disclosures.append(CRITICAL_DISTRESS_FLAG)
    risk_flags = _dedupe(
        [
            *disclosures,
            *(flag for d in cast for flag in d.risk_flags),
            *(f"Conflict ({' vs '.join(c.between)}): {c.nature}" for c in synthesis.conflicts),
        ],
        _MAX_RISK_FLAGS,
    )
    benefits = _dedupe((b for d in cast for b in d.universal_benefits), _MAX_BENEFITS)
    summary = synthesis.summary.strip() or (
        f"Council deliberation across {len(cast)} agent(s) reached {synthesis.verdict.value}."
    )
    return Decision(
        summary=summary,
        required_changes=required,
        risk_flags=risk_flags,
        universal_benefits=benefits,
        verdict=synthesis.verdict,
        served_by=f"deliberation:{synthesis.served_by}",
    )


class _Usage:
    """Token totals for one run."""

    def __init__(self) -> None:
        self.input_tokens = 0
        self.output_tokens = 0

    def add(self, reply: JSONReply) -> None:
        self.input_tokens += reply.input_tokens
        self.output_tokens += reply.output_tokens


class DeliberationEngine:
    """Runs the four deliberation phases across a panel of council members."""

    def __init__(
        self,
        members: list[CouncilMember],
        synthesizer: CouncilMember,
        reflector: CouncilMember,
        prompts: PromptsConfig,
        advisors: list[CouncilMember] | None = None,
    ) -> None:
        if not members:
            raise ValueError("Deliberation needs at least one council member")
        self._members = list(members)
        self._synthesizer = synthesizer
        self._reflector = reflector
        self._prompts = prompts
        self._advisors = list(advisors or [])

    @property
    def members(self) -> list[CouncilMember]:
        return list(self._members)

    # -- advisory -----------------------------------------------------------

    async def _advise(
        self, member: CouncilMember, scenario: ScenarioInput, usage: _Usage,
    ) -> AdvisoryNote | Exception:
        """Never raises: returns the exception on failure."""
        prompt = self._prompts.advisory.format(
            agent_name=member.agent.name,
            specialty=member.agent.specialty,
            scenario=scenario.as_prompt(),
        )
        try:
            reply = await member.adapter.request_json(prompt)
            usage.add(reply)
            return validate_payload(AdvisoryNote, reply.payload, member.agent_id, agent_id=member.agent_id)
        except Exception as exc:
            logger.warning("Advisory agent %s failed: %s", member.agent_id, exc)
            return exc

    async def _run_advisory(self, scenario: ScenarioInput, usage: _Usage) -> AdvisoryContext:
        if not self._advisors:
            return AdvisoryContext()
        start = time.monotonic()
        results = await asyncio.gather(*(self._advise(m, scenario, usage) for m in self._advisors))
        context = AdvisoryContext(
            notes=tuple(r for r in results if isinstance(r, AdvisoryNote)),
            failures={
                m.agent_id: str(r) or type(r).__name__
                for m, r in zip(self._advisors, results)
                if isinstance(r, Exception)
            },
            latency_ms=(time.monotonic() - start) * 1000,
        )
        logger.info(
            "Advisory context gathered: %d note(s), %d failure(s)", len(context.notes), len(context.failures),
        )
        return context

    # -- phase 1 ------------------------------------------------------------

    async def _brief(self, member: CouncilMember, scenario: ScenarioInput, advisory: str) -> AgentVote:
        """Never raises: a failed agent becomes a vote with decision=None."""
        prompt = self._prompts.brief.format(
            agent_name=member.agent.name,
            specialty=member.agent.specialty,
            scenario=scenario.as_prompt(),
            advisory=advisory,
        )
        start = time.monotonic()
        try:
            reply = await member.adapter.request_json(prompt)
            decision = validate_decision(reply.payload, member.agent_id)
            brief = validate_payload(BriefPayload, reply.payload, member.agent_id, agent_id=member.agent_id)
        except Exception as exc:
            logger.warning("Agent %s failed in %s: %s", member.agent_id, Phase.INITIAL_BRIEFS.value, exc)
            return AgentVote(
                agent_id=member.agent_id,
                decision=None,
                error=str(exc) or type(exc).__name__,
                latency_ms=(time.monotonic() - start) * 1000,
            )
        return AgentVote(
            agent_id=member.agent_id,
            decision=decision,
            latency_ms=reply.latency_ms,
            input_tokens=reply.input_tokens,
            output_tokens=reply.output_tokens,
            brief=brief,
        )

    async def _run_briefs(self, scenario: ScenarioInput, advisory: AdvisoryContext) -> PhaseRecord:
        start = time.monotonic()
        context = advisory.as_prompt()
        votes = list(await asyncio.gather(*(self._brief(m, scenario, context) for m in self._members)))
        briefs = [v.brief for v in votes if v.brief is not None]
        heuristic = not briefs
        if heuristic:
            logger.warning("All %d agents failed initial briefs; using heuristic briefs", len(votes))
            briefs = [heuristic_brief(m.agent) for m in self._members]
        return PhaseRecord(
            phase=Phase.INITIAL_BRIEFS,
            votes=tuple(votes),
            briefs=tuple(briefs),
            failures={v.agent_id: v.error or "" for v in votes if v.decision is None},
            heuristic=heuristic,
            latency_ms=(time.monotonic() - start) * 1000,
        )

    # -- phase 2 ------------------------------------------------------------

    async def _critique(
        self, member: CouncilMember, briefs: tuple[BriefPayload, ...], usage: _Usage,
    ) -> CritiquePayload | Exception:
        """Never raises: returns the exception on failure."""
        others = [b for b in briefs if b.agent_id != member.agent_id]
        prompt = self._prompts.critique.format(
            agent_name=member.agent.name,
            specialty=member.agent.specialty,
            briefs=format_briefs(others),
        )
        try:
            reply = await member.adapter.request_json(prompt)
            usage.add(reply)
            return validate_payload(CritiquePayload, reply.payload, member.agent_id, agent_id=member.agent_id)
        except Exception as exc:
            logger.warning("Agent %s failed in %s: %s", member.agent_id, Phase.CROSS_CRITIQUE.value, exc)
            return exc

    async def _run_critiques(self, briefs: tuple[BriefPayload, ...], usage: _Usage) -> PhaseRecord:
        start = time.monotonic()
        results = await asyncio.gather(*(self._critique(m, briefs, usage) for m in self._members))
        critiques = [r for r in results if isinstance(r, CritiquePayload)]
        failures = {
            m.agent_id: str(r) or type(r).__name__
            for m, r in zip(self._members, results)
            if isinstance(r, Exception)
        }
        heuristic = not critiques
        if heuristic:
            logger.warning("All %d agents failed cross-critique; using heuristic critiques", len(results))
            critiques = [heuristic_critique(m.agent) for m in self._members]
        return PhaseRecord(
            phase=Phase.CROSS_CRITIQUE,
            critiques=tuple(critiques),
            failures=failures,
            heuristic=heuristic,
            latency_ms=(time.monotonic() - start) * 1000,
        )

    # -- phase 3 ------------------------------------------------------------

    async def _run_synthesis(
        self,
        scenario: ScenarioInput,
        briefs_record: PhaseRecord,
        critiques_record: PhaseRecord,
        usage: _Usage,
    ) -> PhaseRecord:
        start = time.monotonic()
        chair = self._synthesizer
        prompt = self._prompts.synthesis.format(
            scenario=scenario.as_prompt(),
            briefs=format_briefs(briefs_record.briefs),
            critiques=format_critiques(critiques_record.critiques),
        )
        failures: dict[str, str] = {}
        try:
            reply = await chair.adapter.request_json(prompt)
            usage.add(reply)
            synthesis = validate_payload(SynthesisPayload, reply.payload, chair.agent_id, served_by=chair.agent_id)
        except Exception as exc:
            logger.warning("Synthesis by %s failed, building heuristic synthesis: %s", chair.agent_id, exc)
            failures[chair.agent_id] = str(exc) or type(exc).__name__
            synthesis = heuristic_synthesis(
                list(briefs_record.votes),
                [b for b in briefs_record.briefs if not b.heuristic],
                list(critiques_record.critiques),
            )
        return PhaseRecord(
            phase=Phase.SYNTHESIS,
            synthesis=synthesis,
            failures=failures,
            heuristic=synthesis.heuristic,
            latency_ms=(time.monotonic() - start) * 1000,
        )

    # -- phase 4 ------------------------------------------------------------

    async def _run_reflection(
        self, synthesis: SynthesisPayload, participants: list[AgentConfig], usage: _Usage,
    ) -> PhaseRecord:
        start = time.monotonic()
        scribe = self._reflector
        prompt = self._prompts.reflection.format(
            synthesis=synthesis.model_dump_json(by_alias=True, indent=2),
            agents=", ".join(agent.id for agent in participants),
        )
        failures: dict[str, str] = {}
        try:
            reply = await scribe.adapter.request_json(prompt)
            usage.add(reply)
            reflection = validate_payload(ReflectionPayload, reply.payload, scribe.agent_id, served_by=scribe.agent_id)
        except Exception as exc:
            logger.warning("Reflection by %s failed, building heuristic reflection: %s", scribe.agent_id, exc)
            failures[scribe.agent_id] = str(exc) or type(exc).__name__
            reflection = heuristic_reflection(participants)
        else:
            covered = {c.agent for c in reflection.counterfactuals}
            missing = [agent for agent in participants if agent.id not in covered]
            if missing:
                logger.info("Reflection omitted %d agent(s); filling canned counterfactuals", len(missing))
                reflection = reflection.model_copy(update={
                    "counterfactuals": reflection.counterfactuals
                    + tuple(heuristic_counterfactual(agent) for agent in missing),
                })
        return PhaseRecord(
            phase=Phase.REFLECTION,
            reflection=reflection,
            failures=failures,
            heuristic=reflection.heuristic,
            latency_ms=(time.monotonic() - start) * 1000,
        )

    # -- orchestration ------------------------------------------------------

    async def run(
        self,
        scenario: ScenarioInput,
        on_phase_complete: PhaseCallback | None = None,
    ) -> ConsensusResult:
        """Run all four phases and return the consensus. Never raises for provider failures.

        Args:
            scenario: The scenario under review.
            on_phase_complete: Optional callback invoked after each phase settles.
        """
        start = time.monotonic()
        usage = _Usage()
        logger.info("Starting deliberation with %d agents", len(self._members))

        def _complete(record: PhaseRecord) -> PhaseRecord:
            logger.info(
                "Phase %s complete: %d failure(s)%s",
                record.phase.value, len(record.failures), " (heuristic)" if record.heuristic else "",
            )
            if on_phase_complete:
                on_phase_complete(record)
            return record

        advisory = await self._run_advisory(scenario, usage)
        briefs_record = _complete(await self._run_briefs(scenario, advisory))
        votes = list(briefs_record.votes)
        for vote in votes:
            usage.input_tokens += vote.input_tokens
            usage.output_tokens += vote.output_tokens

        critiques_record = _complete(await self._run_critiques(briefs_record.briefs, usage))
        synthesis_record = _complete(await self._run_synthesis(scenario, briefs_record, critiques_record, usage))
        synthesis = synthesis_record.synthesis

        participants = [m.agent for m in self._members if m.agent_id not in briefs_record.failures]
        reflection_record = _complete(
            await self._run_reflection(synthesis, participants or [m.agent for m in self._members], usage)
        )

        rounds = (briefs_record, critiques_record, synthesis_record, reflection_record)
        heuristic_phases = [record.phase for record in rounds if record.heuristic]

        status_votes = {
            verdict: frozenset(v.agent_id for v in votes if v.decision is not None and v.decision.verdict is verdict)
            for verdict in Verdict
        }
        participating = frozenset(v.agent_id for v in votes if v.decision is not None)
        consensus = derive_consensus_level(status_votes)
        tally = {verdict.value: len(agents) for verdict, agents in status_votes.items()}
        logger.info(
            "Deliberation complete: %s (%s, %s)",
            synthesis.verdict.value, consensus.value, tally,
        )

        return ConsensusResult(
            final_decision=_final_decision(synthesis, votes, heuristic_phases, advisory),
            rounds=rounds,
            participating_agents=participating,
            failed_agents=frozenset(v.agent_id for v in votes if v.decision is None),
            consensus_level=consensus,
            status_votes=status_votes,
            synthesis=synthesis,
            reflection=reflection_record.reflection,
            advisory_context=advisory,
            total_latency_ms=(time.monotonic() - start) * 1000,
            total_input_tokens=usage.input_tokens,
            total_output_tokens=usage.output_tokens,
        )
