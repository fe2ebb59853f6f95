"""Council service: wires adapters from configuration and runs both advisory paths."""

import asyncio
import dataclasses
import logging
import time

from config.config_loader import AgentConfig, AppConfig, PromptsConfig
from qi_council.deliberation import CouncilMember, DeliberationEngine, PhaseCallback
from qi_council.fallback import FallbackChain
from qi_council.models import AgentVote, ConsensusResult, ScenarioInput
from qi_council.observability import AggregateMetrics, DeliberationRecord, ObservabilityRecorder
from qi_council.providers.anthropic import AnthropicAdapter
from qi_council.providers.base import LLMAdapter, ProviderAdapter
from qi_council.providers.gemini import GeminiAdapter
from qi_council.providers.openai_compatible import OpenAICompatibleAdapter
from qi_council.providers.openai_provider import OpenAIAdapter
from qi_council.schema import Decision
from qi_council.veto import VetoAgent, combine

logger = logging.getLogger(__name__)

ADAPTER_CLASSES: dict[str, type[LLMAdapter]] = {
    "anthropic": AnthropicAdapter,
    "openai": OpenAIAdapter,
    "gemini": GeminiAdapter,
    "openai_compatible": OpenAICompatibleAdapter,
}


def build_adapter(agent: AgentConfig, config: AppConfig, recorder: ObservabilityRecorder) -> LLMAdapter:
    """Build the adapter for one agent. Never raises for a missing API key."""
    provider = config.providers[agent.provider]
    adapter_cls = ADAPTER_CLASSES.get(provider.sdk)
    if adapter_cls is None:
        raise ValueError(f"Unknown sdk '{provider.sdk}' for provider '{provider.name}'")
    return adapter_cls(agent.id, provider, agent.persona, config.prompts, recorder)


class CouncilService:
    """Downstream interface to the council.

    The simple path asks the fallback chain for one Decision; the rich path
    runs a full deliberation. The veto agent runs alongside both and its
    vote is applied through combine().
    """

    def __init__(
        self,
        chain: FallbackChain,
        veto: VetoAgent,
        members: dict[str, CouncilMember],
        panel: list[str],
        synthesizer: CouncilMember,
        reflector: CouncilMember,
        prompts: PromptsConfig,
        recorder: ObservabilityRecorder,
        window_ms: int = 3_600_000,
        advisors: list[str] | None = None,
    ) -> None:
        self._chain = chain
        self._veto = veto
        self._members = members
        self._panel = list(panel)
        self._synthesizer = synthesizer
        self._reflector = reflector
        self._prompts = prompts
        self._recorder = recorder
        self._window_ms = window_ms
        self._advisors = list(advisors or [])
        unknown = [agent_id for agent_id in self._advisors if agent_id not in members]
        if unknown:
            raise ValueError(f"Unknown advisory agents: {', '.join(unknown)}")

    @classmethod
    def from_config(cls, config: AppConfig, recorder: ObservabilityRecorder | None = None) -> "CouncilService":
        recorder = recorder or ObservabilityRecorder(config.observability.max_history)
        adapters: dict[str, ProviderAdapter] = {
            agent_id: build_adapter(agent, config, recorder) for agent_id, agent in config.agents.items()
        }
        members = {
            agent_id: CouncilMember(agent=config.agents[agent_id], adapter=adapter)
            for agent_id, adapter in adapters.items()
        }
        council = config.council
        return cls(
            chain=FallbackChain([adapters[agent_id] for agent_id in council.fallback_chain]),
            veto=VetoAgent(adapters[council.veto_agent], config.prompts),
            members=members,
            panel=council.deliberation_panel,
            synthesizer=members[council.synthesizer],
            reflector=members[council.reflector],
            prompts=config.prompts,
            recorder=recorder,
            window_ms=config.observability.window_ms,
            advisors=council.advisory_agents,
        )

    @property
    def recorder(self) -> ObservabilityRecorder:
        return self._recorder

    @property
    def adapters(self) -> dict[str, ProviderAdapter]:
        return {agent_id: member.adapter for agent_id, member in self._members.items()}

    def _engine_for(self, agent_ids: list[str] | None) -> DeliberationEngine:
        selected = agent_ids or self._panel
        unknown = [agent_id for agent_id in selected if agent_id not in self._members]
        if unknown:
            raise ValueError(f"Unknown council agents: {', '.join(unknown)}")
        if not selected:
            raise ValueError("No council agents selected for deliberation")
        return DeliberationEngine(
            members=[self._members[agent_id] for agent_id in dict.fromkeys(selected)],
            synthesizer=self._synthesizer,
            reflector=self._reflector,
            prompts=self._prompts,
            advisors=[self._members[agent_id] for agent_id in self._advisors],
        )

    async def advise_simple(self, scenario: ScenarioInput, escalate: bool = False) -> Decision:
        """Fallback-chain advice with the veto applied. Always returns a valid Decision.

        Args:
            scenario: The scenario under review.
            escalate: Let the veto agent reconsider after seeing the chain result.
        """
        primary, vote = await asyncio.gather(self._chain.advise(scenario), self._veto.invoke(scenario))
        if escalate:
            vote = await self._veto.review(vote, [AgentVote(agent_id=primary.served_by, decision=primary)])
        decision = combine(primary, vote)
        logger.info("Simple advice: %s (served by %s)", decision.verdict.value, decision.served_by)
        return decision

    async def advise_with_deliberation(
        self,
        scenario: ScenarioInput,
        agent_ids: list[str] | None = None,
        on_phase_complete: PhaseCallback | None = None,
    ) -> ConsensusResult:
        """Full deliberation with the veto applied.

        Raises:
            ValueError: If agent_ids names an agent that is not configured.
        """
        engine = self._engine_for(agent_ids)
        start = time.monotonic()
        result, vote = await asyncio.gather(
            engine.run(scenario, on_phase_complete=on_phase_complete),
            self._veto.invoke(scenario),
        )
        briefs = result.rounds[0]
        vote = await self._veto.review(vote, [v for v in briefs.votes if v.decision is not None])
        result = dataclasses.replace(
            result,
            final_decision=combine(result.final_decision, vote),
            veto=vote,
            veto_triggered=vote.veto_triggered,
            total_latency_ms=(time.monotonic() - start) * 1000,
        )

        self._recorder.record_deliberation(DeliberationRecord(
            participating_agents=sorted(result.participating_agents),
            failed_agents=sorted(result.failed_agents),
            consensus_level=result.consensus_level.value,
            final_verdict=result.final_decision.verdict.value,
            veto_triggered=result.veto_triggered,
            total_latency_ms=result.total_latency_ms,
            total_input_tokens=result.total_input_tokens,
            total_output_tokens=result.total_output_tokens,
            heuristic_phases=[record.phase.value for record in result.rounds if record.heuristic],
            status_votes={
                verdict.value: sorted(agents) for verdict, agents in result.status_votes.items()
            },
            detected_concerns=list(vote.detected_concerns),
            pilot_id=scenario.pilot_id,
        ))
        return result

    def get_observability_snapshot(self, window_ms: int | None = None) -> AggregateMetrics:
        return self._recorder.metrics(window_ms if window_ms is not None else self._window_ms)
