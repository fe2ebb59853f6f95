"""Load settings.yaml into typed dataclasses. Reports which providers have API keys."""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml

logger = logging.getLogger(__name__)

_SETTINGS_PATH = Path(__file__).parent / "settings.yaml"

_KNOWN_SDKS = {"anthropic", "openai", "gemini", "openai_compatible"}


@dataclass
class ProviderConfig:
    name: str
    sdk: str
    model: str
    api_key_env: str
    timeout_sec: float
    max_tokens: int
    temperature: float = 0.7
    base_url: str | None = None


@dataclass
class AgentFallback:
    """Canned text used when every agent in a deliberation phase fails."""

    summary: str = "Insufficient analysis available; the scenario needs human review."
    observations: list[str] = field(default_factory=lambda: ["No model analysis was available for this lens"])
    recommendations: list[str] = field(default_factory=lambda: ["Escalate the scenario to a human reviewer"])
    urgency: str = "medium"
    confidence: float = 50.0
    agreement_agent: str = "council"
    agreement_point: str = "The scenario requires careful review before rollout"
    blind_spot_agent: str = "council"
    blind_spot_concern: str = "Analysis was incomplete because model calls failed"
    gap_addressed: str = "Keeps this specialty represented in the record"
    counterfactual_outcome: str = "Would have decided from a single perspective"
    counterfactual_flaw: str = "Perspectives from the rest of the council would be missing"


@dataclass
class AgentConfig:
    id: str
    name: str
    specialty: str
    provider: str
    persona: str
    fallback: AgentFallback = field(default_factory=AgentFallback)


@dataclass
class PromptsConfig:
    advice: str
    veto: str
    veto_review: str
    brief: str
    critique: str
    synthesis: str
    reflection: str
    advisory: str = "{scenario}"


@dataclass
class CouncilConfig:
    fallback_chain: list[str]
    veto_agent: str
    deliberation_panel: list[str]
    synthesizer: str
    reflector: str
    advisory_agents: list[str] = field(default_factory=list)


@dataclass
class ObservabilityConfig:
    max_history: int = 1000
    window_ms: int = 3_600_000


@dataclass
class DefaultsConfig:
    output_dir: Path
    inbox_dir: Path
    archive_dir: Path


@dataclass
class AppConfig:
    defaults: DefaultsConfig
    providers: dict[str, ProviderConfig]
    agents: dict[str, AgentConfig]
    prompts: PromptsConfig
    council: CouncilConfig
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)
    available_providers: set[str] = field(default_factory=set)


def _parse_fallback(raw: dict | None) -> AgentFallback:
    if not raw:
        return AgentFallback()
    defaults = AgentFallback()
    agreement = raw.get("agreement") or {}
    blind_spot = raw.get("blind_spot") or {}
    counterfactual = raw.get("counterfactual") or {}
    return AgentFallback(
        summary=str(raw.get("summary", defaults.summary)),
        observations=[str(o) for o in raw.get("observations", defaults.observations)],
        recommendations=[str(r) for r in raw.get("recommendations", defaults.recommendations)],
        urgency=str(raw.get("urgency", defaults.urgency)),
        confidence=float(raw.get("confidence", defaults.confidence)),
        agreement_agent=str(agreement.get("agent", defaults.agreement_agent)),
        agreement_point=str(agreement.get("point", defaults.agreement_point)),
        blind_spot_agent=str(blind_spot.get("agent", defaults.blind_spot_agent)),
        blind_spot_concern=str(blind_spot.get("concern", defaults.blind_spot_concern)),
        gap_addressed=str(raw.get("gap_addressed", defaults.gap_addressed)),
        counterfactual_outcome=str(counterfactual.get("outcome", defaults.counterfactual_outcome)),
        counterfactual_flaw=str(counterfactual.get("flaw", defaults.counterfactual_flaw)),
    )


def _check_references(council: CouncilConfig, agents: dict[str, AgentConfig],
                      providers: dict[str, ProviderConfig]) -> None:
    """Raise ValueError when the council or an agent points at something undefined."""
    for agent in agents.values():
        if agent.provider not in providers:
            raise ValueError(f"Agent '{agent.id}' uses unknown provider '{agent.provider}'")

    referenced = [
        *council.fallback_chain,
        *council.deliberation_panel,
        council.veto_agent,
        council.synthesizer,
        council.reflector,
        *council.advisory_agents,
    ]
    unknown = sorted({agent_id for agent_id in referenced if agent_id not in agents})
    if unknown:
        raise ValueError(f"Council references unknown agents: {', '.join(unknown)}")
    if not council.fallback_chain:
        raise ValueError("council.fallback_chain must list at least one agent")


def load_config(settings_path: Path = _SETTINGS_PATH) -> AppConfig:
    """Load and validate configuration from settings.yaml.

    Raises FileNotFoundError if settings file missing, ValueError for an
    unknown sdk or a reference to an undefined provider or agent.
    Logs missing API keys but does not raise; adapters for those providers
    fail fast at call time and the fallback chain moves on.
    """
    if not settings_path.exists():
        raise FileNotFoundError(f"Settings file not found: {settings_path}")

    with settings_path.open("r", encoding="utf-8") as f:
        raw = yaml.safe_load(f)

    defaults_raw = raw["defaults"]
    defaults = DefaultsConfig(
        output_dir=Path(defaults_raw["output_dir"]),
        inbox_dir=Path(defaults_raw["inbox_dir"]),
        archive_dir=Path(defaults_raw["archive_dir"]),
    )

    obs_raw = raw.get("observability") or {}
    observability = ObservabilityConfig(
        max_history=int(obs_raw.get("max_history", 1000)),
        window_ms=int(obs_raw.get("window_ms", 3_600_000)),
    )

    prompts_raw = raw["prompts"]
    prompts = PromptsConfig(
        advice=prompts_raw["advice"],
        veto=prompts_raw["veto"],
        veto_review=prompts_raw["veto_review"],
        brief=prompts_raw["brief"],
        critique=prompts_raw["critique"],
        synthesis=prompts_raw["synthesis"],
        reflection=prompts_raw["reflection"],
        advisory=prompts_raw.get("advisory", "{scenario}"),
    )

    providers: dict[str, ProviderConfig] = {}
    available_providers: set[str] = set()

    for provider_name, provider_raw in raw["providers"].items():
        sdk = provider_raw["sdk"]
        if sdk not in _KNOWN_SDKS:
            raise ValueError(f"Provider '{provider_name}' has unknown sdk '{sdk}'")
        providers[provider_name] = ProviderConfig(
            name=provider_name,
            sdk=sdk,
            model=provider_raw["model"],
            api_key_env=provider_raw["api_key_env"],
            timeout_sec=float(provider_raw["timeout_sec"]),
            max_tokens=int(provider_raw["max_tokens"]),
            temperature=float(provider_raw.get("temperature", 0.7)),
            base_url=provider_raw.get("base_url"),
        )

        api_key = os.environ.get(provider_raw["api_key_env"], "").strip()
        if api_key:
            available_providers.add(provider_name)
            logger.info("Provider available: %s", provider_name)
        else:
            logger.info(
                "Provider has no API key: %s (set %s in .env)",
                provider_name,
                provider_raw["api_key_env"],
            )

    agents: dict[str, AgentConfig] = {}
    for agent_id, agent_raw in raw["agents"].items():
        agents[agent_id] = AgentConfig(
            id=agent_id,
            name=str(agent_raw["name"]),
            specialty=str(agent_raw["specialty"]),
            provider=str(agent_raw["provider"]),
            persona=str(agent_raw["persona"]).strip(),
            fallback=_parse_fallback(agent_raw.get("fallback")),
        )

    council_raw = raw["council"]
    council = CouncilConfig(
        fallback_chain=list(council_raw["fallback_chain"]),
        veto_agent=str(council_raw["veto_agent"]),
        deliberation_panel=list(council_raw["deliberation_panel"]),
        synthesizer=str(council_raw["synthesizer"]),
        reflector=str(council_raw["reflector"]),
        advisory_agents=list(council_raw.get("advisory_agents") or []),
    )
    _check_references(council, agents, providers)

    return AppConfig(
        defaults=defaults,
        providers=providers,
        agents=agents,
        prompts=prompts,
        council=council,
        observability=observability,
        available_providers=available_providers,
    )
