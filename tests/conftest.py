"""Shared pytest fixtures and test doubles."""

from collections.abc import Callable
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock

import pytest

from config.config_loader import (
    AgentConfig,
    AppConfig,
    CouncilConfig,
    DefaultsConfig,
    ObservabilityConfig,
    PromptsConfig,
    ProviderConfig,
)
from qi_council.deliberation import CouncilMember
from qi_council.models import ScenarioInput
from qi_council.observability import ObservabilityRecorder
from qi_council.providers.base import JSONReply, ProviderAdapter
from qi_council.schema import Decision, validate_decision


def decision_payload(verdict: str = "APPROVE", summary: str = "Proceed with the pilot.", **extra: Any) -> dict:
    return {
        "summary": summary,
        "requiredChanges": [],
        "riskFlags": [],
        "universalBenefits": [],
        "verdict": verdict,
        **extra,
    }


def brief_payload(verdict: str = "REVISE", summary: str = "Needs changes.", **extra: Any) -> dict:
    return decision_payload(
        verdict,
        summary,
        requiredChanges=["Add an anonymous opt-out"],
        riskFlags=["Opt-out requires disclosure"],
        universalBenefits=["Clearer consent for everyone"],
        observations=["Opt-out requires a manager conversation"],
        recommendations=["Provide an anonymous opt-out"],
        urgency="high",
        confidence=80,
        **extra,
    )


def critique_payload(agrees_with: str = "other", flags: str = "other") -> dict:
    return {
        "agreementWith": {"agent": agrees_with, "point": "Consent must be revocable"},
        "blindSpotFlag": {"agent": flags, "concern": "Ignores night-shift workers"},
        "gapAddress": "Covers shift patterns",
    }


def synthesis_payload(verdict: str = "REVISE") -> dict:
    return {
        "summary": "Revise the pilot before launch.",
        "identifiedConflicts": [{"between": ["a", "b"], "nature": "Speed versus safety"}],
        "tradeOffs": [{"weAccept": "Slower launch", "weForgo": "Q3 date", "rationale": "Safety first"}],
        "unifiedPolicy": {
            "immediateActions": ["Add an anonymous opt-out"],
            "shortTermChanges": ["Shorten data retention"],
            "longTermReforms": ["Co-design with affected staff"],
            "attributions": [{"decision": "Add an anonymous opt-out", "sourceAgent": "a", "contribution": "brief"}],
        },
        "overruledObjections": [],
        "verdict": verdict,
    }


def reflection_payload(agents: list[str]) -> dict:
    return {
        "counterfactuals": [{"agent": a, "outcome": f"{a} alone", "flaw": "narrow"} for a in agents],
        "collectiveAdvantage": "Together the council covered more ground.",
        "keyInsight": "Diversity of lenses matters.",
    }


def advisory_payload(distress: str | None = "moderate", **extra: Any) -> dict:
    return {
        "summary": "Carers describe exhaustion and fear of losing shifts.",
        "dominantEmotion": "fear",
        "distressLevel": distress,
        "relevantSignals": ["Overtime complaints up 40%"],
        "policyContext": "Similar pilots required an independent ombudsperson.",
        **extra,
    }


def reply(payload: dict) -> JSONReply:
    return JSONReply(payload=payload, latency_ms=5.0, input_tokens=10, output_tokens=20)


def routed(replies: dict[str, Any]) -> Callable:
    """side_effect for request_json that answers by the prompt's first word.

    Values may be payload dicts or exceptions to raise.
    """
    async def _reply(prompt: str, system: str | None = None) -> JSONReply:
        value = replies[prompt.split(None, 1)[0]]
        if isinstance(value, BaseException):
            raise value
        return reply(value)

    return _reply


class MockAdapter(ProviderAdapter):
    """Test double ProviderAdapter."""

    def __init__(self, agent_id: str = "mock", payload: dict | None = None) -> None:
        self._agent_id = agent_id
        # Shadow the class method with an AsyncMock at the instance level.
        # ABC check passes because request_json is defined in the class body below.
        self.request_json = AsyncMock(  # type: ignore[assignment]
            return_value=reply(payload if payload is not None else decision_payload())
        )

    def name(self) -> str:
        return self._agent_id

    def model_string(self) -> str:
        return "mock-model"

    async def request_json(self, prompt: str, system: str | None = None) -> JSONReply:  # type: ignore[override]
        """Default implementation; replaced by AsyncMock in __init__."""
        return reply(decision_payload())

    async def invoke(self, scenario: ScenarioInput) -> Decision:
        result = await self.request_json(f"ADVICE\n{scenario.as_prompt()}")
        return validate_decision(result.payload, self.served_by)


@pytest.fixture
def sample_prompts_config() -> PromptsConfig:
    return PromptsConfig(
        advice="ADVICE\n{scenario}",
        veto="VETO\n{scenario}",
        veto_review="REVIEW {verdict}: {summary}\n{votes}",
        brief="BRIEF {agent_name} ({specialty})\n{scenario}\nADVISORY CONTEXT:\n{advisory}",
        critique="CRITIQUE {agent_name} ({specialty})\n{briefs}",
        synthesis="SYNTHESIS\n{scenario}\n{briefs}\n{critiques}",
        reflection="REFLECTION {agents}\n{synthesis}",
        advisory="ADVISE {agent_name} ({specialty})\n{scenario}",
    )


@pytest.fixture
def sample_provider_config() -> ProviderConfig:
    return ProviderConfig(
        name="test_provider",
        sdk="openai",
        model="test-model-1",
        api_key_env="QI_TEST_API_KEY",
        timeout_sec=5,
        max_tokens=256,
        temperature=0.2,
    )


@pytest.fixture
def sample_scenario() -> ScenarioInput:
    return ScenarioInput(
        primary_objective="Reduce burnout",
        current_state_description="Teams work long weeks with no recovery time",
        target_state_description="A four-day week trial for support staff",
        community_voice="Staff asked for predictable schedules",
    )


@pytest.fixture
def recorder() -> ObservabilityRecorder:
    return ObservabilityRecorder(max_history=50)


def make_agent(agent_id: str, provider: str = "mock") -> AgentConfig:
    return AgentConfig(
        id=agent_id,
        name=agent_id.title(),
        specialty=f"{agent_id} lens",
        provider=provider,
        persona=f"You are {agent_id}.",
    )


def make_member(agent_id: str, adapter: ProviderAdapter | None = None) -> CouncilMember:
    return CouncilMember(agent=make_agent(agent_id), adapter=adapter or MockAdapter(agent_id))


@pytest.fixture
def sample_app_config(tmp_path: Path, sample_prompts_config: PromptsConfig) -> AppConfig:
    providers = {
        "claude": ProviderConfig("claude", "anthropic", "claude-test", "QI_TEST_ANTHROPIC_KEY", 5, 256),
        "openai": ProviderConfig("openai", "openai", "gpt-test", "QI_TEST_OPENAI_KEY", 5, 256),
        "mistral": ProviderConfig("mistral", "openai_compatible", "mistral-test", "QI_TEST_MISTRAL_KEY", 5, 256,
                                  base_url="https://mistral.invalid/v1"),
    }
    agents = {
        "lynn": make_agent("lynn", "claude"),
        "bayard": make_agent("bayard", "openai"),
        "elizebeth": make_agent("elizebeth", "mistral"),
        "alan": make_agent("alan", "mistral"),
        "chair": make_agent("chair", "claude"),
        "scribe": make_agent("scribe", "openai"),
    }
    return AppConfig(
        defaults=DefaultsConfig(
            output_dir=tmp_path / "output",
            inbox_dir=tmp_path / "inbox",
            archive_dir=tmp_path / "inbox" / "archive",
        ),
        providers=providers,
        agents=agents,
        prompts=sample_prompts_config,
        council=CouncilConfig(
            fallback_chain=["lynn", "bayard", "elizebeth"],
            veto_agent="alan",
            deliberation_panel=["lynn", "bayard", "elizebeth"],
            synthesizer="chair",
            reflector="scribe",
        ),
        observability=ObservabilityConfig(max_history=100),
    )


@pytest.fixture
def no_api_keys(monkeypatch: pytest.MonkeyPatch) -> None:
    for key in ("QI_TEST_ANTHROPIC_KEY", "QI_TEST_OPENAI_KEY", "QI_TEST_MISTRAL_KEY", "QI_TEST_API_KEY"):
        monkeypatch.delenv(key, raising=False)
