"""Tests for qi_council/output.py."""

import dataclasses
import io
import json
from pathlib import Path

import pytest
from rich.console import Console

import qi_council.output as output_module
from qi_council.deliberation import DeliberationEngine
from qi_council.models import AdvisoryContext, ConsensusResult, ScenarioInput
from qi_council.output import (
    _slug,
    consensus_to_dict,
    decision_to_dict,
    print_consensus,
    print_decision,
    save_to_file,
)
from qi_council.providers.base import ProviderError
from qi_council.schema import AdvisoryNote, validate_decision
from tests.conftest import (
    MockAdapter,
    brief_payload,
    critique_payload,
    decision_payload,
    make_member,
    reflection_payload,
    routed,
    synthesis_payload,
)


def test_slug_basic():
    assert _slug("Should we track badge swipes?") == "should-we-track-badge-swipes"


def test_slug_max_len():
    assert len(_slug("a" * 100)) <= 40


def test_slug_special_chars():
    result = _slug("Hybrid work (2026) v.2")
    assert "." not in result
    assert "(" not in result
    assert ")" not in result


@pytest.fixture
def sample_decision():
    return validate_decision(
        decision_payload("REVISE", "Add an opt-out.", requiredChanges=["Anonymous opt-out"],
                         riskFlags=["Outing risk"]),
        "lynn-mock-model",
    )


@pytest.fixture
async def sample_consensus(sample_prompts_config, sample_scenario) -> ConsensusResult:
    def member(agent_id, replies):
        adapter = MockAdapter(agent_id)
        adapter.request_json.side_effect = routed(replies)
        return make_member(agent_id, adapter)

    members = [
        member(agent_id, {"BRIEF": brief_payload(), "CRITIQUE": critique_payload()})
        for agent_id in ("lynn", "bayard")
    ]
    members.append(member("sylvia", {"BRIEF": ProviderError("sylvia", "API call failed"), "CRITIQUE": critique_payload()}))
    engine = DeliberationEngine(
        members,
        member("chair", {"SYNTHESIS": synthesis_payload()}),
        member("scribe", {"REFLECTION": reflection_payload(["lynn", "bayard"])}),
        sample_prompts_config,
    )
    return await engine.run(sample_scenario)


def test_decision_to_dict_uses_camel_case(sample_decision):
    data = decision_to_dict(sample_decision)
    assert data["verdict"] == "REVISE"
    assert data["requiredChanges"] == ["Anonymous opt-out"]
    assert data["servedBy"] == "lynn-mock-model"


def test_consensus_to_dict_is_json_serialisable(sample_consensus):
    data = consensus_to_dict(sample_consensus)
    json.dumps(data)
    assert data["consensusLevel"] == "unanimous"
    assert data["failedAgents"] == ["sylvia"]
    assert data["statusVotes"]["REVISE"] == ["bayard", "lynn"]
    assert [r["phase"] for r in data["rounds"]] == [
        "initial_briefs", "cross_critique", "synthesis", "reflection",
    ]
    assert data["rounds"][0]["failures"] == {"sylvia": "[sylvia] API call failed"}
    assert data["veto"] is None
    assert data["advisoryContext"] == {"notes": [], "failures": {}, "latencyMs": 0.0}


def test_save_decision_creates_file(tmp_path: Path, sample_decision, sample_scenario):
    saved = save_to_file(sample_decision, sample_scenario, tmp_path / "nested" / "output")
    assert saved.exists()
    assert saved.suffix == ".md"
    assert saved.name.endswith("_reduce-burnout.md")


def test_save_decision_content(tmp_path: Path, sample_decision):
    scenario = ScenarioInput("Reduce burnout", "Long weeks", "Four-day week", pilot_id="PILOT-7")
    content = save_to_file(sample_decision, scenario, tmp_path).read_text(encoding="utf-8")
    assert "# Qi Council: Reduce burnout" in content
    assert "**Pilot:** PILOT-7" in content
    assert "**Verdict:** REVISE" in content
    assert "- Anonymous opt-out" in content
    assert "- Outing risk" in content


def test_save_consensus_content(tmp_path: Path, sample_consensus, sample_scenario):
    saved = save_to_file(sample_consensus, sample_scenario, tmp_path, slug_override="inbox-file")
    content = saved.read_text(encoding="utf-8")
    assert saved.name.endswith("_inbox-file.md")
    assert "## Initial Briefs" in content
    assert "### sylvia (failed)" in content
    assert "## Cross-Critique" in content
    assert "## Reflection" in content
    assert "## Final Decision" in content
    assert "**Consensus:** unanimous" in content
    assert "## Advisory Context" not in content


def test_save_consensus_with_advisory_context(tmp_path: Path, sample_consensus, sample_scenario):
    note = AdvisoryNote(agent_id="hume", summary="Testimony shows fear of reprisal.", distress_level="high")
    result = dataclasses.replace(
        sample_consensus, advisory_context=AdvisoryContext(notes=(note,), failures={"cohere": "timed out"}),
    )

    content = save_to_file(result, sample_scenario, tmp_path).read_text(encoding="utf-8")
    data = consensus_to_dict(result)

    assert "## Advisory Context" in content
    assert "=== HUME ===" in content
    assert "Emotional state: unclear (distress: high)" in content
    assert "*cohere unavailable: timed out*" in content
    assert data["advisoryContext"]["notes"][0]["distressLevel"] == "high"
    assert data["advisoryContext"]["failures"] == {"cohere": "timed out"}


@pytest.fixture
def captured_console(monkeypatch) -> io.StringIO:
    buffer = io.StringIO()
    monkeypatch.setattr(output_module, "console", Console(file=buffer, width=200, legacy_windows=False))
    return buffer


def test_print_decision_keeps_brackets_literal(captured_console):
    decision = validate_decision(
        decision_payload("REVISE", "Strip [/x] and [bold]tags[/bold] from forms.", riskFlags=["[lynn] flagged"]),
        "lynn-mock-model",
    )
    print_decision(decision)
    text = captured_console.getvalue()
    assert "Strip [/x] and [bold]tags[/bold] from forms." in text
    assert "[lynn] flagged" in text


def test_print_consensus_shows_error_prefix(captured_console, sample_consensus):
    print_consensus(sample_consensus)
    assert "[sylvia] API call failed" in captured_console.getvalue()
