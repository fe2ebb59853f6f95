"""Tests for qi_council/deliberation.py."""

import asyncio
import logging

import pytest

from qi_council.deliberation import (
    CRITICAL_DISTRESS_FLAG,
    HEURISTIC_REFLECTION_SERVED_BY,
    HEURISTIC_SYNTHESIS_SERVED_BY,
    DeliberationEngine,
    aggregate_verdict,
    derive_consensus_level,
    heuristic_synthesis,
)
from qi_council.models import AdvisoryContext, AgentVote, ConsensusLevel, Phase
from qi_council.providers.base import ParseError, ProviderError
from qi_council.schema import Verdict, validate_decision
from tests.conftest import (
    MockAdapter,
    advisory_payload,
    brief_payload,
    critique_payload,
    decision_payload,
    make_member,
    reflection_payload,
    reply,
    routed,
    synthesis_payload,
)

AGENTS = ["lynn", "bayard", "sylvia"]


def _member(agent_id: str, replies: dict):
    adapter = MockAdapter(agent_id)
    adapter.request_json.side_effect = routed(replies)
    return make_member(agent_id, adapter)


def _engine(prompts, members, synthesis=None, reflection=None, advisors=None):
    chair = _member("chair", {"SYNTHESIS": synthesis if synthesis is not None else synthesis_payload()})
    scribe = _member("scribe", {"REFLECTION": reflection if reflection is not None else reflection_payload(AGENTS)})
    return DeliberationEngine(members, chair, scribe, prompts, advisors=advisors)


def _healthy(agent_id: str, verdict: str = "REVISE"):
    return _member(agent_id, {"BRIEF": brief_payload(verdict), "CRITIQUE": critique_payload()})


def _status(**counts) -> dict:
    votes = {}
    n = 0
    for verdict in Verdict:
        agents = [f"agent{n + i}" for i in range(counts.get(verdict.value, 0))]
        n += len(agents)
        votes[verdict] = frozenset(agents)
    return votes


# -- consensus ----------------------------------------------------------------


def test_consensus_plurality_without_strict_majority():
    assert derive_consensus_level(_status(APPROVE=1, REVISE=1, BLOCK=2)) is ConsensusLevel.PLURALITY


def test_consensus_majority():
    assert derive_consensus_level(_status(BLOCK=3, APPROVE=1)) is ConsensusLevel.MAJORITY


def test_consensus_unanimous():
    assert derive_consensus_level(_status(APPROVE=4)) is ConsensusLevel.UNANIMOUS


@pytest.mark.parametrize("counts", [{}, {"REVISE": 1}])
def test_consensus_single(counts):
    assert derive_consensus_level(_status(**counts)) is ConsensusLevel.SINGLE


def test_consensus_even_split_is_plurality():
    assert derive_consensus_level(_status(APPROVE=2, BLOCK=2)) is ConsensusLevel.PLURALITY


@pytest.mark.parametrize("verdicts, expected", [
    (["APPROVE", "BLOCK", "REVISE"], Verdict.BLOCK),
    (["APPROVE", "REVISE"], Verdict.REVISE),
    (["APPROVE", "APPROVE"], Verdict.APPROVE),
    ([], Verdict.REVISE),
])
def test_aggregate_verdict(verdicts, expected):
    votes = [AgentVote(f"a{i}", validate_decision(decision_payload(v), f"a{i}")) for i, v in enumerate(verdicts)]
    votes.append(AgentVote("down", None, error="timeout"))
    assert aggregate_verdict(votes) is expected


# -- full run -----------------------------------------------------------------


async def test_full_deliberation(sample_prompts_config, sample_scenario):
    members = [_healthy("lynn", "REVISE"), _healthy("bayard", "REVISE"), _healthy("sylvia", "BLOCK")]
    phases = []
    engine = _engine(sample_prompts_config, members, synthesis=synthesis_payload("BLOCK"))

    result = await engine.run(sample_scenario, on_phase_complete=lambda record: phases.append(record.phase))

    assert phases == [Phase.INITIAL_BRIEFS, Phase.CROSS_CRITIQUE, Phase.SYNTHESIS, Phase.REFLECTION]
    assert [record.phase for record in result.rounds] == phases
    assert result.participating_agents == frozenset(AGENTS)
    assert result.failed_agents == frozenset()
    assert result.consensus_level is ConsensusLevel.MAJORITY
    assert result.status_votes[Verdict.BLOCK] == frozenset({"sylvia"})
    assert result.final_decision.verdict is Verdict.BLOCK
    assert result.final_decision.served_by == "deliberation:chair"
    assert result.final_decision.required_changes == (
        "Add an anonymous opt-out", "Shorten data retention", "Co-design with affected staff",
    )
    assert any("Speed versus safety" in flag for flag in result.final_decision.risk_flags)
    assert result.synthesis.served_by == "chair"
    assert {c.agent for c in result.reflection.counterfactuals} == set(AGENTS)
    assert len(result.phase(Phase.CROSS_CRITIQUE).critiques) == 3
    # 3 briefs + 3 critiques + synthesis + reflection, 10/20 tokens each
    assert result.total_input_tokens == 80
    assert result.total_output_tokens == 160


async def test_critique_prompt_excludes_own_brief(sample_prompts_config, sample_scenario):
    members = [_healthy(agent_id) for agent_id in AGENTS]
    await _engine(sample_prompts_config, members).run(sample_scenario)

    critique_prompts = [
        call.args[0] for call in members[0].adapter.request_json.call_args_list if call.args[0].startswith("CRITIQUE")
    ]
    assert len(critique_prompts) == 1
    assert "=== LYNN" not in critique_prompts[0]
    assert "=== BAYARD" in critique_prompts[0]


async def test_phase_barrier(sample_prompts_config, sample_scenario):
    events: list[tuple[str, str, str]] = []
    delays = {"lynn": 0.03, "bayard": 0.0, "sylvia": 0.01}

    def recording_member(agent_id: str):
        adapter = MockAdapter(agent_id)

        async def _reply(prompt, system=None):
            phase = prompt.split(None, 1)[0]
            events.append(("start", phase, agent_id))
            if phase == "BRIEF":
                await asyncio.sleep(delays[agent_id])
                events.append(("end", phase, agent_id))
                if agent_id == "sylvia":
                    raise ProviderError(agent_id, "brief failed")
                return reply(brief_payload())
            return reply(critique_payload())

        adapter.request_json.side_effect = _reply
        return make_member(agent_id, adapter)

    engine = _engine(sample_prompts_config, [recording_member(a) for a in AGENTS])
    result = await engine.run(sample_scenario)

    brief_ends = [i for i, event in enumerate(events) if event[:2] == ("end", "BRIEF")]
    critique_starts = [i for i, event in enumerate(events) if event[:2] == ("start", "CRITIQUE")]
    assert len(brief_ends) == 3
    assert len(critique_starts) == 3
    assert max(brief_ends) < min(critique_starts)
    assert result.failed_agents == frozenset({"sylvia"})


async def test_all_critiques_fail_yields_heuristic_per_agent(sample_prompts_config, sample_scenario):
    members = [
        _member(agent_id, {"BRIEF": brief_payload(), "CRITIQUE": ProviderError(agent_id, "overloaded")})
        for agent_id in AGENTS
    ]

    result = await _engine(sample_prompts_config, members).run(sample_scenario)

    critiques = result.phase(Phase.CROSS_CRITIQUE)
    assert critiques.heuristic is True
    assert sorted(c.agent_id for c in critiques.critiques) == sorted(AGENTS)
    assert all(c.heuristic for c in critiques.critiques)
    assert set(critiques.failures) == set(AGENTS)
    assert result.phase(Phase.SYNTHESIS) is not None
    assert result.phase(Phase.REFLECTION) is not None
    assert "Degraded deliberation: heuristic cross_critique used" in result.final_decision.risk_flags


async def test_partial_critique_failure_is_not_heuristic(sample_prompts_config, sample_scenario):
    members = [
        _healthy("lynn"),
        _member("bayard", {"BRIEF": brief_payload(), "CRITIQUE": ParseError("bayard", "no JSON")}),
    ]
    result = await _engine(sample_prompts_config, members).run(sample_scenario)
    critiques = result.phase(Phase.CROSS_CRITIQUE)
    assert critiques.heuristic is False
    assert [c.agent_id for c in critiques.critiques] == ["lynn"]
    assert "bayard" in critiques.failures


async def test_all_briefs_fail(sample_prompts_config, sample_scenario):
    members = [
        _member(agent_id, {"BRIEF": ProviderError(agent_id, "down"), "CRITIQUE": critique_payload()})
        for agent_id in AGENTS
    ]

    result = await _engine(sample_prompts_config, members).run(sample_scenario)

    briefs = result.phase(Phase.INITIAL_BRIEFS)
    assert briefs.heuristic is True
    assert all(vote.decision is None and vote.error for vote in briefs.votes)
    assert sorted(b.agent_id for b in briefs.briefs) == sorted(AGENTS)
    assert result.failed_agents == frozenset(AGENTS)
    assert result.participating_agents == frozenset()
    assert result.consensus_level is ConsensusLevel.SINGLE


async def test_synthesis_failure_uses_heuristic(sample_prompts_config, sample_scenario):
    members = [_healthy("lynn", "APPROVE"), _healthy("bayard", "BLOCK"), _healthy("sylvia", "REVISE")]
    engine = _engine(sample_prompts_config, members, synthesis={"not": "a synthesis"})

    result = await engine.run(sample_scenario)

    assert result.synthesis.heuristic is True
    assert result.synthesis.served_by == HEURISTIC_SYNTHESIS_SERVED_BY
    assert result.synthesis.verdict is Verdict.BLOCK
    assert result.final_decision.verdict is Verdict.BLOCK
    assert result.final_decision.served_by == f"deliberation:{HEURISTIC_SYNTHESIS_SERVED_BY}"
    assert {o.from_agent for o in result.synthesis.overruled_objections} == {"lynn", "sylvia"}
    assert result.phase(Phase.REFLECTION) is not None


async def test_reflection_failure_uses_heuristic(sample_prompts_config, sample_scenario):
    members = [_healthy(agent_id) for agent_id in AGENTS]
    chair = _member("chair", {"SYNTHESIS": synthesis_payload()})
    scribe = _member("scribe", {"REFLECTION": ProviderError("scribe", "down")})

    result = await DeliberationEngine(members, chair, scribe, sample_prompts_config).run(sample_scenario)

    assert result.reflection.heuristic is True
    assert result.reflection.served_by == HEURISTIC_REFLECTION_SERVED_BY
    assert sorted(c.agent for c in result.reflection.counterfactuals) == sorted(AGENTS)


async def test_reflection_missing_agents_are_filled(sample_prompts_config, sample_scenario):
    members = [_healthy(agent_id) for agent_id in AGENTS]
    engine = _engine(sample_prompts_config, members, reflection=reflection_payload(["lynn"]))

    result = await engine.run(sample_scenario)

    assert result.reflection.heuristic is False
    assert sorted(c.agent for c in result.reflection.counterfactuals) == sorted(AGENTS)


def test_heuristic_synthesis_without_votes_revises():
    synthesis = heuristic_synthesis([AgentVote("lynn", None, error="down")], [], [])
    assert synthesis.verdict is Verdict.REVISE
    assert synthesis.trade_offs


def test_engine_requires_members(sample_prompts_config):
    with pytest.raises(ValueError):
        DeliberationEngine([], make_member("chair"), make_member("scribe"), sample_prompts_config)


# -- advisory -----------------------------------------------------------------


def _advisor(agent_id: str, payload):
    return _member(agent_id, {"ADVISE": payload})


async def test_advisory_notes_reach_every_brief(sample_prompts_config, sample_scenario):
    members = [_healthy(agent_id) for agent_id in AGENTS]
    engine = _engine(sample_prompts_config, members, advisors=[_advisor("hume", advisory_payload())])

    result = await engine.run(sample_scenario)

    context = result.advisory_context
    assert [note.agent_id for note in context.notes] == ["hume"]
    assert context.failures == {}
    for member in members:
        brief_prompt = member.adapter.request_json.call_args_list[0].args[0]
        assert brief_prompt.startswith("BRIEF")
        assert "=== HUME ===" in brief_prompt
        assert "Emotional state: fear (distress: moderate)" in brief_prompt
        assert "Relevant signals: Overtime complaints up 40%" in brief_prompt
    assert CRITICAL_DISTRESS_FLAG not in result.final_decision.risk_flags
    # advisory note + 3 briefs + 3 critiques + synthesis + reflection
    assert result.total_input_tokens == 90


async def test_advisory_settles_before_briefs(sample_prompts_config, sample_scenario):
    events: list[str] = []
    advisor = MockAdapter("cohere")

    async def _slow_advice(prompt, system=None):
        await asyncio.sleep(0.02)
        events.append("advised")
        return reply(advisory_payload(None))

    advisor.request_json.side_effect = _slow_advice

    def recording_member(agent_id: str):
        adapter = MockAdapter(agent_id)

        async def _reply(prompt, system=None):
            events.append(prompt.split(None, 1)[0])
            return reply(brief_payload() if prompt.startswith("BRIEF") else critique_payload())

        adapter.request_json.side_effect = _reply
        return make_member(agent_id, adapter)

    engine = _engine(
        sample_prompts_config, [recording_member(a) for a in AGENTS], advisors=[make_member("cohere", advisor)],
    )
    await engine.run(sample_scenario)

    assert events[0] == "advised"
    assert events.count("BRIEF") == 3


async def test_advisory_failure_does_not_block_briefs(sample_prompts_config, sample_scenario, caplog):
    members = [_healthy(agent_id) for agent_id in AGENTS]
    advisors = [_advisor("hume", ProviderError("hume", "down")), _advisor("cohere", {"summary": 42})]

    with caplog.at_level(logging.WARNING, logger="qi_council.deliberation"):
        result = await _engine(sample_prompts_config, members, advisors=advisors).run(sample_scenario)

    assert result.advisory_context.notes == ()
    assert set(result.advisory_context.failures) == {"hume", "cohere"}
    assert "Advisory agent hume failed" in caplog.text
    assert result.participating_agents == frozenset(AGENTS)
    assert result.rounds[0].phase is Phase.INITIAL_BRIEFS
    brief_prompt = members[0].adapter.request_json.call_args_list[0].args[0]
    assert "(no advisory context)" in brief_prompt


async def test_critical_distress_is_flagged(sample_prompts_config, sample_scenario):
    members = [_healthy(agent_id) for agent_id in AGENTS]
    advisors = [_advisor("hume", advisory_payload("critical"))]

    result = await _engine(sample_prompts_config, members, advisors=advisors).run(sample_scenario)

    assert result.advisory_context.critical_distress is True
    assert CRITICAL_DISTRESS_FLAG in result.final_decision.risk_flags


async def test_no_advisors_leaves_context_empty(sample_prompts_config, sample_scenario):
    members = [_healthy(agent_id) for agent_id in AGENTS]

    result = await _engine(sample_prompts_config, members).run(sample_scenario)

    assert result.advisory_context == AdvisoryContext()
    assert "(no advisory context)" in members[0].adapter.request_json.call_args_list[0].args[0]
