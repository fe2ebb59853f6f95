"""Rich console output, JSON conversion and markdown decision log for council results."""

import logging
import re
from datetime import datetime
from pathlib import Path
from typing import Any

from rich.console import Console
from rich.panel import Panel
from rich.rule import Rule
from rich.table import Table
from rich.text import Text

from qi_council.models import AdvisoryContext, ConsensusResult, PhaseRecord, ScenarioInput, VetoVote
from qi_council.observability import AggregateMetrics
from qi_council.schema import Decision, Verdict

logger = logging.getLogger(__name__)

console = Console(legacy_windows=False)

_VERDICT_STYLE = {
    Verdict.APPROVE: "bold green",
    Verdict.REVISE: "bold yellow",
    Verdict.BLOCK: "bold red",
}


def _slug(text: str, max_len: int = 40) -> str:
    """Convert text to a filename-safe slug."""
    slug = re.sub(r"[^\w\s-]", "", text.lower())
    slug = re.sub(r"[\s_-]+", "-", slug).strip("-")
    return slug[:max_len]


# -- JSON ---------------------------------------------------------------------


def decision_to_dict(decision: Decision) -> dict[str, Any]:
    return decision.model_dump(mode="json", by_alias=True)


def _veto_to_dict(veto: VetoVote) -> dict[str, Any]:
    return {
        "decision": decision_to_dict(veto.decision),
        "vetoTriggered": veto.veto_triggered,
        "vetoReason": veto.veto_reason,
        "detectedConcerns": list(veto.detected_concerns),
        "escalated": veto.escalated,
    }


def _advisory_to_dict(context: AdvisoryContext) -> dict[str, Any]:
    return {
        "notes": [note.model_dump(mode="json", by_alias=True) for note in context.notes],
        "failures": dict(context.failures),
        "latencyMs": round(context.latency_ms, 1),
    }


def _phase_to_dict(record: PhaseRecord) -> dict[str, Any]:
    data: dict[str, Any] = {
        "phase": record.phase.value,
        "heuristic": record.heuristic,
        "latencyMs": round(record.latency_ms, 1),
        "failures": dict(record.failures),
    }
    if record.votes:
        data["votes"] = [
            {
                "agentId": vote.agent_id,
                "decision": decision_to_dict(vote.decision) if vote.decision else None,
                "error": vote.error,
                "latencyMs": round(vote.latency_ms, 1),
                "inputTokens": vote.input_tokens,
                "outputTokens": vote.output_tokens,
            }
            for vote in record.votes
        ]
    if record.briefs:
        data["briefs"] = [b.model_dump(mode="json", by_alias=True) for b in record.briefs]
    if record.critiques:
        data["critiques"] = [c.model_dump(mode="json", by_alias=True) for c in record.critiques]
    return data


def consensus_to_dict(result: ConsensusResult) -> dict[str, Any]:
    """JSON-compatible camelCase view of a ConsensusResult."""
    return {
        "finalDecision": decision_to_dict(result.final_decision),
        "consensusLevel": result.consensus_level.value,
        "statusVotes": {verdict.value: sorted(agents) for verdict, agents in result.status_votes.items()},
        "participatingAgents": sorted(result.participating_agents),
        "failedAgents": sorted(result.failed_agents),
        "rounds": [_phase_to_dict(record) for record in result.rounds],
        "synthesis": result.synthesis.model_dump(mode="json", by_alias=True),
        "reflection": result.reflection.model_dump(mode="json", by_alias=True),
        "veto": _veto_to_dict(result.veto) if result.veto else None,
        "vetoTriggered": result.veto_triggered,
        "advisoryContext": _advisory_to_dict(result.advisory_context),
        "totalLatencyMs": round(result.total_latency_ms, 1),
        "totalInputTokens": result.total_input_tokens,
        "totalOutputTokens": result.total_output_tokens,
    }


# -- Console ------------------------------------------------------------------


def _bullets(items: tuple[str, ...]) -> str:
    return "\n".join(f"- {item}" for item in items) if items else "- (none)"


def print_decision(decision: Decision, title: str = "Council Advice") -> None:
    """Print a Decision as a panel with its verdict highlighted."""
    style = _VERDICT_STYLE[decision.verdict]
    console.print(Rule(f"[bold cyan]{title}[/bold cyan]"))
    console.print(Text(f"Verdict: {decision.verdict.value}", style=style))
    console.print(Text(f"Served by: {decision.served_by}", style="dim"))
    console.print(Panel(Text(decision.summary), title="Summary", border_style=style))
    console.print(Panel(Text(_bullets(decision.required_changes)), title="Required changes", border_style="dim"))
    console.print(Panel(Text(_bullets(decision.risk_flags)), title="Risk flags", border_style="dim"))
    console.print(Panel(Text(_bullets(decision.universal_benefits)), title="Universal benefits", border_style="dim"))


def print_phase_summary(record: PhaseRecord) -> None:
    """One line per settled phase, used as the live progress callback."""
    label = record.phase.value.replace("_", " ").title()
    suffix = " [yellow](heuristic)[/yellow]" if record.heuristic else ""
    failures = f", {len(record.failures)} failed" if record.failures else ""
    console.print(f"[green]OK[/green] {label}{suffix} ({record.latency_ms / 1000:.1f}s{failures})")


def print_consensus(result: ConsensusResult) -> None:
    """Print the vote table, veto status and final decision of a deliberation."""
    table = Table(title="Initial Briefs", show_lines=False)
    table.add_column("Agent", style="bold")
    table.add_column("Verdict")
    table.add_column("Latency", justify="right")
    table.add_column("Summary / error")
    for vote in sorted(result.rounds[0].votes, key=lambda v: v.agent_id):
        if vote.decision is not None:
            verdict = Text(vote.decision.verdict.value, style=_VERDICT_STYLE[vote.decision.verdict])
            detail = vote.decision.summary
        else:
            verdict = Text("FAILED", style="red")
            detail = vote.error or ""
        table.add_row(Text(vote.agent_id), verdict, f"{vote.latency_ms / 1000:.1f}s", Text(detail[:100]))
    console.print(table)

    console.print(
        Text(
            f"Consensus: {result.consensus_level.value} | "
            f"Participants: {len(result.participating_agents)} | "
            f"Failed: {len(result.failed_agents)} | "
            f"Tokens: {result.total_input_tokens}/{result.total_output_tokens} | "
            f"Duration: {result.total_latency_ms / 1000:.1f}s",
            style="dim",
        )
    )
    if result.veto_triggered and result.veto:
        console.print(Panel(Text(result.veto.veto_reason or ""), title="VETO", border_style="bold red"))

    console.print(Panel(Text(result.reflection.collective_advantage), title="Why the council beats any one agent",
                        border_style="dim"))
    print_decision(result.final_decision, title="Council Decision")


def print_metrics(metrics: AggregateMetrics) -> None:
    table = Table(title="Provider calls")
    table.add_column("Metric")
    table.add_column("Value", justify="right")
    table.add_row("Total calls", str(metrics.total_calls))
    table.add_row("Successful", str(metrics.successful_calls))
    table.add_row("Failed", str(metrics.failed_calls))
    table.add_row("Avg latency", f"{metrics.avg_latency_ms:.0f}ms")
    table.add_row("p95 latency", f"{metrics.p95_latency_ms:.0f}ms")
    table.add_row("p99 latency", f"{metrics.p99_latency_ms:.0f}ms")
    table.add_row("Tokens in/out", f"{metrics.total_input_tokens}/{metrics.total_output_tokens}")
    for provider, count in sorted(metrics.calls_by_provider.items()):
        table.add_row(f"  {provider}", str(count))
    for kind, count in sorted(metrics.error_types.items()):
        table.add_row(f"  error: {kind}", str(count))
    console.print(table)


# -- Markdown decision log ------------------------------------------------------


def _decision_lines(decision: Decision) -> list[str]:
    return [
        f"**Verdict:** {decision.verdict.value}",
        f"**Served by:** {decision.served_by}",
        "",
        decision.summary,
        "",
        "### Required changes",
        "",
        _bullets(decision.required_changes),
        "",
        "### Risk flags",
        "",
        _bullets(decision.risk_flags),
        "",
        "### Universal benefits",
        "",
        _bullets(decision.universal_benefits),
        "",
    ]


def _consensus_lines(result: ConsensusResult) -> list[str]:
    lines = [
        f"**Consensus:** {result.consensus_level.value}",
        f"**Participants:** {', '.join(sorted(result.participating_agents)) or '(none)'}",
        f"**Failed:** {', '.join(sorted(result.failed_agents)) or '(none)'}",
        f"**Veto:** {'TRIGGERED' if result.veto_triggered else 'not triggered'}",
        f"**Duration:** {result.total_latency_ms / 1000:.1f}s",
        "",
    ]
    advisory = result.advisory_context
    if advisory.notes or advisory.failures:
        lines += ["## Advisory Context", "", advisory.as_prompt(), ""]
        lines += [f"*{agent_id} unavailable: {error}*" for agent_id, error in advisory.failures.items()]
        lines.append("")
    lines += ["## Initial Briefs", ""]
    for vote in result.rounds[0].votes:
        if vote.decision is None:
            lines += [f"### {vote.agent_id} (failed)", "", f"*{vote.error}*", ""]
        else:
            lines += [f"### {vote.agent_id} ({vote.decision.verdict.value})", "", vote.decision.summary, ""]

    lines += ["## Cross-Critique", ""]
    for critique in result.rounds[1].critiques:
        marker = " (heuristic)" if critique.heuristic else ""
        lines += [
            f"### {critique.agent_id}{marker}",
            "",
            f"- Agrees with **{critique.agreement.agent}**: {critique.agreement.point}",
            f"- Blind spot in **{critique.blind_spot.agent}**: {critique.blind_spot.concern}",
            f"- Gap addressed: {critique.gap_addressed}",
            "",
        ]

    synthesis = result.synthesis
    lines += ["## Synthesis", "", synthesis.summary or "(no summary)", ""]
    for trade_off in synthesis.trade_offs:
        lines.append(f"- We accept {trade_off.we_accept}; we forgo {trade_off.we_forgo}. {trade_off.rationale}")
    lines.append("")

    lines += ["## Reflection", ""]
    for counterfactual in result.reflection.counterfactuals:
        lines.append(f"- **{counterfactual.agent} alone:** {counterfactual.outcome}. Flaw: {counterfactual.flaw}")
    lines += ["", result.reflection.collective_advantage, ""]
    return lines


def save_to_file(
    report: Decision | ConsensusResult,
    scenario: ScenarioInput,
    output_dir: Path,
    slug_override: str | None = None,
) -> Path:
    """Save a decision or deliberation as a markdown decision-log entry.

    Args:
        report: The Decision (simple path) or ConsensusResult (deliberation).
        scenario: The scenario that was reviewed.
        output_dir: Directory to save the file in.
        slug_override: If provided, use this as the filename stem instead of
            deriving one from the objective. Useful for inbox mode.

    Returns:
        Path to the saved file.
    """
    output_dir.mkdir(parents=True, exist_ok=True)

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    slug = slug_override if slug_override is not None else _slug(scenario.primary_objective)
    filepath = output_dir / f"{timestamp}_{slug}.md"

    lines: list[str] = [
        f"# Qi Council: {scenario.primary_objective[:80]}",
        "",
        f"**Date:** {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}",
    ]
    if scenario.pilot_id:
        lines.append(f"**Pilot:** {scenario.pilot_id}")
    lines += ["", "## Scenario", "", "```", scenario.as_prompt(), "```", ""]

    if isinstance(report, ConsensusResult):
        lines += _consensus_lines(report)
        lines += ["## Final Decision", ""] + _decision_lines(report.final_decision)
    else:
        lines += ["## Decision", ""] + _decision_lines(report)

    filepath.write_text("\n".join(lines), encoding="utf-8")
    logger.info("Decision saved to: %s", filepath)
    return filepath
