"""Click CLI: loads config, builds the council, runs advice and writes the decision log."""

import asyncio
import json
import logging
import sys
from pathlib import Path

import click
from dotenv import load_dotenv
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.progress import Progress, SpinnerColumn, TextColumn, TimeElapsedColumn

from config.config_loader import AppConfig, load_config
from qi_council.council import CouncilService
from qi_council.healthcheck import run_health_checks
from qi_council.inbox import archive_file, ensure_dirs, scan_inbox, scenario_from_file
from qi_council.models import ConsensusResult, PhaseRecord, ScenarioInput
from qi_council.output import (
    consensus_to_dict,
    decision_to_dict,
    print_consensus,
    print_decision,
    print_metrics,
    print_phase_summary,
    save_to_file,
)
from qi_council.schema import Decision

logger = logging.getLogger(__name__)

console = Console(legacy_windows=False)


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False)],
    )


def _parse_agents(agents_arg: str | None) -> list[str] | None:
    """Split a comma-separated agent list. None or blank means the configured panel."""
    if not agents_arg:
        return None
    agents = [a.strip() for a in agents_arg.split(",") if a.strip()]
    return agents or None


def _scenario_from_options(
    objective: str | None,
    current: str | None,
    target: str | None,
    harms: str | None,
    voices: str | None,
    signals: str | None,
    pilot: str | None,
) -> ScenarioInput:
    missing = [flag for flag, value in (("--objective", objective), ("--current", current),
                                        ("--target", target)) if not value]
    if missing:
        raise click.UsageError(f"Missing {', '.join(missing)} (or use --file)")
    return ScenarioInput(
        primary_objective=objective,
        current_state_description=current,
        target_state_description=target,
        known_harms=harms,
        community_voice=voices,
        detected_signals=signals,
        pilot_id=pilot,
    )


async def _run_advice(
    service: CouncilService,
    scenario: ScenarioInput,
    deliberate: bool,
    agent_ids: list[str] | None,
    escalate: bool,
    quiet: bool,
) -> Decision | ConsensusResult:
    """Run one advisory request, with a spinner unless quiet."""
    if quiet:
        if deliberate:
            return await service.advise_with_deliberation(scenario, agent_ids=agent_ids)
        return await service.advise_simple(scenario, escalate=escalate)

    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        TimeElapsedColumn(),
        console=console,
        transient=True,
    ) as progress:
        if not deliberate:
            progress.add_task("Consulting the council...", total=None)
            return await service.advise_simple(scenario, escalate=escalate)

        task = progress.add_task("Deliberating...", total=None)

        def on_phase_complete(record: PhaseRecord) -> None:
            print_phase_summary(record)
            progress.update(task, description=f"Deliberating (finished {record.phase.value})...")

        return await service.advise_with_deliberation(
            scenario, agent_ids=agent_ids, on_phase_complete=on_phase_complete,
        )


def _report(
    report: Decision | ConsensusResult,
    scenario: ScenarioInput,
    output_dir: Path | None,
    as_json: bool,
    slug_override: str | None = None,
) -> Path | None:
    if as_json:
        data = consensus_to_dict(report) if isinstance(report, ConsensusResult) else decision_to_dict(report)
        click.echo(json.dumps(data, indent=2))
    elif isinstance(report, ConsensusResult):
        print_consensus(report)
    else:
        print_decision(report)

    if output_dir is None:
        return None
    saved = save_to_file(report, scenario, output_dir, slug_override=slug_override)
    if not as_json:
        console.print(f"\n[dim]Saved to: {saved}[/dim]")
    return saved


@click.group()
@click.option("--verbose", is_flag=True, help="Enable DEBUG-level logging")
@click.option("--settings", "settings_path", default=None, type=click.Path(dir_okay=False),
              help="Path to settings.yaml (default: bundled config)")
@click.pass_context
def main(ctx: click.Context, verbose: bool, settings_path: str | None) -> None:
    """Qi Council -- dignity-first governance advice from a multi-model council.

    \b
    Examples:
      qi-council advise -o "Reduce burnout" --current "..." --target "..."
      qi-council advise --file pilot.md --deliberate
      qi-council advise --file pilot.md --deliberate --agents lynn,sylvia,audre
      qi-council inbox
      qi-council check
    """
    load_dotenv()
    _setup_logging(verbose)

    try:
        config = load_config(Path(settings_path)) if settings_path else load_config()
    except (FileNotFoundError, ValueError) as exc:
        console.print(f"[bold red]Config error:[/bold red] {escape(str(exc))}")
        sys.exit(1)

    if not config.available_providers:
        logger.warning("No API keys configured; advice will come from fallback heuristics")
    ctx.obj = config


@main.command()
@click.option("--objective", "-o", default=None, help="Primary objective of the pilot")
@click.option("--current", default=None, help="Current state description")
@click.option("--target", default=None, help="Target state description")
@click.option("--harms", default=None, help="Known harms")
@click.option("--voices", default=None, help="Community voice testimony")
@click.option("--signals", default=None, help="Detected signals (e.g. dog_whistle)")
@click.option("--pilot", default=None, help="Pilot identifier for the decision log")
@click.option("--file", "scenario_file", type=click.Path(exists=True, dir_okay=False),
              help="Read the scenario from a .md file with YAML frontmatter")
@click.option("--deliberate", is_flag=True, help="Run the full four-phase deliberation")
@click.option("--agents", default=None, help="Comma-separated agent ids for deliberation")
@click.option("--escalate", is_flag=True, help="Let the veto agent review the chain result")
@click.option("--json", "as_json", is_flag=True, help="Print the result as JSON")
@click.option("--output", "output_path", default=None, help="Output directory (default: from config)")
@click.option("--no-save", is_flag=True, help="Do not write a decision log file")
@click.option("--show-metrics", is_flag=True, help="Print provider call metrics afterwards")
@click.pass_obj
def advise(
    config: AppConfig,
    objective: str | None,
    current: str | None,
    target: str | None,
    harms: str | None,
    voices: str | None,
    signals: str | None,
    pilot: str | None,
    scenario_file: str | None,
    deliberate: bool,
    agents: str | None,
    escalate: bool,
    as_json: bool,
    output_path: str | None,
    no_save: bool,
    show_metrics: bool,
) -> None:
    """Advise on one pilot scenario."""
    try:
        if scenario_file:
            scenario, _ = scenario_from_file(Path(scenario_file))
        else:
            scenario = _scenario_from_options(objective, current, target, harms, voices, signals, pilot)
    except ValueError as exc:
        raise click.UsageError(str(exc)) from exc

    service = CouncilService.from_config(config)
    try:
        report = asyncio.run(
            _run_advice(service, scenario, deliberate, _parse_agents(agents), escalate, quiet=as_json)
        )
    except ValueError as exc:
        console.print(f"[bold red]Error:[/bold red] {escape(str(exc))}")
        sys.exit(1)

    output_dir = None if no_save else (Path(output_path) if output_path else config.defaults.output_dir)
    _report(report, scenario, output_dir, as_json)

    if show_metrics and not as_json:
        print_metrics(service.get_observability_snapshot())


async def _run_inbox(
    service: CouncilService,
    inbox_dir: Path,
    archive_dir: Path,
    output_dir: Path,
    deliberate_cli: bool,
    agents_cli: str | None,
) -> None:
    """Process all .md scenario files in the inbox folder.

    Precedence for per-file settings: CLI flag > frontmatter > default.
    """
    ensure_dirs(inbox_dir, archive_dir)
    files = scan_inbox(inbox_dir)

    if not files:
        click.echo("No files in inbox.")
        return

    for file_path in files:
        try:
            scenario, meta = scenario_from_file(file_path)
            deliberate = deliberate_cli or bool(meta.get("deliberate", False))
            agents_arg = agents_cli if agents_cli is not None else meta.get("agents")
            if isinstance(agents_arg, list):
                agents_arg = ",".join(str(a) for a in agents_arg)
            report = await _run_advice(
                service, scenario, deliberate, _parse_agents(agents_arg),
                escalate=bool(meta.get("escalate", False)), quiet=True,
            )
            saved = _report(report, scenario, output_dir, as_json=False, slug_override=file_path.stem)
            archived = archive_file(file_path, archive_dir)
            click.echo(f"Processed: {file_path.name} -> {saved} (archived: {archived.name})")
        except Exception as e:
            logger.error("Failed: %s -- %s", file_path.name, e)
            archive_file(file_path, archive_dir, failed=True)


@main.command()
@click.option("--inbox-dir", "inbox_dir_override", default=None,
              help="Override inbox folder path (default: from config)")
@click.option("--deliberate", is_flag=True, help="Deliberate on every file")
@click.option("--agents", default=None, help="Comma-separated agent ids for deliberation")
@click.option("--output", "output_path", default=None, help="Output directory (default: from config)")
@click.pass_obj
def inbox(
    config: AppConfig,
    inbox_dir_override: str | None,
    deliberate: bool,
    agents: str | None,
    output_path: str | None,
) -> None:
    """Advise on every scenario file in the inbox, then archive it."""
    inbox_dir = Path(inbox_dir_override) if inbox_dir_override else config.defaults.inbox_dir
    archive_dir = inbox_dir / "archive" if inbox_dir_override else config.defaults.archive_dir
    output_dir = Path(output_path) if output_path else config.defaults.output_dir
    service = CouncilService.from_config(config)
    asyncio.run(_run_inbox(service, inbox_dir, archive_dir, output_dir, deliberate, agents))


@main.command()
@click.pass_obj
def check(config: AppConfig) -> None:
    """Ping every configured agent's provider."""
    service = CouncilService.from_config(config)
    console.print("\n[bold]Checking providers...[/bold]")
    results: dict[str, tuple[bool, str]] = asyncio.run(run_health_checks(service.adapters))

    failed = 0
    for name in sorted(results):
        ok, err = results[name]
        if ok:
            console.print(f"  [green]OK  [/green] {name}")
        else:
            failed += 1
            short_err = err.splitlines()[0][:120] if err else "unknown error"
            console.print(f"  [red]FAIL[/red] {name}: {escape(short_err)}")

    if failed == len(results):
        console.print("\n[bold red]Error:[/bold red] No providers passed the health check.")
        sys.exit(1)
    console.print(f"\n{len(results) - failed}/{len(results)} agents reachable")


if __name__ == "__main__":
    main()
