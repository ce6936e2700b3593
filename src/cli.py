"""CLI entrypoint for Conclave."""

from __future__ import annotations

import json
import logging
import os
import signal
import sys
from pathlib import Path
from typing import Any, Optional

import click

from src.core.config import AppConfig, _default_config_dir, load_config, load_model_registry
from src.core.exceptions import (
    CircuitOpenError,
    ConcurrentRunError,
    ConfigError,
    ContextStoreError,
    FatalError,
    OrchestrationError,
    StalledRunError,
)
from src.core.factory import ComponentFactory
from src.core.models import PHASE_ACTIONS, CycleReport, NextAction, OverrideRecord, Phase
from src.memory.context_store import ContextStore
from src.memory.shared_cache import SharedMemoryCache
from src.orchestrator.phases import PhaseRouter
from src.orchestrator.session import RunSession

# Errors that end a command with exit code 1 and a one-line message
_EXIT_ERRORS = (
    FatalError,
    CircuitOpenError,
    StalledRunError,
    ConcurrentRunError,
    ContextStoreError,
    ConfigError,
    OrchestrationError,
)

# Track the active session for graceful shutdown
_active_session: Optional[RunSession] = None


def _sigint_handler(signum: int, frame: Any) -> None:
    """Handle Ctrl+C with a short summary instead of a bare traceback."""
    click.echo("\n")
    click.echo(click.style("Interrupted.", fg="yellow", bold=True))
    if _active_session is not None:
        click.echo(f"  Cycles finished: {len(_active_session.reports)}")
        if _active_session.context is not None:
            click.echo(f"  Next run:        #{_active_session.context.run_number}")
    click.echo(
        "\nContext is saved after every cycle. Resume with:\n"
        "  conclave run-cycle"
    )
    sys.exit(130)


def _setup_logging(verbose: bool = False, config_dir: Optional[Path] = None) -> None:
    """Apply logging configuration from config/default.yaml."""
    try:
        config = load_config(config_dir=config_dir)
        level_name = config.logging.level
        fmt = config.logging.format
    except ConfigError:
        level_name = "INFO"
        fmt = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    level = logging.DEBUG if verbose else getattr(logging, level_name.upper(), logging.INFO)
    logging.basicConfig(level=level, format=fmt, stream=sys.stderr)


def _load_app_config(ctx: click.Context) -> AppConfig:
    try:
        return load_config(config_dir=ctx.obj["config_dir"], env=ctx.obj["env"])
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc


def _echo_json(payload: dict[str, Any]) -> None:
    click.echo(json.dumps(payload, indent=2, ensure_ascii=True, default=str))


def _echo_report(report: CycleReport) -> None:
    status = click.style(report.stop_reason.value, fg="green" if report.made_progress else "yellow")
    click.echo(
        f"  Run #{report.run_number}: {status} | {report.turns} turn(s), "
        f"{report.productive_turns} productive, {report.signal_changes} signal change(s), "
        f"phase {report.phase_before.value} -> {report.phase_after.value}, ${report.cost:.4f}"
    )


@click.group()
@click.option("--verbose", is_flag=True, default=False, help="Enable verbose (DEBUG) logging.")
@click.option(
    "--config-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Directory holding default.yaml / models.yaml / prompts/. Default: project config/.",
)
@click.option("--env", default=None, help="Config overlay name, e.g. 'test' loads test.yaml.")
@click.pass_context
def cli(ctx: click.Context, verbose: bool, config_dir: Optional[Path], env: Optional[str]) -> None:
    """Conclave: turn-based multi-actor orchestration."""
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["config_dir"] = config_dir
    ctx.obj["env"] = env
    _setup_logging(verbose=verbose, config_dir=config_dir)
    signal.signal(signal.SIGINT, _sigint_handler)


def _run(ctx: click.Context, max_cycles: int, simulate: bool, humans: tuple[str, ...], workspace: Path) -> None:
    global _active_session
    try:
        bundle = ComponentFactory.create(
            config_dir=ctx.obj["config_dir"],
            env=ctx.obj["env"],
            workspace_dir=workspace,
            simulate=simulate,
            humans=humans,
        )
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc

    session = RunSession.from_bundle(bundle)
    _active_session = session
    try:
        session.run(max_cycles=max_cycles)
    except _EXIT_ERRORS as exc:
        for report in session.reports:
            _echo_report(report)
        raise click.ClickException(f"{type(exc).__name__}: {exc}") from exc
    finally:
        _active_session = None
        ComponentFactory.close(bundle)

    for report in session.reports:
        _echo_report(report)
    if session.context is not None:
        click.echo(
            f"  Next: {session.context.next_action.type.value} -> "
            f"{session.context.next_action.target_actor} (run #{session.context.run_number})"
        )


_simulate_option = click.option(
    "--simulate", is_flag=True, default=False,
    help="Use scripted actors instead of calling the LLM.",
)
_human_option = click.option(
    "--human", "humans", multiple=True,
    help="Roster member driven from this terminal (repeatable).",
)
_workspace_option = click.option(
    "--workspace",
    type=click.Path(file_okay=False, path_type=Path),
    default=Path("."),
    show_default=True,
    help="Project root that actor file operations are confined to.",
)


@cli.command("run-cycle")
@_simulate_option
@_human_option
@_workspace_option
@click.pass_context
def run_cycle(ctx: click.Context, simulate: bool, humans: tuple[str, ...], workspace: Path) -> None:
    """Run exactly one cycle and persist the context."""
    _run(ctx, 1, simulate, humans, workspace)


@cli.command("run")
@click.option("--max-cycles", type=int, default=5, show_default=True, help="Upper bound on cycles.")
@_simulate_option
@_human_option
@_workspace_option
@click.pass_context
def run(
    ctx: click.Context, max_cycles: int, simulate: bool, humans: tuple[str, ...], workspace: Path,
) -> None:
    """Run cycles until completion, a stall, or --max-cycles."""
    if max_cycles < 1:
        raise click.ClickException("--max-cycles must be at least 1.")
    _run(ctx, max_cycles, simulate, humans, workspace)


@cli.command("briefing")
@click.pass_context
def briefing(ctx: click.Context) -> None:
    """Print the briefing the next cycle will start from."""
    config = _load_app_config(ctx)
    store = ContextStore(config.context)
    try:
        context = store.load_or_initialize(config.orchestrator.roster)
    except ContextStoreError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(store.generate_briefing(context))


@cli.command("status")
@click.option("--json", "as_json", is_flag=True, default=False, help="Emit JSON.")
@click.pass_context
def status(ctx: click.Context, as_json: bool) -> None:
    """Show context health and shared-memory statistics."""
    config = _load_app_config(ctx)
    store = ContextStore(config.context)
    cache = SharedMemoryCache(config.cache)
    try:
        context = store.load()
        cache.load(store.cache_path)
    except ContextStoreError as exc:
        raise click.ClickException(str(exc)) from exc

    payload: dict[str, Any] = {
        "state_dir": str(store.state_dir),
        "context": store.context_health(context) if context is not None else None,
        "cache": cache.get_stats(),
        "override_pending": store.override_path.exists(),
    }
    if context is not None:
        payload["next_action"] = context.next_action.model_dump(mode="json")
        payload["total_cost"] = round(context.total_cost, 6)

    if as_json:
        _echo_json(payload)
        return

    click.echo(click.style("  Conclave Status", bold=True))
    click.echo(click.style("  ===============", bold=True))
    click.echo(f"  State dir: {payload['state_dir']}")
    if context is None:
        click.echo("  No run yet. Start one with: conclave run-cycle")
    else:
        health = payload["context"]
        click.echo(f"  Run:       #{health['run_number']} ({health['phase']})")
        click.echo(
            f"  Context:   {health['history_size']} history, {health['decisions_size']} decisions, "
            f"{health['code_changes']} changes ({health['pending_changes']} pending), "
            f"~{health['estimated_tokens']} tokens"
        )
        click.echo(f"  Next:      {context.next_action.type.value} -> {context.next_action.target_actor}")
        click.echo(f"  Cost:      ${context.total_cost:.4f}")
    stats = payload["cache"]
    click.echo(
        f"  Cache:     {stats['total_entries']} entries, {stats['total_tokens']} tokens, "
        f"{stats['hit_count']} hits / {stats['miss_count']} misses, {stats['eviction_count']} evictions"
    )
    if payload["override_pending"]:
        click.echo(click.style("  Override record waiting; applied on the next run.", fg="yellow"))


@cli.command("approve")
@click.pass_context
def approve(ctx: click.Context) -> None:
    """Authorize the reviewed code changes (code_review -> apply_changes)."""
    config = _load_app_config(ctx)
    store = ContextStore(config.context)
    try:
        with store.lock():
            context = store.load()
            if context is None:
                raise click.ClickException("No run to approve. Start one with: conclave run-cycle")
            PhaseRouter().authorize_changes(context, "cli")
            target = context.next_action.target_actor
            if target not in config.orchestrator.roster:
                target = config.orchestrator.roster[0]
            context.next_action = NextAction(
                type=PHASE_ACTIONS[context.phase],
                reason="Code changes authorized from the CLI",
                target_actor=target,
            )
            store.save(context)
    except _EXIT_ERRORS as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Approved {len(context.pending_changes())} pending change(s); next run applies them.")


@cli.command("force-phase")
@click.argument("phase", type=click.Choice([p.value for p in Phase]))
@click.option("--reason", default="Manual override", show_default=True, help="Recorded in key decisions.")
@click.option("--target", default=None, help="Roster member who acts first after the override.")
@click.pass_context
def force_phase(ctx: click.Context, phase: str, reason: str, target: Optional[str]) -> None:
    """Queue a manual phase override for the next run."""
    config = _load_app_config(ctx)
    if target is not None and target not in config.orchestrator.roster:
        raise click.ClickException(f"Unknown actor '{target}'; roster is {config.orchestrator.roster}")

    new_phase = Phase(phase)
    next_action = None
    if target is not None:
        next_action = NextAction(type=PHASE_ACTIONS[new_phase], reason=reason, target_actor=target)
    path = ContextStore(config.context).write_override(
        OverrideRecord(phase=new_phase, reason=reason, next_action=next_action)
    )
    click.echo(f"Override written to {path}; applied at the start of the next run.")


@cli.command("doctor")
@click.pass_context
def doctor(ctx: click.Context) -> None:
    """Check configuration, credentials and the state directory."""
    config_dir = ctx.obj["config_dir"] or _default_config_dir()
    checks: list[tuple[str, bool, str]] = []

    api_key = os.getenv("OPENROUTER_API_KEY", "")
    if api_key:
        checks.append(("OPENROUTER_API_KEY", True, api_key[:12] + "..." + api_key[-4:]))
    else:
        checks.append(("OPENROUTER_API_KEY", False, "Not set (only --simulate runs will work)"))

    config: Optional[AppConfig] = None
    try:
        config = load_config(config_dir=config_dir, env=ctx.obj["env"])
        checks.append(("config/default.yaml", True, f"Roster: {', '.join(config.orchestrator.roster)}"))
    except ConfigError as exc:
        checks.append(("config/default.yaml", False, str(exc)))

    if config is not None:
        try:
            registry = load_model_registry(config_dir=config_dir)
            missing = [
                name for name in config.orchestrator.roster
                if name not in registry.actors and not registry.default_model
            ]
            if missing:
                checks.append(("config/models.yaml", False, f"No model for: {', '.join(missing)}"))
            else:
                checks.append(("config/models.yaml", True, f"{len(registry.actors)} actor model(s)"))
        except ConfigError as exc:
            checks.append(("config/models.yaml", False, str(exc)))

        state_dir = Path(config.context.state_dir)
        try:
            state_dir.mkdir(parents=True, exist_ok=True)
            check_file = state_dir / ".doctor-check"
            check_file.write_text("ok", encoding="utf-8")
            check_file.unlink()
            checks.append(("State directory", True, str(state_dir)))
        except OSError as exc:
            checks.append(("State directory", False, f"{state_dir}: {exc}"))

    click.echo()
    click.echo(click.style("  Conclave Doctor", bold=True))
    click.echo(click.style("  ===============", bold=True))
    click.echo()

    failed = 0
    for label, ok, detail in checks:
        if ok:
            icon = click.style("PASS", fg="green", bold=True)
        else:
            icon = click.style("FAIL", fg="red", bold=True)
            failed += 1
        click.echo(f"  [{icon}] {label}")
        click.echo(f"         {detail}")

    click.echo()
    if failed == 0:
        click.echo(click.style(f"  All {len(checks)} checks passed.", fg="green", bold=True))
    else:
        click.echo(click.style(f"  {failed} of {len(checks)} checks failed.", fg="red", bold=True))
    click.echo()


def main() -> None:
    """Entry point used by `conclave` console script."""
    from dotenv import load_dotenv
    load_dotenv(Path(__file__).parent.parent / ".env", override=True)
    cli()


if __name__ == "__main__":
    main()
