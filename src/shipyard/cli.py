from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click

from shipyard.collaborators import (
    ActReplay,
    GhQueueTimeSource,
    MinisignSigner,
    ResilientNativeRemote,
    ResilientQueueTimeSource,
    RetryPolicy,
    SshRemote,
    SyftSbomGenerator,
)
from shipyard.config import (
    DEFAULT_CONFIG_NAME,
    ConfigError,
    ShipyardConfig,
    load_config,
    save_config,
)
from shipyard.coordinator import Collaborators, FallbackRequest, RunCoordinator
from shipyard.errors import EXIT_INTERRUPTED, EXIT_INVALID_ARGS, ShipyardError
from shipyard.models import utcnow_iso
from shipyard.release.installer import write_installer
from shipyard.release.naming import PatternExtractor, parse_workflow_patterns, validate
from shipyard.state import LockManager, StateDirectory


class UsageProblem(click.ClickException):
    exit_code = EXIT_INVALID_ARGS


@dataclass(slots=True)
class Options:
    config_path: Path
    json_output: bool
    verbose: bool


@dataclass(slots=True)
class Runtime:
    config_path: Path
    config: ShipyardConfig
    store: StateDirectory
    locks: LockManager
    coordinator: RunCoordinator


def _render_event(event: dict[str, Any]) -> str:
    name = event.get("event", "event")
    if name == "target_output":
        return f"[{event.get('job')}] {event.get('line', '')}"
    fields = " ".join(
        f"{key}={value}" for key, value in event.items() if key != "event" and value is not None
    )
    return f"{utcnow_iso()} {name} {fields}".rstrip()


def _event_hook(options: Options):
    if not options.verbose:
        return None

    def _echo(event: dict[str, Any]) -> None:
        click.echo(_render_event(event), err=True)

    return _echo


def _build_collaborators(config: ShipyardConfig, event_hook) -> Collaborators:
    policy = RetryPolicy(
        max_retries=max(0, int(config.retry.max_retries)),
        backoff_seconds=max(0.0, float(config.retry.backoff_seconds)),
        timeout_seconds=max(1.0, float(config.retry.timeout_seconds)),
    )
    signer = None
    if config.release.sign:
        if not config.release.minisign_key:
            raise UsageProblem("[release] sign = true requires minisign_key.")
        signer = MinisignSigner(Path(config.release.minisign_key).expanduser())
    return Collaborators(
        queue=ResilientQueueTimeSource(GhQueueTimeSource(), policy, event_hook),
        container=ActReplay(config.state.work_path() / "artifacts" / "act"),
        native=ResilientNativeRemote(SshRemote(), policy, event_hook),
        signer=signer,
        sbom=SyftSbomGenerator() if config.release.sbom else None,
    )


def _load_runtime(options: Options) -> Runtime:
    try:
        config = load_config(options.config_path)
    except ConfigError as exc:
        raise UsageProblem(str(exc)) from exc
    store = StateDirectory(Path(config.state.state_dir))
    locks = LockManager(store, stale_after_seconds=float(config.state.lock_timeout_seconds))
    event_hook = _event_hook(options)
    coordinator = RunCoordinator(
        config,
        _build_collaborators(config, event_hook),
        locks,
        event_hook=event_hook,
    )
    return Runtime(
        config_path=options.config_path,
        config=config,
        store=store,
        locks=locks,
        coordinator=coordinator,
    )


def _emit_json(payload: dict[str, Any]) -> None:
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


def _finish(ctx: click.Context, options: Options, envelope: dict[str, Any]) -> None:
    if options.json_output:
        _emit_json(envelope)
    else:
        details = envelope.get("details", {})
        run_id = envelope.get("run_id")
        suffix = f" ({run_id})" if run_id else ""
        click.echo(f"{envelope['command']}: {envelope['status']}{suffix}")
        for target in details.get("targets", []) if isinstance(details, dict) else []:
            cause = f" [{target['cause']}]" if target.get("cause") else ""
            click.echo(f"  {target['job']:<24} {target['platform']:<16} {target['status']}{cause}")
        for error in details.get("errors", []) if isinstance(details, dict) else []:
            click.echo(f"  error: {error}", err=True)
    ctx.exit(int(envelope["exit_code"]))


@click.group()
@click.option(
    "--config",
    "config_value",
    default=DEFAULT_CONFIG_NAME,
    show_default=True,
    type=click.Path(dir_okay=False, path_type=Path),
)
@click.option("--json", "json_output", is_flag=True, default=False, help="Print the JSON envelope.")
@click.option("--verbose", is_flag=True, default=False, help="Stream events to stderr.")
@click.pass_context
def cli(ctx: click.Context, config_value: Path, json_output: bool, verbose: bool) -> None:
    """Shipyard: local fallback releases when hosted CI is throttled."""
    ctx.obj = Options(
        config_path=config_value.expanduser().resolve(),
        json_output=json_output,
        verbose=verbose,
    )


@cli.command("init")
@click.pass_obj
def init_command(options: Options) -> None:
    try:
        config = load_config(options.config_path)
    except ConfigError as exc:
        raise UsageProblem(str(exc)) from exc
    save_config(options.config_path, config)
    click.echo(f"Config: {options.config_path}")
    click.echo(f"State directory: {config.state.state_dir}")
    click.echo(f"Work directory: {config.state.work_path()}")


@cli.command("check")
@click.argument("repos", nargs=-1, required=True)
@click.option("--threshold", type=float, default=None, help="Queue seconds counted as throttled.")
@click.pass_context
def check_command(ctx: click.Context, repos: tuple[str, ...], threshold: float | None) -> None:
    options: Options = ctx.obj
    runtime = _load_runtime(options)
    envelope = asyncio.run(runtime.coordinator.check(list(repos), threshold))
    if options.json_output:
        _emit_json(envelope)
    else:
        details = envelope["details"]
        for label in ("throttled", "healthy", "errors"):
            for item in details.get(label, []):
                if isinstance(item, str):
                    click.echo(f"error: {item}", err=True)
                    continue
                seconds = item.get("queue_seconds")
                shown = f"{seconds:.0f}s" if seconds is not None else item.get("error", "")
                click.echo(f"{label:<10} {item['repo']:<40} {shown}")
    ctx.exit(int(envelope["exit_code"]))


@cli.command("plan")
@click.argument("repo")
@click.option("--platform", "platforms", multiple=True, help="os/arch to build, repeatable.")
@click.pass_obj
def plan_command(options: Options, repo: str, platforms: tuple[str, ...]) -> None:
    runtime = _load_runtime(options)
    try:
        plan = runtime.coordinator.plan(repo, list(platforms))
    except ConfigError as exc:
        raise UsageProblem(str(exc)) from exc
    except ShipyardError as exc:
        raise UsageProblem(str(exc)) from exc

    payload = {**plan.to_dict(), "analysis": plan.workflow.analyze()}
    if options.json_output:
        _emit_json(payload)
        return
    for target in plan.targets:
        needs = f" needs {', '.join(target.depends_on)}" if target.depends_on else ""
        click.echo(
            f"{target.job:<24} {target.platform:<16} {target.strategy} @ {target.host}{needs}"
        )
    for target in plan.rejected:
        click.echo(f"{target.job:<24} rejected: {target.detail}")
    for platform in plan.missing_platforms:
        click.echo(f"no job builds {platform}", err=True)


@cli.command("fallback")
@click.argument("repo")
@click.option("--version", "version", required=True, help="Tag to build, e.g. v1.2.3.")
@click.option("--platform", "platforms", multiple=True, help="os/arch to build, repeatable.")
@click.option("--skip-checks", is_flag=True, default=False, help="Build even if CI is healthy.")
@click.option("--build-only", is_flag=True, default=False, help="Skip consolidation and signing.")
@click.option("--dry-run", is_flag=True, default=False, help="Plan without building.")
@click.pass_context
def fallback_command(
    ctx: click.Context,
    repo: str,
    version: str,
    platforms: tuple[str, ...],
    skip_checks: bool,
    build_only: bool,
    dry_run: bool,
) -> None:
    options: Options = ctx.obj
    runtime = _load_runtime(options)
    request = FallbackRequest(
        repo=repo,
        version=version,
        platforms=list(platforms),
        skip_checks=skip_checks,
        build_only=build_only,
        dry_run=dry_run,
    )
    try:
        envelope = asyncio.run(runtime.coordinator.fallback(request))
    except ConfigError as exc:
        raise UsageProblem(str(exc)) from exc
    except KeyboardInterrupt:
        envelope = runtime.coordinator.last_report
        if envelope is None:
            ctx.exit(EXIT_INTERRUPTED)
    _finish(ctx, options, envelope)


@cli.command("locks")
@click.option("--sweep", is_flag=True, default=False, help="Release stale locks.")
@click.pass_obj
def locks_command(options: Options, sweep: bool) -> None:
    runtime = _load_runtime(options)
    reclaimed = runtime.locks.sweep() if sweep else []
    states = runtime.locks.list_locks()
    if options.json_output:
        _emit_json(
            {
                "locks": [state.to_dict() for state in states],
                "reclaimed": [state.to_dict() for state in reclaimed],
            }
        )
        return
    for state in reclaimed:
        click.echo(f"reclaimed {state.repo} (was {state.holder_run_id})")
    if not states:
        click.echo("No locks held.")
        return
    for state in states:
        label = "stale" if state.stale else "live"
        click.echo(f"{state.repo:<40} {label:<6} {state.holder_run_id} since {state.acquired_at}")


@cli.command("naming")
@click.argument("install_script", type=click.Path(dir_okay=False, path_type=Path))
@click.option("--workflow", type=click.Path(dir_okay=False, path_type=Path), default=None)
@click.option("--name", "binary_name", default=None, help="Tool name for validation.")
@click.pass_obj
def naming_command(
    options: Options, install_script: Path, workflow: Path | None, binary_name: str | None
) -> None:
    pattern = PatternExtractor().extract_file(install_script)
    payload: dict[str, Any] = {"script": str(install_script), "pattern": pattern.to_dict()}
    if workflow is not None:
        declared = parse_workflow_patterns(workflow)
        payload["workflow_patterns"] = declared
        if pattern.template is not None and declared:
            name = binary_name or install_script.parent.name
            payload["validation"] = validate(
                name, declared[0], pattern.template, declared[1:]
            ).to_dict()
    if options.json_output:
        _emit_json(payload)
        return
    if pattern.template is None:
        click.echo("No naming convention detected.")
        return
    click.echo(f"{pattern.template}  ({pattern.confidence} via {pattern.source})")
    for item in payload.get("workflow_patterns", []):
        click.echo(f"workflow: {item}")
    validation = payload.get("validation")
    if validation and validation["status"] != "ok":
        for message in validation["messages"]:
            click.echo(f"warning: {message}", err=True)


@cli.command("installer")
@click.argument("repo")
@click.option("--version", "version", required=True)
@click.option("--output", type=click.Path(dir_okay=False, path_type=Path), default=None)
@click.pass_obj
def installer_command(options: Options, repo: str, version: str, output: Path | None) -> None:
    runtime = _load_runtime(options)
    try:
        script, pattern = runtime.coordinator.installer(repo, version)
    except ConfigError as exc:
        raise UsageProblem(str(exc)) from exc
    except ShipyardError as exc:
        raise click.ClickException(str(exc)) from exc
    if output is None:
        click.echo(script, nl=False)
        return
    write_installer(output, script)
    click.echo(f"Wrote {output} ({pattern['confidence']}: {pattern['template']})")
