# cli.py
from __future__ import annotations

import logging
import signal
import subprocess
import sys
import uuid
from pathlib import Path
from typing import List

import click

from verdictci import git
from verdictci.config import PipelineConfig, load_config
from verdictci.errors import ConfigError
from verdictci.model import ChangeSet, JobResult, RunType, RunVerdict, TriggerEvent
from verdictci.orchestrator import JsonFileReporter, Orchestrator
from verdictci.runner import ShellStepRunner
from verdictci.scheduler import CancellationToken
from verdictci.ui.console import Console, ConsoleReporter, get_console, set_console

DEFAULT_CONFIG_FILES = (
    "verdictci.yaml",
    "verdictci.yml",
    "verdictci.json",
    "verdictci_workflow.py",
)

EXIT_CODES = {
    RunVerdict.PASSED: 0,
    RunVerdict.FAILED: 1,
    RunVerdict.CANCELLED: 2,
}


def find_config_files(root: Path = Path(".")) -> list[Path]:
    """Pipeline configuration files present in `root`."""
    return [root / name for name in DEFAULT_CONFIG_FILES if (root / name).exists()]


def discover_config(config_arg: str | None) -> Path:
    """
    Discover the configuration file from argument or default.

    Raises:
        SystemExit: If no config can be found or several candidates exist
    """
    console = get_console()

    if config_arg:
        path = Path(config_arg)
        if not path.exists():
            console.print_error(
                "Configuration file not found",
                f"Could not find configuration file: {config_arg}",
                suggestion="Create a configuration file or specify a different path:\n  verdictci run --config verdictci.yaml",
            )
            sys.exit(1)
        return path

    found = find_config_files()
    if not found:
        console.print_error(
            "No configuration file found",
            "Could not find any pipeline configuration.",
            details=["Looked for:", *(f"  {name}" for name in DEFAULT_CONFIG_FILES)],
            suggestion="Create verdictci.yaml, or specify one explicitly:\n  verdictci run --config path/to/pipeline.yaml",
        )
        sys.exit(1)
    if len(found) > 1:
        console.print_error(
            "Multiple configuration files found",
            "Found several configuration files. Please specify which one to use:",
            details=[f"  {p}" for p in found],
            suggestion=f"verdictci run --config {found[0].name}",
        )
        sys.exit(1)
    return found[0]


def _load(config_arg: str | None) -> tuple[Path, PipelineConfig]:
    path = discover_config(config_arg)
    try:
        return path, load_config(path)
    except ConfigError as e:
        get_console().print_error("Invalid configuration", e.message, details=e.details)
        sys.exit(1)


def _collect_changes(
    changed: tuple[str, ...],
    changes_file,
    use_git_diff: bool,
    compare_ref: str,
) -> ChangeSet:
    paths: List[str] = list(changed)
    if changes_file is not None:
        paths.extend(line.strip() for line in changes_file if line.strip())
    if use_git_diff:
        try:
            paths.extend(git.collect_changes(compare_ref))
        except (subprocess.CalledProcessError, FileNotFoundError) as e:
            get_console().print_error(
                "Could not compute git diff",
                str(e),
                suggestion="Run inside a git repository, or pass --changed / --changes-file instead.",
            )
            sys.exit(1)
    return ChangeSet.of(paths)


def _event_options(fn):
    """Options shared by `plan` and `run` that describe the trigger event."""
    options = [
        click.option("--config", "config_path", default=None, help="Pipeline configuration (defaults to verdictci.yaml if present)"),
        click.option("--changed", multiple=True, help="Changed path (repeatable)"),
        click.option("--changes-file", type=click.File("r"), default=None, help="File with one changed path per line ('-' for stdin)"),
        click.option("--git-diff/--no-git-diff", default=False, help="Add changed paths from git"),
        click.option("--compare-ref", default="origin/main", show_default=True, help="Git ref to diff against"),
        click.option(
            "--run-type",
            type=click.Choice([t.value for t in RunType]),
            default=RunType.PUSH.value,
            show_default=True,
            help="Kind of trigger",
        ),
        click.option("--ref", default=None, help="Branch or commit the run is for"),
    ]
    for option in reversed(options):
        fn = option(fn)
    return fn


def _event(changed, changes_file, git_diff, compare_ref, run_type, ref) -> TriggerEvent:
    changes = _collect_changes(changed, changes_file, git_diff, compare_ref)
    return TriggerEvent(changes=changes, run_type=RunType(run_type), ref=ref)


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.pass_context
def cli(ctx, debug):
    """VerdictCI: change-aware CI pipeline orchestrator."""
    console = Console(debug=debug)
    set_console(console)
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.option("--config", "config_path", default=None, help="Pipeline configuration file")
def validate(config_path):
    """Validate a pipeline configuration without running anything."""
    console = get_console()
    path, config = _load(config_path)
    try:
        # an empty change set enables every area, so the whole graph is checked
        Orchestrator(config, ShellStepRunner(".")).plan(TriggerEvent(ChangeSet()))
    except ConfigError as e:
        console.print_error("Invalid configuration", e.message, details=e.details)
        sys.exit(1)
    areas = config.resolved_areas()
    console.print_info(
        f"OK: {path.name}: {len(config.jobs)} job(s), {len(config.path_rules)} categor{'y' if len(config.path_rules) == 1 else 'ies'}, "
        f"{len(areas)} area(s), {len(config.quality_gates)} quality gate(s)"
    )


@cli.command()
@_event_options
def plan(config_path, changed, changes_file, git_diff, compare_ref, run_type, ref):
    """Show which areas and jobs a change set would trigger."""
    console = get_console()
    _, config = _load(config_path)
    event = _event(changed, changes_file, git_diff, compare_ref, run_type, ref)

    try:
        run_plan = Orchestrator(config, ShellStepRunner(".")).plan(event)
    except ConfigError as e:
        console.print_error("Invalid configuration", e.message, details=e.details)
        sys.exit(1)

    console.print_categories(run_plan.categories)
    console.print_flags(run_plan.flags)
    console.print_plan(run_plan)


@cli.command()
@_event_options
@click.option("--workers", default=None, type=click.IntRange(min=1), help="Override max_parallelism")
@click.option("--repo-root", default=".", show_default=True, help="Repository root for steps and cache inputs")
@click.option("--report-json", default=None, help="Also write the report as JSON to this path")
@click.pass_context
def run(ctx, config_path, changed, changes_file, git_diff, compare_ref, run_type, ref, workers, repo_root, report_json):
    """Run the pipeline for a change set."""
    console = get_console()
    path, config = _load(config_path)
    if workers is not None:
        config = config.model_copy(update={"max_parallelism": workers})
    event = _event(changed, changes_file, git_diff, compare_ref, run_type, ref)
    if event.ref is None and git_diff:
        try:
            event = TriggerEvent(event.changes, event.run_type, git.current_ref())
        except (subprocess.CalledProcessError, FileNotFoundError):
            console.print_debug("could not determine current git ref")

    def on_result(result: JobResult) -> None:
        if result.status.terminal:
            console.print_job_result(result)

    orchestrator = Orchestrator(config, ShellStepRunner(repo_root), repo_root=repo_root, listener=on_result)
    reporters = [ConsoleReporter(console)]
    if report_json:
        reporters.append(JsonFileReporter(report_json))

    token = CancellationToken()
    run_id = uuid.uuid4().hex[:12]

    def interrupt(signum, frame):
        if not token.cancel("interrupted by user"):
            # second Ctrl-C: stop waiting for the grace period
            raise KeyboardInterrupt
        console.print_info("\nCancelling run (Ctrl-C again to abort)...")

    previous = signal.signal(signal.SIGINT, interrupt)
    try:
        try:
            run_plan = orchestrator.plan(event)
        except ConfigError as e:
            console.print_error("Invalid configuration", e.message, details=e.details)
            sys.exit(1)
        active = sum(1 for r in run_plan.plan.results().values() if not r.status.terminal)
        console.print_run_started(run_id=run_id, config=path.name, job_count=active, ref=event.ref)
        console.print_categories(run_plan.categories)

        report = orchestrator.run(event, token, run_id=run_id)
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(130)
    except Exception as e:
        console.print_exception(e)
        sys.exit(1)
    finally:
        signal.signal(signal.SIGINT, previous)

    for reporter in reporters:
        reporter.report(report)
    sys.exit(EXIT_CODES[report.verdict])


@cli.command("cache-key")
@click.option("--config", "config_path", default=None, help="Pipeline configuration file")
@click.option("--repo-root", default=".", show_default=True, help="Repository root for cache inputs")
@click.argument("job_id")
def cache_key(config_path, repo_root, job_id):
    """Print the cache key a job would use right now."""
    from verdictci.cache import CacheKeyResolver, CacheStore, hash_inputs

    console = get_console()
    _, config = _load(config_path)
    specs = {spec.id: spec for spec in config.job_specs()}
    spec = specs.get(job_id)
    if spec is None:
        console.print_error("Unknown job", f"No job named '{job_id}'", details=[f"jobs: {', '.join(specs)}"])
        sys.exit(1)
    if spec.cache is None:
        console.print_error("Job is not cached", f"Job '{job_id}' declares no cache section")
        sys.exit(1)

    inputs = hash_inputs(repo_root, spec.cache.inputs)
    key = CacheKeyResolver(config.runner_context).resolve(spec.cache.namespace, inputs)
    console.print_info(key)

    cache_dir = Path(config.cache_dir)
    if not cache_dir.is_absolute():
        cache_dir = Path(repo_root) / cache_dir
    entry = CacheStore(cache_dir).lookup(key)
    console.print_debug(f"inputs: {len(inputs)} file(s); namespace: {spec.cache.namespace}")
    console.print_debug(f"stored: {'yes (' + entry.location + ')' if entry else 'no'}")


if __name__ == "__main__":
    cli()
