"""CLI entry point for the specwright spec runner.

Provides ``run`` and ``list`` sub-commands using Click and Rich for output
formatting.

Usage::

    specwright run specs/calculator_spec.py --parallel --timeout 2s
    specwright run specs/calculator_spec.py --tag fast --json report.json
    specwright list specs/calculator_spec.py
"""

from __future__ import annotations

import asyncio
import contextlib
import dataclasses
import importlib.util
import logging
import signal
import sys
from pathlib import Path
from types import ModuleType

import click
from dotenv import load_dotenv
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table
from rich.tree import Tree

from specwright.dsl import SpecBuilder
from specwright.runner.config import RunnerConfig, build_pipeline
from specwright.runner.errors import SpecwrightError
from specwright.runner.events import RunEvent, RunEventEmitter, RunEventType
from specwright.runner.models import RetryPolicy, SpecContext, SpecStatus, parse_duration
from specwright.runner.report import SpecReport, StreamingStats
from specwright.runner.scheduler import SpecRunner

console = Console()

_STATUS_STYLES = {
    SpecStatus.PASSED: ("green", "✓"),
    SpecStatus.FAILED: ("red", "✗"),
    SpecStatus.PENDING: ("yellow", "…"),
    SpecStatus.SKIPPED: ("dim", "-"),
}


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True)],
    )


def _duration(
    ctx: click.Context, param: click.Parameter, value: str | None
) -> float | None:
    if value is None:
        return None
    try:
        return parse_duration(value)
    except ValueError as exc:
        raise click.BadParameter(str(exc)) from exc


def load_spec_file(path: str | Path) -> SpecContext:
    """Import *path* and collect the spec trees it declares.

    Every module-level :class:`SpecBuilder` and root :class:`SpecContext`
    is collected.  A single tree is returned as is; several become the
    children of a root named after the file.

    Raises:
        SpecwrightError: If the module declares no spec tree.
    """
    path = Path(path)
    module = _import_module(path)

    roots: list[SpecContext] = []
    for value in vars(module).values():
        if isinstance(value, SpecBuilder):
            root = value.build()
        elif isinstance(value, SpecContext) and value.parent is None:
            root = value
        else:
            continue
        if not any(r is root for r in roots):
            roots.append(root)

    if not roots:
        raise SpecwrightError(f"No SpecBuilder or SpecContext found in {path}")
    if len(roots) == 1:
        return roots[0]
    root = SpecContext(description=path.stem)
    for child in roots:
        root.add_child(child)
    return root


def _import_module(path: Path) -> ModuleType:
    module_name = f"_specwright_spec_{path.stem}"
    spec = importlib.util.spec_from_file_location(module_name, path)
    if spec is None or spec.loader is None:
        raise SpecwrightError(f"Cannot import spec file {path}")
    module = importlib.util.module_from_spec(spec)
    sys.modules[module_name] = module
    sys.path.insert(0, str(path.parent.resolve()))
    try:
        spec.loader.exec_module(module)
    finally:
        sys.path.pop(0)
    return module


@click.group()
@click.version_option(package_name="specwright")
def main() -> None:
    """Specwright - a BDD spec runner with hooks, focus, retries and timeouts."""
    load_dotenv()


@main.command()
@click.argument("spec_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--parallel", is_flag=True, help="Run the specs of a context concurrently.")
@click.option(
    "--max-parallelism",
    type=click.IntRange(min=0),
    default=None,
    help="Upper bound on concurrent specs (0 = CPU count).",
)
@click.option("--retry", type=click.IntRange(min=0), default=None, help="Retries for failing specs.")
@click.option("--retry-delay", callback=_duration, default=None, help="Pause between attempts (e.g. 250ms).")
@click.option("--timeout", callback=_duration, default=None, help="Per-attempt timeout (e.g. 2s).")
@click.option("--bail", is_flag=True, help="Stop after the first failure.")
@click.option("--tag", "tags", multiple=True, help="Only run specs with this tag.")
@click.option("--exclude-tag", "exclude_tags", multiple=True, help="Never run specs with this tag.")
@click.option("--filter", "name_pattern", default=None, help="Only run specs matching this regex.")
@click.option("--exclude", "exclude_pattern", default=None, help="Never run specs matching this regex.")
@click.option(
    "--json",
    "json_path",
    type=click.Path(dir_okay=False),
    default=None,
    help="Write the JSON report to this file.",
)
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
def run(
    spec_file: str,
    parallel: bool,
    max_parallelism: int | None,
    retry: int | None,
    retry_delay: float | None,
    timeout: float | None,
    bail: bool,
    tags: tuple[str, ...],
    exclude_tags: tuple[str, ...],
    name_pattern: str | None,
    exclude_pattern: str | None,
    json_path: str | None,
    verbose: bool,
) -> None:
    """Run the specs declared in SPEC_FILE."""
    _setup_logging(verbose)

    try:
        root = load_spec_file(spec_file)
        config = _build_config(
            RunnerConfig.from_env(),
            parallel=parallel,
            max_parallelism=max_parallelism,
            retry=retry,
            retry_delay=retry_delay,
            timeout=timeout,
            bail=bail,
            tags=tags,
            exclude_tags=exclude_tags,
            name_pattern=name_pattern,
            exclude_pattern=exclude_pattern,
        )
        pipeline = build_pipeline(config)
    except (SpecwrightError, ValueError) as exc:
        console.print(f"[red]Failed to load specs:[/red] {exc}")
        raise SystemExit(1) from exc

    emitter = RunEventEmitter()
    stats = StreamingStats().attach(emitter)
    total = root.spec_count()

    async def on_completed(event: RunEvent) -> None:
        result = event.data["result"]
        style, mark = _STATUS_STYLES[result.status]
        suffix = f" ({result.reason.value})" if result.reason else ""
        console.print(
            f"[{style}]{mark}[/{style}] [dim]\\[{stats.total}/{total}][/dim] "
            f"{result.full_description}{suffix}"
        )

    async def on_revised(event: RunEvent) -> None:
        console.print(
            f"[red]✗[/red] {event.data['result'].full_description} (after_all failed)"
        )

    emitter.on(RunEventType.SPEC_COMPLETED, on_completed)
    emitter.on(RunEventType.SPEC_REVISED, on_revised)
    runner = SpecRunner(config, pipeline=pipeline, event_emitter=emitter)

    console.print(f"[bold green]Running specs:[/bold green] {spec_file}")
    report = asyncio.run(_run_with_interrupt(runner, root))

    _print_failures(report)
    _print_summary(report)

    if json_path:
        saved = report.save_to_file(json_path)
        console.print(f"Report written to {saved}")

    if not report.success:
        raise SystemExit(1)


def _build_config(
    base: RunnerConfig,
    *,
    parallel: bool,
    max_parallelism: int | None,
    retry: int | None,
    retry_delay: float | None,
    timeout: float | None,
    bail: bool,
    tags: tuple[str, ...],
    exclude_tags: tuple[str, ...],
    name_pattern: str | None,
    exclude_pattern: str | None,
) -> RunnerConfig:
    """Overlay command-line options on *base*; unset options keep its value."""
    policy = base.retry
    if retry is not None or retry_delay is not None:
        policy = RetryPolicy(
            max_retries=policy.max_retries if retry is None else retry,
            base_delay_seconds=(
                policy.base_delay_seconds if retry_delay is None else retry_delay
            ),
        )
    return dataclasses.replace(
        base,
        parallel=parallel or base.parallel,
        max_parallelism=(
            base.max_parallelism if max_parallelism is None else max_parallelism
        ),
        bail=bail or base.bail,
        retry=policy,
        timeout_seconds=base.timeout_seconds if timeout is None else timeout,
        include_tags=list(tags) or base.include_tags,
        exclude_tags=list(exclude_tags) or base.exclude_tags,
        name_pattern=name_pattern or base.name_pattern,
        exclude_name_pattern=exclude_pattern or base.exclude_name_pattern,
    )


async def _run_with_interrupt(runner: SpecRunner, root: SpecContext) -> SpecReport:
    """Run *root*, turning Ctrl-C into a graceful cancellation."""
    loop = asyncio.get_running_loop()
    # Signal handlers need a Unix event loop in the main thread.
    with contextlib.suppress(NotImplementedError, RuntimeError):
        loop.add_signal_handler(signal.SIGINT, runner.cancel)
    try:
        return await runner.run(root)
    finally:
        with contextlib.suppress(NotImplementedError, RuntimeError):
            loop.remove_signal_handler(signal.SIGINT)


def _print_failures(report: SpecReport) -> None:
    """Print every failed spec with its error in a table."""
    failed = [r for r in report.iter_results() if r.status is SpecStatus.FAILED]
    if not failed:
        return

    table = Table(title="Failures")
    table.add_column("Spec", style="cyan")
    table.add_column("Kind")
    table.add_column("Error")

    for result in failed:
        error = result.error
        kind = error.kind.value if error else ""
        message = error.message if error else ""
        if result.retry_info is not None:
            message += f" (after {result.retry_info.attempts} attempts)"
        table.add_row(result.full_description, kind, message[:200])

    console.print(table)


def _print_summary(report: SpecReport) -> None:
    summary = report.summary
    style = "green" if summary.success else "red"
    console.print(
        f"[bold {style}]{summary.total} specs:[/bold {style}] "
        f"{summary.passed} passed, {summary.failed} failed, "
        f"{summary.pending} pending, {summary.skipped} skipped "
        f"[dim]({summary.duration_ms:.0f}ms)[/dim]"
    )


@main.command(name="list")
@click.argument("spec_file", type=click.Path(exists=True, dir_okay=False))
def list_specs(spec_file: str) -> None:
    """Show the spec tree declared in SPEC_FILE without running it."""
    try:
        root = load_spec_file(spec_file)
    except SpecwrightError as exc:
        console.print(f"[red]Failed to load specs:[/red] {exc}")
        raise SystemExit(1) from exc

    tree = Tree(f"[bold]{root.description or Path(spec_file).name}[/bold]")
    _add_branch(tree, root)
    console.print(tree)
    console.print(f"{root.spec_count()} specs")


def _markers(focused: bool, skipped: bool, tags: frozenset[str]) -> str:
    parts = []
    if focused:
        parts.append("[magenta](focused)[/magenta]")
    if skipped:
        parts.append("[dim](skipped)[/dim]")
    if tags:
        parts.append(f"[blue]#{' #'.join(sorted(tags))}[/blue]")
    return (" " + " ".join(parts)) if parts else ""


def _add_branch(branch: Tree, context: SpecContext) -> None:
    for spec in context.specs:
        label = spec.description
        if spec.is_pending:
            label += " [yellow](pending)[/yellow]"
        branch.add(label + _markers(spec.focused, spec.skipped, spec.tags))
    for child in context.children:
        node = branch.add(
            f"[bold]{child.description}[/bold]"
            + _markers(child.focused, child.skipped, child.tags)
        )
        _add_branch(node, child)


if __name__ == "__main__":
    main()
