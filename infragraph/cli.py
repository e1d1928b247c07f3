"""
infragraph CLI entry point.
"""
import logging
import sys
from typing import Any, Dict, Optional

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from infragraph import __version__
from infragraph.config import StackConfig, load_config
from infragraph.credentials import compose
from infragraph.errors import DependencyUnresolved, InfragraphError, MaterializationError
from infragraph.graph import ResourceGraph
from infragraph.materializer import ON_FAILURE_CHOICES, OutputStore, RetryPolicy
from infragraph.models.outputs import SECRET_MASK
from infragraph.reporters import json_reporter, markdown
from infragraph.stack import SECRET_EXPORTS, Stack, build, materializer_for, simulated_backends

logger = logging.getLogger(__name__)

console = Console(stderr=True)

_STATE_COLORS = {
    "ready": "green",
    "failed": "bold red",
    "materializing": "blue",
    "pending": "dim",
}


def _print_banner(no_color: bool = False) -> None:
    c = Console(stderr=True, no_color=no_color)
    c.print(f"[bold cyan]infragraph[/bold cyan] [dim]v{__version__}[/dim]\n")


def _setup_logging(verbose: int, no_color: bool) -> None:
    logger = logging.getLogger("infragraph")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
    if verbose <= 0:
        logger.setLevel(logging.WARNING)
    else:
        logger.setLevel(logging.DEBUG if verbose > 1 else logging.INFO)
    handler = RichHandler(console=Console(stderr=True, no_color=no_color), show_path=False)
    handler.setFormatter(logging.Formatter("%(message)s"))
    logger.addHandler(handler)
    logger.propagate = False


def _load_stack(stack_file: str, stderr: Console) -> Stack:
    try:
        config = load_config(stack_file)
        return build(config)
    except InfragraphError as exc:
        stderr.print(f"[red]Config error:[/red] {exc}")
        sys.exit(2)


def _print_resource_table(graph: ResourceGraph, no_color: bool, title: str) -> None:
    tbl = Table(title=title, show_header=True, header_style="bold")
    tbl.add_column("#", style="dim", width=4)
    tbl.add_column("State", width=14)
    tbl.add_column("Kind", width=44)
    tbl.add_column("Name", width=28)
    tbl.add_column("Depends on")

    for i, handle in enumerate(graph.topological_order(), 1):
        r = graph.get(handle)
        color = _STATE_COLORS.get(r.state.value, "") if not no_color else ""
        state = f"[{color}]{r.state.value}[/{color}]" if color else r.state.value
        deps = ", ".join(d.name for d in r.dependencies)
        tbl.add_row(str(i), state, r.kind, r.name, deps[:60] + "…" if len(deps) > 60 else deps)

    Console(stderr=True, no_color=no_color).print(tbl)


def _print_exports(exports: Dict[str, Any], no_color: bool) -> None:
    tbl = Table(title="Outputs", show_header=True, header_style="bold")
    tbl.add_column("Name", style="bold")
    tbl.add_column("Value")
    for name, value in exports.items():
        text = str(value)
        tbl.add_row(name, f"<{len(text.splitlines())} lines>" if "\n" in text else text)
    Console(stderr=True, no_color=no_color).print(tbl)


def _available_exports(stack: Stack, store: Optional[OutputStore], show_secrets: bool) -> Dict[str, Any]:
    """Exports that resolve against ready resources; the rest are left out."""
    if store is None:
        return {}
    values = {}
    for name, ref in stack.exports.items():
        try:
            value = store.resolve(ref)
        except DependencyUnresolved:
            continue
        except InfragraphError as exc:
            logger.warning("export %s unavailable: %s", name, exc)
            continue
        values[name] = SECRET_MASK if name in SECRET_EXPORTS and not show_secrets else value
    return values


def _emit_report(report_content: str, output: Optional[str], stderr: Console) -> None:
    if output:
        with open(output, "w", encoding="utf-8", newline="\n") as fh:
            fh.write(report_content)
        stderr.print(f"Report written to [bold]{output}[/bold]")
    else:
        click.echo(report_content)


def _render(fmt: str, graph: ResourceGraph, exports: Optional[Dict[str, Any]], source: str,
            ascii_mode: bool, torn_down: bool = False) -> str:
    if fmt.lower() == "json":
        return json_reporter.build_report(graph, exports, source)
    return markdown.build_report(graph, exports, source, ascii_mode=ascii_mode, torn_down=torn_down)


_report_options = [
    click.option(
        "--format", "output_format",
        type=click.Choice(["markdown", "json"], case_sensitive=False),
        default="markdown",
        show_default=True,
        help="Report format.",
    ),
    click.option(
        "--output", "-o",
        type=click.Path(),
        default=None,
        help="Write report to this file (default: stdout).",
    ),
    click.option(
        "--summary",
        is_flag=True,
        default=False,
        help="Print the terminal table only, do not write a full report.",
    ),
    click.option(
        "--ascii",
        is_flag=True,
        default=False,
        help="Use ASCII-only state indicators (no emojis).",
    ),
    click.option(
        "--no-color",
        is_flag=True,
        default=False,
        help="Disable rich terminal color output.",
    ),
    click.option(
        "--verbose", "-v",
        count=True,
        help="Log progress to stderr (-vv for debug output).",
    ),
]


def report_options(fn):
    for option in reversed(_report_options):
        fn = option(fn)
    return fn


@click.group(context_settings=dict(help_option_names=["-h", "--help"]))
@click.version_option(__version__)
@click.pass_context
def cli(ctx):
    """infragraph: declare a GKE cluster and its operators as a dependency graph."""
    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())
        ctx.exit()


@cli.command()
@click.argument("stack_file", type=click.Path())
@report_options
def plan(
    stack_file: str,
    output_format: str,
    output: Optional[str],
    summary: bool,
    ascii: bool,
    no_color: bool,
    verbose: int,
) -> None:
    """
    Show the resources STACK_FILE declares, in materialization order.
    """
    _print_banner(no_color)
    _setup_logging(verbose, no_color)
    stderr = Console(stderr=True, no_color=no_color)

    stack = _load_stack(stack_file, stderr)
    stderr.print(f"Declared [bold]{len(stack.graph)}[/bold] resources.")
    _print_resource_table(stack.graph, no_color, title="Materialization Order")

    if not summary:
        report = _render(output_format, stack.graph, None, stack_file, ascii)
        _emit_report(report, output, stderr)
    sys.exit(0)


@cli.command()
@click.argument("stack_file", type=click.Path())
@report_options
@click.option(
    "--on-failure",
    type=click.Choice(ON_FAILURE_CHOICES, case_sensitive=False),
    default=None,
    help="Leave created resources in place (keep) or destroy them (teardown) when a resource fails.",
)
@click.option(
    "--continue-on-error",
    is_flag=True,
    default=False,
    help="Keep materializing unrelated resources after a failure.",
)
@click.option(
    "--retries",
    type=click.IntRange(min=0),
    default=None,
    help="Retry transient API errors this many times with exponential backoff.",
)
@click.option(
    "--workers",
    type=click.IntRange(min=1),
    default=None,
    help="Maximum number of resources materialized at once.",
)
@click.option(
    "--show-secrets",
    is_flag=True,
    default=False,
    help="Print secret outputs instead of masking them.",
)
def apply(
    stack_file: str,
    output_format: str,
    output: Optional[str],
    summary: bool,
    ascii: bool,
    no_color: bool,
    verbose: int,
    on_failure: Optional[str],
    continue_on_error: bool,
    retries: Optional[int],
    workers: Optional[int],
    show_secrets: bool,
) -> None:
    """
    Materialize STACK_FILE against simulated cloud and cluster control planes.
    """
    _print_banner(no_color)
    _setup_logging(verbose, no_color)
    stderr = Console(stderr=True, no_color=no_color)

    stack = _load_stack(stack_file, stderr)
    config: StackConfig = stack.config

    overrides: Dict[str, Any] = {}
    if on_failure:
        overrides["on_failure"] = on_failure.lower()
    if continue_on_error:
        overrides["fail_fast"] = False
    if retries is not None:
        policy = config.retry.policy()
        overrides["retry"] = RetryPolicy(
            max_attempts=retries + 1,
            initial_delay=policy.initial_delay,
            multiplier=policy.multiplier,
            max_delay=policy.max_delay,
        )
    if workers is not None:
        overrides["max_workers"] = workers

    materializer = materializer_for(config, simulated_backends(config), **overrides)

    failure: Optional[MaterializationError] = None
    with stderr.status(f"[bold]Materializing {len(stack.graph)} resource(s)…"):
        try:
            materializer.materialize(stack.graph)
        except MaterializationError as exc:
            failure = exc
        except InfragraphError as exc:
            stderr.print(f"[red]Graph error:[/red] {exc}")
            sys.exit(2)

    _print_resource_table(stack.graph, no_color, title="Resources")
    exports = _available_exports(stack, materializer.store, show_secrets)
    if exports:
        _print_exports(exports, no_color)

    if not summary:
        report = _render(output_format, stack.graph, exports, stack_file, ascii,
                         torn_down=materializer.on_failure == "teardown")
        _emit_report(report, output, stderr)

    if failure is not None:
        stderr.print(f"[red]Materialization failed:[/red] {failure.resource}: {failure.cause}")
        sys.exit(1)
    sys.exit(0)


@cli.command()
@click.argument("name")
@click.argument("endpoint")
@click.argument("ca")
@click.option("--project", default=None, help="GCP project, used in the context name.")
@click.option("--zone", default=None, help="GCP zone, used in the context name.")
def kubeconfig(name: str, endpoint: str, ca: str, project: Optional[str], zone: Optional[str]) -> None:
    """
    Print a kubeconfig for cluster NAME at ENDPOINT with base64 CA data.
    """
    try:
        bundle = compose(name, endpoint, ca, project=project, zone=zone)
    except InfragraphError as exc:
        console.print(f"[red]Error:[/red] {exc}")
        sys.exit(2)
    click.echo(bundle.document, nl=False)


def main():
    cli(obj={})


if __name__ == "__main__":
    main()
