"""
terrik CLI entry point.
"""
from __future__ import annotations

import json
import logging
import signal
import sys
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from terrik import __version__
from terrik.context import DEFAULT_STATE_PATH, Settings
from terrik.engine import ApplyReport, Engine
from terrik.errors import ConfigurationError, ProviderError, StateCorruptionError
from terrik.executor import ActionStatus
from terrik.hcl import scan
from terrik.outputs import UNAVAILABLE, OutputValues
from terrik.plan import ActionKind, Phase, Plan
from terrik.provider import load_provider
from terrik.variables import parse_overrides

console = Console(stderr=True)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIG = 2
EXIT_CANCELLED = 130

_ACTION_SYMBOLS = {
    ActionKind.CREATE: ("+", "green"),
    ActionKind.UPDATE: ("~", "yellow"),
    ActionKind.REPLACE: ("-/+", "magenta"),
    ActionKind.DESTROY: ("-", "red"),
    ActionKind.NOOP: (" ", "dim"),
}

_STATUS_COLORS = {
    ActionStatus.COMPLETED: "green",
    ActionStatus.FAILED: "bold red",
    ActionStatus.SKIPPED: "yellow",
    ActionStatus.CANCELLED: "dim",
}


def _configure_logging(verbose: int) -> None:
    level = logging.WARNING
    if verbose == 1:
        level = logging.INFO
    elif verbose > 1:
        level = logging.DEBUG
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, show_path=False)],
        force=True,
    )


def _common_options(func: Callable[..., Any]) -> Callable[..., Any]:
    options = [
        click.argument("path", type=click.Path(exists=True, path_type=Path), default="."),
        click.option(
            "--var",
            "variables",
            multiple=True,
            metavar="KEY=VALUE",
            help="Set a variable (repeatable).",
        ),
        click.option(
            "--state",
            "state_path",
            type=click.Path(path_type=Path),
            default=DEFAULT_STATE_PATH,
            show_default=True,
            envvar="TERRIK_STATE",
            help="State file location.",
        ),
        click.option(
            "--provider",
            "provider_target",
            default="terrik.provider:MemoryProvider",
            show_default=True,
            envvar="TERRIK_PROVIDER",
            help="Provider adapter as 'module:Class'.",
        ),
        click.option("--region", default="us-east-1", show_default=True, envvar="TERRIK_REGION"),
        click.option("--profile", default=None, envvar="TERRIK_PROFILE", help="Credentials profile."),
        click.option("--parallelism", type=click.IntRange(min=1), default=4, show_default=True),
        click.option(
            "--timeout",
            type=click.FloatRange(min=0, min_open=True),
            default=None,
            help="Cancel the run after this many seconds.",
        ),
        click.option("-v", "--verbose", count=True, help="Increase log verbosity."),
    ]
    for option in reversed(options):
        func = option(func)
    return func


def _build_engine(
    path: Path,
    variables: tuple[str, ...],
    state_path: Path,
    provider_target: str,
    region: str,
    profile: str | None,
    parallelism: int,
    timeout: float | None,
    verbose: int,
) -> Engine:
    _configure_logging(verbose)
    settings = Settings(
        region=region,
        profile=profile,
        state_path=state_path,
        parallelism=parallelism,
        timeout=timeout,
    )
    provider = load_provider(provider_target, region=region)
    config = scan(path)
    return Engine(config, provider, settings=settings, overrides=parse_overrides(variables))


@contextmanager
def _handle_errors() -> Iterator[None]:
    try:
        yield
    except (ConfigurationError, StateCorruptionError) as exc:
        console.print(f"[red]Error:[/red] {exc}")
        sys.exit(EXIT_CONFIG)
    except ProviderError as exc:
        console.print(f"[red]Provider error:[/red] {exc}")
        sys.exit(EXIT_FAILED)


@contextmanager
def _cancel_on_interrupt(engine: Engine) -> Iterator[None]:
    def handler(signum: int, frame: Any) -> None:
        console.print("[yellow]Interrupt received; finishing in-flight actions…[/yellow]")
        engine.cancel()

    previous = signal.signal(signal.SIGINT, handler)
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, previous)


def _print_plan(plan: Plan) -> None:
    changes = plan.changes
    if not changes:
        console.print("[green]No changes.[/green] Infrastructure matches the configuration.")
        return

    tbl = Table(title="Execution Plan", show_header=True, header_style="bold")
    tbl.add_column("#", style="dim", width=4)
    tbl.add_column("Action", width=8)
    tbl.add_column("Resource")
    tbl.add_column("Detail")
    for i, action in enumerate(changes, start=1):
        symbol, color = _ACTION_SYMBOLS[action.kind]
        if action.kind is ActionKind.REPLACE:
            symbol = "-" if action.phase is Phase.DESTROY else "+"
        detail = action.reason or ", ".join(sorted(action.changed))
        tbl.add_row(str(i), f"[{color}]{symbol} {action.kind.value}[/{color}]", action.address, detail)
    console.print(tbl)

    s = plan.summary()
    console.print(
        f"Plan: [bold]{s['to_add']}[/bold] to add, [bold]{s['to_change']}[/bold] to change, "
        f"[bold]{s['to_destroy']}[/bold] to destroy."
    )


def _print_results(report: ApplyReport) -> None:
    tbl = Table(title="Apply Results", show_header=True, header_style="bold")
    tbl.add_column("Resource")
    tbl.add_column("Action", width=10)
    tbl.add_column("Status", width=10)
    tbl.add_column("Detail")
    for res in report.result.results:
        if res.action.kind is ActionKind.NOOP:
            continue
        color = _STATUS_COLORS[res.status]
        tbl.add_row(
            res.address,
            res.action.kind.value,
            f"[{color}]{res.status.value}[/{color}]",
            res.error or res.provider_id or "",
        )
    if tbl.row_count:
        console.print(tbl)


def _print_outputs(outputs: OutputValues, show_sensitive: bool = False) -> None:
    shown = outputs.summary(show_sensitive=show_sensitive)
    if not shown:
        return
    console.print("\n[bold]Outputs:[/bold]")
    for name, value in shown.items():
        if value is UNAVAILABLE:
            console.print(f"  {name} = [yellow](unavailable)[/yellow]")
        else:
            click.echo(f"  {name} = {json.dumps(value)}")


def _exit_for(report: ApplyReport) -> None:
    if report.result.cancelled:
        console.print("[yellow]Run cancelled; state reflects completed actions only.[/yellow]")
        sys.exit(EXIT_CANCELLED)
    if report.result.failed:
        console.print(f"[red]{len(report.result.failed)} action(s) failed.[/red]")
        sys.exit(EXIT_FAILED)
    sys.exit(EXIT_OK)


@click.group(invoke_without_command=True, context_settings=dict(help_option_names=["-h", "--help"]))
@click.version_option(__version__)
@click.pass_context
def cli(ctx):
    """terrik — declarative resource provisioning."""
    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())
        ctx.exit()


@cli.command()
@_common_options
@click.option("--destroy", "destroy_mode", is_flag=True, help="Plan the destruction of everything.")
def plan(destroy_mode: bool, **kwargs: Any) -> None:
    """Show the actions needed to reach the declared state. Changes nothing."""
    with _handle_errors():
        engine = _build_engine(**kwargs)
        _print_plan(engine.plan(destroy=destroy_mode))
    sys.exit(EXIT_OK)


@cli.command()
@_common_options
def apply(**kwargs: Any) -> None:
    """Create, update and destroy resources to match the configuration."""
    with _handle_errors():
        engine = _build_engine(**kwargs)
        with _cancel_on_interrupt(engine):
            report = engine.apply()
    _print_plan(report.plan)
    _print_results(report)
    _print_outputs(report.outputs)
    _exit_for(report)


@cli.command()
@_common_options
def destroy(**kwargs: Any) -> None:
    """Destroy every resource recorded in state."""
    with _handle_errors():
        engine = _build_engine(**kwargs)
        with _cancel_on_interrupt(engine):
            report = engine.destroy()
    _print_plan(report.plan)
    _print_results(report)
    _exit_for(report)


@cli.command()
@_common_options
@click.option("--name", default=None, help="Print a single output.")
@click.option("--sensitive", "show_sensitive", is_flag=True, help="Reveal sensitive values.")
@click.option("--json", "as_json", is_flag=True, help="Print outputs as JSON.")
def output(name: str | None, show_sensitive: bool, as_json: bool, **kwargs: Any) -> None:
    """Print outputs recorded by the last apply."""
    with _handle_errors():
        outputs = _build_engine(**kwargs).outputs()

    if name is not None:
        if name not in outputs:
            console.print(f"[red]Error:[/red] no output named '{name}'")
            sys.exit(EXIT_CONFIG)
        if outputs.is_sensitive(name) and not show_sensitive:
            console.print(f"[yellow]'{name}' is sensitive; pass --sensitive to print it.[/yellow]")
            sys.exit(EXIT_FAILED)
        click.echo(json.dumps(outputs[name]))
        sys.exit(EXIT_OK)

    if as_json:
        click.echo(json.dumps(outputs.summary(show_sensitive=show_sensitive), indent=2))
    else:
        _print_outputs(outputs, show_sensitive=show_sensitive)
    sys.exit(EXIT_OK)


@cli.command()
@_common_options
def graph(**kwargs: Any) -> None:
    """Print resources in dependency order with their direct dependencies."""
    with _handle_errors():
        g = _build_engine(**kwargs).graph()
    for address in g.topological_order():
        deps = g.dependencies(address)
        click.echo(f"{address}" + (f" <- {', '.join(deps)}" if deps else ""))
    sys.exit(EXIT_OK)


def main():
    cli(obj={})


if __name__ == "__main__":
    main()
