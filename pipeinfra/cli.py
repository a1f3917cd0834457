"""
pipeinfra CLI entry point.
"""
import sys
from typing import Any, Dict, List, Optional, Tuple

import click
import yaml
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from pipeinfra import __version__
from pipeinfra import config as config_module
from pipeinfra.config import ProvisionConfig
from pipeinfra.errors import ProvisionError
from pipeinfra.loader import load_desired_state
from pipeinfra.models.resource import DesiredState, ResourceRef
from pipeinfra.models.result import Outcome, ReconciliationResult, has_failures
from pipeinfra.providers.azure_cli import AzureCliProvider
from pipeinfra.providers.base import Provider
from pipeinfra.reconciler import engine
from pipeinfra.reporters import json_reporter, markdown

_OUTCOME_ORDER = [o.value for o in Outcome]
_OUTCOME_COLORS = {
    "Created": "green",
    "AlreadyExists": "dim",
    "Deleted": "green",
    "NotFound": "dim",
    "Failed": "bold red",
    "Blocked": "yellow",
}


def _print_banner(no_color: bool = False) -> None:
    c = Console(stderr=True, no_color=no_color)
    c.print(f"[bold blue]pipeinfra[/bold blue] [dim]v{__version__}[/dim]  "
            "[dim]CI/CD pipeline infrastructure[/dim]\n")


def _make_provider(cfg: ProvisionConfig) -> Provider:
    return AzureCliProvider(cfg)


def _parse_params(values: Tuple[str, ...]) -> Dict[str, Any]:
    params: Dict[str, Any] = {}
    for raw in values:
        if "=" not in raw:
            raise click.BadParameter(f"'{raw}' is not in key=value form", param_hint="--param")
        key, _, value = raw.partition("=")
        try:
            # "true", "3" and "[a, b]" keep their YAML types
            params[key.strip()] = yaml.safe_load(value) if value else ""
        except yaml.YAMLError:
            params[key.strip()] = value
    return params


def _load_config(
    config_path: Optional[str],
    resource_group: Optional[str],
    location: Optional[str],
    subscription: Optional[str],
    verbose: bool,
) -> ProvisionConfig:
    cfg = config_module.load(config_path)
    return cfg.with_overrides(
        resource_group=resource_group,
        location=location,
        subscription=subscription,
        verbose=verbose or None,
    )


def _count_by_outcome(results: List[ReconciliationResult]) -> dict:
    return {o.value: sum(1 for r in results if r.outcome == o) for o in Outcome}


def _print_results_table(results: List[ReconciliationResult], title: str, no_color: bool) -> None:
    tbl = Table(title=title, show_header=True, header_style="bold")
    tbl.add_column("Resource", style="dim", width=28)
    tbl.add_column("Kind", width=16)
    tbl.add_column("Name", width=30)
    tbl.add_column("Outcome", width=14)
    tbl.add_column("Detail")

    for r in results:
        color = _OUTCOME_COLORS.get(r.outcome.value, "") if not no_color else ""
        detail = r.detail or ""
        tbl.add_row(
            r.key,
            r.kind,
            r.name,
            f"[{color}]{r.outcome.value}[/{color}]" if color else r.outcome.value,
            escape(detail[:80] + "…" if len(detail) > 80 else detail),
        )

    Console(stderr=True, no_color=no_color).print(tbl)


def _print_counts(results: List[ReconciliationResult], stderr: Console) -> None:
    counts = _count_by_outcome(results)
    stderr.print(
        f"Reconciled [bold]{len(results)}[/bold] resources — "
        + "  ".join(
            f"[{_OUTCOME_COLORS.get(o, '')}]{o}: {counts[o]}[/{_OUTCOME_COLORS.get(o, '')}]"
            for o in _OUTCOME_ORDER
            if counts[o] > 0
        )
    )


def _print_outputs(outputs: Dict[str, Any], results: List[ReconciliationResult]) -> None:
    """Print template outputs and generated credentials to stdout."""
    out = Console()
    if outputs:
        tbl = Table(title="Outputs", show_header=True, header_style="bold")
        tbl.add_column("Name")
        tbl.add_column("Value")
        for name, value in outputs.items():
            tbl.add_row(name, str(value))
        out.print(tbl)
    for heading, rows in markdown.collect_credentials(results):
        out.print(f"\n[bold]{heading}:[/bold]")
        for label, value in rows:
            out.print(f"  {label}: {value}")


def _emit(report_content: str, output: Optional[str], stderr: Console) -> None:
    if output:
        with open(output, "w", encoding="utf-8", newline="\n") as fh:
            fh.write(report_content)
        stderr.print(f"Report written to [bold]{output}[/bold]")
    else:
        click.echo(report_content)


def _fail(stderr: Console, exc: ProvisionError) -> None:
    stderr.print(f"[red]Error:[/red] {escape(str(exc))}")
    sys.exit(2)


def _common_options(fn):
    options = [
        click.option("--config", "config_path", type=click.Path(exists=True, dir_okay=False),
                     default=None, help="YAML configuration file (default: ./pipeinfra.yaml when present)."),
        click.option("--resource-group", "-g", default=None, help="Override the resource group."),
        click.option("--location", "-l", default=None, help="Override the location."),
        click.option("--subscription", default=None, help="Subscription id used for role scopes."),
        click.option("--verbose", "-v", is_flag=True, default=False, help="Echo every provider command."),
        click.option("--no-color", is_flag=True, default=False, help="Disable rich terminal color output."),
    ]
    for option in reversed(options):
        fn = option(fn)
    return fn


def _template_options(fn):
    options = [
        click.option("--template", "-t", "template_path", type=click.Path(exists=True, dir_okay=False),
                     default=None, help="Template file (default: the bundled pipeline template)."),
        click.option("--parameters", "parameters_file", type=click.Path(exists=True, dir_okay=False),
                     default=None, help="Parameters file (JSON or YAML)."),
        click.option("--param", "-p", "params", multiple=True, metavar="KEY=VALUE",
                     help="Template parameter override; repeatable."),
    ]
    for option in reversed(options):
        fn = option(fn)
    return fn


@click.group(context_settings=dict(help_option_names=["-h", "--help"]))
@click.version_option(__version__)
@click.pass_context
def cli(ctx):
    """pipeinfra — provision and tear down CI/CD pipeline infrastructure."""
    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())
        ctx.exit()


@cli.command()
@_template_options
@_common_options
@click.option(
    "--format", "output_format",
    type=click.Choice(["table", "json", "markdown"], case_sensitive=False),
    default="table",
    show_default=True,
    help="Report format.",
)
@click.option("--output", "-o", type=click.Path(), default=None,
              help="Write the report to this file (default: stdout).")
@click.option("--ascii", is_flag=True, default=False, help="Use ASCII-only outcome markers in Markdown.")
def create(
    template_path: Optional[str],
    parameters_file: Optional[str],
    params: Tuple[str, ...],
    config_path: Optional[str],
    resource_group: Optional[str],
    location: Optional[str],
    subscription: Optional[str],
    verbose: bool,
    no_color: bool,
    output_format: str,
    output: Optional[str],
    ascii: bool,
) -> None:
    """
    Create every resource declared in the template.

    Existing resources are left untouched, so the command can be re-run
    after a partial failure.
    """
    _print_banner(no_color)
    stderr = Console(stderr=True, no_color=no_color)

    try:
        cfg = _load_config(config_path, resource_group, location, subscription, verbose)
        with stderr.status("[bold]Loading template…"):
            desired = load_desired_state(cfg, template_path, parameters_file, _parse_params(params))
        stderr.print(
            f"Found [bold]{len(desired)}[/bold] resources for resource group "
            f"[bold]{desired.scope.name}[/bold] ({desired.scope.location})."
        )
        provider = _make_provider(cfg)
        results = engine.reconcile_create(desired, provider)
    except ProvisionError as exc:
        _fail(stderr, exc)
        return

    outputs = engine.evaluate_outputs(desired, results)
    _print_counts(results, stderr)

    fmt = output_format.lower()
    if fmt == "json":
        _emit(json_reporter.build_report("create", desired.scope, results, outputs), output, stderr)
    elif fmt == "markdown":
        _emit(markdown.build_report("create", desired.scope, results, outputs, ascii_mode=ascii),
              output, stderr)
    else:
        _print_results_table(results, "Create Summary", no_color)
        _print_outputs(outputs, results)

    if has_failures(results):
        stderr.print("[red]Some resources could not be created.[/red] Re-run after fixing the cause.")
        sys.exit(1)
    stderr.print("[green]Azure resources setup complete.[/green]")
    sys.exit(0)


def _confirm(question: str) -> bool:
    answer = click.prompt(f"{question} (yes/no)", default="no", show_default=False, err=True)
    return answer.strip().lower() == "yes"


def _print_listing(resources: List[ResourceRef], no_color: bool) -> None:
    tbl = Table(title="Resources to be deleted", show_header=True, header_style="bold")
    tbl.add_column("Name", width=34)
    tbl.add_column("Type")
    for ref in resources:
        tbl.add_row(ref.name, ref.resource_type or ref.kind.value)
    Console(stderr=True, no_color=no_color).print(tbl)


@cli.command()
@_common_options
@click.option("--yes", "-y", "assume_yes", is_flag=True, default=False,
              help="Skip both confirmation prompts.")
@click.option(
    "--format", "output_format",
    type=click.Choice(["table", "json", "markdown"], case_sensitive=False),
    default="table",
    show_default=True,
    help="Report format.",
)
@click.option("--output", "-o", type=click.Path(), default=None,
              help="Write the report to this file (default: stdout).")
def delete(
    config_path: Optional[str],
    resource_group: Optional[str],
    location: Optional[str],
    subscription: Optional[str],
    verbose: bool,
    no_color: bool,
    assume_yes: bool,
    output_format: str,
    output: Optional[str],
) -> None:
    """
    Delete every resource in the resource group, then the group itself.

    The resource group deletion continues in the background after the
    command exits.
    """
    _print_banner(no_color)
    stderr = Console(stderr=True, no_color=no_color)

    try:
        cfg = _load_config(config_path, resource_group, location, subscription, verbose)
    except ProvisionError as exc:
        _fail(stderr, exc)
        return
    scope = cfg.scope

    stderr.print(
        f"This will permanently delete all resources in resource group [bold]{scope.name}[/bold]."
    )
    if not assume_yes and not _confirm(
        "Are you sure you want to delete all resources? This action cannot be undone."
    ):
        stderr.print("Teardown cancelled.")
        sys.exit(0)

    try:
        provider = _make_provider(cfg)
        provider.check_ready()
        if not provider.scope_exists(scope):
            stderr.print(f"Resource group '{scope.name}' does not exist. Nothing to delete.")
            sys.exit(0)
        with stderr.status("[bold]Listing resources…"):
            listed = provider.list_resources(scope)
    except ProvisionError as exc:
        _fail(stderr, exc)
        return

    _print_listing(listed, no_color)
    if not assume_yes and not _confirm("Do you want to proceed with deletion of these resources?"):
        stderr.print("Teardown cancelled.")
        sys.exit(0)

    try:
        results = engine.reconcile_delete(cfg, provider, resources=listed)
    except ProvisionError as exc:
        _fail(stderr, exc)
        return

    _print_counts(results, stderr)
    fmt = output_format.lower()
    if fmt == "json":
        _emit(json_reporter.build_report("delete", scope, results), output, stderr)
    elif fmt == "markdown":
        _emit(markdown.build_report("delete", scope, results), output, stderr)
    else:
        _print_results_table(results, "Teardown Summary", no_color)

    if has_failures(results):
        stderr.print("[red]Some resources could not be deleted.[/red] Re-run to retry.")
        sys.exit(1)
    stderr.print(
        "Resource group deletion is running in the background. "
        f"Check with: [bold]az group show --name {scope.name}[/bold]"
    )
    sys.exit(0)


def _print_plan(desired: DesiredState, no_color: bool) -> None:
    tbl = Table(title="Creation Order", show_header=True, header_style="bold")
    tbl.add_column("#", style="dim", width=4)
    tbl.add_column("Resource", width=24)
    tbl.add_column("Kind", width=16)
    tbl.add_column("Name", width=34)
    tbl.add_column("Depends On")
    for i, spec in enumerate(desired.topological_order(), 1):
        tbl.add_row(str(i), spec.key, spec.kind.value, spec.name, ", ".join(sorted(spec.depends_on)))
    Console(stderr=True, no_color=no_color).print(tbl)


@cli.command()
@_template_options
@_common_options
def validate(
    template_path: Optional[str],
    parameters_file: Optional[str],
    params: Tuple[str, ...],
    config_path: Optional[str],
    resource_group: Optional[str],
    location: Optional[str],
    subscription: Optional[str],
    verbose: bool,
    no_color: bool,
) -> None:
    """
    Check a template without touching the cloud account.
    """
    stderr = Console(stderr=True, no_color=no_color)
    try:
        cfg = _load_config(config_path, resource_group, location, subscription, verbose)
        desired = load_desired_state(cfg, template_path, parameters_file, _parse_params(params))
        _make_provider(cfg).validate(desired)
    except ProvisionError as exc:
        stderr.print("[red]✗ Template validation failed[/red]")
        _fail(stderr, exc)
        return

    _print_plan(desired, no_color)
    stderr.print("[green]✓ Template validation successful[/green]")
    sys.exit(0)


def main():
    cli(obj={})


if __name__ == "__main__":
    main()
