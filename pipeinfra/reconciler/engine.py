"""
Resource reconciler: brings the live account in line with a DesiredState
(create mode) or removes everything in a resource group (delete mode).

Execution is strictly sequential; each call blocks before the next begins.
Both modes are safe to re-run: existing resources are left alone on create,
and absent ones count as success on delete.
"""
from dataclasses import replace
from typing import Any, Dict, List, Optional

from rich.console import Console
from rich.markup import escape

from pipeinfra.config import ProvisionConfig
from pipeinfra.errors import (
    CommandFailed,
    CreateFailed,
    DeleteFailed,
    TemplateError,
)
from pipeinfra.models.resource import DesiredState, ResourceKind, ResourceRef
from pipeinfra.models.result import Outcome, ReconciliationResult
from pipeinfra.parsers.render import build_context, render_value
from pipeinfra.providers.base import Provider

console = Console(stderr=True)

# Per-resource failures; anything else (NotLoggedIn, DependencyUnavailable)
# aborts the run.
_RESOURCE_ERRORS = (CommandFailed, CreateFailed, TemplateError)

_OUTCOME_STYLE = {
    Outcome.CREATED: "green",
    Outcome.ALREADY_EXISTS: "dim",
    Outcome.DELETED: "green",
    Outcome.NOT_FOUND: "dim",
    Outcome.FAILED: "red",
    Outcome.BLOCKED: "yellow",
}


def _report(result: ReconciliationResult, quiet: bool) -> None:
    if quiet:
        return
    style = _OUTCOME_STYLE.get(result.outcome, "")
    line = f"  [{style}]{result.outcome.value:<13}[/{style}] {result.kind} [bold]{result.name}[/bold]"
    if result.detail:
        line += f" [dim]({escape(result.detail)})[/dim]"
    console.print(line)


# ------------------------------------------------------------------ create
def reconcile_create(
    desired: DesiredState, provider: Provider, quiet: bool = False
) -> List[ReconciliationResult]:
    """
    Ensure every spec in ``desired`` exists, in dependency order.

    A failed spec blocks its dependents; independent specs still run.
    """
    provider.check_ready()
    provider.validate(desired)

    scope = desired.scope
    if not provider.scope_exists(scope):
        if not quiet:
            console.print(f"[dim]Creating resource group {scope.name} in {scope.location}[/dim]")
        provider.create_scope(scope)

    results: List[ReconciliationResult] = []
    resource_outputs: Dict[str, Dict[str, Any]] = {}
    blocked: Dict[str, str] = {}      # key -> key of the failed root cause

    for spec in desired.topological_order():
        base = dict(key=spec.key, kind=spec.kind.value, name=spec.name)

        if spec.key in blocked:
            result = ReconciliationResult(
                outcome=Outcome.BLOCKED, detail=f"blocked by failed '{blocked[spec.key]}'", **base
            )
            results.append(result)
            _report(result, quiet)
            continue

        try:
            # secrets and access policies are looked up by their rendered properties
            context = build_context(desired.parameters, resource_outputs)
            rendered = replace(
                spec,
                properties=render_value(spec.properties, context, f"{spec.key}.properties"),
            )
            existing = provider.get(rendered, scope)
            if existing is not None:
                outputs = existing
                outcome = Outcome.ALREADY_EXISTS
            else:
                try:
                    outputs = provider.create(rendered, rendered.properties, scope)
                except CommandFailed as exc:
                    raise CreateFailed(spec.key, exc.stderr or str(exc))
                outcome = Outcome.CREATED
        except _RESOURCE_ERRORS as exc:
            for dependent in desired.dependents_of(spec.key):
                blocked.setdefault(dependent.key, spec.key)
            result = ReconciliationResult(outcome=Outcome.FAILED, detail=str(exc), **base)
        else:
            resource_outputs[spec.key] = outputs or {}
            result = ReconciliationResult(outcome=outcome, outputs=outputs or {}, **base)

        results.append(result)
        _report(result, quiet)

    return results


def evaluate_outputs(
    desired: DesiredState, results: List[ReconciliationResult]
) -> Dict[str, Any]:
    """
    Render the template's named outputs. Outputs that depend on a resource
    which did not reach a present state are left out.
    """
    resource_outputs = {
        r.key: r.outputs
        for r in results
        if r.outcome in (Outcome.CREATED, Outcome.ALREADY_EXISTS)
    }
    context = build_context(desired.parameters, resource_outputs)
    values: Dict[str, Any] = {}
    for name, expr in desired.outputs.items():
        try:
            values[name] = render_value(expr, context, f"output '{name}'")
        except TemplateError:
            continue
    return values


# ------------------------------------------------------------------ delete
def _collect_levels(provider: Provider, root: ResourceRef) -> List[List[ResourceRef]]:
    """Breadth-first walk of a resource's sub-resources, one list per depth."""
    levels = [[root]]
    while True:
        next_level: List[ResourceRef] = []
        for ref in levels[-1]:
            next_level.extend(provider.list_children(ref))
        if not next_level:
            return levels
        levels.append(next_level)


def _delete_one(
    provider: Provider, ref: ResourceRef, scope, quiet: bool
) -> ReconciliationResult:
    base = dict(key=ref.qualified_name, kind=ref.kind.value, name=ref.name)
    try:
        deleted = provider.delete(ref, scope)
    except CommandFailed as exc:
        failure = DeleteFailed(ref.qualified_name, exc.stderr or str(exc))
        result = ReconciliationResult(outcome=Outcome.FAILED, detail=str(failure), **base)
    else:
        result = ReconciliationResult(
            outcome=Outcome.DELETED if deleted else Outcome.NOT_FOUND, **base
        )
    _report(result, quiet)
    return result


def reconcile_delete(
    config: ProvisionConfig,
    provider: Provider,
    quiet: bool = False,
    resources: Optional[List[ResourceRef]] = None,
) -> List[ReconciliationResult]:
    """
    Delete every resource currently in the configured resource group, then
    the group itself (without waiting), then the pipeline service principal.

    ``resources`` may carry a listing the caller already fetched.
    """
    provider.check_ready()
    scope = config.scope
    results: List[ReconciliationResult] = []

    if not provider.scope_exists(scope):
        result = ReconciliationResult(
            key=scope.name,
            kind=ResourceKind.RESOURCE_GROUP.value,
            name=scope.name,
            outcome=Outcome.NOT_FOUND,
        )
        _report(result, quiet)
        results.append(result)
    else:
        listed = resources if resources is not None else provider.list_resources(scope)
        for ref in listed:
            if config.purge_registry_children:
                try:
                    levels = _collect_levels(provider, ref)
                except CommandFailed as exc:
                    console.print(
                        f"[yellow]Warning:[/yellow] could not list contents of {ref.name}: {escape(str(exc))}"
                    )
                    levels = [[ref]]
            else:
                levels = [[ref]]

            # leaves first, the listed resource last
            for level in reversed(levels):
                for item in level:
                    results.append(_delete_one(provider, item, scope, quiet))

        try:
            started = provider.delete_scope(scope, wait=False)
        except CommandFailed as exc:
            result = ReconciliationResult(
                key=scope.name, kind=ResourceKind.RESOURCE_GROUP.value, name=scope.name,
                outcome=Outcome.FAILED, detail=str(DeleteFailed(scope.name, exc.stderr or str(exc))),
            )
        else:
            result = ReconciliationResult(
                key=scope.name, kind=ResourceKind.RESOURCE_GROUP.value, name=scope.name,
                outcome=Outcome.DELETED if started else Outcome.NOT_FOUND,
                detail="deletion running in the background" if started else None,
            )
        _report(result, quiet)
        results.append(result)

    if config.service_principal_name:
        results.append(_delete_principal(provider, config.service_principal_name, scope, quiet))

    return results


def _delete_principal(provider: Provider, display_name: str, scope, quiet: bool) -> ReconciliationResult:
    try:
        principal = provider.find_principal(display_name)
    except CommandFailed as exc:
        result = ReconciliationResult(
            key=display_name, kind=ResourceKind.IDENTITY.value, name=display_name,
            outcome=Outcome.FAILED, detail=str(DeleteFailed(display_name, exc.stderr or str(exc))),
        )
        _report(result, quiet)
        return result
    if principal is None:
        result = ReconciliationResult(
            key=display_name, kind=ResourceKind.IDENTITY.value, name=display_name,
            outcome=Outcome.NOT_FOUND,
        )
        _report(result, quiet)
        return result
    return _delete_one(provider, principal, scope, quiet)

