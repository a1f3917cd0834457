"""
Turns the raw sections of a declarative template into a DesiredState.

Both the YAML/JSON and the HCL front ends reduce a file to the same shape:
``parameters`` (name -> default or {default, description}), ``resources``
(key -> {kind, name, location, sku, parent, dependsOn, properties}) and
``outputs`` (name -> expression or {value}).
"""
import json
import os
from typing import Any, Dict, List, Optional

import yaml

from pipeinfra.errors import TemplateError, ValidationFailed
from pipeinfra.models.resource import (
    DECLARABLE_KINDS,
    DesiredState,
    ResourceGroupRef,
    ResourceKind,
    ResourceSpec,
)
from pipeinfra.parsers.render import (
    build_context,
    extract_resource_refs,
    missing_parameters,
    render_value,
)

_KIND_ALIASES = {
    "acr": ResourceKind.REGISTRY,
    "container-registry": ResourceKind.REGISTRY,
    "keyvault": ResourceKind.VAULT,
    "key-vault": ResourceKind.VAULT,
    "app-insights": ResourceKind.INSIGHTS,
    "log-analytics": ResourceKind.WORKSPACE,
    "storage-account": ResourceKind.STORAGE,
    "nsg": ResourceKind.NETWORK_GROUP,
    "service-principal": ResourceKind.IDENTITY,
}


def parse_kind(raw: Any, key: str) -> ResourceKind:
    value = str(raw or "").strip().lower().replace("_", "-")
    if value in _KIND_ALIASES:
        return _KIND_ALIASES[value]
    try:
        kind = ResourceKind(value)
    except ValueError:
        raise TemplateError(f"Resource '{key}' has unknown kind '{raw}'")
    if kind not in DECLARABLE_KINDS:
        raise TemplateError(f"Resource '{key}' has kind '{raw}' which cannot be declared")
    return kind


def _as_list(val: Any) -> List[str]:
    if val is None:
        return []
    if isinstance(val, str):
        return [val]
    return [str(v) for v in val]


def _parameter_defaults(declared: Dict[str, Any]) -> Dict[str, Any]:
    defaults: Dict[str, Any] = {}
    for name, decl in declared.items():
        if isinstance(decl, dict):
            if "default" in decl:
                defaults[name] = decl["default"]
            elif "defaultValue" in decl:
                defaults[name] = decl["defaultValue"]
        else:
            defaults[name] = decl
    return defaults


def resolve_parameters(declared: Dict[str, Any], overrides: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Merge declared defaults with overrides and fail on required gaps."""
    params = _parameter_defaults(declared)
    params.update(overrides or {})
    missing = sorted(name for name in declared if name not in params)
    if missing:
        raise TemplateError(
            "Template parameters have no value",
            [f"'{m}' (pass --param {m}=...)" for m in missing],
        )
    # Parameter defaults may themselves reference other parameters
    context = build_context(params, {})
    return {k: render_value(v, context, f"parameter '{k}'") for k, v in params.items()}


def build_desired_state(
    raw: Dict[str, Any],
    source_file: str = "",
    parameters: Optional[Dict[str, Any]] = None,
    scope: Optional[ResourceGroupRef] = None,
    default_scope: Optional[ResourceGroupRef] = None,
) -> DesiredState:
    declared = raw.get("parameters") or {}
    raw_resources = raw.get("resources") or {}
    raw_outputs = raw.get("outputs") or {}

    if not isinstance(declared, dict) or not isinstance(raw_resources, dict):
        raise TemplateError(f"{source_file}: 'parameters' and 'resources' must be mappings")
    if not raw_resources:
        raise TemplateError(f"{source_file}: no resources declared")

    params = resolve_parameters(declared, parameters)
    if scope is None:
        fallback = default_scope or ResourceGroupRef(name="")
        scope = ResourceGroupRef(
            name=str(params.get("resourceGroup") or fallback.name),
            location=str(params.get("location") or fallback.location),
            subscription=fallback.subscription,
        )
        if not scope.name:
            raise TemplateError(f"{source_file}: no resource group given (parameter 'resourceGroup')")

    undefined = missing_parameters(
        list(raw_resources.values()) + list(raw_outputs.values()), params
    )
    if undefined:
        raise TemplateError(
            f"{source_file}: undefined parameters referenced",
            [f"'params.{u}'" for u in undefined],
        )

    name_context = build_context(params, {})
    specs: List[ResourceSpec] = []
    for key, definition in raw_resources.items():
        if not isinstance(definition, dict):
            raise TemplateError(f"{source_file}: resource '{key}' must be a mapping")

        kind = parse_kind(definition.get("kind"), key)
        properties = definition.get("properties") or {}
        if not isinstance(properties, dict):
            raise TemplateError(f"{source_file}: properties of '{key}' must be a mapping")

        depends = set(_as_list(definition.get("dependsOn", definition.get("depends_on"))))
        if definition.get("parent"):
            depends.add(str(definition["parent"]))
        depends.update(extract_resource_refs(properties))

        for field_name in ("name", "location", "sku"):
            if extract_resource_refs(definition.get(field_name)):
                raise TemplateError(
                    f"{source_file}: '{key}.{field_name}' cannot reference another resource"
                )

        name = render_value(definition.get("name", key), name_context, f"{key}.name")
        location = render_value(
            definition.get("location", scope.location), name_context, f"{key}.location"
        )
        sku = definition.get("sku")
        if sku is not None:
            sku = str(render_value(sku, name_context, f"{key}.sku"))

        specs.append(ResourceSpec(
            key=str(key),
            kind=kind,
            name=str(name),
            location=str(location),
            sku=sku,
            depends_on=frozenset(depends),
            properties=properties,
            source_file=source_file,
        ))

    outputs = {
        name: (expr.get("value") if isinstance(expr, dict) else expr)
        for name, expr in raw_outputs.items()
    }
    unknown_refs = sorted(
        ref for ref in extract_resource_refs(list(outputs.values()))
        if ref not in raw_resources
    )
    if unknown_refs:
        raise TemplateError(
            f"{source_file}: outputs reference unknown resources",
            [f"'{r}'" for r in unknown_refs],
        )

    try:
        return DesiredState(specs, scope=scope, parameters=params, outputs=outputs)
    except TemplateError:
        raise
    except ValidationFailed as exc:
        raise TemplateError(f"{source_file}: {exc.args[0]}", exc.problems)


def read_parameters_file(path: str) -> Dict[str, Any]:
    """
    Read a parameters file. Accepts the ARM layout
    ``{"parameters": {"x": {"value": ...}}}`` as well as a flat mapping.
    """
    _, ext = os.path.splitext(path.lower())
    try:
        with open(path) as fh:
            data = json.load(fh) if ext == ".json" else yaml.safe_load(fh)
    except (OSError, ValueError, yaml.YAMLError) as exc:
        raise TemplateError(f"Cannot read parameters file {path}: {exc}")

    if not isinstance(data, dict):
        raise TemplateError(f"Parameters file {path} must contain a mapping")

    section = data.get("parameters", data)
    if not isinstance(section, dict):
        raise TemplateError(f"Parameters file {path}: 'parameters' must be a mapping")
    return {
        name: (val["value"] if isinstance(val, dict) and "value" in val else val)
        for name, val in section.items()
    }
