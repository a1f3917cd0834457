"""
HCL front end. Reads Terraform-style files:

    variable "location" { default = "eastus" }

    resource "registry" "acr" {
      name     = var.acr_name
      location = var.location
      sku      = "Basic"
      properties {
        admin_enabled = true
      }
    }

    output "acr_login_server" { value = registry.acr.login_server }

and rewrites ``${var.x}`` / ``${<kind>.<key>.<attr>}`` interpolations into
the Jinja2 expressions understood by the shared template builder.
"""
import re
from typing import Any, Dict, List, Optional

import hcl2

from pipeinfra.errors import TemplateError
from pipeinfra.models.resource import DesiredState, ResourceGroupRef
from pipeinfra.parsers.template import build_desired_state

_INTERP_RE = re.compile(r"\$\{([^}]*)\}")


def _unwrap(val: Any) -> Any:
    """
    python-hcl2 wraps single-element blocks in a list.
    Recursively unwrap single-element lists that contain dicts.
    """
    if isinstance(val, list):
        if len(val) == 1 and isinstance(val[0], dict):
            return _unwrap(val[0])
        return [_unwrap(v) for v in val]
    if isinstance(val, dict):
        return {k: _unwrap(v) for k, v in val.items()}
    if isinstance(val, str) and len(val) >= 2 and val[0] == val[-1] == '"':
        # newer python-hcl2 releases keep the quotes around string literals
        return val[1:-1]
    return val


def _translate_expr(expr: str, kinds: set) -> str:
    parts = expr.strip().split(".")
    if parts[0] == "var" and len(parts) > 1:
        return "params." + ".".join(parts[1:])
    if parts[0] in kinds and len(parts) > 1:
        return "resources." + ".".join(parts[1:])
    return expr.strip()


def _translate(val: Any, kinds: set) -> Any:
    if isinstance(val, str):
        return _INTERP_RE.sub(lambda m: "{{ " + _translate_expr(m.group(1), kinds) + " }}", val)
    if isinstance(val, list):
        return [_translate(v, kinds) for v in val]
    if isinstance(val, dict):
        return {k: _translate(v, kinds) for k, v in val.items()}
    return val


def _dependency_key(ref: str, kinds: set) -> str:
    m = _INTERP_RE.fullmatch(ref.strip())
    inner = m.group(1) if m else ref.strip()
    parts = inner.split(".")
    if parts[0] in kinds and len(parts) > 1:
        return parts[1]
    return parts[0]


def _iter_blocks(data: Dict[str, Any], block: str):
    """Yield (label, body) pairs for a single-label block type."""
    for entry in data.get(block, []) or []:
        if not isinstance(entry, dict):
            continue
        for label, body in entry.items():
            yield label, _unwrap(body) if isinstance(body, (dict, list)) else body


def to_raw(data: Dict[str, Any], filepath: str = "") -> Dict[str, Any]:
    """Convert python-hcl2 output into the common template layout."""
    resources: Dict[str, Any] = {}
    blocks: List[tuple] = []
    for entry in data.get("resource", []) or []:
        if not isinstance(entry, dict):
            continue
        for kind, instances in entry.items():
            instance_maps = instances if isinstance(instances, list) else [instances]
            for instance_map in instance_maps:
                if not isinstance(instance_map, dict):
                    continue
                for key, body in instance_map.items():
                    props = _unwrap(body) if isinstance(body, (dict, list)) else {}
                    if not isinstance(props, dict):
                        props = {}
                    blocks.append((kind, key, props))

    kinds = {kind for kind, _, _ in blocks}
    for kind, key, body in blocks:
        if key in resources:
            raise TemplateError(f"{filepath}: duplicate resource key '{key}'")
        body = dict(body)
        depends = [_dependency_key(d, kinds) for d in body.pop("depends_on", None) or []]
        definition = {k: _translate(v, kinds) for k, v in body.items()}
        definition["kind"] = kind
        if depends:
            definition["dependsOn"] = depends
        resources[key] = definition

    parameters: Dict[str, Any] = {}
    for name, body in _iter_blocks(data, "variable"):
        body = body if isinstance(body, dict) else {}
        decl: Dict[str, Any] = {}
        if "default" in body:
            decl["default"] = _translate(body["default"], kinds)
        if "description" in body:
            decl["description"] = body["description"]
        parameters[name] = decl

    outputs: Dict[str, Any] = {}
    for name, body in _iter_blocks(data, "output"):
        value = body.get("value") if isinstance(body, dict) else body
        outputs[name] = _translate(value, kinds)

    return {"parameters": parameters, "resources": resources, "outputs": outputs}


def parse_file(
    filepath: str,
    parameters: Optional[Dict[str, Any]] = None,
    scope: Optional[ResourceGroupRef] = None,
    default_scope: Optional[ResourceGroupRef] = None,
) -> DesiredState:
    try:
        with open(filepath) as fh:
            data = hcl2.load(fh)
    except Exception as exc:
        # python-hcl2 surfaces lark errors of several unrelated types
        raise TemplateError(f"Failed to parse {filepath}: {exc}")

    return build_desired_state(
        to_raw(data, filepath), source_file=filepath, parameters=parameters,
        scope=scope, default_scope=default_scope,
    )
