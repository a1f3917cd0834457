"""
Jinja2 expression rendering for template values.

Template strings may reference ``params.<name>`` and, inside properties and
outputs, ``resources.<key>.<attr>`` for the outputs of another resource.
"""
import re
from typing import Any, Dict, Iterable, List, Set

from jinja2 import StrictUndefined, Undefined
from jinja2.exceptions import TemplateError as JinjaTemplateError
from jinja2.sandbox import SandboxedEnvironment

from pipeinfra.errors import TemplateError

_ENV = SandboxedEnvironment(undefined=StrictUndefined, keep_trailing_newline=True)

# Whole-value expressions keep their native type ("{{ params.port }}" -> 443)
_SINGLE_EXPR_RE = re.compile(r"^\s*\{\{\s*([^{}]+?)\s*\}\}\s*$")
_RESOURCE_REF_RE = re.compile(r"\bresources\.([A-Za-z_][A-Za-z0-9_]*)")


def _render_string(value: str, context: Dict[str, Any], where: str) -> Any:
    if "{{" not in value and "{%" not in value:
        return value
    try:
        single = _SINGLE_EXPR_RE.match(value)
        if single:
            result = _ENV.compile_expression(single.group(1), undefined_to_none=False)(**context)
            if isinstance(result, Undefined):
                raise TemplateError(f"Cannot render {where}: '{single.group(1)}' is undefined")
            return result
        return _ENV.from_string(value).render(**context)
    except JinjaTemplateError as exc:
        raise TemplateError(f"Cannot render {where}: {exc}")


def render_value(value: Any, context: Dict[str, Any], where: str = "value") -> Any:
    """Recursively render every string inside ``value``."""
    if isinstance(value, str):
        return _render_string(value, context, where)
    if isinstance(value, list):
        return [render_value(v, context, where) for v in value]
    if isinstance(value, dict):
        return {k: render_value(v, context, f"{where}.{k}") for k, v in value.items()}
    return value


def extract_resource_refs(val: Any) -> List[str]:
    """Recursively scan values for ``resources.<key>`` references."""
    refs: Set[str] = set()
    if isinstance(val, str):
        refs.update(_RESOURCE_REF_RE.findall(val))
    elif isinstance(val, list):
        for item in val:
            refs.update(extract_resource_refs(item))
    elif isinstance(val, dict):
        for v in val.values():
            refs.update(extract_resource_refs(v))
    return sorted(refs)


def build_context(parameters: Dict[str, Any], resources: Dict[str, Dict[str, Any]]) -> Dict[str, Any]:
    return {"params": parameters, "resources": resources}


def missing_parameters(values: Iterable[Any], parameters: Dict[str, Any]) -> List[str]:
    """Names referenced as ``params.x`` that have no value."""
    pattern = re.compile(r"\bparams\.([A-Za-z_][A-Za-z0-9_]*)")
    missing: Set[str] = set()

    def scan(v: Any) -> None:
        if isinstance(v, str):
            missing.update(n for n in pattern.findall(v) if n not in parameters)
        elif isinstance(v, list):
            for item in v:
                scan(item)
        elif isinstance(v, dict):
            for item in v.values():
                scan(item)

    for v in values:
        scan(v)
    return sorted(missing)
