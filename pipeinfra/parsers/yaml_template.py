import json
import os
from typing import Any, Dict, Optional

import yaml

from pipeinfra.errors import TemplateError
from pipeinfra.models.resource import DesiredState, ResourceGroupRef
from pipeinfra.parsers.template import build_desired_state


def load_raw(filepath: str) -> Dict[str, Any]:
    try:
        _, ext = os.path.splitext(filepath.lower())
        with open(filepath) as fh:
            if ext == ".json":
                template = json.load(fh)
            else:
                template = yaml.safe_load(fh)
    except (OSError, ValueError, yaml.YAMLError) as exc:
        raise TemplateError(f"Failed to parse {filepath}: {exc}")

    if not isinstance(template, dict):
        raise TemplateError(f"{filepath}: template must be a mapping")
    return template


def parse_file(
    filepath: str,
    parameters: Optional[Dict[str, Any]] = None,
    scope: Optional[ResourceGroupRef] = None,
    default_scope: Optional[ResourceGroupRef] = None,
) -> DesiredState:
    return build_desired_state(
        load_raw(filepath), source_file=filepath, parameters=parameters,
        scope=scope, default_scope=default_scope,
    )
