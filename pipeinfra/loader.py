"""
Builds the DesiredState for one invocation from a template file, the run
configuration and any parameter overrides.
"""
import os
from typing import Any, Dict, Optional

from pipeinfra.config import ProvisionConfig
from pipeinfra.detect import detect_format
from pipeinfra.errors import TemplateError
from pipeinfra.models.resource import DesiredState
from pipeinfra.parsers import hcl_template, yaml_template
from pipeinfra.parsers.template import read_parameters_file

DEFAULT_TEMPLATE = os.path.join(os.path.dirname(__file__), "templates", "pipeline.yaml")


def load_desired_state(
    config: ProvisionConfig,
    template_path: Optional[str] = None,
    parameters_file: Optional[str] = None,
    overrides: Optional[Dict[str, Any]] = None,
) -> DesiredState:
    """
    Parameter precedence, lowest first: template defaults, values set in
    the configuration, parameters file, ``overrides``.

    The resource group and location come from the resolved ``resourceGroup``
    and ``location`` parameters, falling back to the configuration.
    """
    path = template_path or DEFAULT_TEMPLATE
    if not os.path.isfile(path):
        raise TemplateError(f"Template '{path}' does not exist")

    params: Dict[str, Any] = config.as_parameters()
    if parameters_file:
        params.update(read_parameters_file(parameters_file))
    params.update(overrides or {})

    fmt = detect_format(path)
    if fmt == "hcl":
        parser = hcl_template
    elif fmt in ("yaml", "json"):
        parser = yaml_template
    else:
        raise TemplateError(f"Unsupported template format: {path}")
    return parser.parse_file(path, parameters=params, default_scope=config.scope)
