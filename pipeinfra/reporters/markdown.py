"""
Markdown run report: per-resource outcomes, generated credentials and the
follow-up steps for wiring the pipeline.
"""
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from jinja2 import Environment

from pipeinfra import __version__
from pipeinfra.models.resource import ResourceGroupRef
from pipeinfra.models.result import Outcome, ReconciliationResult

_OUTCOME_ICON = {
    "Created": "✅",
    "AlreadyExists": "➖",
    "Deleted": "🗑️",
    "NotFound": "➖",
    "Failed": "❌",
    "Blocked": "⛔",
}

_OUTCOME_ASCII = {
    "Created": "[+]",
    "AlreadyExists": "[=]",
    "Deleted": "[-]",
    "NotFound": "[=]",
    "Failed": "[x]",
    "Blocked": "[!]",
}

# (heading, [(label, output key or result output path)])
CREDENTIAL_SECTIONS = [
    ("Azure Container Registry", [
        ("Login Server", "acr.login_server"),
        ("Username", "acr.username"),
        ("Password", "acr.password"),
    ]),
    ("Key Vault", [
        ("URI", "vault.uri"),
    ]),
    ("Application Insights", [
        ("Instrumentation Key", "insights.instrumentation_key"),
    ]),
    ("Service Principal (for Azure DevOps)", [
        ("Application ID", "pipeline_sp.app_id"),
        ("Tenant ID", "pipeline_sp.tenant_id"),
        ("Client Secret", "pipeline_sp.client_secret"),
    ]),
]

NEXT_STEPS = [
    "Update azure-pipelines.yml with the above values",
    "Create environments in Azure DevOps: development, staging, production",
    "Set up service connections in Azure DevOps (Azure Resource Manager, Azure Container Registry)",
    "Configure approval gates for staging and production environments",
]

_TEMPLATE = """\
# Pipeline Infrastructure Report

**Action:** {{ action }}
**Resource Group:** {{ scope.name }} ({{ scope.location }})
**Generated:** {{ generated }} by pipeinfra v{{ version }}

## Summary

| Outcome | Count |
|---------|-------|
{% for outcome, count in counts.items() if count %}| {{ icon(outcome) }} {{ outcome }} | {{ count }} |
{% endfor %}
## Resources

| Resource | Kind | Name | Outcome | Detail |
|----------|------|------|---------|--------|
{% for r in results %}| `{{ r.key }}` | {{ r.kind }} | {{ r.name }} | {{ icon(r.outcome.value) }} {{ r.outcome.value }} | {{ r.detail or "" }} |
{% endfor %}
{% if outputs %}
## Outputs

| Name | Value |
|------|-------|
{% for name, value in outputs.items() %}| {{ name }} | `{{ value }}` |
{% endfor %}
{% endif %}
{% if credentials %}
## Credentials

{% for heading, rows in credentials %}
### {{ heading }}

{% for label, value in rows %}- **{{ label }}:** `{{ value }}`
{% endfor %}
{% endfor %}
{% endif %}
{% if action == "create" %}
## Next Steps

{% for step in next_steps %}{{ loop.index }}. {{ step }}
{% endfor %}
{% endif %}
"""


def collect_credentials(results: List[ReconciliationResult]) -> List[tuple]:
    """Pick the generated credentials out of the per-resource outputs."""
    by_key = {r.key: r.outputs for r in results}
    sections = []
    for heading, fields in CREDENTIAL_SECTIONS:
        rows = []
        for label, path in fields:
            key, attr = path.split(".", 1)
            value = (by_key.get(key) or {}).get(attr)
            if value:
                rows.append((label, value))
        if rows:
            sections.append((heading, rows))
    return sections


def build_report(
    action: str,
    scope: ResourceGroupRef,
    results: List[ReconciliationResult],
    outputs: Optional[Dict[str, Any]] = None,
    ascii_mode: bool = False,
) -> str:
    icons = _OUTCOME_ASCII if ascii_mode else _OUTCOME_ICON
    counts = {o.value: sum(1 for r in results if r.outcome == o) for o in Outcome}

    env = Environment(trim_blocks=True, lstrip_blocks=True)
    template = env.from_string(_TEMPLATE)
    return template.render(
        action=action,
        scope=scope,
        generated=datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M UTC"),
        version=__version__,
        counts=counts,
        results=results,
        outputs=outputs or {},
        credentials=collect_credentials(results) if action == "create" else [],
        next_steps=NEXT_STEPS,
        icon=lambda value: icons.get(value, ""),
    )
