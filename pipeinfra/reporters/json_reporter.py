"""
JSON run report generator.
"""
import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pipeinfra import __version__
from pipeinfra.models.resource import ResourceGroupRef
from pipeinfra.models.result import Outcome, ReconciliationResult


def _count_by_outcome(results: List[ReconciliationResult]) -> dict:
    counts = {o.value: 0 for o in Outcome}
    for r in results:
        counts[r.outcome.value] += 1
    return counts


def build_report(
    action: str,
    scope: ResourceGroupRef,
    results: List[ReconciliationResult],
    outputs: Optional[Dict[str, Any]] = None,
) -> str:
    report = {
        "meta": {
            "generated": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
            "action": action,
            "resource_group": scope.name,
            "location": scope.location,
            "tool": "pipeinfra",
            "version": __version__,
        },
        "summary": _count_by_outcome(results),
        "results": [r.to_dict() for r in results],
        "outputs": outputs or {},
    }
    return json.dumps(report, indent=2, default=str)
