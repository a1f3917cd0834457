from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


class Outcome(str, Enum):
    CREATED        = "Created"
    ALREADY_EXISTS = "AlreadyExists"
    DELETED        = "Deleted"
    NOT_FOUND      = "NotFound"
    FAILED         = "Failed"
    BLOCKED        = "Blocked"

    @property
    def is_failure(self) -> bool:
        return self in (Outcome.FAILED, Outcome.BLOCKED)


@dataclass
class ReconciliationResult:
    key: str                # template key on create, qualified name on delete
    kind: str
    name: str
    outcome: Outcome
    detail: Optional[str] = None
    outputs: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "key": self.key,
            "kind": self.kind,
            "name": self.name,
            "outcome": self.outcome.value,
            "detail": self.detail,
            "outputs": self.outputs,
        }


def has_failures(results) -> bool:
    return any(r.outcome.is_failure for r in results)
