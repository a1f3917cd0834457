"""
Provider client interface used by the reconciler.

A provider answers existence queries and performs create/delete calls
against the cloud control plane. Every method blocks until the call has
completed, except ``delete_scope(wait=False)``.
"""
import re
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from pipeinfra.errors import ValidationFailed
from pipeinfra.models.resource import (
    DesiredState,
    ResourceGroupRef,
    ResourceKind,
    ResourceRef,
    ResourceSpec,
)

# Naming rules enforced by the control plane; checked up front so that a bad
# name fails validation instead of failing halfway through a run.
NAME_RULES = {
    ResourceKind.REGISTRY: (
        re.compile(r"^[a-zA-Z0-9]{5,50}$"),
        "5-50 alphanumeric characters",
    ),
    ResourceKind.VAULT: (
        re.compile(r"^[a-zA-Z][a-zA-Z0-9-]{1,22}[a-zA-Z0-9]$"),
        "3-24 characters, letters, digits and dashes, starting with a letter",
    ),
    ResourceKind.STORAGE: (
        re.compile(r"^[a-z0-9]{3,24}$"),
        "3-24 lowercase letters and digits",
    ),
    ResourceKind.SECRET: (
        re.compile(r"^[0-9a-zA-Z-]{1,127}$"),
        "1-127 letters, digits and dashes",
    ),
    ResourceKind.WORKSPACE: (
        re.compile(r"^[A-Za-z0-9][A-Za-z0-9-]{2,61}[A-Za-z0-9]$"),
        "4-63 letters, digits and dashes",
    ),
}

REQUIRED_PROPERTIES = {
    ResourceKind.SECRET: ("vault", "value"),
    ResourceKind.ACCESS_POLICY: ("vault", "principal"),
    ResourceKind.ALERT_RULE: ("scopes", "condition"),
    ResourceKind.ACTION_GROUP: ("short_name",),
}


def validation_problems(desired: DesiredState) -> List[str]:
    problems: List[str] = []
    seen_names: Dict[tuple, str] = {}
    for spec in desired:
        rule = NAME_RULES.get(spec.kind)
        if rule and not rule[0].match(spec.name):
            problems.append(
                f"{spec.qualified_name}: name '{spec.name}' must be {rule[1]}"
            )
        for prop in REQUIRED_PROPERTIES.get(spec.kind, ()):
            if prop not in spec.properties:
                problems.append(f"{spec.qualified_name}: missing property '{prop}'")

        scope_key = spec.properties.get("vault", "") if spec.kind == ResourceKind.SECRET else ""
        ident = (spec.kind, scope_key, spec.name.lower())
        if ident in seen_names:
            problems.append(
                f"{spec.qualified_name}: name '{spec.name}' already used by '{seen_names[ident]}'"
            )
        else:
            seen_names[ident] = spec.key
    return problems


class Provider(ABC):
    """Typed request/response calls against one cloud account."""

    name: str = "provider"

    @abstractmethod
    def check_ready(self) -> None:
        """Raise NotLoggedIn or DependencyUnavailable when calls cannot be made."""

    def validate(self, desired: DesiredState) -> None:
        """Reject the desired state before anything is mutated."""
        problems = validation_problems(desired)
        if problems:
            raise ValidationFailed("Desired state rejected", problems)

    # ------------------------------------------------------------ scope
    @abstractmethod
    def scope_exists(self, scope: ResourceGroupRef) -> bool:
        ...

    @abstractmethod
    def create_scope(self, scope: ResourceGroupRef) -> None:
        ...

    @abstractmethod
    def delete_scope(self, scope: ResourceGroupRef, wait: bool = False) -> bool:
        """Start deleting the scope. Returns False when it was already absent."""

    # ------------------------------------------------------------ declared resources
    @abstractmethod
    def get(self, spec: ResourceSpec, scope: ResourceGroupRef) -> Optional[Dict[str, Any]]:
        """Return the resource's outputs, or None when it does not exist."""

    def exists(self, spec: ResourceSpec, scope: ResourceGroupRef) -> bool:
        return self.get(spec, scope) is not None

    @abstractmethod
    def create(
        self, spec: ResourceSpec, properties: Dict[str, Any], scope: ResourceGroupRef
    ) -> Dict[str, Any]:
        """Create the resource from rendered ``properties`` and return its outputs."""

    # ------------------------------------------------------------ live resources
    @abstractmethod
    def list_resources(self, scope: ResourceGroupRef) -> List[ResourceRef]:
        ...

    @abstractmethod
    def list_children(self, ref: ResourceRef) -> List[ResourceRef]:
        """Sub-resources that must go before ``ref`` does. Empty for most kinds."""

    @abstractmethod
    def delete(self, ref: ResourceRef, scope: ResourceGroupRef) -> bool:
        """Delete ``ref``. Returns False when it was already absent."""

    @abstractmethod
    def find_principal(self, display_name: str) -> Optional[ResourceRef]:
        """Look up a tenant-level service principal by display name."""
