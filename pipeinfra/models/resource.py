from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional

from pipeinfra.errors import ValidationFailed


class ResourceKind(str, Enum):
    REGISTRY           = "registry"
    VAULT              = "vault"
    SECRET             = "secret"
    ACCESS_POLICY      = "access-policy"
    WORKSPACE          = "workspace"
    INSIGHTS           = "insights"
    STORAGE            = "storage"
    NETWORK_GROUP      = "network-group"
    IDENTITY           = "identity"
    MANAGED_IDENTITY   = "managed-identity"
    ALERT_RULE         = "alert-rule"
    ACTION_GROUP       = "action-group"

    # Registry sub-resources, only seen while tearing down
    REPOSITORY         = "repository"
    TAG                = "tag"
    TASK               = "task"
    TASK_RUN           = "task-run"
    WEBHOOK            = "webhook"
    TOKEN              = "token"
    SCOPE_MAP          = "scope-map"
    CREDENTIAL_SET     = "credential-set"
    CONNECTED_REGISTRY = "connected-registry"
    AGENT_POOL         = "agent-pool"

    # Anything listed in a resource group that we have no special handling for
    GENERIC            = "generic"
    RESOURCE_GROUP     = "resource-group"


DECLARABLE_KINDS = frozenset({
    ResourceKind.REGISTRY, ResourceKind.VAULT, ResourceKind.SECRET,
    ResourceKind.ACCESS_POLICY, ResourceKind.WORKSPACE, ResourceKind.INSIGHTS,
    ResourceKind.STORAGE, ResourceKind.NETWORK_GROUP, ResourceKind.IDENTITY,
    ResourceKind.MANAGED_IDENTITY, ResourceKind.ALERT_RULE,
    ResourceKind.ACTION_GROUP,
})


@dataclass(frozen=True)
class ResourceGroupRef:
    name: str
    location: str = "eastus"
    subscription: Optional[str] = None


@dataclass
class ResourceSpec:
    key: str                 # logical name in the template
    kind: ResourceKind
    name: str                # name in the cloud account
    location: str = ""
    sku: Optional[str] = None
    depends_on: FrozenSet[str] = frozenset()
    properties: Dict[str, Any] = field(default_factory=dict)
    source_file: str = ""

    @property
    def qualified_name(self) -> str:
        return f"{self.kind.value}.{self.key}"


@dataclass
class ResourceRef:
    """A resource found by listing the live account."""

    kind: ResourceKind
    name: str
    resource_type: str = ""      # provider type, e.g. "Microsoft.KeyVault/vaults"
    resource_id: str = ""
    parent: Optional["ResourceRef"] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def qualified_name(self) -> str:
        if self.parent is not None:
            return f"{self.parent.qualified_name}/{self.name}"
        return self.name


class DesiredState:
    """
    Ordered set of ResourceSpec declared for one run.

    Construction checks that every dependency names a declared spec and that
    the dependency graph is acyclic.
    """

    def __init__(
        self,
        specs: List[ResourceSpec],
        scope: ResourceGroupRef,
        parameters: Optional[Dict[str, Any]] = None,
        outputs: Optional[Dict[str, Any]] = None,
    ):
        self.scope = scope
        self.parameters = dict(parameters or {})
        self.outputs = dict(outputs or {})
        self._specs: Dict[str, ResourceSpec] = {}

        problems = []
        for spec in specs:
            if spec.key in self._specs:
                problems.append(f"duplicate resource key '{spec.key}'")
                continue
            self._specs[spec.key] = spec
        for spec in self._specs.values():
            for dep in sorted(spec.depends_on):
                if dep == spec.key:
                    problems.append(f"'{spec.key}' depends on itself")
                elif dep not in self._specs:
                    problems.append(f"'{spec.key}' depends on unknown resource '{dep}'")
        if problems:
            raise ValidationFailed("Invalid desired state", problems)

        self._order = self._sort()

    def __iter__(self):
        return iter(self._specs.values())

    def __len__(self) -> int:
        return len(self._specs)

    def __contains__(self, key: str) -> bool:
        return key in self._specs

    def __getitem__(self, key: str) -> ResourceSpec:
        return self._specs[key]

    def topological_order(self) -> List[ResourceSpec]:
        return list(self._order)

    def dependents_of(self, key: str) -> List[ResourceSpec]:
        """All specs that depend on ``key``, directly or transitively."""
        found: List[ResourceSpec] = []
        frontier = [key]
        seen = {key}
        while frontier:
            current = frontier.pop(0)
            for spec in self._order:
                if current in spec.depends_on and spec.key not in seen:
                    seen.add(spec.key)
                    found.append(spec)
                    frontier.append(spec.key)
        return found

    def _sort(self) -> List[ResourceSpec]:
        # Depth-first post-order walk in declaration order: every spec
        # appears after all of its dependencies.
        order: List[ResourceSpec] = []
        state: Dict[str, int] = {}  # 1 = visiting, 2 = done

        def visit(key: str, path: List[str]) -> None:
            mark = state.get(key)
            if mark == 2:
                return
            if mark == 1:
                cycle = path[path.index(key):] + [key]
                raise ValidationFailed(
                    "Dependency cycle detected", [" -> ".join(cycle)]
                )
            state[key] = 1
            for dep in sorted(self._specs[key].depends_on):
                visit(dep, path + [key])
            state[key] = 2
            order.append(self._specs[key])

        for key in self._specs:
            visit(key, [])
        return order
