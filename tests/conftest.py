"""
Shared fixtures: an in-memory provider that records every call.
"""
from typing import Any, Dict, List, Optional, Set

import pytest

from pipeinfra.errors import CommandFailed, NotLoggedIn, ValidationFailed
from pipeinfra.models.resource import (
    DesiredState,
    ResourceGroupRef,
    ResourceKind,
    ResourceRef,
    ResourceSpec,
)
from pipeinfra.providers.base import Provider

MUTATING = {"create", "create_scope", "delete", "delete_scope"}

# Kinds that live outside the resource group listing
_UNLISTED = {ResourceKind.IDENTITY, ResourceKind.SECRET, ResourceKind.ACCESS_POLICY}


class FakeProvider(Provider):
    name = "fake"

    def __init__(self):
        self.logged_in = True
        self.scope_present = False
        self.resources: Dict[tuple, Dict[str, Any]] = {}
        self.children: Dict[str, List[ResourceRef]] = {}
        self.alive_children: Set[str] = set()
        self.fail_create: Set[str] = set()
        self.fail_delete: Set[str] = set()
        self.rejections: List[str] = []
        self.calls: List[tuple] = []
        # specs exactly as handed to get(), properties included
        self.lookups: List[ResourceSpec] = []

    # -------------------------------------------------------- helpers for tests
    def add(self, kind: ResourceKind, name: str, **outputs) -> ResourceRef:
        self.scope_present = True
        self.resources[(kind, name)] = dict({"id": f"/fake/{kind.value}/{name}"}, **outputs)
        return ResourceRef(kind=kind, name=name, resource_id=f"/fake/{kind.value}/{name}")

    def add_child(self, parent: ResourceRef, kind: ResourceKind, name: str) -> ResourceRef:
        child = ResourceRef(kind=kind, name=name, parent=parent)
        self.children.setdefault(parent.qualified_name, []).append(child)
        self.alive_children.add(child.qualified_name)
        return child

    def mutating_calls(self) -> List[tuple]:
        return [c for c in self.calls if c[0] in MUTATING]

    def calls_of(self, op: str) -> List[tuple]:
        return [c for c in self.calls if c[0] == op]

    # -------------------------------------------------------- Provider
    def check_ready(self) -> None:
        if not self.logged_in:
            raise NotLoggedIn("not logged in")

    def validate(self, desired: DesiredState) -> None:
        # Naming rules are covered by the provider tests; short names keep
        # these scenarios readable.
        self.calls.append(("validate",))
        if self.rejections:
            raise ValidationFailed("Desired state rejected", list(self.rejections))

    def scope_exists(self, scope: ResourceGroupRef) -> bool:
        return self.scope_present

    def create_scope(self, scope: ResourceGroupRef) -> None:
        self.calls.append(("create_scope", scope.name))
        self.scope_present = True

    def delete_scope(self, scope: ResourceGroupRef, wait: bool = False) -> bool:
        self.calls.append(("delete_scope", scope.name, wait))
        if not self.scope_present:
            return False
        self.scope_present = False
        self.resources = {k: v for k, v in self.resources.items() if k[0] in _UNLISTED}
        return True

    def get(self, spec: ResourceSpec, scope: ResourceGroupRef) -> Optional[Dict[str, Any]]:
        self.calls.append(("get", spec.kind.value, spec.name))
        self.lookups.append(spec)
        found = self.resources.get((spec.kind, spec.name))
        return dict(found) if found is not None else None

    def create(self, spec: ResourceSpec, properties: Dict[str, Any], scope: ResourceGroupRef) -> Dict[str, Any]:
        self.calls.append(("create", spec.kind.value, spec.name, properties))
        if spec.name in self.fail_create:
            raise CommandFailed(["fake", "create", spec.name], 1, "quota exceeded")
        outputs = {"id": f"/fake/{spec.kind.value}/{spec.name}"}
        if spec.kind == ResourceKind.REGISTRY:
            outputs.update(login_server=f"{spec.name}.azurecr.io", username=spec.name, password="s3cret")
        elif spec.kind == ResourceKind.INSIGHTS:
            outputs.update(instrumentation_key=f"key-{spec.name}")
        elif spec.kind == ResourceKind.IDENTITY:
            outputs = {"app_id": f"app-{spec.name}", "tenant_id": "tenant-1", "client_secret": "sp-secret"}
        self.resources[(spec.kind, spec.name)] = dict(outputs)
        return outputs

    def list_resources(self, scope: ResourceGroupRef) -> List[ResourceRef]:
        self.calls.append(("list", scope.name))
        return [
            ResourceRef(kind=kind, name=name, resource_id=out.get("id", ""))
            for (kind, name), out in self.resources.items()
            if kind not in _UNLISTED
        ]

    def list_children(self, ref: ResourceRef) -> List[ResourceRef]:
        return [
            c for c in self.children.get(ref.qualified_name, [])
            if c.qualified_name in self.alive_children
        ]

    def delete(self, ref: ResourceRef, scope: ResourceGroupRef) -> bool:
        self.calls.append(("delete", ref.kind.value, ref.qualified_name))
        if ref.name in self.fail_delete:
            raise CommandFailed(["fake", "delete", ref.name], 1, "resource is locked")
        if ref.parent is not None:
            if ref.qualified_name not in self.alive_children:
                return False
            self.alive_children.discard(ref.qualified_name)
            return True
        return self.resources.pop((ref.kind, ref.name), None) is not None

    def find_principal(self, display_name: str) -> Optional[ResourceRef]:
        found = self.resources.get((ResourceKind.IDENTITY, display_name))
        if found is None:
            return None
        return ResourceRef(kind=ResourceKind.IDENTITY, name=display_name, extra={"app_id": found.get("app_id")})


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def scope():
    return ResourceGroupRef(name="test-rg", location="eastus")
