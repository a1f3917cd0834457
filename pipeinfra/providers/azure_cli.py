"""
Azure provider backed by the ``az`` command line tool.

Every call runs ``az ... --output json`` and parses the result; a non-zero
exit becomes CommandFailed, except for "not found" responses, which the
lookup and delete paths report as absence.
"""
import json
import re
import shutil
import subprocess
from typing import Any, Callable, Dict, List, Optional, Tuple

from rich.console import Console

from pipeinfra.config import ProvisionConfig
from pipeinfra.errors import CommandFailed, DependencyUnavailable, NotLoggedIn
from pipeinfra.models.resource import (
    ResourceGroupRef,
    ResourceKind,
    ResourceRef,
    ResourceSpec,
)
from pipeinfra.providers.base import Provider

console = Console(stderr=True)

Runner = Callable[[List[str]], Tuple[int, str, str]]

_NOT_FOUND_MARKERS = (
    "resourcenotfound",
    "resourcegroupnotfound",
    "could not be found",
    "was not found",
    "does not exist",
    "secretnotfound",
    "repositorynotfound",
)
# A missing subscription is an account problem, not a missing resource
_SUBSCRIPTION_MISSING_RE = re.compile(r"subscriptionnotfound|subscription ('[^']*' )?(was )?not found")
_LOGIN_MARKERS = ("az login", "please run 'az login'", "no subscription found")

# Arguments whose values never reach the terminal
_SENSITIVE_FLAGS = {"--value", "--password", "--client-secret"}

RESOURCE_TYPES = {
    "microsoft.containerregistry/registries": ResourceKind.REGISTRY,
    "microsoft.keyvault/vaults": ResourceKind.VAULT,
    "microsoft.insights/components": ResourceKind.INSIGHTS,
    "microsoft.operationalinsights/workspaces": ResourceKind.WORKSPACE,
    "microsoft.storage/storageaccounts": ResourceKind.STORAGE,
    "microsoft.network/networksecuritygroups": ResourceKind.NETWORK_GROUP,
    "microsoft.managedidentity/userassignedidentities": ResourceKind.MANAGED_IDENTITY,
    "microsoft.insights/actiongroups": ResourceKind.ACTION_GROUP,
    "microsoft.insights/metricalerts": ResourceKind.ALERT_RULE,
}

# Registry sub-resources listed with "az acr <group> list --registry <name>"
_REGISTRY_CHILD_GROUPS = [
    (ResourceKind.TASK, ["acr", "task"]),
    (ResourceKind.TASK_RUN, ["acr", "taskrun"]),
    (ResourceKind.WEBHOOK, ["acr", "webhook"]),
    (ResourceKind.TOKEN, ["acr", "token"]),
    (ResourceKind.SCOPE_MAP, ["acr", "scope-map"]),
    (ResourceKind.CREDENTIAL_SET, ["acr", "credential-set"]),
    (ResourceKind.CONNECTED_REGISTRY, ["acr", "connected-registry"]),
    (ResourceKind.AGENT_POOL, ["acr", "agentpool"]),
]


def run_command(cmd: List[str]) -> Tuple[int, str, str]:
    """Run a command and return (returncode, stdout, stderr)."""
    try:
        result = subprocess.run(cmd, text=True, capture_output=True, check=False)
    except FileNotFoundError as exc:
        raise DependencyUnavailable(f"'{cmd[0]}' could not be executed: {exc}")
    return result.returncode, result.stdout, result.stderr


def _redact(cmd: List[str]) -> str:
    shown = []
    hide_next = False
    for arg in cmd:
        shown.append("***" if hide_next else arg)
        hide_next = arg in _SENSITIVE_FLAGS
    return " ".join(shown)


def _is_not_found(stderr: str) -> bool:
    text = (stderr or "").lower()
    if _SUBSCRIPTION_MISSING_RE.search(text):
        return False
    return any(marker in text for marker in _NOT_FOUND_MARKERS)


def kind_for_type(resource_type: str) -> ResourceKind:
    return RESOURCE_TYPES.get((resource_type or "").lower(), ResourceKind.GENERIC)


class AzureCliProvider(Provider):
    name = "azure-cli"

    def __init__(self, config: ProvisionConfig, runner: Optional[Runner] = None):
        self.config = config
        self.az = config.az_path
        self.verbose = config.verbose
        self._run = runner or run_command
        self._subscription = config.subscription

    # ------------------------------------------------------------ plumbing
    def _call(self, args: List[str], query: Optional[str] = None) -> Tuple[int, Any, str]:
        cmd = [self.az] + args
        if query:
            cmd += ["--query", query]
        cmd += ["--output", "json"]
        if self.verbose:
            console.print(f"[cyan]$[/cyan] {_redact(cmd)}")

        returncode, stdout, stderr = self._run(cmd)
        if returncode != 0:
            if any(m in (stderr or "").lower() for m in _LOGIN_MARKERS):
                raise NotLoggedIn("Azure CLI is not logged in. Run 'az login' first.")
            return returncode, None, stderr

        stdout = (stdout or "").strip()
        if not stdout:
            return 0, None, stderr
        try:
            return 0, json.loads(stdout), stderr
        except ValueError:
            # some commands print plain text even with --output json
            return 0, stdout, stderr

    def _az(self, args: List[str], query: Optional[str] = None) -> Any:
        """Run and return parsed output; any failure raises CommandFailed."""
        returncode, data, stderr = self._call(args, query)
        if returncode != 0:
            raise CommandFailed([self.az] + args, returncode, stderr)
        return data

    def _az_lookup(self, args: List[str], query: Optional[str] = None) -> Any:
        """Like _az, but a "not found" response returns None."""
        returncode, data, stderr = self._call(args, query)
        if returncode != 0:
            if _is_not_found(stderr):
                return None
            raise CommandFailed([self.az] + args, returncode, stderr)
        return data

    def _az_delete(self, args: List[str]) -> bool:
        returncode, _, stderr = self._call(args)
        if returncode != 0:
            if _is_not_found(stderr):
                return False
            raise CommandFailed([self.az] + args, returncode, stderr)
        return True

    # ------------------------------------------------------------ readiness
    def check_ready(self) -> None:
        if shutil.which(self.az) is None:
            raise DependencyUnavailable(
                f"Azure CLI ('{self.az}') is not installed. "
                "See https://docs.microsoft.com/en-us/cli/azure/install-azure-cli"
            )
        returncode, account, stderr = self._call(["account", "show"])
        if returncode != 0 or not isinstance(account, dict):
            raise NotLoggedIn("Azure CLI is not logged in. Run 'az login' first.")
        if not self._subscription:
            self._subscription = account.get("id")

    def _subscription_id(self) -> str:
        if not self._subscription:
            self._subscription = self._az(["account", "show"], query="id")
        return self._subscription

    # ------------------------------------------------------------ scope
    def scope_exists(self, scope: ResourceGroupRef) -> bool:
        return bool(self._az(["group", "exists", "--name", scope.name]))

    def create_scope(self, scope: ResourceGroupRef) -> None:
        self._az(["group", "create", "--name", scope.name, "--location", scope.location])

    def delete_scope(self, scope: ResourceGroupRef, wait: bool = False) -> bool:
        args = ["group", "delete", "--name", scope.name, "--yes"]
        if not wait:
            args.append("--no-wait")
        return self._az_delete(args)

    # ------------------------------------------------------------ lookups
    def get(self, spec: ResourceSpec, scope: ResourceGroupRef) -> Optional[Dict[str, Any]]:
        rg = scope.name
        kind = spec.kind

        if kind == ResourceKind.REGISTRY:
            reg = self._az_lookup(["acr", "show", "--name", spec.name, "--resource-group", rg])
            if reg is None:
                return None
            outputs = {"id": reg.get("id"), "login_server": reg.get("loginServer")}
            if reg.get("adminUserEnabled"):
                creds = self._az(["acr", "credential", "show", "--name", spec.name]) or {}
                passwords = creds.get("passwords") or [{}]
                outputs["username"] = creds.get("username")
                outputs["password"] = passwords[0].get("value")
            return outputs

        if kind == ResourceKind.VAULT:
            vault = self._az_lookup(["keyvault", "show", "--name", spec.name, "--resource-group", rg])
            if vault is None:
                return None
            return {"id": vault.get("id"), "uri": (vault.get("properties") or {}).get("vaultUri")}

        if kind == ResourceKind.WORKSPACE:
            ws = self._az_lookup([
                "monitor", "log-analytics", "workspace", "show",
                "--workspace-name", spec.name, "--resource-group", rg,
            ])
            if ws is None:
                return None
            return {"id": ws.get("id"), "customer_id": ws.get("customerId")}

        if kind == ResourceKind.INSIGHTS:
            comp = self._az_lookup([
                "monitor", "app-insights", "component", "show",
                "--app", spec.name, "--resource-group", rg,
            ])
            if comp is None:
                return None
            return {
                "id": comp.get("id"),
                "instrumentation_key": comp.get("instrumentationKey"),
                "connection_string": comp.get("connectionString"),
                "app_id": comp.get("appId"),
            }

        if kind == ResourceKind.STORAGE:
            acct = self._az_lookup(["storage", "account", "show", "--name", spec.name, "--resource-group", rg])
            if acct is None:
                return None
            endpoints = acct.get("primaryEndpoints") or {}
            return {"id": acct.get("id"), "blob_endpoint": endpoints.get("blob")}

        if kind == ResourceKind.IDENTITY:
            sp = self._find_sp(spec.name)
            if sp is None:
                return None
            return {
                "app_id": sp.get("appId"),
                "object_id": sp.get("id"),
                "tenant_id": sp.get("appOwnerOrganizationId"),
            }

        if kind == ResourceKind.MANAGED_IDENTITY:
            ident = self._az_lookup(["identity", "show", "--name", spec.name, "--resource-group", rg])
            if ident is None:
                return None
            return {
                "id": ident.get("id"),
                "client_id": ident.get("clientId"),
                "principal_id": ident.get("principalId"),
            }

        if kind == ResourceKind.SECRET:
            vault = spec.properties.get("vault")
            secret = self._az_lookup(["keyvault", "secret", "show", "--vault-name", str(vault), "--name", spec.name])
            if secret is None:
                return None
            return {"id": secret.get("id")}

        if kind == ResourceKind.ACCESS_POLICY:
            return self._get_access_policy(spec)

        simple_show = {
            ResourceKind.NETWORK_GROUP: ["network", "nsg", "show", "--name"],
            ResourceKind.ACTION_GROUP: ["monitor", "action-group", "show", "--name"],
            ResourceKind.ALERT_RULE: ["monitor", "metrics", "alert", "show", "--name"],
        }
        if kind in simple_show:
            found = self._az_lookup(simple_show[kind] + [spec.name, "--resource-group", rg])
            if found is None:
                return None
            return {"id": found.get("id")}

        raise CommandFailed(["get", kind.value], 1, f"unsupported kind '{kind.value}'")

    def _find_sp(self, display_name: str) -> Optional[Dict[str, Any]]:
        matches = self._az(["ad", "sp", "list", "--display-name", display_name]) or []
        return matches[0] if matches else None

    def _get_access_policy(self, spec: ResourceSpec) -> Optional[Dict[str, Any]]:
        principal = spec.properties.get("principal")
        if not principal:
            return None
        object_id = self._az_lookup(["ad", "sp", "show", "--id", str(principal)], query="id")
        if object_id is None:
            return None
        vault = self._az_lookup(["keyvault", "show", "--name", str(spec.properties.get("vault"))])
        if vault is None:
            return None
        for policy in (vault.get("properties") or {}).get("accessPolicies") or []:
            if policy.get("objectId") == object_id:
                return {"object_id": object_id}
        return None

    # ------------------------------------------------------------ create
    def create(
        self, spec: ResourceSpec, properties: Dict[str, Any], scope: ResourceGroupRef
    ) -> Dict[str, Any]:
        rg = scope.name
        location = spec.location or scope.location
        kind = spec.kind
        extra: Dict[str, Any] = {}

        if kind == ResourceKind.REGISTRY:
            args = ["acr", "create", "--resource-group", rg, "--name", spec.name,
                    "--sku", spec.sku or "Basic", "--location", location]
            if properties.get("admin_enabled", True):
                args += ["--admin-enabled", "true"]
            self._az(args)

        elif kind == ResourceKind.VAULT:
            self._az(["keyvault", "create", "--name", spec.name, "--resource-group", rg,
                      "--location", location, "--sku", spec.sku or "standard"])

        elif kind == ResourceKind.WORKSPACE:
            args = ["monitor", "log-analytics", "workspace", "create",
                    "--workspace-name", spec.name, "--resource-group", rg, "--location", location]
            if properties.get("retention_days"):
                args += ["--retention-time", str(properties["retention_days"])]
            self._az(args)

        elif kind == ResourceKind.INSIGHTS:
            args = ["monitor", "app-insights", "component", "create",
                    "--app", spec.name, "--location", location, "--resource-group", rg,
                    "--kind", str(properties.get("application_type", "web"))]
            if properties.get("workspace"):
                args += ["--workspace", str(properties["workspace"])]
            self._az(args)

        elif kind == ResourceKind.STORAGE:
            args = ["storage", "account", "create", "--name", spec.name,
                    "--resource-group", rg, "--location", location,
                    "--sku", spec.sku or "Standard_LRS",
                    "--kind", str(properties.get("account_kind", "StorageV2"))]
            if "https_only" in properties:
                args += ["--https-only", str(bool(properties["https_only"])).lower()]
            if properties.get("min_tls_version"):
                args += ["--min-tls-version", str(properties["min_tls_version"])]
            self._az(args)

        elif kind == ResourceKind.NETWORK_GROUP:
            self._az(["network", "nsg", "create", "--name", spec.name,
                      "--resource-group", rg, "--location", location])

        elif kind == ResourceKind.IDENTITY:
            sp_scope = properties.get("scope") or (
                f"/subscriptions/{self._subscription_id()}/resourceGroups/{rg}"
            )
            created = self._az(["ad", "sp", "create-for-rbac", "--name", spec.name,
                                "--role", str(properties.get("role", "contributor")),
                                "--scopes", sp_scope]) or {}
            # The secret is only ever returned by the create call
            extra = {
                "app_id": created.get("appId"),
                "client_secret": created.get("password"),
                "tenant_id": created.get("tenant"),
            }

        elif kind == ResourceKind.MANAGED_IDENTITY:
            self._az(["identity", "create", "--name", spec.name,
                      "--resource-group", rg, "--location", location])

        elif kind == ResourceKind.SECRET:
            self._az(["keyvault", "secret", "set", "--vault-name", str(properties["vault"]),
                      "--name", spec.name, "--value", str(properties["value"])])

        elif kind == ResourceKind.ACCESS_POLICY:
            permissions = properties.get("secret_permissions") or ["get", "list"]
            self._az(["keyvault", "set-policy", "--name", str(properties["vault"]),
                      "--spn", str(properties["principal"]),
                      "--secret-permissions"] + [str(p) for p in permissions])

        elif kind == ResourceKind.ACTION_GROUP:
            args = ["monitor", "action-group", "create", "--name", spec.name,
                    "--resource-group", rg, "--short-name", str(properties["short_name"])]
            if properties.get("email"):
                args += ["--action", "email", "admin", str(properties["email"])]
            self._az(args)

        elif kind == ResourceKind.ALERT_RULE:
            scopes = properties["scopes"]
            if isinstance(scopes, str):
                scopes = [scopes]
            args = ["monitor", "metrics", "alert", "create", "--name", spec.name,
                    "--resource-group", rg, "--scopes"] + [str(s) for s in scopes]
            args += ["--condition", str(properties["condition"])]
            if properties.get("action_group"):
                args += ["--action", str(properties["action_group"])]
            if properties.get("description"):
                args += ["--description", str(properties["description"])]
            self._az(args)

        else:
            raise CommandFailed(["create", kind.value], 1, f"unsupported kind '{kind.value}'")

        # A spec's properties are not part of its identity, so re-read the
        # outputs through the same lookup used for existence checks.
        rendered = ResourceSpec(
            key=spec.key, kind=spec.kind, name=spec.name, location=location,
            sku=spec.sku, depends_on=spec.depends_on, properties=properties,
        )
        outputs = self.get(rendered, scope) or {}
        outputs.update({k: v for k, v in extra.items() if v is not None})
        return outputs

    # ------------------------------------------------------------ listing
    def list_resources(self, scope: ResourceGroupRef) -> List[ResourceRef]:
        items = self._az(["resource", "list", "--resource-group", scope.name]) or []
        refs = []
        for item in items:
            refs.append(ResourceRef(
                kind=kind_for_type(item.get("type", "")),
                name=item.get("name", ""),
                resource_type=item.get("type", ""),
                resource_id=item.get("id", ""),
            ))
        return refs

    def _list_names(self, args: List[str], query: Optional[str] = "[].name") -> List[str]:
        # Optional registry features (connected registries, agent pools, ...)
        # error out on SKUs that lack them; that means there is nothing to list.
        returncode, data, stderr = self._call(args, query)
        if returncode != 0:
            if self.verbose:
                console.print(f"[dim]  nothing listed by 'az {' '.join(args[:3])}': {stderr.strip()}[/dim]")
            return []
        return [str(n) for n in (data or []) if n]

    def list_children(self, ref: ResourceRef) -> List[ResourceRef]:
        if ref.kind == ResourceKind.REGISTRY:
            children = [
                ResourceRef(kind=ResourceKind.REPOSITORY, name=repo, parent=ref)
                for repo in self._list_names(["acr", "repository", "list", "--name", ref.name], query=None)
            ]
            for kind, group in _REGISTRY_CHILD_GROUPS:
                for name in self._list_names(group + ["list", "--registry", ref.name]):
                    if kind == ResourceKind.SCOPE_MAP and name.startswith("_"):
                        # built-in scope maps cannot be deleted
                        continue
                    children.append(ResourceRef(kind=kind, name=name, parent=ref))
            return children

        if ref.kind == ResourceKind.REPOSITORY and ref.parent is not None:
            tags = self._list_names(
                ["acr", "repository", "show-tags", "--name", ref.parent.name, "--repository", ref.name],
                query=None,
            )
            return [ResourceRef(kind=ResourceKind.TAG, name=tag, parent=ref) for tag in tags]

        return []

    # ------------------------------------------------------------ delete
    def delete(self, ref: ResourceRef, scope: ResourceGroupRef) -> bool:
        rg = scope.name
        kind = ref.kind

        if kind == ResourceKind.TAG:
            repo = ref.parent
            registry = repo.parent.name
            return self._az_delete(["acr", "repository", "delete", "--name", registry,
                                    "--image", f"{repo.name}:{ref.name}", "--yes"])
        if kind == ResourceKind.REPOSITORY:
            return self._az_delete(["acr", "repository", "delete", "--name", ref.parent.name,
                                    "--repository", ref.name, "--yes"])
        for child_kind, group in _REGISTRY_CHILD_GROUPS:
            if kind == child_kind:
                return self._az_delete(group + ["delete", "--name", ref.name,
                                                "--registry", ref.parent.name, "--yes"])

        if kind == ResourceKind.IDENTITY:
            app_id = ref.extra.get("app_id") or ref.resource_id
            return self._az_delete(["ad", "sp", "delete", "--id", app_id])

        by_name = {
            ResourceKind.REGISTRY: ["acr", "delete", "--name", ref.name, "--resource-group", rg, "--yes"],
            ResourceKind.VAULT: ["keyvault", "delete", "--name", ref.name, "--resource-group", rg],
            ResourceKind.INSIGHTS: ["monitor", "app-insights", "component", "delete",
                                    "--app", ref.name, "--resource-group", rg],
            ResourceKind.WORKSPACE: ["monitor", "log-analytics", "workspace", "delete",
                                     "--workspace-name", ref.name, "--resource-group", rg,
                                     "--force", "--yes"],
            ResourceKind.STORAGE: ["storage", "account", "delete", "--name", ref.name,
                                   "--resource-group", rg, "--yes"],
            ResourceKind.NETWORK_GROUP: ["network", "nsg", "delete", "--name", ref.name, "--resource-group", rg],
            ResourceKind.MANAGED_IDENTITY: ["identity", "delete", "--name", ref.name, "--resource-group", rg],
            ResourceKind.ACTION_GROUP: ["monitor", "action-group", "delete", "--name", ref.name,
                                        "--resource-group", rg],
            ResourceKind.ALERT_RULE: ["monitor", "metrics", "alert", "delete", "--name", ref.name,
                                      "--resource-group", rg],
        }
        if kind in by_name:
            return self._az_delete(by_name[kind])

        if ref.resource_id:
            return self._az_delete(["resource", "delete", "--ids", ref.resource_id])
        raise CommandFailed(["delete", ref.name], 1, f"no way to delete '{ref.name}' of type '{ref.resource_type}'")

    def find_principal(self, display_name: str) -> Optional[ResourceRef]:
        sp = self._find_sp(display_name)
        if sp is None:
            return None
        return ResourceRef(
            kind=ResourceKind.IDENTITY,
            name=display_name,
            resource_type="Microsoft.Graph/servicePrincipals",
            resource_id=sp.get("id", ""),
            extra={"app_id": sp.get("appId")},
        )
