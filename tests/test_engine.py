"""
Reconciler tests: ordering, idempotence and failure scoping against the
in-memory provider.
"""
import pytest

from pipeinfra.config import ProvisionConfig
from pipeinfra.errors import DependencyUnavailable, NotLoggedIn, ValidationFailed
from pipeinfra.models.resource import DesiredState, ResourceKind, ResourceSpec
from pipeinfra.models.result import Outcome, has_failures
from pipeinfra.reconciler import engine


def _spec(key, kind, deps=(), name=None, **properties):
    return ResourceSpec(
        key=key,
        kind=kind,
        name=name or key,
        location="eastus",
        depends_on=frozenset(deps),
        properties=properties,
    )


def _created_names(provider):
    return [c[2] for c in provider.calls_of("create")]


def _delete_config(**overrides):
    values = dict(resource_group="test-rg", service_principal_name="pipeline-sp")
    values.update(overrides)
    return ProvisionConfig(**values)


# --------------------------------------------------------- create
class TestReconcileCreate:
    def test_end_to_end_order(self, provider, scope):
        desired = DesiredState(
            [
                _spec("r1", ResourceKind.REGISTRY),
                _spec("v1", ResourceKind.VAULT),
                _spec("i1", ResourceKind.INSIGHTS, deps=["w1"]),
                _spec("w1", ResourceKind.WORKSPACE),
            ],
            scope=scope,
        )
        results = engine.reconcile_create(desired, provider, quiet=True)

        assert {r.key: r.outcome for r in results} == {
            "r1": Outcome.CREATED,
            "v1": Outcome.CREATED,
            "w1": Outcome.CREATED,
            "i1": Outcome.CREATED,
        }
        keys = [r.key for r in results]
        assert keys.index("w1") < keys.index("i1")
        created = _created_names(provider)
        assert created.index("w1") < created.index("i1")

    def test_dependency_created_before_dependent(self, provider, scope):
        desired = DesiredState(
            [_spec("b", ResourceKind.INSIGHTS, deps=["a"]), _spec("a", ResourceKind.WORKSPACE)],
            scope=scope,
        )
        engine.reconcile_create(desired, provider, quiet=True)

        # a's create call completes (is recorded) before b's lookup starts
        ops = [(c[0], c[2]) for c in provider.calls if c[0] in ("get", "create")]
        assert ops == [("get", "a"), ("create", "a"), ("get", "b"), ("create", "b")]

    def test_scope_created_once(self, provider, scope):
        desired = DesiredState([_spec("r1", ResourceKind.REGISTRY)], scope=scope)
        engine.reconcile_create(desired, provider, quiet=True)
        engine.reconcile_create(desired, provider, quiet=True)
        assert provider.calls_of("create_scope") == [("create_scope", "test-rg")]

    def test_second_run_is_idempotent(self, provider, scope):
        desired = DesiredState(
            [
                _spec("w1", ResourceKind.WORKSPACE),
                _spec("i1", ResourceKind.INSIGHTS, deps=["w1"]),
                _spec("r1", ResourceKind.REGISTRY),
            ],
            scope=scope,
        )
        engine.reconcile_create(desired, provider, quiet=True)
        mutations_after_first = len(provider.mutating_calls())

        second = engine.reconcile_create(desired, provider, quiet=True)

        assert len(provider.mutating_calls()) == mutations_after_first
        assert all(r.outcome == Outcome.ALREADY_EXISTS for r in second)
        assert len(second) == 3

    def test_existing_resource_outputs_are_kept(self, provider, scope):
        provider.add(ResourceKind.REGISTRY, "r1", login_server="r1.azurecr.io")
        desired = DesiredState([_spec("r1", ResourceKind.REGISTRY)], scope=scope)
        results = engine.reconcile_create(desired, provider, quiet=True)
        assert results[0].outcome == Outcome.ALREADY_EXISTS
        assert results[0].outputs["login_server"] == "r1.azurecr.io"

    def test_failure_blocks_dependents_only(self, provider, scope):
        provider.fail_create.add("a")
        desired = DesiredState(
            [
                _spec("a", ResourceKind.WORKSPACE),
                _spec("b", ResourceKind.INSIGHTS, deps=["a"]),
                _spec("d", ResourceKind.ALERT_RULE, deps=["b"]),
                _spec("c", ResourceKind.VAULT),
            ],
            scope=scope,
        )
        results = engine.reconcile_create(desired, provider, quiet=True)
        by_key = {r.key: r for r in results}

        assert by_key["a"].outcome == Outcome.FAILED
        assert "quota exceeded" in by_key["a"].detail
        assert by_key["b"].outcome == Outcome.BLOCKED
        assert by_key["d"].outcome == Outcome.BLOCKED
        assert "'a'" in by_key["d"].detail
        assert by_key["c"].outcome == Outcome.CREATED
        # b and d were never attempted, not even looked up
        touched = {c[2] for c in provider.calls if c[0] in ("get", "create")}
        assert "b" not in touched
        assert "d" not in touched
        assert has_failures(results)

    def test_failure_without_dependents_continues(self, provider, scope):
        provider.fail_create.add("r1")
        desired = DesiredState(
            [_spec("r1", ResourceKind.REGISTRY), _spec("v1", ResourceKind.VAULT)],
            scope=scope,
        )
        results = engine.reconcile_create(desired, provider, quiet=True)
        assert [r.outcome for r in results] == [Outcome.FAILED, Outcome.CREATED]

    def test_properties_rendered_from_dependency_outputs(self, provider, scope):
        desired = DesiredState(
            [
                _spec("insights", ResourceKind.INSIGHTS, name="app-insights"),
                _spec(
                    "secret", ResourceKind.SECRET, deps=["insights"], name="APP-INSIGHTS-KEY",
                    vault="kv", value="{{ resources.insights.instrumentation_key }}",
                ),
            ],
            scope=scope,
            parameters={},
        )
        engine.reconcile_create(desired, provider, quiet=True)
        secret_call = [c for c in provider.calls_of("create") if c[2] == "APP-INSIGHTS-KEY"][0]
        assert secret_call[3] == {"vault": "kv", "value": "key-app-insights"}

    def test_lookup_receives_rendered_properties(self, provider, scope):
        desired = DesiredState(
            [
                _spec("v1", ResourceKind.VAULT, name="kv"),
                _spec(
                    "secret", ResourceKind.SECRET, deps=["v1"], name="JWT-SECRET",
                    vault="{{ resources.v1.id }}", value="{{ params.jwt }}",
                ),
            ],
            scope=scope,
            parameters={"jwt": "token"},
        )
        engine.reconcile_create(desired, provider, quiet=True)
        looked_up = [s for s in provider.lookups if s.key == "secret"][0]
        assert looked_up.properties == {"vault": "/fake/vault/kv", "value": "token"}
        # the desired state itself keeps the expressions
        assert desired["secret"].properties["vault"] == "{{ resources.v1.id }}"

    def test_render_failure_blocks_dependents(self, provider, scope):
        desired = DesiredState(
            [
                _spec("a", ResourceKind.WORKSPACE),
                _spec("b", ResourceKind.INSIGHTS, deps=["a"], workspace="{{ resources.a.no_such_output }}"),
                _spec("c", ResourceKind.ALERT_RULE, deps=["b"]),
            ],
            scope=scope,
            parameters={},
        )
        results = engine.reconcile_create(desired, provider, quiet=True)
        by_key = {r.key: r for r in results}

        assert by_key["a"].outcome == Outcome.CREATED
        assert by_key["b"].outcome == Outcome.FAILED
        assert "Cannot render" in by_key["b"].detail
        assert by_key["c"].outcome == Outcome.BLOCKED
        assert "'b'" in by_key["c"].detail
        assert [s.key for s in provider.lookups] == ["a"]

    def test_not_logged_in_aborts_before_any_call(self, provider, scope):
        provider.logged_in = False
        desired = DesiredState([_spec("r1", ResourceKind.REGISTRY)], scope=scope)
        with pytest.raises(NotLoggedIn):
            engine.reconcile_create(desired, provider, quiet=True)
        assert provider.calls == []

    def test_dependency_unavailable_is_fatal(self, provider, scope):
        def missing_tool():
            raise DependencyUnavailable("az is not installed")

        provider.check_ready = missing_tool
        desired = DesiredState([_spec("r1", ResourceKind.REGISTRY)], scope=scope)
        with pytest.raises(DependencyUnavailable):
            engine.reconcile_create(desired, provider, quiet=True)
        assert provider.mutating_calls() == []

    def test_validation_failure_has_no_side_effects(self, provider, scope):
        provider.rejections = ["r1: name too short"]
        desired = DesiredState([_spec("r1", ResourceKind.REGISTRY)], scope=scope)
        with pytest.raises(ValidationFailed) as exc_info:
            engine.reconcile_create(desired, provider, quiet=True)
        assert "name too short" in str(exc_info.value)
        assert provider.mutating_calls() == []

    def test_evaluate_outputs(self, provider, scope):
        desired = DesiredState(
            [_spec("acr", ResourceKind.REGISTRY, name="myacr01")],
            scope=scope,
            parameters={"acrName": "myacr01"},
            outputs={
                "acrLoginServer": "{{ resources.acr.login_server }}",
                "acrName": "{{ params.acrName }}",
            },
        )
        results = engine.reconcile_create(desired, provider, quiet=True)
        assert engine.evaluate_outputs(desired, results) == {
            "acrLoginServer": "myacr01.azurecr.io",
            "acrName": "myacr01",
        }

    def test_outputs_of_failed_resources_are_skipped(self, provider, scope):
        provider.fail_create.add("myacr01")
        desired = DesiredState(
            [_spec("acr", ResourceKind.REGISTRY, name="myacr01")],
            scope=scope,
            outputs={"acrLoginServer": "{{ resources.acr.login_server }}"},
        )
        results = engine.reconcile_create(desired, provider, quiet=True)
        assert engine.evaluate_outputs(desired, results) == {}


# --------------------------------------------------------- delete
class TestReconcileDelete:
    def _registry_with_images(self, provider):
        registry = provider.add(ResourceKind.REGISTRY, "myacr01")
        web = provider.add_child(registry, ResourceKind.REPOSITORY, "web")
        api = provider.add_child(registry, ResourceKind.REPOSITORY, "api")
        provider.add_child(web, ResourceKind.TAG, "v1")
        provider.add_child(web, ResourceKind.TAG, "v2")
        provider.add_child(api, ResourceKind.TAG, "latest")
        return registry

    def test_registry_contents_deleted_leaves_first(self, provider):
        self._registry_with_images(provider)
        results = engine.reconcile_delete(_delete_config(), provider, quiet=True)

        deletes = provider.calls_of("delete")
        kinds = [c[1] for c in deletes]
        assert kinds == ["tag", "tag", "tag", "repository", "repository", "registry"]
        assert {c[2] for c in deletes[:3]} == {
            "myacr01/web/v1", "myacr01/web/v2", "myacr01/api/latest",
        }
        assert all(
            r.outcome in (Outcome.DELETED, Outcome.NOT_FOUND) for r in results
        )

    def test_scope_deleted_last_without_waiting(self, provider):
        provider.add(ResourceKind.VAULT, "kv")
        results = engine.reconcile_delete(_delete_config(), provider, quiet=True)

        assert provider.calls_of("delete_scope") == [("delete_scope", "test-rg", False)]
        assert provider.mutating_calls()[-1][0] == "delete_scope"
        group = [r for r in results if r.kind == "resource-group"][0]
        assert group.outcome == Outcome.DELETED
        assert "background" in group.detail

    def test_absent_scope_reports_not_found(self, provider):
        first = engine.reconcile_delete(_delete_config(), provider, quiet=True)
        second = engine.reconcile_delete(_delete_config(), provider, quiet=True)
        for results in (first, second):
            assert results
            assert all(r.outcome == Outcome.NOT_FOUND for r in results)
        assert provider.mutating_calls() == []

    def test_rerun_after_delete_is_all_not_found(self, provider):
        self._registry_with_images(provider)
        provider.add(ResourceKind.IDENTITY, "pipeline-sp", app_id="app-1")
        engine.reconcile_delete(_delete_config(), provider, quiet=True)

        again = engine.reconcile_delete(_delete_config(), provider, quiet=True)
        assert all(r.outcome == Outcome.NOT_FOUND for r in again)

    def test_failure_does_not_stop_siblings(self, provider):
        provider.add(ResourceKind.VAULT, "locked-kv")
        provider.add(ResourceKind.STORAGE, "storage01")
        provider.fail_delete.add("locked-kv")

        results = engine.reconcile_delete(_delete_config(), provider, quiet=True)
        by_name = {r.name: r for r in results}

        assert by_name["locked-kv"].outcome == Outcome.FAILED
        assert "resource is locked" in by_name["locked-kv"].detail
        assert by_name["storage01"].outcome == Outcome.DELETED
        assert provider.calls_of("delete_scope")
        assert has_failures(results)

    def test_already_absent_resource_is_not_found(self, provider):
        ghost = provider.add(ResourceKind.STORAGE, "ghost01")
        provider.resources.clear()
        results = engine.reconcile_delete(
            _delete_config(), provider, quiet=True, resources=[ghost]
        )
        assert results[0].outcome == Outcome.NOT_FOUND

    def test_child_purge_can_be_disabled(self, provider):
        self._registry_with_images(provider)
        engine.reconcile_delete(
            _delete_config(purge_registry_children=False), provider, quiet=True
        )
        assert [c[1] for c in provider.calls_of("delete")] == ["registry"]

    def test_service_principal_removed(self, provider):
        provider.add(ResourceKind.IDENTITY, "pipeline-sp", app_id="app-1")
        results = engine.reconcile_delete(_delete_config(), provider, quiet=True)
        sp = [r for r in results if r.kind == "identity"][0]
        assert sp.outcome == Outcome.DELETED
        assert (ResourceKind.IDENTITY, "pipeline-sp") not in provider.resources

    def test_not_logged_in_is_fatal(self, provider):
        provider.logged_in = False
        with pytest.raises(NotLoggedIn):
            engine.reconcile_delete(_delete_config(), provider, quiet=True)
