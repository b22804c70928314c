"""Unit tests for the APIManager reconcilers."""

import copy
from unittest.mock import AsyncMock, MagicMock

import pytest

from apimanager.backend import BackendReconciler
from apimanager.images import ImagesReconciler
from apimanager.logic import APIManagerLogicReconciler
from apimanager.reconciler import APIManagerReconciler
from apimanager.spec import DISABLE_ASYNC_ANNOTATION, APIManager
from apimanager.system import SystemReconciler
from capabilities import CapabilitySnapshot
from errors import InvariantViolationError, NotFoundError
from reconcilers.base import BaseReconciler, ReconcileResult
from reconcilers.deployment import CONFIG_REDIS_ASYNC, LISTENER_WORKERS
from reconcilers.helpers import find_env_var
from store import ObjectKey, Scheme

KEY = ObjectKey("3scale", "example")


def apimanager_manifest(annotations=None, spec=None, **metadata):
    meta = {
        "name": "example",
        "namespace": "3scale",
        "uid": "d2c1-4f",
        "annotations": annotations or {},
    }
    meta.update(metadata)
    return {
        "apiVersion": "apps.3scale.net/v1alpha1",
        "kind": "APIManager",
        "metadata": meta,
        "spec": spec if spec is not None else {"wildcardDomain": "example.com"},
    }


class FakeStore:
    """In-memory object store keyed by kind and identity."""

    def __init__(self, custom_objects=None):
        self.scheme = Scheme.default()
        self.objects = {}
        self.custom_objects = custom_objects or {}
        self.writes = []

    def _key(self, obj):
        return (
            self.scheme.lookup(obj).kind,
            obj.metadata.namespace,
            obj.metadata.name,
        )

    async def get(self, kind, namespace, name):
        kind = self.scheme.lookup(kind).kind
        if (kind, namespace, name) not in self.objects:
            raise NotFoundError(f"{kind} {namespace}/{name} not found", status=404)
        return copy.deepcopy(self.objects[(kind, namespace, name)])

    async def create(self, obj):
        self.objects[self._key(obj)] = copy.deepcopy(obj)
        self.writes.append(("create", self._key(obj)))
        return obj

    async def update(self, obj):
        self.objects[self._key(obj)] = copy.deepcopy(obj)
        self.writes.append(("update", self._key(obj)))
        return obj

    async def get_custom_object(self, group, version, plural, namespace, name):
        if (namespace, name) not in self.custom_objects:
            raise NotFoundError(f"{plural} {namespace}/{name} not found", status=404)
        return self.custom_objects[(namespace, name)]


def make_base(store, pairs=()):
    snapshot = CapabilitySnapshot.from_pairs(
        [("", "ConfigMap"), ("", "ServiceAccount"), ("apps", "Deployment"), *pairs]
    )
    return BaseReconciler(store, snapshot)


def make_logic(manifest=None, pairs=()):
    store = FakeStore()
    apimanager = APIManager.parse(manifest or apimanager_manifest())
    return APIManagerLogicReconciler(make_base(store, pairs), apimanager), store


def env_value(deployment, name):
    var = find_env_var(deployment.spec.template.spec.containers[0].env, name)
    return None if var is None else var.value


class TestAPIManagerSpec:
    def test_parse(self):
        apimanager = APIManager.parse(apimanager_manifest())

        assert apimanager.name == "example"
        assert apimanager.namespace == "3scale"
        assert apimanager.spec.wildcard_domain == "example.com"
        assert apimanager.spec.app_label == "3scale-api-management"
        assert apimanager.async_disabled is False
        assert apimanager.monitoring_enabled is False

    def test_parse_nested_component_spec(self):
        apimanager = APIManager.parse(
            apimanager_manifest(
                spec={
                    "backend": {
                        "listenerSpec": {
                            "replicas": 3,
                            "resources": {"limits": {"cpu": "2"}},
                            "priorityClassName": "high",
                        }
                    },
                    "unknownField": True,
                }
            )
        )
        listener = apimanager.spec.backend.listener_spec

        assert listener.replicas == 3
        assert listener.priority_class_name == "high"
        assert listener.resources.limits == {"cpu": "2"}

    @pytest.mark.parametrize(
        "value,expected", [("true", True), ("True", True), ("false", False), ("", False)]
    )
    def test_async_disabled_annotation(self, value, expected):
        apimanager = APIManager.parse(
            apimanager_manifest(annotations={DISABLE_ASYNC_ANNOTATION: value})
        )
        assert apimanager.async_disabled is expected

    def test_default_image_pull_secret(self):
        apimanager = APIManager.parse(apimanager_manifest())

        assert [s.name for s in apimanager.image_pull_secrets()] == [
            "threescale-registry-auth"
        ]

    def test_owner_reference(self):
        owner = APIManager.parse(apimanager_manifest()).owner_reference()

        assert owner.api_version == "apps.3scale.net/v1alpha1"
        assert owner.kind == "APIManager"
        assert owner.name == "example"
        assert owner.uid == "d2c1-4f"
        assert owner.controller is True

    def test_negative_replicas_rejected(self):
        from pydantic import ValidationError

        with pytest.raises(ValidationError):
            APIManager.parse(
                apimanager_manifest(spec={"system": {"appSpec": {"replicas": -1}}})
            )


class TestBackendReconciler:
    def test_async_mode_listener(self):
        logic, _ = make_logic()
        listener = BackendReconciler(logic).listener_deployment()
        container = listener.spec.template.spec.containers[0]

        assert "falcon" in container.args
        assert env_value(listener, CONFIG_REDIS_ASYNC) == "1"
        assert env_value(listener, LISTENER_WORKERS) == "16"

    def test_async_disabled_listener(self):
        logic, _ = make_logic(
            apimanager_manifest(annotations={DISABLE_ASYNC_ANNOTATION: "true"})
        )
        listener = BackendReconciler(logic).listener_deployment()

        assert "falcon" not in listener.spec.template.spec.containers[0].args
        assert env_value(listener, CONFIG_REDIS_ASYNC) == "0"
        assert env_value(listener, LISTENER_WORKERS) is None

    def test_prometheus_annotations_without_pod_monitor(self):
        logic, _ = make_logic()
        listener = BackendReconciler(logic).listener_deployment()

        assert listener.spec.template.metadata.annotations == {
            "prometheus.io/scrape": "true",
            "prometheus.io/port": "9394",
        }

    def test_no_prometheus_annotations_with_pod_monitor(self):
        logic, _ = make_logic(pairs=[("monitoring.coreos.com", "PodMonitor")])
        worker = BackendReconciler(logic).worker_deployment()

        assert worker.spec.template.metadata.annotations is None

    def test_replicas_reconciled_only_when_set(self):
        logic, _ = make_logic()
        assert "deployment_replicas_mutator" not in BackendReconciler(
            logic
        ).listener_mutator().names

        logic, _ = make_logic(
            apimanager_manifest(spec={"backend": {"listenerSpec": {"replicas": 2}}})
        )
        backend = BackendReconciler(logic)
        assert "deployment_replicas_mutator" in backend.listener_mutator().names
        assert backend.listener_deployment().spec.replicas == 2

    def test_mode_pipelines(self):
        logic, _ = make_logic()
        names = BackendReconciler(logic).listener_mutator().names
        assert "deployment_listener_args_mutator" in names
        assert "deployment_listener_env_mutator" in names
        assert names[-1] == "deployment_remove_duplicate_env_var_mutator"

        logic, _ = make_logic(
            apimanager_manifest(annotations={DISABLE_ASYNC_ANNOTATION: "true"})
        )
        names = BackendReconciler(logic).worker_mutator().names
        assert "deployment_worker_disable_async_env_mutator" in names
        assert "deployment_worker_env_mutator" not in names

    @pytest.mark.asyncio
    async def test_switching_to_async_disabled_updates_live_listener(self):
        logic, store = make_logic()
        await BackendReconciler(logic).reconcile()

        disabled, _ = make_logic(
            apimanager_manifest(annotations={DISABLE_ASYNC_ANNOTATION: "true"})
        )
        disabled.base = logic.base
        await BackendReconciler(disabled).reconcile()

        listener = store.objects[("Deployment", "3scale", "backend-listener")]
        assert "falcon" not in listener.spec.template.spec.containers[0].args
        assert env_value(listener, LISTENER_WORKERS) is None
        assert env_value(listener, CONFIG_REDIS_ASYNC) == "0"


class TestSystemReconciler:
    def test_app_deployment(self):
        logic, _ = make_logic()
        app = SystemReconciler(logic).app_deployment()
        pod = app.spec.template.spec

        assert app.metadata.name == "system-app"
        assert pod.service_account_name == "amp"
        assert [c.name for c in pod.init_containers] == ["check-svc"]
        assert [v.name for v in pod.volumes] == ["system-storage", "system-config"]
        assert env_value(app, "THREESCALE_SUPERDOMAIN") == "example.com"

    def test_app_pipeline(self):
        logic, _ = make_logic()
        names = SystemReconciler(logic).app_mutator().names

        assert "deployment_pod_init_container_mutator" in names
        assert "deployment_sync_volumes_and_mounts_mutator" in names
        assert "deployment_remove_tls_volumes_and_mounts_mutator" in names

    def test_unset_wildcard_domain_is_stable(self):
        logic, _ = make_logic(apimanager_manifest(spec={}))
        system = SystemReconciler(logic)
        desired = system.app_deployment()
        # As read back from the API server, which drops empty values
        live = copy.deepcopy(desired)
        for container in live.spec.template.spec.containers:
            for var in container.env or []:
                if var.value == "":
                    var.value = None

        pipeline = system.app_mutator()

        assert env_value(desired, "THREESCALE_SUPERDOMAIN") is None
        assert (pipeline.run(desired, live), pipeline.run(desired, live)) == (
            False,
            False,
        )


@pytest.mark.asyncio
class TestImagesReconciler:
    async def test_creates_service_account(self):
        logic, store = make_logic()

        await ImagesReconciler(logic).reconcile()

        sa = store.objects[("ServiceAccount", "3scale", "amp")]
        assert [s.name for s in sa.image_pull_secrets] == ["threescale-registry-auth"]
        assert sa.metadata.owner_references[0].kind == "APIManager"


@pytest.mark.asyncio
class TestAPIManagerReconciler:
    async def test_properties(self, base_reconciler):
        reconciler = APIManagerReconciler(base_reconciler)

        assert reconciler.name == "apimanager"
        assert reconciler.kind == "APIManager"
        assert reconciler.group == "apps.3scale.net"
        assert reconciler.version == "v1alpha1"
        assert reconciler.plural == "apimanagers"

    async def test_not_found(self, base_reconciler, mock_store):
        mock_store.get_custom_object.side_effect = NotFoundError("gone", status=404)

        result = await APIManagerReconciler(base_reconciler).reconcile(KEY)

        assert result == ReconcileResult()
        mock_store.create.assert_not_called()

    async def test_invalid_manifest(self, base_reconciler, mock_store):
        mock_store.get_custom_object.return_value = {"metadata": {}}

        with pytest.raises(InvariantViolationError, match="Invalid APIManager"):
            await APIManagerReconciler(base_reconciler).reconcile(KEY)

    async def test_being_deleted(self, base_reconciler, mock_store):
        mock_store.get_custom_object.return_value = apimanager_manifest(
            deletionTimestamp="2024-01-15T10:30:00Z"
        )

        await APIManagerReconciler(base_reconciler).reconcile(KEY)

        mock_store.get.assert_not_called()

    async def test_creates_every_owned_object(self):
        store = FakeStore({("3scale", "example"): apimanager_manifest()})

        result = await APIManagerReconciler(make_base(store)).reconcile(KEY)

        assert result.requeue is False
        assert sorted(store.objects) == [
            ("ConfigMap", "3scale", "backend-environment"),
            ("Deployment", "3scale", "backend-cron"),
            ("Deployment", "3scale", "backend-listener"),
            ("Deployment", "3scale", "backend-worker"),
            ("Deployment", "3scale", "system-app"),
            ("ServiceAccount", "3scale", "amp"),
        ]
        assert all(op == "create" for op, _ in store.writes)

    async def test_second_pass_issues_no_writes(self):
        store = FakeStore({("3scale", "example"): apimanager_manifest()})
        reconciler = APIManagerReconciler(make_base(store))
        await reconciler.reconcile(KEY)
        store.writes.clear()

        await reconciler.reconcile(KEY)

        assert store.writes == []

    async def test_drifted_object_is_updated(self):
        store = FakeStore({("3scale", "example"): apimanager_manifest()})
        reconciler = APIManagerReconciler(make_base(store))
        await reconciler.reconcile(KEY)
        worker = store.objects[("Deployment", "3scale", "backend-worker")]
        worker.spec.template.spec.containers[0].image = "quay.io/3scale/apisonator:old"
        store.writes.clear()

        await reconciler.reconcile(KEY)

        assert store.writes == [("update", ("Deployment", "3scale", "backend-worker"))]
        worker = store.objects[("Deployment", "3scale", "backend-worker")]
        assert (
            worker.spec.template.spec.containers[0].image
            == "quay.io/3scale/apisonator:latest"
        )

    async def test_stops_at_first_requeue(self, base_reconciler, mock_store):
        mock_store.get_custom_object.return_value = apimanager_manifest()
        calls = []

        def sub(name, result):
            instance = MagicMock()
            instance.reconcile = AsyncMock(
                side_effect=lambda: calls.append(name) or result
            )
            return MagicMock(return_value=instance)

        reconciler = APIManagerReconciler(base_reconciler)
        reconciler.sub_reconcilers = (
            sub("images", ReconcileResult()),
            sub("backend", ReconcileResult(requeue_after=5)),
            sub("system", ReconcileResult()),
        )

        result = await reconciler.reconcile(KEY)

        assert calls == ["images", "backend"]
        assert result.requeue_after == 5
