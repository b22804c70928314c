"""Unit tests for the mutator pipeline."""

import pytest
from kubernetes_asyncio.client import V1ConfigMap, V1Deployment, V1ObjectMeta

from conftest import deployment
from errors import InvariantViolationError, PipelineOrderError, TypeMismatchError
from reconcilers.pipeline import MutatorPipeline, mutator, validate_order


def changed(desired, existing):
    return True


def unchanged(desired, existing):
    return False


@mutator(provides=("containers",))
def provider(desired, existing):
    return False


@mutator(requires=("containers",))
def consumer(desired, existing):
    return False


class TestMutatorDecorator:
    def test_sets_contract(self):
        assert provider.provides == ("containers",)
        assert provider.requires == ()
        assert consumer.requires == ("containers",)

    def test_undecorated_functions_have_no_contract(self):
        validate_order([changed, unchanged])


class TestPipelineConstruction:
    def test_valid_order(self):
        pipeline = MutatorPipeline(V1Deployment, provider, consumer)

        assert pipeline.names == ["provider", "consumer"]
        assert len(pipeline) == 2

    def test_requirement_without_provider(self):
        with pytest.raises(PipelineOrderError, match="consumer"):
            MutatorPipeline(V1Deployment, consumer)

    def test_provider_after_consumer(self):
        with pytest.raises(PipelineOrderError):
            MutatorPipeline(V1Deployment, consumer, provider)

    def test_order_error_is_a_value_error(self):
        with pytest.raises(ValueError):
            validate_order([consumer])


class TestPipelineRun:
    def test_changed_is_logical_or(self):
        assert MutatorPipeline(V1Deployment, unchanged, changed).run(
            deployment(), deployment()
        )
        assert not MutatorPipeline(V1Deployment, unchanged, unchanged).run(
            deployment(), deployment()
        )

    def test_empty_pipeline(self):
        assert MutatorPipeline(V1Deployment).run(deployment(), deployment()) is False

    def test_stops_at_first_error(self):
        calls = []

        def failing(desired, existing):
            calls.append("failing")
            raise InvariantViolationError("bad desired object")

        def after(desired, existing):
            calls.append("after")
            return True

        pipeline = MutatorPipeline(V1Deployment, failing, after)

        with pytest.raises(InvariantViolationError):
            pipeline.run(deployment(), deployment())
        assert calls == ["failing"]

    def test_mutations_before_error_stay_in_memory(self):
        def set_replicas(desired, existing):
            existing.spec.replicas = 5
            return True

        def failing(desired, existing):
            raise InvariantViolationError("boom")

        existing = deployment()

        with pytest.raises(InvariantViolationError):
            MutatorPipeline(V1Deployment, set_replicas, failing)(deployment(), existing)
        assert existing.spec.replicas == 5

    def test_wrong_kind(self):
        pipeline = MutatorPipeline(V1Deployment, changed)
        config_map = V1ConfigMap(metadata=V1ObjectMeta(name="cm"))

        with pytest.raises(TypeMismatchError):
            pipeline.run(deployment(), config_map)
        with pytest.raises(TypeMismatchError):
            pipeline.run(config_map, deployment())

    def test_repr(self):
        assert repr(MutatorPipeline(V1Deployment, changed)) == (
            "MutatorPipeline(V1Deployment, changed)"
        )
