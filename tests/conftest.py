"""Pytest configuration and fixtures."""

from typing import Dict, List, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest
from kubernetes_asyncio.client import (
    V1Container,
    V1Deployment,
    V1DeploymentSpec,
    V1EnvVar,
    V1LabelSelector,
    V1ObjectMeta,
    V1PodSpec,
    V1PodTemplateSpec,
    V1ResourceRequirements,
    V1Volume,
    V1VolumeMount,
)

from capabilities import CapabilitySnapshot
from events import EventRecorder
from reconcilers.base import BaseReconciler
from store import Scheme


def env(**values: str) -> List[V1EnvVar]:
    """Env var list from keyword arguments, in order."""
    return [V1EnvVar(name=name, value=value) for name, value in values.items()]


def container(
    name: str = "app",
    image: str = "quay.io/3scale/apisonator:latest",
    env_vars: Optional[List[V1EnvVar]] = None,
    mounts: Optional[List[str]] = None,
    resources: Optional[Dict[str, Dict[str, str]]] = None,
    args: Optional[List[str]] = None,
) -> V1Container:
    return V1Container(
        name=name,
        image=image,
        args=args,
        env=env_vars,
        volume_mounts=[V1VolumeMount(name=m, mount_path=f"/mnt/{m}") for m in mounts]
        if mounts
        else None,
        resources=V1ResourceRequirements(**resources) if resources else None,
    )


def deployment(
    name: str = "backend-listener",
    namespace: str = "3scale",
    containers: Optional[List[V1Container]] = None,
    init_containers: Optional[List[V1Container]] = None,
    volumes: Optional[List[str]] = None,
    replicas: int = 1,
    labels: Optional[Dict[str, str]] = None,
    annotations: Optional[Dict[str, str]] = None,
    resource_version: Optional[str] = None,
) -> V1Deployment:
    return V1Deployment(
        metadata=V1ObjectMeta(
            name=name,
            namespace=namespace,
            labels=labels,
            annotations=annotations,
            resource_version=resource_version,
        ),
        spec=V1DeploymentSpec(
            replicas=replicas,
            selector=V1LabelSelector(match_labels={"deployment": name}),
            template=V1PodTemplateSpec(
                metadata=V1ObjectMeta(labels={"deployment": name}),
                spec=V1PodSpec(
                    containers=containers if containers is not None else [container()],
                    init_containers=init_containers,
                    volumes=[V1Volume(name=v) for v in volumes] if volumes else None,
                ),
            ),
        ),
    )


@pytest.fixture
def make_container():
    return container


@pytest.fixture
def make_deployment():
    return deployment


@pytest.fixture
def make_env():
    return env


@pytest.fixture
def capabilities():
    """Snapshot of a cluster with the core kinds and no prometheus operator."""
    return CapabilitySnapshot.from_pairs(
        [("", "ConfigMap"), ("", "ServiceAccount"), ("apps", "Deployment")],
        ["v1", "apps/v1"],
    )


@pytest.fixture
def mock_store():
    """Object store mock with the default scheme."""
    store = MagicMock()
    store.scheme = Scheme.default()
    store.get = AsyncMock()
    store.create = AsyncMock()
    store.update = AsyncMock()
    store.get_custom_object = AsyncMock()
    store.list_custom_objects = AsyncMock(return_value=[])
    return store


@pytest.fixture
def mock_recorder():
    recorder = MagicMock(spec=EventRecorder)
    return recorder


@pytest.fixture
def base_reconciler(mock_store, capabilities, mock_recorder):
    return BaseReconciler(mock_store, capabilities, mock_recorder)
