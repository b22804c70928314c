"""
Backend reconciler - apisonator listener, worker and cron.

The listener and worker run either in async mode (falcon, async redis
client) or, when the APIManager carries the disable-async annotation, in
the legacy threaded mode. Mode-specific mutators pin arguments and env vars
of the live Deployments to the selected mode.
"""

import logging
from typing import Dict, List, Optional

from kubernetes_asyncio.client import (
    V1ConfigMap,
    V1ConfigMapKeySelector,
    V1Container,
    V1ContainerPort,
    V1Deployment,
    V1EnvVar,
    V1EnvVarSource,
    V1HTTPGetAction,
    V1ObjectMeta,
    V1Probe,
    V1ResourceRequirements,
    V1TCPSocketAction,
)

from apimanager.logic import APIManagerLogicReconciler, component_deployment
from reconcilers.base import ReconcileResult
from reconcilers.configmap import (
    config_map_annotations_mutator,
    config_map_data_mutator,
    config_map_labels_mutator,
    config_map_mutator,
)
from reconcilers.deployment import (
    CONFIG_REDIS_ASYNC,
    LISTENER_ARGS,
    LISTENER_ASYNC_ARGS,
    LISTENER_WORKERS,
    deployment_env_var_mutator,
    deployment_listener_args_mutator,
    deployment_listener_async_disable_args_mutator,
    deployment_listener_async_disable_env_mutator,
    deployment_listener_env_mutator,
    deployment_mutator,
    deployment_remove_duplicate_env_var_mutator,
    deployment_replicas_mutator,
    deployment_worker_disable_async_env_mutator,
    deployment_worker_env_mutator,
    generic_backend_deployment_mutators,
)
from reconcilers.pipeline import MutateFn, MutatorPipeline

logger = logging.getLogger(__name__)

COMPONENT = "backend"
ENVIRONMENT_CONFIG_MAP = "backend-environment"
LISTENER = "backend-listener"
WORKER = "backend-worker"
CRON = "backend-cron"

LISTENER_METRICS_PORT = 9394
WORKER_METRICS_PORT = 9421
DEFAULT_LISTENER_WORKERS = "16"

WORKER_ARGS = ["bin/3scale_backend_worker", "run"]
CRON_ARGS = ["backend-cron"]
REDIS_WAIT_COMMAND = [
    "/opt/app/entrypoint.sh",
    "sh",
    "-c",
    "until rake connectivity:redis_storage_queue_check; do sleep $SLEEP_SECONDS; done",
]

LISTENER_RESOURCES = V1ResourceRequirements(
    limits={"cpu": "1", "memory": "700Mi"},
    requests={"cpu": "500m", "memory": "550Mi"},
)
WORKER_RESOURCES = V1ResourceRequirements(
    limits={"cpu": "1", "memory": "300Mi"},
    requests={"cpu": "150m", "memory": "50Mi"},
)
CRON_RESOURCES = V1ResourceRequirements(
    limits={"cpu": "150m", "memory": "80Mi"},
    requests={"cpu": "50m", "memory": "40Mi"},
)


def _config_map_env(name: str, key: str) -> V1EnvVar:
    return V1EnvVar(
        name=name,
        value_from=V1EnvVarSource(
            config_map_key_ref=V1ConfigMapKeySelector(
                name=ENVIRONMENT_CONFIG_MAP, key=key
            )
        ),
    )


def _prometheus_annotations(port: int) -> Dict[str, str]:
    return {"prometheus.io/scrape": "true", "prometheus.io/port": str(port)}


class BackendReconciler:
    def __init__(self, logic: APIManagerLogicReconciler):
        self.logic = logic
        self.apimanager = logic.apimanager

    @property
    def async_disabled(self) -> bool:
        return self.apimanager.async_disabled

    def _redis_async(self) -> str:
        return "0" if self.async_disabled else "1"

    def _pod_annotations(self, metrics_port: int) -> Optional[Dict[str, str]]:
        # Without the PodMonitor API, scraping relies on pod annotations
        if self.logic.pod_monitors_available():
            return None
        return _prometheus_annotations(metrics_port)

    def _redis_wait_init_container(self) -> V1Container:
        return V1Container(
            name=f"{COMPONENT}-redis-svc",
            image=self.apimanager.backend_image,
            command=list(REDIS_WAIT_COMMAND),
            env=[
                _config_map_env("CONFIG_QUEUES_MASTER_NAME", "CONFIG_QUEUES_MASTER_NAME"),
                V1EnvVar(name="SLEEP_SECONDS", value="1"),
            ],
        )

    def environment_config_map(self) -> V1ConfigMap:
        return V1ConfigMap(
            metadata=V1ObjectMeta(
                name=ENVIRONMENT_CONFIG_MAP,
                namespace=self.logic.namespace,
                labels=self.logic.common_labels(COMPONENT),
            ),
            data={
                "RACK_ENV": "production",
                "CONFIG_QUEUES_MASTER_NAME": "redis://backend-redis:6379/1",
                "CONFIG_REDIS_PROXY": "redis://backend-redis:6379/0",
            },
        )

    def listener_deployment(self) -> V1Deployment:
        spec = self.apimanager.spec.backend.listener_spec
        env = [
            _config_map_env("CONFIG_REDIS_PROXY", "CONFIG_REDIS_PROXY"),
            _config_map_env("CONFIG_QUEUES_MASTER_NAME", "CONFIG_QUEUES_MASTER_NAME"),
            _config_map_env("RACK_ENV", "RACK_ENV"),
            V1EnvVar(
                name="CONFIG_LISTENER_PROMETHEUS_METRICS_ENABLED",
                value=str(self.apimanager.monitoring_enabled).lower(),
            ),
            V1EnvVar(
                name="CONFIG_LISTENER_PROMETHEUS_METRICS_PORT",
                value=str(LISTENER_METRICS_PORT),
            ),
            V1EnvVar(name=CONFIG_REDIS_ASYNC, value=self._redis_async()),
        ]
        if not self.async_disabled:
            env.append(V1EnvVar(name=LISTENER_WORKERS, value=DEFAULT_LISTENER_WORKERS))

        container = V1Container(
            name=LISTENER,
            image=self.apimanager.backend_image,
            args=list(LISTENER_ARGS if self.async_disabled else LISTENER_ASYNC_ARGS),
            env=env,
            ports=[
                V1ContainerPort(name="http", container_port=3000, protocol="TCP"),
                V1ContainerPort(
                    name="metrics", container_port=LISTENER_METRICS_PORT, protocol="TCP"
                ),
            ],
            resources=spec.resource_requirements(LISTENER_RESOURCES),
            liveness_probe=V1Probe(
                tcp_socket=V1TCPSocketAction(port=3000),
                initial_delay_seconds=30,
                period_seconds=10,
                timeout_seconds=1,
                success_threshold=1,
                failure_threshold=3,
            ),
            readiness_probe=V1Probe(
                http_get=V1HTTPGetAction(path="/status", port=3000, scheme="HTTP"),
                initial_delay_seconds=30,
                period_seconds=10,
                timeout_seconds=5,
                success_threshold=1,
                failure_threshold=3,
            ),
        )
        return component_deployment(
            self.logic,
            LISTENER,
            COMPONENT,
            spec,
            containers=[container],
            pod_annotations=self._pod_annotations(LISTENER_METRICS_PORT),
        )

    def worker_deployment(self) -> V1Deployment:
        spec = self.apimanager.spec.backend.worker_spec
        container = V1Container(
            name=WORKER,
            image=self.apimanager.backend_image,
            args=list(WORKER_ARGS),
            env=[
                _config_map_env("CONFIG_REDIS_PROXY", "CONFIG_REDIS_PROXY"),
                _config_map_env("CONFIG_QUEUES_MASTER_NAME", "CONFIG_QUEUES_MASTER_NAME"),
                _config_map_env("RACK_ENV", "RACK_ENV"),
                V1EnvVar(
                    name="CONFIG_WORKER_PROMETHEUS_METRICS_ENABLED",
                    value=str(self.apimanager.monitoring_enabled).lower(),
                ),
                V1EnvVar(
                    name="CONFIG_WORKER_PROMETHEUS_METRICS_PORT",
                    value=str(WORKER_METRICS_PORT),
                ),
                V1EnvVar(name=CONFIG_REDIS_ASYNC, value=self._redis_async()),
            ],
            ports=[
                V1ContainerPort(
                    name="metrics", container_port=WORKER_METRICS_PORT, protocol="TCP"
                ),
            ],
            resources=spec.resource_requirements(WORKER_RESOURCES),
        )
        return component_deployment(
            self.logic,
            WORKER,
            COMPONENT,
            spec,
            containers=[container],
            init_containers=[self._redis_wait_init_container()],
            pod_annotations=self._pod_annotations(WORKER_METRICS_PORT),
        )

    def cron_deployment(self) -> V1Deployment:
        spec = self.apimanager.spec.backend.cron_spec
        container = V1Container(
            name=CRON,
            image=self.apimanager.backend_image,
            args=list(CRON_ARGS),
            env=[
                _config_map_env("CONFIG_REDIS_PROXY", "CONFIG_REDIS_PROXY"),
                _config_map_env("CONFIG_QUEUES_MASTER_NAME", "CONFIG_QUEUES_MASTER_NAME"),
                _config_map_env("RACK_ENV", "RACK_ENV"),
            ],
            resources=spec.resource_requirements(CRON_RESOURCES),
        )
        return component_deployment(
            self.logic,
            CRON,
            COMPONENT,
            spec,
            containers=[container],
            init_containers=[self._redis_wait_init_container()],
        )

    def _generic_mutators(self, replicas: Optional[int]) -> List[MutateFn]:
        mutators = generic_backend_deployment_mutators()
        # Without explicit replicas the count is left to autoscalers and users
        if replicas is not None:
            mutators.append(deployment_replicas_mutator)
        mutators.append(deployment_env_var_mutator)
        return mutators

    def listener_mutator(self) -> MutatorPipeline[V1Deployment]:
        mutators = self._generic_mutators(self.apimanager.spec.backend.listener_spec.replicas)
        if self.async_disabled:
            mutators += [
                deployment_listener_async_disable_args_mutator,
                deployment_listener_async_disable_env_mutator,
            ]
        else:
            mutators += [deployment_listener_args_mutator, deployment_listener_env_mutator]
        mutators.append(deployment_remove_duplicate_env_var_mutator)
        return deployment_mutator(*mutators)

    def worker_mutator(self) -> MutatorPipeline[V1Deployment]:
        mutators = self._generic_mutators(self.apimanager.spec.backend.worker_spec.replicas)
        if self.async_disabled:
            mutators.append(deployment_worker_disable_async_env_mutator)
        else:
            mutators.append(deployment_worker_env_mutator)
        mutators.append(deployment_remove_duplicate_env_var_mutator)
        return deployment_mutator(*mutators)

    def cron_mutator(self) -> MutatorPipeline[V1Deployment]:
        mutators = self._generic_mutators(self.apimanager.spec.backend.cron_spec.replicas)
        mutators.append(deployment_remove_duplicate_env_var_mutator)
        return deployment_mutator(*mutators)

    async def reconcile(self) -> ReconcileResult:
        await self.logic.reconcile_config_map(
            self.environment_config_map(),
            config_map_mutator(
                config_map_data_mutator,
                config_map_labels_mutator,
                config_map_annotations_mutator,
            ),
        )
        await self.logic.reconcile_deployment(
            self.listener_deployment(), self.listener_mutator()
        )
        await self.logic.reconcile_deployment(
            self.worker_deployment(), self.worker_mutator()
        )
        await self.logic.reconcile_deployment(self.cron_deployment(), self.cron_mutator())
        return ReconcileResult()
