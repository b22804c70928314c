"""
System reconciler - the system-app (porta) Deployment.
"""

import logging

from kubernetes_asyncio.client import (
    V1ConfigMapVolumeSource,
    V1Container,
    V1ContainerPort,
    V1Deployment,
    V1EmptyDirVolumeSource,
    V1EnvVar,
    V1ResourceRequirements,
    V1Volume,
    V1VolumeMount,
)

from apimanager.logic import APIManagerLogicReconciler, component_deployment
from reconcilers.base import ReconcileResult
from reconcilers.deployment import (
    deployment_env_var_mutator,
    deployment_mutator,
    deployment_pod_init_container_mutator,
    deployment_remove_duplicate_env_var_mutator,
    deployment_remove_tls_volumes_and_mounts_mutator,
    deployment_replicas_mutator,
    deployment_sync_volumes_and_mounts_mutator,
    generic_backend_deployment_mutators,
)
from reconcilers.pipeline import MutatorPipeline

logger = logging.getLogger(__name__)

COMPONENT = "system"
APP = "system-app"

SYSTEM_APP_ARGS = [
    "container-entrypoint",
    "bundle",
    "exec",
    "unicorn",
    "-c",
    "config/unicorn.rb",
]
DB_WAIT_COMMAND = [
    "bash",
    "-c",
    'bundle exec sh -c "until rake boot:db; do sleep $SLEEP_SECONDS; done"',
]

SYSTEM_APP_RESOURCES = V1ResourceRequirements(
    limits={"cpu": "1", "memory": "800Mi"},
    requests={"cpu": "50m", "memory": "600Mi"},
)


class SystemReconciler:
    def __init__(self, logic: APIManagerLogicReconciler):
        self.logic = logic
        self.apimanager = logic.apimanager

    def _db_wait_init_container(self) -> V1Container:
        # Spelled out with the fields the API server would otherwise default,
        # the init containers are compared whole
        return V1Container(
            name="check-svc",
            image=self.apimanager.system_image,
            command=list(DB_WAIT_COMMAND),
            env=[V1EnvVar(name="SLEEP_SECONDS", value="1")],
            image_pull_policy="IfNotPresent",
            resources=V1ResourceRequirements(),
            termination_message_path="/dev/termination-log",
            termination_message_policy="File",
        )

    def app_deployment(self) -> V1Deployment:
        spec = self.apimanager.spec.system.app_spec
        env = [V1EnvVar(name="RAILS_ENV", value="production")]
        # Empty values are dropped by the API server and would never compare equal
        if self.apimanager.spec.wildcard_domain:
            env.append(
                V1EnvVar(
                    name="THREESCALE_SUPERDOMAIN",
                    value=self.apimanager.spec.wildcard_domain,
                )
            )
        env.append(V1EnvVar(name="TENANT_MODE", value="multitenant"))
        container = V1Container(
            name=APP,
            image=self.apimanager.system_image,
            args=list(SYSTEM_APP_ARGS),
            env=env,
            ports=[V1ContainerPort(name="http", container_port=3000, protocol="TCP")],
            resources=spec.resource_requirements(SYSTEM_APP_RESOURCES),
            volume_mounts=[
                V1VolumeMount(
                    name="system-storage", mount_path="/opt/system/public/system"
                ),
                V1VolumeMount(
                    name="system-config", mount_path="/opt/system-extra-configs"
                ),
            ],
        )
        volumes = [
            V1Volume(name="system-storage", empty_dir=V1EmptyDirVolumeSource()),
            V1Volume(
                name="system-config",
                config_map=V1ConfigMapVolumeSource(name="system", optional=True),
            ),
        ]
        return component_deployment(
            self.logic,
            APP,
            COMPONENT,
            spec,
            containers=[container],
            init_containers=[self._db_wait_init_container()],
            volumes=volumes,
        )

    def app_mutator(self) -> MutatorPipeline[V1Deployment]:
        mutators = generic_backend_deployment_mutators()
        if self.apimanager.spec.system.app_spec.replicas is not None:
            mutators.append(deployment_replicas_mutator)
        mutators += [
            deployment_env_var_mutator,
            deployment_pod_init_container_mutator,
            deployment_sync_volumes_and_mounts_mutator,
            deployment_remove_tls_volumes_and_mounts_mutator,
            deployment_remove_duplicate_env_var_mutator,
        ]
        return deployment_mutator(*mutators)

    async def reconcile(self) -> ReconcileResult:
        await self.logic.reconcile_deployment(self.app_deployment(), self.app_mutator())
        return ReconcileResult()
