"""
APIManager logic reconciler - shared plumbing for the APIManager sub-reconcilers.
"""

import logging
from typing import Dict

from kubernetes_asyncio.client import (
    V1ConfigMap,
    V1Deployment,
    V1DeploymentSpec,
    V1DeploymentStrategy,
    V1LabelSelector,
    V1ObjectMeta,
    V1PodSpec,
    V1PodTemplateSpec,
    V1RollingUpdateDeployment,
    V1ServiceAccount,
)

from apimanager.spec import APIManager
from reconcilers.base import BaseReconciler, ObjectOutcome
from reconcilers.pipeline import MutatorPipeline

logger = logging.getLogger(__name__)

POD_MONITOR_GROUP = "monitoring.coreos.com"
POD_MONITOR_KIND = "PodMonitor"


class APIManagerLogicReconciler:
    """
    Reconciles the objects owned by one APIManager.

    Holds the shared :class:`BaseReconciler` and delegates to it; every
    object created through it is owned by the APIManager.
    """

    def __init__(self, base: BaseReconciler, apimanager: APIManager):
        self.base = base
        self.apimanager = apimanager

    @property
    def namespace(self) -> str:
        return self.apimanager.namespace

    def pod_monitors_available(self) -> bool:
        return self.base.has_kind(POD_MONITOR_GROUP, POD_MONITOR_KIND)

    def common_labels(self, component: str) -> Dict[str, str]:
        return {
            "app": self.apimanager.spec.app_label,
            "threescale_component": component,
        }

    async def _reconcile(self, desired, mutator: MutatorPipeline) -> ObjectOutcome:
        if not desired.metadata.namespace:
            desired.metadata.namespace = self.namespace
        return await self.base.reconcile_resource(
            desired, mutator, owner=self.apimanager.owner_reference()
        )

    async def reconcile_deployment(
        self, desired: V1Deployment, mutator: MutatorPipeline
    ) -> ObjectOutcome:
        return await self._reconcile(desired, mutator)

    async def reconcile_service_account(
        self, desired: V1ServiceAccount, mutator: MutatorPipeline
    ) -> ObjectOutcome:
        return await self._reconcile(desired, mutator)

    async def reconcile_config_map(
        self, desired: V1ConfigMap, mutator: MutatorPipeline
    ) -> ObjectOutcome:
        return await self._reconcile(desired, mutator)


def component_deployment(
    logic: APIManagerLogicReconciler,
    name: str,
    component: str,
    component_spec,
    containers,
    init_containers=None,
    volumes=None,
    pod_annotations=None,
) -> V1Deployment:
    """
    Desired Deployment for one 3scale component.

    ``component_spec`` supplies replicas, priority class, tolerations and
    extra pod labels and annotations.
    """
    labels = logic.common_labels(component)
    labels["threescale_component_element"] = name.split("-", 1)[-1]
    selector = {"deployment": name}

    pod_labels = dict(labels)
    pod_labels.update(selector)
    pod_labels.update(component_spec.labels or {})

    annotations = dict(pod_annotations or {})
    annotations.update(component_spec.annotations or {})

    return V1Deployment(
        api_version="apps/v1",
        kind="Deployment",
        metadata=V1ObjectMeta(name=name, namespace=logic.namespace, labels=labels),
        spec=V1DeploymentSpec(
            replicas=1 if component_spec.replicas is None else component_spec.replicas,
            selector=V1LabelSelector(match_labels=selector),
            strategy=V1DeploymentStrategy(
                type="RollingUpdate",
                rolling_update=V1RollingUpdateDeployment(
                    max_surge="25%", max_unavailable=0
                ),
            ),
            template=V1PodTemplateSpec(
                metadata=V1ObjectMeta(labels=pod_labels, annotations=annotations or None),
                spec=V1PodSpec(
                    service_account_name="amp",
                    containers=containers,
                    init_containers=init_containers,
                    volumes=volumes,
                    priority_class_name=component_spec.priority_class_name,
                    tolerations=component_spec.v1_tolerations(),
                ),
            ),
        ),
    )
