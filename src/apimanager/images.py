"""
Images reconciler - the service account every 3scale deployment runs as.
"""

import logging

from kubernetes_asyncio.client import V1ObjectMeta, V1ServiceAccount

from apimanager.logic import APIManagerLogicReconciler
from reconcilers.base import ReconcileResult
from reconcilers.serviceaccount import (
    service_account_image_pull_secrets_mutator,
    service_account_labels_mutator,
    service_account_mutator,
)

logger = logging.getLogger(__name__)

SERVICE_ACCOUNT_NAME = "amp"


class ImagesReconciler:
    def __init__(self, logic: APIManagerLogicReconciler):
        self.logic = logic

    def service_account(self) -> V1ServiceAccount:
        return V1ServiceAccount(
            metadata=V1ObjectMeta(
                name=SERVICE_ACCOUNT_NAME,
                namespace=self.logic.namespace,
                labels={"app": self.logic.apimanager.spec.app_label},
            ),
            image_pull_secrets=self.logic.apimanager.image_pull_secrets(),
        )

    async def reconcile(self) -> ReconcileResult:
        await self.logic.reconcile_service_account(
            self.service_account(),
            service_account_mutator(
                service_account_image_pull_secrets_mutator,
                service_account_labels_mutator,
            ),
        )
        return ReconcileResult()
