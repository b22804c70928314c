"""
APIManager reconciler - entry point for ``apps.3scale.net/v1alpha1`` APIManagers.
"""

import logging

from pydantic import ValidationError

from apimanager.backend import BackendReconciler
from apimanager.images import ImagesReconciler
from apimanager.logic import APIManagerLogicReconciler
from apimanager.spec import GROUP, KIND, PLURAL, VERSION, APIManager
from apimanager.system import SystemReconciler
from errors import InvariantViolationError, NotFoundError
from reconcilers.base import BaseReconciler, KindReconciler, ReconcileResult
from store import ObjectKey

logger = logging.getLogger(__name__)


class APIManagerReconciler(KindReconciler):
    """
    Reconciles an APIManager by running the images, backend and system
    sub-reconcilers in order. The first one asking for a requeue stops the
    sequence.
    """

    sub_reconcilers = (ImagesReconciler, BackendReconciler, SystemReconciler)

    def __init__(self, base: BaseReconciler):
        self.base = base

    @property
    def name(self) -> str:
        return "apimanager"

    @property
    def kind(self) -> str:
        return KIND

    @property
    def group(self) -> str:
        return GROUP

    @property
    def version(self) -> str:
        return VERSION

    @property
    def plural(self) -> str:
        return PLURAL

    async def reconcile(self, key: ObjectKey) -> ReconcileResult:
        try:
            obj = await self.base.store.get_custom_object(
                GROUP, VERSION, PLURAL, key.namespace, key.name
            )
        except NotFoundError:
            logger.info(f"APIManager {key} not found, nothing to do")
            return ReconcileResult()

        try:
            apimanager = APIManager.parse(obj)
        except ValidationError as e:
            raise InvariantViolationError(f"Invalid APIManager {key}: {e}") from e

        if apimanager.metadata.deletion_timestamp:
            # Owned objects are garbage collected through their owner references
            logger.info(f"APIManager {key} is being deleted")
            return ReconcileResult()

        logic = APIManagerLogicReconciler(self.base, apimanager)
        for sub_reconciler in self.sub_reconcilers:
            result = await sub_reconciler(logic).reconcile()
            if result.requeue or result.requeue_after:
                return result

        return ReconcileResult(message=f"APIManager {key} reconciled")
