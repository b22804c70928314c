"""
Base Reconciler - Generic observe, diff, mutate and write-back cycle.

Kind-specific reconcilers hold a ``BaseReconciler`` and delegate to it for
every owned object. The base reconciler never retries: conflicts and
transient failures are raised to the scheduling layer, which owns the
requeue policy.
"""

import copy
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from kubernetes_asyncio.client import V1OwnerReference

from capabilities import CapabilitySnapshot
from errors import NotFoundError
from events import EventRecorder, EventType
from reconcilers.pipeline import MutatorPipeline
from store import ObjectKey, ObjectStore

logger = logging.getLogger(__name__)


@dataclass
class ReconcileResult:
    """Result from a reconciler's reconcile() call."""

    requeue: bool = False
    requeue_after: Optional[float] = None
    message: str = ""


class ObjectOutcome(Enum):
    """What a reconcile of one owned object did."""

    ABSENT = "absent"
    UNCHANGED = "unchanged"
    UPDATED = "updated"
    CREATED = "created"


class BaseReconciler:
    """
    Converges live objects towards desired ones through the object store.

    Args:
        store: Object store facade.
        capabilities: Snapshot discovered once at startup, shared read-only.
        recorder: Event sink for lifecycle events.
    """

    def __init__(
        self,
        store: ObjectStore,
        capabilities: CapabilitySnapshot,
        recorder: Optional[EventRecorder] = None,
    ):
        self.store = store
        self.capabilities = capabilities
        self.recorder = recorder or EventRecorder()

    def has_kind(self, group: str, kind: str) -> bool:
        return self.capabilities.has_kind(group, kind)

    async def reconcile_object(
        self, desired: Any, mutator: MutatorPipeline
    ) -> ObjectOutcome:
        """
        Fetch the live object, run the pipeline and write back on change.

        At most one write is issued, and only when the pipeline reports a
        change. An absent object is reported, not created.

        Args:
            desired: Desired object, never modified.
            mutator: Pipeline for the object's kind.

        Returns:
            ABSENT, UNCHANGED or UPDATED.

        Raises:
            ConflictError: If the write was rejected for a stale resourceVersion.
            TransientStoreError: On network or availability failures.
            ReconcileError: Any error raised by a mutator.
        """
        kind = self.store.scheme.lookup(desired).kind
        key = ObjectKey(desired.metadata.namespace, desired.metadata.name)

        try:
            existing = await self.store.get(kind, key.namespace, key.name)
        except NotFoundError:
            logger.debug(f"{kind} {key} not found")
            return ObjectOutcome.ABSENT

        if not mutator.run(desired, existing):
            logger.debug(f"{kind} {key} is up to date")
            return ObjectOutcome.UNCHANGED

        await self.store.update(existing)
        logger.info(f"Updated {kind} {key}")
        self.recorder.record(
            EventType.UPDATED, kind, key.namespace, key.name, "ObjectUpdated"
        )
        return ObjectOutcome.UPDATED

    async def reconcile_resource(
        self,
        desired: Any,
        mutator: MutatorPipeline,
        owner: Optional[V1OwnerReference] = None,
    ) -> ObjectOutcome:
        """
        Like :meth:`reconcile_object`, creating the object when absent.

        Args:
            desired: Desired object, never modified.
            mutator: Pipeline for the object's kind.
            owner: Controller owner reference set on created objects.

        Returns:
            CREATED, UNCHANGED or UPDATED.
        """
        outcome = await self.reconcile_object(desired, mutator)
        if outcome is not ObjectOutcome.ABSENT:
            return outcome

        obj = copy.deepcopy(desired)
        if owner is not None:
            obj.metadata.owner_references = [owner]

        kind = self.store.scheme.lookup(obj).kind
        await self.store.create(obj)
        logger.info(f"Created {kind} {obj.metadata.namespace}/{obj.metadata.name}")
        self.recorder.record(
            EventType.CREATED,
            kind,
            obj.metadata.namespace,
            obj.metadata.name,
            "ObjectCreated",
        )
        return ObjectOutcome.CREATED


class KindReconciler(ABC):
    """
    Reconciler for one custom resource kind.

    Implementations are registered in a :class:`ReconcilerRegistry` and
    driven by a :class:`Controller`, which calls :meth:`reconcile` with the
    identity of each dequeued object.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Unique identifier for this reconciler."""
        pass

    @property
    @abstractmethod
    def kind(self) -> str:
        """Custom resource kind this reconciler handles."""
        pass

    @property
    @abstractmethod
    def group(self) -> str:
        pass

    @property
    @abstractmethod
    def version(self) -> str:
        pass

    @property
    @abstractmethod
    def plural(self) -> str:
        pass

    @abstractmethod
    async def reconcile(self, key: ObjectKey) -> ReconcileResult:
        """
        Reconcile a single custom resource.

        Args:
            key: Identity of the custom resource.

        Returns:
            ReconcileResult telling the scheduler whether to requeue.

        Raises:
            ReconcileError: Classified by the controller via ``retryable``.
        """
        pass
