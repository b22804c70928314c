"""
Operator Controller - Watch, queue and worker loops for one custom resource kind.

Similar to Kubernetes controllers: watch events and a periodic resync feed a
deduplicating work queue, and a pool of workers calls the kind reconciler
for each dequeued key. All retry and backoff policy lives here.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional

from config import ControllerConfig
from errors import ConflictError, ReconcileError
from events import EventRecorder, EventType
from reconcilers.base import KindReconciler, ReconcileResult
from store import ObjectKey, ObjectStore
from workqueue import WorkQueue

logger = logging.getLogger(__name__)

# Pause before restarting a watch that failed
WATCH_RETRY_DELAY = 5


class Controller:
    """
    Drives one :class:`KindReconciler`.

    Args:
        reconciler: Reconciler for the watched kind.
        store: Object store used to list and watch the custom resources.
        config: Worker, timeout and backoff configuration.
        namespace: Namespace to watch, empty for all namespaces.
        queue: Work queue, built from ``config`` when omitted.
        recorder: Event sink for requeue and failure events.
    """

    def __init__(
        self,
        reconciler: KindReconciler,
        store: ObjectStore,
        config: Optional[ControllerConfig] = None,
        namespace: str = "",
        queue: Optional[WorkQueue] = None,
        recorder: Optional[EventRecorder] = None,
    ):
        self.reconciler = reconciler
        self.store = store
        self.config = config or ControllerConfig()
        self.namespace = namespace
        self.queue: WorkQueue[ObjectKey] = queue or WorkQueue(
            base_delay=self.config.backoff_base_delay,
            max_delay=self.config.backoff_max_delay,
            jitter_factor=self.config.backoff_jitter_factor,
        )
        self.recorder = recorder or EventRecorder()
        self.running = False
        self._tasks: List[asyncio.Task] = []

    @property
    def name(self) -> str:
        return self.reconciler.name

    async def start(self):
        """Start the watch, resync and worker loops and wait for them."""
        logger.info(
            f"Starting controller {self.name} for {self.reconciler.plural}."
            f"{self.reconciler.group} "
            f"({self.config.max_concurrent_reconciles} workers)"
        )
        self.running = True

        self._tasks = [
            asyncio.create_task(self._watch_loop()),
            asyncio.create_task(self._resync_loop()),
        ]
        for worker_id in range(self.config.max_concurrent_reconciles):
            self._tasks.append(asyncio.create_task(self._worker(worker_id)))

        try:
            await asyncio.gather(*self._tasks)
        except asyncio.CancelledError:
            logger.info(f"Controller {self.name} tasks cancelled")

    async def stop(self):
        """Stop the controller; in-flight reconciles are cancelled."""
        logger.info(f"Stopping controller {self.name}")
        self.running = False
        self.queue.shut_down()

        for task in self._tasks:
            if not task.done():
                task.cancel()
        self._tasks.clear()

    def trigger_reconciliation(self, namespace: str, name: str) -> None:
        """Queue an immediate reconcile of one custom resource."""
        self.queue.add(ObjectKey(namespace, name))

    def _enqueue(self, obj: Dict[str, Any]) -> None:
        metadata = obj.get("metadata") or {}
        name = metadata.get("name")
        if not name:
            return
        self.queue.add(ObjectKey(metadata.get("namespace", ""), name))

    async def _watch_loop(self):
        """Enqueue every object the watch reports, restarting it when it ends."""
        while self.running:
            try:
                async for event_type, obj in self.store.watch_custom_objects(
                    self.reconciler.group,
                    self.reconciler.version,
                    self.reconciler.plural,
                    namespace=self.namespace,
                ):
                    logger.debug(f"Watch event {event_type} for {self.reconciler.kind}")
                    self._enqueue(obj)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Error in watch loop of {self.name}: {e}", exc_info=True)
                await asyncio.sleep(WATCH_RETRY_DELAY)

    async def _resync_loop(self):
        """Periodically enqueue every object, catching anything the watch missed."""
        while self.running:
            try:
                objects = await self.store.list_custom_objects(
                    self.reconciler.group,
                    self.reconciler.version,
                    self.reconciler.plural,
                    namespace=self.namespace,
                )
                if objects:
                    logger.info(
                        f"Resync of {self.name}: {len(objects)} {self.reconciler.plural}"
                    )
                for obj in objects:
                    self._enqueue(obj)

                await asyncio.sleep(self.config.reconcile_interval)

            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Error in resync loop of {self.name}: {e}", exc_info=True)
                await asyncio.sleep(WATCH_RETRY_DELAY)

    async def _worker(self, worker_id: int):
        while True:
            key = await self.queue.get()
            if key is None:
                logger.debug(f"Worker {worker_id} of {self.name} exiting")
                return
            try:
                await self.process(key)
            finally:
                self.queue.done(key)

    async def process(self, key: ObjectKey) -> None:
        """
        Reconcile one key and decide whether and when it is queued again.

        - success: forgotten; requeued after ``requeue_after`` or rate-limited
          when the result asks for it.
        - conflict: requeued after the short conflict delay.
        - retryable error or timeout: rate-limited requeue.
        - anything else: FAILED event, forgotten until the next watch event
          or resync.
        """
        kind = self.reconciler.kind
        try:
            result = await asyncio.wait_for(
                self.reconciler.reconcile(key), timeout=self.config.reconcile_timeout
            )
        except ConflictError as e:
            logger.info(f"Conflict reconciling {kind} {key}, requeueing: {e.message}")
            self.queue.add_after(key, self.config.conflict_requeue_delay)
            return
        except asyncio.TimeoutError:
            delay = self.queue.add_rate_limited(key)
            logger.warning(
                f"Reconcile of {kind} {key} timed out after "
                f"{self.config.reconcile_timeout}s, retrying in {delay:.1f}s"
            )
            self._record(EventType.REQUEUED, key, "ReconcileTimeout")
            return
        except ReconcileError as e:
            if e.retryable:
                delay = self.queue.add_rate_limited(key)
                logger.warning(
                    f"Reconcile of {kind} {key} failed, retrying in {delay:.1f}s: "
                    f"{e.message}"
                )
                self._record(EventType.REQUEUED, key, "ReconcileRetry", e.message)
                return
            self._fail(key, e.message)
            return
        except Exception as e:
            logger.error(f"Unexpected error reconciling {kind} {key}: {e}", exc_info=True)
            self._fail(key, str(e))
            return

        self._handle_result(key, result)

    def _handle_result(self, key: ObjectKey, result: ReconcileResult) -> None:
        self.queue.forget(key)
        if result.requeue_after:
            self.queue.add_after(key, result.requeue_after)
        elif result.requeue:
            self.queue.add_rate_limited(key)

        logger.debug(f"Reconciled {self.reconciler.kind} {key}")
        self._record(EventType.RECONCILED, key, "Reconciled", result.message)

    def _fail(self, key: ObjectKey, message: str) -> None:
        logger.error(f"Reconcile of {self.reconciler.kind} {key} failed: {message}")
        self.queue.forget(key)
        self._record(EventType.FAILED, key, "ReconcileFailed", message)

    def _record(
        self, event_type: EventType, key: ObjectKey, reason: str, message: str = ""
    ) -> None:
        self.recorder.record(
            event_type, self.reconciler.kind, key.namespace, key.name, reason, message
        )
