"""
Reconciler Registry - Explicit registry of kind reconcilers.

Built once during startup and handed to the application; there is no
module-level registry instance.
"""

import logging
from importlib.metadata import entry_points
from typing import Dict, List, Optional

from reconcilers.base import BaseReconciler, KindReconciler

logger = logging.getLogger(__name__)

ENTRY_POINT_GROUP = "apimanager_operator.reconcilers"


class ReconcilerRegistry:
    """Maps custom resource kinds to the reconciler that owns them."""

    def __init__(self):
        self._reconcilers: Dict[str, KindReconciler] = {}
        # kind -> reconciler name
        self._kinds: Dict[str, str] = {}

    def register(self, reconciler: KindReconciler) -> None:
        """
        Register a reconciler instance.

        Args:
            reconciler: The reconciler to register.

        Raises:
            ValueError: If its kind is already claimed by another reconciler.
        """
        name = reconciler.name
        kind = reconciler.kind

        existing = self._kinds.get(kind)
        if existing and existing != name:
            raise ValueError(
                f"Kind '{kind}' is already claimed by reconciler "
                f"'{existing}'. Cannot register '{name}'."
            )

        if name in self._reconcilers:
            logger.warning(f"Overwriting existing reconciler: {name}")

        self._reconcilers[name] = reconciler
        self._kinds[kind] = name
        logger.info(
            f"Registered reconciler: {name} "
            f"(kind: {kind}.{reconciler.group}/{reconciler.version})"
        )

    def get(self, name: str) -> KindReconciler:
        """
        Get a reconciler by name.

        Raises:
            ValueError: If no reconciler with that name is registered.
        """
        if name not in self._reconcilers:
            raise ValueError(f"Unknown reconciler: {name}")
        return self._reconcilers[name]

    def for_kind(self, kind: str) -> Optional[KindReconciler]:
        name = self._kinds.get(kind)
        return self._reconcilers[name] if name else None

    def list_reconcilers(self) -> List[str]:
        return list(self._reconcilers.keys())

    def all(self) -> List[KindReconciler]:
        return list(self._reconcilers.values())

    def __len__(self) -> int:
        return len(self._reconcilers)


def discover_reconcilers(registry: ReconcilerRegistry, base: BaseReconciler) -> int:
    """
    Register reconcilers advertised by installed packages.

    Each entry point in the ``apimanager_operator.reconcilers`` group must
    load a callable taking the shared :class:`BaseReconciler` and returning a
    :class:`KindReconciler`. Entry points that fail to load are skipped.

    Returns:
        Number of reconcilers registered.
    """
    count = 0
    for ep in entry_points(group=ENTRY_POINT_GROUP):
        try:
            factory = ep.load()
            registry.register(factory(base))
            count += 1
        except Exception as e:
            logger.warning(f"Could not load reconciler {ep.name}: {e}")
    return count
