"""
ConfigMap mutators.
"""

import logging

from kubernetes_asyncio.client import V1ConfigMap

from reconcilers.helpers import merge_map
from reconcilers.pipeline import MutateFn, MutatorPipeline

logger = logging.getLogger(__name__)


def config_map_data_mutator(desired: V1ConfigMap, existing: V1ConfigMap) -> bool:
    """Merge desired data keys into existing; extra keys in existing are kept."""
    merged, updated = merge_map(existing.data, desired.data)
    if updated:
        logger.info(
            f"ConfigMap {existing.metadata.namespace}/{existing.metadata.name} "
            f"data changed"
        )
        existing.data = merged
    return updated


def config_map_labels_mutator(desired: V1ConfigMap, existing: V1ConfigMap) -> bool:
    merged, updated = merge_map(existing.metadata.labels, desired.metadata.labels)
    if updated:
        existing.metadata.labels = merged
    return updated


def config_map_annotations_mutator(desired: V1ConfigMap, existing: V1ConfigMap) -> bool:
    merged, updated = merge_map(
        existing.metadata.annotations, desired.metadata.annotations
    )
    if updated:
        existing.metadata.annotations = merged
    return updated


def config_map_mutator(*mutators: MutateFn) -> MutatorPipeline[V1ConfigMap]:
    return MutatorPipeline(V1ConfigMap, *mutators)
