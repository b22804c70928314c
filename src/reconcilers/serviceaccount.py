"""
ServiceAccount mutators.
"""

import copy
import logging

from kubernetes_asyncio.client import V1ServiceAccount

from reconcilers.helpers import merge_map
from reconcilers.pipeline import MutateFn, MutatorPipeline

logger = logging.getLogger(__name__)


def service_account_image_pull_secrets_mutator(
    desired: V1ServiceAccount, existing: V1ServiceAccount
) -> bool:
    """
    Append image pull secrets missing from existing, matched by name.

    Secrets only present in existing are kept; the service account
    controller and users add their own.
    """
    secrets = list(existing.image_pull_secrets or [])
    names = {secret.name for secret in secrets}
    updated = False

    for desired_secret in desired.image_pull_secrets or []:
        if desired_secret.name not in names:
            secrets.append(copy.deepcopy(desired_secret))
            names.add(desired_secret.name)
            updated = True

    if updated:
        logger.info(
            f"ServiceAccount {existing.metadata.namespace}/{existing.metadata.name} "
            f"image pull secrets changed"
        )
        existing.image_pull_secrets = secrets
    return updated


def service_account_labels_mutator(
    desired: V1ServiceAccount, existing: V1ServiceAccount
) -> bool:
    merged, updated = merge_map(existing.metadata.labels, desired.metadata.labels)
    if updated:
        existing.metadata.labels = merged
    return updated


def service_account_mutator(*mutators: MutateFn) -> MutatorPipeline[V1ServiceAccount]:
    return MutatorPipeline(V1ServiceAccount, *mutators)
